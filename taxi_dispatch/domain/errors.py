"""
Error taxonomy of the dispatch core.

Every error carries the HTTP status the API layer maps it to, so routes
never translate errors by hand.  ``Conflict`` is the optimistic-concurrency
failure of a compare-and-swap; ``AlreadyTaken`` is the same failure seen
through the Claim Arbiter.
"""

from __future__ import annotations

from typing import Optional

from .enums import RejectReason


class DispatchError(Exception):
    """Base class for every error raised by the dispatch core."""

    status_code = 400
    code = "dispatch_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(DispatchError):
    """Malformed or missing required input."""

    status_code = 422
    code = "validation_error"


class GeocodingFailed(ValidationError):
    code = "geocoding_failed"


class NotFound(DispatchError):
    status_code = 404
    code = "not_found"


class Conflict(DispatchError):
    """A compare-and-swap precondition no longer holds."""

    status_code = 409
    code = "conflict"


class AlreadyTaken(Conflict):
    code = "already_taken"


class InvalidTransition(DispatchError):
    status_code = 409
    code = "invalid_transition"


class StationMismatch(DispatchError):
    """Cross-tenant access attempt.  Always logged, never downgraded."""

    status_code = 403
    code = "station_mismatch"


class PermissionDenied(DispatchError):
    status_code = 403
    code = "permission_denied"


class DriverUnavailable(DispatchError):
    status_code = 409
    code = "driver_unavailable"


class NoDriversAvailable(DispatchError):
    status_code = 409
    code = "no_drivers_available"


class Rejected(DispatchError):
    status_code = 409
    code = "rejected"

    def __init__(self, reason: RejectReason, message: Optional[str] = None):
        super().__init__(message or f"Rejected: {reason.value}")
        self.reason = reason
