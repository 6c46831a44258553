"""Domain enumerations and state-transition rules."""

import enum


class TripStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# State machine: maps current status -> set of valid next statuses
TRIP_TRANSITIONS: dict[TripStatus, set[TripStatus]] = {
    TripStatus.PENDING: {TripStatus.ACTIVE, TripStatus.CANCELLED},
    TripStatus.ACTIVE: {TripStatus.COMPLETED, TripStatus.CANCELLED},
    TripStatus.COMPLETED: set(),
    TripStatus.CANCELLED: set(),
}

LIVE_TRIP_STATUSES = frozenset({TripStatus.PENDING, TripStatus.ACTIVE})


class CancelReason(str, enum.Enum):
    NO_DRIVERS_AVAILABLE = "no_drivers_available"
    CUSTOMER_REQUEST = "customer_request"
    DISPATCHER_REQUEST = "dispatcher_request"
    DRIVER_REQUEST = "driver_request"


class OfferStatus(str, enum.Enum):
    OPEN = "open"
    DECLINED = "declined"
    EXPIRED = "expired"
    CLAIMED = "claimed"
    WITHDRAWN = "withdrawn"


class Role(str, enum.Enum):
    DRIVER = "driver"
    DISPATCHER = "dispatcher"


class RejectReason(str, enum.Enum):
    HAS_ACTIVE_TRIP = "has_active_trip"
    DRIVER_OFFLINE = "driver_offline"


class DispatchOutcome(str, enum.Enum):
    OFFERED = "offered"
    WAITING = "waiting"
    EXHAUSTED = "exhausted"
    SETTLED = "settled"
