"""
Domain value objects and the rules that operate on them.

Patterns used
-------------
- **State Pattern** on trips: ``ensure_transition`` enforces the lifecycle
  PENDING -> ACTIVE -> COMPLETED | CANCELLED, PENDING -> CANCELLED.
- ``is_dispatchable`` is the single definition of a dispatchable driver.
- ``RequestContext`` is the authenticated principal handed to every core
  call instead of ambient session state.

The rules accept any object exposing the relevant attributes, so they work
on ORM rows and plain dataclasses alike.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from .distance import haversine_m
from .enums import TRIP_TRANSITIONS, DispatchOutcome, Role, TripStatus
from .errors import InvalidTransition, ValidationError


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float

    def __post_init__(self):
        if not (-90 <= self.latitude <= 90):
            raise ValidationError(f"Latitude out of range: {self.latitude}")
        if not (-180 <= self.longitude <= 180):
            raise ValidationError(f"Longitude out of range: {self.longitude}")


@dataclass(frozen=True)
class RequestContext:
    role: Role
    station_id: str
    driver_id: Optional[str] = None

    @property
    def is_dispatcher(self) -> bool:
        return self.role == Role.DISPATCHER

    @property
    def is_driver(self) -> bool:
        return self.role == Role.DRIVER

    @classmethod
    def dispatcher(cls, station_id: str) -> "RequestContext":
        return cls(role=Role.DISPATCHER, station_id=station_id)

    @classmethod
    def for_driver(cls, station_id: str, driver_id: str) -> "RequestContext":
        return cls(role=Role.DRIVER, station_id=station_id, driver_id=driver_id)


@dataclass
class TripDraft:
    station_id: Optional[str]
    pickup_lat: Optional[float] = None
    pickup_lng: Optional[float] = None
    pickup_address: Optional[str] = None
    destination_lat: Optional[float] = None
    destination_lng: Optional[float] = None
    destination_address: Optional[str] = None
    customer_phone: Optional[str] = None
    zone_id: Optional[str] = None


@dataclass(frozen=True)
class Candidate:
    driver: Any
    distance_m: float


@dataclass(frozen=True)
class DispatchResult:
    trip_id: str
    outcome: DispatchOutcome
    driver_id: Optional[str] = None
    expires_at: Optional[datetime] = None


# ── Rules ─────────────────────────────────────────────────────────────


def ensure_transition(current: TripStatus, new: TripStatus) -> None:
    """Raise ``InvalidTransition`` unless *current* -> *new* is legal."""
    allowed = TRIP_TRANSITIONS.get(TripStatus(current), set())
    if TripStatus(new) not in allowed:
        raise InvalidTransition(
            f"Cannot transition from {TripStatus(current).value} "
            f"to {TripStatus(new).value}"
        )


def has_position(driver) -> bool:
    return driver.latitude is not None and driver.longitude is not None


def is_dispatchable(driver, station_id: str) -> bool:
    return bool(
        driver.is_online
        and driver.is_approved
        and has_position(driver)
        and driver.station_id == station_id
    )


def should_record_position(
    driver,
    lat: float,
    lng: float,
    now: datetime,
    *,
    min_interval_s: float,
    min_distance_m: float,
    heartbeat_s: float,
) -> bool:
    """
    Throttle for driver location reports.

    A report is written when the driver has no position yet, when both the
    minimum interval has elapsed *and* the driver moved far enough, or when
    the stored position is older than the heartbeat.
    """
    if not has_position(driver) or driver.last_position_at is None:
        return True

    elapsed = (now - driver.last_position_at).total_seconds()
    if elapsed >= heartbeat_s:
        return True
    if elapsed < min_interval_s:
        return False
    moved = haversine_m(driver.latitude, driver.longitude, lat, lng)
    return moved >= min_distance_m
