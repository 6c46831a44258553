"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from taxi_dispatch.domain.enums import CancelReason, DispatchOutcome, TripStatus


# ── Requests ──────────────────────────────────────────────────────────


class TripCreateRequest(BaseModel):
    pickup_lat: Optional[float] = Field(None, ge=-90, le=90)
    pickup_lng: Optional[float] = Field(None, ge=-180, le=180)
    pickup_address: Optional[str] = Field(None, max_length=255)
    destination_lat: Optional[float] = Field(None, ge=-90, le=90)
    destination_lng: Optional[float] = Field(None, ge=-180, le=180)
    destination_address: Optional[str] = Field(None, max_length=255)
    customer_phone: Optional[str] = Field(None, max_length=32)
    zone_id: Optional[str] = Field(
        None, description="Zone to search; detected from the pickup when omitted."
    )


class TripCancelRequest(BaseModel):
    reason: Optional[CancelReason] = None


class DriverClaimRequest(BaseModel):
    driver_id: Optional[str] = Field(
        None, description="Defaults to the calling driver."
    )


class DriverRegisterRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=120)
    phone: Optional[str] = Field(None, max_length=32)
    vehicle_number: Optional[str] = Field(None, max_length=32)
    approved: bool = True


class PositionReport(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    heading: Optional[float] = Field(None, ge=0, lt=360)


class OnlineRequest(BaseModel):
    online: bool


class DriverProfileRequest(BaseModel):
    full_name: Optional[str] = Field(None, min_length=1, max_length=120)
    phone: Optional[str] = Field(None, max_length=32)
    vehicle_number: Optional[str] = Field(None, max_length=32)


class ApprovalRequest(BaseModel):
    approved: bool


class ZoneCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    polygon: list[list[float]] = Field(
        ..., min_length=3, description="[[lat, lng], ...] vertices"
    )
    color: Optional[str] = Field(None, max_length=16)


class ZoneUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    polygon: Optional[list[list[float]]] = Field(
        None, min_length=3, description="[[lat, lng], ...] vertices"
    )
    color: Optional[str] = Field(None, max_length=16)


class PointRequest(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class StationRenameRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)


# ── Responses ─────────────────────────────────────────────────────────


class TripResponse(BaseModel):
    id: str
    station_id: str
    zone_id: Optional[str] = None
    status: TripStatus
    driver_id: Optional[str] = None
    cancel_reason: Optional[CancelReason] = None
    customer_phone: Optional[str] = None
    pickup_address: Optional[str] = None
    pickup_lat: float
    pickup_lng: float
    destination_address: Optional[str] = None
    destination_lat: Optional[float] = None
    destination_lng: Optional[float] = None
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    model_config = {"from_attributes": True, "use_enum_values": True}


class DispatchResponse(BaseModel):
    trip_id: str
    outcome: DispatchOutcome
    driver_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    model_config = {"from_attributes": True, "use_enum_values": True}


class TripCreatedResponse(BaseModel):
    trip: TripResponse
    dispatch: DispatchResponse


class DriverResponse(BaseModel):
    id: str
    station_id: str
    full_name: str
    phone: Optional[str] = None
    vehicle_number: Optional[str] = None
    is_online: bool
    is_approved: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    heading: Optional[float] = None
    current_zone_id: Optional[str] = None
    last_position_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class PositionResponse(BaseModel):
    recorded: bool


class CandidateResponse(BaseModel):
    driver: DriverResponse
    distance_m: float

    model_config = {"from_attributes": True}


class ZoneResponse(BaseModel):
    id: str
    station_id: str
    name: str
    color: Optional[str] = None
    polygon: list[list[float]]

    model_config = {"from_attributes": True}


class ZoneCheckResponse(BaseModel):
    zone: Optional[ZoneResponse] = None


class StationResponse(BaseModel):
    id: str
    name: str

    model_config = {"from_attributes": True}


class StationStatsResponse(BaseModel):
    station_id: str
    trips_by_status: dict[str, int]
    drivers_online: int
    drivers_dispatchable: int


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    detail: str
    code: str
    reason: Optional[str] = None
