"""
Trip endpoints
==============

POST /api/v1/trips                         -- create a trip and run the first dispatch step
GET  /api/v1/trips                         -- station trips, newest first
GET  /api/v1/trips/unassigned              -- pending trips without a driver
GET  /api/v1/trips/{trip_id}               -- trip status
GET  /api/v1/trips/{trip_id}/candidates    -- nearest dispatchable drivers
POST /api/v1/trips/{trip_id}/claim         -- driver (or dispatcher for a driver) takes the trip
POST /api/v1/trips/{trip_id}/decline       -- driver passes; the trip moves to the next candidate
POST /api/v1/trips/{trip_id}/complete
POST /api/v1/trips/{trip_id}/cancel
POST /api/v1/trips/{trip_id}/dispatch      -- run one dispatch step now
POST /api/v1/trips/{trip_id}/auto-assign   -- assign the nearest available driver outright
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from taxi_dispatch.api.dependencies import get_context, get_db, get_geocoder
from taxi_dispatch.api.middleware import limiter
from taxi_dispatch.api.schemas import (
    CandidateResponse,
    DispatchResponse,
    DriverClaimRequest,
    DriverResponse,
    TripCancelRequest,
    TripCreateRequest,
    TripCreatedResponse,
    TripResponse,
)
from taxi_dispatch.config import settings
from taxi_dispatch.domain.entities import RequestContext, TripDraft
from taxi_dispatch.domain.enums import DispatchOutcome, TripStatus
from taxi_dispatch.domain.errors import NoDriversAvailable, ValidationError
from taxi_dispatch.services.claims import ClaimArbiter
from taxi_dispatch.services.dispatcher import MatchingEngine
from taxi_dispatch.services.geocoding import Geocoder
from taxi_dispatch.services.locator import GeoLocator
from taxi_dispatch.services.tenants import ensure_dispatcher
from taxi_dispatch.services.trips import TripStore

router = APIRouter(prefix="/trips", tags=["trips"])


@router.post(
    "",
    status_code=201,
    response_model=TripCreatedResponse,
    summary="Create a trip",
    description=(
        "Pickup coordinates may be replaced by an address, which is then "
        "geocoded.  The first dispatch step runs immediately; later steps "
        "are driven by the dispatch worker."
    ),
)
@limiter.limit(settings.rate_limit)
async def create_trip(
    request: Request,
    body: TripCreateRequest,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    geocoder: Geocoder = Depends(get_geocoder),
):
    draft = TripDraft(station_id=ctx.station_id, **body.model_dump())
    trip = await TripStore(db, geocoder=geocoder).create(ctx, draft)
    result = await MatchingEngine(db).dispatch(trip.id)
    trip = await TripStore(db).require(trip.id)
    return TripCreatedResponse(
        trip=TripResponse.model_validate(trip),
        dispatch=DispatchResponse.model_validate(result),
    )


@router.get("", response_model=list[TripResponse], summary="List station trips")
@limiter.limit(settings.rate_limit)
async def list_trips(
    request: Request,
    status: Optional[TripStatus] = None,
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    return await TripStore(db).list_for_station(
        ctx, ctx.station_id, status, min(max(limit, 1), 500)
    )


@router.get(
    "/unassigned",
    response_model=list[TripResponse],
    summary="Pending trips waiting for a driver",
)
@limiter.limit(settings.rate_limit)
async def list_unassigned(
    request: Request,
    zone_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    return await TripStore(db).list_unassigned(ctx, ctx.station_id, zone_id)


@router.get("/{trip_id}", response_model=TripResponse, summary="Get trip status")
@limiter.limit(settings.rate_limit)
async def get_trip(
    request: Request,
    trip_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    return await TripStore(db).get(ctx, trip_id)


@router.get(
    "/{trip_id}/candidates",
    response_model=list[CandidateResponse],
    summary="Nearest dispatchable drivers for the pickup",
)
@limiter.limit(settings.rate_limit)
async def find_drivers(
    request: Request,
    trip_id: str,
    limit: int = 5,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    ensure_dispatcher(ctx)
    trip = await TripStore(db).get(ctx, trip_id)
    candidates = await GeoLocator(db).nearest(
        ctx,
        trip.station_id,
        (trip.pickup_lat, trip.pickup_lng),
        trip.zone_id,
        limit=min(max(limit, 1), 50),
    )
    return [
        CandidateResponse(
            driver=DriverResponse.model_validate(c.driver), distance_m=c.distance_m
        )
        for c in candidates
    ]


@router.post(
    "/{trip_id}/claim",
    response_model=TripResponse,
    summary="Claim a pending trip",
    responses={409: {"description": "Trip already taken or driver unavailable."}},
)
@limiter.limit(settings.rate_limit)
async def claim_trip(
    request: Request,
    trip_id: str,
    body: Optional[DriverClaimRequest] = None,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    driver_id = (body.driver_id if body else None) or ctx.driver_id
    if not driver_id:
        raise ValidationError("driver_id is required")
    return await ClaimArbiter(db).claim(ctx, trip_id, driver_id)


@router.post(
    "/{trip_id}/decline",
    response_model=DispatchResponse,
    summary="Decline an offered trip",
)
@limiter.limit(settings.rate_limit)
async def decline_trip(
    request: Request,
    trip_id: str,
    body: Optional[DriverClaimRequest] = None,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    driver_id = (body.driver_id if body else None) or ctx.driver_id
    if not driver_id:
        raise ValidationError("driver_id is required")
    await ClaimArbiter(db).decline(ctx, trip_id, driver_id)
    return await MatchingEngine(db).dispatch(trip_id)


@router.post(
    "/{trip_id}/complete", response_model=TripResponse, summary="Complete a trip"
)
@limiter.limit(settings.rate_limit)
async def complete_trip(
    request: Request,
    trip_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    return await TripStore(db).complete(ctx, trip_id)


@router.post("/{trip_id}/cancel", response_model=TripResponse, summary="Cancel a trip")
@limiter.limit(settings.rate_limit)
async def cancel_trip(
    request: Request,
    trip_id: str,
    body: Optional[TripCancelRequest] = None,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    reason = body.reason if body else None
    return await TripStore(db).cancel(ctx, trip_id, reason)


@router.post(
    "/{trip_id}/dispatch",
    response_model=DispatchResponse,
    summary="Run one dispatch step for the trip",
)
@limiter.limit(settings.rate_limit)
async def dispatch_trip(
    request: Request,
    trip_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    ensure_dispatcher(ctx)
    await TripStore(db).get(ctx, trip_id)
    return await MatchingEngine(db).dispatch(trip_id)


@router.post(
    "/{trip_id}/auto-assign",
    response_model=DispatchResponse,
    summary="Assign the nearest available driver",
    responses={409: {"description": "No driver can take the trip right now."}},
)
@limiter.limit(settings.rate_limit)
async def auto_assign_trip(
    request: Request,
    trip_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    ensure_dispatcher(ctx)
    await TripStore(db).get(ctx, trip_id)
    result = await MatchingEngine(db).auto_assign(trip_id)
    if result.outcome == DispatchOutcome.WAITING:
        raise NoDriversAvailable("No available drivers near the pickup")
    return result
