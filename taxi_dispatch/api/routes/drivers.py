"""
Driver endpoints
================

POST  /api/v1/drivers                          -- register a driver (dispatcher)
GET   /api/v1/drivers                          -- station drivers
GET   /api/v1/drivers/dispatchable             -- online, approved, positioned
GET   /api/v1/drivers/{driver_id}
PUT   /api/v1/drivers/{driver_id}              -- edit name, phone, vehicle (dispatcher)
POST  /api/v1/drivers/{driver_id}/position     -- location report (driver)
PUT   /api/v1/drivers/{driver_id}/online       -- go online / offline (driver)
PUT   /api/v1/drivers/{driver_id}/approval     -- approve / suspend (dispatcher)
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from taxi_dispatch.api.dependencies import get_context, get_db
from taxi_dispatch.api.middleware import limiter
from taxi_dispatch.api.schemas import (
    ApprovalRequest,
    DriverProfileRequest,
    DriverRegisterRequest,
    DriverResponse,
    OnlineRequest,
    PositionReport,
    PositionResponse,
)
from taxi_dispatch.config import settings
from taxi_dispatch.domain.entities import RequestContext
from taxi_dispatch.services.drivers import DriverRegistry

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.post("", status_code=201, response_model=DriverResponse, summary="Register a driver")
@limiter.limit(settings.rate_limit)
async def register_driver(
    request: Request,
    body: DriverRegisterRequest,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    return await DriverRegistry(db).register(
        ctx,
        ctx.station_id,
        body.full_name,
        phone=body.phone,
        vehicle_number=body.vehicle_number,
        approved=body.approved,
    )


@router.get("", response_model=list[DriverResponse], summary="List station drivers")
@limiter.limit(settings.rate_limit)
async def list_drivers(
    request: Request,
    online_only: bool = False,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    return await DriverRegistry(db).list_for_station(
        ctx, ctx.station_id, online_only=online_only
    )


@router.get(
    "/dispatchable",
    response_model=list[DriverResponse],
    summary="Drivers the matching engine may offer trips to",
)
@limiter.limit(settings.rate_limit)
async def list_dispatchable(
    request: Request,
    zone_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    return await DriverRegistry(db).list_dispatchable(ctx, ctx.station_id, zone_id)


@router.get("/{driver_id}", response_model=DriverResponse, summary="Get a driver")
@limiter.limit(settings.rate_limit)
async def get_driver(
    request: Request,
    driver_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    return await DriverRegistry(db).get(ctx, driver_id)


@router.post(
    "/{driver_id}/position",
    response_model=PositionResponse,
    summary="Report the driver's location",
    description=(
        "Reports closer than the minimum interval and distance to the last "
        "stored position are acknowledged but not written."
    ),
)
@limiter.limit(settings.rate_limit)
async def report_position(
    request: Request,
    driver_id: str,
    body: PositionReport,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    recorded = await DriverRegistry(db).report_position(
        ctx, driver_id, body.latitude, body.longitude, body.heading
    )
    return PositionResponse(recorded=recorded)


@router.put(
    "/{driver_id}/online",
    response_model=DriverResponse,
    summary="Go online or offline",
    responses={409: {"description": "Driver has an active trip."}},
)
@limiter.limit(settings.rate_limit)
async def set_online(
    request: Request,
    driver_id: str,
    body: OnlineRequest,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    return await DriverRegistry(db).set_online(ctx, driver_id, body.online)


@router.put(
    "/{driver_id}/approval",
    response_model=DriverResponse,
    summary="Approve or suspend a driver",
)
@limiter.limit(settings.rate_limit)
async def set_approval(
    request: Request,
    driver_id: str,
    body: ApprovalRequest,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    return await DriverRegistry(db).set_approved(ctx, driver_id, body.approved)


@router.put("/{driver_id}", response_model=DriverResponse, summary="Edit a driver's profile")
@limiter.limit(settings.rate_limit)
async def update_driver(
    request: Request,
    driver_id: str,
    body: DriverProfileRequest,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    return await DriverRegistry(db).update_profile(
        ctx, driver_id, body.model_dump(exclude_unset=True)
    )
