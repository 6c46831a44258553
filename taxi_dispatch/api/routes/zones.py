"""
Zone endpoints
==============

POST /api/v1/zones              -- add a polygon zone to the station (dispatcher)
GET  /api/v1/zones              -- station zones
PUT  /api/v1/zones/{zone_id}    -- rename, recolour or reshape (dispatcher)
DELETE /api/v1/zones/{zone_id}  -- remove a zone (dispatcher)
POST /api/v1/zones/check-point  -- which zone contains a point
"""

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from taxi_dispatch.api.dependencies import get_context, get_db
from taxi_dispatch.api.middleware import limiter
from taxi_dispatch.api.schemas import (
    PointRequest,
    ZoneCheckResponse,
    ZoneCreateRequest,
    ZoneResponse,
    ZoneUpdateRequest,
)
from taxi_dispatch.config import settings
from taxi_dispatch.domain.entities import RequestContext
from taxi_dispatch.services.locator import GeoLocator
from taxi_dispatch.services.tenants import TenantDirectory

router = APIRouter(prefix="/zones", tags=["zones"])


@router.post("", status_code=201, response_model=ZoneResponse, summary="Create a zone")
@limiter.limit(settings.rate_limit)
async def create_zone(
    request: Request,
    body: ZoneCreateRequest,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    return await TenantDirectory(db).create_zone(
        ctx, ctx.station_id, body.name, body.polygon, body.color
    )


@router.get("", response_model=list[ZoneResponse], summary="List station zones")
@limiter.limit(settings.rate_limit)
async def list_zones(
    request: Request,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    return await TenantDirectory(db).list_zones(ctx, ctx.station_id)


@router.post(
    "/check-point",
    response_model=ZoneCheckResponse,
    summary="Find the zone containing a point",
)
@limiter.limit(settings.rate_limit)
async def check_point(
    request: Request,
    body: PointRequest,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    zone = await GeoLocator(db).zone_for_point(
        ctx, ctx.station_id, body.latitude, body.longitude
    )
    return ZoneCheckResponse(zone=ZoneResponse.model_validate(zone) if zone else None)


@router.put("/{zone_id}", response_model=ZoneResponse, summary="Update a zone")
@limiter.limit(settings.rate_limit)
async def update_zone(
    request: Request,
    zone_id: str,
    body: ZoneUpdateRequest,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    return await TenantDirectory(db).update_zone(
        ctx, zone_id, name=body.name, polygon=body.polygon, color=body.color
    )


@router.delete(
    "/{zone_id}",
    status_code=204,
    response_class=Response,
    summary="Delete a zone",
    description="Drivers and trips inside the zone are left without a zone.",
)
@limiter.limit(settings.rate_limit)
async def delete_zone(
    request: Request,
    zone_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    await TenantDirectory(db).delete_zone(ctx, zone_id)
    return Response(status_code=204)
