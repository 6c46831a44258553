"""
Station endpoints
=================

GET /api/v1/stations/me  -- the caller's station
PUT /api/v1/stations/me  -- rename it (dispatcher)
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from taxi_dispatch.api.dependencies import get_context, get_db
from taxi_dispatch.api.middleware import limiter
from taxi_dispatch.api.schemas import StationRenameRequest, StationResponse
from taxi_dispatch.config import settings
from taxi_dispatch.domain.entities import RequestContext
from taxi_dispatch.services.tenants import TenantDirectory

router = APIRouter(prefix="/stations", tags=["stations"])


@router.get("/me", response_model=StationResponse, summary="Current station")
@limiter.limit(settings.rate_limit)
async def get_station(
    request: Request,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    return await TenantDirectory(db).get(ctx, ctx.station_id)


@router.put("/me", response_model=StationResponse, summary="Rename the station")
@limiter.limit(settings.rate_limit)
async def rename_station(
    request: Request,
    body: StationRenameRequest,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    return await TenantDirectory(db).rename(ctx, ctx.station_id, body.name)
