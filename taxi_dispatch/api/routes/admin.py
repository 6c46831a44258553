"""
Admin / observability endpoints
===============================

GET /api/v1/admin/stats   -- trip counts and driver availability of the station
GET /api/v1/admin/health  -- simple health check
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from taxi_dispatch.api.dependencies import get_context, get_db
from taxi_dispatch.api.middleware import limiter
from taxi_dispatch.api.schemas import HealthResponse, StationStatsResponse
from taxi_dispatch.config import settings
from taxi_dispatch.domain.entities import RequestContext
from taxi_dispatch.infrastructure.repositories import TripRepository
from taxi_dispatch.services.drivers import DriverRegistry
from taxi_dispatch.services.tenants import ensure_dispatcher

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get(
    "/stats",
    response_model=StationStatsResponse,
    summary="Trip and driver counts for the station",
)
@limiter.limit(settings.rate_limit)
async def station_stats(
    request: Request,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
):
    ensure_dispatcher(ctx)
    registry = DriverRegistry(db)
    online = await registry.list_for_station(ctx, ctx.station_id, online_only=True)
    dispatchable = await registry.list_dispatchable(ctx, ctx.station_id)
    return StationStatsResponse(
        station_id=ctx.station_id,
        trips_by_status=await TripRepository(db).count_by_status(ctx.station_id),
        drivers_online=len(online),
        drivers_dispatchable=len(dispatchable),
    )


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health():
    return HealthResponse()
