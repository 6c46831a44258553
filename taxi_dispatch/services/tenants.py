"""
Tenant Directory
================

Stations and their zones, plus the guards every other service uses to
keep a principal inside its own station.  A ``StationMismatch`` is
always logged here, at WARNING, before it is raised: it means either a
client bug or a cross-tenant access attempt.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from taxi_dispatch.domain import geofence
from taxi_dispatch.domain.entities import RequestContext
from taxi_dispatch.domain.errors import (
    NotFound,
    PermissionDenied,
    StationMismatch,
    ValidationError,
)
from taxi_dispatch.infrastructure.database import utcnow
from taxi_dispatch.infrastructure.models import StationModel, ZoneModel
from taxi_dispatch.infrastructure.repositories import (
    StationRepository,
    ZoneRepository,
)

logger = logging.getLogger(__name__)


# ── Guards ────────────────────────────────────────────────────────────


def ensure_same_station(
    ctx: RequestContext,
    station_id: Optional[str],
    *,
    entity: str = "resource",
    entity_id: Optional[str] = None,
) -> None:
    if station_id and ctx.station_id == station_id:
        return
    logger.warning(
        "Station mismatch: role=%s station=%s driver=%s tried %s %s of station %s",
        ctx.role.value,
        ctx.station_id,
        ctx.driver_id,
        entity,
        entity_id,
        station_id,
    )
    raise StationMismatch(f"{entity.capitalize()} does not belong to your station")


def ensure_dispatcher(ctx: RequestContext) -> None:
    if not ctx.is_dispatcher:
        raise PermissionDenied("Dispatcher role required")


def ensure_own_driver(ctx: RequestContext, driver_id: str) -> None:
    """Driver-owned fields are written only through the driver's own channel."""
    if not (ctx.is_driver and ctx.driver_id == driver_id):
        raise PermissionDenied("Only the driver may change this")


def ensure_driver_or_dispatcher(ctx: RequestContext, driver_id: str) -> None:
    if ctx.is_dispatcher:
        return
    ensure_own_driver(ctx, driver_id)


# ── Directory ─────────────────────────────────────────────────────────


class TenantDirectory:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.stations = StationRepository(session)
        self.zones = ZoneRepository(session)

    async def create_station(self, name: str) -> StationModel:
        """Tenant provisioning; not reachable from a station principal."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Station name is required")
        station = await self.stations.create(name)
        logger.info("Station %s provisioned (%s)", station.id, name)
        return station

    async def require_station(self, station_id: Optional[str]) -> StationModel:
        if not station_id:
            raise ValidationError("station_id is required")
        station = await self.stations.get_by_id(station_id)
        if station is None:
            raise NotFound(f"Station {station_id} not found")
        return station

    async def get(self, ctx: RequestContext, station_id: str) -> StationModel:
        ensure_same_station(ctx, station_id, entity="station", entity_id=station_id)
        return await self.require_station(station_id)

    async def rename(
        self, ctx: RequestContext, station_id: str, name: str
    ) -> StationModel:
        ensure_dispatcher(ctx)
        station = await self.get(ctx, station_id)
        name = (name or "").strip()
        if not name:
            raise ValidationError("Station name is required")
        station.name = name
        station.updated_at = utcnow()
        await self.session.flush()
        return station

    # ── Zones ─────────────────────────────────────────────────────────

    async def create_zone(
        self,
        ctx: RequestContext,
        station_id: str,
        name: str,
        polygon: Sequence[Sequence[float]],
        color: Optional[str] = None,
    ) -> ZoneModel:
        ensure_dispatcher(ctx)
        await self.get(ctx, station_id)
        if not (name or "").strip():
            raise ValidationError("Zone name is required")
        try:
            vertices = geofence.validate_polygon(polygon)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        zone = ZoneModel(
            station_id=station_id,
            name=name.strip(),
            polygon=vertices,
            color=color or "#F7C948",
        )
        return await self.zones.create(zone)

    async def list_zones(
        self, ctx: RequestContext, station_id: str
    ) -> list[ZoneModel]:
        ensure_same_station(ctx, station_id, entity="station", entity_id=station_id)
        return await self.zones.list_for_station(station_id)

    async def get_zone(self, ctx: RequestContext, zone_id: str) -> ZoneModel:
        zone = await self.zones.get_by_id(zone_id)
        if zone is None:
            raise NotFound(f"Zone {zone_id} not found")
        ensure_same_station(ctx, zone.station_id, entity="zone", entity_id=zone_id)
        return zone

    async def update_zone(
        self,
        ctx: RequestContext,
        zone_id: str,
        *,
        name: Optional[str] = None,
        polygon: Optional[Sequence[Sequence[float]]] = None,
        color: Optional[str] = None,
    ) -> ZoneModel:
        """
        Rename, recolour or reshape a zone.  Drivers keep their
        ``current_zone_id`` until their next recorded position.
        """
        ensure_dispatcher(ctx)
        zone = await self.get_zone(ctx, zone_id)
        if name is not None:
            if not name.strip():
                raise ValidationError("Zone name is required")
            zone.name = name.strip()
        if polygon is not None:
            try:
                zone.polygon = geofence.validate_polygon(polygon)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
        if color is not None:
            zone.color = color
        await self.session.flush()
        return zone

    async def delete_zone(self, ctx: RequestContext, zone_id: str) -> None:
        ensure_dispatcher(ctx)
        zone = await self.get_zone(ctx, zone_id)
        await self.zones.delete(zone)
        logger.info("Zone %s deleted from station %s", zone_id, zone.station_id)

    async def zone_for_point(
        self, station_id: str, lat: float, lng: float
    ) -> Optional[ZoneModel]:
        """First zone of the station containing the point, if any."""
        zones = await self.zones.list_for_station(station_id)
        return geofence.first_containing(zones, lat, lng)
