"""
Geospatial Locator
==================

Loads the station's dispatchable drivers, removes those already holding a
live trip (derived from the Trip Store, never stored on the driver) and
hands the rest to ``domain.matching.rank_candidates``.
"""

from __future__ import annotations

from typing import AbstractSet, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from taxi_dispatch.domain.entities import Candidate, Location, RequestContext
from taxi_dispatch.domain.matching import rank_candidates
from taxi_dispatch.infrastructure.models import ZoneModel
from taxi_dispatch.infrastructure.repositories import (
    DriverRepository,
    TripRepository,
)
from taxi_dispatch.services.tenants import TenantDirectory, ensure_same_station

Point = Union[Location, tuple[float, float]]


class GeoLocator:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.drivers = DriverRepository(session)
        self.trips = TripRepository(session)
        self.tenants = TenantDirectory(session)

    async def nearest(
        self,
        ctx: RequestContext,
        station_id: str,
        point: Point,
        zone_id: Optional[str] = None,
        exclude: AbstractSet[str] = frozenset(),
        limit: int = 5,
    ) -> list[Candidate]:
        ensure_same_station(ctx, station_id, entity="station", entity_id=station_id)
        if not isinstance(point, Location):
            point = Location(*point)

        drivers = await self.drivers.list_dispatchable(station_id, zone_id)
        if not drivers:
            return []
        busy = await self.trips.busy_driver_ids(station_id)
        return rank_candidates(
            drivers,
            station_id,
            point.latitude,
            point.longitude,
            zone_id=zone_id,
            exclude=set(exclude) | busy,
            limit=limit,
        )

    async def zone_for_point(
        self, ctx: RequestContext, station_id: str, lat: float, lng: float
    ) -> Optional[ZoneModel]:
        ensure_same_station(ctx, station_id, entity="station", entity_id=station_id)
        point = Location(lat, lng)
        return await self.tenants.zone_for_point(
            station_id, point.latitude, point.longitude
        )
