"""
Driver Registry
===============

Driver identity, approval / online flags and live position.

Position and ``is_online`` are written only through the driver's own
channel; dispatchers provision and approve drivers but never move them.
Position reports are throttled so a phone reporting every second does
not turn into a write per second.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from taxi_dispatch.config import Settings, settings as default_settings
from taxi_dispatch.domain.entities import (
    Location,
    RequestContext,
    should_record_position,
)
from taxi_dispatch.domain.enums import RejectReason
from taxi_dispatch.domain.errors import NotFound, Rejected, ValidationError
from taxi_dispatch.infrastructure import events
from taxi_dispatch.infrastructure.database import utcnow
from taxi_dispatch.infrastructure.models import DriverModel
from taxi_dispatch.infrastructure.repositories import DriverRepository
from taxi_dispatch.services.tenants import (
    TenantDirectory,
    ensure_dispatcher,
    ensure_own_driver,
    ensure_same_station,
)

logger = logging.getLogger(__name__)

PROFILE_FIELDS = frozenset({"full_name", "phone", "vehicle_number"})


def driver_event(driver: DriverModel, type_: str) -> events.DriverEvent:
    return events.DriverEvent(
        type=type_,
        driver_id=driver.id,
        station_id=driver.station_id,
        is_online=driver.is_online,
        latitude=driver.latitude,
        longitude=driver.longitude,
        heading=driver.heading,
        current_zone_id=driver.current_zone_id,
    )


class DriverRegistry:
    def __init__(
        self,
        session: AsyncSession,
        *,
        settings: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.settings = settings
        self.clock = clock
        self.drivers = DriverRepository(session)
        self.tenants = TenantDirectory(session)

    async def _load(self, ctx: RequestContext, driver_id: str) -> DriverModel:
        driver = await self.drivers.get_by_id(driver_id, fresh=True)
        if driver is None:
            raise NotFound(f"Driver {driver_id} not found")
        ensure_same_station(ctx, driver.station_id, entity="driver", entity_id=driver_id)
        return driver

    # ── Provisioning (dispatcher) ─────────────────────────────────────

    async def register(
        self,
        ctx: RequestContext,
        station_id: str,
        full_name: str,
        *,
        phone: Optional[str] = None,
        vehicle_number: Optional[str] = None,
        approved: bool = True,
    ) -> DriverModel:
        ensure_dispatcher(ctx)
        ensure_same_station(ctx, station_id, entity="station", entity_id=station_id)
        await self.tenants.require_station(station_id)
        if not (full_name or "").strip():
            raise ValidationError("full_name is required")

        driver = DriverModel(
            station_id=station_id,
            full_name=full_name.strip(),
            phone=phone,
            vehicle_number=vehicle_number,
            is_online=False,
            is_approved=approved,
        )
        await self.drivers.create(driver)
        logger.info("Driver %s registered at station %s", driver.id, station_id)
        return driver

    async def set_approved(
        self, ctx: RequestContext, driver_id: str, approved: bool
    ) -> DriverModel:
        ensure_dispatcher(ctx)
        await self._load(ctx, driver_id)
        await self.drivers.set_approved(driver_id, approved, self.clock())
        return await self._load(ctx, driver_id)

    async def update_profile(
        self,
        ctx: RequestContext,
        driver_id: str,
        changes: Mapping[str, Optional[str]],
    ) -> DriverModel:
        """Edit ``full_name``, ``phone`` and ``vehicle_number``; other keys are refused."""
        ensure_dispatcher(ctx)
        driver = await self._load(ctx, driver_id)

        unknown = set(changes) - PROFILE_FIELDS
        if unknown:
            raise ValidationError(f"Fields not editable: {sorted(unknown)}")
        if "full_name" in changes:
            full_name = (changes["full_name"] or "").strip()
            if not full_name:
                raise ValidationError("full_name is required")
            driver.full_name = full_name
        if "phone" in changes:
            driver.phone = changes["phone"]
        if "vehicle_number" in changes:
            driver.vehicle_number = changes["vehicle_number"]
        driver.updated_at = self.clock()
        await self.session.flush()
        return driver

    async def get(self, ctx: RequestContext, driver_id: str) -> DriverModel:
        return await self._load(ctx, driver_id)

    async def list_for_station(
        self, ctx: RequestContext, station_id: str, *, online_only: bool = False
    ) -> list[DriverModel]:
        ensure_same_station(ctx, station_id, entity="station", entity_id=station_id)
        return await self.drivers.list_for_station(station_id, online_only=online_only)

    # ── Driver channel ────────────────────────────────────────────────

    async def report_position(
        self,
        ctx: RequestContext,
        driver_id: str,
        lat: float,
        lng: float,
        heading: Optional[float] = None,
    ) -> bool:
        """
        Record a location report.  Returns True when it was written and
        False when the throttle dropped it.
        """
        ensure_own_driver(ctx, driver_id)
        point = Location(lat, lng)
        driver = await self._load(ctx, driver_id)
        if not driver.is_online:
            raise Rejected(RejectReason.DRIVER_OFFLINE, "Driver is offline")

        now = self.clock()
        if not should_record_position(
            driver,
            point.latitude,
            point.longitude,
            now,
            min_interval_s=self.settings.position_min_interval_seconds,
            min_distance_m=self.settings.position_min_distance_m,
            heartbeat_s=self.settings.position_heartbeat_seconds,
        ):
            return False

        zone = await self.tenants.zone_for_point(
            driver.station_id, point.latitude, point.longitude
        )
        written = await self.drivers.update_position(
            driver_id,
            latitude=point.latitude,
            longitude=point.longitude,
            heading=heading,
            current_zone_id=zone.id if zone else None,
            at=now,
        )
        if not written:
            # Went offline between the read and the write
            raise Rejected(RejectReason.DRIVER_OFFLINE, "Driver is offline")

        driver = await self._load(ctx, driver_id)
        events.stage(
            self.session,
            events.station_drivers_topic(driver.station_id),
            driver_event(driver, "driver.position"),
        )
        return True

    async def set_online(
        self, ctx: RequestContext, driver_id: str, online: bool
    ) -> DriverModel:
        ensure_own_driver(ctx, driver_id)
        await self._load(ctx, driver_id)
        # Same row lock as a claim; the active-trip check below sees its commit
        await self.drivers.lock(driver_id)

        if not await self.drivers.set_online(driver_id, online, self.clock()):
            raise Rejected(
                RejectReason.HAS_ACTIVE_TRIP,
                "Cannot go offline while assigned to an active trip",
            )

        driver = await self._load(ctx, driver_id)
        type_ = "driver.online" if online else "driver.offline"
        events.stage(
            self.session,
            events.station_drivers_topic(driver.station_id),
            driver_event(driver, type_),
        )
        logger.info("Driver %s is now %s", driver_id, "online" if online else "offline")
        return driver

    async def list_dispatchable(
        self, ctx: RequestContext, station_id: str, zone_id: Optional[str] = None
    ) -> list[DriverModel]:
        ensure_same_station(ctx, station_id, entity="station", entity_id=station_id)
        return await self.drivers.list_dispatchable(station_id, zone_id)
