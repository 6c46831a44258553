"""
Claim Arbiter
=============

The single synchronisation point of the system.  Exactly one of any
number of concurrent ``claim`` calls for a trip succeeds, because the
winning call is the one whose conditional update of the trip row
(``status = 'pending' AND driver_id IS NULL``) commits first.  Losers see
``AlreadyTaken`` and must not retry the same trip.

Check order
-----------
1. Trip and driver exist                         -> ``NotFound``
2. Driver and trip belong to the same station    -> ``StationMismatch``
3. Trip still pending                            -> ``AlreadyTaken``
4. Driver row locked, then dispatchable and not on an active trip
                                                 -> ``DriverUnavailable``
5. Conditional ``pending -> active``             -> ``AlreadyTaken`` on conflict,
   ``DriverUnavailable`` when the trip is still open but the driver no
   longer is

The driver row lock is shared with ``DriverRegistry.set_online``: a
driver cannot go offline between the checks of step 4 and the write.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from taxi_dispatch.domain.entities import RequestContext, is_dispatchable
from taxi_dispatch.domain.enums import OfferStatus, TripStatus
from taxi_dispatch.domain.errors import (
    AlreadyTaken,
    Conflict,
    DriverUnavailable,
    NotFound,
)
from taxi_dispatch.infrastructure.database import utcnow
from taxi_dispatch.infrastructure.models import TripModel
from taxi_dispatch.infrastructure.repositories import (
    DriverRepository,
    TripRepository,
)
from taxi_dispatch.services.offers import OfferBook
from taxi_dispatch.services.tenants import (
    ensure_driver_or_dispatcher,
    ensure_same_station,
)
from taxi_dispatch.services.trips import TripStore

logger = logging.getLogger(__name__)


class ClaimArbiter:
    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.clock = clock
        self.store = TripStore(session, clock=clock)
        self.trips = TripRepository(session)
        self.drivers = DriverRepository(session)
        self.offers = OfferBook(session, clock)

    async def _load(self, ctx: RequestContext, trip_id: str, driver_id: str):
        ensure_driver_or_dispatcher(ctx, driver_id)
        trip = await self.store.require(trip_id)
        driver = await self.drivers.get_by_id(driver_id, fresh=True)
        if driver is None:
            raise NotFound(f"Driver {driver_id} not found")

        ensure_same_station(ctx, trip.station_id, entity="trip", entity_id=trip_id)
        # The principal's station already equals the trip's here
        ensure_same_station(ctx, driver.station_id, entity="driver", entity_id=driver_id)
        return trip, driver

    async def claim(
        self, ctx: RequestContext, trip_id: str, driver_id: str
    ) -> TripModel:
        trip, driver = await self._load(ctx, trip_id, driver_id)

        if TripStatus(trip.status) != TripStatus.PENDING or trip.driver_id:
            raise AlreadyTaken(f"Trip {trip_id} is no longer available")

        driver = await self.drivers.lock(driver_id)
        if not is_dispatchable(driver, trip.station_id):
            raise DriverUnavailable(f"Driver {driver_id} is not dispatchable")
        if await self.trips.active_trip_for_driver(driver_id) is not None:
            raise DriverUnavailable(f"Driver {driver_id} already has an active trip")

        now = self.clock()
        try:
            trip = await self.store.transition(
                trip_id,
                TripStatus.PENDING,
                TripStatus.ACTIVE,
                {"driver_id": driver_id, "accepted_at": now},
            )
        except Conflict as exc:
            current = await self.store.require(trip_id)
            if TripStatus(current.status) == TripStatus.PENDING and not current.driver_id:
                raise DriverUnavailable(
                    f"Driver {driver_id} is not dispatchable"
                ) from exc
            logger.info("Claim of trip %s by driver %s lost: %s", trip_id, driver_id, exc)
            raise AlreadyTaken(f"Trip {trip_id} is no longer available") from exc

        offer = await self.offers.offers.get_open(trip_id)
        if offer is not None:
            status = (
                OfferStatus.CLAIMED if offer.driver_id == driver_id else OfferStatus.WITHDRAWN
            )
            await self.offers.close(offer, trip, status, now)

        logger.info("Trip %s claimed by driver %s", trip_id, driver_id)
        return trip

    async def decline(
        self, ctx: RequestContext, trip_id: str, driver_id: str
    ) -> None:
        """
        Record that *driver_id* passed on the trip.  Trip status is not
        touched; the matching engine skips this driver from now on.
        """
        trip, _ = await self._load(ctx, trip_id, driver_id)
        if TripStatus(trip.status) != TripStatus.PENDING:
            return
        await self.offers.exclude(trip, driver_id, OfferStatus.DECLINED, self.clock())
        logger.info("Driver %s declined trip %s", driver_id, trip_id)
