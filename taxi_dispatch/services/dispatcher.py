"""
Matching Engine
===============

Drives a pending trip towards a driver, one re-entrant step at a time.
The engine keeps no memory of its own: everything it needs (the trip,
the open offer, the drivers already tried) is read from storage at the
start of each step, so running the same step twice, or after a restart,
is safe.

Step
----
1. Trip not pending                          -> ``settled``
2. Open offer still live                     -> re-send notice, ``offered``
3. Open offer expired / driver gone          -> close it, continue
4. Search nearest, excluding tried drivers
5. Nobody found                              -> ``waiting`` until the search
                                                budget runs out, then cancel
                                                with ``no_drivers_available``
6. Offer the trip to the nearest candidate   -> ``offered``

Offers carry an ``expires_at``; the dispatch worker re-runs the step
periodically, which is what turns an expired offer into the next
candidate.  The timer is advisory: a late claim against a still-pending
trip is decided by the Claim Arbiter alone.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from taxi_dispatch.config import Settings, settings as default_settings
from taxi_dispatch.domain.entities import (
    DispatchResult,
    RequestContext,
    is_dispatchable,
)
from taxi_dispatch.domain.enums import (
    CancelReason,
    DispatchOutcome,
    OfferStatus,
    TripStatus,
)
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
    OfferRepository,
    StationRepository,
    TripRepository,
)
from taxi_dispatch.services.claims import ClaimArbiter
from taxi_dispatch.services.locator import GeoLocator
from taxi_dispatch.services.offers import OfferBook
from taxi_dispatch.services.trips import TripStore

logger = logging.getLogger(__name__)


class MatchingEngine:
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
        self.store = TripStore(session, clock=clock)
        self.locator = GeoLocator(session)
        self.book = OfferBook(session, clock)
        self.offers = OfferRepository(session)
        self.drivers = DriverRepository(session)
        self.trips = TripRepository(session)
        self.stations = StationRepository(session)

    @staticmethod
    def _system_context(trip: TripModel) -> RequestContext:
        return RequestContext.dispatcher(trip.station_id)

    # ── Public API ────────────────────────────────────────────────────

    async def dispatch(
        self, trip_id: str, now: Optional[datetime] = None
    ) -> DispatchResult:
        """Run one step of the dispatch loop for *trip_id*."""
        now = now or self.clock()
        trip = await self.trips.get_by_id(trip_id, fresh=True)
        if trip is None:
            raise NotFound(f"Trip {trip_id} not found")

        if TripStatus(trip.status) != TripStatus.PENDING:
            await self.book.close_open(trip, OfferStatus.WITHDRAWN, now)
            return DispatchResult(trip.id, DispatchOutcome.SETTLED, trip.driver_id)

        offer = await self.offers.get_open(trip.id)
        if offer is not None:
            driver = await self.drivers.get_by_id(offer.driver_id, fresh=True)
            if offer.expires_at is not None and offer.expires_at <= now:
                logger.info(
                    "Offer of trip %s to driver %s expired", trip.id, offer.driver_id
                )
                await self.book.close(offer, trip, OfferStatus.EXPIRED, now)
            elif not await self._still_available(driver, trip):
                await self.book.close(offer, trip, OfferStatus.WITHDRAWN, now)
            else:
                self.book.notify(offer, trip)
                return DispatchResult(
                    trip.id, DispatchOutcome.OFFERED, offer.driver_id, offer.expires_at
                )

        candidates = await self._search(trip)
        if not candidates:
            return await self._wait_or_give_up(trip, now)

        top = candidates[0]
        offer = await self.book.open(
            trip,
            top.driver.id,
            distance_m=top.distance_m,
            timeout_s=self.settings.response_timeout_seconds,
            now=now,
        )
        if offer is None:
            # A concurrent step opened an offer first; echo that one
            existing = await self.offers.get_open(trip.id)
            if existing is None:
                return DispatchResult(trip.id, DispatchOutcome.WAITING)
            self.book.notify(existing, trip)
            return DispatchResult(
                trip.id, DispatchOutcome.OFFERED, existing.driver_id, existing.expires_at
            )

        logger.info(
            "Trip %s offered to driver %s (%.0f m)",
            trip.id,
            top.driver.id,
            top.distance_m,
        )
        return DispatchResult(
            trip.id, DispatchOutcome.OFFERED, offer.driver_id, offer.expires_at
        )

    async def auto_assign(
        self, trip_id: str, now: Optional[datetime] = None
    ) -> DispatchResult:
        """
        Assign the nearest available driver without waiting for a response,
        acting as the automatic agent on the drivers' behalf.
        """
        now = now or self.clock()
        trip = await self.store.require(trip_id)
        if TripStatus(trip.status) != TripStatus.PENDING:
            return DispatchResult(trip.id, DispatchOutcome.SETTLED, trip.driver_id)

        ctx = self._system_context(trip)
        arbiter = ClaimArbiter(self.session, clock=self.clock)
        for candidate in await self._search(trip):
            try:
                claimed = await arbiter.claim(ctx, trip.id, candidate.driver.id)
            except DriverUnavailable:
                await self.book.exclude(trip, candidate.driver.id, OfferStatus.WITHDRAWN, now)
                continue
            except AlreadyTaken:
                trip = await self.store.require(trip_id)
                return DispatchResult(trip.id, DispatchOutcome.SETTLED, trip.driver_id)
            return DispatchResult(claimed.id, DispatchOutcome.SETTLED, claimed.driver_id)

        return await self._wait_or_give_up(trip, now)

    async def pending_trip_ids(self) -> list[str]:
        """Unassigned trips of every station, oldest first within a station."""
        trip_ids: list[str] = []
        for station_id in await self.stations.all_ids():
            trip_ids.extend(trip.id for trip in await self.trips.list_pending(station_id))
        return trip_ids

    # ── Internals ─────────────────────────────────────────────────────

    async def _still_available(self, driver, trip: TripModel) -> bool:
        if driver is None or not is_dispatchable(driver, trip.station_id):
            return False
        return await self.trips.active_trip_for_driver(driver.id) is None

    async def _search(self, trip: TripModel):
        ctx = self._system_context(trip)
        exclude = await self.offers.excluded_driver_ids(trip.id)
        point = (trip.pickup_lat, trip.pickup_lng)
        limit = self.settings.candidate_limit

        candidates = await self.locator.nearest(
            ctx, trip.station_id, point, trip.zone_id, exclude, limit
        )
        if not candidates and trip.zone_id and self.settings.zone_fallback_to_station:
            candidates = await self.locator.nearest(
                ctx, trip.station_id, point, None, exclude, limit
            )
        return candidates

    async def _wait_or_give_up(
        self, trip: TripModel, now: datetime
    ) -> DispatchResult:
        """Keep waiting for drivers, or cancel once the budget is spent."""
        last_closed = await self.offers.last_closed_at(trip.id)
        started = max(trip.created_at, last_closed) if last_closed else trip.created_at
        waited = (now - started).total_seconds()
        if waited < self.settings.search_budget_seconds:
            return DispatchResult(trip.id, DispatchOutcome.WAITING)

        try:
            await self.store.transition(
                trip.id,
                TripStatus.PENDING,
                TripStatus.CANCELLED,
                {
                    "cancel_reason": CancelReason.NO_DRIVERS_AVAILABLE,
                    "cancelled_at": now,
                },
            )
        except Conflict:
            # Claimed or cancelled while we were searching
            trip = await self.store.require(trip.id)
            return DispatchResult(trip.id, DispatchOutcome.SETTLED, trip.driver_id)

        logger.info(
            "Trip %s cancelled: no drivers available after %.0fs", trip.id, waited
        )
        return DispatchResult(trip.id, DispatchOutcome.EXHAUSTED)
