"""Offer bookkeeping shared by the matching engine, claims and cancellations."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from taxi_dispatch.domain.enums import OfferStatus
from taxi_dispatch.infrastructure import events
from taxi_dispatch.infrastructure.database import utcnow
from taxi_dispatch.infrastructure.models import DispatchOfferModel, TripModel
from taxi_dispatch.infrastructure.repositories import OfferRepository


def offer_event(
    offer: DispatchOfferModel, trip: TripModel, type_: str
) -> events.OfferEvent:
    return events.OfferEvent(
        type=type_,
        offer_id=offer.id,
        trip_id=trip.id,
        station_id=trip.station_id,
        driver_id=offer.driver_id,
        status=OfferStatus(offer.status).value,
        pickup_lat=trip.pickup_lat,
        pickup_lng=trip.pickup_lng,
        pickup_address=trip.pickup_address,
        distance_m=offer.distance_m,
        expires_at=offer.expires_at,
    )


class OfferBook:
    def __init__(
        self, session: AsyncSession, clock: Callable[[], datetime] = utcnow
    ):
        self.session = session
        self.clock = clock
        self.offers = OfferRepository(session)

    def notify(self, offer: DispatchOfferModel, trip: TripModel) -> None:
        """(Re-)send the offer notice to the driver."""
        event = offer_event(offer, trip, "offer.created")
        events.stage(self.session, events.driver_topic(offer.driver_id), event)
        events.stage(self.session, events.trip_topic(trip.id), event)

    async def open(
        self,
        trip: TripModel,
        driver_id: str,
        *,
        distance_m: Optional[float],
        timeout_s: float,
        now: datetime,
    ) -> Optional[DispatchOfferModel]:
        offer = DispatchOfferModel(
            trip_id=trip.id,
            station_id=trip.station_id,
            driver_id=driver_id,
            status=OfferStatus.OPEN,
            distance_m=distance_m,
            offered_at=now,
            expires_at=now + timedelta(seconds=timeout_s),
        )
        if not await self.offers.open_offer(offer):
            return None
        self.notify(offer, trip)
        return offer

    async def close(
        self,
        offer: DispatchOfferModel,
        trip: TripModel,
        status: OfferStatus,
        now: Optional[datetime] = None,
    ) -> bool:
        closed = await self.offers.close(offer.id, status, now or self.clock())
        if closed:
            await self.session.refresh(offer)
            event = offer_event(offer, trip, "offer.closed")
            events.stage(self.session, events.driver_topic(offer.driver_id), event)
            events.stage(self.session, events.trip_topic(trip.id), event)
        return closed

    async def close_open(
        self,
        trip: TripModel,
        status: OfferStatus,
        now: Optional[datetime] = None,
    ) -> Optional[DispatchOfferModel]:
        offer = await self.offers.get_open(trip.id)
        if offer is not None and await self.close(offer, trip, status, now):
            return offer
        return None

    async def exclude(
        self,
        trip: TripModel,
        driver_id: str,
        status: OfferStatus,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Close *driver_id*'s open offer with *status*, or record a closed
        one so the driver is excluded from further search for this trip.
        """
        now = now or self.clock()
        offer = await self.offers.get_open(trip.id)
        if offer is not None and offer.driver_id == driver_id:
            await self.close(offer, trip, status, now)
            return
        if driver_id in await self.offers.excluded_driver_ids(trip.id):
            return
        await self.offers.record(
            DispatchOfferModel(
                trip_id=trip.id,
                station_id=trip.station_id,
                driver_id=driver_id,
                status=status,
                offered_at=now,
                closed_at=now,
            )
        )
