"""
Trip Store
==========

Trip creation and the lifecycle state machine.

``transition`` is the only path that mutates a trip's status or
``driver_id``.  It validates the edge against the state machine and then
issues one conditional ``UPDATE ... WHERE status = :expected`` (plus
``driver_id IS NULL`` for a claim).  When the precondition no longer
holds the update touches zero rows and the caller gets ``Conflict``;
nothing is overwritten.  That single statement is what makes claims and
cancellations race-safe across processes.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from taxi_dispatch.config import settings
from taxi_dispatch.domain.entities import (
    Location,
    RequestContext,
    TripDraft,
    ensure_transition,
)
from taxi_dispatch.domain.enums import CancelReason, OfferStatus, TripStatus
from taxi_dispatch.domain.errors import (
    Conflict,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from taxi_dispatch.infrastructure import events
from taxi_dispatch.infrastructure.database import utcnow
from taxi_dispatch.infrastructure.models import TripModel
from taxi_dispatch.infrastructure.repositories import TripRepository
from taxi_dispatch.services.geocoding import Geocoder
from taxi_dispatch.services.offers import OfferBook
from taxi_dispatch.services.tenants import (
    TenantDirectory,
    ensure_dispatcher,
    ensure_same_station,
)

logger = logging.getLogger(__name__)

# Fields a transition may set besides status / updated_at
TRANSITION_FIELDS = frozenset(
    {"driver_id", "accepted_at", "completed_at", "cancelled_at", "cancel_reason"}
)

_STAMPS = {
    TripStatus.ACTIVE: "accepted_at",
    TripStatus.COMPLETED: "completed_at",
    TripStatus.CANCELLED: "cancelled_at",
}


def trip_event(trip: TripModel, type_: str) -> events.TripEvent:
    return events.TripEvent(
        type=type_,
        trip_id=trip.id,
        station_id=trip.station_id,
        status=TripStatus(trip.status).value,
        driver_id=trip.driver_id,
        zone_id=trip.zone_id,
        cancel_reason=CancelReason(trip.cancel_reason).value
        if trip.cancel_reason
        else None,
    )


class TripStore:
    def __init__(
        self,
        session: AsyncSession,
        *,
        geocoder: Optional[Geocoder] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.geocoder = geocoder
        self.clock = clock
        self.trips = TripRepository(session)
        self.tenants = TenantDirectory(session)
        self.offers = OfferBook(session, clock)

    # ── Creation ──────────────────────────────────────────────────────

    async def _resolve_point(
        self,
        label: str,
        lat: Optional[float],
        lng: Optional[float],
        address: Optional[str],
        *,
        required: bool,
    ) -> Optional[Location]:
        if lat is not None and lng is not None:
            return Location(float(lat), float(lng))
        if lat is not None or lng is not None:
            raise ValidationError(f"{label} needs both latitude and longitude")
        if address:
            if self.geocoder is None:
                raise ValidationError(
                    f"{label} coordinates are required (no geocoder configured)"
                )
            result = await self.geocoder.geocode(address, settings.geocoding_language)
            return Location(result.lat, result.lng)
        if required:
            raise ValidationError(f"{label} coordinates or address are required")
        return None

    async def create(self, ctx: RequestContext, draft: TripDraft) -> TripModel:
        if not draft.station_id or not str(draft.station_id).strip():
            raise ValidationError("station_id is required")
        ensure_same_station(
            ctx, draft.station_id, entity="station", entity_id=draft.station_id
        )
        ensure_dispatcher(ctx)
        await self.tenants.require_station(draft.station_id)

        pickup = await self._resolve_point(
            "Pickup",
            draft.pickup_lat,
            draft.pickup_lng,
            draft.pickup_address,
            required=True,
        )
        destination = await self._resolve_point(
            "Destination",
            draft.destination_lat,
            draft.destination_lng,
            draft.destination_address,
            required=False,
        )

        zone_id = draft.zone_id
        if zone_id:
            await self.tenants.get_zone(ctx, zone_id)
        else:
            zone = await self.tenants.zone_for_point(
                draft.station_id, pickup.latitude, pickup.longitude
            )
            zone_id = zone.id if zone else None

        now = self.clock()
        trip = TripModel(
            station_id=draft.station_id,
            zone_id=zone_id,
            customer_phone=draft.customer_phone,
            pickup_address=draft.pickup_address,
            pickup_lat=pickup.latitude,
            pickup_lng=pickup.longitude,
            destination_address=draft.destination_address,
            destination_lat=destination.latitude if destination else None,
            destination_lng=destination.longitude if destination else None,
            driver_id=None,
            status=TripStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        await self.trips.create(trip)
        self._stage(trip, "trip.created")
        logger.info("Trip %s created at station %s", trip.id, trip.station_id)
        return trip

    # ── Reads ─────────────────────────────────────────────────────────

    async def require(self, trip_id: str) -> TripModel:
        trip = await self.trips.get_by_id(trip_id, fresh=True)
        if trip is None:
            raise NotFound(f"Trip {trip_id} not found")
        return trip

    async def get(self, ctx: RequestContext, trip_id: str) -> TripModel:
        trip = await self.require(trip_id)
        ensure_same_station(ctx, trip.station_id, entity="trip", entity_id=trip_id)
        return trip

    async def list_unassigned(
        self, ctx: RequestContext, station_id: str, zone_id: Optional[str] = None
    ) -> list[TripModel]:
        ensure_same_station(ctx, station_id, entity="station", entity_id=station_id)
        return await self.trips.list_pending(station_id, zone_id)

    async def list_for_station(
        self,
        ctx: RequestContext,
        station_id: str,
        status: Optional[TripStatus] = None,
        limit: int = 100,
    ) -> list[TripModel]:
        ensure_same_station(ctx, station_id, entity="station", entity_id=station_id)
        return await self.trips.list_for_station(station_id, status, limit)

    # ── The single mutation path ──────────────────────────────────────

    async def transition(
        self,
        trip_id: str,
        expected_status: TripStatus,
        new_status: TripStatus,
        fields: Optional[dict[str, Any]] = None,
    ) -> TripModel:
        expected_status = TripStatus(expected_status)
        new_status = TripStatus(new_status)
        ensure_transition(expected_status, new_status)

        fields = dict(fields or {})
        unknown = set(fields) - TRANSITION_FIELDS
        if unknown:
            raise ValidationError(f"Fields not settable by a transition: {sorted(unknown)}")

        claiming = (
            expected_status == TripStatus.PENDING and new_status == TripStatus.ACTIVE
        )
        if claiming and not fields.get("driver_id"):
            raise ValidationError("Activating a trip requires driver_id")

        now = self.clock()
        values = {"status": new_status, "updated_at": now, **fields}
        values.setdefault(_STAMPS[new_status], now)

        updated = await self.trips.compare_and_set(
            trip_id, expected_status, values, require_unassigned=claiming
        )
        trip = await self.require(trip_id)
        if not updated:
            raise Conflict(
                f"Trip {trip_id} is {TripStatus(trip.status).value}"
                f"{' and assigned' if claiming and trip.driver_id else ''}, "
                f"expected {expected_status.value}"
            )

        self._stage(trip, f"trip.{new_status.value}")
        return trip

    # ── Lifecycle commands ────────────────────────────────────────────

    async def complete(self, ctx: RequestContext, trip_id: str) -> TripModel:
        trip = await self.get(ctx, trip_id)
        if ctx.is_driver and trip.driver_id != ctx.driver_id:
            raise PermissionDenied("Trip is not assigned to you")
        ensure_transition(trip.status, TripStatus.COMPLETED)
        trip = await self.transition(trip_id, trip.status, TripStatus.COMPLETED)
        logger.info("Trip %s completed by driver %s", trip_id, trip.driver_id)
        return trip

    async def cancel(
        self,
        ctx: RequestContext,
        trip_id: str,
        reason: Optional[CancelReason] = None,
    ) -> TripModel:
        trip = await self.get(ctx, trip_id)
        if ctx.is_driver and trip.driver_id != ctx.driver_id:
            raise PermissionDenied("Trip is not assigned to you")
        if reason is None:
            reason = (
                CancelReason.DISPATCHER_REQUEST
                if ctx.is_dispatcher
                else CancelReason.DRIVER_REQUEST
            )
        if CancelReason(reason) == CancelReason.NO_DRIVERS_AVAILABLE:
            raise ValidationError("no_drivers_available is reserved for the dispatcher")

        observed = TripStatus(trip.status)
        ensure_transition(observed, TripStatus.CANCELLED)
        trip = await self.transition(
            trip_id, observed, TripStatus.CANCELLED, {"cancel_reason": reason}
        )
        await self.offers.close_open(trip, OfferStatus.WITHDRAWN)
        logger.info("Trip %s cancelled (%s)", trip_id, CancelReason(reason).value)
        return trip

    def _stage(self, trip: TripModel, type_: str) -> None:
        event = trip_event(trip, type_)
        events.stage(self.session, events.trip_topic(trip.id), event)
        events.stage(self.session, events.station_trips_topic(trip.station_id), event)
        if trip.driver_id:
            events.stage(self.session, events.driver_topic(trip.driver_id), event)
