"""Claim arbitration: preconditions, tenant isolation and offer bookkeeping."""

from __future__ import annotations

import pytest

from taxi_dispatch.domain.entities import RequestContext
from taxi_dispatch.domain.enums import OfferStatus, RejectReason, TripStatus
from taxi_dispatch.domain.errors import (
    AlreadyTaken,
    DriverUnavailable,
    NotFound,
    PermissionDenied,
    Rejected,
    StationMismatch,
)
from taxi_dispatch.infrastructure.repositories import DriverRepository, OfferRepository
from taxi_dispatch.services import claims
from taxi_dispatch.services.claims import ClaimArbiter
from taxi_dispatch.services.dispatcher import MatchingEngine
from taxi_dispatch.services.drivers import DriverRegistry
from taxi_dispatch.services.trips import TripStore
from tests.conftest import make_driver, make_station, make_trip


class TestClaimPreconditions:
    @pytest.mark.asyncio
    async def test_claim_assigns_driver(self, uow):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id, lat=32.08, lng=34.78)
        trip_id = await make_trip(uow, station_id)

        async with uow() as session:
            trip = await ClaimArbiter(session).claim(
                RequestContext.for_driver(station_id, driver_id), trip_id, driver_id
            )
        assert TripStatus(trip.status) == TripStatus.ACTIVE
        assert trip.driver_id == driver_id
        assert trip.accepted_at is not None

    @pytest.mark.asyncio
    async def test_dispatcher_may_claim_for_a_driver(self, uow):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id, lat=32.08, lng=34.78)
        trip_id = await make_trip(uow, station_id)

        async with uow() as session:
            trip = await ClaimArbiter(session).claim(
                RequestContext.dispatcher(station_id), trip_id, driver_id
            )
        assert trip.driver_id == driver_id

    @pytest.mark.asyncio
    async def test_driver_cannot_claim_for_someone_else(self, uow):
        station_id = await make_station(uow)
        a = await make_driver(uow, station_id, "A", lat=32.08, lng=34.78)
        b = await make_driver(uow, station_id, "B", lat=32.08, lng=34.78)
        trip_id = await make_trip(uow, station_id)

        async with uow() as session:
            with pytest.raises(PermissionDenied):
                await ClaimArbiter(session).claim(
                    RequestContext.for_driver(station_id, a), trip_id, b
                )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "driver_kwargs",
        [
            {"online": False},
            {"approved": False, "lat": 32.08, "lng": 34.78},
            {"lat": None, "lng": None},  # online but never reported a position
        ],
    )
    async def test_undispatchable_driver(self, uow, driver_kwargs):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id, **driver_kwargs)
        trip_id = await make_trip(uow, station_id)

        async with uow() as session:
            with pytest.raises(DriverUnavailable):
                await ClaimArbiter(session).claim(
                    RequestContext.dispatcher(station_id), trip_id, driver_id
                )
            assert TripStatus((await TripStore(session).require(trip_id)).status) == TripStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancelled_trip_is_taken(self, uow):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id, lat=32.08, lng=34.78)
        trip_id = await make_trip(uow, station_id)

        async with uow() as session:
            await TripStore(session).cancel(RequestContext.dispatcher(station_id), trip_id)
        async with uow() as session:
            with pytest.raises(AlreadyTaken):
                await ClaimArbiter(session).claim(
                    RequestContext.for_driver(station_id, driver_id), trip_id, driver_id
                )

    @pytest.mark.asyncio
    async def test_unknown_ids(self, uow):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id, lat=32.08, lng=34.78)
        trip_id = await make_trip(uow, station_id)
        ctx = RequestContext.dispatcher(station_id)

        async with uow() as session:
            arbiter = ClaimArbiter(session)
            with pytest.raises(NotFound):
                await arbiter.claim(ctx, "missing", driver_id)
            with pytest.raises(NotFound):
                await arbiter.claim(ctx, trip_id, "missing")


class TestTenantIsolation:
    @pytest.mark.asyncio
    async def test_driver_of_other_station_cannot_claim(self, uow, caplog):
        a = await make_station(uow, "A")
        b = await make_station(uow, "B")
        trip_a = await make_trip(uow, a)
        driver_b = await make_driver(uow, b, lat=32.08, lng=34.78)

        async with uow() as session:
            with pytest.raises(StationMismatch):
                await ClaimArbiter(session).claim(
                    RequestContext.for_driver(b, driver_b), trip_a, driver_b
                )
            assert (await TripStore(session).require(trip_a)).driver_id is None

        assert any(
            r.levelname == "WARNING" and "Station mismatch" in r.getMessage()
            for r in caplog.records
        )

    @pytest.mark.asyncio
    async def test_dispatcher_cannot_assign_foreign_driver(self, uow):
        a = await make_station(uow, "A")
        b = await make_station(uow, "B")
        trip_a = await make_trip(uow, a)
        driver_b = await make_driver(uow, b, lat=32.08, lng=34.78)

        async with uow() as session:
            with pytest.raises(StationMismatch):
                await ClaimArbiter(session).claim(
                    RequestContext.dispatcher(a), trip_a, driver_b
                )

    @pytest.mark.asyncio
    async def test_lists_never_cross_stations(self, uow):
        a = await make_station(uow, "A")
        b = await make_station(uow, "B")
        await make_trip(uow, a)
        trip_b = await make_trip(uow, b)
        await make_driver(uow, b, lat=32.08, lng=34.78)

        async with uow() as session:
            ctx_b = RequestContext.dispatcher(b)
            assert [t.id for t in await TripStore(session).list_unassigned(ctx_b, b)] == [trip_b]
            with pytest.raises(StationMismatch):
                await TripStore(session).list_unassigned(ctx_b, a)
            with pytest.raises(StationMismatch):
                await DriverRegistry(session).list_dispatchable(ctx_b, a)


class TestOfferBookkeeping:
    @pytest.mark.asyncio
    async def test_claim_closes_own_offer_as_claimed(self, uow, settings):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id, lat=32.08, lng=34.78)
        trip_id = await make_trip(uow, station_id)

        async with uow() as session:
            result = await MatchingEngine(session, settings=settings).dispatch(trip_id)
        assert result.driver_id == driver_id

        await _claim_as(uow, station_id, trip_id, driver_id)

        async with uow() as session:
            offers = await OfferRepository(session).list_for_trip(trip_id)
        assert [OfferStatus(o.status) for o in offers] == [OfferStatus.CLAIMED]
        assert offers[0].closed_at is not None

    @pytest.mark.asyncio
    async def test_late_claim_by_other_driver_withdraws_offer(self, uow, settings):
        station_id = await make_station(uow)
        near = await make_driver(uow, station_id, "Near", lat=32.0853, lng=34.7818)
        far = await make_driver(uow, station_id, "Far", lat=32.10, lng=34.80)
        trip_id = await make_trip(uow, station_id, 32.0853, 34.7818)

        async with uow() as session:
            result = await MatchingEngine(session, settings=settings).dispatch(trip_id)
        assert result.driver_id == near

        # Far driver saw the trip in the unassigned list and takes it
        await _claim_as(uow, station_id, trip_id, far)

        async with uow() as session:
            offers = await OfferRepository(session).list_for_trip(trip_id)
        assert [OfferStatus(o.status) for o in offers] == [OfferStatus.WITHDRAWN]

    @pytest.mark.asyncio
    async def test_decline_excludes_driver(self, uow):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id, lat=32.08, lng=34.78)
        trip_id = await make_trip(uow, station_id)

        async with uow() as session:
            await ClaimArbiter(session).decline(
                RequestContext.for_driver(station_id, driver_id), trip_id, driver_id
            )
        async with uow() as session:
            excluded = await OfferRepository(session).excluded_driver_ids(trip_id)
            trip = await TripStore(session).require(trip_id)
        assert excluded == {driver_id}
        assert TripStatus(trip.status) == TripStatus.PENDING


class TestDriverGoingOffline:
    @pytest.mark.asyncio
    async def test_write_rejects_driver_gone_offline_since_the_check(self, uow, monkeypatch):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id, lat=32.08, lng=34.78)
        trip_id = await make_trip(uow, station_id)
        own = RequestContext.for_driver(station_id, driver_id)
        async with uow() as session:
            await DriverRegistry(session).set_online(own, driver_id, False)

        # The checks saw the driver online; only the conditional write is left
        monkeypatch.setattr(claims, "is_dispatchable", lambda driver, station_id: True)
        with pytest.raises(DriverUnavailable):
            await _claim_as(uow, station_id, trip_id, driver_id)

        async with uow() as session:
            trip = await TripStore(session).require(trip_id)
        assert TripStatus(trip.status) == TripStatus.PENDING
        assert trip.driver_id is None

    @pytest.mark.asyncio
    async def test_claim_and_going_offline_lock_the_driver_row(self, uow, monkeypatch):
        station_id = await make_station(uow)
        a = await make_driver(uow, station_id, "A", lat=32.08, lng=34.78)
        b = await make_driver(uow, station_id, "B", lat=32.08, lng=34.78)
        trip_id = await make_trip(uow, station_id)

        locked = []
        original = DriverRepository.lock

        async def spy(self, driver_id):
            locked.append(driver_id)
            return await original(self, driver_id)

        monkeypatch.setattr(DriverRepository, "lock", spy)

        await _claim_as(uow, station_id, trip_id, a)
        async with uow() as session:
            await DriverRegistry(session).set_online(
                RequestContext.for_driver(station_id, b), b, False
            )
        assert locked == [a, b]

    @pytest.mark.asyncio
    async def test_cannot_go_offline_once_claimed(self, uow):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id, lat=32.08, lng=34.78)
        trip_id = await make_trip(uow, station_id)
        await _claim_as(uow, station_id, trip_id, driver_id)

        own = RequestContext.for_driver(station_id, driver_id)
        with pytest.raises(Rejected) as err:
            async with uow() as session:
                await DriverRegistry(session).set_online(own, driver_id, False)
        assert err.value.reason == RejectReason.HAS_ACTIVE_TRIP

        async with uow() as session:
            assert (await DriverRegistry(session).get(own, driver_id)).is_online


async def _claim_as(uow, station_id, trip_id, driver_id):
    async with uow() as session:
        return await ClaimArbiter(session).claim(
            RequestContext.for_driver(station_id, driver_id), trip_id, driver_id
        )
