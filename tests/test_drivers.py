"""Driver registry: provisioning, availability and location reports."""

from __future__ import annotations

import pytest

from taxi_dispatch.domain.entities import RequestContext
from taxi_dispatch.domain.enums import RejectReason
from taxi_dispatch.domain.errors import (
    NotFound,
    PermissionDenied,
    Rejected,
    StationMismatch,
    ValidationError,
)
from taxi_dispatch.services.claims import ClaimArbiter
from taxi_dispatch.services.drivers import DriverRegistry
from taxi_dispatch.services.tenants import TenantDirectory
from taxi_dispatch.services.trips import TripStore
from tests.conftest import (
    NORTH_ZONE,
    SOUTH_ZONE,
    T0,
    Clock,
    make_driver,
    make_station,
    make_trip,
    make_zone,
)


class TestProvisioning:
    @pytest.mark.asyncio
    async def test_register_starts_offline(self, uow):
        station_id = await make_station(uow)
        async with uow() as session:
            driver = await DriverRegistry(session).register(
                RequestContext.dispatcher(station_id),
                station_id,
                "  Dana Levi ",
                phone="050-1234567",
                vehicle_number="12-345-67",
            )
        assert driver.full_name == "Dana Levi"
        assert driver.is_online is False
        assert driver.is_approved is True
        assert driver.latitude is None

    @pytest.mark.asyncio
    async def test_register_requires_name(self, uow):
        station_id = await make_station(uow)
        async with uow() as session:
            with pytest.raises(ValidationError):
                await DriverRegistry(session).register(
                    RequestContext.dispatcher(station_id), station_id, "   "
                )

    @pytest.mark.asyncio
    async def test_drivers_cannot_register_drivers(self, uow):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id)
        async with uow() as session:
            with pytest.raises(PermissionDenied):
                await DriverRegistry(session).register(
                    RequestContext.for_driver(station_id, driver_id), station_id, "X"
                )

    @pytest.mark.asyncio
    async def test_other_station_driver_is_invisible(self, uow):
        a = await make_station(uow, "A")
        b = await make_station(uow, "B")
        driver_b = await make_driver(uow, b)

        async with uow() as session:
            registry = DriverRegistry(session)
            with pytest.raises(StationMismatch):
                await registry.get(RequestContext.dispatcher(a), driver_b)
            with pytest.raises(NotFound):
                await registry.get(RequestContext.dispatcher(a), "missing")
            assert await registry.list_for_station(RequestContext.dispatcher(a), a) == []

    @pytest.mark.asyncio
    async def test_suspended_driver_is_not_dispatchable(self, uow):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id, lat=32.08, lng=34.78)
        ctx = RequestContext.dispatcher(station_id)

        async with uow() as session:
            registry = DriverRegistry(session)
            assert [d.id for d in await registry.list_dispatchable(ctx, station_id)] == [driver_id]
            driver = await registry.set_approved(ctx, driver_id, False)
            assert driver.is_approved is False
            assert await registry.list_dispatchable(ctx, station_id) == []

    @pytest.mark.asyncio
    async def test_profile_edit(self, uow):
        station_id = await make_station(uow)
        ctx = RequestContext.dispatcher(station_id)
        async with uow() as session:
            driver = await DriverRegistry(session).register(
                ctx, station_id, "Dana", phone="050-1", vehicle_number="11-111-11"
            )

        async with uow() as session:
            driver = await DriverRegistry(session).update_profile(
                ctx, driver.id, {"full_name": " Dana Levi ", "phone": None}
            )
        assert driver.full_name == "Dana Levi"
        assert driver.phone is None
        assert driver.vehicle_number == "11-111-11"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "changes",
        [{"full_name": "  "}, {"full_name": None}, {"is_online": True}],
    )
    async def test_profile_edit_rejects_bad_changes(self, uow, changes):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id, online=False)
        async with uow() as session:
            with pytest.raises(ValidationError):
                await DriverRegistry(session).update_profile(
                    RequestContext.dispatcher(station_id), driver_id, changes
                )

    @pytest.mark.asyncio
    async def test_profile_edit_is_station_scoped(self, uow):
        a = await make_station(uow, "A")
        b = await make_station(uow, "B")
        driver_b = await make_driver(uow, b, online=False)

        async with uow() as session:
            registry = DriverRegistry(session)
            with pytest.raises(StationMismatch):
                await registry.update_profile(
                    RequestContext.dispatcher(a), driver_b, {"full_name": "X"}
                )
            with pytest.raises(PermissionDenied):
                await registry.update_profile(
                    RequestContext.for_driver(b, driver_b), driver_b, {"full_name": "X"}
                )


class TestAvailability:
    @pytest.mark.asyncio
    async def test_only_the_driver_toggles_online(self, uow):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id, online=False)

        async with uow() as session:
            with pytest.raises(PermissionDenied):
                await DriverRegistry(session).set_online(
                    RequestContext.dispatcher(station_id), driver_id, True
                )

    @pytest.mark.asyncio
    async def test_online_event_published(self, uow, bus):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id, online=False)

        async with uow() as session:
            driver = await DriverRegistry(session).set_online(
                RequestContext.for_driver(station_id, driver_id), driver_id, True
            )
        assert driver.is_online is True
        assert (f"station:{station_id}:drivers", "driver.online") in [
            (topic, e.type) for topic, e in bus.published
        ]

    @pytest.mark.asyncio
    async def test_cannot_go_offline_with_active_trip(self, uow):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id, lat=32.08, lng=34.78)
        trip_id = await make_trip(uow, station_id)
        own = RequestContext.for_driver(station_id, driver_id)

        async with uow() as session:
            await ClaimArbiter(session).claim(own, trip_id, driver_id)

        async with uow() as session:
            with pytest.raises(Rejected) as exc_info:
                await DriverRegistry(session).set_online(own, driver_id, False)
        assert exc_info.value.reason == RejectReason.HAS_ACTIVE_TRIP

        async with uow() as session:
            assert (await DriverRegistry(session).get(own, driver_id)).is_online is True

    @pytest.mark.asyncio
    async def test_can_go_offline_after_completing(self, uow):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id, lat=32.08, lng=34.78)
        trip_id = await make_trip(uow, station_id)
        own = RequestContext.for_driver(station_id, driver_id)

        async with uow() as session:
            await ClaimArbiter(session).claim(own, trip_id, driver_id)
        async with uow() as session:
            await TripStore(session).complete(own, trip_id)
        async with uow() as session:
            driver = await DriverRegistry(session).set_online(own, driver_id, False)
        assert driver.is_online is False


class TestPositionReports:
    @pytest.mark.asyncio
    async def test_offline_driver_rejected(self, uow):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id, online=False)

        async with uow() as session:
            with pytest.raises(Rejected) as exc_info:
                await DriverRegistry(session).report_position(
                    RequestContext.for_driver(station_id, driver_id), driver_id, 32.0, 34.0
                )
        assert exc_info.value.reason == RejectReason.DRIVER_OFFLINE

    @pytest.mark.asyncio
    async def test_only_own_position(self, uow):
        station_id = await make_station(uow)
        a = await make_driver(uow, station_id, "A", lat=32.0, lng=34.0)
        b = await make_driver(uow, station_id, "B", lat=32.0, lng=34.0)

        async with uow() as session:
            with pytest.raises(PermissionDenied):
                await DriverRegistry(session).report_position(
                    RequestContext.for_driver(station_id, a), b, 32.1, 34.1
                )

    @pytest.mark.asyncio
    async def test_throttle_and_heartbeat(self, uow, settings, bus):
        station_id = await make_station(uow)
        driver_id = await make_driver(uow, station_id, lat=32.0800, lng=34.7800)
        own = RequestContext.for_driver(station_id, driver_id)
        clock = Clock(T0)

        async def report(lat, lng):
            async with uow() as session:
                registry = DriverRegistry(session, settings=settings, clock=clock)
                return await registry.report_position(own, driver_id, lat, lng)

        clock.advance(1)
        assert await report(32.0900, 34.7800) is False  # too soon
        clock.advance(5)
        assert await report(32.08001, 34.7800) is False  # ~1 m
        assert await report(32.0810, 34.7800) is True  # ~110 m
        clock.advance(61)
        assert await report(32.0810, 34.7800) is True  # heartbeat

        positions = [e for _, e in bus.published if e.type == "driver.position"]
        # First fix (from make_driver) plus the two recorded reports
        assert len(positions) == 3
        assert positions[-1].latitude == 32.0810

    @pytest.mark.asyncio
    async def test_zone_reevaluated_on_move(self, uow, settings):
        station_id = await make_station(uow)
        north = await make_zone(uow, station_id, "North", NORTH_ZONE)
        south = await make_zone(uow, station_id, "South", SOUTH_ZONE)
        driver_id = await make_driver(uow, station_id, lat=32.10, lng=34.78)
        own = RequestContext.for_driver(station_id, driver_id)
        clock = Clock(T0)

        async with uow() as session:
            assert (await DriverRegistry(session).get(own, driver_id)).current_zone_id == north

        clock.advance(10)
        async with uow() as session:
            registry = DriverRegistry(session, settings=settings, clock=clock)
            assert await registry.report_position(own, driver_id, 32.07, 34.77)
            assert (await registry.get(own, driver_id)).current_zone_id == south

        clock.advance(10)
        async with uow() as session:
            registry = DriverRegistry(session, settings=settings, clock=clock)
            assert await registry.report_position(own, driver_id, 32.00, 34.70)
            assert (await registry.get(own, driver_id)).current_zone_id is None


class TestZoneMaintenance:
    @pytest.mark.asyncio
    async def test_update_zone(self, uow):
        station_id = await make_station(uow)
        zone_id = await make_zone(uow, station_id, "North", NORTH_ZONE)
        ctx = RequestContext.dispatcher(station_id)

        async with uow() as session:
            zone = await TenantDirectory(session).update_zone(
                ctx, zone_id, name="Moved", polygon=SOUTH_ZONE + [SOUTH_ZONE[0]]
            )
        assert zone.name == "Moved"
        assert zone.polygon == SOUTH_ZONE

        async with uow() as session:
            directory = TenantDirectory(session)
            assert (await directory.zone_for_point(station_id, 32.07, 34.77)).id == zone_id
            assert await directory.zone_for_point(station_id, 32.10, 34.78) is None

    @pytest.mark.asyncio
    async def test_update_zone_guards(self, uow):
        a = await make_station(uow, "A")
        b = await make_station(uow, "B")
        zone_b = await make_zone(uow, b, "North", NORTH_ZONE)
        driver_b = await make_driver(uow, b, online=False)

        async with uow() as session:
            directory = TenantDirectory(session)
            with pytest.raises(StationMismatch):
                await directory.update_zone(RequestContext.dispatcher(a), zone_b, name="X")
            with pytest.raises(PermissionDenied):
                await directory.update_zone(
                    RequestContext.for_driver(b, driver_b), zone_b, name="X"
                )
            with pytest.raises(ValidationError):
                await directory.update_zone(
                    RequestContext.dispatcher(b), zone_b, polygon=[[32.0, 34.0], [32.1, 34.1]]
                )
            with pytest.raises(NotFound):
                await directory.delete_zone(RequestContext.dispatcher(b), "missing")

    @pytest.mark.asyncio
    async def test_delete_zone_clears_references(self, uow):
        station_id = await make_station(uow)
        north = await make_zone(uow, station_id, "North", NORTH_ZONE)
        driver_id = await make_driver(uow, station_id, lat=32.10, lng=34.78)
        trip_id = await make_trip(uow, station_id, 32.10, 34.78)
        ctx = RequestContext.dispatcher(station_id)

        async with uow() as session:
            assert (await TripStore(session).require(trip_id)).zone_id == north
            await TenantDirectory(session).delete_zone(ctx, north)

        async with uow() as session:
            assert await TenantDirectory(session).list_zones(ctx, station_id) == []
            assert (await DriverRegistry(session).get(ctx, driver_id)).current_zone_id is None
            assert (await TripStore(session).require(trip_id)).zone_id is None
