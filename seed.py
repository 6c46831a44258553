"""
Seed script -- populates the database with a demo station for local development.

Run after migrations:
    python seed.py

Creates, through the public services only:
  - 1 station ("Demo Station") with 2 zones
  - 6 drivers, 5 of them online with a position
  - 4 trips, each given its first dispatch step
"""

import asyncio

from taxi_dispatch.domain.entities import RequestContext, TripDraft
from taxi_dispatch.infrastructure.database import engine, unit_of_work
from taxi_dispatch.infrastructure.events import InMemoryEventBus
from taxi_dispatch.infrastructure.repositories import StationRepository
from taxi_dispatch.services.dispatcher import MatchingEngine
from taxi_dispatch.services.drivers import DriverRegistry
from taxi_dispatch.services.tenants import TenantDirectory
from taxi_dispatch.services.trips import TripStore

STATION_NAME = "Demo Station"

# [[lat, lng], ...]
ZONES = [
    {
        "name": "North",
        "color": "#4C9AFF",
        "polygon": [[32.090, 34.770], [32.090, 34.800], [32.110, 34.800], [32.110, 34.770]],
    },
    {
        "name": "South",
        "color": "#F7C948",
        "polygon": [[32.060, 34.760], [32.060, 34.790], [32.080, 34.790], [32.080, 34.760]],
    },
]

DRIVERS = [
    {"full_name": "Yossi Cohen", "phone": "050-1111111", "vehicle_number": "12-345-67", "pos": (32.0950, 34.7800)},
    {"full_name": "Dana Levi", "phone": "050-2222222", "vehicle_number": "23-456-78", "pos": (32.1000, 34.7850)},
    {"full_name": "Omer Mizrahi", "phone": "050-3333333", "vehicle_number": "34-567-89", "pos": (32.0700, 34.7700)},
    {"full_name": "Noa Friedman", "phone": "050-4444444", "vehicle_number": "45-678-90", "pos": (32.0650, 34.7750)},
    {"full_name": "Amit Peretz", "phone": "050-5555555", "vehicle_number": "56-789-01", "pos": (32.0850, 34.7820)},
    # Registered but stays offline
    {"full_name": "Tal Avraham", "phone": "050-6666666", "vehicle_number": "67-890-12", "pos": None},
]

TRIPS = [
    {"pickup": (32.0980, 34.7810), "address": "Dizengoff Center", "phone": "052-7000001"},
    {"pickup": (32.0720, 34.7720), "address": "Carmel Market", "phone": "052-7000002"},
    {"pickup": (32.0840, 34.7810), "address": "Rabin Square", "phone": "052-7000003"},
    {"pickup": (32.1050, 34.7900), "address": "Yarkon Park", "phone": "052-7000004"},
]


async def seed():
    bus = InMemoryEventBus()

    async with unit_of_work(bus=bus) as session:
        # Check if already seeded
        stations = await StationRepository(session).list_all()
        if any(s.name == STATION_NAME for s in stations):
            print("Database already seeded. Skipping.")
            return

        tenants = TenantDirectory(session)
        station = await tenants.create_station(STATION_NAME)
        dispatcher = RequestContext.dispatcher(station.id)

        # ── Zones ─────────────────────────────────────────────────────
        for z in ZONES:
            await tenants.create_zone(
                dispatcher, station.id, z["name"], z["polygon"], z["color"]
            )
        print(f"  Created station {station.id} with {len(ZONES)} zones")

        # ── Drivers ───────────────────────────────────────────────────
        registry = DriverRegistry(session)
        online = 0
        for d in DRIVERS:
            driver = await registry.register(
                dispatcher,
                station.id,
                d["full_name"],
                phone=d["phone"],
                vehicle_number=d["vehicle_number"],
            )
            if d["pos"] is None:
                continue
            own = RequestContext.for_driver(station.id, driver.id)
            await registry.set_online(own, driver.id, True)
            await registry.report_position(own, driver.id, *d["pos"])
            online += 1
        print(f"  Created {len(DRIVERS)} drivers ({online} online)")

    # ── Trips (one unit of work each, like the API) ───────────────────
    for t in TRIPS:
        async with unit_of_work(bus=bus) as session:
            trip = await TripStore(session).create(
                dispatcher,
                TripDraft(
                    station_id=station.id,
                    pickup_lat=t["pickup"][0],
                    pickup_lng=t["pickup"][1],
                    pickup_address=t["address"],
                    customer_phone=t["phone"],
                ),
            )
            result = await MatchingEngine(session).dispatch(trip.id)
        print(f"  Trip {trip.id} ({t['address']}): {result.outcome.value}")

    print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
