"""
Shared test fixtures.

Uses a temp-file SQLite database (via aiosqlite) so tests run without
Docker / PostgreSQL / Redis.  The connection recipe hands transaction
control to SQLAlchemy and opens every transaction with ``BEGIN
IMMEDIATE``: savepoints work and concurrent writers are serialised the
way row locks serialise them on PostgreSQL.

Events go to a ``RecordingEventBus``, an ``InMemoryEventBus`` that also
keeps every published event in ``published`` for assertions.
"""

import os

os.environ.setdefault("DISPATCH_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DISPATCH_EVENT_BACKEND", "memory")
os.environ.setdefault("DISPATCH_RUN_DISPATCH_WORKER", "false")

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from pydantic import BaseModel
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from taxi_dispatch.config import Settings
from taxi_dispatch.domain.entities import RequestContext, TripDraft
from taxi_dispatch.infrastructure import models  # noqa: F401  (registers tables)
from taxi_dispatch.infrastructure.database import Base, unit_of_work
from taxi_dispatch.infrastructure.events import InMemoryEventBus, set_event_bus
from taxi_dispatch.services.drivers import DriverRegistry
from taxi_dispatch.services.tenants import TenantDirectory
from taxi_dispatch.services.trips import TripStore

T0 = datetime(2026, 3, 1, 8, 0, 0, tzinfo=timezone.utc)

# A square around central Tel Aviv, [[lat, lng], ...]
NORTH_ZONE = [[32.09, 34.77], [32.09, 34.80], [32.11, 34.80], [32.11, 34.77]]
SOUTH_ZONE = [[32.06, 34.76], [32.06, 34.79], [32.08, 34.79], [32.08, 34.76]]


class RecordingEventBus(InMemoryEventBus):
    def __init__(self):
        super().__init__()
        self.published: list[tuple[str, BaseModel]] = []

    async def publish(self, topic: str, event: BaseModel) -> None:
        self.published.append((topic, event))
        await super().publish(topic, event)


class Clock:
    """Settable clock handed to services instead of the wall clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Create tables in a fresh database file, yield, then dispose."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def bus():
    bus = RecordingEventBus()
    set_event_bus(bus)
    yield bus
    set_event_bus(None)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        response_timeout_seconds=30,
        search_budget_seconds=300,
        candidate_limit=5,
        position_min_interval_seconds=3.0,
        position_min_distance_m=10.0,
        position_heartbeat_seconds=60.0,
    )


@pytest.fixture
def uow(session_factory, bus):
    """``async with uow() as session`` -- commit, then publish to ``bus``."""

    def _uow():
        return unit_of_work(session_factory, bus)

    return _uow


# ── Seeding helpers (through the public services) ─────────────────────


async def make_station(uow, name: str = "Central") -> str:
    async with uow() as session:
        station = await TenantDirectory(session).create_station(name)
        return station.id


async def make_zone(uow, station_id: str, name: str, polygon) -> str:
    async with uow() as session:
        zone = await TenantDirectory(session).create_zone(
            RequestContext.dispatcher(station_id), station_id, name, polygon
        )
        return zone.id


async def make_driver(
    uow,
    station_id: str,
    name: str = "Driver",
    *,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    online: bool = True,
    approved: bool = True,
    at: datetime = T0,
) -> str:
    """Register a driver, optionally bring them online at a position."""
    async with uow() as session:
        registry = DriverRegistry(session, clock=lambda: at)
        driver = await registry.register(
            RequestContext.dispatcher(station_id), station_id, name, approved=approved
        )
        if online:
            own = RequestContext.for_driver(station_id, driver.id)
            await registry.set_online(own, driver.id, True)
            if lat is not None:
                await registry.report_position(own, driver.id, lat, lng)
        return driver.id


async def make_trip(
    uow,
    station_id: str,
    lat: float = 32.0853,
    lng: float = 34.7818,
    *,
    zone_id: Optional[str] = None,
    at: datetime = T0,
) -> str:
    async with uow() as session:
        trip = await TripStore(session, clock=lambda: at).create(
            RequestContext.dispatcher(station_id),
            TripDraft(station_id=station_id, pickup_lat=lat, pickup_lng=lng, zone_id=zone_id),
        )
        return trip.id
