"""
Async SQLAlchemy engine, session factory and unit of work.

Uses ``asyncpg`` as the PostgreSQL driver for non-blocking I/O.  Events
produced inside a unit of work are published only after it commits, so
observers never hear about a transition that was rolled back.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from taxi_dispatch.config import settings
from taxi_dispatch.infrastructure.events import (
    EventBus,
    discard_staged,
    get_event_bus,
    publish_staged,
)


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {}
    # Pool sized for many concurrent request handlers
    return {"pool_size": 20, "max_overflow": 10}


engine = create_async_engine(
    settings.database_url,
    echo=False,
    **_engine_kwargs(settings.database_url),
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""


@asynccontextmanager
async def unit_of_work(
    session_factory: Optional[async_sessionmaker] = None,
    bus: Optional[EventBus] = None,
) -> AsyncIterator[AsyncSession]:
    """Yield a session; commit on success then publish staged events."""
    factory = session_factory or async_session_factory
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            discard_staged(session)
            raise
        await publish_staged(session, bus or get_event_bus())
