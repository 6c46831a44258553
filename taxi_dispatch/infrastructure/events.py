"""
Event Fan-out
=============

Publish / subscribe over topics scoped by station, driver and trip:

* ``station:{station_id}:trips``   -- every trip transition of a station
* ``station:{station_id}:drivers`` -- driver online / position changes
* ``driver:{driver_id}``           -- offers and assignment notices
* ``trip:{trip_id}``               -- one trip's lifecycle, in commit order

Delivery is best effort.  The Trip Store and Driver Registry remain the
source of truth; a consumer that misses an event re-reads current state.

Events are *staged* on the SQLAlchemy session while a unit of work runs
and published once it commits (see ``database.unit_of_work``).
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

import redis.asyncio as aioredis
from pydantic import BaseModel, Field, TypeAdapter

logger = logging.getLogger(__name__)

_STAGED_KEY = "staged_events"


# ── Topics ────────────────────────────────────────────────────────────


def station_trips_topic(station_id: str) -> str:
    return f"station:{station_id}:trips"


def station_drivers_topic(station_id: str) -> str:
    return f"station:{station_id}:drivers"


def driver_topic(driver_id: str) -> str:
    return f"driver:{driver_id}"


def trip_topic(trip_id: str) -> str:
    return f"trip:{trip_id}"


# ── Event schemas ─────────────────────────────────────────────────────


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TripEvent(BaseModel):
    """Trip created or transitioned."""

    kind: Literal["trip"] = "trip"
    type: str  # trip.created, trip.active, trip.completed, trip.cancelled
    trip_id: str
    station_id: str
    status: str
    driver_id: Optional[str] = None
    zone_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    occurred_at: datetime = Field(default_factory=_now)


class DriverEvent(BaseModel):
    """Driver availability or position change."""

    kind: Literal["driver"] = "driver"
    type: str  # driver.online, driver.offline, driver.position
    driver_id: str
    station_id: str
    is_online: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    heading: Optional[float] = None
    current_zone_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=_now)


class OfferEvent(BaseModel):
    """A pending trip proposed to (or withdrawn from) one driver."""

    kind: Literal["offer"] = "offer"
    type: str  # offer.created, offer.closed
    offer_id: str
    trip_id: str
    station_id: str
    driver_id: str
    status: str
    pickup_lat: float
    pickup_lng: float
    pickup_address: Optional[str] = None
    distance_m: Optional[float] = None
    expires_at: Optional[datetime] = None
    occurred_at: datetime = Field(default_factory=_now)


Event = Annotated[
    Union[TripEvent, DriverEvent, OfferEvent], Field(discriminator="kind")
]
_event_adapter: TypeAdapter = TypeAdapter(Event)


def encode_event(event: BaseModel) -> str:
    return event.model_dump_json()


def decode_event(raw: Union[str, bytes]) -> Any:
    return _event_adapter.validate_json(raw)


# ── Bus interface ─────────────────────────────────────────────────────


class Subscription(ABC):
    """Long-lived server-push stream of events for one topic."""

    def __init__(self, topic: str):
        self.topic = topic

    @abstractmethod
    async def get(self, timeout: Optional[float] = None) -> Any:
        """Next event; raises ``asyncio.TimeoutError`` after *timeout*."""

    @abstractmethod
    async def close(self) -> None: ...

    def __aiter__(self):
        return self

    async def __anext__(self):
        return await self.get()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()


class EventBus(ABC):
    @abstractmethod
    async def publish(self, topic: str, event: BaseModel) -> None: ...

    @abstractmethod
    async def subscribe(self, topic: str) -> Subscription: ...

    async def close(self) -> None:
        return None


# ── In-memory implementation ──────────────────────────────────────────


class _MemorySubscription(Subscription):
    def __init__(self, bus: "InMemoryEventBus", topic: str):
        super().__init__(topic)
        self._bus = bus
        self.queue: asyncio.Queue = asyncio.Queue()

    async def get(self, timeout: Optional[float] = None) -> Any:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    async def close(self) -> None:
        self._bus._detach(self)


class InMemoryEventBus(EventBus):
    """Single-process fan-out over asyncio queues."""

    def __init__(self):
        self._subscribers: dict[str, set[_MemorySubscription]] = {}

    async def publish(self, topic: str, event: BaseModel) -> None:
        for sub in list(self._subscribers.get(topic, ())):
            sub.queue.put_nowait(event)

    async def subscribe(self, topic: str) -> Subscription:
        sub = _MemorySubscription(self, topic)
        self._subscribers.setdefault(topic, set()).add(sub)
        return sub

    def _detach(self, sub: _MemorySubscription) -> None:
        subs = self._subscribers.get(sub.topic)
        if subs:
            subs.discard(sub)
            if not subs:
                del self._subscribers[sub.topic]


# ── Redis implementation ──────────────────────────────────────────────


class _RedisSubscription(Subscription):
    def __init__(self, pubsub, topic: str):
        super().__init__(topic)
        self._pubsub = pubsub

    async def get(self, timeout: Optional[float] = None) -> Any:
        async def _next():
            while True:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
                if message and message.get("type") == "message":
                    return decode_event(message["data"])

        if timeout is None:
            return await _next()
        return await asyncio.wait_for(_next(), timeout=timeout)

    async def close(self) -> None:
        await self._pubsub.unsubscribe(self.topic)
        await self._pubsub.aclose()


class RedisEventBus(EventBus):
    """Cross-process fan-out over Redis pub/sub channels."""

    def __init__(self, client: aioredis.Redis, prefix: str = "dispatch"):
        self.redis = client
        self.prefix = prefix

    def _channel(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def publish(self, topic: str, event: BaseModel) -> None:
        await self.redis.publish(self._channel(topic), encode_event(event))

    async def subscribe(self, topic: str) -> Subscription:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self._channel(topic))
        return _RedisSubscription(pubsub, self._channel(topic))


# ── Process-wide bus ──────────────────────────────────────────────────

_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Return the configured bus, creating it on first use."""
    global _bus
    if _bus is None:
        from taxi_dispatch.config import settings

        if settings.event_backend == "memory":
            _bus = InMemoryEventBus()
        else:
            from taxi_dispatch.infrastructure.redis_client import redis_client

            _bus = RedisEventBus(redis_client())
    return _bus


def set_event_bus(bus: Optional[EventBus]) -> None:
    global _bus
    _bus = bus


# ── Staging (publish after commit) ────────────────────────────────────


def stage(session, topic: str, event: BaseModel) -> None:
    """Queue *event* on *session*; it is published after commit."""
    session.info.setdefault(_STAGED_KEY, []).append((topic, event))


def discard_staged(session) -> None:
    session.info.pop(_STAGED_KEY, None)


async def publish_staged(session, bus: EventBus) -> int:
    """Publish staged events in staging order.  Returns the count sent."""
    staged = session.info.pop(_STAGED_KEY, [])
    sent = 0
    for topic, event in staged:
        try:
            await bus.publish(topic, event)
            sent += 1
        except Exception:
            # State is already committed; consumers recover by re-reading
            logger.exception("Failed to publish %s on %s", event.type, topic)
    return sent
