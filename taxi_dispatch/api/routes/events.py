"""
Event stream
============

GET /api/v1/events/{topic} -- server-sent events for one topic

A principal may follow its own station's topics, the topic of any trip
of its station, and driver topics: dispatchers for any driver of the
station, drivers only their own.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from taxi_dispatch.api.dependencies import get_context
from taxi_dispatch.domain.entities import RequestContext
from taxi_dispatch.domain.errors import NotFound, ValidationError
from taxi_dispatch.infrastructure import events
from taxi_dispatch.infrastructure.database import unit_of_work
from taxi_dispatch.infrastructure.repositories import (
    DriverRepository,
    TripRepository,
)
from taxi_dispatch.services.tenants import ensure_own_driver, ensure_same_station

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["events"])

KEEPALIVE_SECONDS = 15.0


async def authorize_topic(
    ctx: RequestContext, topic: str, session: AsyncSession
) -> None:
    """Raise unless *ctx* may subscribe to *topic*."""
    parts = topic.split(":")
    if len(parts) == 3 and parts[0] == "station" and parts[2] in ("trips", "drivers"):
        ensure_same_station(ctx, parts[1], entity="station", entity_id=parts[1])
        return
    if len(parts) == 2 and parts[0] == "trip":
        trip = await TripRepository(session).get_by_id(parts[1])
        if trip is None:
            raise NotFound(f"Trip {parts[1]} not found")
        ensure_same_station(ctx, trip.station_id, entity="trip", entity_id=trip.id)
        return
    if len(parts) == 2 and parts[0] == "driver":
        driver = await DriverRepository(session).get_by_id(parts[1])
        if driver is None:
            raise NotFound(f"Driver {parts[1]} not found")
        ensure_same_station(ctx, driver.station_id, entity="driver", entity_id=driver.id)
        if ctx.is_driver:
            ensure_own_driver(ctx, driver.id)
        return
    raise ValidationError(f"Unknown topic: {topic}")


async def event_stream(
    subscription: events.Subscription,
    is_disconnected: Callable[[], Awaitable[bool]],
    keepalive: float = KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """Render events of *subscription* as SSE frames until the client leaves."""
    try:
        while not await is_disconnected():
            try:
                event = await subscription.get(timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield f"event: {event.type}\ndata: {events.encode_event(event)}\n\n"
    finally:
        await subscription.close()


@router.get("/{topic}", summary="Subscribe to a topic (server-sent events)")
async def stream_topic(
    request: Request,
    topic: str,
    ctx: RequestContext = Depends(get_context),
):
    # Short unit of work: the stream itself holds no transaction
    async with unit_of_work() as session:
        await authorize_topic(ctx, topic, session)
    subscription = await events.get_event_bus().subscribe(topic)
    logger.debug("Subscriber attached to %s", topic)
    return StreamingResponse(
        event_stream(subscription, request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
