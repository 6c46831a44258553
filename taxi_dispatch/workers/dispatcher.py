"""
Background Dispatch Worker
==========================

Runs every ``dispatch_sweep_interval_seconds`` (default 5 s).

Each sweep re-runs the matching step for every unassigned trip, which is
what moves an expired offer on to the next candidate and what eventually
gives up on a trip nobody can take.

Concurrency safety
------------------
* **Redis distributed lock**: one API process sweeps at a time.  It is
  extended after every trip; a sweep that loses it stops early.
* One unit of work per trip: a failing step is logged and rolled back
  alone, the other trips of the sweep still commit and publish.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import async_sessionmaker

from taxi_dispatch.config import settings
from taxi_dispatch.infrastructure.database import unit_of_work
from taxi_dispatch.infrastructure.events import EventBus
from taxi_dispatch.infrastructure.locks import DistributedLock
from taxi_dispatch.infrastructure.redis_client import get_redis
from taxi_dispatch.services.dispatcher import MatchingEngine

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_dispatch_loop() -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop())
    logger.info(
        "Dispatch worker started (interval=%ds)",
        settings.dispatch_sweep_interval_seconds,
    )


async def stop_dispatch_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Dispatch worker stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop() -> None:
    """Periodic loop: run a sweep then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_dispatch_sweep()
        except Exception:
            logger.exception("Unhandled error in dispatch sweep")
        # Wait for the interval or until stop is signalled
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.dispatch_sweep_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass  # next sweep


async def run_dispatch_sweep(
    session_factory: Optional[async_sessionmaker] = None,
    bus: Optional[EventBus] = None,
    redis: Optional[aioredis.Redis] = None,
) -> Counter:
    """
    Execute one sweep.  Returns the number of trips per outcome, with
    ``failed`` counting steps that raised.
    """
    redis = redis or await get_redis()
    lock = DistributedLock(redis, "dispatch_sweep", ttl_seconds=60)

    if not await lock.acquire():
        logger.debug("Lock held by another worker, skipping sweep")
        return Counter()

    outcomes: Counter = Counter()
    try:
        async with unit_of_work(session_factory, bus) as session:
            trip_ids = await MatchingEngine(session).pending_trip_ids()

        for trip_id in trip_ids:
            try:
                async with unit_of_work(session_factory, bus) as session:
                    result = await MatchingEngine(session).dispatch(trip_id)
                outcomes[result.outcome.value] += 1
            except Exception:
                logger.exception("Dispatch step failed for trip %s", trip_id)
                outcomes["failed"] += 1

            if not await lock.extend():
                logger.warning("Lost the sweep lock after trip %s, stopping", trip_id)
                break
    finally:
        await lock.release()

    if outcomes:
        logger.info("Dispatch sweep: %s", dict(outcomes))
    return outcomes
