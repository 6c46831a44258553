"""
Nearest-Driver Ranking
======================

1. **Filter**  -- keep drivers that are dispatchable for the station,
   optionally inside the requested zone, and not excluded (declined,
   timed out, or already holding a live trip).
2. **Measure** -- haversine distance from the pickup point, in meters.
3. **Rank**    -- ascending by distance.  Distances equal within
   ``TIE_TOLERANCE_M`` are ordered by the freshest ``last_position_at``;
   remaining ties fall back to driver id so the order is deterministic.

Complexity
----------
Let D = drivers in the station's working set.

* Filter + measure: O(D)
* Sort:             O(D log D)

The working set is bounded (hundreds to low thousands of drivers per
station), so an application-side scan is cheaper than maintaining a
spatial index that must be rewritten on every position report.
"""

from __future__ import annotations

import functools
from datetime import datetime
from typing import AbstractSet, Iterable, Optional

from .distance import haversine_m
from .entities import Candidate, is_dispatchable

TIE_TOLERANCE_M = 1e-6


def _compare(a: Candidate, b: Candidate) -> int:
    if abs(a.distance_m - b.distance_m) > TIE_TOLERANCE_M:
        return -1 if a.distance_m < b.distance_m else 1

    # Freshest position first; unknown timestamps sort last
    ta: Optional[datetime] = a.driver.last_position_at
    tb: Optional[datetime] = b.driver.last_position_at
    if ta != tb:
        if ta is None:
            return 1
        if tb is None:
            return -1
        return -1 if ta > tb else 1

    if a.driver.id == b.driver.id:
        return 0
    return -1 if a.driver.id < b.driver.id else 1


def rank_candidates(
    drivers: Iterable,
    station_id: str,
    lat: float,
    lng: float,
    *,
    zone_id: Optional[str] = None,
    exclude: AbstractSet[str] = frozenset(),
    limit: int = 5,
) -> list[Candidate]:
    """Return up to *limit* candidates ordered nearest first."""
    if limit <= 0:
        return []

    candidates = [
        Candidate(
            driver=d,
            distance_m=haversine_m(lat, lng, d.latitude, d.longitude),
        )
        for d in drivers
        if is_dispatchable(d, station_id)
        and d.id not in exclude
        and (zone_id is None or d.current_zone_id == zone_id)
    ]
    candidates.sort(key=functools.cmp_to_key(_compare))
    return candidates[:limit]
