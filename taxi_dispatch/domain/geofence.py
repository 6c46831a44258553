"""
Point-in-polygon tests for station zones.

Zones are stored as a list of ``[lat, lng]`` vertices and turned into
shapely polygons (x = lng, y = lat) for validation and containment.
Coordinates are treated as planar, which is accurate enough for
city-scale polygons; zones only narrow the candidate search and are
never authoritative for assignment.
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from shapely.geometry import Point, Polygon

Vertex = Sequence[float]


def to_shape(polygon: Sequence[Vertex]) -> Polygon:
    return Polygon([(vertex[1], vertex[0]) for vertex in polygon])


def validate_polygon(polygon: Sequence[Vertex]) -> list[list[float]]:
    """Return a normalised copy of *polygon* or raise ``ValueError``."""
    if len(polygon) < 3:
        raise ValueError("A zone polygon needs at least three vertices")

    normalised: list[list[float]] = []
    for vertex in polygon:
        if len(vertex) != 2:
            raise ValueError("Each vertex must be a [lat, lng] pair")
        lat, lng = float(vertex[0]), float(vertex[1])
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise ValueError(f"Vertex out of range: {lat}, {lng}")
        normalised.append([lat, lng])

    # A closing vertex equal to the first one is redundant
    if len(normalised) > 3 and normalised[0] == normalised[-1]:
        normalised.pop()

    shape = to_shape(normalised)
    if shape.area == 0 or not shape.is_valid:
        raise ValueError("Zone polygon must be a simple, non-degenerate ring")
    return normalised


def contains(polygon: Sequence[Vertex], lat: float, lng: float) -> bool:
    """Strict containment; points on the boundary are outside."""
    return to_shape(polygon).contains(Point(lng, lat))


def first_containing(zones: Iterable, lat: float, lng: float) -> Optional[object]:
    """Return the first zone (anything with a ``polygon``) containing the point."""
    for zone in zones:
        if zone.polygon and contains(zone.polygon, lat, lng):
            return zone
    return None
