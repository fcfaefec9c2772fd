"""
Point-in-polygon evaluation over WGS84 degree coordinates.

Polygons are sequences of (lon, lat) pairs. The ring may be given closed
(first == last) or open; the closing vertex is ignored either way.

Containment uses the crossing-number (ray casting) algorithm on raw degrees,
with no projection correction. Points lying on an edge or a vertex are
reported as inside. The boundary test runs first so that every input on the
boundary gets the same answer regardless of ray direction quirks.

Proximity queries (distance_to_polygon_m, within_distance) measure
great-circle meters from the point to the closest point on the ring.

All functions are pure and safe to call from any number of threads.
"""

from __future__ import annotations

import math
from typing import Sequence, Tuple

Point = Tuple[float, float]

# Cross-product tolerance for the on-edge test, in squared degrees.
_EDGE_EPSILON = 1e-12
# Polygons with a smaller absolute area (squared degrees) are degenerate.
_AREA_EPSILON = 1e-15


def open_ring(polygon: Sequence[Point]) -> list[Point]:
    """Return the ring vertices without the repeated closing vertex."""
    ring = [(float(x), float(y)) for x, y in polygon]
    if len(ring) > 1 and ring[0] == ring[-1]:
        ring.pop()
    return ring


def distinct_points(polygon: Sequence[Point]) -> int:
    """Number of distinct vertices in the ring."""
    return len({(float(x), float(y)) for x, y in polygon})


def ring_area(polygon: Sequence[Point]) -> float:
    """Signed shoelace area in squared degrees (positive when counter-clockwise)."""
    ring = open_ring(polygon)
    n = len(ring)
    if n < 3:
        return 0.0
    total = 0.0
    for i in range(n):
        x1, y1 = ring[i]
        x2, y2 = ring[(i + 1) % n]
        total += x1 * y2 - x2 * y1
    return total / 2.0


def bounding_box(polygon: Sequence[Point]) -> tuple[float, float, float, float]:
    """Return (min_lon, min_lat, max_lon, max_lat)."""
    if not polygon:
        raise ValueError("Cannot compute the bounding box of an empty polygon")
    xs = [float(p[0]) for p in polygon]
    ys = [float(p[1]) for p in polygon]
    return min(xs), min(ys), max(xs), max(ys)


def is_degenerate(polygon: Sequence[Point]) -> bool:
    """True for rings with fewer than 3 distinct points or zero area."""
    if distinct_points(polygon) < 3:
        return True
    return abs(ring_area(polygon)) <= _AREA_EPSILON


def _on_segment(px: float, py: float, x1: float, y1: float, x2: float, y2: float) -> bool:
    cross = (x2 - x1) * (py - y1) - (y2 - y1) * (px - x1)
    if abs(cross) > _EDGE_EPSILON:
        return False
    return min(x1, x2) <= px <= max(x1, x2) and min(y1, y2) <= py <= max(y1, y2)


def on_boundary(polygon: Sequence[Point], lon: float, lat: float) -> bool:
    """True if the point lies on any edge or vertex of the ring."""
    ring = open_ring(polygon)
    n = len(ring)
    for i in range(n):
        x1, y1 = ring[i]
        x2, y2 = ring[(i + 1) % n]
        if _on_segment(lon, lat, x1, y1, x2, y2):
            return True
    return False


def contains(polygon: Sequence[Point], lon: float, lat: float) -> bool:
    """
    Determine whether (lon, lat) lies inside or on the boundary of a polygon.

    Degenerate polygons (fewer than 3 distinct points, or zero area)
    never contain anything.
    """
    if is_degenerate(polygon):
        return False

    ring = open_ring(polygon)
    if on_boundary(ring, lon, lat):
        return True

    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        xi, yi = ring[i]
        xj, yj = ring[j]
        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lon < x_cross:
                inside = not inside
        j = i
    return inside


def contains_point(polygon: Sequence[Point], point: Point) -> bool:
    """Same as contains(), taking a (lon, lat) tuple."""
    lon, lat = point
    return contains(polygon, lon, lat)


# Proximity helpers. Distances are great-circle meters on a spherical Earth.

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lon1: float, lat1: float, lon2: float, lat2: float) -> float:
    """Great-circle distance between two (lon, lat) points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlam = math.radians(lon2 - lon1)
    a = (math.sin(dphi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2)
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def search_box(lon: float, lat: float, meters: float) -> tuple[float, float, float, float]:
    """Degree box (min_lon, min_lat, max_lon, max_lat) covering a radius around a point."""
    dlat = math.degrees(meters / EARTH_RADIUS_M)
    cos_lat = max(math.cos(math.radians(lat)), 1e-6)
    dlon = min(180.0, dlat / cos_lat)
    return (
        max(-180.0, lon - dlon),
        max(-90.0, lat - dlat),
        min(180.0, lon + dlon),
        min(90.0, lat + dlat),
    )


def _closest_on_segment(
    px: float, py: float, x1: float, y1: float, x2: float, y2: float, scale: float,
) -> Point:
    # Local equirectangular projection: x is shrunk by cos(lat) of the query point
    ax, ay = (x1 - px) * scale, y1 - py
    bx, by = (x2 - px) * scale, y2 - py
    dx, dy = bx - ax, by - ay
    length_sq = dx * dx + dy * dy
    if length_sq == 0.0:
        return x1, y1
    t = max(0.0, min(1.0, -(ax * dx + ay * dy) / length_sq))
    return x1 + t * (x2 - x1), y1 + t * (y2 - y1)


def distance_to_polygon_m(polygon: Sequence[Point], lon: float, lat: float) -> float:
    """
    Distance in meters from a point to the nearest part of a polygon.

    Zero when the point is inside or on the boundary. Degenerate polygons
    are measured to their nearest vertex or edge like any other ring.
    """
    if contains(polygon, lon, lat):
        return 0.0
    ring = open_ring(polygon)
    if not ring:
        return math.inf
    scale = math.cos(math.radians(lat))
    n = len(ring)
    best = math.inf
    for i in range(n):
        x1, y1 = ring[i]
        x2, y2 = ring[(i + 1) % n]
        cx, cy = _closest_on_segment(lon, lat, x1, y1, x2, y2, scale)
        best = min(best, haversine_m(lon, lat, cx, cy))
    return best


def within_distance(polygon: Sequence[Point], lon: float, lat: float, meters: float) -> bool:
    """True if the point is inside the polygon or no more than `meters` from it."""
    return distance_to_polygon_m(polygon, lon, lat) <= meters
