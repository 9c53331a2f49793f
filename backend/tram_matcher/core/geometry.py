"""Geodesic helpers for projecting positions onto route polylines.

Points are (lat, lon) tuples in degrees. Segment projection happens in a local
equirectangular frame centred on each segment's midpoint; every distance that
leaves this module is re-measured with the haversine formula.
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass

from tram_matcher.schemas.transit import Point

EARTH_RADIUS_M = 6_371_000.0

# Meters per degree of latitude for the local projection
LAT_M_PER_DEG = 111_320.0

# Default "stop lies on the route" tolerance
ON_LINE_TOLERANCE_DEG = 0.0001
ON_LINE_TOLERANCE_M = ON_LINE_TOLERANCE_DEG * LAT_M_PER_DEG

# Segments shorter than this are treated as their endpoints
MIN_SEGMENT_M = 1.0


@dataclass(frozen=True)
class ClosestPoint:
    point: Point
    distance: float  # meters from the target
    segment_index: int


def distance(a: Point, b: Point) -> float:
    """Great-circle distance in meters between two points."""
    lat1, lat2 = math.radians(a[0]), math.radians(b[0])
    dlat = lat2 - lat1
    dlon = math.radians(b[1] - a[1])
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(min(1.0, h)))


def closest_point_on_segment(seg_start: Point, seg_end: Point, target: Point) -> Point:
    """Planar projection of target onto the segment, clamped to its endpoints."""
    x1, y1 = seg_start
    x2, y2 = seg_end
    px, py = target
    dx, dy = x2 - x1, y2 - y1
    if dx == 0 and dy == 0:
        return seg_start
    t = max(0.0, min(1.0, ((px - x1) * dx + (py - y1) * dy) / (dx * dx + dy * dy)))
    return (x1 + t * dx, y1 + t * dy)


def _lon_m_per_deg(origin: Point) -> float:
    return LAT_M_PER_DEG * math.cos(math.radians(origin[0]))


def _to_local(point: Point, origin: Point) -> Point:
    return (
        (point[0] - origin[0]) * LAT_M_PER_DEG,
        (point[1] - origin[1]) * _lon_m_per_deg(origin),
    )


def _to_geo(local: Point, origin: Point) -> Point:
    lon_m = _lon_m_per_deg(origin)
    if lon_m == 0:  # segment centred on a pole
        return (origin[0] + local[0] / LAT_M_PER_DEG, origin[1])
    return (origin[0] + local[0] / LAT_M_PER_DEG, origin[1] + local[1] / lon_m)


def _closest_point_local(a: Point, b: Point, target: Point) -> Point:
    if a == b:
        return a
    origin = ((a[0] + b[0]) / 2, (a[1] + b[1]) / 2)
    local = closest_point_on_segment(
        _to_local(a, origin), _to_local(b, origin), _to_local(target, origin)
    )
    return _to_geo(local, origin)


def closest_point_on_polyline(polyline: Sequence[Point], target: Point) -> ClosestPoint:
    """Nearest point on the polyline to target, measured geographically.

    Ties keep the earliest segment. An empty polyline is infinitely far away.
    """
    if not polyline:
        return ClosestPoint(point=target, distance=math.inf, segment_index=0)
    if len(polyline) == 1:
        return ClosestPoint(
            point=polyline[0], distance=distance(polyline[0], target), segment_index=0
        )

    best: ClosestPoint | None = None
    for i in range(len(polyline) - 1):
        candidate = _closest_point_local(polyline[i], polyline[i + 1], target)
        d = distance(candidate, target)
        if best is None or d < best.distance:
            best = ClosestPoint(point=candidate, distance=d, segment_index=i)
    return best


def polyline_length(polyline: Sequence[Point]) -> float:
    """Length of the polyline in meters."""
    return sum(distance(polyline[i], polyline[i + 1]) for i in range(len(polyline) - 1))


def _in_bounding_box(p: Point, a: Point, b: Point, tolerance_deg: float) -> bool:
    return (
        min(a[0], b[0]) - tolerance_deg <= p[0] <= max(a[0], b[0]) + tolerance_deg
        and min(a[1], b[1]) - tolerance_deg <= p[1] <= max(a[1], b[1]) + tolerance_deg
    )


def _distance_to_segment(p: Point, a: Point, b: Point) -> float:
    if distance(a, b) < MIN_SEGMENT_M:
        return min(distance(p, a), distance(p, b))
    return distance(p, _closest_point_local(a, b, p))


def is_point_on_polyline(
    point: Point,
    polyline: Sequence[Point],
    tolerance_deg: float = ON_LINE_TOLERANCE_DEG,
    tolerance_m: float = ON_LINE_TOLERANCE_M,
) -> bool:
    """True if point lies within tolerance of any segment of the polyline."""
    if len(polyline) < 2:
        return False
    for i in range(len(polyline) - 1):
        a, b = polyline[i], polyline[i + 1]
        if not _in_bounding_box(point, a, b, tolerance_deg):
            continue
        if _distance_to_segment(point, a, b) <= tolerance_m:
            return True
    return False
