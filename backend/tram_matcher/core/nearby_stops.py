"""Find the next stop ahead on every line the rider is standing next to."""

import logging
from collections.abc import Iterable

from tram_matcher.core.geometry import closest_point_on_polyline, is_point_on_polyline
from tram_matcher.core.line_catalog import LineCatalog
from tram_matcher.schemas.transit import Line, Point, StopPoint

logger = logging.getLogger(__name__)

# Max distance (meters) from a line's geometry to count as "on" that line
MAX_LINE_DISTANCE_M = 50.0


def _next_stop_on_line(line: Line, position: Point, max_line_distance_m: float) -> StopPoint | None:
    if not line.stop_points:
        return None
    projection = closest_point_on_polyline(line.coordinates, position)
    if projection.distance > max_line_distance_m:
        return None

    ahead = line.coordinates[projection.segment_index + 1:]
    for stop in line.stop_points:
        location = stop.location
        if location is not None and is_point_on_polyline(location, ahead):
            return stop
    return line.stop_points[-1]


def find_nearby_stops(
    position: Point,
    lines: Iterable[Line],
    max_line_distance_m: float = MAX_LINE_DISTANCE_M,
) -> list[StopPoint]:
    """Return the upcoming stop on each line within max_line_distance_m.

    One stop per matching line, first occurrence wins when lines share a stop.
    """
    result: list[StopPoint] = []
    seen: set[str] = set()
    for line in lines:
        stop = _next_stop_on_line(line, position, max_line_distance_m)
        if stop is None or stop.gid in seen:
            continue
        seen.add(stop.gid)
        result.append(stop)
    return result


def round_position(position: Point, precision: int = 4) -> Point:
    return (round(position[0], precision), round(position[1], precision))


class NearbyStopResolver:
    """Resolves nearby stops against a catalog, memoised on rounded coordinates."""

    def __init__(
        self,
        catalog: LineCatalog,
        max_line_distance_m: float = MAX_LINE_DISTANCE_M,
        precision: int = 4,
        memo_size: int = 100,
    ) -> None:
        self.catalog = catalog
        self.max_line_distance_m = max_line_distance_m
        self.precision = precision
        self.memo_size = memo_size
        self._memo: dict[str, list[StopPoint]] = {}

    def _key(self, position: Point) -> str:
        return f"{position[0]:.{self.precision}f},{position[1]:.{self.precision}f}"

    def resolve(self, position: Point) -> list[StopPoint]:
        rounded = round_position(position, self.precision)
        key = self._key(rounded)
        cached = self._memo.get(key)
        if cached is not None:
            return list(cached)

        candidates = self.catalog.lines_near(rounded, self.max_line_distance_m)
        stops = find_nearby_stops(rounded, candidates, self.max_line_distance_m)

        if len(self._memo) >= self.memo_size:
            self._memo.clear()
        self._memo[key] = stops
        logger.debug(
            "Resolved %s: %d candidate lines, %d stops", key, len(candidates), len(stops)
        )
        return list(stops)

    def clear(self) -> None:
        self._memo.clear()
