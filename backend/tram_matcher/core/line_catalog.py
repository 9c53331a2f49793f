"""Read-only catalog of line geometries with a spatial prefilter."""

import logging
import math
from collections.abc import Iterable
from pathlib import Path

import orjson
from pydantic import TypeAdapter
from shapely import STRtree
from shapely.geometry import LineString, Point, box

from tram_matcher.core.geometry import EARTH_RADIUS_M
from tram_matcher.schemas.transit import Line
from tram_matcher.schemas.transit import Point as LatLon

logger = logging.getLogger(__name__)

# Smallest number of meters in one degree of latitude (spherical earth)
_M_PER_DEG = EARTH_RADIUS_M * math.pi / 180
# Widen the query box so the equirectangular approximation can't drop a line
_SEARCH_MARGIN = 1.5

_lines_adapter = TypeAdapter(list[Line])


class LineCatalog:
    """Immutable set of lines shared by all resolver calls."""

    def __init__(self, lines: Iterable[Line]) -> None:
        self._lines: tuple[Line, ...] = tuple(lines)
        # Shapely uses (x, y) = (lon, lat)
        geoms = []
        self._indexed: list[int] = []
        for i, line in enumerate(self._lines):
            coords = [(lon, lat) for lat, lon in line.coordinates]
            if not coords:
                continue
            geoms.append(LineString(coords) if len(coords) > 1 else Point(coords[0]))
            self._indexed.append(i)
        self._tree = STRtree(geoms) if geoms else None
        logger.debug("Indexed %d/%d lines", len(self._indexed), len(self._lines))

    @classmethod
    def from_json(cls, raw: bytes | str, transport_mode: str | None = None) -> "LineCatalog":
        lines = _lines_adapter.validate_python(orjson.loads(raw))
        if transport_mode:
            lines = [line for line in lines if line.transport_mode == transport_mode]
        return cls(lines)

    @classmethod
    def load(cls, path: str | Path, transport_mode: str | None = None) -> "LineCatalog":
        catalog = cls.from_json(Path(path).read_bytes(), transport_mode)
        logger.info("Loaded %d lines from %s", len(catalog), path)
        return catalog

    @property
    def lines(self) -> tuple[Line, ...]:
        return self._lines

    def __len__(self) -> int:
        return len(self._lines)

    def __iter__(self):
        return iter(self._lines)

    def lines_near(self, position: LatLon, radius_m: float) -> list[Line]:
        """Lines whose bounding box could hold a point within radius_m of position.

        Conservative: the result is a superset of the lines that are actually
        that close. Catalog order is preserved.
        """
        if self._tree is None:
            return []
        lat, lon = position
        dlat = radius_m / _M_PER_DEG * _SEARCH_MARGIN
        cos_lat = math.cos(math.radians(min(90.0, abs(lat) + dlat)))
        dlon = 180.0 if cos_lat < 1e-6 else min(180.0, dlat / cos_lat)
        query = box(lon - dlon, lat - dlat, lon + dlon, lat + dlat)
        hits = sorted(self._indexed[int(i)] for i in self._tree.query(query))
        return [self._lines[i] for i in hits]
