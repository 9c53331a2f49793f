"""Rider matching endpoints: nearby stops and ranked live trams."""

import datetime
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from tram_matcher.api.dependencies import get_matcher
from tram_matcher.core.tram_matcher import TramMatcher
from tram_matcher.core.vasttrafik_client import UpstreamError
from tram_matcher.schemas.match import MatchResult, NearbyStops

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["matching"])


@router.get("/nearby-stops", response_model=NearbyStops)
async def nearby_stops(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    matcher: TramMatcher = Depends(get_matcher),
):
    """Next stop ahead on every line passing close to the position."""
    return NearbyStops(lat=lat, lon=lon, stops=matcher.nearby_stops((lat, lon)))


@router.get("/match", response_model=MatchResult)
async def match(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    timestamp: datetime.datetime | None = None,
    matcher: TramMatcher = Depends(get_matcher),
):
    """Live trams near the position, ranked by how well they explain it."""
    position = (lat, lon)
    if timestamp is not None and timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=datetime.timezone.utc)
    try:
        candidates = await matcher.match(position, now=timestamp)
    except UpstreamError as e:
        logger.error("Live data unavailable for match at %s: %s", position, e)
        raise HTTPException(status_code=503, detail="Data temporarily unavailable")

    if candidates and all(c.fault for c in candidates):
        raise HTTPException(status_code=502, detail="Upstream data is inconsistent")

    return MatchResult(
        lat=lat, lon=lon, stops=matcher.nearby_stops(position), candidates=candidates
    )
