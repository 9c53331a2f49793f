"""Stop-point REST API endpoints proxying live arrivals and departures."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from tram_matcher.api.dependencies import get_client, get_response_cache
from tram_matcher.config import settings
from tram_matcher.core.cache import TTLCache
from tram_matcher.core.vasttrafik_client import UpstreamError, VasttrafikClient
from tram_matcher.schemas.transit import Arrival, Departure

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stop-points", tags=["stop-points"])


@router.get("/{gid}/arrivals", response_model=list[Arrival])
async def get_arrivals(
    gid: str,
    max_per_line: int | None = Query(None, alias="maxArrivalsPerLineAndDirection", ge=1),
    client: VasttrafikClient = Depends(get_client),
    cache: TTLCache = Depends(get_response_cache),
):
    """Get upcoming arrivals at a stop point."""
    try:
        return await cache.get(
            f"arrivals-{gid}-{max_per_line}",
            lambda: client.list_arrivals_for_stop(gid, max_per_line),
            ttl=settings.live_refresh_seconds,
        )
    except UpstreamError as e:
        logger.error("Error fetching arrivals for %s: %s", gid, e)
        raise HTTPException(status_code=503, detail="Data temporarily unavailable")


@router.get("/{gid}/departures", response_model=list[Departure])
async def get_departures(
    gid: str,
    max_per_line: int | None = Query(None, alias="maxDeparturesPerLineAndDirection", ge=1),
    client: VasttrafikClient = Depends(get_client),
    cache: TTLCache = Depends(get_response_cache),
):
    """Get upcoming departures from a stop point."""
    try:
        return await cache.get(
            f"departures-{gid}-{max_per_line}",
            lambda: client.list_departures_for_stop(gid, max_per_line),
            ttl=settings.live_refresh_seconds,
        )
    except UpstreamError as e:
        logger.error("Error fetching departures for %s: %s", gid, e)
        raise HTTPException(status_code=503, detail="Data temporarily unavailable")
