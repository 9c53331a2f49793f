"""Journey detail REST API endpoint."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from tram_matcher.api.dependencies import get_client, get_response_cache
from tram_matcher.core.cache import TTLCache
from tram_matcher.core.vasttrafik_client import UpstreamError, VasttrafikClient
from tram_matcher.schemas.transit import JourneyDetail

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/journeys", tags=["journeys"])

ALLOWED_INCLUDES = {"triplegcoordinates"}


@router.get("/{details_reference}/details", response_model=JourneyDetail)
async def get_journey_details(
    details_reference: str,
    includes: str = Query(""),
    client: VasttrafikClient = Depends(get_client),
    cache: TTLCache = Depends(get_response_cache),
):
    """Get timing and geometry for one live journey."""
    wanted = sorted({i for i in includes.split(",") if i in ALLOWED_INCLUDES})
    try:
        return await cache.get(
            f"journeyDetails-{details_reference}-{','.join(wanted)}",
            lambda: client.get_journey_detail(details_reference, includes=wanted),
        )
    except UpstreamError as e:
        logger.error("Error fetching journey details for %s: %s", details_reference, e)
        raise HTTPException(status_code=503, detail="Data temporarily unavailable")
