"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from tram_matcher.api import journeys, matching, stop_points
from tram_matcher.config import settings
from tram_matcher.core.cache import TTLCache
from tram_matcher.core.line_catalog import LineCatalog
from tram_matcher.core.live_store import LiveStore
from tram_matcher.core.nearby_stops import NearbyStopResolver
from tram_matcher.core.scheduler import create_scheduler
from tram_matcher.core.tram_matcher import TramMatcher
from tram_matcher.core.vasttrafik_client import VasttrafikClient

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def load_catalog() -> LineCatalog:
    try:
        return LineCatalog.load(settings.lines_path, settings.transport_mode)
    except (OSError, ValueError):
        logger.exception("Failed to load line catalog from %s - no lines will match", settings.lines_path)
        return LineCatalog([])


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    client = VasttrafikClient()
    response_cache = TTLCache(
        default_ttl=settings.cache_ttl_seconds,
        max_size=settings.cache_max_size,
        name="response-cache",
    )
    scheduler = create_scheduler(response_cache)
    store = LiveStore(
        client,
        scheduler=scheduler,
        refresh_interval=settings.live_refresh_seconds,
        cleanup_interval=settings.live_cleanup_seconds,
        max_age=settings.live_max_age_seconds,
        max_arrival_entities=settings.max_arrival_entities,
        max_journey_entities=settings.max_journey_entities,
    )
    resolver = NearbyStopResolver(
        load_catalog(),
        max_line_distance_m=settings.max_line_distance_m,
        precision=settings.coordinate_precision,
        memo_size=settings.nearby_memo_size,
    )

    app.state.client = client
    app.state.response_cache = response_cache
    app.state.matcher = TramMatcher(resolver, store, transport_mode=settings.transport_mode)

    scheduler.start()
    await store.start()
    logger.info("Tram matcher started - %d lines loaded", len(resolver.catalog))

    yield

    # Shutdown
    await store.close()
    response_cache.close()
    scheduler.shutdown(wait=False)
    await client.close()
    logger.info("Tram matcher shut down")


app = FastAPI(
    title="Tram Rider Matcher",
    version="0.1.0",
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(stop_points.router)
app.include_router(journeys.router)
app.include_router(matching.router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
