"""APScheduler setup for periodic tasks."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from tram_matcher.core.cache import TTLCache

logger = logging.getLogger(__name__)


def create_scheduler(*caches: TTLCache) -> AsyncIOScheduler:
    """Create the shared scheduler and register a sweep job for each cache.

    Live-store refresh and cleanup jobs are added by the store itself.
    """
    scheduler = AsyncIOScheduler()
    for cache in caches:
        cache.start(scheduler)
        logger.debug("Registered %s sweeping every %.1fs", cache.name, cache.default_ttl)
    return scheduler
