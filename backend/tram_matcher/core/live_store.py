"""Long-lived, periodically refreshed live resources keyed by upstream entity.

One `StopPointArrivals` per stop gid and one `JourneyDetails` per details
reference. Every consumer asking for the same key shares the same object; each
object owns an interval job on the store's scheduler that is removed when the
object is evicted, discarded or the store is closed.
"""

import datetime
import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from tram_matcher.core.vasttrafik_client import UpstreamError, VasttrafikClient
from tram_matcher.schemas.transit import Arrival, JourneyDetail, StopPoint

logger = logging.getLogger(__name__)

T = TypeVar("T")

REFRESH_INTERVAL_SECONDS = 3.0
CLEANUP_INTERVAL_SECONDS = 30.0
MAX_AGE_SECONDS = 120.0
MAX_ARRIVAL_ENTITIES = 50
MAX_JOURNEY_ENTITIES = 100


@dataclass(frozen=True)
class LiveSnapshot(Generic[T]):
    value: T | None = None
    error: Exception | None = None
    fetched_at: float | None = None
    generation: int = 0


class LiveResource(Generic[T]):
    """A value re-fetched on a timer; readers always see one complete snapshot."""

    kind = "resource"

    def __init__(self, key: str, clock: Callable[[], float] = time.monotonic) -> None:
        self.key = key
        self._clock = clock
        self._snapshot: LiveSnapshot[T] = LiveSnapshot()
        self._issued = 0
        self._in_flight = 0

    @property
    def job_id(self) -> str:
        return f"{self.kind}:{self.key}"

    @property
    def snapshot(self) -> LiveSnapshot[T]:
        return self._snapshot

    @property
    def value(self) -> T | None:
        return self._snapshot.value

    @property
    def error(self) -> Exception | None:
        return self._snapshot.error

    @property
    def loading(self) -> bool:
        return self._in_flight > 0

    async def _fetch(self) -> T:
        raise NotImplementedError

    async def refresh(self) -> LiveSnapshot[T]:
        """Fetch once and publish the result unless a newer refresh already has."""
        self._issued += 1
        generation = self._issued
        self._in_flight += 1
        try:
            value = await self._fetch()
        except Exception as e:
            if isinstance(e, UpstreamError):
                logger.warning("Refreshing %s failed: %s", self.job_id, e)
            else:
                logger.exception("Unexpected error refreshing %s", self.job_id)
            if generation > self._snapshot.generation:
                # Keep serving the last good value alongside the error
                self._snapshot = LiveSnapshot(
                    value=self._snapshot.value,
                    error=e,
                    fetched_at=self._snapshot.fetched_at,
                    generation=generation,
                )
        else:
            if generation > self._snapshot.generation:
                self._snapshot = LiveSnapshot(
                    value=value, fetched_at=self._clock(), generation=generation
                )
            else:
                logger.debug("Dropped stale response for %s (gen %d)", self.job_id, generation)
        finally:
            self._in_flight -= 1
        return self._snapshot

    async def get(self) -> T:
        """Current value, fetching first if nothing has been fetched yet."""
        snapshot = self._snapshot
        if snapshot.fetched_at is None:
            snapshot = await self.refresh()
        if snapshot.fetched_at is None:
            raise snapshot.error
        return snapshot.value


class StopPointArrivals(LiveResource[list[Arrival]]):
    kind = "arrivals"

    def __init__(
        self,
        gid: str,
        client: VasttrafikClient,
        max_arrivals_per_line_and_direction: int | None = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(gid, clock)
        self.client = client
        self.max_arrivals_per_line_and_direction = max_arrivals_per_line_and_direction

    async def _fetch(self) -> list[Arrival]:
        return await self.client.list_arrivals_for_stop(
            self.key,
            max_arrivals_per_line_and_direction=self.max_arrivals_per_line_and_direction,
        )


class JourneyDetails(LiveResource[JourneyDetail]):
    kind = "journey"

    def __init__(
        self,
        reference: str,
        client: VasttrafikClient,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(reference, clock)
        self.client = client

    async def _fetch(self) -> JourneyDetail:
        return await self.client.get_journey_detail(self.key, includes=("triplegcoordinates",))


@dataclass
class _Tracked:
    resource: LiveResource
    created: float
    last_accessed: float


class _Pool:
    """LRU-bounded map of live resources of one kind."""

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size
        self.items: OrderedDict[str, _Tracked] = OrderedDict()

    def touch(self, key: str, now: float) -> LiveResource | None:
        tracked = self.items.get(key)
        if tracked is None:
            return None
        tracked.last_accessed = now
        self.items.move_to_end(key)
        return tracked.resource


class LiveStore:
    """Owns every live resource and the scheduler jobs that keep them fresh."""

    def __init__(
        self,
        client: VasttrafikClient,
        scheduler: AsyncIOScheduler | None = None,
        refresh_interval: float = REFRESH_INTERVAL_SECONDS,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
        max_age: float = MAX_AGE_SECONDS,
        max_arrival_entities: int = MAX_ARRIVAL_ENTITIES,
        max_journey_entities: int = MAX_JOURNEY_ENTITIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or AsyncIOScheduler()
        self.refresh_interval = refresh_interval
        self.cleanup_interval = cleanup_interval
        self.max_age = max_age
        self._clock = clock
        self._arrivals = _Pool(max_arrival_entities)
        self._journeys = _Pool(max_journey_entities)

    CLEANUP_JOB_ID = "live-store:cleanup"

    async def start(self) -> None:
        self.scheduler.add_job(
            self.cleanup,
            "interval",
            seconds=self.cleanup_interval,
            id=self.CLEANUP_JOB_ID,
            name="Discard live resources nobody asked for recently",
            max_instances=1,
            replace_existing=True,
        )
        if self._owns_scheduler and not self.scheduler.running:
            self.scheduler.start()
        logger.info(
            "Live store started - refreshing every %.1fs, cleanup every %.1fs",
            self.refresh_interval, self.cleanup_interval,
        )

    async def close(self) -> None:
        for pool in (self._arrivals, self._journeys):
            for key in list(pool.items):
                self._drop(pool, key)
        self._remove_job(self.CLEANUP_JOB_ID)
        if self._owns_scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Live store closed")

    async def __aenter__(self) -> "LiveStore":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _remove_job(self, job_id: str) -> None:
        if self.scheduler.get_job(job_id):
            self.scheduler.remove_job(job_id)

    def _schedule(self, resource: LiveResource) -> None:
        self.scheduler.add_job(
            resource.refresh,
            "interval",
            seconds=self.refresh_interval,
            id=resource.job_id,
            name=f"Refresh {resource.job_id}",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            next_run_time=datetime.datetime.now(datetime.timezone.utc),
        )

    def _drop(self, pool: _Pool, key: str) -> None:
        tracked = pool.items.pop(key, None)
        if tracked is not None:
            self._remove_job(tracked.resource.job_id)

    def _acquire(self, pool: _Pool, key: str, factory: Callable[[], LiveResource]) -> LiveResource:
        now = self._clock()
        existing = pool.touch(key, now)
        if existing is not None:
            return existing

        while len(pool.items) >= pool.max_size:
            oldest = next(iter(pool.items))
            logger.debug("Evicting live resource %s", pool.items[oldest].resource.job_id)
            self._drop(pool, oldest)

        resource = factory()
        pool.items[key] = _Tracked(resource=resource, created=now, last_accessed=now)
        self._schedule(resource)
        return resource

    def stop_point_arrivals(self, gid: str) -> StopPointArrivals:
        return self._acquire(
            self._arrivals, gid, lambda: StopPointArrivals(gid, self.client, clock=self._clock)
        )

    def journey_details(self, reference: str) -> JourneyDetails:
        return self._acquire(
            self._journeys,
            reference,
            lambda: JourneyDetails(reference, self.client, clock=self._clock),
        )

    def preload_stops(self, stops: Iterable[StopPoint]) -> None:
        """Start refreshing arrivals for stops while there is room, without evicting."""
        for stop in stops:
            if stop.gid in self._arrivals.items:
                continue
            if len(self._arrivals.items) >= self._arrivals.max_size:
                break
            self.stop_point_arrivals(stop.gid)

    def discard_stop_point(self, gid: str) -> None:
        self._drop(self._arrivals, gid)

    def discard_journey(self, reference: str) -> None:
        self._drop(self._journeys, reference)

    def cleanup(self) -> int:
        """Discard resources nobody has asked for within max_age."""
        now = self._clock()
        removed = 0
        for pool in (self._arrivals, self._journeys):
            stale = [k for k, t in pool.items.items() if now - t.last_accessed > self.max_age]
            for key in stale:
                self._drop(pool, key)
            removed += len(stale)
        if removed:
            logger.debug("Discarded %d idle live resources", removed)
        return removed

    def stats(self) -> dict[str, Any]:
        return {
            "arrival_entities": len(self._arrivals.items),
            "journey_entities": len(self._journeys.items),
            "max_arrival_entities": self._arrivals.max_size,
            "max_journey_entities": self._journeys.max_size,
        }
