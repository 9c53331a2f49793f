"""Main orchestrator: position -> nearby stops -> live arrivals -> scored candidates."""

import asyncio
import datetime
import logging

from tram_matcher.core.journey_scoring import score_candidates
from tram_matcher.core.live_store import LiveStore
from tram_matcher.core.nearby_stops import NearbyStopResolver
from tram_matcher.core.vasttrafik_client import UpstreamError
from tram_matcher.schemas.match import ScoredArrival
from tram_matcher.schemas.transit import Arrival, JourneyDetail, Point, StopPoint

logger = logging.getLogger(__name__)


class TramMatcher:
    """Ranks the live trams approaching the rider by how well they explain the position."""

    def __init__(
        self,
        resolver: NearbyStopResolver,
        store: LiveStore,
        transport_mode: str = "tram",
    ) -> None:
        self.resolver = resolver
        self.store = store
        self.transport_mode = transport_mode

    def nearby_stops(self, position: Point) -> list[StopPoint]:
        return self.resolver.resolve(position)

    async def arrivals_for_stops(self, stops: list[StopPoint]) -> list[Arrival]:
        """Live arrivals of the configured transport mode, one per details reference.

        Raises UpstreamError only when every stop failed to load.
        """
        if not stops:
            return []
        self.store.preload_stops(stops)
        resources = [self.store.stop_point_arrivals(stop.gid) for stop in stops]
        results = await asyncio.gather(*(r.get() for r in resources), return_exceptions=True)

        failures = [r for r in results if isinstance(r, BaseException)]
        for stop, result in zip(stops, results):
            if isinstance(result, BaseException):
                logger.warning("No arrivals for stop %s: %s", stop.gid, result)
        if failures and len(failures) == len(results):
            raise UpstreamError(f"Arrivals unavailable for all {len(stops)} stops") from failures[0]

        arrivals: list[Arrival] = []
        seen: set[str] = set()
        for result in results:
            if isinstance(result, BaseException):
                continue
            for arrival in result:
                ref = arrival.details_reference
                if not ref or ref in seen:
                    continue
                if arrival.service_journey.line.transport_mode != self.transport_mode:
                    continue
                seen.add(ref)
                arrivals.append(arrival)
        return arrivals

    async def arrival_journeys(
        self, arrivals: list[Arrival]
    ) -> list[tuple[Arrival, JourneyDetail]]:
        """Pair each arrival with its journey detail; arrivals whose detail failed are skipped."""
        resources = [self.store.journey_details(a.details_reference) for a in arrivals]
        results = await asyncio.gather(*(r.get() for r in resources), return_exceptions=True)

        pairs = []
        for arrival, result in zip(arrivals, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "No journey detail for %s: %s", arrival.details_reference, result
                )
                continue
            pairs.append((arrival, result))
        if arrivals and not pairs:
            raise UpstreamError(f"Journey details unavailable for all {len(arrivals)} arrivals")
        return pairs

    async def match(
        self, position: Point, now: datetime.datetime | None = None
    ) -> list[ScoredArrival]:
        """Scored candidates for the rider at position, best match first."""
        stops = self.nearby_stops(position)
        arrivals = await self.arrivals_for_stops(stops)
        pairs = await self.arrival_journeys(arrivals)
        scored = score_candidates(position, pairs, now)
        if scored:
            logger.debug(
                "Matched %s: %d candidates, best %.0fms", position, len(scored), scored[0].score
            )
        return scored
