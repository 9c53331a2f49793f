"""Score live arrivals by how well each vehicle explains the rider's position.

For a candidate heading to the rider's upcoming stop, the rider's progress
between the previous stop and that stop is measured along the trip geometry.
Interpolating the timetable at that progress gives the time the vehicle should
be where the rider is; the score is the gap to the current time in ms.
"""

import datetime
import logging
import math
from collections.abc import Iterable

from tram_matcher.core.geometry import closest_point_on_polyline, polyline_length
from tram_matcher.schemas.match import ScoredArrival
from tram_matcher.schemas.transit import Arrival, Call, JourneyDetail, Point, TripLeg

logger = logging.getLogger(__name__)


class JourneyDataError(Exception):
    """Journey detail contradicts the arrival it was fetched for."""


def _find_call(legs: list[TripLeg], stop_gid: str) -> tuple[TripLeg, int] | None:
    for leg in legs:
        for i, call in enumerate(leg.calls_on_trip_leg):
            if call.stop_point.gid == stop_gid:
                return leg, i
    return None


def _travel_progress(
    coordinates: list[Point], prev_location: Point, target_location: Point, position: Point
) -> float | None:
    """Fraction of the prev -> target stretch covered at the rider's position."""
    prev_proj = closest_point_on_polyline(coordinates, prev_location)
    target_proj = closest_point_on_polyline(coordinates, target_location)
    if target_proj.segment_index < prev_proj.segment_index:
        return None

    # Starts at the previous stop's own projection so two stops on one segment
    # still span a non-zero stretch
    stretch = [
        prev_proj.point,
        *coordinates[prev_proj.segment_index + 1: target_proj.segment_index + 1],
        target_proj.point,
    ]
    total_m = polyline_length(stretch)
    if total_m <= 0:
        return None

    current = closest_point_on_polyline(stretch, position)
    covered = [*stretch[: current.segment_index + 1], current.point]
    return max(0.0, min(1.0, polyline_length(covered) / total_m))


def _times(prev_call: Call, target_call: Call) -> tuple[datetime.datetime, datetime.datetime]:
    departure = prev_call.departure_time
    if departure is None:
        raise JourneyDataError(
            f"Previous stop {prev_call.stop_point.gid} has no estimated or planned departure time"
        )
    arrival = target_call.arrival_time
    if arrival is None:
        raise JourneyDataError(
            f"Stop {target_call.stop_point.gid} has no estimated or planned arrival time"
        )
    return departure, arrival


def score_journey(
    journey: JourneyDetail,
    arrival: Arrival,
    position: Point,
    now: datetime.datetime | None = None,
) -> float:
    """Timing error in ms between the rider and this vehicle; inf if not applicable.

    Raises JourneyDataError when the journey does not call at the arrival's
    stop or lacks the times needed to interpolate.
    """
    if not journey.trip_legs:
        return math.inf
    stop_gid = arrival.stop_point.gid
    found = _find_call(journey.trip_legs, stop_gid)
    if found is None:
        raise JourneyDataError(f"Stop {stop_gid} not found in journey calls")
    leg, index = found
    if index == 0:
        return math.inf

    prev_call = leg.calls_on_trip_leg[index - 1]
    target_call = leg.calls_on_trip_leg[index]

    coordinates = leg.coordinates
    prev_location = prev_call.stop_point.location
    target_location = target_call.stop_point.location or arrival.stop_point.location
    if not coordinates or prev_location is None or target_location is None:
        return math.inf

    progress = _travel_progress(coordinates, prev_location, target_location, position)
    if progress is None:
        return math.inf

    departure, arrival_time = _times(prev_call, target_call)
    expected = departure + progress * (arrival_time - departure)
    now = now or datetime.datetime.now(datetime.timezone.utc)
    return abs((now - expected).total_seconds()) * 1000


def score_candidates(
    position: Point,
    candidates: Iterable[tuple[Arrival, JourneyDetail]],
    now: datetime.datetime | None = None,
) -> list[ScoredArrival]:
    """Score every (arrival, journey) pair, best first. Nothing is dropped."""
    now = now or datetime.datetime.now(datetime.timezone.utc)
    scored = []
    for arrival, journey in candidates:
        fault = None
        try:
            score = score_journey(journey, arrival, position, now)
        except JourneyDataError as e:
            logger.warning(
                "Inconsistent journey detail for %s: %s", arrival.details_reference, e
            )
            score, fault = math.inf, str(e)
        scored.append(ScoredArrival(arrival=arrival, score=score, fault=fault))
    scored.sort(key=lambda s: s.score)
    return scored
