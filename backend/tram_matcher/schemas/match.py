from pydantic import BaseModel

from tram_matcher.schemas.transit import Arrival, StopPoint


class ScoredArrival(BaseModel):
    arrival: Arrival
    score: float  # ms between now and where the vehicle should be; inf ranks last
    fault: str | None = None


class NearbyStops(BaseModel):
    lat: float
    lon: float
    stops: list[StopPoint]


class MatchResult(BaseModel):
    lat: float
    lon: float
    stops: list[StopPoint]
    candidates: list[ScoredArrival]
