"""Transit data model shared by the resolver, scorer and live store.

Field names follow the upstream Planera Resa v4 payloads (camelCase on the
wire, snake_case in Python) so responses validate straight into these models.
"""

import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

Point = tuple[float, float]  # (lat, lon) in degrees


class TransitModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class StopArea(TransitModel):
    gid: str
    name: str = ""
    latitude: float | None = None
    longitude: float | None = None


class StopPoint(TransitModel):
    gid: str
    name: str = ""
    platform: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    stop_area: StopArea | None = None

    @property
    def location(self) -> Point | None:
        if self.latitude is None or self.longitude is None:
            return None
        return (self.latitude, self.longitude)


class LineInfo(TransitModel):
    gid: str | None = None
    name: str | None = None
    short_name: str | None = None
    designation: str | None = None
    transport_mode: str = "tram"
    background_color: str | None = None
    foreground_color: str | None = None
    border_color: str | None = None


class Line(LineInfo):
    coordinates: list[Point] = []
    stop_points: list[StopPoint] = []


class ServiceJourney(TransitModel):
    gid: str
    origin: str | None = None
    direction: str | None = None
    line: LineInfo


class Arrival(TransitModel):
    details_reference: str | None = None
    service_journey: ServiceJourney
    stop_point: StopPoint
    planned_time: datetime.datetime
    estimated_time: datetime.datetime | None = None
    estimated_otherwise_planned_time: datetime.datetime | None = None
    is_cancelled: bool = False
    is_part_cancelled: bool = False

    @property
    def expected_time(self) -> datetime.datetime:
        return self.estimated_otherwise_planned_time or self.estimated_time or self.planned_time


class Departure(Arrival):
    pass


class Coordinate(TransitModel):
    latitude: float
    longitude: float


class Call(TransitModel):
    stop_point: StopPoint
    planned_arrival_time: datetime.datetime | None = None
    planned_departure_time: datetime.datetime | None = None
    estimated_arrival_time: datetime.datetime | None = None
    estimated_departure_time: datetime.datetime | None = None
    estimated_otherwise_planned_arrival_time: datetime.datetime | None = None
    estimated_otherwise_planned_departure_time: datetime.datetime | None = None

    @property
    def arrival_time(self) -> datetime.datetime | None:
        return (
            self.estimated_arrival_time
            or self.estimated_otherwise_planned_arrival_time
            or self.planned_arrival_time
        )

    @property
    def departure_time(self) -> datetime.datetime | None:
        return (
            self.estimated_departure_time
            or self.estimated_otherwise_planned_departure_time
            or self.planned_departure_time
        )


class TripLeg(TransitModel):
    service_journeys: list[ServiceJourney] = []
    calls_on_trip_leg: list[Call] = []
    trip_leg_coordinates: list[Coordinate] | None = None

    @property
    def coordinates(self) -> list[Point]:
        if not self.trip_leg_coordinates:
            return []
        return [(c.latitude, c.longitude) for c in self.trip_leg_coordinates]


class JourneyDetail(TransitModel):
    trip_legs: list[TripLeg] = []


class ArrivalsResponse(TransitModel):
    results: list[Arrival] = []


class DeparturesResponse(TransitModel):
    results: list[Departure] = []
