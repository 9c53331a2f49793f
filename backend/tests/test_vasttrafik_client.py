"""Tests for VasttrafikClient against a mocked transport."""

import asyncio

import httpx
import pytest

from tram_matcher.core.vasttrafik_client import UpstreamError, VasttrafikClient

BASE_URL = "https://api.test/pr/v4/"
TOKEN_URL = "https://api.test/token"

ARRIVALS = {
    "results": [
        {
            "detailsReference": "ref-1",
            "serviceJourney": {
                "gid": "sj-1",
                "direction": "Östra Sjukhuset",
                "line": {"name": "1", "shortName": "1", "transportMode": "tram"},
            },
            "stopPoint": {"gid": "9022014001760001", "name": "Brunnsparken"},
            "plannedTime": "2026-03-02T08:00:00+01:00",
            "estimatedTime": "2026-03-02T08:01:00+01:00",
            "isCancelled": False,
        }
    ]
}


class Upstream:
    """Scriptable fake of the token endpoint and the REST API."""

    def __init__(self, responses=None) -> None:
        self.responses = list(responses or [])
        self.requests: list[httpx.Request] = []
        self.tokens_issued = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/token":
            self.tokens_issued += 1
            return httpx.Response(
                200, json={"access_token": f"token-{self.tokens_issued}", "expires_in": 3600}
            )
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(200, json=ARRIVALS)


def make_client(upstream: Upstream) -> VasttrafikClient:
    return VasttrafikClient(
        client_id="id",
        client_secret="secret",
        base_url=BASE_URL,
        token_url=TOKEN_URL,
        retry_backoff=[0, 0],
        transport=httpx.MockTransport(upstream),
    )


def run(upstream: Upstream, call):
    async def scenario():
        client = make_client(upstream)
        try:
            return await call(client)
        finally:
            await client.close()

    return asyncio.run(scenario())


def test_arrivals_are_parsed():
    upstream = Upstream()
    arrivals = run(upstream, lambda c: c.list_arrivals_for_stop("9022014001760001", 1))

    assert len(arrivals) == 1
    arrival = arrivals[0]
    assert arrival.details_reference == "ref-1"
    assert arrival.service_journey.line.transport_mode == "tram"
    assert arrival.expected_time == arrival.estimated_time

    request = upstream.requests[0]
    assert request.url.path == "/pr/v4/stop-points/9022014001760001/arrivals"
    assert request.url.params["maxArrivalsPerLineAndDirection"] == "1"
    assert request.headers["Authorization"] == "Bearer token-1"


def test_token_is_reused():
    upstream = Upstream()

    async def call(client):
        await client.list_arrivals_for_stop("A")
        await client.list_departures_for_stop("A")

    run(upstream, call)
    assert upstream.tokens_issued == 1
    assert len(upstream.requests) == 2


def test_server_error_is_retried():
    upstream = Upstream([httpx.Response(503), httpx.Response(502)])
    arrivals = run(upstream, lambda c: c.list_arrivals_for_stop("A"))
    assert len(arrivals) == 1
    assert len(upstream.requests) == 3


def test_persistent_server_error_raises():
    upstream = Upstream([httpx.Response(500)] * 3)
    with pytest.raises(UpstreamError):
        run(upstream, lambda c: c.list_arrivals_for_stop("A"))
    assert len(upstream.requests) == 3


def test_client_error_is_not_retried():
    upstream = Upstream([httpx.Response(404)])
    with pytest.raises(UpstreamError):
        run(upstream, lambda c: c.list_arrivals_for_stop("missing"))
    assert len(upstream.requests) == 1


def test_unauthorized_refreshes_token():
    upstream = Upstream([httpx.Response(401)])
    run(upstream, lambda c: c.list_arrivals_for_stop("A"))
    assert upstream.tokens_issued == 2
    assert upstream.requests[-1].headers["Authorization"] == "Bearer token-2"


def test_malformed_payload_raises():
    upstream = Upstream([httpx.Response(200, json={"results": [{"detailsReference": 1}]})])
    with pytest.raises(UpstreamError):
        run(upstream, lambda c: c.list_arrivals_for_stop("A"))


def test_failed_token_exchange_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_client"})

    async def scenario():
        client = VasttrafikClient(
            client_id="id",
            client_secret="wrong",
            base_url=BASE_URL,
            token_url=TOKEN_URL,
            transport=httpx.MockTransport(handler),
        )
        try:
            await client.list_arrivals_for_stop("A")
        finally:
            await client.close()

    with pytest.raises(UpstreamError):
        asyncio.run(scenario())


def test_concurrent_identical_requests_are_collapsed():
    upstream = Upstream()

    async def call(client):
        return await asyncio.gather(
            client.list_arrivals_for_stop("A"), client.list_arrivals_for_stop("A")
        )

    first, second = run(upstream, call)
    assert first == second
    assert len(upstream.requests) == 1


def test_journey_detail_requests_coordinates():
    upstream = Upstream([
        httpx.Response(
            200,
            json={
                "tripLegs": [
                    {
                        "callsOnTripLeg": [
                            {
                                "stopPoint": {"gid": "A", "latitude": 57.7, "longitude": 11.97},
                                "plannedDepartureTime": "2026-03-02T08:00:00+01:00",
                            }
                        ],
                        "tripLegCoordinates": [
                            {"latitude": 57.7, "longitude": 11.97},
                            {"latitude": 57.71, "longitude": 11.98},
                        ],
                    }
                ]
            },
        )
    ])
    journey = run(upstream, lambda c: c.get_journey_detail("ref-1"))

    assert journey.trip_legs[0].coordinates == [(57.7, 11.97), (57.71, 11.98)]
    request = upstream.requests[0]
    assert request.url.path == "/pr/v4/journeys/ref-1/details"
    assert request.url.params["includes"] == "triplegcoordinates"


def test_stop_areas_accept_plain_list():
    upstream = Upstream([
        httpx.Response(200, json=[{"gid": "9021014001760000", "name": "Brunnsparken"}])
    ])
    areas = run(upstream, lambda c: c.list_stop_areas())
    assert [a.name for a in areas] == ["Brunnsparken"]
    assert upstream.requests[0].url.path == "/pr/v4/stop-areas"


class DroppingUpstream(Upstream):
    """Drops the connection for the first `drops` API requests."""

    def __init__(self, drops: int) -> None:
        super().__init__()
        self.drops = drops

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path != "/token" and self.drops:
            self.drops -= 1
            self.requests.append(request)
            raise httpx.RemoteProtocolError("Server disconnected without sending a response.")
        return super().__call__(request)


def test_dropped_connection_is_retried():
    upstream = DroppingUpstream(drops=1)
    arrivals = run(upstream, lambda c: c.list_arrivals_for_stop("A"))
    assert len(arrivals) == 1
    assert len(upstream.requests) == 2


def test_persistent_transport_error_raises_upstream_error():
    upstream = DroppingUpstream(drops=3)
    with pytest.raises(UpstreamError):
        run(upstream, lambda c: c.list_arrivals_for_stop("A"))
    assert len(upstream.requests) == 3
