"""Async client for the Västtrafik Planera Resa v4 API."""

import asyncio
import logging
import time
from collections.abc import Sequence
from typing import Any

import httpx
from pydantic import TypeAdapter, ValidationError

from tram_matcher.config import settings
from tram_matcher.core.cache import RequestDeduplicator
from tram_matcher.schemas.transit import (
    Arrival,
    ArrivalsResponse,
    Departure,
    DeparturesResponse,
    JourneyDetail,
    StopArea,
)

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 2
RETRY_BACKOFF = [0.5, 1.0]  # seconds between retries

# Refresh the token this long before the upstream says it expires
TOKEN_EXPIRY_MARGIN_SECONDS = 300

_stop_areas_adapter = TypeAdapter(list[StopArea])


class UpstreamError(Exception):
    """The upstream API could not be reached or returned an unusable response."""


class VasttrafikClient:
    """Fetches arrivals, departures and journey details with client-credentials auth.

    Identical concurrent requests are collapsed into one upstream call.
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        base_url: str | None = None,
        token_url: str | None = None,
        timeout: float | None = None,
        deduplicator: RequestDeduplicator | None = None,
        retry_backoff: Sequence[float] = RETRY_BACKOFF,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_id = client_id if client_id is not None else settings.vasttrafik_client_id
        self._client_secret = (
            client_secret if client_secret is not None else settings.vasttrafik_client_secret
        )
        self._token_url = token_url or settings.vasttrafik_token_url
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.vasttrafik_base_url,
            timeout=timeout or settings.http_timeout_seconds,
            headers={"Accept": "application/json"},
            transport=transport,
        )
        self._dedup = deduplicator or RequestDeduplicator(window=settings.dedupe_window_seconds)
        self._retry_backoff = list(retry_backoff)
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def close(self) -> None:
        await self._client.aclose()

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        try:
            resp = await self._client.post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "client_credentials",
                },
            )
            resp.raise_for_status()
            data = resp.json()
            token = data["access_token"]
            expires_in = float(data.get("expires_in", 0))
        except (httpx.HTTPError, KeyError, ValueError, TypeError) as e:
            raise UpstreamError(f"Token exchange failed: {e}") from e
        self._token = token
        self._token_expires_at = time.monotonic() + expires_in - TOKEN_EXPIRY_MARGIN_SECONDS
        logger.debug("Obtained access token valid for %ds", expires_in)
        return token

    async def _get_with_retry(self, path: str, params: dict[str, Any], label: str) -> Any:
        """GET request with retry and backoff; returns decoded JSON."""
        params = {k: v for k, v in params.items() if v is not None}
        attempts = len(self._retry_backoff) + 1
        for attempt in range(attempts):
            can_retry = attempt < attempts - 1
            try:
                token = await self._access_token()
                resp = await self._client.get(
                    path, params=params, headers={"Authorization": f"Bearer {token}"}
                )
                resp.raise_for_status()
                return resp.json()
            except httpx.TransportError as e:
                if not can_retry:
                    raise UpstreamError(f"{label} failed after {attempts} attempts: {e}") from e
                logger.warning(
                    "%s attempt %d/%d failed (%s), retrying in %.1fs",
                    label, attempt + 1, attempts, type(e).__name__, self._retry_backoff[attempt],
                )
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status == 401:
                    self._token = None
                if not can_retry or (status < 500 and status != 401):
                    raise UpstreamError(f"Failed to fetch {label}: HTTP {status}") from e
                logger.warning(
                    "%s attempt %d/%d got HTTP %d, retrying in %.1fs",
                    label, attempt + 1, attempts, status, self._retry_backoff[attempt],
                )
            except ValueError as e:
                raise UpstreamError(f"Malformed {label} response: {e}") from e
            await asyncio.sleep(self._retry_backoff[attempt])
        raise UpstreamError(f"{label} failed")

    async def _fetch(self, key: str, path: str, params: dict[str, Any], label: str) -> Any:
        return await self._dedup.dedupe(key, lambda: self._get_with_retry(path, params, label))

    async def list_stop_areas(self) -> list[StopArea]:
        data = await self._fetch("stop-areas", "stop-areas", {}, "stop areas")
        items = data if isinstance(data, list) else data.get("results", [])
        try:
            return _stop_areas_adapter.validate_python(items)
        except ValidationError as e:
            raise UpstreamError(f"Malformed stop areas response: {e}") from e

    async def list_arrivals_for_stop(
        self, gid: str, max_arrivals_per_line_and_direction: int | None = None
    ) -> list[Arrival]:
        params = {"maxArrivalsPerLineAndDirection": max_arrivals_per_line_and_direction}
        data = await self._fetch(
            f"arrivals:{gid}:{max_arrivals_per_line_and_direction}",
            f"stop-points/{gid}/arrivals",
            params,
            f"arrivals for {gid}",
        )
        try:
            return ArrivalsResponse.model_validate(data).results
        except ValidationError as e:
            raise UpstreamError(f"Malformed arrivals response for {gid}: {e}") from e

    async def list_departures_for_stop(
        self, gid: str, max_departures_per_line_and_direction: int | None = None
    ) -> list[Departure]:
        params = {"maxDeparturesPerLineAndDirection": max_departures_per_line_and_direction}
        data = await self._fetch(
            f"departures:{gid}:{max_departures_per_line_and_direction}",
            f"stop-points/{gid}/departures",
            params,
            f"departures for {gid}",
        )
        try:
            return DeparturesResponse.model_validate(data).results
        except ValidationError as e:
            raise UpstreamError(f"Malformed departures response for {gid}: {e}") from e

    async def get_journey_detail(
        self, reference: str, includes: Sequence[str] = ("triplegcoordinates",)
    ) -> JourneyDetail:
        includes = sorted(includes)
        data = await self._fetch(
            f"journey:{reference}:{','.join(includes)}",
            f"journeys/{reference}/details",
            {"includes": includes or None},
            f"journey details for {reference}",
        )
        try:
            return JourneyDetail.model_validate(data)
        except ValidationError as e:
            raise UpstreamError(f"Malformed journey details for {reference}: {e}") from e
