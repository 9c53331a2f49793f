"""Request-scoped access to the services created in the application lifespan."""

from fastapi import Request

from tram_matcher.core.cache import TTLCache
from tram_matcher.core.tram_matcher import TramMatcher
from tram_matcher.core.vasttrafik_client import VasttrafikClient


def get_client(request: Request) -> VasttrafikClient:
    return request.app.state.client


def get_response_cache(request: Request) -> TTLCache:
    return request.app.state.response_cache


def get_matcher(request: Request) -> TramMatcher:
    return request.app.state.matcher
