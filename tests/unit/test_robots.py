"""
Unit tests for the robots.txt policy.

httpx is routed through a MockTransport; no network access.
"""

import pytest
from unittest.mock import patch

import httpx

from scrape_orchestrator.robots import RobotsPolicy


def serve(responses, requests):
    """Patch httpx clients to answer from a path -> response mapping."""
    real_client = httpx.AsyncClient

    def handler(request):
        requests.append(str(request.url))
        response = responses.get(request.url.path)
        if isinstance(response, Exception):
            raise response
        return response or httpx.Response(404)

    def client_factory(**kwargs):
        kwargs.pop('proxy', None)
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    return patch('scrape_orchestrator.robots.httpx.AsyncClient', side_effect=client_factory)


class TestRobotsPolicy:
    """Test robots.txt lookups and caching."""

    @pytest.mark.asyncio
    async def test_rules_are_applied_and_cached_per_origin(self):
        policy = RobotsPolicy()
        requests = []
        robots = httpx.Response(200, text="User-agent: *\nDisallow: /private\n")

        with serve({'/robots.txt': robots}, requests):
            assert await policy.allowed("https://shop.example.com/catalogue") is True
            assert await policy.allowed("https://shop.example.com/private/orders") is False

        assert requests == ["https://shop.example.com/robots.txt"]

    @pytest.mark.asyncio
    async def test_agent_specific_rules(self):
        policy = RobotsPolicy()
        robots = httpx.Response(200, text="User-agent: Mozilla\nDisallow: /\n\nUser-agent: *\nAllow: /\n")

        with serve({'/robots.txt': robots}, []):
            assert await policy.allowed("https://shop.example.com/", "Mozilla/5.0 (X11; Linux x86_64)") is False
            assert await policy.allowed("https://shop.example.com/", "curl/8.0") is True

    @pytest.mark.asyncio
    async def test_missing_robots_allows_everything(self):
        policy = RobotsPolicy()

        with serve({}, []):
            assert await policy.allowed("https://shop.example.com/anything") is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_protected_robots_disallows_everything(self, status):
        policy = RobotsPolicy()

        with serve({'/robots.txt': httpx.Response(status)}, []):
            assert await policy.allowed("https://shop.example.com/") is False

    @pytest.mark.asyncio
    async def test_unreachable_robots_allows_and_is_retried(self):
        policy = RobotsPolicy()
        requests = []
        outage = httpx.ConnectError("connection refused")

        with serve({'/robots.txt': outage}, requests):
            assert await policy.allowed("https://shop.example.com/a") is True
            assert await policy.allowed("https://shop.example.com/b") is True

        assert len(requests) == 2

    @pytest.mark.asyncio
    async def test_server_error_allows_without_caching(self):
        policy = RobotsPolicy()
        requests = []

        with serve({'/robots.txt': httpx.Response(503)}, requests):
            assert await policy.allowed("https://shop.example.com/a") is True

        with serve({'/robots.txt': httpx.Response(200, text="User-agent: *\nDisallow: /\n")}, requests):
            assert await policy.allowed("https://shop.example.com/a") is False

        assert len(requests) == 2
