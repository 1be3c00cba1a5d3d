"""Tests for UpstreamSearchClient and result usability checks."""

from __future__ import annotations

import aiohttp
import pytest
from aioresponses import aioresponses
from yarl import URL

from summary_stream.api.upstream import UpstreamSearchClient, usable_results
from summary_stream.core.circuit_breaker import CircuitBreaker
from summary_stream.core.config import Valves
from summary_stream.core.errors import UpstreamUnavailableError

SEARCH_URL = "http://search.test/api/ai-search"


class TestUsableResults:
    """Only successful payloads with object rows are usable."""

    def test_success_with_results(self) -> None:
        assert usable_results({"status": "success", "results": [{"name": "A"}, "junk"]}) == [{"name": "A"}]

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            [],
            {"status": "fallback", "results": [{"name": "A"}]},
            {"status": "success", "results": []},
            {"status": "success", "results": "nope"},
            {"status": "success", "results": ["only", "strings"]},
        ],
    )
    def test_unusable(self, payload) -> None:
        assert usable_results(payload) is None


class TestUpstreamSearchClient:
    """POST shape, error mapping and breaker bookkeeping."""

    @pytest.mark.asyncio
    async def test_posts_trimmed_query_with_default_mode(self, fast_valves: Valves) -> None:
        with aioresponses() as mocked:
            mocked.post(SEARCH_URL, status=200, payload={"status": "success", "results": []})
            async with aiohttp.ClientSession() as session:
                client = UpstreamSearchClient(session, fast_valves)
                payload = await client.search("  aspirin  ", timeout=5)
            request = mocked.requests[("POST", URL(SEARCH_URL))][0]

        assert payload == {"status": "success", "results": []}
        assert request.kwargs["json"] == {"query": "aspirin", "mode": "ai"}

    @pytest.mark.asyncio
    async def test_explicit_mode_is_forwarded(self, fast_valves: Valves) -> None:
        with aioresponses() as mocked:
            mocked.post(SEARCH_URL, status=200, payload={"status": "success"})
            async with aiohttp.ClientSession() as session:
                await UpstreamSearchClient(session, fast_valves).search("q", mode="ema", timeout=5)
            request = mocked.requests[("POST", URL(SEARCH_URL))][0]
        assert request.kwargs["json"]["mode"] == "ema"

    @pytest.mark.asyncio
    async def test_http_error_records_failure(self, fast_valves: Valves) -> None:
        breaker = CircuitBreaker(threshold=1, window_seconds=60)
        with aioresponses() as mocked:
            mocked.post(SEARCH_URL, status=502, body="bad gateway")
            async with aiohttp.ClientSession() as session:
                client = UpstreamSearchClient(session, fast_valves, breaker=breaker)
                with pytest.raises(UpstreamUnavailableError) as excinfo:
                    await client.search("q", timeout=5)

        assert excinfo.value.status == 502
        assert excinfo.value.body == "bad gateway"
        assert "502" in str(excinfo.value)
        assert not breaker.allows(SEARCH_URL)

    @pytest.mark.asyncio
    async def test_connection_error_has_no_status(self, fast_valves: Valves) -> None:
        with aioresponses() as mocked:
            mocked.post(SEARCH_URL, exception=aiohttp.ClientConnectionError("refused"))
            async with aiohttp.ClientSession() as session:
                with pytest.raises(UpstreamUnavailableError) as excinfo:
                    await UpstreamSearchClient(session, fast_valves).search("q", timeout=5)
        assert excinfo.value.status is None

    @pytest.mark.asyncio
    async def test_invalid_json_is_unavailable(self, fast_valves: Valves) -> None:
        with aioresponses() as mocked:
            mocked.post(SEARCH_URL, status=200, body="<html>")
            async with aiohttp.ClientSession() as session:
                with pytest.raises(UpstreamUnavailableError, match="invalid JSON"):
                    await UpstreamSearchClient(session, fast_valves).search("q", timeout=5)

    @pytest.mark.asyncio
    async def test_non_object_payload_is_unavailable(self, fast_valves: Valves) -> None:
        with aioresponses() as mocked:
            mocked.post(SEARCH_URL, status=200, payload=[1, 2])
            async with aiohttp.ClientSession() as session:
                with pytest.raises(UpstreamUnavailableError, match="non-object"):
                    await UpstreamSearchClient(session, fast_valves).search("q", timeout=5)

    @pytest.mark.asyncio
    async def test_open_breaker_skips_network(self, fast_valves: Valves) -> None:
        breaker = CircuitBreaker(threshold=1, window_seconds=60)
        breaker.record_failure(SEARCH_URL)
        with aioresponses() as mocked:
            async with aiohttp.ClientSession() as session:
                client = UpstreamSearchClient(session, fast_valves, breaker=breaker)
                with pytest.raises(UpstreamUnavailableError, match="circuit breaker"):
                    await client.search("q", timeout=5)
            assert not mocked.requests

    @pytest.mark.asyncio
    async def test_success_resets_breaker(self, fast_valves: Valves) -> None:
        breaker = CircuitBreaker(threshold=2, window_seconds=60)
        breaker.record_failure(SEARCH_URL)
        with aioresponses() as mocked:
            mocked.post(SEARCH_URL, status=200, payload={"status": "success"})
            async with aiohttp.ClientSession() as session:
                await UpstreamSearchClient(session, fast_valves, breaker=breaker).search("q", timeout=5)
        breaker.record_failure(SEARCH_URL)
        assert breaker.allows(SEARCH_URL)

    def test_url_from_base(self) -> None:
        valves = Valves(AI_SEARCH_BASE_URL="http://host:9000/")
        client = UpstreamSearchClient(session=None, valves=valves)  # type: ignore[arg-type]
        assert client.url == "http://host:9000/api/ai-search"
        assert client.breaker.threshold == valves.BREAKER_THRESHOLD
