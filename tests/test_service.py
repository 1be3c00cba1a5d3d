"""Tests for AnswerStreamService: real path, fallback path and search proxy."""

from __future__ import annotations

import json
from typing import Any

import aiohttp
import pytest
from aioresponses import aioresponses

from summary_stream.api.producer import FallbackSimulator, split_words
from summary_stream.api.service import AnswerStreamService, fallback_search_payload
from summary_stream.api.upstream import UpstreamSearchClient
from summary_stream.core.circuit_breaker import CircuitBreaker
from summary_stream.core.config import Valves
from summary_stream.core.errors import StatusMessages

SEARCH_URL = "http://search.test/api/ai-search"


def _decode(chunks: list[bytes]) -> list[dict[str, Any]]:
    frames = []
    for line in b"".join(chunks).decode("utf-8").split("\n"):
        if line.startswith("data: "):
            frames.append(json.loads(line[len("data: "):]))
    return frames


async def _run(service: AnswerStreamService, query: str, session_id: str = "s-1") -> list[dict[str, Any]]:
    return _decode([chunk async for chunk in service.stream(query, session_id=session_id)])


class TestRealPath:
    """Usable upstream results are paced out word by word."""

    @pytest.mark.asyncio
    async def test_streams_upstream_details(self, fast_valves: Valves) -> None:
        upstream_payload = {
            "status": "success",
            "results": [
                {
                    "name": "Ibuprofen",
                    "active_substance": ["ibuprofen"],
                    "details": "Ibuprofen is an NSAID.",
                    "url": "https://ema/ibu",
                }
            ],
        }
        with aioresponses() as mocked:
            mocked.post(SEARCH_URL, status=200, payload=upstream_payload)
            async with aiohttp.ClientSession() as session:
                service = AnswerStreamService(fast_valves, UpstreamSearchClient(session, fast_valves))
                frames = await _run(service, "ibuprofen")

        assert frames[0] == {"status": "status", "message": StatusMessages.STARTING_SEARCH, "query": "ibuprofen"}
        assert frames[1] == {"status": "status", "message": StatusMessages.PROCESSING_RESULTS}
        chunks = [frame["data"] for frame in frames if frame["status"] == "chunk"]
        assert "".join(chunks) == "Ibuprofen is an NSAID."
        terminal = frames[-1]
        assert terminal["status"] == "complete"
        assert terminal["data"]["session_id"] == "s-1"
        assert terminal["data"]["citations"] == {"1": {"title": "Ibuprofen", "url": "https://ema/ibu"}}
        assert [frame["status"] for frame in frames].count("complete") == 1

    @pytest.mark.asyncio
    async def test_real_path_uses_real_pacing(self, fast_valves: Valves) -> None:
        sleeps: list[float] = []

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        valves = fast_valves.model_copy(
            update={"REAL_WORD_DELAY_SECONDS": 0.03, "REAL_STATUS_DELAY_SECONDS": 0.5}
        )
        with aioresponses() as mocked:
            mocked.post(SEARCH_URL, status=200, payload={"status": "success", "results": [{"details": "a b"}]})
            async with aiohttp.ClientSession() as session:
                service = AnswerStreamService(valves, UpstreamSearchClient(session, valves), sleep=fake_sleep)
                await _run(service, "q?")
        assert sleeps == [0.5, 0.03, 0.03]


class TestFallbackPath:
    """Upstream failure still yields a complete, well-formed stream."""

    @pytest.mark.asyncio
    async def test_upstream_500_streams_fallback(self, fast_valves: Valves) -> None:
        with aioresponses() as mocked:
            mocked.post(SEARCH_URL, status=500, body="boom")
            async with aiohttp.ClientSession() as session:
                service = AnswerStreamService(fast_valves, UpstreamSearchClient(session, fast_valves))
                frames = await _run(service, "metformin")

        expected = FallbackSimulator(fast_valves).answer_text("metformin")
        chunks = [frame for frame in frames if frame["status"] == "chunk"]
        assert frames[1] == {"status": "status", "message": StatusMessages.SEARCHING_DATABASES}
        assert len(chunks) == len(split_words(expected))
        assert "".join(frame["data"] for frame in chunks) == expected
        assert chunks[-1]["progress"] == 100
        terminal = frames[-1]
        assert terminal["status"] == "complete"
        assert terminal["data"]["citations"]
        assert terminal["data"]["processed_content"] == expected
        assert terminal["data"]["session_id"] == "s-1"

    @pytest.mark.asyncio
    async def test_unusable_payload_streams_fallback(self, fast_valves: Valves) -> None:
        with aioresponses() as mocked:
            mocked.post(SEARCH_URL, status=200, payload={"status": "success", "results": []})
            async with aiohttp.ClientSession() as session:
                service = AnswerStreamService(fast_valves, UpstreamSearchClient(session, fast_valves))
                frames = await _run(service, "metformin")
        assert frames[1]["message"] == StatusMessages.SEARCHING_DATABASES
        assert frames[-1]["status"] == "complete"

    @pytest.mark.asyncio
    async def test_open_breaker_streams_fallback_without_calling(self, fast_valves: Valves) -> None:
        breaker = CircuitBreaker(threshold=1, window_seconds=60)
        breaker.record_failure(SEARCH_URL)
        with aioresponses() as mocked:
            async with aiohttp.ClientSession() as session:
                upstream = UpstreamSearchClient(session, fast_valves, breaker=breaker)
                frames = await _run(AnswerStreamService(fast_valves, upstream), "metformin")
            assert not mocked.requests
        assert frames[-1]["status"] == "complete"

    @pytest.mark.asyncio
    async def test_production_failure_emits_error_frame(self, fast_valves: Valves) -> None:
        valves = fast_valves.model_copy(update={"FALLBACK_ANSWER_TEMPLATE": ""})
        with aioresponses() as mocked:
            mocked.post(SEARCH_URL, status=500)
            async with aiohttp.ClientSession() as session:
                service = AnswerStreamService(valves, UpstreamSearchClient(session, valves))
                frames = await _run(service, "metformin")
        assert frames[0]["message"] == StatusMessages.STARTING_SEARCH
        assert frames[-1]["status"] == "error"
        assert frames[-1]["message"] == StatusMessages.SEARCH_FAILED
        assert "template is empty" in frames[-1]["error"]
        assert not any(frame["status"] == "complete" for frame in frames)


class TestSearchProxy:
    """The proxy returns upstream JSON or a fallback document."""

    @pytest.mark.asyncio
    async def test_passes_upstream_payload_through(self, fast_valves: Valves) -> None:
        with aioresponses() as mocked:
            mocked.post(SEARCH_URL, status=200, payload={"status": "success", "results": [{"name": "A"}]})
            async with aiohttp.ClientSession() as session:
                service = AnswerStreamService(fast_valves, UpstreamSearchClient(session, fast_valves))
                payload = await service.search("aspirin", "ema")
        assert payload == {"status": "success", "results": [{"name": "A"}]}

    @pytest.mark.asyncio
    async def test_http_error_returns_configuring_document(self, fast_valves: Valves) -> None:
        with aioresponses() as mocked:
            mocked.post(SEARCH_URL, status=500)
            async with aiohttp.ClientSession() as session:
                service = AnswerStreamService(fast_valves, UpstreamSearchClient(session, fast_valves))
                payload = await service.search("aspirin", None)
        assert payload == fallback_search_payload("aspirin", None, unreachable=False)

    @pytest.mark.asyncio
    async def test_unreachable_returns_unavailable_document(self, fast_valves: Valves) -> None:
        with aioresponses() as mocked:
            mocked.post(SEARCH_URL, exception=aiohttp.ClientConnectionError("refused"))
            async with aiohttp.ClientSession() as session:
                service = AnswerStreamService(fast_valves, UpstreamSearchClient(session, fast_valves))
                payload = await service.search("aspirin", "ai")
        assert payload["status"] == "fallback"
        assert payload["message"] == "AI search temporarily unavailable. Please use EMA mode."
        assert payload["mode"] == "ai"


def test_fallback_search_payload_shape() -> None:
    payload = fallback_search_payload("aspirin", "ai", unreachable=False)
    assert payload["status"] == "fallback"
    assert payload["total_results"] == 1
    assert payload["query"] == "aspirin"
    result = payload["results"][0]
    assert result["brand_name"] == "aspirin"
    assert result["source_type"] == "fallback"
    assert "aspirin" in result["details"]
