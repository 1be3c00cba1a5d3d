"""Tests for the FastAPI streaming and search proxy routes."""

from __future__ import annotations

import json
from typing import Any, AsyncGenerator, Optional

import pytest
from fastapi.testclient import TestClient

from summary_stream.api.producer import FrameProducer, encode_frame
from summary_stream.api.routes import create_app
from summary_stream.core.config import Valves
from summary_stream.core.logging_system import SessionLogger
from summary_stream.streaming.assembler import ResponseAssembler
from summary_stream.streaming.events import CompletionEvent


class _FakeService:
    """Stands in for AnswerStreamService; records calls."""

    def __init__(self) -> None:
        self.stream_calls: list[tuple[str, str]] = []
        self.search_calls: list[tuple[str, Optional[str]]] = []
        self.observed_request_ids: list[Optional[str]] = []

    async def stream(self, query: str, *, session_id: str) -> AsyncGenerator[bytes, None]:
        self.stream_calls.append((query, session_id))
        self.observed_request_ids.append(SessionLogger.request_id.get())
        yield encode_frame(FrameProducer.status_frame("Starting AI search...", query=query))
        for frame in FrameProducer.chunk_frames("Hello world"):
            yield encode_frame(frame)
        yield encode_frame(
            FrameProducer.terminal_frame("Hello world", citations={}, sources=[], session_id=session_id)
        )

    async def search(self, query: str, mode: Optional[str] = None) -> dict[str, Any]:
        self.search_calls.append((query, mode))
        return {"status": "success", "results": [], "query": query}


@pytest.fixture
def service() -> _FakeService:
    return _FakeService()


@pytest.fixture
def client(service: _FakeService) -> TestClient:
    app = create_app(Valves(CORS_ALLOW_ORIGINS="https://app.example"), service=service)  # type: ignore[arg-type]
    with TestClient(app) as test_client:
        yield test_client


class TestStreamRoute:
    """POST /api/ai-stream."""

    def test_streams_frames_with_session_header(self, client: TestClient, service: _FakeService) -> None:
        response = client.post("/api/ai-stream", json={"query": "aspirin", "session_id": "s-1"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["x-session-id"] == "s-1"
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["x-accel-buffering"] == "no"
        assert service.stream_calls == [("aspirin", "s-1")]
        assert service.observed_request_ids[0]

        assembler = ResponseAssembler()
        events = assembler.feed(response.content) + assembler.finish()
        completion = [event for event in events if isinstance(event, CompletionEvent)]
        assert len(completion) == 1
        assert completion[0].response.processed_content == "Hello world"
        assert completion[0].response.session_id == "s-1"

    def test_generates_session_id(self, client: TestClient, service: _FakeService) -> None:
        response = client.post("/api/ai-stream", json={"query": "aspirin"})
        session_id = response.headers["x-session-id"]
        assert len(session_id) == 32
        assert service.stream_calls == [("aspirin", session_id)]

    def test_request_log_buffer_released_after_stream(self, client: TestClient, service: _FakeService) -> None:
        for _ in range(3):
            assert client.post("/api/ai-stream", json={"query": "aspirin"}).status_code == 200
        assert len(service.observed_request_ids) == 3
        assert SessionLogger.logs == {}

    def test_frames_are_event_lines(self, client: TestClient) -> None:
        response = client.post("/api/ai-stream", json={"query": "aspirin"})
        lines = [line for line in response.text.split("\n") if line]
        assert all(line.startswith("data: ") for line in lines)
        assert json.loads(lines[0][len("data: "):])["message"] == "Starting AI search..."

    @pytest.mark.parametrize("body", [{}, {"query": ""}, {"query": " a "}, {"query": 42}])
    def test_rejects_short_or_missing_query(self, client: TestClient, service: _FakeService, body: dict) -> None:
        response = client.post("/api/ai-stream", json=body)
        assert response.status_code == 400
        assert response.json() == {"error": "Query must be at least 2 characters long"}
        assert service.stream_calls == []

    def test_rejects_non_json_body(self, client: TestClient) -> None:
        response = client.post(
            "/api/ai-stream", content=b"not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400


class TestSearchRoute:
    """POST /api/ai-search."""

    def test_proxies_to_service(self, client: TestClient, service: _FakeService) -> None:
        response = client.post("/api/ai-search", json={"query": "aspirin", "mode": "ema"})
        assert response.status_code == 200
        assert response.json()["query"] == "aspirin"
        assert service.search_calls == [("aspirin", "ema")]

    def test_rejects_short_query(self, client: TestClient) -> None:
        assert client.post("/api/ai-search", json={"query": "a"}).status_code == 400


class TestPreflight:
    """OPTIONS on both routes."""

    @pytest.mark.parametrize("path", ["/api/ai-stream", "/api/ai-search"])
    def test_options_returns_cors_headers(self, client: TestClient, path: str) -> None:
        response = client.options(path)
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "https://app.example"
        assert "POST" in response.headers["access-control-allow-methods"]

    def test_cors_middleware_handles_browser_preflight(self, client: TestClient) -> None:
        response = client.options(
            "/api/ai-stream",
            headers={
                "Origin": "https://app.example",
                "Access-Control-Request-Method": "POST",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "https://app.example"
