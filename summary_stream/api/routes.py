"""FastAPI surface for the producer side.

- POST /api/ai-stream: event stream of summary frames (X-Session-ID header)
- POST /api/ai-search: upstream search proxy with a fallback document
- OPTIONS on both: CORS preflight
"""

from __future__ import annotations

import contextlib
import logging
import uuid
from typing import Any, AsyncGenerator, Optional

import aiohttp
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from ..core.config import EVENT_CONTENT_TYPE, MIN_QUERY_LENGTH, SESSION_HEADER, Valves
from ..core.logging_system import (
    SessionLogger,
    apply_logging_context,
    release_request_logs,
    reset_logging_context,
)
from ..core.utils import _normalize_optional_str
from ..streaming.streaming_core import create_http_session
from .producer import Sleep
from .service import AnswerStreamService
from .upstream import UpstreamSearchClient

LOGGER = logging.getLogger(__name__)

_QUERY_ERROR = {"error": f"Query must be at least {MIN_QUERY_LENGTH} characters long"}
_ALLOWED_METHODS = ["POST", "OPTIONS"]
_ALLOWED_HEADERS = ["Content-Type", "Authorization"]


def _valid_query(body: Any) -> Optional[str]:
    query = body.get("query") if isinstance(body, dict) else None
    if not isinstance(query, str) or len(query.strip()) < MIN_QUERY_LENGTH:
        return None
    return query


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


def create_app(
    valves: Optional[Valves] = None,
    *,
    service: Optional[AnswerStreamService] = None,
    sleep: Optional[Sleep] = None,
) -> FastAPI:
    """Build the application.

    When ``service`` is omitted, an aiohttp session and the upstream client are
    created on startup and closed on shutdown.
    """
    valves = valves or Valves()
    logger = SessionLogger.get_logger(__name__)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        session: Optional[aiohttp.ClientSession] = None
        if getattr(app.state, "service", None) is None:
            session = create_http_session(valves)
            app.state.service = AnswerStreamService(valves, UpstreamSearchClient(session, valves), sleep=sleep)
        try:
            yield
        finally:
            if session is not None:
                await session.close()
            SessionLogger.cleanup()

    app = FastAPI(title="summary-stream", lifespan=lifespan)
    app.state.service = service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=valves.cors_origins,
        allow_methods=_ALLOWED_METHODS,
        allow_headers=_ALLOWED_HEADERS,
        expose_headers=[SESSION_HEADER],
    )

    def _cors_headers() -> dict[str, str]:
        origins = valves.cors_origins
        return {
            "Access-Control-Allow-Origin": "*" if "*" in origins else origins[0],
            "Access-Control-Allow-Methods": ", ".join(_ALLOWED_METHODS),
            "Access-Control-Allow-Headers": ", ".join(_ALLOWED_HEADERS),
        }

    @app.post("/api/ai-stream")
    async def ai_stream(request: Request) -> Response:
        body = await _read_json(request)
        query = _valid_query(body)
        if query is None:
            return JSONResponse(_QUERY_ERROR, status_code=400)

        session_id = _normalize_optional_str(body.get("session_id")) or uuid.uuid4().hex
        user_id = _normalize_optional_str(body.get("userId")) or valves.DEFAULT_USER_ID
        request_id = uuid.uuid4().hex
        active: AnswerStreamService = request.app.state.service

        async def _frames() -> AsyncGenerator[bytes, None]:
            tokens = apply_logging_context(
                request_id=request_id,
                session_id=session_id,
                user_id=user_id,
                log_level=valves.LOG_LEVEL,
                max_lines=valves.SESSION_LOG_MAX_LINES,
                timing_enabled=valves.ENABLE_TIMING_LOG,
                timing_file=valves.TIMING_LOG_FILE,
            )
            try:
                logger.info("Producer streaming answer for query of %d chars", len(query))
                async for chunk in active.stream(query, session_id=session_id):
                    yield chunk
            finally:
                reset_logging_context(tokens)
                release_request_logs(request_id)

        headers = {
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            SESSION_HEADER: session_id,
        }
        headers.update(_cors_headers())
        return StreamingResponse(_frames(), media_type=EVENT_CONTENT_TYPE, headers=headers)

    @app.post("/api/ai-search")
    async def ai_search(request: Request) -> Response:
        body = await _read_json(request)
        query = _valid_query(body)
        if query is None:
            return JSONResponse(_QUERY_ERROR, status_code=400)
        mode = _normalize_optional_str(body.get("mode"))
        active: AnswerStreamService = request.app.state.service
        logger.info("Upstream search proxy called for query of %d chars", len(query))
        return JSONResponse(await active.search(query, mode))

    @app.options("/api/ai-stream")
    @app.options("/api/ai-search")
    async def preflight() -> Response:
        return Response(status_code=200, headers=_cors_headers())

    return app
