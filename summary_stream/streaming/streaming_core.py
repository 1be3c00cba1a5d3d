"""Network read loop for summary streams.

SummaryStreamClient POSTs a query, reads the event stream chunk by chunk under
a per-request deadline, and yields typed events from a ResponseAssembler.
Only the connection phase is retried; once a byte has been read the request
either completes or completes with an error, never twice.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, AsyncGenerator, AsyncIterable, Optional

import aiohttp
from pydantic import BaseModel, ConfigDict
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import EVENT_CONTENT_TYPE, SESSION_HEADER, STATUS_CONNECTING, EncryptedStr, Valves
from ..core.errors import (
    FallbackUnavailableError,
    StatusMessages,
    StreamInterruptedError,
    UpstreamUnavailableError,
    _classify_retryable_status,
    _RetryableHTTPStatusError,
    _RetryWait,
)
from ..core.logging_system import (
    SessionLogger,
    apply_logging_context,
    release_request_logs,
    reset_logging_context,
)
from ..core.timing_logger import timed, timing_mark, timing_scope
from .assembler import ResponseAssembler
from .events import (
    ChunkCallback,
    CompleteCallback,
    ProgressEvent,
    StatusCallback,
    StreamEvent,
    deliver_events,
)
from .frames import AssembledResponse

LOGGER = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 4096
_ERROR_BODY_PREVIEW_CHARS = 500


class SummaryRequestOptions(BaseModel):
    """Optional request fields; unset values fall back to valve defaults."""

    session_id: Optional[str] = None
    user_id: Optional[str] = None
    parent_thread_id: Optional[str] = None
    mode: Optional[str] = None
    country: Optional[str] = None
    language: Optional[str] = None
    direct_image_request: bool = False
    model_config = ConfigDict(extra="forbid")


@timed
def create_http_session(valves: Valves) -> aiohttp.ClientSession:
    """Return a ClientSession with connect timeouts; reads are bounded per request."""
    connector = aiohttp.TCPConnector(limit=50, limit_per_host=10, keepalive_timeout=75, ttl_dns_cache=300)
    connect_timeout = float(valves.HTTP_CONNECT_TIMEOUT_SECONDS)
    timeout = aiohttp.ClientTimeout(total=None, connect=connect_timeout, sock_connect=connect_timeout)
    return aiohttp.ClientSession(connector=connector, timeout=timeout, json_serialize=json.dumps)


class SummaryStreamClient:
    """Consume the summary event stream for one query at a time.

    Args:
        session: Injected aiohttp session; the client never creates or closes it.
        valves: Endpoint, deadlines, retry and fallback configuration.
        fallback: Frame source used when the endpoint cannot be reached.
            Defaults to :class:`~summary_stream.api.producer.FallbackSimulator`.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        valves: Optional[Valves] = None,
        *,
        fallback: Any = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.session = session
        self.valves = valves or Valves()
        if fallback is None:
            from ..api.producer import FallbackSimulator

            fallback = FallbackSimulator(self.valves)
        self.fallback = fallback
        self.logger = logger or SessionLogger.get_logger(__name__)

    # ------------------------------------------------------------------
    # Request construction
    # ------------------------------------------------------------------

    def build_payload(self, query: str, options: SummaryRequestOptions) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "query": query,
            "userId": options.user_id or self.valves.DEFAULT_USER_ID,
            "language": options.language or self.valves.DEFAULT_LANGUAGE,
            "country": options.country or self.valves.DEFAULT_COUNTRY,
            "parent_thread_id": options.parent_thread_id or None,
            "mode": options.mode or self.valves.DEFAULT_MODE,
            "direct_image_request": bool(options.direct_image_request),
        }
        if options.session_id:
            payload["session_id"] = options.session_id
        return payload

    def build_headers(self, options: SummaryRequestOptions) -> dict[str, str]:
        headers = {
            "X-User-ID": options.user_id or self.valves.DEFAULT_USER_ID,
            "Content-Type": "application/json",
            "Accept": EVENT_CONTENT_TYPE,
        }
        api_key = EncryptedStr.decrypt(self.valves.API_KEY or "")
        if api_key:
            headers["X-API-Key"] = api_key
        return headers

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def stream(
        self,
        query: str,
        options: Optional[SummaryRequestOptions] = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Yield progress and content events, then exactly one CompletionEvent.

        Raises:
            FallbackUnavailableError: the endpoint was unreachable and the
                fallback answer could not be produced either.
        """
        opts = options or SummaryRequestOptions()
        request_id = uuid.uuid4().hex
        tokens = apply_logging_context(
            request_id=request_id,
            session_id=opts.session_id,
            user_id=opts.user_id or self.valves.DEFAULT_USER_ID,
            log_level=self.valves.LOG_LEVEL,
            max_lines=self.valves.SESSION_LOG_MAX_LINES,
            timing_enabled=self.valves.ENABLE_TIMING_LOG,
            timing_file=self.valves.TIMING_LOG_FILE,
        )
        try:
            assembler = ResponseAssembler(
                session_id=opts.session_id,
                request_id=request_id,
                error_template=self.valves.STREAM_ERROR_TEMPLATE,
                logger=self.logger,
            )
            yield ProgressEvent(STATUS_CONNECTING, StatusMessages.CONNECTING)

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.valves.STREAM_DEADLINE_SECONDS
            try:
                with timing_scope("stream_connect"):
                    context, resp = await self._open(
                        self.build_payload(query, opts),
                        self.build_headers(opts),
                        deadline,
                    )
            except UpstreamUnavailableError as exc:
                async for event in self._fallback_events(query, opts, assembler, exc):
                    yield event
                return

            try:
                timing_mark("stream_headers_received")
                assembler.set_header_session_id(resp.headers.get(SESSION_HEADER))
                async for event in self._read(
                    resp.content.iter_chunked(_READ_CHUNK_BYTES),
                    assembler,
                    deadline,
                    deadline_seconds=self.valves.STREAM_DEADLINE_SECONDS,
                ):
                    yield event
            finally:
                await context.__aexit__(None, None, None)
        finally:
            reset_logging_context(tokens)
            release_request_logs(request_id)

    async def fetch_summary(
        self,
        query: str,
        on_chunk: Optional[ChunkCallback] = None,
        on_status: Optional[StatusCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
        options: Optional[SummaryRequestOptions] = None,
    ) -> AssembledResponse:
        """Callback-style wrapper around :meth:`stream`.

        ``on_complete`` is invoked exactly once; callback exceptions are logged
        and never interrupt the stream. The response passed to ``on_complete``
        is the same object that is returned, and it may still gain citation
        keys from frames that arrive after completion, until the stream ends.
        """
        return await deliver_events(
            self.stream(query, options),
            on_chunk=on_chunk,
            on_status=on_status,
            on_complete=on_complete,
            logger=self.logger,
        )

    async def send_follow_up(
        self,
        question: str,
        session_id: str,
        *,
        user_id: Optional[str] = None,
        parent_thread_id: Optional[str] = None,
        mode: Optional[str] = None,
        on_chunk: Optional[ChunkCallback] = None,
        on_status: Optional[StatusCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
    ) -> AssembledResponse:
        """Ask a follow-up question inside an existing session/thread."""
        options = SummaryRequestOptions(
            session_id=session_id,
            user_id=user_id,
            parent_thread_id=parent_thread_id,
            mode=mode,
        )
        return await self.fetch_summary(question, on_chunk, on_status, on_complete, options)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def _open(
        self,
        payload: dict[str, Any],
        headers: dict[str, str],
        deadline: float,
    ) -> tuple[Any, Any]:
        """Connect with retries, returning (request context, response).

        Raises UpstreamUnavailableError when no usable response was obtained.
        """
        remaining = deadline - asyncio.get_running_loop().time()
        try:
            return await asyncio.wait_for(self._connect(payload, headers), timeout=max(remaining, 0.001))
        except _RetryableHTTPStatusError as exc:
            raise UpstreamUnavailableError(
                f"Summary service responded with HTTP {exc.status}",
                status=exc.status,
                body=exc.body,
            ) from exc
        except asyncio.TimeoutError as exc:
            raise UpstreamUnavailableError("Summary service did not answer before the deadline") from exc
        except (aiohttp.ClientError, OSError) as exc:
            raise UpstreamUnavailableError(f"Summary service unreachable: {exc or type(exc).__name__}") from exc

    async def _connect(self, payload: dict[str, Any], headers: dict[str, str]) -> tuple[Any, Any]:
        url = self.valves.SUMMARY_STREAM_URL
        connect_timeout = float(self.valves.HTTP_CONNECT_TIMEOUT_SECONDS)
        retryer = AsyncRetrying(
            stop=stop_after_attempt(self.valves.CONNECT_MAX_ATTEMPTS),
            wait=_RetryWait(wait_exponential(multiplier=0.5, min=0.5, max=4)),
            retry=retry_if_exception_type(
                (aiohttp.ClientConnectionError, asyncio.TimeoutError, _RetryableHTTPStatusError)
            ),
            reraise=True,
        )
        async for attempt in retryer:
            with attempt:
                self.logger.debug(
                    "Connecting to %s (attempt %d)", url, attempt.retry_state.attempt_number
                )
                context = self.session.post(
                    url,
                    json=payload,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=None, connect=connect_timeout, sock_connect=connect_timeout),
                )
                resp = await context.__aenter__()
                if resp.status >= 400:
                    body = await self._error_body(resp)
                    await context.__aexit__(None, None, None)
                    self.logger.warning(
                        "Connect failed with HTTP %s: %s", resp.status, body[:_ERROR_BODY_PREVIEW_CHARS]
                    )
                    retryable, retry_after = _classify_retryable_status(resp.status, resp.headers)
                    if retryable:
                        raise _RetryableHTTPStatusError(resp.status, retry_after, body)
                    raise UpstreamUnavailableError(
                        f"Summary service responded with HTTP {resp.status}",
                        status=resp.status,
                        reason=getattr(resp, "reason", None),
                        body=body,
                    )
                return context, resp
        raise UpstreamUnavailableError("Summary service connection attempts exhausted")

    @staticmethod
    async def _error_body(resp: Any) -> str:
        try:
            return await resp.text()
        except (aiohttp.ClientError, UnicodeDecodeError, OSError):
            return ""

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    async def _read(
        self,
        chunks: AsyncIterable[bytes],
        assembler: ResponseAssembler,
        deadline: float,
        *,
        deadline_seconds: float,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Pull chunks until EOF, deadline or read failure; always ends completed."""
        loop = asyncio.get_running_loop()
        iterator = chunks.__aiter__()
        first_chunk = True
        while True:
            remaining = deadline - loop.time()
            try:
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                chunk = await asyncio.wait_for(iterator.__anext__(), timeout=remaining)
            except StopAsyncIteration:
                break
            except asyncio.TimeoutError:
                failure = StreamInterruptedError(
                    f"No complete answer within {deadline_seconds:g}s",
                    partial_content=assembler.state.accumulated_content,
                    timed_out=True,
                )
                for event in assembler.fail(failure):
                    yield event
                return
            except (aiohttp.ClientError, OSError, asyncio.IncompleteReadError) as exc:
                failure = StreamInterruptedError(
                    f"Stream read failed: {exc or type(exc).__name__}",
                    partial_content=assembler.state.accumulated_content,
                )
                for event in assembler.fail(failure):
                    yield event
                return
            if first_chunk:
                first_chunk = False
                timing_mark("stream_first_chunk")
            for event in assembler.feed(chunk):
                yield event
        for event in assembler.finish():
            yield event

    async def _fallback_events(
        self,
        query: str,
        options: SummaryRequestOptions,
        assembler: ResponseAssembler,
        cause: UpstreamUnavailableError,
    ) -> AsyncGenerator[StreamEvent, None]:
        if not self.valves.ENABLE_CLIENT_FALLBACK:
            self.logger.warning("Summary service unavailable and fallback disabled: %s", cause)
            for event in assembler.fail(cause):
                yield event
            return

        self.logger.warning("Fallback answer used; summary service unavailable: %s", cause)
        timing_mark("stream_fallback")
        deadline = asyncio.get_running_loop().time() + self.valves.FALLBACK_DEADLINE_SECONDS
        try:
            async for event in self._read(
                self.fallback.stream_bytes(query, session_id=options.session_id),
                assembler,
                deadline,
                deadline_seconds=self.valves.FALLBACK_DEADLINE_SECONDS,
            ):
                yield event
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            self.logger.error("Fallback answer could not be produced: %s", exc)
            raise FallbackUnavailableError(f"Fallback answer could not be produced: {exc}") from exc
