"""Per-request response assembly.

ResponseAssembler owns one StreamState and applies decoded frames to it in
arrival order. CompletionGuard makes sure exactly one completion is produced,
whichever of the two terminal shapes arrives first, or on EOF, or on failure.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from ..core.config import ERROR_SHORT_SUMMARY
from ..core.errors import StreamInterruptedError, _describe_failure
from ..core.timing_logger import timing_mark
from ..core.utils import _normalize_optional_str
from .dispatcher import DispatchKind, StatusDispatcher
from .events import CompletionEvent, ContentEvent, ProgressEvent, StreamEvent
from .frames import AssembledResponse, Citation, Frame, Source, StreamState
from .sse_parser import FrameDecoder, PayloadParser

LOGGER = logging.getLogger(__name__)


class CompletionGuard:
    """One-shot latch around the terminal callback."""

    def __init__(self) -> None:
        self._fired = False

    @property
    def fired(self) -> bool:
        return self._fired

    def run(self, build: Callable[[], AssembledResponse]) -> Optional[AssembledResponse]:
        """Build and return the response the first time; return None afterwards."""
        if self._fired:
            return None
        self._fired = True
        return build()


class ResponseAssembler:
    """Turn raw stream bytes into ordered events and one final response.

    Args:
        session_id: Caller-supplied session id, used when the terminal frame has none.
        request_id: Reference stamped into error diagnostics.
        error_template: ``{{#if}}`` template for the diagnostic of errored responses.
    """

    def __init__(
        self,
        *,
        session_id: Optional[str] = None,
        request_id: Optional[str] = None,
        error_template: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or LOGGER
        self.state = StreamState(session_id=_normalize_optional_str(session_id))
        self.guard = CompletionGuard()
        self.decoder = FrameDecoder(logger=self.logger)
        self.parser = PayloadParser(logger=self.logger)
        self.dispatcher = StatusDispatcher(logger=self.logger)
        self.request_id = request_id
        self.error_template = error_template
        self.header_session_id: Optional[str] = None
        self._result: Optional[AssembledResponse] = None

    @property
    def completed(self) -> bool:
        return self.guard.fired

    @property
    def result(self) -> Optional[AssembledResponse]:
        return self._result

    def set_header_session_id(self, value: Any) -> None:
        self.header_session_id = _normalize_optional_str(value)

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        """Decode one network chunk and apply every completed frame."""
        payloads = self.decoder.feed(chunk)
        self.state.buffer = self.decoder.pending
        return self._apply_payloads(payloads)

    def finish(self) -> list[StreamEvent]:
        """Handle end of stream: flush the buffer and guarantee a completion."""
        events = self._apply_payloads(self.decoder.flush())
        self.state.buffer = ""
        if not self.guard.fired:
            self.logger.info(
                "Stream ended without a terminal frame; completing with %d accumulated chars",
                len(self.state.accumulated_content),
            )
            response = self.guard.run(lambda: self._build_response(None))
            if response is not None:
                events.append(self._complete(response))
        return events

    def fail(self, exc: BaseException) -> list[StreamEvent]:
        """Complete with an errored response unless a completion already fired."""
        if self.guard.fired:
            self.logger.debug("Failure after completion ignored: %s", exc)
            return []
        partial = self.state.accumulated_content
        if isinstance(exc, StreamInterruptedError) and not partial:
            partial = exc.partial_content
        self.logger.warning("Completing request with an error: %s", exc)
        diagnostic = _describe_failure(
            exc,
            partial_content=partial,
            request_id=self.request_id,
            template=self.error_template,
        )
        response = self.guard.run(lambda: self._build_error_response(partial, diagnostic))
        return [self._complete(response)] if response is not None else []

    # ------------------------------------------------------------------
    # Frame application
    # ------------------------------------------------------------------

    def _apply_payloads(self, payloads: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for payload in payloads:
            parsed = self.parser.parse(payload)
            self.state.frames_seen += 1
            if parsed.frame is None:
                events.extend(self._append_content(parsed.literal or ""))
                continue
            events.extend(self._apply_frame(parsed.frame))
        return events

    def _apply_frame(self, frame: Frame) -> list[StreamEvent]:
        dispatch = self.dispatcher.dispatch(frame)
        if dispatch.kind is DispatchKind.CONTENT:
            return self._append_content(dispatch.content)
        if dispatch.kind is DispatchKind.PROGRESS:
            if self.guard.fired:
                return []
            return [ProgressEvent(dispatch.status, dispatch.message)]
        if dispatch.kind is DispatchKind.TERMINAL:
            return self._terminal(frame)
        if dispatch.kind is DispatchKind.ERROR:
            return self.fail(StreamInterruptedError(dispatch.message or "", partial_content=self.state.accumulated_content))
        return []

    def _append_content(self, text: str) -> list[StreamEvent]:
        if not text:
            return []
        if self.guard.fired:
            self.logger.debug("Content after completion dropped (%d chars)", len(text))
            return []
        if not self.state.accumulated_content:
            timing_mark("stream_first_content")
        self.state.accumulated_content += text
        return [ContentEvent(text)]

    def _terminal(self, frame: Frame) -> list[StreamEvent]:
        payload = frame.payload or {}
        self._merge_citations(payload.get("citations"))
        if self.guard.fired:
            # Late citations still reach the delivered response.
            if self._result is not None and not self._result.is_error:
                self._result.citations.update(self.state.citations)
            self.logger.debug("Additional terminal frame ignored")
            return []
        response = self.guard.run(lambda: self._build_response(frame))
        return [self._complete(response)] if response is not None else []

    def _merge_citations(self, raw: Any) -> None:
        if not isinstance(raw, dict):
            return
        for key, value in raw.items():
            ref_id = str(key)
            try:
                citation = Citation.from_value(value)
            except (TypeError, ValueError) as exc:
                self.logger.warning("Citation %s skipped: %s", ref_id, exc)
                continue
            existing = self.state.citations.get(ref_id)
            if existing is not None and existing != citation:
                self.logger.warning(
                    "Citation %s conflicts with an earlier value; keeping the later one (%r -> %r)",
                    ref_id,
                    existing.title,
                    citation.title,
                )
            self.state.citations[ref_id] = citation

    # ------------------------------------------------------------------
    # Result construction
    # ------------------------------------------------------------------

    def _resolve_session_id(self, frame: Optional[Frame]) -> Optional[str]:
        candidates: list[Any] = []
        if frame is not None:
            payload = frame.payload or {}
            candidates.extend([payload.get("session_id"), frame.session_id])
        candidates.extend([self.state.session_id, self.header_session_id])
        for candidate in candidates:
            resolved = _normalize_optional_str(candidate)
            if resolved:
                return resolved
        return None

    def _build_response(self, frame: Optional[Frame]) -> AssembledResponse:
        payload = (frame.payload if frame is not None else None) or {}
        content = self.state.accumulated_content
        if not content:
            embedded = payload.get("processed_content")
            if isinstance(embedded, str):
                content = embedded
        session_id = self._resolve_session_id(frame)
        self.state.session_id = session_id
        return AssembledResponse(
            short_summary=payload.get("short_summary") if isinstance(payload.get("short_summary"), str) else None,
            processed_content=content,
            citations=dict(self.state.citations),
            session_id=session_id,
            thread_id=_normalize_optional_str(payload.get("thread_id")),
            sources=self._sources(payload.get("sources")),
        )

    def _build_error_response(self, partial: str, diagnostic: str) -> AssembledResponse:
        session_id = self._resolve_session_id(None)
        self.state.session_id = session_id
        return AssembledResponse(
            short_summary=ERROR_SHORT_SUMMARY,
            processed_content=partial,
            citations=dict(self.state.citations),
            session_id=session_id,
            error=diagnostic,
        )

    def _sources(self, raw: Any) -> list[Source]:
        if not isinstance(raw, list):
            return []
        sources: list[Source] = []
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            try:
                sources.append(Source.model_validate(entry))
            except ValueError as exc:
                self.logger.debug("Source entry skipped: %s", exc)
        return sources

    def _complete(self, response: AssembledResponse) -> CompletionEvent:
        self.state.completed = True
        self._result = response
        timing_mark("stream_completed")
        return CompletionEvent(response)
