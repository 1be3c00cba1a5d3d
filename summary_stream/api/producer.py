"""Frame production for the streaming route and the fallback simulator.

Both the real-data path and the fallback path emit the same frame schema:

    data: {"status": "status", "message": "..."}
    data: {"status": "chunk", "data": "word ", "progress": 12}
    ...
    data: {"status": "complete", "data": {"processed_content": ..., "citations": {...},
                                          "sources": [...], "session_id": ...}}

so a single FrameDecoder serves either side.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, AsyncGenerator, Awaitable, Callable, Iterator, Optional

from ..core.config import (
    EVENT_PREFIX,
    NO_DETAILS_TEXT,
    STATUS_CHUNK,
    STATUS_COMPLETE,
    STATUS_ERROR,
    STATUS_STATUS,
    Valves,
)
from ..core.errors import StatusMessages
from ..core.utils import _first_text, _normalize_optional_str
from ..streaming.frames import Citation, Source

LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

FALLBACK_SOURCES: tuple[Source, ...] = (
    Source(
        title="European Medicines Agency (EMA)",
        url="https://www.ema.europa.eu",
        snippet="Official European drug regulatory information",
    ),
    Source(title="Medical Literature Database", url="#", snippet="Peer-reviewed medical research and studies"),
    Source(title="Clinical Guidelines", url="#", snippet="Evidence-based clinical practice guidelines"),
)

FALLBACK_CITATIONS: dict[str, Citation] = {
    "1": Citation(title="European Medicines Agency - Official drug information", url="https://www.ema.europa.eu"),
    "2": Citation(title="Medical literature review", url=""),
    "3": Citation(title="Clinical practice guidelines", url=""),
}


def encode_frame(frame: dict[str, Any]) -> bytes:
    """Serialize one frame as an event line followed by a blank line."""
    return f"{EVENT_PREFIX}{json.dumps(frame, ensure_ascii=False)}\n\n".encode("utf-8")


def split_words(text: str) -> list[str]:
    """Split ``text`` into chunk fragments whose concatenation is ``text``.

    Splits on single spaces; every fragment but the last keeps its space.
    """
    if not text:
        return []
    words = text.split(" ")
    return [word + " " for word in words[:-1]] + [words[-1]]


def normalize_search_results(
    results: list[dict[str, Any]],
) -> tuple[str, list[Source], dict[str, Citation]]:
    """Return (content, sources, citations) for an upstream result list."""
    main = results[0] if results else {}
    content = (
        _normalize_optional_str(main.get("details"))
        or _first_text(main.get("active_substance"))
        or NO_DETAILS_TEXT
    )
    sources: list[Source] = []
    citations: dict[str, Citation] = {}
    for index, result in enumerate(results):
        if not isinstance(result, dict):
            continue
        name = _normalize_optional_str(result.get("name")) or _normalize_optional_str(result.get("brand_name"))
        url = _normalize_optional_str(result.get("url"))
        details = _normalize_optional_str(result.get("details"))
        snippet = (
            _first_text(result.get("active_substance"))
            or (details[:150] + "..." if details else None)
            or "AI-generated medical information"
        )
        sources.append(Source(title=name or f"Source {index + 1}", url=url or "#", snippet=snippet))
        citations[str(index + 1)] = Citation(title=name or f"AI Source {index + 1}", url=url or "")
    return content, sources, citations


class FrameProducer:
    """Fragment a fully formed answer into paced frames.

    Args:
        word_delay: Pause before each chunk frame.
        status_delay: Pause after the leading status frame.
        sleep: Awaitable sleep; tests pass a no-op.
    """

    def __init__(self, *, word_delay: float, status_delay: float, sleep: Optional[Sleep] = None):
        self.word_delay = max(0.0, float(word_delay))
        self.status_delay = max(0.0, float(status_delay))
        self._sleep = sleep or asyncio.sleep

    @staticmethod
    def status_frame(message: str, **extra: Any) -> dict[str, Any]:
        frame: dict[str, Any] = {"status": STATUS_STATUS, "message": message}
        frame.update(extra)
        return frame

    @staticmethod
    def chunk_frames(text: str) -> Iterator[dict[str, Any]]:
        words = split_words(text)
        total = len(words)
        for index, word in enumerate(words):
            yield {
                "status": STATUS_CHUNK,
                "data": word,
                "progress": round((index + 1) / total * 100),
            }

    @staticmethod
    def terminal_frame(
        content: str,
        *,
        citations: dict[str, Citation],
        sources: list[Source],
        session_id: str,
    ) -> dict[str, Any]:
        return {
            "status": STATUS_COMPLETE,
            "data": {
                "processed_content": content,
                "citations": {key: citation.to_wire() for key, citation in citations.items()},
                "sources": [source.model_dump() for source in sources],
                "session_id": session_id,
            },
        }

    @staticmethod
    def error_frame(detail: str) -> dict[str, Any]:
        return {
            "status": STATUS_ERROR,
            "message": StatusMessages.SEARCH_FAILED,
            "error": detail,
        }

    async def stream_answer(
        self,
        content: str,
        *,
        citations: dict[str, Citation],
        sources: list[Source],
        session_id: str,
        status_message: str,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Yield status, one chunk per word, then exactly one terminal frame."""
        yield self.status_frame(status_message)
        if self.status_delay:
            await self._sleep(self.status_delay)
        for frame in self.chunk_frames(content):
            if self.word_delay:
                await self._sleep(self.word_delay)
            yield frame
        yield self.terminal_frame(content, citations=citations, sources=sources, session_id=session_id)


class FallbackSimulator:
    """Manufacture a plausible answer when the upstream is unusable."""

    def __init__(self, valves: Optional[Valves] = None, *, sleep: Optional[Sleep] = None):
        self.valves = valves or Valves()
        self.producer = FrameProducer(
            word_delay=self.valves.FALLBACK_WORD_DELAY_SECONDS,
            status_delay=self.valves.FALLBACK_STATUS_DELAY_SECONDS,
            sleep=sleep,
        )

    def answer_text(self, query: str) -> str:
        template = self.valves.FALLBACK_ANSWER_TEMPLATE
        if not template.strip():
            raise ValueError("fallback answer template is empty")
        return template.replace("{query}", query)

    def citations(self) -> dict[str, Citation]:
        return dict(FALLBACK_CITATIONS)

    def sources(self) -> list[Source]:
        return list(FALLBACK_SOURCES)

    async def frames(self, query: str, *, session_id: Optional[str] = None) -> AsyncGenerator[dict[str, Any], None]:
        resolved = _normalize_optional_str(session_id) or uuid.uuid4().hex
        LOGGER.info("Fallback answer streaming for query of %d chars", len(query))
        async for frame in self.producer.stream_answer(
            self.answer_text(query),
            citations=self.citations(),
            sources=self.sources(),
            session_id=resolved,
            status_message=StatusMessages.SEARCHING_DATABASES,
        ):
            yield frame

    async def stream_bytes(self, query: str, *, session_id: Optional[str] = None) -> AsyncGenerator[bytes, None]:
        async for frame in self.frames(query, session_id=session_id):
            yield encode_frame(frame)
