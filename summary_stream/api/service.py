"""Answer streaming orchestration: real upstream data or the fallback simulator."""

from __future__ import annotations

import logging
from typing import Any, AsyncGenerator, Optional

from ..core.config import Valves
from ..core.errors import StatusMessages, UpstreamUnavailableError
from ..core.timing_logger import timed, timing_mark
from .producer import FallbackSimulator, FrameProducer, Sleep, encode_frame, normalize_search_results
from .upstream import UpstreamSearchClient, usable_results

LOGGER = logging.getLogger(__name__)


def fallback_search_payload(query: str, mode: Optional[str], *, unreachable: bool) -> dict[str, Any]:
    """Search document returned by the proxy route when the upstream fails."""
    if unreachable:
        substance = "AI search service is temporarily unavailable"
        details = (
            f'Our AI search service is temporarily unavailable. Please try searching for "{query}" '
            "in EMA mode for official European Medicines Agency drug information."
        )
        message = "AI search temporarily unavailable. Please use EMA mode."
    else:
        substance = "AI search service is currently being configured"
        details = (
            f"We're working on setting up our AI search capabilities. In the meantime, please try "
            f'searching for "{query}" in EMA mode for official drug information.'
        )
        message = "AI search service is being configured. Please use EMA mode for now."
    return {
        "status": "fallback",
        "results": [
            {
                "name": f'Search results for "{query}"',
                "brand_name": query,
                "active_substance": [substance],
                "details": details,
                "url": "",
                "source_type": "fallback",
            }
        ],
        "query": query,
        "mode": mode,
        "total_results": 1,
        "message": message,
    }


class AnswerStreamService:
    """Produce the event stream for one query.

    Emits a starting status, then either the paced upstream answer or the
    fallback answer, and always exactly one terminal frame. If production
    itself breaks after the stream opened, an ``error`` frame closes it.
    """

    def __init__(
        self,
        valves: Valves,
        upstream: UpstreamSearchClient,
        *,
        fallback: Optional[FallbackSimulator] = None,
        sleep: Optional[Sleep] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.valves = valves
        self.upstream = upstream
        self.fallback = fallback or FallbackSimulator(valves, sleep=sleep)
        self.real_producer = FrameProducer(
            word_delay=valves.REAL_WORD_DELAY_SECONDS,
            status_delay=valves.REAL_STATUS_DELAY_SECONDS,
            sleep=sleep,
        )
        self.logger = logger or LOGGER

    async def stream(self, query: str, *, session_id: str) -> AsyncGenerator[bytes, None]:
        try:
            yield encode_frame(FrameProducer.status_frame(StatusMessages.STARTING_SEARCH, query=query))
            results = await self._fetch_results(query)
            if results is None:
                timing_mark("producer_fallback")
                async for frame in self.fallback.frames(query, session_id=session_id):
                    yield encode_frame(frame)
                return
            content, sources, citations = normalize_search_results(results)
            async for frame in self.real_producer.stream_answer(
                content,
                citations=citations,
                sources=sources,
                session_id=session_id,
                status_message=StatusMessages.PROCESSING_RESULTS,
            ):
                yield encode_frame(frame)
        except Exception as exc:
            self.logger.error("Producer failed while streaming: %s", exc, exc_info=True)
            yield encode_frame(FrameProducer.error_frame(str(exc) or type(exc).__name__))

    async def _fetch_results(self, query: str) -> Optional[list[dict[str, Any]]]:
        try:
            payload = await self.upstream.search(query, timeout=self.valves.UPSTREAM_SEARCH_TIMEOUT_SECONDS)
        except UpstreamUnavailableError as exc:
            self.logger.warning("Upstream unavailable, streaming fallback answer: %s", exc)
            return None
        results = usable_results(payload)
        if results is None:
            self.logger.warning("Upstream returned no usable results, streaming fallback answer")
        return results

    @timed
    async def search(self, query: str, mode: Optional[str] = None) -> dict[str, Any]:
        """Proxy a search to the upstream, substituting a fallback document on failure."""
        try:
            return await self.upstream.search(
                query,
                mode=mode,
                timeout=self.valves.SEARCH_PROXY_TIMEOUT_SECONDS,
            )
        except UpstreamUnavailableError as exc:
            self.logger.warning("Upstream search proxy failed: %s", exc)
            return fallback_search_payload(query, mode, unreachable=exc.status is None)
