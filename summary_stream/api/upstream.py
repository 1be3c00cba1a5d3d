"""HTTP client for the upstream AI search backend."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import aiohttp

from ..core.circuit_breaker import CircuitBreaker
from ..core.config import Valves
from ..core.errors import UpstreamUnavailableError
from ..core.timing_logger import timed

LOGGER = logging.getLogger(__name__)

_DEFAULT_SEARCH_MODE = "ai"
_ERROR_BODY_PREVIEW_CHARS = 500


def usable_results(payload: Any) -> Optional[list[dict[str, Any]]]:
    """Return the result list when the payload reports success with results."""
    if not isinstance(payload, dict) or payload.get("status") != "success":
        return None
    results = payload.get("results")
    if not isinstance(results, list):
        return None
    results = [entry for entry in results if isinstance(entry, dict)]
    return results or None


class UpstreamSearchClient:
    """POST ``{query, mode}`` to ``<AI_SEARCH_BASE_URL>/api/ai-search``.

    Failures are counted on the circuit breaker; while it is open, calls fail
    fast with :class:`UpstreamUnavailableError` and never touch the network.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        valves: Optional[Valves] = None,
        *,
        breaker: Optional[CircuitBreaker] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.session = session
        self.valves = valves or Valves()
        self.breaker = breaker or CircuitBreaker(
            threshold=self.valves.BREAKER_THRESHOLD,
            window_seconds=self.valves.BREAKER_WINDOW_SECONDS,
        )
        self.logger = logger or LOGGER

    @property
    def url(self) -> str:
        return self.valves.ai_search_url

    @timed
    async def search(self, query: str, *, mode: Optional[str] = None, timeout: float) -> dict[str, Any]:
        url = self.url
        if not self.breaker.allows(url):
            self.logger.warning("Upstream circuit open for %s; skipping call", url)
            raise UpstreamUnavailableError("Upstream circuit breaker is open")

        body = {"query": query.strip(), "mode": mode or _DEFAULT_SEARCH_MODE}
        try:
            async with self.session.post(
                url,
                json=body,
                headers={"Content-Type": "application/json"},
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                if resp.status >= 400:
                    error_text = await resp.text()
                    self.breaker.record_failure(url)
                    self.logger.error(
                        "Upstream search failed: %s %s",
                        resp.status,
                        error_text[:_ERROR_BODY_PREVIEW_CHARS],
                    )
                    raise UpstreamUnavailableError(
                        f"Backend AI search failed: {resp.status}",
                        status=resp.status,
                        reason=resp.reason,
                        body=error_text,
                    )
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.breaker.record_failure(url)
            self.logger.error("Upstream search connection error: %s", exc or type(exc).__name__)
            raise UpstreamUnavailableError(f"Backend AI search unreachable: {exc or type(exc).__name__}") from exc
        except ValueError as exc:
            self.breaker.record_failure(url)
            self.logger.error("Upstream search returned invalid JSON: %s", exc)
            raise UpstreamUnavailableError("Backend AI search returned invalid JSON") from exc

        if not isinstance(payload, dict):
            self.breaker.record_failure(url)
            raise UpstreamUnavailableError("Backend AI search returned a non-object payload")
        self.breaker.reset(url)
        self.logger.info("Upstream search completed with status %r", payload.get("status"))
        return payload
