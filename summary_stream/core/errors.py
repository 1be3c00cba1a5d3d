"""Error handling for the summary stream engine.

This module handles all error-related functionality:
- Exception taxonomy (upstream unavailable, interrupted stream, fallback failure)
- StatusMessages: default user-facing text for each status token
- Retry classification for the connection phase (Tenacity integration)
- Diagnostic rendering for errored responses

Recoverable failures never leave the engine as exceptions; they become an
errored AssembledResponse. Only FallbackUnavailableError crosses that boundary.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .config import (
    DEFAULT_STREAM_ERROR_TEMPLATE,
    STATUS_COMPLETE,
    STATUS_COMPLETE_IMAGE,
    STATUS_CONNECTING,
    STATUS_FORMATTING,
    STATUS_GENERATING_VISUAL,
    STATUS_PROCESSING,
    STATUS_SEARCHING,
    STATUS_STATUS,
    STATUS_SUMMARIZING,
)
from .timing_logger import timed
from .utils import _render_error_template, _retry_after_seconds

LOGGER = logging.getLogger(__name__)

_RETRYABLE_STATUSES = frozenset({408, 425, 429})

# -----------------------------------------------------------------------------
# Exception Taxonomy
# -----------------------------------------------------------------------------


class SummaryStreamError(RuntimeError):
    """Base class for engine errors."""


class UpstreamUnavailableError(SummaryStreamError):
    """The backend could not be reached or returned nothing usable."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        reason: Optional[str] = None,
        body: Optional[str] = None,
    ) -> None:
        self.status = status
        self.reason = (reason or "").strip() or None
        self.body = body or ""
        super().__init__(message)


class StreamInterruptedError(SummaryStreamError):
    """The stream failed after it opened: read error, disconnect or deadline."""

    def __init__(self, message: str, *, partial_content: str = "", timed_out: bool = False) -> None:
        self.partial_content = partial_content
        self.timed_out = timed_out
        super().__init__(message)


class FallbackUnavailableError(SummaryStreamError):
    """The fallback simulator could not produce an answer."""


# -----------------------------------------------------------------------------
# Supporting Classes
# -----------------------------------------------------------------------------


class _RetryableHTTPStatusError(Exception):
    """Marks an HTTP status received during connect as worth another attempt."""

    def __init__(self, status: int, retry_after: Optional[float] = None, body: str = ""):
        self.status = status
        self.retry_after = retry_after
        self.body = body
        super().__init__(f"Retryable HTTP error ({status})")


class _RetryWait:
    """Tenacity wait strategy honoring Retry-After headers."""

    def __init__(self, base_wait):
        self._base_wait = base_wait

    def __call__(self, retry_state):
        """Return the greater of base delay or Retry-After guidance."""
        base_delay = self._base_wait(retry_state) if self._base_wait else 0
        exc = None
        if retry_state.outcome is not None and retry_state.outcome.failed:
            exc = retry_state.outcome.exception()
        if isinstance(exc, _RetryableHTTPStatusError):
            retry_after = exc.retry_after
            if isinstance(retry_after, (int, float)) and retry_after > 0:
                return max(base_delay, retry_after)
        return base_delay


class StatusMessages:
    """Default status descriptions shown when a frame carries no message."""

    CONNECTING = "Connecting to summary service..."
    PROCESSING = "Analyzing your Query"
    SEARCHING = "Gathering Sources"
    SUMMARIZING = "Generating Precision Answer"
    FORMATTING = "Formatting your Answer"
    GENERATING_VISUAL = "Generating your Visual"
    COMPLETE = "Done"
    COMPLETE_IMAGE = "Images Ready"
    DEFAULT = "Processing your request..."

    # Producer-side progress text
    STARTING_SEARCH = "Starting AI search..."
    PROCESSING_RESULTS = "Processing AI search results..."
    SEARCHING_DATABASES = "Searching medical databases..."
    SEARCH_FAILED = "An error occurred during AI search"

    _BY_STATUS = {
        STATUS_CONNECTING: CONNECTING,
        STATUS_PROCESSING: PROCESSING,
        STATUS_SEARCHING: SEARCHING,
        STATUS_SUMMARIZING: SUMMARIZING,
        STATUS_STATUS: DEFAULT,
        STATUS_FORMATTING: FORMATTING,
        STATUS_GENERATING_VISUAL: GENERATING_VISUAL,
        STATUS_COMPLETE: COMPLETE,
        STATUS_COMPLETE_IMAGE: COMPLETE_IMAGE,
    }

    @classmethod
    def for_status(cls, status: str) -> str:
        return cls._BY_STATUS.get(status, cls.DEFAULT)


# -----------------------------------------------------------------------------
# Error Helper Functions
# -----------------------------------------------------------------------------


def _classify_retryable_status(
    status: int,
    headers: Optional[Any] = None,
) -> tuple[bool, Optional[float]]:
    """Return (is_retryable, retry_after_seconds) for an HTTP status."""
    if status >= 500 or status in _RETRYABLE_STATUSES:
        retry_after = headers.get("Retry-After") if headers is not None else None
        return True, _retry_after_seconds(retry_after)
    return False, None


@timed
def _describe_failure(
    exc: BaseException,
    *,
    partial_content: str = "",
    request_id: Optional[str] = None,
    template: Optional[str] = None,
) -> str:
    """Render the diagnostic message carried by an errored response."""
    status = getattr(exc, "status", None)
    detail = str(exc).strip() or type(exc).__name__
    values: dict[str, Any] = {
        "status": status if isinstance(status, int) else None,
        "detail": detail,
        "received_chars": len(partial_content) if partial_content else None,
        "request_id": request_id or "",
    }
    try:
        return _render_error_template(template or DEFAULT_STREAM_ERROR_TEMPLATE, values)
    except (KeyError, ValueError, TypeError) as render_exc:
        LOGGER.error("Error template rendering failed: %s", render_exc)
        return f"Error: {detail}"
