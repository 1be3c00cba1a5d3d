"""Typed stream events and the callback bridge.

The engine yields ProgressEvent / ContentEvent items in arrival order and
exactly one CompletionEvent, always last. :func:`deliver_events` replays such
a sequence into ``on_chunk`` / ``on_status`` / ``on_complete`` callbacks.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

from ..core.timing_logger import timed
from .frames import AssembledResponse

LOGGER = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Union[None, Awaitable[None]]]
StatusCallback = Callable[[str, Optional[str]], Union[None, Awaitable[None]]]
CompleteCallback = Callable[[AssembledResponse], Union[None, Awaitable[None]]]


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    status: str
    message: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ContentEvent:
    """Only the new fragment, never the running total."""

    text: str


@dataclass(frozen=True, slots=True)
class CompletionEvent:
    response: AssembledResponse


StreamEvent = Union[ProgressEvent, ContentEvent, CompletionEvent]


def _wrap_safe_callback(
    callback: Optional[Callable[..., Any]],
    label: str,
    logger: logging.Logger,
) -> Optional[Callable[..., Awaitable[None]]]:
    """Return a wrapper that logs callback failures instead of raising them."""
    if callback is None:
        return None

    async def _guarded(*args: Any) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning("Callback failure (%s): %s", label, exc)

    return _guarded


@timed
async def deliver_events(
    events: AsyncIterator[StreamEvent],
    *,
    on_chunk: Optional[ChunkCallback] = None,
    on_status: Optional[StatusCallback] = None,
    on_complete: Optional[CompleteCallback] = None,
    logger: Optional[logging.Logger] = None,
) -> AssembledResponse:
    """Drive ``events`` to exhaustion, invoking the matching callback per event.

    Returns the response carried by the completion event.
    """
    log = logger or LOGGER
    chunk_cb = _wrap_safe_callback(on_chunk, "chunk", log)
    status_cb = _wrap_safe_callback(on_status, "status", log)
    complete_cb = _wrap_safe_callback(on_complete, "complete", log)

    final: Optional[AssembledResponse] = None
    async for event in events:
        if isinstance(event, ContentEvent):
            if chunk_cb:
                await chunk_cb(event.text)
        elif isinstance(event, ProgressEvent):
            if status_cb:
                await status_cb(event.status, event.message)
        elif isinstance(event, CompletionEvent):
            if final is not None:
                log.error("Duplicate completion event dropped")
                continue
            final = event.response
            if complete_cb:
                await complete_cb(event.response)
    if final is None:
        raise RuntimeError("stream ended without a completion event")
    return final
