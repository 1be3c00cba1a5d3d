"""Status token dispatch for decoded frames.

Every frame maps to exactly one outcome: progress, content, terminal, error
or ignored. Terminal detection lives in :func:`is_terminal` so both terminal
shapes (``complete`` and a citations-bearing payload) share one predicate.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..core.config import (
    PROGRESS_STATUSES,
    STATUS_CHUNK,
    STATUS_COMPLETE,
    STATUS_COMPLETE_IMAGE,
    STATUS_ERROR,
    STATUS_FORMATTING,
    STATUS_FORMATTING_RESPONSE,
)
from ..core.errors import StatusMessages
from .frames import Frame

LOGGER = logging.getLogger(__name__)


class DispatchKind(str, Enum):
    PROGRESS = "progress"
    CONTENT = "content"
    TERMINAL = "terminal"
    ERROR = "error"
    IGNORED = "ignored"


@dataclass(slots=True)
class Dispatch:
    """Outcome of dispatching one frame."""

    kind: DispatchKind
    frame: Optional[Frame] = None
    status: str = ""
    message: Optional[str] = None
    content: str = ""


def is_terminal(frame: Frame) -> bool:
    """Return True when ``frame`` should complete the request successfully."""
    payload = frame.payload
    if payload is None:
        return False
    if frame.status == STATUS_COMPLETE:
        return True
    return isinstance(payload.get("citations"), dict)


def normalize_status(status: str) -> str:
    """Map wire tokens onto the names reported to callers."""
    if status == STATUS_FORMATTING_RESPONSE:
        return STATUS_FORMATTING
    return status


class StatusDispatcher:
    """Map a frame's status token onto a dispatch outcome."""

    def __init__(self, *, logger: Optional[logging.Logger] = None):
        self.logger = logger or LOGGER
        self.unknown_statuses: set[str] = set()

    def dispatch(self, frame: Frame) -> Dispatch:
        status = frame.status
        if status == STATUS_ERROR:
            return Dispatch(DispatchKind.ERROR, frame=frame, status=status, message=self._error_detail(frame))
        if is_terminal(frame):
            return Dispatch(DispatchKind.TERMINAL, frame=frame, status=STATUS_COMPLETE)
        if status in PROGRESS_STATUSES:
            reported = normalize_status(status)
            return Dispatch(
                DispatchKind.PROGRESS,
                frame=frame,
                status=reported,
                message=frame.message or StatusMessages.for_status(reported),
            )
        if status == STATUS_CHUNK:
            text = self._chunk_text(frame)
            if text is not None:
                return Dispatch(DispatchKind.CONTENT, frame=frame, status=status, content=text)
            self.logger.debug("Stream frame: chunk without string data ignored")
            return Dispatch(DispatchKind.IGNORED, frame=frame, status=status)
        if status == STATUS_COMPLETE_IMAGE:
            if frame.data is None:
                return Dispatch(DispatchKind.IGNORED, frame=frame, status=status)
            return Dispatch(
                DispatchKind.PROGRESS,
                frame=frame,
                status=status,
                message=json.dumps(frame.data, ensure_ascii=False),
            )
        if not status and isinstance(frame.data, str):
            return Dispatch(DispatchKind.CONTENT, frame=frame, content=frame.data)
        if status and status != STATUS_COMPLETE and status not in self.unknown_statuses:
            self.unknown_statuses.add(status)
            self.logger.info("Stream frame: unrecognized status %r ignored", status)
        else:
            self.logger.debug("Stream frame: status %r without a usable payload ignored", status)
        return Dispatch(DispatchKind.IGNORED, frame=frame, status=status)

    @staticmethod
    def _chunk_text(frame: Frame) -> Optional[str]:
        """Text of a chunk frame: ``data``, ``data.chunk`` or a top-level ``chunk``."""
        if isinstance(frame.data, str):
            return frame.data
        if isinstance(frame.data, dict) and isinstance(frame.data.get("chunk"), str):
            return frame.data["chunk"]
        top_level = frame.extra("chunk")
        return top_level if isinstance(top_level, str) else None

    @staticmethod
    def _error_detail(frame: Frame) -> str:
        for candidate in (frame.extra("error"), frame.message, frame.data):
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
        if isinstance(frame.data, dict):
            for key in ("error", "message", "detail"):
                value = frame.data.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return "The summary service reported an error."
