"""Per-request logging for the summary stream engine.

Loggers obtained from :meth:`SessionLogger.get_logger` tag every record with
the request, session and user ids held in contextvars, print it to stdout when
it meets the request's console level, and keep a structured copy in a bounded
per-request buffer. Concurrent requests never share a buffer.

Request handlers bracket their work with :func:`apply_logging_context` and
:func:`reset_logging_context`; buffers are pruned by :meth:`SessionLogger.cleanup`.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
import traceback
from collections import deque
from contextvars import ContextVar, Token
from typing import Any, Deque, Dict, Optional

from .timing_logger import (
    clear_timing_context,
    clear_timing_events,
    ensure_timing_file_configured,
    set_timing_context,
    timed,
)

LOGGER = logging.getLogger(__name__)

_MIN_BUFFER_LINES = 100
_MAX_BUFFER_LINES = 200000

_EVENT_PREFIXES: tuple[tuple[str, str], ...] = (
    ("Stream frame:", "stream.frame"),
    ("Connecting", "stream.connect"),
    ("Connect ", "stream.connect"),
    ("Fallback", "stream.fallback"),
    ("Upstream", "producer.upstream"),
    ("Producer", "producer"),
)


class _RequestContextFilter(logging.Filter):
    """Copy the SessionLogger contextvars onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        request_id = SessionLogger.request_id.get()
        record.request_id = request_id
        record.session_id = SessionLogger.session_id.get()
        record.user_id = SessionLogger.user_id.get() or "-"
        record.session_log_level = SessionLogger.log_level.get()
        if request_id:
            SessionLogger.touch(request_id)
        return True


class _SessionHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        SessionLogger.process_record(record)


class SessionLogger:
    """Context-aware logging with an in-memory buffer per request.

    Attributes:
        session_id: conversation session id of the current request.
        request_id: key of the current request's buffer.
        user_id: caller's user id.
        log_level: minimum level printed to stdout for the current request.
        logs: request_id -> bounded deque of structured events.
    """

    session_id: ContextVar[Optional[str]] = ContextVar("session_id", default=None)
    request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
    user_id: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
    log_level: ContextVar[int] = ContextVar("log_level", default=logging.INFO)
    max_lines: int = 2000
    logs: Dict[str, Deque[dict[str, Any]]] = {}
    _session_last_seen: Dict[str, float] = {}
    _state_lock = threading.Lock()
    _console_formatter = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    @staticmethod
    def _classify_event_type(message: str) -> str:
        text = (message or "").lstrip()
        return next((kind for prefix, kind in _EVENT_PREFIXES if text.startswith(prefix)), "engine")

    @classmethod
    def _build_event(cls, record: logging.LogRecord) -> dict[str, Any]:
        message = record.getMessage()
        event: dict[str, Any] = {
            "created": record.created,
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", None),
            "session_id": getattr(record, "session_id", None),
            "user_id": getattr(record, "user_id", None),
            "event_type": cls._classify_event_type(message),
            "func": record.funcName,
            "lineno": record.lineno,
            "message": message,
        }
        if record.exc_text:
            event["exception"] = {"text": record.exc_text}
        elif record.exc_info:
            event["exception"] = {"text": "".join(traceback.format_exception(*record.exc_info))}
        return event

    @classmethod
    @timed
    def get_logger(cls, name: str = __name__) -> logging.Logger:
        """Return the named logger wired to the request context.

        Existing handlers and filters on that logger are replaced. Records
        still propagate to the root logger.
        """
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.filters.clear()
        logger.setLevel(logging.DEBUG)
        logger.propagate = True
        logger.addFilter(_RequestContextFilter())
        logger.addHandler(_SessionHandler())
        return logger

    @classmethod
    def set_max_lines(cls, value: Any) -> None:
        try:
            lines = int(value)
        except (TypeError, ValueError):
            return
        cls.max_lines = max(_MIN_BUFFER_LINES, min(_MAX_BUFFER_LINES, lines))

    @classmethod
    def touch(cls, request_id: str) -> None:
        with cls._state_lock:
            cls._session_last_seen[request_id] = time.time()

    @classmethod
    def process_record(cls, record: logging.LogRecord) -> None:
        """Print ``record`` if it meets the request level, then buffer it."""
        if record.levelno >= int(getattr(record, "session_log_level", logging.INFO)):
            try:
                sys.stdout.write(cls._console_formatter.format(record) + "\n")
                sys.stdout.flush()
            except (OSError, ValueError):
                pass  # closed stdout
        request_id = getattr(record, "request_id", None)
        if not request_id:
            return
        event = cls._build_event(record)
        with cls._state_lock:
            buffer = cls.logs.get(request_id)
            if buffer is None or buffer.maxlen != cls.max_lines:
                buffer = deque(buffer or (), maxlen=cls.max_lines)
                cls.logs[request_id] = buffer
            buffer.append(event)
            cls._session_last_seen[request_id] = time.time()

    @classmethod
    def get_events(cls, request_id: str) -> list[dict[str, Any]]:
        with cls._state_lock:
            return list(cls.logs.get(request_id, ()))

    @classmethod
    def cleanup(cls, max_age_seconds: float = 3600) -> None:
        """Drop buffers of requests idle for longer than ``max_age_seconds``."""
        cutoff = time.time() - max_age_seconds
        with cls._state_lock:
            for request_id in [rid for rid, seen in cls._session_last_seen.items() if seen < cutoff]:
                cls.logs.pop(request_id, None)
                del cls._session_last_seen[request_id]

    @classmethod
    def discard(cls, request_id: str) -> None:
        with cls._state_lock:
            cls.logs.pop(request_id, None)
            cls._session_last_seen.pop(request_id, None)


# -----------------------------------------------------------------------------
# Request Context
# -----------------------------------------------------------------------------

ContextTokens = list[tuple[ContextVar[Any], Token[Any]]]


def apply_logging_context(
    *,
    request_id: str,
    session_id: Optional[str] = None,
    user_id: Optional[str] = None,
    log_level: str = "INFO",
    max_lines: Optional[int] = None,
    timing_enabled: bool = False,
    timing_file: Optional[str] = None,
) -> ContextTokens:
    """Bind the logging and timing context for one request."""
    if max_lines is not None:
        SessionLogger.set_max_lines(max_lines)
    level = logging.getLevelName(str(log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO
    tokens: ContextTokens = [
        (SessionLogger.session_id, SessionLogger.session_id.set(session_id or None)),
        (SessionLogger.request_id, SessionLogger.request_id.set(request_id)),
        (SessionLogger.user_id, SessionLogger.user_id.set(user_id or None)),
        (SessionLogger.log_level, SessionLogger.log_level.set(level)),
    ]
    if timing_enabled and timing_file and not ensure_timing_file_configured(timing_file):
        LOGGER.warning("Timing log file %s could not be opened", timing_file)
    set_timing_context(request_id, timing_enabled)
    return tokens


def reset_logging_context(tokens: ContextTokens) -> None:
    """Undo :func:`apply_logging_context`."""
    for var, token in reversed(tokens):
        try:
            var.reset(token)
        except ValueError:
            # token belongs to another context, e.g. a generator resumed elsewhere
            var.set(logging.INFO if var is SessionLogger.log_level else None)
    clear_timing_context()


def release_request_logs(request_id: str) -> None:
    """Free the log and timing buffers of a finished request."""
    SessionLogger.discard(request_id)
    SessionLogger.cleanup()
    clear_timing_events(request_id)
