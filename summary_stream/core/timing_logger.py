"""Per-request timing instrumentation.

Three recording primitives, all no-ops unless timing is enabled for the
current request (see :func:`set_timing_context`):

- ``@timed``: enter/exit events around a sync or async function
- ``timing_scope(label)``: enter/exit events around a block
- ``timing_mark(label)``: a single point-in-time event (first chunk, completion)

Events are buffered per request id and, when a sink is configured through the
TIMING_LOG_FILE valve, appended to that file as JSON lines.
"""

from __future__ import annotations

import datetime
import functools
import inspect
import json
import threading
import time
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, TextIO, TypeVar

MAX_TIMING_EVENTS = 10000

_PACKAGE_PREFIX = "summary_stream."

_timing_enabled: ContextVar[bool] = ContextVar("timing_enabled", default=False)
_timing_request_id: ContextVar[Optional[str]] = ContextVar("timing_request_id", default=None)

_timing_events: Dict[str, Deque[Dict[str, Any]]] = {}
_timing_lock = threading.Lock()

_timing_file_lock = threading.Lock()
_timing_file_path: Optional[Path] = None
_timing_file_handle: Optional[TextIO] = None


def _utc_iso(wall_ts: float) -> str:
    stamp = datetime.datetime.fromtimestamp(wall_ts, tz=datetime.timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _emit(event: str, label: str, *, perf_ts: float, elapsed_ms: Optional[float] = None) -> None:
    request_id = _timing_request_id.get()
    if not _timing_enabled.get() or not request_id:
        return
    record: Dict[str, Any] = {
        "ts": _utc_iso(time.time()),
        "perf_ts": round(perf_ts, 6),
        "event": event,
        "label": label,
        "request_id": request_id,
    }
    if elapsed_ms is not None:
        record["elapsed_ms"] = round(elapsed_ms, 3)

    with _timing_file_lock:
        if _timing_file_handle is not None:
            try:
                _timing_file_handle.write(json.dumps(record, separators=(",", ":")) + "\n")
                _timing_file_handle.flush()
            except (OSError, ValueError):
                pass

    with _timing_lock:
        buffer = _timing_events.setdefault(request_id, deque(maxlen=MAX_TIMING_EVENTS))
        buffer.append(record)


# -----------------------------------------------------------------------------
# File sink
# -----------------------------------------------------------------------------


def _close_handle_locked() -> None:
    global _timing_file_handle, _timing_file_path
    if _timing_file_handle is not None:
        try:
            _timing_file_handle.close()
        except OSError:
            pass
    _timing_file_handle = None
    _timing_file_path = None


def configure_timing_file(file_path: str) -> bool:
    """Append timing records to ``file_path``, creating parent directories.

    Returns False (and leaves no sink configured) when the file cannot be opened.
    """
    global _timing_file_handle, _timing_file_path
    path = Path(file_path)
    with _timing_file_lock:
        _close_handle_locked()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            _timing_file_handle = open(path, "a", encoding="utf-8")
        except OSError:
            return False
        _timing_file_path = path
        return True


def close_timing_file() -> None:
    with _timing_file_lock:
        _close_handle_locked()


def ensure_timing_file_configured(file_path: str) -> bool:
    """Open the sink unless it is already open on the same path."""
    with _timing_file_lock:
        if _timing_file_handle is not None and _timing_file_path == Path(file_path):
            return True
    return configure_timing_file(file_path)


# -----------------------------------------------------------------------------
# Request context and buffers
# -----------------------------------------------------------------------------


def set_timing_context(request_id: str, enabled: bool) -> None:
    _timing_request_id.set(request_id)
    _timing_enabled.set(enabled)


def clear_timing_context() -> None:
    _timing_request_id.set(None)
    _timing_enabled.set(False)


def get_timing_events(request_id: str) -> List[Dict[str, Any]]:
    with _timing_lock:
        return list(_timing_events.get(request_id, ()))


def clear_timing_events(request_id: str) -> None:
    with _timing_lock:
        _timing_events.pop(request_id, None)


# -----------------------------------------------------------------------------
# Recording
# -----------------------------------------------------------------------------


def timing_mark(label: str) -> None:
    """Record a point-in-time event, e.g. ``timing_mark("stream_first_chunk")``."""
    if _timing_enabled.get():
        _emit("mark", label, perf_ts=time.perf_counter())


@contextmanager
def timing_scope(label: str) -> Iterator[None]:
    """Record enter/exit events, with elapsed milliseconds on exit."""
    if not _timing_enabled.get():
        yield
        return
    started = time.perf_counter()
    _emit("enter", label, perf_ts=started)
    try:
        yield
    finally:
        finished = time.perf_counter()
        _emit("exit", label, perf_ts=finished, elapsed_ms=(finished - started) * 1000)


F = TypeVar("F", bound=Callable[..., Any])


def timed(func: F) -> F:
    """Wrap ``func`` in a timing scope labelled ``<module>.<qualname>``.

    The package prefix is dropped from the module name. Async generators are
    not supported; time their steps with ``timing_scope`` instead.
    """
    module = getattr(func, "__module__", "") or ""
    if module.startswith(_PACKAGE_PREFIX):
        module = module[len(_PACKAGE_PREFIX):]
    qualname = getattr(func, "__qualname__", None) or getattr(func, "__name__", "unknown")
    label = f"{module}.{qualname}" if module else qualname

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            if not _timing_enabled.get():
                return await func(*args, **kwargs)
            with timing_scope(label):
                return await func(*args, **kwargs)

        return async_wrapper  # type: ignore[return-value]

    @functools.wraps(func)
    def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
        if not _timing_enabled.get():
            return func(*args, **kwargs)
        with timing_scope(label):
            return func(*args, **kwargs)

    return sync_wrapper  # type: ignore[return-value]
