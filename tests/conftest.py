"""Test configuration helpers for unit tests."""

from __future__ import annotations

import pytest

from summary_stream.core import timing_logger as tl
from summary_stream.core.config import Valves
from summary_stream.core.logging_system import SessionLogger


@pytest.fixture(autouse=True)
def _reset_global_logging_state():
    """Keep class-level log buffers and timing state from leaking between tests."""
    tl.clear_timing_context()
    yield
    tl.close_timing_file()
    tl.clear_timing_context()
    with tl._timing_lock:
        tl._timing_events.clear()
    with SessionLogger._state_lock:
        SessionLogger.logs.clear()
        SessionLogger._session_last_seen.clear()
    SessionLogger.max_lines = 2000


@pytest.fixture
def fast_valves() -> Valves:
    """Valves with pacing and retry delays removed."""
    return Valves(
        SUMMARY_STREAM_URL="http://summary.test/chat/stream",
        AI_SEARCH_BASE_URL="http://search.test",
        CONNECT_MAX_ATTEMPTS=1,
        REAL_WORD_DELAY_SECONDS=0,
        FALLBACK_WORD_DELAY_SECONDS=0,
        REAL_STATUS_DELAY_SECONDS=0,
        FALLBACK_STATUS_DELAY_SECONDS=0,
        STREAM_DEADLINE_SECONDS=5,
        FALLBACK_DEADLINE_SECONDS=5,
    )
