"""Circuit breaker for upstream search failures.

When the upstream AI search backend fails repeatedly the producer stops calling
it for a while and streams the fallback answer straight away.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque

from .timing_logger import timed


class CircuitBreaker:
    """Sliding-window failure counter keyed by upstream scope (usually a URL).

    The breaker opens once ``threshold`` failures land inside ``window_seconds``
    and closes again as those failures age out or after ``reset``.
    """

    @timed
    def __init__(self, *, threshold: int, window_seconds: float):
        """Initialize the circuit breaker.

        Args:
            threshold: Maximum failures allowed within the time window
            window_seconds: Time window in seconds for counting failures
        """
        self._threshold = max(1, int(threshold))
        self._window_seconds = max(0.1, float(window_seconds))
        self._lock = threading.Lock()
        self._records: dict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=self._threshold)
        )

    @property
    def threshold(self) -> int:
        return self._threshold

    @property
    def window_seconds(self) -> float:
        return self._window_seconds

    def allows(self, scope: str) -> bool:
        """Return True while the breaker for ``scope`` is closed."""
        if not scope:
            return True
        now = time.time()
        with self._lock:
            window = self._records[scope]
            while window and now - window[0] > self._window_seconds:
                window.popleft()
            return len(window) < self._threshold

    def record_failure(self, scope: str) -> None:
        if not scope:
            return
        with self._lock:
            self._records[scope].append(time.time())

    def reset(self, scope: str) -> None:
        """Clear all failure records for ``scope``."""
        if not scope:
            return
        with self._lock:
            window = self._records.get(scope)
            if window is not None:
                window.clear()
