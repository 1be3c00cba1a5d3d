"""Core infrastructure module.

Foundation services required by the streaming and api layers:
- Configuration schemas (Valves, EncryptedStr)
- Error taxonomy and status text
- Session logging
- Circuit breaker
- Pure utility functions
"""

from .config import Valves, EncryptedStr, LOGGER
from .errors import (
    FallbackUnavailableError,
    StatusMessages,
    StreamInterruptedError,
    SummaryStreamError,
    UpstreamUnavailableError,
)
from .logging_system import SessionLogger
from .circuit_breaker import CircuitBreaker
from .utils import _render_error_template

__all__ = [
    "Valves",
    "EncryptedStr",
    "LOGGER",
    "SummaryStreamError",
    "UpstreamUnavailableError",
    "StreamInterruptedError",
    "FallbackUnavailableError",
    "StatusMessages",
    "SessionLogger",
    "CircuitBreaker",
    "_render_error_template",
]
