"""Streaming summary ingestion and reassembly.

This package turns a backend's chunked event stream into one assembled answer:
- core: configuration, errors, logging, timing, circuit breaker
- streaming: frame decoding, dispatch, assembly and the network client
- api: frame producer, fallback simulator and the FastAPI routes

Imports are resolved lazily via __getattr__ so that importing the client does
not pull in FastAPI.
"""

from typing import TYPE_CHECKING

try:
    from importlib.metadata import PackageNotFoundError, version as _get_version
    __version__ = _get_version("summary-stream")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback if not installed as package

if TYPE_CHECKING:
    from .core.config import Valves, EncryptedStr
    from .core.errors import (
        SummaryStreamError,
        UpstreamUnavailableError,
        StreamInterruptedError,
        FallbackUnavailableError,
        StatusMessages,
    )
    from .core.logging_system import SessionLogger
    from .streaming.frames import AssembledResponse, Citation, Frame
    from .streaming.events import CompletionEvent, ContentEvent, ProgressEvent
    from .streaming.streaming_core import SummaryRequestOptions, SummaryStreamClient
    from .api.producer import FallbackSimulator, FrameProducer
    from .api.routes import create_app

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    # Config
    "Valves": (".core.config", "Valves"),
    "EncryptedStr": (".core.config", "EncryptedStr"),

    # Errors
    "SummaryStreamError": (".core.errors", "SummaryStreamError"),
    "UpstreamUnavailableError": (".core.errors", "UpstreamUnavailableError"),
    "StreamInterruptedError": (".core.errors", "StreamInterruptedError"),
    "FallbackUnavailableError": (".core.errors", "FallbackUnavailableError"),
    "StatusMessages": (".core.errors", "StatusMessages"),

    # Logging
    "SessionLogger": (".core.logging_system", "SessionLogger"),

    # Streaming
    "AssembledResponse": (".streaming.frames", "AssembledResponse"),
    "Citation": (".streaming.frames", "Citation"),
    "Frame": (".streaming.frames", "Frame"),
    "ProgressEvent": (".streaming.events", "ProgressEvent"),
    "ContentEvent": (".streaming.events", "ContentEvent"),
    "CompletionEvent": (".streaming.events", "CompletionEvent"),
    "SummaryRequestOptions": (".streaming.streaming_core", "SummaryRequestOptions"),
    "SummaryStreamClient": (".streaming.streaming_core", "SummaryStreamClient"),

    # Producer
    "FallbackSimulator": (".api.producer", "FallbackSimulator"),
    "FrameProducer": (".api.producer", "FrameProducer"),
    "create_app": (".api.routes", "create_app"),
}

__all__ = ["__version__", *_LAZY_IMPORTS]

_cache: dict[str, object] = {}


def __getattr__(name: str):
    """Lazy-load public attributes on first access."""
    if name in _cache:
        return _cache[name]
    if name in _LAZY_IMPORTS:
        module_path, attr_name = _LAZY_IMPORTS[name]
        import importlib
        module = importlib.import_module(module_path, __name__)
        value = getattr(module, attr_name)
        _cache[name] = value
        globals()[name] = value
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
