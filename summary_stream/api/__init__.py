"""Producer subsystem.

This package emits the frames the streaming client consumes:
- producer: FrameProducer and FallbackSimulator
- upstream: UpstreamSearchClient for the AI search backend
- service: AnswerStreamService (real data vs fallback)
- routes: FastAPI application factory
"""

from __future__ import annotations

from .producer import FallbackSimulator, FrameProducer, encode_frame
from .upstream import UpstreamSearchClient
from .service import AnswerStreamService

# The FastAPI app factory is accessed via api.routes

__all__ = [
    "FallbackSimulator",
    "FrameProducer",
    "encode_frame",
    "UpstreamSearchClient",
    "AnswerStreamService",
]
