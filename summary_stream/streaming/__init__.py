"""Streaming response ingestion subsystem.

This package contains the consumer side of the summary stream:
- frames: wire models (Frame, Citation, AssembledResponse) and StreamState
- sse_parser: FrameDecoder and PayloadParser
- dispatcher: StatusDispatcher and the is_terminal predicate
- assembler: ResponseAssembler and CompletionGuard
- events: typed stream events and the callback bridge
- streaming_core: SummaryStreamClient, the network read loop
"""

from .frames import AssembledResponse, Citation, Frame, Source, StreamState
from .sse_parser import FrameDecoder, PayloadParser
from .dispatcher import StatusDispatcher, is_terminal
from .assembler import CompletionGuard, ResponseAssembler
from .events import CompletionEvent, ContentEvent, ProgressEvent, StreamEvent
from .streaming_core import SummaryRequestOptions, SummaryStreamClient

__all__ = [
    "AssembledResponse",
    "Citation",
    "Frame",
    "Source",
    "StreamState",
    "FrameDecoder",
    "PayloadParser",
    "StatusDispatcher",
    "is_terminal",
    "CompletionGuard",
    "ResponseAssembler",
    "CompletionEvent",
    "ContentEvent",
    "ProgressEvent",
    "StreamEvent",
    "SummaryRequestOptions",
    "SummaryStreamClient",
]
