"""Server-Sent Events (SSE) decoding for summary streams.

This module turns raw response bytes into frames:
- FrameDecoder: incremental UTF-8 decode, line buffering across arbitrary
  chunk boundaries, ``data: `` prefix filtering
- PayloadParser: JSON decode of one payload with literal-text degradation
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Optional, Union

from pydantic import ValidationError

from ..core.config import EVENT_PREFIX
from .frames import Frame

LOGGER = logging.getLogger(__name__)


class FrameDecoder:
    """Split an arbitrarily chunked byte stream into event payloads.

    Chunks may split a line anywhere, including inside the ``data: `` prefix
    or inside a multi-byte UTF-8 sequence. Complete lines are released as soon
    as their newline arrives; the trailing partial line stays buffered until
    the next chunk or :meth:`flush`.
    """

    def __init__(self, *, prefix: str = EVENT_PREFIX, logger: Optional[logging.Logger] = None):
        self.prefix = prefix
        self.logger = logger or LOGGER
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.discarded_lines = 0

    @property
    def pending(self) -> str:
        """Text buffered after the last newline."""
        return self._buffer

    def feed(self, chunk: Union[bytes, bytearray, str]) -> list[str]:
        """Consume one chunk and return the payloads of every completed line."""
        if isinstance(chunk, str):
            text = chunk
        else:
            text = self._decoder.decode(bytes(chunk))
        if not text:
            return []
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._extract(lines)

    def flush(self) -> list[str]:
        """Release the buffered tail at end of stream.

        Bare text is kept. A tail that opens a JSON value but does not parse was
        cut off by the disconnect and is dropped.
        """
        tail = self._decoder.decode(b"", final=True)
        remainder = self._buffer + tail
        self._buffer = ""
        if not remainder.strip():
            return []
        return [payload for payload in self._extract(remainder.split("\n")) if self._well_formed(payload)]

    def _well_formed(self, payload: str) -> bool:
        if not payload.lstrip().startswith(("{", "[")):
            return True
        try:
            json.loads(payload)
        except ValueError:
            self.logger.warning(
                "Stream frame: truncated payload dropped at end of stream (%d chars)", len(payload)
            )
            return False
        return True

    def _extract(self, lines: list[str]) -> list[str]:
        payloads: list[str] = []
        for line in lines:
            if line.endswith("\r"):
                line = line[:-1]
            if not line:
                continue
            if not line.startswith(self.prefix):
                self.discarded_lines += 1
                continue
            payload = line[len(self.prefix):]
            if payload:
                payloads.append(payload)
        return payloads


@dataclass(slots=True)
class ParsedPayload:
    """Result of parsing one payload: either a frame or literal text."""

    frame: Optional[Frame] = None
    literal: Optional[str] = None


class PayloadParser:
    """Interpret a payload as a JSON frame, degrading to literal content.

    Bytes are never dropped: anything that is not a JSON object describing a
    frame is handed back as literal text for the content accumulator.
    """

    def __init__(self, *, logger: Optional[logging.Logger] = None):
        self.logger = logger or LOGGER

    def parse(self, payload: str) -> ParsedPayload:
        try:
            decoded = json.loads(payload)
        except ValueError:
            self.logger.debug("Stream frame: non-JSON payload kept as text (%d chars)", len(payload))
            return ParsedPayload(literal=payload)
        if not isinstance(decoded, dict):
            self.logger.debug(
                "Stream frame: JSON %s payload kept as text", type(decoded).__name__
            )
            return ParsedPayload(literal=payload)
        try:
            return ParsedPayload(frame=Frame.model_validate(decoded))
        except ValidationError as exc:
            self.logger.warning(
                "Stream frame: payload did not match the frame schema, kept as text: %s",
                exc.errors()[0].get("msg") if exc.errors() else exc,
            )
            return ParsedPayload(literal=payload)
