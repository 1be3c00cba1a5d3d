"""Wire models and per-request state for the summary stream.

- Frame: one decoded event (status token plus optional payload)
- Citation / Source: reference metadata carried by terminal frames
- AssembledResponse: the engine's final answer object
- StreamState: mutable accumulator owned by one ResponseAssembler
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _coerce_optional_text(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (int, float, bool)):
        return str(value)
    return value


# -----------------------------------------------------------------------------
# Pydantic Wire Models
# -----------------------------------------------------------------------------


class Frame(BaseModel):
    """One event from the stream: ``{status, session_id?, message?, data?}``.

    Unknown keys (``query``, ``progress``, ``error``...) are kept in ``model_extra``.
    """

    status: str = ""
    session_id: Optional[str] = None
    message: Optional[str] = None
    data: Any = None
    model_config = ConfigDict(extra="allow")

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> Any:
        if value is None:
            return ""
        return _coerce_optional_text(value)

    @field_validator("session_id", "message", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        return _coerce_optional_text(value)

    @property
    def payload(self) -> Optional[dict[str, Any]]:
        """Return ``data`` when it is a structured object."""
        return self.data if isinstance(self.data, dict) else None

    def extra(self, key: str, default: Any = None) -> Any:
        return (self.model_extra or {}).get(key, default)


class Citation(BaseModel):
    """Reference metadata for one cited source. Immutable once received."""

    title: str = ""
    url: str = ""
    year: Optional[Union[str, int]] = None
    authors: Optional[List[str]] = None
    source_type: Optional[str] = None
    journal: Optional[str] = None
    doi: Optional[str] = None
    drug_citation_type: Optional[str] = None
    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("title", "url", mode="before")
    @classmethod
    def _blank_when_missing(cls, value: Any) -> Any:
        if value is None:
            return ""
        return _coerce_optional_text(value)

    @field_validator("source_type", "journal", "doi", "drug_citation_type", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        return _coerce_optional_text(value)

    @field_validator("authors", mode="before")
    @classmethod
    def _coerce_authors(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value] if value.strip() else None
        return value

    @classmethod
    def from_value(cls, value: Any) -> "Citation":
        """Build a citation from a dict, or from a bare title string."""
        if isinstance(value, Citation):
            return value
        if isinstance(value, str):
            return cls(title=value, url="")
        if isinstance(value, dict):
            return cls.model_validate(value)
        raise TypeError(f"unsupported citation value: {type(value).__name__}")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class Source(BaseModel):
    """Normalized source entry listed next to the citation map."""

    title: str
    url: str = "#"
    snippet: str = ""
    model_config = ConfigDict(extra="ignore")


class AssembledResponse(BaseModel):
    """Final answer delivered exactly once per request."""

    short_summary: Optional[str] = None
    processed_content: str = ""
    citations: Dict[str, Citation] = Field(default_factory=dict)
    session_id: Optional[str] = None
    thread_id: Optional[str] = None
    sources: List[Source] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "processed_content": self.processed_content,
            "citations": {key: citation.to_wire() for key, citation in self.citations.items()},
        }
        if self.short_summary is not None:
            payload["short_summary"] = self.short_summary
        if self.session_id:
            payload["session_id"] = self.session_id
        if self.thread_id:
            payload["thread_id"] = self.thread_id
        if self.sources:
            payload["sources"] = [source.model_dump() for source in self.sources]
        if self.error is not None:
            payload["error"] = self.error
        return payload


# -----------------------------------------------------------------------------
# Per-request State
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class StreamState:
    """Accumulator for one logical request. Never shared across requests."""

    buffer: str = ""
    accumulated_content: str = ""
    citations: Dict[str, Citation] = field(default_factory=dict)
    session_id: Optional[str] = None
    completed: bool = False
    frames_seen: int = 0
