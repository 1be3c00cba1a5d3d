"""Shared helpers for the summary stream engine.

- Diagnostic template rendering with ``{{#if name}}`` blocks
- Optional-string normalization for loosely typed wire fields
- Retry-After header parsing
"""

from __future__ import annotations

import datetime
import email.utils
import re
from typing import Any, Optional

from .config import DEFAULT_STREAM_ERROR_TEMPLATE

_BLOCK_MARKER_RE = re.compile(r"\{\{\s*(?:#if\s+(?P<name>\w+)|/if)\s*\}\}")

# -----------------------------------------------------------------------------
# Template Rendering
# -----------------------------------------------------------------------------


def _render_error_template(template: str, values: dict[str, Any]) -> str:
    """Fill ``{name}`` placeholders, honoring ``{{#if name}}...{{/if}}`` blocks.

    Block markers may share a line with text. A line is omitted when it sits
    inside a false block or references a placeholder whose value is empty.
    """
    open_blocks: list[bool] = []
    output: list[str] = []
    for raw_line in (template or DEFAULT_STREAM_ERROR_TEMPLATE).splitlines():
        kept = _strip_block_markers(raw_line, open_blocks, values)
        if not kept:
            if not raw_line.strip() and all(open_blocks):
                output.append("")
            continue
        line = _fill_placeholders(kept, values)
        if line is not None:
            output.append(line)
    return "\n".join(output).strip()


def _strip_block_markers(line: str, open_blocks: list[bool], values: dict[str, Any]) -> str:
    """Drop block markers from ``line``, updating ``open_blocks`` as they pass."""
    kept: list[str] = []
    cursor = 0
    for marker in _BLOCK_MARKER_RE.finditer(line):
        if all(open_blocks):
            kept.append(line[cursor:marker.start()])
        name = marker.group("name")
        if name is not None:
            open_blocks.append(_has_value(values.get(name)))
        elif open_blocks:
            open_blocks.pop()
        cursor = marker.end()
    if all(open_blocks):
        kept.append(line[cursor:])
    return "".join(kept)


def _fill_placeholders(line: str, values: dict[str, Any]) -> Optional[str]:
    for name, value in values.items():
        token = "{" + name + "}"
        if token not in line:
            continue
        if not _has_value(value):
            return None
        line = line.replace(token, str(value))
    return line


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return True
    return bool(value)


# -----------------------------------------------------------------------------
# String Normalization
# -----------------------------------------------------------------------------


def _normalize_optional_str(value: Any) -> Optional[str]:
    """Trimmed string form of ``value``, or None when empty."""
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    return text.strip() or None


def _first_text(value: Any) -> Optional[str]:
    """First non-empty entry of a string list, or the string itself."""
    if not isinstance(value, list):
        return _normalize_optional_str(value)
    for entry in value:
        text = _normalize_optional_str(entry)
        if text:
            return text
    return None


# -----------------------------------------------------------------------------
# HTTP Utilities
# -----------------------------------------------------------------------------


def _retry_after_seconds(value: Optional[str]) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    text = (value or "").strip()
    if not text:
        return None
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        when = email.utils.parsedate_to_datetime(text)
    except (TypeError, ValueError, OverflowError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=datetime.timezone.utc)
    delta = when - datetime.datetime.now(datetime.timezone.utc)
    return max(0.0, delta.total_seconds())
