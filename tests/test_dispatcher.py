"""Tests for StatusDispatcher and terminal detection."""

from __future__ import annotations

import logging

import pytest

from summary_stream.core.errors import StatusMessages
from summary_stream.streaming.dispatcher import (
    DispatchKind,
    StatusDispatcher,
    is_terminal,
    normalize_status,
)
from summary_stream.streaming.frames import Frame


def _frame(**kwargs) -> Frame:
    return Frame.model_validate(kwargs)


class TestIsTerminal:
    """Both terminal shapes complete the request."""

    def test_complete_with_payload(self) -> None:
        assert is_terminal(_frame(status="complete", data={"processed_content": "x"}))

    def test_citations_payload_without_complete_status(self) -> None:
        assert is_terminal(_frame(data={"citations": {"1": {"title": "A"}}}))
        assert is_terminal(_frame(status="summarizing", data={"citations": {}}))

    def test_complete_without_payload_is_not_terminal(self) -> None:
        assert not is_terminal(_frame(status="complete"))
        assert not is_terminal(_frame(status="complete", data="done"))

    def test_non_dict_citations_is_not_terminal(self) -> None:
        assert not is_terminal(_frame(data={"citations": ["1", "2"]}))


class TestStatusDispatcher:
    """One outcome per frame, in a fixed precedence order."""

    def test_error_wins_over_terminal_payload(self) -> None:
        result = StatusDispatcher().dispatch(
            _frame(status="error", message="boom", data={"citations": {}})
        )
        assert result.kind is DispatchKind.ERROR
        assert result.message == "boom"

    @pytest.mark.parametrize(
        "status",
        ["processing", "searching", "summarizing", "status", "formatting", "generating_visual"],
    )
    def test_progress_statuses(self, status: str) -> None:
        result = StatusDispatcher().dispatch(_frame(status=status, message="Working"))
        assert result.kind is DispatchKind.PROGRESS
        assert result.status == status
        assert result.message == "Working"

    def test_formatting_response_is_reported_as_formatting(self) -> None:
        result = StatusDispatcher().dispatch(_frame(status="formatting response"))
        assert result.kind is DispatchKind.PROGRESS
        assert result.status == "formatting"
        assert result.message == StatusMessages.FORMATTING

    def test_progress_without_message_uses_default_text(self) -> None:
        result = StatusDispatcher().dispatch(_frame(status="searching"))
        assert result.message == StatusMessages.SEARCHING

    def test_chunk_with_string_data_is_content(self) -> None:
        result = StatusDispatcher().dispatch(_frame(status="chunk", data="Hello "))
        assert result.kind is DispatchKind.CONTENT
        assert result.content == "Hello "

    def test_chunk_object_data_is_content(self) -> None:
        result = StatusDispatcher().dispatch(
            _frame(status="chunk", data={"chunk": "word ", "progress": 50})
        )
        assert result.kind is DispatchKind.CONTENT
        assert result.content == "word "

    def test_top_level_chunk_field_is_content(self) -> None:
        result = StatusDispatcher().dispatch(_frame(status="chunk", chunk="word ", progress=50))
        assert result.kind is DispatchKind.CONTENT
        assert result.content == "word "

    def test_chunk_without_string_data_is_ignored(self) -> None:
        result = StatusDispatcher().dispatch(_frame(status="chunk", data={"x": 1}))
        assert result.kind is DispatchKind.IGNORED

    def test_complete_image_is_progress_with_serialized_data(self) -> None:
        result = StatusDispatcher().dispatch(
            _frame(status="complete_image", data={"images": ["a.png"]})
        )
        assert result.kind is DispatchKind.PROGRESS
        assert result.status == "complete_image"
        assert result.message == '{"images": ["a.png"]}'

    def test_statusless_string_data_is_content(self) -> None:
        result = StatusDispatcher().dispatch(_frame(data="raw"))
        assert result.kind is DispatchKind.CONTENT
        assert result.content == "raw"

    def test_unknown_status_logged_once(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.INFO, logger="summary_stream.streaming.dispatcher")
        dispatcher = StatusDispatcher()
        first = dispatcher.dispatch(_frame(status="thinking", data="x"))
        second = dispatcher.dispatch(_frame(status="thinking", data="y"))
        assert first.kind is DispatchKind.IGNORED
        assert second.kind is DispatchKind.IGNORED
        assert dispatcher.unknown_statuses == {"thinking"}
        hits = [rec for rec in caplog.records if "unrecognized status" in rec.getMessage()]
        assert len(hits) == 1


class TestErrorDetail:
    """Error frames carry the most specific detail available."""

    def test_prefers_error_field(self) -> None:
        result = StatusDispatcher().dispatch(
            _frame(status="error", message="An error occurred during AI search", error="upstream 502")
        )
        assert result.message == "upstream 502"

    def test_falls_back_to_payload_detail(self) -> None:
        result = StatusDispatcher().dispatch(_frame(status="error", data={"detail": "quota"}))
        assert result.message == "quota"

    def test_generic_detail_when_empty(self) -> None:
        result = StatusDispatcher().dispatch(_frame(status="error"))
        assert result.message == "The summary service reported an error."


def test_normalize_status_passthrough() -> None:
    assert normalize_status("searching") == "searching"
    assert normalize_status("formatting response") == "formatting"
