"""
Tests for SSE utility functions.

Tests cover:
- SSE wire format helper
- Stream event rendering
- Heartbeat and retry frames
"""

from assistant_core.services.interfaces import StreamEvent
from assistant_core.utils.sse_utils import (
    sse_format,
    sse_heartbeat,
    sse_retry,
    stream_event_to_sse,
)


def test_sse_format_basic():
    """Test basic SSE formatting."""
    result = sse_format({"message": "hello"}, event="test")
    assert result == 'event: test\ndata: {"message":"hello"}\n\n'

    result = sse_format("simple string", event="ping")
    assert result == "event: ping\ndata: simple string\n\n"

    result = sse_format({"value": 42})
    assert result == 'data: {"value":42}\n\n'


def test_sse_format_with_id_and_retry():
    result = sse_format({"content": "test"}, event="chunk", id="req-1:0", retry=3000)
    assert result.startswith("event: chunk\nid: req-1:0\nretry: 3000\n")


def test_sse_format_multiline_string():
    """Each line of a multi-line payload gets its own data field."""
    result = sse_format("line one\nline two", event="chunk")
    assert result == "event: chunk\ndata: line one\ndata: line two\n\n"


def test_stream_event_to_sse_uses_request_and_sequence():
    event = StreamEvent(
        type="chunk", data={"content": "Hi"}, request_id="req-9", sequence=4
    )

    assert stream_event_to_sse(event) == (
        'event: chunk\nid: req-9:4\ndata: {"content":"Hi"}\n\n'
    )


def test_stream_event_without_request_id_has_no_id():
    event = StreamEvent(type="error", data={"error": "X"})
    assert "id:" not in stream_event_to_sse(event)


def test_heartbeat_and_retry():
    assert sse_heartbeat() == ": hb\n\n"
    assert sse_retry(5000) == "retry: 5000\n\n"
