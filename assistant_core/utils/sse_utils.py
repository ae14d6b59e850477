"""
SSE (Server-Sent Events) wire-format helpers.

Stream events from the pipeline are rendered here; multi-line payloads get one
`data:` line per line and every event ends with a blank line.
"""

import json
from typing import Any, Optional

from assistant_core.services.interfaces import StreamEvent


def sse_format(
    data: Any,
    event: Optional[str] = None,
    id: Optional[str] = None,
    retry: Optional[int] = None,
) -> str:
    """
    Format data as a Server-Sent Event.

    Args:
        data: Payload; JSON-encoded unless already a string
        event: Optional event type (e.g., "chunk", "final_message", "error")
        id: Optional event ID for client-side tracking
        retry: Optional retry interval in milliseconds

    Examples:
        >>> sse_format({"content": "Hello"}, event="chunk")
        'event: chunk\\ndata: {"content":"Hello"}\\n\\n'
    """
    lines = []
    if event:
        lines.append(f"event: {event}")
    if id:
        lines.append(f"id: {id}")
    if retry is not None:
        lines.append(f"retry: {retry}")

    data_str = data if isinstance(data, str) else json.dumps(data, separators=(",", ":"))
    for line in data_str.split("\n"):
        lines.append(f"data: {line}")

    return "\n".join(lines) + "\n\n"


def stream_event_to_sse(event: StreamEvent) -> str:
    """Render a pipeline event; the id is `<request_id>:<sequence>`."""
    event_id = f"{event.request_id}:{event.sequence}" if event.request_id else None
    return sse_format(event.data, event=event.type, id=event_id)


def sse_heartbeat() -> str:
    """SSE comment keeping idle connections open; ignored by EventSource."""
    return ": hb\n\n"


def sse_retry(interval_ms: int = 5000) -> str:
    return f"retry: {interval_ms}\n\n"
