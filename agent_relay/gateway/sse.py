"""
Server-Sent Events helpers for the /chat stream.
"""

from __future__ import annotations

import json
from typing import Any, Optional


def format_sse_event(
    data: Any,
    event: Optional[str] = None,
    id: Optional[str] = None,
) -> str:
    """
    Format data as one SSE frame. Non-string data is JSON-encoded; multi-line
    data is split across several `data:` lines as the SSE format requires.
    """
    lines = []
    if id is not None:
        lines.append(f"id: {id}")
    if event is not None:
        lines.append(f"event: {event}")

    data_str = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False, default=str)
    for line in data_str.split("\n"):
        lines.append(f"data: {line}")
    return "\n".join(lines) + "\n\n"


def event_to_sse(ev: dict) -> str:
    """
    Render a protocol event ({"type": "event", "event", "payload", "seq"}) as an SSE frame.
    """
    seq = ev.get("seq")
    return format_sse_event(ev.get("payload") or {}, event=ev.get("event"), id=str(seq) if seq is not None else None)
