from __future__ import annotations

from typing import Any, Dict, Optional


class EventType:
    STATUS = "status"
    RAG_CONTEXT = "rag_context"
    RAG_ERROR = "rag_error"
    THINKING = "thinking"
    TOKEN = "token"
    TOOL_CALL = "tool_call"
    OBSERVATION = "observation"
    TOOL_RESULT = "tool_result"
    DONE = "done"
    ERROR = "error"


class ThinkingType:
    LLM_REASONING = "llm_reasoning"
    SYSTEM_MESSAGE = "system_message"


def create_event(event: str, payload: Dict[str, Any], seq: Optional[int] = None) -> dict:
    return {"type": "event", "event": event, "payload": payload, "seq": seq}
