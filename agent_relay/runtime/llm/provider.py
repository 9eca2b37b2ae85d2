from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from agent_relay.runtime.conversation import InvocationRequest


@dataclass(frozen=True)
class ModelDelta:
    """
    One streamed step of a model turn. Text arrives incrementally; tool calls are only
    reported once fully assembled, on the last delta of the turn.
    """

    reasoning: str = ""
    content: str = ""
    tool_calls: List[InvocationRequest] = field(default_factory=list)


class LLMProvider(Protocol):
    def stream_turn(
        self,
        *,
        model: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[ModelDelta]:
        ...
