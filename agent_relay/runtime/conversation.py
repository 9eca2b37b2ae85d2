from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class InvocationRequest:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments, ensure_ascii=False)},
        }


@dataclass(frozen=True)
class Turn:
    role: Role
    content: str
    invocations: tuple[InvocationRequest, ...] = ()
    invocation_id: Optional[str] = None  # tool turns: which request this answers

    def to_openai(self) -> Dict[str, Any]:
        if self.role == Role.TOOL:
            return {"role": "tool", "tool_call_id": self.invocation_id or "", "content": self.content}
        if self.role == Role.ASSISTANT and self.invocations:
            # Tool results are only accepted after an assistant message carrying the calls.
            return {
                "role": "assistant",
                "content": self.content or None,
                "tool_calls": [r.to_openai() for r in self.invocations],
            }
        return {"role": self.role.value, "content": self.content}


class Conversation:
    """
    Append-only list of turns. Nothing is rewritten in place; `copy()` gives a run its own
    working copy so the caller's history is untouched by intermediate tool traffic.
    """

    def __init__(self, turns: Optional[Iterable[Turn]] = None):
        self._turns: List[Turn] = list(turns or [])

    @classmethod
    def from_messages(cls, messages: Iterable[Dict[str, Any]]) -> "Conversation":
        conv = cls()
        for m in messages:
            role = str(m.get("role", "user") or "user")
            content = str(m.get("content", "") or "")
            if role == "system":
                conv.add_system(content)
            elif role == "assistant":
                conv.add_assistant(content)
            else:
                conv.add_user(content)
        return conv

    def __iter__(self) -> Iterator[Turn]:
        return iter(list(self._turns))

    def __len__(self) -> int:
        return len(self._turns)

    def __getitem__(self, idx: int) -> Turn:
        return self._turns[idx]

    @property
    def turns(self) -> List[Turn]:
        return list(self._turns)

    def copy(self) -> "Conversation":
        return Conversation(self._turns)

    def append(self, turn: Turn) -> None:
        self._turns.append(turn)

    def add_system(self, content: str) -> None:
        self.append(Turn(role=Role.SYSTEM, content=content))

    def add_user(self, content: str) -> None:
        self.append(Turn(role=Role.USER, content=content))

    def add_assistant(self, content: str, invocations: Iterable[InvocationRequest] = ()) -> None:
        self.append(Turn(role=Role.ASSISTANT, content=content, invocations=tuple(invocations)))

    def add_tool_result(self, invocation_id: str, content: str) -> None:
        self.append(Turn(role=Role.TOOL, content=content, invocation_id=invocation_id))

    def to_openai_messages(self) -> List[Dict[str, Any]]:
        return [t.to_openai() for t in self._turns]
