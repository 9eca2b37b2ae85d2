from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from agent_relay.protocol import EventType, ThinkingType, create_event


@dataclass(frozen=True)
class Reasoning:
    content: str
    source: str = ThinkingType.LLM_REASONING

    def to_event(self, seq: Optional[int] = None) -> dict:
        return create_event(EventType.THINKING, {"token": self.content, "thinkingType": self.source}, seq)


@dataclass(frozen=True)
class AnswerToken:
    content: str

    def to_event(self, seq: Optional[int] = None) -> dict:
        return create_event(EventType.TOKEN, {"token": self.content}, seq)


@dataclass(frozen=True)
class InvocationStarted:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        return f"Action: {self.name}\n Input: {json.dumps(self.arguments, indent=2, ensure_ascii=False)}"

    def to_event(self, seq: Optional[int] = None) -> dict:
        return create_event(
            EventType.TOOL_CALL,
            {"toolName": self.name, "arguments": self.arguments, "message": self.message},
            seq,
        )


@dataclass(frozen=True)
class Observation:
    name: str
    content: str
    ok: bool = True

    def to_event(self, seq: Optional[int] = None) -> dict:
        return create_event(EventType.OBSERVATION, {"toolName": self.name, "content": self.content, "ok": self.ok}, seq)


@dataclass(frozen=True)
class InvocationResult:
    name: str
    content: str
    ok: bool = True

    def to_event(self, seq: Optional[int] = None) -> dict:
        return create_event(EventType.TOOL_RESULT, {"toolName": self.name, "result": self.content, "ok": self.ok}, seq)


@dataclass(frozen=True)
class RunError:
    message: str

    def to_event(self, seq: Optional[int] = None) -> dict:
        return create_event(EventType.ERROR, {"message": self.message}, seq)


Chunk = Union[Reasoning, AnswerToken, InvocationStarted, Observation, InvocationResult, RunError]
