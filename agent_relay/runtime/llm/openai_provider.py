from __future__ import annotations

import os
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from agent_relay.runtime.conversation import InvocationRequest
from agent_relay.runtime.errors import ModelBackendError
from agent_relay.runtime.llm.provider import ModelDelta

logger = logging.getLogger("agent_relay.llm")


class OpenAIChatCompletionsProvider:
    """
    Streaming chat provider using the Chat Completions API.

    Works against OpenAI itself or any compatible endpoint (Ollama serves one under /v1),
    so the agent loop doesn't care which backend is behind it.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY", "")
        self.base_url = base_url
        self.temperature = temperature
        self.max_tokens = max_tokens

        if not self.api_key:
            if not base_url:
                raise ModelBackendError("OPENAI_API_KEY is not set")
            # Local OpenAI-compatible servers ignore the key but the SDK insists on one.
            self.api_key = "local"

        # Import lazily so non-LLM paths (tests, MCP-only tooling) don't require openai installed.
        from openai import AsyncOpenAI, OpenAIError  # type: ignore

        self._error_types = (OpenAIError,)
        self._client = AsyncOpenAI(api_key=self.api_key, base_url=base_url)

    async def stream_chat_chunks(
        self,
        *,
        model: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[Any]:
        """
        Yield raw SDK chunks.
        """
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
            "temperature": self.temperature,
        }
        if tools:
            kwargs["tools"] = tools
        if self.max_tokens:
            kwargs["max_tokens"] = self.max_tokens
        stream = await self._client.chat.completions.create(**kwargs)
        async for chunk in stream:
            yield chunk

    async def stream_turn(
        self,
        *,
        model: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[ModelDelta]:
        tool_calls_dict: Dict[int, Dict[str, Any]] = {}

        try:
            async for chunk in self.stream_chat_chunks(model=model, messages=messages, tools=tools):
                if not getattr(chunk, "choices", None):
                    continue
                delta = chunk.choices[0].delta

                reasoning = _reasoning_text(delta)
                content = getattr(delta, "content", None) or ""
                if reasoning or content:
                    yield ModelDelta(reasoning=reasoning, content=content)

                if getattr(delta, "tool_calls", None):
                    for tc_chunk in delta.tool_calls:
                        idx = tc_chunk.index
                        if idx not in tool_calls_dict:
                            tool_calls_dict[idx] = {"id": None, "name": "", "arguments": ""}
                        if getattr(tc_chunk, "id", None):
                            tool_calls_dict[idx]["id"] = tc_chunk.id
                        fn = getattr(tc_chunk, "function", None)
                        if fn:
                            if getattr(fn, "name", None):
                                tool_calls_dict[idx]["name"] += fn.name
                            if getattr(fn, "arguments", None):
                                tool_calls_dict[idx]["arguments"] += fn.arguments or ""
        except self._error_types as e:
            logger.error("Model backend request failed (model=%s): %s", model, e)
            raise ModelBackendError(f"Model backend request failed: {e}") from e

        if tool_calls_dict:
            calls = [_to_request(idx, tool_calls_dict[idx]) for idx in sorted(tool_calls_dict.keys())]
            yield ModelDelta(tool_calls=calls)


def _reasoning_text(delta: Any) -> str:
    # Ollama and vLLM report thinking under different keys.
    for key in ("reasoning_content", "reasoning"):
        v = getattr(delta, key, None)
        if v is None:
            extra = getattr(delta, "model_extra", None) or {}
            v = extra.get(key)
        if isinstance(v, str) and v:
            return v
    return ""


def _to_request(idx: int, raw: Dict[str, Any]) -> InvocationRequest:
    name = raw.get("name") or ""
    if not name:
        raise ModelBackendError(f"Model emitted a tool call without a name (index {idx})")
    text = raw.get("arguments") or ""
    if text.strip():
        try:
            args = json.loads(text)
        except json.JSONDecodeError as e:
            raise ModelBackendError(f"Tool call arguments for {name} are not valid JSON: {text!r}") from e
    else:
        args = {}
    if not isinstance(args, dict):
        raise ModelBackendError(f"Tool call arguments for {name} must be a JSON object, got {type(args).__name__}")
    return InvocationRequest(id=raw.get("id") or f"call_{idx}_{name}", name=name, arguments=args)
