from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from agent_relay.protocol import ThinkingType
from agent_relay.runtime.chunks import (
    AnswerToken,
    Chunk,
    InvocationResult,
    InvocationStarted,
    Observation,
    Reasoning,
    RunError,
)
from agent_relay.runtime.conversation import Conversation, InvocationRequest, Role, Turn
from agent_relay.runtime.errors import ModelBackendError
from agent_relay.runtime.llm.provider import LLMProvider
from agent_relay.runtime.mcp.client_manager import MCPClientManager
from agent_relay.runtime.mcp.types import MCPTool
from agent_relay.runtime.schema import ParameterSchema

logger = logging.getLogger("agent_relay.agent")


REACT_INSTRUCTIONS = """You are a ReAct (Reasoning and Acting) agent. Follow this pattern when using tools:

1. THOUGHT: Analyze what information you need and which tool to use
2. ACTION: Call the appropriate tool with correct parameters
3. OBSERVATION: Review the tool's result
4. REPEAT steps 1-3 ONLY if you need MORE information
5. FINAL ANSWER: Once you have enough information, provide your complete answer WITHOUT calling more tools

CRITICAL RULES:
- If a tool successfully returns a result, DO NOT call it again with the same parameters
- A successful tool call means you have that information - use it in your answer
- When you have gathered sufficient information, respond directly to the user without further tool calls"""

FORCE_FINAL_ANSWER = (
    "You have reached the maximum number of tool calls. You MUST provide your final answer NOW "
    "using the information you have gathered. Do NOT attempt to call any more tools."
)


def build_react_system_prompt(base: str) -> str:
    return f"{base}\n\n{REACT_INSTRUCTIONS}"


def describe_tool(tool: MCPTool, schema: ParameterSchema) -> str:
    description = tool.description or tool.title or tool.name
    optional = schema.optional_names
    if optional:
        description += (
            f" (All parameters are optional: {', '.join(optional)}. "
            "You can call this with no arguments or {} to get all results.)"
        )
    return description


@dataclass
class _Toolset:
    tools: List[MCPTool] = field(default_factory=list)
    schemas: Dict[str, ParameterSchema] = field(default_factory=dict)

    def to_openai_tools(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for t in self.tools:
            schema = self.schemas[t.name]
            out.append(
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": describe_tool(t, schema),
                        "parameters": schema.to_json_schema(),
                    },
                }
            )
        return out


@dataclass
class _PassOutput:
    text: str = ""
    tool_calls: List[InvocationRequest] = field(default_factory=list)


def _consume_result(task: "asyncio.Future[Any]") -> None:
    # Shielded dispatches may finish after the run is gone; nobody else will read them.
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Discarded tool call failure after cancellation: %s", task.exception())


class AgentLoop:
    """
    Bounded ReAct loop: think, call tools through the MCP router, observe, repeat.

    `run()` is an async generator of progress chunks. Tool failures are turned into
    error observations the model can react to; only a model backend failure (or the
    consumer going away) ends a run early.
    """

    def __init__(
        self,
        *,
        router: MCPClientManager,
        llm: LLMProvider,
        model: str,
        max_iterations: int = 10,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self.router = router
        self.llm = llm
        self.model = model
        self.max_iterations = max_iterations

    async def run(self, conversation: Conversation) -> AsyncIterator[Chunk]:
        working = self._prepare(conversation)
        try:
            toolset = await self._load_toolset()
            if not toolset.tools:
                async for chunk in self._stream_pass(working, None, _PassOutput()):
                    yield chunk
                return

            async for chunk in self._react(working, toolset):
                yield chunk
        except ModelBackendError as e:
            logger.error("Run aborted by model backend: %s", e)
            yield RunError(str(e))

    def _prepare(self, conversation: Conversation) -> Conversation:
        working = Conversation()
        for idx, turn in enumerate(conversation):
            if idx == 0 and turn.role == Role.SYSTEM:
                turn = Turn(role=Role.SYSTEM, content=build_react_system_prompt(turn.content))
            working.append(turn)
        return working

    async def _load_toolset(self) -> _Toolset:
        if not self.router.has_connected_clients():
            return _Toolset()
        tools = await self.router.list_all_tools()
        # One entry per name, taken from the owner the router dispatches that name to.
        chosen: Dict[str, MCPTool] = {}
        for t in tools:
            if t.name not in chosen or self.router.route_for(t.name) == t.server:
                chosen[t.name] = t
        toolset = _Toolset()
        for t in chosen.values():
            toolset.tools.append(t)
            toolset.schemas[t.name] = ParameterSchema.from_json_schema(t.input_schema)
        return toolset

    async def _react(self, working: Conversation, toolset: _Toolset) -> AsyncIterator[Chunk]:
        openai_tools = toolset.to_openai_tools()
        n = self.max_iterations

        for iteration in range(1, n + 1):
            yield Reasoning(f"\n=== ReAct Cycle {iteration}/{n} ===", ThinkingType.SYSTEM_MESSAGE)

            out = _PassOutput()
            async for chunk in self._stream_pass(working, openai_tools, out):
                yield chunk

            if not out.tool_calls:
                yield Reasoning(
                    "\nAgent has sufficient information. Providing final answer.",
                    ThinkingType.SYSTEM_MESSAGE,
                )
                return

            working.add_assistant(out.text, out.tool_calls)
            for req in out.tool_calls:
                async for chunk in self._invoke(working, toolset, req):
                    yield chunk

            if iteration < n:
                yield Reasoning(
                    "\nInformation gathered. Analyzing if more actions are needed...",
                    ThinkingType.SYSTEM_MESSAGE,
                )

        yield Reasoning(
            f"\nReached maximum {n} ReAct cycles. Providing answer with available information.",
            ThinkingType.SYSTEM_MESSAGE,
        )
        working.add_user(FORCE_FINAL_ANSWER)

        out = _PassOutput()
        async for chunk in self._stream_pass(working, openai_tools, out):
            yield chunk
        if out.tool_calls:
            names = [r.name for r in out.tool_calls]
            logger.warning("Dropping %d tool call(s) requested after the cycle cap: %s", len(names), names)
            yield Reasoning(
                f"\nIgnored tool calls after the cycle limit: {', '.join(names)}",
                ThinkingType.SYSTEM_MESSAGE,
            )

    async def _stream_pass(
        self,
        working: Conversation,
        tools: Optional[List[Dict[str, Any]]],
        out: _PassOutput,
    ) -> AsyncIterator[Chunk]:
        async for delta in self.llm.stream_turn(
            model=self.model,
            messages=working.to_openai_messages(),
            tools=tools or None,
        ):
            if delta.reasoning:
                yield Reasoning(delta.reasoning, ThinkingType.LLM_REASONING)
            if delta.content:
                out.text += delta.content
                yield AnswerToken(delta.content)
            if delta.tool_calls:
                out.tool_calls.extend(delta.tool_calls)

    async def _invoke(self, working: Conversation, toolset: _Toolset, req: InvocationRequest) -> AsyncIterator[Chunk]:
        yield InvocationStarted(req.name, dict(req.arguments))

        try:
            schema = toolset.schemas.get(req.name)
            args = schema.validate(req.name, req.arguments) if schema is not None else dict(req.arguments)
            task = asyncio.ensure_future(self.router.call_tool(req.name, args))
            task.add_done_callback(_consume_result)
            # A cancelled run still lets the remote call finish; its result is dropped.
            result = await asyncio.shield(task)
            text = result.text()
        except Exception as e:
            logger.info("Tool %s failed: %s", req.name, e)
            error = f"Error: {e}"
            yield Observation(req.name, f"Observation: Action failed\n{error}", ok=False)
            yield InvocationResult(req.name, error, ok=False)
            working.add_tool_result(req.id, f"Tool execution failed: {error}")
            return

        yield Observation(req.name, f"Observation from {req.name}:\n{text}")
        yield InvocationResult(req.name, text)
        working.add_tool_result(req.id, text)
