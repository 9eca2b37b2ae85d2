import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Body, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from agent_relay import config
from agent_relay.gateway.sse import event_to_sse
from agent_relay.protocol import EventType, create_event
from agent_relay.runtime.agent_loop import AgentLoop
from agent_relay.runtime.chunks import AnswerToken, InvocationResult, InvocationStarted, Reasoning, RunError
from agent_relay.runtime.conversation import Conversation
from agent_relay.runtime.errors import AgentRelayError
from agent_relay.runtime.llm.openai_provider import OpenAIChatCompletionsProvider
from agent_relay.runtime.llm.provider import LLMProvider
from agent_relay.runtime.mcp import MCPClientManager, MCPError, MCPServerConfig, OperationNotFoundError
from agent_relay.runtime.retrieval import RetrievedChunk, Retriever, build_rag_system_prompt
from agent_relay.runtime.stream import ChunkStream

load_dotenv()

logger = logging.getLogger("agent_relay.gateway")

VERSION = "1.0.0"


class ChatRequest(BaseModel):
    message: str = ""
    useRag: bool = True


class ReadResourceRequest(BaseModel):
    uri: str = ""


class ChatMessage(BaseModel):
    role: str
    content: str
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    thinking: Optional[str] = None
    toolCalls: Optional[List[Dict[str, Any]]] = None
    ragSources: Optional[List[Dict[str, Any]]] = None


class Gateway:
    """
    HTTP front for the agent: owns the MCP router, the in-memory chat history and the
    model provider, and turns agent runs into SSE streams.
    """

    def __init__(
        self,
        *,
        manager: Optional[MCPClientManager] = None,
        llm: Optional[LLMProvider] = None,
        retriever: Optional[Retriever] = None,
        servers: Optional[List[MCPServerConfig]] = None,
    ):
        self.manager = manager or MCPClientManager(
            client_name=config.mcp_client_name(),
            client_version=config.mcp_client_version(),
            timeout_s=config.mcp_timeout_s(),
        )
        self._llm = llm
        self.retriever = retriever
        if servers is None:
            servers = [c for c in (MCPServerConfig.from_dict(s) for s in config.mcp_servers()) if c is not None]
        self.servers = servers
        self.history: List[ChatMessage] = []
        self._seq = 0

    # --- lifecycle ---------------------------------------------------------

    async def startup(self) -> None:
        for cfg in self.servers:
            logger.info("Configured MCP server %s: %s (%s)", cfg.name, cfg.url, "enabled" if cfg.enabled else "disabled")
        await asyncio.gather(*(self._connect_with_retry(cfg) for cfg in self.servers))
        for s in self.manager.get_status()["servers"]:
            logger.info("  - %s: %s (%s)", s["name"], s["state"], s["url"])

    async def _connect_with_retry(self, cfg: MCPServerConfig) -> None:
        retries = config.mcp_connect_retries()
        delay_s = config.mcp_connect_retry_delay_s()

        await self.manager.add_server(cfg)
        conn = self.manager.get_connection(cfg.name)
        if conn is None:
            return  # disabled or duplicate

        for attempt in range(2, retries + 1):
            if conn.connected:
                return
            logger.info('MCP server "%s" not ready, retrying in %.1fs (attempt %d/%d)', cfg.name, delay_s, attempt, retries)
            await asyncio.sleep(delay_s)
            try:
                await self.manager.reconnect(cfg.name)
            except KeyError:
                return  # removed by a concurrent shutdown
        if not conn.connected:
            logger.error('Failed to connect to MCP server "%s" after %d attempts: %s', cfg.name, retries, conn.error)

    async def shutdown(self) -> None:
        failures = await self.manager.disconnect_all()
        for name, err in failures:
            logger.error('Error disconnecting MCP server "%s": %s', name, err)
        logger.info("MCP clients disconnected")

    # --- helpers -----------------------------------------------------------

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _frame(self, event: str, payload: Dict[str, Any]) -> str:
        return event_to_sse(create_event(event, payload, self._next_seq()))

    def _get_llm(self) -> LLMProvider:
        if self._llm is None:
            self._llm = OpenAIChatCompletionsProvider(
                base_url=config.llm_base_url(),
                temperature=config.llm_temperature(),
                max_tokens=config.llm_max_tokens(),
            )
        return self._llm

    def rag_ready(self) -> bool:
        return self.retriever is not None and self.retriever.is_ready()

    def _build_conversation(self, system_prompt: str) -> Conversation:
        conv = Conversation()
        conv.add_system(system_prompt)
        for m in self.history:
            if m.role == "user":
                conv.add_user(m.content)
            elif m.role == "assistant":
                conv.add_assistant(m.content)
        return conv

    # --- chat --------------------------------------------------------------

    async def chat_stream(self, req: ChatRequest) -> AsyncIterator[str]:
        message = (req.message or "").strip()
        if not message:
            yield self._frame(EventType.ERROR, {"message": "Message is required"})
            return

        self.history.append(ChatMessage(role="user", content=message))

        system_prompt = config.system_prompt()
        rag_chunks: List[RetrievedChunk] = []
        if config.rag_enabled() and req.useRag and self.rag_ready():
            yield self._frame(EventType.STATUS, {"status": "retrieving_context"})
            try:
                assert self.retriever is not None
                rag_chunks = await self.retriever.retrieve(message, top_k=config.rag_top_k())
            except Exception as e:
                logger.error("RAG retrieval error (continuing without RAG): %s", e)
                rag_chunks = []
                yield self._frame(EventType.RAG_ERROR, {"message": "RAG retrieval failed, using base knowledge"})
            if rag_chunks:
                system_prompt = build_rag_system_prompt(system_prompt, rag_chunks)
                yield self._frame(
                    EventType.RAG_CONTEXT,
                    {"chunks": [c.to_dict() for c in rag_chunks], "chunkCount": len(rag_chunks)},
                )

        yield self._frame(EventType.STATUS, {"status": "connected"})
        yield self._frame(EventType.STATUS, {"status": "waiting_for_model"})

        try:
            loop = AgentLoop(
                router=self.manager,
                llm=self._get_llm(),
                model=config.llm_model_name(),
                max_iterations=config.agent_max_iterations(),
            )
        except AgentRelayError as e:
            logger.error("Chat error: %s", e)
            yield self._frame(EventType.ERROR, {"message": str(e)})
            return

        stream = ChunkStream(loop.run(self._build_conversation(system_prompt)), maxsize=config.stream_queue_size())
        answer = ""
        thinking = ""
        tool_calls: List[Dict[str, Any]] = []
        pending_args: Dict[str, Any] = {}
        try:
            async for chunk in stream:
                if isinstance(chunk, RunError):
                    yield self._frame(EventType.ERROR, {"message": chunk.message})
                    return
                if isinstance(chunk, AnswerToken):
                    answer += chunk.content
                elif isinstance(chunk, Reasoning):
                    thinking += chunk.content
                elif isinstance(chunk, InvocationStarted):
                    pending_args = chunk.arguments
                elif isinstance(chunk, InvocationResult):
                    tool_calls.append({"name": chunk.name, "args": pending_args, "result": chunk.content})
                ev = chunk.to_event(self._next_seq())
                yield event_to_sse(ev)
        finally:
            # Client went away or the run ended: stop the producer either way.
            await stream.cancel()

        self.history.append(
            ChatMessage(
                role="assistant",
                content=answer,
                thinking=thinking or None,
                toolCalls=tool_calls or None,
                ragSources=[{"source": c.source, "section": c.section} for c in rag_chunks] or None,
            )
        )
        yield self._frame(EventType.DONE, {})


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message})


def _no_clients() -> JSONResponse:
    return _error(503, "No MCP clients connected")


def create_app(
    *,
    manager: Optional[MCPClientManager] = None,
    llm: Optional[LLMProvider] = None,
    retriever: Optional[Retriever] = None,
    servers: Optional[List[MCPServerConfig]] = None,
) -> FastAPI:
    gateway = Gateway(manager=manager, llm=llm, retriever=retriever, servers=servers)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await gateway.startup()
        try:
            yield
        finally:
            await gateway.shutdown()

    app = FastAPI(title="Agent Relay Gateway", version=VERSION, lifespan=lifespan)
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        return {
            "ok": True,
            "version": VERSION,
            "messageCount": len(gateway.history),
            "mcpConnected": gateway.manager.has_connected_clients(),
            "ragEnabled": config.rag_enabled(),
            "ragReady": gateway.rag_ready(),
        }

    @app.get("/messages")
    async def get_messages():
        return {"messages": [m.model_dump(exclude_none=True) for m in gateway.history]}

    @app.delete("/messages")
    async def clear_messages():
        gateway.history = []
        return {"success": True}

    @app.post("/chat")
    async def chat(req: ChatRequest):
        return StreamingResponse(
            gateway.chat_stream(req),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"},
        )

    @app.get("/mcp/tools")
    async def mcp_tools():
        if not gateway.manager.has_connected_clients():
            return _no_clients()
        try:
            tools = await gateway.manager.list_all_tools()
        except MCPError as e:
            return _error(500, str(e))
        return {"tools": [t.to_dict() for t in tools]}

    @app.get("/mcp/prompts")
    async def mcp_prompts():
        if not gateway.manager.has_connected_clients():
            return _no_clients()
        try:
            prompts = await gateway.manager.list_all_prompts()
        except MCPError as e:
            return _error(500, str(e))
        return {"prompts": [p.to_dict() for p in prompts]}

    @app.post("/mcp/prompts/{name}")
    async def mcp_get_prompt(name: str, arguments: Dict[str, Any] = Body(default={})):
        if not gateway.manager.has_connected_clients():
            return _no_clients()
        try:
            args = {k: str(v) for k, v in (arguments or {}).items()}
            return await gateway.manager.get_prompt(name, args)
        except OperationNotFoundError:
            return _error(404, f'Prompt "{name}" not found')
        except MCPError as e:
            return _error(500, str(e))

    @app.get("/mcp/resources")
    async def mcp_resources():
        if not gateway.manager.has_connected_clients():
            return _no_clients()
        try:
            resources = await gateway.manager.list_all_resources()
        except MCPError as e:
            return _error(500, str(e))
        return {"resources": [r.to_dict() for r in resources]}

    @app.post("/mcp/resources/read")
    async def mcp_read_resource(req: ReadResourceRequest):
        if not gateway.manager.has_connected_clients():
            return _no_clients()
        if not req.uri:
            return _error(400, "URI is required")
        try:
            contents = await gateway.manager.read_resource(req.uri)
        except OperationNotFoundError:
            return _error(404, f'Resource "{req.uri}" not found')
        return {"contents": [c.to_dict() for c in contents]}

    @app.get("/mcp/status")
    async def mcp_status():
        return gateway.manager.get_status()

    @app.post("/mcp/servers/{name}/reconnect")
    async def mcp_reconnect(name: str):
        try:
            connected = await gateway.manager.reconnect(name)
        except KeyError:
            return _error(404, f'MCP server "{name}" is not configured')
        conn = gateway.manager.get_connection(name)
        return {"name": name, "connected": connected, "error": conn.error if conn else None}

    return app
