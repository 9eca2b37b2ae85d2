"""Pytest configuration for agent_relay tests.

Fake MCP servers are real FastAPI apps reached through httpx.ASGITransport, so the
client code under test speaks actual JSON-RPC over HTTP without opening sockets.
"""

import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from agent_relay.runtime.conversation import InvocationRequest
from agent_relay.runtime.llm.provider import ModelDelta
from agent_relay.runtime.mcp import MCPClientManager, MCPServerConfig, MCPStreamableHttpClient


SESSION_HEADER = "Mcp-Session-Id"


class ToolFailure(Exception):
    """Raised by a fake tool handler to produce an `isError: true` result."""


class RpcFailure(Exception):
    """Raised by a fake tool handler to produce a JSON-RPC error response."""


# =============================================================================
# Fake MCP server
# =============================================================================

class FakeMCPServer:
    """
    In-process MCP Streamable HTTP server.

    tools: name -> (input schema, handler(arguments) -> str)
    """

    def __init__(
        self,
        name: str,
        tools: Optional[Dict[str, Tuple[Dict[str, Any], Callable[[Dict[str, Any]], str]]]] = None,
        *,
        prompts: Optional[Dict[str, str]] = None,
        resources: Optional[Dict[str, str]] = None,
        sse: bool = False,
        protocol_version: str = "2025-03-26",
        strict_sessions: bool = False,
    ):
        self.name = name
        self.tools = dict(tools or {})
        self.prompts = dict(prompts or {})
        self.resources = dict(resources or {})
        self.sse = sse
        self.protocol_version = protocol_version
        # strict: unknown session ids get 400, on initialize too
        self.strict_sessions = strict_sessions
        self.initialize_session_headers: List[Optional[str]] = []
        self.methods: List[str] = []
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.sessions: set = set()
        self.deleted_sessions: List[str] = []
        self.initialize_status = 200
        self._issued = 0
        self.app = self._build()

    @property
    def url(self) -> str:
        return f"http://{self.name}.test/mcp"

    def transport(self) -> httpx.AsyncBaseTransport:
        return httpx.ASGITransport(app=self.app)

    def client(self) -> MCPStreamableHttpClient:
        return MCPStreamableHttpClient(base_url=self.url, server_name=self.name, transport=self.transport())

    def expire_sessions(self) -> None:
        self.sessions.clear()

    def list_calls(self) -> int:
        return self.methods.count("tools/list")

    def _reply(self, body: Dict[str, Any], headers: Optional[Dict[str, str]] = None):
        if self.sse:
            note = {"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "info"}}
            text = f"event: message\ndata: {json.dumps(note)}\n\nevent: message\ndata: {json.dumps(body)}\n\n"
            return PlainTextResponse(text, media_type="text/event-stream", headers=headers)
        return JSONResponse(body, headers=headers)

    def _build(self) -> FastAPI:
        app = FastAPI()
        server = self

        @app.delete("/mcp")
        async def end_session(request: Request):
            sid = request.headers.get(SESSION_HEADER)
            if sid in server.sessions:
                server.sessions.discard(sid)
                server.deleted_sessions.append(sid)
                return Response(status_code=204)
            return Response(status_code=400 if server.strict_sessions else 404)

        @app.post("/mcp")
        async def mcp(request: Request):
            payload = await request.json()
            req_id = payload.get("id")
            method = payload.get("method", "")
            params = payload.get("params") or {}
            server.methods.append(method)

            sent_sid = request.headers.get(SESSION_HEADER)
            rejected_status = 400 if server.strict_sessions else 404

            if method == "initialize":
                server.initialize_session_headers.append(sent_sid)
                if server.initialize_status != 200:
                    return Response(status_code=server.initialize_status)
                if server.strict_sessions and sent_sid and sent_sid not in server.sessions:
                    return Response(status_code=400)
                server._issued += 1
                sid = f"{server.name}-session-{server._issued}"
                server.sessions.add(sid)
                result = {
                    "protocolVersion": server.protocol_version,
                    "serverInfo": {"name": server.name, "version": "0.0.1"},
                    "capabilities": {"tools": {}},
                }
                return server._reply({"jsonrpc": "2.0", "id": req_id, "result": result}, {SESSION_HEADER: sid})

            if sent_sid not in server.sessions:
                return Response(status_code=rejected_status)
            if req_id is None:
                return Response(status_code=202)

            def ok(result: Any):
                return server._reply({"jsonrpc": "2.0", "id": req_id, "result": result})

            def err(code: int, message: str):
                return server._reply({"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}})

            if method == "tools/list":
                return ok(
                    {
                        "tools": [
                            {"name": n, "description": f"{n} on {server.name}", "inputSchema": schema}
                            for n, (schema, _) in server.tools.items()
                        ]
                    }
                )
            if method == "tools/call":
                name = params.get("name")
                args = params.get("arguments") or {}
                server.calls.append((name, args))
                if name not in server.tools:
                    return err(-32602, f"Unknown tool: {name}")
                _, handler = server.tools[name]
                try:
                    text = handler(args)
                except ToolFailure as e:
                    return ok({"content": [{"type": "text", "text": str(e)}], "isError": True})
                except RpcFailure as e:
                    return err(-32603, str(e))
                return ok({"content": [{"type": "text", "text": text}]})
            if method == "prompts/list":
                return ok({"prompts": [{"name": n, "description": d} for n, d in server.prompts.items()]})
            if method == "prompts/get":
                name = params.get("name")
                if name not in server.prompts:
                    return err(-32602, f"Unknown prompt: {name}")
                args = params.get("arguments") or {}
                return ok({"description": server.prompts[name], "messages": [{"role": "user", "content": {"type": "text", "text": json.dumps(args)}}]})
            if method == "resources/list":
                return ok({"resources": [{"uri": u, "name": u} for u in server.resources]})
            if method == "resources/read":
                uri = params.get("uri")
                if uri not in server.resources:
                    return err(-32002, f"Resource not found: {uri}")
                return ok({"contents": [{"uri": uri, "mimeType": "text/plain", "text": server.resources[uri]}]})
            return err(-32601, f"Unknown method: {method}")

        return app


def unreachable_transport() -> httpx.AsyncBaseTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    return httpx.MockTransport(handler)


def string_tool(*names: str, required: Tuple[str, ...] = ()) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {n: {"type": "string"} for n in names},
        "required": list(required),
    }


@pytest.fixture
def make_manager():
    """
    Build an MCPClientManager whose clients talk to the given fake servers.
    A server mapped to None is unreachable.
    """

    def _make(servers: Dict[str, Optional[FakeMCPServer]]) -> Tuple[MCPClientManager, List[MCPServerConfig]]:
        def factory(cfg: MCPServerConfig) -> MCPStreamableHttpClient:
            fake = servers.get(cfg.name)
            transport = fake.transport() if fake is not None else unreachable_transport()
            return MCPStreamableHttpClient(base_url=cfg.url, server_name=cfg.name, transport=transport)

        configs = [
            MCPServerConfig(name=name, url=fake.url if fake is not None else f"http://{name}.test/mcp")
            for name, fake in servers.items()
        ]
        return MCPClientManager(client_factory=factory), configs

    return _make


# =============================================================================
# Scripted model backend
# =============================================================================

def text(s: str) -> ModelDelta:
    return ModelDelta(content=s)


def thought(s: str) -> ModelDelta:
    return ModelDelta(reasoning=s)


def call(name: str, arguments: Optional[Dict[str, Any]] = None, id: Optional[str] = None) -> ModelDelta:
    return ModelDelta(tool_calls=[InvocationRequest(id=id or f"call_{name}", name=name, arguments=arguments or {})])


class ScriptedLLM:
    """
    Plays back one scripted list of deltas per model turn. When the script runs out,
    `default` is played for every further turn.
    """

    def __init__(self, turns: List[List[Any]], default: Optional[List[Any]] = None):
        self.turns = list(turns)
        self.default = default if default is not None else [text("(no more script)")]
        self.requests: List[Dict[str, Any]] = []

    async def stream_turn(self, *, model, messages, tools=None):
        self.requests.append({"model": model, "messages": messages, "tools": tools})
        script = self.turns.pop(0) if self.turns else self.default
        for item in script:
            if isinstance(item, BaseException):
                raise item
            yield item
