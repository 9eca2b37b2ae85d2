#!/usr/bin/env python3
"""
Minimal MCP Streamable HTTP example server (for local testing).

Serves a small in-memory broadcast catalogue over JSON-RPC:
- initialize / notifications/initialized
- tools/list, tools/call
- prompts/list, prompts/get
- resources/list, resources/read
- DELETE /mcp to end the session

Start:
  python3 scripts/mcp_example_server.py --port 3000

Configure Agent Relay:
  Add to agent_relay.json:
    "mcp": { "servers": [ { "name": "broadcast", "url": "http://127.0.0.1:3000/mcp" } ] }
"""

from __future__ import annotations

import argparse
import json
import uuid
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

SESSION_HEADER = "Mcp-Session-Id"

BROADCASTS: List[Dict[str, Any]] = [
    {"id": "b-1", "title": "Morning News", "status": "live", "viewers": 1520, "channel": "news"},
    {"id": "b-2", "title": "Cup Final", "status": "scheduled", "viewers": 0, "channel": "sports"},
    {"id": "b-3", "title": "Late Show", "status": "ended", "viewers": 830, "channel": "entertainment"},
]

TOOLS: List[Dict[str, Any]] = [
    {
        "name": "list_broadcasts",
        "description": "List broadcasts, optionally filtered by status or channel.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "status": {"type": "string", "enum": ["live", "scheduled", "ended"], "description": "Broadcast status"},
                "channel": {"type": "string", "description": "Channel name"},
            },
        },
    },
    {
        "name": "get_broadcast",
        "description": "Get one broadcast by id.",
        "inputSchema": {
            "type": "object",
            "properties": {"id": {"type": "string", "description": "Broadcast id"}},
            "required": ["id"],
        },
    },
    {
        "name": "get_viewer_count",
        "description": "Current viewer count of a broadcast.",
        "inputSchema": {
            "type": "object",
            "properties": {"id": {"type": "string", "description": "Broadcast id"}},
            "required": ["id"],
        },
    },
]


def _rpc_result(req_id: Any, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def _rpc_error(req_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": int(code), "message": str(message)}}


def _text(value: Any, *, is_error: bool = False) -> Dict[str, Any]:
    text = value if isinstance(value, str) else json.dumps(value)
    out: Dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        out["isError"] = True
    return out


def _find(broadcast_id: str) -> Optional[Dict[str, Any]]:
    return next((b for b in BROADCASTS if b["id"] == broadcast_id), None)


def _call_tool(name: str, arguments: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if name == "list_broadcasts":
        items = BROADCASTS
        if arguments.get("status"):
            items = [b for b in items if b["status"] == arguments["status"]]
        if arguments.get("channel"):
            items = [b for b in items if b["channel"] == arguments["channel"]]
        return _text(items)
    if name == "get_broadcast":
        b = _find(str(arguments.get("id") or ""))
        return _text(b) if b else _text(f"Broadcast {arguments.get('id')} not found", is_error=True)
    if name == "get_viewer_count":
        b = _find(str(arguments.get("id") or ""))
        if not b:
            return _text(f"Broadcast {arguments.get('id')} not found", is_error=True)
        return _text({"id": b["id"], "viewers": b["viewers"]})
    return None


def create_app() -> FastAPI:
    app = FastAPI(title="Agent Relay MCP Example Server", version="0.1.0")
    sessions: set[str] = set()

    @app.get("/health")
    async def health():
        return {"ok": True, "sessions": len(sessions)}

    @app.delete("/mcp")
    async def end_session(request: Request):
        sid = request.headers.get(SESSION_HEADER)
        if not sid or sid not in sessions:
            return Response(status_code=404)
        sessions.discard(sid)
        return Response(status_code=204)

    @app.post("/mcp")
    async def mcp(request: Request):
        try:
            payload = await request.json()
        except Exception:
            return JSONResponse(_rpc_error(None, -32700, "Parse error"), status_code=200)

        if not isinstance(payload, dict):
            return JSONResponse(_rpc_error(None, -32600, "Invalid Request"), status_code=200)

        req_id = payload.get("id")
        method = str(payload.get("method") or "")
        params = payload.get("params") or {}
        if not isinstance(params, dict):
            params = {}

        if method == "initialize":
            sid = f"sid_{uuid.uuid4().hex[:12]}"
            sessions.add(sid)
            res = _rpc_result(
                req_id,
                {
                    "protocolVersion": "2025-03-26",
                    "serverInfo": {"name": "broadcast-mcp-example", "version": "0.1.0"},
                    "capabilities": {"tools": {}, "prompts": {}, "resources": {}},
                },
            )
            return JSONResponse(res, headers={SESSION_HEADER: sid})

        sid = request.headers.get(SESSION_HEADER)
        if not sid or sid not in sessions:
            return JSONResponse(_rpc_error(req_id, -32001, "Session not found"), status_code=404)

        if req_id is None:
            # Notifications get no body.
            return Response(status_code=202)

        if method == "tools/list":
            return JSONResponse(_rpc_result(req_id, {"tools": TOOLS}))

        if method == "tools/call":
            name = str(params.get("name") or "")
            arguments = params.get("arguments") or {}
            if not isinstance(arguments, dict):
                arguments = {}
            result = _call_tool(name, arguments)
            if result is None:
                return JSONResponse(_rpc_error(req_id, -32602, f"Unknown tool: {name}"), status_code=200)
            return JSONResponse(_rpc_result(req_id, result))

        if method == "prompts/list":
            return JSONResponse(
                _rpc_result(
                    req_id,
                    {
                        "prompts": [
                            {
                                "name": "broadcast_summary",
                                "description": "Summarise the current state of a channel.",
                                "arguments": [{"name": "channel", "description": "Channel name", "required": False}],
                            }
                        ]
                    },
                )
            )

        if method == "prompts/get":
            name = str(params.get("name") or "")
            arguments = params.get("arguments") or {}
            if not isinstance(arguments, dict):
                arguments = {}
            if name != "broadcast_summary":
                return JSONResponse(_rpc_error(req_id, -32602, f"Unknown prompt: {name}"), status_code=200)
            channel = str(arguments.get("channel") or "all channels")
            return JSONResponse(
                _rpc_result(
                    req_id,
                    {
                        "description": "Channel summary",
                        "messages": [
                            {"role": "user", "content": {"type": "text", "text": f"Summarise broadcasts on {channel}."}}
                        ],
                    },
                )
            )

        if method == "resources/list":
            return JSONResponse(
                _rpc_result(
                    req_id,
                    {
                        "resources": [
                            {
                                "uri": "broadcasts://active",
                                "name": "Active broadcasts",
                                "description": "Broadcasts that are live right now.",
                                "mimeType": "application/json",
                            }
                        ]
                    },
                )
            )

        if method == "resources/read":
            uri = str(params.get("uri") or "")
            if uri != "broadcasts://active":
                return JSONResponse(_rpc_error(req_id, -32002, f"Resource not found: {uri}"), status_code=200)
            live = [b for b in BROADCASTS if b["status"] == "live"]
            return JSONResponse(
                _rpc_result(
                    req_id,
                    {"contents": [{"uri": uri, "mimeType": "application/json", "text": json.dumps(live)}]},
                )
            )

        return JSONResponse(_rpc_error(req_id, -32601, f"Unknown method: {method}"), status_code=200)

    return app


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=3000)
    args = parser.parse_args(argv)

    import uvicorn

    uvicorn.run(create_app(), host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
