from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

import httpx

from agent_relay.runtime.mcp.errors import (
    AlreadyConnectedError,
    InvocationError,
    MCPConnectionError,
    MCPTransportError,
    NotConnectedError,
)
from agent_relay.runtime.mcp.types import (
    ConnectionState,
    MCPPrompt,
    MCPResource,
    MCPTool,
    ResourceContent,
    ToolCallResult,
)

logger = logging.getLogger("agent_relay.mcp")

PROTOCOL_VERSION = "2025-03-26"
SUPPORTED_PROTOCOL_VERSIONS = {"2024-11-05", "2025-03-26", "2025-06-18"}
SESSION_HEADER = "Mcp-Session-Id"
# Statuses a server answers with when it does not (or no longer) know the session sent.
SESSION_REJECTED_STATUSES = (400, 401, 404)


class MCPStreamableHttpClient:
    """
    MCP Streamable HTTP client for a single server.

    JSON-RPC 2.0 requests go out as HTTP POSTs; the server may answer with a plain
    JSON body or with an SSE stream whose `data:` lines carry the JSON-RPC response.
    The session id handed out during `initialize` is re-sent on every later request.

    Lifecycle: connect() -> list/call/read/get ... -> disconnect().
    """

    def __init__(
        self,
        *,
        base_url: str,
        server_name: str = "default",
        client_name: str = "agent_relay",
        client_version: str = "1.0.0",
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.server_name = server_name
        self.client_name = client_name
        self.client_version = client_version
        self.timeout_s = float(timeout_s)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._session_id: Optional[str] = None
        self._state = ConnectionState.DISCONNECTED
        self.server_info: Dict[str, Any] = {}
        self.server_capabilities: Dict[str, Any] = {}

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json, text/event-stream"}
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id
        return headers

    async def connect(self) -> None:
        """
        Perform the initialize handshake and store the session id.

        A session id left over from an earlier connection is offered to the server so it
        can resume state; the server is free to hand out a new one.
        """
        if self._state == ConnectionState.CONNECTED:
            raise AlreadyConnectedError(f"Already connected to {self.server_name}. Disconnect first.")
        if self._state == ConnectionState.CONNECTING:
            raise AlreadyConnectedError(f"Connection to {self.server_name} already in progress")

        self._state = ConnectionState.CONNECTING
        self._client = httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport)
        try:
            resp, result = await self._initialize()
            if resp.status_code in SESSION_REJECTED_STATUSES and self._session_id:
                logger.info(
                    'MCP server "%s" refused to resume session %s; starting a new one',
                    self.server_name,
                    self._session_id,
                )
                self._session_id = None
                resp, result = await self._initialize()
            if resp.status_code >= 400:
                raise MCPConnectionError(f"Handshake rejected by {self.server_name}: HTTP {resp.status_code}: {resp.text[:300]}")

            version = str(result.get("protocolVersion") or "")
            if version not in SUPPORTED_PROTOCOL_VERSIONS:
                raise MCPConnectionError(f"Unsupported MCP protocol version from {self.server_name}: {version or '(none)'}")

            sid = resp.headers.get(SESSION_HEADER)
            if not sid and result.get("sessionId"):
                # Some servers return the session id in the result instead of the header.
                sid = str(result["sessionId"])
            if sid:
                self._session_id = sid
            self.server_info = dict(result.get("serverInfo") or {})
            self.server_capabilities = dict(result.get("capabilities") or {})

            await self._notify("notifications/initialized")
        except BaseException:
            await self._close_http()
            self._state = ConnectionState.DISCONNECTED
            raise

        self._state = ConnectionState.CONNECTED
        logger.info('Connected to MCP server "%s" at %s (session %s)', self.server_name, self.base_url, self._session_id)

    async def disconnect(self) -> None:
        """
        Best-effort session termination. Safe to call repeatedly.
        """
        if self._client is None:
            self._state = ConnectionState.DISCONNECTED
            return
        try:
            if self._session_id:
                try:
                    resp = await self._client.delete(self.base_url, headers=self._headers())
                    # 405: termination unsupported; rejected: the server already forgot it.
                    if resp.status_code < 400 or resp.status_code == 405 or resp.status_code in SESSION_REJECTED_STATUSES:
                        self._session_id = None
                except httpx.HTTPError as e:
                    logger.debug("Session termination for %s failed: %s", self.server_name, e)
        finally:
            await self._close_http()
            self._state = ConnectionState.DISCONNECTED
        logger.info('Disconnected from MCP server "%s"', self.server_name)

    async def _close_http(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def _initialize(self) -> Tuple[httpx.Response, Dict[str, Any]]:
        """POST `initialize`. HTTP error statuses are returned for the caller to judge."""
        assert self._client is not None
        req_id = uuid4().hex
        body = {
            "jsonrpc": "2.0",
            "id": req_id,
            "method": "initialize",
            "params": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": self.client_name, "version": self.client_version},
            },
        }
        try:
            resp = await self._client.post(self.base_url, headers=self._headers(), json=body)
        except httpx.HTTPError as e:
            raise MCPConnectionError(f"Cannot reach MCP server {self.server_name} at {self.base_url}: {e}") from e
        if resp.status_code >= 400:
            return resp, {}

        try:
            data = self._decode(resp, req_id)
        except MCPTransportError as e:
            raise MCPConnectionError(str(e)) from e
        if data.get("error"):
            raise MCPConnectionError(f"Handshake rejected by {self.server_name}: {data['error']}")
        result = data.get("result")
        if not isinstance(result, dict):
            raise MCPConnectionError(f"Invalid initialize result from {self.server_name}")
        return resp, result

    async def _notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        assert self._client is not None
        body: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            body["params"] = params
        try:
            resp = await self._client.post(self.base_url, headers=self._headers(), json=body)
        except httpx.HTTPError as e:
            raise MCPConnectionError(f"Notification {method} to {self.server_name} failed: {e}") from e
        if resp.status_code >= 400:
            raise MCPConnectionError(f"Notification {method} rejected by {self.server_name}: HTTP {resp.status_code}")

    async def _rpc(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if self._state != ConnectionState.CONNECTED or self._client is None:
            raise NotConnectedError(f"Not connected to MCP server {self.server_name}")

        req_id = uuid4().hex
        body: Dict[str, Any] = {"jsonrpc": "2.0", "id": req_id, "method": method}
        if params is not None:
            body["params"] = params

        try:
            resp = await self._client.post(self.base_url, headers=self._headers(), json=body)
        except httpx.ConnectError as e:
            # Server went away entirely; the session is as good as gone.
            raise MCPConnectionError(f"Lost connection to {self.server_name}: {e}") from e
        except httpx.HTTPError as e:
            raise MCPTransportError(f"{method} to {self.server_name} failed: {e}") from e

        if resp.status_code in SESSION_REJECTED_STATUSES and self._session_id:
            rejected, self._session_id = self._session_id, None
            raise MCPConnectionError(
                f"Session {rejected} rejected by {self.server_name} (HTTP {resp.status_code}); reconnect required"
            )
        if resp.status_code >= 400:
            raise MCPTransportError(f"HTTP {resp.status_code}: {resp.text[:300]}")

        data = self._decode(resp, req_id)
        err = data.get("error")
        if err:
            if isinstance(err, dict):
                raise InvocationError(str(err.get("message") or err), code=err.get("code"), data=err.get("data"))
            raise InvocationError(str(err))
        return data.get("result")

    def _decode(self, resp: httpx.Response, req_id: str) -> Dict[str, Any]:
        ctype = resp.headers.get("content-type", "")
        if ctype.startswith("text/event-stream"):
            for payload in _iter_sse_data(resp.text):
                try:
                    msg = json.loads(payload)
                except ValueError:
                    continue
                # Servers may interleave notifications before the actual response.
                if isinstance(msg, dict) and msg.get("id") == req_id:
                    return msg
            raise MCPTransportError(f"No JSON-RPC response for request {req_id} in event stream from {self.server_name}")
        try:
            data = resp.json()
        except ValueError as e:
            raise MCPTransportError(f"Invalid JSON from {self.server_name}: {resp.text[:300]}") from e
        if not isinstance(data, dict):
            raise MCPTransportError("Invalid JSON-RPC response")
        return data

    # --- tools -------------------------------------------------------------

    async def list_tools(self) -> List[MCPTool]:
        result = await self._rpc("tools/list", params={})
        tools = result.get("tools") if isinstance(result, dict) else None
        out: List[MCPTool] = []
        if isinstance(tools, list):
            for t in tools:
                if isinstance(t, dict) and t.get("name"):
                    out.append(MCPTool.from_wire(t, server=self.server_name))
        return out

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolCallResult:
        result = await self._rpc("tools/call", params={"name": name, "arguments": arguments or {}})
        out = ToolCallResult.from_wire(result)
        if out.is_error:
            raise InvocationError(out.text(), data=result)
        return out

    # --- prompts -----------------------------------------------------------

    async def list_prompts(self) -> List[MCPPrompt]:
        result = await self._rpc("prompts/list", params={})
        prompts = result.get("prompts") if isinstance(result, dict) else None
        out: List[MCPPrompt] = []
        if isinstance(prompts, list):
            for p in prompts:
                if isinstance(p, dict) and p.get("name"):
                    out.append(MCPPrompt.from_wire(p, server=self.server_name))
        return out

    async def get_prompt(self, name: str, arguments: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        result = await self._rpc("prompts/get", params={"name": name, "arguments": arguments or {}})
        return result if isinstance(result, dict) else {"messages": []}

    # --- resources ---------------------------------------------------------

    async def list_resources(self) -> List[MCPResource]:
        result = await self._rpc("resources/list", params={})
        resources = result.get("resources") if isinstance(result, dict) else None
        out: List[MCPResource] = []
        if isinstance(resources, list):
            for r in resources:
                if isinstance(r, dict) and r.get("uri"):
                    out.append(MCPResource.from_wire(r, server=self.server_name))
        return out

    async def read_resource(self, uri: str) -> List[ResourceContent]:
        result = await self._rpc("resources/read", params={"uri": uri})
        contents = result.get("contents") if isinstance(result, dict) else None
        if not isinstance(contents, list):
            return []
        return [ResourceContent.from_wire(c) for c in contents if isinstance(c, dict)]


def _iter_sse_data(body: str):
    """
    Yield the joined `data:` payload of each event in an SSE body.
    """
    data_lines: List[str] = []
    for line in body.splitlines():
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip(" "))
    if data_lines:
        yield "\n".join(data_lines)
