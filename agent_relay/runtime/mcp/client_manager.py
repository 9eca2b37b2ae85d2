from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from agent_relay.runtime.mcp.errors import MCPConnectionError, MCPError, OperationNotFoundError
from agent_relay.runtime.mcp.http_client import MCPStreamableHttpClient
from agent_relay.runtime.mcp.types import (
    ConnectionState,
    MCPPrompt,
    MCPResource,
    MCPTool,
    ResourceContent,
    ToolCallResult,
)

logger = logging.getLogger("agent_relay.mcp")


@dataclass(frozen=True)
class MCPServerConfig:
    name: str
    url: str
    enabled: bool = True
    transport: str = "streamable-http"  # only streamable-http is implemented

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> Optional["MCPServerConfig"]:
        if not isinstance(raw, dict):
            return None
        name = str(raw.get("name", "") or "").strip()
        url = str(raw.get("url", "") or "").strip()
        if not name or not url:
            logger.warning("MCP server config without name/url skipped: %r", raw)
            return None
        transport = str(raw.get("transport", "streamable-http") or "streamable-http").strip()
        return cls(name=name, url=url, enabled=bool(raw.get("enabled", True)), transport=transport)


@dataclass
class MCPServerConnection:
    """
    One owner slot. Kept in the registry even while disconnected so it can be reconnected
    with the same configuration.
    """

    config: MCPServerConfig
    client: MCPStreamableHttpClient
    tools: List[MCPTool] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> ConnectionState:
        return self.client.state

    @property
    def connected(self) -> bool:
        return self.client.is_connected


ClientFactory = Callable[[MCPServerConfig], MCPStreamableHttpClient]


class MCPClientManager:
    """
    Owns one client per MCP server and presents their tools as a single flat namespace.

    Tool calls are routed through a `tool name -> server name` cache that is filled when a
    server is added. A miss (tool appeared later, or the cached owner went away) falls back
    to asking every connected server once.

    Registry and cache mutations happen under one lock; network I/O never does, so slow
    servers don't hold each other up.
    """

    def __init__(
        self,
        *,
        client_name: str = "agent_relay",
        client_version: str = "1.0.0",
        timeout_s: float = 30.0,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.client_name = client_name
        self.client_version = client_version
        self.timeout_s = timeout_s
        self._client_factory = client_factory or self._default_client
        self._connections: Dict[str, MCPServerConnection] = {}
        self._tool_routes: Dict[str, str] = {}
        self._collisions: Dict[str, List[str]] = {}
        self._lock = asyncio.Lock()

    def _default_client(self, cfg: MCPServerConfig) -> MCPStreamableHttpClient:
        return MCPStreamableHttpClient(
            base_url=cfg.url,
            server_name=cfg.name,
            client_name=self.client_name,
            client_version=self.client_version,
            timeout_s=self.timeout_s,
        )

    # --- lifecycle ---------------------------------------------------------

    async def add_server(self, cfg: MCPServerConfig) -> None:
        """
        Connect a server and cache its tools. Never raises: a server that can't be reached
        is kept as a disconnected owner and the rest of the system carries on without it.
        """
        if not cfg.enabled:
            logger.info('MCP server "%s" is disabled, skipping', cfg.name)
            return
        if cfg.transport != "streamable-http":
            logger.warning('MCP server "%s" uses unsupported transport %s, skipping', cfg.name, cfg.transport)
            return

        async with self._lock:
            if cfg.name in self._connections:
                logger.info('MCP server "%s" already exists, skipping', cfg.name)
                return
            conn = MCPServerConnection(config=cfg, client=self._client_factory(cfg))
            self._connections[cfg.name] = conn

        await self._connect(conn)

    async def add_servers(self, configs: List[MCPServerConfig]) -> None:
        await asyncio.gather(*(self.add_server(c) for c in configs))

    async def reconnect(self, name: str) -> bool:
        """
        Retry the handshake for a known server. Returns whether it is connected afterwards.
        """
        conn = self._connections.get(name)
        if conn is None:
            raise KeyError(f"Unknown MCP server: {name}")
        if conn.connected:
            return True
        if conn.state == ConnectionState.CONNECTING:
            return False
        return await self._connect(conn)

    async def _connect(self, conn: MCPServerConnection) -> bool:
        try:
            await conn.client.connect()
            tools = await conn.client.list_tools()
        except Exception as e:
            conn.error = str(e)
            logger.error('Failed to connect to MCP server "%s": %s', conn.name, e)
            if conn.connected:
                await self._safe_disconnect(conn)
            return False

        async with self._lock:
            if self._connections.get(conn.name) is not conn:
                # Removed while we were connecting (shutdown raced startup).
                stale = True
            else:
                stale = False
                conn.error = None
                self._register_tools(conn, tools)
        if stale:
            await self._safe_disconnect(conn)
            return False

        logger.info('Added MCP server "%s" with %d tools', conn.name, len(tools))
        return True

    def _register_tools(self, conn: MCPServerConnection, tools: List[MCPTool]) -> None:
        conn.tools = list(tools)
        for t in tools:
            prev = self._tool_routes.get(t.name)
            if prev and prev != conn.name:
                logger.warning(
                    'Tool "%s" is advertised by both "%s" and "%s"; routing to "%s"',
                    t.name,
                    prev,
                    conn.name,
                    conn.name,
                )
                owners = self._collisions.setdefault(t.name, [prev])
                if conn.name not in owners:
                    owners.append(conn.name)
            self._tool_routes[t.name] = conn.name

    async def _mark_disconnected(self, conn: MCPServerConnection, error: Exception) -> None:
        logger.warning('MCP server "%s" dropped: %s', conn.name, error)
        conn.error = str(error)
        await self._safe_disconnect(conn)

    async def _safe_disconnect(self, conn: MCPServerConnection) -> Optional[Exception]:
        try:
            await conn.client.disconnect()
        except Exception as e:
            logger.error('Error disconnecting from "%s": %s', conn.name, e)
            return e
        return None

    async def disconnect_all(self) -> List[Tuple[str, str]]:
        """
        Disconnect every server and forget all owners and routes.
        Returns (server, error) pairs for the disconnects that failed.
        """
        async with self._lock:
            conns = list(self._connections.values())
            self._connections.clear()
            self._tool_routes.clear()
            self._collisions.clear()

        failures: List[Tuple[str, str]] = []
        for conn in conns:
            err = await self._safe_disconnect(conn)
            if err is not None:
                failures.append((conn.name, str(err)))
        return failures

    # --- introspection -----------------------------------------------------

    def _connected(self) -> List[MCPServerConnection]:
        return [c for c in list(self._connections.values()) if c.connected]

    def has_connected_clients(self) -> bool:
        return any(c.connected for c in list(self._connections.values()))

    def get_connection(self, name: str) -> Optional[MCPServerConnection]:
        return self._connections.get(name)

    def route_for(self, tool_name: str) -> Optional[str]:
        return self._tool_routes.get(tool_name)

    def get_status(self) -> Dict[str, Any]:
        servers = [
            {
                "name": c.name,
                "url": c.config.url,
                "state": c.state.value,
                "connected": c.connected,
                "sessionId": c.client.session_id,
                "error": c.error,
                "toolCount": len(c.tools),
            }
            for c in list(self._connections.values())
        ]
        return {
            "servers": servers,
            "connectedCount": sum(1 for s in servers if s["connected"]),
            "totalCount": len(servers),
            "collisions": {k: list(v) for k, v in self._collisions.items()},
        }

    # --- aggregated capabilities ---------------------------------------------

    async def list_all_tools(self) -> List[MCPTool]:
        out: List[MCPTool] = []
        for conn in self._connected():
            try:
                tools = await conn.client.list_tools()
            except MCPConnectionError as e:
                await self._mark_disconnected(conn, e)
                continue
            except MCPError as e:
                logger.error("Error listing tools from %s: %s", conn.name, e)
                continue
            conn.tools = list(tools)
            out.extend(tools)
        return out

    async def list_all_prompts(self) -> List[MCPPrompt]:
        out: List[MCPPrompt] = []
        for conn in self._connected():
            try:
                out.extend(await conn.client.list_prompts())
            except MCPConnectionError as e:
                await self._mark_disconnected(conn, e)
            except MCPError as e:
                logger.error("Error listing prompts from %s: %s", conn.name, e)
        return out

    async def list_all_resources(self) -> List[MCPResource]:
        out: List[MCPResource] = []
        for conn in self._connected():
            try:
                out.extend(await conn.client.list_resources())
            except MCPConnectionError as e:
                await self._mark_disconnected(conn, e)
            except MCPError as e:
                logger.error("Error listing resources from %s: %s", conn.name, e)
        return out

    # --- dispatch ------------------------------------------------------------

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolCallResult:
        """
        Route a tool call to the server that owns `name`.

        Remote failures (InvocationError) are passed through untouched; only routing
        failures are raised from here (OperationNotFoundError).
        """
        args = arguments or {}

        server = self._tool_routes.get(name)
        if server:
            conn = self._connections.get(server)
            if conn is not None and conn.connected:
                return await self._dispatch(conn, name, args)

        for conn in self._connected():
            try:
                tools = await conn.client.list_tools()
            except MCPConnectionError as e:
                await self._mark_disconnected(conn, e)
                continue
            except MCPError as e:
                logger.debug("Skipping %s while resolving %s: %s", conn.name, name, e)
                continue
            if any(t.name == name for t in tools):
                async with self._lock:
                    if self._connections.get(conn.name) is not conn:
                        continue
                    conn.tools = list(tools)
                    self._tool_routes[name] = conn.name
                logger.info('Resolved tool "%s" to server "%s"', name, conn.name)
                return await self._dispatch(conn, name, args)

        raise OperationNotFoundError(name)

    async def _dispatch(self, conn: MCPServerConnection, name: str, args: Dict[str, Any]) -> ToolCallResult:
        try:
            return await conn.client.call_tool(name, args)
        except MCPConnectionError as e:
            await self._mark_disconnected(conn, e)
            raise

    async def get_prompt(self, name: str, arguments: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        for conn in self._connected():
            try:
                prompts = await conn.client.list_prompts()
            except MCPConnectionError as e:
                await self._mark_disconnected(conn, e)
                continue
            except MCPError:
                continue
            if any(p.name == name for p in prompts):
                return await conn.client.get_prompt(name, arguments)
        raise OperationNotFoundError(name, kind="Prompt")

    async def read_resource(self, uri: str) -> List[ResourceContent]:
        for conn in self._connected():
            try:
                return await conn.client.read_resource(uri)
            except MCPConnectionError as e:
                await self._mark_disconnected(conn, e)
            except MCPError:
                # Not this server's resource; try the next one.
                continue
        raise OperationNotFoundError(uri, kind="Resource")
