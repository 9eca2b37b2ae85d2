from __future__ import annotations

from typing import Any, Optional

from agent_relay.runtime.errors import AgentRelayError


class MCPError(AgentRelayError):
    pass


class MCPConnectionError(MCPError):
    """
    Handshake failed, or the server rejected our session (expired/invalid).
    """


class AlreadyConnectedError(MCPError):
    pass


class NotConnectedError(MCPError):
    pass


class MCPTransportError(MCPError):
    """
    I/O failure talking to a connected server (timeouts, resets, bad framing).
    """


class InvocationError(MCPError):
    """
    The server explicitly rejected or failed a request. `detail` is the server's own text.
    """

    def __init__(self, detail: str, *, code: Optional[int] = None, data: Any = None):
        self.detail = detail
        self.code = code
        self.data = data
        super().__init__(detail)


class OperationNotFoundError(MCPError):
    def __init__(self, name: str, kind: str = "Tool"):
        self.name = name
        self.kind = kind
        super().__init__(f'{kind} "{name}" not found on any connected MCP server')
