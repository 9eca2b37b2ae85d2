from .client_manager import MCPClientManager, MCPServerConfig, MCPServerConnection
from .errors import (
    AlreadyConnectedError,
    InvocationError,
    MCPConnectionError,
    MCPError,
    MCPTransportError,
    NotConnectedError,
    OperationNotFoundError,
)
from .http_client import MCPStreamableHttpClient
from .types import ConnectionState, ContentBlock, MCPPrompt, MCPResource, MCPTool, ResourceContent, ToolCallResult

__all__ = [
    "MCPClientManager",
    "MCPServerConfig",
    "MCPServerConnection",
    "MCPStreamableHttpClient",
    "MCPError",
    "MCPConnectionError",
    "MCPTransportError",
    "AlreadyConnectedError",
    "NotConnectedError",
    "InvocationError",
    "OperationNotFoundError",
    "ConnectionState",
    "ContentBlock",
    "MCPPrompt",
    "MCPResource",
    "MCPTool",
    "ResourceContent",
    "ToolCallResult",
]
