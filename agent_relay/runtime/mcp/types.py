from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class MCPTool:
    name: str
    description: str
    input_schema: Dict[str, Any]
    server: str = ""
    title: Optional[str] = None

    @classmethod
    def from_wire(cls, raw: Dict[str, Any], *, server: str) -> "MCPTool":
        title = raw.get("title")
        return cls(
            name=str(raw.get("name", "") or ""),
            description=str(raw.get("description", "") or ""),
            input_schema=dict(raw.get("inputSchema") or {}),
            server=server,
            title=str(title) if title else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
            "serverName": self.server,
        }
        if self.title:
            out["title"] = self.title
        return out


@dataclass
class MCPPrompt:
    name: str
    description: str = ""
    arguments: List[Dict[str, Any]] = field(default_factory=list)
    server: str = ""
    title: Optional[str] = None

    @classmethod
    def from_wire(cls, raw: Dict[str, Any], *, server: str) -> "MCPPrompt":
        args = raw.get("arguments")
        title = raw.get("title")
        return cls(
            name=str(raw.get("name", "") or ""),
            description=str(raw.get("description", "") or ""),
            arguments=[a for a in args if isinstance(a, dict)] if isinstance(args, list) else [],
            server=server,
            title=str(title) if title else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "arguments": self.arguments,
            "serverName": self.server,
        }
        if self.title:
            out["title"] = self.title
        return out


@dataclass
class MCPResource:
    uri: str
    name: str
    description: str = ""
    mime_type: Optional[str] = None
    server: str = ""

    @classmethod
    def from_wire(cls, raw: Dict[str, Any], *, server: str) -> "MCPResource":
        mime = raw.get("mimeType")
        return cls(
            uri=str(raw.get("uri", "") or ""),
            name=str(raw.get("name", "") or ""),
            description=str(raw.get("description", "") or ""),
            mime_type=str(mime) if mime else None,
            server=server,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uri": self.uri,
            "name": self.name,
            "description": self.description,
            "mimeType": self.mime_type,
            "serverName": self.server,
        }


@dataclass
class ResourceContent:
    uri: str
    mime_type: Optional[str] = None
    text: Optional[str] = None
    blob: Optional[str] = None  # base64

    @classmethod
    def from_wire(cls, raw: Dict[str, Any]) -> "ResourceContent":
        return cls(
            uri=str(raw.get("uri", "") or ""),
            mime_type=raw.get("mimeType"),
            text=raw.get("text"),
            blob=raw.get("blob"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"uri": self.uri, "mimeType": self.mime_type, "text": self.text, "blob": self.blob}


@dataclass
class ContentBlock:
    """
    One block of a tool result: type is "text", "image", "audio", "resource", ...
    Non-text payload fields are kept verbatim in `extra`.
    """

    type: str
    text: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_wire(cls, raw: Dict[str, Any]) -> "ContentBlock":
        extra = {k: v for k, v in raw.items() if k not in ("type", "text")}
        text = raw.get("text")
        return cls(type=str(raw.get("type", "text") or "text"), text=text if isinstance(text, str) else None, extra=extra)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type, **self.extra}
        if self.text is not None:
            out["text"] = self.text
        return out


@dataclass
class ToolCallResult:
    content: List[ContentBlock]
    is_error: bool = False

    @classmethod
    def from_wire(cls, raw: Any) -> "ToolCallResult":
        blocks = raw.get("content") if isinstance(raw, dict) else None
        content = [ContentBlock.from_wire(b) for b in blocks if isinstance(b, dict)] if isinstance(blocks, list) else []
        is_error = bool(raw.get("isError")) if isinstance(raw, dict) else False
        return cls(content=content, is_error=is_error)

    def text(self) -> str:
        """
        Text blocks joined by newlines; falls back to the JSON of all blocks
        when the result carries no text (images, embedded resources).
        """
        parts = [b.text for b in self.content if b.type == "text" and b.text]
        if parts:
            return "\n".join(parts)
        return json.dumps([b.to_dict() for b in self.content], ensure_ascii=False)
