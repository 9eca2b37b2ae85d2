from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional


CONFIG_PATH = "agent_relay.json"

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant for StreamVerse, a media streaming and broadcasting platform. "
    "Be concise, accurate, and thoughtful in your responses."
)


@lru_cache(maxsize=1)
def load_config(path: str = CONFIG_PATH) -> Dict[str, Any]:
    return load_config_uncached(path)


def load_config_uncached(path: str = CONFIG_PATH) -> Dict[str, Any]:
    """
    Uncached config read. Use this when changes must take effect without restarting.
    """
    p = Path(path)
    if not p.exists():
        return {}
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except Exception:
        return {}
    return data if isinstance(data, dict) else {}


def _get(cfg: Dict[str, Any], *path: str, default: Any = None) -> Any:
    cur: Any = cfg
    for k in path:
        if not isinstance(cur, dict) or k not in cur:
            return default
        cur = cur[k]
    return cur


def _env_bool(name: str) -> Optional[bool]:
    v = os.getenv(name)
    if v is None or not v.strip():
        return None
    return v.strip().lower() not in ("0", "false", "no", "off")


def gateway_host() -> str:
    cfg = load_config()
    return os.getenv("GATEWAY_HOST") or str(_get(cfg, "gateway", "host", default="127.0.0.1"))


def gateway_port() -> int:
    cfg = load_config()
    try:
        return int(os.getenv("GATEWAY_PORT") or _get(cfg, "gateway", "port", default=3001))
    except Exception:
        return 3001


def llm_model_name() -> str:
    cfg = load_config()
    return os.getenv("LLM_MODEL") or str(_get(cfg, "llm", "model_name", default="gpt-oss:20b"))


def llm_base_url() -> Optional[str]:
    """
    OpenAI-compatible endpoint. Ollama serves one at http://127.0.0.1:11434/v1.
    None means the OpenAI default.
    """
    cfg = load_config()
    v = os.getenv("LLM_BASE_URL") or _get(cfg, "llm", "base_url", default="http://127.0.0.1:11434/v1")
    s = str(v or "").strip()
    return s or None


def llm_temperature() -> float:
    cfg = load_config()
    try:
        return float(_get(cfg, "llm", "temperature", default=0.7))
    except Exception:
        return 0.7


def llm_max_tokens() -> Optional[int]:
    cfg = load_config()
    v = _get(cfg, "llm", "max_tokens", default=4096)
    try:
        n = int(v)
    except Exception:
        return None
    return n if n > 0 else None


def system_prompt() -> str:
    cfg = load_config()
    v = _get(cfg, "llm", "system_prompt", default=DEFAULT_SYSTEM_PROMPT)
    return str(v or DEFAULT_SYSTEM_PROMPT)


def agent_max_iterations() -> int:
    cfg = load_config()
    try:
        return max(1, int(_get(cfg, "agent", "max_iterations", default=10)))
    except Exception:
        return 10


def stream_queue_size() -> int:
    cfg = load_config()
    try:
        return max(1, int(_get(cfg, "agent", "stream_queue_size", default=64)))
    except Exception:
        return 64


def mcp_client_name() -> str:
    cfg = load_config()
    return str(_get(cfg, "mcp", "client_name", default="agent_relay"))


def mcp_client_version() -> str:
    cfg = load_config()
    return str(_get(cfg, "mcp", "client_version", default="1.0.0"))


def mcp_timeout_s() -> float:
    cfg = load_config()
    try:
        return float(_get(cfg, "mcp", "timeout_s", default=30))
    except Exception:
        return 30.0


def mcp_connect_retries() -> int:
    cfg = load_config()
    try:
        return max(1, int(_get(cfg, "mcp", "connect_retries", default=3)))
    except Exception:
        return 3


def mcp_connect_retry_delay_s() -> float:
    cfg = load_config()
    try:
        return float(_get(cfg, "mcp", "connect_retry_delay_s", default=2.0))
    except Exception:
        return 2.0


def mcp_servers() -> List[Dict[str, Any]]:
    """
    Owner records: {name, url, enabled}. Defaults match the two StreamVerse domain servers;
    MCP_<NAME>_URL env vars override a server's url.
    """
    cfg = load_config()
    v = _get(cfg, "mcp", "servers", default=None)
    if not isinstance(v, list):
        v = [
            {"name": "broadcast", "url": "http://localhost:3000/mcp", "enabled": True},
            {"name": "analytics", "url": "http://localhost:3010/mcp", "enabled": True},
        ]
    out: List[Dict[str, Any]] = []
    for s in v:
        if not isinstance(s, dict):
            continue
        item = dict(s)
        name = str(item.get("name", "") or "").strip()
        env_url = os.getenv(f"MCP_{name.upper()}_URL") if name else None
        if env_url:
            item["url"] = env_url
        out.append(item)
    return out


def rag_enabled() -> bool:
    env = _env_bool("RAG_ENABLED")
    if env is not None:
        return env
    cfg = load_config()
    return bool(_get(cfg, "rag", "enabled", default=True))


def rag_top_k() -> int:
    cfg = load_config()
    try:
        return max(1, int(os.getenv("RAG_TOP_K") or _get(cfg, "rag", "top_k", default=5)))
    except Exception:
        return 5
