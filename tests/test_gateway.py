"""Tests for the FastAPI gateway: SSE chat stream and MCP proxy routes."""

import json

import pytest
from fastapi.testclient import TestClient

from agent_relay import config
from agent_relay.gateway.app import create_app
from agent_relay.gateway.sse import format_sse_event
from agent_relay.runtime.errors import ModelBackendError
from agent_relay.runtime.mcp import MCPClientManager
from agent_relay.runtime.retrieval import RetrievedChunk

from conftest import FakeMCPServer, ScriptedLLM, call, string_tool, text, thought


def parse_sse(body: str):
    events = []
    for frame in body.strip().split("\n\n"):
        name, data = None, []
        for line in frame.split("\n"):
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data: "):
                data.append(line[len("data: "):])
        if name:
            events.append((name, json.loads("\n".join(data))))
    return events


class FakeRetriever:
    def __init__(self, chunks=None, error=None):
        self.chunks = chunks or []
        self.error = error
        self.queries = []

    def is_ready(self):
        return True

    async def retrieve(self, query, *, top_k=5):
        self.queries.append((query, top_k))
        if self.error:
            raise self.error
        return self.chunks


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr(config, "mcp_connect_retry_delay_s", lambda: 0.0)
    monkeypatch.setattr(config, "rag_enabled", lambda: True)


@pytest.fixture
def broadcast():
    return FakeMCPServer(
        "broadcast",
        {"get_viewer_count": (string_tool("id", required=("id",)), lambda a: f"{a['id']} has 1520 viewers")},
        prompts={"broadcast_summary": "Summarise broadcasts"},
        resources={"broadcasts://active": "b-1"},
    )


def _app(make_manager, servers, llm=None, retriever=None):
    manager, configs = make_manager(servers)
    app = create_app(manager=manager, llm=llm or ScriptedLLM([]), retriever=retriever, servers=configs)
    return app, manager


# =============================================================================
# SSE framing
# =============================================================================

class TestFormatSseEvent:
    def test_json_payload(self):
        assert format_sse_event({"token": "hi"}, event="token", id="3") == 'id: 3\nevent: token\ndata: {"token": "hi"}\n\n'

    def test_multiline_string(self):
        assert format_sse_event("a\nb") == "data: a\ndata: b\n\n"


# =============================================================================
# /chat
# =============================================================================

class TestChat:
    def test_chat_streams_react_run(self, make_manager, broadcast):
        llm = ScriptedLLM(
            [
                [thought("look it up"), call("get_viewer_count", {"id": "b-1"})],
                [text("1520 "), text("viewers")],
            ]
        )
        app, _ = _app(make_manager, {"broadcast": broadcast}, llm=llm)

        with TestClient(app) as client:
            resp = client.post("/chat", json={"message": "viewers on b-1?", "useRag": False})
            history = client.get("/messages").json()["messages"]

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        events = parse_sse(resp.text)
        names = [n for n, _ in events]
        assert names[:2] == ["status", "status"]
        assert events[0][1] == {"status": "connected"}
        assert names[-1] == "done"
        assert names.index("tool_call") < names.index("observation") < names.index("tool_result") < names.index("token")
        tool_call = dict(events)["tool_call"]
        assert tool_call["toolName"] == "get_viewer_count"
        assert tool_call["message"] == 'Action: get_viewer_count\n Input: {\n  "id": "b-1"\n}'
        assert dict(events)["tool_result"] == {"toolName": "get_viewer_count", "result": "b-1 has 1520 viewers", "ok": True}
        thinking_types = {p["thinkingType"] for n, p in events if n == "thinking"}
        assert thinking_types == {"llm_reasoning", "system_message"}
        assert "".join(p["token"] for n, p in events if n == "token") == "1520 viewers"

        assert [m["role"] for m in history] == ["user", "assistant"]
        assert history[1]["content"] == "1520 viewers"
        assert history[1]["toolCalls"] == [{"name": "get_viewer_count", "args": {"id": "b-1"}, "result": "b-1 has 1520 viewers"}]

    def test_history_is_sent_on_next_turn(self, make_manager):
        llm = ScriptedLLM([[text("first answer")], [text("second answer")]])
        app, _ = _app(make_manager, {}, llm=llm)

        with TestClient(app) as client:
            client.post("/chat", json={"message": "one"})
            client.post("/chat", json={"message": "two"})

        roles = [(m["role"], m["content"]) for m in llm.requests[1]["messages"][1:]]
        assert roles == [("user", "one"), ("assistant", "first answer"), ("user", "two")]

    def test_empty_message(self, make_manager):
        app, _ = _app(make_manager, {})
        with TestClient(app) as client:
            events = parse_sse(client.post("/chat", json={"message": "  "}).text)
        assert events == [("error", {"message": "Message is required"})]

    def test_model_failure_ends_with_error(self, make_manager):
        llm = ScriptedLLM([[text("par"), ModelBackendError("backend unavailable")]])
        app, _ = _app(make_manager, {}, llm=llm)

        with TestClient(app) as client:
            events = parse_sse(client.post("/chat", json={"message": "hi"}).text)
            history = client.get("/messages").json()["messages"]

        assert events[-1] == ("error", {"message": "backend unavailable"})
        assert "done" not in [n for n, _ in events]
        assert [m["role"] for m in history] == ["user"]

    def test_rag_context_is_added_to_system_prompt(self, make_manager):
        retriever = FakeRetriever([RetrievedChunk(text="CDN has 12 edge nodes", source="cdn.md", score=0.9, section="Edges")])
        llm = ScriptedLLM([[text("12")]])
        app, _ = _app(make_manager, {}, llm=llm, retriever=retriever)

        with TestClient(app) as client:
            events = parse_sse(client.post("/chat", json={"message": "how many edge nodes?"}).text)

        names = [n for n, _ in events]
        assert names[:2] == ["status", "rag_context"]
        assert events[0][1] == {"status": "retrieving_context"}
        assert events[1][1]["chunkCount"] == 1
        assert events[1][1]["chunks"][0]["source"] == "cdn.md"
        system = llm.requests[0]["messages"][0]["content"]
        assert "## Knowledge Base Context" in system
        assert "[Source: cdn.md | Section: Edges]\nCDN has 12 edge nodes" in system
        assert retriever.queries == [("how many edge nodes?", 5)]

    def test_rag_failure_continues_without_context(self, make_manager):
        llm = ScriptedLLM([[text("ok")]])
        app, _ = _app(make_manager, {}, llm=llm, retriever=FakeRetriever(error=RuntimeError("index missing")))

        with TestClient(app) as client:
            events = parse_sse(client.post("/chat", json={"message": "hi"}).text)

        names = [n for n, _ in events]
        assert "rag_error" in names
        assert names[-1] == "done"
        assert "Knowledge Base Context" not in llm.requests[0]["messages"][0]["content"]

    def test_use_rag_false_skips_retrieval(self, make_manager):
        retriever = FakeRetriever([RetrievedChunk(text="x")])
        app, _ = _app(make_manager, {}, llm=ScriptedLLM([[text("ok")]]), retriever=retriever)
        with TestClient(app) as client:
            client.post("/chat", json={"message": "hi", "useRag": False})
        assert retriever.queries == []


# =============================================================================
# History, health
# =============================================================================

class TestHistoryAndHealth:
    def test_clear_messages(self, make_manager):
        app, _ = _app(make_manager, {}, llm=ScriptedLLM([[text("ok")]]))
        with TestClient(app) as client:
            client.post("/chat", json={"message": "hi"})
            assert len(client.get("/messages").json()["messages"]) == 2
            assert client.delete("/messages").json() == {"success": True}
            assert client.get("/messages").json() == {"messages": []}

    def test_health(self, make_manager, broadcast):
        app, _ = _app(make_manager, {"broadcast": broadcast})
        with TestClient(app) as client:
            body = client.get("/health").json()
        assert body["ok"] is True
        assert body["mcpConnected"] is True
        assert body["ragReady"] is False


# =============================================================================
# MCP proxy routes
# =============================================================================

class TestMcpRoutes:
    def test_routes_return_503_without_connected_servers(self):
        app = create_app(manager=MCPClientManager(), llm=ScriptedLLM([]), servers=[])
        with TestClient(app) as client:
            for path in ("/mcp/tools", "/mcp/prompts", "/mcp/resources"):
                resp = client.get(path)
                assert resp.status_code == 503
                assert resp.json() == {"error": "No MCP clients connected"}
            assert client.post("/mcp/resources/read", json={"uri": "x://y"}).status_code == 503

    def test_tools_prompts_resources(self, make_manager, broadcast):
        app, _ = _app(make_manager, {"broadcast": broadcast})
        with TestClient(app) as client:
            tools = client.get("/mcp/tools").json()["tools"]
            prompts = client.get("/mcp/prompts").json()["prompts"]
            resources = client.get("/mcp/resources").json()["resources"]
            prompt = client.post("/mcp/prompts/broadcast_summary", json={"channel": "news"})
            missing_prompt = client.post("/mcp/prompts/nope", json={})
            contents = client.post("/mcp/resources/read", json={"uri": "broadcasts://active"})
            missing_uri = client.post("/mcp/resources/read", json={})
            missing_resource = client.post("/mcp/resources/read", json={"uri": "nothing://here"})

        assert tools == [
            {
                "name": "get_viewer_count",
                "description": "get_viewer_count on broadcast",
                "inputSchema": string_tool("id", required=("id",)),
                "serverName": "broadcast",
            }
        ]
        assert prompts[0]["name"] == "broadcast_summary"
        assert resources[0]["uri"] == "broadcasts://active"
        assert prompt.status_code == 200
        assert prompt.json()["description"] == "Summarise broadcasts"
        assert missing_prompt.status_code == 404
        assert contents.json()["contents"][0]["text"] == "b-1"
        assert missing_uri.status_code == 400
        assert missing_resource.status_code == 404

    def test_status_and_reconnect(self, make_manager, broadcast):
        app, manager = _app(make_manager, {"broadcast": broadcast, "down": None})
        with TestClient(app) as client:
            status = client.get("/mcp/status").json()
            reconnect_down = client.post("/mcp/servers/down/reconnect").json()
            unknown = client.post("/mcp/servers/ghost/reconnect")

        servers = {s["name"]: s for s in status["servers"]}
        assert servers["broadcast"]["connected"] is True
        assert servers["broadcast"]["toolCount"] == 1
        assert servers["down"]["state"] == "disconnected"
        assert servers["down"]["error"]
        assert status["connectedCount"] == 1
        assert reconnect_down["connected"] is False
        assert unknown.status_code == 404

    def test_startup_retries_then_shutdown_disconnects(self, make_manager, broadcast):
        app, manager = _app(make_manager, {"broadcast": broadcast, "down": None})
        with TestClient(app):
            assert manager.has_connected_clients()
        assert broadcast.deleted_sessions == ["broadcast-session-1"]
        assert manager.get_status()["totalCount"] == 0
