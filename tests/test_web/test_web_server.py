import json

import pytest
from aiohttp.test_utils import TestClient, TestServer

from kg_chatbot.config import Config
from kg_chatbot.db import HealthResult
from kg_chatbot.llm import ModelSession
from kg_chatbot.llm.events import DONE, BlockEnded, TextBlockStarted, TextDelta, TurnFinished
from kg_chatbot.web_server import WebServer


class AnswerSession(ModelSession):
    def __init__(self, text="4"):
        self.text = text
        self.prompts: list[list] = []
        self.closed = False

    async def stream_turn(self, turns, abort_event=None):
        self.prompts.append(list(turns))
        yield TextBlockStarted("t1")
        yield TextDelta("t1", self.text)
        yield BlockEnded("t1")
        yield TurnFinished(DONE)

    async def call_tool(self, call, abort_event=None):
        return ""

    async def aclose(self):
        self.closed = True


class FakeDatabase:
    def __init__(self, result: HealthResult):
        self.result = result
        self.closed = False

    async def check_health(self) -> HealthResult:
        return self.result

    async def close(self) -> None:
        self.closed = True


def _config() -> Config:
    cfg = Config()
    cfg.loop.keepalive_interval = 10.0
    cfg.web.cors_origins = ["*"]
    cfg.web.static_dir = ""
    return cfg


def _server(session=None, health=None, cfg=None):
    sessions = []

    def factory():
        created = session or AnswerSession()
        sessions.append(created)
        return created

    server = WebServer(
        cfg or _config(),
        session_factory=factory,
        database=FakeDatabase(health or HealthResult(ok=True, latency_ms=3)),
    )
    return server, sessions


def _parse_sse(body: str) -> tuple[list[dict], list[str]]:
    frames, raw = [], []
    for event in body.split("\n\n"):
        if not event:
            continue
        raw.append(event)
        if event.startswith("data: {"):
            frames.append(json.loads(event[len("data: "):]))
    return frames, raw


@pytest.mark.asyncio
async def test_health_endpoint():
    server, _ = _server()
    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.get("/api/health")
        assert resp.status == 200
        assert await resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_db_health_reports_latency():
    server, _ = _server(health=HealthResult(ok=True, latency_ms=7))
    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.get("/api/health/db")
        assert resp.status == 200
        assert await resp.json() == {"status": "connected", "latencyMs": 7}


@pytest.mark.asyncio
async def test_db_health_failure_returns_503():
    server, _ = _server(health=HealthResult(ok=False, error="Connection refused"))
    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.get("/api/health/db")
        assert resp.status == 503
        assert await resp.json() == {"status": "disconnected", "error": "Connection refused"}


@pytest.mark.asyncio
async def test_chat_rejects_missing_messages_before_streaming():
    server, sessions = _server()
    async with TestClient(TestServer(server.create_app())) as client:
        for body in ({}, {"messages": []}, {"messages": "hi"}):
            resp = await client.post("/api/chat", json=body)
            assert resp.status == 400
            assert await resp.json() == {"error": "messages array is required"}
            assert resp.headers["Content-Type"].startswith("application/json")

    assert sessions == []


@pytest.mark.asyncio
async def test_chat_rejects_invalid_json():
    server, _ = _server()
    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.post(
            "/api/chat",
            data="{not json",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status == 400
        assert "error" in await resp.json()


@pytest.mark.asyncio
async def test_chat_streams_ui_message_frames():
    server, sessions = _server()
    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.post(
            "/api/chat",
            json={"messages": [{"role": "user", "parts": [{"type": "text", "text": "What is 2+2?"}]}]},
        )
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")
        assert resp.headers["Cache-Control"] == "no-cache"
        assert resp.headers["X-Accel-Buffering"] == "no"
        assert resp.headers["X-Vercel-AI-UI-Message-Stream"] == "v1"
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
        body = await resp.text()

    frames, raw = _parse_sse(body)
    assert [frame["type"] for frame in frames] == [
        "start", "start-step", "text-start", "text-delta", "text-end", "finish-step", "finish",
    ]
    assert frames[3]["delta"] == "4"
    assert raw[-1] == "data: [DONE]"

    [session] = sessions
    assert session.closed is True
    assert session.prompts[0][0].plain_text == "What is 2+2?"


@pytest.mark.asyncio
async def test_cors_preflight_is_answered():
    server, _ = _server()
    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.options(
            "/api/chat",
            headers={
                "Origin": "http://localhost:5173",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "content-type",
            },
        )
        assert resp.status == 204
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
        assert "POST" in resp.headers["Access-Control-Allow-Methods"]
        assert resp.headers["Access-Control-Allow-Headers"] == "content-type"


@pytest.mark.asyncio
async def test_cors_echoes_listed_origin_only():
    cfg = _config()
    cfg.web.cors_origins = ["http://localhost:5173"]
    server, _ = _server(cfg=cfg)
    async with TestClient(TestServer(server.create_app())) as client:
        allowed = await client.get("/api/health", headers={"Origin": "http://localhost:5173"})
        assert allowed.headers["Access-Control-Allow-Origin"] == "http://localhost:5173"

        denied = await client.get("/api/health", headers={"Origin": "http://evil.example"})
        assert "Access-Control-Allow-Origin" not in denied.headers


@pytest.mark.asyncio
async def test_static_dir_serves_index(tmp_path):
    (tmp_path / "index.html").write_text("<html>chat</html>", encoding="utf-8")
    (tmp_path / "app.js").write_text("console.log(1)", encoding="utf-8")
    cfg = _config()
    cfg.web.static_dir = str(tmp_path)
    server, _ = _server(cfg=cfg)
    async with TestClient(TestServer(server.create_app())) as client:
        index = await client.get("/")
        assert index.status == 200
        assert "chat" in await index.text()

        script = await client.get("/app.js")
        assert script.status == 200

        health = await client.get("/api/health")
        assert health.status == 200


@pytest.mark.asyncio
async def test_cleanup_closes_database():
    server, _ = _server()
    async with TestClient(TestServer(server.create_app())):
        pass

    assert server.database.closed is True
