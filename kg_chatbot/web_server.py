"""HTTP server: the streaming chat endpoint and health checks."""

import asyncio
import contextlib
import json
import signal
import socket
import time
import uuid
from pathlib import Path
from typing import Any, Callable

from aiohttp import web

from kg_chatbot.agent_loop import AgentLoop
from kg_chatbot.config import Config
from kg_chatbot.conversation import normalize_request_messages
from kg_chatbot.db import GraphDatabase
from kg_chatbot.exceptions import RequestValidationError
from kg_chatbot.frames import FrameEmitter
from kg_chatbot.llm import ModelSession, create_session
from kg_chatbot.logging import bind_request_context, get_logger
from kg_chatbot.stream_guard import StreamGuard
from kg_chatbot.tools import ToolGateway

log = get_logger(__name__)

MAX_BODY_BYTES = 1024 * 1024

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    "X-Vercel-AI-UI-Message-Stream": "v1",
}

CORS_ALLOW_METHODS = "GET, POST, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type, Authorization"


def cors_headers(origins: list[str], request: web.Request) -> dict[str, str]:
    """Access-Control headers for ``request`` given the allowed origins."""
    if "*" in origins:
        return {"Access-Control-Allow-Origin": "*"}
    origin = request.headers.get("Origin", "")
    if origin and origin in origins:
        return {"Access-Control-Allow-Origin": origin, "Vary": "Origin"}
    return {}


def cors_middleware(origins: list[str]):
    """Answer preflight requests and decorate plain responses."""

    @web.middleware
    async def middleware(request: web.Request, handler):
        headers = cors_headers(origins, request)
        if request.method == "OPTIONS" and "Access-Control-Request-Method" in request.headers:
            if headers:
                headers["Access-Control-Allow-Methods"] = CORS_ALLOW_METHODS
                headers["Access-Control-Allow-Headers"] = request.headers.get(
                    "Access-Control-Request-Headers", CORS_ALLOW_HEADERS
                )
            return web.Response(status=204, headers=headers)

        response = await handler(request)
        # Streamed responses already sent their headers.
        if not response.prepared:
            response.headers.update(headers)
        return response

    return middleware


def _transport_closing(request: web.Request) -> bool:
    transport = request.transport
    return transport is None or transport.is_closing()


def _tune_socket(request: web.Request) -> None:
    transport = request.transport
    sock = transport.get_extra_info("socket") if transport is not None else None
    if sock is None or sock.family not in (socket.AF_INET, socket.AF_INET6):
        return
    with contextlib.suppress(OSError):
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)


class WebServer:
    """aiohttp application wiring for the chatbot.

    Args:
        config: Loaded configuration.
        session_factory: Builds a fresh ``ModelSession`` per chat request.
            Defaults to the configured backend.
        gateway: Shared tool gateway; created from config on first use.
        database: Neo4j health probe; created from config by default.
    """

    def __init__(
        self,
        config: Config,
        session_factory: Callable[[], ModelSession] | None = None,
        gateway: ToolGateway | None = None,
        database: GraphDatabase | None = None,
    ):
        self.config = config
        self.gateway = gateway
        self.database = database or GraphDatabase.from_config(config)
        self._session_factory = session_factory or self._create_session
        self._client: Any = None

    def _get_gateway(self) -> ToolGateway:
        if self.gateway is None:
            self.gateway = ToolGateway.from_config(self.config)
        return self.gateway

    def _create_session(self) -> ModelSession:
        if self.config.model.backend != "api":
            return create_session(self.config)

        if self._client is None:
            from kg_chatbot.llm.anthropic_api import create_client

            self._client = create_client(
                api_key=self.config.model.api_key or None,
                base_url=self.config.model.base_url or None,
                timeout=self.config.model.timeout,
            )
        return create_session(self.config, gateway=self._get_gateway(), client=self._client)

    def create_app(self) -> web.Application:
        app = web.Application(
            middlewares=[cors_middleware(self.config.web.cors_origins)],
            client_max_size=MAX_BODY_BYTES,
        )
        app.router.add_post("/api/chat", self.chat)
        app.router.add_get("/api/health", self.health)
        app.router.add_get("/api/health/db", self.health_db)

        static_dir = Path(self.config.web.static_dir).expanduser() if self.config.web.static_dir else None
        if static_dir is not None and static_dir.is_dir():
            app.router.add_get("/", self._index_factory(static_dir))
            app.router.add_static("/", static_dir, follow_symlinks=False)
            log.info("Serving static files", path=str(static_dir))

        app.on_cleanup.append(self._on_cleanup)
        return app

    @staticmethod
    def _index_factory(static_dir: Path):
        index = static_dir / "index.html"

        async def _index(request: web.Request) -> web.StreamResponse:
            if not index.is_file():
                raise web.HTTPNotFound()
            return web.FileResponse(index)

        return _index

    async def _on_cleanup(self, app: web.Application) -> None:
        if self.gateway is not None:
            await self.gateway.aclose()
        await self.database.close()
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def health(self, request: web.Request) -> web.Response:
        """``GET /api/health``."""
        return web.json_response({"status": "ok"})

    async def health_db(self, request: web.Request) -> web.Response:
        """``GET /api/health/db`` - Neo4j connectivity check."""
        result = await self.database.check_health()
        if result.ok:
            return web.json_response({"status": "connected", "latencyMs": result.latency_ms})
        return web.json_response({"status": "disconnected", "error": result.error}, status=503)

    async def chat(self, request: web.Request) -> web.StreamResponse:
        """``POST /api/chat`` - stream an agentic answer as UI message frames."""
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.json_response({"error": "invalid JSON body"}, status=400)

        try:
            turns = normalize_request_messages(body.get("messages") if isinstance(body, dict) else None)
        except RequestValidationError as e:
            return web.json_response({"error": str(e)}, status=400)

        bind_request_context(request_id=uuid.uuid4().hex[:8], backend=self.config.model.backend)
        session = self._session_factory()
        started = time.monotonic()
        log.info("Chat request", messages=len(turns))

        response = web.StreamResponse(
            status=200,
            headers={**SSE_HEADERS, **cors_headers(self.config.web.cors_origins, request)},
        )
        try:
            await response.prepare(request)
            _tune_socket(request)

            guard = StreamGuard(
                FrameEmitter(response.write),
                is_disconnected=lambda: _transport_closing(request),
                keepalive_interval=self.config.loop.keepalive_interval,
            )
            loop = AgentLoop(
                session,
                max_iterations=self.config.loop.max_iterations,
                abort_event=guard.abort_event,
            )
            await guard.run(loop.run(turns))
        finally:
            await session.aclose()

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if guard.cancel_reason:
            log.info("Chat stream cancelled", reason=guard.cancel_reason, elapsed_ms=elapsed_ms)
            return response

        log.info("Chat stream finished", iterations=loop.iterations, elapsed_ms=elapsed_ms)
        with contextlib.suppress(ConnectionError):
            await response.write_eof()
        return response


async def _run_server(config: Config) -> None:
    """Start the web server."""
    server = WebServer(config)
    loop = asyncio.get_running_loop()

    # Stop event: set by signal handler to trigger graceful shutdown.
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        if not stop_event.is_set():
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except (NotImplementedError, OSError):
            # Windows doesn't support add_signal_handler for SIGTERM.
            pass

    app = server.create_app()
    runner = web.AppRunner(app)
    await runner.setup()

    host = config.web.host
    port = config.web.port
    site = web.TCPSite(runner, host, port)
    await site.start()

    log.info("Server running", url=f"http://{host}:{port}", backend=config.model.backend)
    print(f"\n  kg-chatbot running at http://{host}:{port}")
    print("  Press Ctrl+C to stop.\n")

    await stop_event.wait()

    print("\nShutting down...")
    await runner.cleanup()


def run_web_server(config: Config) -> None:
    """Entry point for running the web server."""
    try:
        asyncio.run(_run_server(config))
    except KeyboardInterrupt:
        pass  # Signal handler handles graceful shutdown.
