"""Websocket server streaming agent runs to clients."""

import asyncio
import json
import signal
import uuid
from typing import Any

from aiohttp import web

from deckhand.agent import Agent
from deckhand.config import Config, get_config
from deckhand.events import RUN_AGENT, AgentEvent, to_wire
from deckhand.llm import LLMProvider, get_provider
from deckhand.logging import get_logger
from deckhand.session import AgentSession
from deckhand.tools.registry import ToolRegistry, build_default_registry

log = get_logger(__name__)


def _extract_instruction(data: Any) -> str:
    """Accept a bare string payload or ``{"instruction": ...}``."""
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        return str(data.get("instruction") or data.get("message") or "")
    return ""


class WebServer:
    """Deckhand websocket server."""

    def __init__(
        self,
        config: Config | None = None,
        registry: ToolRegistry | None = None,
        provider: LLMProvider | None = None,
    ):
        self.config = config or get_config()
        self.registry = registry
        self.provider = provider
        self.sessions: dict[str, AgentSession] = {}

    def _ensure_runtime(self) -> None:
        if self.registry is None:
            self.registry = build_default_registry(self.config)
        if self.provider is None:
            self.provider = get_provider()

    def _new_agent(self, session_id: str) -> Agent:
        self._ensure_runtime()
        return Agent(
            provider=self.provider,
            tools=self.registry,
            max_steps=self.config.agent.max_steps,
            session_id=session_id,
        )

    # ── WebSocket handler ────────────────────────────────────────────

    async def ws_handler(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(max_msg_size=self.config.web.max_msg_size)
        await ws.prepare(request)

        async def send(event: AgentEvent) -> None:
            if ws.closed:
                raise ConnectionResetError("websocket closed")
            await ws.send_str(json.dumps(to_wire(event), default=str))

        session_id = uuid.uuid4().hex[:12]
        session = AgentSession(
            agent=self._new_agent(session_id),
            send=send,
            session_id=session_id,
            busy_policy=self.config.web.busy_policy,
            queue_cap=self.config.web.queue_cap,
        )
        self.sessions[session_id] = session
        log.info("Client connected", session_id=session_id, remote=request.remote)

        try:
            async for raw_msg in ws:
                if raw_msg.type == web.WSMsgType.TEXT:
                    try:
                        data = json.loads(raw_msg.data)
                    except json.JSONDecodeError:
                        await session.send_error("Invalid JSON")
                    else:
                        await self._handle_ws_message(session, data)
                    if not session.connected:
                        log.info("Event delivery failed, dropping connection", session_id=session_id)
                        break
                elif raw_msg.type == web.WSMsgType.ERROR:
                    log.error("WebSocket error", session_id=session_id, error=str(ws.exception()))
        finally:
            await session.close()
            self.sessions.pop(session_id, None)
            log.info("Client disconnected", session_id=session_id)

        return ws

    async def _handle_ws_message(self, session: AgentSession, data: Any) -> None:
        """Dispatch incoming WebSocket messages."""
        if not isinstance(data, dict):
            await session.submit(_extract_instruction(data))
            return
        event = str(data.get("event", ""))
        if event == RUN_AGENT:
            await session.submit(_extract_instruction(data.get("data")))
            return
        log.warning("Unsupported websocket event", session_id=session.id, ws_event=event)
        await session.send_error(f"Unsupported event: {event or '<missing>'}")

    # ── HTTP handlers ────────────────────────────────────────────────

    async def list_tools(self, request: web.Request) -> web.Response:
        self._ensure_runtime()
        return web.json_response({"tools": self.registry.get_definitions()})

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "sessions": len(self.sessions)})

    async def _on_shutdown(self, app: web.Application) -> None:
        for session in list(self.sessions.values()):
            await session.close()
        self.sessions.clear()
        if self.provider is not None:
            await self.provider.close()

    # ── App setup ────────────────────────────────────────────────────

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ws", self.ws_handler)
        app.router.add_get("/api/tools", self.list_tools)
        app.router.add_get("/health", self.health)
        app.on_shutdown.append(self._on_shutdown)
        return app


async def _run_server(config: Config) -> None:
    """Start the web server and block until SIGINT/SIGTERM."""
    server = WebServer(config)
    server._ensure_runtime()
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, OSError):
            # Windows doesn't support add_signal_handler for SIGTERM.
            pass

    runner = web.AppRunner(server.create_app())
    await runner.setup()
    site = web.TCPSite(runner, config.web.host, config.web.port)
    await site.start()
    log.info(
        "Deckhand listening",
        url=f"http://{config.web.host}:{config.web.port}",
        tools=server.registry.list_tools(),
    )

    try:
        await stop_event.wait()
    finally:
        log.info("Shutting down")
        await runner.cleanup()


def run_web_server(config: Config) -> None:
    """Entry point for running the web server."""
    try:
        asyncio.run(_run_server(config))
    except KeyboardInterrupt:
        pass
