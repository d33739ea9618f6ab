"""Session broker server: WebSocket clients plus a small HTTP surface.

One aiohttp application per broker instance serves:
  GET  /  or /ws       — WebSocket upgrade for clients
  POST /upload         — multipart image upload, returns {"paths": [...]}
  POST /hmr-retrigger  — re-touch changed files to kick the bundler
  GET  /health         — liveness probe
  OPTIONS *            — CORS preflight

Every route except OPTIONS requires ``?secret=`` when a secret is
configured. All broker state lives on the instance, so several brokers
can run side by side in one process.
"""
from __future__ import annotations

import asyncio
import hmac
import logging
import os
import re
import time
from typing import Any

from aiohttp import WSCloseCode, WSMsgType, web

from flowbroker.config import BrokerConfig, mask_secret
from flowbroker.engine.base import QueryEngine
from flowbroker.engine.executor import QueryExecutor
from flowbroker.errors import InvalidMessageError, UploadError
from flowbroker.shared.services.git_ops import GitOperations
from flowbroker.shared.services.reload import retrigger_reload
from flowbroker.shared.services.session_store import SessionStore
from flowbroker.shared.services.uploads import cleanup_images, parse_multipart_and_save

from . import protocol
from .git_coordinator import GitCoordinator

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

MAX_UPLOAD_BYTES = 50 * 1024 * 1024

_BOUNDARY_RE = re.compile(r'boundary=(?:"([^"]+)"|([^;\s]+))', re.IGNORECASE)


def parse_boundary(content_type: str) -> str:
    """Extract the multipart boundary from a Content-Type header. Raises UploadError."""
    if "multipart/form-data" not in content_type.lower():
        raise UploadError("Expected multipart/form-data")
    match = _BOUNDARY_RE.search(content_type)
    if not match:
        raise UploadError("No boundary in content-type")
    return match.group(1) or match.group(2)


class BrokerServer:
    """Connection router for one working tree."""

    def __init__(
        self,
        config: BrokerConfig,
        *,
        engine: QueryEngine | None = None,
        git: GitOperations | None = None,
    ) -> None:
        self._config = config
        self._root = config.root_path
        self._started_at = time.time()

        self._store = SessionStore(config.state_path)
        self._session = self._store.load()
        self._clients: set[web.WebSocketResponse] = set()
        # Clients still receiving their connect replay, with broadcasts held back.
        self._joining: dict[web.WebSocketResponse, list[dict[str, Any]]] = {}

        self._git = git or GitOperations(
            self._root,
            excluded_paths=[config.state_path, config.image_path],
        )
        self._coordinator = GitCoordinator(
            self._git,
            self.broadcast,
            base_branch=config.base_branch,
            recent_branch_limit=config.recent_branch_limit,
        )
        if engine is None:
            from flowbroker.engine.claude_engine import ClaudeEngine

            engine = ClaudeEngine(
                model=config.model,
                system_prompt_append=config.system_prompt_append,
            )
        self._engine = engine
        self._executor = QueryExecutor(
            engine,
            self._session,
            self._store,
            self.broadcast,
            cwd=self._root,
            image_dir=config.image_path,
            on_success=self.retrigger_reload,
        )

        self._handlers = {
            protocol.PromptMessage: self._on_prompt,
            protocol.NewSessionMessage: self._on_new_session,
            protocol.StopMessage: self._on_stop,
            protocol.DiscardChangesMessage: self._on_discard_changes,
            protocol.ListBranchesMessage: self._on_list_branches,
            protocol.SwitchBranchMessage: self._on_switch_branch,
            protocol.CreateBranchMessage: self._on_create_branch,
        }

        self._runner: web.AppRunner | None = None
        self._watcher_task: asyncio.Task | None = None
        self._port = config.port
        self._stopping = False

        self._app = web.Application(
            middlewares=[
                self._request_logging_middleware,
                self._cors_middleware,
                self._auth_middleware,
            ],
            client_max_size=MAX_UPLOAD_BYTES,
        )
        self._setup_routes()

    # ── Accessors ──

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def session(self):
        return self._session

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def executor(self) -> QueryExecutor:
        return self._executor

    @property
    def coordinator(self) -> GitCoordinator:
        return self._coordinator

    @property
    def clients(self) -> set[web.WebSocketResponse]:
        return self._clients

    @property
    def port(self) -> int:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        start = time.monotonic()
        path = mask_secret(request.path_qs)
        logger.debug("HTTP %s %s from=%s", request.method, path, request.remote)
        try:
            response = await handler(request)
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s failed duration_ms=%.1f", request.method, path, elapsed_ms)
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s status=%s duration_ms=%.1f",
            request.method, path, getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            response = await handler(request)
        except (web.HTTPNotFound, web.HTTPMethodNotAllowed):
            response = web.json_response({"error": "Not found"}, status=404)
        if not response.prepared:
            response.headers.update(CORS_HEADERS)
        return response

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        secret = self._config.secret
        if not secret or request.method == "OPTIONS":
            return await handler(request)
        provided = request.query.get("secret", "")
        if not hmac.compare_digest(provided.encode(), secret.encode()):
            logger.warning("Rejected unauthorized %s %s", request.method, request.path)
            return web.Response(status=401, text="Unauthorized")
        return await handler(request)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/", self._handle_ws)
        r.add_get("/ws", self._handle_ws)
        r.add_get("/health", self._handle_health)
        r.add_post("/upload", self._handle_upload)
        r.add_post("/hmr-retrigger", self._handle_hmr_retrigger)
        r.add_route("OPTIONS", "/{tail:.*}", self._handle_options)

    # ── HTTP handlers ──

    async def _handle_options(self, request: web.Request) -> web.Response:
        return web.Response(status=204)

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptimeSeconds": round(max(0.0, time.time() - self._started_at), 3),
            "clients": len(self._clients),
            "processing": self._executor.is_active,
            "engine": self._engine.name,
            "engineAvailable": self._engine.is_available(),
        })

    async def _handle_upload(self, request: web.Request) -> web.Response:
        try:
            boundary = parse_boundary(request.headers.get("Content-Type", ""))
        except UploadError as exc:
            return web.json_response({"error": str(exc)}, status=400)
        body = await request.read()
        try:
            paths = parse_multipart_and_save(body, boundary, self._config.image_path)
        except OSError as exc:
            logger.error("Upload failed: %s", exc)
            return web.json_response({"error": str(exc)}, status=500)
        logger.info("Upload saved %d file(s)", len(paths))
        return web.json_response({"paths": paths})

    async def _handle_hmr_retrigger(self, request: web.Request) -> web.Response:
        await self.retrigger_reload()
        return web.Response(text="OK")

    async def retrigger_reload(self) -> int:
        return await retrigger_reload(self._git, self._root)

    # ── WebSocket ──

    async def _handle_ws(self, request: web.Request) -> web.StreamResponse:
        ws = web.WebSocketResponse()
        if not ws.can_prepare(request).ok:
            raise web.HTTPNotFound()
        await ws.prepare(request)
        try:
            await self._join(ws)
            logger.info("Client connected from %s (%d total)", request.remote, len(self._clients))
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_frame(ws, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket error: %s", ws.exception())
                    break
        finally:
            self._joining.pop(ws, None)
            self._clients.discard(ws)
            logger.info("Client disconnected (%d remaining)", len(self._clients))
        return ws

    def _connect_replay(self) -> list[dict[str, Any]]:
        events = [protocol.status_event("connected")]
        if self._session.history:
            events.append(protocol.history_event(self._session.history_dicts()))
        state = self._executor.state
        if state.is_active:
            events.append(protocol.status_event("processing"))
            events.append(protocol.stream_event(state.active_prompt_id, state.accumulated_text, False))
        return events

    async def _join(self, ws: web.WebSocketResponse) -> None:
        """Send the connect replay, then admit the client to broadcasts.

        The replay is captured in the same step that starts holding back
        broadcasts for this client, so held events are exactly the ones
        that happened after the replay and are delivered after it.
        """
        held: list[dict[str, Any]] = []
        replay = self._connect_replay()
        self._joining[ws] = held
        for event in replay:
            await self._send(ws, event)
        await self._send(ws, await self._coordinator.status_event())
        while held:
            await self._send(ws, held.pop(0))
        del self._joining[ws]
        if not ws.closed:
            self._clients.add(ws)

    async def _handle_frame(self, ws: web.WebSocketResponse, data: str) -> None:
        try:
            message = protocol.decode_frame(data)
        except InvalidMessageError as exc:
            logger.warning("Rejected client message: %s", exc.reason)
            await self._send(ws, protocol.error_event(exc.reason))
            return
        handler = self._handlers[type(message)]
        logger.info("Client message: %s", message.message_type)
        try:
            await handler(ws, message)
        except Exception as exc:
            logger.exception("Handler for %s failed", message.message_type)
            await self._send(ws, protocol.error_event(str(exc) or exc.__class__.__name__))

    async def _send(self, ws: web.WebSocketResponse, event: dict[str, Any]) -> None:
        if ws.closed:
            return
        try:
            await ws.send_json(event)
        except (ConnectionError, RuntimeError) as exc:
            logger.debug("Dropping client after send failure: %s", exc)
            self._clients.discard(ws)

    async def broadcast(self, event: dict[str, Any]) -> None:
        """Send an event to every open client."""
        for held in self._joining.values():
            held.append(event)
        for ws in list(self._clients):
            await self._send(ws, event)

    # ── Message handlers ──

    async def _on_prompt(self, ws: web.WebSocketResponse, message: protocol.PromptMessage) -> None:
        if self._executor.is_active:
            logger.warning(
                "Rejected prompt %s: query %s still running",
                message.id, self._executor.state.active_prompt_id,
            )
            await self._send(ws, protocol.error_event("A query is already in progress", message.id))
            return
        self._executor.start(message.id, message.content, message.image_paths)

    async def _on_new_session(self, ws: web.WebSocketResponse, message: protocol.NewSessionMessage) -> None:
        await self._executor.cancel_and_wait(self._config.shutdown_grace_seconds)
        self._session.reset()
        self._store.clear()
        cleanup_images(self._config.image_path)
        logger.info("Session cleared")
        await self._send(ws, protocol.session_cleared_event())

    async def _on_stop(self, ws: web.WebSocketResponse, message: protocol.StopMessage) -> None:
        await self._executor.stop()
        await self._send(ws, protocol.stopped_event())

    async def _on_discard_changes(
        self, ws: web.WebSocketResponse, message: protocol.DiscardChangesMessage,
    ) -> None:
        error = await self._coordinator.discard_changes()
        if error is not None:
            await self._send(ws, error)

    async def _on_list_branches(self, ws: web.WebSocketResponse, message: protocol.ListBranchesMessage) -> None:
        await self._send(ws, await self._coordinator.list_branches())

    async def _on_switch_branch(self, ws: web.WebSocketResponse, message: protocol.SwitchBranchMessage) -> None:
        await self._send(ws, await self._coordinator.switch_branch(message.branch_name))

    async def _on_create_branch(self, ws: web.WebSocketResponse, message: protocol.CreateBranchMessage) -> None:
        await self._send(ws, await self._coordinator.create_branch(message.branch_name))

    # ── Git watcher ──

    async def _watch_git(self) -> None:
        interval = self._config.git_poll_interval_seconds
        logger.info("Git watcher started (every %.1fs)", interval)
        while True:
            try:
                await self._coordinator.poll()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Git watcher tick failed")
            await asyncio.sleep(interval)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Bind the listener and start the git watcher. Raises OSError on bind failure."""
        if not self._engine.is_available():
            logger.warning(
                "Engine %s is not available; prompts will fail until it is installed",
                self._engine.name,
            )
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()

        actual_port = self._resolve_port(site, self._runner)
        if actual_port is not None:
            self._port = actual_port
        logger.info("Broker listening on ws://%s:%d (root=%s)", self._config.host, self._port, self._root)
        self._watcher_task = asyncio.get_running_loop().create_task(self._watch_git())

    async def stop(self) -> None:
        """Cancel the query, close clients, stop the watcher, then the listener."""
        if self._stopping:
            return
        self._stopping = True
        logger.info("Broker shutting down")
        await self._executor.cancel_and_wait(self._config.shutdown_grace_seconds)

        for ws in [*self._clients, *self._joining]:
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")
        self._clients.clear()

        if self._watcher_task is not None:
            self._watcher_task.cancel()
            try:
                await self._watcher_task
            except asyncio.CancelledError:
                pass
            self._watcher_task = None

        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self.stop()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None
