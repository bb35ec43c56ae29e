#!/usr/bin/env python3
"""
Lullaby player service (lullaby-player)

Runs the PlaybackController and exposes it to the app over HTTP, with a
WebSocket feed for "now playing" updates.  The same feed carries the media
notification: the app renders whatever arrives as ``notification`` events
and posts the user's taps back to /notification/action/{id}.

  POST /player/play        {"track_id"?}  — play a track (default: current)
  POST /player/pause                      — pause / stop the appliance
  POST /player/resume                     — resume
  POST /player/toggle                     — play/pause toggle
  POST /player/next                       — next track
  POST /player/prev                       — previous track
  POST /player/stop                       — stop
  POST /player/volume      {"delta"}      — nudge volume
  POST /player/seek        {"fraction"}   — seek (local playback only)
  POST /player/mode        {"mode"}       — "remote" or "local"
  POST /player/foreground                 — app came to the foreground: reconcile
  GET  /player/state                      — controller snapshot
  GET  /player/status                     — service status
  POST /notification/action/{action_id}   — notification button pressed
  GET  /ws                                — media_update / notification / error events
"""

import asyncio
import itertools
import json
import logging
import signal

import aiohttp
from aiohttp import web

from .controller import PlaybackController
from .lib.catalog import CatalogClient
from .lib.config import cfg
from .lib.local_engine import LocalAudioEngine
from .lib.models import PlayerState
from .lib.notifications import ActionHandler, NotificationBackend, NotificationBridge
from .lib.state_store import JsonFileStore, StateStore
from .players.appliance import ApplianceClient

log = logging.getLogger('lullaby-player')

DEFAULT_PORT = 8766


class WebSocketNotificationBackend(NotificationBackend):
    """Notification API backed by the app's WebSocket connection."""

    def __init__(self):
        self._ws_clients: set[web.WebSocketResponse] = set()
        self._handlers: dict[str, ActionHandler] = {}
        self._ids = itertools.count(1)
        self.current: dict | None = None

    @property
    def clients(self) -> set[web.WebSocketResponse]:
        return self._ws_clients

    async def schedule(self, content: dict) -> str:
        notification_id = f"media-{next(self._ids)}"
        self.current = {"id": notification_id, "content": content}
        await self.broadcast({"type": "notification", "action": "show", **self.current})
        return notification_id

    async def dismiss(self, notification_id: str) -> None:
        if self.current and self.current["id"] == notification_id:
            self.current = None
        await self.broadcast({"type": "notification", "action": "dismiss", "id": notification_id})

    def register_action_handler(self, action_id: str, callback: ActionHandler) -> None:
        self._handlers[action_id] = callback

    async def invoke(self, action_id: str) -> bool:
        """Run the handler registered for *action_id*.  False if none."""
        handler = self._handlers.get(action_id)
        if handler is None:
            log.info("No handler for notification action %r", action_id)
            return False
        await handler()
        return True

    async def broadcast(self, message: dict):
        """Push *message* to all connected WebSocket clients."""
        if not self._ws_clients:
            return
        text = json.dumps(message)
        disconnected = set()
        for ws in self._ws_clients:
            try:
                await ws.send_str(text)
            except (ConnectionError, RuntimeError):
                disconnected.add(ws)
        self._ws_clients -= disconnected


class PlayerServer:
    def __init__(self, controller: PlaybackController,
                 backend: WebSocketNotificationBackend, port: int | None = None):
        self.controller = controller
        self.backend = backend
        self.port = int(port if port is not None else cfg("server", "port", default=DEFAULT_PORT))
        self._runner: web.AppRunner | None = None
        self.running = False
        controller.add_listener(self._on_controller_event)

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ws", self._handle_ws)
        app.router.add_post("/player/play", self._handle_play)
        app.router.add_post("/player/pause", self._simple(self.controller.pause))
        app.router.add_post("/player/resume", self._simple(self.controller.resume))
        app.router.add_post("/player/toggle", self._simple(self.controller.toggle))
        app.router.add_post("/player/next", self._simple(self.controller.next))
        app.router.add_post("/player/prev", self._simple(self.controller.previous))
        app.router.add_post("/player/stop", self._simple(self.controller.stop))
        app.router.add_post("/player/volume", self._handle_volume)
        app.router.add_post("/player/seek", self._handle_seek)
        app.router.add_post("/player/mode", self._handle_mode)
        app.router.add_post("/player/foreground", self._handle_foreground)
        app.router.add_get("/player/state", self._handle_state)
        app.router.add_get("/player/status", self._handle_status)
        app.router.add_post("/notification/action/{action_id}", self._handle_action)
        return app

    # ── Lifecycle ──

    async def start(self):
        self.running = True
        await self.controller.start()
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self.port)
        await site.start()
        log.info("Player service: HTTP + WebSocket on port %d", self.port)

    async def run(self):
        """Convenience entry-point: start + wait for signal + stop."""
        await self.start()
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
        try:
            await stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self):
        self.running = False
        await self.controller.shutdown()
        for ws in list(self.backend.clients):
            await ws.close()
        self.backend.clients.clear()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ── Event fan-out ──

    async def _on_controller_event(self, event: str, data: dict):
        await self.backend.broadcast({"type": event, "data": data})

    # ── WebSocket handler ──

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.backend.clients.add(ws)
        log.info("WebSocket client connected (%d total)", len(self.backend.clients))
        try:
            await ws.send_json({"type": "media_update",
                                "data": {"reason": "client_connect", **self.controller.snapshot()}})
            if self.backend.current:
                await ws.send_json({"type": "notification", "action": "show", **self.backend.current})
            async for _msg in ws:
                pass  # push-only
        finally:
            self.backend.clients.discard(ws)
            log.info("WebSocket client disconnected (%d remaining)", len(self.backend.clients))
        return ws

    # ── HTTP route handlers ──

    def _cors_headers(self):
        return {
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
        }

    def _result(self, ok: bool, **extra) -> web.Response:
        return web.json_response(
            {"status": "ok" if ok else "error", **extra},
            headers=self._cors_headers())

    def _bad_request(self, message: str) -> web.Response:
        return web.json_response(
            {"status": "error", "message": message},
            status=400, headers=self._cors_headers())

    async def _json_body(self, request: web.Request) -> dict:
        try:
            data = await request.json()
        except (json.JSONDecodeError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _simple(self, command):
        async def handler(request: web.Request) -> web.Response:
            ok = await command()
            return self._result(ok, state=self.controller.snapshot())
        return handler

    async def _handle_play(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        track = None
        track_id = data.get("track_id")
        if track_id:
            index = self.controller.playlist.index_of(str(track_id))
            if index is None:
                return self._bad_request(f"unknown track {track_id}")
            track = self.controller.playlist[index]
        ok = await self.controller.play(track)
        return self._result(ok, state=self.controller.snapshot())

    async def _handle_volume(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        try:
            delta = float(data.get("delta", 0))
        except (TypeError, ValueError):
            return self._bad_request("delta must be a number")
        volume = await self.controller.set_volume(delta)
        return self._result(True, volume=volume)

    async def _handle_seek(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        try:
            fraction = float(data["fraction"])
        except (KeyError, TypeError, ValueError):
            return self._bad_request("fraction must be a number between 0 and 1")
        ok = await self.controller.seek(fraction)
        return self._result(ok, state=self.controller.snapshot())

    async def _handle_mode(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        try:
            await self.controller.set_mode(str(data.get("mode", "")))
        except ValueError as e:
            return self._bad_request(str(e))
        return self._result(True, state=self.controller.snapshot())

    async def _handle_foreground(self, request: web.Request) -> web.Response:
        status = await self.controller.on_foreground()
        return self._result(True, remote=status.status if status else None,
                            state=self.controller.snapshot())

    async def _handle_state(self, request: web.Request) -> web.Response:
        return web.json_response(self.controller.snapshot(), headers=self._cors_headers())

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response({
            "player": "appliance",
            "appliance": self.controller.appliance.base_url,
            "state": self.controller.playback_state,
            "ws_clients": len(self.backend.clients),
            "notification": self.backend.current["id"] if self.backend.current else None,
        }, headers=self._cors_headers())

    async def _handle_action(self, request: web.Request) -> web.Response:
        action_id = request.match_info["action_id"]
        ok = await self.backend.invoke(action_id)
        if not ok:
            return web.json_response(
                {"status": "error", "message": f"unknown action {action_id}"},
                status=404, headers=self._cors_headers())
        return self._result(True)


def build_service(http_session: aiohttp.ClientSession) -> PlayerServer:
    """Wire every component from config around one shared HTTP session."""
    appliance = ApplianceClient(session=http_session)
    catalog = CatalogClient(session=http_session)
    store = StateStore(JsonFileStore(cfg("store", "path", default="~/.local/share/lullaby/state.json")))
    backend = WebSocketNotificationBackend()
    state = PlayerState()
    bridge = NotificationBridge(backend, state, appliance, store,
                                volume_step=float(cfg("playback", "volume_step", default=0.1)))
    controller = PlaybackController(appliance, catalog, store, engine=LocalAudioEngine(),
                                    notifications=bridge, state=state)
    return PlayerServer(controller, backend)


async def run():
    async with aiohttp.ClientSession() as http_session:
        server = build_service(http_session)
        await server.run()


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    asyncio.run(run())


if __name__ == "__main__":
    main()
