"""Tests for the HTTP/WebSocket command surface."""

import pytest
from aiohttp import test_utils

from lullaby.controller import PlaybackController
from lullaby.lib.errors import NetworkTimeout
from lullaby.lib.models import PlayerState, RemoteStatus
from lullaby.lib.notifications import NotificationBridge
from lullaby.server import PlayerServer, WebSocketNotificationBackend


@pytest.fixture
async def service(appliance, catalog, state_store, fake_time):
    backend = WebSocketNotificationBackend()
    state = PlayerState()
    bridge = NotificationBridge(backend, state, appliance, state_store, volume_step=0.1)
    controller = PlaybackController(appliance, catalog, state_store, notifications=bridge,
                                    state=state, clock=fake_time, tick_interval=3600,
                                    autoplay_delay=0, volume_step=0.1)
    server = PlayerServer(controller, backend, port=0)
    await controller.start()
    client = test_utils.TestClient(test_utils.TestServer(server.build_app()))
    await client.start_server()
    yield server, client
    await client.close()
    await controller.shutdown()


@pytest.fixture
def client(service):
    return service[1]


class TestPlayerRoutes:
    async def test_play_track(self, client, appliance):
        resp = await client.post("/player/play", json={"track_id": "t2"})
        assert resp.status == 200
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["state"]["session"]["currentTrackId"] == "t2"
        assert appliance.played() == ["http://catalog.test/local/t2.mp3"]

    async def test_play_current_without_body(self, client):
        resp = await client.post("/player/play")
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["state"]["track"]["id"] == "t1"

    async def test_play_unknown_track(self, client):
        resp = await client.post("/player/play", json={"track_id": "nope"})
        assert resp.status == 400

    async def test_failed_play_reports_error(self, client, appliance):
        appliance.play_error = NetworkTimeout("/play_lullaby timed out")
        data = await (await client.post("/player/play")).json()
        assert data["status"] == "error"
        assert data["state"]["error"].startswith("Cannot reach the baby monitor")

    async def test_next_and_prev(self, client):
        data = await (await client.post("/player/next")).json()
        assert data["state"]["session"]["currentIndex"] == 1
        data = await (await client.post("/player/prev")).json()
        assert data["state"]["session"]["currentIndex"] == 0

    async def test_stop(self, client, appliance):
        await client.post("/player/play")
        data = await (await client.post("/player/stop")).json()
        assert data["status"] == "ok"
        assert data["state"]["session"]["isPlaying"] is False
        assert ("stop",) in appliance.calls

    async def test_volume(self, client, appliance):
        data = await (await client.post("/player/volume", json={"delta": -0.2})).json()
        assert data["volume"] == 0.5
        assert appliance.volumes() == [0.5]

    async def test_volume_bad_delta(self, client):
        resp = await client.post("/player/volume", json={"delta": "louder"})
        assert resp.status == 400

    async def test_seek_unsupported_in_remote_mode(self, client):
        data = await (await client.post("/player/seek", json={"fraction": 0.5})).json()
        assert data["status"] == "error"

    async def test_unknown_mode(self, client):
        resp = await client.post("/player/mode", json={"mode": "bluetooth"})
        assert resp.status == 400

    async def test_foreground_reconciles(self, client, appliance):
        await client.post("/player/play")
        appliance.status = RemoteStatus(status="idle", volume=50)
        data = await (await client.post("/player/foreground")).json()
        assert data["remote"] == "idle"
        assert data["state"]["session"]["isPlaying"] is False
        assert data["state"]["session"]["volume"] == 0.5

    async def test_state_and_status(self, client):
        state = await (await client.get("/player/state")).json()
        assert state["playlist_size"] == 3
        status = await (await client.get("/player/status")).json()
        assert status["appliance"] == "http://appliance.test:5001"
        assert status["state"] == "paused"
        assert status["ws_clients"] == 0


class TestNotificationRoutes:
    async def test_stop_action(self, client, appliance):
        await client.post("/player/play")
        resp = await client.post("/notification/action/stop")
        assert resp.status == 200
        state = await (await client.get("/player/state")).json()
        assert state["session"]["isPlaying"] is False
        assert ("stop",) in appliance.calls

    async def test_volume_action(self, client, appliance):
        await client.post("/notification/action/volume_up")
        assert appliance.volumes() == [0.8]

    async def test_unknown_action(self, client):
        resp = await client.post("/notification/action/next")
        assert resp.status == 404


class TestWebSocket:
    async def test_receives_snapshot_then_updates(self, service):
        server, client = service
        ws = await client.ws_connect("/ws")
        first = await ws.receive_json(timeout=2)
        assert first["type"] == "media_update"
        assert first["data"]["reason"] == "client_connect"

        await client.post("/player/play", json={"track_id": "t3"})
        notification = await ws.receive_json(timeout=2)
        assert notification["type"] == "notification"
        assert notification["action"] == "show"
        assert notification["content"]["title"] == "▶ Gentle Rain"
        update = await ws.receive_json(timeout=2)
        assert update["type"] == "media_update"
        assert update["data"]["track"]["id"] == "t3"
        assert len(server.backend.clients) == 1
        await ws.close()

    async def test_late_client_gets_current_notification(self, client):
        await client.post("/player/play")
        ws = await client.ws_connect("/ws")
        await ws.receive_json(timeout=2)
        notification = await ws.receive_json(timeout=2)
        assert notification["action"] == "show"
        assert notification["id"] == "media-1"
        await ws.close()
