"""Tests for the appliance HTTP gateway against a local fake appliance."""

import asyncio

import pytest
from aiohttp import web
from aiohttp import test_utils

from lullaby.lib.errors import NetworkTimeout, RemoteRejected
from lullaby.players.appliance import ApplianceClient


class ApplianceStub:
    """Minimal stand-in for the appliance's HTTP API."""

    def __init__(self):
        self.requests: list[tuple[str, dict | None]] = []
        self.play_status = 200
        self.play_delay = 0.0
        self.status_payload: object = {"status": "idle", "volume": 70}
        self.status_code = 200

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/play_lullaby", self.play)
        app.router.add_post("/stop_audio", self.stop)
        app.router.add_post("/set_volume", self.volume)
        app.router.add_get("/status", self.status)
        return app

    async def play(self, request):
        self.requests.append(("play", await request.json()))
        if self.play_delay:
            await asyncio.sleep(self.play_delay)
        if self.play_status != 200:
            return web.Response(status=self.play_status, text="no such file")
        return web.json_response({"ok": True})

    async def stop(self, request):
        self.requests.append(("stop", None))
        return web.json_response({"ok": True})

    async def volume(self, request):
        self.requests.append(("volume", await request.json()))
        return web.json_response({"ok": True})

    async def status(self, request):
        if self.status_code != 200:
            return web.Response(status=self.status_code)
        return web.json_response(self.status_payload)


@pytest.fixture
def stub():
    return ApplianceStub()


@pytest.fixture
async def client(stub):
    server = test_utils.TestServer(stub.app())
    await server.start_server()
    appliance = ApplianceClient(host=server.host, port=server.port, play_timeout=0.5)
    await appliance.start()
    yield appliance
    await appliance.close()
    await server.close()


class TestCommands:
    async def test_send_play(self, client, stub):
        assert await client.send_play("http://catalog.test/local/t1.mp3") is True
        assert stub.requests == [("play", {"url": "http://catalog.test/local/t1.mp3"})]

    async def test_send_play_rejected(self, client, stub):
        stub.play_status = 404
        with pytest.raises(RemoteRejected) as exc:
            await client.send_play("http://catalog.test/local/gone.mp3")
        assert exc.value.status == 404
        assert "no such file" in exc.value.body

    async def test_send_play_timeout(self, client, stub):
        stub.play_delay = 2
        with pytest.raises(NetworkTimeout):
            await client.send_play("http://catalog.test/local/slow.mp3")

    async def test_send_stop(self, client, stub):
        assert await client.send_stop() is True
        assert await client.send_stop() is True
        assert stub.requests == [("stop", None), ("stop", None)]

    async def test_set_volume_clamps(self, client, stub):
        assert await client.set_volume(1.4) is True
        assert stub.requests == [("volume", {"volume": 1.0})]


class TestStatus:
    async def test_poll_status(self, client, stub):
        stub.status_payload = {"status": "playing", "url": "http://x/t1.mp3", "volume": 35}
        status = await client.poll_status()
        assert status.is_playing
        assert status.url == "http://x/t1.mp3"
        assert status.volume == 35

    async def test_malformed_status_is_no_information(self, client, stub):
        stub.status_payload = {"status": "playing", "volume": "loud"}
        assert await client.poll_status() is None

    async def test_error_status_is_no_information(self, client, stub):
        stub.status_code = 500
        assert await client.poll_status() is None


class TestOffline:
    @pytest.fixture
    async def offline(self):
        appliance = ApplianceClient(host="127.0.0.1", port=test_utils.unused_port(), play_timeout=0.5)
        yield appliance
        await appliance.close()

    async def test_play_raises_network_timeout(self, offline):
        with pytest.raises(NetworkTimeout):
            await offline.send_play("http://x/a.mp3")

    async def test_volume_never_raises(self, offline):
        assert await offline.set_volume(0.5) is False

    async def test_status_is_none(self, offline):
        assert await offline.poll_status() is None
