"""Tests for the sound catalog client."""

import pytest
from aiohttp import test_utils, web

from lullaby.lib.catalog import CatalogClient, full_audio_url
from lullaby.lib.errors import LocatorResolutionFailed, NetworkTimeout
from lullaby.lib.models import Track

SOUNDS = [
    {"_id": "t1", "title": "Twinkle", "category": "lullaby", "duration": 60, "audioUrl": "/audio/t1.mp3"},
    {"_id": "t2", "title": "Brahms", "category": "lullaby", "duration": 90, "audioUrl": "/audio/t2.mp3"},
    {"title": "Broken entry", "audioUrl": "/audio/x.mp3"},
]


class CatalogStub:
    def __init__(self):
        self.auth_headers: list[str | None] = []
        self.sounds: object = SOUNDS

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/api/sounds/default", self.default)
        app.router.add_get("/api/sounds/{id}/local-url", self.local_url)
        return app

    async def default(self, request):
        self.auth_headers.append(request.headers.get("Authorization"))
        return web.json_response(self.sounds)

    async def local_url(self, request):
        self.auth_headers.append(request.headers.get("Authorization"))
        sound_id = request.match_info["id"]
        if sound_id == "missing":
            return web.json_response({"error": "not found"}, status=404)
        if sound_id == "empty":
            return web.json_response({})
        return web.json_response({"url": f"http://192.168.1.6:5000/cache/{sound_id}.mp3"})


@pytest.fixture
def stub():
    return CatalogStub()


@pytest.fixture
async def catalog(stub):
    server = test_utils.TestServer(stub.app())
    await server.start_server()
    client = CatalogClient(base_url=str(server.make_url("/")), token="secret")
    yield client
    await client.close()
    await server.close()


def _track(track_id: str) -> Track:
    return Track(id=track_id, title=track_id, locator=f"/audio/{track_id}.mp3")


class TestFullAudioUrl:
    def test_relative_path_is_prefixed(self):
        assert full_audio_url("/audio/a.mp3", "http://host:5000/") == "http://host:5000/audio/a.mp3"

    def test_absolute_url_is_kept(self):
        assert full_audio_url("https://cdn/a.mp3", "http://host:5000") == "https://cdn/a.mp3"


class TestDefaultPlaylist:
    async def test_skips_malformed_entries(self, catalog, stub):
        playlist = await catalog.default_playlist()
        assert [t.id for t in playlist] == ["t1", "t2"]
        assert stub.auth_headers == ["Bearer secret"]

    async def test_non_list_payload_is_empty(self, catalog, stub):
        stub.sounds = {"sounds": SOUNDS}
        assert len(await catalog.default_playlist()) == 0

    async def test_unreachable_catalog(self):
        client = CatalogClient(base_url=f"http://127.0.0.1:{test_utils.unused_port()}", token="")
        try:
            with pytest.raises(NetworkTimeout):
                await client.default_playlist()
        finally:
            await client.close()


class TestResolveLocator:
    async def test_returns_url(self, catalog):
        assert await catalog.resolve_locator(_track("t1")) == "http://192.168.1.6:5000/cache/t1.mp3"

    @pytest.mark.parametrize("track_id", ["missing", "empty"])
    async def test_failures_raise(self, catalog, track_id):
        with pytest.raises(LocatorResolutionFailed):
            await catalog.resolve_locator(_track(track_id))

    async def test_token_from_environment(self, monkeypatch):
        monkeypatch.setenv("LULLABY_API_TOKEN", "from-env")
        client = CatalogClient(base_url="http://catalog.test")
        assert client._headers()["Authorization"] == "Bearer from-env"
