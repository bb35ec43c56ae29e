"""Shared fixtures: in-memory store, catalog tracks and gateway fakes."""

import asyncio

import pytest

from lullaby.lib import config
from lullaby.lib.catalog import full_audio_url
from lullaby.lib.models import Playlist, Track
from lullaby.lib.notifications import NotificationBackend
from lullaby.lib.state_store import KeyValueStore, StateStore

CATALOG_URL = "http://catalog.test"


class MemoryStore(KeyValueStore):
    """Dict-backed KeyValueStore; set ``fail`` to simulate a broken disk."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.fail = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        if self.fail:
            raise OSError("disk full")
        self.data[key] = value


class FakeAppliance:
    """Records commands; ``gates`` holds futures that delay send_play per locator."""

    def __init__(self):
        self.base_url = "http://appliance.test:5001"
        self.calls: list[tuple] = []
        self.gates: dict[str, asyncio.Future] = {}
        self.play_error: Exception | None = None
        self.stop_error: Exception | None = None
        self.status = None

    async def send_play(self, locator):
        self.calls.append(("play", locator))
        if locator in self.gates:
            await self.gates[locator]
        if self.play_error is not None:
            raise self.play_error
        return True

    async def send_stop(self):
        self.calls.append(("stop",))
        if self.stop_error is not None:
            raise self.stop_error
        return True

    async def set_volume(self, volume):
        self.calls.append(("volume", volume))
        return True

    async def poll_status(self):
        self.calls.append(("status",))
        return self.status

    def played(self) -> list[str]:
        return [c[1] for c in self.calls if c[0] == "play"]

    def volumes(self) -> list[float]:
        return [c[1] for c in self.calls if c[0] == "volume"]


class FakeCatalog:
    def __init__(self, playlist: Playlist):
        self.playlist = playlist
        self.resolve_error: Exception | None = None

    async def default_playlist(self):
        return self.playlist

    async def resolve_locator(self, track):
        if self.resolve_error is not None:
            raise self.resolve_error
        return f"http://catalog.test/local/{track.id}.mp3"

    def full_audio_url(self, locator):
        return full_audio_url(locator, CATALOG_URL)


class FakeNotificationBackend(NotificationBackend):
    def __init__(self):
        self.scheduled: list[dict] = []
        self.dismissed: list[str] = []
        self.handlers: dict = {}

    async def schedule(self, content):
        self.scheduled.append(content)
        return f"n{len(self.scheduled)}"

    async def dismiss(self, notification_id):
        self.dismissed.append(notification_id)

    def register_action_handler(self, action_id, callback):
        self.handlers[action_id] = callback

    @property
    def last(self) -> dict | None:
        return self.scheduled[-1] if self.scheduled else None


class FakeTime:
    """Monotonic clock the test advances by hand."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture(autouse=True)
def empty_config():
    """Run every test against built-in defaults, not a config file on disk."""
    config.use_config({})
    yield
    config.use_config(None)


@pytest.fixture
def tracks():
    return [
        Track(id="t1", title="Twinkle Twinkle", artist="Nursery", category="lullaby",
              duration_seconds=60, locator="/audio/twinkle.mp3"),
        Track(id="t2", title="Brahms Lullaby", artist="", category="lullaby",
              duration_seconds=90, locator="/audio/brahms.mp3"),
        Track(id="t3", title="Gentle Rain", artist="Nature", category="nature",
              duration_seconds=120, locator="https://cdn.test/rain.mp3"),
    ]


@pytest.fixture
def playlist(tracks):
    return Playlist(tracks)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def state_store(memory_store):
    return StateStore(memory_store)


@pytest.fixture
def appliance():
    return FakeAppliance()


@pytest.fixture
def catalog(playlist):
    return FakeCatalog(playlist)


@pytest.fixture
def backend():
    return FakeNotificationBackend()


@pytest.fixture
def fake_time():
    return FakeTime()
