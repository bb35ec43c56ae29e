"""
"Now playing" notification and background-safe action routing.

The notification mirrors title, artist, play state and volume.  It stays
up while paused so playback can be resumed from it, and is dismissed only
when no track is loaded at all.

Actions arrive while the app may be backgrounded, so the handlers never
trust in-process UI state:

  stop          — send_stop() straight to the appliance (or pause the local
                  engine), then read-modify-write the persisted session
                  (is_playing=False)
  volume_up/down — step the last-known volume held in PlayerState

Next/previous are deliberately not offered: resolving track identity while
backgrounded is exactly where stale state bites.
"""

import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from .errors import PlaybackError
from .models import PlaybackSession, PlayerState, Track
from .state_store import StateStore

logger = logging.getLogger(__name__)

ACTION_STOP = "stop"
ACTION_PLAY_PAUSE = "play_pause"  # older clients still send this for stop
ACTION_VOLUME_UP = "volume_up"
ACTION_VOLUME_DOWN = "volume_down"

CATEGORY = "media_controls"
DEFAULT_ARTIST = "LullaBaby"

ActionHandler = Callable[[], Awaitable[None]]


class NotificationBackend(ABC):
    """OS notification API every platform binding must implement."""

    @abstractmethod
    async def schedule(self, content: dict) -> str: ...

    @abstractmethod
    async def dismiss(self, notification_id: str) -> None: ...

    @abstractmethod
    def register_action_handler(self, action_id: str, callback: ActionHandler) -> None: ...


def notification_key(title: str, artist: str, is_playing: bool, volume: float) -> tuple:
    """Change-detection key; volume is bucketed to tenths (halves round up)."""
    return (title, artist, is_playing, math.floor(volume * 10 + 0.5))


class NotificationBridge:
    """Renders session state outward and routes actions back in."""

    def __init__(self, backend: NotificationBackend, state: PlayerState,
                 appliance, store: StateStore, volume_step: float = 0.1):
        self._backend = backend
        self._state = state
        self._appliance = appliance
        self._store = store
        self._volume_step = volume_step
        self.notification_id: str | None = None
        self._last_key: tuple | None = None
        # Hooks set by the controller so a live process notices
        # background actions (stop its clock, drive the local engine).
        self.on_external_stop: Callable[[], None] | None = None
        self.on_local_stop: Callable[[], Awaitable[None]] | None = None
        self.on_volume: Callable[[float], Awaitable[None]] | None = None

    def initialize(self):
        """Register action handlers with the backend."""
        self._backend.register_action_handler(ACTION_STOP, self._handle_stop)
        self._backend.register_action_handler(ACTION_PLAY_PAUSE, self._handle_stop)
        self._backend.register_action_handler(ACTION_VOLUME_UP, self._handle_volume_up)
        self._backend.register_action_handler(ACTION_VOLUME_DOWN, self._handle_volume_down)
        logger.info("Media notification actions registered")

    # ── Rendering ──

    async def show(self, session: PlaybackSession | None, track: Track | None) -> str | None:
        """Create or update the notification; no-op if nothing visible changed."""
        if session is None or track is None:
            await self.hide()
            return None

        artist = track.artist or DEFAULT_ARTIST
        key = notification_key(track.title, artist, session.is_playing, session.volume)
        if key == self._last_key:
            logger.debug("Notification state unchanged — skipping update")
            return self.notification_id

        volume_percent = round(session.volume * 100)
        content = {
            "title": f"{'▶' if session.is_playing else '⏸'} {track.title}",
            "body": f"{artist} • Volume: {volume_percent}%",
            "data": {
                "type": "media",
                "trackId": track.id,
                "isPlaying": session.is_playing,
                "volume": volume_percent,
            },
            "sticky": True,
            "categoryIdentifier": CATEGORY,
            "actions": [ACTION_STOP, ACTION_VOLUME_DOWN, ACTION_VOLUME_UP],
        }
        try:
            if self.notification_id:
                await self._backend.dismiss(self.notification_id)
            self.notification_id = await self._backend.schedule(content)
        except Exception as e:
            logger.error("Failed to show media notification: %s", e)
            return None
        self._last_key = key
        logger.info("Media notification shown: %s (volume %d%%)", track.title, volume_percent)
        return self.notification_id

    async def hide(self):
        if not self.notification_id:
            return
        try:
            await self._backend.dismiss(self.notification_id)
        except Exception as e:
            logger.error("Failed to hide media notification: %s", e)
            return
        self.notification_id = None
        self._last_key = None
        logger.info("Media notification hidden")

    # ── Action handlers ──

    async def _handle_stop(self):
        mode = self._state.session.playback_mode if self._state.session else "remote"
        try:
            if mode == "remote":
                await self._appliance.send_stop()
            elif self.on_local_stop:
                await self.on_local_stop()
            else:
                logger.warning("Notification stop ignored: no local engine")
                return
        except PlaybackError as e:
            # No UI channel here; the next foreground reconcile repairs it.
            logger.error("Notification stop failed: %s", e)
            return

        persisted = await self._store.mark_stopped()
        if self._state.session is not None:
            self._state.session.is_playing = False
        if self.on_external_stop:
            self.on_external_stop()

        session = persisted or self._state.session
        await self.show(session, self._track_for(session))

    async def _handle_volume_up(self):
        await self._step_volume(self._volume_step)

    async def _handle_volume_down(self):
        await self._step_volume(-self._volume_step)

    async def _step_volume(self, delta: float):
        volume = round(min(1.0, max(0.0, self._state.last_volume + delta)), 4)
        self._state.last_volume = volume
        if self._state.session is not None:
            self._state.session.volume = volume

        mode = self._state.session.playback_mode if self._state.session else "remote"
        try:
            if mode == "remote":
                await self._appliance.set_volume(volume)
            elif self.on_volume:
                await self.on_volume(volume)
        except PlaybackError as e:
            logger.error("Notification volume change failed: %s", e)

        session = await self._store.load()
        if session is None:
            session = self._state.session.copy() if self._state.session else None
        if session is not None:
            session.volume = volume
            await self._store.save(session)
        await self.show(session, self._track_for(session))

    def _track_for(self, session: PlaybackSession | None) -> Track | None:
        if session is None:
            return None
        index = self._state.playlist.index_of(session.current_track_id)
        if index is None:
            return self._state.current_track()
        return self._state.playlist[index]
