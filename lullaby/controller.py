"""
PlaybackController — owns the PlaybackSession and the command surface.

Three call sites mutate the one session: UI commands, autoplay (progress
clock or local engine completion) and notification actions.  They all run
on the same event loop, so there is no lock; instead:

  * command intent is applied to the session synchronously, before the
    first await, so ``next(); previous()`` leaves the index unchanged at once
  * every play()/stop() bumps a generation token; a network response whose
    generation is no longer current is dropped (playback.generation_guard)
  * foreground reconciliation re-reads the persisted session first, to pick
    up whatever a backgrounded notification handler wrote

Playback state machine (illegal transitions are logged and ignored):

    idle ──> loading ──> playing ──> transitioning ──> loading ...
               ^  │         ^  │           │
               │  v         │  v           v
               └─ paused <──┘ paused     paused
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from .lib.catalog import CatalogClient
from .lib.config import cfg
from .lib.errors import EmptyPlaylistError, LocalEngineError, NetworkTimeout, PlaybackError
from .lib.local_engine import LocalAudioEngine
from .lib.models import (
    PLAYBACK_MODES,
    PlaybackSession,
    Playlist,
    PlayerState,
    RemoteStatus,
    Track,
    next_index,
    previous_index,
)
from .lib.notifications import NotificationBridge
from .lib.progress_clock import ProgressClock
from .lib.state_store import StateStore
from .players.appliance import ApplianceClient

logger = logging.getLogger(__name__)

TRANSITIONS = {
    "idle": {"loading", "playing", "paused"},
    "loading": {"loading", "playing", "paused"},
    "playing": {"loading", "paused", "transitioning"},
    "paused": {"loading", "playing"},
    "transitioning": {"loading", "playing", "paused"},
}

Listener = Callable[[str, dict], Awaitable[None]]


class PlaybackController:
    def __init__(self, appliance: ApplianceClient, catalog: CatalogClient,
                 store: StateStore, engine: LocalAudioEngine | None = None,
                 notifications: NotificationBridge | None = None,
                 state: PlayerState | None = None, *,
                 clock: Callable[[], float] = time.monotonic,
                 tick_interval: float | None = None,
                 autoplay_delay: float | None = None,
                 volume_step: float | None = None,
                 generation_guard: bool | None = None,
                 fallback_to_local: bool | None = None):
        self.appliance = appliance
        self.catalog = catalog
        self.store = store
        self.engine = engine
        self.notifications = notifications
        self.state = state if state is not None else PlayerState()

        self.autoplay_delay = float(autoplay_delay if autoplay_delay is not None
                                    else cfg("playback", "autoplay_delay", default=1.0))
        self.volume_step = float(volume_step if volume_step is not None
                                 else cfg("playback", "volume_step", default=0.1))
        self.generation_guard = bool(generation_guard if generation_guard is not None
                                     else cfg("playback", "generation_guard", default=True))
        self.fallback_to_local = bool(fallback_to_local if fallback_to_local is not None
                                      else cfg("playback", "fallback_to_local", default=False))
        self.default_category = cfg("playback", "default_category", default="lullaby")
        self.default_volume = float(cfg("playback", "default_volume", default=0.7))
        self.default_mode = cfg("playback", "mode", default="remote")
        if self.default_mode not in PLAYBACK_MODES:
            self.default_mode = "remote"

        self.clock = ProgressClock(
            on_position=self._on_clock_position,
            on_complete=self._on_clock_complete,
            tick_interval=float(tick_interval if tick_interval is not None
                                else cfg("playback", "tick_interval", default=0.1)),
            clock=clock,
        )
        self.playback_state = "idle"
        self.last_error: PlaybackError | None = None
        self._listeners: list[Listener] = []
        self._tasks: set[asyncio.Task] = set()
        # resolved appliance URL -> track id, to recognise what it reports
        self._resolved: dict[str, str] = {}

        if self.engine is not None:
            self.engine.on_status_update(self._on_engine_status)
        if self.notifications is not None:
            self.notifications.on_external_stop = self._on_external_stop
            self.notifications.on_local_stop = self._pause_local
            self.notifications.on_volume = self._apply_local_volume

    # ── Accessors ──

    @property
    def session(self) -> PlaybackSession | None:
        return self.state.session

    @property
    def playlist(self) -> Playlist:
        return self.state.playlist

    def current_track(self) -> Track | None:
        return self.state.current_track()

    def add_listener(self, callback: Listener):
        """Register ``async callback(event, data)`` for media/error events."""
        self._listeners.append(callback)

    def snapshot(self) -> dict:
        session = self.session
        track = self.current_track()
        return {
            "state": self.playback_state,
            "session": session.to_dict() if session else None,
            "position": session.position_millis if session else 0,
            "track": {
                "id": track.id,
                "title": track.title,
                "artist": track.artist,
                "category": track.category,
                "duration": track.duration_ms,
            } if track else None,
            "playlist_size": len(self.playlist),
            "generation": self.state.generation,
            "error": self.last_error.user_message if self.last_error else None,
        }

    # ── Lifecycle ──

    async def start(self):
        """Load the playlist, restore the session, reconcile with the appliance."""
        try:
            playlist = await self.catalog.default_playlist()
        except PlaybackError as e:
            logger.error("Could not load playlist: %s", e)
            playlist = Playlist()
        self.state.playlist = playlist

        persisted = await self.store.load()
        session = self._restore(persisted, playlist)
        volume = await self.store.load_volume()
        if volume is not None:
            session.volume = volume
        self.state.session = session
        self.state.last_volume = session.volume
        if session.is_playing:
            # Claimed, not confirmed; reconcile decides.
            self._transition("playing")
        elif session.current_track_id is not None:
            self._transition("paused")

        if self.notifications is not None:
            self.notifications.initialize()
        logger.info("Controller started with %d tracks (current: %s)",
                    len(playlist), session.current_track_title or "none")
        await self.reconcile()

    async def shutdown(self):
        self.clock.stop()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self.engine is not None:
            await self.engine.unload()

    async def drain(self):
        """Wait for background work (autoplay, publishes) to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _restore(self, persisted: PlaybackSession | None, playlist: Playlist) -> PlaybackSession:
        """Bind a persisted session to the freshly loaded playlist."""
        if persisted is None:
            session = PlaybackSession(volume=self.default_volume, playback_mode=self.default_mode)
        else:
            session = persisted
        if not len(playlist):
            session.current_track_id = None
            session.current_index = 0
            session.is_playing = False
            return session

        index = None
        if persisted is not None:
            index = playlist.index_of(persisted.current_track_id)
            if index is None and persisted.current_track_title:
                index = playlist.find_by_title(persisted.current_track_title)
                if index is not None:
                    logger.info("Refreshing sound with new id: %s", playlist[index].id)
        if index is None:
            index = playlist.first_in_category(self.default_category)
        if index is None:
            index = 0
        session.select(playlist, index)
        return session

    # ── State machine ──

    def _transition(self, new_state: str) -> bool:
        if new_state == self.playback_state:
            return True
        if new_state not in TRANSITIONS[self.playback_state]:
            logger.warning("Ignoring transition %s -> %s", self.playback_state, new_state)
            return False
        logger.debug("Playback %s -> %s", self.playback_state, new_state)
        self.playback_state = new_state
        return True

    def _superseded(self, generation: int) -> bool:
        return self.generation_guard and generation != self.state.generation

    # ── Commands ──

    async def play(self, track: Track | None = None) -> bool:
        """Play *track* (default: the current one) on the active engine."""
        session = self.session
        playlist = self.playlist
        if session is None or not len(playlist):
            logger.warning("Cannot play: no playlist loaded")
            return False
        if track is None:
            index = session.current_index if session.current_index < len(playlist) else 0
        else:
            index = playlist.index_of(track.id)
            if index is None:
                logger.warning("Cannot play %s: not in playlist", track.id)
                return False

        # Intent, applied before any await
        track = session.select(playlist, index)
        generation = self.state.next_generation()
        self.clock.stop()
        session.position_millis = 0
        self._transition("loading")
        await self._persist()

        try:
            mode = await self._dispatch_play(track)
        except PlaybackError as e:
            if self._superseded(generation):
                logger.debug("Discarding failure of superseded play (%s): %s", track.title, e)
                return False
            await self._fail(e)
            return False

        if self._superseded(generation):
            logger.info("Ignoring stale play response for %s", track.title)
            return False

        self.last_error = None
        session.is_playing = True
        if mode == "remote":
            self.clock.start(track.duration_ms)
        self._transition("playing")
        await self._persist()
        await self._publish_update("play")
        logger.info("Playing %s (%s)", track.title, mode)
        return True

    async def _dispatch_play(self, track: Track) -> str:
        session = self.session
        if session.playback_mode == "local":
            await self._play_local(track)
            return "local"
        try:
            await self._play_remote(track)
            return "remote"
        except NetworkTimeout as e:
            if not (self.fallback_to_local and self.engine is not None):
                raise
            logger.warning("Appliance unreachable (%s) — falling back to local playback", e)
            session.playback_mode = "local"
            await self._play_local(track)
            return "local"

    async def _play_remote(self, track: Track):
        locator = await self.catalog.resolve_locator(track)
        self._resolved[locator] = track.id
        await self.appliance.send_play(locator)
        await self.appliance.set_volume(self.session.volume)

    async def _play_local(self, track: Track):
        if self.engine is None:
            raise LocalEngineError("local playback is not available")
        await self.engine.load(self.catalog.full_audio_url(track.locator))
        await self.engine.set_volume(self.session.volume)
        await self.engine.play()

    async def _fail(self, error: PlaybackError):
        logger.error("Playback failed: %s", error)
        self.last_error = error
        self.clock.stop()
        if self.session is not None:
            self.session.is_playing = False
        self._transition("paused")
        await self._persist()
        await self._publish("error", {
            "kind": error.kind,
            "message": error.user_message,
            "detail": str(error),
        })
        await self._publish_update("error")

    async def pause(self) -> bool:
        """Stop the appliance (remote) or pause the engine (local)."""
        return await self._halt(unload=False)

    async def stop(self) -> bool:
        return await self._halt(unload=True)

    async def _halt(self, unload: bool) -> bool:
        session = self.session
        if session is None:
            return False
        try:
            if session.playback_mode == "remote":
                await self.appliance.send_stop()
            elif self.engine is not None:
                if unload:
                    await self.engine.unload()
                else:
                    await self.engine.pause()
        except PlaybackError as e:
            logger.error("Error stopping playback: %s", e)
            self.last_error = e
            await self._publish("error", {
                "kind": e.kind,
                "message": e.user_message,
                "detail": str(e),
            })
            return False

        self.state.next_generation()  # supersede any in-flight play
        self.clock.stop()
        session.is_playing = False
        if session.playback_mode == "remote" or unload:
            session.position_millis = 0
        self._transition("paused")
        await self._persist()
        await self._publish_update("stop")
        return True

    async def resume(self) -> bool:
        session = self.session
        if session is None:
            return False
        if session.playback_mode == "local" and self.engine is not None and self.engine.loaded:
            self.state.next_generation()
            try:
                await self.engine.play()
            except LocalEngineError as e:
                await self._fail(e)
                return False
            session.is_playing = True
            self._transition("playing")
            await self._persist()
            await self._publish_update("resume")
            return True
        # The appliance has no resume; start the current track again.
        return await self.play()

    async def toggle(self) -> bool:
        if self.session is not None and self.session.is_playing:
            return await self.pause()
        return await self.resume()

    async def next(self) -> bool:
        session = self.session
        if session is None:
            return False
        try:
            index = next_index(session.current_index, len(self.playlist))
        except EmptyPlaylistError:
            logger.info("Next ignored: playlist is empty")
            return False
        return await self.play(self.playlist[index])

    async def previous(self) -> bool:
        session = self.session
        if session is None:
            return False
        try:
            index = previous_index(session.current_index, len(self.playlist))
        except EmptyPlaylistError:
            logger.info("Previous ignored: playlist is empty")
            return False
        return await self.play(self.playlist[index])

    async def set_volume(self, delta: float) -> float:
        """Nudge volume by *delta*, clamped to [0, 1].  Persisted regardless."""
        session = self.session
        if session is None:
            return self.state.last_volume
        volume = session.with_volume_delta(delta)
        self.state.last_volume = volume
        try:
            if session.playback_mode == "remote":
                await self.appliance.set_volume(volume)
            else:
                await self._apply_local_volume(volume)
        except PlaybackError as e:
            logger.warning("Volume dispatch failed: %s", e)
        await self._persist()
        await self._publish_update("volume")
        return volume

    async def volume_up(self) -> float:
        return await self.set_volume(self.volume_step)

    async def volume_down(self) -> float:
        return await self.set_volume(-self.volume_step)

    async def seek(self, fraction: float) -> bool:
        session = self.session
        if session is None:
            return False
        if session.playback_mode != "local" or self.engine is None or not self.engine.loaded:
            logger.info("Seek ignored: only supported for local playback")
            return False
        try:
            await self.engine.seek(fraction)
        except LocalEngineError as e:
            logger.error("Seek failed: %s", e)
            return False
        session.position_millis = self.engine.position_ms
        return True

    async def set_mode(self, mode: str) -> bool:
        session = self.session
        if mode not in PLAYBACK_MODES:
            raise ValueError(f"unknown playback mode {mode!r}")
        if session is None or session.playback_mode == mode:
            return False
        if session.is_playing:
            await self.stop()
        if session.playback_mode == "local" and self.engine is not None:
            await self.engine.unload()
        session.playback_mode = mode
        logger.info("Playback mode -> %s", mode)
        await self._persist()
        await self._publish_update("mode")
        return True

    # ── Reconciliation ──

    async def on_foreground(self) -> RemoteStatus | None:
        return await self.reconcile()

    async def reconcile(self) -> RemoteStatus | None:
        """Merge persisted state and a fresh appliance status into the session."""
        await self._absorb_persisted()
        session = self.session
        if session is None or session.playback_mode != "remote":
            return None

        status = await self.appliance.poll_status()
        if status is None:
            logger.debug("Appliance status unavailable — keeping last known state")
            return None

        if status.is_playing:
            index = self._index_for_url(status.url)
            if index is not None and index != session.current_index:
                logger.info("Appliance is playing %s — adopting it", self.playlist[index].title)
                session.select(self.playlist, index)
                self.clock.stop()
            session.is_playing = True
            track = self.current_track()
            if track is not None and not self.clock.running:
                self.clock.start(track.duration_ms)
            self._transition("playing")
        else:
            if session.is_playing:
                logger.info("Appliance is idle — marking session stopped")
            session.is_playing = False
            self.clock.stop()
            if self.playback_state != "idle" or session.current_track_id is not None:
                self._transition("paused")

        volume = round(status.volume_fraction, 4)
        if abs(volume - session.volume) > 1e-6:
            session.volume = volume
            self.state.last_volume = volume

        await self._persist()
        await self._publish_update("reconcile")
        return status

    def _index_for_url(self, url: str | None) -> int | None:
        if not url:
            return None
        index = self.playlist.index_of(self._resolved.get(url))
        if index is None:
            index = self.playlist.find_by_locator(url)
        return index

    async def _absorb_persisted(self):
        """Pick up writes made by background notification handlers."""
        persisted = await self.store.load()
        session = self.session
        if persisted is None or session is None:
            return
        # Background handlers only ever stop playback or change volume.
        if session.is_playing and not persisted.is_playing:
            self.clock.stop()
            self._transition("paused")
            session.is_playing = False
        session.volume = persisted.volume
        self.state.last_volume = persisted.volume

    # ── Callbacks ──

    def _on_clock_position(self, position_ms: int):
        if self.session is not None:
            self.session.position_millis = position_ms

    def _on_clock_complete(self):
        self._schedule_autoplay()

    async def _on_engine_status(self, position_ms: int, duration_ms: int, did_finish: bool):
        if self.session is None:
            return
        self.session.position_millis = position_ms
        if did_finish:
            self._schedule_autoplay()

    def _on_external_stop(self):
        """A notification STOP already reached the appliance (or engine) and the store."""
        self.state.next_generation()
        self.clock.stop()
        self._transition("paused")
        self._spawn(self._publish_update("notification_stop"))

    async def _pause_local(self):
        if self.engine is not None:
            await self.engine.pause()

    async def _apply_local_volume(self, volume: float):
        if self.engine is not None:
            await self.engine.set_volume(volume)

    def _schedule_autoplay(self):
        session = self.session
        if session is None:
            return
        if not self._transition("transitioning"):
            return
        self._spawn(self._autoplay(session.current_track_id, self.state.generation))

    async def _autoplay(self, track_id: str | None, generation: int):
        if self.autoplay_delay > 0:
            await asyncio.sleep(self.autoplay_delay)
        session = self.session
        if (session is None or session.current_track_id != track_id
                or self.state.generation != generation
                or self.playback_state != "transitioning"):
            logger.info("Track changed during autoplay delay — not advancing")
            return
        logger.info("Track finished — autoplaying next")
        await self.next()

    # ── Persistence / publishing ──

    async def _persist(self):
        if self.session is not None:
            await self.store.save(self.session)

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _publish(self, event: str, data: dict):
        for callback in list(self._listeners):
            try:
                await callback(event, data)
            except Exception as e:
                logger.error("Listener failed for %s: %s", event, e)

    async def _publish_update(self, reason: str):
        if self.notifications is not None:
            await self.notifications.show(self.session, self.current_track())
        await self._publish("media_update", {"reason": reason, **self.snapshot()})
