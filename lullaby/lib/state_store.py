"""
Durable storage for the current PlaybackSession.

Two layers:

  KeyValueStore   — async get/set of string values (the durable store).
  StateStore      — serializes a whole PlaybackSession under one key,
                    last-writer-wins, plus the last volume under its own key.

The shipped KeyValueStore is JsonFileStore: every key lives in one JSON
file, written atomically (temp file + rename) so a crash mid-write never
corrupts it.  File I/O runs in the default executor to keep the event loop
free.

StateStore is a convenience cache, not the source of truth for whether the
appliance is playing right now: failures are logged, never raised.
"""

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod

from .models import PlaybackSession

logger = logging.getLogger(__name__)

SESSION_KEY = "playbackSession"
VOLUME_KEY = "volume"


class KeyValueStore(ABC):
    """Interface every durable store must implement."""

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None: ...


class JsonFileStore(KeyValueStore):
    """All keys in a single JSON object on disk."""

    def __init__(self, path: str):
        self.path = os.path.expanduser(path)
        # set() rewrites the whole file; one writer at a time.
        self._write_lock = asyncio.Lock()

    def _read_all(self) -> dict:
        try:
            with open(self.path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            logger.warning("State file %s is corrupt, starting empty: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict):
        d = os.path.dirname(self.path) or "."
        os.makedirs(d, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=d, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(tmp, self.path)
        except Exception:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def _set_sync(self, key: str, value: str):
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    async def get(self, key: str) -> str | None:
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, self._read_all)
        value = data.get(key)
        return value if isinstance(value, str) else None

    async def set(self, key: str, value: str) -> None:
        loop = asyncio.get_running_loop()
        async with self._write_lock:
            await loop.run_in_executor(None, self._set_sync, key, value)


class StateStore:
    """Persist and restore the PlaybackSession."""

    def __init__(self, store: KeyValueStore):
        self._store = store

    async def save(self, session: PlaybackSession) -> bool:
        """Overwrite the stored session.  Returns False (and logs) on failure."""
        try:
            await self._store.set(SESSION_KEY, json.dumps(session.to_dict()))
            await self._store.set(VOLUME_KEY, repr(session.volume))
            return True
        except Exception as e:
            logger.error("Error saving playback session: %s", e)
            return False

    async def load(self) -> PlaybackSession | None:
        """Last saved session, or None when missing or unreadable."""
        try:
            raw = await self._store.get(SESSION_KEY)
        except Exception as e:
            logger.error("Error loading playback session: %s", e)
            return None
        if not raw:
            return None
        try:
            return PlaybackSession.from_dict(json.loads(raw))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning("Discarding unreadable persisted session: %s", e)
            return None

    async def load_volume(self) -> float | None:
        try:
            raw = await self._store.get(VOLUME_KEY)
        except Exception as e:
            logger.error("Error loading volume: %s", e)
            return None
        if raw is None:
            return None
        try:
            vol = float(raw)
        except ValueError:
            logger.warning("Ignoring unreadable stored volume %r", raw)
            return None
        return vol if 0.0 <= vol <= 1.0 else None

    async def mark_stopped(self) -> PlaybackSession | None:
        """Read-modify-write the stored session to is_playing=False.

        Used by background notification handlers that must not trust
        in-process state.  Returns the session written, or None.
        """
        session = await self.load()
        if session is None:
            return None
        session.is_playing = False
        await self.save(session)
        return session
