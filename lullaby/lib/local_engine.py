"""
On-device playback through mpv, for when the appliance is unreachable or
the user chooses to play on the phone.

mpv is launched idle with a JSON IPC socket.  We observe ``time-pos`` and
``duration`` and listen for ``end-file``; every change is forwarded to the
status callback as ``(position_millis, duration_millis, did_finish)``.
Unlike remote playback this is a true position feed, so the controller
drives autoplay from ``did_finish`` instead of a ProgressClock.
"""

import asyncio
import json
import logging
import os
import shutil
from collections.abc import Awaitable, Callable

from .config import cfg
from .errors import LocalEngineError

logger = logging.getLogger(__name__)

StatusCallback = Callable[[int, int, bool], Awaitable[None] | None]

_OBS_TIME_POS = 1
_OBS_DURATION = 2


class LocalAudioEngine:
    """Controls a single mpv process over its IPC socket."""

    def __init__(self, mpv_path: str | None = None, ipc_socket: str | None = None):
        self.mpv_path = mpv_path or cfg("local", "mpv_path", default="mpv")
        self._ipc_socket = ipc_socket or cfg("local", "ipc_socket", default="/tmp/lullaby-mpv.sock")
        self.process: asyncio.subprocess.Process | None = None
        self._ipc_reader: asyncio.StreamReader | None = None
        self._ipc_writer: asyncio.StreamWriter | None = None
        self._ipc_task: asyncio.Task | None = None
        self._on_status_update: StatusCallback | None = None
        self.locator: str | None = None
        self.position_ms = 0
        self.duration_ms = 0
        self.playing = False
        self._volume = 1.0

    @property
    def loaded(self) -> bool:
        return self.locator is not None and self._mpv_running()

    def on_status_update(self, callback: StatusCallback | None):
        """Register the (position_millis, duration_millis, did_finish) callback."""
        self._on_status_update = callback

    # ── mpv lifecycle ──

    def _mpv_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def _launch_mpv(self):
        if not shutil.which(self.mpv_path):
            raise LocalEngineError(f"{self.mpv_path} not found")
        try:
            os.unlink(self._ipc_socket)
        except FileNotFoundError:
            pass

        self.process = await asyncio.create_subprocess_exec(
            self.mpv_path, "--idle=yes", "--no-video", "--no-terminal",
            "--loop-file=no", f"--input-ipc-server={self._ipc_socket}",
            stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.DEVNULL)

        # Wait for the IPC socket and connect
        for _ in range(50):  # up to 5 s
            await asyncio.sleep(0.1)
            if self.process.returncode is not None:
                raise LocalEngineError("mpv exited immediately")
            if os.path.exists(self._ipc_socket):
                try:
                    self._ipc_reader, self._ipc_writer = \
                        await asyncio.open_unix_connection(self._ipc_socket)
                    break
                except (ConnectionRefusedError, FileNotFoundError):
                    continue
        else:
            raise LocalEngineError("could not connect to mpv IPC")

        await self._send_ipc({"command": ["observe_property", _OBS_TIME_POS, "time-pos"]})
        await self._send_ipc({"command": ["observe_property", _OBS_DURATION, "duration"]})
        self._ipc_task = asyncio.create_task(self._read_ipc_events())
        logger.info("mpv launched (ipc %s)", self._ipc_socket)

    async def _send_ipc(self, cmd_obj: dict):
        if not self._ipc_writer:
            raise LocalEngineError("mpv IPC not connected")
        try:
            self._ipc_writer.write(json.dumps(cmd_obj).encode() + b"\n")
            await self._ipc_writer.drain()
        except (ConnectionError, OSError) as e:
            raise LocalEngineError(f"mpv IPC send failed: {e}") from e

    async def _read_ipc_events(self):
        """Background task — reads mpv IPC events."""
        try:
            while self._ipc_reader:
                line = await self._ipc_reader.readline()
                if not line:
                    break  # EOF — mpv closed
                try:
                    msg = json.loads(line)
                except json.JSONDecodeError:
                    continue
                await self.handle_ipc_message(msg)
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.debug("IPC reader ended: %s", e)
        self.playing = False
        self.process = None

    async def handle_ipc_message(self, msg: dict):
        """Fold one mpv IPC message into engine state and notify."""
        event = msg.get("event")
        if event == "property-change":
            value = msg.get("data")
            if not isinstance(value, (int, float)):
                return
            if msg.get("name") == "time-pos":
                self.position_ms = int(value * 1000)
            elif msg.get("name") == "duration":
                self.duration_ms = int(value * 1000)
            else:
                return
            await self._notify(False)
        elif event == "end-file":
            if msg.get("reason") != "eof":
                return  # stop/replace/error are not completions
            self.playing = False
            self.position_ms = self.duration_ms
            logger.info("Local playback finished: %s", self.locator)
            await self._notify(True)

    async def _notify(self, did_finish: bool):
        if not self._on_status_update:
            return
        result = self._on_status_update(self.position_ms, self.duration_ms, did_finish)
        if asyncio.iscoroutine(result):
            await result

    # ── Public controls ──

    async def load(self, locator: str):
        """Load *locator* paused at the start."""
        if not self._mpv_running() or not self._ipc_writer:
            await self.unload()
            await self._launch_mpv()
        self.locator = locator
        self.position_ms = 0
        self.duration_ms = 0
        await self._send_ipc({"command": ["set_property", "pause", True]})
        await self._send_ipc({"command": ["loadfile", locator, "replace"]})
        await self._send_ipc({"command": ["set_property", "volume", round(self._volume * 100)]})
        logger.info("Loaded locally: %s", locator)

    async def play(self):
        if not self.loaded:
            raise LocalEngineError("nothing loaded")
        await self._send_ipc({"command": ["set_property", "pause", False]})
        self.playing = True

    async def pause(self):
        if not self.loaded:
            self.playing = False
            return
        await self._send_ipc({"command": ["set_property", "pause", True]})
        self.playing = False

    async def seek(self, fraction: float):
        """Jump to *fraction* (0..1) of the loaded track."""
        if not self.loaded:
            raise LocalEngineError("nothing loaded")
        fraction = min(1.0, max(0.0, float(fraction)))
        await self._send_ipc({"command": ["seek", fraction * 100, "absolute-percent"]})
        if self.duration_ms:
            self.position_ms = int(self.duration_ms * fraction)

    async def set_volume(self, volume: float):
        self._volume = min(1.0, max(0.0, float(volume)))
        if self.loaded:
            await self._send_ipc({"command": ["set_property", "volume", round(self._volume * 100)]})

    async def unload(self):
        """Terminate mpv and forget the loaded track."""
        if self._ipc_task:
            self._ipc_task.cancel()
            try:
                await self._ipc_task
            except asyncio.CancelledError:
                pass
            self._ipc_task = None
        if self._ipc_writer:
            try:
                self._ipc_writer.close()
                await self._ipc_writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        self._ipc_reader = None
        self._ipc_writer = None
        if self._mpv_running():
            self.process.terminate()
            try:
                await asyncio.wait_for(self.process.wait(), timeout=3)
            except asyncio.TimeoutError:
                self.process.kill()
        self.process = None
        self.locator = None
        self.playing = False
        self.position_ms = 0
