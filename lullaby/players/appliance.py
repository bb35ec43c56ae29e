"""
Lullaby appliance client (remote playback gateway)

Talks to the network-attached playback appliance next to the crib.  The
appliance never pushes anything; status is pulled on demand by the
controller (start-up and foreground-resume only).

Appliance HTTP API (JSON):
  POST /play_lullaby  {"url": ...}     — start playing a fetchable URL
  POST /stop_audio                      — stop playback
  POST /set_volume    {"volume": 0..1}  — set output volume
  GET  /status                          — {"status": "playing"|"idle", "url"?, "volume": 0..100}
"""

import asyncio
import logging

import aiohttp

from ..lib.config import cfg
from ..lib.errors import NetworkTimeout, RemoteRejected
from ..lib.models import RemoteStatus

logger = logging.getLogger(__name__)

APPLIANCE_PORT = 5001
PLAY_TIMEOUT = 10  # seconds
STATUS_TIMEOUT = 5


class ApplianceClient:
    """HTTP command/status gateway to the playback appliance."""

    def __init__(self, host: str | None = None, port: int | None = None,
                 session: aiohttp.ClientSession | None = None,
                 play_timeout: float | None = None):
        self.host = host if host is not None else cfg("appliance", "host", default="")
        self.port = int(port if port is not None else cfg("appliance", "port", default=APPLIANCE_PORT))
        self.base_url = f"http://{self.host}:{self.port}"
        self.play_timeout = float(play_timeout if play_timeout is not None
                                  else cfg("appliance", "play_timeout", default=PLAY_TIMEOUT))
        self._http_session = session
        self._owns_session = session is None

    async def start(self):
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
            self._owns_session = True
        logger.info("Appliance client ready for %s", self.base_url)

    async def close(self):
        if self._owns_session and self._http_session:
            await self._http_session.close()
        self._http_session = None

    # ── HTTP helpers ──

    async def _post(self, path: str, payload: dict | None = None,
                    timeout: float | None = None) -> bool:
        """POST to the appliance.  True on 2xx, raises otherwise."""
        if self._http_session is None:
            await self.start()
        url = f"{self.base_url}{path}"
        kwargs = {"json": payload}
        if timeout:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)
        try:
            async with self._http_session.post(url, **kwargs) as resp:
                if 200 <= resp.status < 300:
                    return True
                body = await resp.text()
                logger.warning("Appliance %s returned %d: %s", path, resp.status, body[:200])
                raise RemoteRejected(resp.status, body)
        except asyncio.TimeoutError as e:
            logger.warning("Appliance %s timed out after %ss", path, timeout)
            raise NetworkTimeout(f"{path} timed out") from e
        except aiohttp.ClientError as e:
            logger.warning("Appliance unreachable (%s): %s", path, e)
            raise NetworkTimeout(f"{path} failed: {e}") from e

    # ── Commands ──

    async def send_play(self, locator: str) -> bool:
        """Ask the appliance to play *locator*.  Bounded by play_timeout."""
        ok = await self._post("/play_lullaby", {"url": locator}, timeout=self.play_timeout)
        logger.info("Playing on appliance: %s", locator)
        return ok

    async def send_stop(self) -> bool:
        ok = await self._post("/stop_audio")
        logger.info("Stopped appliance playback")
        return ok

    async def set_volume(self, volume: float) -> bool:
        """Best-effort volume change; never raises."""
        volume = min(1.0, max(0.0, float(volume)))
        try:
            await self._post("/set_volume", {"volume": volume})
        except (NetworkTimeout, RemoteRejected) as e:
            logger.warning("Could not set appliance volume: %s", e)
            return False
        logger.info("Volume set to %d%% on appliance", round(volume * 100))
        return True

    async def poll_status(self) -> RemoteStatus | None:
        """Fetch GET /status.  None means "no new information"."""
        if self._http_session is None:
            await self.start()
        try:
            async with self._http_session.get(
                f"{self.base_url}/status",
                timeout=aiohttp.ClientTimeout(total=STATUS_TIMEOUT),
            ) as resp:
                if resp.status != 200:
                    logger.debug("Appliance status returned %d", resp.status)
                    return None
                payload = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            logger.debug("Appliance status timed out")
            return None
        except (aiohttp.ClientError, ValueError) as e:
            logger.debug("Appliance status unavailable: %s", e)
            return None
        try:
            return RemoteStatus.from_json(payload)
        except ValueError as e:
            logger.warning("Ignoring malformed appliance status %r: %s", payload, e)
            return None
