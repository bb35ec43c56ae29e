"""
Sound catalog client.

The backend owns the sound library.  We only need two things from it:

  GET /api/sounds/default          — the default playlist
  GET /api/sounds/{id}/local-url   — a URL the appliance can fetch
                                     (the backend downloads/caches as needed)

Both calls carry ``Authorization: Bearer $LULLABY_API_TOKEN``.
"""

import asyncio
import logging
import os

import aiohttp

from .config import cfg
from .errors import LocatorResolutionFailed, NetworkTimeout
from .models import Playlist, Track

logger = logging.getLogger(__name__)

RESOLVE_TIMEOUT = 10  # seconds, same bound as the play command
LIST_TIMEOUT = 10


def full_audio_url(locator: str, base_url: str) -> str:
    """Absolute URL for *locator*; relative catalog paths hang off *base_url*."""
    if locator.startswith(("http://", "https://")):
        return locator
    return f"{base_url.rstrip('/')}/{locator.lstrip('/')}"


class CatalogClient:
    def __init__(self, base_url: str | None = None, token: str | None = None,
                 session: aiohttp.ClientSession | None = None):
        self.base_url = (base_url if base_url is not None
                         else cfg("catalog", "base_url", default="")).rstrip("/")
        self.token = token if token is not None else os.getenv("LULLABY_API_TOKEN", "")
        self._http_session = session
        self._owns_session = session is None

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _session(self) -> aiohttp.ClientSession:
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
            self._owns_session = True
        return self._http_session

    async def close(self):
        if self._owns_session and self._http_session:
            await self._http_session.close()
        self._http_session = None

    def full_audio_url(self, locator: str) -> str:
        return full_audio_url(locator, self.base_url)

    async def default_playlist(self) -> Playlist:
        """Load the default sounds.  Malformed entries are skipped."""
        session = await self._session()
        url = f"{self.base_url}/api/sounds/default"
        try:
            async with session.get(
                url, headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=LIST_TIMEOUT),
            ) as resp:
                resp.raise_for_status()
                payload = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise NetworkTimeout("catalog listing timed out") from e
        except aiohttp.ClientError as e:
            logger.error("Error fetching default sounds: %s", e)
            raise NetworkTimeout(f"catalog listing failed: {e}") from e

        if not isinstance(payload, list):
            logger.warning("Catalog returned %s instead of a list", type(payload).__name__)
            return Playlist()

        tracks = []
        for entry in payload:
            try:
                tracks.append(Track.from_catalog(entry))
            except ValueError as e:
                logger.warning("Skipping malformed sound: %s", e)
        logger.info("Loaded %d sounds from catalog", len(tracks))
        return Playlist(tracks)

    async def resolve_locator(self, track: Track) -> str:
        """URL the appliance can fetch for *track*.

        Raises LocatorResolutionFailed for any failure, timeouts included.
        """
        session = await self._session()
        url = f"{self.base_url}/api/sounds/{track.id}/local-url"
        logger.debug("Requesting local URL from %s", url)
        try:
            async with session.get(
                url, headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=RESOLVE_TIMEOUT),
            ) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise LocatorResolutionFailed(
                        f"catalog returned {resp.status} for {track.id}: {body[:200]}")
                payload = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise LocatorResolutionFailed(f"catalog timed out resolving {track.id}") from e
        except (aiohttp.ClientError, ValueError) as e:
            raise LocatorResolutionFailed(f"could not resolve {track.id}: {e}") from e

        resolved = payload.get("url") if isinstance(payload, dict) else None
        if not isinstance(resolved, str) or not resolved:
            raise LocatorResolutionFailed(f"catalog gave no url for {track.id}")
        return resolved
