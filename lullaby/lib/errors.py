"""Playback error taxonomy.

Every failure the controller can surface to a user derives from
PlaybackError and carries a short ``user_message``.  Network and engine
failures are raised by the gateways and caught in the controller; nothing
here logs on its own.
"""

_FRIENDLY_MESSAGES = {
    "network_timeout": "Cannot reach the baby monitor. Is it powered on and on the same Wi-Fi?",
    "remote_rejected": "The baby monitor refused the request.",
    "locator": "This sound could not be prepared for playback.",
    "local_engine": "Playback on this phone failed.",
    "empty_playlist": "No sounds are available yet.",
}


class PlaybackError(Exception):
    """Base class for every playback failure."""

    kind = "playback"

    @property
    def user_message(self) -> str:
        return _FRIENDLY_MESSAGES.get(self.kind, f"Something went wrong ({self.kind}).")


class NetworkTimeout(PlaybackError):
    """No response from the appliance (or catalog) within the bound."""

    kind = "network_timeout"


class RemoteRejected(PlaybackError):
    """Appliance answered with a non-2xx status."""

    kind = "remote_rejected"

    def __init__(self, status: int, body: str = ""):
        super().__init__(f"Appliance returned HTTP {status}: {body[:200]}")
        self.status = status
        self.body = body


class LocatorResolutionFailed(PlaybackError):
    """Catalog could not resolve a track to a playable URL."""

    kind = "locator"


class LocalEngineError(PlaybackError):
    """On-device audio stack failure."""

    kind = "local_engine"


class EmptyPlaylistError(PlaybackError):
    """Navigation attempted on an empty playlist."""

    kind = "empty_playlist"
