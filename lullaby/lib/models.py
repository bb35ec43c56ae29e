"""Playback domain records.

Track and Playlist are immutable and come from the catalog.  PlaybackSession
is the one mutable aggregate the controller owns; RemoteStatus is a
read-only snapshot of what the appliance says it is doing.
"""

from collections.abc import Iterator
from typing import Any

import attrs
from attrs import define, field, validators

from .errors import EmptyPlaylistError

PLAYBACK_MODES = ("remote", "local")
REMOTE_STATES = ("playing", "idle")


def next_index(index: int, n: int) -> int:
    """Index after *index* in a playlist of *n* tracks, wrapping at the end."""
    if n == 0:
        raise EmptyPlaylistError("cannot navigate an empty playlist")
    return (index + 1) % n


def previous_index(index: int, n: int) -> int:
    """Index before *index* in a playlist of *n* tracks, wrapping at the start."""
    if n == 0:
        raise EmptyPlaylistError("cannot navigate an empty playlist")
    return (index - 1 + n) % n


def _clamp_volume(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


@define(frozen=True, slots=True)
class Track:
    """Immutable sound descriptor from the catalog."""

    id: str = field(validator=[validators.instance_of(str), validators.min_len(1)])
    title: str = field(validator=validators.instance_of(str))
    artist: str = field(default="", validator=validators.instance_of(str))
    category: str = field(default="", validator=validators.instance_of(str))
    duration_seconds: float = field(
        default=0,
        converter=float,
        validator=validators.ge(0),
    )
    locator: str = field(default="", validator=validators.instance_of(str))

    @property
    def duration_ms(self) -> int:
        return int(self.duration_seconds * 1000)

    @classmethod
    def from_catalog(cls, payload: dict[str, Any]) -> "Track":
        """Build a Track from a catalog sound object.

        Raises ValueError when required fields are missing or mistyped.
        """
        if not isinstance(payload, dict):
            raise ValueError(f"sound payload must be an object, got {type(payload).__name__}")
        missing = [k for k in ("_id", "title", "audioUrl") if not payload.get(k)]
        if missing:
            raise ValueError(f"sound payload missing {', '.join(missing)}")
        duration = payload.get("duration", 0)
        if isinstance(duration, bool) or not isinstance(duration, (int, float)):
            raise ValueError(f"sound duration must be numeric, got {duration!r}")
        try:
            return cls(
                id=str(payload["_id"]),
                title=payload["title"],
                artist=payload.get("artist") or "",
                category=payload.get("category") or "",
                duration_seconds=duration,
                locator=payload["audioUrl"],
            )
        except TypeError as e:
            raise ValueError(f"invalid sound payload: {e}") from e


@define(frozen=True, slots=True)
class Playlist:
    """Ordered tracks; position in the tuple is the playlist index."""

    tracks: tuple[Track, ...] = field(
        factory=tuple,
        converter=tuple,
        validator=validators.deep_iterable(member_validator=validators.instance_of(Track)),
    )

    def __len__(self) -> int:
        return len(self.tracks)

    def __getitem__(self, index: int) -> Track:
        return self.tracks[index]

    def __iter__(self) -> Iterator[Track]:
        return iter(self.tracks)

    def index_of(self, track_id: str | None) -> int | None:
        for i, track in enumerate(self.tracks):
            if track.id == track_id:
                return i
        return None

    def find_by_title(self, title: str | None) -> int | None:
        for i, track in enumerate(self.tracks):
            if track.title == title:
                return i
        return None

    def find_by_locator(self, locator: str | None) -> int | None:
        if not locator:
            return None
        for i, track in enumerate(self.tracks):
            if track.locator == locator:
                return i
        return None

    def first_in_category(self, category: str) -> int | None:
        for i, track in enumerate(self.tracks):
            if track.category == category:
                return i
        return None


@define(slots=True)
class PlaybackSession:
    """What the user believes is playing.

    ``position_millis`` is advisory only: it is neither persisted nor part
    of equality.
    """

    current_track_id: str | None = field(default=None)
    current_index: int = field(default=0, validator=[validators.instance_of(int), validators.ge(0)])
    is_playing: bool = field(default=False, validator=validators.instance_of(bool))
    volume: float = field(
        default=0.7,
        converter=float,
        validator=[validators.ge(0.0), validators.le(1.0)],
    )
    playback_mode: str = field(default="remote", validator=validators.in_(PLAYBACK_MODES))
    position_millis: int = field(default=0, eq=False)
    # Kept so a restore can re-find the track when catalog ids change.
    current_track_title: str | None = field(default=None, eq=False)

    def with_volume_delta(self, delta: float) -> float:
        """Apply *delta* and clamp into [0, 1]; returns the new volume."""
        self.volume = round(_clamp_volume(self.volume + delta), 4)
        return self.volume

    def select(self, playlist: Playlist, index: int) -> Track:
        """Point the session at ``playlist[index]`` and return that track."""
        track = playlist[index]
        self.current_index = index
        self.current_track_id = track.id
        self.current_track_title = track.title
        return track

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentTrackId": self.current_track_id,
            "currentTrackTitle": self.current_track_title,
            "currentIndex": self.current_index,
            "isPlaying": self.is_playing,
            "volume": self.volume,
            "playbackMode": self.playback_mode,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PlaybackSession":
        """Rebuild a session from its persisted form.  Raises ValueError."""
        if not isinstance(payload, dict):
            raise ValueError("persisted session must be an object")
        try:
            return cls(
                current_track_id=payload.get("currentTrackId"),
                current_track_title=payload.get("currentTrackTitle"),
                current_index=payload.get("currentIndex", 0),
                is_playing=payload.get("isPlaying", False),
                volume=payload.get("volume", 0.7),
                playback_mode=payload.get("playbackMode", "remote"),
            )
        except TypeError as e:
            raise ValueError(f"invalid persisted session: {e}") from e

    def copy(self) -> "PlaybackSession":
        return attrs.evolve(self)


@define(frozen=True, slots=True)
class RemoteStatus:
    """Snapshot from the appliance's GET /status."""

    status: str = field(validator=validators.in_(REMOTE_STATES))
    volume: int = field(validator=[validators.instance_of(int), validators.ge(0), validators.le(100)])
    url: str | None = field(default=None, validator=validators.optional(validators.instance_of(str)))

    @property
    def is_playing(self) -> bool:
        return self.status == "playing"

    @property
    def volume_fraction(self) -> float:
        return self.volume / 100

    @classmethod
    def from_json(cls, payload: Any) -> "RemoteStatus":
        """Parse the appliance's JSON strictly.  Raises ValueError."""
        if not isinstance(payload, dict):
            raise ValueError("status payload must be an object")
        volume = payload.get("volume")
        if isinstance(volume, float) and volume.is_integer():
            volume = int(volume)
        if isinstance(volume, bool) or not isinstance(volume, int):
            raise ValueError(f"status volume must be an integer, got {volume!r}")
        url = payload.get("url") or None
        try:
            return cls(status=payload.get("status"), volume=volume, url=url)
        except TypeError as e:
            raise ValueError(f"invalid status payload: {e}") from e


@define(slots=True)
class PlayerState:
    """The one mutable holder shared by the controller, the progress clock
    callbacks and the notification action handlers.

    Callbacks get this object by reference at registration time and read
    it when they fire, so they always see the latest session.
    """

    playlist: Playlist = field(factory=Playlist)
    session: PlaybackSession | None = field(default=None)
    generation: int = field(default=0)
    last_volume: float = field(default=0.7, converter=_clamp_volume)

    def current_track(self) -> Track | None:
        if self.session is None or not len(self.playlist):
            return None
        if not 0 <= self.session.current_index < len(self.playlist):
            return None
        return self.playlist[self.session.current_index]

    def next_generation(self) -> int:
        self.generation += 1
        return self.generation
