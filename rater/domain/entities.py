from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .errors import ErrorKind


RATING_LADDER: Tuple[float, ...] = (1, 1.5, 2, 2.5, 3, 3.5, 4, 4.5, 5)


class Provider(str, Enum):
    """The two OAuth-protected services the rater depends on."""

    SPOTIFY = "spotify"
    GOOGLE = "google"


class SyncMode(str, Enum):
    """Operating mode of the playback synchronization engine."""

    QUEUE = "queue"
    LIVE = "live"


class Phase(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    EMPTY = "empty"
    ERROR = "error"


class Operation(str, Enum):
    """User-triggered operation a retry applies to."""

    LOAD = "load"
    SAVE_RATING = "save_rating"
    REMOVE_FROM_QUEUE = "remove_from_queue"
    TRANSPORT = "transport"
    AUTHORIZE = "authorize"


@dataclass
class Credential:
    """Token set for one provider. Owned by the session store."""

    access_token: Optional[str] = None
    expiry: Optional[float] = None
    refresh_token: Optional[str] = None

    def is_valid(self, now: float) -> bool:
        return bool(self.access_token) and self.expiry is not None and now < self.expiry

    def remaining(self, now: float) -> float:
        """Seconds of lifetime left, 0 when there is no token."""
        if not self.access_token or self.expiry is None:
            return 0.0
        return max(0.0, self.expiry - now)


@dataclass(frozen=True)
class TokenResponse:
    """Result of a token endpoint exchange or a token client request."""

    access_token: str
    expires_in: int = 3600
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


@dataclass(frozen=True)
class AuthStatus:
    spotify: bool = False
    google: bool = False

    @property
    def all(self) -> bool:
        return self.spotify and self.google

    def to_dict(self) -> Dict[str, bool]:
        return {"spotify": self.spotify, "google": self.google, "all": self.all}


@dataclass(frozen=True)
class Track:
    """Track offered for rating, independent of the provider payload format."""

    track_id: str
    song_name: str
    artist_name: str
    album_art: Optional[str] = None
    uri: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "trackId": self.track_id,
            "songName": self.song_name,
            "artistName": self.artist_name,
            "albumArt": self.album_art,
            "uri": self.uri,
        }


@dataclass
class RatingRow:
    """One row of the ratings sheet. Positions are 1-based sheet row numbers."""

    row_position: int
    track_id: str
    artist: str = ""
    song: str = ""
    rating: Optional[float] = None
    rated_at: Optional[str] = None


@dataclass(frozen=True)
class PlaybackSnapshot:
    """One poll tick's view of the external player."""

    track: Optional[Track] = None
    is_playing: bool = False
    progress_ms: int = 0
    duration_ms: int = 0
    context_identifier: Optional[str] = None


@dataclass(frozen=True)
class SyncState:
    """Engine state observed by the presentation layer."""

    phase: Phase = Phase.IDLE
    mode: Optional[SyncMode] = None
    current_track: Optional[Track] = None
    is_playing: bool = False
    progress_ms: int = 0
    duration_ms: int = 0
    existing_rating: Optional[float] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    failed_operation: Optional[Operation] = None
    is_busy: bool = False
    tags: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, object]:
        return {
            "phase": self.phase.value,
            "mode": self.mode.value if self.mode else None,
            "currentTrack": self.current_track.to_dict() if self.current_track else None,
            "isPlaying": self.is_playing,
            "progress": self.progress_ms,
            "duration": self.duration_ms,
            "existingRating": self.existing_rating,
            "error": self.error.value if self.error else None,
            "message": self.message,
            "failedOperation": self.failed_operation.value if self.failed_operation else None,
            "isBusy": self.is_busy,
            "tags": list(self.tags),
        }


@dataclass
class RatingStats:
    """Aggregates derived from the cached ratings."""

    total: int = 0
    today: int = 0
    distribution: Dict[float, int] = field(default_factory=lambda: {r: 0 for r in RATING_LADDER})
    average_rating: float = 0.0
    top_artists: List[Tuple[str, int]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "total": self.total,
            "today": self.today,
            "distribution": {str(k): v for k, v in self.distribution.items()},
            "averageRating": self.average_rating,
            "topArtists": [{"name": name, "count": count} for name, count in self.top_artists],
        }
