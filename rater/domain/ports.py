from __future__ import annotations

from typing import Any, List, Optional, Protocol, Sequence

from .entities import PlaybackSnapshot, TokenResponse, Track


class Clock(Protocol):
    def now(self) -> float:
        """Wall time in epoch seconds."""


class KeyValueStorage(Protocol):
    """Durable key/value storage that survives restarts."""

    def get(self, key: str) -> Optional[str]:
        """Return the stored value or None."""

    def set(self, key: str, value: str) -> None:
        """Store a value."""

    def remove(self, key: str) -> None:
        """Remove a key if present."""


class TokenEndpoint(Protocol):
    """OAuth token endpoint of the music service (authorization code + PKCE)."""

    def exchange_code(self, code: str, code_verifier: str) -> TokenResponse:
        """Exchange an authorization code for an access/refresh token pair."""

    def refresh(self, refresh_token: str) -> TokenResponse:
        """Exchange a refresh token for a new access token."""


class TokenClient(Protocol):
    """Token-issuing client of the spreadsheet service (short-lived tokens)."""

    async def request_token(self, interactive: bool) -> TokenResponse:
        """Return a fresh token. Silent when interactive is False."""


class TrackSource(Protocol):
    """Port for the remote music service: playback state, transport and the rating queue."""

    async def find_collection_by_name(self, name: str) -> str:
        """Return the id of the user's playlist with this exact name."""

    async def get_playback_snapshot(self) -> Optional[PlaybackSnapshot]:
        """Return the current playback state, None when no device is active."""

    async def get_first_item(self, collection_id: str) -> Optional[Track]:
        """Return the first remaining track of the playlist."""

    async def get_collection_size(self, collection_id: str) -> int:
        """Return the number of tracks left in the playlist."""

    async def play(self, track_id: str, collection_id: Optional[str] = None,
                   offset: Optional[int] = None) -> None:
        """Start playback of a track, optionally inside a playlist context."""

    async def pause(self) -> None: ...

    async def resume(self) -> None: ...

    async def next(self) -> None: ...

    async def previous(self) -> None: ...

    async def seek(self, position_ms: int) -> None: ...

    async def set_shuffle(self, enabled: bool) -> None: ...

    async def remove_item(self, collection_id: str, track_id: str) -> None:
        """Remove every occurrence of the track from the playlist."""


class RatingsGateway(Protocol):
    """Raw access to the ratings spreadsheet."""

    async def read_rows(self) -> List[List[str]]:
        """Return the data rows (without header) as lists of cell strings."""

    async def append_row(self, values: Sequence[Any]) -> Optional[int]:
        """Append a row; return its sheet row number when the service reports it."""

    async def update_rating(self, row_position: int, rating: float, rated_at: str) -> None:
        """Overwrite the rating and timestamp cells of one row."""


class GenreLookup(Protocol):
    async def lookup(self, artist: str, title: str) -> List[str]:
        """Return up to three tags, or an empty list."""
