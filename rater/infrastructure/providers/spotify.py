import asyncio
import logging
from typing import Any, Callable, Dict, Optional

import requests
import spotipy
from urllib3.exceptions import ReadTimeoutError

from rater.domain.entities import PlaybackSnapshot, Provider, Track
from rater.domain.errors import AuthorizationDenied, NotFound, RateLimited, RemoteUnavailable

logger = logging.getLogger(__name__)

PLAYLIST_PAGE_SIZE = 50


def format_track(payload: Optional[Dict[str, Any]]) -> Optional[Track]:
    """Convert a Spotify track object to a domain Track.

    Missing artists become 'Unknown Artist'; the album art is the first (largest)
    album image, if any.
    """
    if not payload or not payload.get('id'):
        return None

    artists = payload.get('artists') or []
    artist_name = (artists[0].get('name') if artists else None) or 'Unknown Artist'

    images = (payload.get('album') or {}).get('images') or []
    album_art = images[0].get('url') if images else None

    track_id = payload['id']
    return Track(
        track_id=track_id,
        song_name=payload.get('name') or '',
        artist_name=artist_name,
        album_art=album_art,
        uri=payload.get('uri') or f"spotify:track:{track_id}",
    )


def playlist_uri(playlist_id: str) -> str:
    return f"spotify:playlist:{playlist_id}"


def _default_client_factory(token: str) -> spotipy.Spotify:
    return spotipy.Spotify(auth=token, requests_timeout=15)


class SpotifyTrackSource:
    """Spotify Web API as the remote track source.

    Every call fetches a bearer token from the session store and runs the
    blocking spotipy call in a worker thread. A 401 forces exactly one token
    refresh followed by one retry.
    """

    def __init__(self, session, client_factory: Callable[[str], Any] = _default_client_factory):
        """Initialize the track source.

        Args:
            session: Session store handing out Spotify tokens
            client_factory: Builds a spotipy client for an access token
        """
        self._session = session
        self._client_factory = client_factory
        self._playlist_ids: Dict[str, str] = {}
        self._client: Any = None
        self._client_token: Optional[str] = None

    async def _call(self, operation: str, method: str, *args, **kwargs) -> Any:
        token = await self._session.get_token(Provider.SPOTIFY)
        try:
            return await self._invoke(token, operation, method, *args, **kwargs)
        except spotipy.SpotifyException as e:
            if e.http_status != 401:
                raise self._translate(e, operation)
            logger.warning(f"Spotify token rejected during {operation}, refreshing")

        token = await self._session.refresh(Provider.SPOTIFY)
        try:
            return await self._invoke(token, operation, method, *args, **kwargs)
        except spotipy.SpotifyException as e:
            raise self._translate(e, operation)

    async def _invoke(self, token: str, operation: str, method: str, *args, **kwargs) -> Any:
        client = self._client_for(token)
        try:
            return await asyncio.to_thread(getattr(client, method), *args, **kwargs)
        except (requests.RequestException, ReadTimeoutError) as e:
            raise RemoteUnavailable(f"Spotify unreachable during {operation}: {e}")

    def _client_for(self, token: str) -> Any:
        # One client per access token keeps its HTTP connections alive between polls
        if self._client is None or self._client_token != token:
            self._client = self._client_factory(token)
            self._client_token = token
        return self._client

    def _translate(self, error: 'spotipy.SpotifyException', operation: str) -> Exception:
        status = error.http_status
        msg = f"Spotify {operation} failed: {status} {error.msg}"
        if status == 429:
            headers = getattr(error, 'headers', None) or {}
            try:
                retry_after = int(headers.get('Retry-After', 1))
            except (TypeError, ValueError):
                retry_after = 1
            return RateLimited(retry_after_ms=retry_after * 1000)
        if status == 404:
            return NotFound(msg)
        if status in (401, 403):
            return AuthorizationDenied(msg, error={'status': status, 'reason': getattr(error, 'reason', None)})
        return RemoteUnavailable(msg)

    async def find_collection_by_name(self, name: str) -> str:
        """Return the id of the user's playlist with exactly this name. Cached per name."""
        cached = self._playlist_ids.get(name)
        if cached:
            return cached

        offset = 0
        while True:
            page = await self._call('list playlists', 'current_user_playlists',
                                    limit=PLAYLIST_PAGE_SIZE, offset=offset)
            items = (page or {}).get('items') or []
            for playlist in items:
                if playlist and playlist.get('name') == name:
                    self._playlist_ids[name] = playlist['id']
                    logger.info(f"Resolved playlist '{name}' to {playlist['id']}")
                    return playlist['id']
            if len(items) < PLAYLIST_PAGE_SIZE:
                break
            offset += PLAYLIST_PAGE_SIZE

        raise NotFound(f'Playlist "{name}" not found')

    async def get_playback_snapshot(self) -> Optional[PlaybackSnapshot]:
        data = await self._call('read playback', 'current_playback')
        if not data:
            return None

        item = data.get('item')
        context = data.get('context') or {}
        return PlaybackSnapshot(
            track=format_track(item),
            is_playing=bool(data.get('is_playing')),
            progress_ms=data.get('progress_ms') or 0,
            duration_ms=(item or {}).get('duration_ms') or 0,
            context_identifier=context.get('uri'),
        )

    async def get_first_item(self, collection_id: str) -> Optional[Track]:
        data = await self._call('read playlist', 'playlist_items', collection_id, limit=1, offset=0)
        items = (data or {}).get('items') or []
        if not items:
            return None
        return format_track(items[0].get('track'))

    async def get_collection_size(self, collection_id: str) -> int:
        data = await self._call('read playlist size', 'playlist', collection_id, fields='tracks.total')
        return ((data or {}).get('tracks') or {}).get('total', 0)

    async def play(self, track_id: str, collection_id: Optional[str] = None,
                   offset: Optional[int] = None) -> None:
        """Play a track; inside a playlist context when collection_id is given."""
        if collection_id:
            position = {'position': offset} if offset is not None else {'uri': f"spotify:track:{track_id}"}
            await self._call('play', 'start_playback',
                             context_uri=playlist_uri(collection_id), offset=position)
        else:
            await self._call('play', 'start_playback', uris=[f"spotify:track:{track_id}"])

    async def pause(self) -> None:
        await self._call('pause', 'pause_playback')

    async def resume(self) -> None:
        await self._call('resume', 'start_playback')

    async def next(self) -> None:
        await self._call('next', 'next_track')

    async def previous(self) -> None:
        await self._call('previous', 'previous_track')

    async def seek(self, position_ms: int) -> None:
        await self._call('seek', 'seek_track', int(position_ms))

    async def set_shuffle(self, enabled: bool) -> None:
        await self._call('shuffle', 'shuffle', bool(enabled))

    async def remove_item(self, collection_id: str, track_id: str) -> None:
        await self._call('remove from playlist', 'playlist_remove_all_occurrences_of_items',
                         collection_id, [f"spotify:track:{track_id}"])
        logger.info(f"Removed {track_id} from playlist {collection_id}")
