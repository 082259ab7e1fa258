import asyncio
import logging
from typing import List, Optional

import requests

logger = logging.getLogger(__name__)

LASTFM_API_URL = 'https://ws.audioscrobbler.com/2.0/'
MAX_TAGS = 3


class LastFmGenreLookup:
    """Best-effort genre tags from Last.fm. Never raises; failures yield []."""

    def __init__(self, api_key: Optional[str], http: Optional[requests.Session] = None,
                 base_url: str = LASTFM_API_URL, timeout: float = 10):
        self.api_key = api_key
        self._http = http or requests.Session()
        self.base_url = base_url
        self.timeout = timeout

    async def lookup(self, artist: str, title: str) -> List[str]:
        if not self.api_key:
            return []
        try:
            return await asyncio.to_thread(self._fetch, artist, title)
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"Last.fm lookup failed for {artist} - {title}: {e}")
            return []

    def _fetch(self, artist: str, title: str) -> List[str]:
        response = self._http.get(self.base_url, params={
            'method': 'track.getInfo',
            'api_key': self.api_key,
            'artist': artist,
            'track': title,
            'format': 'json',
            'autocorrect': 1,
        }, timeout=self.timeout)
        if not response.ok:
            return []

        data = response.json()
        if not isinstance(data, dict) or data.get('error'):
            return []

        track = data.get('track')
        toptags = track.get('toptags') if isinstance(track, dict) else None
        tags = toptags.get('tag') if isinstance(toptags, dict) else None
        # A single tag comes back as an object instead of a list
        if isinstance(tags, dict):
            tags = [tags]
        if not isinstance(tags, list):
            return []

        names = [tag.get('name') for tag in tags if isinstance(tag, dict)]
        return [name for name in names if isinstance(name, str) and name][:MAX_TAGS]
