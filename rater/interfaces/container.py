"""
Composition root.

``Container`` builds every service once and wires them together; nothing in
the application layer reaches for globals. ``Runtime`` runs the asyncio event
loop in a background thread so the synchronous Flask and CLI layers can hand
coroutines to it.
"""

import asyncio
import concurrent.futures
import logging
import threading
import webbrowser
from typing import Any, Awaitable, Callable, Optional

from rater.application.engine import PlaybackSyncEngine
from rater.application.ratings import RatingsRepository
from rater.application.session import SessionStore
from rater.crosscutting.config import Settings
from rater.crosscutting.metrics import MetricsCollector
from rater.domain.ports import Clock, GenreLookup, KeyValueStorage, RatingsGateway, TrackSource
from rater.infrastructure.oauth import GoogleTokenClient, SpotifyTokenEndpoint
from rater.infrastructure.providers.lastfm import LastFmGenreLookup
from rater.infrastructure.providers.sheets import SheetsGateway
from rater.infrastructure.providers.spotify import SpotifyTrackSource
from rater.infrastructure.storage import JsonFileStorage, SystemClock

logger = logging.getLogger(__name__)


class Container:
    """Single-instance services for one process."""

    def __init__(self,
                 settings: Settings,
                 storage: Optional[KeyValueStorage] = None,
                 clock: Optional[Clock] = None,
                 open_url: Callable[[str], Any] = webbrowser.open,
                 metrics: Optional[MetricsCollector] = None,
                 track_source: Optional[TrackSource] = None,
                 gateway: Optional[RatingsGateway] = None,
                 genres: Optional[GenreLookup] = None):
        self.settings = settings
        self.metrics = metrics or MetricsCollector()
        self.clock = clock or SystemClock()
        self.storage = storage or JsonFileStorage(settings.tokens_file)

        self.token_endpoint = SpotifyTokenEndpoint(settings.spotify_client_id, settings.spotify_redirect_uri)
        self.google_client = GoogleTokenClient(
            client_id=settings.google_client_id,
            redirect_uri=settings.google_redirect_uri,
            scope=settings.google_scope_string,
            client_secret=settings.google_client_secret,
            open_url=open_url,
            interactive_timeout=settings.interactive_timeout,
        )
        self.session = SessionStore(
            storage=self.storage,
            clock=self.clock,
            token_endpoint=self.token_endpoint,
            token_client=self.google_client,
            spotify_client_id=settings.spotify_client_id,
            spotify_redirect_uri=settings.spotify_redirect_uri,
            spotify_scope=settings.spotify_scope_string,
            open_url=open_url,
            metrics=self.metrics,
            refresh_threshold=settings.refresh_threshold,
            refresh_check_interval=settings.refresh_check_interval,
            interactive_timeout=settings.interactive_timeout,
        )

        self.track_source = track_source or SpotifyTrackSource(self.session)
        self.gateway = gateway or SheetsGateway(self.session, settings.sheet_id, settings.sheet_name)
        self.ratings = RatingsRepository(self.gateway)
        self.genres = genres or LastFmGenreLookup(settings.lastfm_api_key)
        self.engine = PlaybackSyncEngine(
            track_source=self.track_source,
            ratings=self.ratings,
            collection_name=settings.playlist_name,
            genres=self.genres,
            session=self.session,
            metrics=self.metrics,
            poll_interval=settings.poll_interval,
            settle_seconds=settings.settle_seconds,
        )

    async def start(self) -> None:
        self.session.start()

    async def close(self) -> None:
        await self.engine.stop()
        await self.session.close()


class Runtime:
    """An asyncio event loop running in a daemon thread."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.loop = loop or asyncio.new_event_loop()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> 'Runtime':
        if self.is_running:
            return self
        self._thread = threading.Thread(target=self._run, name='rater-loop', daemon=True)
        self._thread.start()
        return self

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def submit(self, coro: Awaitable) -> concurrent.futures.Future:
        """Schedule a coroutine on the loop and return a thread-safe future."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def run(self, coro: Awaitable, timeout: Optional[float] = None) -> Any:
        """Run a coroutine on the loop and wait for its result."""
        return self.submit(coro).result(timeout)

    def call(self, fn: Callable[..., Any], *args, timeout: Optional[float] = None) -> Any:
        """Run a plain callable on the loop thread and wait for its result."""
        async def invoke():
            return fn(*args)
        return self.run(invoke(), timeout)

    def stop(self, timeout: float = 5.0) -> None:
        if not self.is_running:
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout)
        self._thread = None
        if not self.loop.is_running():
            self.loop.close()
        logger.info("Event loop stopped")
