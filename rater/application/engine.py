"""
Playback synchronization engine.

Polls the external player once per tick and reconciles what it reports with
the candidate track the user is rating. In queue mode the candidate is the
first remaining item of a playlist and rated tracks are removed from it; in
live mode the candidate is whatever is playing.

All state changes are events dispatched to a ``SyncStore``. Engine methods
must be called on the event loop thread.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set

from rater.application.ratings import RatingsRepository, is_valid_rating
from rater.application.sync_state import (
    Activated, BusyChanged, CandidateGone, CandidateLoaded, CandidateReplaced, ErrorCleared,
    LoadStarted, OperationFailed, PlaybackObserved, PlayingChanged, ProgressChanged,
    RatingResolved, SyncStore, TagsResolved,
)
from rater.crosscutting.logging import CorrelationContext, log_engine_start, log_error
from rater.crosscutting.metrics import MetricsCollector
from rater.domain.entities import (
    RATING_LADDER, Operation, PlaybackSnapshot, Provider, SyncMode, SyncState, Track,
)
from rater.domain.errors import (
    AuthenticationRequired, AuthorizationDenied, Conflict, NotFound, RemoteUnavailable,
    error_kind_for,
)
from rater.domain.ports import GenreLookup, TrackSource

logger = logging.getLogger(__name__)

EMPTY_COLLECTION_MESSAGE = "Playlist is empty! All songs rated."
NOTHING_PLAYING_MESSAGE = "No song currently playing on Spotify."
NO_DEVICE_MESSAGE = "No active device found"

# Failures a user-triggered operation surfaces as a retryable error
OPERATION_ERRORS = (AuthenticationRequired, AuthorizationDenied, RemoteUnavailable, NotFound, Conflict)

RatingListener = Callable[[Track, float], None]
Retry = Callable[[], Awaitable[object]]


class PlaybackSyncEngine:
    """Keeps the candidate track in step with the external player."""

    def __init__(self,
                 track_source: TrackSource,
                 ratings: RatingsRepository,
                 collection_name: str,
                 genres: Optional[GenreLookup] = None,
                 session=None,
                 metrics: Optional[MetricsCollector] = None,
                 poll_interval: float = 1.0,
                 settle_seconds: float = 3.0,
                 store: Optional[SyncStore] = None):
        """Initialize the engine.

        Args:
            track_source: Remote player and playlist access
            ratings: Ratings repository used for lookups and saves
            collection_name: Name of the playlist rated in queue mode
            genres: Optional genre tag lookup
            session: Session store, used to re-authorize on retry
            poll_interval: Seconds between poll ticks
            settle_seconds: How long after a play command the reported context is not trusted
        """
        self._source = track_source
        self._ratings = ratings
        self._collection_name = collection_name
        self._genres = genres
        self._session = session
        self._metrics = metrics
        self._poll_interval = poll_interval
        self._settle_seconds = settle_seconds
        self._store = store or SyncStore()

        self._mode: Optional[SyncMode] = None
        self._active = False
        # Bumped on every start/stop; work belonging to an older run is discarded
        self._generation = 0
        self._load_seq = 0
        self._collection_id: Optional[str] = None

        self._poll_task: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()
        self._background: Set[asyncio.Task] = set()

        self._settling = False
        self._settle_token = 0
        self._settle_handle: Optional[asyncio.TimerHandle] = None

        self._visible = True
        self._rating_in_flight = False
        self._rating_listeners: List[RatingListener] = []
        self._retry: Optional[Retry] = None

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._store.state

    @property
    def mode(self) -> Optional[SyncMode]:
        return self._mode

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def is_settling(self) -> bool:
        return self._settling

    @property
    def collection_id(self) -> Optional[str]:
        return self._collection_id

    def subscribe(self, listener: Callable[[SyncState], None]) -> Callable[[], None]:
        return self._store.subscribe(listener)

    def on_rating_complete(self, listener: RatingListener) -> Callable[[], None]:
        """Register a listener called after every persisted rating."""
        self._rating_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._rating_listeners:
                self._rating_listeners.remove(listener)

        return unsubscribe

    def set_visible(self, visible: bool) -> None:
        """Poll ticks are skipped while the presentation is hidden."""
        self._visible = bool(visible)

    def is_visible(self) -> bool:
        return self._visible

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, mode: SyncMode) -> None:
        """Activate the engine in the given mode, replacing any previous run."""
        await self.stop()

        self._generation += 1
        generation = self._generation
        self._active = True
        self._mode = mode
        self._retry = None
        self._store.dispatch(Activated(mode))
        log_engine_start(logger, mode.value, collection=self._collection_name)

        with CorrelationContext(mode=mode.value, stage='init'):
            if mode is SyncMode.QUEUE:
                await self._initialize_queue(generation)
            else:
                await self.refresh_now_playing()

        if self._is_current(generation):
            self._poll_task = asyncio.ensure_future(self._poll_loop(generation))

    async def stop(self) -> None:
        """Cancel polling, in-flight ticks and the settling timer. State is left as is."""
        self._active = False
        self._generation += 1
        self._end_settling(self._settle_token)

        tasks = [t for t in [self._poll_task, *self._ticks, *self._background] if t is not None]
        self._poll_task = None
        self._ticks.clear()
        self._background.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _is_current(self, generation: int) -> bool:
        return self._active and generation == self._generation

    def _is_latest_load(self, generation: int, seq: int) -> bool:
        return self._is_current(generation) and seq == self._load_seq

    async def _initialize_queue(self, generation: int) -> None:
        self._load_seq += 1
        seq = self._load_seq
        try:
            collection_id = await self._resolve_collection()
            snapshot = await self._source.get_playback_snapshot()
            if not self._is_latest_load(generation, seq):
                return

            if snapshot is None or snapshot.track is None or not self._in_collection(snapshot):
                # Nothing of ours is playing: wait for an explicit load_next
                self._store.dispatch(CandidateGone())
                return

            rating = await self._lookup_rating(snapshot.track.track_id)
            if not self._is_latest_load(generation, seq):
                return
            self._store.dispatch(CandidateLoaded(snapshot.track, rating, snapshot))
            self._spawn(self._resolve_tags(snapshot.track))
            logger.info(f"Adopted {snapshot.track.track_id} already playing from playlist {collection_id}")
        except OPERATION_ERRORS as e:
            if self._is_latest_load(generation, seq):
                self._fail(Operation.LOAD, e, fatal=True, retry=self.load_next)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def _resolve_collection(self) -> str:
        if self._collection_id is None:
            self._collection_id = await self._source.find_collection_by_name(self._collection_name)
        return self._collection_id

    def _in_collection(self, snapshot: PlaybackSnapshot) -> bool:
        context = snapshot.context_identifier
        return bool(self._collection_id and context and self._collection_id in context)

    async def load_next(self, play: bool = True) -> Optional[Track]:
        """Load the first remaining playlist item as the candidate (queue mode).

        Overlapping calls are allowed; only the most recent one updates the state.
        """
        self._require_mode(SyncMode.QUEUE)
        generation = self._generation
        self._load_seq += 1
        seq = self._load_seq
        self._retry = None
        self._store.dispatch(LoadStarted())

        try:
            collection_id = await self._resolve_collection()
            track = await self._source.get_first_item(collection_id)
            if not self._is_latest_load(generation, seq):
                return None

            if track is None:
                logger.info(f"Playlist '{self._collection_name}' is empty")
                self._store.dispatch(CandidateGone(EMPTY_COLLECTION_MESSAGE))
                return None

            rating = await self._lookup_rating(track.track_id)
            if not self._is_latest_load(generation, seq):
                return None
            self._store.dispatch(CandidateLoaded(track, rating))
            self._spawn(self._resolve_tags(track))
        except OPERATION_ERRORS as e:
            if self._is_latest_load(generation, seq):
                self._fail(Operation.LOAD, e, fatal=True, retry=self.load_next)
            return None

        if play:
            await self._play_candidate(track, collection_id, offset=0)
        return track

    async def refresh_now_playing(self) -> Optional[Track]:
        """Make the currently playing track the candidate."""
        generation = self._generation
        self._load_seq += 1
        seq = self._load_seq
        self._retry = None
        self._store.dispatch(LoadStarted())

        try:
            snapshot = await self._source.get_playback_snapshot()
            if not self._is_latest_load(generation, seq):
                return None

            if snapshot is None or snapshot.track is None:
                self._store.dispatch(CandidateGone(NOTHING_PLAYING_MESSAGE))
                return None

            rating = await self._lookup_rating(snapshot.track.track_id)
            if not self._is_latest_load(generation, seq):
                return None
            self._store.dispatch(CandidateLoaded(snapshot.track, rating, snapshot))
            self._spawn(self._resolve_tags(snapshot.track))
            return snapshot.track
        except OPERATION_ERRORS as e:
            if self._is_latest_load(generation, seq):
                self._fail(Operation.LOAD, e, fatal=True, retry=self.refresh_now_playing)
            return None

    async def _play_candidate(self, track: Track, collection_id: str, offset: Optional[int]) -> bool:
        """Play the candidate inside the playlist with shuffle off, under a settling window."""
        token = self._begin_settling()
        try:
            await self._source.set_shuffle(False)
            await self._source.play(track.track_id, collection_id, offset)
        except OPERATION_ERRORS as e:
            self._fail(Operation.TRANSPORT, e,
                       retry=lambda: self._play_candidate(track, collection_id, offset))
            return False
        finally:
            self._arm_settle_timer(token)

        self._store.dispatch(PlayingChanged(True))
        return True

    # ------------------------------------------------------------------
    # Settling window
    # ------------------------------------------------------------------

    def _begin_settling(self) -> int:
        self._settle_token += 1
        self._settling = True
        if self._settle_handle is not None:
            self._settle_handle.cancel()
            self._settle_handle = None
        return self._settle_token

    def _arm_settle_timer(self, token: int) -> None:
        if token != self._settle_token or not self._settling:
            return
        loop = asyncio.get_running_loop()
        self._settle_handle = loop.call_later(self._settle_seconds, self._end_settling, token)

    def _end_settling(self, token: int) -> None:
        # Only the most recent play command may close the window
        if token != self._settle_token:
            return
        self._settling = False
        if self._settle_handle is not None:
            self._settle_handle.cancel()
            self._settle_handle = None

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _poll_loop(self, generation: int) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            if not self._is_current(generation):
                return
            if self._visible:
                self._track(self._ticks, asyncio.ensure_future(self._tick(generation)))
            elif self._metrics:
                self._metrics.record_skipped_tick()

    async def poll_once(self) -> None:
        """Run one poll tick now."""
        await self._tick(self._generation)

    async def _tick(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        if self._metrics:
            self._metrics.record_tick()

        try:
            snapshot = await self._source.get_playback_snapshot()
        except Exception as e:
            # A lost tick is corrected by the next one
            if self._metrics:
                self._metrics.record_poll_failure()
            logger.debug(f"Poll tick failed: {e}")
            return

        if not self._is_current(generation):
            return
        self._apply_snapshot(snapshot, generation)

    def _apply_snapshot(self, snapshot: Optional[PlaybackSnapshot], generation: int) -> None:
        if snapshot is None or snapshot.track is None:
            return

        self._store.dispatch(PlaybackObserved(
            is_playing=snapshot.is_playing,
            progress_ms=snapshot.progress_ms,
            duration_ms=snapshot.duration_ms,
        ))
        if self._settling:
            return

        state = self._store.state
        if self._mode is SyncMode.QUEUE and self._collection_id and not self._in_collection(snapshot):
            if snapshot.is_playing and state.current_track is not None:
                logger.info("Playback left the playlist, dropping candidate")
                self._store.dispatch(CandidateGone())
            return

        current = state.current_track
        if current is None or current.track_id != snapshot.track.track_id:
            logger.info(f"Player moved to {snapshot.track.track_id}")
            self._store.dispatch(CandidateReplaced(snapshot.track))
            self._spawn(self._resolve_details(snapshot.track, generation))

    async def _resolve_details(self, track: Track, generation: int) -> None:
        try:
            rating = await self._lookup_rating(track.track_id)
        except Exception as e:
            logger.debug(f"Rating lookup for {track.track_id} failed: {e}")
        else:
            if self._is_current(generation):
                self._store.dispatch(RatingResolved(track.track_id, rating))
        await self._resolve_tags(track)

    async def _resolve_tags(self, track: Track) -> None:
        if self._genres is None:
            return
        tags = await self._genres.lookup(track.artist_name, track.song_name)
        if tags:
            self._store.dispatch(TagsResolved(track.track_id, tuple(tags)))

    async def _lookup_rating(self, track_id: str) -> Optional[float]:
        row = await self._ratings.find_by_track_id(track_id)
        return row.rating if row else None

    # ------------------------------------------------------------------
    # Rating
    # ------------------------------------------------------------------

    async def rate(self, track_id: str, rating: float) -> bool:
        """Persist a rating for the current candidate.

        Returns False without writing when the track is not the candidate or a
        rating is already being saved.
        """
        if not is_valid_rating(rating):
            raise ValueError(f"Rating must be one of {RATING_LADDER}, got {rating}")

        current = self._store.state.current_track
        if current is None or current.track_id != track_id:
            logger.warning(f"Ignoring rating for {track_id}: not the current track")
            return False
        if self._rating_in_flight:
            logger.info(f"Rating for {track_id} already in progress")
            return False

        return await self._rate_track(current, float(rating))

    async def _rate_track(self, track: Track, rating: float) -> bool:
        if self._rating_in_flight:
            return False
        self._rating_in_flight = True
        self._retry = None
        self._store.dispatch(ErrorCleared())
        self._store.dispatch(BusyChanged(True))
        try:
            with CorrelationContext(track_id=track.track_id, stage='rating'):
                try:
                    await self._ratings.save(track.track_id, track.artist_name, track.song_name, rating)
                except OPERATION_ERRORS as e:
                    if self._metrics:
                        self._metrics.record_rating(False)
                    self._fail(Operation.SAVE_RATING, e, retry=lambda: self._rate_track(track, rating))
                    return False

                if self._metrics:
                    self._metrics.record_rating(True)
                self._store.dispatch(RatingResolved(track.track_id, rating))
                self._notify_rating_complete(track, rating)

                if self._mode is SyncMode.QUEUE and self._collection_id:
                    await self._remove_from_collection(self._collection_id, track.track_id)
                return True
        finally:
            self._rating_in_flight = False
            self._store.dispatch(BusyChanged(False))

    async def _remove_from_collection(self, collection_id: str, track_id: str) -> bool:
        try:
            await self._source.remove_item(collection_id, track_id)
        except OPERATION_ERRORS as e:
            # The rating is already persisted; only the cleanup failed
            if self._metrics:
                self._metrics.record_removal_failure()
            self._fail(Operation.REMOVE_FROM_QUEUE, e,
                       retry=lambda: self._remove_from_collection(collection_id, track_id))
            return False
        return True

    def _notify_rating_complete(self, track: Track, rating: float) -> None:
        for listener in list(self._rating_listeners):
            try:
                listener(track, rating)
            except Exception:
                logger.exception("Rating listener failed")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def toggle_playback(self) -> None:
        current = self._store.state.current_track
        if current is None:
            if self._mode is SyncMode.QUEUE:
                await self.load_next()
            return

        try:
            snapshot = await self._source.get_playback_snapshot()
            on_candidate = (snapshot is not None and snapshot.track is not None
                            and snapshot.track.track_id == current.track_id)

            if self._mode is SyncMode.QUEUE and not on_candidate:
                collection_id = await self._resolve_collection()
                await self._play_candidate(current, collection_id, offset=None)
                return
            if snapshot is None:
                raise NotFound(NO_DEVICE_MESSAGE)

            if snapshot.is_playing:
                await self._source.pause()
                self._store.dispatch(PlayingChanged(False))
            else:
                await self._source.resume()
                self._store.dispatch(PlayingChanged(True))
        except OPERATION_ERRORS as e:
            self._fail(Operation.TRANSPORT, e, retry=self.toggle_playback)

    async def next_track(self) -> None:
        try:
            await self._source.next()
        except OPERATION_ERRORS as e:
            self._fail(Operation.TRANSPORT, e, retry=self.next_track)

    async def previous_track(self) -> None:
        try:
            await self._source.previous()
        except OPERATION_ERRORS as e:
            self._fail(Operation.TRANSPORT, e, retry=self.previous_track)

    async def seek(self, position_ms: int) -> None:
        """Seek with an optimistic progress update; the next tick corrects it."""
        position_ms = max(0, int(position_ms))
        self._store.dispatch(ProgressChanged(position_ms))
        try:
            await self._source.seek(position_ms)
        except OPERATION_ERRORS as e:
            logger.warning(f"Seek to {position_ms} ms failed: {e}")

    async def collection_size(self) -> Optional[int]:
        if self._collection_id is None:
            return None
        return await self._source.get_collection_size(self._collection_id)

    # ------------------------------------------------------------------
    # Errors and retry
    # ------------------------------------------------------------------

    def _fail(self, operation: Operation, error: Exception, fatal: bool = False,
              retry: Optional[Retry] = None) -> None:
        if isinstance(error, AuthenticationRequired):
            retry = self._reauthorize_then(error.provider, retry)
            operation = Operation.AUTHORIZE
        self._retry = retry
        self._surface(operation, error, fatal)

    def _surface(self, operation: Operation, error: Exception, fatal: bool) -> None:
        log_error(logger, f"{operation.value} failed", error, operation=operation.value)
        self._store.dispatch(OperationFailed(
            operation=operation,
            error=error_kind_for(error),
            message=str(error) or error_kind_for(error).value,
            fatal=fatal,
        ))

    def _reauthorize_then(self, provider: Optional[str], retry: Optional[Retry]) -> Optional[Retry]:
        if self._session is None or provider not in (p.value for p in Provider):
            return retry

        async def reauthorize():
            await self._session.authorize(Provider(provider))
            if retry is not None:
                await retry()

        return reauthorize

    async def retry(self) -> bool:
        """Re-run the operation that failed last. Returns False when there is none."""
        retry, self._retry = self._retry, None
        if retry is None:
            return False

        failed = self._store.state.failed_operation
        self._store.dispatch(ErrorCleared())
        try:
            await retry()
        except OPERATION_ERRORS as e:
            # Only the re-authorization step of a retry raises; the operations surface their own errors
            self._retry = retry
            self._surface(failed or Operation.AUTHORIZE, e, fatal=False)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_mode(self, mode: SyncMode) -> None:
        if not self._active or self._mode is not mode:
            raise RuntimeError(f"Engine is not running in {mode.value} mode")

    def _spawn(self, coro) -> asyncio.Task:
        return self._track(self._background, asyncio.ensure_future(coro))

    @staticmethod
    def _track(bucket: Set[asyncio.Task], task: asyncio.Task) -> asyncio.Task:
        bucket.add(task)
        task.add_done_callback(bucket.discard)
        return task
