import asyncio
from datetime import datetime

import pytest

from rater.application.engine import NOTHING_PLAYING_MESSAGE, EMPTY_COLLECTION_MESSAGE, PlaybackSyncEngine
from rater.application.ratings import RatingsRepository
from rater.crosscutting.metrics import MetricsCollector
from rater.domain.entities import Operation, Phase, Provider, SyncMode
from rater.domain.errors import AuthenticationRequired, ErrorKind, RemoteUnavailable
from rater.tests.fakes import FakeGateway, FakeGenres, FakeSession, FakeTrackSource, make_track

NOW = datetime(2024, 3, 9, 14, 5, 7)


class TestPlaybackSyncEngine:
    """Tests for the playback synchronization engine against in-memory services."""

    def setup_method(self):
        """Set up test fixtures."""
        self.a = make_track('a')
        self.b = make_track('b')
        self.source = FakeTrackSource({'Inbox': [self.a, self.b]})
        self.gateway = FakeGateway()
        self.ratings = RatingsRepository(self.gateway, now=lambda: NOW)
        self.metrics = MetricsCollector()
        self.session = FakeSession()
        self.genres = FakeGenres(['indie'])
        self.engine = self._engine()

    def _engine(self, **kwargs):
        options = dict(genres=self.genres, session=self.session, metrics=self.metrics,
                       poll_interval=60, settle_seconds=0)
        options.update(kwargs)
        return PlaybackSyncEngine(self.source, self.ratings, 'Inbox', **options)

    async def _loaded(self):
        """Start in queue mode and load the first playlist item."""
        await self.engine.start(SyncMode.QUEUE)
        await self.engine.load_next()
        # Let the settle timer and the tag lookup run
        await asyncio.sleep(0.01)

    async def test_rate_then_player_advances(self):
        """Rating keeps the candidate until the player itself moves to the next track."""
        await self.engine.start(SyncMode.QUEUE)
        assert self.engine.state.phase == Phase.EMPTY
        assert self.engine.state.message is None

        track = await self.engine.load_next()
        await asyncio.sleep(0.01)

        assert track == self.a
        assert self.engine.state.current_track == self.a
        assert self.engine.state.tags == ('indie',)
        assert ('shuffle', False) in self.source.calls
        assert ('play', 'a', 'inbox', 0) in self.source.calls
        assert not self.engine.is_settling

        assert await self.engine.rate('a', 4.5) is True

        row = await self.ratings.find_by_track_id('a')
        assert row.rating == 4.5
        assert self.source.playlists['inbox'] == [self.b]
        assert self.engine.state.current_track == self.a
        assert self.engine.state.existing_rating == 4.5

        await self.engine.poll_once()
        assert self.engine.state.current_track == self.a

        self.source.play_in('inbox', self.b)
        await self.engine.poll_once()
        await asyncio.sleep(0.01)

        assert self.engine.state.current_track == self.b
        assert self.engine.state.existing_rating is None
        assert self.engine.state.phase == Phase.READY
        await self.engine.stop()

    async def test_rated_track_is_not_offered_again(self):
        """After a successful rating the next load offers the following item."""
        await self._loaded()
        await self.engine.rate('a', 3)

        assert await self.engine.load_next(play=False) == self.b
        await self.engine.stop()

    async def test_empty_playlist(self):
        self.source.playlists['inbox'] = []
        await self.engine.start(SyncMode.QUEUE)

        assert await self.engine.load_next() is None
        assert self.engine.state.phase == Phase.EMPTY
        assert self.engine.state.message == EMPTY_COLLECTION_MESSAGE
        await self.engine.stop()

    async def test_queue_start_adopts_playing_track(self):
        """A track already playing from the playlist becomes the candidate with its rating."""
        self.gateway.rows = [['b', 'Artist', 'Song b', '3.5', '2024-03-01 10:00:00']]
        self.source.play_in('inbox', self.b)

        await self.engine.start(SyncMode.QUEUE)

        assert self.engine.state.current_track == self.b
        assert self.engine.state.existing_rating == 3.5
        assert self.engine.state.is_playing is True
        await self.engine.stop()

    async def test_missing_playlist_is_fatal(self):
        engine = PlaybackSyncEngine(self.source, self.ratings, 'Missing', poll_interval=60)

        await engine.start(SyncMode.QUEUE)

        assert engine.state.phase == Phase.ERROR
        assert engine.state.error == ErrorKind.NOT_FOUND
        assert engine.state.failed_operation == Operation.LOAD
        await engine.stop()

    async def test_poll_failure_leaves_state_unchanged(self):
        """A network error during a tick sets no error and changes nothing."""
        await self._loaded()
        before = self.engine.state
        self.source.snapshot_error = RemoteUnavailable("offline")

        await self.engine.poll_once()

        assert self.engine.state is before
        assert self.engine.state.error is None
        assert self.metrics.snapshot().poll_failures == 1
        await self.engine.stop()

    async def test_tick_after_stop_is_ignored(self):
        await self._loaded()
        await self.engine.stop()
        before = self.engine.state
        self.source.play_in('inbox', self.b)

        await self.engine.poll_once()

        assert self.engine.state is before
        assert self.engine.state.current_track == self.a
        assert self.metrics.snapshot().poll_ticks == 0

    async def test_leaving_the_playlist_drops_candidate(self):
        await self._loaded()
        self.source.play_in('other', make_track('x'))

        await self.engine.poll_once()

        assert self.engine.state.phase == Phase.EMPTY
        assert self.engine.state.current_track is None
        await self.engine.stop()

    async def test_settling_window_suppresses_reconciliation(self):
        """Right after a play command the reported context is not trusted."""
        self.engine = self._engine(settle_seconds=60)
        await self.engine.start(SyncMode.QUEUE)
        await self.engine.load_next()
        assert self.engine.is_settling

        self.source.play_in('other', make_track('x'), progress_ms=777)
        await self.engine.poll_once()

        assert self.engine.state.current_track == self.a
        assert self.engine.state.progress_ms == 777

        await self.engine.stop()
        assert not self.engine.is_settling

    async def test_overlapping_loads_latest_wins(self):
        await self.engine.start(SyncMode.QUEUE)
        self.source.first_item_gate = asyncio.Event()

        first = asyncio.ensure_future(self.engine.load_next(play=False))
        await asyncio.sleep(0)
        self.source.playlists['inbox'] = [self.b]
        second = asyncio.ensure_future(self.engine.load_next(play=False))
        await asyncio.sleep(0)
        self.source.first_item_gate.set()

        results = await asyncio.gather(first, second)

        assert results == [None, self.b]
        assert self.engine.state.current_track == self.b
        await self.engine.stop()

    async def test_concurrent_rates_write_once(self):
        """A second rating while the first is saving is rejected."""
        await self._loaded()
        self.gateway.write_gate = asyncio.Event()

        first = asyncio.ensure_future(self.engine.rate('a', 4))
        await asyncio.sleep(0)
        assert self.engine.state.is_busy is True
        assert await self.engine.rate('a', 5) is False
        self.gateway.write_gate.set()

        assert await first is True
        assert len(self.gateway.appends) == 1
        assert self.engine.state.is_busy is False
        await self.engine.stop()

    async def test_rate_rejects_invalid_input(self):
        await self._loaded()

        with pytest.raises(ValueError):
            await self.engine.rate('a', 4.2)
        assert await self.engine.rate('b', 4) is False
        assert self.gateway.appends == []
        await self.engine.stop()

    async def test_removal_failure_keeps_rating(self):
        """The rating stays saved when removing the track fails; retry only removes."""
        await self._loaded()
        seen = []
        self.engine.on_rating_complete(lambda track, rating: seen.append((track.track_id, rating)))
        self.source.remove_error = RemoteUnavailable("playlist locked")

        assert await self.engine.rate('a', 3) is True

        assert seen == [('a', 3)]
        assert (await self.ratings.find_by_track_id('a')).rating == 3
        assert self.engine.state.existing_rating == 3
        assert self.engine.state.phase == Phase.READY
        assert self.engine.state.error == ErrorKind.REMOTE_UNAVAILABLE
        assert self.engine.state.failed_operation == Operation.REMOVE_FROM_QUEUE

        self.source.remove_error = None
        assert await self.engine.retry() is True

        assert self.source.playlists['inbox'] == [self.b]
        assert self.engine.state.error is None
        assert len(self.gateway.appends) == 1
        await self.engine.stop()

    async def test_save_failure_skips_listeners(self):
        await self._loaded()
        seen = []
        self.engine.on_rating_complete(lambda track, rating: seen.append((track.track_id, rating)))
        self.gateway.append_error = RemoteUnavailable("sheet down")

        assert await self.engine.rate('a', 2) is False

        assert seen == []
        assert self.engine.state.failed_operation == Operation.SAVE_RATING
        assert self.engine.state.current_track == self.a
        assert not any(call[0] == 'remove' for call in self.source.calls)

        self.gateway.append_error = None
        assert await self.engine.retry() is True
        assert seen == [('a', 2)]
        assert self.source.playlists['inbox'] == [self.b]
        await self.engine.stop()

    async def test_authentication_failure_reauthorizes_on_retry(self):
        self.source.snapshot_error = AuthenticationRequired('spotify')

        await self.engine.start(SyncMode.QUEUE)

        assert self.engine.state.phase == Phase.ERROR
        assert self.engine.state.error == ErrorKind.AUTHENTICATION_REQUIRED
        assert self.engine.state.failed_operation == Operation.AUTHORIZE

        self.source.snapshot_error = None
        assert await self.engine.retry() is True

        assert self.session.authorize_calls == [Provider.SPOTIFY]
        assert self.engine.state.current_track == self.a
        await self.engine.stop()

    async def test_retry_without_failure(self):
        assert await self.engine.retry() is False

    async def test_live_mode_nothing_playing(self):
        await self.engine.start(SyncMode.LIVE)

        assert self.engine.state.phase == Phase.EMPTY
        assert self.engine.state.message == NOTHING_PLAYING_MESSAGE
        with pytest.raises(RuntimeError):
            await self.engine.load_next()

        self.source.play_in(None, self.b)
        await self.engine.poll_once()

        assert self.engine.state.current_track == self.b
        await self.engine.stop()

    async def test_live_rating_keeps_playlist(self):
        """Live mode never removes anything from the playlist."""
        self.source.play_in(None, self.a)
        await self.engine.start(SyncMode.LIVE)

        assert await self.engine.rate('a', 5) is True

        assert self.source.playlists['inbox'] == [self.a, self.b]
        await self.engine.stop()

    async def test_seek_is_optimistic(self):
        """Progress moves at once even though the remote seek fails."""
        await self._loaded()

        await self.engine.seek(42000)
        assert self.engine.state.progress_ms == 42000
        assert self.engine.state.error is None

        await self.engine.seek(-5)
        assert self.engine.state.progress_ms == 0
        await self.engine.stop()

    async def test_toggle_pauses_candidate(self):
        await self._loaded()

        await self.engine.toggle_playback()

        assert ('pause',) in self.source.calls
        assert self.engine.state.is_playing is False
        await self.engine.stop()

    async def test_toggle_replays_candidate_elsewhere(self):
        """In queue mode the toggle brings the player back to the candidate."""
        await self._loaded()
        self.source.play_in('other', make_track('x'))

        await self.engine.toggle_playback()

        assert self.source.calls[-1] == ('play', 'a', 'inbox', None)
        await self.engine.stop()

    async def test_collection_size(self):
        assert await self.engine.collection_size() is None

        await self.engine.start(SyncMode.QUEUE)

        assert await self.engine.collection_size() == 2
        await self.engine.stop()

    async def test_hidden_engine_skips_ticks(self):
        self.engine = self._engine(poll_interval=0.01)
        self.engine.set_visible(False)

        await self.engine.start(SyncMode.LIVE)
        await asyncio.sleep(0.05)
        await self.engine.stop()

        counters = self.metrics.snapshot()
        assert counters.skipped_ticks >= 1
        assert counters.poll_ticks == 0

    async def test_visible_engine_polls(self):
        self.engine = self._engine(poll_interval=0.01)
        self.source.play_in(None, self.b)

        await self.engine.start(SyncMode.LIVE)
        await asyncio.sleep(0.05)
        await self.engine.stop()

        assert self.metrics.snapshot().poll_ticks >= 1
        assert self.engine.state.current_track == self.b
