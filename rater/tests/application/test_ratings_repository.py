import asyncio
from datetime import datetime

import pytest

from rater.application.ratings import (
    RatingsRepository, format_date_time, is_valid_rating, rows_from_values,
)
from rater.domain.errors import RemoteUnavailable
from rater.interfaces.container import Runtime
from rater.tests.fakes import FakeGateway

NOW = datetime(2024, 3, 9, 14, 5, 7)


class TestRowParsing:
    """Tests for converting sheet values into rows."""

    def test_positions_start_at_row_two(self):
        """The header occupies row 1."""
        rows = rows_from_values([['a', 'Artist', 'Song', '4', '2024-01-01 10:00:00'], ['b']])

        assert [row.row_position for row in rows] == [2, 3]
        assert rows[0].rating == 4.0
        assert rows[1].rating is None
        assert rows[1].rated_at is None

    def test_malformed_rating_is_unrated(self):
        """A non-numeric rating cell is treated as empty."""
        rows = rows_from_values([['a', 'Artist', 'Song', 'great', '']])

        assert rows[0].rating is None

    def test_date_format(self):
        assert format_date_time(NOW) == '2024-03-09 14:05:07'

    def test_rating_ladder(self):
        assert is_valid_rating(3.5)
        assert not is_valid_rating(0.5)
        assert not is_valid_rating(4.2)


class TestRatingsRepository:
    """Tests for the read-through ratings cache."""

    def setup_method(self):
        """Set up test fixtures."""
        self.gateway = FakeGateway([
            ['t1', 'Artist A', 'One', '4', '2024-03-09 09:00:00'],
            ['t2', 'Artist B', 'Two', '2.5', '2024-03-08 09:00:00'],
            ['t1', 'Artist A', 'One again', '1', '2024-03-01 09:00:00'],
        ])
        self.repo = RatingsRepository(self.gateway, now=lambda: NOW)

    async def test_concurrent_loads_share_one_read(self):
        """Callers racing the first load trigger a single sheet read."""
        results = await asyncio.gather(self.repo.load_all(), self.repo.load_all(), self.repo.load_all())

        assert self.gateway.read_calls == 1
        assert results[0] is results[1] is results[2]
        assert self.repo.is_loaded

    async def test_first_duplicate_wins(self):
        """Duplicate track ids resolve to the earliest row."""
        row = await self.repo.find_by_track_id('t1')

        assert row.row_position == 2
        assert row.rating == 4.0

    async def test_find_unknown(self):
        assert await self.repo.find_by_track_id('missing') is None
        assert await self.repo.find_by_track_id('') is None

    async def test_save_new_row_is_found_without_reading(self):
        """After a save the cache answers lookups on its own."""
        await self.repo.load_all()

        saved = await self.repo.save('t9', 'Artist C', 'Nine', 4.5)
        found = await self.repo.find_by_track_id('t9')

        assert self.gateway.read_calls == 1
        assert found is saved
        assert saved.row_position == 5
        assert saved.rated_at == '2024-03-09 14:05:07'
        assert self.gateway.appends == [['t9', 'Artist C', 'Nine', 4.5, '2024-03-09 14:05:07']]

    async def test_save_existing_updates_in_place(self):
        """Re-rating writes the rating and timestamp cells of the existing row."""
        saved = await self.repo.save('t2', 'Artist B', 'Two', 5)

        assert self.gateway.appends == []
        assert self.gateway.updates == [(3, 5, '2024-03-09 14:05:07')]
        assert saved.row_position == 3
        assert (await self.repo.find_by_track_id('t2')).rating == 5

    async def test_append_without_reported_row(self):
        """Without a reported range the row lands after the cached rows."""
        self.gateway.report_position = False

        saved = await self.repo.save('t9', 'Artist C', 'Nine', 3)

        assert saved.row_position == 5

    async def test_failed_append_leaves_cache_untouched(self):
        """A failed write is not cached."""
        self.gateway.append_error = RemoteUnavailable("sheet down")

        with pytest.raises(RemoteUnavailable):
            await self.repo.save('t9', 'Artist C', 'Nine', 3)

        assert await self.repo.find_by_track_id('t9') is None

    async def test_concurrent_saves_for_new_track_write_once(self):
        """Two saves racing on the same new track append once and update once."""
        self.gateway.write_gate = asyncio.Event()
        first = asyncio.ensure_future(self.repo.save('t9', 'Artist C', 'Nine', 3))
        second = asyncio.ensure_future(self.repo.save('t9', 'Artist C', 'Nine', 4))
        await asyncio.sleep(0.01)
        self.gateway.write_gate.set()

        await asyncio.gather(first, second)

        assert len(self.gateway.appends) == 1
        assert len(self.gateway.updates) == 1
        assert (await self.repo.find_by_track_id('t9')).rating == 4

    def test_concurrent_saves_on_background_loop(self):
        """A repository built off-loop serializes saves on the runtime's loop."""
        repo = RatingsRepository(self.gateway, now=lambda: NOW)
        runtime = Runtime().start()

        async def race():
            self.gateway.write_gate = asyncio.Event()
            first = asyncio.ensure_future(repo.save('t9', 'Artist C', 'Nine', 3))
            second = asyncio.ensure_future(repo.save('t9', 'Artist C', 'Nine', 4))
            await asyncio.sleep(0.01)
            self.gateway.write_gate.set()
            return await asyncio.gather(first, second)

        try:
            runtime.run(race(), timeout=5)
        finally:
            runtime.stop()

        assert len(self.gateway.appends) == 1
        assert self.gateway.updates == [(5, 4, '2024-03-09 14:05:07')]

    async def test_reload_reads_again(self):
        await self.repo.load_all()
        self.gateway.rows.append(['t5', 'Artist D', 'Five', '3', '2024-03-09 12:00:00'])

        rows = await self.repo.reload()

        assert self.gateway.read_calls == 2
        assert len(rows) == 4

    async def test_stats(self):
        """Aggregates cover totals, today, distribution, average and top artists."""
        stats = await self.repo.stats()

        assert stats.total == 3
        assert stats.today == 1
        assert stats.distribution[4] == 1
        assert stats.distribution[2.5] == 1
        assert stats.distribution[1] == 1
        assert stats.average_rating == 2.5
        assert stats.top_artists == [('Artist A', 2), ('Artist B', 1)]

    async def test_stats_empty_sheet(self):
        repo = RatingsRepository(FakeGateway(), now=lambda: NOW)

        stats = await repo.stats()

        assert stats.total == 0
        assert stats.average_rating == 0.0
        assert stats.top_artists == []
