"""
Ratings repository: read-through cache over the ratings sheet.

The sheet is read once; afterwards the in-memory rows are the source of truth
for lookups and writes. Edits made to the sheet by hand are only seen after
``reload()``.
"""

import asyncio
import logging
from collections import Counter
from datetime import datetime
from typing import Callable, List, Optional

from rater.crosscutting.logging import log_rating_saved
from rater.domain.entities import RATING_LADDER, RatingRow, RatingStats
from rater.domain.ports import RatingsGateway

logger = logging.getLogger(__name__)

FIRST_DATA_ROW = 2
TOP_ARTISTS = 5


def format_date_time(moment: datetime) -> str:
    """Timestamp format stored in the sheet: 'YYYY-MM-DD HH:MM:SS' (local time)."""
    return moment.strftime('%Y-%m-%d %H:%M:%S')


def _parse_rating(cell: str) -> Optional[float]:
    if cell is None or str(cell).strip() == '':
        return None
    try:
        return float(cell)
    except ValueError:
        logger.warning(f"Ignoring malformed rating cell {cell!r}")
        return None


def rows_from_values(values: List[List[str]]) -> List[RatingRow]:
    rows = []
    for index, raw in enumerate(values):
        cells = list(raw) + [''] * (5 - len(raw))
        rows.append(RatingRow(
            row_position=index + FIRST_DATA_ROW,
            track_id=cells[0] or '',
            artist=cells[1] or '',
            song=cells[2] or '',
            rating=_parse_rating(cells[3]),
            rated_at=cells[4] or None,
        ))
    return rows


class RatingsRepository:
    def __init__(self, gateway: RatingsGateway, now: Callable[[], datetime] = datetime.now):
        self._gateway = gateway
        self._now = now
        self._cache: Optional[List[RatingRow]] = None
        self._loading: Optional[asyncio.Task] = None
        self._write_lock: Optional[asyncio.Lock] = None

    @property
    def is_loaded(self) -> bool:
        return self._cache is not None

    async def load_all(self) -> List[RatingRow]:
        """Read every row once. Concurrent callers share the same read."""
        if self._cache is not None:
            return self._cache

        if self._loading is None or self._loading.done():
            self._loading = asyncio.ensure_future(self._read())
        return await asyncio.shield(self._loading)

    async def _read(self) -> List[RatingRow]:
        values = await self._gateway.read_rows()
        self._cache = rows_from_values(values)
        logger.info(f"Loaded {len(self._cache)} rating rows")
        return self._cache

    async def reload(self) -> List[RatingRow]:
        """Drop the cache and read the sheet again."""
        self._cache = None
        self._loading = None
        return await self.load_all()

    async def find_by_track_id(self, track_id: str) -> Optional[RatingRow]:
        rows = await self.load_all()
        return self._find(rows, track_id)

    @staticmethod
    def _find(rows: List[RatingRow], track_id: str) -> Optional[RatingRow]:
        if not track_id:
            return None
        # First match wins when the sheet holds duplicates
        for row in rows:
            if row.track_id == track_id:
                return row
        return None

    async def save(self, track_id: str, artist: str, song: str, rating: float) -> RatingRow:
        """Create or update the row for a track and keep the cache in step."""
        # Created on first use so it belongs to the loop that runs the saves
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        async with self._write_lock:
            rows = await self.load_all()
            rated_at = format_date_time(self._now())
            existing = self._find(rows, track_id)

            if existing is not None:
                await self._gateway.update_rating(existing.row_position, rating, rated_at)
                existing.rating = rating
                existing.rated_at = rated_at
                log_rating_saved(logger, track_id, rating, created=False, row=existing.row_position)
                return existing

            position = await self._gateway.append_row([track_id, artist, song, rating, rated_at])
            row = RatingRow(
                row_position=position or len(rows) + FIRST_DATA_ROW,
                track_id=track_id,
                artist=artist,
                song=song,
                rating=rating,
                rated_at=rated_at,
            )
            rows.append(row)
            log_rating_saved(logger, track_id, rating, created=True, row=row.row_position)
            return row

    async def stats(self) -> RatingStats:
        rows = await self.load_all()
        today = format_date_time(self._now()).split(' ')[0]
        rated = [row for row in rows if row.rating is not None]

        result = RatingStats()
        result.total = len(rated)
        result.today = sum(1 for row in rows if row.rated_at and row.rated_at.split(' ')[0] == today)
        for row in rated:
            if row.rating in result.distribution:
                result.distribution[row.rating] += 1
        if rated:
            result.average_rating = round(sum(row.rating for row in rated) / len(rated), 2)

        artists = Counter(row.artist for row in rated if row.artist)
        result.top_artists = artists.most_common(TOP_ARTISTS)
        return result


def is_valid_rating(rating: float) -> bool:
    return rating in RATING_LADDER
