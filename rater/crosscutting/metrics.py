import json
import threading
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class SyncCounters:
    """Counters for one process lifetime."""
    poll_ticks: int = 0
    skipped_ticks: int = 0
    poll_failures: int = 0
    token_refreshes: int = 0
    token_refresh_failures: int = 0
    ratings_saved: int = 0
    rating_failures: int = 0
    removal_failures: int = 0
    started_at: Optional[datetime] = None

    @property
    def poll_failure_rate(self) -> float:
        """Share of executed ticks whose snapshot fetch failed."""
        if self.poll_ticks == 0:
            return 0.0
        return self.poll_failures / self.poll_ticks


class MetricsCollector:
    """Collects counters from the session store and the sync engine.

    Counters are bumped from the event loop thread and read from the HTTP
    threads, hence the lock.
    """

    def __init__(self):
        """Initialize metrics collector."""
        self._counters = SyncCounters(started_at=datetime.now())
        self._lock = threading.Lock()

    def _bump(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self._counters, name, getattr(self._counters, name) + amount)

    def record_tick(self) -> None:
        self._bump('poll_ticks')

    def record_skipped_tick(self) -> None:
        self._bump('skipped_ticks')

    def record_poll_failure(self) -> None:
        self._bump('poll_failures')

    def record_token_refresh(self, success: bool) -> None:
        """Record a refresh attempt for either provider."""
        self._bump('token_refreshes' if success else 'token_refresh_failures')

    def record_rating(self, success: bool) -> None:
        self._bump('ratings_saved' if success else 'rating_failures')

    def record_removal_failure(self) -> None:
        self._bump('removal_failures')

    def snapshot(self) -> SyncCounters:
        """Return a copy of the current counters."""
        with self._lock:
            return SyncCounters(**asdict(self._counters))

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary for JSON serialization."""
        counters = self.snapshot()
        data = asdict(counters)
        if data['started_at']:
            data['started_at'] = data['started_at'].isoformat()
        data['poll_failure_rate'] = counters.poll_failure_rate
        return data

    def save_to_file(self, file_path: str) -> None:
        """Save metrics to JSON file."""
        with open(file_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
