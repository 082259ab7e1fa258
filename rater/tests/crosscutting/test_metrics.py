import json
import os
import tempfile
import threading

from rater.crosscutting.metrics import MetricsCollector, SyncCounters


class TestSyncCounters:
    """Tests for SyncCounters class."""

    def test_poll_failure_rate(self):
        counters = SyncCounters(poll_ticks=8, poll_failures=2)

        assert counters.poll_failure_rate == 0.25

    def test_zero_ticks_rate(self):
        """No executed ticks means no failure rate."""
        assert SyncCounters().poll_failure_rate == 0.0


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    def setup_method(self):
        """Set up test fixtures."""
        self.collector = MetricsCollector()

    def test_initialization(self):
        counters = self.collector.snapshot()

        assert counters.poll_ticks == 0
        assert counters.ratings_saved == 0
        assert counters.started_at is not None

    def test_record_ticks(self):
        self.collector.record_tick()
        self.collector.record_tick()
        self.collector.record_skipped_tick()
        self.collector.record_poll_failure()

        counters = self.collector.snapshot()
        assert counters.poll_ticks == 2
        assert counters.skipped_ticks == 1
        assert counters.poll_failures == 1

    def test_record_outcomes(self):
        self.collector.record_token_refresh(True)
        self.collector.record_token_refresh(False)
        self.collector.record_rating(True)
        self.collector.record_rating(True)
        self.collector.record_rating(False)
        self.collector.record_removal_failure()

        counters = self.collector.snapshot()
        assert counters.token_refreshes == 1
        assert counters.token_refresh_failures == 1
        assert counters.ratings_saved == 2
        assert counters.rating_failures == 1
        assert counters.removal_failures == 1

    def test_snapshot_is_a_copy(self):
        """Mutating a snapshot does not touch the collector."""
        snapshot = self.collector.snapshot()
        snapshot.poll_ticks = 99

        assert self.collector.snapshot().poll_ticks == 0

    def test_concurrent_updates(self):
        """Counters bumped from several threads are not lost."""
        def bump():
            for _ in range(1000):
                self.collector.record_tick()

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert self.collector.snapshot().poll_ticks == 4000

    def test_to_dict(self):
        self.collector.record_tick()
        self.collector.record_poll_failure()

        data = self.collector.to_dict()

        assert data['poll_ticks'] == 1
        assert data['poll_failure_rate'] == 1.0
        assert isinstance(data['started_at'], str)

    def test_save_to_file(self):
        self.collector.record_rating(True)
        temp_dir = tempfile.mkdtemp()
        path = os.path.join(temp_dir, 'metrics.json')
        try:
            self.collector.save_to_file(path)

            with open(path, 'r') as f:
                data = json.load(f)
            assert data['ratings_saved'] == 1
        finally:
            import shutil
            shutil.rmtree(temp_dir, ignore_errors=True)
