#!/usr/bin/env python3
"""
Unit tests for statistics.py module.
"""

import threading

from mailvault.statistics import StatKey, StatusThread, ThreadSafeStats, create_stats, log_status


class TestThreadSafeStats:
    """Tests for ThreadSafeStats."""

    def test_increment_and_get(self):
        stats = create_stats()
        stats.increment(StatKey.PROCESSED)
        stats.increment(StatKey.PROCESSED, 4)
        assert stats[StatKey.PROCESSED] == 5
        assert stats.get(StatKey.FAILED) == 0

    def test_set_and_reset(self):
        stats = ThreadSafeStats()
        stats[StatKey.PURGED] = 3
        assert stats.get_all() == {StatKey.PURGED: 3}
        stats.reset()
        assert stats.get_all() == {}

    def test_as_details(self):
        stats = ThreadSafeStats()
        stats.increment(StatKey.WOULD_PURGE, 2)
        stats.increment(StatKey.BYTES_FREED, 100)
        assert stats.as_details() == {"would_purge": 2, "bytes_freed": 100}

    def test_concurrent_increments(self):
        stats = ThreadSafeStats()

        def worker():
            for _ in range(1000):
                stats.increment(StatKey.SUCCEEDED)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert stats[StatKey.SUCCEEDED] == 8000

    def test_format_status_order(self):
        stats = ThreadSafeStats()
        stats.increment(StatKey.FAILED)
        stats.increment(StatKey.PROCESSED, 2)
        assert stats.format_status() == " | Processed: 2 | Failed: 1 |"
        assert ThreadSafeStats().format_status() == " | no activity |"


class TestStatusReporting:
    """Tests for StatusThread and log_status."""

    def test_zero_interval_does_not_start(self):
        thread = StatusThread(0, ThreadSafeStats())
        thread.start()
        assert thread._thread is None
        thread.stop()

    def test_thread_starts_and_stops(self):
        thread = StatusThread(60, ThreadSafeStats())
        thread.start()
        assert thread._thread.is_alive()
        thread.stop()
        assert not thread._thread.is_alive()

    def test_log_status_includes_stage(self, caplog):
        stats = ThreadSafeStats()
        stats.increment(StatKey.RESTORED)
        with caplog.at_level("INFO"):
            log_status(stats, "restore")
        assert "[restore]  | Restored: 1 |" in caplog.text
