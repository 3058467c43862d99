#!/usr/bin/env python3

"""
statistics.py

Thread-safe counters shared by the batch tasks of one operation, and a
background thread that periodically logs them at STATUS level.
"""

from __future__ import annotations

import threading
from enum import Enum
from typing import Dict, Optional

from mailvault.logger import get_logger


class StatKey(Enum):
    PROCESSED = "Processed"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    REPAIRED = "Repaired"
    UPDATED = "Updated"
    VERIFIED = "Verified"
    PURGED = "Purged"
    WOULD_PURGE = "Would purge"
    RESTORED = "Restored"
    ALERTS_CREATED = "Alerts created"
    ALERTS_UPDATED = "Alerts updated"
    ALERTS_RESOLVED = "Alerts resolved"
    BYTES_FREED = "Bytes freed"


class ThreadSafeStats:
    """Counters keyed by StatKey, guarded by one lock."""

    def __init__(self):
        self._counters: Dict[StatKey, int] = {}
        self._lock = threading.Lock()

    def increment(self, key: StatKey, value: int = 1) -> None:
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value

    def set(self, key: StatKey, value: int) -> None:
        with self._lock:
            self._counters[key] = value

    def get(self, key: StatKey, default: int = 0) -> int:
        with self._lock:
            return self._counters.get(key, default)

    def get_all(self) -> Dict[StatKey, int]:
        with self._lock:
            return dict(self._counters)

    def as_details(self) -> Dict[str, int]:
        """Snapshot with snake_case names, used for operation log payloads."""
        return {k.name.lower(): v for k, v in self.get_all().items()}

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()

    def __getitem__(self, key: StatKey) -> int:
        return self.get(key, 0)

    def __setitem__(self, key: StatKey, value: int) -> None:
        self.set(key, value)

    def format_status(self) -> str:
        snapshot = self.get_all()
        parts = [f"{key.value}: {snapshot[key]}" for key in StatKey if key in snapshot]
        return " | " + " | ".join(parts) + " |" if parts else " | no activity |"


class StatusThread:
    """Logs the counters every `interval` seconds until stopped."""

    def __init__(self, interval: int, counters: ThreadSafeStats):
        self.logger = get_logger(__name__)
        self.interval = interval
        self.counters = counters
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._thread is not None or self.interval <= 0:
            return

        def reporter():
            while not self._stop_event.wait(self.interval):
                _emit(self.logger, self.counters.format_status())

        t = threading.Thread(target=reporter, name="StatusReporter", daemon=True)
        t.start()
        self._thread = t

    def stop(self):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)


def _emit(logger, message: str) -> None:
    # logger.status exists only after setup_logger ran
    fn = getattr(logger, "status", None)
    if callable(fn):
        fn(message)
    else:
        logger.info("[STATUS] " + message)


def log_status(stats: ThreadSafeStats, stage: str = "") -> None:
    prefix = f"[{stage}] " if stage else ""
    _emit(get_logger(__name__), prefix + stats.format_status())


def create_stats() -> ThreadSafeStats:
    return ThreadSafeStats()
