from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from src.observability import log_event


DEFAULT_WINDOW_SECONDS = 30 * 60
DEFAULT_CLEANUP_INTERVAL_SECONDS = 10 * 60


class DedupGuard:
    """
    Time-windowed set of recently seen WhatsApp message ids.

    Inbound handling test-and-sets the event id; the reverse path registers ids of
    messages it sent so their echo on the event stream is ignored.
    """

    def __init__(
        self,
        *,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window_seconds = window_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._seen: dict[str, float] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _fresh(self, seen_at: float, now: float) -> bool:
        return now - seen_at < self.window_seconds

    def check_and_set(self, message_id: str) -> bool:
        """Record the id; return False when it was already seen inside the window."""
        now = self._clock()
        with self._lock:
            seen_at = self._seen.get(message_id)
            if seen_at is not None and self._fresh(seen_at, now):
                return False
            self._seen[message_id] = now
            return True

    def mark(self, message_id: str) -> None:
        with self._lock:
            self._seen[message_id] = self._clock()

    def seen(self, message_id: str) -> bool:
        now = self._clock()
        with self._lock:
            seen_at = self._seen.get(message_id)
            return seen_at is not None and self._fresh(seen_at, now)

    def age_entry(self, message_id: str, seconds: float) -> None:
        """Push an entry's first-seen time into the past."""
        with self._lock:
            if message_id in self._seen:
                self._seen[message_id] -= seconds

    def cleanup(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, seen_at in self._seen.items() if not self._fresh(seen_at, now)]
            for key in expired:
                del self._seen[key]
        if expired:
            log_event("dedup_cache_cleaned", level=logging.DEBUG, removed=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="dedup-cleanup", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.cleanup_interval_seconds):
            try:
                self.cleanup()
            except Exception as exc:
                log_event("dedup_cache_cleanup_failed", level=logging.ERROR, error=str(exc))
