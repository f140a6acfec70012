"""
IIoT Listener — Alarm Deduplicator

Rate-limits alarm publication per (device, alarm code).  A rejected alarm is
only kept off the live feed; it is still stored and still counted.
"""

import threading
import time
from typing import Callable

AlarmKey = tuple[str, str]


class AlarmDeduplicator:
    """Admit at most one alarm per key per min_interval_ms."""

    def __init__(
        self,
        min_interval_ms: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._min_interval = min_interval_ms / 1000.0
        self._clock = clock
        self._last_admitted: dict[AlarmKey, float] = {}
        self._lock = threading.Lock()
        self._admitted = 0
        self._suppressed = 0

    def admit(self, key: AlarmKey) -> bool:
        now = self._clock()
        with self._lock:
            last = self._last_admitted.get(key)
            if last is not None and (now - last) < self._min_interval:
                self._suppressed += 1
                return False
            self._last_admitted[key] = now
            self._admitted += 1
            return True

    @property
    def stats(self) -> dict:
        return {
            "admitted": self._admitted,
            "suppressed": self._suppressed,
            "tracked_keys": len(self._last_admitted),
        }
