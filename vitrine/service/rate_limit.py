from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

from vitrine.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RateLimitEntry:
    count: int
    window_start: float


class LoginRateLimiter:
    """Fixed-window failure counter keyed by client address.

    State lives in process memory only; a restart clears every limit. The clock
    returns seconds as a float and is injectable for tests.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 10,
        window_seconds: int = 15 * 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts <= 0 or window_seconds <= 0:
            raise ValueError("max_attempts and window_seconds must be positive")
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def _live_entry(self, address: str, now: float) -> RateLimitEntry | None:
        entry = self._entries.get(address)
        if entry is None:
            return None
        if now - entry.window_start >= self.window_seconds:
            del self._entries[address]
            return None
        return entry

    def note_attempt(self, address: str) -> int:
        """Record one failed attempt and return the count inside the current window."""
        now = self._clock()
        with self._lock:
            entry = self._live_entry(address, now)
            if entry is None:
                entry = RateLimitEntry(count=0, window_start=now)
                self._entries[address] = entry
            entry.count += 1
            count = entry.count
        if count == self.max_attempts:
            logger.warning("login_rate_limit_reached", address=address, attempts=count)
        return count

    def is_limited(self, address: str) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._live_entry(address, now)
            return entry is not None and entry.count >= self.max_attempts

    def retry_after(self, address: str) -> int:
        now = self._clock()
        with self._lock:
            entry = self._live_entry(address, now)
            if entry is None or entry.count < self.max_attempts:
                return 0
            remaining = self.window_seconds - (now - entry.window_start)
        return max(1, math.ceil(remaining))

    def prune(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [
                address
                for address, entry in self._entries.items()
                if now - entry.window_start >= self.window_seconds
            ]
            for address in stale:
                del self._entries[address]
        return len(stale)
