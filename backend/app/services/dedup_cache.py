"""In-memory event deduplication cache.

WHAT:
    Time-windowed set of event ids already forwarded to Meta.
    `admit(key)` returns True exactly once per key per window.

WHY:
    The funnel fires the same logical action from several places (page
    reloads, retries from the tracking script, thank-you page revisits).
    Only the first one may reach the Conversions API.

DESIGN:
    - Mapping key -> first_seen_ms, purged on every admit and by sweep()
    - Purge + check + insert run under one lock (single critical section)
    - No capacity limit unless `max_entries` is set; memory is bounded by the
      time window only. Process restart loses all history.
"""

import hashlib
import logging
import threading
from typing import Callable, Dict, Optional

from app.services.click_id import current_time_ms

logger = logging.getLogger(__name__)

MS_PER_HOUR = 60 * 60 * 1000


def generate_event_id(session_id: str, event_name: str, occurred_at_ms: int) -> str:
    """Derive the deduplication key / Meta event_id.

    Truncated to the second: two events with the same session and name within
    one second share an id. Browser pixels already deployed compute the same
    value, so the granularity is part of the contract.
    """
    base = f"{session_id}_{event_name}_{occurred_at_ms // 1000}"
    return hashlib.md5(base.encode("utf-8")).hexdigest()


class DeduplicationCache:
    """Process-wide dedup cache.

    Usage:
        cache = DeduplicationCache(window_hours=24)
        if cache.admit(event_id):
            ...  # first time: prepare and send
    """

    def __init__(
        self,
        window_hours: float = 24,
        enabled: bool = True,
        max_entries: Optional[int] = None,
        clock: Callable[[], int] = current_time_ms,
    ):
        """
        Args:
            window_hours: How long a key stays known
            enabled: When False every key is admitted and nothing is stored
            max_entries: Optional hard cap; oldest entries are evicted first
            clock: Returns current epoch milliseconds
        """
        self.window_ms = int(window_hours * MS_PER_HOUR)
        self.enabled = enabled
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _purge_expired(self, now: int) -> int:
        expired = [key for key, seen in self._entries.items() if now - seen > self.window_ms]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def _evict_overflow(self) -> None:
        if self.max_entries is None:
            return
        while len(self._entries) > self.max_entries:
            # dicts keep insertion order, which is first-seen order
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            logger.debug(f"[DEDUP] Evicted {oldest} (capacity {self.max_entries})")

    def admit(self, key: str) -> bool:
        """Admit a key if not seen within the window.

        Returns:
            True if new (now recorded), False if duplicate
        """
        if not self.enabled:
            return True

        with self._lock:
            now = self._clock()
            self._purge_expired(now)

            if key in self._entries:
                logger.info(f"[DEDUP] Duplicate event ignored: {key}")
                return False

            self._entries[key] = now
            self._evict_overflow()
            return True

    def release(self, key: str) -> None:
        """Forget a key so the same event can be admitted again."""
        with self._lock:
            self._entries.pop(key, None)

    def sweep(self) -> int:
        """Purge expired entries. Returns the number removed."""
        with self._lock:
            removed = self._purge_expired(self._clock())
        if removed:
            logger.info(f"[DEDUP] Swept {removed} expired key(s), {len(self)} remaining")
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            seen = self._entries.get(key)
            return seen is not None and self._clock() - seen <= self.window_ms

    def __len__(self) -> int:
        return len(self._entries)
