"""
memetrader Core: Response Cache

Time-to-live keyed cache shared by ResilientClient reads (balances, prices,
token metadata). Expired entries are kept so they can be served as stale
fallbacks until housekeeping purges them.
"""

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Cached value with its freshness window"""
    key: str
    value: Any
    stored_at: float
    ttl: float

    def is_valid(self, now: float) -> bool:
        return now - self.stored_at < self.ttl

    def age(self, now: float) -> float:
        return now - self.stored_at


class ResponseCache:
    """
    Thread-safe TTL cache.

    Entries are immutable and replaced whole, so readers never see a partial
    update.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = Lock()

    def now(self) -> float:
        return self._clock()

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return entry only if still valid"""
        with self._lock:
            entry = self._entries.get(key)
        if entry is not None and entry.is_valid(self._clock()):
            return entry
        return None

    def get_stale(self, key: str) -> Optional[CacheEntry]:
        """Return entry regardless of age"""
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, value: Any, ttl: float) -> CacheEntry:
        entry = CacheEntry(key=key, value=value, stored_at=self._clock(), ttl=float(ttl))
        with self._lock:
            self._entries[key] = entry
        return entry

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def purge_expired(self, max_stale_seconds: float) -> int:
        """
        Drop entries that expired more than max_stale_seconds ago.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        with self._lock:
            doomed = [
                key for key, entry in self._entries.items()
                if now - (entry.stored_at + entry.ttl) > max_stale_seconds
            ]
            for key in doomed:
                del self._entries[key]

        if doomed:
            logger.debug(f"Purged {len(doomed)} expired cache entries")
        return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
