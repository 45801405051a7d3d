"""Result cache for avoiding repeated scraping and analysis.

Keeps pipeline results in memory keyed by lookup key, each entry with an
optional expiry. Entries without a TTL live for the process lifetime.
Expired entries are dropped lazily on read or by purge_expired().
"""

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

# Two hours, the lifetime of an analysis result
ANALYSIS_TTL_SECONDS = 7200


@dataclass
class CacheEntry:
    """A single cached value.

    Attributes:
        key: Lookup key.
        value: The pipeline result payload.
        expires_at: Monotonic deadline, or None for no expiry.
    """

    key: str
    value: Any
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class CacheStore:
    """In-memory key/value cache with per-entry expiry.

    A miss returns None; cached values are never None. When max_entries is
    set, the least recently used entry is evicted once the bound is reached.

    Attributes:
        max_entries: LRU bound, or 0 for unbounded.
    """

    def __init__(
        self,
        *,
        max_entries: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize an empty cache.

        Args:
            max_entries: Maximum number of entries (0 disables the bound).
            clock: Time source in seconds, injectable for tests.
        """
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def get(self, key: str) -> Any | None:
        """Get the cached value for a key.

        Args:
            key: The lookup key.

        Returns:
            The cached value if present and not expired, None otherwise.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None

        if entry.is_expired(self._clock()):
            del self._entries[key]
            logger.debug("Cache entry expired: %s", key)
            return None

        self._entries.move_to_end(key)
        return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store a value.

        Args:
            key: The lookup key.
            value: Payload to cache. Must not be None.
            ttl: Seconds until expiry, or None to keep indefinitely.
        """
        if value is None:
            raise ValueError("Cannot cache None; None is reserved for a miss")

        expires_at = self._clock() + ttl if ttl is not None else None
        self._entries[key] = CacheEntry(key=key, value=value, expires_at=expires_at)
        self._entries.move_to_end(key)

        if self.max_entries and len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Cache full, evicted %s", evicted)

    def has(self, key: str) -> bool:
        """Check if a key has a valid (non-expired) entry."""
        return self.get(key) is not None

    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it was present."""
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        """Clear all cached entries."""
        self._entries.clear()

    def purge_expired(self) -> int:
        """Drop every expired entry.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, int]:
        """Get cache statistics.

        Returns:
            Dictionary with total entries and expired count.
        """
        now = self._clock()
        total = len(self._entries)
        expired = sum(1 for e in self._entries.values() if e.is_expired(now))
        return {
            "total": total,
            "expired": expired,
            "valid": total - expired,
        }
