"""In-memory TTL cache sitting between the file system and the analyzer."""

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional

from ..utils.logger import get_app_logger


_MISS = object()


@dataclass
class CacheEntry:
    """A cached value with its insertion time, TTL and the files it was derived from."""

    key: str
    value: Any
    timestamp: float
    ttl: float
    dependencies: FrozenSet[str] = field(default_factory=frozenset)

    def is_expired(self, now: float) -> bool:
        return now >= self.timestamp + self.ttl


class DataCache:
    """
    TTL cache with exact, prefix and per-file invalidation.

    Keys derived from a log file start with that file's path (for example
    ``"/root/.claude/projects/x/abc.jsonl::parsed"``), so a single
    ``invalidate_file(path)`` drops every entry derived from the file, plus
    any entry that lists the file in its ``dependencies`` (the summary).

    Expiry is lazy: an expired entry counts as a miss on read and is removed.
    ``evict_expired()`` is available for periodic hygiene.
    """

    def __init__(
        self,
        default_ttl: float = 15.0,
        max_entries: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            default_ttl: TTL in seconds used when ``set`` gets none
            max_entries: Maximum number of entries (least recently used evicted first)
            clock: Monotonic clock, injectable for tests
        """
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.logger = get_app_logger()
        self._metrics: Dict[str, int] = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "invalidations": 0,
            "evictions": 0,
            "expired": 0,
        }

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a live value.

        Args:
            key: Cache key
            default: Returned on miss

        Returns:
            Cached value, or ``default`` when absent or expired
        """
        value = self._lookup(key)
        if value is _MISS:
            self._metrics["misses"] += 1
            return default

        self._metrics["hits"] += 1
        return value

    def contains(self, key: str) -> bool:
        """True if ``key`` holds a live value. Does not touch hit/miss counters."""
        return self._lookup(key) is not _MISS

    def get_stale(self, key: str, default: Any = None) -> Any:
        """
        Degraded-mode read: return the value even if its TTL has passed.

        Only used when recomputation failed (for example a file that is
        momentarily unreadable); normal reads go through ``get``.
        """
        entry = self._entries.get(key)
        if entry is None:
            return default
        return entry.value

    def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        dependencies: Iterable[str] = (),
    ) -> None:
        """
        Store a value.

        Args:
            key: Cache key
            value: Value to store
            ttl: Time to live in seconds (defaults to ``default_ttl``)
            dependencies: File paths whose change must drop this entry
        """
        entry = CacheEntry(
            key=key,
            value=value,
            timestamp=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
            dependencies=frozenset(str(dep) for dep in dependencies),
        )
        self._entries[key] = entry
        self._entries.move_to_end(key)
        self._metrics["sets"] += 1
        self._enforce_size_limit()

    def invalidate(self, key: str) -> bool:
        """
        Drop one exact key.

        Returns:
            True if an entry was removed
        """
        removed = self._entries.pop(key, None) is not None
        if removed:
            self._metrics["invalidations"] += 1
        return removed

    def invalidate_prefix(self, prefix: str) -> int:
        """
        Drop every key starting with ``prefix``.

        Returns:
            Number of entries removed
        """
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        self._metrics["invalidations"] += len(keys)
        return len(keys)

    def invalidate_file(self, file_path: str) -> int:
        """
        Drop every entry derived from ``file_path``: keys prefixed with the path
        and entries that declared the path as a dependency.

        Returns:
            Number of entries removed
        """
        file_path = str(file_path)
        keys = [
            key for key, entry in self._entries.items()
            if key.startswith(file_path) or file_path in entry.dependencies
        ]
        for key in keys:
            del self._entries[key]
        self._metrics["invalidations"] += len(keys)
        if keys:
            self.logger.debug(f"[DataCache] invalidated {len(keys)} entries for {file_path}")
        return len(keys)

    def evict_expired(self) -> int:
        """Remove all expired entries. Returns the number removed."""
        now = self._clock()
        keys = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in keys:
            del self._entries[key]
        self._metrics["expired"] += len(keys)
        return len(keys)

    def clear(self) -> None:
        """Drop all entries. Counters are kept."""
        self._metrics["invalidations"] += len(self._entries)
        self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        """Hit/miss counters and size, for the health endpoint."""
        lookups = self._metrics["hits"] + self._metrics["misses"]
        hit_rate = round(self._metrics["hits"] / lookups * 100, 2) if lookups else 0.0
        return {
            **self._metrics,
            "size": len(self._entries),
            "maxEntries": self.max_entries,
            "hitRate": hit_rate,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def _lookup(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return _MISS

        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._metrics["expired"] += 1
            return _MISS

        self._entries.move_to_end(key)
        return entry.value

    def _enforce_size_limit(self) -> None:
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
            self._metrics["evictions"] += 1
