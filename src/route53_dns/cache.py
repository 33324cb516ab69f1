"""Sharded, time-evicted read-through cache fronting the Route53 API.

Entries are hints. A miss (including an entry evicted early because a shard
is full) always means "ask Route53 again", never an error.
"""

from __future__ import annotations

import threading
import time
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from cachetools import FIFOCache

DEFAULT_SHARDS = 256
DEFAULT_LIFE_WINDOW_MINUTES = 6.0
DEFAULT_MAX_ENTRIES = 16384


class CacheCategory(Enum):
    """Namespaces for cache keys."""

    ZONE_ID = "zoneID"
    ZONE_RECORDS = "zoneRecords"
    NAMESERVER_RECORDS = "nameserverRecords"
    INGRESS_RECORDS = "ingressRecords"


class _ExpiringFIFOCache(FIFOCache):
    """FIFOCache whose entries also expire a fixed time after they were written.

    A full shard drops its oldest write first. With one lifetime for every
    entry that is also the entry closest to expiry.
    """

    def __init__(self, maxsize: int, ttl: float, timer: Callable[[], float]):
        super().__init__(maxsize)
        self.ttl = ttl
        self.timer = timer

    def lookup(self, key: str) -> Optional[bytes]:
        item = self.get(key)
        if item is None:
            return None
        expires, value = item
        if expires <= self.timer():
            del self[key]
            return None
        return value

    def store(self, key: str, value: bytes) -> None:
        self[key] = (self.timer() + self.ttl, value)

    def expire(self) -> None:
        now = self.timer()
        for key in [k for k, (expires, _) in self.items() if expires <= now]:
            del self[key]


class EntryNotFoundError(KeyError):
    """Raised by DNSCache.get when the key is absent or expired."""


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    entries: int


class DNSCache:
    """Thread-safe cache split into independently locked TTL shards.

    Args:
        shards: Number of shards, must be a power of two.
        life_window_minutes: Time after which every entry expires.
        max_entries: Total capacity, divided evenly between shards. When a
            shard is full its oldest write is dropped, reads do not renew it.
        timer: Clock used for expiry, in seconds.
    """

    def __init__(
        self,
        shards: int = DEFAULT_SHARDS,
        life_window_minutes: float = DEFAULT_LIFE_WINDOW_MINUTES,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        timer: Callable[[], float] = time.monotonic,
    ):
        if shards < 1 or shards & (shards - 1):
            raise ValueError(f"shards must be a power of two, got {shards}")
        if life_window_minutes <= 0:
            raise ValueError(f"life_window_minutes must be positive, got {life_window_minutes}")
        if max_entries < 1:
            raise ValueError(f"max_entries must be positive, got {max_entries}")

        self.life_window_seconds = life_window_minutes * 60
        per_shard = max(1, max_entries // shards)
        self._mask = shards - 1
        self._shards: List[_ExpiringFIFOCache] = [
            _ExpiringFIFOCache(per_shard, self.life_window_seconds, timer)
            for _ in range(shards)
        ]
        self._locks = [threading.Lock() for _ in range(shards)]
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def key(category: CacheCategory, suffix: str) -> str:
        if not isinstance(category, CacheCategory):
            raise TypeError(f"unknown cache category: {category!r}")
        return f"{category.value}-{suffix}"

    def _shard_index(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) & self._mask

    def get(self, category: CacheCategory, suffix: str) -> bytes:
        key = self.key(category, suffix)
        index = self._shard_index(key)
        with self._locks[index]:
            value = self._shards[index].lookup(key)
        with self._stats_lock:
            if value is None:
                self._misses += 1
            else:
                self._hits += 1
        if value is None:
            raise EntryNotFoundError(key)
        return value

    def set(self, category: CacheCategory, suffix: str, value: bytes) -> None:
        if not isinstance(value, bytes):
            raise TypeError(f"cache values must be bytes, got {type(value).__name__}")
        key = self.key(category, suffix)
        index = self._shard_index(key)
        with self._locks[index]:
            self._shards[index].store(key, value)

    def delete(self, category: CacheCategory, suffix: str) -> bool:
        """Drop an entry. Returns False when there was nothing to drop."""
        key = self.key(category, suffix)
        index = self._shard_index(key)
        with self._locks[index]:
            shard = self._shards[index]
            found = shard.lookup(key) is not None
            shard.pop(key, None)
            return found

    def get_or_load(
        self, category: CacheCategory, suffix: str, loader: Callable[[], bytes]
    ) -> bytes:
        """Return the cached value, or load, store and return it on a miss.

        Errors raised by the loader propagate and nothing is stored.
        """
        try:
            return self.get(category, suffix)
        except EntryNotFoundError:
            pass
        value = loader()
        self.set(category, suffix, value)
        return value

    def clear(self) -> None:
        for lock, shard in zip(self._locks, self._shards):
            with lock:
                shard.clear()

    def __len__(self) -> int:
        total = 0
        for lock, shard in zip(self._locks, self._shards):
            with lock:
                shard.expire()
                total += len(shard)
        return total

    def stats(self) -> CacheStats:
        entries = len(self)
        with self._stats_lock:
            return CacheStats(hits=self._hits, misses=self._misses, entries=entries)
