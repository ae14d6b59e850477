"""
In-memory key-value cache with per-entry TTL.

This module provides the transport-agnostic store behind the response cache
tiers (exact answers, semantic documents, resource summaries). The interface
is a Python Protocol so a Redis backend can replace the memory implementation.
The memory implementation uses cachetools TTLCache for size bounding with
per-entry absolute expiry and keeps hit/miss metrics.
"""

import asyncio
import hashlib
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from cachetools import TTLCache

from assistant_core.utils.logging import get_logger

logger = get_logger(__name__)

# TTLCache needs a global ceiling; per-entry expiry is always shorter
MAX_ENTRY_TTL_S = 60 * 24 * 3600


class KeyValueStore(Protocol):
    """
    Transport-agnostic cache interface.

    Values are plain dicts so any backend able to store JSON can implement it.
    """

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a cached value if it exists and has not expired.

        Args:
            key: Cache key to look up

        Returns:
            Cached value dict if found and fresh, None otherwise
        """
        ...

    async def set(
        self,
        key: str,
        value: Dict[str, Any],
        *,
        ttl_s: float,
        labels: Optional[List[str]] = None,
    ) -> None:
        """
        Store a value with a time-to-live.

        Args:
            key: Cache key for storage
            value: Value dict to cache
            ttl_s: Time-to-live in seconds
            labels: Optional labels for filtering/metrics (e.g., ["exact"])
        """
        ...

    async def delete(self, key: str) -> None: ...

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix; return how many were removed."""
        ...

    def stats(self) -> Dict[str, Any]: ...


@dataclass
class CacheEntry:
    """
    Wrapper for cached values with metadata.

    Stores the value along with its expiration time and labels to support
    per-entry TTL and filtering.
    """

    value: Dict[str, Any]
    expires_at: float
    cached_at: float
    labels: List[str] = field(default_factory=list)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def ttl_remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


class MemoryKeyValueStore:
    """
    In-memory cache implementation with per-entry TTL.

    Features:
    - Per-entry TTL (each tier and depth gets its own lifetime)
    - Size-based eviction with LRU when full
    - Prefix deletion for namespace-wide clears
    - Hit/miss metrics for monitoring
    """

    def __init__(
        self,
        maxsize: int = 20000,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize memory cache with size limits.

        Args:
            maxsize: Maximum number of entries (LRU eviction when exceeded)
            clock: Time source, injectable for tests
        """
        self.clock = clock
        self.store: TTLCache = TTLCache(maxsize=maxsize, ttl=MAX_ENTRY_TTL_S, timer=clock)

        self._stats = {
            "hits": 0,
            "misses": 0,
            "evictions": 0,
            "sets": 0,
            "deletes": 0,
        }

        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            entry: Optional[CacheEntry] = self.store.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None

            now = self.clock()
            if entry.is_expired(now):
                del self.store[key]
                self._stats["misses"] += 1
                self._stats["evictions"] += 1
                logger.debug("Cache expired", key=key[:48])
                return None

            self._stats["hits"] += 1
            result = entry.value.copy()
            result["_cached_at"] = entry.cached_at
            result["_cache_ttl_remaining_s"] = entry.ttl_remaining(now)
            return result

    async def set(
        self,
        key: str,
        value: Dict[str, Any],
        *,
        ttl_s: float,
        labels: Optional[List[str]] = None,
    ) -> None:
        async with self._lock:
            now = self.clock()
            self.store[key] = CacheEntry(
                value=value.copy(),
                cached_at=now,
                expires_at=now + min(ttl_s, MAX_ENTRY_TTL_S),
                labels=labels or [],
            )
            self._stats["sets"] += 1

            logger.debug(
                "Cache set",
                key=key[:48],
                ttl_s=ttl_s,
                labels=labels or [],
                cache_size=len(self.store),
            )

    async def delete(self, key: str) -> None:
        async with self._lock:
            if self.store.pop(key, None) is not None:
                self._stats["deletes"] += 1

    async def delete_prefix(self, prefix: str) -> int:
        async with self._lock:
            doomed = [key for key in list(self.store.keys()) if key.startswith(prefix)]
            for key in doomed:
                self.store.pop(key, None)
            self._stats["deletes"] += len(doomed)
            return len(doomed)

    def stats(self) -> Dict[str, Any]:
        total = self._stats["hits"] + self._stats["misses"]
        hit_rate = self._stats["hits"] / total if total > 0 else 0.0

        return {
            "hits": self._stats["hits"],
            "misses": self._stats["misses"],
            "hit_rate": round(hit_rate, 3),
            "evictions": self._stats["evictions"],
            "sets": self._stats["sets"],
            "deletes": self._stats["deletes"],
            "entries": len(self.store),
            "maxsize": self.store.maxsize,
        }


def sha256_hex(value: str) -> str:
    """Lowercase hex SHA-256 of a UTF-8 string."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
