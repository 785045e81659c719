"""
Cohort Result Cache

Fingerprints interactive cohort queries and serves cached results for a fixed
TTL. There is no active invalidation: a cached result can lag newly landed
facts by up to the TTL.

Backends:
- RedisCacheBackend: shared across processes, atomic SET with expiry
- InMemoryCacheBackend: thread-safe LRU with per-entry expiry (single process, tests)

Backend failures are treated as misses and logged; they never reach the caller.
"""

import hashlib
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis

from .models import CohortResult, resolve_tenant

logger = logging.getLogger(__name__)


@dataclass
class CacheStats:
    """Statistics for cache performance monitoring."""
    hits: int = 0
    misses: int = 0
    errors: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class CacheBackend(ABC):
    """Minimal string key/value store with TTL."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...


class RedisCacheBackend(CacheBackend):
    """Redis-backed cache (result cache and online features)."""

    def __init__(self, url: str, client: Optional["redis.Redis"] = None):
        self._client = client or redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=2,
            socket_connect_timeout=2,
        )

    def get(self, key: str) -> Optional[str]:
        return self._client.get(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._client.set(key, value, ex=ttl_seconds)
        else:
            self._client.set(key, value)

    def delete(self, key: str) -> None:
        self._client.delete(key)


class InMemoryCacheBackend(CacheBackend):
    """
    Thread-safe LRU cache with per-entry expiry.

    Expired entries are removed lazily on read; the least recently used entry
    is evicted when max_entries is reached.
    """

    def __init__(self, max_entries: int = 1024, clock: Callable[[], float] = time.monotonic):
        self._max_entries = max_entries
        self._clock = clock
        # key -> (value, expires_at or None)
        self._entries: "OrderedDict[str, Tuple[str, Optional[float]]]" = OrderedDict()
        self._lock = threading.Lock()
        self.stats = CacheStats()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.stats.misses += 1
                return None
            value, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._entries[key]
                self.stats.misses += 1
                return None
            self._entries.move_to_end(key)
            self.stats.hits += 1
            return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds > 0 else None
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = (value, expires_at)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
                self.stats.evictions += 1

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def make_cache_key(
    tenant_id: Optional[str],
    dsl: str,
    limit: int,
    fields: Optional[List[str]],
    filters: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Deterministic fingerprint over (tenant, DSL text, limit, sorted fields).

    Explicit filters change the result, so they join the fingerprint when given.

    Returns:
        "cohort:<tenant>:<sha1 hex>"
    """
    tenant = resolve_tenant(tenant_id)
    payload = {
        "tenant": tenant,
        "dsl": dsl,
        "limit": limit,
        "fields": sorted(fields or []),
    }
    if filters:
        payload["filters"] = filters
    digest = hashlib.sha1(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()
    return f"cohort:{tenant}:{digest}"


class ResultCache:
    """
    Read-through cache for cohort results.

    Usage:
        cache = ResultCache(InMemoryCacheBackend(), ttl_seconds=120)
        result = cache.get_or_execute(key, lambda: executor.run(query).result)
    """

    def __init__(self, backend: Optional[CacheBackend], ttl_seconds: int = 120):
        self.backend = backend
        self.ttl_seconds = ttl_seconds

    @property
    def enabled(self) -> bool:
        return self.backend is not None

    def get(self, key: str) -> Optional[CohortResult]:
        if self.backend is None:
            return None
        try:
            payload = self.backend.get(key)
        except Exception as e:
            logger.warning(f"Cohort cache read error for {key}: {e}")
            return None
        if not payload:
            return None
        try:
            return CohortResult.from_dict(json.loads(payload))
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            return None

    def set(self, key: str, result: CohortResult) -> None:
        if self.backend is None:
            return
        try:
            self.backend.set(key, json.dumps(result.to_dict(), default=str), self.ttl_seconds)
        except Exception as e:
            logger.warning(f"Cohort cache write error for {key}: {e}")

    def get_or_execute(self, key: str, execute: Callable[[], CohortResult]) -> CohortResult:
        """Serve from cache (cacheHit=true) or execute and store (cacheHit=false)."""
        cached = self.get(key)
        if cached is not None:
            cached.metadata["cacheHit"] = True
            logger.info(f"Cohort cache HIT {key}")
            return cached

        result = execute()
        result.metadata["cacheHit"] = False
        self.set(key, result)
        return result

    def describe(self) -> Dict[str, Any]:
        stats = getattr(self.backend, "stats", None)
        return {
            "backend": type(self.backend).__name__ if self.backend else None,
            "ttl_seconds": self.ttl_seconds,
            "hit_rate": stats.hit_rate if stats else None,
        }
