"""
Response cache: TTL-aware get/set over an in-process or Redis backend.

Provider clients cache the raw payload of each successful call under a key
built from provider, operation, location and parameters:

    hazard:<provider>:<operation>:<lat>:<lon>[:<param>=<value>...]

Coordinates are rounded to ``CACHE_GRID_PRECISION`` decimals (3 ≈ 110 m), so
nearby addresses inside one grid cell share an entry. TTL is chosen per
operation by the caller: real-time gauge readings live minutes, hazard
indices a day.

Backends:
    • MemoryCacheBackend  in-process dict, lazy expiry on read, bounded size
    • RedisCacheBackend   redis.asyncio, JSON values, expiry via SET EX

Backend errors never propagate: a failed read is a miss, a failed write is
logged and dropped.

Usage:
    cache = CacheManager.from_settings(settings)
    key = cache.make_key("gov_index", "risk_index", 29.7604, -95.3698)
    await cache.set(key, payload, ttl=86400)
    payload = await cache.get(key)
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from hazard_engine.core.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    expires_at: float  # backend clock, seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


# ═══════════════════════════════════════════════════════════════════════════
# Backends
# ═══════════════════════════════════════════════════════════════════════════

class MemoryCacheBackend:
    """In-process cache with lazy expiry and oldest-first eviction."""

    name = "memory"

    def __init__(
        self,
        max_entries: int = 10_000,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return entry.value

    async def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(key, value, self._clock() + ttl)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheBackend:
    """Redis-backed cache; values are JSON, expiry is delegated to Redis."""

    name = "redis"

    def __init__(self, url: str, client: Any = None) -> None:
        self._url = url
        self._client = client

    def _get_client(self):
        if self._client is None:
            import redis.asyncio as aioredis
            self._client = aioredis.from_url(
                self._url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Redis cache configured: %s", self._url.split("@")[-1])
        return self._client

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._get_client().get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: float) -> None:
        await self._get_client().set(
            key, json.dumps(value, default=str), ex=max(1, int(round(ttl))),
        )

    async def delete(self, key: str) -> None:
        await self._get_client().delete(key)

    async def clear(self) -> int:
        # Only the engine's own namespace is cleared, see CacheManager.clear
        return 0

    async def clear_prefix(self, prefix: str) -> int:
        client = self._get_client()
        keys = [key async for key in client.scan_iter(f"{prefix}*")]
        if keys:
            await client.delete(*keys)
        return len(keys)

    async def ping(self) -> bool:
        return bool(await self._get_client().ping())

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Redis connection closed")


# ═══════════════════════════════════════════════════════════════════════════
# Cache Manager
# ═══════════════════════════════════════════════════════════════════════════

class CacheManager:
    """Key building, TTL policy and hit/miss accounting over one backend."""

    def __init__(
        self,
        backend: Any = None,
        *,
        grid_precision: int = 3,
        key_prefix: str = "hazard",
        default_ttl: float = 3600,
    ) -> None:
        self.backend = backend or MemoryCacheBackend()
        self.grid_precision = grid_precision
        self.key_prefix = key_prefix
        self.default_ttl = default_ttl
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "errors": 0}
        self._stats_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheManager":
        if settings.CACHE_BACKEND == "redis":
            backend: Any = RedisCacheBackend(settings.REDIS_URL)
        else:
            backend = MemoryCacheBackend(max_entries=settings.CACHE_MAX_ENTRIES)
        return cls(
            backend,
            grid_precision=settings.CACHE_GRID_PRECISION,
            key_prefix=settings.CACHE_KEY_PREFIX,
            default_ttl=settings.CACHE_DEFAULT_TTL,
        )

    @property
    def backend_name(self) -> str:
        return getattr(self.backend, "name", type(self.backend).__name__)

    def _count(self, stat: str) -> None:
        with self._stats_lock:
            self._stats[stat] += 1

    def make_key(
        self,
        provider: str,
        operation: str,
        latitude: float,
        longitude: float,
        **params: Any,
    ) -> str:
        """
        Deterministic key for a provider call at a location.

        Examples
        --------
        >>> CacheManager().make_key("gov_index", "risk_index", 29.76041, -95.36981)
        'hazard:gov_index:risk_index:29.760:-95.370'
        """
        p = self.grid_precision
        parts = [
            self.key_prefix,
            provider,
            operation,
            f"{latitude:.{p}f}",
            f"{longitude:.{p}f}",
        ]
        for name in sorted(params):
            value = params[name]
            if value is None:
                continue
            if isinstance(value, (list, tuple, set, frozenset)):
                value = ",".join(sorted(str(getattr(v, "value", v)) for v in value))
            parts.append(f"{name}={getattr(value, 'value', value)}")
        return ":".join(parts)

    async def get(self, key: str) -> Optional[Any]:
        try:
            value = await self.backend.get(key)
        except Exception as e:
            self._count("errors")
            logger.warning("Cache GET error for %s: %s", key, e)
            return None
        if value is None:
            self._count("misses")
            return None
        self._count("hits")
        logger.debug("Cache HIT: %s", key)
        return value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return False
        try:
            await self.backend.set(key, value, ttl)
        except Exception as e:
            self._count("errors")
            logger.warning("Cache SET error for %s: %s", key, e)
            return False
        self._count("sets")
        return True

    async def delete(self, key: str) -> bool:
        try:
            await self.backend.delete(key)
            return True
        except Exception as e:
            self._count("errors")
            logger.warning("Cache DELETE error for %s: %s", key, e)
            return False

    async def clear(self) -> int:
        """Drop every entry in the engine's key namespace."""
        try:
            if isinstance(self.backend, RedisCacheBackend):
                return await self.backend.clear_prefix(f"{self.key_prefix}:")
            return await self.backend.clear()
        except Exception as e:
            self._count("errors")
            logger.warning("Cache CLEAR error: %s", e)
            return 0

    async def ping(self) -> bool:
        try:
            return await self.backend.ping()
        except Exception as e:
            logger.warning("Cache backend %s unreachable: %s", self.backend_name, e)
            return False

    async def close(self) -> None:
        await self.backend.close()

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats: Dict[str, Any] = dict(self._stats)
        lookups = stats["hits"] + stats["misses"]
        stats["hit_rate"] = round(stats["hits"] / lookups, 4) if lookups else 0.0
        stats["backend"] = self.backend_name
        return stats
