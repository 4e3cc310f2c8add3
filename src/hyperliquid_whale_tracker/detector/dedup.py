"""Bounded recency caches that suppress repeat alerts.

Once a cache grows past ``max_entries`` it keeps only the most recent
``retain_entries`` signatures, so very old signatures eventually become
eligible again instead of memory growing without bound.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Protocol

from redis.asyncio import Redis

from hyperliquid_whale_tracker.detector.models import AlertSignature

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MAX_ENTRIES = 1000
DEFAULT_RETAIN_ENTRIES = 500
DEFAULT_REDIS_KEY = "hyperliquid:alerts:dedup"


class DedupStore(Protocol):
    async def should_emit(self, signature: AlertSignature) -> bool: ...

    async def record(self, signature: AlertSignature) -> None: ...


def _validate_bounds(max_entries: int, retain_entries: int) -> None:
    if max_entries < 1:
        raise ValueError("max_entries must be >= 1")
    if not 0 <= retain_entries < max_entries:
        raise ValueError("retain_entries must be >= 0 and < max_entries")


class AlertDedupCache:
    """In-memory recency-ordered set of alert signatures.

    Example:
        ```python
        cache = AlertDedupCache()
        if await cache.should_emit(signature):
            emit(record)
            await cache.record(signature)
        ```
    """

    def __init__(
        self,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        retain_entries: int = DEFAULT_RETAIN_ENTRIES,
    ) -> None:
        _validate_bounds(max_entries, retain_entries)
        self._max_entries = max_entries
        self._retain_entries = retain_entries
        self._entries: OrderedDict[str, None] = OrderedDict()
        self._evictions = 0

    @property
    def evictions(self) -> int:
        """Number of eviction passes performed."""
        return self._evictions

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, signature: object) -> bool:
        if not isinstance(signature, AlertSignature):
            return False
        return signature.key in self._entries

    async def should_emit(self, signature: AlertSignature) -> bool:
        return signature.key not in self._entries

    async def record(self, signature: AlertSignature) -> None:
        key = signature.key
        self._entries[key] = None
        self._entries.move_to_end(key)
        if len(self._entries) > self._max_entries:
            self._evict()

    def clear(self) -> None:
        self._entries.clear()

    def _evict(self) -> None:
        drop = len(self._entries) - self._retain_entries
        for _ in range(drop):
            self._entries.popitem(last=False)
        self._evictions += 1
        logger.debug(
            "Dedup cache evicted %d oldest signatures, %d retained",
            drop,
            len(self._entries),
        )


class RedisAlertDedupCache:
    """Redis sorted-set variant of AlertDedupCache.

    Members are signature keys scored by record time, so suppression survives
    process restarts. Eviction trims by rank to the most recent entries.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        key: str = DEFAULT_REDIS_KEY,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        retain_entries: int = DEFAULT_RETAIN_ENTRIES,
    ) -> None:
        _validate_bounds(max_entries, retain_entries)
        self._redis = redis
        self._key = key
        self._max_entries = max_entries
        self._retain_entries = retain_entries

    async def should_emit(self, signature: AlertSignature) -> bool:
        score = await self._redis.zscore(self._key, signature.key)
        return score is None

    async def record(self, signature: AlertSignature) -> None:
        await self._redis.zadd(self._key, {signature.key: time.time()})
        size = await self._redis.zcard(self._key)
        if size > self._max_entries:
            # Ranks are ascending by score: drop everything but the newest entries.
            removed = await self._redis.zremrangebyrank(
                self._key, 0, size - self._retain_entries - 1
            )
            logger.debug("Redis dedup cache evicted %s signatures from %s", removed, self._key)

    async def aclose(self) -> None:
        await self._redis.aclose()
