"""Layered signal deduplication.

A candidate is skipped when its key is present in any of three tiers:

1. Ephemeral: a per-process set, lost on cold start.
2. Short-lived: recently processed keys shared across invocations
   (Redis sorted set with a TTL, or an in-memory stand-in).
3. Durable: the seen-signal ring of the chain's IndexRecord.

An unseen key is written to every tier before the candidate is processed,
so a crash mid-candidate never causes it to be delivered twice.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from smart_money_tracker.store.schemas import IndexRecord

logger = logging.getLogger(__name__)

# Constants
DEFAULT_TTL_SECONDS = 86400
DEFAULT_MAX_ENTRIES = 50
DEFAULT_REDIS_KEY_PREFIX = "smart_money:recent:"


class RecentSignalTier(Protocol):
    """Short-lived cross-invocation memory of processed signal keys."""

    async def read(self, chain_id: int) -> set[str]:
        raise NotImplementedError

    async def append(self, chain_id: int, key: str) -> None:
        raise NotImplementedError


class RedisRecentSignals:
    """Recent signal keys in one Redis sorted set per chain.

    Members are scored by insertion time. Each append trims entries older
    than the TTL, keeps only the newest ``max_entries`` and refreshes the
    key's expiry.

    Example:
        ```python
        redis = Redis.from_url("redis://localhost:6379")
        recent = RedisRecentSignals(redis)
        await recent.append(501, "1766000000001:0")
        assert "1766000000001:0" in await recent.read(501)
        ```
    """

    def __init__(
        self,
        redis: Redis,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        key_prefix: str = DEFAULT_REDIS_KEY_PREFIX,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._key_prefix = key_prefix
        self._clock = clock

    def _key(self, chain_id: int) -> str:
        return f"{self._key_prefix}{chain_id}"

    async def read(self, chain_id: int) -> set[str]:
        cutoff = self._clock() - self._ttl
        members = await self._redis.zrangebyscore(self._key(chain_id), cutoff, "+inf")
        return {m.decode() if isinstance(m, bytes) else str(m) for m in members}

    async def append(self, chain_id: int, key: str) -> None:
        now = self._clock()
        redis_key = self._key(chain_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zadd(redis_key, {key: now})
            pipe.zremrangebyscore(redis_key, "-inf", now - self._ttl)
            pipe.zremrangebyrank(redis_key, 0, -(self._max_entries + 1))
            pipe.expire(redis_key, self._ttl)
            await pipe.execute()


class MemoryRecentSignals:
    """In-process recent signal tier used when no Redis is configured."""

    def __init__(
        self,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: dict[int, dict[str, float]] = {}

    def _prune(self, chain_id: int) -> dict[str, float]:
        entries = self._entries.setdefault(chain_id, {})
        cutoff = self._clock() - self._ttl
        for key in [k for k, ts in entries.items() if ts < cutoff]:
            del entries[key]
        return entries

    async def read(self, chain_id: int) -> set[str]:
        return set(self._prune(chain_id))

    async def append(self, chain_id: int, key: str) -> None:
        entries = self._prune(chain_id)
        entries.pop(key, None)
        entries[key] = self._clock()
        while len(entries) > self._max_entries:
            del entries[next(iter(entries))]


class SignalDeduplicator:
    """Check-then-mark dedup across the ephemeral, short-lived and durable tiers.

    ``prime`` must be awaited once per cycle before ``check_and_mark``; it
    snapshots the short-lived tier. The durable tier is the live seen ring of
    ``index`` (``None`` when the record store is unavailable).
    """

    def __init__(
        self,
        chain_id: int,
        *,
        ephemeral: set[str] | None = None,
        recent: RecentSignalTier | None = None,
        index: IndexRecord | None = None,
    ) -> None:
        self._chain_id = chain_id
        self._ephemeral = ephemeral if ephemeral is not None else set()
        self._recent = recent
        self._index = index
        self._snapshot: set[str] = set()
        self.marked = 0

    async def prime(self) -> None:
        if self._recent is None:
            return
        try:
            self._snapshot = await self._recent.read(self._chain_id)
        except RedisError as e:
            logger.warning("Recent signal tier unavailable, skipping it: %s", e)
            self._snapshot = set()
        logger.debug("Loaded %d recent signal key(s)", len(self._snapshot))

    def is_seen(self, key: str) -> bool:
        if key in self._ephemeral or key in self._snapshot:
            return True
        return self._index is not None and key in self._index.seen

    async def check_and_mark(self, key: str) -> bool:
        """Return True if ``key`` was already seen; otherwise mark it everywhere."""
        if self.is_seen(key):
            return True

        self._ephemeral.add(key)
        self._snapshot.add(key)
        if self._index is not None:
            self._index.seen.push(key)
        if self._recent is not None:
            try:
                await self._recent.append(self._chain_id, key)
            except RedisError as e:
                logger.warning("Failed to record %s in recent signal tier: %s", key, e)
        self.marked += 1
        return False
