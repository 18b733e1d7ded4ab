"""Tests for layered signal deduplication."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from smart_money_tracker.dedup import MemoryRecentSignals, RedisRecentSignals, SignalDeduplicator
from smart_money_tracker.store.schemas import IndexRecord


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def mock_redis() -> MagicMock:
    """Create a mock Redis client with a transactional pipeline."""
    redis = MagicMock()
    redis.zrangebyscore = AsyncMock(return_value=[])
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    redis.pipeline.return_value.__aenter__ = AsyncMock(return_value=pipe)
    redis.pipeline.return_value.__aexit__ = AsyncMock(return_value=False)
    redis.pipe = pipe
    return redis


class TestMemoryRecentSignals:
    """Tests for the in-process recent tier."""

    @pytest.mark.asyncio
    async def test_expires_after_ttl(self) -> None:
        """Keys older than the TTL are forgotten."""
        clock = FakeClock()
        recent = MemoryRecentSignals(ttl_seconds=60, clock=clock)
        await recent.append(501, "a:0")
        assert await recent.read(501) == {"a:0"}

        clock.now += 61
        assert await recent.read(501) == set()

    @pytest.mark.asyncio
    async def test_bounded(self) -> None:
        """Only the newest entries are kept."""
        recent = MemoryRecentSignals(max_entries=2)
        for key in ("a:0", "b:0", "c:0"):
            await recent.append(501, key)
        assert await recent.read(501) == {"b:0", "c:0"}

    @pytest.mark.asyncio
    async def test_chains_are_separate(self) -> None:
        """Each chain has its own keys."""
        recent = MemoryRecentSignals()
        await recent.append(501, "a:0")
        assert await recent.read(1) == set()


class TestRedisRecentSignals:
    """Tests for the Redis sorted-set tier."""

    @pytest.mark.asyncio
    async def test_read_decodes_members(self, mock_redis) -> None:
        """Members newer than the TTL cutoff are returned as strings."""
        mock_redis.zrangebyscore.return_value = [b"a:0", "b:1"]
        recent = RedisRecentSignals(mock_redis, ttl_seconds=100, clock=FakeClock(1000.0))

        assert await recent.read(501) == {"a:0", "b:1"}
        mock_redis.zrangebyscore.assert_awaited_once_with("smart_money:recent:501", 900.0, "+inf")

    @pytest.mark.asyncio
    async def test_append_trims_and_expires(self, mock_redis) -> None:
        """Append adds, trims by age and count, and refreshes the TTL."""
        recent = RedisRecentSignals(mock_redis, ttl_seconds=100, max_entries=50, clock=FakeClock(1000.0))
        await recent.append(501, "a:0")

        pipe = mock_redis.pipe
        pipe.zadd.assert_called_once_with("smart_money:recent:501", {"a:0": 1000.0})
        pipe.zremrangebyscore.assert_called_once_with("smart_money:recent:501", "-inf", 900.0)
        pipe.zremrangebyrank.assert_called_once_with("smart_money:recent:501", 0, -51)
        pipe.expire.assert_called_once_with("smart_money:recent:501", 100)
        pipe.execute.assert_awaited_once()


class TestSignalDeduplicator:
    """Tests for the check-then-mark deduplicator."""

    @pytest.mark.asyncio
    async def test_idempotent_within_cycle(self) -> None:
        """A key is new once, then seen."""
        dedup = SignalDeduplicator(501, recent=MemoryRecentSignals())
        await dedup.prime()

        assert await dedup.check_and_mark("a:0") is False
        assert await dedup.check_and_mark("a:0") is True
        assert dedup.marked == 1

    @pytest.mark.asyncio
    async def test_seen_across_cycles_via_recent_tier(self) -> None:
        """A fresh process still skips keys in the recent tier."""
        recent = MemoryRecentSignals()
        first = SignalDeduplicator(501, recent=recent)
        await first.prime()
        await first.check_and_mark("a:0")

        second = SignalDeduplicator(501, recent=recent)
        await second.prime()
        assert await second.check_and_mark("a:0") is True

    @pytest.mark.asyncio
    async def test_seen_across_cold_start_via_index(self) -> None:
        """The durable seen ring survives when the other tiers are empty."""
        index = IndexRecord(chain_id=501)
        first = SignalDeduplicator(501, index=index)
        await first.check_and_mark("a:0")
        assert "a:0" in index.seen

        second = SignalDeduplicator(501, recent=MemoryRecentSignals(), index=index)
        await second.prime()
        assert await second.check_and_mark("a:0") is True

    @pytest.mark.asyncio
    async def test_ephemeral_set_shared(self) -> None:
        """The ephemeral tier is the caller's set."""
        seen: set[str] = set()
        await SignalDeduplicator(501, ephemeral=seen).check_and_mark("a:0")
        assert seen == {"a:0"}
        assert SignalDeduplicator(501, ephemeral=seen).is_seen("a:0")

    @pytest.mark.asyncio
    async def test_redis_outage_degrades(self, mock_redis) -> None:
        """Redis failures are logged and the other tiers still work."""
        mock_redis.zrangebyscore.side_effect = RedisConnectionError("down")
        mock_redis.pipe.execute.side_effect = RedisConnectionError("down")
        dedup = SignalDeduplicator(501, recent=RedisRecentSignals(mock_redis))

        await dedup.prime()
        assert await dedup.check_and_mark("a:0") is False
        assert await dedup.check_and_mark("a:0") is True
