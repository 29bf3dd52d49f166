"""
RateLimiter against fakeredis with a hand-driven clock.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as redis

from app.core.errors import RateLimited, StoreUnavailable
from app.services.rate_limiter import RateLimiter, RateLimitRule


class Ticker:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def ticker() -> Ticker:
    return Ticker()


@pytest.fixture
def sliding(cache, ticker) -> RateLimiter:
    return RateLimiter(cache, strategy="sliding", clock=ticker)


@pytest.fixture
def fixed(cache, ticker) -> RateLimiter:
    return RateLimiter(cache, strategy="fixed", clock=ticker)


class TestSlidingWindow:

    @pytest.mark.asyncio
    async def test_admits_up_to_limit_then_rejects(self, sliding, cache, ticker):
        rule = RateLimitRule("key:k1", 3)

        remaining = []
        for _ in range(3):
            remaining.append((await sliding.check([rule])).remaining)
            ticker.now += 1
        assert remaining == [2, 1, 0]

        with pytest.raises(RateLimited) as info:
            await sliding.check([rule])
        assert info.value.limit_type == "rate:key"
        assert 1 <= info.value.retry_after <= 60
        # Rejected hits are not recorded.
        assert await cache.zcard("rl:sliding:key:k1") == 3

    @pytest.mark.asyncio
    async def test_old_hits_slide_out(self, sliding, ticker):
        rule = RateLimitRule("key:k1", 2)
        await sliding.check([rule])          # t=0
        ticker.now += 30
        await sliding.check([rule])          # t=30

        ticker.now += 29                     # t=59, both still inside
        with pytest.raises(RateLimited) as info:
            await sliding.check([rule])
        assert info.value.retry_after == 1

        ticker.now += 2                      # t=61, first hit evicted
        result = await sliding.check([rule])
        assert result.allowed is True
        assert result.remaining == 0

    @pytest.mark.asyncio
    async def test_subjects_are_independent(self, sliding):
        await sliding.check([RateLimitRule("key:a", 1)])
        result = await sliding.check([RateLimitRule("key:b", 1)])
        assert result.allowed is True


class TestFixedWindow:

    @pytest.mark.asyncio
    async def test_bucket_resets_at_boundary(self, fixed, ticker):
        ticker.now = 6_000_000.0  # start of a 60s bucket
        rule = RateLimitRule("key:k1", 2)

        assert (await fixed.check([rule])).remaining == 1
        assert (await fixed.check([rule])).remaining == 0
        ticker.now += 10
        with pytest.raises(RateLimited) as info:
            await fixed.check([rule])
        assert info.value.retry_after == 50

        ticker.now += 50
        assert (await fixed.check([rule])).allowed is True


class TestMultipleRules:

    @pytest.mark.asyncio
    async def test_tightest_result_is_reported(self, sliding):
        result = await sliding.check([RateLimitRule("key:k1", 10), RateLimitRule("ip:1.2.3.4", 3)])
        assert result.subject == "ip:1.2.3.4"
        assert result.remaining == 2

    @pytest.mark.asyncio
    async def test_later_rejection_undoes_earlier_hits(self, sliding, cache):
        rules = [RateLimitRule("key:k1", 10), RateLimitRule("ip:1.2.3.4", 1)]
        await sliding.check(rules)

        with pytest.raises(RateLimited) as info:
            await sliding.check(rules)

        assert info.value.limit_type == "rate:ip"
        assert await cache.zcard("rl:sliding:key:k1") == 1

    @pytest.mark.asyncio
    async def test_fixed_undo_decrements(self, fixed, cache, ticker):
        ticker.now = 6_000_000.0
        rules = [RateLimitRule("key:k1", 10), RateLimitRule("ip:1.2.3.4", 1)]
        await fixed.check(rules)
        with pytest.raises(RateLimited):
            await fixed.check(rules)
        assert await cache.get("rl:fixed:key:k1:100000") == "1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, None])
    async def test_disabled_rules_are_unlimited(self, sliding, limit):
        result = await sliding.check([RateLimitRule("key:k1", limit)])
        assert result.allowed is True
        assert result.is_unlimited


class TestStoreFailure:

    @staticmethod
    def _broken_client() -> MagicMock:
        client = MagicMock()
        client.pipeline.side_effect = redis.ConnectionError("redis down")
        client.incr = AsyncMock(side_effect=redis.ConnectionError("redis down"))
        return client

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy", ["sliding", "fixed"])
    async def test_fail_closed_raises(self, strategy):
        limiter = RateLimiter(self._broken_client(), strategy=strategy, fail_mode="closed")
        with pytest.raises(StoreUnavailable) as info:
            await limiter.check([RateLimitRule("key:k1", 5)])
        assert info.value.status_code == 503

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy", ["sliding", "fixed"])
    async def test_fail_open_admits_and_logs(self, strategy, caplog):
        limiter = RateLimiter(self._broken_client(), strategy=strategy, fail_mode="open")
        result = await limiter.check([RateLimitRule("key:k1", 5)])
        assert result.allowed is True
        assert result.is_unlimited
        assert "failing OPEN" in caplog.text

    def test_rejects_unknown_modes(self, cache):
        with pytest.raises(ValueError):
            RateLimiter(cache, strategy="leaky")
        with pytest.raises(ValueError):
            RateLimiter(cache, fail_mode="maybe")
