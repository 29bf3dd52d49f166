"""
Redis-backed short-window rate limiter.

Enforces "N requests per rolling window" per subject, where a subject is
an API key (`key:<uuid>`) or a caller address (`ip:<addr>`).

Strategies:
  • sliding (default) — sorted set of request timestamps per subject.
      MULTI: evict ≤ now−window, ZCARD, ZADD, PEXPIRE, oldest member.
      If the count BEFORE the add already met the limit, the new member is
      removed again and the request is rejected, so rejections are never
      recorded. Smooth at window boundaries.
  • fixed — INCR on (subject, window bucket), EXPIRE on first increment,
      reject when the post-increment count exceeds the limit.

Redis is the source of truth for these counters, so an outage cannot be
papered over: fail_mode="closed" raises StoreUnavailable (503),
fail_mode="open" logs at error level and admits.

A limit of 0/None disables a rule.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Literal

import redis.asyncio as redis

from app.core.errors import RateLimited, StoreUnavailable

logger = logging.getLogger(__name__)

STORE_ERRORS = (redis.RedisError, ConnectionError, OSError)

Strategy = Literal["sliding", "fixed"]
FailMode = Literal["open", "closed"]


@dataclass(frozen=True, slots=True)
class RateLimitRule:
    subject: str
    limit: int | None
    window_seconds: int = 60

    @property
    def enabled(self) -> bool:
        return bool(self.limit) and self.limit > 0  # type: ignore[operator]


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    """Outcome for one rule, or the tightest across several."""

    allowed: bool
    subject: str
    limit: int
    remaining: int
    reset_after: int  # seconds until the budget frees up

    @classmethod
    def unlimited(cls) -> RateLimitResult:
        return cls(allowed=True, subject="", limit=0, remaining=0, reset_after=0)

    @property
    def is_unlimited(self) -> bool:
        return self.limit == 0


@dataclass(frozen=True, slots=True)
class _Hit:
    result: RateLimitResult
    undo_key: str | None = None
    undo_member: str | None = None


class RateLimiter:
    """Evaluates one or more rules against Redis in a single admission check."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        strategy: Strategy = "sliding",
        fail_mode: FailMode = "closed",
        key_prefix: str = "rl:",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if strategy not in ("sliding", "fixed"):
            raise ValueError(f"Unknown rate limit strategy: {strategy!r}")
        if fail_mode not in ("open", "closed"):
            raise ValueError(f"Unknown rate limit fail mode: {fail_mode!r}")
        self._redis = client
        self._strategy = strategy
        self._fail_mode = fail_mode
        self._prefix = key_prefix
        self._clock = clock

    @property
    def strategy(self) -> Strategy:
        return self._strategy

    async def check(
        self,
        rules: Sequence[RateLimitRule],
        *,
        key_id: uuid.UUID | None = None,
    ) -> RateLimitResult:
        """
        Record one hit against every enabled rule or reject.

        Rules are evaluated in order. If a later rule rejects, hits already
        recorded for earlier rules in this call are removed again.

        Returns the result with the smallest remaining budget.
        Raises RateLimited or (fail-closed) StoreUnavailable.
        """
        active = [rule for rule in rules if rule.enabled]
        if not active:
            return RateLimitResult.unlimited()

        recorded: list[_Hit] = []
        try:
            for rule in active:
                hit = await self._hit(rule)
                if not hit.result.allowed:
                    await self._undo(recorded)
                    raise RateLimited(
                        retry_after=hit.result.reset_after,
                        limit=hit.result.limit,
                        subject=rule.subject,
                        key_id=key_id,
                    )
                recorded.append(hit)
        except STORE_ERRORS as exc:
            if self._fail_mode == "open":
                logger.error(
                    "Rate-limit store unavailable, failing OPEN (key=%s): %r",
                    key_id, exc,
                )
                return RateLimitResult.unlimited()
            logger.error(
                "Rate-limit store unavailable, failing CLOSED (key=%s): %r",
                key_id, exc,
            )
            raise StoreUnavailable("rate_limit", key_id=key_id) from exc

        return min((hit.result for hit in recorded), key=lambda r: (r.remaining, -r.reset_after))

    # ── Strategies ──────────────────────────────────────────
    async def _hit(self, rule: RateLimitRule) -> _Hit:
        if self._strategy == "sliding":
            return await self._sliding_hit(rule)
        return await self._fixed_hit(rule)

    async def _sliding_hit(self, rule: RateLimitRule) -> _Hit:
        limit = int(rule.limit)  # type: ignore[arg-type]
        now_ms = int(self._clock() * 1000)
        window_ms = rule.window_seconds * 1000
        key = f"{self._prefix}sliding:{rule.subject}"
        member = f"{now_ms}-{uuid.uuid4().hex}"

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, now_ms - window_ms)
            pipe.zcard(key)
            pipe.zadd(key, {member: now_ms})
            pipe.pexpire(key, window_ms)
            pipe.zrange(key, 0, 0, withscores=True)
            _, count_before, _, _, oldest = await pipe.execute()

        oldest_ms = int(oldest[0][1]) if oldest else now_ms
        reset_after = max(math.ceil((oldest_ms + window_ms - now_ms) / 1000), 1)

        if count_before >= limit:
            await self._redis.zrem(key, member)
            result = RateLimitResult(False, rule.subject, limit, 0, reset_after)
            return _Hit(result)

        remaining = limit - count_before - 1
        result = RateLimitResult(True, rule.subject, limit, remaining, reset_after)
        return _Hit(result, undo_key=key, undo_member=member)

    async def _fixed_hit(self, rule: RateLimitRule) -> _Hit:
        limit = int(rule.limit)  # type: ignore[arg-type]
        now = self._clock()
        bucket = int(now // rule.window_seconds)
        key = f"{self._prefix}fixed:{rule.subject}:{bucket}"

        count = await self._redis.incr(key)
        if count == 1:
            await self._redis.expire(key, rule.window_seconds)

        reset_after = max(math.ceil((bucket + 1) * rule.window_seconds - now), 1)
        if count > limit:
            return _Hit(RateLimitResult(False, rule.subject, limit, 0, reset_after))

        result = RateLimitResult(True, rule.subject, limit, limit - count, reset_after)
        return _Hit(result, undo_key=key)

    async def _undo(self, hits: list[_Hit]) -> None:
        for hit in hits:
            if hit.undo_key is None:
                continue
            if hit.undo_member is not None:
                await self._redis.zrem(hit.undo_key, hit.undo_member)
            else:
                await self._redis.decr(hit.undo_key)
