"""
Admission pipeline.

Fixed order, each step short-circuits on rejection:

    KeyDirectory.resolve      → Unauthenticated / StoreUnavailable
    authorize_endpoint        → Forbidden
    RateLimiter.check         → RateLimited / StoreUnavailable (fail-closed)
    QuotaTracker.consume      → QuotaExceeded / StoreUnavailable

Rate-limited requests never reach the quota step, so they never spend
daily/monthly budget. Every rejection is logged at WARNING with the key
id (when known) and the limit type; the raw secret is never logged.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.scope import authorize_endpoint
from app.core.config import Settings
from app.core.errors import Forbidden, GatewayError, QuotaExceeded, RateLimited, Unauthenticated
from app.schemas.api_key import ApiKeyRecord, UsageSnapshot
from app.services.key_directory import KeyDirectory
from app.services.quota import QuotaTracker
from app.services.rate_limiter import RateLimiter, RateLimitResult, RateLimitRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Admission:
    """What downstream handlers get to know about an admitted request."""

    record: ApiKeyRecord
    rate: RateLimitResult
    usage: UsageSnapshot

    @property
    def api_key_id(self) -> uuid.UUID:
        return self.record.id


class GatewayPipeline:
    def __init__(
        self,
        keys: KeyDirectory,
        rate_limiter: RateLimiter,
        quota: QuotaTracker,
        *,
        window_seconds: int = 60,
        default_rate_limit: int = 1000,
        ip_rate_limit: int = 0,
    ) -> None:
        self.keys = keys
        self.rate_limiter = rate_limiter
        self.quota = quota
        self._window = window_seconds
        self._default_rate_limit = default_rate_limit
        self._ip_rate_limit = ip_rate_limit

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        cache: redis.Redis,
    ) -> GatewayPipeline:
        store = {
            "store_timeout": settings.DB_TIMEOUT_SECONDS,
            "store_attempts": settings.DB_RETRY_ATTEMPTS,
            "store_backoff": settings.DB_RETRY_BACKOFF_SECONDS,
        }
        return cls(
            KeyDirectory(
                session_factory,
                cache,
                cache_prefix=settings.KEY_CACHE_PREFIX,
                cache_ttl=settings.KEY_CACHE_TTL_SECONDS,
                **store,
            ),
            RateLimiter(
                cache,
                strategy=settings.RATE_LIMIT_STRATEGY,
                fail_mode=settings.RATE_LIMIT_FAIL_MODE,
            ),
            QuotaTracker(session_factory, **store),
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
            default_rate_limit=settings.DEFAULT_RATE_LIMIT,
            ip_rate_limit=settings.IP_RATE_LIMIT,
        )

    def rate_rules(self, record: ApiKeyRecord, client_address: str | None) -> list[RateLimitRule]:
        key_limit = record.rate_limit if record.rate_limit is not None else self._default_rate_limit
        rules = [RateLimitRule(f"key:{record.id}", key_limit, self._window)]
        if client_address and self._ip_rate_limit:
            rules.append(RateLimitRule(f"ip:{client_address}", self._ip_rate_limit, self._window))
        return rules

    async def admit(
        self,
        raw_key: str | None,
        path: str,
        method: str,
        client_address: str | None = None,
    ) -> Admission:
        """Decide one request. Raises a GatewayError subclass on rejection."""
        record: ApiKeyRecord | None = None
        try:
            record = await self.keys.resolve(raw_key)
            authorize_endpoint(record.endpoints_allowed, path, key_id=record.id)
            rate = await self.rate_limiter.check(
                self.rate_rules(record, client_address),
                key_id=record.id,
            )
            usage = await self.quota.consume(record)
        except (Unauthenticated, Forbidden, RateLimited, QuotaExceeded) as exc:
            _log_rejection(exc, method, path, client_address)
            raise

        return Admission(record=record, rate=rate, usage=usage)


def _log_rejection(exc: GatewayError, method: str, path: str, client_address: str | None) -> None:
    limit_type = getattr(exc, "limit_type", exc.__class__.__name__)
    logger.warning(
        "Request rejected: %s %s key=%s limit=%s status=%d addr=%s",
        method, path, exc.key_id, limit_type, exc.status_code, client_address,
    )
