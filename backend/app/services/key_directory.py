"""
Key directory — resolves a presented secret to its ApiKeyRecord.

Flow:
  1. Reject absent/malformed secrets (Unauthenticated)
  2. Hash the secret (SHA-256) — the raw value goes no further
  3. Redis lookup under  <prefix><hash>  (TTL ≈ 1h)
  4. Miss → durable store → repopulate the cache, unless the key was
     invalidated meanwhile (generation counter under <prefix>gen:<hash>,
     checked with WATCH/MULTI)
  5. Non-active status → Unauthenticated (status is never leaked)

The cache is advisory: any Redis failure or undecodable entry is logged
and the lookup falls through to the database. Store failures surface as
StoreUnavailable so the gateway can answer 503 instead of 401.

Administrative mutations MUST call invalidate(key_hash); otherwise callers
see stale scope/limits/status for up to the TTL.
"""

from __future__ import annotations

import logging

import redis.asyncio as redis
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.hashing import hash_api_key, is_well_formed
from app.core.errors import Unauthenticated
from app.core.retry import call_store
from app.models.api_key import APIKey
from app.schemas.api_key import ApiKeyRecord

logger = logging.getLogger(__name__)

CACHE_ERRORS = (redis.RedisError, ConnectionError, OSError)


# ── Cache codec ─────────────────────────────────────────────
# The one place that knows what a cached value looks like.
def encode_record(record: ApiKeyRecord) -> str:
    return record.model_dump_json()


def decode_record(payload: str | bytes) -> ApiKeyRecord:
    """Raises pydantic.ValidationError for anything that isn't a record."""
    return ApiKeyRecord.model_validate_json(payload)


class KeyDirectory:
    """Hash-and-cache lookup of API keys."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: redis.Redis,
        *,
        cache_prefix: str = "api_key:",
        cache_ttl: int = 3600,
        store_timeout: float = 2.0,
        store_attempts: int = 2,
        store_backoff: float = 0.05,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._cache_prefix = cache_prefix
        self._cache_ttl = cache_ttl
        self._store_timeout = store_timeout
        self._store_attempts = store_attempts
        self._store_backoff = store_backoff

    def cache_key(self, key_hash: str) -> str:
        return f"{self._cache_prefix}{key_hash}"

    def generation_key(self, key_hash: str) -> str:
        return f"{self._cache_prefix}gen:{key_hash}"

    # ── Public API ──────────────────────────────────────────
    async def resolve(self, raw_key: str | None) -> ApiKeyRecord:
        """Return the active record for `raw_key` or raise Unauthenticated."""
        if not is_well_formed(raw_key):
            raise Unauthenticated()

        key_hash = hash_api_key(raw_key)  # type: ignore[arg-type]
        record = await self.lookup_hash(key_hash)

        if record is None:
            raise Unauthenticated()
        if not record.is_active:
            logger.info("Rejected non-active API key %s", record.id)
            raise Unauthenticated(key_id=record.id)
        return record

    async def lookup_hash(self, key_hash: str) -> ApiKeyRecord | None:
        """Cache-then-store lookup by hash, regardless of status."""
        cached, generation = await self._cache_get(key_hash)
        if cached is not None:
            return cached

        record = await call_store(
            lambda: self._load(key_hash),
            name="key_lookup",
            timeout=self._store_timeout,
            attempts=self._store_attempts,
            backoff=self._store_backoff,
        )
        if record is None:
            return None

        await self._cache_set(record, generation)
        return record

    async def invalidate(self, key_hash: str) -> bool:
        """
        Drop the cached record for `key_hash` and bump its generation.

        Lookups that read the store before this call see a different
        generation when they try to cache, and skip the write.
        Returns False if Redis failed.
        """
        generation_key = self.generation_key(key_hash)
        try:
            async with self._cache.pipeline(transaction=True) as pipe:
                pipe.delete(self.cache_key(key_hash))
                pipe.incr(generation_key)
                pipe.expire(generation_key, self._cache_ttl)
                await pipe.execute()
        except CACHE_ERRORS as exc:
            logger.error("Failed to invalidate cached API key %.12s…: %r", key_hash, exc)
            return False
        logger.info("Cache invalidated for API key %.12s…", key_hash)
        return True

    # ── Store ───────────────────────────────────────────────
    async def _load(self, key_hash: str) -> ApiKeyRecord | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(APIKey).where(APIKey.key_hash == key_hash)
            )
            api_key = result.scalar_one_or_none()
            if api_key is None:
                return None
            return ApiKeyRecord.model_validate(api_key)

    # ── Cache (best effort) ─────────────────────────────────
    async def _cache_get(self, key_hash: str) -> tuple[ApiKeyRecord | None, str | None]:
        """Cached record (if any) and the key's generation, read together."""
        cache_key = self.cache_key(key_hash)
        try:
            payload, generation = await self._cache.mget(cache_key, self.generation_key(key_hash))
        except CACHE_ERRORS as exc:
            logger.warning("Key cache read failed, using database: %r", exc)
            return None, None

        if payload is None:
            return None, generation

        try:
            return decode_record(payload), generation
        except ValidationError:
            logger.warning("Discarding undecodable key cache entry %.20s…", cache_key)
            try:
                await self._cache.delete(cache_key)
            except CACHE_ERRORS as exc:
                logger.warning("Could not delete bad cache entry: %r", exc)
            return None, generation

    async def _cache_set(self, record: ApiKeyRecord, generation: str | None) -> None:
        """Write `record` only if no invalidation happened since `generation` was read."""
        generation_key = self.generation_key(record.key_hash)
        try:
            async with self._cache.pipeline(transaction=True) as pipe:
                await pipe.watch(generation_key)
                if await pipe.get(generation_key) != generation:
                    logger.info("API key %s changed during lookup, not caching", record.id)
                    return
                pipe.multi()
                pipe.set(self.cache_key(record.key_hash), encode_record(record), ex=self._cache_ttl)
                await pipe.execute()
        except redis.WatchError:
            logger.info("API key %s invalidated while caching, write dropped", record.id)
        except CACHE_ERRORS as exc:
            logger.warning("Key cache write failed for %s: %r", record.id, exc)
