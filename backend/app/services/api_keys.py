"""
Administrative API key operations.

  • create_key       — mint a secret, store only its hash, return both once
  • update_key       — partial update by hash, then invalidate the cache
  • get_key_details  — record + live usage snapshot for a presented secret

Every mutation goes through KeyDirectory.invalidate() after commit, so
the very next request sees the new status/scope/limits instead of a
cached copy.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.hashing import PREFIX_LENGTH, generate_api_key, hash_api_key, is_well_formed
from app.models.api_key import APIKey
from app.schemas.api_key import (
    ApiKeyCreate,
    ApiKeyCreated,
    ApiKeyRecord,
    ApiKeyUpdate,
    KeyDetails,
)
from app.services.key_directory import KeyDirectory
from app.services.quota import QuotaTracker

logger = logging.getLogger(__name__)

# Fields that may be explicitly set to null (null = unlimited).
_NULLABLE_FIELDS = {"rate_limit", "daily_limit", "monthly_limit"}


class ApiKeyService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        keys: KeyDirectory,
        quota: QuotaTracker,
    ) -> None:
        self._session_factory = session_factory
        self._keys = keys
        self._quota = quota

    async def create_key(self, payload: ApiKeyCreate) -> ApiKeyCreated:
        raw_key, key_hash = generate_api_key()

        async with self._session_factory() as session:
            api_key = APIKey(
                key_hash=key_hash,
                prefix=raw_key[:PREFIX_LENGTH],
                user_id=payload.user_id,
                status="active",
                endpoints_allowed=payload.endpoints_allowed,
                rate_limit=payload.rate_limit,
                daily_limit=payload.daily_limit,
                monthly_limit=payload.monthly_limit,
                timezone=payload.timezone,
                metadata_=payload.metadata,
            )
            session.add(api_key)
            await session.commit()
            await session.refresh(api_key)
            record = ApiKeyRecord.model_validate(api_key)

        logger.info(
            "Created API key %s for user %s (scope=%s, rate=%s, daily=%s, monthly=%s, tz=%s)",
            record.id, record.user_id, record.endpoints_allowed,
            record.rate_limit, record.daily_limit, record.monthly_limit, record.timezone,
        )
        return ApiKeyCreated(api_key=raw_key, record=record)

    async def update_key(self, key_hash: str, changes: ApiKeyUpdate) -> ApiKeyRecord | None:
        """Apply only the fields present in `changes`. None if the hash is unknown."""
        values = changes.model_dump(exclude_unset=True)

        async with self._session_factory() as session:
            result = await session.execute(
                select(APIKey).where(APIKey.key_hash == key_hash)
            )
            api_key = result.scalar_one_or_none()
            if api_key is None:
                logger.warning("No API key found for update (hash %.12s…)", key_hash)
                return None

            for name, value in values.items():
                if value is None and name not in _NULLABLE_FIELDS:
                    continue
                setattr(api_key, "metadata_" if name == "metadata" else name, value)

            await session.commit()
            await session.refresh(api_key)
            record = ApiKeyRecord.model_validate(api_key)

        await self._keys.invalidate(key_hash)
        logger.info("Updated API key %s: %s", record.id, sorted(values))
        return record

    async def get_key_details(self, raw_key: str) -> KeyDetails | None:
        """Record (any status) plus live usage for a presented secret."""
        if not is_well_formed(raw_key):
            return None

        record = await self._keys.lookup_hash(hash_api_key(raw_key))
        if record is None:
            return None

        usage = await self._quota.snapshot(record)
        return KeyDetails(record=record, usage=usage)
