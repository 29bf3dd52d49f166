"""
Dev bootstrap script — create an API key for local development.

Usage:
    python -m scripts.bootstrap_dev [user_id]

This will:
  1. Create an active key with scope ["all"], no daily/monthly ceiling
  2. Print the raw key ONCE (only its hash is stored)

The raw key is shown exactly once — copy it immediately.
"""

import asyncio
import sys

from app.core.config import settings
from app.core.database import build_engine, build_session_factory
from app.core.redis import build_redis
from app.schemas.api_key import ApiKeyCreate
from app.services.api_keys import ApiKeyService
from app.services.key_directory import KeyDirectory
from app.services.quota import QuotaTracker


async def main(user_id: str) -> None:
    engine = build_engine(settings)
    cache = build_redis(settings)
    session_factory = build_session_factory(engine)

    service = ApiKeyService(
        session_factory,
        KeyDirectory(session_factory, cache, cache_prefix=settings.KEY_CACHE_PREFIX),
        QuotaTracker(session_factory),
    )
    created = await service.create_key(ApiKeyCreate(user_id=user_id))

    # ── Print results ───────────────────────────────────────
    record = created.record
    print()
    print("=" * 60)
    print("  Dev Bootstrap Complete")
    print("=" * 60)
    print()
    print(f"  User:       {record.user_id}")
    print(f"  Key ID:     {record.id}")
    print(f"  Key hash:   {record.key_hash}")
    print()
    print(f"  API Key:    {created.api_key}")
    print()
    print("  ⚠  Copy this key now — it will NEVER be shown again.")
    print("=" * 60)
    print()

    await cache.aclose()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "dev-user"))
