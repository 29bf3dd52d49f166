"""
Redis client construction.

One client (with its own connection pool) per process, built in the app
lifespan. Short socket timeouts keep a slow Redis from stalling requests;
callers decide what a failure means (advisory cache vs. rate-limit store).
"""

import redis.asyncio as redis

from app.core.config import Settings


def build_redis(settings: Settings) -> redis.Redis:
    return redis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=settings.REDIS_TIMEOUT_SECONDS,
        socket_timeout=settings.REDIS_TIMEOUT_SECONDS,
        health_check_interval=30,
    )
