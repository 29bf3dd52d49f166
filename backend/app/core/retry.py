"""
Bounded timeout + retry around durable-store round trips.

Only transient connection-level failures are retried. Business outcomes
(QuotaExceeded, Unauthenticated, ...) pass straight through because they
are not in TRANSIENT_ERRORS. When the budget is exhausted the caller gets
StoreUnavailable, which the gateway renders as 503.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError

from app.core.errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    OperationalError,
    InterfaceError,
    ConnectionError,
    OSError,
)


async def call_store(
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    timeout: float,
    attempts: int,
    backoff: float = 0.05,
    retry_on_timeout: bool = True,
    key_id: uuid.UUID | None = None,
) -> T:
    """
    Run `operation` with a per-attempt timeout and bounded retries.

    Args:
        operation:        Zero-arg coroutine factory; each attempt starts afresh.
        name:             Operation label for logs and StoreUnavailable.
        timeout:          Seconds allowed per attempt.
        attempts:         Total attempts (>= 1).
        backoff:          Linear backoff base between attempts.
        retry_on_timeout: False for non-idempotent writes — a timed-out
                          attempt may still have committed.
        key_id:           Included in logs when known.
    """
    attempts = max(attempts, 1)
    last_exc: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            last_exc = exc
            if not retry_on_timeout:
                break
        except TRANSIENT_ERRORS as exc:
            last_exc = exc

        if attempt < attempts:
            logger.warning(
                "Transient store error during %s (key=%s, attempt %d/%d): %r",
                name, key_id, attempt, attempts, last_exc,
            )
            await asyncio.sleep(backoff * attempt)

    logger.error(
        "Durable store unavailable during %s (key=%s): %r",
        name, key_id, last_exc,
    )
    raise StoreUnavailable(name, key_id=key_id) from last_exc
