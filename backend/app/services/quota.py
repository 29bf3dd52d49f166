"""
Daily / monthly quota enforcement.

consume() is ONE statement against the durable store:

    INSERT INTO api_usage (api_key_id, total, daily, monthly, last_request_date, …)
    VALUES (:id, 1, 1, 1, :today, …)
    ON CONFLICT (api_key_id) DO UPDATE SET
        total_requests   = total_requests + 1,
        daily_requests   = CASE WHEN last_request_date >= :today       THEN daily_requests   ELSE 0 END + 1,
        monthly_requests = CASE WHEN last_request_date >= :month_start THEN monthly_requests ELSE 0 END + 1,
        last_request_date = :today, …
    WHERE  <rolled-over daily>   < :daily_limit      -- only when limited
      AND  <rolled-over monthly> < :monthly_limit    -- only when limited
    RETURNING total_requests, daily_requests, monthly_requests

Consequences:
  • The ceiling check, the local-day/month rollover and the increment are
    a single atomic unit; concurrent workers cannot both see "9 of 10".
  • When the guard fails the row is untouched and nothing comes back —
    that IS the rejection. The follow-up read only shapes the error.
  • Lazy creation: the first admitted request inserts the row.
  • Retries stop at connection checkout. The statement itself is sent at
    most once, so an error during COMMIT surfaces as StoreUnavailable
    rather than a second increment.

:today and :month_start are the key's LOCAL calendar values, computed in
Python from its IANA timezone, so the statement is dialect-neutral.
"""

from __future__ import annotations

import datetime
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import and_, case, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import QuotaExceeded, StoreUnavailable
from app.core.retry import call_store
from app.core.timeutils import (
    local_today,
    month_start,
    resolve_zone,
    seconds_until_local_midnight,
    seconds_until_next_local_month,
    utcnow,
)
from app.models.api_usage import APIUsage
from app.schemas.api_key import ApiKeyRecord, UsageSnapshot

logger = logging.getLogger(__name__)

DAILY = "daily"
MONTHLY = "monthly"


def _ceiling(value: int | None) -> int | None:
    """NULL and 0 both mean unlimited."""
    return value if value else None


def _remaining(limit: int | None, used: int) -> int | None:
    return None if limit is None else max(limit - used, 0)


@dataclass(frozen=True, slots=True)
class _Counters:
    total: int
    daily: int
    monthly: int
    last_request_at: datetime.datetime | None = None


class QuotaTracker:
    """Atomic daily/monthly admission counter per API key."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime.datetime] = utcnow,
        store_timeout: float = 2.0,
        store_attempts: int = 2,
        store_backoff: float = 0.05,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._store_timeout = store_timeout
        self._store_attempts = store_attempts
        self._store_backoff = store_backoff

    # ── Admission ───────────────────────────────────────────
    async def consume(self, record: ApiKeyRecord) -> UsageSnapshot:
        """
        Count one request against `record` or raise QuotaExceeded.

        Every success increments lifetime, daily and monthly exactly once;
        every rejection increments nothing.
        """
        now = self._clock()
        zone = resolve_zone(record.timezone)
        today = local_today(now, zone)
        daily_limit = _ceiling(record.daily_limit)
        monthly_limit = _ceiling(record.monthly_limit)

        # Only acquiring the connection is retried. Once the upsert has been
        # sent, any failure (timeout, reset during COMMIT) may hide a commit.
        session = await call_store(
            self._open_session,
            name="quota_connect",
            timeout=self._store_timeout,
            attempts=self._store_attempts,
            backoff=self._store_backoff,
            key_id=record.id,
        )
        try:
            counters = await call_store(
                lambda: self._admit(session, record.id, now, today, daily_limit, monthly_limit),
                name="quota_consume",
                timeout=self._store_timeout,
                attempts=1,
                retry_on_timeout=False,
                key_id=record.id,
            )
        finally:
            await session.close()

        if counters is None:
            raise await self._rejection(record, now)

        return UsageSnapshot(
            total_requests=counters.total,
            daily_requests=counters.daily,
            monthly_requests=counters.monthly,
            daily_limit=daily_limit,
            monthly_limit=monthly_limit,
            remaining_daily_requests=_remaining(daily_limit, counters.daily),
            remaining_monthly_requests=_remaining(monthly_limit, counters.monthly),
            local_date=today,
            last_request_at=now,
        )

    async def _open_session(self) -> AsyncSession:
        """Session with a checked-out (pre-pinged) connection, nothing sent yet."""
        session = self._session_factory()
        try:
            await session.connection()
        except BaseException:
            await session.close()
            raise
        return session

    async def _admit(
        self,
        session: AsyncSession,
        api_key_id: uuid.UUID,
        now: datetime.datetime,
        today: datetime.date,
        daily_limit: int | None,
        monthly_limit: int | None,
    ) -> _Counters | None:
        table = APIUsage.__table__
        first_of_month = month_start(today)

        # Counter values as they stand AFTER a local day/month rollover.
        daily_current = case(
            (table.c.last_request_date >= today, table.c.daily_requests),
            else_=0,
        )
        monthly_current = case(
            (table.c.last_request_date >= first_of_month, table.c.monthly_requests),
            else_=0,
        )

        guards = []
        if daily_limit is not None:
            guards.append(daily_current < daily_limit)
        if monthly_limit is not None:
            guards.append(monthly_current < monthly_limit)

        insert = _dialect_insert(session)
        stmt = insert(APIUsage).values(
            api_key_id=api_key_id,
            total_requests=1,
            daily_requests=1,
            monthly_requests=1,
            last_request_date=today,
            last_request_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.api_key_id],
            set_={
                "total_requests": table.c.total_requests + 1,
                "daily_requests": daily_current + 1,
                "monthly_requests": monthly_current + 1,
                "last_request_date": today,
                "last_request_at": now,
                "updated_at": now,
            },
            where=and_(*guards) if guards else None,
        ).returning(
            table.c.total_requests,
            table.c.daily_requests,
            table.c.monthly_requests,
        )

        result = await session.execute(stmt)
        row = result.first()
        await session.commit()

        if row is None:
            return None
        return _Counters(total=row[0], daily=row[1], monthly=row[2])

    async def _rejection(self, record: ApiKeyRecord, now: datetime.datetime) -> QuotaExceeded:
        """Work out which ceiling(s) stopped the request and when to come back."""
        zone = resolve_zone(record.timezone)
        until_midnight = seconds_until_local_midnight(now, zone)
        until_next_month = seconds_until_next_local_month(now, zone)

        exhausted: list[tuple[int, str]] = []
        try:
            snapshot = await self.snapshot(record, now=now)
        except StoreUnavailable:
            # The guard already said no; a failed report must not turn that into a 503.
            logger.warning("Usage read failed after quota rejection for API key %s", record.id)
            if _ceiling(record.daily_limit):
                exhausted.append((until_midnight, DAILY))
            else:
                exhausted.append((until_next_month, MONTHLY))
        else:
            if snapshot.remaining_daily_requests == 0:
                exhausted.append((until_midnight, DAILY))
            if snapshot.remaining_monthly_requests == 0:
                exhausted.append((until_next_month, MONTHLY))

        if not exhausted:
            # The row moved on between the guarded update and this read
            # (e.g. local midnight passed). Report the guard that applies.
            dimension = DAILY if _ceiling(record.daily_limit) else MONTHLY
            exhausted.append((1, dimension))

        exhausted.sort()
        exc = QuotaExceeded(
            tuple(dimension for _, dimension in exhausted),
            retry_after=exhausted[0][0],
            key_id=record.id,
        )
        logger.warning(
            "Quota exceeded for API key %s (limit=%s, retry_after=%ss)",
            record.id, ",".join(exc.dimensions), exc.retry_after,
        )
        return exc

    # ── Reporting ───────────────────────────────────────────
    async def snapshot(
        self,
        record: ApiKeyRecord,
        *,
        now: datetime.datetime | None = None,
    ) -> UsageSnapshot:
        """Current counters as they apply *now* in the key's local calendar. Read-only."""
        now = now or self._clock()
        zone = resolve_zone(record.timezone)
        today = local_today(now, zone)
        daily_limit = _ceiling(record.daily_limit)
        monthly_limit = _ceiling(record.monthly_limit)

        row = await call_store(
            lambda: self._read(record.id),
            name="quota_snapshot",
            timeout=self._store_timeout,
            attempts=self._store_attempts,
            backoff=self._store_backoff,
            key_id=record.id,
        )

        counters = _Counters(total=0, daily=0, monthly=0)
        if row is not None:
            last_date = row.last_request_date
            counters = _Counters(
                total=row.total_requests,
                daily=row.daily_requests if last_date and last_date >= today else 0,
                monthly=(
                    row.monthly_requests
                    if last_date and last_date >= month_start(today)
                    else 0
                ),
                last_request_at=row.last_request_at,
            )

        return UsageSnapshot(
            total_requests=counters.total,
            daily_requests=counters.daily,
            monthly_requests=counters.monthly,
            daily_limit=daily_limit,
            monthly_limit=monthly_limit,
            remaining_daily_requests=_remaining(daily_limit, counters.daily),
            remaining_monthly_requests=_remaining(monthly_limit, counters.monthly),
            local_date=today,
            last_request_at=counters.last_request_at,
        )

    async def _read(self, api_key_id: uuid.UUID) -> Any:
        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    APIUsage.total_requests,
                    APIUsage.daily_requests,
                    APIUsage.monthly_requests,
                    APIUsage.last_request_date,
                    APIUsage.last_request_at,
                ).where(APIUsage.api_key_id == api_key_id)
            )
            return result.first()


def _dialect_insert(session: AsyncSession) -> Callable[..., Any]:
    """Postgres in production; SQLite in tests. Both speak ON CONFLICT … RETURNING."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert
