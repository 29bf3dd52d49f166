"""
Hourly usage-counter rollover.

For every distinct key timezone:
  • zero daily_requests   where last_request_date < local today
  • on the local 1st only, zero monthly_requests where
    last_request_date < local month start

This is housekeeping, not correctness: QuotaTracker rolls counters over
inside its atomic upsert, so admission is right even if this job never
runs. The job keeps idle keys' displayed usage fresh.

Operational rules:
  • Timezones are processed in batches (default 5) with a short pause.
  • Each timezone runs in its own transaction; one failing zone is
    logged and counted, never aborts the batch.
  • If the store is unreachable up front the whole run is skipped.
  • A run that starts while another is in flight is skipped.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy import select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import StoreUnavailable
from app.core.retry import call_store
from app.core.timeutils import local_today, month_start, resolve_zone, utcnow
from app.models.api_key import APIKey
from app.models.api_usage import APIUsage

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ResetReport:
    """Outcome of one run."""

    started_at: datetime.datetime
    timezones: int = 0
    daily_rows: int = 0
    monthly_rows: int = 0
    failed: list[str] = field(default_factory=list)


class UsageResetScheduler:
    """Single periodic task that rolls daily/monthly counters over per timezone."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        interval_seconds: int = 3600,
        batch_size: int = 5,
        batch_delay: float = 1.0,
        store_timeout: float = 5.0,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._interval = interval_seconds
        self._batch_size = max(batch_size, 1)
        self._batch_delay = batch_delay
        self._store_timeout = store_timeout
        self._clock = clock
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    # ── One run ─────────────────────────────────────────────
    async def run_once(self) -> ResetReport | None:
        """Run a full pass. Returns None when skipped."""
        if self._running:
            logger.warning("Usage reset already in flight — skipping this run")
            return None

        self._running = True
        try:
            return await self._run()
        finally:
            self._running = False

    async def _run(self) -> ResetReport | None:
        report = ResetReport(started_at=self._clock())

        try:
            timezones = await call_store(
                self._load_timezones,
                name="usage_reset",
                timeout=self._store_timeout,
                attempts=1,
            )
        except StoreUnavailable:
            logger.error("Database unreachable — usage reset skipped entirely")
            return None

        report.timezones = len(timezones)
        for start in range(0, len(timezones), self._batch_size):
            if start:
                await asyncio.sleep(self._batch_delay)
            batch = timezones[start:start + self._batch_size]
            for tz_name in batch:
                await self._reset_zone_safely(tz_name, report)

        logger.info(
            "Usage reset done: %d timezones, %d daily rows, %d monthly rows, %d failed",
            report.timezones, report.daily_rows, report.monthly_rows, len(report.failed),
        )
        return report

    async def _load_timezones(self) -> list[str]:
        async with self._session_factory() as session:
            await session.execute(text("SELECT 1"))
            result = await session.execute(select(APIKey.timezone).distinct())
            return sorted(tz for tz in result.scalars().all() if tz)

    async def _reset_zone_safely(self, tz_name: str, report: ResetReport) -> None:
        try:
            daily, monthly = await asyncio.wait_for(
                self.reset_timezone(tz_name),
                timeout=self._store_timeout,
            )
        except Exception:
            logger.exception("Usage reset failed for timezone %s", tz_name)
            report.failed.append(tz_name)
            return
        report.daily_rows += daily
        report.monthly_rows += monthly

    async def reset_timezone(self, tz_name: str) -> tuple[int, int]:
        """Roll counters over for keys in `tz_name`. Returns (daily_rows, monthly_rows)."""
        zone = resolve_zone(tz_name)
        if zone.key != tz_name and tz_name != "UTC":
            raise ValueError(f"Unknown timezone {tz_name!r}")

        today = local_today(self._clock(), zone)
        keys_in_zone = select(APIKey.id).where(APIKey.timezone == tz_name)
        now = self._clock()

        async with self._session_factory() as session:
            daily = await session.execute(
                update(APIUsage)
                .where(
                    APIUsage.api_key_id.in_(keys_in_zone),
                    APIUsage.last_request_date < today,
                    APIUsage.daily_requests != 0,
                )
                .values(daily_requests=0, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            monthly_rows = 0
            if today.day == 1:
                monthly = await session.execute(
                    update(APIUsage)
                    .where(
                        APIUsage.api_key_id.in_(keys_in_zone),
                        APIUsage.last_request_date < month_start(today),
                        APIUsage.monthly_requests != 0,
                    )
                    .values(monthly_requests=0, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                monthly_rows = monthly.rowcount or 0
            await session.commit()

        logger.debug("Reset %s: daily=%s monthly=%s", tz_name, daily.rowcount, monthly_rows)
        return daily.rowcount or 0, monthly_rows

    # ── Timer ───────────────────────────────────────────────
    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="usage-reset")
            logger.info("Usage reset scheduler started (every %ss)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Usage reset scheduler stopped")

    def seconds_until_next_run(self) -> float:
        """Align runs to interval boundaries (top of the hour by default)."""
        now = self._clock().timestamp()
        return self._interval - (now % self._interval)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.seconds_until_next_run())
            try:
                await self.run_once()
            except Exception:
                logger.exception("Unexpected error in scheduled usage reset")
