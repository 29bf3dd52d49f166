"""
Batched writer for the append-only request log.

The post-response middleware calls enqueue(); a background task flushes
the buffer every few seconds with one multi-row INSERT. Nothing here
feeds admission decisions — quota lives in api_usage.

A failed flush is logged and its batch dropped so a struggling database
cannot grow the buffer without bound.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import uuid
from dataclasses import asdict, dataclass

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.api_request_log import APIRequestLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RequestLogEntry:
    api_key_id: uuid.UUID
    endpoint: str
    method: str
    status_code: int
    response_time_ms: int
    ip_address: str
    user_agent: str | None
    timestamp: datetime.datetime


class RequestLogWriter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        flush_interval: float = 5.0,
        max_batch: int = 500,
        max_buffer: int = 50_000,
    ) -> None:
        self._session_factory = session_factory
        self._flush_interval = flush_interval
        self._max_batch = max_batch
        self._max_buffer = max_buffer
        self._buffer: list[RequestLogEntry] = []
        self._flushing = False
        self._task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def enqueue(self, entry: RequestLogEntry) -> None:
        if len(self._buffer) >= self._max_buffer:
            logger.warning("Request log buffer full (%d) — dropping entry", self._max_buffer)
            return
        self._buffer.append(entry)

    async def flush(self) -> int:
        """Write everything buffered so far. Returns rows written."""
        if self._flushing or not self._buffer:
            return 0

        self._flushing = True
        written = 0
        try:
            while self._buffer:
                batch = self._buffer[:self._max_batch]
                del self._buffer[:self._max_batch]
                try:
                    async with self._session_factory() as session:
                        await session.execute(
                            insert(APIRequestLog),
                            [asdict(entry) for entry in batch],
                        )
                        await session.commit()
                except Exception:
                    logger.exception("Failed to write %d request log rows — batch dropped", len(batch))
                    break
                written += len(batch)
        finally:
            self._flushing = False
        return written

    # ── Timer ───────────────────────────────────────────────
    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="request-log-writer")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            await self.flush()
