import datetime
import uuid
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select

from app.models.api_request_log import APIRequestLog
from app.schemas.api_key import ApiKeyCreate
from app.services.request_log import RequestLogEntry, RequestLogWriter


def _entry(api_key_id, status_code=200) -> RequestLogEntry:
    return RequestLogEntry(
        api_key_id=api_key_id,
        endpoint="/api/v1/usage",
        method="GET",
        status_code=status_code,
        response_time_ms=3,
        ip_address="10.0.0.1",
        user_agent=None,
        timestamp=datetime.datetime(2026, 3, 10, 12, 0, tzinfo=datetime.timezone.utc),
    )


@pytest.mark.asyncio
async def test_flush_writes_in_batches(session_factory, key_service):
    created = await key_service.create_key(ApiKeyCreate(user_id="u"))
    writer = RequestLogWriter(session_factory, max_batch=2)
    for status_code in (200, 200, 429, 403, 200):
        writer.enqueue(_entry(created.record.id, status_code))

    assert await writer.flush() == 5
    assert writer.pending == 0
    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(APIRequestLog)) == 5


@pytest.mark.asyncio
async def test_failed_flush_drops_batch(caplog):
    broken_factory = MagicMock(side_effect=RuntimeError("db down"))
    writer = RequestLogWriter(broken_factory, max_batch=10)
    writer.enqueue(_entry(uuid.uuid4()))

    assert await writer.flush() == 0
    assert writer.pending == 0
    assert "batch dropped" in caplog.text


def test_buffer_is_bounded():
    writer = RequestLogWriter(MagicMock(), max_buffer=2)
    for _ in range(3):
        writer.enqueue(_entry(uuid.uuid4()))
    assert writer.pending == 2


@pytest.mark.asyncio
async def test_stop_flushes_remaining(session_factory, key_service):
    created = await key_service.create_key(ApiKeyCreate(user_id="u"))
    writer = RequestLogWriter(session_factory, flush_interval=3600)
    writer.start()
    writer.enqueue(_entry(created.record.id))

    await writer.stop()

    assert writer.pending == 0
