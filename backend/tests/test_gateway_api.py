"""
End-to-end through FastAPI: admission dependency, error rendering,
admin routes, request log.

ASGITransport does not run the lifespan, so components are wired with
install_components() against the test database and fakeredis.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio
import redis.asyncio as redis
from sqlalchemy import func, select

from app.core.config import Settings
from app.main import create_app, install_components
from app.models.api_request_log import APIRequestLog

ADMIN = {"X-Admin-Token": "admin-secret"}
USAGE = "/api/v1/usage"


def _settings(**overrides) -> Settings:
    values = {
        "DATABASE_URL": "sqlite+aiosqlite://",
        "ENVIRONMENT": "test",
        "ADMIN_TOKEN": "admin-secret",
        "USAGE_RESET_ENABLED": False,
    }
    values.update(overrides)
    return Settings(**values)


async def _client_for(app):
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://gateway.test")


@pytest_asyncio.fixture
async def app(session_factory, cache):
    application = create_app(_settings())
    install_components(application, session_factory, cache)
    return application


@pytest_asyncio.fixture
async def client(app):
    async with await _client_for(app) as http:
        yield http


async def _create_key(client, **fields) -> dict:
    body = {"user_id": "user-1", **fields}
    response = await client.post("/admin/keys", json=body, headers=ADMIN)
    assert response.status_code == 201, response.text
    return response.json()


def _key_header(created: dict) -> dict:
    return {"api-key": created["api_key"]}


# ── Health ──────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
    assert response.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_readiness(client):
    response = await client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["checks"] == {"database": "ok", "redis": "ok"}


# ── Admission ───────────────────────────────────────────────
@pytest.mark.asyncio
@pytest.mark.parametrize("headers", [{}, {"api-key": ""}, {"api-key": "f" * 64}])
async def test_missing_or_unknown_key_is_401(client, headers):
    response = await client.get(USAGE, headers=headers)
    assert response.status_code == 401
    assert response.json() == {"error": "Invalid or missing API key"}


@pytest.mark.asyncio
async def test_request_id_is_propagated(client):
    response = await client.get("/health", headers={"X-Request-ID": "trace-123"})
    assert response.headers["X-Request-ID"] == "trace-123"


@pytest.mark.asyncio
async def test_out_of_scope_is_403(client):
    created = await _create_key(client, endpoints_allowed=["/api/v1/search-by-login"])

    response = await client.get(USAGE, headers=_key_header(created))

    assert response.status_code == 403
    assert response.json() == {"error": "Access to this endpoint is not allowed for this API key"}


@pytest.mark.asyncio
async def test_usage_counts_itself_and_sets_rate_headers(client):
    created = await _create_key(client, daily_limit=5, monthly_limit=100, rate_limit=50)

    response = await client.get(USAGE, headers=_key_header(created))

    assert response.status_code == 200
    assert response.json() == {
        "remaining_daily_requests": 4,
        "remaining_monthly_requests": 99,
        "total_daily_limit": 5,
        "total_monthly_limit": 100,
        "current_daily_usage": 1,
        "current_monthly_usage": 1,
        "status": "active",
    }
    assert response.headers["X-RateLimit-Limit"] == "50"
    assert response.headers["X-RateLimit-Remaining"] == "49"


@pytest.mark.asyncio
async def test_daily_quota_exhaustion(client):
    created = await _create_key(client, daily_limit=2, monthly_limit=100, rate_limit=1000)
    headers = _key_header(created)

    statuses = [(await client.get(USAGE, headers=headers)).status_code for _ in range(2)]
    rejected = await client.get(USAGE, headers=headers)

    assert statuses == [200, 200]
    assert rejected.status_code == 429
    body = rejected.json()
    assert body["error"] == "Daily request limit exceeded"
    assert body["retryAfter"] >= 1
    assert rejected.headers["Retry-After"] == str(body["retryAfter"])

    details = await client.post("/admin/keys/details", json={"api_key": created["api_key"]}, headers=ADMIN)
    assert details.json()["usage"]["daily_requests"] == 2


@pytest.mark.asyncio
async def test_rate_limit_rejects_before_quota(client):
    created = await _create_key(client, rate_limit=2, daily_limit=100)
    headers = _key_header(created)

    for _ in range(2):
        assert (await client.get(USAGE, headers=headers)).status_code == 200
    rejected = await client.get(USAGE, headers=headers)

    assert rejected.status_code == 429
    assert rejected.json()["error"] == "Rate limit exceeded"
    assert int(rejected.headers["Retry-After"]) >= 1
    details = await client.post("/admin/keys/details", json={"api_key": created["api_key"]}, headers=ADMIN)
    assert details.json()["usage"]["daily_requests"] == 2


@pytest.mark.asyncio
async def test_suspension_takes_effect_immediately(client):
    created = await _create_key(client)
    headers = _key_header(created)
    assert (await client.get(USAGE, headers=headers)).status_code == 200

    patched = await client.patch(
        f"/admin/keys/{created['record']['key_hash']}",
        json={"status": "suspended"},
        headers=ADMIN,
    )
    assert patched.status_code == 200
    assert patched.json()["status"] == "suspended"

    assert (await client.get(USAGE, headers=headers)).status_code == 401


@pytest.mark.asyncio
async def test_rate_store_outage_fails_closed(session_factory):
    broken = MagicMock()
    broken.mget = AsyncMock(side_effect=redis.ConnectionError("redis down"))
    broken.get = AsyncMock(side_effect=redis.ConnectionError("redis down"))
    broken.set = AsyncMock(side_effect=redis.ConnectionError("redis down"))
    broken.pipeline.side_effect = redis.ConnectionError("redis down")

    application = create_app(_settings())
    install_components(application, session_factory, broken)
    async with await _client_for(application) as http:
        created = await _create_key(http)
        response = await http.get(USAGE, headers=_key_header(created))

    assert response.status_code == 503
    assert response.json()["error"] == "Service unavailable"


@pytest.mark.asyncio
async def test_rate_store_outage_fail_open(session_factory):
    broken = MagicMock()
    broken.mget = AsyncMock(side_effect=redis.ConnectionError("redis down"))
    broken.get = AsyncMock(side_effect=redis.ConnectionError("redis down"))
    broken.set = AsyncMock(side_effect=redis.ConnectionError("redis down"))
    broken.pipeline.side_effect = redis.ConnectionError("redis down")

    application = create_app(_settings(RATE_LIMIT_FAIL_MODE="open"))
    install_components(application, session_factory, broken)
    async with await _client_for(application) as http:
        created = await _create_key(http)
        response = await http.get(USAGE, headers=_key_header(created))

    assert response.status_code == 200
    assert "X-RateLimit-Limit" not in response.headers


# ── Admin surface ───────────────────────────────────────────
@pytest.mark.asyncio
async def test_admin_requires_token(client):
    assert (await client.post("/admin/keys", json={"user_id": "u"})).status_code == 401
    wrong = await client.post("/admin/keys", json={"user_id": "u"}, headers={"X-Admin-Token": "nope"})
    assert wrong.status_code == 401


@pytest.mark.asyncio
async def test_admin_disabled_without_token(session_factory, cache):
    application = create_app(_settings(ADMIN_TOKEN=""))
    install_components(application, session_factory, cache)
    async with await _client_for(application) as http:
        response = await http.post("/admin/keys", json={"user_id": "u"}, headers=ADMIN)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_admin_create_validation(client):
    response = await client.post("/admin/keys", json={"user_id": "u", "endpoints_allowed": []}, headers=ADMIN)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_admin_unknown_key(client):
    patched = await client.patch(f"/admin/keys/{'0' * 64}", json={"status": "revoked"}, headers=ADMIN)
    details = await client.post("/admin/keys/details", json={"api_key": "f" * 64}, headers=ADMIN)
    assert patched.status_code == 404
    assert details.status_code == 404


@pytest.mark.asyncio
async def test_admin_usage_reset(client):
    await _create_key(client)
    response = await client.post("/admin/usage/reset", headers=ADMIN)
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["timezones"] == 1
    assert body["failed"] == []


# ── Request log ─────────────────────────────────────────────
@pytest.mark.asyncio
async def test_admitted_requests_are_logged(client, app, session_factory):
    created = await _create_key(client, endpoints_allowed=["/api/v1/usage"])
    headers = {**_key_header(created), "User-Agent": "pytest-agent"}
    await client.get(USAGE, headers=headers)
    await client.get(USAGE, headers=headers)
    await client.get(USAGE)  # no key; never resolved, not logged

    written = await app.state.request_log_writer.flush()

    assert written == 2
    async with session_factory() as session:
        count = await session.scalar(select(func.count()).select_from(APIRequestLog))
        row = (await session.execute(select(APIRequestLog).limit(1))).scalar_one()
    assert count == 2
    assert row.endpoint == USAGE
    assert row.method == "GET"
    assert row.status_code == 200
    assert row.user_agent == "pytest-agent"
    assert str(row.api_key_id) == created["record"]["id"]


@pytest.mark.asyncio
async def test_rejections_for_a_known_key_are_logged(client, app, session_factory):
    limited = await _create_key(client, daily_limit=1, rate_limit=1000)
    scoped = await _create_key(client, endpoints_allowed=["/api/v1/search-by-login"])

    statuses = [
        (await client.get(USAGE, headers=_key_header(limited))).status_code,
        (await client.get(USAGE, headers=_key_header(limited))).status_code,
        (await client.get(USAGE, headers=_key_header(scoped))).status_code,
    ]
    written = await app.state.request_log_writer.flush()

    assert statuses == [200, 429, 403]
    assert written == 3
    async with session_factory() as session:
        rows = (await session.execute(select(APIRequestLog))).scalars().all()
    by_status = {row.status_code: str(row.api_key_id) for row in rows}
    assert by_status == {
        200: limited["record"]["id"],
        429: limited["record"]["id"],
        403: scoped["record"]["id"],
    }
