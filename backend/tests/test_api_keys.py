"""
ApiKeyService + admin payload validation.
"""

import pytest
from pydantic import ValidationError

from app.schemas.api_key import ApiKeyCreate, ApiKeyUpdate


class TestCreatePayload:

    def test_defaults(self):
        payload = ApiKeyCreate(user_id="user-1")
        assert payload.endpoints_allowed == ["all"]
        assert payload.rate_limit == 1000
        assert payload.daily_limit is None
        assert payload.monthly_limit is None
        assert payload.timezone == "UTC"

    def test_scope_is_normalized(self):
        payload = ApiKeyCreate(user_id="u", endpoints_allowed=["/API/v1/Search-By-Login/", "/api/v1/search-by-login"])
        assert payload.endpoints_allowed == ["/api/v1/search-by-login"]

    def test_empty_scope_rejected(self):
        with pytest.raises(ValidationError):
            ApiKeyCreate(user_id="u", endpoints_allowed=[])

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValidationError):
            ApiKeyCreate(user_id="u", timezone="Moon/Base")

    def test_negative_limit_rejected(self):
        with pytest.raises(ValidationError):
            ApiKeyCreate(user_id="u", daily_limit=-1)

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            ApiKeyCreate(user_id="u", plan="gold")


@pytest.mark.asyncio
async def test_create_then_details(key_service):
    created = await key_service.create_key(
        ApiKeyCreate(
            user_id="user-42",
            endpoints_allowed=["/api/v1/search-by-login"],
            rate_limit=10,
            daily_limit=2,
            monthly_limit=100,
            timezone="Europe/Berlin",
            metadata={"plan": "trial"},
        )
    )

    details = await key_service.get_key_details(created.api_key)

    record = details.record
    assert record.id == created.record.id
    assert record.status == "active"
    assert record.endpoints_allowed == ["/api/v1/search-by-login"]
    assert (record.rate_limit, record.daily_limit, record.monthly_limit) == (10, 2, 100)
    assert record.timezone == "Europe/Berlin"
    assert record.metadata == {"plan": "trial"}
    assert record.prefix == created.api_key[:8]
    assert details.usage.total_requests == 0
    assert details.usage.remaining_daily_requests == 2
    assert details.usage.remaining_monthly_requests == 100


@pytest.mark.asyncio
async def test_secret_is_not_stored(key_service):
    created = await key_service.create_key(ApiKeyCreate(user_id="u"))
    assert created.api_key not in created.record.model_dump_json()


@pytest.mark.asyncio
async def test_details_for_unknown_or_malformed_secret(key_service):
    assert await key_service.get_key_details("f" * 64) is None
    assert await key_service.get_key_details("not a key") is None


@pytest.mark.asyncio
async def test_details_include_suspended_keys(key_service):
    created = await key_service.create_key(ApiKeyCreate(user_id="u"))
    await key_service.update_key(created.record.key_hash, ApiKeyUpdate(status="suspended"))

    details = await key_service.get_key_details(created.api_key)

    assert details.record.status == "suspended"


@pytest.mark.asyncio
async def test_update_applies_only_set_fields_and_invalidates(key_service, key_directory, cache):
    created = await key_service.create_key(ApiKeyCreate(user_id="u", daily_limit=5, rate_limit=50))
    await key_directory.resolve(created.api_key)
    cache_key = key_directory.cache_key(created.record.key_hash)
    assert await cache.exists(cache_key)

    updated = await key_service.update_key(
        created.record.key_hash,
        ApiKeyUpdate(daily_limit=None, endpoints_allowed=["/API/v1/usage"]),
    )

    assert updated.daily_limit is None
    assert updated.rate_limit == 50
    assert updated.endpoints_allowed == ["/api/v1/usage"]
    assert not await cache.exists(cache_key)
    record = await key_directory.resolve(created.api_key)
    assert record.endpoints_allowed == ["/api/v1/usage"]


@pytest.mark.asyncio
async def test_update_unknown_key(key_service):
    assert await key_service.update_key("0" * 64, ApiKeyUpdate(status="revoked")) is None
