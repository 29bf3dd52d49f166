"""
Pydantic v2 schemas for API keys.

Separation:
  • ApiKeyRecord  — the resolved key as the gateway sees it. Also the
                    exact shape cached in Redis (see key_directory codec).
  • ApiKeyCreate  — admin create payload.
  • ApiKeyUpdate  — admin partial update payload (only set fields apply).
  • KeyDetails    — record + live usage snapshot.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from app.auth.scope import normalize_scope
from app.core.timeutils import is_valid_timezone

KeyStatus = Literal["active", "suspended", "revoked"]


def _check_timezone(value: str) -> str:
    if not is_valid_timezone(value):
        raise ValueError(f"Unknown IANA timezone: {value!r}")
    return value


# ── Resolved record ─────────────────────────────────────────
class ApiKeyRecord(BaseModel):
    """
    Everything admission needs to know about a key. Never carries the secret.

    endpoints_allowed is kept as list[Any] on purpose: stored scopes may
    contain junk entries, which the authorizer skips with a warning.
    """

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    key_hash: str
    prefix: str
    user_id: str
    status: KeyStatus
    endpoints_allowed: list[Any]
    rate_limit: int | None = None
    daily_limit: int | None = None
    monthly_limit: int | None = None
    timezone: str = "UTC"
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        # ORM attribute is `metadata_`; cached JSON uses `metadata`
        validation_alias=AliasChoices("metadata_", "metadata"),
    )
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


# ── Admin payloads ──────────────────────────────────────────
class ApiKeyCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., min_length=1, max_length=255, examples=["user-123"])
    endpoints_allowed: list[str] = Field(
        default_factory=lambda: ["all"],
        examples=[["/api/v1/search-by-login", "/api/v1/search-by-domain"]],
    )
    rate_limit: int | None = Field(default=1000, ge=0, description="Requests per rolling window.")
    daily_limit: int | None = Field(default=None, ge=0, description="0/null = unlimited.")
    monthly_limit: int | None = Field(default=None, ge=0, description="0/null = unlimited.")
    timezone: str = Field(default="UTC", examples=["Europe/Berlin"])
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("endpoints_allowed", mode="before")
    @classmethod
    def _scope(cls, value: Any) -> list[str]:
        return normalize_scope(value)

    @field_validator("timezone")
    @classmethod
    def _tz(cls, value: str) -> str:
        return _check_timezone(value)


class ApiKeyUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: KeyStatus | None = None
    endpoints_allowed: list[str] | None = None
    rate_limit: int | None = Field(default=None, ge=0)
    daily_limit: int | None = Field(default=None, ge=0)
    monthly_limit: int | None = Field(default=None, ge=0)
    timezone: str | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("endpoints_allowed", mode="before")
    @classmethod
    def _scope(cls, value: Any) -> list[str] | None:
        return None if value is None else normalize_scope(value)

    @field_validator("timezone")
    @classmethod
    def _tz(cls, value: str | None) -> str | None:
        return None if value is None else _check_timezone(value)


class ApiKeyCreated(BaseModel):
    """Returned once at creation — the only time the raw key is visible."""

    api_key: str
    record: ApiKeyRecord


class KeyDetailsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    api_key: str = Field(..., min_length=1, max_length=256)


# ── Usage ───────────────────────────────────────────────────
class UsageSnapshot(BaseModel):
    """Live counters, already rolled over to the key's local day/month."""

    total_requests: int
    daily_requests: int
    monthly_requests: int
    daily_limit: int | None
    monthly_limit: int | None
    remaining_daily_requests: int | None
    remaining_monthly_requests: int | None
    local_date: date
    last_request_at: datetime | None = None


class KeyDetails(BaseModel):
    record: ApiKeyRecord
    usage: UsageSnapshot


class UsageResponse(BaseModel):
    """Caller-facing GET /api/v1/usage body."""

    remaining_daily_requests: int | None
    remaining_monthly_requests: int | None
    total_daily_limit: int | None
    total_monthly_limit: int | None
    current_daily_usage: int
    current_monthly_usage: int
    status: KeyStatus
