"""
API key model — credential for the search API.

Security notes:
  • Raw API keys are NEVER stored. Only a SHA-256 hash is persisted.
  • The `prefix` column stores the first 8 characters of the secret
    for identification in the admin UI without exposing the full key.
  • `status` allows suspension/revocation without deletion (audit trail).

Portable column types (Uuid, JSON with a JSONB variant) keep the model
usable on SQLite for tests; production runs on Postgres.
"""

import uuid
import datetime
from typing import Any

from sqlalchemy import CheckConstraint, DateTime, Integer, JSON, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base
from app.core.timeutils import utcnow

KEY_STATUSES = ("active", "suspended", "revoked")

_JSON = JSON().with_variant(JSONB(), "postgresql")


class APIKey(Base):
    """Hashed API key with its scope, ceilings, and quota timezone."""

    __tablename__ = "api_keys"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    key_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
    )
    prefix: Mapped[str] = mapped_column(
        String(12),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="active",
        server_default="active",
    )

    # ── Authorization scope ─────────────────────────────────
    # List of path prefixes, or ["all"].
    endpoints_allowed: Mapped[list[Any]] = mapped_column(
        _JSON,
        nullable=False,
        default=lambda: ["all"],
    )

    # ── Ceilings (NULL / 0 = unlimited) ─────────────────────
    rate_limit: Mapped[int | None] = mapped_column(Integer, nullable=True, default=1000)
    daily_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    monthly_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # IANA zone defining this key's "day" and "month".
    timezone: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="UTC",
        server_default="UTC",
        index=True,
    )

    # Column named `metadata_` to avoid clashing with Base.metadata;
    # maps to DB column `metadata`.
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        _JSON,
        nullable=False,
        default=dict,
    )

    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'suspended', 'revoked')",
            name="ck_api_keys_status_valid",
        ),
        CheckConstraint("rate_limit IS NULL OR rate_limit >= 0", name="ck_api_keys_rate_limit_non_neg"),
        CheckConstraint("daily_limit IS NULL OR daily_limit >= 0", name="ck_api_keys_daily_limit_non_neg"),
        CheckConstraint("monthly_limit IS NULL OR monthly_limit >= 0", name="ck_api_keys_monthly_limit_non_neg"),
    )

    def __repr__(self) -> str:
        return (
            f"<APIKey id={self.id!s:.8} prefix={self.prefix!r} "
            f"status={self.status}>"
        )
