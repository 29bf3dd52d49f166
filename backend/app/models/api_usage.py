"""
Usage counters for quota enforcement — one row per API key.

Counters:
  • total_requests   — lifetime, never reset
  • daily_requests   — zeroed when the key's local day rolls over
  • monthly_requests — zeroed when the key's local month rolls over

last_request_date is the key-LOCAL date of the last counted request; it
drives rollover inside the atomic upsert (see services/quota.py) and the
hourly cleanup job (see services/usage_reset.py).

The row is created lazily by the first admitted request through
INSERT … ON CONFLICT DO UPDATE, so there is never a read-then-write gap.
"""

import uuid
import datetime

from sqlalchemy import BigInteger, CheckConstraint, Date, DateTime, ForeignKey, Integer, Uuid
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base
from app.core.timeutils import utcnow


class APIUsage(Base):
    """Per-key lifetime, daily and monthly request counters."""

    __tablename__ = "api_usage"

    api_key_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("api_keys.id", ondelete="CASCADE"),
        primary_key=True,
    )
    total_requests: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, server_default="0",
    )
    daily_requests: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )
    monthly_requests: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )
    last_request_date: Mapped[datetime.date | None] = mapped_column(
        Date, nullable=True, index=True,
    )
    last_request_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint("total_requests >= 0", name="ck_api_usage_total_non_neg"),
        CheckConstraint("daily_requests >= 0", name="ck_api_usage_daily_non_neg"),
        CheckConstraint("monthly_requests >= 0", name="ck_api_usage_monthly_non_neg"),
    )

    def __repr__(self) -> str:
        return (
            f"<APIUsage key={self.api_key_id!s:.8} "
            f"day={self.daily_requests} month={self.monthly_requests} "
            f"total={self.total_requests}>"
        )
