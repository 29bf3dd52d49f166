"""
Append-only request audit log.

One row per completed request that resolved to an API key. Rows are never
updated and are not read by admission decisions; pruning/partitioning is
handled outside the application.
"""

import uuid
import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base
from app.core.timeutils import utcnow

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
_ID_TYPE = BigInteger().with_variant(Integer(), "sqlite")


class APIRequestLog(Base):
    """Immutable record of one request's outcome."""

    __tablename__ = "api_requests_log"

    id: Mapped[int] = mapped_column(_ID_TYPE, primary_key=True, autoincrement=True)
    api_key_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("api_keys.id", ondelete="CASCADE"),
        nullable=False,
    )
    timestamp: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    endpoint: Mapped[str] = mapped_column(Text, nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    response_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_api_requests_log_key_timestamp", "api_key_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<APIRequestLog key={self.api_key_id!s:.8} "
            f"{self.method} {self.endpoint} -> {self.status_code}>"
        )
