"""Resource scheduling constraints consulted at confirmation time."""

from __future__ import annotations

from datetime import date, datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Date, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from bookingflow.database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class BlockedDate(Base):
    """A calendar date the practitioner has taken off, in their own timezone."""

    __tablename__ = "blocked_dates"

    __table_args__ = (
        sa.UniqueConstraint("resource_id", "blocked_on", name="uq_blocked_dates_resource_date"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    resource_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    blocked_on: Mapped[date] = mapped_column(Date, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_now_utc,
        server_default=func.now(),
    )


class SchedulingSettings(Base):
    """Per-resource booking rules."""

    __tablename__ = "scheduling_settings"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    resource_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    minimum_notice_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=1440)
