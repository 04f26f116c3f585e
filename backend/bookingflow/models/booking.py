# backend/bookingflow/models/booking.py
"""
Booking model.

A booking is the durable outcome of a paid, conflict-free reservation.
Exactly one booking exists per reservation; the unique
``created_from_reservation_id`` column enforces it at the database level.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

import sqlalchemy as sa
from sqlalchemy import DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from bookingflow.database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class BookingPaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    REFUNDED = "refunded"


class CalendarSyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class Booking(Base):
    """Confirmed booking created from a slot reservation."""

    __tablename__ = "bookings"

    __table_args__ = (
        sa.UniqueConstraint("created_from_reservation_id", name="uq_bookings_reservation"),
        sa.UniqueConstraint("payment_intent_ref", name="uq_bookings_payment_intent"),
        sa.Index("ix_bookings_resource_start", "resource_id", "start_time"),
        sa.Index("ix_bookings_calendar_sync", "calendar_sync_status"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    resource_id: Mapped[str] = mapped_column(String(64), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    payer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BookingPaymentStatus.SUCCEEDED.value
    )
    payment_intent_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="eur")
    created_from_reservation_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("slot_reservations.id"), nullable=True
    )
    calendar_sync_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CalendarSyncStatus.PENDING.value
    )
    calendar_event_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_now_utc,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Booking {self.id} resource={self.resource_id} {self.start_time}-{self.end_time}>"
