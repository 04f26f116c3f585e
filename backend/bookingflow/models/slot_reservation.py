# backend/bookingflow/models/slot_reservation.py
"""
Slot reservation model.

A reservation is a time-bounded, exclusive hold on a resource's time range
while checkout is in progress. Rows are never deleted by the pipeline; they
are stamped with ``released_at`` and a ``release_reason`` instead, so late
payment events can still tell a converted hold from an expired one.

Overlap protection lives in the database:

* PostgreSQL: ``EXCLUDE USING gist`` over ``(resource_id, tstzrange)``
  restricted to held rows (live, or converted into a booking).
* SQLite: a ``BEFORE INSERT`` trigger with the same predicate, used by the
  test suite.

Both raise an integrity error named ``slot_reservations_no_overlap``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

import sqlalchemy as sa
from sqlalchemy import DDL, DateTime, Integer, String, event, func
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from bookingflow.database import Base

OVERLAP_CONSTRAINT_NAME = "slot_reservations_no_overlap"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ReleaseReason(str, Enum):
    """Why a hold stopped being live."""

    CONVERTED = "converted"
    EXPIRED = "expired"
    CANCELED = "canceled"
    CONFLICT = "conflict"
    PAYMENT_FAILED = "payment_failed"


class PaymentPath(str, Enum):
    """Settlement path chosen at checkout; decides the hold TTL."""

    IMMEDIATE = "immediate"
    DELAYED = "delayed"


class SlotReservation(Base):
    """Exclusive hold on ``[start_time, end_time)`` for one resource."""

    __tablename__ = "slot_reservations"

    __table_args__ = (
        sa.CheckConstraint("end_time > start_time", name="ck_slot_reservations_range"),
        sa.UniqueConstraint("payment_session_ref", name="uq_slot_reservations_session"),
        sa.UniqueConstraint("payment_intent_ref", name="uq_slot_reservations_intent"),
        sa.Index("ix_slot_reservations_resource_start", "resource_id", "start_time"),
        sa.Index("ix_slot_reservations_live_expiry", "released_at", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    resource_id: Mapped[str] = mapped_column(String(64), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    holder_email: Mapped[str] = mapped_column(String(255), nullable=False)
    holder_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_session_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_intent_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_path: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentPath.IMMEDIATE.value
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="eur")
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    release_reason: Mapped[str | None] = mapped_column(String(20), nullable=True)
    gentle_reminder_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    urgent_reminder_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_now_utc,
        server_default=func.now(),
    )

    @property
    def is_live(self) -> bool:
        return self.released_at is None

    @property
    def is_converted(self) -> bool:
        return self.release_reason == ReleaseReason.CONVERTED.value

    def __repr__(self) -> str:
        return (
            f"<SlotReservation {self.id} resource={self.resource_id} "
            f"{self.start_time}-{self.end_time} released={self.release_reason}>"
        )


_HELD_PREDICATE = "released_at IS NULL OR release_reason = 'converted'"

event.listen(
    SlotReservation.__table__,
    "before_create",
    DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(dialect="postgresql"),
)

event.listen(
    SlotReservation.__table__,
    "after_create",
    DDL(
        f"ALTER TABLE slot_reservations ADD CONSTRAINT {OVERLAP_CONSTRAINT_NAME} "
        "EXCLUDE USING gist (resource_id WITH =, "
        "tstzrange(start_time, end_time, '[)') WITH &&) "
        f"WHERE ({_HELD_PREDICATE})"
    ).execute_if(dialect="postgresql"),
)

event.listen(
    SlotReservation.__table__,
    "after_create",
    DDL(
        f"CREATE TRIGGER IF NOT EXISTS {OVERLAP_CONSTRAINT_NAME} "
        "BEFORE INSERT ON slot_reservations "
        "WHEN EXISTS ("
        "SELECT 1 FROM slot_reservations AS held "
        "WHERE held.resource_id = NEW.resource_id "
        "AND (held.released_at IS NULL OR held.release_reason = 'converted') "
        "AND held.start_time < NEW.end_time "
        "AND held.end_time > NEW.start_time"
        ") "
        f"BEGIN SELECT RAISE(ABORT, '{OVERLAP_CONSTRAINT_NAME}'); END"
    ).execute_if(dialect="sqlite"),
)
