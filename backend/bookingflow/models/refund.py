"""Refund ledger and operator remediation queue."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from bookingflow.database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class RemediationStatus(str, Enum):
    # Owed and not yet settled by the processor.
    PENDING = "pending"
    # Refund failed; waiting on an operator.
    OPEN = "open"
    RESOLVED = "resolved"
    # Settled automatically once the processor accepted the refund.
    REFUNDED = "refunded"


class RefundRecord(Base):
    """Append-only record of a refund the processor accepted."""

    __tablename__ = "refund_records"

    __table_args__ = (
        sa.UniqueConstraint("external_refund_ref", name="uq_refund_records_external_ref"),
        sa.Index("ix_refund_records_payment_intent", "payment_intent_ref"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    payment_intent_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    reservation_id: Mapped[str | None] = mapped_column(String(26), nullable=True)
    external_refund_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    percentage: Mapped[int] = mapped_column(Integer, nullable=False)
    conflict_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    policy_version: Mapped[str] = mapped_column(String(10), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_now_utc,
        server_default=func.now(),
    )


class RefundRemediation(Base):
    """
    A refund owed to a payer, from the moment it is decided until it settles.

    Written as ``pending`` in the same transaction that releases the hold, so
    the obligation survives a crash before the refund call. Failed refunds
    become ``open`` operator queue items.
    """

    __tablename__ = "refund_remediations"

    __table_args__ = (
        sa.Index("ix_refund_remediations_status", "status"),
        sa.Index("ix_refund_remediations_payment_intent", "payment_intent_ref"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    payment_intent_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    reservation_id: Mapped[str | None] = mapped_column(String(26), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    conflict_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    failure_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    failure_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    transient: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RemediationStatus.OPEN.value
    )
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_now_utc,
        server_default=func.now(),
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
