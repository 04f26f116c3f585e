"""Payment event dedup ledger model."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

import sqlalchemy as sa
from sqlalchemy import DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON
import ulid

from bookingflow.database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class PaymentEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class PaymentEvent(Base):
    """Inbound processor event, keyed on the processor's event id."""

    __tablename__ = "payment_events"

    __table_args__ = (
        sa.UniqueConstraint("external_event_id", name="uq_payment_events_external_event_id"),
        sa.Index("ix_payment_events_status", "status"),
        sa.Index("ix_payment_events_payment_intent", "payment_intent_ref"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(String(100), nullable=False)
    payment_intent_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentEventStatus.RECEIVED.value
    )
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_now_utc,
        server_default=func.now(),
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None
