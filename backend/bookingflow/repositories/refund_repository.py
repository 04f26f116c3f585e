"""Refund ledger and refund obligation data access."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from ..models.refund import RefundRecord, RefundRemediation, RemediationStatus
from .base_repository import BaseRepository

UNSETTLED_STATUSES = (RemediationStatus.PENDING.value, RemediationStatus.OPEN.value)


class RefundRecordRepository(BaseRepository[RefundRecord]):
    def __init__(self, db: Session) -> None:
        super().__init__(db, RefundRecord)

    def get_for_payment_intent(self, payment_intent_ref: str) -> RefundRecord | None:
        return self.find_one_by(payment_intent_ref=payment_intent_ref)


class RefundRemediationRepository(BaseRepository[RefundRemediation]):
    def __init__(self, db: Session) -> None:
        super().__init__(db, RefundRemediation)

    def list_by_status(self, status: str | None = None, limit: int = 50) -> list[RefundRemediation]:
        query = self._build_query()
        if status:
            query = query.filter(RefundRemediation.status == status)
        return self._execute_query(query.order_by(RefundRemediation.created_at.desc()).limit(limit))

    def get_unsettled_for_payment_intent(self, payment_intent_ref: str) -> RefundRemediation | None:
        """The pending or open obligation for a payment, if one exists."""
        query = self._build_query().filter(
            RefundRemediation.payment_intent_ref == payment_intent_ref,
            RefundRemediation.status.in_(UNSETTLED_STATUSES),
        )
        return self._execute_first(query.order_by(RefundRemediation.created_at))

    def exists_for_payment_intent(self, payment_intent_ref: str) -> bool:
        return self.exists(payment_intent_ref=payment_intent_ref)

    def list_stale_pending(self, created_before: datetime, limit: int = 50) -> list[RefundRemediation]:
        query = self._build_query().filter(
            RefundRemediation.status == RemediationStatus.PENDING.value,
            RefundRemediation.created_at < created_before,
        )
        return self._execute_query(query.order_by(RefundRemediation.created_at).limit(limit))
