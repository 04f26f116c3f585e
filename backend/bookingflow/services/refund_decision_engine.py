# backend/bookingflow/services/refund_decision_engine.py
"""
Refund Decision Engine

Decides how much of a conflicted payment to return and settles it through
the payment gateway.

Every owed refund is tracked as a ``RefundRemediation`` obligation:

    pending --processor accepts--> refunded
    pending --any failure--------> open --operator--> resolved

The obligation is written in the same transaction that releases the hold,
so a crash before or during the refund call leaves a ``pending`` row that
the settlement job picks up. Only ``pending`` rows are ever retried; a
refund that failed waits for an operator.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import NoReturn, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import NotFoundException, RefundFailedException, ValidationException
from ..core.timezone_utils import ensure_utc, now_utc
from ..models.refund import RefundRecord, RefundRemediation, RemediationStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .conflict_detector import ConflictKind
from .payment_session_gateway import PaymentSessionGateway

# Customer-first policy: every conflict is refunded in full, no processing fee kept.
REFUND_POLICY_VERSION = "3.0"

# Pending obligations younger than this are assumed to be in flight.
SETTLEMENT_GRACE = timedelta(minutes=15)


@dataclass(frozen=True)
class RefundDecision:
    conflict_kind: ConflictKind
    percentage: int
    original_amount: int
    amount: int
    processing_fee: int = 0
    policy_version: str = REFUND_POLICY_VERSION

    def to_metadata(self) -> dict[str, str]:
        """Metadata attached to the processor refund for audit."""
        return {
            "reason": "slot_unavailable_at_confirmation",
            "conflict_type": self.conflict_kind.value,
            "original_amount": str(self.original_amount),
            "processing_fee": str(self.processing_fee),
            "refund_percentage": str(self.percentage),
            "policy_version": self.policy_version,
        }


class RefundDecisionEngine(BaseService):
    """Decides refund amounts and executes them through the payment gateway."""

    def __init__(self, db: Session, gateway: PaymentSessionGateway) -> None:
        super().__init__(db)
        self.gateway = gateway
        self.records = RepositoryFactory.create_refund_record_repository(db)
        self.remediations = RepositoryFactory.create_refund_remediation_repository(db)

    @staticmethod
    def decide(conflict_kind: ConflictKind) -> int:
        """Refund percentage for a conflict kind. Pure lookup."""
        if conflict_kind is ConflictKind.NONE:
            return 0
        return 100

    def compute(self, conflict_kind: ConflictKind, amount: int) -> RefundDecision:
        percentage = self.decide(conflict_kind)
        return RefundDecision(
            conflict_kind=conflict_kind,
            percentage=percentage,
            original_amount=amount,
            amount=(amount * percentage) // 100,
        )

    def has_obligation(self, payment_intent_ref: str) -> bool:
        """True once a refund was owed for this payment, settled or not."""
        return self.records.get_for_payment_intent(
            payment_intent_ref
        ) is not None or self.remediations.exists_for_payment_intent(payment_intent_ref)

    def register_obligation(
        self,
        payment_intent_ref: str,
        amount: int,
        conflict_kind: ConflictKind,
        *,
        reservation_id: Optional[str] = None,
    ) -> Optional[RefundRemediation]:
        """
        Record that a refund is owed. Flushes but does not commit.

        Returns the existing unsettled obligation for the payment when there
        is one, and None when the policy leaves nothing to refund.
        """
        decision = self.compute(conflict_kind, amount)
        if decision.amount <= 0:
            return None
        return self._obligation_for(payment_intent_ref, decision, reservation_id)

    def _obligation_for(
        self, payment_intent_ref: str, decision: RefundDecision, reservation_id: Optional[str]
    ) -> RefundRemediation:
        existing = self.remediations.get_unsettled_for_payment_intent(payment_intent_ref)
        if existing is not None:
            return existing
        return self.remediations.create(
            payment_intent_ref=payment_intent_ref,
            reservation_id=reservation_id,
            amount=decision.amount,
            conflict_kind=decision.conflict_kind.value,
            transient=False,
            status=RemediationStatus.PENDING.value,
        )

    @BaseService.measure_operation("refund_execute")
    def execute(
        self,
        payment_intent_ref: str,
        amount: int,
        conflict_kind: ConflictKind,
        *,
        reservation_id: Optional[str] = None,
    ) -> RefundRecord:
        """
        Issue the refund for a conflicted payment and record it.

        A RefundRecord is written only after the processor accepts the refund.
        Any failure, returned or raised, turns the obligation into an open
        remediation item and surfaces as ``RefundFailedException``.
        """
        existing = self.records.get_for_payment_intent(payment_intent_ref)
        if existing is not None:
            self.logger.info(
                "Refund already recorded, skipping",
                extra={"event": "refund_already_recorded", "payment_intent_ref": payment_intent_ref},
            )
            self._settle_leftover(payment_intent_ref, existing)
            return existing

        decision = self.compute(conflict_kind, amount)
        if decision.amount <= 0:
            raise ValidationException(
                "Nothing to refund for this payment",
                details={"payment_intent_ref": payment_intent_ref, "conflict_kind": conflict_kind.value},
            )

        with self.transaction():
            obligation = self._obligation_for(payment_intent_ref, decision, reservation_id)

        try:
            result = self.gateway.issue_refund(
                payment_intent_ref,
                decision.amount,
                metadata=decision.to_metadata(),
                idempotency_key=f"conflict-refund:{payment_intent_ref}",
            )
        except Exception as exc:
            self._escalate(
                obligation,
                decision,
                failure_code=type(exc).__name__,
                failure_message=str(exc),
                transient=False,
                cause=exc,
            )

        if not result.ok or result.value is None:
            self._escalate(
                obligation,
                decision,
                failure_code=result.error_code,
                failure_message=result.error_message,
                transient=result.transient,
            )

        confirmation = result.value
        try:
            with self.transaction():
                record = self.records.create(
                    payment_intent_ref=payment_intent_ref,
                    reservation_id=reservation_id,
                    external_refund_ref=confirmation.refund_ref,
                    amount=confirmation.amount,
                    percentage=decision.percentage,
                    conflict_kind=conflict_kind.value,
                    policy_version=decision.policy_version,
                )
                self._mark_refunded(obligation, record)
        except Exception as exc:
            # Another worker may have recorded the same processor refund first.
            recorded = self.records.get_for_payment_intent(payment_intent_ref)
            if recorded is not None:
                self._settle_leftover(payment_intent_ref, recorded)
                return recorded
            self._escalate(
                obligation,
                decision,
                failure_code="refund_not_recorded",
                failure_message=(
                    f"Processor refund {confirmation.refund_ref} succeeded but was not recorded: {exc}"
                ),
                transient=False,
                cause=exc,
            )

        prometheus_metrics.record_refund("issued", conflict_kind.value)
        self.logger.info(
            "Refund issued",
            extra={
                "event": "refund_issued",
                "payment_intent_ref": payment_intent_ref,
                "refund_ref": confirmation.refund_ref,
                "amount": confirmation.amount,
                "conflict_kind": conflict_kind.value,
            },
        )
        return record

    def _mark_refunded(self, obligation: RefundRemediation, record: RefundRecord) -> None:
        obligation.status = RemediationStatus.REFUNDED.value
        obligation.resolution_note = f"Refunded automatically ({record.external_refund_ref})"
        obligation.resolved_at = now_utc()
        self.remediations.flush()

    def _settle_leftover(self, payment_intent_ref: str, record: RefundRecord) -> None:
        with self.transaction():
            obligation = self.remediations.get_unsettled_for_payment_intent(payment_intent_ref)
            if obligation is not None and obligation.status == RemediationStatus.PENDING.value:
                self._mark_refunded(obligation, record)

    def _escalate(
        self,
        obligation: RefundRemediation,
        decision: RefundDecision,
        *,
        failure_code: Optional[str],
        failure_message: Optional[str],
        transient: bool,
        cause: Optional[BaseException] = None,
    ) -> NoReturn:
        """Move the obligation to the operator queue and raise."""
        with self.transaction():
            obligation.status = RemediationStatus.OPEN.value
            obligation.failure_code = failure_code
            obligation.failure_message = failure_message
            obligation.transient = transient
            self.remediations.flush()

        prometheus_metrics.record_refund("failed", decision.conflict_kind.value)
        self.logger.error(
            "Refund failed; queued for operator remediation",
            extra={
                "event": "refund_failed",
                "payment_intent_ref": obligation.payment_intent_ref,
                "remediation_id": obligation.id,
                "error_code": failure_code,
                "transient": transient,
            },
        )
        raise RefundFailedException(
            obligation.payment_intent_ref,
            failure_code=failure_code,
            failure_message=failure_message,
            transient=transient,
            remediation_id=obligation.id,
        ) from cause

    @BaseService.measure_operation("refund_settle_pending")
    def settle_pending(
        self, now: Optional[datetime] = None, limit: int = 50
    ) -> list[tuple[RefundRemediation, Optional[RefundRecord]]]:
        """
        Execute obligations left ``pending`` by an interrupted follow-up.

        Returns each obligation with its RefundRecord, or None when it failed
        and is now waiting on an operator. The processor idempotency key makes
        a refund that went through before the interruption settle without
        paying twice.
        """
        cutoff = (ensure_utc(now) if now else now_utc()) - SETTLEMENT_GRACE
        settled: list[tuple[RefundRemediation, Optional[RefundRecord]]] = []
        for obligation in self.remediations.list_stale_pending(cutoff, limit=limit):
            try:
                record: Optional[RefundRecord] = self.execute(
                    obligation.payment_intent_ref,
                    obligation.amount,
                    ConflictKind(obligation.conflict_kind),
                    reservation_id=obligation.reservation_id,
                )
            except RefundFailedException:
                record = None
            except Exception:
                # Left pending for the next run.
                self.logger.exception(
                    "Pending refund could not be settled",
                    extra={"event": "refund_settlement_error", "remediation_id": obligation.id},
                )
                continue
            settled.append((obligation, record))
        return settled

    def list_remediations(
        self, status: Optional[str] = RemediationStatus.OPEN.value, limit: int = 50
    ) -> list[RefundRemediation]:
        return self.remediations.list_by_status(status, limit=limit)

    @BaseService.measure_operation("refund_resolve_remediation")
    def resolve_remediation(
        self, remediation_id: str, note: str, resolved_at: Optional[datetime] = None
    ) -> RefundRemediation:
        """Close an operator queue item with an audit note."""
        with self.transaction():
            remediation = self.remediations.get_by_id(remediation_id)
            if remediation is None:
                raise NotFoundException(f"Refund remediation {remediation_id} not found")
            if remediation.status in (
                RemediationStatus.PENDING.value,
                RemediationStatus.OPEN.value,
            ):
                remediation.status = RemediationStatus.RESOLVED.value
                remediation.resolution_note = note
                remediation.resolved_at = resolved_at or now_utc()
                self.remediations.flush()
        return remediation
