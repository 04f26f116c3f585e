# backend/tests/services/test_refund_decision_engine.py
"""
Tests for RefundDecisionEngine: the refund policy, the refund ledger and
the operator remediation queue.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from bookingflow.core.exceptions import (
    NotFoundException,
    RefundFailedException,
    RepositoryException,
    ServiceException,
    ValidationException,
)
from bookingflow.core.timezone_utils import now_utc
from bookingflow.models.refund import RefundRecord, RefundRemediation, RemediationStatus
from bookingflow.services.conflict_detector import ConflictKind
from bookingflow.services.payment_session_gateway import GatewayOutcome, GatewayResult
from bookingflow.services.refund_decision_engine import REFUND_POLICY_VERSION, RefundDecisionEngine


@pytest.fixture
def engine_under_test(db, gateway) -> RefundDecisionEngine:
    return RefundDecisionEngine(db, gateway)


class TestRefundPolicy:
    """Every conflict is refunded in full."""

    @pytest.mark.parametrize(
        "kind",
        [
            ConflictKind.BLOCKED_DATE,
            ConflictKind.TIME_OVERLAP,
            ConflictKind.MINIMUM_NOTICE,
            ConflictKind.RESERVATION_EXPIRED,
        ],
    )
    def test_conflicts_refund_everything(self, kind):
        assert RefundDecisionEngine.decide(kind) == 100

    def test_no_conflict_refunds_nothing(self):
        assert RefundDecisionEngine.decide(ConflictKind.NONE) == 0

    def test_compute_keeps_no_processing_fee(self, engine_under_test):
        decision = engine_under_test.compute(ConflictKind.BLOCKED_DATE, 4999)

        assert decision.amount == 4999
        assert decision.processing_fee == 0
        assert decision.to_metadata() == {
            "reason": "slot_unavailable_at_confirmation",
            "conflict_type": "blocked_date",
            "original_amount": "4999",
            "processing_fee": "0",
            "refund_percentage": "100",
            "policy_version": REFUND_POLICY_VERSION,
        }


class TestExecuteRefund:
    """Refund execution through the gateway."""

    def test_success_writes_refund_record(self, engine_under_test, gateway, db):
        record = engine_under_test.execute(
            "pi_123", 5000, ConflictKind.BLOCKED_DATE, reservation_id="res-1"
        )

        assert record.amount == 5000
        assert record.percentage == 100
        assert record.external_refund_ref == "re_pi_123"
        assert record.conflict_kind == "blocked_date"
        assert db.query(RefundRecord).count() == 1

        gateway.issue_refund.assert_called_once()
        args, kwargs = gateway.issue_refund.call_args
        assert args == ("pi_123", 5000)
        assert kwargs["idempotency_key"] == "conflict-refund:pi_123"
        assert kwargs["metadata"]["conflict_type"] == "blocked_date"

    def test_existing_record_short_circuits(self, engine_under_test, gateway):
        first = engine_under_test.execute("pi_123", 5000, ConflictKind.TIME_OVERLAP)

        second = engine_under_test.execute("pi_123", 5000, ConflictKind.TIME_OVERLAP)

        assert second.id == first.id
        assert gateway.issue_refund.call_count == 1

    def test_zero_refund_is_rejected(self, engine_under_test, gateway):
        with pytest.raises(ValidationException):
            engine_under_test.execute("pi_123", 5000, ConflictKind.NONE)

        gateway.issue_refund.assert_not_called()

    @pytest.mark.parametrize(
        "outcome, transient",
        [
            (GatewayOutcome.PERMANENT_FAILURE, False),
            (GatewayOutcome.TRANSIENT_FAILURE, True),
        ],
    )
    def test_failure_goes_to_remediation_queue(
        self, engine_under_test, gateway, db, outcome, transient
    ):
        gateway.issue_refund.side_effect = None
        gateway.issue_refund.return_value = GatewayResult(
            outcome=outcome,
            error_code="charge_already_refunded",
            error_message="Charge has already been refunded",
            attempts=3,
        )

        with pytest.raises(RefundFailedException) as exc_info:
            engine_under_test.execute(
                "pi_123", 5000, ConflictKind.MINIMUM_NOTICE, reservation_id="res-1"
            )

        remediation = db.query(RefundRemediation).one()
        assert exc_info.value.remediation_id == remediation.id
        assert exc_info.value.details["transient"] is transient
        assert remediation.status == RemediationStatus.OPEN.value
        assert remediation.failure_code == "charge_already_refunded"
        assert remediation.transient is transient
        assert remediation.amount == 5000
        assert db.query(RefundRecord).count() == 0
        # Never retried from here.
        assert gateway.issue_refund.call_count == 1


    def test_success_settles_the_obligation(self, engine_under_test, db):
        engine_under_test.execute("pi_123", 5000, ConflictKind.BLOCKED_DATE)

        obligation = db.query(RefundRemediation).one()
        assert obligation.status == RemediationStatus.REFUNDED.value
        assert obligation.resolution_note == "Refunded automatically (re_pi_123)"
        assert engine_under_test.list_remediations() == []

    def test_raised_gateway_error_goes_to_remediation_queue(self, engine_under_test, gateway, db):
        gateway.issue_refund.side_effect = ServiceException("Stripe client not configured")

        with pytest.raises(RefundFailedException) as exc_info:
            engine_under_test.execute("pi_123", 5000, ConflictKind.BLOCKED_DATE)

        assert isinstance(exc_info.value.__cause__, ServiceException)
        remediation = db.query(RefundRemediation).one()
        assert remediation.status == RemediationStatus.OPEN.value
        assert remediation.failure_code == "ServiceException"
        assert "not configured" in remediation.failure_message
        assert db.query(RefundRecord).count() == 0

    def test_unrecorded_processor_refund_goes_to_remediation_queue(
        self, engine_under_test, gateway, db
    ):
        with patch.object(
            engine_under_test.records, "create", side_effect=RepositoryException("disk full")
        ):
            with pytest.raises(RefundFailedException):
                engine_under_test.execute("pi_123", 5000, ConflictKind.TIME_OVERLAP)

        gateway.issue_refund.assert_called_once()
        remediation = db.query(RefundRemediation).one()
        assert remediation.status == RemediationStatus.OPEN.value
        assert remediation.failure_code == "refund_not_recorded"
        assert "re_pi_123" in remediation.failure_message


class TestRefundObligations:
    """Owed refunds are tracked from the decision until they settle."""

    def test_register_is_pending_and_idempotent(self, engine_under_test, db):
        first = engine_under_test.register_obligation(
            "pi_123", 5000, ConflictKind.BLOCKED_DATE, reservation_id="res-1"
        )
        second = engine_under_test.register_obligation("pi_123", 5000, ConflictKind.BLOCKED_DATE)
        db.commit()

        assert second.id == first.id
        assert first.status == RemediationStatus.PENDING.value
        assert first.amount == 5000
        assert engine_under_test.has_obligation("pi_123") is True
        assert engine_under_test.has_obligation("pi_other") is False

    def test_nothing_owed_registers_nothing(self, engine_under_test, db):
        assert engine_under_test.register_obligation("pi_123", 5000, ConflictKind.NONE) is None
        assert db.query(RefundRemediation).count() == 0

    def test_execute_settles_registered_obligation(self, engine_under_test, db):
        obligation = engine_under_test.register_obligation("pi_123", 5000, ConflictKind.TIME_OVERLAP)
        db.commit()

        engine_under_test.execute("pi_123", 5000, ConflictKind.TIME_OVERLAP)

        db.expire_all()
        assert db.query(RefundRemediation).one().id == obligation.id
        assert db.get(RefundRemediation, obligation.id).status == RemediationStatus.REFUNDED.value

    def test_settle_pending_executes_stale_obligations(self, engine_under_test, gateway, db):
        engine_under_test.register_obligation(
            "pi_stale", 5000, ConflictKind.RESERVATION_EXPIRED, reservation_id="res-1"
        )
        db.commit()

        assert engine_under_test.settle_pending(now=now_utc()) == []
        settled = engine_under_test.settle_pending(now=now_utc() + timedelta(minutes=20))

        assert len(settled) == 1
        obligation, record = settled[0]
        assert record.external_refund_ref == "re_pi_stale"
        assert obligation.status == RemediationStatus.REFUNDED.value
        assert gateway.issue_refund.call_args.kwargs["idempotency_key"] == "conflict-refund:pi_stale"

    def test_failed_settlement_is_not_retried(self, engine_under_test, gateway, db):
        gateway.issue_refund.side_effect = None
        gateway.issue_refund.return_value = GatewayResult(
            outcome=GatewayOutcome.PERMANENT_FAILURE, error_code="charge_disputed"
        )
        engine_under_test.register_obligation("pi_stale", 5000, ConflictKind.BLOCKED_DATE)
        db.commit()
        later = now_utc() + timedelta(minutes=20)

        first = engine_under_test.settle_pending(now=later)
        second = engine_under_test.settle_pending(now=later)

        assert [record for _, record in first] == [None]
        assert second == []
        assert gateway.issue_refund.call_count == 1
        assert db.query(RefundRemediation).one().status == RemediationStatus.OPEN.value

class TestRemediationQueue:
    """Listing and resolving operator queue items."""

    def _fail_once(self, engine_under_test, gateway, intent="pi_fail"):
        gateway.issue_refund.side_effect = None
        gateway.issue_refund.return_value = GatewayResult(
            outcome=GatewayOutcome.PERMANENT_FAILURE, error_code="card_declined"
        )
        with pytest.raises(RefundFailedException) as exc_info:
            engine_under_test.execute(intent, 1000, ConflictKind.TIME_OVERLAP)
        return exc_info.value.remediation_id

    def test_list_open_remediations(self, engine_under_test, gateway):
        remediation_id = self._fail_once(engine_under_test, gateway)

        items = engine_under_test.list_remediations()

        assert [item.id for item in items] == [remediation_id]

    def test_resolve_closes_item_with_note(self, engine_under_test, gateway):
        remediation_id = self._fail_once(engine_under_test, gateway)

        resolved = engine_under_test.resolve_remediation(remediation_id, "Refunded by hand")

        assert resolved.status == RemediationStatus.RESOLVED.value
        assert resolved.resolution_note == "Refunded by hand"
        assert resolved.resolved_at is not None
        assert engine_under_test.list_remediations() == []
        assert [r.id for r in engine_under_test.list_remediations(status=None)] == [remediation_id]

    def test_resolve_twice_keeps_first_note(self, engine_under_test, gateway):
        remediation_id = self._fail_once(engine_under_test, gateway)
        engine_under_test.resolve_remediation(remediation_id, "first")

        again = engine_under_test.resolve_remediation(remediation_id, "second")

        assert again.resolution_note == "first"

    def test_resolve_unknown_raises_not_found(self, engine_under_test):
        with pytest.raises(NotFoundException):
            engine_under_test.resolve_remediation("01HZZZZZZZZZZZZZZZZZZZZZZZ", "note")
