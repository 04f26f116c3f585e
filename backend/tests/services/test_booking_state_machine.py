# backend/tests/services/test_booking_state_machine.py
"""
Tests for BookingStateMachine.

Events are parsed from realistic Stripe payloads and applied against a
real SQLite database; only the payment gateway and the notification
publisher are doubles.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from bookingflow.models.booking import Booking, BookingPaymentStatus, CalendarSyncStatus
from bookingflow.core.exceptions import ServiceException
from bookingflow.models.refund import RefundRecord, RefundRemediation, RemediationStatus
from bookingflow.models.slot_reservation import PaymentPath, ReleaseReason, SlotReservation
from bookingflow.services.booking_state_machine import TransitionOutcome
from bookingflow.services.conflict_detector import ConflictKind
from bookingflow.services.payment_events import parse_payment_event
from bookingflow.services.payment_session_gateway import GatewayOutcome, GatewayResult
from tests.helpers.events import (
    NOW,
    charge_refunded,
    payment_failed,
    payment_succeeded,
    requires_action,
    session_completed,
    session_event,
    stripe_event,
)


@pytest.fixture
def apply(state_machine, db):
    """Apply one payload, commit, then run the post-commit follow-ups."""

    def _apply(event, now=NOW, followups=True):
        transition = state_machine.apply(parse_payment_event(event), now=now)
        db.commit()
        if followups:
            state_machine.run_followups(transition)
        return transition

    return _apply


def _reload(db, reservation):
    db.expire_all()
    return db.get(SlotReservation, reservation.id)


class TestConfirmation:
    """Paid, conflict-free holds become bookings."""

    def test_payment_confirms_live_hold(self, apply, db, make_reservation, publisher):
        reservation = make_reservation()

        transition = apply(payment_succeeded("pi_1", reservation_id=reservation.id))

        assert transition.outcome is TransitionOutcome.CONFIRMED
        booking = db.query(Booking).one()
        assert booking.created_from_reservation_id == reservation.id
        assert booking.payment_intent_ref == "pi_1"
        assert booking.amount == 5000
        assert booking.payment_status == BookingPaymentStatus.SUCCEEDED.value
        assert booking.calendar_sync_status == CalendarSyncStatus.PENDING.value

        stored = _reload(db, reservation)
        assert stored.release_reason == ReleaseReason.CONVERTED.value
        assert stored.payment_intent_ref == "pi_1"
        assert publisher.types == ["booking_confirmed"]

    def test_paid_session_completed_confirms(self, apply, db, make_reservation):
        reservation = make_reservation()

        transition = apply(
            session_completed(reservation.payment_session_ref, "pi_1", reservation_id=reservation.id)
        )

        assert transition.outcome is TransitionOutcome.CONFIRMED
        assert db.query(Booking).count() == 1

    def test_session_found_by_session_ref_without_metadata(self, apply, db, make_reservation):
        reservation = make_reservation()

        transition = apply(session_completed(reservation.payment_session_ref, "pi_1"))

        assert transition.outcome is TransitionOutcome.CONFIRMED
        assert transition.reservation.id == reservation.id

    def test_intent_attached_earlier_is_enough(self, apply, db, make_reservation):
        reservation = make_reservation()
        attached = apply(
            session_completed(reservation.payment_session_ref, "pi_1", payment_status="unpaid")
        )
        assert attached.outcome is TransitionOutcome.ATTACHED

        # No metadata: the intent ref alone finds the hold.
        transition = apply(payment_succeeded("pi_1"))

        assert transition.outcome is TransitionOutcome.CONFIRMED

    def test_confirmation_runs_calendar_sync(self, state_machine, db, make_reservation):
        calendar_sync = MagicMock()
        state_machine.calendar_sync = calendar_sync
        reservation = make_reservation()

        transition = state_machine.apply(
            parse_payment_event(payment_succeeded("pi_1", reservation_id=reservation.id)), now=NOW
        )
        db.commit()
        calendar_sync.sync_booking.assert_not_called()
        state_machine.run_followups(transition)

        calendar_sync.sync_booking.assert_called_once_with(transition.booking)

    def test_apply_does_not_commit(self, state_machine, db, make_reservation):
        reservation = make_reservation()

        state_machine.apply(
            parse_payment_event(payment_succeeded("pi_1", reservation_id=reservation.id)), now=NOW
        )
        db.rollback()

        assert db.query(Booking).count() == 0
        assert _reload(db, reservation).is_live


class TestDuplicateAndLateEvents:
    """Repeated or late events never book or refund twice."""

    def test_second_success_event_is_noop(self, apply, db, make_reservation, publisher):
        reservation = make_reservation()
        apply(payment_succeeded("pi_1", reservation_id=reservation.id))

        again = apply(payment_succeeded("pi_1", reservation_id=reservation.id))
        session = apply(
            session_completed(reservation.payment_session_ref, "pi_1", reservation_id=reservation.id)
        )

        assert again.outcome is TransitionOutcome.NOOP
        assert session.outcome is TransitionOutcome.NOOP
        assert db.query(Booking).count() == 1
        assert publisher.types == ["booking_confirmed"]

    def test_payment_for_unknown_reservation_is_orphaned(self, apply, db, gateway):
        transition = apply(payment_succeeded("pi_unknown"))

        assert transition.outcome is TransitionOutcome.ORPHANED
        assert db.query(Booking).count() == 0
        gateway.issue_refund.assert_not_called()

    def test_unhandled_event_is_ignored(self, apply):
        transition = apply(stripe_event("customer.created", {"id": "cus_1"}))

        assert transition.outcome is TransitionOutcome.IGNORED

    def test_event_for_unknown_session_is_noop(self, apply):
        transition = apply(session_event("checkout.session.expired", "cs_unknown"))

        assert transition.outcome is TransitionOutcome.NOOP


class TestConflictRefunds:
    """Paid holds that can no longer be honoured are refunded in full."""

    def test_blocked_date_on_voucher_path_refunds_in_full(
        self, apply, db, make_reservation, block_date, gateway, publisher
    ):
        # Hold made at NOW on the voucher path, date blocked two days later,
        # voucher paid five days later.
        start = NOW + timedelta(days=10)
        reservation = make_reservation(
            start_time=start,
            payment_path=PaymentPath.DELAYED.value,
            expires_at=NOW + timedelta(days=7),
        )
        block_date("expert-1", start.date())
        # A competing paid booking as well; the blocked date still wins.
        db.add(
            Booking(
                resource_id="expert-1",
                start_time=start,
                end_time=start + timedelta(hours=1),
                payer_email="other@example.com",
                amount=5000,
            )
        )
        db.commit()

        transition = apply(
            payment_succeeded("pi_1", reservation_id=reservation.id),
            now=NOW + timedelta(days=5),
        )

        assert transition.outcome is TransitionOutcome.REFUND_REQUIRED
        assert transition.conflict_kind is ConflictKind.BLOCKED_DATE
        assert transition.refund_amount == 5000
        assert db.query(Booking).filter_by(created_from_reservation_id=reservation.id).count() == 0
        assert _reload(db, reservation).release_reason == ReleaseReason.CONFLICT.value

        gateway.issue_refund.assert_called_once()
        assert gateway.issue_refund.call_args.args == ("pi_1", 5000)
        record = db.query(RefundRecord).one()
        assert record.percentage == 100
        assert record.conflict_kind == "blocked_date"
        assert record.reservation_id == reservation.id
        assert publisher.types == ["booking_refunded"]
        assert publisher.sent[0][1]["conflict_kind"] == "blocked_date"

    def test_minimum_notice_conflict(self, apply, db, make_reservation, gateway):
        reservation = make_reservation(start_time=NOW + timedelta(hours=3))

        transition = apply(payment_succeeded("pi_1", reservation_id=reservation.id))

        assert transition.outcome is TransitionOutcome.REFUND_REQUIRED
        assert transition.conflict_kind is ConflictKind.MINIMUM_NOTICE
        gateway.issue_refund.assert_called_once()

    def test_repeat_event_after_conflict_does_not_refund_again(
        self, apply, db, make_reservation, block_date, gateway
    ):
        reservation = make_reservation()
        block_date("expert-1", reservation.start_time.date())
        apply(payment_succeeded("pi_1", reservation_id=reservation.id))

        again = apply(
            session_completed(reservation.payment_session_ref, "pi_1", reservation_id=reservation.id)
        )

        assert again.outcome is TransitionOutcome.NOOP
        assert gateway.issue_refund.call_count == 1
        assert db.query(RefundRecord).count() == 1

    def test_refund_failure_is_queued_not_raised(
        self, apply, db, make_reservation, block_date, gateway, publisher
    ):
        gateway.issue_refund.side_effect = None
        gateway.issue_refund.return_value = GatewayResult(
            outcome=GatewayOutcome.TRANSIENT_FAILURE, error_code="rate_limit", attempts=3
        )
        reservation = make_reservation()
        block_date("expert-1", reservation.start_time.date())

        transition = apply(payment_succeeded("pi_1", reservation_id=reservation.id))

        assert transition.outcome is TransitionOutcome.REFUND_REQUIRED
        remediation = db.query(RefundRemediation).one()
        assert remediation.payment_intent_ref == "pi_1"
        assert remediation.transient is True
        assert db.query(RefundRecord).count() == 0
        assert publisher.types == []


class TestRefundObligations:
    """The debt is committed with the release, before any refund call."""

    def test_conflict_commits_pending_obligation(
        self, apply, db, make_reservation, block_date, gateway
    ):
        reservation = make_reservation()
        block_date("expert-1", reservation.start_time.date())

        # Process stops after the commit, before the refund call.
        apply(payment_succeeded("pi_1", reservation_id=reservation.id), followups=False)

        gateway.issue_refund.assert_not_called()
        db.expire_all()
        obligation = db.query(RefundRemediation).one()
        assert obligation.status == RemediationStatus.PENDING.value
        assert obligation.payment_intent_ref == "pi_1"
        assert obligation.reservation_id == reservation.id
        assert obligation.amount == 5000
        assert obligation.conflict_kind == "blocked_date"

    def test_expiry_commits_pending_obligation(self, apply, db, make_reservation):
        reservation = make_reservation(expires_at=NOW - timedelta(minutes=1))

        apply(payment_succeeded("pi_1", reservation_id=reservation.id), followups=False)

        obligation = db.query(RefundRemediation).one()
        assert obligation.status == RemediationStatus.PENDING.value
        assert obligation.conflict_kind == "reservation_expired"

    def test_successful_refund_closes_obligation(self, apply, db, make_reservation, block_date):
        reservation = make_reservation()
        block_date("expert-1", reservation.start_time.date())

        apply(payment_succeeded("pi_1", reservation_id=reservation.id))

        db.expire_all()
        assert db.query(RefundRemediation).one().status == RemediationStatus.REFUNDED.value

    def test_raised_refund_error_is_queued_for_operators(
        self, apply, db, make_reservation, block_date, gateway, publisher
    ):
        gateway.issue_refund.side_effect = ServiceException("Stripe client not configured")
        reservation = make_reservation()
        block_date("expert-1", reservation.start_time.date())

        transition = apply(payment_succeeded("pi_1", reservation_id=reservation.id))
        again = apply(
            session_completed(reservation.payment_session_ref, "pi_1", reservation_id=reservation.id)
        )

        assert transition.outcome is TransitionOutcome.REFUND_REQUIRED
        assert again.outcome is TransitionOutcome.NOOP
        db.expire_all()
        remediation = db.query(RefundRemediation).one()
        assert remediation.status == RemediationStatus.OPEN.value
        assert remediation.failure_code == "ServiceException"
        assert db.query(RefundRecord).count() == 0
        assert publisher.types == []

    def test_unsettled_obligation_blocks_second_refund_for_swept_hold(
        self, apply, db, make_reservation, gateway, state_machine
    ):
        reservation = make_reservation(expires_at=NOW - timedelta(minutes=1))
        state_machine.reservation_manager.sweep(now=NOW)
        db.commit()

        apply(payment_succeeded("pi_1", reservation_id=reservation.id), followups=False)
        second = apply(payment_succeeded("pi_1", reservation_id=reservation.id))

        assert second.outcome is TransitionOutcome.NOOP
        gateway.issue_refund.assert_not_called()
        assert db.query(RefundRemediation).count() == 1


class TestExpiredReservations:
    """Payment after the TTL is refunded, never booked."""

    def test_payment_after_expiry_refunds(self, apply, db, make_reservation, gateway, publisher):
        reservation = make_reservation(expires_at=NOW - timedelta(minutes=1))

        transition = apply(payment_succeeded("pi_1", reservation_id=reservation.id))

        assert transition.outcome is TransitionOutcome.RESERVATION_EXPIRED
        assert transition.conflict_kind is ConflictKind.RESERVATION_EXPIRED
        assert db.query(Booking).count() == 0
        assert _reload(db, reservation).release_reason == ReleaseReason.EXPIRED.value
        assert gateway.issue_refund.call_args.args == ("pi_1", 5000)
        assert db.query(RefundRecord).one().conflict_kind == "reservation_expired"
        assert publisher.types == ["booking_refunded"]

    def test_payment_after_sweep_refunds_once(self, apply, db, make_reservation, gateway, state_machine):
        reservation = make_reservation(expires_at=NOW - timedelta(minutes=1))
        state_machine.reservation_manager.sweep(now=NOW)

        first = apply(payment_succeeded("pi_1", reservation_id=reservation.id))
        second = apply(payment_succeeded("pi_1", reservation_id=reservation.id))

        assert first.outcome is TransitionOutcome.RESERVATION_EXPIRED
        assert second.outcome is TransitionOutcome.NOOP
        assert gateway.issue_refund.call_count == 1

    def test_canceled_hold_paid_anyway_is_refunded(self, apply, make_reservation, state_machine, db):
        reservation = make_reservation()
        state_machine.reservation_manager.release(reservation.id, ReleaseReason.CANCELED, NOW)
        db.commit()

        transition = apply(payment_succeeded("pi_1", reservation_id=reservation.id))

        assert transition.outcome is TransitionOutcome.RESERVATION_EXPIRED


class TestFailuresAndExpiry:
    """Failed payments and expired sessions."""

    def test_card_decline_keeps_hold_for_retry(self, apply, db, make_reservation):
        reservation = make_reservation()

        transition = apply(payment_failed("pi_1", reservation_id=reservation.id))

        assert transition.outcome is TransitionOutcome.NOOP
        assert transition.detail["failure_code"] == "card_declined"
        assert _reload(db, reservation).is_live

    def test_failure_on_delayed_path_releases(self, apply, db, make_reservation):
        reservation = make_reservation(payment_path=PaymentPath.DELAYED.value)

        transition = apply(payment_failed("pi_1", reservation_id=reservation.id))

        assert transition.outcome is TransitionOutcome.RELEASED
        assert _reload(db, reservation).release_reason == ReleaseReason.PAYMENT_FAILED.value

    def test_async_payment_failed_releases(self, apply, db, make_reservation):
        reservation = make_reservation()

        transition = apply(
            session_event(
                "checkout.session.async_payment_failed",
                reservation.payment_session_ref,
                intent_ref="pi_1",
                reservation_id=reservation.id,
            )
        )

        assert transition.outcome is TransitionOutcome.RELEASED
        assert _reload(db, reservation).release_reason == ReleaseReason.PAYMENT_FAILED.value

    def test_session_expired_releases_hold(self, apply, db, make_reservation):
        reservation = make_reservation()

        transition = apply(session_event("checkout.session.expired", reservation.payment_session_ref))

        assert transition.outcome is TransitionOutcome.RELEASED
        assert _reload(db, reservation).release_reason == ReleaseReason.CANCELED.value

    def test_session_expired_after_conversion_is_noop(self, apply, db, make_reservation):
        reservation = make_reservation()
        apply(payment_succeeded("pi_1", reservation_id=reservation.id))

        transition = apply(session_event("checkout.session.expired", reservation.payment_session_ref))

        assert transition.outcome is TransitionOutcome.NOOP
        assert _reload(db, reservation).release_reason == ReleaseReason.CONVERTED.value


class TestDelayedPayment:
    """Voucher issuance extends the hold."""

    def test_requires_action_extends_to_voucher_expiry(self, apply, db, make_reservation):
        reservation = make_reservation()
        voucher_expiry = NOW + timedelta(days=3)

        transition = apply(
            requires_action("pi_1", reservation_id=reservation.id, voucher_expires_at=voucher_expiry)
        )

        assert transition.outcome is TransitionOutcome.EXTENDED
        stored = _reload(db, reservation)
        assert stored.payment_path == PaymentPath.DELAYED.value
        assert stored.payment_intent_ref == "pi_1"
        assert stored.expires_at.replace(tzinfo=None) == voucher_expiry.replace(tzinfo=None)

    def test_requires_action_on_released_hold_is_noop(self, apply, make_reservation, state_machine, db):
        reservation = make_reservation()
        state_machine.reservation_manager.release(reservation.id, ReleaseReason.CANCELED, NOW)
        db.commit()

        transition = apply(requires_action("pi_1", reservation_id=reservation.id))

        assert transition.outcome is TransitionOutcome.NOOP


class TestRefundAcknowledgement:
    """``charge.refunded`` marks refunded bookings."""

    def test_full_refund_marks_booking_refunded(self, apply, db, make_reservation):
        reservation = make_reservation()
        apply(payment_succeeded("pi_1", reservation_id=reservation.id))

        transition = apply(charge_refunded("pi_1", amount_refunded=5000))

        assert transition.outcome is TransitionOutcome.REFUND_ACKNOWLEDGED
        db.expire_all()
        assert db.query(Booking).one().payment_status == BookingPaymentStatus.REFUNDED.value

    def test_partial_refund_leaves_booking_paid(self, apply, db, make_reservation):
        reservation = make_reservation()
        apply(payment_succeeded("pi_1", reservation_id=reservation.id))

        transition = apply(charge_refunded("pi_1", amount_refunded=1000))

        assert transition.outcome is TransitionOutcome.NOOP
        db.expire_all()
        assert db.query(Booking).one().payment_status == BookingPaymentStatus.SUCCEEDED.value

    def test_refund_without_booking_is_noop(self, apply):
        assert apply(charge_refunded("pi_1", amount_refunded=5000)).outcome is TransitionOutcome.NOOP
