# backend/bookingflow/services/booking_state_machine.py
"""
Booking State Machine

The only writer that turns a slot reservation into a booking or retires it
after payment. Every processor event enters through ``apply``, which
dispatches on the event's class:

    Reserved --paid, no conflict------> Confirmed
    Reserved --paid, conflict---------> Released (conflict) + refund
    Reserved --paid after expiry------> Released (expired) + refund
    Reserved --payment failed---------> Released (payment_failed)
    Reserved --session expired--------> Released (canceled)

``apply`` only touches the database and never commits; the caller owns the
transaction. Network side effects (refunds, calendar, notifications) are
described on the returned ``Transition`` and executed by ``run_followups``
once that transaction has committed.

Any event may arrive in any order and any number of times. Repeated or late
events resolve to ``NOOP`` instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import logging
from typing import Any, Callable, Dict, Optional, Type

from sqlalchemy.orm import Session

from ..core.exceptions import RefundFailedException
from ..core.timezone_utils import ensure_utc, now_utc
from ..models.booking import Booking, BookingPaymentStatus, CalendarSyncStatus
from ..models.slot_reservation import PaymentPath, ReleaseReason, SlotReservation
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .calendar_sync_service import CalendarSyncService
from .conflict_detector import ConflictDetector, ConflictKind, ConflictRecord
from .notification_dispatcher import BookingNotifier
from .payment_events import (
    PaymentEventMessage,
    PaymentFailed,
    PaymentRequiresAction,
    PaymentSucceeded,
    RefundIssued,
    SessionCompleted,
    SessionExpired,
    UnhandledEvent,
)
from .refund_decision_engine import RefundDecisionEngine
from .slot_reservation_manager import SlotReservationManager

logger = logging.getLogger(__name__)


class TransitionOutcome(str, Enum):
    CONFIRMED = "confirmed"
    REFUND_REQUIRED = "refund_required"
    RESERVATION_EXPIRED = "reservation_expired"
    ATTACHED = "attached"
    EXTENDED = "extended"
    RELEASED = "released"
    REFUND_ACKNOWLEDGED = "refund_acknowledged"
    NOOP = "noop"
    ORPHANED = "orphaned"
    IGNORED = "ignored"


@dataclass
class Transition:
    """What ``apply`` did, and what still has to happen after commit."""

    outcome: TransitionOutcome
    reservation: Optional[SlotReservation] = None
    booking: Optional[Booking] = None
    conflict_kind: ConflictKind = ConflictKind.NONE
    payment_intent_ref: Optional[str] = None
    refund_amount: Optional[int] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def needs_refund(self) -> bool:
        return self.outcome in (
            TransitionOutcome.REFUND_REQUIRED,
            TransitionOutcome.RESERVATION_EXPIRED,
        )


class BookingStateMachine(BaseService):
    """Applies typed payment events to reservations and bookings."""

    def __init__(
        self,
        db: Session,
        *,
        reservation_manager: SlotReservationManager,
        conflict_detector: ConflictDetector,
        refund_engine: RefundDecisionEngine,
        calendar_sync: Optional[CalendarSyncService] = None,
        notifier: Optional[BookingNotifier] = None,
    ) -> None:
        super().__init__(db)
        self.reservation_manager = reservation_manager
        self.conflict_detector = conflict_detector
        self.refund_engine = refund_engine
        self.calendar_sync = calendar_sync
        self.notifier = notifier or BookingNotifier()
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self._handlers: Dict[
            Type[Any], Callable[[Any, datetime], Transition]
        ] = {
            SessionCompleted: self._on_session_completed,
            PaymentSucceeded: self._on_payment_succeeded,
            PaymentRequiresAction: self._on_requires_action,
            PaymentFailed: self._on_payment_failed,
            SessionExpired: self._on_session_expired,
            RefundIssued: self._on_refund_issued,
            UnhandledEvent: self._on_unhandled,
        }

    @BaseService.measure_operation("state_machine_apply")
    def apply(self, message: PaymentEventMessage, now: Optional[datetime] = None) -> Transition:
        """Apply one event. Does not commit."""
        now = ensure_utc(now) if now else now_utc()
        handler = self._handlers.get(type(message), self._on_unhandled)
        transition = handler(message, now)
        self.logger.info(
            "Payment event applied",
            extra={
                "event": "state_transition",
                "event_type": message.event_type,
                "event_id": message.event_id,
                "outcome": transition.outcome.value,
                "reservation_id": transition.reservation.id if transition.reservation else None,
                "payment_intent_ref": transition.payment_intent_ref,
            },
        )
        return transition

    # Lookups

    def _resolve_reservation(self, message: PaymentEventMessage) -> Optional[SlotReservation]:
        """
        Find the hold an event belongs to.

        The intent ref is authoritative once attached; the reservation id in
        metadata covers events that overtake the one carrying the intent.
        The row is re-read under lock so concurrent deliveries serialise.
        """
        reservation = None
        if message.payment_intent_ref:
            reservation = self.reservation_manager.get_by_payment_intent(message.payment_intent_ref)
        if reservation is None and message.reservation_id:
            reservation = self.reservation_manager.get(message.reservation_id)
        if reservation is None and isinstance(message, (SessionCompleted, SessionExpired)):
            if message.session_ref:
                reservation = self.reservation_manager.get_by_session(message.session_ref)
        if reservation is None:
            return None
        return self.reservation_manager.repository.get_for_update(reservation.id)

    def _attach(self, reservation: SlotReservation, intent_ref: Optional[str]) -> None:
        if intent_ref and reservation.payment_intent_ref != intent_ref:
            self.reservation_manager.attach_payment_intent(reservation.id, intent_ref)

    # Handlers

    def _on_session_completed(self, message: SessionCompleted, now: datetime) -> Transition:
        if message.paid:
            return self._confirm(message, message.amount, now)

        reservation = self._resolve_reservation(message)
        if reservation is None:
            return self._untracked(message)
        self._attach(reservation, message.payment_intent_ref)
        return Transition(
            TransitionOutcome.ATTACHED,
            reservation=reservation,
            payment_intent_ref=message.payment_intent_ref,
        )

    def _on_payment_succeeded(self, message: PaymentSucceeded, now: datetime) -> Transition:
        return self._confirm(message, message.amount, now)

    def _on_requires_action(self, message: PaymentRequiresAction, now: datetime) -> Transition:
        reservation = self._resolve_reservation(message)
        if reservation is None:
            return self._untracked(message)
        self._attach(reservation, message.payment_intent_ref)
        if not reservation.is_live:
            return Transition(
                TransitionOutcome.NOOP,
                reservation=reservation,
                payment_intent_ref=message.payment_intent_ref,
            )
        self.reservation_manager.extend_for_delayed_payment(
            reservation.id, expires_at=message.voucher_expires_at, now=now
        )
        return Transition(
            TransitionOutcome.EXTENDED,
            reservation=reservation,
            payment_intent_ref=message.payment_intent_ref,
            detail={"expires_at": ensure_utc(reservation.expires_at).isoformat()},
        )

    def _on_payment_failed(self, message: PaymentFailed, now: datetime) -> Transition:
        reservation = self._resolve_reservation(message)
        if reservation is None:
            return self._untracked(message)
        # A declined card leaves the checkout open for another attempt; only a
        # failed voucher or async settlement is final.
        final = (
            message.event_type == "checkout.session.async_payment_failed"
            or reservation.payment_path == PaymentPath.DELAYED.value
        )
        if not final:
            return Transition(
                TransitionOutcome.NOOP,
                reservation=reservation,
                payment_intent_ref=message.payment_intent_ref,
                detail={"failure_code": message.failure_code},
            )
        return self._release(reservation, ReleaseReason.PAYMENT_FAILED, message, now)

    def _on_session_expired(self, message: SessionExpired, now: datetime) -> Transition:
        reservation = self._resolve_reservation(message)
        if reservation is None:
            return self._untracked(message)
        return self._release(reservation, ReleaseReason.CANCELED, message, now)

    def _on_refund_issued(self, message: RefundIssued, now: datetime) -> Transition:
        booking = None
        if message.payment_intent_ref:
            booking = self.booking_repository.get_by_payment_intent(message.payment_intent_ref)
        if booking is None:
            # Acknowledgment of a refund this machine already executed.
            return Transition(TransitionOutcome.NOOP, payment_intent_ref=message.payment_intent_ref)

        refunded = message.amount_refunded or 0
        if refunded >= booking.amount and booking.payment_status != BookingPaymentStatus.REFUNDED.value:
            booking.payment_status = BookingPaymentStatus.REFUNDED.value
            self.booking_repository.flush()
            return Transition(
                TransitionOutcome.REFUND_ACKNOWLEDGED,
                booking=booking,
                payment_intent_ref=message.payment_intent_ref,
            )
        return Transition(
            TransitionOutcome.NOOP, booking=booking, payment_intent_ref=message.payment_intent_ref
        )

    def _on_unhandled(self, message: PaymentEventMessage, now: datetime) -> Transition:
        return Transition(TransitionOutcome.IGNORED, payment_intent_ref=message.payment_intent_ref)

    def _untracked(self, message: PaymentEventMessage) -> Transition:
        self.logger.info(
            "Event for unknown reservation ignored",
            extra={
                "event": "reservation_not_found",
                "event_type": message.event_type,
                "payment_intent_ref": message.payment_intent_ref,
            },
        )
        return Transition(TransitionOutcome.NOOP, payment_intent_ref=message.payment_intent_ref)

    def _release(
        self,
        reservation: SlotReservation,
        reason: ReleaseReason,
        message: PaymentEventMessage,
        now: datetime,
    ) -> Transition:
        released = self.reservation_manager.release(reservation.id, reason, now)
        return Transition(
            TransitionOutcome.RELEASED if released else TransitionOutcome.NOOP,
            reservation=reservation,
            payment_intent_ref=message.payment_intent_ref,
            detail={"reason": reason.value},
        )

    # Confirmation

    def _confirm(
        self, message: PaymentEventMessage, amount: Optional[int], now: datetime
    ) -> Transition:
        intent_ref = message.payment_intent_ref
        reservation = self._resolve_reservation(message)

        if reservation is None:
            if intent_ref and self.booking_repository.get_by_payment_intent(intent_ref):
                return Transition(TransitionOutcome.NOOP, payment_intent_ref=intent_ref)
            prometheus_metrics.record_orphaned_event(message.event_type)
            self.logger.warning(
                "Payment event matches no reservation; discarded",
                extra={
                    "event": "orphaned_payment_event",
                    "event_type": message.event_type,
                    "event_id": message.event_id,
                    "payment_intent_ref": intent_ref,
                },
            )
            return Transition(TransitionOutcome.ORPHANED, payment_intent_ref=intent_ref)

        self._attach(reservation, intent_ref)
        intent_ref = intent_ref or reservation.payment_intent_ref
        paid_amount = amount if amount is not None else reservation.amount

        if reservation.is_converted or self.booking_repository.get_by_reservation_id(reservation.id):
            return Transition(
                TransitionOutcome.NOOP, reservation=reservation, payment_intent_ref=intent_ref
            )

        if not reservation.is_live:
            if reservation.release_reason == ReleaseReason.CONFLICT.value or (
                intent_ref and self.refund_engine.has_obligation(intent_ref)
            ):
                return Transition(
                    TransitionOutcome.NOOP, reservation=reservation, payment_intent_ref=intent_ref
                )
            return self._expired(reservation, intent_ref, paid_amount)

        if ensure_utc(reservation.expires_at) < now:
            self.reservation_manager.release(reservation.id, ReleaseReason.EXPIRED, now)
            return self._expired(reservation, intent_ref, paid_amount)

        record: ConflictRecord = self.conflict_detector.check_conflict(reservation, now=now)
        if record.has_conflict:
            self.reservation_manager.release(reservation.id, ReleaseReason.CONFLICT, now)
            self._owe_refund(reservation, intent_ref, paid_amount, record.conflict_kind)
            return Transition(
                TransitionOutcome.REFUND_REQUIRED,
                reservation=reservation,
                conflict_kind=record.conflict_kind,
                payment_intent_ref=intent_ref,
                refund_amount=paid_amount,
                detail=dict(record.detail),
            )

        if not self.reservation_manager.release(reservation.id, ReleaseReason.CONVERTED, now):
            # Swept between the read and the conversion.
            return self._expired(reservation, intent_ref, paid_amount)

        booking = self.booking_repository.create(
            resource_id=reservation.resource_id,
            start_time=reservation.start_time,
            end_time=reservation.end_time,
            payer_email=reservation.holder_email,
            payer_name=reservation.holder_name,
            payment_status=BookingPaymentStatus.SUCCEEDED.value,
            payment_intent_ref=intent_ref,
            amount=paid_amount,
            currency=reservation.currency,
            created_from_reservation_id=reservation.id,
            calendar_sync_status=CalendarSyncStatus.PENDING.value,
            created_at=now,
        )
        self.logger.info(
            "Reservation converted into booking",
            extra={
                "event": "booking_confirmed",
                "reservation_id": reservation.id,
                "booking_id": booking.id,
                "resource_id": reservation.resource_id,
            },
        )
        return Transition(
            TransitionOutcome.CONFIRMED,
            reservation=reservation,
            booking=booking,
            payment_intent_ref=intent_ref,
        )

    def _expired(
        self, reservation: SlotReservation, intent_ref: Optional[str], amount: int
    ) -> Transition:
        self._owe_refund(reservation, intent_ref, amount, ConflictKind.RESERVATION_EXPIRED)
        self.logger.warning(
            "Payment arrived for expired reservation",
            extra={
                "event": "reservation_expired_on_payment",
                "reservation_id": reservation.id,
                "expires_at": ensure_utc(reservation.expires_at).isoformat(),
            },
        )
        return Transition(
            TransitionOutcome.RESERVATION_EXPIRED,
            reservation=reservation,
            conflict_kind=ConflictKind.RESERVATION_EXPIRED,
            payment_intent_ref=intent_ref,
            refund_amount=amount,
        )

    def _owe_refund(
        self,
        reservation: SlotReservation,
        intent_ref: Optional[str],
        amount: int,
        conflict_kind: ConflictKind,
    ) -> None:
        # Committed with the release, so the debt outlives a crash before the refund call.
        if intent_ref and amount:
            self.refund_engine.register_obligation(
                intent_ref, amount, conflict_kind, reservation_id=reservation.id
            )

    # Post-commit effects

    def run_followups(self, transition: Transition) -> None:
        """
        Execute network side effects for a committed transition.

        Refund failures are already queued for operators by the refund engine
        and are not raised; the booking or release they follow is final. Any
        other error leaves the refund obligation pending for the settlement job.
        """
        if transition.outcome is TransitionOutcome.CONFIRMED and transition.booking is not None:
            if self.calendar_sync is not None:
                self.calendar_sync.sync_booking(transition.booking)
            self.notifier.notify_booking_confirmed(transition.booking)
            return

        if not transition.needs_refund or transition.reservation is None:
            return

        reservation = transition.reservation
        if not transition.payment_intent_ref:
            self.logger.error(
                "Cannot refund payment without an intent reference",
                extra={"event": "refund_missing_intent", "reservation_id": reservation.id},
            )
            return
        if not transition.refund_amount:
            self.logger.info(
                "Nothing was charged; no refund issued",
                extra={"event": "refund_skipped_zero_amount", "reservation_id": reservation.id},
            )
            return

        refunded_amount: Optional[int] = None
        try:
            record = self.refund_engine.execute(
                transition.payment_intent_ref,
                transition.refund_amount,
                transition.conflict_kind,
                reservation_id=reservation.id,
            )
            refunded_amount = record.amount
        except RefundFailedException as exc:
            self.logger.error(
                "Refund requires operator follow-up",
                extra={
                    "event": "refund_remediation_required",
                    "reservation_id": reservation.id,
                    "remediation_id": exc.remediation_id,
                },
            )
            return

        self.notifier.notify_booking_refunded(
            reservation,
            conflict_kind=transition.conflict_kind.value,
            refund_amount=refunded_amount,
        )
