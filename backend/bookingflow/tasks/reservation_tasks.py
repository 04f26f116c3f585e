"""
Celery tasks for reservation housekeeping.

Expiry sweep, delayed-payment reminders, calendar sync retries and
settlement of refunds a crashed follow-up left owed. Each task
opens its own session and is safe to run concurrently with webhook traffic:
every state change is a conditional update.
"""

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Dict, ParamSpec, Protocol, TypedDict, TypeVar, cast

from celery.result import AsyncResult
from sqlalchemy.orm import Session

from bookingflow.database import SessionLocal, with_db_retry
from bookingflow.models.slot_reservation import SlotReservation
from bookingflow.services.calendar_sync_service import CalendarSyncService
from bookingflow.services.notification_dispatcher import BookingNotifier
from bookingflow.services.payment_session_gateway import PaymentSessionGateway
from bookingflow.services.refund_decision_engine import RefundDecisionEngine
from bookingflow.services.reservation_reminder_service import ReservationReminderService
from bookingflow.services.slot_reservation_manager import SlotReservationManager
from bookingflow.tasks.celery_app import celery_app

P = ParamSpec("P")
R = TypeVar("R", covariant=True)


class TaskWrapper(Protocol[P, R]):
    def __call__(self, *args: P.args, **kwargs: P.kwargs) -> R:
        ...

    delay: Callable[..., AsyncResult]
    apply_async: Callable[..., AsyncResult]


def typed_task(
    *task_args: Any, **task_kwargs: Any
) -> Callable[[Callable[P, R]], TaskWrapper[P, R]]:
    """Return a typed Celery task decorator for mypy."""

    return cast(
        Callable[[Callable[P, R]], TaskWrapper[P, R]],
        celery_app.task(*task_args, **task_kwargs),
    )


class SweepJobResults(TypedDict):
    swept: int
    notified: int
    processed_at: str


class SettlementJobResults(TypedDict):
    refunded: int
    failed: int
    processed_at: str


logger = logging.getLogger(__name__)


def run_sweep(db: Session, notifier: BookingNotifier | None = None) -> SweepJobResults:
    manager = SlotReservationManager(db)
    notifier = notifier or BookingNotifier()
    swept = with_db_retry("sweep_expired_reservations", manager.sweep)
    notified = sum(1 for reservation in swept if notifier.notify_reservation_expired(reservation))
    return {
        "swept": len(swept),
        "notified": notified,
        "processed_at": datetime.now(timezone.utc).isoformat(),
    }


def run_refund_settlement(
    db: Session,
    gateway: PaymentSessionGateway | None = None,
    notifier: BookingNotifier | None = None,
) -> SettlementJobResults:
    engine = RefundDecisionEngine(db, gateway or PaymentSessionGateway())
    notifier = notifier or BookingNotifier()
    refunded = failed = 0
    for obligation, record in engine.settle_pending():
        if record is None:
            failed += 1
            continue
        refunded += 1
        if obligation.reservation_id is None:
            continue
        reservation = db.get(SlotReservation, obligation.reservation_id)
        if reservation is not None:
            notifier.notify_booking_refunded(
                reservation, conflict_kind=record.conflict_kind, refund_amount=record.amount
            )
    return {
        "refunded": refunded,
        "failed": failed,
        "processed_at": datetime.now(timezone.utc).isoformat(),
    }


@typed_task(
    bind=True, max_retries=3, name="bookingflow.tasks.reservation_tasks.sweep_expired_reservations"
)
def sweep_expired_reservations(self: Any) -> SweepJobResults:
    """
    Release every live hold whose TTL has elapsed.

    Runs every 5 minutes. Converted holds are never live, so a hold that
    became a booking can never be swept.
    """
    db: Session = SessionLocal()
    try:
        results = run_sweep(db)
        if results["swept"]:
            logger.info(
                "Expired reservations swept",
                extra={"event": "sweep_completed", "swept": results["swept"]},
            )
        return results
    finally:
        db.close()


@typed_task(
    bind=True, max_retries=3, name="bookingflow.tasks.reservation_tasks.send_payment_reminders"
)
def send_payment_reminders(self: Any) -> Dict[str, int]:
    """Send due gentle/urgent reminders for delayed-path holds."""
    db: Session = SessionLocal()
    try:
        return ReservationReminderService(db).send_due_reminders()
    finally:
        db.close()


@typed_task(
    bind=True, max_retries=3, name="bookingflow.tasks.reservation_tasks.retry_calendar_sync"
)
def retry_calendar_sync(self: Any, limit: int = 100) -> Dict[str, int]:
    """Retry calendar event creation for bookings whose first sync failed."""
    db: Session = SessionLocal()
    try:
        return CalendarSyncService(db).retry_failed(limit=limit)
    finally:
        db.close()


@typed_task(
    bind=True, max_retries=3, name="bookingflow.tasks.reservation_tasks.settle_pending_refunds"
)
def settle_pending_refunds(self: Any) -> SettlementJobResults:
    """
    Issue refunds that were committed as owed but never reached the processor.

    Failures move to the operator queue and are not retried here.
    """
    db: Session = SessionLocal()
    try:
        results = run_refund_settlement(db)
        if results["refunded"] or results["failed"]:
            logger.info(
                "Pending refunds settled",
                extra={"event": "refund_settlement_completed", **results},
            )
        return results
    finally:
        db.close()
