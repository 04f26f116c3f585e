# backend/bookingflow/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

Routes and Celery tasks build the booking pipeline through the same
factories so both paths wire identical collaborators.
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from ...services.booking_state_machine import BookingStateMachine
from ...services.calendar_sync_service import CalendarSyncService
from ...services.checkout_service import CheckoutService
from ...services.conflict_detector import ConflictDetector
from ...services.notification_dispatcher import BookingNotifier
from ...services.payment_session_gateway import PaymentSessionGateway
from ...services.refund_decision_engine import RefundDecisionEngine
from ...services.slot_reservation_manager import SlotReservationManager
from ...services.webhook_event_processor import WebhookEventProcessor
from .database import get_db


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentSessionGateway:
    """Stateless; one instance per process."""
    return PaymentSessionGateway()


def build_state_machine(
    db: Session,
    gateway: PaymentSessionGateway,
    notifier: BookingNotifier | None = None,
) -> BookingStateMachine:
    return BookingStateMachine(
        db,
        reservation_manager=SlotReservationManager(db),
        conflict_detector=ConflictDetector(db),
        refund_engine=RefundDecisionEngine(db, gateway),
        calendar_sync=CalendarSyncService(db),
        notifier=notifier,
    )


def get_notifier() -> BookingNotifier:
    return BookingNotifier()


def get_reservation_manager(db: Session = Depends(get_db)) -> SlotReservationManager:
    return SlotReservationManager(db)


def get_checkout_service(
    db: Session = Depends(get_db),
    gateway: PaymentSessionGateway = Depends(get_payment_gateway),
) -> CheckoutService:
    return CheckoutService(db, gateway=gateway, reservation_manager=SlotReservationManager(db))


def get_refund_engine(
    db: Session = Depends(get_db),
    gateway: PaymentSessionGateway = Depends(get_payment_gateway),
) -> RefundDecisionEngine:
    return RefundDecisionEngine(db, gateway)


def get_webhook_processor(
    db: Session = Depends(get_db),
    gateway: PaymentSessionGateway = Depends(get_payment_gateway),
    notifier: BookingNotifier = Depends(get_notifier),
) -> WebhookEventProcessor:
    return WebhookEventProcessor(
        db, gateway=gateway, state_machine=build_state_machine(db, gateway, notifier)
    )
