# backend/bookingflow/services/checkout_service.py
"""
Checkout Service

Starts a paid checkout for a time slot: opens the processor session and
takes the slot hold that the session's payment will later confirm.
"""

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session
import ulid

from ..core.config import settings
from ..core.exceptions import (
    NotFoundException,
    ServiceException,
    SlotConflictException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc, now_utc
from ..models.slot_reservation import PaymentPath, ReleaseReason, SlotReservation
from .base import BaseService
from .payment_session_gateway import PaymentSessionGateway
from .slot_reservation_manager import SlotReservationManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    reservation: SlotReservation
    session_ref: str
    checkout_url: Optional[str]
    payment_path: PaymentPath


class CheckoutService(BaseService):
    """Coordinates the processor session and the slot hold for one checkout."""

    def __init__(
        self,
        db: Session,
        *,
        gateway: PaymentSessionGateway,
        reservation_manager: SlotReservationManager,
    ) -> None:
        super().__init__(db)
        self.gateway = gateway
        self.reservation_manager = reservation_manager

    @BaseService.measure_operation("start_checkout")
    def start_checkout(
        self,
        *,
        resource_id: str,
        start_time: datetime,
        end_time: datetime,
        holder_email: str,
        amount: int,
        payment_methods: Optional[Sequence[str]] = None,
        holder_name: Optional[str] = None,
        description: Optional[str] = None,
        currency: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CheckoutResult:
        """
        Open a checkout session and hold the slot for it.

        The reservation id is minted up front so it can travel in the session
        metadata; every later processor event can then find the hold even
        before the payment intent is attached.

        Raises:
            ValidationException: bad range, slot in the past, bad amount
            SlotConflictException: the slot is already held or booked
            ServiceException: the processor refused to create a session
        """
        now = ensure_utc(now) if now else now_utc()
        start_time = ensure_utc(start_time)
        end_time = ensure_utc(end_time)
        if end_time <= start_time:
            raise ValidationException("End time must be after start time")
        if start_time <= now:
            raise ValidationException("Cannot book a slot in the past")
        if amount <= 0:
            raise ValidationException("Amount must be positive")

        methods: List[str] = [m.lower() for m in (payment_methods or settings.immediate_payment_methods)]
        policy = self.reservation_manager.ttl_policy
        path = policy.path_for_methods(methods)
        ttl = policy.ttl_for(path)
        reservation_id = str(ulid.ULID())

        session_result = self.gateway.create_session(
            amount=amount,
            payment_methods=methods,
            metadata={
                "reservation_id": reservation_id,
                "resource_id": resource_id,
                "start_time": start_time.isoformat(),
                "end_time": end_time.isoformat(),
                "holder_email": holder_email,
            },
            customer_email=holder_email,
            description=description or f"Booking {start_time:%Y-%m-%d %H:%M} UTC",
            currency=currency,
            session_lifetime=ttl,
            idempotency_key=f"checkout:{reservation_id}",
        )
        if not session_result.ok or session_result.value is None:
            raise ServiceException(
                "Could not start checkout with the payment processor",
                code="CHECKOUT_SESSION_FAILED",
                details={
                    "error_code": session_result.error_code,
                    "transient": session_result.transient,
                },
            )
        session = session_result.value

        try:
            reservation = self.reservation_manager.create(
                resource_id=resource_id,
                start_time=start_time,
                end_time=end_time,
                holder_email=holder_email,
                holder_name=holder_name,
                session_ref=session.session_ref,
                ttl=ttl,
                payment_path=path,
                amount=amount,
                currency=currency,
                reservation_id=reservation_id,
                now=now,
            )
        except SlotConflictException:
            expired = self.gateway.expire_session(session.session_ref)
            if not expired.ok:
                self.logger.warning(
                    "Could not expire checkout session after slot conflict",
                    extra={
                        "event": "checkout_session_expire_failed",
                        "session_ref": session.session_ref,
                        "error_code": expired.error_code,
                    },
                )
            raise

        self.log_operation(
            "checkout_started",
            reservation_id=reservation.id,
            session_ref=session.session_ref,
            payment_path=path.value,
        )
        return CheckoutResult(
            reservation=reservation,
            session_ref=session.session_ref,
            checkout_url=session.url,
            payment_path=path,
        )

    @BaseService.measure_operation("cancel_checkout")
    def cancel_reservation(self, reservation_id: str) -> bool:
        """
        Release a hold on the holder's request and close its checkout session.

        Idempotent: returns False when the hold was already released.
        """
        reservation = self.reservation_manager.get(reservation_id)
        if reservation is None:
            raise NotFoundException(f"Reservation {reservation_id} not found")

        with self.transaction():
            released = self.reservation_manager.release(reservation_id, ReleaseReason.CANCELED)

        if released and reservation.payment_session_ref:
            expired = self.gateway.expire_session(reservation.payment_session_ref)
            if not expired.ok:
                self.logger.warning(
                    "Could not expire checkout session for canceled reservation",
                    extra={
                        "event": "checkout_session_expire_failed",
                        "reservation_id": reservation_id,
                        "error_code": expired.error_code,
                    },
                )
        return released
