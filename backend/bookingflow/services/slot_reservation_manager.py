# backend/bookingflow/services/slot_reservation_manager.py
"""
Slot Reservation Manager

Owns the lifecycle of slot holds:
- creating an exclusive, time-bounded hold when checkout begins
- attaching the processor's payment intent once it is known
- moving a hold onto the long-TTL path when a voucher is issued
- releasing holds (explicitly, on conversion, on expiry)
- sweeping expired holds

Mutual exclusion is enforced by the database (exclusion constraint on
Postgres, trigger on SQLite). This service only translates the constraint
violation into ``SlotConflictException``; it takes no application locks.
"""

from datetime import datetime, timedelta
import logging
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    ConflictException,
    RepositoryException,
    SlotConflictException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc, now_utc
from ..database.session_utils import integrity_error_mentions
from ..models.slot_reservation import (
    OVERLAP_CONSTRAINT_NAME,
    PaymentPath,
    ReleaseReason,
    SlotReservation,
)
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..repositories.slot_reservation_repository import SlotReservationRepository
from .base import BaseService

logger = logging.getLogger(__name__)


class ReservationTTLPolicy:
    """
    Chooses how long a hold lives.

    Methods listed as immediate settle within the checkout window and get the
    short TTL. Every other method, whether configured as delayed or simply
    unknown, is treated as delayed: releasing a hold while money may still
    arrive would turn a late payment into a refund.
    """

    def __init__(
        self,
        *,
        short_ttl: Optional[timedelta] = None,
        long_ttl: Optional[timedelta] = None,
        immediate_methods: Optional[Iterable[str]] = None,
        delayed_methods: Optional[Iterable[str]] = None,
    ) -> None:
        self.short_ttl = short_ttl or timedelta(minutes=settings.reservation_short_ttl_minutes)
        self.long_ttl = long_ttl or timedelta(hours=settings.reservation_long_ttl_hours)
        self.immediate_methods = {
            m.lower() for m in (immediate_methods or settings.immediate_payment_methods)
        }
        self.delayed_methods = {
            m.lower() for m in (delayed_methods or settings.delayed_payment_methods)
        }

    def path_for_method(self, method: str) -> PaymentPath:
        normalized = method.lower()
        if normalized in self.immediate_methods and normalized not in self.delayed_methods:
            return PaymentPath.IMMEDIATE
        if normalized not in self.delayed_methods:
            logger.info(
                "Unclassified payment method treated as delayed",
                extra={"event": "payment_method_unclassified", "method": normalized},
            )
        return PaymentPath.DELAYED

    def path_for_methods(self, methods: Iterable[str]) -> PaymentPath:
        """Immediate only when every allowed method settles immediately."""
        paths = {self.path_for_method(m) for m in methods}
        if paths == {PaymentPath.IMMEDIATE}:
            return PaymentPath.IMMEDIATE
        return PaymentPath.DELAYED

    def ttl_for(self, path: PaymentPath) -> timedelta:
        return self.short_ttl if path is PaymentPath.IMMEDIATE else self.long_ttl


class SlotReservationManager(BaseService):
    """Service for creating, extending, releasing and sweeping slot holds."""

    def __init__(
        self,
        db: Session,
        repository: Optional[SlotReservationRepository] = None,
        ttl_policy: Optional[ReservationTTLPolicy] = None,
    ):
        super().__init__(db)
        self.repository = repository or RepositoryFactory.create_slot_reservation_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.ttl_policy = ttl_policy or ReservationTTLPolicy()

    @staticmethod
    def _is_overlap_violation(exc: RepositoryException) -> bool:
        cause = exc.__cause__
        return isinstance(cause, IntegrityError) and integrity_error_mentions(
            cause, OVERLAP_CONSTRAINT_NAME
        )

    @BaseService.measure_operation("create_reservation")
    def create(
        self,
        *,
        resource_id: str,
        start_time: datetime,
        end_time: datetime,
        holder_email: str,
        session_ref: str,
        ttl: timedelta,
        holder_name: Optional[str] = None,
        payment_path: PaymentPath = PaymentPath.IMMEDIATE,
        amount: int = 0,
        currency: Optional[str] = None,
        reservation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SlotReservation:
        """
        Create and commit a hold on ``[start_time, end_time)``.

        Raises:
            ValidationException: empty or inverted range, non-positive TTL
            SlotConflictException: another hold or a confirmed booking owns the range
        """
        start_time = ensure_utc(start_time)
        end_time = ensure_utc(end_time)
        now = ensure_utc(now) if now else now_utc()
        if end_time <= start_time:
            raise ValidationException("Reservation end must be after its start")
        if ttl <= timedelta(0):
            raise ValidationException("Reservation TTL must be positive")

        conflict_details = {
            "resource_id": resource_id,
            "start_time": start_time.isoformat(),
            "end_time": end_time.isoformat(),
        }

        try:
            with self.transaction():
                freed = self.repository.release_expired_overlapping(
                    resource_id, start_time, end_time, now
                )
                if freed:
                    prometheus_metrics.record_release(ReleaseReason.EXPIRED.value, freed)
                    self.logger.info(
                        "Released expired holds blocking new reservation",
                        extra={"event": "expired_holds_released", "count": freed, **conflict_details},
                    )

                if self.booking_repository.find_confirmed_overlapping(
                    resource_id, start_time, end_time
                ):
                    raise SlotConflictException(details=conflict_details)

                values = dict(
                    resource_id=resource_id,
                    start_time=start_time,
                    end_time=end_time,
                    holder_email=holder_email,
                    holder_name=holder_name,
                    payment_session_ref=session_ref,
                    payment_path=payment_path.value,
                    amount=amount,
                    currency=(currency or settings.stripe_currency).lower(),
                    expires_at=now + ttl,
                    created_at=now,
                )
                if reservation_id:
                    values["id"] = reservation_id
                reservation = self.repository.create(**values)
        except SlotConflictException:
            prometheus_metrics.record_reservation("conflict", payment_path.value)
            raise
        except RepositoryException as exc:
            if self._is_overlap_violation(exc):
                prometheus_metrics.record_reservation("conflict", payment_path.value)
                self.logger.info(
                    "Reservation rejected by overlap constraint",
                    extra={"event": "reservation_conflict", **conflict_details},
                )
                raise SlotConflictException(details=conflict_details) from exc
            if isinstance(exc.__cause__, IntegrityError):
                raise ConflictException(
                    "A reservation already exists for this checkout session",
                    code="RESERVATION_EXISTS",
                    details={"session_ref": session_ref},
                ) from exc
            raise

        prometheus_metrics.record_reservation("created", payment_path.value)
        self.log_operation(
            "reservation_created",
            reservation_id=reservation.id,
            resource_id=resource_id,
            payment_path=payment_path.value,
        )
        return reservation

    def get(self, reservation_id: str) -> Optional[SlotReservation]:
        return self.repository.get_by_id(reservation_id)

    def get_by_payment_intent(self, payment_intent_ref: str) -> Optional[SlotReservation]:
        return self.repository.get_by_payment_intent(payment_intent_ref)

    def get_by_session(self, session_ref: str) -> Optional[SlotReservation]:
        return self.repository.get_by_session(session_ref)

    @BaseService.measure_operation("attach_payment_intent")
    def attach_payment_intent(self, reservation_id: str, intent_ref: str) -> Optional[SlotReservation]:
        """
        Record the processor's payment intent on a hold. Idempotent.

        Returns None when the reservation does not exist. Does not commit.
        """
        reservation = self.repository.get_by_id(reservation_id)
        if reservation is None:
            return None
        if reservation.payment_intent_ref == intent_ref:
            return reservation
        if reservation.payment_intent_ref is not None:
            self.logger.error(
                "Reservation already bound to a different payment intent",
                extra={
                    "event": "payment_intent_mismatch",
                    "reservation_id": reservation_id,
                    "existing": reservation.payment_intent_ref,
                    "incoming": intent_ref,
                },
            )
            raise ConflictException(
                "Reservation is bound to a different payment intent",
                code="PAYMENT_INTENT_MISMATCH",
                details={"reservation_id": reservation_id},
            )
        reservation.payment_intent_ref = intent_ref
        self.repository.flush()
        return reservation

    @BaseService.measure_operation("extend_for_delayed_payment")
    def extend_for_delayed_payment(
        self,
        reservation_id: str,
        *,
        expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Optional[SlotReservation]:
        """
        Move a live hold onto the delayed path.

        ``expires_at`` is the voucher expiry reported by the processor; without
        one the long TTL applies. Released holds are left untouched. Does not commit.
        """
        reservation = self.repository.get_by_id(reservation_id)
        if reservation is None or not reservation.is_live:
            return reservation
        now = ensure_utc(now) if now else now_utc()
        new_expiry = ensure_utc(expires_at) if expires_at else now + self.ttl_policy.long_ttl
        reservation.payment_path = PaymentPath.DELAYED.value
        reservation.expires_at = new_expiry
        self.repository.flush()
        self.logger.info(
            "Reservation moved to delayed payment path",
            extra={
                "event": "reservation_extended",
                "reservation_id": reservation_id,
                "expires_at": new_expiry.isoformat(),
            },
        )
        return reservation

    @BaseService.measure_operation("release_reservation")
    def release(
        self,
        reservation_id: str,
        reason: ReleaseReason = ReleaseReason.CANCELED,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Release a hold. Safe to repeat: returns False when nothing was live.

        Conversion into a booking goes through ``BookingStateMachine``, which
        calls this with ``ReleaseReason.CONVERTED`` in the same transaction as
        the booking insert. Does not commit.
        """
        released_at = ensure_utc(now) if now else now_utc()
        released = self.repository.release(reservation_id, reason, released_at)
        if released:
            prometheus_metrics.record_release(reason.value)
            self.logger.info(
                "Reservation released",
                extra={
                    "event": "reservation_released",
                    "reservation_id": reservation_id,
                    "reason": reason.value,
                },
            )
        return released

    @BaseService.measure_operation("sweep_reservations")
    def sweep(self, now: Optional[datetime] = None, batch_size: int = 500) -> List[SlotReservation]:
        """
        Release every live hold with ``expires_at < now`` and commit.

        Works in batches so one sweep never holds a long transaction.
        """
        now = ensure_utc(now) if now else now_utc()
        swept: List[SlotReservation] = []
        while True:
            with self.transaction():
                batch = self.repository.sweep_expired(now, limit=batch_size)
            swept.extend(batch)
            if len(batch) < batch_size:
                break

        if swept:
            prometheus_metrics.record_release(ReleaseReason.EXPIRED.value, len(swept))
            self.logger.info(
                "Swept expired reservations",
                extra={"event": "reservations_swept", "count": len(swept)},
            )
        return swept
