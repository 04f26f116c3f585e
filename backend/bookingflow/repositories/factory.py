# backend/bookingflow/repositories/factory.py
"""
Repository Factory for the booking pipeline

Provides centralized creation of repository instances,
ensuring consistent initialization and dependency injection.
"""

from sqlalchemy.orm import Session

from .booking_repository import BookingRepository
from .payment_event_repository import PaymentEventRepository
from .refund_repository import RefundRecordRepository, RefundRemediationRepository
from .scheduling_repository import SchedulingRepository
from .slot_reservation_repository import SlotReservationRepository


class RepositoryFactory:
    """
    Factory class for creating repository instances.

    Centralizes repository creation to ensure consistent initialization
    and makes it easy to swap implementations if needed.
    """

    @staticmethod
    def create_slot_reservation_repository(db: Session) -> SlotReservationRepository:
        return SlotReservationRepository(db)

    @staticmethod
    def create_booking_repository(db: Session) -> BookingRepository:
        return BookingRepository(db)

    @staticmethod
    def create_payment_event_repository(db: Session) -> PaymentEventRepository:
        return PaymentEventRepository(db)

    @staticmethod
    def create_refund_record_repository(db: Session) -> RefundRecordRepository:
        return RefundRecordRepository(db)

    @staticmethod
    def create_refund_remediation_repository(db: Session) -> RefundRemediationRepository:
        return RefundRemediationRepository(db)

    @staticmethod
    def create_scheduling_repository(db: Session) -> SchedulingRepository:
        """Create repository for blocked dates and minimum-notice settings."""
        return SchedulingRepository(db)
