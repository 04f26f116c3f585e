# backend/bookingflow/repositories/__init__.py
"""
Repository layer for the booking pipeline.

Repositories wrap data access and never commit; services own transactions.
"""

from .base_repository import BaseRepository
from .booking_repository import BookingRepository
from .factory import RepositoryFactory
from .payment_event_repository import PaymentEventRepository
from .refund_repository import RefundRecordRepository, RefundRemediationRepository
from .scheduling_repository import SchedulingRepository
from .slot_reservation_repository import SlotReservationRepository

__all__ = [
    "BaseRepository",
    "BookingRepository",
    "PaymentEventRepository",
    "RefundRecordRepository",
    "RefundRemediationRepository",
    "RepositoryFactory",
    "SchedulingRepository",
    "SlotReservationRepository",
]
