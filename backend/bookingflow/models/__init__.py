# backend/bookingflow/models/__init__.py
"""
Models package for the booking pipeline.

Imports every model so ``Base.metadata`` is complete for ``create_all``.
"""

from .booking import Booking, BookingPaymentStatus, CalendarSyncStatus
from .payment_event import PaymentEvent, PaymentEventStatus
from .refund import RefundRecord, RefundRemediation, RemediationStatus
from .scheduling import BlockedDate, SchedulingSettings
from .slot_reservation import PaymentPath, ReleaseReason, SlotReservation

__all__ = [
    "BlockedDate",
    "Booking",
    "BookingPaymentStatus",
    "CalendarSyncStatus",
    "PaymentEvent",
    "PaymentEventStatus",
    "PaymentPath",
    "RefundRecord",
    "RefundRemediation",
    "ReleaseReason",
    "RemediationStatus",
    "SchedulingSettings",
    "SlotReservation",
]
