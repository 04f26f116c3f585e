"""Booking data access."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.booking import Booking, BookingPaymentStatus, CalendarSyncStatus
from .base_repository import BaseRepository


class BookingRepository(BaseRepository[Booking]):
    """Repository for confirmed bookings."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)

    def get_by_reservation_id(self, reservation_id: str) -> Optional[Booking]:
        return self.find_one_by(created_from_reservation_id=reservation_id)

    def get_by_payment_intent(self, payment_intent_ref: str) -> Optional[Booking]:
        return self.find_one_by(payment_intent_ref=payment_intent_ref)

    def find_confirmed_overlapping(
        self,
        resource_id: str,
        start_time: datetime,
        end_time: datetime,
        exclude_reservation_id: Optional[str] = None,
    ) -> List[Booking]:
        """Paid bookings on ``resource_id`` intersecting ``[start_time, end_time)``."""
        query = self._build_query().filter(
            Booking.resource_id == resource_id,
            Booking.payment_status == BookingPaymentStatus.SUCCEEDED.value,
            Booking.start_time < end_time,
            Booking.end_time > start_time,
        )
        if exclude_reservation_id:
            query = query.filter(
                (Booking.created_from_reservation_id.is_(None))
                | (Booking.created_from_reservation_id != exclude_reservation_id)
            )
        return self._execute_query(query)

    def get_calendar_sync_failures(self, limit: int = 100) -> List[Booking]:
        query = (
            self._build_query()
            .filter(Booking.calendar_sync_status == CalendarSyncStatus.FAILED.value)
            .order_by(Booking.created_at)
            .limit(limit)
        )
        return self._execute_query(query)
