"""Calendar sync for confirmed bookings."""

from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from bookingflow.core.config import settings
from bookingflow.core.timezone_utils import ensure_utc
from bookingflow.integrations.calendar_client import CalendarClient, CalendarError
from bookingflow.models.booking import Booking, CalendarSyncStatus
from bookingflow.repositories.factory import RepositoryFactory
from bookingflow.services.base import BaseService


def build_calendar_client() -> Optional[CalendarClient]:
    if not settings.calendar_api_url:
        return None
    return CalendarClient(
        base_url=settings.calendar_api_url,
        api_token=settings.calendar_api_token,
        timeout=settings.calendar_timeout_seconds,
    )


class CalendarSyncService(BaseService):
    """
    Pushes confirmed bookings to the calendar service.

    The booking is financially final before this runs; a calendar failure only
    flags the booking for the retry job and never touches the booking itself.
    """

    def __init__(self, db: Session, client: Optional[CalendarClient] = None) -> None:
        super().__init__(db)
        self.client = client if client is not None else build_calendar_client()
        self.booking_repository = RepositoryFactory.create_booking_repository(db)

    @BaseService.measure_operation("calendar_sync_booking")
    def sync_booking(self, booking: Booking) -> bool:
        if booking.calendar_sync_status == CalendarSyncStatus.SYNCED.value:
            return True
        if self.client is None:
            self.logger.debug("Calendar client not configured; booking %s left pending", booking.id)
            return False

        try:
            event_ref = self.client.create_event(
                resource_id=booking.resource_id,
                start_time=ensure_utc(booking.start_time),
                end_time=ensure_utc(booking.end_time),
                attendee_email=booking.payer_email,
                attendee_name=booking.payer_name,
                idempotency_key=f"booking-{booking.id}",
            )
        except CalendarError as exc:
            self.logger.warning(
                "Calendar sync failed",
                extra={
                    "event": "calendar_sync_failed",
                    "booking_id": booking.id,
                    "status_code": exc.status_code,
                    "error": exc.message,
                },
            )
            with self.transaction():
                booking.calendar_sync_status = CalendarSyncStatus.FAILED.value
            return False

        with self.transaction():
            booking.calendar_sync_status = CalendarSyncStatus.SYNCED.value
            booking.calendar_event_ref = event_ref
        return True

    @BaseService.measure_operation("calendar_retry_failed")
    def retry_failed(self, limit: int = 100) -> dict[str, int]:
        results = {"synced": 0, "failed": 0}
        for booking in self.booking_repository.get_calendar_sync_failures(limit=limit):
            if self.sync_booking(booking):
                results["synced"] += 1
            else:
                results["failed"] += 1
        return results
