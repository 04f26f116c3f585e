# backend/bookingflow/services/reservation_reminder_service.py
"""
Payment reminders for holds on the delayed (voucher) path.

Two reminders per hold, each sent at most once:

- gentle: the voucher expires within a few days and the hold is old enough
  that the payer has clearly not paid straight away
- urgent: the voucher expires within a day
"""

from datetime import datetime, timedelta
import logging
from typing import Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.timezone_utils import ensure_utc, now_utc
from ..models.slot_reservation import SlotReservation
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .notification_dispatcher import BookingNotifier

logger = logging.getLogger(__name__)

GENTLE = "gentle"
URGENT = "urgent"


class ReservationReminderService(BaseService):
    """Sends due payment reminders for live delayed-path holds."""

    def __init__(self, db: Session, notifier: Optional[BookingNotifier] = None):
        super().__init__(db)
        self.repository = RepositoryFactory.create_slot_reservation_repository(db)
        self.notifier = notifier or BookingNotifier()

    def _due(self, reservation: SlotReservation, now: datetime) -> Optional[str]:
        expires_in = ensure_utc(reservation.expires_at) - now
        age = now - ensure_utc(reservation.created_at)

        if (
            reservation.urgent_reminder_sent_at is None
            and expires_in <= timedelta(days=settings.urgent_reminder_days_before_expiry)
            and age >= timedelta(hours=settings.urgent_reminder_min_age_hours)
        ):
            return URGENT
        if (
            reservation.gentle_reminder_sent_at is None
            and reservation.urgent_reminder_sent_at is None
            and expires_in <= timedelta(days=settings.gentle_reminder_days_before_expiry)
            and age >= timedelta(hours=settings.gentle_reminder_min_age_hours)
        ):
            return GENTLE
        return None

    @BaseService.measure_operation("send_payment_reminders")
    def send_due_reminders(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = ensure_utc(now) if now else now_utc()
        cutoff = now + timedelta(days=settings.gentle_reminder_days_before_expiry)
        sent = {GENTLE: 0, URGENT: 0}

        for reservation in self.repository.get_delayed_live_expiring_before(cutoff):
            if ensure_utc(reservation.expires_at) <= now:
                continue
            reminder = self._due(reservation, now)
            if reminder is None:
                continue
            if not self.notifier.notify_payment_reminder(reservation, reminder):
                continue
            with self.transaction():
                if reminder == URGENT:
                    reservation.urgent_reminder_sent_at = now
                else:
                    reservation.gentle_reminder_sent_at = now
            sent[reminder] += 1

        if sent[GENTLE] or sent[URGENT]:
            self.logger.info(
                "Payment reminders sent",
                extra={"event": "payment_reminders_sent", **sent},
            )
        return sent
