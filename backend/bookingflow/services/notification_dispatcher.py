"""
Booking notification dispatch.

Notifications are queued as Celery tasks and delivered out of band. From the
pipeline's point of view they are fire-and-forget: a failure to enqueue is
logged and never propagates into booking or refund handling.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from ..core.timezone_utils import ensure_utc
from ..models.booking import Booking
from ..models.slot_reservation import SlotReservation

logger = logging.getLogger(__name__)

DELIVER_NOTIFICATION_TASK = "bookingflow.tasks.notification_tasks.deliver_notification"

Publisher = Callable[[str, Dict[str, Any]], None]


def _celery_publisher(event_type: str, payload: Dict[str, Any]) -> None:
    from ..tasks.celery_app import celery_app

    celery_app.send_task(
        DELIVER_NOTIFICATION_TASK, kwargs={"event_type": event_type, "payload": payload}
    )


class BookingNotifier:
    """Publishes booking lifecycle notifications."""

    def __init__(self, publish: Optional[Publisher] = None) -> None:
        self._publish = publish or _celery_publisher

    def _send(self, event_type: str, payload: Dict[str, Any]) -> bool:
        try:
            self._publish(event_type, payload)
            return True
        except Exception as exc:
            logger.warning(
                "Notification enqueue failed",
                extra={
                    "event": "notification_enqueue_failed",
                    "notification_type": event_type,
                    "idempotency_key": payload.get("idempotency_key"),
                    "error": str(exc),
                },
            )
            return False

    @staticmethod
    def _slot(resource_id: str, start, end) -> Dict[str, str]:
        return {
            "resource_id": resource_id,
            "start_time": ensure_utc(start).isoformat(),
            "end_time": ensure_utc(end).isoformat(),
        }

    def notify_booking_confirmed(self, booking: Booking) -> bool:
        return self._send(
            "booking_confirmed",
            {
                "idempotency_key": f"booking-confirmed-{booking.id}",
                "booking_id": booking.id,
                "recipient_email": booking.payer_email,
                "recipient_name": booking.payer_name,
                **self._slot(booking.resource_id, booking.start_time, booking.end_time),
            },
        )

    def notify_booking_refunded(
        self,
        reservation: SlotReservation,
        *,
        conflict_kind: str,
        refund_amount: Optional[int],
    ) -> bool:
        return self._send(
            "booking_refunded",
            {
                "idempotency_key": f"booking-refunded-{reservation.id}",
                "reservation_id": reservation.id,
                "recipient_email": reservation.holder_email,
                "recipient_name": reservation.holder_name,
                "conflict_kind": conflict_kind,
                "refund_amount": refund_amount,
                "currency": reservation.currency,
                **self._slot(reservation.resource_id, reservation.start_time, reservation.end_time),
            },
        )

    def notify_reservation_expired(self, reservation: SlotReservation) -> bool:
        return self._send(
            "reservation_expired",
            {
                "idempotency_key": f"reservation-expired-{reservation.id}",
                "reservation_id": reservation.id,
                "recipient_email": reservation.holder_email,
                "recipient_name": reservation.holder_name,
                **self._slot(reservation.resource_id, reservation.start_time, reservation.end_time),
            },
        )

    def notify_payment_reminder(self, reservation: SlotReservation, reminder_type: str) -> bool:
        return self._send(
            "payment_reminder",
            {
                "idempotency_key": f"payment-reminder-{reminder_type}-{reservation.id}",
                "reservation_id": reservation.id,
                "reminder_type": reminder_type,
                "recipient_email": reservation.holder_email,
                "recipient_name": reservation.holder_name,
                "expires_at": ensure_utc(reservation.expires_at).isoformat(),
                **self._slot(reservation.resource_id, reservation.start_time, reservation.end_time),
            },
        )
