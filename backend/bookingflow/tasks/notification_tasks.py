# backend/bookingflow/tasks/notification_tasks.py
"""
Celery task delivering booking notifications.

The pipeline enqueues notifications and forgets them; this task owns
delivery, retrying with backoff on temporary failures.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from celery.app.task import Task  # noqa: F401 - used for type hints
from celery.utils.log import get_task_logger
import httpx

from bookingflow.core.config import settings
from bookingflow.tasks.celery_app import celery_app

logger = get_task_logger(__name__)

MAX_DELIVERY_ATTEMPTS = 5
BACKOFF_SECONDS = [30, 120, 600, 1800, 7200]


class NotificationTemporaryError(RuntimeError):
    """Delivery failed in a way that may succeed on retry."""


def _next_backoff(attempt_number: int) -> int:
    """Return backoff delay for the given attempt (1-indexed)."""
    index = max(0, min(attempt_number - 1, len(BACKOFF_SECONDS) - 1))
    return BACKOFF_SECONDS[index]


def send_notification(
    event_type: str,
    payload: Dict[str, Any],
    *,
    url: Optional[str] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> bool:
    """
    POST one notification to the delivery endpoint.

    Returns False when no endpoint is configured. Raises
    ``NotificationTemporaryError`` on network errors and 5xx/429 responses.
    """
    target = url or settings.notification_webhook_url
    if not target:
        logger.info("No notification endpoint configured; dropping %s", event_type)
        return False

    headers = {"Content-Type": "application/json"}
    idempotency_key = payload.get("idempotency_key")
    if idempotency_key:
        headers["Idempotency-Key"] = str(idempotency_key)

    try:
        with httpx.Client(timeout=10.0, transport=transport) as client:
            response = client.post(
                target, json={"type": event_type, "payload": payload}, headers=headers
            )
    except httpx.TransportError as exc:
        raise NotificationTemporaryError(str(exc)) from exc

    if response.status_code == 429 or response.status_code >= 500:
        raise NotificationTemporaryError(f"HTTP {response.status_code}")
    response.raise_for_status()
    return True


@celery_app.task(
    name="bookingflow.tasks.notification_tasks.deliver_notification",
    bind=True,
    max_retries=MAX_DELIVERY_ATTEMPTS,
    queue="notifications",
)
def deliver_notification(
    self: "Task[Any, Any]", event_type: str, payload: Dict[str, Any]
) -> bool:
    """Deliver a single notification."""
    try:
        delivered = send_notification(event_type, payload)
    except NotificationTemporaryError as exc:
        attempt_number = self.request.retries + 1
        if attempt_number >= MAX_DELIVERY_ATTEMPTS:
            logger.error(
                "Notification %s failed after %s attempts", payload.get("idempotency_key"), attempt_number
            )
            raise
        backoff = _next_backoff(attempt_number)
        logger.warning(
            "Retrying notification %s attempt=%s backoff=%ss",
            payload.get("idempotency_key"),
            attempt_number,
            backoff,
        )
        raise self.retry(countdown=backoff, exc=exc)

    if delivered:
        logger.info("Delivered notification %s type=%s", payload.get("idempotency_key"), event_type)
    return delivered
