# backend/bookingflow/tasks/beat_schedule.py
"""
Celery Beat schedule for the booking pipeline.
"""

from typing import Any

from celery.schedules import crontab

CELERYBEAT_SCHEDULE: dict[str, dict[str, Any]] = {
    # Releases abandoned holds so they stop blocking the slot
    "sweep-expired-reservations": {
        "task": "bookingflow.tasks.reservation_tasks.sweep_expired_reservations",
        "schedule": crontab(minute="*/5"),
        "options": {"queue": "reservations", "priority": 8},
    },
    # Voucher payers get a gentle and an urgent nudge before their hold lapses
    "send-payment-reminders": {
        "task": "bookingflow.tasks.reservation_tasks.send_payment_reminders",
        "schedule": crontab(minute=15),
        "options": {"queue": "reservations", "priority": 5},
    },
    "retry-calendar-sync": {
        "task": "bookingflow.tasks.reservation_tasks.retry_calendar_sync",
        "schedule": crontab(minute="*/15"),
        "options": {"queue": "reservations", "priority": 3},
    },
    # Owed refunds a crashed follow-up never issued; failures go to operators
    "settle-pending-refunds": {
        "task": "bookingflow.tasks.reservation_tasks.settle_pending_refunds",
        "schedule": crontab(minute="*/10"),
        "options": {"queue": "reservations", "priority": 7},
    },
}

# Environment-specific overrides
SCHEDULE_CONFIG: dict[str, dict[str, dict[str, Any]]] = {
    "development": {
        "send-payment-reminders": {
            "task": "bookingflow.tasks.reservation_tasks.send_payment_reminders",
            "schedule": crontab(minute="*/10"),
            "options": {"queue": "reservations"},
        },
    },
}


def get_beat_schedule(environment: str = "production") -> dict[str, dict[str, Any]]:
    """
    Get the beat schedule for the specified environment.

    Args:
        environment: The environment name (production, staging, development, test)

    Returns:
        Mapping of task name to Celery beat configuration dict
    """
    base: dict[str, dict[str, Any]] = dict(CELERYBEAT_SCHEDULE)
    overrides = SCHEDULE_CONFIG.get(environment)
    if overrides:
        base.update(overrides)
    return base
