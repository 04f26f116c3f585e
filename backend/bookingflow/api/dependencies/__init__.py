# backend/bookingflow/api/dependencies/__init__.py
"""
Central export point for all dependencies.
"""

from .database import get_db
from .services import (
    get_checkout_service,
    get_notifier,
    get_payment_gateway,
    get_refund_engine,
    get_reservation_manager,
    get_webhook_processor,
)

__all__ = [
    "get_db",
    "get_checkout_service",
    "get_notifier",
    "get_payment_gateway",
    "get_refund_engine",
    "get_reservation_manager",
    "get_webhook_processor",
]
