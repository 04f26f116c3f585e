"""
Typed payment events.

Processor webhooks are parsed once into one of the frozen dataclasses
below; ``BookingStateMachine.apply`` dispatches on the class, so no code
downstream of the parser branches on raw event-type strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union


@dataclass(frozen=True)
class _EventBase:
    event_id: str
    event_type: str
    payment_intent_ref: Optional[str]
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def reservation_id(self) -> Optional[str]:
        return self.metadata.get("reservation_id") or None


@dataclass(frozen=True)
class SessionCompleted(_EventBase):
    """Checkout finished. ``paid`` is False for voucher methods still awaiting settlement."""

    session_ref: str = ""
    paid: bool = False
    amount: Optional[int] = None


@dataclass(frozen=True)
class SessionExpired(_EventBase):
    session_ref: str = ""


@dataclass(frozen=True)
class PaymentRequiresAction(_EventBase):
    """Voucher issued; the payer has until ``voucher_expires_at`` to pay."""

    voucher_expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentSucceeded(_EventBase):
    amount: Optional[int] = None


@dataclass(frozen=True)
class PaymentFailed(_EventBase):
    failure_code: Optional[str] = None


@dataclass(frozen=True)
class RefundIssued(_EventBase):
    amount_refunded: Optional[int] = None


@dataclass(frozen=True)
class UnhandledEvent(_EventBase):
    pass


PaymentEventMessage = Union[
    SessionCompleted,
    SessionExpired,
    PaymentRequiresAction,
    PaymentSucceeded,
    PaymentFailed,
    RefundIssued,
    UnhandledEvent,
]


def _metadata(obj: Mapping[str, Any]) -> Dict[str, str]:
    raw = obj.get("metadata") or {}
    return {str(k): str(v) for k, v in raw.items() if v is not None}


def _ref(value: Any) -> Optional[str]:
    """Expandable Stripe fields arrive either as an id or as an object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        ref = value.get("id")
        return str(ref) if ref else None
    return None


def _voucher_expiry(intent: Mapping[str, Any]) -> Optional[datetime]:
    next_action = intent.get("next_action") or {}
    action_type = next_action.get("type")
    details = next_action.get(action_type) if action_type else None
    if not isinstance(details, Mapping):
        return None
    expires = details.get("expires_at") or details.get("expires_after")
    if expires is None:
        return None
    try:
        return datetime.fromtimestamp(int(expires), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def parse_payment_event(event: Mapping[str, Any]) -> PaymentEventMessage:
    """Map a verified Stripe event payload onto a typed message."""
    event_id = str(event.get("id") or "")
    event_type = str(event.get("type") or "")
    obj: Mapping[str, Any] = (event.get("data") or {}).get("object") or {}
    metadata = _metadata(obj)

    if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
        paid = event_type.endswith("async_payment_succeeded") or obj.get("payment_status") in (
            "paid",
            "no_payment_required",
        )
        return SessionCompleted(
            event_id=event_id,
            event_type=event_type,
            payment_intent_ref=_ref(obj.get("payment_intent")),
            metadata=metadata,
            session_ref=str(obj.get("id") or ""),
            paid=paid,
            amount=obj.get("amount_total"),
        )
    if event_type == "checkout.session.expired":
        return SessionExpired(
            event_id=event_id,
            event_type=event_type,
            payment_intent_ref=_ref(obj.get("payment_intent")),
            metadata=metadata,
            session_ref=str(obj.get("id") or ""),
        )
    if event_type == "checkout.session.async_payment_failed":
        return PaymentFailed(
            event_id=event_id,
            event_type=event_type,
            payment_intent_ref=_ref(obj.get("payment_intent")),
            metadata=metadata,
            failure_code="async_payment_failed",
        )
    if event_type == "payment_intent.requires_action":
        return PaymentRequiresAction(
            event_id=event_id,
            event_type=event_type,
            payment_intent_ref=_ref(obj.get("id")),
            metadata=metadata,
            voucher_expires_at=_voucher_expiry(obj),
        )
    if event_type == "payment_intent.succeeded":
        return PaymentSucceeded(
            event_id=event_id,
            event_type=event_type,
            payment_intent_ref=_ref(obj.get("id")),
            metadata=metadata,
            amount=obj.get("amount_received") or obj.get("amount"),
        )
    if event_type == "payment_intent.payment_failed":
        error = obj.get("last_payment_error") or {}
        return PaymentFailed(
            event_id=event_id,
            event_type=event_type,
            payment_intent_ref=_ref(obj.get("id")),
            metadata=metadata,
            failure_code=error.get("code"),
        )
    if event_type == "charge.refunded":
        return RefundIssued(
            event_id=event_id,
            event_type=event_type,
            payment_intent_ref=_ref(obj.get("payment_intent")),
            metadata=metadata,
            amount_refunded=obj.get("amount_refunded"),
        )
    return UnhandledEvent(
        event_id=event_id,
        event_type=event_type,
        payment_intent_ref=_ref(obj.get("payment_intent")),
        metadata=metadata,
    )
