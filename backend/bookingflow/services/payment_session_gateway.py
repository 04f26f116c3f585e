# backend/bookingflow/services/payment_session_gateway.py
"""
Payment Session Gateway

Thin, stateless adapter over the Stripe API:
- creates checkout sessions carrying the pending reservation in metadata
- retrieves a session's current status
- issues refunds
- expires abandoned sessions
- verifies webhook signatures

Every network call returns a ``GatewayResult`` instead of raising, so callers
decide explicitly what to do with transient versus permanent failures.
Transient failures (rate limits, connection errors, timeouts, 5xx) are
retried here with exponential backoff; permanent failures are returned
immediately.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
import json
import logging
import random
import time
from typing import Any, Callable, Dict, Generic, Optional, Sequence, TypeVar

import stripe

from ..core.config import settings
from ..core.exceptions import PaymentVerificationFailedException, ServiceException
from ..core.timezone_utils import now_utc
from ..monitoring.prometheus_metrics import prometheus_metrics
from .base import BaseService

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Stripe refuses checkout sessions expiring sooner than 30 minutes or later than 24 hours.
_MIN_SESSION_LIFETIME = timedelta(minutes=30)
_MAX_SESSION_LIFETIME = timedelta(hours=24)


class GatewayOutcome(str, Enum):
    OK = "ok"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class GatewayResult(Generic[T]):
    """Result of a processor call: a value, or a classified failure."""

    outcome: GatewayOutcome
    value: Optional[T] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.outcome is GatewayOutcome.OK

    @property
    def transient(self) -> bool:
        return self.outcome is GatewayOutcome.TRANSIENT_FAILURE

    def unwrap(self) -> T:
        """Return the value or raise ``ServiceException`` for a failure."""
        if not self.ok or self.value is None:
            raise ServiceException(
                self.error_message or "Payment processor call failed",
                code=self.error_code or "GATEWAY_ERROR",
                details={"outcome": self.outcome.value, "attempts": self.attempts},
            )
        return self.value

    @classmethod
    def success(cls, value: T, attempts: int = 1) -> "GatewayResult[T]":
        return cls(outcome=GatewayOutcome.OK, value=value, attempts=attempts)


@dataclass(frozen=True)
class CheckoutSession:
    session_ref: str
    url: Optional[str]
    expires_at: Optional[datetime]


@dataclass(frozen=True)
class SessionSnapshot:
    session_ref: str
    status: str
    payment_status: str
    payment_intent_ref: Optional[str]
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RefundConfirmation:
    refund_ref: str
    payment_intent_ref: str
    amount: int
    status: str


def classify_stripe_error(exc: stripe.StripeError) -> GatewayOutcome:
    """Map a Stripe exception onto transient or permanent."""
    if isinstance(exc, (stripe.RateLimitError, stripe.APIConnectionError)):
        return GatewayOutcome.TRANSIENT_FAILURE
    if isinstance(exc, stripe.IdempotencyError):
        return GatewayOutcome.PERMANENT_FAILURE
    status = getattr(exc, "http_status", None)
    if isinstance(exc, stripe.APIError) and (status is None or status >= 500):
        return GatewayOutcome.TRANSIENT_FAILURE
    if status is not None and status >= 500:
        return GatewayOutcome.TRANSIENT_FAILURE
    return GatewayOutcome.PERMANENT_FAILURE


class PaymentSessionGateway:
    """Stateless adapter to the payment processor."""

    def __init__(
        self,
        *,
        client: Optional[stripe.StripeClient] = None,
        refund_client: Optional[stripe.StripeClient] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.max_attempts = max_attempts or settings.gateway_max_attempts
        self.backoff_seconds = (
            settings.gateway_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self._sleep = sleep
        self._client = client or self._build_client(settings.gateway_timeout_seconds)
        # Refunds get their own HTTP timeout, independent of the DB statement timeout.
        self._refund_client = refund_client or self._build_client(settings.refund_timeout_seconds)

    @staticmethod
    def _build_client(timeout: int) -> Optional[stripe.StripeClient]:
        if not settings.stripe_secret_key:
            logger.warning("Stripe secret key not configured - gateway calls will fail")
            return None
        return stripe.StripeClient(
            settings.stripe_secret_key.get_secret_value(),
            http_client=stripe.RequestsClient(timeout=timeout),
            # Retries are owned by this gateway so they can be classified and counted.
            max_network_retries=0,
        )

    def _require_client(self, client: Optional[stripe.StripeClient]) -> stripe.StripeClient:
        if client is None:
            raise ServiceException(
                "Stripe is not configured. Please check STRIPE_SECRET_KEY.",
                code="GATEWAY_NOT_CONFIGURED",
            )
        return client

    def _retry_delay(self, attempt: int) -> float:
        base = self.backoff_seconds * (2 ** (attempt - 1))
        return base + random.uniform(0, self.backoff_seconds / 4 if self.backoff_seconds else 0)

    def _call(self, op_name: str, func: Callable[[], T]) -> GatewayResult[T]:
        """Run ``func`` with bounded retries on transient failures only."""
        attempt = 1
        while True:
            try:
                return GatewayResult.success(func(), attempts=attempt)
            except stripe.StripeError as exc:
                outcome = classify_stripe_error(exc)
                code = getattr(exc, "code", None) or type(exc).__name__
                message = getattr(exc, "user_message", None) or str(exc)
                if outcome is GatewayOutcome.TRANSIENT_FAILURE and attempt < self.max_attempts:
                    delay = self._retry_delay(attempt)
                    self.logger.warning(
                        "Transient processor failure, retrying",
                        extra={
                            "event": "gateway_retry",
                            "op": op_name,
                            "attempt": attempt,
                            "delay": delay,
                            "error": str(exc),
                        },
                    )
                    prometheus_metrics.record_gateway_retry(op_name)
                    self._sleep(delay)
                    attempt += 1
                    continue

                self.logger.error(
                    "Processor call failed",
                    extra={
                        "event": "gateway_call_failed",
                        "op": op_name,
                        "attempts": attempt,
                        "outcome": outcome.value,
                        "error_code": code,
                    },
                )
                return GatewayResult(
                    outcome=outcome,
                    error_code=code,
                    error_message=message,
                    attempts=attempt,
                )

    @BaseService.measure_operation("gateway_create_session")
    def create_session(
        self,
        *,
        amount: int,
        payment_methods: Sequence[str],
        metadata: Dict[str, str],
        customer_email: str,
        description: str,
        currency: Optional[str] = None,
        session_lifetime: Optional[timedelta] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult[CheckoutSession]:
        """
        Create a hosted checkout session.

        ``metadata`` is copied onto both the session and its payment intent so
        every later event can recover the reservation context on its own.
        """
        client = self._require_client(self._client)
        lifetime = session_lifetime or timedelta(minutes=settings.reservation_short_ttl_minutes)
        lifetime = min(max(lifetime, _MIN_SESSION_LIFETIME), _MAX_SESSION_LIFETIME)
        expires_at = now_utc() + lifetime
        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": list(payment_methods),
            "customer_email": customer_email,
            "line_items": [
                {
                    "price_data": {
                        "currency": currency or settings.stripe_currency,
                        "unit_amount": amount,
                        "product_data": {"name": description},
                    },
                    "quantity": 1,
                }
            ],
            "metadata": dict(metadata),
            "payment_intent_data": {"metadata": dict(metadata)},
            "success_url": settings.checkout_success_url,
            "cancel_url": settings.checkout_cancel_url,
            "expires_at": int(expires_at.timestamp()),
        }
        options: Dict[str, Any] = {}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key

        def _create() -> CheckoutSession:
            session = client.checkout.sessions.create(params=params, options=options)
            return CheckoutSession(
                session_ref=session.id,
                url=getattr(session, "url", None),
                expires_at=expires_at,
            )

        return self._call("create_session", _create)

    @BaseService.measure_operation("gateway_get_session")
    def get_session(self, session_ref: str) -> GatewayResult[SessionSnapshot]:
        client = self._require_client(self._client)

        def _retrieve() -> SessionSnapshot:
            session = client.checkout.sessions.retrieve(session_ref)
            payment_intent = getattr(session, "payment_intent", None)
            if payment_intent is not None and not isinstance(payment_intent, str):
                payment_intent = getattr(payment_intent, "id", None)
            return SessionSnapshot(
                session_ref=session.id,
                status=getattr(session, "status", None) or "unknown",
                payment_status=getattr(session, "payment_status", None) or "unknown",
                payment_intent_ref=payment_intent,
                metadata=dict(getattr(session, "metadata", None) or {}),
            )

        return self._call("get_session", _retrieve)

    @BaseService.measure_operation("gateway_expire_session")
    def expire_session(self, session_ref: str) -> GatewayResult[str]:
        client = self._require_client(self._client)

        def _expire() -> str:
            session = client.checkout.sessions.expire(session_ref)
            return getattr(session, "status", None) or "expired"

        return self._call("expire_session", _expire)

    @BaseService.measure_operation("gateway_issue_refund")
    def issue_refund(
        self,
        payment_intent_ref: str,
        amount: int,
        *,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult[RefundConfirmation]:
        """
        Refund ``amount`` (minor units) of a payment intent.

        The idempotency key makes the in-call retries safe: the processor
        returns the original refund instead of issuing a second one.
        """
        client = self._require_client(self._refund_client)
        params: Dict[str, Any] = {
            "payment_intent": payment_intent_ref,
            "amount": amount,
            "reason": "requested_by_customer",
            "metadata": dict(metadata or {}),
        }
        options: Dict[str, Any] = {
            "idempotency_key": idempotency_key or f"refund:{payment_intent_ref}:{amount}"
        }

        def _refund() -> RefundConfirmation:
            refund = client.refunds.create(params=params, options=options)
            return RefundConfirmation(
                refund_ref=refund.id,
                payment_intent_ref=payment_intent_ref,
                amount=int(getattr(refund, "amount", None) or amount),
                status=getattr(refund, "status", None) or "pending",
            )

        return self._call("issue_refund", _refund)

    def verify_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify the signature of a webhook delivery and return the parsed event.

        Raises:
            PaymentVerificationFailedException: missing/invalid signature or payload
            ServiceException: webhook secret not configured
        """
        if not signature:
            raise PaymentVerificationFailedException("Missing stripe-signature header")
        secret = settings.webhook_secret_value()
        if not secret:
            raise ServiceException("Webhook secret not configured", code="WEBHOOK_NOT_CONFIGURED")
        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as exc:
            self.logger.warning("Invalid webhook signature", extra={"event": "webhook_bad_signature"})
            raise PaymentVerificationFailedException() from exc
        except ValueError as exc:
            raise PaymentVerificationFailedException("Malformed webhook payload") from exc
        event: Dict[str, Any] = json.loads(payload.decode("utf-8"))
        return event
