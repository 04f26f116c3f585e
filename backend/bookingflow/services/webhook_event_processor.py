# backend/bookingflow/services/webhook_event_processor.py
"""
Webhook Event Processor

Turns a signed processor delivery into at most one state-machine transition.

1. Verify the signature (gateway). Unverifiable deliveries are rejected.
2. Record the event in ``payment_events`` and commit, so the delivery is
   durable before anything acts on it.
3. Re-read the row under lock, apply the event and stamp ``processed_at``
   in one commit. A replay of a processed event is a duplicate.
4. After that commit, run the transition's network side effects.

If step 3 raises, the row stays unprocessed and the error propagates: the
HTTP layer answers 5xx and the processor redelivers.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import (
    DuplicateWebhookEventException,
    PaymentVerificationFailedException,
    RepositoryException,
)
from ..core.timezone_utils import now_utc
from ..models.payment_event import PaymentEvent, PaymentEventStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .booking_state_machine import BookingStateMachine, Transition, TransitionOutcome
from .payment_events import PaymentEventMessage, UnhandledEvent, parse_payment_event
from .payment_session_gateway import PaymentSessionGateway


class IngestOutcome(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    IGNORED = "ignored"


@dataclass(frozen=True)
class IngestResult:
    outcome: IngestOutcome
    event_type: Optional[str] = None
    external_event_id: Optional[str] = None
    transition: Optional[TransitionOutcome] = None
    message: Optional[str] = None


class WebhookEventProcessor(BaseService):
    """Idempotent ingestion of payment processor webhooks."""

    def __init__(
        self,
        db: Session,
        *,
        gateway: PaymentSessionGateway,
        state_machine: BookingStateMachine,
    ) -> None:
        super().__init__(db)
        self.gateway = gateway
        self.state_machine = state_machine
        self.repository = RepositoryFactory.create_payment_event_repository(db)

    @BaseService.measure_operation("webhook_ingest")
    def ingest(self, payload: bytes, signature: Optional[str]) -> IngestResult:
        try:
            event = self.gateway.verify_event(payload, signature)
        except PaymentVerificationFailedException as exc:
            prometheus_metrics.record_webhook_event("unknown", IngestOutcome.REJECTED.value)
            return IngestResult(outcome=IngestOutcome.REJECTED, message=exc.message)

        message = parse_payment_event(event)
        try:
            result = self.process(message, event)
        except DuplicateWebhookEventException:
            result = IngestResult(
                outcome=IngestOutcome.DUPLICATE,
                event_type=message.event_type,
                external_event_id=message.event_id,
                message="Event already processed",
            )
            self.logger.info(
                "Duplicate webhook event skipped",
                extra={"event": "webhook_duplicate", "external_event_id": message.event_id},
            )
        prometheus_metrics.record_webhook_event(message.event_type, result.outcome.value)
        return result

    def process(self, message: PaymentEventMessage, payload: Dict[str, Any]) -> IngestResult:
        """
        Record and apply an already verified event.

        Raises:
            DuplicateWebhookEventException: the event was processed before
        """
        row = self._record(message, payload)

        try:
            with self.transaction():
                locked = self.repository.get_for_update(row.id)
                if locked is None or locked.is_processed:
                    raise DuplicateWebhookEventException(message.event_id)
                locked.attempt_count = (locked.attempt_count or 0) + 1
                transition = self.state_machine.apply(message)
                locked.status = PaymentEventStatus.PROCESSED.value
                locked.processing_error = None
                locked.processed_at = now_utc()
        except DuplicateWebhookEventException:
            raise
        except Exception as exc:
            self._mark_failed(row.id, exc)
            raise

        self._run_followups(transition)

        outcome = (
            IngestOutcome.IGNORED
            if isinstance(message, UnhandledEvent)
            else IngestOutcome.ACCEPTED
        )
        return IngestResult(
            outcome=outcome,
            event_type=message.event_type,
            external_event_id=message.event_id,
            transition=transition.outcome,
        )

    def _record(self, message: PaymentEventMessage, payload: Dict[str, Any]) -> PaymentEvent:
        existing = self.repository.find_by_external_id(message.event_id)
        if existing is not None:
            if existing.is_processed:
                raise DuplicateWebhookEventException(message.event_id)
            return existing

        try:
            with self.transaction():
                return self.repository.create(
                    external_event_id=message.event_id,
                    kind=message.event_type,
                    payment_intent_ref=message.payment_intent_ref,
                    payload=payload,
                    status=PaymentEventStatus.RECEIVED.value,
                    attempt_count=0,
                )
        except RepositoryException:
            # Lost the insert race to a concurrent delivery of the same event.
            existing = self.repository.find_by_external_id(message.event_id)
            if existing is None:
                raise
            if existing.is_processed:
                raise DuplicateWebhookEventException(message.event_id)
            return existing

    def _mark_failed(self, row_id: str, exc: Exception) -> None:
        self.logger.error(
            "Webhook handler failed; event left unprocessed for redelivery",
            extra={"event": "webhook_handler_failed", "payment_event_id": row_id, "error": str(exc)},
            exc_info=True,
        )
        with self.transaction():
            row = self.repository.get_by_id(row_id)
            if row is not None and not row.is_processed:
                row.status = PaymentEventStatus.FAILED.value
                row.processing_error = f"{type(exc).__name__}: {exc}"[:2000]
                row.attempt_count = (row.attempt_count or 0) + 1

    def _run_followups(self, transition: Transition) -> None:
        try:
            self.state_machine.run_followups(transition)
        except Exception:
            # The transition is committed and the event stamped; a failed side
            # effect must not turn into a redelivery.
            self.logger.exception(
                "Post-commit follow-up failed",
                extra={"event": "webhook_followup_failed", "outcome": transition.outcome.value},
            )
