"""Repository helpers for the payment event dedup ledger."""

from __future__ import annotations

from sqlalchemy.orm import Session

from bookingflow.models.payment_event import PaymentEvent
from bookingflow.repositories.base_repository import BaseRepository


class PaymentEventRepository(BaseRepository[PaymentEvent]):
    """Repository for processor events keyed on their external id."""

    def __init__(self, db: Session) -> None:
        super().__init__(db, PaymentEvent)

    def find_by_external_id(self, external_event_id: str) -> PaymentEvent | None:
        return self.find_one_by(external_event_id=external_event_id)

    def get_for_update(self, event_row_id: str) -> PaymentEvent | None:
        """Re-read the ledger row under a lock so concurrent deliveries serialise."""
        query = self._build_query().filter(PaymentEvent.id == event_row_id)
        return self._execute_first(self._lock_for_update(query).populate_existing())
