# backend/bookingflow/repositories/slot_reservation_repository.py
"""
Slot reservation data access.

Every state change on a hold is a conditional ``UPDATE ... WHERE
released_at IS NULL``; the statement that matches the row owns the
transition, so concurrent conversion, sweep and release cannot both win.
"""

from datetime import datetime
import logging
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.slot_reservation import PaymentPath, ReleaseReason, SlotReservation
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class SlotReservationRepository(BaseRepository[SlotReservation]):
    """Repository for slot reservation holds."""

    def __init__(self, db: Session):
        super().__init__(db, SlotReservation)

    def _live(self):
        return self._build_query().filter(SlotReservation.released_at.is_(None))

    def get_by_payment_intent(self, payment_intent_ref: str) -> Optional[SlotReservation]:
        return self._execute_first(
            self._build_query().filter(SlotReservation.payment_intent_ref == payment_intent_ref)
        )

    def get_by_session(self, payment_session_ref: str) -> Optional[SlotReservation]:
        return self._execute_first(
            self._build_query().filter(SlotReservation.payment_session_ref == payment_session_ref)
        )

    def get_for_update(self, reservation_id: str) -> Optional[SlotReservation]:
        """Load a hold with a row lock where the dialect supports one."""
        query = self._build_query().filter(SlotReservation.id == reservation_id)
        return self._execute_first(self._lock_for_update(query).populate_existing())

    def find_live_overlapping(
        self, resource_id: str, start_time: datetime, end_time: datetime
    ) -> List[SlotReservation]:
        query = self._live().filter(
            SlotReservation.resource_id == resource_id,
            SlotReservation.start_time < end_time,
            SlotReservation.end_time > start_time,
        )
        return self._execute_query(query)

    def release(self, reservation_id: str, reason: ReleaseReason, released_at: datetime) -> bool:
        """
        Release a live hold.

        Returns True only for the caller whose update matched a live row.
        """
        stmt = (
            sa.update(SlotReservation)
            .where(SlotReservation.id == reservation_id, SlotReservation.released_at.is_(None))
            .values(released_at=released_at, release_reason=reason.value)
            .returning(SlotReservation.id)
            .execution_options(synchronize_session="fetch")
        )
        try:
            return self.db.execute(stmt).first() is not None
        except SQLAlchemyError as e:
            self.logger.error(f"Error releasing reservation {reservation_id}: {str(e)}")
            raise RepositoryException(f"Failed to release reservation: {str(e)}") from e

    def release_expired_overlapping(
        self, resource_id: str, start_time: datetime, end_time: datetime, now: datetime
    ) -> int:
        """Release dead holds blocking ``[start_time, end_time)`` on one resource."""
        stmt = (
            sa.update(SlotReservation)
            .where(
                SlotReservation.resource_id == resource_id,
                SlotReservation.released_at.is_(None),
                SlotReservation.expires_at < now,
                SlotReservation.start_time < end_time,
                SlotReservation.end_time > start_time,
            )
            .values(released_at=now, release_reason=ReleaseReason.EXPIRED.value)
            .returning(SlotReservation.id)
            .execution_options(synchronize_session="fetch")
        )
        try:
            return len(self.db.execute(stmt).all())
        except SQLAlchemyError as e:
            self.logger.error(f"Error releasing expired holds for {resource_id}: {str(e)}")
            raise RepositoryException(f"Failed to release expired holds: {str(e)}") from e

    def sweep_expired(self, now: datetime, limit: int = 500) -> List[SlotReservation]:
        """
        Release up to ``limit`` live holds whose ``expires_at`` is before ``now``.

        Converted holds are never live, so they can never be swept.
        """
        candidate_ids = (
            sa.select(SlotReservation.id)
            .where(SlotReservation.released_at.is_(None), SlotReservation.expires_at < now)
            .order_by(SlotReservation.expires_at)
            .limit(limit)
            .scalar_subquery()
        )
        stmt = (
            sa.update(SlotReservation)
            .where(
                SlotReservation.id.in_(candidate_ids),
                SlotReservation.released_at.is_(None),
                SlotReservation.expires_at < now,
            )
            .values(released_at=now, release_reason=ReleaseReason.EXPIRED.value)
            .returning(SlotReservation.id)
            .execution_options(synchronize_session="fetch")
        )
        try:
            swept_ids = [row[0] for row in self.db.execute(stmt).all()]
            if not swept_ids:
                return []
            return self._execute_query(
                self._build_query().filter(SlotReservation.id.in_(swept_ids))
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error sweeping expired reservations: {str(e)}")
            raise RepositoryException(f"Failed to sweep reservations: {str(e)}") from e

    def get_delayed_live_expiring_before(self, cutoff: datetime) -> List[SlotReservation]:
        """Live delayed-path holds expiring before ``cutoff`` (reminder candidates)."""
        query = self._live().filter(
            SlotReservation.payment_path == PaymentPath.DELAYED.value,
            SlotReservation.expires_at < cutoff,
        )
        return self._execute_query(query.order_by(SlotReservation.expires_at))
