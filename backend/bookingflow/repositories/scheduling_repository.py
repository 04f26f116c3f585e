# backend/bookingflow/repositories/scheduling_repository.py
"""
Scheduling constraint queries used by conflict detection.

Read-only: blocked dates and minimum-notice settings are owned by the
practitioner-facing catalog, not by this pipeline.
"""

from datetime import date
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from ..models.scheduling import BlockedDate, SchedulingSettings
from .base_repository import BaseRepository


class SchedulingRepository(BaseRepository[BlockedDate]):
    """Repository for blocked dates and per-resource scheduling settings."""

    def __init__(self, db: Session):
        super().__init__(db, BlockedDate)

    def get_blocked_dates(self, resource_id: str, candidate_dates: Iterable[date]) -> List[BlockedDate]:
        """
        Blocked dates for a resource that fall on any of ``candidate_dates``.

        Callers pass a window of dates wide enough to cover every timezone a
        blocked date might be expressed in; exact matching happens in Python.
        """
        dates = sorted(set(candidate_dates))
        if not dates:
            return []
        query = self._build_query().filter(
            BlockedDate.resource_id == resource_id,
            BlockedDate.blocked_on.in_(dates),
        )
        return self._execute_query(query.order_by(BlockedDate.blocked_on))

    def get_settings(self, resource_id: str) -> Optional[SchedulingSettings]:
        return self._execute_first(
            self.db.query(SchedulingSettings).filter(SchedulingSettings.resource_id == resource_id)
        )
