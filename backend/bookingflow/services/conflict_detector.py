# backend/bookingflow/services/conflict_detector.py
"""
Conflict Detector

Re-validates a paid reservation against the current state of its
resource's calendar. Checks run in a fixed priority order and the first
match wins:

1. blocked date: the practitioner blocked the date after the hold was made
2. time overlap: another paid booking now covers part of the range
3. minimum notice: too little time remains before the start

Blocked dates take precedence because they are the practitioner's own
decision; a slot merely taken by someone else ranks below it.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.timezone_utils import ensure_utc, local_date, now_utc
from ..models.slot_reservation import SlotReservation
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..repositories.scheduling_repository import SchedulingRepository
from .base import BaseService

logger = logging.getLogger(__name__)


class ConflictKind(str, Enum):
    BLOCKED_DATE = "blocked_date"
    TIME_OVERLAP = "time_overlap"
    MINIMUM_NOTICE = "minimum_notice"
    # Assigned by the state machine, never by the detector: payment after TTL.
    RESERVATION_EXPIRED = "reservation_expired"
    NONE = "none"


@dataclass(frozen=True)
class ConflictRecord:
    """Computed classification; consumed immediately, never persisted."""

    reservation_id: str
    conflict_kind: ConflictKind
    detected_at: datetime
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_conflict(self) -> bool:
        return self.conflict_kind is not ConflictKind.NONE


class ConflictDetector(BaseService):
    """Service classifying whether a reserved slot is still bookable."""

    def __init__(self, db: Session, repository: Optional[SchedulingRepository] = None):
        """
        Initialize conflict detector.

        Args:
            db: Database session
            repository: Optional SchedulingRepository instance
        """
        super().__init__(db)
        self.repository = repository or RepositoryFactory.create_scheduling_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)

    @BaseService.measure_operation("check_conflict")
    def check_conflict(
        self, reservation: SlotReservation, now: Optional[datetime] = None
    ) -> ConflictRecord:
        """
        Classify ``reservation`` against the resource's current calendar.

        Args:
            reservation: The hold being confirmed
            now: Evaluation time (defaults to the current UTC time)

        Returns:
            ConflictRecord whose kind is ``NONE`` when the slot is still bookable
        """
        now = ensure_utc(now) if now else now_utc()
        start = ensure_utc(reservation.start_time)
        end = ensure_utc(reservation.end_time)

        record = (
            self._check_blocked_date(reservation, start, end, now)
            or self._check_time_overlap(reservation, start, end, now)
            or self._check_minimum_notice(reservation, start, now)
        )
        if record is None:
            return ConflictRecord(
                reservation_id=reservation.id, conflict_kind=ConflictKind.NONE, detected_at=now
            )

        prometheus_metrics.record_conflict(record.conflict_kind.value)
        self.logger.warning(
            "Conflict detected for paid reservation",
            extra={
                "event": "confirmation_conflict",
                "reservation_id": reservation.id,
                "resource_id": reservation.resource_id,
                "conflict_kind": record.conflict_kind.value,
            },
        )
        return record

    def _check_blocked_date(
        self, reservation: SlotReservation, start: datetime, end: datetime, now: datetime
    ) -> Optional[ConflictRecord]:
        # Blocked dates are stored in the practitioner's timezone, which can sit up
        # to a day either side of UTC; widen the query and match exactly below.
        first = (start - timedelta(days=1)).date()
        span = ((end + timedelta(days=1)).date() - first).days
        candidates = {first + timedelta(days=offset) for offset in range(span + 1)}
        for blocked in self.repository.get_blocked_dates(reservation.resource_id, candidates):
            blocked_on: date = blocked.blocked_on
            tz_name = blocked.timezone or "UTC"
            # end_time is exclusive: a slot ending at local midnight does not touch the next day.
            first_day = local_date(start, tz_name)
            last_day = local_date(end - timedelta(microseconds=1), tz_name)
            if first_day <= blocked_on <= last_day:
                return ConflictRecord(
                    reservation_id=reservation.id,
                    conflict_kind=ConflictKind.BLOCKED_DATE,
                    detected_at=now,
                    detail={
                        "blocked_date_id": blocked.id,
                        "blocked_on": blocked_on.isoformat(),
                        "timezone": tz_name,
                    },
                )
        return None

    def _check_time_overlap(
        self, reservation: SlotReservation, start: datetime, end: datetime, now: datetime
    ) -> Optional[ConflictRecord]:
        overlapping = self.booking_repository.find_confirmed_overlapping(
            reservation.resource_id, start, end, exclude_reservation_id=reservation.id
        )
        if not overlapping:
            return None
        return ConflictRecord(
            reservation_id=reservation.id,
            conflict_kind=ConflictKind.TIME_OVERLAP,
            detected_at=now,
            detail={"booking_ids": [b.id for b in overlapping]},
        )

    def _check_minimum_notice(
        self, reservation: SlotReservation, start: datetime, now: datetime
    ) -> Optional[ConflictRecord]:
        required = self.minimum_notice_minutes(reservation.resource_id)
        remaining = (start - now).total_seconds() / 60
        if remaining >= required:
            return None
        return ConflictRecord(
            reservation_id=reservation.id,
            conflict_kind=ConflictKind.MINIMUM_NOTICE,
            detected_at=now,
            detail={"required_minutes": required, "remaining_minutes": round(remaining, 1)},
        )

    def minimum_notice_minutes(self, resource_id: str) -> int:
        scheduling = self.repository.get_settings(resource_id)
        if scheduling is None:
            return settings.default_minimum_notice_minutes
        return int(scheduling.minimum_notice_minutes)
