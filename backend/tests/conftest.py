import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ["CALENDAR_API_URL"] = ""
os.environ["NOTIFICATION_WEBHOOK_URL"] = ""

from datetime import timedelta  # noqa: E402
from typing import Any, Dict, List, Tuple  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
import ulid  # noqa: E402

from bookingflow.database import Base  # noqa: E402

# Import models so Base.metadata is populated for create_all.
import bookingflow.models  # noqa: F401, E402
from bookingflow.models.scheduling import BlockedDate, SchedulingSettings  # noqa: E402
from bookingflow.models.slot_reservation import PaymentPath, SlotReservation  # noqa: E402
from bookingflow.services.booking_state_machine import BookingStateMachine  # noqa: E402
from bookingflow.services.conflict_detector import ConflictDetector  # noqa: E402
from bookingflow.services.notification_dispatcher import BookingNotifier  # noqa: E402
from bookingflow.services.payment_session_gateway import (  # noqa: E402
    GatewayResult,
    PaymentSessionGateway,
    RefundConfirmation,
)
from bookingflow.services.refund_decision_engine import RefundDecisionEngine  # noqa: E402
from bookingflow.services.slot_reservation_manager import SlotReservationManager  # noqa: E402
from tests.helpers.events import NOW  # noqa: E402


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory) -> Session:
    """Plain session on a fresh in-memory database; services commit freely."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_reservation(db):
    """Insert a live hold directly, bypassing the manager."""

    def _make(**overrides: Any) -> SlotReservation:
        now = overrides.pop("now", NOW)
        start = overrides.pop("start_time", now + timedelta(days=3))
        values: Dict[str, Any] = dict(
            resource_id="expert-1",
            start_time=start,
            end_time=overrides.pop("end_time", start + timedelta(hours=1)),
            holder_email="payer@example.com",
            holder_name="Ana Payer",
            payment_session_ref=f"cs_test_{ulid.ULID()}",
            payment_intent_ref=None,
            payment_path=PaymentPath.IMMEDIATE.value,
            amount=5000,
            currency="eur",
            expires_at=now + timedelta(minutes=30),
            created_at=now,
        )
        values.update(overrides)
        reservation = SlotReservation(**values)
        db.add(reservation)
        db.commit()
        return reservation

    return _make


@pytest.fixture
def block_date(db):
    def _block(resource_id: str, blocked_on, timezone_name: str = "UTC") -> BlockedDate:
        blocked = BlockedDate(resource_id=resource_id, blocked_on=blocked_on, timezone=timezone_name)
        db.add(blocked)
        db.commit()
        return blocked

    return _block


@pytest.fixture
def set_minimum_notice(db):
    def _set(resource_id: str, minutes: int) -> SchedulingSettings:
        row = SchedulingSettings(resource_id=resource_id, minimum_notice_minutes=minutes)
        db.add(row)
        db.commit()
        return row

    return _set


class RecordingPublisher:
    """Captures notifications instead of enqueueing Celery tasks."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    def __call__(self, event_type: str, payload: Dict[str, Any]) -> None:
        self.sent.append((event_type, payload))

    @property
    def types(self) -> List[str]:
        return [event_type for event_type, _ in self.sent]


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def notifier(publisher) -> BookingNotifier:
    return BookingNotifier(publish=publisher)


def _refund_ok(payment_intent_ref, amount, metadata=None, idempotency_key=None):
    return GatewayResult.success(
        RefundConfirmation(
            refund_ref=f"re_{payment_intent_ref}",
            payment_intent_ref=payment_intent_ref,
            amount=amount,
            status="succeeded",
        )
    )


@pytest.fixture
def gateway():
    """Gateway double; refunds succeed and echo the requested amount."""
    gw = MagicMock(spec=PaymentSessionGateway)
    gw.issue_refund.side_effect = _refund_ok
    gw.expire_session.return_value = GatewayResult.success("expired")
    return gw


@pytest.fixture
def state_machine(db, gateway, notifier) -> BookingStateMachine:
    return BookingStateMachine(
        db,
        reservation_manager=SlotReservationManager(db),
        conflict_detector=ConflictDetector(db),
        refund_engine=RefundDecisionEngine(db, gateway),
        calendar_sync=None,
        notifier=notifier,
    )
