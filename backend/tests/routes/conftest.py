import json

from fastapi.testclient import TestClient
import pytest

from bookingflow.api.dependencies import get_db, get_notifier, get_payment_gateway
from bookingflow.main import app
from bookingflow.services.payment_session_gateway import CheckoutSession, GatewayResult


@pytest.fixture
def client(db, gateway, notifier):
    """TestClient bound to the test session, gateway double and recording notifier."""

    def _get_db():
        yield db

    def _create_session(**kwargs):
        ref = f"cs_test_{kwargs['metadata']['reservation_id']}"
        return GatewayResult.success(
            CheckoutSession(session_ref=ref, url=f"https://checkout.test/{ref}", expires_at=None)
        )

    gateway.create_session.side_effect = _create_session
    gateway.verify_event.side_effect = lambda payload, signature: json.loads(payload)

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
