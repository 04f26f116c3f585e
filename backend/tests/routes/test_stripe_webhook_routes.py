# backend/tests/routes/test_stripe_webhook_routes.py
"""
Tests for the Stripe webhook endpoint's response contract:
400 for unverifiable deliveries, 200 once recorded, 500 when the handler
fails so that Stripe redelivers.
"""

from unittest.mock import patch

import pytest

from bookingflow.core.exceptions import PaymentVerificationFailedException
from bookingflow.models.booking import Booking
from bookingflow.models.payment_event import PaymentEvent
from tests.helpers.events import NOW, as_payload, payment_succeeded, stripe_event

URL = "/webhooks/stripe/payment-events"


@pytest.fixture(autouse=True)
def frozen_clock():
    with patch("bookingflow.services.booking_state_machine.now_utc", return_value=NOW):
        yield


def _post(client, event, signature="t=1,v1=sig"):
    headers = {"Content-Type": "application/json"}
    if signature:
        headers["Stripe-Signature"] = signature
    return client.post(URL, content=as_payload(event), headers=headers)


class TestPaymentEventsWebhook:
    def test_missing_signature_is_400(self, client, db):
        response = _post(client, payment_succeeded("pi_1"), signature=None)

        assert response.status_code == 400
        assert db.query(PaymentEvent).count() == 0

    def test_invalid_signature_is_400(self, client, gateway, db):
        gateway.verify_event.side_effect = PaymentVerificationFailedException()

        response = _post(client, payment_succeeded("pi_1"))

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid webhook signature"
        assert db.query(PaymentEvent).count() == 0

    def test_payment_confirms_reservation(self, client, db, make_reservation, publisher):
        reservation = make_reservation()

        response = _post(client, payment_succeeded("pi_1", reservation_id=reservation.id))

        assert response.status_code == 200
        body = response.json()
        assert body == {
            "status": "accepted",
            "event_type": "payment_intent.succeeded",
            "message": "confirmed",
        }
        assert db.query(Booking).count() == 1
        assert publisher.types == ["booking_confirmed"]

    def test_replay_is_200_duplicate(self, client, make_reservation):
        reservation = make_reservation()
        event = payment_succeeded("pi_1", reservation_id=reservation.id, event_id="evt_replay")

        _post(client, event)
        response = _post(client, event)

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"

    def test_irrelevant_event_is_200_ignored(self, client):
        response = _post(client, stripe_event("customer.created", {"id": "cus_1"}))

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    def test_handler_failure_is_500(self, client, db, make_reservation):
        reservation = make_reservation()

        with patch(
            "bookingflow.services.booking_state_machine.BookingStateMachine.apply",
            side_effect=RuntimeError("lock timeout"),
        ):
            response = _post(
                client, payment_succeeded("pi_1", reservation_id=reservation.id, event_id="evt_500")
            )

        assert response.status_code == 500
        db.expire_all()
        row = db.query(PaymentEvent).filter_by(external_event_id="evt_500").one()
        assert row.processed_at is None
        assert db.query(Booking).count() == 0
