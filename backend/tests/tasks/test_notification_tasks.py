# backend/tests/tasks/test_notification_tasks.py
"""Unit tests for notification delivery."""

import json

import httpx
import pytest

from bookingflow.tasks.notification_tasks import (
    BACKOFF_SECONDS,
    NotificationTemporaryError,
    _next_backoff,
    send_notification,
)

URL = "https://notify.test/events"


def _transport(status_code=202, captured=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if captured is not None:
            captured.append(request)
        return httpx.Response(status_code, json={"ok": status_code < 400})

    return httpx.MockTransport(handler)


class TestSendNotification:
    def test_no_endpoint_configured(self, monkeypatch):
        from bookingflow.core.config import settings

        monkeypatch.setattr(settings, "notification_webhook_url", None)

        assert send_notification("booking_confirmed", {"booking_id": "b1"}) is False

    def test_delivers_with_idempotency_key(self):
        captured = []

        delivered = send_notification(
            "booking_confirmed",
            {"idempotency_key": "booking-confirmed-b1", "booking_id": "b1"},
            url=URL,
            transport=_transport(captured=captured),
        )

        assert delivered is True
        request = captured[0]
        assert request.headers["Idempotency-Key"] == "booking-confirmed-b1"
        assert json.loads(request.content) == {
            "type": "booking_confirmed",
            "payload": {"idempotency_key": "booking-confirmed-b1", "booking_id": "b1"},
        }

    @pytest.mark.parametrize("status_code", [429, 500, 503])
    def test_retryable_statuses(self, status_code):
        with pytest.raises(NotificationTemporaryError):
            send_notification("x", {}, url=URL, transport=_transport(status_code))

    def test_client_error_is_permanent(self):
        with pytest.raises(httpx.HTTPStatusError):
            send_notification("x", {}, url=URL, transport=_transport(400))

    def test_network_error_is_temporary(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(NotificationTemporaryError):
            send_notification("x", {}, url=URL, transport=httpx.MockTransport(handler))


class TestBackoff:
    def test_backoff_is_clamped(self):
        assert _next_backoff(1) == BACKOFF_SECONDS[0]
        assert _next_backoff(0) == BACKOFF_SECONDS[0]
        assert _next_backoff(99) == BACKOFF_SECONDS[-1]
