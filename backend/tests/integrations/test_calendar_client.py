# backend/tests/integrations/test_calendar_client.py
"""Tests for the calendar HTTP client using httpx.MockTransport."""

from datetime import timedelta
import json

import httpx
from pydantic import SecretStr
import pytest

from bookingflow.integrations.calendar_client import CalendarClient, CalendarError
from tests.helpers.events import NOW


def _client(handler, token="cal-token") -> CalendarClient:
    return CalendarClient(
        base_url="https://calendar.test/api/",
        api_token=SecretStr(token),
        transport=httpx.MockTransport(handler),
    )


def _create(client: CalendarClient) -> str:
    return client.create_event(
        resource_id="expert-1",
        start_time=NOW,
        end_time=NOW + timedelta(hours=1),
        attendee_email="payer@example.com",
        attendee_name="Ana Payer",
        idempotency_key="booking-01HX",
    )


class TestCreateEvent:
    def test_posts_event_with_idempotency_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": "evt-cal-1"})

        event_id = _create(_client(handler))

        assert event_id == "evt-cal-1"
        assert seen["url"] == "https://calendar.test/api/resources/expert-1/events"
        assert seen["headers"]["Idempotency-Key"] == "booking-01HX"
        assert seen["headers"]["Authorization"] == "Bearer cal-token"
        assert seen["body"]["start"] == NOW.isoformat()
        assert seen["body"]["attendees"] == [{"email": "payer@example.com", "name": "Ana Payer"}]

    def test_error_status_raises_calendar_error(self):
        client = _client(lambda request: httpx.Response(503, text="maintenance"))

        with pytest.raises(CalendarError) as exc_info:
            _create(client)

        assert exc_info.value.status_code == 503
        assert exc_info.value.message == "maintenance"

    def test_transport_error_raises_calendar_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(CalendarError) as exc_info:
            _create(_client(handler))

        assert exc_info.value.status_code is None

    def test_missing_event_id_is_an_error(self):
        with pytest.raises(CalendarError):
            _create(_client(lambda request: httpx.Response(200, json={})))
