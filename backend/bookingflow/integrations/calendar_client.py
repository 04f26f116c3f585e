"""Calendar service integration client.

Creates the calendar event for a confirmed booking. Requests carry an
``Idempotency-Key`` derived from the booking id so a retried sync never
produces a second event.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, cast

import httpx
from pydantic import SecretStr

logger = logging.getLogger(__name__)


class CalendarError(RuntimeError):
    """Raised when the calendar API responds with an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class CalendarClient:
    """HTTP client for the calendar service REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_token: str | SecretStr | None = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_token = (
            api_token.get_secret_value() if isinstance(api_token, SecretStr) else api_token
        )
        self._timeout = timeout
        self._transport = transport

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}/{path.lstrip('/')}"
        request_headers = {"Content-Type": "application/json", **(headers or {})}
        if self._api_token:
            request_headers["Authorization"] = f"Bearer {self._api_token}"

        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.request(method, url, headers=request_headers, json=json_body)
        except httpx.TransportError as exc:
            logger.error("Calendar API unreachable for %s %s: %s", method, path, exc)
            raise CalendarError(f"Calendar API unreachable: {exc}") from exc

        if response.status_code >= 400:
            logger.error(
                "Calendar API error %s for %s %s: %s",
                response.status_code,
                method,
                path,
                response.text[:500],
            )
            raise CalendarError(
                response.text[:500] or "Calendar API error", status_code=response.status_code
            )

        return cast(dict[str, Any], response.json())

    def create_event(
        self,
        *,
        resource_id: str,
        start_time: datetime,
        end_time: datetime,
        attendee_email: str,
        attendee_name: str | None,
        idempotency_key: str,
    ) -> str:
        """Create the event and return the calendar's event id."""
        body = {
            "start": start_time.isoformat(),
            "end": end_time.isoformat(),
            "attendees": [{"email": attendee_email, "name": attendee_name}],
        }
        data = self._request(
            "POST",
            f"resources/{resource_id}/events",
            json_body=body,
            headers={"Idempotency-Key": idempotency_key},
        )
        event_id = data.get("id")
        if not event_id:
            raise CalendarError("Calendar API response missing event id")
        return str(event_id)
