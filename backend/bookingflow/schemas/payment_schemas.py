"""Webhook response model."""

from typing import Optional

from pydantic import Field

from ._strict_base import StrictModel


class WebhookResponse(StrictModel):
    """Response for webhook processing."""

    status: str = Field(..., description="Processing status (accepted, duplicate, ignored)")
    event_type: str = Field(..., description="Stripe event type")
    message: Optional[str] = Field(None, description="Additional information")
