"""Checkout request/response models."""

from datetime import datetime
from typing import List, Optional

from pydantic import ConfigDict, EmailStr, Field, model_validator

from ._strict_base import StrictModel, StrictRequestModel


class CheckoutSessionCreate(StrictRequestModel):
    """Start a paid checkout for one slot."""

    resource_id: str = Field(..., min_length=1, max_length=64)
    start_time: datetime
    end_time: datetime
    holder_email: EmailStr
    holder_name: Optional[str] = Field(None, max_length=255)
    amount: int = Field(..., gt=0, description="Amount in minor currency units")
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    payment_methods: Optional[List[str]] = Field(
        None, description="Allowed processor payment method types; defaults to immediate methods"
    )
    description: Optional[str] = Field(None, max_length=255)

    @model_validator(mode="after")
    def _check_range(self) -> "CheckoutSessionCreate":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class CheckoutSessionResponse(StrictModel):
    model_config = ConfigDict(extra="forbid", from_attributes=True)

    reservation_id: str
    session_ref: str
    checkout_url: Optional[str] = None
    payment_path: str
    expires_at: datetime


class ReservationReleaseResponse(StrictModel):
    reservation_id: str
    released: bool
