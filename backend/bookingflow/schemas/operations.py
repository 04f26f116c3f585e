"""Operator-facing request/response models."""

from datetime import datetime
from typing import List, Optional

from pydantic import ConfigDict, Field

from ._strict_base import StrictModel, StrictRequestModel


class SweepResponse(StrictModel):
    swept: int
    reservation_ids: List[str] = Field(default_factory=list)


class RefundRemediationResponse(StrictModel):
    model_config = ConfigDict(extra="forbid", from_attributes=True)

    id: str
    payment_intent_ref: str
    reservation_id: Optional[str] = None
    amount: int
    conflict_kind: str
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    transient: bool
    status: str
    resolution_note: Optional[str] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None


class RefundRemediationList(StrictModel):
    items: List[RefundRemediationResponse]
    total: int


class ResolveRemediationRequest(StrictRequestModel):
    note: str = Field(..., min_length=1, max_length=2000)
