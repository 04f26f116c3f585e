"""
Operations routes - API v1

Operator tooling for the booking pipeline.

Endpoints:
    POST /reservations/sweep                          → Release expired holds now
    GET  /refund-remediations                         → List refund remediation queue
    POST /refund-remediations/{remediation_id}/resolve → Close a queue item
"""

import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.params import Path

from ...api.dependencies.services import (
    get_notifier,
    get_refund_engine,
    get_reservation_manager,
)
from ...core.exceptions import DomainException
from ...models.refund import RemediationStatus
from ...schemas.operations import (
    RefundRemediationList,
    RefundRemediationResponse,
    ResolveRemediationRequest,
    SweepResponse,
)
from ...services.notification_dispatcher import BookingNotifier
from ...services.refund_decision_engine import RefundDecisionEngine
from ...services.slot_reservation_manager import SlotReservationManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["operations-v1"])

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.post("/reservations/sweep", response_model=SweepResponse)
def sweep_reservations(
    manager: SlotReservationManager = Depends(get_reservation_manager),
    notifier: BookingNotifier = Depends(get_notifier),
) -> SweepResponse:
    """Run the expiry sweep immediately instead of waiting for the schedule."""
    try:
        swept = manager.sweep()
    except DomainException as exc:
        handle_domain_exception(exc)

    for reservation in swept:
        notifier.notify_reservation_expired(reservation)
    return SweepResponse(swept=len(swept), reservation_ids=[r.id for r in swept])


@router.get("/refund-remediations", response_model=RefundRemediationList)
def list_refund_remediations(
    status_filter: Optional[RemediationStatus] = Query(
        RemediationStatus.OPEN, alias="status", description="Queue status to list"
    ),
    limit: int = Query(50, ge=1, le=500),
    engine: RefundDecisionEngine = Depends(get_refund_engine),
) -> RefundRemediationList:
    items = engine.list_remediations(
        status_filter.value if status_filter else None, limit=limit
    )
    return RefundRemediationList(
        items=[RefundRemediationResponse.model_validate(item) for item in items],
        total=len(items),
    )


@router.post(
    "/refund-remediations/{remediation_id}/resolve",
    response_model=RefundRemediationResponse,
)
def resolve_refund_remediation(
    body: ResolveRemediationRequest,
    remediation_id: str = Path(..., description="Remediation ULID", pattern=ULID_PATH_PATTERN),
    engine: RefundDecisionEngine = Depends(get_refund_engine),
) -> RefundRemediationResponse:
    """Close a remediation item once an operator has settled the refund by hand."""
    try:
        remediation = engine.resolve_remediation(remediation_id, body.note)
    except DomainException as exc:
        handle_domain_exception(exc)
    return RefundRemediationResponse.model_validate(remediation)
