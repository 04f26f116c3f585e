"""
Checkout routes - API v1

Endpoints:
    POST   /sessions                     → Start a checkout and hold the slot
    DELETE /reservations/{reservation_id} → Release a hold
"""

import asyncio
import logging
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.params import Path

from ...api.dependencies.services import get_checkout_service
from ...core.exceptions import DomainException
from ...schemas.checkout import (
    CheckoutSessionCreate,
    CheckoutSessionResponse,
    ReservationReleaseResponse,
)
from ...services.checkout_service import CheckoutService

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["checkout-v1"])

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.post(
    "/sessions",
    response_model=CheckoutSessionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_checkout_session(
    payload: CheckoutSessionCreate,
    service: CheckoutService = Depends(get_checkout_service),
) -> CheckoutSessionResponse:
    """
    Start a checkout for a slot.

    Returns 409 when the slot is already held or booked.
    """
    try:
        result = await asyncio.to_thread(
            lambda: service.start_checkout(
                resource_id=payload.resource_id,
                start_time=payload.start_time,
                end_time=payload.end_time,
                holder_email=str(payload.holder_email),
                holder_name=payload.holder_name,
                amount=payload.amount,
                currency=payload.currency,
                payment_methods=payload.payment_methods,
                description=payload.description,
            )
        )
    except DomainException as exc:
        handle_domain_exception(exc)

    return CheckoutSessionResponse(
        reservation_id=result.reservation.id,
        session_ref=result.session_ref,
        checkout_url=result.checkout_url,
        payment_path=result.payment_path.value,
        expires_at=result.reservation.expires_at,
    )


@router.delete("/reservations/{reservation_id}", response_model=ReservationReleaseResponse)
async def release_reservation(
    reservation_id: str = Path(
        ...,
        description="Reservation ULID",
        pattern=ULID_PATH_PATTERN,
        examples=["01HF4G12ABCDEF3456789XYZAB"],
    ),
    service: CheckoutService = Depends(get_checkout_service),
) -> ReservationReleaseResponse:
    """Release a hold. Releasing an already released hold is not an error."""
    try:
        released = await asyncio.to_thread(service.cancel_reservation, reservation_id)
    except DomainException as exc:
        handle_domain_exception(exc)
    return ReservationReleaseResponse(reservation_id=reservation_id, released=released)
