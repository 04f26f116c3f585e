# backend/bookingflow/core/exceptions.py
"""
Domain-specific exceptions for the booking pipeline.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        """Default conversion to HTTPException (override in subclasses)."""
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when business validation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Reservation / payment pipeline exceptions


class SlotConflictException(ConflictException):
    """Raised when a hold collides with another live hold or a confirmed booking."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message or "This time slot is no longer available",
            code="SLOT_CONFLICT",
            details=details or {},
        )


class DuplicateWebhookEventException(DomainException):
    """Signals an event that was already processed. Callers treat it as a no-op."""

    def __init__(self, external_event_id: str):
        super().__init__(
            message=f"Event {external_event_id} was already processed",
            code="DUPLICATE_WEBHOOK_EVENT",
            details={"external_event_id": external_event_id},
        )


class PaymentVerificationFailedException(DomainException):
    """Raised when a webhook signature cannot be verified."""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message=message, code="PAYMENT_VERIFICATION_FAILED")

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=self.message)


class RefundFailedException(DomainException):
    """
    Raised when the processor refuses or fails a refund.

    Always paired with an operator remediation record; never retried automatically.
    """

    def __init__(
        self,
        payment_intent_ref: str,
        *,
        failure_code: Optional[str] = None,
        failure_message: Optional[str] = None,
        transient: bool = False,
        remediation_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"Refund for {payment_intent_ref} failed: {failure_message or failure_code}",
            code="REFUND_FAILED",
            details={
                "payment_intent_ref": payment_intent_ref,
                "failure_code": failure_code,
                "transient": transient,
                "remediation_id": remediation_id,
            },
        )
        self.payment_intent_ref = payment_intent_ref
        self.remediation_id = remediation_id


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations. The original SQLAlchemy error is chained
    as ``__cause__``.
    """
