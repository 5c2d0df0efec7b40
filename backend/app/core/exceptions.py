"""
Domain error taxonomy.

Every error is an HTTPException so services can raise them directly and
FastAPI renders them as {"detail": ...}. Callers that need to branch on the
kind of failure catch the subclass.
"""

from typing import Optional

from fastapi import HTTPException, status


class BookingValidationError(HTTPException):
    """Malformed input, unknown session type, slot outside the booking window."""

    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class NotFoundError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class ForbiddenError(HTTPException):
    def __init__(self, detail: str = "Forbidden"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class CapacityConflictError(HTTPException):
    """The slot has no remaining room for this session type."""

    def __init__(self, detail: str = "This time slot is fully booked", occupied: Optional[int] = None):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)
        self.occupied = occupied


class ContentionError(HTTPException):
    """Optimistic retries exhausted under concurrent writes."""

    def __init__(self, detail: str = "Booking failed due to high demand. Please try again."):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class EligibilityDeniedError(HTTPException):
    """No payable resource. `code` is `no_eligibility` or `quota_exhausted`."""

    def __init__(self, reason: str, code: str):
        super().__init__(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"reason": reason, "code": code},
        )
        self.reason = reason
        self.code = code


class PolicyViolationError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class InvalidTransitionError(HTTPException):
    def __init__(self, current: str, target: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot move booking from '{current}' to '{target}'",
        )
        self.current = current
        self.target = target


class WebhookVerificationError(HTTPException):
    def __init__(self, detail: str = "Invalid signature"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class IntegrationNotConfiguredError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


class UpstreamServiceError(HTTPException):
    """A collaborator (payment processor, calendar) failed or timed out."""

    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)
