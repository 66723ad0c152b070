"""Translate loyalty domain errors into HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException, status

from loyalty_api.services.loyalty.errors import (
    CodeGenerationExhaustedError,
    InsufficientPointsError,
    InvalidRewardConfigurationError,
    LoyaltyAuthorizationError,
    LoyaltyError,
    LoyaltyNotFoundError,
    LoyaltyStateConflictError,
    RedemptionExpiredError,
)

# Ordered: subclasses before their parents.
_STATUS_BY_ERROR: tuple[tuple[type[LoyaltyError], int], ...] = (
    (LoyaltyNotFoundError, status.HTTP_404_NOT_FOUND),
    (RedemptionExpiredError, status.HTTP_410_GONE),
    (LoyaltyStateConflictError, status.HTTP_409_CONFLICT),
    (LoyaltyAuthorizationError, status.HTTP_403_FORBIDDEN),
    (InsufficientPointsError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (CodeGenerationExhaustedError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (InvalidRewardConfigurationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
)


def to_http_exception(error: LoyaltyError) -> HTTPException:
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, mapped in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            status_code = mapped
            break
    return HTTPException(status_code=status_code, detail={"code": error.code, "message": str(error)})


__all__ = ["to_http_exception"]
