"""Typed failures raised by the loyalty ledger and redemption services."""

from __future__ import annotations


class LoyaltyError(RuntimeError):
    """Base exception for loyalty domain failures."""

    code = "loyalty_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class LoyaltyNotFoundError(LoyaltyError):
    """Raised when a redemption, reward or merchant cannot be found."""

    code = "not_found"


class LoyaltyStateConflictError(LoyaltyError):
    """Raised when a redemption is not in a status that permits the operation."""

    code = "invalid_state"


class RedemptionExpiredError(LoyaltyStateConflictError):
    code = "redemption_expired"


class LoyaltyAuthorizationError(LoyaltyError):
    """Raised when a merchant or customer acts on a redemption they do not own."""

    code = "forbidden"


class InsufficientPointsError(LoyaltyError):
    """Raised when the balance (or item progress) does not cover a reward."""

    code = "insufficient_points"

    def __init__(self, *, required: int, available: int, unit: str = "points") -> None:
        super().__init__(f"Insufficient {unit}. Required: {required}, available: {available}")
        self.required = required
        self.available = available


class CodeGenerationExhaustedError(LoyaltyError):
    code = "code_generation_exhausted"


class InvalidRewardConfigurationError(LoyaltyError):
    """Raised when stored earn params or reward config fail validation."""

    code = "invalid_reward_configuration"


__all__ = [
    "CodeGenerationExhaustedError",
    "InsufficientPointsError",
    "InvalidRewardConfigurationError",
    "LoyaltyAuthorizationError",
    "LoyaltyError",
    "LoyaltyNotFoundError",
    "LoyaltyStateConflictError",
    "RedemptionExpiredError",
]
