"""
Custom exceptions for RewardFlow business logic.

Guardrail rejections and referral skips are outcomes, not exceptions; these
classes cover configuration problems, lookups and transient infrastructure
failures that callers must handle explicitly.
"""
from .errors import ErrorCode


class RewardFlowError(Exception):
    """Base exception for all RewardFlow business logic errors."""

    status_code = 400

    def __init__(self, message: str, code: str = "REWARDFLOW_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class NotFoundError(RewardFlowError):
    """Resource not found."""

    status_code = 404

    def __init__(self, resource: str, identifier=None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with ID {identifier} not found"
        super().__init__(message, f"{resource.upper()}_NOT_FOUND")


class ValidationError(RewardFlowError):
    """Invalid input data."""

    def __init__(self, message: str, field: str = None):
        self.field = field
        code = f"INVALID_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(message, code)


class ConditionConfigError(ValidationError):
    """A campaign condition node cannot be parsed into a known condition."""

    def __init__(self, message: str, node: dict = None):
        self.node = node
        super().__init__(message, "condition")


class ReferralError(RewardFlowError):
    """
    Terminal referral domain outcome (invalid_code, self_referral, ...).

    The code is the lowercase wire value returned to storefront callers.
    """

    def __init__(self, code, message: str, status_code: int = 400):
        if isinstance(code, ErrorCode):
            code = code.storefront
        super().__init__(message, code)
        self.status_code = status_code


class InsufficientPointsError(RewardFlowError):
    """Not enough points for the operation."""

    def __init__(self, current: int, required: int):
        self.current = current
        self.required = required
        message = f"Insufficient points. Current: {current}, Required: {required}"
        super().__init__(message, ErrorCode.INSUFFICIENT_POINTS.storefront)


class TransientError(RewardFlowError):
    """Retryable infrastructure failure (lock timeout, dropped connection)."""

    status_code = 503

    def __init__(self, message: str, original_error: Exception = None):
        self.original_error = original_error
        super().__init__(message, ErrorCode.TRANSIENT_ERROR.value)
