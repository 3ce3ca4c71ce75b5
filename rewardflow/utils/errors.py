"""
Error responses for the RewardFlow API.

Admin endpoints answer with an envelope:
{
    "error": {
        "message": "Allocation not found",
        "code": "ALLOCATION_NOT_FOUND"
    }
}

Storefront referral/loyalty endpoints answer flat, with lowercase codes
that the storefront widget switches on:
{"error": "self_referral", "message": "You cannot use your own referral code"}

ErrorCode covers both: the uppercase member names go in envelopes, and
ErrorCode.SELF_REFERRAL.storefront gives the flat spelling.
"""
import logging
from enum import Enum
from typing import Optional

from flask import jsonify

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Error codes returned by the API and carried by RewardFlowError."""

    # Auth (401)
    AUTH_REQUIRED = "AUTH_REQUIRED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"

    # Request validation (400)
    INVALID_REQUEST = "INVALID_REQUEST"
    MISSING_FIELD = "MISSING_FIELD"
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Lookups (404)
    NOT_FOUND = "NOT_FOUND"
    MEMBER_NOT_FOUND = "MEMBER_NOT_FOUND"
    SHOP_NOT_FOUND = "SHOP_NOT_FOUND"
    RULE_NOT_FOUND = "RULE_NOT_FOUND"
    ALLOCATION_NOT_FOUND = "ALLOCATION_NOT_FOUND"

    # Campaign allocation
    ALLOCATION_CANCELLED = "ALLOCATION_CANCELLED"
    INVALID_REWARD_TYPE = "INVALID_REWARD_TYPE"
    POINTS_CREDIT_FAILED = "POINTS_CREDIT_FAILED"

    # Referrals
    INVALID_CODE = "INVALID_CODE"
    SELF_REFERRAL = "SELF_REFERRAL"
    ALREADY_REFERRED = "ALREADY_REFERRED"

    # Points
    NO_LOYALTY_PROGRAM = "NO_LOYALTY_PROGRAM"
    REDEMPTION_DISABLED = "REDEMPTION_DISABLED"
    INVALID_POINTS = "INVALID_POINTS"
    INSUFFICIENT_POINTS = "INSUFFICIENT_POINTS"

    # Retryable (503)
    TRANSIENT_ERROR = "TRANSIENT_ERROR"

    # Server (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"

    @property
    def storefront(self) -> str:
        return self.value.lower()

    @classmethod
    def from_storefront(cls, code: str, default: 'ErrorCode' = None) -> 'ErrorCode':
        """Map a lowercase service error (e.g. insufficient_points) to its code."""
        try:
            return cls(str(code).upper())
        except ValueError:
            return default or cls.VALIDATION_ERROR


def error_response(
    message: str,
    code: ErrorCode = ErrorCode.INTERNAL_ERROR,
    status_code: int = 500,
    log_error: bool = True,
    details: Optional[dict] = None
) -> tuple:
    """
    Build the admin error envelope.

    `code` may be an ErrorCode or the plain string carried by a
    RewardFlowError. `details` goes to the log only, never to the client.
    Returns a (response, status) tuple for Flask.
    """
    code = code.value if isinstance(code, ErrorCode) else code
    if log_error and status_code >= 500:
        logger.error(f"API error [{code}]: {message}", extra={"details": details})
    elif log_error and status_code >= 400:
        logger.warning(f"API error [{code}]: {message}", extra={"details": details})

    return jsonify({"error": {"message": message, "code": code}}), status_code


def domain_error(code, message: str, status_code: int = 400) -> tuple:
    """Flat error body for storefront-facing referral/loyalty endpoints."""
    if isinstance(code, ErrorCode):
        code = code.storefront
    return jsonify({'error': code, 'message': message}), status_code


def bad_request(message: str, code: ErrorCode = ErrorCode.INVALID_REQUEST) -> tuple:
    return error_response(message, code, 400, log_error=False)


def unauthorized(message: str = "Authentication required", code: ErrorCode = ErrorCode.AUTH_REQUIRED) -> tuple:
    return error_response(message, code, 401, log_error=False)


def not_found(message: str, code: ErrorCode = ErrorCode.NOT_FOUND) -> tuple:
    return error_response(message, code, 404, log_error=False)
