"""
Utility modules for RewardFlow.
"""
from .logging_config import setup_logging
from .errors import (
    ErrorCode,
    error_response,
    domain_error,
    bad_request,
    unauthorized,
    not_found
)
from .exceptions import (
    RewardFlowError,
    NotFoundError,
    ValidationError,
    ConditionConfigError,
    ReferralError,
    InsufficientPointsError,
    TransientError
)
