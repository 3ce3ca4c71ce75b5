"""
Pure condition evaluation: no database access.
"""
from .facts import OrderFact, CustomerFact, normalize_email, normalize_phone
from .conditions import (
    Condition,
    GroupResult,
    ValidationReport,
    parse_condition,
    parse_conditions,
    evaluate,
    evaluate_group,
    check_exclusions,
    required_scopes,
    validate_rule_config,
)

__all__ = [
    'OrderFact',
    'CustomerFact',
    'normalize_email',
    'normalize_phone',
    'Condition',
    'GroupResult',
    'ValidationReport',
    'parse_condition',
    'parse_conditions',
    'evaluate',
    'evaluate_group',
    'check_exclusions',
    'required_scopes',
    'validate_rule_config',
]
