"""Approval rule evaluation for Safee Core.

Maps entity attributes to the approval workflow they must go through.
"""

from .conditions import (
    ConditionType,
    Operator,
    parse_condition,
    validate_conditions,
    evaluate,
)
from .resolver import ApprovalRuleResolver, RuleMatch

__all__ = [
    "ConditionType",
    "Operator",
    "parse_condition",
    "validate_conditions",
    "evaluate",
    "ApprovalRuleResolver",
    "RuleMatch",
]
