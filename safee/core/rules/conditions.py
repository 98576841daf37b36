"""Approval rule conditions.

Conditions are stored as JSON on ``approval_rules.conditions`` and parsed
into a small tagged-variant tree. Evaluation is a recursive interpreter
over that tree; nothing stored in the database is ever executed.

Supported node shapes::

    {"type": "amount", "operator": "gte", "value": 1000}
    {"type": "field", "field": "currency", "operator": "eq", "value": "USD"}
    {"type": "entityType", "value": "invoice"}
    {"type": "userRole", "value": ["admin", "finance"]}
    {"type": "manual"}
    {"type": "all", "conditions": [...]}
    {"type": "any", "conditions": [...]}
    {"type": "not", "condition": {...}}

The stored top-level form ``{"conditions": [...], "logic": "AND"|"OR"}``
is also accepted. Anything else fails closed: it never matches.
"""

import logging
import numbers
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from safee.core.errors import ValidationError

logger = logging.getLogger(__name__)


class ConditionType(str, Enum):
    """Node types of the condition tree."""

    AMOUNT = "amount"            # Compare attributes["amount"]
    FIELD = "field"              # Compare an arbitrary attribute
    ENTITY_TYPE = "entityType"   # Entity type equality
    USER_ROLE = "userRole"       # Submitter role membership
    MANUAL = "manual"            # Always matches (manual submission)
    ALL = "all"                  # Every child matches
    ANY = "any"                  # At least one child matches
    NOT = "not"                  # Child does not match


class Operator(str, Enum):
    """Comparison operators for amount and field conditions."""

    EQUALS = "eq"
    NOT_EQUALS = "neq"
    GREATER_THAN = "gt"
    GREATER_THAN_OR_EQUAL = "gte"
    LESS_THAN = "lt"
    LESS_THAN_OR_EQUAL = "lte"
    CONTAINS = "contains"
    IN = "in"
    NOT_IN = "not_in"
    EXISTS = "exists"


ORDERED_OPERATORS = {
    Operator.GREATER_THAN,
    Operator.GREATER_THAN_OR_EQUAL,
    Operator.LESS_THAN,
    Operator.LESS_THAN_OR_EQUAL,
}

AMOUNT_OPERATORS = ORDERED_OPERATORS | {Operator.EQUALS, Operator.NOT_EQUALS}


@dataclass(frozen=True)
class Comparison:
    """Leaf node: ``attributes[field] <operator> value``."""
    kind: ConditionType
    field: str
    operator: Operator
    value: Any = None


@dataclass(frozen=True)
class EntityTypeIs:
    value: str


@dataclass(frozen=True)
class UserRoleIn:
    roles: tuple


@dataclass(frozen=True)
class Always:
    pass


@dataclass(frozen=True)
class Never:
    """Produced for unsupported shapes; keeps evaluation fail-closed."""
    reason: str = ""


@dataclass(frozen=True)
class Composite:
    kind: ConditionType  # ALL or ANY
    children: tuple = field(default_factory=tuple)


@dataclass(frozen=True)
class Negation:
    child: "Condition"


Condition = Union[Comparison, EntityTypeIs, UserRoleIn, Always, Never, Composite, Negation]


def parse_condition(data: Any, *, strict: bool = False) -> Condition:
    """
    Parse stored JSON into a condition tree.

    Args:
        data: Stored condition payload
        strict: Raise ValidationError instead of producing a ``Never`` node

    Returns:
        Root node of the condition tree
    """
    try:
        return _parse(data)
    except (ValidationError, KeyError, TypeError, ValueError) as e:
        message = e.message if isinstance(e, ValidationError) else f"Malformed condition: {e}"
        if strict:
            raise ValidationError(message, details={"conditions": data}) from e
        logger.warning(f"Unsupported approval rule condition treated as non-match: {message}")
        return Never(reason=message)


def validate_conditions(data: Any) -> Condition:
    """Parse conditions for rule authoring; malformed input raises ValidationError."""
    return parse_condition(data, strict=True)


def _parse(data: Any) -> Condition:
    if not isinstance(data, dict):
        raise ValidationError(f"Condition must be an object, got {type(data).__name__}")

    # Stored top-level form: {"conditions": [...], "logic": "AND"}
    if "type" not in data and "conditions" in data:
        logic = str(data.get("logic", "AND")).upper()
        if logic not in ("AND", "OR"):
            raise ValidationError(f"Unknown logic: {logic}")
        kind = ConditionType.ALL if logic == "AND" else ConditionType.ANY
        return Composite(kind=kind, children=_parse_children(data["conditions"]))

    try:
        kind = ConditionType(data["type"])
    except ValueError:
        raise ValidationError(f"Unknown condition type: {data['type']}")

    if kind in (ConditionType.ALL, ConditionType.ANY):
        return Composite(kind=kind, children=_parse_children(data["conditions"]))

    if kind == ConditionType.NOT:
        return Negation(child=_parse(data["condition"]))

    if kind == ConditionType.MANUAL:
        return Always()

    if kind == ConditionType.ENTITY_TYPE:
        return EntityTypeIs(value=str(data["value"]))

    if kind == ConditionType.USER_ROLE:
        value = data["value"]
        roles = tuple(value) if isinstance(value, (list, tuple)) else (value,)
        if not roles:
            raise ValidationError("userRole condition needs at least one role")
        return UserRoleIn(roles=tuple(str(r) for r in roles))

    operator = _parse_operator(data["operator"])

    if kind == ConditionType.AMOUNT:
        if operator not in AMOUNT_OPERATORS:
            raise ValidationError(f"Operator {operator.value} not supported for amount")
        value = data["value"]
        if _as_number(value) is None:
            raise ValidationError("Amount threshold must be a finite number")
        return Comparison(kind=kind, field="amount", operator=operator, value=value)

    # FIELD
    field_name = data["field"]
    if not isinstance(field_name, str) or not field_name:
        raise ValidationError("Field condition missing field name")
    if operator in (Operator.IN, Operator.NOT_IN) and not isinstance(data.get("value"), list):
        raise ValidationError(f"Operator {operator.value} requires a list value")
    return Comparison(kind=kind, field=field_name, operator=operator, value=data.get("value"))


def _parse_children(items: Any) -> tuple:
    if not isinstance(items, list):
        raise ValidationError("conditions must be a list")
    return tuple(_parse(item) for item in items)


def _parse_operator(raw: Any) -> Operator:
    try:
        return Operator(raw)
    except ValueError:
        raise ValidationError(f"Unknown operator: {raw}")


def evaluate(condition: Condition, attributes: Dict[str, Any]) -> bool:
    """
    Evaluate a condition tree against entity attributes.

    Never raises: any evaluation problem is a non-match.
    """
    try:
        return _evaluate(condition, attributes)
    except Exception as e:
        logger.warning(f"Approval rule condition evaluation error treated as non-match: {e}")
        return False


def _evaluate(condition: Condition, attributes: Dict[str, Any]) -> bool:
    if isinstance(condition, Always):
        return True

    if isinstance(condition, Never):
        return False

    if isinstance(condition, Composite):
        # An empty list never matches, for both AND and OR
        if not condition.children:
            return False
        results = (_evaluate(child, attributes) for child in condition.children)
        if condition.kind == ConditionType.ANY:
            return any(results)
        return all(results)

    if isinstance(condition, Negation):
        return not _evaluate(condition.child, attributes)

    if isinstance(condition, EntityTypeIs):
        return attributes.get("entity_type", attributes.get("entityType")) == condition.value

    if isinstance(condition, UserRoleIn):
        return bool(_user_roles(attributes) & set(condition.roles))

    if isinstance(condition, Comparison):
        return _compare(attributes.get(condition.field), condition.operator, condition.value,
                        numeric_only=condition.kind == ConditionType.AMOUNT)

    return False


def _user_roles(attributes: Dict[str, Any]) -> set:
    roles = attributes.get("user_roles")
    if roles is None:
        role = attributes.get("user_role")
        return {role} if role else set()
    if isinstance(roles, str):
        return {roles}
    return set(roles)


def _as_number(value: Any) -> Optional[Decimal]:
    """Exact Decimal for real numbers (int, float, Decimal, ...); None for anything else."""
    if isinstance(value, bool) or not isinstance(value, (numbers.Real, Decimal)):
        return None
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, numbers.Integral):
        number = Decimal(int(value))
    else:
        number = Decimal(str(float(value)))
    return number if number.is_finite() else None


def _compare(actual: Any, operator: Operator, expected: Any, *, numeric_only: bool = False) -> bool:
    """Compare values using the specified operator."""
    if operator == Operator.EXISTS:
        return (actual is not None) == (expected is not False)

    if actual is None:
        return False

    actual_number, expected_number = _as_number(actual), _as_number(expected)
    if numeric_only and actual_number is None:
        return False
    both_numeric = actual_number is not None and expected_number is not None

    if operator == Operator.EQUALS:
        return actual_number == expected_number if both_numeric else actual == expected
    if operator == Operator.NOT_EQUALS:
        return actual_number != expected_number if both_numeric else actual != expected

    if operator in ORDERED_OPERATORS:
        # Ordered comparisons only between numbers
        if not both_numeric:
            return False
        if operator == Operator.GREATER_THAN:
            return actual_number > expected_number
        if operator == Operator.GREATER_THAN_OR_EQUAL:
            return actual_number >= expected_number
        if operator == Operator.LESS_THAN:
            return actual_number < expected_number
        return actual_number <= expected_number

    if operator == Operator.CONTAINS:
        if isinstance(actual, str) and isinstance(expected, str):
            return expected in actual
        if isinstance(actual, (list, tuple)):
            return expected in actual
        return False

    if operator == Operator.IN:
        return isinstance(expected, list) and actual in expected
    if operator == Operator.NOT_IN:
        return isinstance(expected, list) and actual not in expected

    return False


def describe(condition: Condition) -> Optional[str]:
    """Short human-readable rendering, used in logs and audit details."""
    if isinstance(condition, Comparison):
        return f"{condition.field} {condition.operator.value} {condition.value!r}"
    if isinstance(condition, EntityTypeIs):
        return f"entity_type == {condition.value!r}"
    if isinstance(condition, UserRoleIn):
        return f"user_role in {list(condition.roles)!r}"
    if isinstance(condition, Always):
        return "manual"
    if isinstance(condition, Never):
        return "never"
    if isinstance(condition, Negation):
        return f"not ({describe(condition.child)})"
    if isinstance(condition, Composite):
        joiner = " and " if condition.kind == ConditionType.ALL else " or "
        parts: List[str] = [describe(c) or "" for c in condition.children]
        return "(" + joiner.join(parts) + ")"
    return None
