"""
Operator library shared by rule, condition and audience evaluation.

Every operator is a pure function ``(field_value, rule_value) -> bool``.
An operator returns None when its operands have the wrong shape (for
example a non-numeric value given to ``greater_than``); the library turns
that into ``matched=False`` plus a ``type_mismatch`` diagnostic.
"""

import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, Optional, Pattern

from shared.errors import ConfigurationError
from .models import EvaluationDiagnostic, RuleOperator
from .resolver import MISSING

OperatorFunc = Callable[[Any, Any], Optional[bool]]


@dataclass(frozen=True)
class OperatorResult:
    """Outcome of applying one operator."""
    matched: bool
    diagnostic: Optional[EvaluationDiagnostic] = None


@lru_cache(maxsize=256)
def _compile(pattern: str) -> Pattern:
    return re.compile(pattern)


def compile_pattern(pattern: Any) -> Pattern:
    """Compile a regex through the process-wide cache.

    Raises ConfigurationError for non-string or invalid patterns.
    """
    if not isinstance(pattern, str):
        raise ConfigurationError(
            "Regex pattern must be a string",
            {"pattern": repr(pattern)}
        )
    try:
        return _compile(pattern)
    except re.error as e:
        raise ConfigurationError(
            f"Invalid regex pattern: {e}",
            {"pattern": pattern}
        )


def to_number(value: Any) -> Optional[float]:
    """Coerce numbers and numeric-looking strings; None for anything else."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number):
        return None
    return number


def values_equal(left: Any, right: Any) -> bool:
    """Strict equality: booleans never equal numbers, strings never equal numbers."""
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    if isinstance(left, str) != isinstance(right, str):
        return False
    return left == right


def _is_list(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def _compare(field_value: Any, rule_value: Any, check: Callable[[float, float], bool]) -> Optional[bool]:
    left = to_number(field_value)
    right = to_number(rule_value)
    if left is None or right is None:
        return None
    return check(left, right)


def op_equals(field_value: Any, rule_value: Any) -> Optional[bool]:
    return values_equal(field_value, rule_value)


def op_not_equals(field_value: Any, rule_value: Any) -> Optional[bool]:
    return not values_equal(field_value, rule_value)


def op_greater_than(field_value: Any, rule_value: Any) -> Optional[bool]:
    return _compare(field_value, rule_value, lambda a, b: a > b)


def op_less_than(field_value: Any, rule_value: Any) -> Optional[bool]:
    return _compare(field_value, rule_value, lambda a, b: a < b)


def op_greater_than_or_equal(field_value: Any, rule_value: Any) -> Optional[bool]:
    return _compare(field_value, rule_value, lambda a, b: a >= b)


def op_less_than_or_equal(field_value: Any, rule_value: Any) -> Optional[bool]:
    return _compare(field_value, rule_value, lambda a, b: a <= b)


def _all_present(required: Any, available: Any) -> bool:
    return all(
        any(values_equal(item, candidate) for candidate in available)
        for item in required
    )


def op_contains(field_value: Any, rule_value: Any) -> Optional[bool]:
    # Array form is a superset test: every rule element must be present.
    if isinstance(field_value, str) and isinstance(rule_value, str):
        return rule_value in field_value
    if _is_list(field_value) and _is_list(rule_value):
        return _all_present(rule_value, field_value)
    return False


def op_not_contains(field_value: Any, rule_value: Any) -> Optional[bool]:
    if isinstance(field_value, str) and isinstance(rule_value, str):
        return rule_value not in field_value
    if _is_list(field_value) and _is_list(rule_value):
        return not _all_present(rule_value, field_value)
    return True


def op_starts_with(field_value: Any, rule_value: Any) -> Optional[bool]:
    return (
        isinstance(field_value, str)
        and isinstance(rule_value, str)
        and field_value.startswith(rule_value)
    )


def op_ends_with(field_value: Any, rule_value: Any) -> Optional[bool]:
    return (
        isinstance(field_value, str)
        and isinstance(rule_value, str)
        and field_value.endswith(rule_value)
    )


def op_regex_match(field_value: Any, rule_value: Any) -> Optional[bool]:
    if not isinstance(field_value, str):
        return False
    return compile_pattern(rule_value).search(field_value) is not None


def op_in_list(field_value: Any, rule_value: Any) -> Optional[bool]:
    if not _is_list(rule_value):
        return None
    return any(values_equal(field_value, item) for item in rule_value)


def op_not_in_list(field_value: Any, rule_value: Any) -> Optional[bool]:
    if not _is_list(rule_value):
        return None
    return not any(values_equal(field_value, item) for item in rule_value)


def _range_bounds(rule_value: Any):
    if not _is_list(rule_value) or len(rule_value) != 2:
        return None
    low, high = to_number(rule_value[0]), to_number(rule_value[1])
    if low is None or high is None:
        return None
    return low, high


def op_in_range(field_value: Any, rule_value: Any) -> Optional[bool]:
    bounds = _range_bounds(rule_value)
    number = to_number(field_value)
    if bounds is None or number is None:
        return None
    return bounds[0] <= number <= bounds[1]


def op_out_of_range(field_value: Any, rule_value: Any) -> Optional[bool]:
    inside = op_in_range(field_value, rule_value)
    if inside is None:
        return None
    return not inside


def op_is_null(field_value: Any, rule_value: Any) -> Optional[bool]:
    return field_value is None


def op_is_not_null(field_value: Any, rule_value: Any) -> Optional[bool]:
    return field_value is not None


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) == 0
    return False


def op_is_empty(field_value: Any, rule_value: Any) -> Optional[bool]:
    return _is_empty(field_value)


def op_is_not_empty(field_value: Any, rule_value: Any) -> Optional[bool]:
    return not _is_empty(field_value)


def op_exists(field_value: Any, rule_value: Any) -> Optional[bool]:
    return field_value is not MISSING


def op_not_exists(field_value: Any, rule_value: Any) -> Optional[bool]:
    return field_value is MISSING


DEFAULT_OPERATORS: Dict[str, OperatorFunc] = {
    RuleOperator.EQUALS.value: op_equals,
    RuleOperator.NOT_EQUALS.value: op_not_equals,
    RuleOperator.GREATER_THAN.value: op_greater_than,
    RuleOperator.LESS_THAN.value: op_less_than,
    RuleOperator.GREATER_THAN_OR_EQUAL.value: op_greater_than_or_equal,
    RuleOperator.LESS_THAN_OR_EQUAL.value: op_less_than_or_equal,
    RuleOperator.CONTAINS.value: op_contains,
    RuleOperator.NOT_CONTAINS.value: op_not_contains,
    RuleOperator.STARTS_WITH.value: op_starts_with,
    RuleOperator.ENDS_WITH.value: op_ends_with,
    RuleOperator.REGEX_MATCH.value: op_regex_match,
    RuleOperator.MATCHES.value: op_regex_match,
    RuleOperator.IN_LIST.value: op_in_list,
    RuleOperator.NOT_IN_LIST.value: op_not_in_list,
    RuleOperator.IN_RANGE.value: op_in_range,
    RuleOperator.OUT_OF_RANGE.value: op_out_of_range,
    RuleOperator.IS_NULL.value: op_is_null,
    RuleOperator.IS_NOT_NULL.value: op_is_not_null,
    RuleOperator.IS_EMPTY.value: op_is_empty,
    RuleOperator.IS_NOT_EMPTY.value: op_is_not_empty,
    RuleOperator.EXISTS.value: op_exists,
    RuleOperator.NOT_EXISTS.value: op_not_exists,
}

# Operators that can be true for a field that is absent from the context
MISSING_AWARE_OPERATORS = frozenset({
    RuleOperator.EXISTS.value,
    RuleOperator.NOT_EXISTS.value,
})


class OperatorLibrary:
    """Dispatch table from operator name to predicate."""

    def __init__(self, operators: Optional[Dict[str, OperatorFunc]] = None):
        self._operators: Dict[str, OperatorFunc] = dict(operators or DEFAULT_OPERATORS)

    def is_known(self, operator: Any) -> bool:
        return _operator_name(operator) in self._operators

    def names(self):
        return sorted(self._operators)

    def apply(self, operator: Any, field_value: Any, rule_value: Any) -> OperatorResult:
        """Apply an operator; never raises."""
        name = _operator_name(operator)
        func = self._operators.get(name)
        if func is None:
            return OperatorResult(
                matched=False,
                diagnostic=EvaluationDiagnostic(
                    code="unknown_operator",
                    message=f"Unknown operator '{name}'"
                )
            )

        if field_value is MISSING and name not in MISSING_AWARE_OPERATORS:
            return OperatorResult(matched=False)

        try:
            outcome = func(field_value, rule_value)
        except ConfigurationError as e:
            return OperatorResult(
                matched=False,
                diagnostic=EvaluationDiagnostic(code="invalid_pattern", message=e.message)
            )

        if outcome is None:
            return OperatorResult(
                matched=False,
                diagnostic=EvaluationDiagnostic(
                    code="type_mismatch",
                    message=f"Operator '{name}' cannot compare {_type_name(field_value)} with {_type_name(rule_value)}"
                )
            )

        return OperatorResult(matched=bool(outcome))


def _operator_name(operator: Any) -> str:
    if isinstance(operator, RuleOperator):
        return operator.value
    return str(operator)


def _type_name(value: Any) -> str:
    if value is MISSING:
        return "missing"
    return type(value).__name__


default_operators = OperatorLibrary()
