"""
Structural policy validation and rule conflict detection.

Runs at activation time only. The validator never mutates the policy and
walks rules, conditions and actions in declaration order, so two runs on
the same policy produce identical reports.
"""

from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError as ParameterValidationError

from shared.errors import ConfigurationError
from shared.logging import get_logger
from .report import ValidationReport
from ..rules.actions import parse_action_parameters, parameter_model_for
from ..rules.models import (
    EVALUABLE_STATUSES, LIST_OPERATORS, NUMERIC_OPERATORS, PATTERN_OPERATORS,
    RANGE_OPERATORS, STRING_OPERATORS, UNARY_OPERATORS,
    ActionType, Condition, ConditionGroup, ConditionLeaf, Policy, PolicyAction,
    PolicyRule, RuleOperator
)
from ..rules.operators import OperatorLibrary, compile_pattern, default_operators, to_number, values_equal

BLOCKING_ACTION_TYPES = frozenset({
    ActionType.BLOCK.value,
    ActionType.SUSPEND.value,
    ActionType.BAN.value,
    ActionType.QUARANTINE.value,
})


class PolicyValidator:
    """Checks a policy's structure before it is allowed to run."""

    def __init__(self, operators: Optional[OperatorLibrary] = None):
        self.operators = operators or default_operators
        self.logger = get_logger("policy_engine.validator")

    def validate_policy(self, policy: Policy) -> ValidationReport:
        """Validate a policy; errors block activation, warnings do not."""
        report = ValidationReport()

        require_text(report, policy.name, "name", "Policy name")
        require_text(report, policy.category, "category", "Policy category")

        if not policy.rules:
            report.error("missing_rules", "At least one rule is required")

        if not policy.actions:
            report.error("missing_actions", "At least one action is required")

        if policy.is_active and policy.status not in EVALUABLE_STATUSES:
            report.error(
                "inconsistent_status",
                f"Policy is active but its status is '{_value(policy.status)}'",
                {"status": _value(policy.status)}
            )

        for index, rule in enumerate(policy.rules):
            report.extend(self.validate_rule(rule, index))

        seen_action_ids = set()
        for index, action in enumerate(policy.actions):
            if action.id in seen_action_ids:
                report.warning(
                    "duplicate_action",
                    f"Action {index + 1}: Duplicate action id '{action.id}' will be executed once",
                    {"action_id": action.id}
                )
            seen_action_ids.add(action.id)
            report.extend(self.validate_action(action, index))

        for message in self.check_rule_conflicts(policy.rules):
            report.warning("rule_conflict", message)

        self.logger.debug(
            "Policy validated",
            policy_id=policy.id,
            errors=len(report.errors),
            warnings=len(report.warnings)
        )

        return report

    def validate_rule(self, rule: PolicyRule, index: int) -> ValidationReport:
        """Validate one rule, including its attached conditions."""
        report = ValidationReport()
        prefix = f"Rule {index + 1}"
        details = {"rule_id": rule.id}
        operator = _value(rule.operator)

        require_text(report, rule.name, "rule_name", f"{prefix}: Name", details)
        require_text(report, rule.type, "rule_type", f"{prefix}: Type", details)

        known = False
        if not operator:
            report.error("missing_operator", f"{prefix}: Operator is required", details)
        elif not isinstance(operator, str) or not self.operators.is_known(operator):
            report.error("unknown_operator", f"{prefix}: Unknown operator '{operator}'", details)
        else:
            known = True

        if require_text(report, rule.field, "field", f"{prefix}: Field", details) and ".." in rule.field:
            report.warning("unsafe_field_path", f"{prefix}: Field path contains '..' which may be unsafe", details)

        if rule.value is None and not (known and operator in UNARY_OPERATORS):
            report.error("missing_value", f"{prefix}: Value is required", details)
        elif known:
            message = operator_value_problem(operator, rule.value)
            if message:
                report.error("incompatible_value", f"{prefix}: {message}", details)

        for condition in rule.conditions:
            self._validate_condition(condition, f"{prefix} condition", report)

        return report

    def validate_action(self, action: PolicyAction, index: int, prefix: Optional[str] = None) -> ValidationReport:
        """Validate one action, its conditions and its fallback."""
        report = ValidationReport()
        prefix = prefix or f"Action {index + 1}"
        label = f"Action '{action.name or action.id}'"
        details = {"action_id": action.id}
        action_type = _value(action.type)

        require_text(report, action.name, "action_name", f"{prefix}: Name", details)

        if not action_type:
            report.error("missing_action_type", f"{prefix}: Type is required", details)
        elif not isinstance(action_type, str) or parameter_model_for(action_type) is None:
            report.error("unknown_action_type", f"{prefix}: Unknown action type '{action_type}'", details)
        else:
            try:
                parsed = parse_action_parameters(action_type, action.parameters)
            except ParameterValidationError as e:
                for message in _parameter_messages(e):
                    report.error("invalid_action_parameters", f"{label}: {message}", details)
            else:
                if action_type in BLOCKING_ACTION_TYPES and not parsed.duration and not parsed.permanent:
                    report.warning(
                        "block_without_duration",
                        f"{label}: Consider specifying duration for {action_type} action",
                        details
                    )

        for condition in action.conditions:
            self._validate_condition(condition, f"{prefix} condition", report)

        if action.fallback_action is not None:
            report.extend(self.validate_action(action.fallback_action, index, prefix=f"{prefix} fallback"))

        return report

    def validate_conditions(self, conditions: Iterable[Condition], prefix: str) -> ValidationReport:
        """Validate standalone condition trees such as audience criteria."""
        report = ValidationReport()
        for condition in conditions:
            self._validate_condition(condition, prefix, report)
        return report

    def _validate_condition(self, condition: Condition, prefix: str, report: ValidationReport):
        if isinstance(condition, ConditionGroup):
            for child in condition.children:
                self._validate_condition(child, prefix, report)
            return

        if not isinstance(condition, ConditionLeaf):
            report.error("invalid_condition", f"{prefix}: Unsupported condition node")
            return

        details = {"condition_id": condition.id, "field": condition.field}
        operator = _value(condition.operator)

        require_text(report, condition.field, "field", f"{prefix}: Field", details)

        if not isinstance(operator, str) or not self.operators.is_known(operator):
            report.error("unknown_operator", f"{prefix}: Unknown operator '{operator}'", details)
            return

        if condition.value is None and operator not in UNARY_OPERATORS:
            report.error("missing_value", f"{prefix}: Value is required", details)
            return

        message = operator_value_problem(operator, condition.value)
        if message:
            report.error("incompatible_value", f"{prefix}: {message}", details)

    def check_rule_conflicts(self, rules: List[PolicyRule]) -> List[str]:
        """Pairwise scan of rules sharing a field for contradictory operators."""
        warnings: List[str] = []

        for i in range(len(rules)):
            for j in range(i + 1, len(rules)):
                first, second = rules[i], rules[j]
                if first.field != second.field:
                    continue

                if _contradicts(first, second) or _contradicts(second, first):
                    warnings.append(
                        f"Potential conflict: Rules '{first.name}' and '{second.name}' "
                        f"may be contradictory on field '{first.field}'"
                    )

        return warnings


def operator_value_problem(operator: str, value: Any) -> Optional[str]:
    """Describe why a value cannot be used with an operator, or None."""
    if operator in UNARY_OPERATORS:
        return None

    if operator in NUMERIC_OPERATORS:
        if to_number(value) is None:
            return f"Operator '{operator}' requires a numeric value"

    elif operator in STRING_OPERATORS:
        if not isinstance(value, (str, list, tuple)):
            return f"Operator '{operator}' requires a string or array value"

    elif operator in LIST_OPERATORS:
        if not isinstance(value, (list, tuple)):
            return f"Operator '{operator}' requires an array value"

    elif operator in RANGE_OPERATORS:
        if not isinstance(value, (list, tuple)) or len(value) != 2 or \
                to_number(value[0]) is None or to_number(value[1]) is None:
            return f"Operator '{operator}' requires a [min, max] numeric range"
        if to_number(value[0]) > to_number(value[1]):
            return f"Operator '{operator}' range minimum exceeds maximum"

    elif operator in PATTERN_OPERATORS:
        try:
            compile_pattern(value)
        except ConfigurationError as e:
            return e.message

    return None


def _contradicts(first: PolicyRule, second: PolicyRule) -> bool:
    op1, op2 = _value(first.operator), _value(second.operator)

    if op1 == RuleOperator.EQUALS.value and op2 == RuleOperator.NOT_EQUALS.value:
        return values_equal(first.value, second.value)

    if op1 == RuleOperator.GREATER_THAN.value and op2 == RuleOperator.LESS_THAN.value:
        low, high = to_number(first.value), to_number(second.value)
        return low is not None and high is not None and low >= high

    return False


def _parameter_messages(error: ParameterValidationError) -> List[str]:
    messages: List[str] = []
    for item in error.errors():
        message = item.get("msg", "")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        location = ".".join(str(part) for part in item.get("loc", ()))
        messages.append(f"{location}: {message}" if location else message)
    return messages


def _value(item: Any) -> Any:
    return getattr(item, "value", item)


def require_text(report: ValidationReport, value: Any, code: str, label: str,
                  details: Optional[Dict[str, Any]] = None) -> bool:
    """Report a missing or non-string value; True when the value is usable text."""
    if value is not None and not isinstance(value, str):
        report.error(f"invalid_{code}", f"{label} must be a string", details)
        return False
    if not value or not value.strip():
        report.error(f"missing_{code}", f"{label} is required", details)
        return False
    return True
