"""
Single-rule evaluation.
"""

import dataclasses
from typing import Any, List, Optional

from shared.logging import get_logger
from .conditions import ConditionEvaluator
from .models import EvaluationDiagnostic, PolicyRule, RuleEvaluation
from .operators import OperatorLibrary, default_operators
from .resolver import FieldResolver, MISSING, default_resolver


class RuleEvaluator:
    """Evaluates a PolicyRule: its own operator test AND its attached conditions."""

    def __init__(self, resolver: Optional[FieldResolver] = None,
                 operators: Optional[OperatorLibrary] = None,
                 condition_evaluator: Optional[ConditionEvaluator] = None):
        self.resolver = resolver or default_resolver
        self.operators = operators or default_operators
        self.condition_evaluator = condition_evaluator or ConditionEvaluator(self.resolver, self.operators)
        self.logger = get_logger("policy_engine.rule_evaluator")

    def evaluate(self, rule: PolicyRule, context: Any) -> RuleEvaluation:
        """Evaluate a rule; malformed rules degrade to no match."""
        try:
            field_value = self.resolver.resolve(context, rule.field)
            if field_value is MISSING:
                return RuleEvaluation(
                    rule_id=rule.id,
                    matches=False,
                    diagnostics=(EvaluationDiagnostic(
                        code="field_not_found",
                        message=f"Field '{rule.field}' not found",
                        rule_id=rule.id
                    ),)
                )

            result = self.operators.apply(rule.operator, field_value, rule.value)
            if not result.matched:
                diagnostics = ()
                if result.diagnostic is not None:
                    diagnostics = (dataclasses.replace(result.diagnostic, rule_id=rule.id),)
                return RuleEvaluation(rule_id=rule.id, matches=False, diagnostics=diagnostics)

            # Condition findings are kept even when the conditions still hold
            found: List[EvaluationDiagnostic] = []
            holds = self.condition_evaluator.evaluate_all(rule.conditions, context, found)
            diagnostics = tuple(dataclasses.replace(d, rule_id=rule.id) for d in found)

            if not holds:
                return RuleEvaluation(rule_id=rule.id, matches=False, diagnostics=diagnostics)

            return RuleEvaluation(
                rule_id=rule.id,
                matches=True,
                violation=self.describe_violation(rule),
                diagnostics=diagnostics
            )

        except Exception as e:
            self.logger.error("Error evaluating rule", rule_id=rule.id, error=str(e))
            return RuleEvaluation(
                rule_id=rule.id,
                matches=False,
                diagnostics=(EvaluationDiagnostic(
                    code="evaluation_error",
                    message=f"Error evaluating rule '{rule.name}': {e}",
                    rule_id=rule.id
                ),)
            )

    @staticmethod
    def describe_violation(rule: PolicyRule) -> str:
        """Human-readable violation text for audit and UX use."""
        return f"Rule '{rule.name}' triggered: {rule.description or 'No description'}"
