"""
Recursive evaluation of condition trees.
"""

from typing import Any, Iterable, List, Optional

from shared.logging import get_logger
from .models import Condition, ConditionGroup, ConditionLeaf, EvaluationDiagnostic, LogicalOperator
from .operators import OperatorLibrary, default_operators
from .resolver import FieldResolver, MISSING, default_resolver


class ConditionEvaluator:
    """Evaluates ConditionLeaf / ConditionGroup trees against a context.

    AND and OR short-circuit left to right, so cheap predicates placed first
    spare the cost of later regex operands.
    """

    def __init__(self, resolver: Optional[FieldResolver] = None,
                 operators: Optional[OperatorLibrary] = None):
        self.resolver = resolver or default_resolver
        self.operators = operators or default_operators
        self.logger = get_logger("policy_engine.conditions")

    def evaluate(self, condition: Condition, context: Any,
                 diagnostics: Optional[List[EvaluationDiagnostic]] = None) -> bool:
        """Evaluate one condition tree."""
        if isinstance(condition, ConditionLeaf):
            return self._evaluate_leaf(condition, context, diagnostics)

        if isinstance(condition, ConditionGroup):
            return self._evaluate_group(condition, context, diagnostics)

        self._note(diagnostics, EvaluationDiagnostic(
            code="evaluation_error",
            message=f"Unsupported condition node {type(condition).__name__}"
        ))
        return False

    def evaluate_all(self, conditions: Iterable[Condition], context: Any,
                     diagnostics: Optional[List[EvaluationDiagnostic]] = None) -> bool:
        """True when every condition holds; an empty list holds trivially."""
        for condition in conditions:
            if not self.evaluate(condition, context, diagnostics):
                return False
        return True

    def _evaluate_group(self, group: ConditionGroup, context: Any,
                        diagnostics: Optional[List[EvaluationDiagnostic]]) -> bool:
        if group.logical_operator == LogicalOperator.NOT:
            return not self.evaluate(group.children[0], context, diagnostics)

        if group.logical_operator == LogicalOperator.OR:
            for child in group.children:
                if self.evaluate(child, context, diagnostics):
                    return True
            return False

        for child in group.children:
            if not self.evaluate(child, context, diagnostics):
                return False
        return True

    def _evaluate_leaf(self, leaf: ConditionLeaf, context: Any,
                       diagnostics: Optional[List[EvaluationDiagnostic]]) -> bool:
        field_value = self.resolver.resolve(context, leaf.field)
        result = self.operators.apply(leaf.operator, field_value, leaf.value)

        if result.diagnostic is not None:
            self._note(diagnostics, result.diagnostic)
        elif field_value is MISSING and not result.matched:
            self._note(diagnostics, EvaluationDiagnostic(
                code="field_not_found",
                message=f"Condition field '{leaf.field}' not found"
            ))

        self.logger.debug(
            "Condition evaluated",
            condition_id=leaf.id,
            field=leaf.field,
            operator=str(leaf.operator),
            matched=result.matched
        )
        return result.matched

    @staticmethod
    def _note(diagnostics: Optional[List[EvaluationDiagnostic]], diagnostic: EvaluationDiagnostic):
        if diagnostics is not None:
            diagnostics.append(diagnostic)
