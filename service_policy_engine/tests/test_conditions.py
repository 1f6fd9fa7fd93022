"""
Unit tests for condition tree evaluation.
"""

import itertools
import pytest
from unittest.mock import MagicMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import ConfigurationError
from service_policy_engine.app.rules.conditions import ConditionEvaluator
from service_policy_engine.app.rules.models import (
    ConditionGroup, ConditionLeaf, LogicalOperator
)
from service_policy_engine.app.rules.operators import OperatorLibrary, OperatorResult


def leaf(field, operator="equals", value=True):
    return ConditionLeaf(field=field, operator=operator, value=value)


class TestConditionEvaluator:
    """Test cases for ConditionEvaluator."""

    @pytest.fixture
    def evaluator(self):
        return ConditionEvaluator()

    def test_leaf(self, evaluator):
        condition = leaf("user.verified")

        assert evaluator.evaluate(condition, {"user": {"verified": True}}) is True
        assert evaluator.evaluate(condition, {"user": {"verified": False}}) is False

    @pytest.mark.parametrize("a,b", list(itertools.product([True, False], repeat=2)))
    def test_not_and_equals_or_of_nots(self, evaluator, a, b):
        """NOT(A AND B) == (!A) OR (!B) for all assignments."""
        context = {"a": a, "b": b}
        not_and = ConditionGroup(
            LogicalOperator.NOT,
            (ConditionGroup(LogicalOperator.AND, (leaf("a"), leaf("b"))),)
        )
        or_of_nots = ConditionGroup(
            LogicalOperator.OR,
            (
                ConditionGroup(LogicalOperator.NOT, (leaf("a"),)),
                ConditionGroup(LogicalOperator.NOT, (leaf("b"),)),
            )
        )

        assert evaluator.evaluate(not_and, context) == evaluator.evaluate(or_of_nots, context)
        assert evaluator.evaluate(not_and, context) == (not (a and b))

    def test_or_group(self, evaluator):
        group = ConditionGroup(LogicalOperator.OR, (leaf("a"), leaf("b")))

        assert evaluator.evaluate(group, {"a": False, "b": True}) is True
        assert evaluator.evaluate(group, {"a": False, "b": False}) is False

    def test_nested_groups(self, evaluator):
        group = ConditionGroup(
            LogicalOperator.AND,
            (
                leaf("user.country", "in_list", ["KE", "NG"]),
                ConditionGroup(
                    LogicalOperator.OR,
                    (leaf("user.age", "greater_than", 17), leaf("user.guardian", "exists", None))
                ),
            )
        )

        assert evaluator.evaluate(group, {"user": {"country": "KE", "age": 20}}) is True
        assert evaluator.evaluate(group, {"user": {"country": "KE", "age": 12, "guardian": "x"}}) is True
        assert evaluator.evaluate(group, {"user": {"country": "US", "age": 20}}) is False

    def test_and_short_circuits(self):
        operators = MagicMock(spec=OperatorLibrary)
        operators.apply.return_value = OperatorResult(matched=False)
        evaluator = ConditionEvaluator(operators=operators)
        group = ConditionGroup(LogicalOperator.AND, (leaf("a"), leaf("b", "regex_match", ".*")))

        assert evaluator.evaluate(group, {"a": 1, "b": "x"}) is False
        assert operators.apply.call_count == 1

    def test_or_short_circuits(self):
        operators = MagicMock(spec=OperatorLibrary)
        operators.apply.return_value = OperatorResult(matched=True)
        evaluator = ConditionEvaluator(operators=operators)
        group = ConditionGroup(LogicalOperator.OR, (leaf("a"), leaf("b")))

        assert evaluator.evaluate(group, {"a": 1, "b": 2}) is True
        assert operators.apply.call_count == 1

    def test_missing_field_diagnostic(self, evaluator):
        diagnostics = []

        assert evaluator.evaluate(leaf("user.plan", "equals", "pro"), {"user": {}}, diagnostics) is False
        assert [d.code for d in diagnostics] == ["field_not_found"]

    def test_not_exists_on_missing_field(self, evaluator):
        diagnostics = []

        assert evaluator.evaluate(leaf("user.ban", "not_exists", None), {"user": {}}, diagnostics) is True
        assert diagnostics == []

    def test_unknown_operator_degrades(self, evaluator):
        diagnostics = []

        assert evaluator.evaluate(leaf("a", "roughly", 1), {"a": 1}, diagnostics) is False
        assert diagnostics[0].code == "unknown_operator"

    def test_evaluate_all_empty_holds(self, evaluator):
        assert evaluator.evaluate_all([], {}) is True

    def test_evaluate_all(self, evaluator):
        conditions = [leaf("a"), leaf("b")]

        assert evaluator.evaluate_all(conditions, {"a": True, "b": True}) is True
        assert evaluator.evaluate_all(conditions, {"a": True, "b": False}) is False

    def test_unsupported_node(self, evaluator):
        diagnostics = []

        assert evaluator.evaluate({"field": "a"}, {"a": 1}, diagnostics) is False
        assert diagnostics[0].code == "evaluation_error"


class TestConditionGroupConstruction:
    """Malformed groups are rejected when built."""

    def test_not_requires_one_operand(self):
        with pytest.raises(ConfigurationError):
            ConditionGroup(LogicalOperator.NOT, (leaf("a"), leaf("b")))

    def test_group_requires_operands(self):
        with pytest.raises(ConfigurationError):
            ConditionGroup(LogicalOperator.AND, ())
