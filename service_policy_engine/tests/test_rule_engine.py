"""
Unit tests for rule evaluation and the policy engine.
"""

import pytest
from unittest.mock import patch

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_policy_engine.app.rules.engine import PolicyEngine
from service_policy_engine.app.rules.evaluator import RuleEvaluator
from service_policy_engine.app.rules.models import (
    ConditionLeaf, Policy, PolicyAction, PolicyRule, PolicyStatus
)


@pytest.fixture
def reputation_rule():
    return PolicyRule(
        id="rule-1",
        name="Low reputation",
        field="user.reputation",
        operator="less_than",
        value=50,
        description="Reputation below 50"
    )


@pytest.fixture
def active_policy(reputation_rule):
    return Policy(
        id="policy-1",
        name="Reputation guard",
        category="security",
        status=PolicyStatus.ACTIVE,
        is_active=True,
        version=3,
        rules=[
            reputation_rule,
            PolicyRule(id="rule-2", name="Flagged", field="user.flagged", operator="equals", value=True),
        ],
        actions=[
            PolicyAction(id="notify", name="Notify", type="notify", order=2,
                         parameters={"email": "ops@example.com"}),
            PolicyAction(id="flag", name="Flag", type="flag", order=1),
            PolicyAction(id="log", name="Log", type="log", order=1),
        ]
    )


class TestRuleEvaluator:
    """Test cases for RuleEvaluator."""

    @pytest.fixture
    def evaluator(self):
        return RuleEvaluator()

    def test_rule_matches(self, evaluator, reputation_rule):
        result = evaluator.evaluate(reputation_rule, {"user": {"reputation": 40}})

        assert result.matches is True
        assert result.violation == "Rule 'Low reputation' triggered: Reputation below 50"

    def test_rule_does_not_match(self, evaluator, reputation_rule):
        result = evaluator.evaluate(reputation_rule, {"user": {"reputation": 60}})

        assert result.matches is False
        assert result.violation is None
        assert result.diagnostic is None

    def test_missing_field(self, evaluator, reputation_rule):
        result = evaluator.evaluate(reputation_rule, {"user": {}})

        assert result.matches is False
        assert result.diagnostic.code == "field_not_found"
        assert result.diagnostic.message == "Field 'user.reputation' not found"
        assert result.diagnostic.rule_id == "rule-1"

    def test_attached_conditions_must_hold(self, evaluator, reputation_rule):
        reputation_rule.conditions = [ConditionLeaf(field="user.verified", operator="equals", value=False)]

        assert evaluator.evaluate(reputation_rule, {"user": {"reputation": 10, "verified": False}}).matches is True
        assert evaluator.evaluate(reputation_rule, {"user": {"reputation": 10, "verified": True}}).matches is False

    def test_malformed_condition_is_recorded(self, evaluator, reputation_rule):
        reputation_rule.conditions = [ConditionLeaf(field="user.verified", operator="bogus_op", value=True)]

        result = evaluator.evaluate(reputation_rule, {"user": {"reputation": 10, "verified": True}})

        assert result.matches is False
        assert [d.code for d in result.diagnostics] == ["unknown_operator"]
        assert result.diagnostic.rule_id == "rule-1"

    def test_missing_condition_field_is_recorded(self, evaluator, reputation_rule):
        reputation_rule.conditions = [ConditionLeaf(field="user.verified", operator="equals", value=False)]

        result = evaluator.evaluate(reputation_rule, {"user": {"reputation": 10}})

        assert result.matches is False
        assert [(d.code, d.rule_id) for d in result.diagnostics] == [("field_not_found", "rule-1")]

    def test_type_mismatch_diagnostic(self, evaluator, reputation_rule):
        result = evaluator.evaluate(reputation_rule, {"user": {"reputation": "high"}})

        assert result.matches is False
        assert result.diagnostic.code == "type_mismatch"
        assert result.diagnostic.rule_id == "rule-1"

    def test_violation_without_description(self, evaluator):
        rule = PolicyRule(id="r", name="Any", field="a", operator="exists")

        assert evaluator.evaluate(rule, {"a": 1}).violation == "Rule 'Any' triggered: No description"

    def test_unexpected_error_degrades(self, evaluator, reputation_rule):
        with patch.object(evaluator.operators, "apply", side_effect=RuntimeError("boom")):
            result = evaluator.evaluate(reputation_rule, {"user": {"reputation": 1}})

        assert result.matches is False
        assert result.diagnostic.code == "evaluation_error"


class TestPolicyEngine:
    """Test cases for PolicyEngine."""

    @pytest.fixture
    def engine(self):
        return PolicyEngine()

    def test_policy_triggers(self, engine, active_policy):
        verdict = engine.evaluate_policy(active_policy, {"user": {"reputation": 10, "flagged": False}})

        assert verdict.triggered is True
        assert verdict.reason == "rules_matched"
        assert verdict.matched_rules == ("rule-1",)
        assert verdict.policy_version == 3
        assert verdict.evaluation_time_ms >= 0

    def test_actions_sorted_by_order_stably(self, engine, active_policy):
        verdict = engine.evaluate_policy(active_policy, {"user": {"reputation": 10}})

        assert [a.action_id for a in verdict.executed_actions] == ["flag", "log", "notify"]

    def test_rules_are_or_combined(self, engine, active_policy):
        verdict = engine.evaluate_policy(active_policy, {"user": {"reputation": 90, "flagged": True}})

        assert verdict.triggered is True
        assert verdict.matched_rules == ("rule-2",)

    def test_no_match(self, engine, active_policy):
        verdict = engine.evaluate_policy(active_policy, {"user": {"reputation": 90, "flagged": False}})

        assert verdict.triggered is False
        assert verdict.reason == "no_rules_matched"
        assert verdict.executed_actions == ()

    def test_condition_diagnostics_reach_verdict(self, engine, active_policy):
        active_policy.rules = [
            PolicyRule(id="x-rule", name="X", field="x", operator="equals", value=1,
                       conditions=[ConditionLeaf(field="y", operator="bogus_op", value=1)]),
        ]

        verdict = engine.evaluate_policy(active_policy, {"x": 1, "y": 1})

        assert verdict.triggered is False
        assert verdict.reason == "no_rules_matched"
        assert [(d.code, d.rule_id) for d in verdict.diagnostics] == [("unknown_operator", "x-rule")]

    def test_missing_fields_never_throw(self, engine, active_policy):
        verdict = engine.evaluate_policy(active_policy, {})

        assert verdict.triggered is False
        assert {d.code for d in verdict.diagnostics} == {"field_not_found"}

    def test_inactive_policy(self, engine, active_policy):
        active_policy.is_active = False

        verdict = engine.evaluate_policy(active_policy, {"user": {"reputation": 10}})

        assert verdict.triggered is False
        assert verdict.reason == "policy_inactive"

    def test_missing_policy_fails_closed(self, engine):
        verdict = engine.evaluate_policy(None, {"user": {"reputation": 10}})

        assert verdict.triggered is False
        assert verdict.reason == "policy_not_found"

    def test_inactive_rules_are_skipped(self, engine, active_policy):
        active_policy.rules[0].is_active = False

        verdict = engine.evaluate_policy(active_policy, {"user": {"reputation": 10}})

        assert verdict.triggered is False

    def test_inactive_and_duplicate_actions(self, engine, active_policy):
        active_policy.actions[1].is_active = False
        active_policy.actions.append(PolicyAction(id="notify", name="Notify again", type="notify", order=0))

        verdict = engine.evaluate_policy(active_policy, {"user": {"reputation": 10}})

        assert [a.action_id for a in verdict.executed_actions] == ["log", "notify"]
        assert verdict.executed_actions[1].order == 2

    def test_action_conditions_and_fallback(self, engine, active_policy):
        active_policy.actions = [
            PolicyAction(
                id="block", name="Block", type="block", order=1,
                parameters={"duration": 3600},
                conditions=[ConditionLeaf(field="user.reputation", operator="less_than", value=5)],
                fallback_action=PolicyAction(id="captcha", name="Captcha", type="captcha")
            )
        ]

        severe = engine.evaluate_policy(active_policy, {"user": {"reputation": 1}})
        mild = engine.evaluate_policy(active_policy, {"user": {"reputation": 30}})

        assert [a.action_id for a in severe.executed_actions] == ["block"]
        assert [a.action_id for a in mild.executed_actions] == ["captcha"]
        assert mild.executed_actions[0].fallback_for == "block"
        assert mild.executed_actions[0].order == 1

    def test_planned_parameters_are_copies(self, engine, active_policy):
        verdict = engine.evaluate_policy(active_policy, {"user": {"reputation": 10}})
        verdict.executed_actions[2].parameters["email"] = "changed"

        assert active_policy.actions[0].parameters["email"] == "ops@example.com"

    def test_repeat_evaluations_are_identical(self, engine, active_policy):
        context = {"user": {"reputation": 10}}

        first = engine.evaluate_policy(active_policy, context)
        second = engine.evaluate_policy(active_policy, context)

        assert first == second
        assert first.canonical_json() == second.canonical_json()

    def test_evaluation_error_fails_closed(self, engine, active_policy):
        with patch.object(engine, "plan_actions", side_effect=RuntimeError("boom")):
            verdict = engine.evaluate_policy(active_policy, {"user": {"reputation": 10}})

        assert verdict.triggered is False
        assert verdict.reason == "evaluation_error"
