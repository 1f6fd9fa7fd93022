"""
Unit tests for policy validation and dependency checks.
"""

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_policy_engine.app.rules.models import (
    ConditionLeaf, DependencyType, Policy, PolicyAction, PolicyDependency,
    PolicyRule, PolicyStatus
)
from service_policy_engine.app.validation.dependencies import DependencyValidator
from service_policy_engine.app.validation.validator import PolicyValidator, operator_value_problem


def make_policy(policy_id="policy-1", rules=None, actions=None, **kwargs):
    return Policy(
        id=policy_id,
        name=kwargs.pop("name", "Spam guard"),
        category=kwargs.pop("category", "content"),
        rules=rules if rules is not None else [
            PolicyRule(id="r1", name="Many links", field="post.links", operator="greater_than", value=5),
        ],
        actions=actions if actions is not None else [
            PolicyAction(id="a1", name="Flag", type="flag"),
        ],
        **kwargs
    )


class TestPolicyValidator:
    """Test cases for PolicyValidator."""

    @pytest.fixture
    def validator(self):
        return PolicyValidator()

    def test_valid_policy(self, validator):
        report = validator.validate_policy(make_policy())

        assert report.is_valid
        assert report.errors == []

    def test_required_fields(self, validator):
        report = validator.validate_policy(make_policy(name=" ", category="", rules=[], actions=[]))

        assert report.error_messages() == [
            "Policy name is required",
            "Policy category is required",
            "At least one rule is required",
            "At least one action is required",
        ]

    def test_active_flag_requires_evaluable_status(self, validator):
        report = validator.validate_policy(make_policy(is_active=True, status=PolicyStatus.DRAFT))

        assert [e.code for e in report.errors] == ["inconsistent_status"]

        report = validator.validate_policy(make_policy(is_active=True, status=PolicyStatus.TESTING))
        assert report.is_valid

    def test_rule_field_checks(self, validator):
        rule = PolicyRule(id="r1", name="", field="", operator="less_than", value=None, type="")
        report = validator.validate_rule(rule, 0)

        assert report.error_messages() == [
            "Rule 1: Name is required",
            "Rule 1: Type is required",
            "Rule 1: Field is required",
            "Rule 1: Value is required",
        ]

    def test_non_string_fields_are_reported(self, validator):
        rule = PolicyRule(id="r1", name="Links", field=7, operator=3, value=1)
        action = PolicyAction(id="a1", name="Flag", type=5)
        report = validator.validate_policy(make_policy(name=123, rules=[rule], actions=[action]))

        codes = [e.code for e in report.errors]
        assert "invalid_name" in codes
        assert "invalid_field" in codes
        assert "unknown_operator" in codes
        assert "unknown_action_type" in codes
        assert "Policy name must be a string" in report.error_messages()

    def test_unary_operator_needs_no_value(self, validator):
        rule = PolicyRule(id="r1", name="No email", field="user.email", operator="is_null")

        assert validator.validate_rule(rule, 0).is_valid

    def test_unknown_operator(self, validator):
        rule = PolicyRule(id="r1", name="Odd", field="a", operator="approximately", value=1)

        assert validator.validate_rule(rule, 2).error_messages() == ["Rule 3: Unknown operator 'approximately'"]

    def test_operator_value_compatibility(self, validator):
        rule = PolicyRule(id="r1", name="Score", field="score", operator="greater_than", value="high")

        assert validator.validate_rule(rule, 0).error_messages() == [
            "Rule 1: Operator 'greater_than' requires a numeric value"
        ]

    def test_invalid_regex_is_blocking(self, validator):
        rule = PolicyRule(id="r1", name="Pattern", field="title", operator="regex_match", value="([")
        report = validator.validate_rule(rule, 0)

        assert not report.is_valid
        assert report.errors[0].code == "incompatible_value"

    def test_unsafe_field_path_warning(self, validator):
        rule = PolicyRule(id="r1", name="Path", field="user..name", operator="equals", value="x")
        report = validator.validate_rule(rule, 0)

        assert report.is_valid
        assert report.warning_messages() == ["Rule 1: Field path contains '..' which may be unsafe"]

    def test_condition_tree_checks(self, validator):
        rule = PolicyRule(
            id="r1", name="With conditions", field="a", operator="equals", value=1,
            conditions=[ConditionLeaf(field="b", operator="regex_match", value="([")]
        )

        assert not validator.validate_rule(rule, 0).is_valid

    def test_action_parameter_checks(self, validator):
        policy = make_policy(actions=[
            PolicyAction(id="a1", name="Notify", type="notify", parameters={}),
            PolicyAction(id="a2", name="Fix", type="auto_correct", parameters={}),
            PolicyAction(id="a3", name="Block", type="block", parameters={}),
            PolicyAction(id="a4", name="Go", type="teleport"),
        ])
        report = validator.validate_policy(policy)

        assert report.error_messages() == [
            "Action 'Notify': Email or webhook is required for notify action",
            "Action 'Fix': Correction value or function is required for auto_correct action",
            "Action 4: Unknown action type 'teleport'",
        ]
        assert report.warning_messages() == ["Action 'Block': Consider specifying duration for block action"]

    def test_action_parameters_accept_camel_case(self, validator):
        action = PolicyAction(id="a1", name="Limit", type="rate_limit", parameters={"limit": 10, "windowSeconds": 60})

        assert validator.validate_action(action, 0).is_valid

    def test_unexpected_parameter_is_error(self, validator):
        action = PolicyAction(id="a1", name="Flag", type="flag", parameters={"colour": "red"})
        report = validator.validate_action(action, 0)

        assert report.errors[0].code == "invalid_action_parameters"
        assert report.errors[0].message.startswith("Action 'Flag': colour:")

    def test_fallback_action_is_validated(self, validator):
        action = PolicyAction(
            id="a1", name="Block", type="block", parameters={"permanent": True},
            fallback_action=PolicyAction(id="a2", name="Redirect", type="redirect")
        )

        assert not validator.validate_action(action, 0).is_valid

    def test_duplicate_action_warning(self, validator):
        policy = make_policy(actions=[
            PolicyAction(id="a1", name="Flag", type="flag"),
            PolicyAction(id="a1", name="Flag again", type="flag"),
        ])
        report = validator.validate_policy(policy)

        assert report.is_valid
        assert [w.code for w in report.warnings] == ["duplicate_action"]

    def test_conflicting_equality_rules(self, validator):
        rules = [
            PolicyRule(id="r1", name="Is admin", field="role", operator="equals", value="admin"),
            PolicyRule(id="r2", name="Not admin", field="role", operator="not_equals", value="admin"),
        ]

        assert validator.check_rule_conflicts(rules) == [
            "Potential conflict: Rules 'Is admin' and 'Not admin' may be contradictory on field 'role'"
        ]

    def test_conflicting_range_rules_either_order(self, validator):
        high = PolicyRule(id="r1", name="High", field="score", operator="greater_than", value=80)
        low = PolicyRule(id="r2", name="Low", field="score", operator="less_than", value=20)

        assert len(validator.check_rule_conflicts([high, low])) == 1
        assert len(validator.check_rule_conflicts([low, high])) == 1

    def test_non_conflicting_rules(self, validator):
        rules = [
            PolicyRule(id="r1", name="Above", field="score", operator="greater_than", value=10),
            PolicyRule(id="r2", name="Below", field="score", operator="less_than", value=20),
            PolicyRule(id="r3", name="Other", field="age", operator="not_equals", value=10),
        ]

        assert validator.check_rule_conflicts(rules) == []

    def test_validation_is_pure(self, validator):
        policy = make_policy(
            rules=[
                PolicyRule(id="r1", name="A", field="x..y", operator="equals", value=1),
                PolicyRule(id="r2", name="B", field="x..y", operator="not_equals", value=1),
                PolicyRule(id="r3", name="C", field="z", operator="unknown", value=1),
            ],
            actions=[PolicyAction(id="a1", name="Block", type="block")]
        )

        first = validator.validate_policy(policy)
        second = validator.validate_policy(policy)

        assert first.errors == second.errors
        assert first.warnings == second.warnings
        assert first.to_dict() == second.to_dict()


class TestOperatorValueProblem:
    """Test cases for operator/value compatibility."""

    @pytest.mark.parametrize("operator,value", [
        ("less_than", "42"),
        ("contains", ["a"]),
        ("starts_with", "pre"),
        ("in_list", ["a", "b"]),
        ("in_range", [1, 5]),
        ("regex_match", r"^\w+$"),
        ("exists", None),
    ])
    def test_compatible(self, operator, value):
        assert operator_value_problem(operator, value) is None

    @pytest.mark.parametrize("operator,value", [
        ("greater_than", "many"),
        ("contains", 5),
        ("in_list", "a"),
        ("in_range", [5]),
        ("in_range", [9, 1]),
        ("regex_match", "(["),
    ])
    def test_incompatible(self, operator, value):
        assert operator_value_problem(operator, value) is not None


class TestDependencyValidator:
    """Test cases for DependencyValidator."""

    @pytest.fixture
    def validator(self):
        return DependencyValidator()

    def test_prerequisite_cycle_is_rejected(self, validator):
        a = make_policy("A", dependencies=[PolicyDependency("A", "B")])
        b = make_policy("B", dependencies=[PolicyDependency("B", "A")])
        catalog = {"A": a, "B": b}

        report_a = validator.check(a, catalog)
        report_b = validator.check(b, catalog)

        assert "dependency_cycle" in [e.code for e in report_a.errors]
        assert "dependency_cycle" in [e.code for e in report_b.errors]
        assert validator.find_prerequisite_cycle(a, catalog) == ["A", "B", "A"]

    def test_cycle_rejected_even_when_prerequisite_active(self, validator):
        a = make_policy("A", dependencies=[PolicyDependency("A", "B")])
        b = make_policy("B", is_active=True, status=PolicyStatus.ACTIVE,
                        dependencies=[PolicyDependency("B", "A")])

        report = validator.check(a, {"A": a, "B": b})

        assert [e.code for e in report.errors] == ["dependency_cycle"]

    def test_self_prerequisite_is_cycle(self, validator):
        a = make_policy("A", dependencies=[PolicyDependency("A", "A")])

        assert validator.find_prerequisite_cycle(a, {"A": a}) == ["A", "A"]

    def test_missing_and_inactive_prerequisites(self, validator):
        a = make_policy("A", dependencies=[PolicyDependency("A", "B"), PolicyDependency("A", "C")])
        b = make_policy("B")

        report = validator.check(a, {"A": a, "B": b})

        assert [e.code for e in report.errors] == ["inactive_prerequisite", "missing_prerequisite"]

    def test_active_prerequisite_passes(self, validator):
        a = make_policy("A", dependencies=[PolicyDependency("A", "B")])
        b = make_policy("B", is_active=True, status=PolicyStatus.ACTIVE)

        assert validator.check(a, {"A": a, "B": b}).is_valid

    def test_conflict_with_active_policy(self, validator):
        a = make_policy("A", dependencies=[PolicyDependency("A", "B", type=DependencyType.CONFLICT)])
        b = make_policy("B", is_active=True, status=PolicyStatus.ACTIVE)

        report = validator.check(a, {"A": a, "B": b})
        assert [e.code for e in report.errors] == ["active_conflict"]

        b.is_active = False
        b.status = PolicyStatus.INACTIVE
        assert validator.check(a, {"A": a, "B": b}).is_valid

    def test_conflict_declared_by_active_policy(self, validator):
        a = make_policy("A")
        b = make_policy("B", is_active=True, status=PolicyStatus.ACTIVE,
                        dependencies=[PolicyDependency("B", "A", type=DependencyType.CONFLICT)])

        report = validator.check(a, {"A": a, "B": b})

        assert [e.code for e in report.errors] == ["active_conflict"]
        assert report.errors[0].details == {"policy_id": "B", "depends_on_policy_id": "A"}

        b.is_active = False
        b.status = PolicyStatus.INACTIVE
        assert validator.check(a, {"A": a, "B": b}).is_valid

    def test_missing_enhancement_is_warning(self, validator):
        a = make_policy("A", dependencies=[PolicyDependency("A", "X", type=DependencyType.ENHANCEMENT)])

        report = validator.check(a, {"A": a})

        assert report.is_valid
        assert report.warning_messages() == ["Enhancement policy 'X' not found"]

    def test_candidate_edges_override_stored_snapshot(self, validator):
        stored_a = make_policy("A")
        candidate_a = make_policy("A", dependencies=[PolicyDependency("A", "B")])
        b = make_policy("B", is_active=True, status=PolicyStatus.ACTIVE,
                        dependencies=[PolicyDependency("B", "A")])

        report = validator.check(candidate_a, {"A": stored_a, "B": b})

        assert "dependency_cycle" in [e.code for e in report.errors]
