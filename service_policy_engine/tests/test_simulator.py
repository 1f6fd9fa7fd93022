"""
Unit tests for the test and simulation harness.
"""

import json
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import ValidationError
from service_policy_engine.app.features.models import FeatureToggle
from service_policy_engine.app.harness.simulator import (
    INACTIVE_SUGGESTION, NO_ACTIONS_SUGGESTION, NO_MATCH_SUGGESTION,
    PolicyTestCase, SimulationHarness, parse_context
)
from service_policy_engine.app.rules.engine import PolicyEngine
from service_policy_engine.app.rules.models import (
    Policy, PolicyAction, PolicyRule, PolicyStatus
)


@pytest.fixture
def policy():
    return Policy(
        id="policy-1",
        name="Link spam",
        category="content",
        status=PolicyStatus.TESTING,
        is_active=True,
        rules=[PolicyRule(id="links", name="Many links", field="post.links", operator="greater_than",
                          value=5, description="More than five links")],
        actions=[
            PolicyAction(id="flag", name="Flag", type="flag", order=1),
            PolicyAction(id="log", name="Log", type="log", order=2),
        ]
    )


@pytest.fixture
def harness():
    return SimulationHarness(policy_engine=PolicyEngine())


class TestPolicySimulation:
    """Test cases for policy simulation."""

    def test_simulated_verdict_matches_live(self, harness, policy):
        context = {"post": {"links": 9}}

        simulated = harness.test_policy(policy, context).verdict
        live = PolicyEngine().evaluate_policy(policy, context)

        assert simulated == live
        assert simulated.canonical_json() == live.canonical_json()

    def test_triggered_result(self, harness, policy):
        result = harness.test_policy(policy, {"post": {"links": 9}})

        assert result.matched_rules == ("links",)
        assert result.executed_actions == ("flag", "log")
        assert result.violations == ("Rule 'Many links' triggered: More than five links",)
        assert result.suggestions == ()

    def test_no_match_suggestion(self, harness, policy):
        result = harness.test_policy(policy, {"post": {"links": 1}})

        assert result.suggestions == (NO_MATCH_SUGGESTION,)

    def test_no_actions_suggestion(self, harness, policy):
        for action in policy.actions:
            action.is_active = False

        result = harness.test_policy(policy, {"post": {"links": 9}})

        assert result.verdict.triggered is True
        assert result.suggestions == (NO_ACTIONS_SUGGESTION,)

    def test_inactive_policy(self, harness, policy):
        policy.is_active = False
        policy.status = PolicyStatus.DRAFT

        result = harness.test_policy(policy, {"post": {"links": 9}})

        assert result.verdict.reason == "policy_inactive"
        assert result.suggestions == (INACTIVE_SUGGESTION,)
        assert result.violations == ("Policy is not active",)

    def test_json_context(self, harness, policy):
        result = harness.test_policy(policy, '{"post": {"links": 12}}')

        assert result.verdict.triggered is True

    def test_invalid_json_context(self, harness, policy):
        with pytest.raises(ValidationError):
            harness.test_policy(policy, "{not json")

    def test_result_to_dict(self, harness, policy):
        data = harness.test_policy(policy, {"post": {"links": 9}}).to_dict()

        assert data["matched_rules"] == ["links"]
        assert data["executed_actions"] == ["flag", "log"]
        assert data["verdict"]["policy_id"] == "policy-1"


class TestPolicyTestCases:
    """Test cases for expected-outcome test cases."""

    def test_passing_case(self, harness, policy):
        case = PolicyTestCase(name="spam", context={"post": {"links": 9}},
                              should_trigger=True, expected_actions=["flag", "log"])

        outcome = harness.run_test_case(policy, case)

        assert outcome.passed
        assert outcome.mismatches == ()

    def test_failing_case(self, harness, policy):
        case = PolicyTestCase(name="clean", context={"post": {"links": 9}},
                              should_trigger=False, expected_actions=["log"])

        outcome = harness.run_test_case(policy, case)

        assert outcome.status == "failed"
        assert outcome.mismatches == (
            "Expected policy to not trigger, but it triggered",
            "Expected actions ['log'], got ['flag', 'log']",
        )


class TestSimulationHistory:
    """Test cases for per-session run history."""

    def test_history_is_capped_newest_first(self, harness, policy):
        for links in range(15):
            harness.test_policy(policy, {"post": {"links": links}}, session_id="s1")

        runs = harness.history("s1")

        assert len(runs) == 10
        assert [json.loads(r.context)["post"]["links"] for r in runs] == list(range(14, 4, -1))

    def test_sessions_are_separate(self, harness, policy):
        harness.test_policy(policy, {"post": {"links": 1}}, session_id="s1")
        harness.test_policy(policy, {"post": {"links": 2}}, session_id="s2")

        assert len(harness.history("s1")) == 1
        assert len(harness.history("s2")) == 1
        assert harness.history("unknown") == []

    def test_clear_history(self, harness, policy):
        harness.test_policy(policy, {"post": {"links": 1}}, session_id="s1")
        harness.test_policy(policy, {"post": {"links": 1}}, session_id="s2")

        harness.clear_history("s1")
        assert harness.history("s1") == []
        assert len(harness.history("s2")) == 1

        harness.clear_history()
        assert harness.history("s2") == []

    def test_run_to_dict(self, harness, policy):
        harness.test_policy(policy, {"post": {"links": 9}}, session_id="s1")
        data = harness.history("s1")[0].to_dict()

        assert data["kind"] == "policy"
        assert data["target_id"] == "policy-1"
        assert data["context"] == {"post": {"links": 9}}

    def test_feature_simulation_is_recorded(self, harness):
        feature = FeatureToggle(id="f1", key="new_ui", name="New UI", is_active=True)

        evaluation = harness.simulate_feature(feature, {"userId": "u1"}, session_id="s1")
        runs = harness.history("s1")

        assert evaluation.enabled is True
        assert runs[0].kind == "feature"
        assert runs[0].result["reason"] == "immediate"

    def test_custom_history_size(self, policy):
        harness = SimulationHarness(history_size=2)
        for links in range(5):
            harness.test_policy(policy, {"post": {"links": links}})

        assert len(harness.history()) == 2

    def test_invalid_history_size(self):
        with pytest.raises(ValidationError):
            SimulationHarness(history_size=0)

    def test_oldest_session_is_dropped(self, policy):
        harness = SimulationHarness(max_sessions=2)
        harness.test_policy(policy, {"post": {"links": 1}}, session_id="s1")
        harness.test_policy(policy, {"post": {"links": 1}}, session_id="s2")
        harness.test_policy(policy, {"post": {"links": 1}}, session_id="s1")
        harness.test_policy(policy, {"post": {"links": 1}}, session_id="s3")

        assert len(harness.history("s1")) == 2
        assert harness.history("s2") == []
        assert len(harness.history("s3")) == 1

    def test_invalid_session_limit(self):
        with pytest.raises(ValidationError):
            SimulationHarness(max_sessions=0)


class TestParseContext:
    """Test cases for parse_context."""

    def test_structured_context_passes_through(self):
        context = {"a": 1}

        assert parse_context(context) is context

    def test_bytes_context(self):
        assert parse_context(b'{"a": 1}') == {"a": 1}
