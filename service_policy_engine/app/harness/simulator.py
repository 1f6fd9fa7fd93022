"""
Test and simulation harness.

Simulations call the same PolicyEngine and FeatureEngine methods as live
evaluation; there is no separate test-mode branch. A simulated verdict
for a given (policy version, context) is therefore identical to the live
one. Runs are kept per session in memory and never written to the audit
log.
"""

import json
import threading
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Tuple

from shared.errors import ValidationError
from shared.logging import get_logger
from ..features.engine import FeatureEngine, FeatureLookup
from ..features.models import FeatureEvaluation, FeatureToggle
from ..rules.engine import PolicyEngine
from ..rules.models import Policy, Verdict

NO_MATCH_SUGGESTION = "No rules matched the test data. Consider reviewing rule conditions."
NO_ACTIONS_SUGGESTION = "Rules matched but no actions were executed. Check if actions are active."
INACTIVE_SUGGESTION = "Activate the policy to test it"
INACTIVE_VIOLATION = "Policy is not active"


@dataclass(frozen=True)
class PolicyTestResult:
    """Verdict plus the explanations shown to the author of a policy."""
    verdict: Verdict
    violations: Tuple[str, ...] = ()
    suggestions: Tuple[str, ...] = ()

    @property
    def matched_rules(self) -> Tuple[str, ...]:
        return self.verdict.matched_rules

    @property
    def executed_actions(self) -> Tuple[str, ...]:
        return tuple(a.action_id for a in self.verdict.executed_actions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verdict": self.verdict.to_dict(),
            "violations": list(self.violations),
            "suggestions": list(self.suggestions),
            "matched_rules": list(self.matched_rules),
            "executed_actions": list(self.executed_actions),
        }


@dataclass
class PolicyTestCase:
    """Expected outcome of a policy for one sample context."""
    name: str
    context: Any
    should_trigger: bool
    expected_actions: Optional[List[str]] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class PolicyTestCaseResult:
    name: str
    status: str
    mismatches: Tuple[str, ...]
    result: PolicyTestResult

    @property
    def passed(self) -> bool:
        return self.status == "passed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "mismatches": list(self.mismatches),
            "result": self.result.to_dict(),
        }


@dataclass(frozen=True)
class SimulationRun:
    """One harness run as kept in session history."""
    kind: str
    target_id: str
    context: str
    result: Dict[str, Any]
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "kind": self.kind,
            "target_id": self.target_id,
            "context": json.loads(self.context),
            "result": self.result,
            "timestamp": self.timestamp.isoformat(),
        }


def parse_context(context: Any) -> Any:
    """Accept a context as structured data or as JSON text."""
    if isinstance(context, (str, bytes)):
        try:
            return json.loads(context)
        except ValueError as e:
            raise ValidationError(f"Context is not valid JSON: {e}")
    return context


class SimulationHarness:
    """Runs policies and feature toggles against sample contexts."""

    def __init__(self, policy_engine: Optional[PolicyEngine] = None,
                 feature_engine: Optional[FeatureEngine] = None,
                 history_size: int = 10, max_sessions: int = 100):
        if history_size < 1:
            raise ValidationError("History size must be at least 1", {"history_size": history_size})
        if max_sessions < 1:
            raise ValidationError("Session limit must be at least 1", {"max_sessions": max_sessions})

        self.policy_engine = policy_engine or PolicyEngine()
        self.feature_engine = feature_engine or FeatureEngine()
        self.history_size = history_size
        self.max_sessions = max_sessions
        # Least recently used session first
        self._history: "OrderedDict[str, Deque[SimulationRun]]" = OrderedDict()
        self._lock = threading.Lock()
        self.logger = get_logger("policy_engine.harness")

    def test_policy(self, policy: Optional[Policy], context: Any,
                    session_id: str = "default") -> PolicyTestResult:
        """Evaluate a policy against a sample context and explain the outcome."""
        context = parse_context(context)
        verdict = self.policy_engine.evaluate_policy(policy, context)

        violations: List[str] = list(verdict.violations)
        suggestions: List[str] = []

        if verdict.reason == "policy_inactive":
            violations.append(INACTIVE_VIOLATION)
            suggestions.append(INACTIVE_SUGGESTION)
        elif not verdict.triggered and policy is not None and policy.rules:
            suggestions.append(NO_MATCH_SUGGESTION)

        if verdict.triggered and not verdict.executed_actions:
            suggestions.append(NO_ACTIONS_SUGGESTION)

        result = PolicyTestResult(
            verdict=verdict,
            violations=tuple(violations),
            suggestions=tuple(suggestions)
        )

        self._remember(session_id, "policy", verdict.policy_id, context, result.to_dict())

        self.logger.info(
            "Policy simulated",
            policy_id=verdict.policy_id,
            session_id=session_id,
            triggered=verdict.triggered,
            reason=verdict.reason
        )

        return result

    def run_test_case(self, policy: Optional[Policy], test_case: PolicyTestCase,
                      session_id: str = "default") -> PolicyTestCaseResult:
        """Run a test case and compare the outcome with its expectations."""
        result = self.test_policy(policy, test_case.context, session_id)
        mismatches: List[str] = []

        if result.verdict.triggered != test_case.should_trigger:
            mismatches.append(
                f"Expected policy to {'trigger' if test_case.should_trigger else 'not trigger'}, "
                f"but it {'triggered' if result.verdict.triggered else 'did not trigger'}"
            )

        if test_case.expected_actions is not None:
            actual = list(result.executed_actions)
            if actual != list(test_case.expected_actions):
                mismatches.append(f"Expected actions {list(test_case.expected_actions)}, got {actual}")

        return PolicyTestCaseResult(
            name=test_case.name,
            status="failed" if mismatches else "passed",
            mismatches=tuple(mismatches),
            result=result
        )

    def simulate_feature(self, feature: Optional[FeatureToggle], context: Any,
                         session_id: str = "default",
                         environment: Optional[str] = None,
                         lookup: Optional[FeatureLookup] = None) -> FeatureEvaluation:
        """Evaluate a feature toggle against a sample context."""
        context = parse_context(context)
        evaluation = self.feature_engine.evaluate_feature(feature, context, environment, lookup)

        self._remember(session_id, "feature", evaluation.feature_key, context, evaluation.to_dict())

        self.logger.info(
            "Feature simulated",
            feature_key=evaluation.feature_key,
            session_id=session_id,
            enabled=evaluation.enabled,
            reason=evaluation.reason
        )

        return evaluation

    def history(self, session_id: str = "default") -> List[SimulationRun]:
        """Runs of a session, newest first."""
        with self._lock:
            return list(self._history.get(session_id, ()))

    def clear_history(self, session_id: Optional[str] = None):
        with self._lock:
            if session_id is None:
                self._history.clear()
            else:
                self._history.pop(session_id, None)

    def _remember(self, session_id: str, kind: str, target_id: str, context: Any, result: Dict[str, Any]):
        run = SimulationRun(
            kind=kind,
            target_id=target_id,
            context=json.dumps(context, sort_keys=True, default=str),
            result=result
        )
        with self._lock:
            runs = self._history.get(session_id)
            if runs is None:
                runs = deque(maxlen=self.history_size)
                self._history[session_id] = runs
            else:
                self._history.move_to_end(session_id)
            runs.appendleft(run)

            while len(self._history) > self.max_sessions:
                evicted, _ = self._history.popitem(last=False)
                self.logger.debug("Simulation session evicted", session_id=evicted)
