"""
Policy evaluation engine.
"""

import copy
import time
from typing import Any, List, Optional, Set

from shared.logging import get_logger
from .conditions import ConditionEvaluator
from .evaluator import RuleEvaluator
from .models import (
    EvaluationDiagnostic, PlannedAction, Policy, PolicyAction, Verdict
)


class PolicyEngine:
    """Runs every active rule of a policy and selects the ordered action plan.

    Rules are OR-combined: one matching rule triggers the policy. The engine
    never performs actions itself; it returns them, filtered by their own
    conditions and sorted by ``order``, for a collaborator to execute.
    """

    def __init__(self, rule_evaluator: Optional[RuleEvaluator] = None,
                 condition_evaluator: Optional[ConditionEvaluator] = None):
        self.rule_evaluator = rule_evaluator or RuleEvaluator()
        self.condition_evaluator = condition_evaluator or self.rule_evaluator.condition_evaluator
        self.logger = get_logger("policy_engine.engine")

    def evaluate_policy(self, policy: Optional[Policy], context: Any) -> Verdict:
        """Evaluate a policy against a context. Never raises."""
        start_time = time.perf_counter()

        if policy is None:
            return Verdict(
                policy_id="",
                policy_version=0,
                triggered=False,
                reason="policy_not_found",
                evaluation_time_ms=_elapsed_ms(start_time)
            )

        try:
            if not policy.is_active:
                return Verdict(
                    policy_id=policy.id,
                    policy_version=policy.version,
                    triggered=False,
                    reason="policy_inactive",
                    evaluation_time_ms=_elapsed_ms(start_time)
                )

            matched_rules: List[str] = []
            violations: List[str] = []
            diagnostics: List[EvaluationDiagnostic] = []

            for rule in policy.rules:
                if not rule.is_active:
                    continue

                evaluation = self.rule_evaluator.evaluate(rule, context)
                diagnostics.extend(evaluation.diagnostics)
                if evaluation.matches:
                    matched_rules.append(rule.id)
                    if evaluation.violation:
                        violations.append(evaluation.violation)

            triggered = bool(matched_rules)
            actions = self.plan_actions(policy, context, diagnostics) if triggered else []

            verdict = Verdict(
                policy_id=policy.id,
                policy_version=policy.version,
                triggered=triggered,
                reason="rules_matched" if triggered else "no_rules_matched",
                matched_rules=tuple(matched_rules),
                violations=tuple(violations),
                executed_actions=tuple(actions),
                diagnostics=tuple(diagnostics),
                evaluation_time_ms=_elapsed_ms(start_time)
            )

            self.logger.debug(
                "Policy evaluation result",
                policy_id=policy.id,
                version=policy.version,
                triggered=verdict.triggered,
                matched_rules=len(matched_rules)
            )

            return verdict

        except Exception as e:
            self.logger.error("Policy evaluation error", policy_id=policy.id, error=str(e))
            return Verdict(
                policy_id=policy.id,
                policy_version=policy.version,
                triggered=False,
                reason="evaluation_error",
                diagnostics=(EvaluationDiagnostic(code="evaluation_error", message=str(e)),),
                evaluation_time_ms=_elapsed_ms(start_time)
            )

    def plan_actions(self, policy: Policy, context: Any,
                     diagnostics: Optional[List[EvaluationDiagnostic]] = None) -> List[PlannedAction]:
        """Active actions deduplicated by id, sorted by order, filtered by their conditions."""
        seen: Set[str] = set()
        candidates: List[PolicyAction] = []
        for action in policy.actions:
            if not action.is_active or action.id in seen:
                continue
            seen.add(action.id)
            candidates.append(action)

        # sorted() is stable, so equal orders keep declaration order
        candidates = sorted(candidates, key=lambda a: a.order)

        planned: List[PlannedAction] = []
        for action in candidates:
            if self.condition_evaluator.evaluate_all(action.conditions, context, diagnostics):
                planned.append(_plan(action))
                continue

            fallback = action.fallback_action
            if fallback is not None and fallback.is_active and \
                    self.condition_evaluator.evaluate_all(fallback.conditions, context, diagnostics):
                planned.append(_plan(fallback, order=action.order, fallback_for=action.id))

        return planned


def _plan(action: PolicyAction, order: Optional[int] = None,
          fallback_for: Optional[str] = None) -> PlannedAction:
    return PlannedAction(
        action_id=action.id,
        type=action.type,
        order=action.order if order is None else order,
        parameters=copy.deepcopy(action.parameters),
        fallback_for=fallback_for
    )


def _elapsed_ms(start_time: float) -> float:
    return (time.perf_counter() - start_time) * 1000
