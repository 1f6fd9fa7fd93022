"""
Feature toggle evaluation engine.
"""

import time
from typing import Any, Callable, FrozenSet, List, Optional, Tuple

from shared.logging import get_logger
from .bucketing import RolloutBucketer
from .models import (
    AUDIENCE_STRATEGIES, IMMEDIATE_STRATEGIES, PERCENTAGE_STRATEGIES,
    DependencyCondition, FeatureEvaluation, FeatureToggle, RolloutStrategy
)
from ..rules.conditions import ConditionEvaluator
from ..rules.models import Condition, ConditionGroup, ConditionLeaf

FeatureLookup = Callable[[str], Optional[FeatureToggle]]


class FeatureEngine:
    """Decides whether a feature is enabled for one context.

    Checks run in a fixed order: active flag, environment, dependencies,
    feature-level conditions, then the rollout strategy. The first failing
    check decides the reason code.
    """

    def __init__(self, bucketer: Optional[RolloutBucketer] = None,
                 condition_evaluator: Optional[ConditionEvaluator] = None,
                 environment: str = "development"):
        self.bucketer = bucketer or RolloutBucketer()
        self.condition_evaluator = condition_evaluator or ConditionEvaluator()
        self.environment = environment
        self.logger = get_logger("policy_engine.features")

    def evaluate_feature(self, feature: Optional[FeatureToggle], context: Any,
                         environment: Optional[str] = None,
                         lookup: Optional[FeatureLookup] = None) -> FeatureEvaluation:
        """Evaluate a feature toggle. Never raises.

        ``lookup`` resolves dependency keys to feature toggles; without it
        every dependency is unmet.
        """
        return self._evaluate(feature, context, environment or self.environment, lookup, frozenset())

    def _evaluate(self, feature: Optional[FeatureToggle], context: Any, environment: str,
                  lookup: Optional[FeatureLookup], visiting: FrozenSet[str]) -> FeatureEvaluation:
        start_time = time.perf_counter()

        if feature is None:
            return FeatureEvaluation(
                feature_key="",
                enabled=False,
                reason="feature_not_found",
                evaluation_time_ms=_elapsed_ms(start_time)
            )

        try:
            if not feature.is_active:
                return self._result(feature, start_time, False, "inactive")

            if feature.environment != environment:
                return self._result(
                    feature, start_time, False, "environment_mismatch",
                    message=f"Feature is not available in {environment} environment"
                )

            unmet = self._unmet_dependency(feature, context, environment, lookup, visiting | {feature.key})
            if unmet is not None:
                return self._result(feature, start_time, False, "dependency_not_met", message=unmet)

            if not self.condition_evaluator.evaluate_all(feature.conditions, context):
                return self._result(feature, start_time, False, "conditions_not_met")

            return self._apply_strategy(feature, context, start_time)

        except Exception as e:
            self.logger.error("Feature evaluation error", feature_key=feature.key, error=str(e))
            return self._result(feature, start_time, False, "evaluation_error", message=str(e))

    def _unmet_dependency(self, feature: FeatureToggle, context: Any, environment: str,
                          lookup: Optional[FeatureLookup], visiting: FrozenSet[str]) -> Optional[str]:
        """Message describing the first unmet required dependency, or None."""
        for dependency in feature.dependencies:
            if not dependency.is_required:
                continue

            key = dependency.depends_on_feature_key
            if key in visiting:
                return f"Dependency cycle through '{key}'"

            other = lookup(key) if lookup is not None else None
            if other is None:
                return f"Dependency '{key}' not found"

            if dependency.condition in (DependencyCondition.MUST_BE_ACTIVE.value,
                                        DependencyCondition.MUST_BE_INACTIVE.value):
                state = other.is_active
            else:
                state = self._evaluate(other, context, environment, lookup, visiting).enabled

            wanted = dependency.requires_enabled()
            if state != wanted:
                return dependency.message or (
                    f"Dependency '{key}' is not {'enabled' if wanted else 'disabled'}"
                )

        return None

    def _apply_strategy(self, feature: FeatureToggle, context: Any, start_time: float) -> FeatureEvaluation:
        strategy = feature.rollout_strategy
        if isinstance(strategy, RolloutStrategy):
            strategy = strategy.value

        if strategy in IMMEDIATE_STRATEGIES:
            return self._result(
                feature, start_time, True, "immediate",
                variant=self._variant(feature, context)
            )

        if strategy in PERCENTAGE_STRATEGIES:
            identifier = self.bucketer.identifier_for(context)
            bucket = self.bucketer.bucket(feature.key, identifier)
            enabled = self.bucketer.is_included(feature.key, identifier, feature.rollout_percentage)
            return self._result(
                feature, start_time, enabled,
                "rollout_included" if enabled else "rollout_excluded",
                variant=self._variant(feature, context) if enabled else None,
                bucket=bucket
            )

        if strategy in AUDIENCE_STRATEGIES:
            audience = feature.target_audience
            if audience is None or not audience.criteria:
                return self._result(feature, start_time, False, "no_target_audience")

            matched = self._matched_criteria(audience.criteria, context)
            if strategy == RolloutStrategy.USER_GROUP.value:
                enabled = len(matched) == len(audience.criteria)
            else:
                enabled = len(matched) > 0

            return self._result(
                feature, start_time, enabled,
                "audience_matched" if enabled else "audience_not_matched",
                variant=self._variant(feature, context) if enabled else None,
                matched_criteria=tuple(matched)
            )

        return self._result(
            feature, start_time, False, "unknown_strategy",
            message=f"Unknown rollout strategy '{strategy}'"
        )

    def _matched_criteria(self, criteria: List[Condition], context: Any) -> List[str]:
        matched: List[str] = []
        for index, criterion in enumerate(criteria):
            if self.condition_evaluator.evaluate(criterion, context):
                matched.append(_criterion_label(criterion, index))
        return matched

    def _variant(self, feature: FeatureToggle, context: Any) -> Optional[str]:
        if feature.variants:
            identifier = self.bucketer.identifier_for(context)
            chosen = self.bucketer.choose_variant(feature.key, identifier, feature.variants)
            if chosen is not None:
                return chosen.key

        if feature.type == "variant" and isinstance(feature.default_value, str):
            return feature.default_value

        if feature.type == "boolean":
            return "enabled" if feature.default_value else "disabled"

        return None

    def _result(self, feature: FeatureToggle, start_time: float, enabled: bool, reason: str,
                variant: Optional[str] = None, bucket: Optional[float] = None,
                matched_criteria: Tuple[str, ...] = (), message: Optional[str] = None) -> FeatureEvaluation:
        evaluation = FeatureEvaluation(
            feature_key=feature.key,
            enabled=enabled,
            reason=reason,
            variant=variant,
            feature_version=feature.version,
            bucket=bucket,
            matched_criteria=matched_criteria,
            message=message,
            evaluation_time_ms=_elapsed_ms(start_time)
        )

        self.logger.debug(
            "Feature evaluation result",
            feature_key=feature.key,
            enabled=enabled,
            reason=reason
        )

        return evaluation


def _criterion_label(criterion: Condition, index: int) -> str:
    if criterion.id:
        return criterion.id
    if isinstance(criterion, ConditionLeaf):
        return criterion.field
    if isinstance(criterion, ConditionGroup):
        return f"{criterion.logical_operator.value}#{index}"
    return str(index)


def _elapsed_ms(start_time: float) -> float:
    return (time.perf_counter() - start_time) * 1000
