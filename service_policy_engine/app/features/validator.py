"""
Static checks for feature toggles.
"""

from typing import Optional

from shared.logging import get_logger
from .models import (
    AUDIENCE_STRATEGIES, IMMEDIATE_STRATEGIES, PERCENTAGE_STRATEGIES, FeatureToggle
)
from ..validation.report import ValidationReport
from ..validation.validator import PolicyValidator, require_text

KNOWN_STRATEGIES = IMMEDIATE_STRATEGIES | PERCENTAGE_STRATEGIES | AUDIENCE_STRATEGIES


class FeatureValidator:
    """Validates a feature toggle before it is enabled."""

    def __init__(self, policy_validator: Optional[PolicyValidator] = None):
        self.policy_validator = policy_validator or PolicyValidator()
        self.logger = get_logger("policy_engine.feature_validator")

    def validate_feature(self, feature: FeatureToggle) -> ValidationReport:
        report = ValidationReport()
        strategy = getattr(feature.rollout_strategy, "value", feature.rollout_strategy)
        if not isinstance(strategy, str):
            strategy = repr(strategy)

        require_text(report, feature.key, "key", "Feature key")
        require_text(report, feature.name, "name", "Feature name")

        if not feature.category:
            report.error("missing_category", "Feature category is required")

        if not feature.type:
            report.error("missing_type", "Feature type is required")

        if strategy not in KNOWN_STRATEGIES:
            report.error("unknown_strategy", f"Unknown rollout strategy '{strategy}'", {"strategy": strategy})

        percentage = feature.rollout_percentage
        if isinstance(percentage, bool) or not isinstance(percentage, (int, float)) \
                or percentage < 0 or percentage > 100:
            report.error(
                "invalid_percentage",
                "Rollout percentage must be between 0 and 100",
                {"rollout_percentage": percentage}
            )
        elif percentage and strategy not in PERCENTAGE_STRATEGIES:
            report.warning(
                "unused_percentage",
                f"Rollout percentage is ignored by the '{strategy}' strategy",
                {"rollout_percentage": percentage}
            )

        if strategy in AUDIENCE_STRATEGIES:
            audience = feature.target_audience
            if audience is None or not audience.criteria:
                report.error(
                    "missing_audience",
                    f"Target audience with at least one criterion is required for {strategy} strategy"
                )
            else:
                report.extend(self.policy_validator.validate_conditions(audience.criteria, "Audience criterion"))

        report.extend(self.policy_validator.validate_conditions(feature.conditions, "Feature condition"))

        for index, dependency in enumerate(feature.dependencies):
            if not dependency.depends_on_feature_key:
                report.error("missing_dependency_key", f"Dependency {index + 1}: Feature key is required")
            elif dependency.depends_on_feature_key == feature.key:
                report.error("self_dependency", f"Dependency {index + 1}: Feature cannot depend on itself")

        seen_variants = set()
        for variant in feature.variants:
            weight = variant.weight
            if isinstance(weight, bool) or not isinstance(weight, (int, float)):
                report.error("invalid_variant_weight", f"Variant '{variant.key}' weight must be a number")
            elif weight < 0:
                report.error("invalid_variant_weight", f"Variant '{variant.key}' has a negative weight")
            if variant.key in seen_variants:
                report.warning("duplicate_variant", f"Variant '{variant.key}' is declared more than once")
            seen_variants.add(variant.key)

        self.logger.debug(
            "Feature validated",
            feature_key=feature.key,
            errors=len(report.errors),
            warnings=len(report.warnings)
        )

        return report
