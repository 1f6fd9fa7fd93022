"""
Feature toggle data models.
"""

from typing import Dict, Any, Optional, List, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ..rules.models import Condition


class RolloutStrategy(str, Enum):
    """Rollout strategies understood by the feature engine."""
    IMMEDIATE = "immediate"
    ALL = "all"
    PERCENTAGE = "percentage"
    GRADUAL = "gradual"
    CANARY = "canary"
    USER_GROUP = "user_group"
    ATTRIBUTES = "attributes"


IMMEDIATE_STRATEGIES = frozenset({RolloutStrategy.IMMEDIATE.value, RolloutStrategy.ALL.value})

PERCENTAGE_STRATEGIES = frozenset({
    RolloutStrategy.PERCENTAGE.value,
    RolloutStrategy.GRADUAL.value,
    RolloutStrategy.CANARY.value,
})

AUDIENCE_STRATEGIES = frozenset({RolloutStrategy.USER_GROUP.value, RolloutStrategy.ATTRIBUTES.value})


class FeatureDependencyType(str, Enum):
    """Relationship between two feature toggles."""
    PREREQUISITE = "prerequisite"
    CONFLICT = "conflict"
    MUTUAL_EXCLUSION = "mutual_exclusion"
    ENHANCEMENT = "enhancement"
    OVERRIDE = "override"
    FALLBACK = "fallback"


class DependencyCondition(str, Enum):
    """State the depended-on feature must be in."""
    MUST_BE_ENABLED = "must_be_enabled"
    MUST_BE_DISABLED = "must_be_disabled"
    MUST_BE_ACTIVE = "must_be_active"
    MUST_BE_INACTIVE = "must_be_inactive"


@dataclass
class TargetAudience:
    """Audience criteria evaluated by the condition evaluator."""
    type: str
    criteria: List[Condition] = field(default_factory=list)
    id: Optional[str] = None
    name: Optional[str] = None


@dataclass
class FeatureDependency:
    """Dependency on another feature toggle, referenced by key."""
    depends_on_feature_key: str
    type: str = FeatureDependencyType.PREREQUISITE.value
    condition: str = DependencyCondition.MUST_BE_ENABLED.value
    is_required: bool = True
    id: Optional[str] = None
    message: Optional[str] = None

    def requires_enabled(self) -> bool:
        """True when the other feature must be on for this one to be on."""
        if self.type in (FeatureDependencyType.CONFLICT.value, FeatureDependencyType.MUTUAL_EXCLUSION.value):
            return False
        return self.condition in (
            DependencyCondition.MUST_BE_ENABLED.value,
            DependencyCondition.MUST_BE_ACTIVE.value,
        )


@dataclass
class FeatureVariant:
    """Weighted variant of a multivariate feature."""
    key: str
    weight: float = 1.0
    value: Any = None


@dataclass
class FeatureToggle:
    """Declarative switch enabling a capability for a subset of contexts."""
    id: str
    key: str
    name: str
    category: str = "backend"
    type: str = "boolean"
    status: str = "draft"
    environment: str = "development"
    is_active: bool = False
    rollout_strategy: str = RolloutStrategy.IMMEDIATE.value
    rollout_percentage: float = 0.0
    target_audience: Optional[TargetAudience] = None
    conditions: List[Condition] = field(default_factory=list)
    dependencies: List[FeatureDependency] = field(default_factory=list)
    variants: List[FeatureVariant] = field(default_factory=list)
    default_value: Any = False
    version: int = 1
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class FeatureEvaluation:
    """Result of evaluating one feature toggle for one context."""
    feature_key: str
    enabled: bool
    reason: str
    variant: Optional[str] = None
    feature_version: int = 0
    bucket: Optional[float] = None
    matched_criteria: Tuple[str, ...] = ()
    message: Optional[str] = None
    evaluation_time_ms: float = field(default=0.0, compare=False)

    def to_dict(self, include_timing: bool = True) -> Dict[str, Any]:
        data = {
            "feature_key": self.feature_key,
            "enabled": self.enabled,
            "reason": self.reason,
            "variant": self.variant,
            "feature_version": self.feature_version,
            "bucket": self.bucket,
            "matched_criteria": list(self.matched_criteria),
            "message": self.message,
        }
        if include_timing:
            data["evaluation_time_ms"] = self.evaluation_time_ms
        return data
