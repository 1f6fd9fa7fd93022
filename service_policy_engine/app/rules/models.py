"""
Policy data models for the Policy Engine.
"""

import json
from typing import Dict, Any, Optional, List, Tuple, Union
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from shared.errors import ConfigurationError


class PolicyStatus(str, Enum):
    """Policy lifecycle states."""
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    DEPRECATED = "deprecated"
    TESTING = "testing"
    SUSPENDED = "suspended"


# Statuses under which a policy may carry is_active=True
EVALUABLE_STATUSES = frozenset({PolicyStatus.ACTIVE, PolicyStatus.TESTING})

# Statuses under which rules and actions may still be edited
EDITABLE_STATUSES = frozenset({
    PolicyStatus.DRAFT,
    PolicyStatus.INACTIVE,
    PolicyStatus.TESTING,
    PolicyStatus.SUSPENDED,
})


class PolicyPriority(str, Enum):
    """Policy priority levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RuleOperator(str, Enum):
    """Operators understood by the operator library."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    REGEX_MATCH = "regex_match"
    MATCHES = "matches"
    IN_LIST = "in_list"
    NOT_IN_LIST = "not_in_list"
    IN_RANGE = "in_range"
    OUT_OF_RANGE = "out_of_range"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


UNARY_OPERATORS = frozenset({
    RuleOperator.IS_NULL.value,
    RuleOperator.IS_NOT_NULL.value,
    RuleOperator.IS_EMPTY.value,
    RuleOperator.IS_NOT_EMPTY.value,
    RuleOperator.EXISTS.value,
    RuleOperator.NOT_EXISTS.value,
})

NUMERIC_OPERATORS = frozenset({
    RuleOperator.GREATER_THAN.value,
    RuleOperator.LESS_THAN.value,
    RuleOperator.GREATER_THAN_OR_EQUAL.value,
    RuleOperator.LESS_THAN_OR_EQUAL.value,
})

STRING_OPERATORS = frozenset({
    RuleOperator.CONTAINS.value,
    RuleOperator.NOT_CONTAINS.value,
    RuleOperator.STARTS_WITH.value,
    RuleOperator.ENDS_WITH.value,
})

PATTERN_OPERATORS = frozenset({
    RuleOperator.REGEX_MATCH.value,
    RuleOperator.MATCHES.value,
})

LIST_OPERATORS = frozenset({
    RuleOperator.IN_LIST.value,
    RuleOperator.NOT_IN_LIST.value,
})

RANGE_OPERATORS = frozenset({
    RuleOperator.IN_RANGE.value,
    RuleOperator.OUT_OF_RANGE.value,
})


class LogicalOperator(str, Enum):
    """Boolean combinators for condition trees."""
    AND = "AND"
    OR = "OR"
    NOT = "NOT"


class ActionType(str, Enum):
    """Enforcement action types."""
    ALLOW = "allow"
    DENY = "deny"
    BLOCK = "block"
    REDIRECT = "redirect"
    NOTIFY = "notify"
    LOG = "log"
    ESCALATE = "escalate"
    QUARANTINE = "quarantine"
    RATE_LIMIT = "rate_limit"
    CAPTCHA = "captcha"
    MFA_REQUIRED = "mfa_required"
    SUSPEND = "suspend"
    BAN = "ban"
    FLAG = "flag"
    AUTO_MODERATE = "auto_moderate"
    AUTO_CORRECT = "auto_correct"
    CUSTOM_FUNCTION = "custom_function"
    WEBHOOK = "webhook"
    EMAIL = "email"
    SMS = "sms"
    PUSH_NOTIFICATION = "push_notification"


class DependencyType(str, Enum):
    """Relationship between two policies."""
    PREREQUISITE = "prerequisite"
    CONFLICT = "conflict"
    OVERRIDE = "override"
    ENHANCEMENT = "enhancement"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class ConditionLeaf:
    """Single predicate: <field> <operator> <value>."""
    field: str
    operator: str
    value: Any = None
    id: Optional[str] = None
    name: Optional[str] = None
    type: str = "custom"


@dataclass(frozen=True)
class ConditionGroup:
    """Boolean combination of child conditions.

    A NOT group takes exactly one operand; AND/OR take at least one. The
    arity is checked here so a malformed tree can never reach evaluation.
    """
    logical_operator: LogicalOperator
    children: Tuple["Condition", ...]
    id: Optional[str] = None
    name: Optional[str] = None

    def __post_init__(self):
        if not self.children:
            raise ConfigurationError(
                f"{self.logical_operator.value} condition requires at least one operand",
                {"condition_id": self.id}
            )
        if self.logical_operator == LogicalOperator.NOT and len(self.children) != 1:
            raise ConfigurationError(
                "NOT condition requires exactly one operand",
                {"condition_id": self.id, "operands": len(self.children)}
            )


Condition = Union[ConditionLeaf, ConditionGroup]


@dataclass
class PolicyRule:
    """Rule: operator test on one field plus optional attached conditions."""
    id: str
    name: str
    field: str
    operator: str
    value: Any = None
    type: str = "comparison"
    description: Optional[str] = None
    weight: float = 1.0
    is_active: bool = True
    conditions: List[Condition] = field(default_factory=list)


@dataclass
class PolicyAction:
    """Enforcement action returned to the caller when a policy triggers."""
    id: str
    name: str
    type: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    order: int = 0
    is_active: bool = True
    description: Optional[str] = None
    conditions: List[Condition] = field(default_factory=list)
    fallback_action: Optional["PolicyAction"] = None


@dataclass
class PolicyDependency:
    """Declared relationship between two policies."""
    policy_id: str
    depends_on_policy_id: str
    type: DependencyType = DependencyType.PREREQUISITE
    condition: Optional[str] = None
    is_required: bool = True
    id: Optional[str] = None


@dataclass
class Policy:
    """Declarative rule and action bundle."""
    id: str
    name: str
    category: str
    type: str = "detection"
    status: PolicyStatus = PolicyStatus.DRAFT
    priority: PolicyPriority = PolicyPriority.MEDIUM
    version: int = 1
    rules: List[PolicyRule] = field(default_factory=list)
    actions: List[PolicyAction] = field(default_factory=list)
    dependencies: List[PolicyDependency] = field(default_factory=list)
    scope: str = "global"
    environment: str = "development"
    is_active: bool = False
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class EvaluationDiagnostic:
    """Non-fatal evaluation finding attached to a verdict."""
    code: str
    message: str
    rule_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "rule_id": self.rule_id}


@dataclass(frozen=True)
class RuleEvaluation:
    """Outcome of evaluating one rule."""
    rule_id: str
    matches: bool
    violation: Optional[str] = None
    diagnostics: Tuple[EvaluationDiagnostic, ...] = ()

    @property
    def diagnostic(self) -> Optional[EvaluationDiagnostic]:
        return self.diagnostics[0] if self.diagnostics else None


@dataclass(frozen=True)
class PlannedAction:
    """Action selected for execution by a collaborator."""
    action_id: str
    type: str
    order: int
    parameters: Dict[str, Any] = field(default_factory=dict)
    fallback_for: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "type": self.type,
            "order": self.order,
            "parameters": self.parameters,
            "fallback_for": self.fallback_for,
        }


@dataclass(frozen=True)
class Verdict:
    """The engine's answer for one policy evaluation.

    ``evaluation_time_ms`` is excluded from equality and from the canonical
    form, so two evaluations of the same policy version against the same
    context compare equal regardless of wall-clock cost.
    """
    policy_id: str
    policy_version: int
    triggered: bool
    reason: str
    matched_rules: Tuple[str, ...] = ()
    violations: Tuple[str, ...] = ()
    executed_actions: Tuple[PlannedAction, ...] = ()
    diagnostics: Tuple[EvaluationDiagnostic, ...] = ()
    evaluation_time_ms: float = field(default=0.0, compare=False)

    def to_dict(self, include_timing: bool = True) -> Dict[str, Any]:
        data = {
            "policy_id": self.policy_id,
            "policy_version": self.policy_version,
            "triggered": self.triggered,
            "reason": self.reason,
            "matched_rules": list(self.matched_rules),
            "violations": list(self.violations),
            "executed_actions": [a.to_dict() for a in self.executed_actions],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }
        if include_timing:
            data["evaluation_time_ms"] = self.evaluation_time_ms
        return data

    def canonical_json(self) -> str:
        """Stable serialization used to compare simulated and live verdicts."""
        return json.dumps(self.to_dict(include_timing=False), sort_keys=True, default=str)
