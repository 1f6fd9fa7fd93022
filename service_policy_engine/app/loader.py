"""
Definition loading.

Turns plain structured payloads (as received from any transport) into the
engine's dataclasses and back. Both camelCase and snake_case keys are
accepted; output is always snake_case.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from shared.errors import ValidationError
from .features.models import (
    FeatureDependency, FeatureToggle, FeatureVariant, TargetAudience
)
from .rules.models import (
    Condition, ConditionGroup, ConditionLeaf, DependencyType, LogicalOperator,
    Policy, PolicyAction, PolicyDependency, PolicyPriority, PolicyRule, PolicyStatus
)


def _get(data: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        if name in data:
            return data[name]
    return default


def _require_mapping(data: Any, kind: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValidationError(f"{kind} must be an object", {"received": type(data).__name__})
    return data


def _list(data: Mapping[str, Any], kind: str, *names: str) -> List[Any]:
    value = _get(data, *names, default=None)
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"{kind} must be a list", {"field": names[0]})
    return list(value)


def _enum(enum_cls, value: Any, kind: str, default):
    if value is None:
        return default
    try:
        return enum_cls(getattr(value, "value", value))
    except ValueError:
        raise ValidationError(
            f"Invalid {kind} '{value}'",
            {"allowed": [item.value for item in enum_cls]}
        )


def _text(value: Any) -> Any:
    return getattr(value, "value", value)


def _string(data: Mapping[str, Any], kind: str, *names: str, default: Any = None) -> Any:
    value = _text(_get(data, *names, default=default))
    if value is not None and not isinstance(value, str):
        raise ValidationError(
            f"{kind} must be a string",
            {"field": names[0], "received": type(value).__name__}
        )
    return value


def _integer(data: Mapping[str, Any], kind: str, *names: str, default: int) -> int:
    value = _get(data, *names, default=default)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{kind} must be an integer", {"field": names[0], "received": value})
    return value


def _number(data: Mapping[str, Any], kind: str, *names: str, default: float) -> float:
    value = _get(data, *names, default=default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{kind} must be a number", {"field": names[0], "received": value})
    return value


def _string_list(data: Mapping[str, Any], kind: str, *names: str) -> List[str]:
    items = _list(data, kind, *names)
    if not all(isinstance(item, str) for item in items):
        raise ValidationError(f"{kind} must be a list of strings", {"field": names[0]})
    return items


def _object(data: Mapping[str, Any], kind: str, *names: str) -> Dict[str, Any]:
    value = _get(data, *names, default=None)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError(f"{kind} must be an object", {"field": names[0]})
    return dict(value)


def _datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid timestamp '{value}'")


def _timestamps(data: Mapping[str, Any]) -> Dict[str, datetime]:
    stamps = {}
    created_at = _datetime(_get(data, "createdAt", "created_at"))
    updated_at = _datetime(_get(data, "updatedAt", "updated_at"))
    if created_at is not None:
        stamps["created_at"] = created_at
    if updated_at is not None:
        stamps["updated_at"] = updated_at
    return stamps


def parse_condition(data: Any) -> Condition:
    """Parse a condition node.

    A node with a field is a leaf predicate. A node with sub-conditions
    becomes a group over its own leaf (first) and its children, combined
    with the node's logical operator.

    Raises ValidationError for malformed nodes and ConfigurationError for a
    NOT node without exactly one operand.
    """
    data = _require_mapping(data, "Condition")

    logical_operator = _get(data, "logicalOperator", "logical_operator", default="AND")
    logical_operator = _enum(
        LogicalOperator, str(_text(logical_operator)).upper(), "logical operator", LogicalOperator.AND
    )

    leaf = None
    field_path = _string(data, "Condition field", "field")
    if field_path not in (None, ""):
        leaf = ConditionLeaf(
            field=field_path,
            operator=_string(data, "Condition operator", "operator", default=""),
            value=_get(data, "value"),
            id=_get(data, "id"),
            name=_string(data, "Condition name", "name"),
            type=_string(data, "Condition type", "type", default="custom")
        )

    children = [
        parse_condition(child)
        for child in _list(data, "Sub-conditions", "subConditions", "sub_conditions", "children")
    ]

    if not children:
        if leaf is None:
            raise ValidationError("Condition requires a field or sub-conditions", {"condition_id": _get(data, "id")})
        return leaf

    operands = ([leaf] if leaf is not None else []) + children
    return ConditionGroup(
        logical_operator=logical_operator,
        children=tuple(operands),
        id=_get(data, "id"),
        name=_get(data, "name")
    )


def parse_conditions(items: List[Any]) -> List[Condition]:
    return [parse_condition(item) for item in items]


def parse_rule(data: Any, index: int = 0) -> PolicyRule:
    data = _require_mapping(data, "Rule")
    return PolicyRule(
        id=str(_get(data, "id", default=f"rule-{index + 1}")),
        name=_string(data, "Rule name", "name", default=""),
        field=_string(data, "Rule field", "field", default=""),
        operator=_string(data, "Rule operator", "operator", default=""),
        value=_get(data, "value"),
        type=_string(data, "Rule type", "type", default="comparison"),
        description=_string(data, "Rule description", "description"),
        weight=_number(data, "Rule weight", "weight", default=1.0),
        is_active=bool(_get(data, "isActive", "is_active", default=True)),
        conditions=parse_conditions(
            _list(data, "Rule conditions", "subConditions", "sub_conditions", "conditions")
        )
    )


def parse_action(data: Any, index: int = 0) -> PolicyAction:
    data = _require_mapping(data, "Action")

    parameters = _get(data, "parameters", default=None) or {}
    if not isinstance(parameters, Mapping):
        raise ValidationError("Action parameters must be an object", {"action_id": _get(data, "id")})

    fallback = _get(data, "fallbackAction", "fallback_action")

    return PolicyAction(
        id=str(_get(data, "id", default=f"action-{index + 1}")),
        name=_string(data, "Action name", "name", default=""),
        type=_string(data, "Action type", "type", default=""),
        parameters=dict(parameters),
        order=_number(data, "Action order", "order", default=index),
        is_active=bool(_get(data, "isActive", "is_active", default=True)),
        description=_string(data, "Action description", "description"),
        conditions=parse_conditions(_list(data, "Action conditions", "conditions")),
        fallback_action=parse_action(fallback, index) if fallback is not None else None
    )


def parse_dependency(data: Any, policy_id: str) -> PolicyDependency:
    data = _require_mapping(data, "Dependency")

    depends_on = _get(data, "dependsOnPolicyId", "depends_on_policy_id")
    if not depends_on:
        raise ValidationError("Dependency requires dependsOnPolicyId", {"policy_id": policy_id})

    return PolicyDependency(
        policy_id=_get(data, "policyId", "policy_id", default=policy_id) or policy_id,
        depends_on_policy_id=str(depends_on),
        type=_enum(DependencyType, _get(data, "type"), "dependency type", DependencyType.PREREQUISITE),
        condition=_get(data, "condition"),
        is_required=bool(_get(data, "isRequired", "is_required", default=True)),
        id=_get(data, "id")
    )


def parse_policy(data: Any) -> Policy:
    """Parse a policy payload into a Policy."""
    data = _require_mapping(data, "Policy")
    policy_id = str(_get(data, "id", default=None) or uuid.uuid4())

    return Policy(
        id=policy_id,
        name=_string(data, "Policy name", "name", default=""),
        category=_string(data, "Policy category", "category", default=""),
        type=_string(data, "Policy type", "type", default="detection"),
        status=_enum(PolicyStatus, _get(data, "status"), "policy status", PolicyStatus.DRAFT),
        priority=_enum(PolicyPriority, _get(data, "priority"), "policy priority", PolicyPriority.MEDIUM),
        version=_integer(data, "Policy version", "version", default=1),
        rules=[parse_rule(item, i) for i, item in enumerate(_list(data, "Rules", "rules"))],
        actions=[parse_action(item, i) for i, item in enumerate(_list(data, "Actions", "actions"))],
        dependencies=[
            parse_dependency(item, policy_id)
            for item in _list(data, "Dependencies", "dependencies")
        ],
        scope=_string(data, "Policy scope", "scope", default="global"),
        environment=_string(data, "Policy environment", "environment", default="development"),
        is_active=bool(_get(data, "isActive", "is_active", default=False)),
        description=_string(data, "Policy description", "description"),
        tags=_string_list(data, "Policy tags", "tags"),
        metadata=_object(data, "Policy metadata", "metadata"),
        created_by=_string(data, "Policy author", "createdBy", "created_by"),
        updated_by=_string(data, "Policy editor", "updatedBy", "updated_by"),
        **_timestamps(data)
    )


def parse_target_audience(data: Any) -> Optional[TargetAudience]:
    if data is None:
        return None
    data = _require_mapping(data, "Target audience")
    return TargetAudience(
        type=_get(data, "type", default="custom"),
        criteria=parse_conditions(_list(data, "Audience criteria", "criteria")),
        id=_get(data, "id"),
        name=_get(data, "name")
    )


def parse_feature_dependency(data: Any) -> FeatureDependency:
    data = _require_mapping(data, "Feature dependency")

    key = _get(data, "dependsOnFeatureKey", "depends_on_feature_key", "featureKey", "feature_key")
    if not key:
        raise ValidationError("Feature dependency requires dependsOnFeatureKey")

    condition = _get(data, "condition", default="must_be_enabled")
    # Short forms 'enabled' / 'disabled' are accepted
    if condition in ("enabled", "disabled"):
        condition = f"must_be_{condition}"

    return FeatureDependency(
        depends_on_feature_key=str(key),
        type=_text(_get(data, "type", default="prerequisite")),
        condition=_text(condition),
        is_required=bool(_get(data, "isRequired", "is_required", default=True)),
        id=_get(data, "id"),
        message=_get(data, "message")
    )


def parse_variant(data: Any) -> FeatureVariant:
    data = _require_mapping(data, "Variant")
    key = _get(data, "key", "name")
    if not key:
        raise ValidationError("Variant requires a key")
    return FeatureVariant(
        key=str(key),
        weight=_number(data, "Variant weight", "weight", default=1.0),
        value=_get(data, "value")
    )


def parse_feature(data: Any) -> FeatureToggle:
    """Parse a feature toggle payload into a FeatureToggle."""
    data = _require_mapping(data, "Feature toggle")

    return FeatureToggle(
        id=str(_get(data, "id", default=None) or uuid.uuid4()),
        key=_string(data, "Feature key", "key", default=""),
        name=_string(data, "Feature name", "name", default=""),
        category=_string(data, "Feature category", "category", default="backend"),
        type=_string(data, "Feature type", "type", default="boolean"),
        status=_string(data, "Feature status", "status", default="draft"),
        environment=_string(data, "Feature environment", "environment", default="development"),
        is_active=bool(_get(data, "isActive", "is_active", default=False)),
        rollout_strategy=_string(data, "Rollout strategy", "rolloutStrategy", "rollout_strategy", default="immediate"),
        rollout_percentage=_get(data, "rolloutPercentage", "rollout_percentage", default=0),
        target_audience=parse_target_audience(_get(data, "targetAudience", "target_audience")),
        conditions=parse_conditions(_list(data, "Feature conditions", "conditions")),
        dependencies=[
            parse_feature_dependency(item)
            for item in _list(data, "Feature dependencies", "dependencies")
        ],
        variants=[parse_variant(item) for item in _list(data, "Variants", "variants")],
        default_value=_get(data, "defaultValue", "default_value", default=False),
        version=_integer(data, "Feature version", "version", default=1),
        description=_string(data, "Feature description", "description"),
        tags=_string_list(data, "Feature tags", "tags"),
        metadata=_object(data, "Feature metadata", "metadata"),
        created_by=_string(data, "Feature author", "createdBy", "created_by"),
        updated_by=_string(data, "Feature editor", "updatedBy", "updated_by"),
        **_timestamps(data)
    )


def condition_to_dict(condition: Condition) -> Dict[str, Any]:
    if isinstance(condition, ConditionGroup):
        return {
            "id": condition.id,
            "name": condition.name,
            "logical_operator": condition.logical_operator.value,
            "sub_conditions": [condition_to_dict(child) for child in condition.children],
        }
    return {
        "id": condition.id,
        "name": condition.name,
        "type": condition.type,
        "field": condition.field,
        "operator": _text(condition.operator),
        "value": condition.value,
    }


def rule_to_dict(rule: PolicyRule) -> Dict[str, Any]:
    return {
        "id": rule.id,
        "name": rule.name,
        "type": rule.type,
        "field": rule.field,
        "operator": _text(rule.operator),
        "value": rule.value,
        "description": rule.description,
        "weight": rule.weight,
        "is_active": rule.is_active,
        "conditions": [condition_to_dict(c) for c in rule.conditions],
    }


def action_to_dict(action: PolicyAction) -> Dict[str, Any]:
    return {
        "id": action.id,
        "name": action.name,
        "type": _text(action.type),
        "parameters": dict(action.parameters),
        "order": action.order,
        "is_active": action.is_active,
        "description": action.description,
        "conditions": [condition_to_dict(c) for c in action.conditions],
        "fallback_action": action_to_dict(action.fallback_action) if action.fallback_action else None,
    }


def policy_to_dict(policy: Policy) -> Dict[str, Any]:
    """Snake_case snapshot of a policy; ``parse_policy`` reads it back."""
    return {
        "id": policy.id,
        "name": policy.name,
        "category": policy.category,
        "type": policy.type,
        "status": _text(policy.status),
        "priority": _text(policy.priority),
        "version": policy.version,
        "rules": [rule_to_dict(r) for r in policy.rules],
        "actions": [action_to_dict(a) for a in policy.actions],
        "dependencies": [
            {
                "id": d.id,
                "policy_id": d.policy_id,
                "depends_on_policy_id": d.depends_on_policy_id,
                "type": _text(d.type),
                "condition": d.condition,
                "is_required": d.is_required,
            }
            for d in policy.dependencies
        ],
        "scope": policy.scope,
        "environment": policy.environment,
        "is_active": policy.is_active,
        "description": policy.description,
        "tags": list(policy.tags),
        "metadata": dict(policy.metadata),
        "created_by": policy.created_by,
        "updated_by": policy.updated_by,
        "created_at": policy.created_at.isoformat(),
        "updated_at": policy.updated_at.isoformat(),
    }


def feature_to_dict(feature: FeatureToggle) -> Dict[str, Any]:
    """Snake_case snapshot of a feature toggle; ``parse_feature`` reads it back."""
    audience = feature.target_audience
    return {
        "id": feature.id,
        "key": feature.key,
        "name": feature.name,
        "category": feature.category,
        "type": feature.type,
        "status": feature.status,
        "environment": feature.environment,
        "is_active": feature.is_active,
        "rollout_strategy": _text(feature.rollout_strategy),
        "rollout_percentage": feature.rollout_percentage,
        "target_audience": None if audience is None else {
            "id": audience.id,
            "name": audience.name,
            "type": audience.type,
            "criteria": [condition_to_dict(c) for c in audience.criteria],
        },
        "conditions": [condition_to_dict(c) for c in feature.conditions],
        "dependencies": [
            {
                "id": d.id,
                "depends_on_feature_key": d.depends_on_feature_key,
                "type": d.type,
                "condition": d.condition,
                "is_required": d.is_required,
                "message": d.message,
            }
            for d in feature.dependencies
        ],
        "variants": [{"key": v.key, "weight": v.weight, "value": v.value} for v in feature.variants],
        "default_value": feature.default_value,
        "version": feature.version,
        "description": feature.description,
        "tags": list(feature.tags),
        "metadata": dict(feature.metadata),
        "created_by": feature.created_by,
        "updated_by": feature.updated_by,
        "created_at": feature.created_at.isoformat(),
        "updated_at": feature.updated_at.isoformat(),
    }
