"""
In-memory definition storage.

Stores policies and feature toggles, enforces the definition lifecycle
(draft -> testing -> active -> deprecated) and version bumps. Every read
returns a deep copy, so callers always evaluate against an immutable
snapshot of the version they fetched.
"""

import asyncio
import copy
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger
from ..features.models import FeatureToggle
from ..loader import action_to_dict, feature_to_dict, rule_to_dict
from ..rules.models import EDITABLE_STATUSES, EVALUABLE_STATUSES, Policy, PolicyStatus


class InMemoryDefinitionRepository:
    """Async definition store backed by dictionaries."""

    def __init__(self):
        self._policies: Dict[str, Policy] = {}
        self._features: Dict[str, FeatureToggle] = {}
        self._lock = asyncio.Lock()
        self.logger = get_logger("policy_engine.persistence")

    # Policies

    async def create_policy(self, policy: Policy) -> Policy:
        """Store a new policy as an inactive draft at version 1."""
        async with self._lock:
            if policy.id in self._policies:
                raise ValidationError(f"Policy '{policy.id}' already exists", {"policy_id": policy.id})

            stored = copy.deepcopy(policy)
            stored.status = PolicyStatus.DRAFT
            stored.is_active = False
            stored.version = 1
            now = datetime.now(timezone.utc)
            stored.created_at = now
            stored.updated_at = now
            self._policies[stored.id] = stored

            self.logger.info("Policy created", policy_id=stored.id, name=stored.name)
            return copy.deepcopy(stored)

    async def get_policy(self, policy_id: str) -> Optional[Policy]:
        async with self._lock:
            policy = self._policies.get(policy_id)
            return copy.deepcopy(policy) if policy is not None else None

    async def list_policies(self) -> List[Policy]:
        async with self._lock:
            return [copy.deepcopy(p) for p in self._policies.values()]

    async def update_policy(self, policy: Policy, actor_id: Optional[str] = None) -> Tuple[Policy, Policy]:
        """Replace an editable policy's definition; returns (before, after).

        The version increases when rules or actions change. Status and
        activation are untouched; use ``set_policy_status`` for those.
        """
        async with self._lock:
            current = self._policies.get(policy.id)
            if current is None:
                raise NotFoundError(f"Policy '{policy.id}' not found", {"policy_id": policy.id})

            if current.status not in EDITABLE_STATUSES:
                raise ValidationError(
                    f"Policy cannot be edited while {current.status.value}",
                    {"policy_id": policy.id, "status": current.status.value}
                )

            updated = copy.deepcopy(policy)
            updated.status = current.status
            updated.is_active = current.is_active
            updated.created_at = current.created_at
            updated.created_by = current.created_by
            updated.updated_by = actor_id or policy.updated_by
            updated.updated_at = datetime.now(timezone.utc)
            updated.version = current.version + 1 if _policy_body_changed(current, updated) else current.version

            self._policies[policy.id] = updated

            self.logger.info("Policy updated", policy_id=policy.id, version=updated.version)
            return copy.deepcopy(current), copy.deepcopy(updated)

    async def set_policy_status(self, policy_id: str, status: PolicyStatus,
                                actor_id: Optional[str] = None) -> Tuple[Policy, Policy]:
        """Move a policy to a new status keeping is_active consistent; returns (before, after)."""
        async with self._lock:
            current = self._policies.get(policy_id)
            if current is None:
                raise NotFoundError(f"Policy '{policy_id}' not found", {"policy_id": policy_id})

            if current.status == PolicyStatus.DEPRECATED and status != PolicyStatus.DEPRECATED:
                raise ValidationError(
                    "Deprecated policies cannot change status",
                    {"policy_id": policy_id, "status": status.value}
                )

            before = copy.deepcopy(current)
            current.status = status
            current.is_active = status in EVALUABLE_STATUSES
            current.updated_by = actor_id or current.updated_by
            current.updated_at = datetime.now(timezone.utc)

            self.logger.info(
                "Policy status changed",
                policy_id=policy_id,
                from_status=before.status.value,
                to_status=status.value
            )
            return before, copy.deepcopy(current)

    # Feature toggles

    async def create_feature(self, feature: FeatureToggle) -> FeatureToggle:
        """Store a new feature toggle, inactive, at version 1."""
        async with self._lock:
            if feature.key in self._features:
                raise ValidationError(f"Feature '{feature.key}' already exists", {"feature_key": feature.key})

            stored = copy.deepcopy(feature)
            stored.is_active = False
            stored.version = 1
            now = datetime.now(timezone.utc)
            stored.created_at = now
            stored.updated_at = now
            self._features[stored.key] = stored

            self.logger.info("Feature created", feature_key=stored.key)
            return copy.deepcopy(stored)

    async def get_feature(self, key: str) -> Optional[FeatureToggle]:
        async with self._lock:
            feature = self._features.get(key)
            return copy.deepcopy(feature) if feature is not None else None

    async def list_features(self) -> List[FeatureToggle]:
        async with self._lock:
            return [copy.deepcopy(f) for f in self._features.values()]

    async def update_feature(self, feature: FeatureToggle, actor_id: Optional[str] = None) -> Tuple[FeatureToggle, FeatureToggle]:
        """Replace an inactive feature's definition; returns (before, after)."""
        async with self._lock:
            current = self._features.get(feature.key)
            if current is None:
                raise NotFoundError(f"Feature '{feature.key}' not found", {"feature_key": feature.key})

            if current.is_active and current.status != "testing":
                raise ValidationError(
                    "Active feature cannot be edited",
                    {"feature_key": feature.key, "status": current.status}
                )

            updated = copy.deepcopy(feature)
            updated.id = current.id
            updated.is_active = current.is_active
            updated.created_at = current.created_at
            updated.created_by = current.created_by
            updated.updated_by = actor_id or feature.updated_by
            updated.updated_at = datetime.now(timezone.utc)
            updated.version = current.version + 1 if _feature_body_changed(current, updated) else current.version

            self._features[feature.key] = updated

            self.logger.info("Feature updated", feature_key=feature.key, version=updated.version)
            return copy.deepcopy(current), copy.deepcopy(updated)

    async def set_feature_active(self, key: str, is_active: bool,
                                 actor_id: Optional[str] = None) -> Tuple[FeatureToggle, FeatureToggle]:
        async with self._lock:
            current = self._features.get(key)
            if current is None:
                raise NotFoundError(f"Feature '{key}' not found", {"feature_key": key})

            before = copy.deepcopy(current)
            current.is_active = is_active
            current.updated_by = actor_id or current.updated_by
            current.updated_at = datetime.now(timezone.utc)

            self.logger.info("Feature activation changed", feature_key=key, is_active=is_active)
            return before, copy.deepcopy(current)


def _policy_body_changed(current: Policy, updated: Policy) -> bool:
    return (
        [rule_to_dict(r) for r in current.rules] != [rule_to_dict(r) for r in updated.rules]
        or [action_to_dict(a) for a in current.actions] != [action_to_dict(a) for a in updated.actions]
    )


_FEATURE_BODY_FIELDS = (
    "rollout_strategy", "rollout_percentage", "target_audience", "conditions",
    "dependencies", "variants", "default_value", "environment", "type",
)


def _feature_body_changed(current: FeatureToggle, updated: FeatureToggle) -> bool:
    before = feature_to_dict(current)
    after = feature_to_dict(updated)
    return any(before[name] != after[name] for name in _FEATURE_BODY_FIELDS)
