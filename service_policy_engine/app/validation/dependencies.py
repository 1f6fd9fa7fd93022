"""
Dependency graph checks across policies.
"""

from typing import Dict, List, Mapping, Optional, Set

from shared.logging import get_logger
from .report import ValidationReport
from ..rules.models import DependencyType, Policy


class DependencyValidator:
    """Checks a policy's declared dependencies against the policy catalog.

    Prerequisite edges must point at existing, active policies and must not
    form a cycle. Conflict edges must point at policies that are not active.
    Run at each activation attempt, never per evaluation.
    """

    def __init__(self):
        self.logger = get_logger("policy_engine.dependencies")

    def check(self, policy: Policy, catalog: Mapping[str, Policy]) -> ValidationReport:
        report = ValidationReport()

        for dependency in policy.dependencies:
            if dependency.policy_id and dependency.policy_id != policy.id:
                continue

            target_id = dependency.depends_on_policy_id
            target = catalog.get(target_id)
            details = {"policy_id": policy.id, "depends_on_policy_id": target_id}
            dependency_type = _value(dependency.type)

            if dependency_type == DependencyType.PREREQUISITE.value:
                if target is None:
                    report.error("missing_prerequisite", f"Prerequisite policy '{target_id}' not found", details)
                elif target_id != policy.id and not target.is_active:
                    report.error("inactive_prerequisite", f"Prerequisite policy '{target_id}' is not active", details)

            elif dependency_type == DependencyType.CONFLICT.value:
                if target is not None and target_id != policy.id and target.is_active:
                    report.error(
                        "active_conflict",
                        f"Conflicting policy '{target_id}' is active",
                        details
                    )

            elif target is None:
                report.warning(
                    "missing_dependency",
                    f"{dependency_type.capitalize()} policy '{target_id}' not found",
                    details
                )

        for other in catalog.values():
            if other.id == policy.id or not other.is_active:
                continue
            for dependency in other.dependencies:
                if (_value(dependency.type) == DependencyType.CONFLICT.value
                        and dependency.depends_on_policy_id == policy.id):
                    report.error(
                        "active_conflict",
                        f"Active policy '{other.id}' conflicts with '{policy.id}'",
                        {"policy_id": other.id, "depends_on_policy_id": policy.id}
                    )
                    break

        cycle = self.find_prerequisite_cycle(policy, catalog)
        if cycle:
            report.error(
                "dependency_cycle",
                f"Prerequisite cycle detected: {' -> '.join(cycle)}",
                {"cycle": cycle}
            )

        if not report.is_valid:
            self.logger.info(
                "Dependency check failed",
                policy_id=policy.id,
                errors=[issue.code for issue in report.errors]
            )

        return report

    def find_prerequisite_cycle(self, policy: Policy, catalog: Mapping[str, Policy]) -> Optional[List[str]]:
        """Cycle through ``policy`` along prerequisite edges, as a path, or None."""
        graph = _prerequisite_graph(policy, catalog)

        path: List[str] = [policy.id]
        visited: Set[str] = set()

        def visit(node: str) -> bool:
            for target in graph.get(node, []):
                if target == policy.id:
                    path.append(target)
                    return True
                if target in visited:
                    continue
                visited.add(target)
                path.append(target)
                if visit(target):
                    return True
                path.pop()
            return False

        return path if visit(policy.id) else None


def _prerequisite_graph(policy: Policy, catalog: Mapping[str, Policy]) -> Dict[str, List[str]]:
    graph: Dict[str, List[str]] = {}
    members = dict(catalog)
    # The candidate's own edges take precedence over its stored snapshot
    members[policy.id] = policy

    for member in members.values():
        for dependency in member.dependencies:
            if _value(dependency.type) != DependencyType.PREREQUISITE.value:
                continue
            source = dependency.policy_id or member.id
            graph.setdefault(source, []).append(dependency.depends_on_policy_id)

    return graph


def _value(item):
    return getattr(item, "value", item)
