"""
Policy Engine service.

PolicyEngineService is the injected engine instance: it owns the
evaluators, validators, harness and batch executor, and talks to the
persistence and audit collaborators. Every entry point takes and returns
plain structured data and reports failures as ErrorResponse values, so it
can sit behind any transport.
"""

import asyncio
import dataclasses
from typing import Any, Dict, Iterable, List, Optional, Union

from prometheus_client import CollectorRegistry

from shared.config import EngineConfig, get_config
from shared.errors import (
    DependencyError, ErrorResponse, NotFoundError, PermissionDeniedError,
    PolicyEngineException, ValidationError
)
from shared.logging import (
    clear_context, configure_logging, get_logger, set_actor_context, set_request_id
)
from shared.metrics import MetricsCollector

from .actors import ActorContext
from .audit.recorder import AuditRecord, AuditRecorder, InMemoryAuditSink
from .batch.executor import BatchExecutor, BatchOperation, BatchSummary
from .features.bucketing import RolloutBucketer
from .features.engine import FeatureEngine
from .features.models import FeatureEvaluation, FeatureToggle
from .features.validator import FeatureValidator
from .harness.simulator import (
    PolicyTestCase, PolicyTestCaseResult, PolicyTestResult, SimulationHarness,
    SimulationRun, parse_context
)
from .loader import feature_to_dict, parse_feature, parse_policy, policy_to_dict
from .persistence.repository import InMemoryDefinitionRepository
from .rules.conditions import ConditionEvaluator
from .rules.engine import PolicyEngine
from .rules.evaluator import RuleEvaluator
from .rules.models import Policy, PolicyStatus, Verdict
from .rules.operators import OperatorLibrary
from .rules.resolver import FieldResolver
from .validation.dependencies import DependencyValidator
from .validation.report import ValidationReport
from .validation.validator import PolicyValidator

PolicyInput = Union[Policy, Dict[str, Any]]
FeatureInput = Union[FeatureToggle, Dict[str, Any]]


class PolicyEngineService:
    """Policy and feature toggle evaluation service."""

    def __init__(self, config: Optional[EngineConfig] = None,
                 repository: Optional[InMemoryDefinitionRepository] = None,
                 audit_sink: Optional[InMemoryAuditSink] = None,
                 metrics_registry: Optional[CollectorRegistry] = None):
        self.config = config or get_config()
        configure_logging(self.config.service_name, self.config.log_level)
        self.logger = get_logger("policy_engine.service")
        self.metrics = MetricsCollector(self.config.service_name, metrics_registry)

        # Evaluation pipeline
        self.resolver = FieldResolver()
        self.operators = OperatorLibrary()
        self.condition_evaluator = ConditionEvaluator(self.resolver, self.operators)
        self.rule_evaluator = RuleEvaluator(self.resolver, self.operators, self.condition_evaluator)
        self.policy_engine = PolicyEngine(self.rule_evaluator, self.condition_evaluator)
        self.bucketer = RolloutBucketer(self.config.identifier_fields, self.resolver)
        self.feature_engine = FeatureEngine(self.bucketer, self.condition_evaluator, self.config.environment)

        # Activation-time checks
        self.policy_validator = PolicyValidator(self.operators)
        self.dependency_validator = DependencyValidator()
        self.feature_validator = FeatureValidator(self.policy_validator)

        self.harness = SimulationHarness(
            self.policy_engine, self.feature_engine,
            self.config.simulation_history_size, self.config.simulation_max_sessions
        )

        # Collaborators
        self.repository = repository or InMemoryDefinitionRepository()
        self.audit = AuditRecorder(audit_sink)
        # Held across the dependency check and the status commit of an activation
        self._activation_lock = asyncio.Lock()
        self.batch = BatchExecutor(
            hard_max=self.config.batch_hard_max,
            max_concurrency=self.config.batch_max_concurrency,
            audit_recorder=self.audit,
            metrics=self.metrics
        )
        self._register_batch_operations()

        self.logger.info(
            "Policy engine service initialized",
            environment=self.config.environment,
            batch_operations=self.batch.operations()
        )

    def _register_batch_operations(self):
        self.batch.register("activate_policy", self._batch_activate_policy)
        self.batch.register("deactivate_policy", self._batch_deactivate_policy)
        self.batch.register("deprecate_policy", self._batch_deprecate_policy)
        self.batch.register("enable_feature", self._batch_enable_feature)
        self.batch.register("disable_feature", self._batch_disable_feature)

    # Definitions

    async def create_policy(self, payload: PolicyInput, actor: ActorContext) -> Union[Policy, ErrorResponse]:
        """Store a new policy as an inactive draft."""
        try:
            set_actor_context(actor.actor_id, actor.session_id)
            policy = dataclasses.replace(self._policy_from(payload), created_by=actor.actor_id)
            stored = await self.repository.create_policy(policy)
            await self.audit.record_change(
                "policy", stored.id, "policy.created", actor.actor_id, after=policy_to_dict(stored)
            )
            return stored
        except PolicyEngineException as e:
            return self._error(e, "create_policy")
        except Exception as e:
            return self._unexpected(e, "create_policy")

    async def update_policy(self, payload: PolicyInput, actor: ActorContext) -> Union[Policy, ErrorResponse]:
        """Edit a policy that is not active; rule or action changes bump its version."""
        try:
            set_actor_context(actor.actor_id, actor.session_id)
            before, after = await self.repository.update_policy(self._policy_from(payload), actor.actor_id)
            await self.audit.record_change(
                "policy", after.id, "policy.updated", actor.actor_id,
                before=policy_to_dict(before), after=policy_to_dict(after)
            )
            return after
        except PolicyEngineException as e:
            return self._error(e, "update_policy")
        except Exception as e:
            return self._unexpected(e, "update_policy")

    async def create_feature(self, payload: FeatureInput, actor: ActorContext) -> Union[FeatureToggle, ErrorResponse]:
        try:
            set_actor_context(actor.actor_id, actor.session_id)
            feature = dataclasses.replace(self._feature_from(payload), created_by=actor.actor_id)
            stored = await self.repository.create_feature(feature)
            await self.audit.record_change(
                "feature", stored.key, "feature.created", actor.actor_id, after=feature_to_dict(stored)
            )
            return stored
        except PolicyEngineException as e:
            return self._error(e, "create_feature")
        except Exception as e:
            return self._unexpected(e, "create_feature")

    async def update_feature(self, payload: FeatureInput, actor: ActorContext) -> Union[FeatureToggle, ErrorResponse]:
        try:
            set_actor_context(actor.actor_id, actor.session_id)
            before, after = await self.repository.update_feature(self._feature_from(payload), actor.actor_id)
            await self.audit.record_change(
                "feature", after.key, "feature.updated", actor.actor_id,
                before=feature_to_dict(before), after=feature_to_dict(after)
            )
            return after
        except PolicyEngineException as e:
            return self._error(e, "update_feature")
        except Exception as e:
            return self._unexpected(e, "update_feature")

    # Evaluation

    async def evaluate_policy(self, policy_id: str, context: Any,
                              actor: Optional[ActorContext] = None) -> Union[Verdict, ErrorResponse]:
        """Evaluate a stored policy. Unresolvable policies never match."""
        clear_context()
        set_request_id()
        try:
            context = parse_context(context)
        except ValidationError as e:
            return self._error(e, "evaluate_policy")

        try:
            policy = await self.repository.get_policy(policy_id)
        except Exception as e:
            self.logger.error("Policy lookup failed", policy_id=policy_id, error=str(e))
            self.metrics.record_error("policy_lookup")
            return Verdict(policy_id=policy_id, policy_version=0, triggered=False, reason="evaluation_error")

        verdict = self.policy_engine.evaluate_policy(policy, context)
        if policy is None:
            verdict = dataclasses.replace(verdict, policy_id=policy_id)
            self.logger.warning("Policy not found", policy_id=policy_id)
        else:
            await self.audit.record_verdict(verdict, actor.actor_id if actor else None)

        self.metrics.record_policy_evaluation(verdict.triggered, verdict.evaluation_time_ms / 1000)
        return verdict

    async def evaluate_feature(self, key: str, context: Any, environment: Optional[str] = None,
                               default: bool = False,
                               actor: Optional[ActorContext] = None) -> Union[FeatureEvaluation, ErrorResponse]:
        """Evaluate a stored feature toggle, falling back to a default when it cannot be resolved."""
        clear_context()
        set_request_id()
        try:
            context = parse_context(context)
        except ValidationError as e:
            return self._error(e, "evaluate_feature")

        try:
            feature = await self.repository.get_feature(key)
            catalog = await self._feature_catalog(feature) if feature is not None else {}
        except Exception as e:
            self.logger.error("Feature lookup failed", feature_key=key, error=str(e))
            self.metrics.record_error("feature_lookup")
            evaluation = FeatureEvaluation(feature_key=key, enabled=bool(default), reason="evaluation_error")
            self.metrics.record_feature_evaluation(evaluation.reason)
            return evaluation

        if feature is None:
            evaluation = FeatureEvaluation(feature_key=key, enabled=bool(default), reason="feature_not_found")
        else:
            evaluation = self.feature_engine.evaluate_feature(feature, context, environment, catalog.get)
            if evaluation.reason == "evaluation_error":
                fallback = feature.default_value if isinstance(feature.default_value, bool) else bool(default)
                evaluation = dataclasses.replace(evaluation, enabled=fallback)

        self.metrics.record_feature_evaluation(evaluation.reason)
        if self.config.audit_feature_evaluations and feature is not None:
            await self.audit.record_feature_evaluation(evaluation, actor.actor_id if actor else None)

        return evaluation

    async def evaluate_features(self, keys: Iterable[str], context: Any, environment: Optional[str] = None,
                                default: bool = False) -> Dict[str, Union[FeatureEvaluation, ErrorResponse]]:
        """Evaluate several feature toggles for one context."""
        results: Dict[str, Union[FeatureEvaluation, ErrorResponse]] = {}
        for key in keys:
            if key not in results:
                results[key] = await self.evaluate_feature(key, context, environment, default)
        return results

    async def _feature_catalog(self, feature: FeatureToggle) -> Dict[str, FeatureToggle]:
        """The feature plus every feature reachable through its dependencies."""
        catalog: Dict[str, FeatureToggle] = {feature.key: feature}
        pending = [d.depends_on_feature_key for d in feature.dependencies]
        while pending:
            key = pending.pop()
            if key in catalog:
                continue
            other = await self.repository.get_feature(key)
            if other is None:
                continue
            catalog[key] = other
            pending.extend(d.depends_on_feature_key for d in other.dependencies)
        return catalog

    # Static checks

    async def validate_policy(self, payload: PolicyInput) -> ValidationReport:
        """Structural validation of a policy; never raises."""
        try:
            report = self.policy_validator.validate_policy(self._policy_from(payload))
        except PolicyEngineException as e:
            report = _failed_report(e.code.lower(), e.message, e.details)
        except Exception as e:
            self._unexpected(e, "validate_policy")
            report = _failed_report(
                "internal_error", "Policy could not be validated", {"error_type": type(e).__name__}
            )

        self.metrics.record_validation(report.is_valid)
        return report

    async def validate_feature(self, payload: FeatureInput) -> ValidationReport:
        """Static validation of a feature toggle; never raises."""
        try:
            report = self.feature_validator.validate_feature(self._feature_from(payload))
        except PolicyEngineException as e:
            report = _failed_report(e.code.lower(), e.message, e.details)
        except Exception as e:
            self._unexpected(e, "validate_feature")
            report = _failed_report(
                "internal_error", "Feature could not be validated", {"error_type": type(e).__name__}
            )

        self.metrics.record_validation(report.is_valid)
        return report

    # Lifecycle

    async def activate_policy(self, policy_id: str, actor: ActorContext) -> Union[Policy, ErrorResponse]:
        """Activate a policy after structural and dependency checks."""
        try:
            return await self._activate_policy(policy_id, actor)
        except PolicyEngineException as e:
            return self._error(e, "activate_policy")
        except Exception as e:
            return self._unexpected(e, "activate_policy")

    async def deactivate_policy(self, policy_id: str, actor: ActorContext) -> Union[Policy, ErrorResponse]:
        try:
            return await self._change_policy_status(policy_id, PolicyStatus.INACTIVE, "policy.deactivated", actor)
        except PolicyEngineException as e:
            return self._error(e, "deactivate_policy")
        except Exception as e:
            return self._unexpected(e, "deactivate_policy")

    async def deprecate_policy(self, policy_id: str, actor: ActorContext) -> Union[Policy, ErrorResponse]:
        try:
            return await self._change_policy_status(policy_id, PolicyStatus.DEPRECATED, "policy.deprecated", actor)
        except PolicyEngineException as e:
            return self._error(e, "deprecate_policy")
        except Exception as e:
            return self._unexpected(e, "deprecate_policy")

    async def start_policy_testing(self, policy_id: str, actor: ActorContext) -> Union[Policy, ErrorResponse]:
        """Move a structurally valid policy to 'testing' so it can be evaluated before activation."""
        try:
            policy = await self._require_policy(policy_id)
            self._require_valid_policy(policy)
            return await self._change_policy_status(policy_id, PolicyStatus.TESTING, "policy.testing", actor)
        except PolicyEngineException as e:
            return self._error(e, "start_policy_testing")
        except Exception as e:
            return self._unexpected(e, "start_policy_testing")

    async def activate_feature(self, key: str, actor: ActorContext) -> Union[FeatureToggle, ErrorResponse]:
        try:
            return await self._set_feature_active(key, True, actor)
        except PolicyEngineException as e:
            return self._error(e, "activate_feature")
        except Exception as e:
            return self._unexpected(e, "activate_feature")

    async def deactivate_feature(self, key: str, actor: ActorContext) -> Union[FeatureToggle, ErrorResponse]:
        try:
            return await self._set_feature_active(key, False, actor)
        except PolicyEngineException as e:
            return self._error(e, "deactivate_feature")
        except Exception as e:
            return self._unexpected(e, "deactivate_feature")

    async def _activate_policy(self, policy_id: str, actor: ActorContext) -> Policy:
        self._require_role(actor, "activate_policy")
        policy = await self._require_policy(policy_id)
        report = self._require_valid_policy(policy)

        async with self._activation_lock:
            catalog = {p.id: p for p in await self.repository.list_policies()}
            dependency_report = self.dependency_validator.check(policy, catalog)
            if not dependency_report.is_valid:
                raise DependencyError(
                    "Policy dependencies are not satisfied",
                    dependency_report.to_dict()
                )

            before, after = await self.repository.set_policy_status(
                policy_id, PolicyStatus.ACTIVE, actor.actor_id
            )

        await self.audit.record_change(
            "policy", policy_id, "policy.activated", actor.actor_id,
            before=policy_to_dict(before), after=policy_to_dict(after),
            details={"warnings": report.warning_messages() + dependency_report.warning_messages()}
        )

        self.logger.info("Policy activated", policy_id=policy_id, version=after.version, actor_id=actor.actor_id)
        return after

    async def _change_policy_status(self, policy_id: str, status: PolicyStatus, action: str,
                                    actor: ActorContext) -> Policy:
        self._require_role(actor, action)
        before, after = await self.repository.set_policy_status(policy_id, status, actor.actor_id)
        await self.audit.record_change(
            "policy", policy_id, action, actor.actor_id,
            before=policy_to_dict(before), after=policy_to_dict(after)
        )
        return after

    async def _set_feature_active(self, key: str, is_active: bool, actor: ActorContext) -> FeatureToggle:
        self._require_role(actor, "enable_feature" if is_active else "disable_feature")

        if is_active:
            feature = await self.repository.get_feature(key)
            if feature is None:
                raise NotFoundError(f"Feature '{key}' not found", {"feature_key": key})
            report = self.feature_validator.validate_feature(feature)
            if not report.is_valid:
                raise ValidationError("Feature validation failed", report.to_dict())

        before, after = await self.repository.set_feature_active(key, is_active, actor.actor_id)
        await self.audit.record_change(
            "feature", key, "feature.enabled" if is_active else "feature.disabled", actor.actor_id,
            before=feature_to_dict(before), after=feature_to_dict(after)
        )
        return after

    async def _require_policy(self, policy_id: str) -> Policy:
        policy = await self.repository.get_policy(policy_id)
        if policy is None:
            raise NotFoundError(f"Policy '{policy_id}' not found", {"policy_id": policy_id})
        return policy

    def _require_valid_policy(self, policy: Policy) -> ValidationReport:
        report = self.policy_validator.validate_policy(policy)
        self.metrics.record_validation(report.is_valid)
        if not report.is_valid:
            raise ValidationError("Policy validation failed", report.to_dict())
        return report

    def _require_role(self, actor: ActorContext, operation: str):
        set_actor_context(actor.actor_id, actor.session_id)
        if actor.role not in self.config.activation_roles:
            raise PermissionDeniedError(
                f"Role '{actor.role}' may not perform {operation}",
                {"actor_id": actor.actor_id, "role": actor.role}
            )

    # Simulation harness

    async def test_policy(self, policy: Union[str, PolicyInput], context: Any,
                          session_id: str = "default") -> Union[PolicyTestResult, ErrorResponse]:
        """Run a stored policy (by id) or an unsaved payload against a sample context."""
        try:
            resolved = await self._resolve_policy(policy)
            return self.harness.test_policy(resolved, context, session_id)
        except PolicyEngineException as e:
            return self._error(e, "test_policy")
        except Exception as e:
            return self._unexpected(e, "test_policy")

    async def run_policy_test_cases(self, policy: Union[str, PolicyInput],
                                    test_cases: List[Union[PolicyTestCase, Dict[str, Any]]],
                                    session_id: str = "default") -> Union[List[PolicyTestCaseResult], ErrorResponse]:
        try:
            resolved = await self._resolve_policy(policy)
            return [
                self.harness.run_test_case(resolved, _test_case_from(case), session_id)
                for case in test_cases
            ]
        except PolicyEngineException as e:
            return self._error(e, "run_policy_test_cases")
        except Exception as e:
            return self._unexpected(e, "run_policy_test_cases")

    async def simulate_feature(self, feature: Union[str, FeatureInput], context: Any,
                               session_id: str = "default",
                               environment: Optional[str] = None) -> Union[FeatureEvaluation, ErrorResponse]:
        """Run a stored feature (by key) or an unsaved payload against a sample context."""
        try:
            if isinstance(feature, str):
                resolved = await self.repository.get_feature(feature)
                if resolved is None:
                    raise NotFoundError(f"Feature '{feature}' not found", {"feature_key": feature})
            else:
                resolved = self._feature_from(feature)

            catalog = await self._feature_catalog(resolved)
            return self.harness.simulate_feature(resolved, context, session_id, environment, catalog.get)
        except PolicyEngineException as e:
            return self._error(e, "simulate_feature")
        except Exception as e:
            return self._unexpected(e, "simulate_feature")

    async def simulation_history(self, session_id: str = "default") -> List[SimulationRun]:
        return self.harness.history(session_id)

    async def _resolve_policy(self, policy: Union[str, PolicyInput]) -> Policy:
        if isinstance(policy, str):
            return await self._require_policy(policy)
        return self._policy_from(policy)

    # Bulk operations

    async def run_batch(self, operation_type: str, target_ids: List[str], actor: ActorContext,
                        reason: Optional[str] = None,
                        parameters: Optional[Dict[str, Any]] = None) -> Union[BatchSummary, ErrorResponse]:
        """Apply an operation to many ids; the actor's role caps the batch size."""
        try:
            set_actor_context(actor.actor_id, actor.session_id)
            limit = self.config.role_batch_limits.get(actor.role)
            if limit is None:
                raise PermissionDeniedError(
                    f"Role '{actor.role}' may not run bulk operations",
                    {"actor_id": actor.actor_id, "role": actor.role}
                )
            if len(target_ids) > limit:
                raise ValidationError(
                    f"Role '{actor.role}' may run at most {limit} items per batch",
                    {"count": len(target_ids), "max": limit}
                )

            operation = BatchOperation(
                type=operation_type,
                target_ids=list(target_ids),
                reason=reason,
                parameters=dict(parameters or {})
            )
            return await self.batch.run_batch(operation, actor)
        except PolicyEngineException as e:
            return self._error(e, "run_batch")
        except Exception as e:
            return self._unexpected(e, "run_batch")

    async def _batch_activate_policy(self, target_id: str, operation: BatchOperation,
                                     actor: ActorContext) -> Dict[str, Any]:
        policy = await self._activate_policy(target_id, actor)
        return {"status": policy.status.value, "version": policy.version}

    async def _batch_deactivate_policy(self, target_id: str, operation: BatchOperation,
                                       actor: ActorContext) -> Dict[str, Any]:
        policy = await self._change_policy_status(target_id, PolicyStatus.INACTIVE, "policy.deactivated", actor)
        return {"status": policy.status.value, "version": policy.version}

    async def _batch_deprecate_policy(self, target_id: str, operation: BatchOperation,
                                      actor: ActorContext) -> Dict[str, Any]:
        policy = await self._change_policy_status(target_id, PolicyStatus.DEPRECATED, "policy.deprecated", actor)
        return {"status": policy.status.value, "version": policy.version}

    async def _batch_enable_feature(self, target_id: str, operation: BatchOperation,
                                    actor: ActorContext) -> Dict[str, Any]:
        feature = await self._set_feature_active(target_id, True, actor)
        return {"is_active": feature.is_active, "version": feature.version}

    async def _batch_disable_feature(self, target_id: str, operation: BatchOperation,
                                     actor: ActorContext) -> Dict[str, Any]:
        feature = await self._set_feature_active(target_id, False, actor)
        return {"is_active": feature.is_active, "version": feature.version}

    # Audit

    async def audit_history(self, entity_id: Optional[str] = None, entity_type: Optional[str] = None,
                            action: Optional[str] = None, limit: Optional[int] = None) -> List[AuditRecord]:
        return await self.audit.history(entity_id=entity_id, entity_type=entity_type, action=action, limit=limit)

    # Helpers

    @staticmethod
    def _policy_from(payload: PolicyInput) -> Policy:
        if isinstance(payload, Policy):
            return payload
        return parse_policy(payload)

    @staticmethod
    def _feature_from(payload: FeatureInput) -> FeatureToggle:
        if isinstance(payload, FeatureToggle):
            return payload
        return parse_feature(payload)

    def _error(self, error: PolicyEngineException, operation: str) -> ErrorResponse:
        self.logger.warning(
            "Operation failed",
            operation=operation,
            code=error.code,
            error=error.message
        )
        self.metrics.record_error(error.code)
        return error.to_response()

    def _unexpected(self, error: Exception, operation: str) -> ErrorResponse:
        self.logger.error(
            "Operation failed unexpectedly",
            operation=operation,
            error=str(error),
            exc_info=True
        )
        self.metrics.record_error("INTERNAL_ERROR")
        return ErrorResponse(
            code="INTERNAL_ERROR",
            message=f"{operation} failed",
            details={"error_type": type(error).__name__}
        )


def _failed_report(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> ValidationReport:
    report = ValidationReport()
    report.error(code, message, details)
    return report


def _test_case_from(case: Union[PolicyTestCase, Dict[str, Any]]) -> PolicyTestCase:
    if isinstance(case, PolicyTestCase):
        return case
    if not isinstance(case, dict):
        raise ValidationError("Test case must be an object")

    should_trigger = case.get("shouldTrigger", case.get("should_trigger"))
    if should_trigger is None:
        raise ValidationError("Test case requires shouldTrigger", {"name": case.get("name")})

    return PolicyTestCase(
        name=case.get("name", "unnamed"),
        context=case.get("context", case.get("testData", {})),
        should_trigger=bool(should_trigger),
        expected_actions=case.get("expectedActions", case.get("expected_actions")),
        description=case.get("description")
    )
