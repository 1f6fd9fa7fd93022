"""
Prometheus instrumentation for the Policy Engine.

Metrics are only exported when a CollectorRegistry is supplied; without
one the collectors still count but stay unregistered, so several engine
instances can live in one process (tests, simulations).
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info

ENGINE_VERSION = "1.0.0"

# Policy verdicts are fast; buckets are in seconds
EVALUATION_BUCKETS = (0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 1.0)


class MetricsCollector:
    """Counters and histograms for evaluations, validations and bulk runs."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry

        self.engine_info = Info(
            "engine", "Policy engine build information", registry=registry
        )
        self.engine_info.info({"service": service_name, "version": ENGINE_VERSION})

        self.errors = Counter(
            "errors_total", "Errors by type", ["error_type", "service"], registry=registry
        )
        self.policy_evaluations = Counter(
            "policy_evaluations_total",
            "Policy evaluations by outcome",
            ["triggered"],
            registry=registry,
        )
        self.policy_evaluation_seconds = Histogram(
            "policy_evaluation_duration_seconds",
            "Time spent evaluating one policy",
            buckets=EVALUATION_BUCKETS,
            registry=registry,
        )
        self.feature_evaluations = Counter(
            "feature_evaluations_total",
            "Feature toggle evaluations by reason code",
            ["reason"],
            registry=registry,
        )
        self.validation_runs = Counter(
            "validation_runs_total", "Validation reports by result", ["result"], registry=registry
        )
        self.batch_items = Counter(
            "batch_items_total", "Bulk operation items by outcome", ["status"], registry=registry
        )

    def record_error(self, error_type: str, service: Optional[str] = None):
        self.errors.labels(error_type=error_type, service=service or self.service_name).inc()

    def record_policy_evaluation(self, triggered: bool, duration: float):
        """Count a verdict and observe its duration in seconds."""
        self.policy_evaluations.labels(triggered="true" if triggered else "false").inc()
        self.policy_evaluation_seconds.observe(duration)

    def record_feature_evaluation(self, reason: str):
        self.feature_evaluations.labels(reason=reason).inc()

    def record_validation(self, is_valid: bool):
        self.validation_runs.labels(result="valid" if is_valid else "invalid").inc()

    def record_batch_item(self, status: str):
        self.batch_items.labels(status=status).inc()
