"""
Shared utilities for the Policy Engine.

This package aggregates common building blocks consumed by the engine:

- config: Engine configuration via pydantic-settings
- logging: Structured logging with request and actor correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses

Cross-cutting logic should live here to avoid import cycles with the
service package. Do not import from service_policy_engine into shared/.
"""
