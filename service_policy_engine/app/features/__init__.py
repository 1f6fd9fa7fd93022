"""
Feature toggle package.

- models: FeatureToggle and FeatureEvaluation dataclasses.
- bucketing: Deterministic hash-based percentage assignment.
- engine: Strategy dispatch, dependencies and variants.
- validator: Static feature toggle checks.
"""
