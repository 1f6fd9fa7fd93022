"""
Rules package.

Defines the policy model and the evaluation pipeline shared by policies
and feature audiences.

Modules of interest:
- models: Policy, rule, action and condition dataclasses plus Verdict.
- resolver: Dot-path field lookup returning MISSING on failure.
- operators: Pure predicate library with a process-wide regex cache.
- conditions: Recursive AND/OR/NOT condition evaluation.
- evaluator: Single-rule evaluation with diagnostics.
- engine: Policy orchestration and action planning.
- actions: Per-action-type parameter models.
"""
