"""
Policy Engine package.

Decides, for a runtime context, whether a policy triggers (and which
enforcement actions a collaborator should run) and whether a feature
toggle is enabled under its rollout strategy. It provides:

- app.main: PolicyEngineService, the injected entry points.
- app.loader: Parsing of plain payloads into definition dataclasses.
- app.rules: Field resolution, operators, condition trees, policy evaluation.
- app.validation: Activation-time policy and dependency checks.
- app.features: Feature toggles, rollout bucketing and evaluation.
- app.harness: Simulation harness sharing the production code paths.
- app.batch: Bulk operations with per-item failure isolation.
- app.audit: Append-only audit recording.
- app.persistence: In-memory definition storage and lifecycle.

Guidelines:
- Evaluation is pure and synchronous; I/O lives in collaborators.
- Definitions are evaluated from immutable snapshots.
- Errors cross the service boundary as ErrorResponse values.
"""
