"""
Activation-time validation.

- validator: Structural policy checks and pairwise rule conflicts.
- dependencies: Prerequisite, conflict and cycle checks across policies.
"""
