"""Bulk operations with per-item failure isolation."""
