"""Append-only audit recording."""
