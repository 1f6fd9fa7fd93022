"""
Dot-path field lookup into evaluation contexts.
"""

from typing import Any, Mapping


class _Missing:
    """Sentinel for a path that does not resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


class FieldResolver:
    """Resolves dot-separated paths such as ``user.profile.country``.

    Only mappings are traversed. Lists are leaf values, so ``tags.0`` does
    not index into a list.
    """

    separator = "."

    def resolve(self, context: Any, path: str) -> Any:
        """Return the value at ``path`` or MISSING, never raising."""
        if not isinstance(path, str) or not path:
            return MISSING

        value = context
        for part in path.split(self.separator):
            if not isinstance(value, Mapping) or part not in value:
                return MISSING
            value = value[part]

        return value

    def exists(self, context: Any, path: str) -> bool:
        return self.resolve(context, path) is not MISSING


default_resolver = FieldResolver()
