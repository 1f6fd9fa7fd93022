"""
Deterministic rollout bucketing.

A bucket is derived only from the feature key and a stable identifier
taken from the context, so the same pair lands in the same bucket on every
call and in every process. Raising a rollout percentage only widens the
included range ``[0, percentage)``, so an included identifier stays
included.
"""

import hashlib
from typing import Any, Iterable, List, Optional, Sequence

from .models import FeatureVariant
from ..rules.resolver import FieldResolver, MISSING, default_resolver

ANONYMOUS_IDENTIFIER = "anonymous"

# Buckets have a resolution of 0.01 percent
BUCKET_RESOLUTION = 10000


class RolloutBucketer:
    """Maps (feature key, identifier) pairs to stable positions in [0, 100)."""

    def __init__(self, identifier_fields: Optional[Iterable[str]] = None,
                 resolver: Optional[FieldResolver] = None,
                 salt: str = "rollout",
                 variant_salt: str = "variant"):
        self.identifier_fields: List[str] = list(identifier_fields or ["userId", "user_id", "user.id", "id"])
        self.resolver = resolver or default_resolver
        self.salt = salt
        self.variant_salt = variant_salt

    def identifier_for(self, context: Any) -> str:
        """First non-empty identifier field in the context, else 'anonymous'."""
        for path in self.identifier_fields:
            value = self.resolver.resolve(context, path)
            if value is MISSING or value is None or value == "":
                continue
            return str(value)
        return ANONYMOUS_IDENTIFIER

    def bucket(self, feature_key: str, identifier: str, salt: Optional[str] = None) -> float:
        """Position of the pair in [0, 100), with two decimal places."""
        digest = hashlib.sha256(
            f"{salt or self.salt}:{feature_key}:{identifier}".encode("utf-8")
        ).digest()
        value = int.from_bytes(digest[:8], "big") % BUCKET_RESOLUTION
        return value / (BUCKET_RESOLUTION / 100)

    def is_included(self, feature_key: str, identifier: str, percentage: float) -> bool:
        """True iff the identifier's bucket falls below the rollout percentage."""
        if percentage <= 0:
            return False
        if percentage >= 100:
            return True
        return self.bucket(feature_key, identifier) < percentage

    def choose_variant(self, feature_key: str, identifier: str,
                       variants: Sequence[FeatureVariant]) -> Optional[FeatureVariant]:
        """Pick a weighted variant with a hash independent of the rollout bucket."""
        weighted = [v for v in variants if v.weight > 0]
        if not weighted:
            return None

        total = sum(v.weight for v in weighted)
        point = self.bucket(feature_key, identifier, salt=self.variant_salt) / 100 * total

        cumulative = 0.0
        for variant in weighted:
            cumulative += variant.weight
            if point < cumulative:
                return variant
        return weighted[-1]
