"""
Caller identity passed to gated operations.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ActorContext:
    """Who is calling, and with which role."""
    actor_id: str
    role: str
    session_id: Optional[str] = None
