"""
Decision cache contract.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from ..rbac.models import PolicyDecision
from .keys import DecisionKey

DEFAULT_TTL_SECONDS = 300


class DecisionCache(ABC):
    """Short-TTL cache of policy decisions with per-subject invalidation.

    Every subject carries a generation counter that ``invalidate_subject``
    bumps. Entries remember the generation they were computed under and are
    treated as misses once it is stale, so a fill that raced an invalidation
    can never serve a revoked decision.
    """

    default_ttl: int = DEFAULT_TTL_SECONDS

    async def start(self):
        """Acquire resources."""

    async def stop(self):
        """Release resources."""

    @abstractmethod
    async def get(self, key: DecisionKey) -> Optional[PolicyDecision]:
        """Return the cached decision or None on a miss."""

    @abstractmethod
    async def put(self, key: DecisionKey, decision: PolicyDecision,
                  ttl: Optional[int] = None, generation: Optional[int] = None) -> bool:
        """Store a decision. Writes computed under a stale generation are dropped."""

    @abstractmethod
    async def generation(self, subject_id: str) -> int:
        """Current invalidation generation of a subject."""

    @abstractmethod
    async def invalidate_subject(self, subject_id: str) -> int:
        """Drop every entry of a subject; returns the number of entries removed."""

    @abstractmethod
    async def clear(self) -> None:
        """Drop every entry."""

    async def get_stats(self) -> Dict[str, Any]:
        return {}

    async def health_check(self) -> bool:
        return True
