"""
In-process decision cache, sharded by subject.
"""

import threading
import time
import zlib
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from shared.logging import get_logger

from ..rbac.models import PolicyDecision
from .base import DEFAULT_TTL_SECONDS, DecisionCache
from .keys import DecisionKey


@dataclass
class CacheEntry:
    key: DecisionKey
    decision: PolicyDecision
    expires_at: float
    generation: int


class _Shard:
    """One lock-protected partition; all keys of a subject live in one shard."""

    def __init__(self):
        self.lock = threading.Lock()
        self.entries: Dict[DecisionKey, CacheEntry] = {}
        self.by_subject: Dict[str, Set[DecisionKey]] = {}
        self.generations: Dict[str, int] = {}
        self.bumped_at: Dict[str, float] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def drop(self, key: DecisionKey) -> None:
        self.entries.pop(key, None)
        keys = self.by_subject.get(key.subject_id)
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self.by_subject[key.subject_id]


class MemoryDecisionCache(DecisionCache):
    """Sharded TTL cache.

    Locks are per shard, so a fill or invalidation for one subject never
    serializes traffic for subjects in other shards.

    A subject's generation counter is kept while it has entries, and for
    ``generation_retention`` seconds after its last bump. Once pruned the
    counter reads 0 again, so fills must complete within the retention
    window; the facade's check deadline is far shorter.
    """

    def __init__(self, shards: int = 16, default_ttl: int = DEFAULT_TTL_SECONDS,
                 max_entries_per_shard: int = 10000,
                 generation_retention: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self.logger = get_logger("policy.cache.memory")
        self.default_ttl = default_ttl
        self.max_entries_per_shard = max_entries_per_shard
        self.generation_retention = default_ttl if generation_retention is None else generation_retention
        self._clock = clock
        self._shards: List[_Shard] = [_Shard() for _ in range(shards)]

    def _shard_for(self, subject_id: str) -> _Shard:
        return self._shards[zlib.crc32(subject_id.encode("utf-8")) % len(self._shards)]

    async def get(self, key: DecisionKey) -> Optional[PolicyDecision]:
        shard = self._shard_for(key.subject_id)
        with shard.lock:
            entry = shard.entries.get(key)
            if entry is None:
                shard.misses += 1
                return None

            if (entry.expires_at <= self._clock()
                    or entry.generation != shard.generations.get(key.subject_id, 0)):
                shard.drop(key)
                shard.misses += 1
                return None

            shard.hits += 1
            return entry.decision

    async def put(self, key: DecisionKey, decision: PolicyDecision,
                  ttl: Optional[int] = None, generation: Optional[int] = None) -> bool:
        ttl = self.default_ttl if ttl is None else ttl
        shard = self._shard_for(key.subject_id)
        with shard.lock:
            current = shard.generations.get(key.subject_id, 0)
            if generation is not None and generation != current:
                self.logger.debug("Dropping stale cache fill", subject_id=key.subject_id)
                return False

            shard.drop(key)
            while len(shard.entries) >= self.max_entries_per_shard:
                oldest = next(iter(shard.entries))
                shard.drop(oldest)
                shard.evictions += 1

            shard.entries[key] = CacheEntry(
                key=key,
                decision=decision,
                expires_at=self._clock() + ttl,
                generation=current,
            )
            shard.by_subject.setdefault(key.subject_id, set()).add(key)
            return True

    async def generation(self, subject_id: str) -> int:
        shard = self._shard_for(subject_id)
        with shard.lock:
            return shard.generations.get(subject_id, 0)

    async def invalidate_subject(self, subject_id: str) -> int:
        shard = self._shard_for(subject_id)
        with shard.lock:
            now = self._clock()
            self._bump(shard, subject_id, now)
            keys = shard.by_subject.pop(subject_id, set())
            for key in keys:
                shard.entries.pop(key, None)
            if len(shard.generations) > self.max_entries_per_shard:
                self._prune_generations(shard, now)

        self.logger.info("Invalidated subject decisions", subject_id=subject_id, count=len(keys))
        return len(keys)

    async def clear(self) -> None:
        for shard in self._shards:
            with shard.lock:
                now = self._clock()
                self._prune_generations(shard, now)
                # Bump known generations so fills already in flight for them are dropped
                for subject_id in set(shard.generations) | set(shard.by_subject):
                    self._bump(shard, subject_id, now)
                shard.entries.clear()
                shard.by_subject.clear()

    @staticmethod
    def _bump(shard: _Shard, subject_id: str, now: float) -> None:
        shard.generations[subject_id] = shard.generations.get(subject_id, 0) + 1
        shard.bumped_at[subject_id] = now

    def _prune_generations(self, shard: _Shard, now: float) -> None:
        """Forget counters of subjects with no entries and no recent bump."""
        cutoff = now - self.generation_retention
        expired = [
            subject_id for subject_id, bumped_at in shard.bumped_at.items()
            if bumped_at <= cutoff and subject_id not in shard.by_subject
        ]
        for subject_id in expired:
            del shard.generations[subject_id]
            del shard.bumped_at[subject_id]

    async def get_stats(self) -> Dict[str, Any]:
        entries = hits = misses = evictions = tracked = 0
        for shard in self._shards:
            with shard.lock:
                entries += len(shard.entries)
                hits += shard.hits
                misses += shard.misses
                evictions += shard.evictions
                tracked += len(shard.generations)

        total = hits + misses
        return {
            "backend": "memory",
            "shards": len(self._shards),
            "entries": entries,
            "hits": hits,
            "misses": misses,
            "evictions": evictions,
            "tracked_subjects": tracked,
            "hit_rate": hits / total if total else 0.0,
        }
