"""
Redis-backed decision cache.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import ServiceError
from shared.logging import get_logger

from ..rbac.models import PolicyDecision
from .base import DEFAULT_TTL_SECONDS, DecisionCache
from .keys import DecisionKey, subject_digest


class RedisDecisionCache(DecisionCache):
    """Decision cache shared by every replica of the service.

    Layout:
      ``{prefix}decision:{digest}``      JSON decision, expires with the TTL
      ``{prefix}subject:{sid}:keys``     set of the subject's decision keys
      ``{prefix}subject:{sid}:gen``      invalidation generation counter
    """

    def __init__(self, redis_url: str, default_ttl: int = DEFAULT_TTL_SECONDS,
                 prefix: str = "policy:", client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.logger = get_logger("policy.cache.redis")
        self.redis: Optional[redis.Redis] = client
        self.default_ttl = default_ttl
        self.prefix = prefix

    async def start(self):
        """Connect to Redis."""
        if self.redis is None:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=1,
                health_check_interval=30
            )
        try:
            await self.redis.ping()
        except RedisError as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise ServiceError("Failed to start Redis decision cache", {"error": str(e)}) from e

        self.logger.info("Redis decision cache started")

    async def stop(self):
        if self.redis:
            await self.redis.aclose()
            self.logger.info("Redis decision cache stopped")

    def _entry_key(self, key: DecisionKey) -> str:
        return f"{self.prefix}decision:{key.digest()}"

    def _index_key(self, subject_id: str) -> str:
        return f"{self.prefix}subject:{subject_digest(subject_id)}:keys"

    def _generation_key(self, subject_id: str) -> str:
        return f"{self.prefix}subject:{subject_digest(subject_id)}:gen"

    async def get(self, key: DecisionKey) -> Optional[PolicyDecision]:
        try:
            cached, generation = await self.redis.mget(
                self._entry_key(key), self._generation_key(key.subject_id)
            )
            if not cached:
                return None

            data = json.loads(cached)
            if data.get("generation") != int(generation or 0):
                return None

            return PolicyDecision(allow=bool(data["allow"]), reason=data["reason"])

        except (RedisError, ValueError, KeyError) as e:
            self.logger.error("Error reading cached decision", error=str(e))
            return None

    async def put(self, key: DecisionKey, decision: PolicyDecision,
                  ttl: Optional[int] = None, generation: Optional[int] = None) -> bool:
        ttl = self.default_ttl if ttl is None else ttl
        entry_key = self._entry_key(key)
        index_key = self._index_key(key.subject_id)

        try:
            current = int(await self.redis.get(self._generation_key(key.subject_id)) or 0)
            if generation is not None and generation != current:
                self.logger.debug("Dropping stale cache fill", subject_id=key.subject_id)
                return False

            payload = json.dumps({
                "allow": decision.allow,
                "reason": decision.reason,
                "generation": current,
                "cached_at": datetime.now(timezone.utc).isoformat(),
            })

            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.setex(entry_key, ttl, payload)
                pipe.sadd(index_key, entry_key)
                pipe.expire(index_key, ttl)
                await pipe.execute()

            return True

        except (RedisError, ValueError) as e:
            self.logger.error("Error caching decision", error=str(e))
            return False

    async def generation(self, subject_id: str) -> int:
        try:
            return int(await self.redis.get(self._generation_key(subject_id)) or 0)
        except (RedisError, ValueError) as e:
            self.logger.error("Error reading subject generation", error=str(e))
            # Unknown generation: -1 never matches, so the fill is not cached
            return -1

    async def invalidate_subject(self, subject_id: str) -> int:
        """Bump the generation first, then delete indexed entries.

        Errors propagate: a caller revoking access must not be told it
        succeeded while stale decisions can still be served.
        """
        index_key = self._index_key(subject_id)
        try:
            await self.redis.incr(self._generation_key(subject_id))
            keys = await self.redis.smembers(index_key)
            if keys:
                async with self.redis.pipeline(transaction=True) as pipe:
                    pipe.srem(index_key, *keys)
                    pipe.delete(*keys)
                    await pipe.execute()
        except RedisError as e:
            self.logger.error("Error invalidating subject", subject_id=subject_id, error=str(e))
            raise ServiceError("Decision cache invalidation failed", {"subject_id": subject_id}) from e

        self.logger.info("Invalidated subject decisions", subject_id=subject_id, count=len(keys))
        return len(keys)

    async def clear(self) -> None:
        patterns = (f"{self.prefix}decision:*", f"{self.prefix}subject:*:keys")
        for pattern in patterns:
            batch = []
            async for cache_key in self.redis.scan_iter(match=pattern, count=500):
                batch.append(cache_key)
                if len(batch) >= 500:
                    await self.redis.delete(*batch)
                    batch = []
            if batch:
                await self.redis.delete(*batch)
        self.logger.info("Decision cache cleared")

    async def get_stats(self) -> Dict[str, Any]:
        try:
            info = await self.redis.info()
        except RedisError as e:
            self.logger.error("Error getting cache stats", error=str(e))
            return {"backend": "redis", "error": str(e)}

        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        total = hits + misses
        return {
            "backend": "redis",
            "redis_version": info.get("redis_version"),
            "used_memory": info.get("used_memory_human"),
            "connected_clients": info.get("connected_clients"),
            "keyspace_hits": hits,
            "keyspace_misses": misses,
            "hit_rate": hits / total if total else 0.0,
        }

    async def health_check(self) -> bool:
        try:
            await self.redis.ping()
            return True
        except RedisError:
            return False
