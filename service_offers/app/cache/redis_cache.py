"""
Redis caching layer for rule snapshots.

Snapshots are stored whole, so a reader always gets one generation. Cache
errors are logged and reported as misses; the repository stays the source
of truth.
"""

from typing import Dict, Any, Optional

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from shared.logging import get_logger
from shared.errors import ServiceError
from ..rules.models import RuleSnapshot


class RedisCache:
    """Redis caching layer for rule snapshots."""

    SNAPSHOT_PREFIX = "offers:snapshot:"

    def __init__(self, redis_url: str, ttl_seconds: int = 60):
        self.redis_url = redis_url
        self.logger = get_logger("offers.cache.redis")
        self.redis: Optional[redis.Redis] = None

        self.min_ttl = 1
        self.max_ttl = 3600
        self.ttl_seconds = max(self.min_ttl, min(self.max_ttl, ttl_seconds))

    async def start(self):
        """Start the Redis cache."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
            await self.redis.ping()
            self.logger.info("Redis cache started")

        except Exception as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise ServiceError(f"Redis unavailable: {e}", {"component": "redis"})

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.aclose()
            self.logger.info("Redis cache stopped")

    def _key(self, organization_id: str) -> str:
        return f"{self.SNAPSHOT_PREFIX}{organization_id}"

    async def get_snapshot(self, organization_id: str) -> Optional[RuleSnapshot]:
        """Get a cached snapshot."""
        try:
            cached = await self.redis.get(self._key(organization_id))
            if not cached:
                return None
            snapshot = RuleSnapshot.model_validate_json(cached)
            self.logger.debug("Cache hit for snapshot", organization_id=organization_id,
                              generation=snapshot.generation)
            return snapshot

        except PydanticValidationError as e:
            # Written by an older schema; drop it
            self.logger.warning("Discarding unreadable cached snapshot", organization_id=organization_id,
                                error=str(e))
            await self.invalidate(organization_id)
            return None
        except Exception as e:
            self.logger.error("Error getting cached snapshot", organization_id=organization_id, error=str(e))
            return None

    async def set_snapshot(self, snapshot: RuleSnapshot, ttl_seconds: Optional[int] = None) -> bool:
        """Cache a snapshot."""
        try:
            ttl = max(self.min_ttl, min(self.max_ttl, ttl_seconds or self.ttl_seconds))
            await self.redis.setex(self._key(snapshot.organization_id), ttl, snapshot.model_dump_json())
            self.logger.debug("Cached snapshot", organization_id=snapshot.organization_id,
                              generation=snapshot.generation, ttl=ttl)
            return True

        except Exception as e:
            self.logger.error("Error caching snapshot", organization_id=snapshot.organization_id, error=str(e))
            return False

    async def invalidate(self, organization_id: str) -> int:
        """Drop the cached snapshot of an organization."""
        try:
            removed = await self.redis.delete(self._key(organization_id))
            if removed:
                self.logger.info("Invalidated cached snapshot", organization_id=organization_id)
            return removed

        except Exception as e:
            self.logger.error("Error invalidating snapshot", organization_id=organization_id, error=str(e))
            return 0

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        try:
            info = await self.redis.info()
            snapshot_keys = await self.redis.keys(f"{self.SNAPSHOT_PREFIX}*")
            return {
                "redis_version": info.get("redis_version"),
                "used_memory": info.get("used_memory_human"),
                "connected_clients": info.get("connected_clients"),
                "keyspace_hits": info.get("keyspace_hits"),
                "keyspace_misses": info.get("keyspace_misses"),
                "snapshot_keys": len(snapshot_keys),
                "hit_rate": self._calculate_hit_rate(info)
            }

        except Exception as e:
            self.logger.error("Error getting cache stats", error=str(e))
            return {}

    def _calculate_hit_rate(self, info: Dict[str, Any]) -> float:
        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        total = hits + misses
        if total == 0:
            return 0.0
        return hits / total

    async def health_check(self) -> bool:
        """Check Redis health."""
        try:
            await self.redis.ping()
            return True
        except Exception as e:
            self.logger.warning("Redis health check failed", error=str(e))
            return False
