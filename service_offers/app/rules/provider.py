"""
Snapshot provider: local TTL cache, then Redis, then the repository.
"""

from typing import Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..cache.redis_cache import RedisCache
from ..cache.snapshot_cache import SnapshotCache
from .models import RuleSnapshot
from .repository import RuleRepository


class RuleSnapshotProvider:
    """Hands out one immutable snapshot per calculation."""

    def __init__(self, repository: RuleRepository, local_cache: Optional[SnapshotCache] = None,
                 redis_cache: Optional[RedisCache] = None, metrics: Optional[MetricsCollector] = None):
        self.repository = repository
        self.local_cache = local_cache or SnapshotCache()
        self.redis_cache = redis_cache
        self.metrics = metrics
        self.logger = get_logger("offers.snapshot_provider")

    def _record(self, layer: str, hit: bool) -> None:
        if self.metrics:
            self.metrics.record_snapshot_lookup(layer, hit)

    async def get(self, organization_id: str) -> RuleSnapshot:
        snapshot = self.local_cache.get(organization_id)
        self._record("local", snapshot is not None)
        if snapshot is not None:
            return snapshot

        if self.redis_cache is not None:
            snapshot = await self.redis_cache.get_snapshot(organization_id)
            self._record("redis", snapshot is not None)
            if snapshot is not None:
                self.local_cache.put(snapshot)
                return snapshot

        snapshot = await self.repository.load_snapshot(organization_id)
        self.logger.debug("Snapshot loaded", organization_id=organization_id, generation=snapshot.generation)
        # Unknown organizations are not cached so a later registration shows up at once
        if snapshot.organization is not None:
            self.local_cache.put(snapshot)
            if self.redis_cache is not None:
                await self.redis_cache.set_snapshot(snapshot)
        return snapshot

    async def invalidate(self, organization_id: str) -> int:
        removed = self.local_cache.invalidate(organization_id)
        if self.redis_cache is not None:
            removed += await self.redis_cache.invalidate(organization_id)
        self.logger.info("Snapshot cache invalidated", organization_id=organization_id, removed=removed)
        return removed
