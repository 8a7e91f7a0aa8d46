"""
Unit tests for the Redis snapshot cache.
"""

from unittest.mock import AsyncMock, patch

import pytest

from shared.errors import ServiceError
from shared.test_helpers import ORG_ID, OffersDataFactory as factory

from service_offers.app.cache.redis_cache import RedisCache


class TestRedisCache:
    """Test cases for RedisCache."""

    @pytest.fixture
    def mock_redis(self):
        """Mock Redis client."""
        return AsyncMock()

    @pytest.fixture
    def cache(self, mock_redis):
        """Create RedisCache with a mocked client."""
        cache = RedisCache("redis://localhost:6379/0", ttl_seconds=60)
        cache.redis = mock_redis
        return cache

    def test_ttl_is_clamped(self):
        """Test TTL bounds are enforced."""
        assert RedisCache("redis://localhost", ttl_seconds=0).ttl_seconds == 1
        assert RedisCache("redis://localhost", ttl_seconds=99999).ttl_seconds == 3600

    @pytest.mark.asyncio
    async def test_set_and_get_snapshot(self, cache, mock_redis):
        """Test a stored snapshot reads back whole."""
        snapshot = factory.snapshot(generation=4, coupons=[factory.coupon()])

        assert await cache.set_snapshot(snapshot)
        key, ttl, payload = mock_redis.setex.await_args.args
        mock_redis.get.return_value = payload
        cached = await cache.get_snapshot(ORG_ID)

        assert key == f"offers:snapshot:{ORG_ID}"
        assert ttl == 60
        assert cached == snapshot

    @pytest.mark.asyncio
    async def test_miss(self, cache, mock_redis):
        """Test a missing key is a miss."""
        mock_redis.get.return_value = None

        assert await cache.get_snapshot(ORG_ID) is None

    @pytest.mark.asyncio
    async def test_unreadable_entry_is_dropped(self, cache, mock_redis):
        """Test a payload from an older schema is deleted and treated as a miss."""
        mock_redis.get.return_value = '{"unexpected": true}'
        mock_redis.delete.return_value = 1

        assert await cache.get_snapshot(ORG_ID) is None
        mock_redis.delete.assert_awaited_once_with(f"offers:snapshot:{ORG_ID}")

    @pytest.mark.asyncio
    async def test_errors_are_misses(self, cache, mock_redis):
        """Test Redis failures never surface to callers."""
        mock_redis.get.side_effect = ConnectionError("down")
        mock_redis.setex.side_effect = ConnectionError("down")
        mock_redis.delete.side_effect = ConnectionError("down")

        assert await cache.get_snapshot(ORG_ID) is None
        assert await cache.set_snapshot(factory.snapshot()) is False
        assert await cache.invalidate(ORG_ID) == 0

    @pytest.mark.asyncio
    async def test_health_check(self, cache, mock_redis):
        """Test health reflects ping."""
        assert await cache.health_check()

        mock_redis.ping.side_effect = ConnectionError("down")
        assert not await cache.health_check()

    @pytest.mark.asyncio
    async def test_start_failure_raises_service_error(self):
        """Test an unreachable Redis fails startup."""
        client = AsyncMock()
        client.ping.side_effect = ConnectionError("refused")
        cache = RedisCache("redis://localhost:6379/0")

        with patch("service_offers.app.cache.redis_cache.redis.from_url", return_value=client):
            with pytest.raises(ServiceError):
                await cache.start()

    @pytest.mark.asyncio
    async def test_cache_stats(self, cache, mock_redis):
        """Test stats combine server info and key count."""
        mock_redis.info.return_value = {"redis_version": "7.2", "keyspace_hits": 3, "keyspace_misses": 1}
        mock_redis.keys.return_value = ["offers:snapshot:a", "offers:snapshot:b"]

        stats = await cache.get_cache_stats()

        assert stats["snapshot_keys"] == 2
        assert stats["hit_rate"] == 0.75
