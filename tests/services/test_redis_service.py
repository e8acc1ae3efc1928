# tests/services/test_redis_service.py
"""
Unit tests for the Redis service and the Redis-backed rate limiter.

Uses mock-first approach to test without requiring a real Redis instance.
"""
import pytest
from unittest.mock import Mock, AsyncMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from apishield.services.redis_service import (
    RedisService,
    RedisConfig
)
from apishield.core.exceptions import RedisServiceError, ServiceError
from apishield.core.rate_limit import Allowed, Rejected, RedisRateLimiter
from apishield.core.rate_limit_config import RateRule, RuleSet


@pytest.fixture
def mock_config():
    """Create a test configuration"""
    return RedisConfig(
        url="redis://localhost:6379/0",
        decode_responses=True,
        socket_timeout=5.0
    )


@pytest.fixture
def mock_redis_client():
    """Create a mock Redis client"""
    client = AsyncMock()
    client.ping = AsyncMock(return_value=True)
    client.info = AsyncMock(return_value={
        "redis_version": "7.0.0",
        "connected_clients": 5
    })
    client.aclose = AsyncMock()
    return client


@pytest.fixture
async def redis_service(mock_config, mock_redis_client):
    """Create a Redis service with mocked client"""
    service = RedisService(mock_config)

    with patch('apishield.services.redis_service.redis.from_url', return_value=mock_redis_client):
        await service.initialize()

    return service


class TestRedisService:
    """Test Redis Service functionality"""

    @pytest.mark.asyncio
    async def test_initialization(self, mock_config, mock_redis_client):
        """Test service initialization"""
        service = RedisService(mock_config)

        assert service.config == mock_config
        assert not service.is_initialized

        with patch('apishield.services.redis_service.redis.from_url', return_value=mock_redis_client) as from_url:
            await service.initialize()

        assert service.is_initialized
        assert service.is_connected()
        assert service.client is mock_redis_client
        mock_redis_client.ping.assert_called_once()
        assert from_url.call_args.args[0] == "redis://localhost:6379/0"

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, redis_service, mock_redis_client):
        await redis_service.initialize()

        mock_redis_client.ping.assert_called_once()

    @pytest.mark.asyncio
    async def test_initialization_from_env(self):
        """REDIS_URL wins over REDIS_DIRECT_URI"""
        with patch.dict('os.environ', {
            'REDIS_DIRECT_URI': 'redis://direct:6379',
            'REDIS_URL': 'redis://standard:6379'
        }):
            service = RedisService()

        assert service.config.url == 'redis://standard:6379'
        assert service._url_source == 'REDIS_URL'

    @pytest.mark.asyncio
    async def test_no_redis_url(self):
        """The limiter cannot run without a store, so this is an error"""
        with patch.dict('os.environ', {}, clear=True):
            service = RedisService()

            with pytest.raises(RedisServiceError):
                await service.initialize()

        assert not service.is_initialized

    @pytest.mark.asyncio
    async def test_connection_failure(self, mock_config):
        """Test handling of connection failures"""
        service = RedisService(mock_config)

        failing_client = AsyncMock()
        failing_client.ping.side_effect = RedisConnectionError("Connection refused")

        with patch('apishield.services.redis_service.redis.from_url', return_value=failing_client):
            with pytest.raises(ServiceError) as exc_info:
                await service.initialize()

        assert exc_info.value.details['error_type'] == 'ConnectionError'
        assert not service.is_initialized
        assert not service.is_connected()

    @pytest.mark.asyncio
    async def test_client_before_initialize(self, mock_config):
        service = RedisService(mock_config)

        with pytest.raises(ServiceError):
            service.client

    @pytest.mark.asyncio
    async def test_health_check_healthy(self, redis_service):
        health = await redis_service.health_check()

        assert health["healthy"] is True
        assert health["status"] == "connected"
        assert health["details"]["redis_version"] == "7.0.0"

    @pytest.mark.asyncio
    async def test_health_check_not_connected(self, mock_config):
        health = await RedisService(mock_config).health_check()

        assert health["healthy"] is False
        assert health["status"] == "not_connected"

    @pytest.mark.asyncio
    async def test_health_check_error(self, redis_service, mock_redis_client):
        mock_redis_client.ping.side_effect = RedisConnectionError("gone")

        health = await redis_service.health_check()

        assert health["healthy"] is False
        assert health["status"] == "error"

    @pytest.mark.asyncio
    async def test_shutdown(self, redis_service, mock_redis_client):
        await redis_service.shutdown()

        mock_redis_client.aclose.assert_called_once()
        assert not redis_service.is_initialized
        assert not redis_service.is_connected()


class FakePipeline:
    """Records queued commands; execute returns canned results"""

    def __init__(self, results):
        self.results = results
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def incr(self, key):
        self.commands.append(("incr", key))

    def expire(self, key, seconds, nx=False):
        self.commands.append(("expire", key, seconds, nx))

    def pttl(self, key):
        self.commands.append(("pttl", key))

    async def execute(self):
        if isinstance(self.results, Exception):
            raise self.results
        return self.results


def make_redis_limiter(pipeline, limit=30, period_seconds=60):
    client = Mock()
    client.pipeline.return_value = pipeline
    service = Mock()
    service.client = client
    service.is_connected.return_value = True
    rules = RuleSet(
        RateRule(limit=limit, period_seconds=period_seconds),
        {"POST /api/comments": RateRule(limit=3, period_seconds=60)}
    )
    return RedisRateLimiter(service, rules), client


class TestRedisRateLimiter:
    """Same contract as the in-memory limiter, on INCR/EXPIRE"""

    @pytest.mark.asyncio
    async def test_allowed(self):
        pipeline = FakePipeline([1, True, 60000])
        limiter, client = make_redis_limiter(pipeline)

        result = await limiter.admit("ip:1.2.3.4")

        assert isinstance(result, Allowed)
        assert result.remaining == 29
        assert result.reset_after == pytest.approx(60.0)
        client.pipeline.assert_called_once_with(transaction=True)
        assert pipeline.commands == [
            ("incr", "apishield:rl:*:ip:1.2.3.4"),
            ("expire", "apishield:rl:*:ip:1.2.3.4", 60, True),
            ("pttl", "apishield:rl:*:ip:1.2.3.4"),
        ]

    @pytest.mark.asyncio
    async def test_rejected_with_retry_after(self):
        pipeline = FakePipeline([31, False, 50000])
        limiter, _ = make_redis_limiter(pipeline)

        result = await limiter.admit("ip:1.2.3.4", now=123.0)

        assert isinstance(result, Rejected)
        assert result.retry_after == pytest.approx(50.0)
        assert result.limit == 30

    @pytest.mark.asyncio
    async def test_endpoint_scoped_key(self):
        pipeline = FakePipeline([4, False, 1000])
        limiter, _ = make_redis_limiter(pipeline)

        result = await limiter.admit("ip:1.2.3.4", endpoint="POST /api/comments")

        assert not result.allowed
        assert pipeline.commands[0] == ("incr", "apishield:rl:POST /api/comments:ip:1.2.3.4")

    @pytest.mark.asyncio
    async def test_missing_ttl_falls_back_to_period(self):
        pipeline = FakePipeline([1, True, -1])
        limiter, _ = make_redis_limiter(pipeline)

        result = await limiter.admit("k")

        assert result.reset_after == 60.0

    @pytest.mark.asyncio
    async def test_redis_failure_fails_closed(self):
        pipeline = FakePipeline(RedisConnectionError("connection lost"))
        limiter, _ = make_redis_limiter(pipeline)

        with pytest.raises(RedisServiceError) as exc_info:
            await limiter.admit("k")

        assert exc_info.value.status_code == 503
        assert exc_info.value.operation == "admit"

    @pytest.mark.asyncio
    async def test_not_connected_fails_closed(self, mock_config):
        limiter = RedisRateLimiter(RedisService(mock_config), RuleSet(RateRule(limit=5, period_seconds=60)))

        with pytest.raises(ServiceError) as exc_info:
            await limiter.admit("k")

        assert exc_info.value.status_code == 503

    def test_stats(self):
        limiter, _ = make_redis_limiter(FakePipeline([]))

        stats = limiter.get_stats()

        assert stats["backend"] == "redis"
        assert stats["connected"] is True
