"""
Tests for the Redis manager used by the OTP challenge store.
"""
import uuid
from datetime import datetime, timedelta, timezone

import fakeredis
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from motor_pagos.core.exceptions import RedisUnavailableException
from motor_pagos.infrastructure.cache.redis_client import redis_manager
from motor_pagos.services.otp_service import OtpChallengeStore


@pytest_asyncio.fixture
async def down_redis():
    """Cliente cuyo servidor está caído: cada comando lanza ConnectionError."""
    server = fakeredis.FakeServer()
    server.connected = False
    client = fakeredis.FakeAsyncRedis(server=server)
    previous = redis_manager.client
    redis_manager.client = client
    yield client
    redis_manager.client = previous
    await client.aclose()


@pytest.fixture
def no_client():
    previous = redis_manager.client
    redis_manager.client = None
    yield
    redis_manager.client = previous


class TestRedisManager:

    async def test_ping_ok(self, fake_redis) -> None:
        assert await redis_manager.ping() is True

    async def test_ping_reports_down_server_without_raising(self, down_redis) -> None:
        assert await redis_manager.ping() is False

    async def test_ping_without_client(self, no_client) -> None:
        assert await redis_manager.ping() is False

    async def test_redis_error_becomes_unavailable(self, fake_redis) -> None:
        with pytest.raises(RedisUnavailableException) as exc:
            async with redis_manager.unavailable_on_error("leyendo"):
                raise RedisConnectionError("connection reset")
        assert exc.value.status_code == 503
        assert isinstance(exc.value.__cause__, RedisConnectionError)

    async def test_other_errors_pass_through(self, fake_redis) -> None:
        with pytest.raises(ValueError):
            async with redis_manager.unavailable_on_error("leyendo"):
                raise ValueError("no es de Redis")

    async def test_missing_client_is_unavailable(self, no_client) -> None:
        with pytest.raises(RedisUnavailableException):
            async with redis_manager.unavailable_on_error("leyendo"):
                pass


class TestChallengeStoreWithRedisDown:

    async def test_get_is_unavailable(self, down_redis) -> None:
        with pytest.raises(RedisUnavailableException):
            await OtpChallengeStore().get(uuid.uuid4())

    async def test_save_is_unavailable(self, down_redis) -> None:
        with pytest.raises(RedisUnavailableException):
            await OtpChallengeStore().save(
                user_id        = uuid.uuid4(),
                transaction_id = uuid.uuid4(),
                code_hash      = "0" * 64,
                expires_at     = datetime.now(timezone.utc) + timedelta(minutes=5),
            )

    async def test_consume_and_failures_are_unavailable(self, down_redis) -> None:
        store = OtpChallengeStore()
        with pytest.raises(RedisUnavailableException):
            await store.consume(uuid.uuid4())
        with pytest.raises(RedisUnavailableException):
            await store.register_failure(uuid.uuid4())

    async def test_store_without_client_is_unavailable(self, no_client) -> None:
        with pytest.raises(RedisUnavailableException):
            await OtpChallengeStore().clear(uuid.uuid4())
