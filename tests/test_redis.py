from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as aioredis

from yqpay.core import config
from yqpay.core import redis as lock_redis


@pytest.fixture
def redis_url(monkeypatch):
    monkeypatch.setattr(config, "REDIS_URL", "redis://:secret@cache.local:6379/0")
    monkeypatch.setattr(lock_redis, "_redis_client", None)


def fake_client(ping_error=None):
    client = MagicMock()
    client.ping = AsyncMock(side_effect=ping_error, return_value=True)
    client.aclose = AsyncMock()
    return client


async def test_locks_disabled_without_url():
    assert await lock_redis.get_optional_redis() is None
    health = await lock_redis.health_check_redis()
    assert health["status"] == "disabled"


async def test_client_is_shared_and_closed(redis_url, monkeypatch):
    client = fake_client()
    from_url = MagicMock(return_value=client)
    monkeypatch.setattr(aioredis, "from_url", from_url)

    assert await lock_redis.get_redis() is client
    assert await lock_redis.get_optional_redis() is client
    from_url.assert_called_once()
    assert from_url.call_args.kwargs["decode_responses"] is True
    assert (await lock_redis.health_check_redis())["status"] == "ok"

    await lock_redis.close_redis()
    client.aclose.assert_awaited_once()
    assert lock_redis._redis_client is None


async def test_unreachable_server_disables_locks(redis_url, monkeypatch):
    client = fake_client(ping_error=aioredis.ConnectionError("refused"))
    monkeypatch.setattr(aioredis, "from_url", MagicMock(return_value=client))

    assert await lock_redis.get_optional_redis() is None
    client.aclose.assert_awaited_once()
    assert lock_redis._redis_client is None

    health = await lock_redis.health_check_redis()
    assert health["status"] == "error"
    assert "refused" in health["detail"]
