import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from messaging.infra import rate_limit
from messaging.infra.redis import set_redis_client


class BrokenPipeline:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def incr(self, key):
        return self

    def expire(self, key, seconds):
        return self

    async def execute(self):
        raise RedisConnectionError("redis down")


class BrokenRedis:
    def pipeline(self, transaction=True):
        return BrokenPipeline()


@pytest.mark.asyncio
async def test_allows_up_to_limit_then_refuses():
    results = [await rate_limit.allow("chat_send", "alice", limit=3, now=1_000.0) for _ in range(4)]

    assert results == [True, True, True, False]


@pytest.mark.asyncio
async def test_budgets_are_per_actor_and_kind():
    assert await rate_limit.allow("chat_send", "alice", limit=1, now=1_000.0)
    assert not await rate_limit.allow("chat_send", "alice", limit=1, now=1_000.0)
    assert await rate_limit.allow("chat_send", "bob", limit=1, now=1_000.0)
    assert await rate_limit.allow("chat_typing", "alice", limit=1, now=1_000.0)


@pytest.mark.asyncio
async def test_window_rolls_over():
    assert await rate_limit.allow("chat_send", "alice", limit=1, now=1_000.0)
    assert not await rate_limit.allow("chat_send", "alice", limit=1, now=1_019.0)
    assert await rate_limit.allow("chat_send", "alice", limit=1, now=1_020.0)


@pytest.mark.asyncio
async def test_zero_limit_always_refuses():
    assert not await rate_limit.allow("chat_send", "alice", limit=0)


@pytest.mark.asyncio
async def test_redis_outage_fails_open():
    set_redis_client(BrokenRedis())

    assert await rate_limit.allow("chat_send", "alice", limit=1, now=1_000.0)
    assert await rate_limit.allow("chat_send", "alice", limit=1, now=1_000.0)
