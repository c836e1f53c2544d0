"""Redis client shared by rate limiting and readiness checks.

Modules import `redis_client` once; the proxy lets the underlying client be
replaced at runtime (fakeredis in tests) without re-importing anything.
"""

from __future__ import annotations

import redis.asyncio as redis

from messaging.settings import settings


class RedisProxy:
	def __init__(self, client: redis.Redis) -> None:
		self._client = client

	@property
	def client(self) -> redis.Redis:
		return self._client

	def swap(self, client: redis.Redis) -> redis.Redis:
		previous, self._client = self._client, client
		return previous

	def __getattr__(self, item):
		return getattr(self._client, item)


redis_client = RedisProxy(redis.from_url(settings.redis_url, decode_responses=True))


def set_redis_client(client: redis.Redis) -> redis.Redis:
	"""Install `client` behind the proxy; returns the one it replaced."""
	return redis_client.swap(client)


async def close_redis() -> None:
	await redis_client.client.aclose()
