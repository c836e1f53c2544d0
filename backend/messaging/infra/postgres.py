"""asyncpg pool for the messaging store."""

from __future__ import annotations

import logging
from typing import Optional

import asyncpg

from messaging.settings import settings

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.pool.Pool] = None


class PoolUnavailable(RuntimeError):
	"""No pool could be created (no database configured or reachable)."""


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		_pool = await asyncpg.create_pool(
			dsn=settings.postgres_url,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
			ssl="require" if settings.postgres_ssl else "disable",
		)
		logger.info("postgres_pool_ready", extra={"max_size": settings.postgres_max_pool_size})
	return _pool


async def get_pool() -> asyncpg.pool.Pool:
	if _pool is None:
		await init_pool()
	if _pool is None:
		raise PoolUnavailable("postgres_pool_not_initialised")
	return _pool


async def pool_or_none() -> Optional[asyncpg.pool.Pool]:
	"""The pool, or None when Postgres is unavailable; callers then use their fallback."""
	try:
		return await get_pool()
	except (PoolUnavailable, OSError, asyncpg.PostgresError, asyncpg.InterfaceError):
		logger.debug("postgres_pool_unavailable", exc_info=True)
		return None


async def close_pool() -> None:
	global _pool
	pool, _pool = _pool, None
	if pool is not None:
		await pool.close()
