"""Liveness and readiness probes for the messaging API."""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Any, Awaitable, Callable, Dict, Tuple

from messaging.infra import postgres
from messaging.infra.redis import redis_client
from messaging.obs import metrics

LOGGER = logging.getLogger(__name__)


async def _ping_postgres() -> None:
	pool = await postgres.get_pool()
	async with pool.acquire() as conn:
		await conn.execute("SELECT 1")


async def _probe(
	name: str,
	check: Callable[[], Awaitable[Any]],
	mark: Callable[..., None],
	*,
	timeout: float,
) -> Dict[str, Any]:
	start = perf_counter()
	try:
		await asyncio.wait_for(check(), timeout=timeout)
	except Exception as exc:
		mark(False)
		LOGGER.warning("readiness_check_failed", extra={"dependency": name}, exc_info=True)
		return {"ok": False, "error": str(exc) or exc.__class__.__name__}
	latency = perf_counter() - start
	mark(True, latency_seconds=latency)
	return {"ok": True, "latency_ms": round(latency * 1000, 2)}


async def liveness() -> Dict[str, Any]:
	return {"status": "ok"}


async def readiness() -> Tuple[int, Dict[str, Any]]:
	"""Redis (rate limits) and Postgres (the message store) must both answer."""
	checks = {
		"redis": await _probe("redis", redis_client.ping, metrics.mark_redis, timeout=0.2),
		"postgres": await _probe("postgres", _ping_postgres, metrics.mark_postgres, timeout=0.5),
	}
	ok = all(state["ok"] for state in checks.values())
	return (200 if ok else 503), {"status": "ok" if ok else "degraded", "checks": checks}
