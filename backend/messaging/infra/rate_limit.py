"""Simple Redis-backed rate limiting utilities."""

from __future__ import annotations

import logging
import math
import time
from typing import Optional

from redis.exceptions import RedisError

from messaging.infra.redis import redis_client
from messaging.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


async def allow(
	kind: str,
	actor_id: str,
	*,
	limit: int,
	window_seconds: int = 60,
	now: Optional[float] = None,
) -> bool:
	"""Return True when the operation is still within the allowed budget.

	Counters live in fixed windows keyed by `kind` and actor. When Redis is
	unreachable the budget is not enforced.
	"""

	if limit <= 0:
		return False
	now = now or time.time()
	window = max(1, int(window_seconds))
	slot = int(math.floor(now / window))
	key = f"rl:{kind}:{actor_id}:{slot}:{window}"
	try:
		async with redis_client.pipeline(transaction=True) as pipe:
			pipe.incr(key)
			pipe.expire(key, window)
			count, _ = await pipe.execute()
	except (RedisError, OSError):
		logger.warning("rate_limit_unavailable", extra={"kind": kind}, exc_info=True)
		return True
	if int(count) > limit:
		obs_metrics.inc_rate_limited(kind)
		return False
	return True
