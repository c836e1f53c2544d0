import asyncio
import os
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

os.environ.setdefault("SECRET_KEY", "test-secret")

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from messaging.domain.chat import repo as chat_repo
from messaging.infra import postgres
from messaging.main import app
from messaging.settings import settings


# Ensure a selector-based event loop policy on Windows to avoid Proactor issues with async IO
if hasattr(asyncio, "WindowsSelectorEventLoopPolicy"):
	try:
		asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
	except Exception:
		# Non-fatal; proceed with default policy
		pass


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from messaging.infra.redis import set_redis_client
	client = FakeRedis(decode_responses=True)
	original = set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Ensure a consistent test environment.

	API tests authenticate via the X-User-Id header, which is only accepted in
	dev mode. Dev mode also lets the relationship gate pass without a database.
	"""
	original_env = settings.environment
	original_sampling = settings.obs_log_sampling_rate_info
	settings.environment = "dev"
	settings.obs_log_sampling_rate_info = 1.0
	try:
		yield
	finally:
		settings.environment = original_env
		settings.obs_log_sampling_rate_info = original_sampling


@pytest.fixture(autouse=True)
def fresh_chat_store():
	chat_repo.reset_memory_store()
	yield
	chat_repo.reset_memory_store()


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
