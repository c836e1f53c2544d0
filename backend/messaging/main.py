"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from messaging.api import chat, ops
from messaging.api.errors import install_error_handlers
from messaging.domain.chat.presence import run_typing_sweeper
from messaging.domain.chat.sockets import ChatNamespace, set_namespace as set_chat_namespace
from messaging.infra import postgres
from messaging.infra.redis import close_redis
from messaging.obs import init as obs_init
from messaging.settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
	await postgres.init_pool()
	sweeper = asyncio.create_task(run_typing_sweeper(chat_namespace.board), name="chat-typing-sweeper")
	try:
		yield
	finally:
		sweeper.cancel()
		await asyncio.gather(sweeper, return_exceptions=True)
		await postgres.close_pool()
		await close_redis()


app = FastAPI(title="Direct Messaging", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(getattr(settings, "cors_allow_origins", []))
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []

# Starlette disallows wildcard '*' with allow_credentials=True. Replace '*' with explicit origins.
if "*" in allow_origins:
	if settings.is_dev():
		allow_origins = [
			"http://localhost:3000",
			"http://127.0.0.1:3000",
			"http://localhost:5173",
			"http://127.0.0.1:5173",
		]
	else:
		allow_origins = [origin for origin in allow_origins if origin != "*"]

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

# Use the same allowed origins for Socket.IO as for the REST API
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
chat_namespace = ChatNamespace()
sio.register_namespace(chat_namespace)
set_chat_namespace(chat_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
obs_init(app)

app.include_router(chat.router, tags=["chat"])
app.include_router(ops.router, tags=["ops"])
