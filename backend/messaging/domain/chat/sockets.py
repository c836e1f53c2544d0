"""Socket.IO namespace for direct conversations.

Every connection sits in its user room (`user:{id}`) for inbox updates and
joins `conversation:{id}` rooms for inserts, read receipts and typing.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Optional, Set

import socketio

from messaging.infra import rate_limit
from messaging.infra.auth import AuthenticatedUser, verify_access_jwt
from messaging.obs import metrics as obs_metrics
from messaging.settings import settings

from .exceptions import ChatError
from .presence import TypingBoard

if TYPE_CHECKING:  # pragma: no cover - typing only
	from .service import ChatService

logger = logging.getLogger(__name__)

_namespace: "ChatNamespace" | None = None


def _header(scope: dict, name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


def _conversation_id(payload: Optional[dict]) -> str:
	if not isinstance(payload, dict):
		return ""
	return str(payload.get("conversation_id") or "").strip()


def _error(exc: ChatError) -> dict:
	return {"ok": False, "error": exc.reason, "status": exc.status_code}


class ChatNamespace(socketio.AsyncNamespace):
	"""Namespace that routes conversation traffic and typing presence."""

	def __init__(self, *, board: TypingBoard | None = None, service: "ChatService" | None = None) -> None:
		super().__init__("/chat")
		self.board = board or TypingBoard()
		self._service = service
		self._sessions: Dict[str, AuthenticatedUser] = {}
		self._joined: Dict[str, Set[str]] = {}

	def _chat_service(self) -> "ChatService":
		if self._service is None:
			from .service import get_service

			self._service = get_service()
		return self._service

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		obs_metrics.socket_connected(self.namespace)
		try:
			user = self._authorise(environ, auth)
		except Exception:
			obs_metrics.socket_disconnected(self.namespace)
			raise ConnectionRefusedError("unauthorized") from None
		self._sessions[sid] = user
		self._joined[sid] = set()
		await self.enter_room(sid, self.user_room(user.id))
		await self.emit("chat:ack", {"ok": True, "user_id": user.id}, room=sid)

	async def on_disconnect(self, sid: str, reason: Optional[str] = None) -> None:
		obs_metrics.socket_disconnected(self.namespace)
		user = self._sessions.pop(sid, None)
		joined = self._joined.pop(sid, set())
		if not user:
			return
		for conversation_id in sorted(joined):
			await self._stop_typing(sid, conversation_id, user.id)
		await self.leave_room(sid, self.user_room(user.id))

	async def on_conversation_join(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "conversation_join")
		user = self._require_user(sid)
		conversation_id = _conversation_id(payload)
		if not conversation_id:
			return {"ok": False, "error": "conversation_id_required"}
		try:
			await self._chat_service().directory.get_for_participant(conversation_id, user.id)
		except ChatError as exc:
			return _error(exc)
		await self.enter_room(sid, self.conversation_room(conversation_id))
		self._joined.setdefault(sid, set()).add(conversation_id)
		return {
			"ok": True,
			"conversation_id": conversation_id,
			"typing": self.board.typing_peers(conversation_id, exclude=user.id),
		}

	async def on_conversation_leave(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "conversation_leave")
		user = self._require_user(sid)
		conversation_id = _conversation_id(payload)
		joined = self._joined.get(sid, set())
		if conversation_id not in joined:
			return {"ok": False, "error": "not_joined"}
		joined.discard(conversation_id)
		await self._stop_typing(sid, conversation_id, user.id)
		await self.leave_room(sid, self.conversation_room(conversation_id))
		return {"ok": True, "conversation_id": conversation_id}

	async def on_typing(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "typing")
		user = self._require_user(sid)
		conversation_id = _conversation_id(payload)
		if conversation_id not in self._joined.get(sid, set()):
			return {"ok": False, "error": "not_joined"}
		typing = bool(payload.get("typing", True))
		if typing:
			allowed = await rate_limit.allow("chat_typing", user.id, limit=settings.chat_typing_per_minute)
			if not allowed:
				return {"ok": False, "error": "rate_limited", "status": 429}
		self.board.publish(conversation_id, user.id, typing)
		await self._emit_typing(sid, conversation_id, user.id, typing)
		return {"ok": True}

	async def on_message_send(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "message_send")
		user = self._require_user(sid)
		conversation_id = _conversation_id(payload)
		body = payload.get("body") if isinstance(payload, dict) else None
		try:
			message = await self._chat_service().send_message(
				user,
				conversation_id,
				str(body or ""),
				origin_sid=sid,
			)
		except ChatError as exc:
			return _error(exc)
		await self._stop_typing(sid, conversation_id, user.id)
		return {"ok": True, "message": message.model_dump(mode="json")}

	async def on_mark_read(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "mark_read")
		user = self._require_user(sid)
		conversation_id = _conversation_id(payload)
		try:
			result = await self._chat_service().mark_read(user, conversation_id)
		except ChatError as exc:
			return _error(exc)
		return {"ok": True, "updated": result.updated}

	@staticmethod
	def user_room(user_id: str) -> str:
		return f"user:{user_id}"

	@staticmethod
	def conversation_room(conversation_id: str) -> str:
		return f"conversation:{conversation_id}"

	def _require_user(self, sid: str) -> AuthenticatedUser:
		user = self._sessions.get(sid)
		if not user:
			raise ConnectionRefusedError("unauthenticated")
		return user

	async def _stop_typing(self, sid: str, conversation_id: str, user_id: str) -> None:
		if self.board.clear(conversation_id, user_id):
			await self._emit_typing(sid, conversation_id, user_id, False)

	async def _emit_typing(self, sid: str, conversation_id: str, user_id: str, typing: bool) -> None:
		obs_metrics.inc_chat_typing(typing)
		obs_metrics.socket_event(self.namespace, "chat:typing")
		await self.emit(
			"chat:typing",
			{
				"conversation_id": conversation_id,
				"user_id": user_id,
				"typing": typing,
				"expires_in": self.board.window_seconds if typing else 0,
			},
			room=self.conversation_room(conversation_id),
			skip_sid=sid,
		)

	def _authorise(self, environ: dict, auth: Optional[dict]) -> AuthenticatedUser:
		scope = environ.get("asgi.scope", environ)
		auth_payload = auth or environ.get("auth") or scope.get("auth") or {}
		token = auth_payload.get("token")
		if not token:
			auth_header = _header(scope, "authorization")
			if auth_header and auth_header.lower().startswith("bearer "):
				token = auth_header.split(" ", 1)[1]
		if token:
			return verify_access_jwt(str(token))
		if settings.is_dev():
			user_id = auth_payload.get("user_id") or auth_payload.get("userId") or _header(scope, "x-user-id")
			if user_id and str(user_id).strip():
				return AuthenticatedUser(id=str(user_id).strip())
		raise ValueError("missing_token")


def set_namespace(namespace: ChatNamespace | None) -> None:
	global _namespace
	_namespace = namespace


async def emit_message(conversation_id: str, payload: dict, *, skip_sid: Optional[str] = None) -> None:
	if _namespace is None:
		return
	obs_metrics.socket_event(_namespace.namespace, "chat:message")
	await _namespace.emit(
		"chat:message",
		payload,
		room=ChatNamespace.conversation_room(conversation_id),
		skip_sid=skip_sid,
	)


async def emit_update(conversation_id: str, payload: dict) -> None:
	if _namespace is None:
		return
	obs_metrics.socket_event(_namespace.namespace, "chat:update")
	await _namespace.emit("chat:update", payload, room=ChatNamespace.conversation_room(conversation_id))


async def emit_inbox(user_id: str, payload: dict) -> None:
	if _namespace is None:
		return
	obs_metrics.socket_event(_namespace.namespace, "chat:inbox")
	await _namespace.emit("chat:inbox", payload, room=ChatNamespace.user_room(user_id))
