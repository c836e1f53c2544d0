"""Backends and realtime channel used by `ChatSession`.

`ChatBackend` is the request/response side (history, send, mark read);
`RealtimeChannel` carries inserts, read receipts and typing for one
conversation and demultiplexes them into `ChannelHandlers`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Tuple

import httpx
import socketio
from socketio import exceptions as sio_exceptions

from messaging.api.pagination import encode_cursor
from messaging.domain.chat.exceptions import (
	ChannelUnavailable,
	ChatError,
	InvalidMessage,
	NotAuthorized,
	RateLimited,
	TransientDeliveryFailure,
)
from messaging.infra.auth import AuthenticatedUser

from .models import ConfirmedMessage, ReadUpdate, TypingEvent

logger = logging.getLogger(__name__)

Cursor = Tuple[datetime, str]


class ChatBackend(Protocol):
	async def list_messages(
		self,
		conversation_id: str,
		*,
		after: Optional[Cursor] = None,
		limit: Optional[int] = None,
	) -> List[ConfirmedMessage]:
		...

	async def send_message(self, conversation_id: str, body: str) -> ConfirmedMessage:
		...

	async def mark_read(self, conversation_id: str) -> int:
		...


@dataclass(slots=True)
class ChannelHandlers:
	on_insert: Callable[[ConfirmedMessage], Awaitable[None]]
	on_update: Callable[[ReadUpdate], Awaitable[None]]
	on_typing: Callable[[TypingEvent], Awaitable[None]]
	on_disconnect: Optional[Callable[[], Awaitable[None]]] = None


class RealtimeChannel(Protocol):
	@property
	def sid(self) -> Optional[str]:
		...

	async def subscribe(self, conversation_id: str, handlers: ChannelHandlers) -> None:
		...

	async def unsubscribe(self) -> None:
		...

	async def publish_typing(self, conversation_id: str, typing: bool) -> None:
		...


def _error_for(response: httpx.Response) -> ChatError:
	try:
		detail = response.json().get("detail")
	except ValueError:
		detail = None
	reason = detail if isinstance(detail, str) else f"http_{response.status_code}"
	status = response.status_code
	if status in (401, 403, 404):
		return NotAuthorized(reason, status_code=status)
	if status in (400, 422):
		return InvalidMessage(reason, status_code=status)
	if status == 429:
		return RateLimited(reason)
	return TransientDeliveryFailure(reason, status_code=status)


class HttpChatBackend:
	"""Talks to the REST surface under `/chat`."""

	def __init__(
		self,
		base_url: str = "",
		*,
		token: Optional[str] = None,
		user_id: Optional[str] = None,
		socket_id: Optional[Callable[[], Optional[str]]] = None,
		client: Optional[httpx.AsyncClient] = None,
		timeout: float = 10.0,
	) -> None:
		self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
		self._owns_client = client is None
		self._token = token
		self._user_id = user_id
		self._socket_id = socket_id

	def _headers(self) -> dict[str, str]:
		headers: dict[str, str] = {}
		if self._token:
			headers["Authorization"] = f"Bearer {self._token}"
		elif self._user_id:
			headers["X-User-Id"] = self._user_id
		if self._socket_id is not None:
			sid = self._socket_id()
			if sid:
				headers["X-Socket-Id"] = sid
		return headers

	async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
		try:
			response = await self._client.request(method, path, headers=self._headers(), **kwargs)
		except httpx.HTTPError as exc:
			raise TransientDeliveryFailure("network_error") from exc
		if response.status_code >= 400:
			raise _error_for(response)
		return response.json()

	async def start_conversation(self, peer_id: str) -> dict:
		return await self._request("POST", "/chat/conversations", json={"peer_id": peer_id})

	async def list_messages(
		self,
		conversation_id: str,
		*,
		after: Optional[Cursor] = None,
		limit: Optional[int] = None,
	) -> List[ConfirmedMessage]:
		params: dict[str, Any] = {}
		if after is not None:
			params["after"] = encode_cursor(after[0], after[1])
		if limit is not None:
			params["limit"] = limit
		data = await self._request("GET", f"/chat/conversations/{conversation_id}/messages", params=params)
		return [ConfirmedMessage.from_payload(item) for item in data.get("items", [])]

	async def send_message(self, conversation_id: str, body: str) -> ConfirmedMessage:
		data = await self._request("POST", f"/chat/conversations/{conversation_id}/messages", json={"body": body})
		return ConfirmedMessage.from_payload(data)

	async def mark_read(self, conversation_id: str) -> int:
		data = await self._request("POST", f"/chat/conversations/{conversation_id}/read")
		return int(data.get("updated", 0))

	async def unread(self) -> dict:
		return await self._request("GET", "/chat/unread")

	async def aclose(self) -> None:
		if self._owns_client:
			await self._client.aclose()


class LocalChatBackend:
	"""In-process backend over a `ChatService`, for tools and tests."""

	def __init__(self, service, user: AuthenticatedUser, *, origin_sid: Optional[str] = None) -> None:
		self._service = service
		self._user = user
		self.origin_sid = origin_sid

	async def list_messages(
		self,
		conversation_id: str,
		*,
		after: Optional[Cursor] = None,
		limit: Optional[int] = None,
	) -> List[ConfirmedMessage]:
		page = await self._service.list_messages(self._user, conversation_id, after=after, limit=limit)
		return [ConfirmedMessage.from_payload(item.model_dump()) for item in page.items]

	async def send_message(self, conversation_id: str, body: str) -> ConfirmedMessage:
		message = await self._service.send_message(self._user, conversation_id, body, origin_sid=self.origin_sid)
		return ConfirmedMessage.from_payload(message.model_dump())

	async def mark_read(self, conversation_id: str) -> int:
		result = await self._service.mark_read(self._user, conversation_id)
		return result.updated


class SocketIOChannel:
	"""Socket.IO client bound to the `/chat` namespace.

	Reconnection is left to the session: a dropped connection reports through
	`on_disconnect`, and the session calls `subscribe` again when it retries.
	"""

	def __init__(
		self,
		url: str,
		*,
		token: Optional[str] = None,
		user_id: Optional[str] = None,
		namespace: str = "/chat",
		socketio_path: str = "socket.io",
		client: Optional[socketio.AsyncClient] = None,
		timeout: float = 5.0,
	) -> None:
		self.url = url
		self.namespace = namespace
		self._token = token
		self._user_id = user_id
		self._socketio_path = socketio_path
		self._client = client or socketio.AsyncClient(reconnection=False)
		self._timeout = timeout
		self._registered = False
		self._conversation_id: Optional[str] = None
		self._handlers: Optional[ChannelHandlers] = None

	@property
	def sid(self) -> Optional[str]:
		if not self._client.connected:
			return None
		return self._client.get_sid(self.namespace)

	def _auth(self) -> dict[str, str]:
		if self._token:
			return {"token": self._token}
		if self._user_id:
			return {"user_id": self._user_id}
		return {}

	async def subscribe(self, conversation_id: str, handlers: ChannelHandlers) -> None:
		self._register()
		try:
			if not self._client.connected:
				await self._client.connect(
					self.url,
					auth=self._auth(),
					namespaces=[self.namespace],
					socketio_path=self._socketio_path,
					wait_timeout=self._timeout,
				)
			ack = await self._client.call(
				"conversation_join",
				{"conversation_id": conversation_id},
				namespace=self.namespace,
				timeout=self._timeout,
			)
		except (sio_exceptions.SocketIOError, OSError) as exc:
			raise ChannelUnavailable("connect_failed") from exc
		if not isinstance(ack, dict) or not ack.get("ok"):
			reason = ack.get("error") if isinstance(ack, dict) else None
			raise ChannelUnavailable(str(reason or "join_refused"))
		self._conversation_id = conversation_id
		self._handlers = handlers

	async def unsubscribe(self) -> None:
		conversation_id = self._conversation_id
		self._conversation_id = None
		self._handlers = None
		if not self._client.connected:
			return
		try:
			if conversation_id:
				await self._client.emit(
					"conversation_leave",
					{"conversation_id": conversation_id},
					namespace=self.namespace,
				)
			await self._client.disconnect()
		except sio_exceptions.SocketIOError:
			logger.debug("chat_channel_unsubscribe_failed", exc_info=True)

	async def publish_typing(self, conversation_id: str, typing: bool) -> None:
		if not self._client.connected:
			return
		await self._client.emit(
			"typing",
			{"conversation_id": conversation_id, "typing": typing},
			namespace=self.namespace,
		)

	def _register(self) -> None:
		if self._registered:
			return
		self._client.on("chat:message", self._on_message, namespace=self.namespace)
		self._client.on("chat:update", self._on_update, namespace=self.namespace)
		self._client.on("chat:typing", self._on_typing, namespace=self.namespace)
		self._client.on("disconnect", self._on_disconnect, namespace=self.namespace)
		self._registered = True

	def _accepts(self, payload: Any) -> bool:
		return (
			self._handlers is not None
			and isinstance(payload, dict)
			and str(payload.get("conversation_id")) == self._conversation_id
		)

	async def _on_message(self, payload: dict) -> None:
		if self._accepts(payload):
			await self._handlers.on_insert(ConfirmedMessage.from_payload(payload))

	async def _on_update(self, payload: dict) -> None:
		if self._accepts(payload):
			await self._handlers.on_update(ReadUpdate.from_payload(payload))

	async def _on_typing(self, payload: dict) -> None:
		if self._accepts(payload):
			await self._handlers.on_typing(TypingEvent.from_payload(payload))

	async def _on_disconnect(self, *args: Any) -> None:
		handlers = self._handlers
		if handlers is not None and handlers.on_disconnect is not None:
			await handlers.on_disconnect()
