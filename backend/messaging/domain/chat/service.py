"""Chat service: authorization, validation and fan-out around the store."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, List, Optional, Tuple

import asyncpg

from messaging.api.pagination import encode_cursor
from messaging.infra import rate_limit
from messaging.infra.auth import AuthenticatedUser
from messaging.obs import metrics as obs_metrics
from messaging.settings import settings

from . import sockets
from .collaborators import (
	PostgresProfileDirectory,
	PostgresRelationshipGate,
	ProfileDirectory,
	RelationshipGate,
)
from .directory import ConversationDirectory
from .exceptions import InvalidMessage, NotAuthorized, RateLimited, TransientDeliveryFailure
from .models import ChatMessage, Conversation, ConversationSummary
from .repo import ChatRepository
from .schemas import (
	ConversationListResponse,
	ConversationResponse,
	MarkReadResponse,
	MessageListResponse,
	MessageResponse,
	UnreadSummaryResponse,
)

logger = logging.getLogger(__name__)

_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def normalise_body(body: str) -> str:
	text = (body or "").strip()
	if not text:
		raise InvalidMessage("empty_body")
	if len(text) > settings.chat_body_max_length:
		raise InvalidMessage("body_too_long")
	return text


async def _fanout(event: str, emit: Awaitable[None]) -> None:
	try:
		await emit
	except Exception:
		obs_metrics.inc_chat_fanout_failure(event)
		logger.warning("chat_fanout_failed", extra={"event": event}, exc_info=True)


class ChatService:
	def __init__(
		self,
		repository: ChatRepository | None = None,
		*,
		gate: RelationshipGate | None = None,
		profiles: ProfileDirectory | None = None,
	) -> None:
		self._repo = repository or ChatRepository()
		self._gate = gate or PostgresRelationshipGate()
		self._profiles = profiles or PostgresProfileDirectory()
		self.directory = ConversationDirectory(self._repo, self._gate)

	async def start_conversation(self, auth_user: AuthenticatedUser, peer_id: str) -> ConversationResponse:
		conversation = await self.directory.get_or_create(auth_user.id, peer_id)
		return await self._summary_response(conversation, auth_user.id)

	async def get_conversation(self, auth_user: AuthenticatedUser, conversation_id: str) -> ConversationResponse:
		conversation = await self.directory.get_for_participant(conversation_id, auth_user.id)
		return await self._summary_response(conversation, auth_user.id)

	async def list_conversations(self, auth_user: AuthenticatedUser) -> ConversationListResponse:
		conversations = await self._repo.list_conversations(auth_user.id)
		if not conversations:
			return ConversationListResponse(items=[])
		peers = [c.peer_of(auth_user.id) for c in conversations]
		profiles = await self._profiles.get_profiles(peers)
		unread = await self._repo.unread_counts(auth_user.id)
		items: List[ConversationResponse] = []
		for conversation, peer_id in zip(conversations, peers):
			profile = profiles[peer_id]
			if not profile.active:
				continue
			summary = ConversationSummary(
				conversation=conversation,
				peer=profile,
				unread_count=unread.get(conversation.conversation_id, 0),
			)
			items.append(ConversationResponse.from_summary(summary))
		return ConversationListResponse(items=items)

	async def send_message(
		self,
		auth_user: AuthenticatedUser,
		conversation_id: str,
		body: str,
		*,
		origin_sid: Optional[str] = None,
		now: Optional[datetime] = None,
	) -> MessageResponse:
		text = normalise_body(body)
		conversation = await self.directory.get_for_participant(conversation_id, auth_user.id)
		recipient_id = conversation.peer_of(auth_user.id)
		allowed = await rate_limit.allow("chat_send", auth_user.id, limit=settings.chat_send_per_minute)
		if not allowed:
			obs_metrics.inc_chat_send_failure("rate_limited")
			raise RateLimited("rate_limited")
		# Blocks and deactivations apply to the next send, not just to new conversations.
		if not await self._gate.may_message(auth_user.id, recipient_id):
			obs_metrics.inc_chat_send_failure("relationship")
			raise NotAuthorized("relationship_required")
		try:
			message = await self._repo.append_message(
				conversation.conversation_id,
				auth_user.id,
				recipient_id,
				text,
				now or _utcnow(),
				preview_length=settings.chat_preview_length,
			)
		except _STORE_ERRORS as exc:
			obs_metrics.inc_chat_send_failure("store")
			logger.warning(
				"chat_append_failed",
				extra={"conversation_id": conversation.conversation_id},
				exc_info=True,
			)
			raise TransientDeliveryFailure("store_unavailable") from exc
		obs_metrics.inc_chat_send()
		response = MessageResponse.from_model(message)
		await self._publish_insert(message, response, origin_sid=origin_sid)
		return response

	async def list_messages(
		self,
		auth_user: AuthenticatedUser,
		conversation_id: str,
		*,
		after: Optional[Tuple[datetime, str]] = None,
		limit: Optional[int] = None,
	) -> MessageListResponse:
		await self.directory.get_for_participant(conversation_id, auth_user.id)
		page_size = max(1, min(limit or settings.chat_history_limit, settings.chat_history_limit))
		rows = await self._repo.list_messages(conversation_id, after=after, limit=page_size)
		items = [MessageResponse.from_model(message) for message in rows]
		next_cursor = None
		if rows:
			last = rows[-1]
			next_cursor = encode_cursor(last.created_at, last.message_id)
		elif after is not None:
			next_cursor = encode_cursor(after[0], after[1])
		return MessageListResponse(items=items, next_cursor=next_cursor)

	async def mark_read(
		self,
		auth_user: AuthenticatedUser,
		conversation_id: str,
		*,
		now: Optional[datetime] = None,
	) -> MarkReadResponse:
		await self.directory.get_for_participant(conversation_id, auth_user.id)
		try:
			changed = await self._repo.mark_read(conversation_id, auth_user.id, now or _utcnow())
		except _STORE_ERRORS as exc:
			logger.warning("chat_mark_read_failed", extra={"conversation_id": conversation_id}, exc_info=True)
			raise TransientDeliveryFailure("store_unavailable") from exc
		obs_metrics.inc_chat_read(len(changed))
		for message in changed:
			await _fanout(
				"chat:update",
				sockets.emit_update(
					conversation_id,
					{
						"conversation_id": conversation_id,
						"message_id": message.message_id,
						"read_at": message.read_at.isoformat() if message.read_at else None,
						"reader_id": auth_user.id,
					},
				),
			)
		return MarkReadResponse(conversation_id=conversation_id, updated=len(changed))

	async def unread_summary(self, auth_user: AuthenticatedUser) -> UnreadSummaryResponse:
		counts = await self._repo.unread_counts(auth_user.id)
		return UnreadSummaryResponse(
			conversations=sum(1 for value in counts.values() if value > 0),
			messages=sum(counts.values()),
		)

	async def _summary_response(self, conversation: Conversation, user_id: str) -> ConversationResponse:
		peer_id = conversation.peer_of(user_id)
		profiles = await self._profiles.get_profiles([peer_id])
		unread = await self._repo.unread_counts(user_id)
		summary = ConversationSummary(
			conversation=conversation,
			peer=profiles[peer_id],
			unread_count=unread.get(conversation.conversation_id, 0),
		)
		return ConversationResponse.from_summary(summary)

	async def _publish_insert(
		self,
		message: ChatMessage,
		response: MessageResponse,
		*,
		origin_sid: Optional[str],
	) -> None:
		payload = response.model_dump(mode="json")
		await _fanout(
			"chat:message",
			sockets.emit_message(message.conversation_id, payload, skip_sid=origin_sid),
		)
		await _fanout(
			"chat:inbox",
			sockets.emit_inbox(
				message.recipient_id,
				{
					"conversation_id": message.conversation_id,
					"sender_id": message.sender_id,
					"last_message_at": payload["created_at"],
					"last_message_preview": message.body[: settings.chat_preview_length],
				},
			),
		)


_SERVICE = ChatService()


def get_service() -> ChatService:
	return _SERVICE


async def start_conversation(auth_user: AuthenticatedUser, peer_id: str) -> ConversationResponse:
	return await _SERVICE.start_conversation(auth_user, peer_id)


async def get_conversation(auth_user: AuthenticatedUser, conversation_id: str) -> ConversationResponse:
	return await _SERVICE.get_conversation(auth_user, conversation_id)


async def list_conversations(auth_user: AuthenticatedUser) -> ConversationListResponse:
	return await _SERVICE.list_conversations(auth_user)


async def send_message(
	auth_user: AuthenticatedUser,
	conversation_id: str,
	body: str,
	*,
	origin_sid: Optional[str] = None,
) -> MessageResponse:
	return await _SERVICE.send_message(auth_user, conversation_id, body, origin_sid=origin_sid)


async def list_messages(
	auth_user: AuthenticatedUser,
	conversation_id: str,
	*,
	after: Optional[Tuple[datetime, str]] = None,
	limit: Optional[int] = None,
) -> MessageListResponse:
	return await _SERVICE.list_messages(auth_user, conversation_id, after=after, limit=limit)


async def mark_read(auth_user: AuthenticatedUser, conversation_id: str) -> MarkReadResponse:
	return await _SERVICE.mark_read(auth_user, conversation_id)


async def unread_summary(auth_user: AuthenticatedUser) -> UnreadSummaryResponse:
	return await _SERVICE.unread_summary(auth_user)
