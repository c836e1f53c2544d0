"""Conversation directory: one conversation per unordered pair of users."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from messaging.obs import metrics as obs_metrics

from .collaborators import PostgresRelationshipGate, RelationshipGate
from .exceptions import NotAuthorized
from .models import Conversation, ConversationPair
from .repo import ChatRepository

logger = logging.getLogger(__name__)


class ConversationDirectory:
	def __init__(
		self,
		repository: ChatRepository | None = None,
		gate: RelationshipGate | None = None,
	) -> None:
		self._repo = repository or ChatRepository()
		self._gate = gate or PostgresRelationshipGate()

	async def get_or_create(self, user_a: str, user_b: str, *, now: Optional[datetime] = None) -> Conversation:
		"""Return the conversation between two users, creating it on first use.

		Either argument order resolves to the same conversation, including
		when both participants start it at the same moment.
		"""
		if str(user_a) == str(user_b):
			raise NotAuthorized("self_conversation")
		if not await self._gate.may_message(str(user_a), str(user_b)):
			raise NotAuthorized("relationship_required")
		pair = ConversationPair.from_participants(user_a, user_b)
		conversation, created = await self._repo.get_or_create_conversation(
			pair,
			now or datetime.now(timezone.utc),
		)
		if created:
			obs_metrics.inc_chat_conversation_created()
			logger.info("chat_conversation_created", extra={"conversation_id": conversation.conversation_id})
		return conversation

	async def get_for_participant(self, conversation_id: str, user_id: str) -> Conversation:
		conversation = await self._repo.get_conversation(conversation_id)
		# Missing and foreign conversations are indistinguishable to the caller.
		if conversation is None or not conversation.is_participant(user_id):
			raise NotAuthorized("not_participant")
		return conversation
