"""Pydantic schemas for the direct messaging API."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .models import ChatMessage, ConversationSummary, ParticipantProfile


class StartConversationRequest(BaseModel):
	peer_id: str = Field(..., min_length=1, description="User to open a conversation with")


class SendMessageRequest(BaseModel):
	# Emptiness and length are checked after trimming by the service.
	body: str = Field(..., description="Message text")


class ParticipantSummary(BaseModel):
	user_id: str
	handle: Optional[str] = None
	display_name: Optional[str] = None
	avatar_url: Optional[str] = None

	@classmethod
	def from_profile(cls, profile: ParticipantProfile) -> "ParticipantSummary":
		return cls(
			user_id=profile.user_id,
			handle=profile.handle,
			display_name=profile.display_name,
			avatar_url=profile.avatar_url,
		)


class MessageResponse(BaseModel):
	message_id: str
	conversation_id: str
	seq: int
	sender_id: str
	recipient_id: str
	body: str
	created_at: datetime
	read_at: Optional[datetime] = None

	@classmethod
	def from_model(cls, message: ChatMessage) -> "MessageResponse":
		return cls(
			message_id=str(message.message_id),
			conversation_id=str(message.conversation_id),
			seq=int(message.seq),
			sender_id=str(message.sender_id),
			recipient_id=str(message.recipient_id),
			body=message.body,
			created_at=message.created_at,
			read_at=message.read_at,
		)


class MessageListResponse(BaseModel):
	items: List[MessageResponse]
	next_cursor: Optional[str] = None


class ConversationResponse(BaseModel):
	conversation_id: str
	peer: ParticipantSummary
	created_at: datetime
	last_message_at: Optional[datetime] = None
	last_message_preview: Optional[str] = None
	unread_count: int = 0

	@classmethod
	def from_summary(cls, summary: ConversationSummary) -> "ConversationResponse":
		conversation = summary.conversation
		return cls(
			conversation_id=conversation.conversation_id,
			peer=ParticipantSummary.from_profile(summary.peer),
			created_at=conversation.created_at,
			last_message_at=conversation.last_message_at,
			last_message_preview=conversation.last_message_preview,
			unread_count=summary.unread_count,
		)


class ConversationListResponse(BaseModel):
	items: List[ConversationResponse]


class MarkReadResponse(BaseModel):
	conversation_id: str
	updated: int


class UnreadSummaryResponse(BaseModel):
	conversations: int
	messages: int
