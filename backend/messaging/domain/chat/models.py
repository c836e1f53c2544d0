"""Domain models for direct conversations."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Tuple


@dataclass(slots=True, frozen=True)
class ConversationPair:
	"""Canonical, order-independent pair of participants."""

	user_a: str
	user_b: str

	@classmethod
	def from_participants(cls, user_one: str, user_two: str) -> "ConversationPair":
		ordered = tuple(sorted((str(user_one), str(user_two))))
		return cls(user_a=ordered[0], user_b=ordered[1])

	def participants(self) -> Tuple[str, str]:
		return (self.user_a, self.user_b)


@dataclass(slots=True)
class Conversation:
	conversation_id: str
	user_a: str
	user_b: str
	created_at: datetime
	last_message_at: Optional[datetime] = None
	last_message_preview: Optional[str] = None
	last_seq: int = 0

	def is_participant(self, user_id: str) -> bool:
		return str(user_id) in (self.user_a, self.user_b)

	def peer_of(self, user_id: str) -> str:
		if str(user_id) == self.user_a:
			return self.user_b
		if str(user_id) == self.user_b:
			return self.user_a
		raise ValueError("not_participant")

	def copy(self) -> "Conversation":
		return replace(self)


@dataclass(slots=True)
class ChatMessage:
	message_id: str
	conversation_id: str
	seq: int
	sender_id: str
	recipient_id: str
	body: str
	created_at: datetime
	read_at: Optional[datetime] = None

	def copy(self) -> "ChatMessage":
		return replace(self)


@dataclass(slots=True, frozen=True)
class ParticipantProfile:
	user_id: str
	handle: Optional[str] = None
	display_name: Optional[str] = None
	avatar_url: Optional[str] = None
	active: bool = True


@dataclass(slots=True)
class ConversationSummary:
	"""Inbox row: a conversation seen from one participant."""

	conversation: Conversation
	peer: ParticipantProfile
	unread_count: int = 0


def make_preview(body: str, length: int) -> str:
	return body[:length]
