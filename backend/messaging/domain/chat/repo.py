"""Conversation and message persistence.

Postgres is the system of record. When no pool can be obtained (tests, local
tooling) the repository falls back to a process-local store with the same
ordering and idempotency guarantees.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import ulid

from messaging.infra import postgres

from .models import ChatMessage, Conversation, ConversationPair, make_preview

_TICK = timedelta(microseconds=1)

_CONVERSATION_COLUMNS = (
	"conversation_id, user_a, user_b, created_at, last_message_at, last_message_preview, last_seq"
)
_MESSAGE_COLUMNS = "message_id, conversation_id, seq, sender_id, recipient_id, body, created_at, read_at"


def _next_timestamp(now: datetime, previous: Optional[datetime]) -> datetime:
	if previous is not None and now <= previous:
		return previous + _TICK
	return now


def _sort_key(message: ChatMessage) -> Tuple[datetime, str]:
	return (message.created_at, message.message_id)


class _InMemoryStore:
	"""Fallback store used in tests when Postgres is unavailable."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._conversations: Dict[str, Conversation] = {}
		self._pairs: Dict[Tuple[str, str], str] = {}
		self._messages: Dict[str, List[ChatMessage]] = {}

	async def get_or_create_conversation(self, pair: ConversationPair, now: datetime) -> Tuple[Conversation, bool]:
		async with self._lock:
			existing_id = self._pairs.get(pair.participants())
			if existing_id is not None:
				return self._conversations[existing_id].copy(), False
			conversation = Conversation(
				conversation_id=str(ulid.new()),
				user_a=pair.user_a,
				user_b=pair.user_b,
				created_at=now,
			)
			self._conversations[conversation.conversation_id] = conversation
			self._pairs[pair.participants()] = conversation.conversation_id
			self._messages[conversation.conversation_id] = []
			return conversation.copy(), True

	async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
		async with self._lock:
			conversation = self._conversations.get(conversation_id)
			return conversation.copy() if conversation else None

	async def list_conversations(self, user_id: str) -> List[Conversation]:
		async with self._lock:
			items = [c.copy() for c in self._conversations.values() if c.is_participant(user_id)]
		items.sort(
			key=lambda c: (c.last_message_at is not None, c.last_message_at or c.created_at, c.created_at),
			reverse=True,
		)
		return items

	async def append_message(
		self,
		conversation_id: str,
		sender_id: str,
		recipient_id: str,
		body: str,
		now: datetime,
		*,
		preview_length: int,
	) -> ChatMessage:
		async with self._lock:
			conversation = self._conversations.get(conversation_id)
			if conversation is None:
				raise LookupError("conversation_not_found")
			created_at = _next_timestamp(now, conversation.last_message_at)
			message = ChatMessage(
				message_id=str(ulid.new()),
				conversation_id=conversation_id,
				seq=conversation.last_seq + 1,
				sender_id=sender_id,
				recipient_id=recipient_id,
				body=body,
				created_at=created_at,
			)
			self._messages[conversation_id].append(message)
			conversation.last_seq = message.seq
			conversation.last_message_at = created_at
			conversation.last_message_preview = make_preview(body, preview_length)
			return message.copy()

	async def list_messages(
		self,
		conversation_id: str,
		*,
		after: Optional[Tuple[datetime, str]],
		limit: int,
	) -> List[ChatMessage]:
		async with self._lock:
			messages = sorted(self._messages.get(conversation_id, []), key=_sort_key)
			if after is not None:
				messages = [m for m in messages if _sort_key(m) > after]
				page = messages[:limit]
			else:
				page = messages[-limit:] if limit > 0 else []
			return [m.copy() for m in page]

	async def mark_read(self, conversation_id: str, reader_id: str, now: datetime) -> List[ChatMessage]:
		async with self._lock:
			changed: List[ChatMessage] = []
			for message in self._messages.get(conversation_id, []):
				if message.sender_id != reader_id and message.read_at is None:
					message.read_at = now
					changed.append(message.copy())
			changed.sort(key=lambda m: m.seq)
			return changed

	async def unread_counts(self, user_id: str) -> Dict[str, int]:
		async with self._lock:
			counts: Dict[str, int] = {}
			for conversation_id, messages in self._messages.items():
				unread = sum(1 for m in messages if m.recipient_id == user_id and m.read_at is None)
				if unread:
					counts[conversation_id] = unread
			return counts


_MEMORY_STORE = _InMemoryStore()


def reset_memory_store() -> None:
	"""Drop every conversation held by the in-memory fallback."""
	global _MEMORY_STORE
	_MEMORY_STORE = _InMemoryStore()


class ChatRepository:
	"""Postgres-backed store; falls back to the process-local store without a pool."""

	async def get_or_create_conversation(self, pair: ConversationPair, now: datetime) -> Tuple[Conversation, bool]:
		pool = await postgres.pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.get_or_create_conversation(pair, now)
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				f"""
				INSERT INTO chat_conversations (conversation_id, user_a, user_b, created_at)
				VALUES ($1, $2, $3, $4)
				ON CONFLICT (user_a, user_b) DO NOTHING
				RETURNING {_CONVERSATION_COLUMNS}
				""",
				str(ulid.new()),
				pair.user_a,
				pair.user_b,
				now,
			)
			if row is not None:
				return self._row_to_conversation(row), True
			# Lost the race (or it already existed): read the winner.
			row = await conn.fetchrow(
				f"SELECT {_CONVERSATION_COLUMNS} FROM chat_conversations WHERE user_a = $1 AND user_b = $2",
				pair.user_a,
				pair.user_b,
			)
			return self._row_to_conversation(row), False

	async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
		pool = await postgres.pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.get_conversation(conversation_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				f"SELECT {_CONVERSATION_COLUMNS} FROM chat_conversations WHERE conversation_id = $1",
				conversation_id,
			)
			return self._row_to_conversation(row) if row else None

	async def list_conversations(self, user_id: str) -> List[Conversation]:
		pool = await postgres.pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.list_conversations(user_id)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_CONVERSATION_COLUMNS}
				FROM chat_conversations
				WHERE user_a = $1 OR user_b = $1
				ORDER BY last_message_at DESC NULLS LAST, created_at DESC
				""",
				user_id,
			)
			return [self._row_to_conversation(row) for row in rows]

	async def append_message(
		self,
		conversation_id: str,
		sender_id: str,
		recipient_id: str,
		body: str,
		now: datetime,
		*,
		preview_length: int,
	) -> ChatMessage:
		pool = await postgres.pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.append_message(
				conversation_id,
				sender_id,
				recipient_id,
				body,
				now,
				preview_length=preview_length,
			)
		async with pool.acquire() as conn:
			async with conn.transaction():
				# Row lock serialises appends per conversation.
				row = await conn.fetchrow(
					"SELECT last_seq, last_message_at FROM chat_conversations WHERE conversation_id = $1 FOR UPDATE",
					conversation_id,
				)
				if row is None:
					raise LookupError("conversation_not_found")
				seq = int(row["last_seq"]) + 1
				created_at = _next_timestamp(now, row["last_message_at"])
				message_id = str(ulid.new())
				await conn.execute(
					"""
					INSERT INTO chat_messages (
						message_id,
						conversation_id,
						seq,
						sender_id,
						recipient_id,
						body,
						created_at
					) VALUES ($1,$2,$3,$4,$5,$6,$7)
					""",
					message_id,
					conversation_id,
					seq,
					sender_id,
					recipient_id,
					body,
					created_at,
				)
				await conn.execute(
					"""
					UPDATE chat_conversations
					SET last_seq = $2, last_message_at = $3, last_message_preview = $4
					WHERE conversation_id = $1
					""",
					conversation_id,
					seq,
					created_at,
					make_preview(body, preview_length),
				)
				return ChatMessage(
					message_id=message_id,
					conversation_id=conversation_id,
					seq=seq,
					sender_id=sender_id,
					recipient_id=recipient_id,
					body=body,
					created_at=created_at,
				)

	async def list_messages(
		self,
		conversation_id: str,
		*,
		after: Optional[Tuple[datetime, str]],
		limit: int,
	) -> List[ChatMessage]:
		pool = await postgres.pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.list_messages(conversation_id, after=after, limit=limit)
		async with pool.acquire() as conn:
			if after is not None:
				rows = await conn.fetch(
					f"""
					SELECT {_MESSAGE_COLUMNS}
					FROM chat_messages
					WHERE conversation_id = $1 AND (created_at, message_id) > ($2, $3)
					ORDER BY created_at ASC, message_id ASC
					LIMIT $4
					""",
					conversation_id,
					after[0],
					after[1],
					limit,
				)
				return [self._row_to_message(row) for row in rows]
			rows = await conn.fetch(
				f"""
				SELECT {_MESSAGE_COLUMNS}
				FROM chat_messages
				WHERE conversation_id = $1
				ORDER BY created_at DESC, message_id DESC
				LIMIT $2
				""",
				conversation_id,
				limit,
			)
			return [self._row_to_message(row) for row in reversed(rows)]

	async def mark_read(self, conversation_id: str, reader_id: str, now: datetime) -> List[ChatMessage]:
		pool = await postgres.pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.mark_read(conversation_id, reader_id, now)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				UPDATE chat_messages
				SET read_at = $3
				WHERE conversation_id = $1 AND sender_id <> $2 AND read_at IS NULL
				RETURNING {_MESSAGE_COLUMNS}
				""",
				conversation_id,
				reader_id,
				now,
			)
			messages = [self._row_to_message(row) for row in rows]
			messages.sort(key=lambda m: m.seq)
			return messages

	async def unread_counts(self, user_id: str) -> Dict[str, int]:
		pool = await postgres.pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.unread_counts(user_id)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT conversation_id, COUNT(*) AS unread
				FROM chat_messages
				WHERE recipient_id = $1 AND read_at IS NULL
				GROUP BY conversation_id
				""",
				user_id,
			)
			return {str(row["conversation_id"]): int(row["unread"]) for row in rows}

	def _row_to_conversation(self, row) -> Conversation:
		return Conversation(
			conversation_id=str(row["conversation_id"]),
			user_a=str(row["user_a"]),
			user_b=str(row["user_b"]),
			created_at=row["created_at"],
			last_message_at=row["last_message_at"],
			last_message_preview=row["last_message_preview"],
			last_seq=int(row["last_seq"] or 0),
		)

	def _row_to_message(self, row) -> ChatMessage:
		return ChatMessage(
			message_id=str(row["message_id"]),
			conversation_id=str(row["conversation_id"]),
			seq=int(row["seq"]),
			sender_id=str(row["sender_id"]),
			recipient_id=str(row["recipient_id"]),
			body=row["body"],
			created_at=row["created_at"],
			read_at=row["read_at"],
		)
