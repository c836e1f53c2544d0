"""Messages as the client displays them."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Tuple, Union

import ulid

PENDING_PREFIX = "pending-"


def new_pending_id() -> str:
	return f"{PENDING_PREFIX}{ulid.new()}"


def _parse_dt(value: Any) -> Optional[datetime]:
	if value is None or value == "":
		return None
	if isinstance(value, datetime):
		return value
	text = str(value)
	if text.endswith("Z"):
		text = text[:-1] + "+00:00"
	return datetime.fromisoformat(text)


class MessageState(str, enum.Enum):
	SENDING = "sending"
	CONFIRMED = "confirmed"
	FAILED = "failed"


@dataclass(slots=True)
class ConfirmedMessage:
	message_id: str
	conversation_id: str
	sender_id: str
	recipient_id: str
	body: str
	created_at: datetime
	read_at: Optional[datetime] = None
	seq: Optional[int] = None

	pending = False

	@property
	def id(self) -> str:
		return self.message_id

	@property
	def sort_key(self) -> Tuple[datetime, str]:
		return (self.created_at, self.message_id)

	@classmethod
	def from_payload(cls, payload: Mapping[str, Any]) -> "ConfirmedMessage":
		created_at = _parse_dt(payload["created_at"])
		assert created_at is not None
		seq = payload.get("seq")
		return cls(
			message_id=str(payload["message_id"]),
			conversation_id=str(payload["conversation_id"]),
			sender_id=str(payload["sender_id"]),
			recipient_id=str(payload.get("recipient_id") or ""),
			body=str(payload["body"]),
			created_at=created_at,
			read_at=_parse_dt(payload.get("read_at")),
			seq=int(seq) if seq is not None else None,
		)


@dataclass(slots=True)
class PendingMessage:
	"""Optimistic placeholder shown until the server assigns an id."""

	temp_id: str
	conversation_id: str
	sender_id: str
	body: str
	created_at: datetime

	pending = True

	@property
	def id(self) -> str:
		return self.temp_id


DisplayedMessage = Union[ConfirmedMessage, PendingMessage]


@dataclass(slots=True, frozen=True)
class ReadUpdate:
	conversation_id: str
	message_id: str
	read_at: datetime
	reader_id: Optional[str] = None

	@classmethod
	def from_payload(cls, payload: Mapping[str, Any]) -> "ReadUpdate":
		read_at = _parse_dt(payload["read_at"])
		assert read_at is not None
		reader = payload.get("reader_id")
		return cls(
			conversation_id=str(payload["conversation_id"]),
			message_id=str(payload["message_id"]),
			read_at=read_at,
			reader_id=str(reader) if reader is not None else None,
		)


@dataclass(slots=True, frozen=True)
class TypingEvent:
	conversation_id: str
	user_id: str
	typing: bool
	expires_in: Optional[float] = None

	@classmethod
	def from_payload(cls, payload: Mapping[str, Any]) -> "TypingEvent":
		expires_in = payload.get("expires_in")
		return cls(
			conversation_id=str(payload["conversation_id"]),
			user_id=str(payload["user_id"]),
			typing=bool(payload.get("typing")),
			expires_in=float(expires_in) if expires_in else None,
		)
