"""Chat domain errors carrying a stable reason code and HTTP status."""

from __future__ import annotations


class ChatError(Exception):
	"""Base class for chat failures surfaced to callers."""

	status_code: int = 400

	def __init__(self, reason: str, *, status_code: int | None = None) -> None:
		super().__init__(reason)
		self.reason = reason
		if status_code is not None:
			self.status_code = status_code


class NotAuthorized(ChatError):
	"""Caller is not a participant, or the relationship gate refused."""

	status_code = 403


class InvalidMessage(ChatError):
	status_code = 400


class TransientDeliveryFailure(ChatError):
	"""The store or network failed mid-append; the caller may retry by hand."""

	status_code = 503


class RateLimited(ChatError):
	status_code = 429


class ChannelUnavailable(ChatError):
	"""Realtime subscription failed or dropped. Never shown to the user."""

	status_code = 503


__all__ = [
	"ChannelUnavailable",
	"ChatError",
	"InvalidMessage",
	"NotAuthorized",
	"RateLimited",
	"TransientDeliveryFailure",
]
