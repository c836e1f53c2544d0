"""Marks the peer's messages read while the conversation is on screen."""

from __future__ import annotations

import asyncio
import logging

from messaging.domain.chat.exceptions import ChatError

logger = logging.getLogger(__name__)


class ReadReceiptReconciler:
	def __init__(self, backend, conversation_id: str) -> None:
		self._backend = backend
		self.conversation_id = conversation_id
		self._lock = asyncio.Lock()
		self.runs = 0

	async def reconcile(self) -> int:
		"""Mark every unread peer message read; returns how many changed.

		Safe to call any number of times. Failures are logged and reported as
		zero; the next trigger tries again.
		"""
		async with self._lock:
			self.runs += 1
			try:
				return await self._backend.mark_read(self.conversation_id)
			except ChatError as exc:
				logger.info(
					"chat_mark_read_skipped",
					extra={"conversation_id": self.conversation_id, "reason": exc.reason},
				)
				return 0
