"""Ephemeral typing presence for open conversations.

Signals live only in process memory and expire after the typing window; a
participant that stops refreshing reads as "not typing" to everyone.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from messaging.settings import settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TypingSignal:
	conversation_id: str
	user_id: str
	typing: bool
	expires_at: float

	def active(self, now: float) -> bool:
		return self.typing and now < self.expires_at


class TypingBoard:
	"""Latest typing signal per (conversation, user)."""

	def __init__(
		self,
		*,
		window_seconds: Optional[float] = None,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self.window_seconds = window_seconds if window_seconds is not None else settings.chat_typing_window_seconds
		self._clock = clock
		self._signals: Dict[Tuple[str, str], TypingSignal] = {}

	def publish(self, conversation_id: str, user_id: str, typing: bool) -> TypingSignal:
		now = self._clock()
		signal = TypingSignal(
			conversation_id=conversation_id,
			user_id=user_id,
			typing=typing,
			expires_at=now + self.window_seconds if typing else now,
		)
		if typing:
			self._signals[(conversation_id, user_id)] = signal
		else:
			self._signals.pop((conversation_id, user_id), None)
		return signal

	def is_typing(self, conversation_id: str, user_id: str) -> bool:
		signal = self._signals.get((conversation_id, user_id))
		if signal is None:
			return False
		if not signal.active(self._clock()):
			self._signals.pop((conversation_id, user_id), None)
			return False
		return True

	def typing_peers(self, conversation_id: str, *, exclude: Optional[str] = None) -> list[str]:
		now = self._clock()
		return sorted(
			signal.user_id
			for (conv_id, user_id), signal in self._signals.items()
			if conv_id == conversation_id and user_id != exclude and signal.active(now)
		)

	def clear(self, conversation_id: str, user_id: str) -> bool:
		signal = self._signals.pop((conversation_id, user_id), None)
		return signal is not None and signal.active(self._clock())

	def prune(self) -> int:
		now = self._clock()
		stale = [key for key, signal in self._signals.items() if not signal.active(now)]
		for key in stale:
			del self._signals[key]
		return len(stale)


async def run_typing_sweeper(board: TypingBoard, *, interval_seconds: Optional[float] = None) -> None:
	"""Periodically drop expired signals so the board stays small."""
	interval = interval_seconds or max(board.window_seconds, 1.0) * 5
	while True:
		await asyncio.sleep(interval)
		removed = board.prune()
		if removed:
			logger.debug("chat_typing_pruned", extra={"removed": removed})
