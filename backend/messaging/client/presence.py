"""Client-side typing presence: what the peer is doing, what we announce."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from messaging.settings import settings

logger = logging.getLogger(__name__)


class TypingIndicator:
	"""Tracks the peer's typing signal.

	A "typing" signal holds for the window (or the server-sent `expires_in`);
	`is_typing` is evaluated against the clock on every read, and an optional
	timer fires `on_change` when the signal lapses so a view can redraw.
	"""

	def __init__(
		self,
		*,
		window_seconds: Optional[float] = None,
		clock: Callable[[], float] = time.monotonic,
		on_change: Optional[Callable[[bool], None]] = None,
	) -> None:
		self.window_seconds = window_seconds if window_seconds is not None else settings.chat_typing_window_seconds
		self._clock = clock
		self._on_change = on_change
		self._expires_at: Optional[float] = None
		self._timer: Optional[asyncio.TimerHandle] = None

	@property
	def is_typing(self) -> bool:
		return self._expires_at is not None and self._clock() < self._expires_at

	def on_signal(self, typing: bool, expires_in: Optional[float] = None) -> None:
		self._cancel_timer()
		if not typing:
			self._set(None)
			return
		window = min(expires_in, self.window_seconds) if expires_in else self.window_seconds
		self._set(self._clock() + window)
		try:
			loop = asyncio.get_running_loop()
		except RuntimeError:
			return
		self._timer = loop.call_later(window, self._expire)

	def reset(self) -> None:
		self._cancel_timer()
		self._set(None)

	def close(self) -> None:
		self._cancel_timer()
		self._expires_at = None

	def _set(self, expires_at: Optional[float]) -> None:
		was_typing = self.is_typing
		self._expires_at = expires_at
		if self._on_change is not None and was_typing != self.is_typing:
			self._on_change(self.is_typing)

	def _expire(self) -> None:
		self._timer = None
		if self._expires_at is None:
			return
		remaining = self._expires_at - self._clock()
		if remaining > 0:
			# Loop timers may fire a clock tick early.
			self._timer = asyncio.get_running_loop().call_later(remaining, self._expire)
			return
		self._expires_at = None
		if self._on_change is not None:
			self._on_change(False)

	def _cancel_timer(self) -> None:
		if self._timer is not None:
			self._timer.cancel()
			self._timer = None


class TypingHeartbeat:
	"""Announces our own typing state from compose-box activity.

	Keystrokes publish `typing=True` at most once per refresh interval; after a
	quiet period with no keystrokes, or an emptied compose box, `typing=False`
	follows.
	"""

	def __init__(
		self,
		publish: Callable[[bool], Awaitable[None]],
		*,
		refresh_seconds: Optional[float] = None,
		quiet_seconds: Optional[float] = None,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self._publish = publish
		self.refresh_seconds = refresh_seconds if refresh_seconds is not None else settings.chat_typing_refresh_seconds
		self.quiet_seconds = quiet_seconds if quiet_seconds is not None else settings.chat_typing_window_seconds
		self._clock = clock
		self._active = False
		self._last_sent: Optional[float] = None
		self._quiet_task: Optional[asyncio.Task] = None

	@property
	def active(self) -> bool:
		return self._active

	async def keystroke(self, text: str) -> None:
		if not text.strip():
			await self.stop()
			return
		now = self._clock()
		if not self._active or self._last_sent is None or now - self._last_sent >= self.refresh_seconds:
			self._active = True
			self._last_sent = now
			await self._send(True)
		self._arm_quiet_timer()

	async def stop(self) -> None:
		self._cancel_quiet_timer()
		if self._active:
			self._active = False
			self._last_sent = None
			await self._send(False)

	def cancel(self) -> None:
		"""Drop timers without announcing anything."""
		self._cancel_quiet_timer()
		self._active = False
		self._last_sent = None

	def _arm_quiet_timer(self) -> None:
		self._cancel_quiet_timer()
		self._quiet_task = asyncio.create_task(self._quiet_after(self.quiet_seconds))

	async def _quiet_after(self, delay: float) -> None:
		await asyncio.sleep(delay)
		self._quiet_task = None
		if self._active:
			self._active = False
			self._last_sent = None
			await self._send(False)

	def _cancel_quiet_timer(self) -> None:
		task = self._quiet_task
		self._quiet_task = None
		if task is not None and task is not asyncio.current_task():
			task.cancel()

	async def _send(self, typing: bool) -> None:
		try:
			await self._publish(typing)
		except Exception:
			# Presence is best-effort; a lost signal expires on its own.
			logger.debug("chat_typing_publish_failed", exc_info=True)
