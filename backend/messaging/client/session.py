"""Controller for one open conversation on the client.

The session owns the displayed message list. It loads history, follows the
realtime channel (or polls when the channel is down), sends optimistically
and rolls back on failure, and keeps read receipts and typing presence in
step with the peer.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from datetime import datetime, timezone, tzinfo
from typing import Callable, Dict, List, Optional

from messaging.domain.chat.exceptions import ChannelUnavailable, ChatError
from messaging.settings import settings

from .models import (
	ConfirmedMessage,
	DisplayedMessage,
	MessageState,
	PendingMessage,
	ReadUpdate,
	TypingEvent,
	new_pending_id,
)
from .presence import TypingHeartbeat, TypingIndicator
from .reconciler import ReadReceiptReconciler
from .rendering import RenderRow, render_rows
from .transport import ChannelHandlers, ChatBackend, Cursor, RealtimeChannel

logger = logging.getLogger(__name__)


class ChannelState(str, enum.Enum):
	IDLE = "idle"
	LIVE = "live"
	POLLING = "polling"
	CLOSED = "closed"


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class ChatSession:
	def __init__(
		self,
		conversation_id: str,
		current_user_id: str,
		backend: ChatBackend,
		channel: Optional[RealtimeChannel] = None,
		*,
		clock: Callable[[], float] = time.monotonic,
		now: Callable[[], datetime] = _utcnow,
		typing_window: Optional[float] = None,
		typing_refresh: Optional[float] = None,
		poll_interval: Optional[float] = None,
		history_limit: Optional[int] = None,
	) -> None:
		self.conversation_id = conversation_id
		self.current_user_id = current_user_id
		self.backend = backend
		self.channel = channel
		self._now = now
		self.poll_interval = poll_interval if poll_interval is not None else settings.chat_poll_interval_seconds
		self.history_limit = history_limit or settings.chat_history_limit

		self.items: List[DisplayedMessage] = []
		self.compose_text = ""
		self.last_error: Optional[ChatError] = None
		self.visible = True
		self.state = ChannelState.IDLE

		self._ids: set[str] = set()
		self._states: Dict[str, MessageState] = {}
		# Receipts for messages not displayed yet (our send still in flight).
		self._early_reads: Dict[str, datetime] = {}
		# Newest message known to be synced from the server. Own sends never move
		# it; peer messages committed before them may still be missing.
		self._sync_cursor: Optional[Cursor] = None
		self._poll_task: Optional[asyncio.Task] = None
		self._closed = False

		self.indicator = TypingIndicator(window_seconds=typing_window, clock=clock)
		self.heartbeat = TypingHeartbeat(
			self._publish_typing,
			refresh_seconds=typing_refresh,
			quiet_seconds=typing_window,
			clock=clock,
		)
		self.reconciler = ReadReceiptReconciler(backend, conversation_id)

	# lifecycle

	async def open(self) -> None:
		history = await self.backend.list_messages(self.conversation_id, limit=self.history_limit)
		for message in history:
			self._insert_confirmed(message)
			self._advance_sync(message)
		await self._subscribe()
		if self.visible:
			await self.reconciler.reconcile()

	async def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		self.state = ChannelState.CLOSED
		self.heartbeat.cancel()
		self.indicator.close()
		task = self._poll_task
		self._poll_task = None
		if task is not None:
			task.cancel()
			await asyncio.gather(task, return_exceptions=True)
		if self.channel is not None:
			try:
				await self.channel.unsubscribe()
			except Exception:
				logger.debug("chat_channel_close_failed", exc_info=True)

	@property
	def closed(self) -> bool:
		return self._closed

	async def set_visible(self, visible: bool) -> None:
		became_visible = visible and not self.visible
		self.visible = visible
		if became_visible and not self._closed:
			await self.reconciler.reconcile()

	# compose and send

	async def compose(self, text: str) -> None:
		self.compose_text = text
		if not self._closed:
			await self.heartbeat.keystroke(text)

	async def send(self) -> Optional[ConfirmedMessage]:
		"""Send the compose text.

		The message shows immediately as pending. On success the pending entry
		becomes the stored message; on failure it disappears, the text goes
		back into an empty compose box and `last_error` is set.
		"""
		text = self.compose_text.strip()
		if not text or self._closed:
			return None
		await self.heartbeat.stop()
		pending = PendingMessage(
			temp_id=new_pending_id(),
			conversation_id=self.conversation_id,
			sender_id=self.current_user_id,
			body=text,
			created_at=self._now(),
		)
		self.items.append(pending)
		self._states[pending.temp_id] = MessageState.SENDING
		self.compose_text = ""
		self.last_error = None
		try:
			confirmed = await self.backend.send_message(self.conversation_id, text)
		except ChatError as exc:
			self._states[pending.temp_id] = MessageState.FAILED
			if self._closed:
				return None
			self._remove(pending.temp_id)
			if not self.compose_text:
				self.compose_text = text
			self.last_error = exc
			logger.info(
				"chat_send_rolled_back",
				extra={"conversation_id": self.conversation_id, "reason": exc.reason},
			)
			return None
		self._states.pop(pending.temp_id, None)
		self._states[confirmed.message_id] = MessageState.CONFIRMED
		if not self._closed:
			self._replace_pending(pending.temp_id, confirmed)
		return confirmed

	def state_of(self, message_id: str) -> Optional[MessageState]:
		if message_id in self._states:
			return self._states[message_id]
		if message_id in self._ids:
			return MessageState.CONFIRMED
		return None

	# channel events

	async def handle_insert(self, message: ConfirmedMessage) -> None:
		if self._closed or message.conversation_id != self.conversation_id:
			return
		if self.state is ChannelState.LIVE:
			self._advance_sync(message)
		if not self._insert_confirmed(message):
			return
		if message.sender_id != self.current_user_id:
			# A fresh message from the peer ends their typing signal.
			self.indicator.reset()
			if self.visible:
				await self.reconciler.reconcile()

	async def handle_update(self, update: ReadUpdate) -> None:
		if self._closed or update.conversation_id != self.conversation_id:
			return
		for item in self.items:
			if isinstance(item, ConfirmedMessage) and item.message_id == update.message_id:
				if item.read_at is None:
					item.read_at = update.read_at
				return
		if update.message_id not in self._ids:
			self._early_reads.setdefault(update.message_id, update.read_at)

	async def handle_typing(self, event: TypingEvent) -> None:
		if self._closed or event.conversation_id != self.conversation_id:
			return
		if event.user_id == self.current_user_id:
			return
		if self.state is not ChannelState.LIVE:
			return
		self.indicator.on_signal(event.typing, event.expires_in)

	async def handle_disconnect(self) -> None:
		if self._closed:
			return
		logger.info("chat_channel_lost", extra={"conversation_id": self.conversation_id})
		self.state = ChannelState.POLLING
		self.indicator.reset()
		self._start_polling()

	# views

	@property
	def peer_typing(self) -> bool:
		return self.state is ChannelState.LIVE and self.indicator.is_typing

	@property
	def seen_message_id(self) -> Optional[str]:
		"""Latest own confirmed message the peer has read."""
		for item in reversed(self.items):
			if (
				isinstance(item, ConfirmedMessage)
				and item.sender_id == self.current_user_id
				and item.read_at is not None
			):
				return item.message_id
		return None

	def rows(self, tz: tzinfo = timezone.utc, *, today=None) -> List[RenderRow]:
		return render_rows(
			self.items,
			self.current_user_id,
			tz=tz,
			today=today,
			seen_message_id=self.seen_message_id,
		)

	async def catch_up(self) -> int:
		"""Fetch messages newer than the last confirmed one; returns how many were new."""
		cursor = self._sync_cursor
		try:
			messages = await self.backend.list_messages(
				self.conversation_id,
				after=cursor,
				limit=self.history_limit,
			)
		except ChatError as exc:
			logger.info(
				"chat_catch_up_failed",
				extra={"conversation_id": self.conversation_id, "reason": exc.reason},
			)
			return 0
		added = 0
		peer_arrived = False
		for message in messages:
			self._advance_sync(message)
			if self._insert_confirmed(message):
				added += 1
				peer_arrived = peer_arrived or message.sender_id != self.current_user_id
		if peer_arrived and self.visible and not self._closed:
			await self.reconciler.reconcile()
		return added

	# internals

	def _handlers(self) -> ChannelHandlers:
		return ChannelHandlers(
			on_insert=self.handle_insert,
			on_update=self.handle_update,
			on_typing=self.handle_typing,
			on_disconnect=self.handle_disconnect,
		)

	async def _subscribe(self) -> bool:
		if self.channel is None:
			self.state = ChannelState.POLLING
			self._start_polling()
			return False
		try:
			await self.channel.subscribe(self.conversation_id, self._handlers())
		except ChannelUnavailable as exc:
			logger.info(
				"chat_channel_unavailable",
				extra={"conversation_id": self.conversation_id, "reason": exc.reason},
			)
			self.state = ChannelState.POLLING
			self.indicator.reset()
			self._start_polling()
			return False
		self.state = ChannelState.LIVE
		# Anything committed between the history load and the join.
		await self.catch_up()
		return True

	def _start_polling(self) -> None:
		if self._poll_task is None or self._poll_task.done():
			self._poll_task = asyncio.create_task(self._poll_loop())

	async def _poll_loop(self) -> None:
		while not self._closed and self.state is ChannelState.POLLING:
			await asyncio.sleep(self.poll_interval)
			if self._closed:
				return
			await self.catch_up()
			if self.channel is None:
				continue
			try:
				await self.channel.subscribe(self.conversation_id, self._handlers())
			except ChannelUnavailable:
				continue
			self.state = ChannelState.LIVE
			logger.info("chat_channel_restored", extra={"conversation_id": self.conversation_id})
			await self.catch_up()
			return

	async def _publish_typing(self, typing: bool) -> None:
		if self.channel is None or self.state is not ChannelState.LIVE:
			return
		await self.channel.publish_typing(self.conversation_id, typing)

	def _advance_sync(self, message: ConfirmedMessage) -> None:
		if self._sync_cursor is None or message.sort_key > self._sync_cursor:
			self._sync_cursor = message.sort_key

	def _insert_confirmed(self, message: ConfirmedMessage) -> bool:
		if message.message_id in self._ids:
			return False
		self._ids.add(message.message_id)
		self._states.setdefault(message.message_id, MessageState.CONFIRMED)
		self._apply_early_read(message)
		index = len(self.items)
		# Pending entries stay at the tail; confirmed ones keep (created_at, id) order.
		while index > 0:
			previous = self.items[index - 1]
			if isinstance(previous, PendingMessage) or previous.sort_key > message.sort_key:
				index -= 1
				continue
			break
		self.items.insert(index, message)
		return True

	def _replace_pending(self, temp_id: str, confirmed: ConfirmedMessage) -> None:
		position = self._index_of(temp_id)
		if confirmed.message_id in self._ids:
			# The channel delivered it first.
			if position is not None:
				del self.items[position]
			return
		if position is None:
			self._insert_confirmed(confirmed)
			return
		before = self._confirmed_neighbour(position, step=-1)
		after = self._confirmed_neighbour(position, step=1)
		in_order = (before is None or before.sort_key < confirmed.sort_key) and (
			after is None or confirmed.sort_key < after.sort_key
		)
		if in_order:
			self.items[position] = confirmed
			self._ids.add(confirmed.message_id)
			self._apply_early_read(confirmed)
			return
		del self.items[position]
		self._insert_confirmed(confirmed)

	def _apply_early_read(self, message: ConfirmedMessage) -> None:
		read_at = self._early_reads.pop(message.message_id, None)
		if read_at is not None and message.read_at is None:
			message.read_at = read_at

	def _confirmed_neighbour(self, position: int, *, step: int) -> Optional[ConfirmedMessage]:
		index = position + step
		while 0 <= index < len(self.items):
			item = self.items[index]
			if isinstance(item, ConfirmedMessage):
				return item
			index += step
		return None

	def _index_of(self, item_id: str) -> Optional[int]:
		for index, item in enumerate(self.items):
			if item.id == item_id:
				return index
		return None

	def _remove(self, item_id: str) -> None:
		position = self._index_of(item_id)
		if position is not None:
			del self.items[position]
