"""Client-side controller for one open direct conversation."""

from .models import ConfirmedMessage, MessageState, PendingMessage
from .session import ChatSession
from .transport import ChannelHandlers, HttpChatBackend, LocalChatBackend, SocketIOChannel

__all__ = [
	"ChannelHandlers",
	"ChatSession",
	"ConfirmedMessage",
	"HttpChatBackend",
	"LocalChatBackend",
	"MessageState",
	"PendingMessage",
	"SocketIOChannel",
]
