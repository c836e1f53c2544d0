"""Direct messaging domain exports."""

from .service import (
	ChatService,
	get_service,
	list_conversations,
	list_messages,
	mark_read,
	send_message,
	start_conversation,
	unread_summary,
)

__all__ = [
	"ChatService",
	"get_service",
	"list_conversations",
	"list_messages",
	"mark_read",
	"send_message",
	"start_conversation",
	"unread_summary",
]
