"""FastAPI endpoints for direct conversations."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from messaging.api.pagination import InvalidCursor, decode_cursor
from messaging.api.request_id import get_request_id
from messaging.domain.chat.schemas import (
	ConversationListResponse,
	ConversationResponse,
	MarkReadResponse,
	MessageListResponse,
	MessageResponse,
	SendMessageRequest,
	StartConversationRequest,
	UnreadSummaryResponse,
)
from messaging.domain.chat.service import (
	get_conversation,
	list_conversations,
	list_messages,
	mark_read,
	send_message,
	start_conversation,
	unread_summary,
)
from messaging.infra.auth import AuthenticatedUser, get_current_user
from messaging.settings import settings

router = APIRouter(prefix="/chat", tags=["chat"])


@router.post("/conversations", response_model=ConversationResponse)
async def start_conversation_endpoint(
	payload: StartConversationRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> ConversationResponse:
	return await start_conversation(auth_user, payload.peer_id.strip())


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> ConversationListResponse:
	return await list_conversations(auth_user)


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> ConversationResponse:
	return await get_conversation(auth_user, conversation_id)


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
async def list_messages_endpoint(
	conversation_id: str,
	request: Request,
	after: Optional[str] = Query(default=None),
	limit: Optional[int] = Query(default=None, ge=1),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> MessageListResponse:
	decoded_after = None
	if after:
		try:
			decoded_after = decode_cursor(after)
		except InvalidCursor:
			raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="invalid_cursor", headers={"X-Request-Id": get_request_id(request)}) from None
	bounded_limit = min(limit or settings.chat_history_limit, settings.chat_history_limit)
	return await list_messages(auth_user, conversation_id, after=decoded_after, limit=bounded_limit)


@router.post(
	"/conversations/{conversation_id}/messages",
	response_model=MessageResponse,
	status_code=status.HTTP_201_CREATED,
)
async def send_message_endpoint(
	conversation_id: str,
	payload: SendMessageRequest,
	x_socket_id: Optional[str] = Header(default=None, alias="X-Socket-Id"),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> MessageResponse:
	# The sender's own socket already shows the message; skip it on fan-out.
	return await send_message(auth_user, conversation_id, payload.body, origin_sid=x_socket_id or None)


@router.post("/conversations/{conversation_id}/read", response_model=MarkReadResponse)
async def mark_read_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> MarkReadResponse:
	return await mark_read(auth_user, conversation_id)


@router.get("/unread", response_model=UnreadSummaryResponse)
async def unread_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> UnreadSummaryResponse:
	return await unread_summary(auth_user)
