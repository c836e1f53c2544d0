from datetime import datetime, timedelta, timezone

import pytest

from messaging.domain.chat.collaborators import AllowAllGate, StaticProfileDirectory
from messaging.domain.chat.exceptions import (
    InvalidMessage,
    NotAuthorized,
    RateLimited,
    TransientDeliveryFailure,
)
from messaging.domain.chat.models import ParticipantProfile
from messaging.domain.chat.repo import ChatRepository
from messaging.domain.chat.service import ChatService
from messaging.infra.auth import AuthenticatedUser
from messaging.settings import settings

ALICE = AuthenticatedUser(id="alice")
BOB = AuthenticatedUser(id="bob")
CAROL = AuthenticatedUser(id="carol")
T0 = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


class FailingRepo(ChatRepository):
    async def append_message(self, *args, **kwargs):
        raise OSError("connection reset")


@pytest.fixture
def emitted(monkeypatch):
    events: list = []

    async def stub_emit_message(conversation_id, payload, *, skip_sid=None):
        events.append(("chat:message", conversation_id, payload, skip_sid))

    async def stub_emit_update(conversation_id, payload):
        events.append(("chat:update", conversation_id, payload, None))

    async def stub_emit_inbox(user_id, payload):
        events.append(("chat:inbox", user_id, payload, None))

    monkeypatch.setattr("messaging.domain.chat.sockets.emit_message", stub_emit_message)
    monkeypatch.setattr("messaging.domain.chat.sockets.emit_update", stub_emit_update)
    monkeypatch.setattr("messaging.domain.chat.sockets.emit_inbox", stub_emit_inbox)
    return events


@pytest.fixture
def gate():
    return AllowAllGate()


@pytest.fixture
def profiles():
    return StaticProfileDirectory(
        [
            ParticipantProfile(user_id="alice", handle="alice"),
            ParticipantProfile(user_id="bob", handle="bob", avatar_url="avatars/bob.png"),
            ParticipantProfile(user_id="carol", handle="carol", active=False),
        ]
    )


@pytest.fixture
def service(gate, profiles):
    return ChatService(gate=gate, profiles=profiles)


@pytest.mark.asyncio
async def test_send_trims_body_and_fans_out(service, emitted):
    conversation = await service.start_conversation(ALICE, "bob")

    message = await service.send_message(
        ALICE, conversation.conversation_id, "  hello there \n", origin_sid="sid-alice", now=T0
    )

    assert message.body == "hello there"
    assert message.sender_id == "alice"
    assert message.recipient_id == "bob"
    assert message.read_at is None
    kinds = [event[0] for event in emitted]
    assert kinds == ["chat:message", "chat:inbox"]
    _, room_id, payload, skip_sid = emitted[0]
    assert room_id == conversation.conversation_id
    assert payload["message_id"] == message.message_id
    assert skip_sid == "sid-alice"
    _, inbox_user, inbox_payload, _ = emitted[1]
    assert inbox_user == "bob"
    assert inbox_payload["last_message_preview"] == "hello there"


@pytest.mark.asyncio
@pytest.mark.parametrize("body", ["", "   ", "\n\t"])
async def test_blank_body_is_rejected(service, emitted, body):
    conversation = await service.start_conversation(ALICE, "bob")

    with pytest.raises(InvalidMessage) as excinfo:
        await service.send_message(ALICE, conversation.conversation_id, body)
    assert excinfo.value.reason == "empty_body"
    assert emitted == []


@pytest.mark.asyncio
async def test_oversized_body_is_rejected(service):
    conversation = await service.start_conversation(ALICE, "bob")

    with pytest.raises(InvalidMessage) as excinfo:
        await service.send_message(ALICE, conversation.conversation_id, "x" * (settings.chat_body_max_length + 1))
    assert excinfo.value.reason == "body_too_long"


@pytest.mark.asyncio
async def test_non_participant_cannot_send_or_read(service):
    conversation = await service.start_conversation(ALICE, "bob")

    with pytest.raises(NotAuthorized):
        await service.send_message(CAROL, conversation.conversation_id, "hi")
    with pytest.raises(NotAuthorized):
        await service.list_messages(CAROL, conversation.conversation_id)
    with pytest.raises(NotAuthorized):
        await service.mark_read(CAROL, conversation.conversation_id)


@pytest.mark.asyncio
async def test_block_after_start_refuses_sends_but_keeps_history(service, gate, emitted):
    conversation = await service.start_conversation(ALICE, "bob")
    await service.send_message(ALICE, conversation.conversation_id, "before", now=T0)

    gate.deny("alice", "bob")

    with pytest.raises(NotAuthorized) as excinfo:
        await service.send_message(BOB, conversation.conversation_id, "after")
    assert excinfo.value.reason == "relationship_required"
    history = await service.list_messages(BOB, conversation.conversation_id)
    assert [item.body for item in history.items] == ["before"]


@pytest.mark.asyncio
async def test_store_failure_is_transient(gate, profiles, emitted):
    service = ChatService(FailingRepo(), gate=gate, profiles=profiles)
    conversation = await service.start_conversation(ALICE, "bob")

    with pytest.raises(TransientDeliveryFailure) as excinfo:
        await service.send_message(ALICE, conversation.conversation_id, "hi")
    assert excinfo.value.status_code == 503
    assert emitted == []


@pytest.mark.asyncio
async def test_send_rate_limit(service, monkeypatch):
    monkeypatch.setattr(settings, "chat_send_per_minute", 2)
    conversation = await service.start_conversation(ALICE, "bob")

    await service.send_message(ALICE, conversation.conversation_id, "one")
    await service.send_message(ALICE, conversation.conversation_id, "two")
    with pytest.raises(RateLimited):
        await service.send_message(ALICE, conversation.conversation_id, "three")
    # Budgets are per sender.
    await service.send_message(BOB, conversation.conversation_id, "still fine")


@pytest.mark.asyncio
async def test_fanout_failure_does_not_fail_the_send(service, monkeypatch):
    async def broken_emit(*args, **kwargs):
        raise RuntimeError("socket layer down")

    monkeypatch.setattr("messaging.domain.chat.sockets.emit_message", broken_emit)
    monkeypatch.setattr("messaging.domain.chat.sockets.emit_inbox", broken_emit)
    conversation = await service.start_conversation(ALICE, "bob")

    message = await service.send_message(ALICE, conversation.conversation_id, "durable")

    history = await service.list_messages(BOB, conversation.conversation_id)
    assert [item.message_id for item in history.items] == [message.message_id]


@pytest.mark.asyncio
async def test_mark_read_emits_one_update_per_transitioned_message(service, emitted):
    conversation = await service.start_conversation(ALICE, "bob")
    cid = conversation.conversation_id
    first = await service.send_message(ALICE, cid, "one", now=T0)
    second = await service.send_message(ALICE, cid, "two", now=T0 + timedelta(seconds=1))
    await service.send_message(BOB, cid, "reply", now=T0 + timedelta(seconds=2))
    emitted.clear()

    result = await service.mark_read(BOB, cid, now=T0 + timedelta(minutes=5))
    repeat = await service.mark_read(BOB, cid)

    assert result.updated == 2
    assert repeat.updated == 0
    updates = [payload for kind, _, payload, _ in emitted if kind == "chat:update"]
    assert [u["message_id"] for u in updates] == [first.message_id, second.message_id]
    assert all(u["reader_id"] == "bob" and u["conversation_id"] == cid for u in updates)
    assert updates[0]["read_at"].startswith("2024-03-01T09:35:00")


@pytest.mark.asyncio
async def test_list_messages_returns_resume_cursor(service):
    conversation = await service.start_conversation(ALICE, "bob")
    cid = conversation.conversation_id
    for i in range(3):
        await service.send_message(ALICE, cid, f"m{i}", now=T0 + timedelta(seconds=i))

    page = await service.list_messages(BOB, cid, limit=2)
    assert [item.body for item in page.items] == ["m1", "m2"]
    assert page.next_cursor

    from messaging.api.pagination import decode_cursor

    newer = await service.list_messages(BOB, cid, after=decode_cursor(page.next_cursor))
    assert newer.items == []
    assert newer.next_cursor == page.next_cursor


@pytest.mark.asyncio
async def test_inbox_lists_active_peers_with_unread_counts(service):
    with_bob = await service.start_conversation(ALICE, "bob")
    with_carol = await service.start_conversation(ALICE, "carol")
    await service.send_message(BOB, with_bob.conversation_id, "ping", now=T0)
    await service.send_message(CAROL, with_carol.conversation_id, "hidden", now=T0)

    inbox = await service.list_conversations(ALICE)
    summary = await service.unread_summary(ALICE)

    assert [item.conversation_id for item in inbox.items] == [with_bob.conversation_id]
    entry = inbox.items[0]
    assert entry.peer.user_id == "bob"
    assert entry.peer.avatar_url == "avatars/bob.png"
    assert entry.unread_count == 1
    assert entry.last_message_preview == "ping"
    assert summary.conversations == 2
    assert summary.messages == 2
