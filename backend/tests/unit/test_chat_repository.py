import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from messaging.domain.chat.models import ConversationPair
from messaging.domain.chat.repo import ChatRepository

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


async def _conversation(repo: ChatRepository, a: str = "alice", b: str = "bob"):
    conversation, _ = await repo.get_or_create_conversation(ConversationPair.from_participants(a, b), T0)
    return conversation


@pytest.mark.asyncio
async def test_get_or_create_is_idempotent_for_either_order():
    repo = ChatRepository()
    first, created_first = await repo.get_or_create_conversation(ConversationPair.from_participants("alice", "bob"), T0)
    second, created_second = await repo.get_or_create_conversation(ConversationPair.from_participants("bob", "alice"), T0)

    assert created_first is True
    assert created_second is False
    assert first.conversation_id == second.conversation_id
    assert (first.user_a, first.user_b) == ("alice", "bob")


@pytest.mark.asyncio
async def test_concurrent_creation_converges_on_one_conversation():
    repo = ChatRepository()
    pairs = [
        ConversationPair.from_participants("alice", "bob") if i % 2 else ConversationPair.from_participants("bob", "alice")
        for i in range(20)
    ]
    results = await asyncio.gather(*(repo.get_or_create_conversation(pair, T0) for pair in pairs))

    assert len({conversation.conversation_id for conversation, _ in results}) == 1
    assert sum(1 for _, created in results if created) == 1


@pytest.mark.asyncio
async def test_append_assigns_increasing_seq_and_timestamps_even_with_identical_clock():
    repo = ChatRepository()
    conversation = await _conversation(repo)

    messages = [
        await repo.append_message(conversation.conversation_id, "alice", "bob", f"m{i}", T0, preview_length=100)
        for i in range(3)
    ]

    assert [m.seq for m in messages] == [1, 2, 3]
    assert messages[0].created_at == T0
    assert messages[0].created_at < messages[1].created_at < messages[2].created_at
    assert messages[1].created_at - messages[0].created_at == timedelta(microseconds=1)


@pytest.mark.asyncio
async def test_append_updates_conversation_preview():
    repo = ChatRepository()
    conversation = await _conversation(repo)
    body = "x" * 150

    message = await repo.append_message(conversation.conversation_id, "alice", "bob", body, T0, preview_length=100)
    stored = await repo.get_conversation(conversation.conversation_id)

    assert stored.last_message_at == message.created_at
    assert stored.last_message_preview == "x" * 100
    assert stored.last_seq == 1


@pytest.mark.asyncio
async def test_append_to_unknown_conversation_raises_lookup_error():
    repo = ChatRepository()
    with pytest.raises(LookupError):
        await repo.append_message("missing", "alice", "bob", "hi", T0, preview_length=100)


@pytest.mark.asyncio
async def test_list_orders_ascending_and_honours_after_cursor():
    repo = ChatRepository()
    conversation = await _conversation(repo)
    for i in range(5):
        await repo.append_message(
            conversation.conversation_id,
            "alice" if i % 2 == 0 else "bob",
            "bob" if i % 2 == 0 else "alice",
            f"m{i}",
            T0 + timedelta(seconds=i),
            preview_length=100,
        )

    everything = await repo.list_messages(conversation.conversation_id, after=None, limit=200)
    assert [m.body for m in everything] == ["m0", "m1", "m2", "m3", "m4"]

    tail = await repo.list_messages(conversation.conversation_id, after=(everything[1].created_at, everything[1].message_id), limit=2)
    assert [m.body for m in tail] == ["m2", "m3"]

    latest = await repo.list_messages(conversation.conversation_id, after=None, limit=2)
    assert [m.body for m in latest] == ["m3", "m4"]


@pytest.mark.asyncio
async def test_mark_read_only_touches_peer_messages_and_is_idempotent():
    repo = ChatRepository()
    conversation = await _conversation(repo)
    cid = conversation.conversation_id
    from_alice = await repo.append_message(cid, "alice", "bob", "hello", T0, preview_length=100)
    from_bob = await repo.append_message(cid, "bob", "alice", "hey", T0 + timedelta(seconds=1), preview_length=100)
    read_at = T0 + timedelta(minutes=1)

    changed = await repo.mark_read(cid, "bob", read_at)
    again = await repo.mark_read(cid, "bob", read_at + timedelta(minutes=1))

    assert [m.message_id for m in changed] == [from_alice.message_id]
    assert changed[0].read_at == read_at
    assert again == []
    stored = {m.message_id: m for m in await repo.list_messages(cid, after=None, limit=10)}
    assert stored[from_alice.message_id].read_at == read_at
    assert stored[from_bob.message_id].read_at is None


@pytest.mark.asyncio
async def test_mark_read_is_commutative_between_participants():
    repo = ChatRepository()
    conversation = await _conversation(repo)
    cid = conversation.conversation_id
    await repo.append_message(cid, "alice", "bob", "one", T0, preview_length=100)
    await repo.append_message(cid, "bob", "alice", "two", T0, preview_length=100)

    await asyncio.gather(repo.mark_read(cid, "alice", T0), repo.mark_read(cid, "bob", T0))

    messages = await repo.list_messages(cid, after=None, limit=10)
    assert all(m.read_at == T0 for m in messages)


@pytest.mark.asyncio
async def test_returned_messages_are_copies():
    repo = ChatRepository()
    conversation = await _conversation(repo)
    message = await repo.append_message(conversation.conversation_id, "alice", "bob", "hi", T0, preview_length=100)
    message.read_at = T0

    stored = await repo.list_messages(conversation.conversation_id, after=None, limit=10)
    assert stored[0].read_at is None


@pytest.mark.asyncio
async def test_unread_counts_and_conversation_listing_order():
    repo = ChatRepository()
    older = await _conversation(repo, "alice", "bob")
    newer = await _conversation(repo, "alice", "carol")
    empty = await _conversation(repo, "alice", "dave")
    await repo.append_message(older.conversation_id, "bob", "alice", "1", T0, preview_length=100)
    await repo.append_message(newer.conversation_id, "carol", "alice", "2", T0 + timedelta(hours=1), preview_length=100)
    await repo.append_message(newer.conversation_id, "carol", "alice", "3", T0 + timedelta(hours=2), preview_length=100)

    counts = await repo.unread_counts("alice")
    listing = await repo.list_conversations("alice")

    assert counts == {older.conversation_id: 1, newer.conversation_id: 2}
    assert [c.conversation_id for c in listing] == [
        newer.conversation_id,
        older.conversation_id,
        empty.conversation_id,
    ]
