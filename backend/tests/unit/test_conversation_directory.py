import asyncio

import pytest

from messaging.domain.chat.collaborators import AllowAllGate
from messaging.domain.chat.directory import ConversationDirectory
from messaging.domain.chat.exceptions import NotAuthorized
from messaging.domain.chat.repo import ChatRepository


@pytest.fixture
def gate():
    return AllowAllGate()


@pytest.fixture
def directory(gate):
    return ConversationDirectory(ChatRepository(), gate)


@pytest.mark.asyncio
async def test_simultaneous_starts_from_both_sides_share_one_conversation(directory):
    calls = []
    for _ in range(10):
        calls.append(directory.get_or_create("alice", "bob"))
        calls.append(directory.get_or_create("bob", "alice"))

    conversations = await asyncio.gather(*calls)

    assert len({c.conversation_id for c in conversations}) == 1


@pytest.mark.asyncio
async def test_self_conversation_is_refused(directory):
    with pytest.raises(NotAuthorized) as excinfo:
        await directory.get_or_create("alice", "alice")
    assert excinfo.value.reason == "self_conversation"
    assert excinfo.value.status_code == 403


@pytest.mark.asyncio
async def test_relationship_gate_refusal(directory, gate):
    gate.deny("alice", "mallory")

    with pytest.raises(NotAuthorized) as excinfo:
        await directory.get_or_create("mallory", "alice")
    assert excinfo.value.reason == "relationship_required"


@pytest.mark.asyncio
async def test_get_for_participant_hides_foreign_and_missing_conversations(directory):
    conversation = await directory.get_or_create("alice", "bob")

    found = await directory.get_for_participant(conversation.conversation_id, "bob")
    assert found.conversation_id == conversation.conversation_id

    with pytest.raises(NotAuthorized):
        await directory.get_for_participant(conversation.conversation_id, "carol")
    with pytest.raises(NotAuthorized):
        await directory.get_for_participant("does-not-exist", "alice")
