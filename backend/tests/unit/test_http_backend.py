import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport

from messaging.client.transport import HttpChatBackend
from messaging.domain.chat.exceptions import (
    InvalidMessage,
    NotAuthorized,
    RateLimited,
    TransientDeliveryFailure,
)
from messaging.main import app

ALICE = "11111111-1111-1111-1111-111111111111"
BOB = "22222222-2222-2222-2222-222222222222"


def _backend(user_id: str, **kwargs) -> HttpChatBackend:
    client = httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")
    return HttpChatBackend(client=client, user_id=user_id, **kwargs)


@pytest_asyncio.fixture
async def backends():
    alice = _backend(ALICE, socket_id=lambda: "sid-alice")
    bob = _backend(BOB)
    try:
        yield alice, bob
    finally:
        for backend in (alice, bob):
            await backend._client.aclose()


@pytest.mark.asyncio
async def test_round_trip_through_the_api(backends, monkeypatch):
    skipped = []

    async def record(conversation_id, payload, *, skip_sid=None):
        skipped.append(skip_sid)

    monkeypatch.setattr("messaging.domain.chat.sockets.emit_message", record)
    alice, bob = backends
    conversation = await alice.start_conversation(BOB)
    cid = conversation["conversation_id"]

    sent = await alice.send_message(cid, "hello over http")
    history = await bob.list_messages(cid)
    newer = await bob.list_messages(cid, after=sent.sort_key)
    updated = await bob.mark_read(cid)
    unread = await bob.unread()

    assert sent.body == "hello over http"
    assert sent.sender_id == ALICE
    assert [m.message_id for m in history] == [sent.message_id]
    assert newer == []
    assert updated == 1
    assert unread == {"conversations": 0, "messages": 0}
    assert skipped == ["sid-alice"]


@pytest.mark.asyncio
async def test_api_errors_map_to_chat_errors(backends):
    alice, _ = backends
    conversation = await alice.start_conversation(BOB)

    with pytest.raises(NotAuthorized) as self_chat:
        await alice.start_conversation(ALICE)
    with pytest.raises(InvalidMessage) as empty:
        await alice.send_message(conversation["conversation_id"], "   ")

    assert self_chat.value.reason == "self_conversation"
    assert empty.value.reason == "empty_body"


def _mock_backend(handler) -> HttpChatBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://chat.test")
    return HttpChatBackend(client=client, token="token-123")


@pytest.mark.asyncio
async def test_server_failure_is_transient():
    def handler(request):
        assert request.headers["Authorization"] == "Bearer token-123"
        return httpx.Response(503, json={"detail": "store_unavailable"})

    backend = _mock_backend(handler)

    with pytest.raises(TransientDeliveryFailure) as excinfo:
        await backend.send_message("c1", "hi")
    assert excinfo.value.reason == "store_unavailable"
    assert excinfo.value.status_code == 503


@pytest.mark.asyncio
async def test_rate_limit_response():
    backend = _mock_backend(lambda request: httpx.Response(429, json={"detail": "rate_limited"}))

    with pytest.raises(RateLimited):
        await backend.send_message("c1", "hi")


@pytest.mark.asyncio
async def test_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    backend = _mock_backend(handler)

    with pytest.raises(TransientDeliveryFailure) as excinfo:
        await backend.mark_read("c1")
    assert excinfo.value.reason == "network_error"


@pytest.mark.asyncio
async def test_non_json_error_body_uses_status_reason():
    backend = _mock_backend(lambda request: httpx.Response(502, text="bad gateway"))

    with pytest.raises(TransientDeliveryFailure) as excinfo:
        await backend.list_messages("c1")
    assert excinfo.value.reason == "http_502"
