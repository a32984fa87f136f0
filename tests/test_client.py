"""
Tests for the client synchronization model: local store reconciliation,
admission, ephemeral AI turns and publishing, plus the API/auth/provider
stores. Sessions talk to a real in-process gateway via LoopbackTransport.
"""

import asyncio
import json

import httpx
import pytest

from byomchat import protocol
from byomchat.client.api import ApiClient, ApiError, Unauthorized
from byomchat.client.auth import AuthStore
from byomchat.client.chat import ChatSession, ChatStore
from byomchat.client.provider import ProviderConfig, ProviderStore
from byomchat.client.widget import ByomWidget, NotAuthenticated
from byomchat.storage.models import Message
from tests.helpers import LoopbackTransport


BASE = "http://byom.test"


def _mock_api(handler, token="tok-1"):
    auth = AuthStore(access_token=token)
    api = ApiClient(BASE, auth, transport=httpx.MockTransport(handler))
    return api, auth


def _backend(provider_registered=True, chat_status=200):
    """Fake provider backend. Records requests in .calls."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        calls.append((request.method, request.url.path, body, request.headers.get("authorization")))
        if request.url.path == "/provider" and request.method == "GET":
            if not provider_registered:
                return httpx.Response(404, json={"ok": False, "error": "Not Found"})
            return httpx.Response(200, json={
                "ok": True,
                "provider": {"provider": "openai", "config": {"apiKey": "sk-****abcd", "model": "gpt-4o-mini"}},
            })
        if request.url.path == "/chat":
            if chat_status == 401:
                return httpx.Response(401, json={"error": "token expired"})
            if chat_status != 200:
                return httpx.Response(chat_status, json={"error": "provider exploded"})
            return httpx.Response(200, json={"reply": f"echo: {body['prompt']}", "meta": {"modelId": "gpt-4o-mini"}})
        return httpx.Response(200, json={"ok": True})

    handler.calls = calls
    return handler


async def _drain(*sessions):
    for s in sessions:
        await s.listen()


# ---------------------------------------------------------------------------
# ChatStore
# ---------------------------------------------------------------------------

def test_store_notifies_subscribers_and_unsubscribes():
    store = ChatStore()
    seen = []
    unsubscribe = store.subscribe(lambda: seen.append(len(store.get("c1"))))
    store.add("c1", Message(author="a", role="user", text="x", ts=1))
    unsubscribe()
    store.add("c1", Message(author="a", role="user", text="y", ts=2))
    assert seen == [1]


def test_store_listener_error_does_not_block_others():
    store = ChatStore()
    seen = []

    def broken():
        raise RuntimeError("boom")

    store.subscribe(broken)
    store.subscribe(lambda: seen.append(True))
    store.add("c1", Message(author="a", role="user", text="x", ts=1))
    assert seen == [True]


def test_reconcile_confirms_pending_in_place():
    store = ChatStore()
    mine = Message(author="alice", role="user", text="hi", ts=10)
    store.add("c1", mine, pending=True)

    confirmed = store.reconcile("c1", Message(author="alice", role="user", text="hi", ts=10))

    assert confirmed is True
    assert len(store.get("c1")) == 1
    assert store.pending("c1") == []


def test_reconcile_appends_unmatched_broadcast():
    store = ChatStore()
    store.add("c1", Message(author="alice", role="user", text="hi", ts=10), pending=True)
    assert store.reconcile("c1", Message(author="bob", role="user", text="hi", ts=10)) is False
    assert len(store.get("c1")) == 2
    assert len(store.pending("c1")) == 1


def test_reconcile_identical_sends_each_confirmed_once():
    store = ChatStore()
    for _ in range(2):
        store.add("c1", Message(author="alice", role="user", text="ok", ts=5), pending=True)
    store.reconcile("c1", Message(author="alice", role="user", text="ok", ts=5))
    store.reconcile("c1", Message(author="alice", role="user", text="ok", ts=5))
    store.reconcile("c1", Message(author="alice", role="user", text="ok", ts=5))
    assert len(store.get("c1")) == 3


# ---------------------------------------------------------------------------
# ChatSession against the gateway
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_two_clients_get_identical_history_and_both_see_message(gateway, store):
    store.append("demo", Message(author="alice", role="user", text="earlier", ts=1))
    alice = ChatSession("alice", "demo", LoopbackTransport(gateway))
    bob = ChatSession("bob", "demo", LoopbackTransport(gateway))
    await alice.join()
    await bob.join()
    await _drain(alice, bob)

    assert alice.joined and bob.joined
    assert alice.messages == bob.messages

    sent = await alice.send("hello bob", ts=1234)
    await _drain(alice, bob)

    assert alice.messages[-1] == bob.messages[-1]
    assert (bob.messages[-1].author, bob.messages[-1].text, bob.messages[-1].ts) == ("alice", "hello bob", 1234)
    # the echo confirmed the optimistic copy instead of duplicating it
    assert [m.text for m in alice.messages] == ["earlier", "hello bob"]
    assert alice.store.pending("demo") == []
    assert sent.ts == 1234


@pytest.mark.asyncio
async def test_malformed_join_yields_no_history(gateway, store):
    session = ChatSession("", "demo", LoopbackTransport(gateway))
    await session.join()
    await session.listen()
    assert not session.joined
    assert session.transport.conn.frames == []
    assert store.stats()["conversations"] == 0


@pytest.mark.asyncio
async def test_third_participant_refuses_to_stay(gateway, store):
    for uid in ("alice", "bob"):
        store.append("demo", Message(author=uid, role="user", text="hi", ts=1))
    carol = ChatSession("carol", "demo", LoopbackTransport(gateway))
    states = []
    carol.subscribe(lambda: states.append(carol.snapshot()))

    await carol.join()
    await carol.listen()

    assert not carol.joined
    assert carol.snapshot().admission_error == "Conversation already has two participants"
    assert carol.transport.closed
    assert gateway.rooms.members("demo") == []
    assert carol.messages == []
    assert states[-1].admission_error is not None


@pytest.mark.asyncio
async def test_existing_participant_may_rejoin_full_conversation(gateway, store):
    for uid in ("alice", "bob"):
        store.append("demo", Message(author=uid, role="user", text="hi", ts=1))
    bob = ChatSession("bob", "demo", LoopbackTransport(gateway))
    await bob.join()
    await bob.listen()
    assert bob.joined
    assert len(bob.messages) == 2


@pytest.mark.asyncio
async def test_server_error_event_marks_refusal(store):
    from byomchat.gateway import RoomManager, SessionGateway

    gw = SessionGateway(store, RoomManager(), enforce_participant_limit=True)
    for uid in ("alice", "bob"):
        store.append("demo", Message(author=uid, role="user", text="hi", ts=1))
    carol = ChatSession("carol", "demo", LoopbackTransport(gw))
    await carol.join()
    await carol.listen()
    assert not carol.joined
    assert carol.snapshot().admission_error == protocol.PARTICIPANTS_FULL
    assert carol.transport.closed


@pytest.mark.asyncio
async def test_leave_closes_transport(gateway):
    s = ChatSession("alice", "demo", LoopbackTransport(gateway))
    await s.join()
    await s.listen()
    await s.leave()
    assert not s.joined
    assert s.transport.closed
    assert gateway.rooms.members("demo") == []


# ---------------------------------------------------------------------------
# Ephemeral AI turn + publish
# ---------------------------------------------------------------------------

@pytest.fixture
def chat_pair(gateway):
    alice = ChatSession("alice", "demo", LoopbackTransport(gateway))
    bob = ChatSession("bob", "demo", LoopbackTransport(gateway))
    return alice, bob


async def _connected_widget(session, handler):
    api, auth = _mock_api(handler)
    provider = ProviderStore(api)
    await provider.bootstrap()
    return ByomWidget(api, provider, auth, session), auth, provider


@pytest.mark.asyncio
async def test_ai_turn_is_local_only_until_published(chat_pair, store):
    alice, bob = chat_pair
    await alice.join()
    await bob.join()
    await _drain(alice, bob)
    backend = _backend()
    widget, _, _ = await _connected_widget(alice, backend)

    reply = await widget.invoke("what is 6*7?")
    await _drain(alice, bob)

    prompt_msg, reply_msg = alice.messages[-2:]
    assert prompt_msg.ephemeral and prompt_msg.meta.sent_to_ai is True
    assert reply_msg is reply
    assert reply.ephemeral and reply.role == "assistant"
    assert reply.text == "echo: what is 6*7?"
    assert reply.meta.model_id == "gpt-4o-mini"
    # nothing but the join went over the wire
    assert [e for e, _ in alice.transport.sent] == ["join"]
    assert bob.messages == []
    assert store.read("demo") == []

    chat_call = [c for c in backend.calls if c[1] == "/chat"][0]
    assert chat_call[2]["prompt"] == "what is 6*7?"
    assert chat_call[2]["conversation"][-1]["text"] == "what is 6*7?"
    assert chat_call[3] == "Bearer tok-1"

    assert await alice.publish(reply) is True
    await _drain(alice, bob)

    sent_events = [e for e, _ in alice.transport.sent]
    assert sent_events == ["join", "assistant"]
    event, data = bob.transport.conn.events()[-1]
    assert event == "assistant"
    assert "ephemeral" not in data
    assert bob.messages[-1].ephemeral is False
    assert bob.messages[-1].text == "echo: what is 6*7?"
    # sender: published in place, echo confirmed, prompt still ephemeral
    assert [m.ephemeral for m in alice.messages] == [True, False]
    assert len(store.read("demo")) == 1


@pytest.mark.asyncio
async def test_publish_user_prompt_emits_message_with_meta(chat_pair):
    alice, bob = chat_pair
    await alice.join()
    await bob.join()
    await _drain(alice, bob)

    prompt = alice.add_ephemeral_prompt("share me")
    assert await alice.publish(prompt)
    await _drain(alice, bob)

    assert alice.transport.sent[-1][0] == "message"
    assert alice.transport.sent[-1][1]["meta"] == {"sentToAI": True}
    assert bob.messages[-1].author == "alice"
    assert bob.messages[-1].meta.sent_to_ai is True


@pytest.mark.asyncio
async def test_publish_twice_emits_once(chat_pair):
    alice, _ = chat_pair
    await alice.join()
    await alice.listen()
    reply = alice.add_ephemeral_reply("only once")

    assert await alice.publish(reply) is True
    assert await alice.publish(reply) is False
    assert await alice.publish(alice.messages[-1]) is False
    assert [e for e, _ in alice.transport.sent].count("assistant") == 1


@pytest.mark.asyncio
async def test_widget_requires_login(chat_pair):
    alice, _ = chat_pair
    api, auth = _mock_api(_backend(), token=None)
    widget = ByomWidget(api, ProviderStore(api), auth, alice)
    with pytest.raises(NotAuthenticated):
        await widget.invoke("hi")


@pytest.mark.asyncio
async def test_widget_without_provider_asks_for_setup(chat_pair):
    alice, _ = chat_pair
    widget, _, provider = await _connected_widget(alice, _backend(provider_registered=False))
    assert provider.connected is False
    assert await widget.invoke("hi") is None
    assert widget.needs_setup
    assert alice.messages == []


@pytest.mark.asyncio
async def test_widget_surfaces_errors_inline(chat_pair):
    alice, _ = chat_pair
    widget, _, _ = await _connected_widget(alice, _backend(chat_status=500))
    reply = await widget.invoke("hi")
    assert reply.ephemeral
    assert reply.text == "provider exploded"


@pytest.mark.asyncio
async def test_widget_401_clears_credential(chat_pair):
    alice, _ = chat_pair
    widget, auth, _ = await _connected_widget(alice, _backend(chat_status=401))

    reply = await widget.invoke("hi")

    assert reply.text == "Unauthorized. Please sign in again."
    assert auth.access_token is None
    assert auth.snapshot().unauthorized is True
    assert auth.consume_unauthorized_flag() is True
    assert auth.snapshot().unauthorized is False


# ---------------------------------------------------------------------------
# ApiClient / AuthStore / ProviderStore
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_api_401_raises_and_signs_out():
    api, auth = _mock_api(lambda r: httpx.Response(401))
    with pytest.raises(Unauthorized):
        await api.post("/chat", {"prompt": "x"})
    assert auth.auth_header() == {}


@pytest.mark.asyncio
async def test_api_error_message_fallbacks():
    api, _ = _mock_api(lambda r: httpx.Response(400, json={"error": "bad config"}))
    with pytest.raises(ApiError, match="bad config") as exc:
        await api.get("/provider")
    assert exc.value.status_code == 400

    api, _ = _mock_api(lambda r: httpx.Response(502, text="gateway down"))
    with pytest.raises(ApiError, match="gateway down"):
        await api.get("/provider")

    api, _ = _mock_api(lambda r: httpx.Response(503))
    with pytest.raises(ApiError, match="Service Unavailable"):
        await api.get("/provider")


def test_auth_store_session_lifecycle():
    auth = AuthStore()
    assert not auth.snapshot().signed_in
    auth.set_session("abc", {"email": "a@example.com"})
    assert auth.auth_header() == {"Authorization": "Bearer abc"}
    auth.sign_out()
    assert auth.auth_header() == {}
    assert auth.consume_unauthorized_flag() is False


@pytest.mark.asyncio
async def test_provider_bootstrap_reads_masked_config():
    api, _ = _mock_api(_backend())
    provider = ProviderStore(api)
    await provider.bootstrap()
    state = provider.snapshot()
    assert state.connected
    assert state.provider == "openai"
    assert state.masked_config.api_key == "sk-****abcd"
    assert state.loading is False


@pytest.mark.asyncio
async def test_provider_bootstrap_records_non_404_error():
    api, _ = _mock_api(lambda r: httpx.Response(500, json={"error": "db down"}))
    provider = ProviderStore(api)
    await provider.bootstrap()
    assert provider.snapshot().error == "db down"
    assert not provider.connected


@pytest.mark.asyncio
async def test_provider_register_then_disconnect():
    backend = _backend()
    api, _ = _mock_api(backend)
    provider = ProviderStore(api)

    await provider.register("openai", ProviderConfig(api_key="sk-secret", model="gpt-4o-mini"))
    assert provider.connected
    register_call = [c for c in backend.calls if c[1] == "/register-provider"][0]
    assert register_call[2] == {"provider": "openai", "config": {"apiKey": "sk-secret", "model": "gpt-4o-mini"}}

    await provider.disconnect()
    assert not provider.connected
    assert backend.calls[-1][0] == "DELETE"


@pytest.mark.asyncio
async def test_provider_register_failure_sets_error_and_raises():
    api, _ = _mock_api(lambda r: httpx.Response(422, json={"error": "missing apiKey"}))
    provider = ProviderStore(api)
    with pytest.raises(ApiError):
        await provider.register("http", ProviderConfig(endpoint="http://model.local"))
    assert provider.snapshot().error == "missing apiKey"
    assert provider.snapshot().loading is False


@pytest.mark.asyncio
async def test_provider_register_rejects_unknown_provider():
    api, _ = _mock_api(_backend())
    with pytest.raises(ValueError):
        await ProviderStore(api).register("anthropic", ProviderConfig())


# ---------------------------------------------------------------------------
# WebSocketTransport
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_transport_send_requires_connection():
    from byomchat.client.transport import WebSocketTransport

    transport = WebSocketTransport("ws://localhost:1/ws")
    with pytest.raises(ConnectionError):
        await transport.send("join", {"conversationId": "c1", "userId": "u1"})
    assert [frame async for frame in transport] == []
    await transport.close()


# ---------------------------------------------------------------------------
# Auth session binding
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_401_ends_chat_session_and_clears_log(chat_pair, gateway):
    alice, bob = chat_pair
    await alice.join()
    await bob.join()
    await _drain(alice, bob)
    await bob.send("hi alice", ts=7)
    await _drain(alice, bob)
    widget, auth, _ = await _connected_widget(alice, _backend(chat_status=401))
    alice.bind_auth(auth)

    await widget.invoke("are you there?")
    await asyncio.sleep(0)

    assert auth.snapshot().unauthorized
    assert not alice.joined
    assert alice.transport.closed
    assert alice.messages == []
    assert gateway.rooms.members("demo") == [bob.transport.conn]


@pytest.mark.asyncio
async def test_sign_in_does_not_end_chat_session(chat_pair):
    alice, _ = chat_pair
    auth = AuthStore()
    alice.bind_auth(auth)
    await alice.join()
    await alice.listen()

    auth.set_session("tok-2")
    await asyncio.sleep(0)

    assert alice.joined
    assert not alice.transport.closed


@pytest.mark.asyncio
async def test_provider_follows_auth_session():
    backend = _backend()
    api, auth = _mock_api(backend, token=None)
    provider = ProviderStore(api)
    provider.bind_auth(auth)

    auth.set_session("tok-9")
    await asyncio.gather(*provider._tasks)

    assert provider.connected
    assert backend.calls[0][:2] == ("GET", "/provider")
    assert backend.calls[0][3] == "Bearer tok-9"

    auth.sign_out()
    assert not provider.connected
    assert provider.snapshot().provider is None


def test_observable_requires_snapshot():
    from byomchat.client.observable import Observable

    with pytest.raises(TypeError):
        Observable()
