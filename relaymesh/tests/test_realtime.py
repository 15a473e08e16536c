"""
Realtime Fan-out Test Suite

Tests for:
- Session token verification and connection authentication
- Presence transitions announced to accepted friends only
- Conversation rooms, direct messages and typing indicators
- Error frames that keep the connection open
- The hub as the notifier behind ledger handlers

Run with: python -m pytest relaymesh/tests/test_realtime.py -v
"""

from __future__ import annotations

import time

import pytest
import pytest_asyncio

from relaymesh.core.config import RealtimeConfig
from relaymesh.core.errors import ErrorCode
from relaymesh.core.types import MessageStatus, PresenceStatus
from relaymesh.ledger.events import MessageSent
from relaymesh.ledger.handlers import LedgerEventHandlers
from relaymesh.realtime import (
    Authenticator,
    ClientEvent,
    Credentials,
    Envelope,
    FanoutHub,
    PresenceRegistry,
    ServerEvent,
    conversation_room,
    encode_session_token,
    verify_session_token,
)
from relaymesh.sync.materializer import MessageMaterializer
from relaymesh.tests.conftest import ALICE, BOB, CAROL, HASH_1, RecordingConnection, assert_err, assert_ok

SECRET = "test-secret"


@pytest_asyncio.fixture
async def presence():
    registry = PresenceRegistry()
    await registry.start()
    yield registry
    await registry.stop()


@pytest.fixture
def authenticator(store) -> Authenticator:
    return Authenticator(store, RealtimeConfig(session_secret=SECRET))


@pytest.fixture
def materializer(store, queue) -> MessageMaterializer:
    return MessageMaterializer(store, queue)


@pytest.fixture
def hub(store, authenticator, presence, materializer) -> FanoutHub:
    return FanoutHub(store, authenticator, presence, materializer)


async def connect(hub: FanoutHub, connection_id: str, address: str) -> RecordingConnection:
    connection = RecordingConnection(connection_id)
    assert_ok(await hub.connect(connection, Credentials(address=address)))
    return connection


async def emit(hub: FanoutHub, connection: RecordingConnection, event: str, **data) -> None:
    await hub.handle(connection.id, Envelope(event, data).encode())


async def befriend(store, a: str, b: str):
    pa = assert_ok(await store.participants.ensure(a))
    pb = assert_ok(await store.participants.ensure(b))
    assert_ok(await store.friendships.upsert_accepted(pa.id, pb.id))
    return pa, pb


# =============================================================================
# SESSION TOKENS
# =============================================================================
def test_session_token_round_trip_and_rejections():
    now = time.time()
    token = encode_session_token({"sub": "p1", "exp": now + 60, "iss": "sessions"}, SECRET)

    claims = assert_ok(verify_session_token(token, SECRET, issuer="sessions", now=now))
    assert claims["sub"] == "p1"

    header, payload, signature = token.split(".")
    tampered = f"{header}.{payload}.{'A' * len(signature)}"
    assert "bad signature" in assert_err(verify_session_token(tampered, SECRET)).message
    assert "bad signature" in assert_err(verify_session_token(token, "other-secret")).message
    assert "expired" in assert_err(verify_session_token(token, SECRET, now=now + 3600)).message
    assert "issuer" in assert_err(verify_session_token(token, SECRET, issuer="elsewhere", now=now)).message
    assert "malformed" in assert_err(verify_session_token("not-a-jwt", SECRET)).message
    assert "no session secret" in assert_err(verify_session_token(token, "")).message


def test_credentials_from_request():
    creds = Credentials.from_request("Bearer abc", {"address": ALICE})
    assert creds == Credentials(token="abc", address=ALICE)
    assert Credentials.from_request(None, {"token": "q"}).token == "q"
    assert Credentials.from_request("Basic xyz", {}) == Credentials()


# =============================================================================
# AUTHENTICATION
# =============================================================================
@pytest.mark.asyncio
async def test_address_credential_provisions_lowercased_participant(store, authenticator):
    participant = assert_ok(await authenticator.authenticate(Credentials(address=BOB.upper().replace("0X", "0x"))))
    assert participant.address == BOB
    assert not participant.is_registered
    stored = assert_ok(await store.participants.get(participant.id))
    assert stored.last_seen is not None


@pytest.mark.asyncio
async def test_token_credential_resolves_subject(store, authenticator):
    alice = assert_ok(await store.participants.ensure(ALICE))
    token = encode_session_token({"sub": alice.id, "exp": time.time() + 60}, SECRET)
    assert assert_ok(await authenticator.authenticate(Credentials(token=token))).id == alice.id

    fresh = encode_session_token({"sub": "unknown", "address": CAROL}, SECRET)
    assert assert_ok(await authenticator.authenticate(Credentials(token=fresh))).address == CAROL


@pytest.mark.asyncio
async def test_bad_token_does_not_fall_back_to_address(authenticator):
    forged = encode_session_token({"sub": "x"}, "wrong")
    error = assert_err(await authenticator.authenticate(Credentials(token=forged, address=ALICE)))
    assert error.code is ErrorCode.REALTIME_INVALID_TOKEN


@pytest.mark.asyncio
async def test_missing_credentials_message(store):
    authenticator = Authenticator(store, RealtimeConfig(session_secret=SECRET, allow_address_auth=False))
    error = assert_err(await authenticator.authenticate(Credentials()))
    assert error.message == "Authentication required: provide either token or address"
    assert_err(await authenticator.authenticate(Credentials(address=ALICE)))


@pytest.mark.asyncio
async def test_rejected_connection_gets_error_frame_and_no_rooms(hub):
    connection = RecordingConnection("c1")
    error = assert_err(await hub.connect(connection, Credentials(address="0x1234")))
    assert error.code is ErrorCode.REALTIME_AUTHENTICATION_REQUIRED
    assert connection.events(ServerEvent.ERROR) == [{"message": error.message}]
    assert hub.connection_count == 0

    # frames from an unauthenticated socket are ignored
    await hub.handle("c1", Envelope(ClientEvent.JOIN_CONVERSATION, {"conversationId": "x"}).encode())
    assert len(connection.frames) == 1


# =============================================================================
# PRESENCE
# =============================================================================
@pytest.mark.asyncio
async def test_presence_transitions_reach_accepted_friends_only(store, hub, presence):
    alice, bob = await befriend(store, ALICE, BOB)
    bob_conn = await connect(hub, "b1", BOB)
    carol_conn = await connect(hub, "c1", CAROL)

    first = await connect(hub, "a1", ALICE)
    second = await connect(hub, "a2", ALICE)
    online = bob_conn.events(ServerEvent.FRIEND_PRESENCE_UPDATED)
    assert [(e["userId"], e["status"]) for e in online] == [(alice.id, "online")]
    assert carol_conn.events(ServerEvent.FRIEND_PRESENCE_UPDATED) == []
    assert await presence.connection_count(alice.id) == 2

    bob_conn.clear()
    await hub.disconnect(first.id)
    assert bob_conn.events(ServerEvent.FRIEND_PRESENCE_UPDATED) == []
    assert await presence.status_of(alice.id) is PresenceStatus.ONLINE

    await hub.disconnect(second.id)
    await hub.disconnect(second.id)
    offline = bob_conn.events(ServerEvent.FRIEND_PRESENCE_UPDATED)
    assert [(e["userId"], e["status"]) for e in offline] == [(alice.id, "offline")]
    assert await presence.status_of(alice.id) is PresenceStatus.OFFLINE
    assert carol_conn.events(ServerEvent.FRIEND_PRESENCE_UPDATED) == []


@pytest.mark.asyncio
async def test_update_presence_broadcasts_status(store, hub):
    alice, _ = await befriend(store, ALICE, BOB)
    bob_conn = await connect(hub, "b1", BOB)
    alice_conn = await connect(hub, "a1", ALICE)
    bob_conn.clear()

    await emit(hub, alice_conn, ClientEvent.UPDATE_PRESENCE, status="away")
    [update] = bob_conn.events(ServerEvent.FRIEND_PRESENCE_UPDATED)
    assert update["userId"] == alice.id and update["status"] == "away"

    await emit(hub, alice_conn, ClientEvent.UPDATE_PRESENCE, status="dancing")
    assert alice_conn.events(ServerEvent.ERROR)


@pytest.mark.asyncio
async def test_client_status_changes_never_fake_an_offline(store, hub, presence):
    alice, _ = await befriend(store, ALICE, BOB)
    bob_conn = await connect(hub, "b1", BOB)
    alice_conn = await connect(hub, "a1", ALICE)
    bob_conn.clear()

    await emit(hub, alice_conn, ClientEvent.UPDATE_PRESENCE, status="busy")
    await emit(hub, alice_conn, ClientEvent.UPDATE_PRESENCE, status="busy")
    await emit(hub, alice_conn, ClientEvent.UPDATE_PRESENCE, status="offline")
    await emit(hub, alice_conn, ClientEvent.UPDATE_PRESENCE, status="offline")
    assert [e["status"] for e in bob_conn.events(ServerEvent.FRIEND_PRESENCE_UPDATED)] == ["busy"]
    assert alice_conn.events(ServerEvent.ERROR) == [
        {"message": "Invalid 'status': expected online, away or busy"},
    ] * 2
    assert await presence.status_of(alice.id) is PresenceStatus.BUSY

    bob_conn.clear()
    await hub.disconnect(alice_conn.id)
    offline = bob_conn.events(ServerEvent.FRIEND_PRESENCE_UPDATED)
    assert [(e["userId"], e["status"]) for e in offline] == [(alice.id, "offline")]


# =============================================================================
# CONVERSATIONS AND MESSAGES
# =============================================================================
@pytest.mark.asyncio
async def test_direct_message_reaches_both_members_only(store, hub):
    alice = assert_ok(await store.participants.ensure(ALICE))
    bob = assert_ok(await store.participants.ensure(BOB))
    conversation, _ = assert_ok(await store.conversations.ensure_direct(alice.id, bob.id, alice.id))

    alice_conn = await connect(hub, "a1", ALICE)
    bob_conn = await connect(hub, "b1", BOB)
    carol_conn = await connect(hub, "c1", CAROL)

    await emit(hub, alice_conn, ClientEvent.JOIN_CONVERSATION, conversationId=conversation.id)
    await emit(hub, bob_conn, ClientEvent.JOIN_CONVERSATION, conversationId=conversation.id)
    assert alice_conn.events(ServerEvent.CONVERSATION_JOINED) == [{"conversationId": conversation.id}]
    assert hub.room_members(conversation_room(conversation.id)) == {"a1", "b1"}

    await emit(hub, alice_conn, ClientEvent.SEND_MESSAGE, conversationId=conversation.id, content="hi", tempId="t1")

    for conn in (alice_conn, bob_conn):
        [delivered] = conn.events(ServerEvent.NEW_MESSAGE)
        assert delivered["tempId"] == "t1"
        assert delivered["content"] == "hi"
        assert delivered["status"] == MessageStatus.CONFIRMED.value
        assert delivered["sender"]["address"] == ALICE
    assert carol_conn.events(ServerEvent.NEW_MESSAGE) == []

    [stored] = assert_ok(await store.messages.list_for_conversation(conversation.id))
    assert stored.content == "hi"


@pytest.mark.asyncio
async def test_non_member_cannot_join_or_send(store, hub):
    alice = assert_ok(await store.participants.ensure(ALICE))
    bob = assert_ok(await store.participants.ensure(BOB))
    conversation, _ = assert_ok(await store.conversations.ensure_direct(alice.id, bob.id, alice.id))
    carol_conn = await connect(hub, "c1", CAROL)

    await emit(hub, carol_conn, ClientEvent.JOIN_CONVERSATION, conversationId=conversation.id)
    await emit(hub, carol_conn, ClientEvent.JOIN_CONVERSATION)
    assert carol_conn.events(ServerEvent.ERROR) == [
        {"message": "Access denied to conversation"},
        {"message": "Conversation ID required"},
    ]

    await emit(hub, carol_conn, ClientEvent.SEND_MESSAGE, conversationId=conversation.id, content="x", tempId="t9")
    assert carol_conn.events(ServerEvent.MESSAGE_ERROR) == [
        {"error": "Access denied to conversation", "tempId": "t9"},
    ]
    assert assert_ok(await store.messages.count()) == 0
    assert hub.connection_count == 1


@pytest.mark.asyncio
async def test_typing_indicator_skips_the_sender(store, hub):
    alice = assert_ok(await store.participants.ensure(ALICE))
    bob = assert_ok(await store.participants.ensure(BOB))
    conversation, _ = assert_ok(await store.conversations.ensure_direct(alice.id, bob.id, alice.id))
    alice_conn = await connect(hub, "a1", ALICE)
    bob_conn = await connect(hub, "b1", BOB)
    for conn in (alice_conn, bob_conn):
        await emit(hub, conn, ClientEvent.JOIN_CONVERSATION, conversationId=conversation.id)

    await emit(hub, alice_conn, ClientEvent.TYPING_START, conversationId=conversation.id)
    await emit(hub, alice_conn, ClientEvent.TYPING_STOP, conversationId=conversation.id)

    assert bob_conn.events(ServerEvent.USER_TYPING) == [
        {"userId": alice.id, "username": None, "conversationId": conversation.id},
    ]
    assert len(bob_conn.events(ServerEvent.USER_STOPPED_TYPING)) == 1
    assert alice_conn.events(ServerEvent.USER_TYPING) == []


@pytest.mark.asyncio
async def test_non_member_cannot_type_into_a_conversation(store, hub):
    alice = assert_ok(await store.participants.ensure(ALICE))
    bob = assert_ok(await store.participants.ensure(BOB))
    conversation, _ = assert_ok(await store.conversations.ensure_direct(alice.id, bob.id, alice.id))
    alice_conn = await connect(hub, "a1", ALICE)
    carol_conn = await connect(hub, "c1", CAROL)
    await emit(hub, alice_conn, ClientEvent.JOIN_CONVERSATION, conversationId=conversation.id)

    await emit(hub, carol_conn, ClientEvent.TYPING_START, conversationId=conversation.id)
    await emit(hub, carol_conn, ClientEvent.TYPING_STOP)

    assert alice_conn.events(ServerEvent.USER_TYPING) == []
    assert carol_conn.events(ServerEvent.ERROR) == [
        {"message": "Access denied to conversation"},
        {"message": "Conversation ID required"},
    ]


@pytest.mark.asyncio
async def test_message_status_updates_are_owner_only(store, hub):
    alice = assert_ok(await store.participants.ensure(ALICE))
    bob = assert_ok(await store.participants.ensure(BOB))
    conversation, _ = assert_ok(await store.conversations.ensure_direct(alice.id, bob.id, alice.id))
    alice_conn = await connect(hub, "a1", ALICE)
    bob_conn = await connect(hub, "b1", BOB)
    for conn in (alice_conn, bob_conn):
        await emit(hub, conn, ClientEvent.JOIN_CONVERSATION, conversationId=conversation.id)

    await emit(hub, alice_conn, ClientEvent.SEND_MESSAGE, conversationId=conversation.id, content="hi", txHash="0xabc")
    [sent] = alice_conn.events(ServerEvent.NEW_MESSAGE)
    assert sent["status"] == "pending"

    await emit(hub, bob_conn, ClientEvent.UPDATE_MESSAGE_STATUS, messageId=sent["id"], status="confirmed")
    assert bob_conn.events(ServerEvent.ERROR) == [{"message": "Message not found or access denied"}]

    await emit(hub, alice_conn, ClientEvent.UPDATE_MESSAGE_STATUS, messageId=sent["id"], status="confirmed", blockNumber=9)
    [update] = bob_conn.events(ServerEvent.MESSAGE_UPDATED)
    assert update["messageId"] == sent["id"]
    assert update["status"] == "confirmed"
    assert update["blockNumber"] == 9


@pytest.mark.asyncio
async def test_bad_frames_answer_with_error_and_keep_the_socket(store, hub):
    conn = await connect(hub, "a1", ALICE)
    await hub.handle(conn.id, "{not json")
    await emit(hub, conn, "teleport")
    await hub.handle(conn.id, '{"event": "typing_start", "data": [1]}')

    errors = conn.events(ServerEvent.ERROR)
    assert len(errors) == 3
    assert errors[1] == {"message": "Unknown event 'teleport'"}
    assert hub.connection_count == 1
    assert not conn.closed


@pytest.mark.asyncio
async def test_failing_socket_does_not_block_the_room(store, hub):
    alice = assert_ok(await store.participants.ensure(ALICE))
    bob = assert_ok(await store.participants.ensure(BOB))
    conversation, _ = assert_ok(await store.conversations.ensure_direct(alice.id, bob.id, alice.id))

    broken = RecordingConnection("dead", fail_sends=True)
    assert_ok(await hub.connect(broken, Credentials(address=ALICE)))
    healthy = await connect(hub, "b1", BOB)
    await emit(hub, broken, ClientEvent.JOIN_CONVERSATION, conversationId=conversation.id)
    await emit(hub, healthy, ClientEvent.JOIN_CONVERSATION, conversationId=conversation.id)

    delivered = await hub.emit_to_room(conversation_room(conversation.id), "ping", {})
    assert delivered == 1
    assert healthy.events("ping") == [{}]


# =============================================================================
# LEDGER BROADCASTS
# =============================================================================
@pytest.mark.asyncio
async def test_hub_carries_ledger_notifications(store, hub, materializer):
    handlers = LedgerEventHandlers(store, materializer, hub)
    bob_conn = await connect(hub, "b1", BOB)

    await handlers.on_message_sent(MessageSent(sender=ALICE, recipient=BOB, content_hash=HASH_1, block_timestamp=1_700_000_000))

    [notification] = bob_conn.events(ServerEvent.NEW_MESSAGE_NOTIFICATION)
    assert notification["sender"] == ALICE
    assert notification["messageType"] == "blockchain"
    assert notification["timestamp"] == 1_700_000_000_000
