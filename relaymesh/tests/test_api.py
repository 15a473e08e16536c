"""
HTTP and Websocket Surface Test Suite

Runs the assembled application on an aiohttp test server with an
in-memory ledger, queue and store.

Run with: python -m pytest relaymesh/tests/test_api.py -v
"""

from __future__ import annotations

import asyncio
import time

import pytest
import pytest_asyncio
from aiohttp import WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from relaymesh.api.router import Request, Response
from relaymesh.app import build_app
from relaymesh.core.config import RealtimeConfig, RelayMeshConfig, ServerConfig, StoreConfig, SyncConfig
from relaymesh.core.errors import RealtimeError, StorageError, ValidationError
from relaymesh.ledger.client import InMemoryLedger
from relaymesh.pipeline.queue import InMemoryJobQueue
from relaymesh.realtime import encode_session_token
from relaymesh.tests.conftest import ALICE, BOB, HASH_1, FakeSource, assert_ok, failing, make_fetcher

SECRET = "api-secret"
OPERATOR = "op-token"


def make_config() -> RelayMeshConfig:
    return RelayMeshConfig(
        store=StoreConfig(in_memory=True),
        sync=SyncConfig(auto_sync=False),
        realtime=RealtimeConfig(session_secret=SECRET),
        server=ServerConfig(operator_token=OPERATOR),
    )


class Harness:
    def __init__(self, app, client: TestClient, ledger: InMemoryLedger, queue: InMemoryJobQueue) -> None:
        self.app = app
        self.client = client
        self.ledger = ledger
        self.queue = queue

    async def direct_conversation(self):
        store = self.app.store
        alice = assert_ok(await store.participants.ensure(ALICE))
        bob = assert_ok(await store.participants.ensure(BOB))
        conversation, _ = assert_ok(await store.conversations.ensure_direct(alice.id, bob.id, alice.id))
        return alice, bob, conversation


async def start_harness(fetcher, ledger: InMemoryLedger | None = None) -> Harness:
    ledger = ledger or InMemoryLedger()
    queue = InMemoryJobQueue()
    app = assert_ok(await build_app(make_config(), ledger=ledger, queue=queue, fetcher=fetcher))
    await app.start()
    client = TestClient(TestServer(app.web_app()))
    await client.start_server()
    return Harness(app, client, ledger, queue)


async def stop_harness(harness: Harness) -> None:
    await harness.client.close()
    await harness.app.stop()


@pytest_asyncio.fixture
async def harness():
    started = await start_harness(make_fetcher(None, [FakeSource("gw-1", [b"hello"])]))
    yield started
    await stop_harness(started)


async def wait_until(predicate, timeout_s: float = 2.0) -> None:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if await predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not met in time")


# =============================================================================
# RESPONSE MAPPING
# =============================================================================
def test_error_codes_map_to_http_status():
    assert Response.from_error(ValidationError.missing_field("content", "Message content")).status == 400
    assert Response.from_error(RealtimeError.authentication_required()).status == 401
    assert Response.from_error(RealtimeError.access_denied("conversation", "p")).status == 403
    assert Response.from_error(StorageError.write_failed("insert")).status == 500


def test_request_helpers():
    request = Request.from_raw("POST", "/x", headers={"Authorization": "Bearer t0k"}, body=b'{"a": 1}')
    assert request.bearer_token == "t0k"
    assert request.json() == {"a": 1}
    assert Request.from_raw("GET", "/x?a=1", {}).query("a") == "1"
    assert Request.from_raw("GET", "/x", {}).json() is None


# =============================================================================
# OPERATIONS
# =============================================================================
@pytest.mark.asyncio
async def test_liveness_and_metrics(harness):
    response = await harness.client.get("/health")
    assert response.status == 200
    assert (await response.json())["status"] == "ok"

    await harness.client.post("/api/sync/trigger", json={"dryRun": True}, headers={"Authorization": f"Bearer {OPERATOR}"})
    metrics = await harness.client.get("/metrics")
    assert metrics.status == 200
    assert "sync_pass_seconds" in await metrics.text()


@pytest.mark.asyncio
async def test_unknown_route_is_404(harness):
    response = await harness.client.get("/nope")
    assert response.status == 404
    assert (await response.json()) == {"error": "Not found"}


# =============================================================================
# SYNC ENDPOINTS
# =============================================================================
@pytest.mark.asyncio
async def test_trigger_requires_operator_token(harness):
    response = await harness.client.post("/api/sync/trigger", json={})
    assert response.status == 401
    assert (await response.json())["error"] == "Operator token required"


@pytest.mark.asyncio
async def test_trigger_dry_run_then_status(harness):
    harness.ledger.register_account(ALICE, "alice", emit=False)
    assert_ok(await harness.app.store.participants.ensure(ALICE))

    response = await harness.client.post(
        "/api/sync/trigger",
        json={"dryRun": True, "maxMessages": 10},
        headers={"Authorization": f"Bearer {OPERATOR}"},
    )
    assert response.status == 200
    body = await response.json()
    assert body["success"] is True
    assert f"Would update user {ALICE}" in body["warnings"]
    assert assert_ok(await harness.app.store.participants.get_by_address(ALICE)).username is None

    status = await (await harness.client.get("/api/sync/status")).json()
    assert status["isRunning"] is False
    assert status["lastSyncTime"] is not None
    assert status["lastResult"]["processed"] == body["processed"]


@pytest.mark.asyncio
async def test_trigger_rejects_non_object_body(harness):
    response = await harness.client.post(
        "/api/sync/trigger", data="[1, 2]", headers={"Authorization": f"Bearer {OPERATOR}"},
    )
    assert response.status == 400


class GatedLedger(InMemoryLedger):
    """Holds the user phase until released."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()

    async def get_username(self, address):
        await self.gate.wait()
        return await super().get_username(address)


@pytest.mark.asyncio
async def test_trigger_conflicts_while_a_pass_runs():
    ledger = GatedLedger()
    harness = await start_harness(make_fetcher(None, [FakeSource("gw-1", [b"hello"])]), ledger=ledger)
    headers = {"Authorization": f"Bearer {OPERATOR}"}
    try:
        assert_ok(await harness.app.store.participants.ensure(ALICE))
        first = asyncio.ensure_future(harness.client.post("/api/sync/trigger", json={}, headers=headers))
        await wait_until(lambda: _is_running(harness))

        busy = await harness.client.post("/api/sync/trigger", json={}, headers=headers)
        assert busy.status == 409
        assert (await busy.json())["errors"] == ["Sync already in progress"]

        ledger.gate.set()
        assert (await first).status == 200
    finally:
        ledger.gate.set()
        await stop_harness(harness)


@pytest.mark.asyncio
async def test_sync_health_reports_services(harness):
    response = await harness.client.get("/api/sync/health")
    assert response.status == 200
    body = await response.json()
    assert body["status"] == "healthy"
    assert set(body["services"]) == {"blockchain", "ipfs", "database", "queue"}


@pytest.mark.asyncio
async def test_sync_health_is_503_when_unhealthy():
    harness = await start_harness(make_fetcher(None, [failing("gw-1")]))
    try:
        harness.queue.set_healthy(False)
        await harness.ledger.close()
        response = await harness.client.get("/api/sync/health")
        assert response.status == 503
        assert (await response.json())["status"] == "unhealthy"
    finally:
        await stop_harness(harness)


# =============================================================================
# DIRECT-WRITE API
# =============================================================================
@pytest.mark.asyncio
async def test_post_message_requires_a_session(harness):
    response = await harness.client.post("/api/messages", json={"conversationId": "c", "content": "hi"})
    assert response.status == 401


@pytest.mark.asyncio
async def test_post_message_writes_and_validates(harness):
    alice, _, conversation = await harness.direct_conversation()
    token = encode_session_token({"sub": alice.id, "exp": time.time() + 60}, SECRET)
    headers = {"Authorization": f"Bearer {token}"}

    created = await harness.client.post(
        "/api/messages", json={"conversationId": conversation.id, "content": "hello"}, headers=headers,
    )
    assert created.status == 201
    message = (await created.json())["message"]
    assert message["status"] == "confirmed"
    assert message["sender"]["id"] == alice.id

    empty = await harness.client.post(
        "/api/messages", json={"conversationId": conversation.id, "content": ""}, headers=headers,
    )
    assert empty.status == 400
    assert (await empty.json())["error"] == "Message content required"


# =============================================================================
# WEBSOCKET
# =============================================================================
@pytest.mark.asyncio
async def test_websocket_without_credentials_is_closed(harness):
    ws = await harness.client.ws_connect("/ws")
    frame = await ws.receive_json(timeout=2)
    assert frame == {
        "event": "error",
        "data": {"message": "Authentication required: provide either token or address"},
    }
    closing = await ws.receive(timeout=2)
    assert closing.type in (WSMsgType.CLOSE, WSMsgType.CLOSED)
    await ws.close()


@pytest.mark.asyncio
async def test_websocket_direct_message_round_trip(harness):
    _, _, conversation = await harness.direct_conversation()
    alice_ws = await harness.client.ws_connect(f"/ws?address={ALICE}")
    bob_ws = await harness.client.ws_connect(f"/ws?address={BOB}")
    try:
        for ws in (alice_ws, bob_ws):
            await ws.send_json({"event": "join_conversation", "data": {"conversationId": conversation.id}})
            joined = await ws.receive_json(timeout=2)
            assert joined == {"event": "conversation_joined", "data": {"conversationId": conversation.id}}

        await alice_ws.send_json({
            "event": "send_message",
            "data": {"conversationId": conversation.id, "content": "hi bob", "tempId": "t-1"},
        })
        for ws in (alice_ws, bob_ws):
            frame = await ws.receive_json(timeout=2)
            assert frame["event"] == "new_message"
            assert frame["data"]["tempId"] == "t-1"
            assert frame["data"]["content"] == "hi bob"
    finally:
        await alice_ws.close()
        await bob_ws.close()

    await wait_until(lambda: _no_connections(harness))


@pytest.mark.asyncio
async def test_ledger_event_reaches_connected_recipient(harness):
    bob_ws = await harness.client.ws_connect(f"/ws?address={BOB}")
    try:
        await wait_until(lambda: _has_connections(harness, 1))
        harness.ledger.send_message(ALICE, BOB, HASH_1, 1_700_000_000)

        frame = await bob_ws.receive_json(timeout=2)
        assert frame["event"] == "new_message_notification"
        assert frame["data"]["sender"] == ALICE
        assert assert_ok(await harness.app.store.messages.count()) == 1
        [job] = harness.queue.jobs("message-processing")
        assert job["data"]["content_hash"] == HASH_1
    finally:
        await bob_ws.close()


async def _no_connections(harness: Harness) -> bool:
    return harness.app.hub.connection_count == 0


async def _has_connections(harness: Harness, count: int) -> bool:
    return harness.app.hub.connection_count == count


async def _is_running(harness: Harness) -> bool:
    return harness.app.service.get_status().is_running
