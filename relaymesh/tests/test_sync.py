"""
Materialization and Reconciliation Test Suite

Tests for:
- Direct-write materialization (membership, status, reply checks)
- User and message sync from the ledger
- Content validation (failed flip, caching hand-off, degraded skip)
- Orphan cleanup safety
- Dry runs, the single-pass guard, health and the auto loop

Run with: python -m pytest relaymesh/tests/test_sync.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from relaymesh.core import constants as C
from relaymesh.core.config import SyncConfig
from relaymesh.core.errors import ErrorCode
from relaymesh.core.types import MessageStatus, now_millis
from relaymesh.ledger.client import InMemoryLedger
from relaymesh.ledger.handlers import LedgerEventHandlers
from relaymesh.sync import (
    HealthStatus,
    MessageMaterializer,
    ReconciliationService,
    SyncOptions,
    SyncResult,
)
from relaymesh.tests.conftest import (
    ALICE,
    BOB,
    CAROL,
    HASH_1,
    HASH_2,
    FakeSource,
    assert_err,
    assert_ok,
    failing,
    insert_dangling_membership,
    make_fetcher,
)

TS = 1_700_000_000


@pytest.fixture
def materializer(store, queue, healthy_fetcher) -> MessageMaterializer:
    return MessageMaterializer(store, queue, healthy_fetcher)


@pytest.fixture
def service(store, ledger, healthy_fetcher, queue, materializer) -> ReconciliationService:
    return ReconciliationService(store, ledger, healthy_fetcher, queue, materializer, SyncConfig(auto_sync=False))


def seed_ledger(ledger: InMemoryLedger) -> None:
    ledger.register_account(ALICE, "alice", emit=False)
    ledger.register_account(BOB, "bob", emit=False)
    ledger.add_friend(ALICE, BOB, "bob", emit=False)
    ledger.send_message(ALICE, BOB, HASH_1, TS, emit=False)
    ledger.send_message(BOB, ALICE, HASH_2, TS + 60, emit=False)


async def direct_pair(store):
    alice = assert_ok(await store.participants.ensure(ALICE))
    bob = assert_ok(await store.participants.ensure(BOB))
    conversation, _ = assert_ok(await store.conversations.ensure_direct(alice.id, bob.id, alice.id))
    return alice, bob, conversation


async def snapshot(store) -> dict:
    participants = assert_ok(await store.participants.list_all())
    messages = []
    for p in participants:
        for q in participants:
            found = assert_ok(await store.conversations.find_direct(p.id, q.id))
            if found is not None and p.id < q.id:
                messages += assert_ok(await store.messages.list_for_conversation(found.id))
    return {
        "participants": sorted((p.address, p.username, p.is_registered) for p in participants),
        "messages": sorted((m.content_hash, m.status.value, m.created_at) for m in messages),
    }


# =============================================================================
# DIRECT-WRITE MATERIALIZATION
# =============================================================================
@pytest.mark.asyncio
async def test_direct_message_is_confirmed_without_tx(store, materializer):
    alice, _, conversation = await direct_pair(store)
    before = now_millis()
    message = assert_ok(await materializer.materialize_direct_message(conversation.id, alice.id, "hello"))

    assert message.status is MessageStatus.CONFIRMED
    assert message.created_at >= before
    stored = assert_ok(await store.messages.get(message.id))
    assert stored.content == "hello"
    assert assert_ok(await store.conversations.get(conversation.id)).last_message_at == message.created_at


@pytest.mark.asyncio
async def test_direct_message_with_tx_is_pending(store, materializer):
    alice, _, conversation = await direct_pair(store)
    message = assert_ok(await materializer.materialize_direct_message(
        conversation.id, alice.id, "", "bafy-cid", tx_hash="0xabc", message_type="file",
    ))
    assert message.status is MessageStatus.PENDING
    assert message.type.value == "file"


@pytest.mark.asyncio
async def test_direct_message_rejects_non_members_and_bad_input(store, materializer):
    alice, _, conversation = await direct_pair(store)
    carol = assert_ok(await store.participants.ensure(CAROL))

    denied = assert_err(await materializer.materialize_direct_message(conversation.id, carol.id, "hi"))
    assert denied.code is ErrorCode.REALTIME_ACCESS_DENIED
    assert denied.message == "Access denied to conversation"

    missing = assert_err(await materializer.materialize_direct_message("", alice.id, "hi"))
    assert missing.message == "Conversation ID required"
    empty = assert_err(await materializer.materialize_direct_message(conversation.id, alice.id, "   "))
    assert empty.message == "Message content required"
    bad_type = assert_err(await materializer.materialize_direct_message(
        conversation.id, alice.id, "hi", message_type="video",
    ))
    assert bad_type.code is ErrorCode.VALIDATION_FAILED
    assert assert_ok(await store.messages.count()) == 0


@pytest.mark.asyncio
async def test_reply_must_stay_in_the_conversation(store, materializer):
    alice, bob, conversation = await direct_pair(store)
    carol = assert_ok(await store.participants.ensure(CAROL))
    other, _ = assert_ok(await store.conversations.ensure_direct(alice.id, carol.id, alice.id))

    parent = assert_ok(await materializer.materialize_direct_message(conversation.id, alice.id, "first"))
    elsewhere = assert_ok(await materializer.materialize_direct_message(other.id, alice.id, "aside"))

    reply = assert_ok(await materializer.materialize_direct_message(
        conversation.id, bob.id, "re", reply_to_id=parent.id,
    ))
    assert reply.reply_to_id == parent.id
    assert_err(await materializer.materialize_direct_message(
        conversation.id, bob.id, "re", reply_to_id=elsewhere.id,
    ))


@pytest.mark.asyncio
async def test_ledger_materialization_marks_unresolvable_content_failed(store, queue):
    fetcher = make_fetcher(None, [failing("gw-1")])
    materializer = MessageMaterializer(store, queue, fetcher)
    outcome = assert_ok(await materializer.materialize_ledger_message(
        ALICE, BOB, HASH_1, TS, resolve_content=True,
    ))
    assert outcome.inserted
    assert outcome.message.status is MessageStatus.FAILED
    assert outcome.warnings[0].startswith(f"Content unavailable for message {HASH_1}")


# =============================================================================
# USER AND MESSAGE SYNC
# =============================================================================
@pytest.mark.asyncio
async def test_full_pass_repairs_users_and_messages(store, ledger, queue, service):
    seed_ledger(ledger)
    assert_ok(await store.participants.ensure(ALICE))

    result = await service.run_pass()
    assert result.success, result.errors
    assert result.errors == []

    alice = assert_ok(await store.participants.get_by_address(ALICE))
    assert alice.is_registered and alice.username == "alice"

    state = await snapshot(store)
    assert state["messages"] == [
        (HASH_1, "confirmed", TS * 1000),
        (HASH_2, "confirmed", (TS + 60) * 1000),
    ]
    assert len(queue.jobs("message-processing")) == 2
    assert len(queue.jobs("content-caching")) == 2

    # a second pass picks up bob's registration and adds no messages
    again = await service.run_pass()
    assert again.success
    assert assert_ok(await store.messages.count()) == 2
    bob = assert_ok(await store.participants.get_by_address(BOB))
    assert bob.username == "bob"
    assert len(queue.jobs("message-processing")) == 2


@pytest.mark.asyncio
async def test_ledger_failure_for_one_user_does_not_stop_the_rest(store, ledger, service):
    ledger.register_account(ALICE, "alice", emit=False)
    ledger.register_account(CAROL, "carol", emit=False)
    assert_ok(await store.participants.ensure(ALICE))
    assert_ok(await store.participants.ensure(CAROL))
    ledger.fail_queries_for(CAROL)

    result = await service.sync_users(SyncOptions())
    assert result.success
    assert result.processed == 1
    assert len(result.errors) == 1
    assert assert_ok(await store.participants.get_by_address(ALICE)).username == "alice"
    assert assert_ok(await store.participants.get_by_address(CAROL)).username is None


@pytest.mark.asyncio
async def test_listener_then_reconciliation_leaves_one_row(store, ledger, queue, notifier, materializer, service):
    seed_ledger(ledger)
    handlers = LedgerEventHandlers(store, materializer, notifier)
    event = ledger.send_message(ALICE, BOB, "0x" + "33" * 32, TS + 120, emit=False)
    await handlers.on_message_sent(event)
    assert_ok(await store.participants.ensure(ALICE))

    await service.run_pass()
    await handlers.on_message_sent(event)
    await service.run_pass()

    assert assert_ok(await store.messages.count()) == 3


@pytest.mark.asyncio
async def test_dry_run_writes_nothing(store, ledger, queue, service):
    seed_ledger(ledger)
    alice = assert_ok(await store.participants.ensure(ALICE))
    assert_ok(await store.participants.update_registration(alice.id, "alice", None, True))
    assert_ok(await store.participants.ensure(BOB))
    before = await snapshot(store)

    preview = await service.run_pass(SyncOptions(dry_run=True))
    assert preview.success
    assert f"Would materialize message {HASH_1}" in preview.warnings
    assert f"Would materialize message {HASH_2}" in preview.warnings
    assert await snapshot(store) == before
    assert queue.jobs("message-processing") == []
    assert queue.jobs("content-caching") == []

    await service.run_pass()
    after_dry_and_real = await snapshot(store)

    await service.run_pass()
    assert await snapshot(store) == after_dry_and_real
    assert len(after_dry_and_real["messages"]) == 2


# =============================================================================
# CONTENT VALIDATION
# =============================================================================
@pytest.mark.asyncio
async def test_unresolvable_content_is_flipped_to_failed_once(store, ledger, queue):
    fetcher = make_fetcher(None, [FakeSource("gw-1", [ConnectionError("evicted")])])
    materializer = MessageMaterializer(store, queue, fetcher)
    service = ReconciliationService(store, ledger, fetcher, queue, materializer)
    outcome = assert_ok(await materializer.materialize_ledger_message(ALICE, BOB, HASH_1, TS))
    assert outcome.message.status is MessageStatus.CONFIRMED

    result = await service.validate_content(SyncOptions())
    assert result.success
    assert result.processed == 1
    assert result.warnings[0].startswith(f"Content unavailable for message {outcome.message.id}")
    assert assert_ok(await store.messages.get(outcome.message.id)).status is MessageStatus.FAILED

    second = await service.validate_content(SyncOptions())
    assert second.processed == 0
    assert second.warnings == []


@pytest.mark.asyncio
async def test_content_validation_skips_when_no_gateway_is_healthy(store, ledger, queue):
    fetcher = make_fetcher(None, [failing("gw-1")])
    service = ReconciliationService(store, ledger, fetcher, queue, MessageMaterializer(store, queue))
    result = await service.validate_content(SyncOptions())
    assert result.success
    assert result.warnings == ["Content validation skipped: no healthy gateway"]

    skipped = await service.validate_content(SyncOptions(skip_content_validation=True))
    assert skipped == SyncResult()


@pytest.mark.asyncio
async def test_validation_respects_max_messages(store, queue, materializer, service):
    for i in range(3):
        assert_ok(await materializer.materialize_ledger_message(ALICE, BOB, f"0x{i:064x}", TS + i))
    result = await service.validate_content(SyncOptions(max_messages=2))
    assert result.processed == 2
    assert len(queue.jobs("content-caching")) == 2


# =============================================================================
# ORPHAN CLEANUP
# =============================================================================
@pytest.mark.asyncio
async def test_orphan_cleanup_only_removes_dangling_rows(store, materializer, service):
    alice, bob, conversation = await direct_pair(store)
    live = assert_ok(await materializer.materialize_direct_message(conversation.id, alice.id, "keep me"))

    now = now_millis()
    assert_ok(await store.engine.execute_write(
        "INSERT INTO conversations (id, type, name, created_by, direct_key, last_message_at, created_at, updated_at)"
        " VALUES ('empty', 'group', 'ghost', ?, NULL, NULL, ?, ?)",
        (alice.id, now, now),
    ))
    await insert_dangling_membership(store, "vanished", bob.id)

    preview = await service.cleanup_orphans(SyncOptions(dry_run=True))
    assert preview.warnings == ["Found 1 orphaned conversations", "Found 1 orphaned memberships"]
    assert preview.processed == 0

    result = await service.cleanup_orphans(SyncOptions())
    assert result.success
    assert result.processed == 2
    assert assert_ok(await store.conversations.get("empty")) is None
    assert assert_ok(await store.messages.get(live.id)) is not None
    assert len(assert_ok(await store.members.list_for_conversation(conversation.id))) == 2

    assert (await service.cleanup_orphans(SyncOptions())).warnings == []


# =============================================================================
# PASS GUARD, STATUS, HEALTH
# =============================================================================
class GatedLedger(InMemoryLedger):
    """Blocks the user phase until released."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()

    async def get_username(self, address):
        await self.gate.wait()
        return await super().get_username(address)


@pytest.mark.asyncio
async def test_second_pass_is_rejected_while_one_runs(store, queue, healthy_fetcher):
    ledger = GatedLedger()
    assert_ok(await store.participants.ensure(ALICE))
    service = ReconciliationService(
        store, ledger, healthy_fetcher, queue, MessageMaterializer(store, queue),
    )

    first = asyncio.create_task(service.run_pass())
    for _ in range(10):
        await asyncio.sleep(0)
    assert service.get_status().is_running

    rejected = await service.run_pass()
    assert not rejected.success
    assert rejected.errors == [C.SYNC_ALREADY_RUNNING]

    ledger.gate.set()
    completed = await first
    assert completed.success
    status = service.get_status()
    assert not status.is_running
    assert status.last_result is completed
    assert status.to_dict()["lastSyncTime"] is not None


class FirstReadGatedLedger(InMemoryLedger):
    """Holds only the first username read; later passes go straight through."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self._held = False

    async def get_username(self, address):
        if not self._held:
            self._held = True
            await self.gate.wait()
        return await super().get_username(address)


@pytest.mark.asyncio
async def test_forced_pass_does_not_release_the_guard(store, queue, healthy_fetcher):
    ledger = FirstReadGatedLedger()
    assert_ok(await store.participants.ensure(ALICE))
    service = ReconciliationService(
        store, ledger, healthy_fetcher, queue, MessageMaterializer(store, queue),
    )

    first = asyncio.create_task(service.run_pass())
    for _ in range(10):
        await asyncio.sleep(0)
    assert service.get_status().is_running

    forced = await service.run_pass(SyncOptions(force_resync=True))
    assert forced.success
    assert service.get_status().is_running

    rejected = await service.run_pass()
    assert rejected.errors == [C.SYNC_ALREADY_RUNNING]

    ledger.gate.set()
    assert (await first).success
    assert not service.get_status().is_running
    assert (await service.run_pass()).success


@pytest.mark.asyncio
async def test_health_aggregates_four_dependencies(store, ledger, queue, service):
    report = await service.health_check()
    assert report.status is HealthStatus.HEALTHY
    assert report.to_dict()["services"] == {
        "blockchain": True, "ipfs": True, "database": True, "queue": True,
    }

    queue.set_healthy(False)
    assert (await service.health_check()).status is HealthStatus.DEGRADED

    await ledger.close()
    assert (await service.health_check()).status is HealthStatus.DEGRADED


@pytest.mark.asyncio
async def test_health_unhealthy_with_one_service_up(store, ledger, queue):
    fetcher = make_fetcher(None, [failing("gw-1")])
    service = ReconciliationService(store, ledger, fetcher, queue, MessageMaterializer(store, queue))
    queue.set_healthy(False)
    await ledger.close()
    report = await service.health_check()
    assert report.status is HealthStatus.UNHEALTHY
    assert report.to_dict()["status"] == "unhealthy"


@pytest.mark.asyncio
async def test_auto_sync_runs_immediately_and_stops(store, service):
    await service.start_auto_sync(interval_s=3600)
    for _ in range(200):
        if service.get_status().next_sync_time is not None:
            break
        await asyncio.sleep(0.01)

    status = service.get_status()
    assert status.last_sync_time is not None
    assert status.next_sync_time is not None
    assert status.last_result.success

    await service.stop_auto_sync()
    assert service.get_status().next_sync_time is None
