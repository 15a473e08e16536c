"""
Reconciliation Service: Repairing the Query Store from the Ledger

A pass walks the three stores in four phases:

1. User sync: ledger username / public key -> participants
2. Message sync: ledger message history per friend pair -> messages
3. Content validation: confirmed messages whose payload no longer
   resolves are flipped to failed; resolvable payloads are handed to
   the content-caching queue
4. Orphan cleanup: memberless conversations, then messages and
   memberships that point at a missing conversation

Each phase returns its own SyncResult. A store failure ends that phase
only; the pass goes on to the next one. Per-item failures are collected
into errors or warnings.

Design:
    - One pass at a time, guarded by a count of running passes; force_resync
      bypasses the guard
    - dry_run reports what would change and writes nothing
    - The auto loop runs one pass immediately, then every interval

Usage:
    service = ReconciliationService(store, ledger, fetcher, queue, materializer)
    result = await service.run_pass(SyncOptions(dry_run=True))
    await service.start_auto_sync(interval_s=300)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional
from uuid import uuid4

from relaymesh.content.fetcher import ContentFetcher
from relaymesh.core import constants as C
from relaymesh.core.config import SyncConfig
from relaymesh.core.types import MessageStatus, Timestamp, is_empty_key
from relaymesh.ledger.client import LedgerClient
from relaymesh.observability import metrics
from relaymesh.observability.logging import log_context
from relaymesh.pipeline.queue import ContentCachingJob, JobQueue
from relaymesh.storage.repositories import QueryStore
from relaymesh.sync.materializer import MessageMaterializer
from relaymesh.sync.result import HealthReport, HealthStatus, SyncOptions, SyncResult, SyncStatus

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Walks ledger, content network and query store and repairs drift."""

    __slots__ = (
        "_store", "_ledger", "_fetcher", "_queue", "_materializer", "_config",
        "_active_passes", "_last_sync_time", "_next_sync_time", "_last_result",
        "_auto_task", "_interval_s",
    )

    def __init__(
        self,
        store: QueryStore,
        ledger: LedgerClient,
        fetcher: ContentFetcher,
        queue: JobQueue,
        materializer: MessageMaterializer,
        config: Optional[SyncConfig] = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._fetcher = fetcher
        self._queue = queue
        self._materializer = materializer
        self._config = config or SyncConfig()
        self._active_passes = 0
        self._last_sync_time: Optional[Timestamp] = None
        self._next_sync_time: Optional[Timestamp] = None
        self._last_result: Optional[SyncResult] = None
        self._auto_task: Optional[asyncio.Task[None]] = None
        self._interval_s = self._config.interval_s

    # =========================================================================
    # PASS
    # =========================================================================
    async def run_pass(self, options: Optional[SyncOptions] = None) -> SyncResult:
        options = options or SyncOptions(max_messages=self._config.max_messages)
        if self._active_passes and not options.force_resync:
            return SyncResult.failed(C.SYNC_ALREADY_RUNNING)

        # the guard holds until every overlapping pass has finished
        self._active_passes += 1
        started = time.perf_counter()
        pass_id = str(uuid4())[:8]
        try:
            with log_context(sync_pass=pass_id, dry_run=options.dry_run):
                logger.info("Reconciliation pass started")
                result = SyncResult()

                for phase, run in (
                    ("users", self.sync_users),
                    ("messages", self.sync_messages),
                    ("content", self.validate_content),
                    ("orphans", self.cleanup_orphans),
                ):
                    try:
                        phase_result = await run(options)
                    except Exception as e:
                        logger.exception("Reconciliation phase crashed", extra={"phase": phase})
                        phase_result = SyncResult.failed(f"{phase} phase failed: {e}")
                    metrics.sync_phase_items().inc(
                        phase_result.processed,
                        phase=phase,
                        outcome="ok" if phase_result.success else "failed",
                    )
                    result = result.merge(phase_result)

                logger.info(
                    "Reconciliation pass finished",
                    extra={
                        "success": result.success,
                        "processed": result.processed,
                        "errors": len(result.errors),
                        "warnings": len(result.warnings),
                    },
                )
        finally:
            self._active_passes -= 1
            metrics.sync_pass_seconds().observe(time.perf_counter() - started)

        self._last_sync_time = Timestamp.now()
        self._last_result = result
        return result

    # =========================================================================
    # PHASE 1: USERS
    # =========================================================================
    async def sync_users(self, options: SyncOptions) -> SyncResult:
        listed = await self._store.participants.list_all()
        if listed.is_err():
            return SyncResult.failed(f"User sync failed: {listed.error.message}")

        result = SyncResult()
        for participant in listed.unwrap():
            username = await self._ledger.get_username(participant.address)
            if username.is_err():
                result.errors.append(username.error.message)
                continue
            key = await self._ledger.get_public_key(participant.address)
            if key.is_err():
                result.errors.append(key.error.message)
                continue

            ledger_name = username.unwrap() or None
            ledger_key = None if is_empty_key(key.unwrap()) else key.unwrap()
            registered = ledger_name is not None

            if (
                participant.username == ledger_name
                and participant.public_key == ledger_key
                and participant.is_registered == registered
            ):
                continue

            result.processed += 1
            if options.dry_run:
                result.warnings.append(f"Would update user {participant.address}")
                continue
            written = await self._store.participants.update_registration(
                participant.id, ledger_name, ledger_key, registered,
            )
            if written.is_err():
                result.errors.append(written.error.message)
        return result

    # =========================================================================
    # PHASE 2: MESSAGES
    # =========================================================================
    async def sync_messages(self, options: SyncOptions) -> SyncResult:
        listed = await self._store.participants.list_registered()
        if listed.is_err():
            return SyncResult.failed(f"Message sync failed: {listed.error.message}")

        result = SyncResult()
        for participant in listed.unwrap():
            friends = await self._ledger.get_friends(participant.address)
            if friends.is_err():
                result.errors.append(friends.error.message)
                continue

            for friend in friends.unwrap():
                history = await self._ledger.get_messages_between(participant.address, friend.address)
                if history.is_err():
                    result.errors.append(history.error.message)
                    continue

                for entry in history.unwrap():
                    if options.dry_run:
                        if await self._is_missing(entry.sender, entry.recipient, entry.content_hash):
                            result.processed += 1
                            result.warnings.append(f"Would materialize message {entry.content_hash}")
                        continue

                    outcome = await self._materializer.materialize_ledger_message(
                        entry.sender,
                        entry.recipient,
                        entry.content_hash,
                        entry.timestamp,
                        resolve_content=self._config.resolve_on_materialize,
                    )
                    if outcome.is_err():
                        result.errors.append(outcome.error.message)
                        continue
                    applied = outcome.unwrap()
                    result.warnings.extend(applied.warnings)
                    if applied.inserted:
                        result.processed += 1
        return result

    async def _is_missing(self, sender_address: str, recipient_address: str, content_hash: str) -> bool:
        """Read-only twin of the materializer's existence check."""
        sender = await self._store.participants.get_by_address(sender_address)
        recipient = await self._store.participants.get_by_address(recipient_address)
        if sender.is_err() or recipient.is_err():
            return True
        if sender.unwrap() is None or recipient.unwrap() is None:
            return True
        conversation = await self._store.conversations.find_direct(sender.unwrap().id, recipient.unwrap().id)
        if conversation.is_err() or conversation.unwrap() is None:
            return True
        found = await self._store.messages.find_in_conversation_by_hash(conversation.unwrap().id, content_hash)
        return found.is_err() or found.unwrap() is None

    # =========================================================================
    # PHASE 3: CONTENT VALIDATION
    # =========================================================================
    async def validate_content(self, options: SyncOptions) -> SyncResult:
        if options.skip_content_validation:
            return SyncResult()

        if self._config.skip_validation_when_degraded:
            health = await self._fetcher.check_health()
            if not health.is_available:
                return SyncResult(warnings=["Content validation skipped: no healthy gateway"])

        listed = await self._store.messages.list_confirmed_with_content(options.max_messages)
        if listed.is_err():
            return SyncResult.failed(f"Content validation failed: {listed.error.message}")

        result = SyncResult()
        for message in listed.unwrap():
            fetched = await self._fetcher.fetch(message.content_id)
            result.processed += 1

            if fetched.is_err():
                result.warnings.append(f"Content unavailable for message {message.id}: {fetched.error.message}")
                if options.dry_run:
                    continue
                flipped = await self._store.messages.mark_failed(message.id)
                if flipped.is_err():
                    result.errors.append(flipped.error.message)
                continue

            if options.dry_run:
                continue
            job = ContentCachingJob(
                content_hash=message.content_hash or message.content_id,
                message_id=message.id,
                payload=fetched.unwrap(),
            )
            enqueued = await self._queue.enqueue(job)
            if enqueued.is_err():
                result.warnings.append(f"Could not enqueue caching for message {message.id}: {enqueued.error.message}")
        return result

    # =========================================================================
    # PHASE 4: ORPHAN CLEANUP
    # =========================================================================
    async def cleanup_orphans(self, options: SyncOptions) -> SyncResult:
        conversations = await self._store.conversations.list_memberless()
        if conversations.is_err():
            return SyncResult.failed(f"Orphan cleanup failed: {conversations.error.message}")
        memberless = conversations.unwrap()

        messages = await self._store.messages.list_orphaned()
        if messages.is_err():
            return SyncResult.failed(f"Orphan cleanup failed: {messages.error.message}")
        members = await self._store.members.list_orphaned()
        if members.is_err():
            return SyncResult.failed(f"Orphan cleanup failed: {members.error.message}")

        result = SyncResult()
        if memberless:
            result.warnings.append(f"Found {len(memberless)} orphaned conversations")
        if messages.unwrap():
            result.warnings.append(f"Found {len(messages.unwrap())} orphaned messages")
        if members.unwrap():
            result.warnings.append(f"Found {len(members.unwrap())} orphaned memberships")

        if options.dry_run:
            return result

        # Conversations first: their messages become orphans in turn.
        for step in (
            self._store.conversations.delete_memberless,
            self._store.messages.delete_orphaned,
            self._store.members.delete_orphaned,
        ):
            deleted = await step()
            if deleted.is_err():
                result.success = False
                result.errors.append(deleted.error.message)
                return result
            result.processed += deleted.unwrap()
        return result

    # =========================================================================
    # AUTO SYNC
    # =========================================================================
    async def _auto_loop(self) -> None:
        while True:
            try:
                await self.run_pass(SyncOptions(max_messages=self._config.max_messages))
            except Exception:
                logger.exception("Scheduled reconciliation pass failed")
            self._next_sync_time = Timestamp.from_seconds(time.time() + self._interval_s)
            await asyncio.sleep(self._interval_s)

    async def start_auto_sync(self, interval_s: Optional[float] = None) -> None:
        if self._auto_task is not None:
            return
        self._interval_s = interval_s if interval_s is not None else self._config.interval_s
        self._auto_task = asyncio.create_task(self._auto_loop(), name="reconciliation")
        logger.info("Auto sync scheduled", extra={"interval_s": self._interval_s})

    async def stop_auto_sync(self) -> None:
        task, self._auto_task = self._auto_task, None
        self._next_sync_time = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # =========================================================================
    # STATUS / HEALTH
    # =========================================================================
    def get_status(self) -> SyncStatus:
        return SyncStatus(
            is_running=self._active_passes > 0,
            last_sync_time=self._last_sync_time,
            next_sync_time=self._next_sync_time,
            last_result=self._last_result,
        )

    async def health_check(self) -> HealthReport:
        blockchain, content, database, queue = await asyncio.gather(
            self._ledger.ping(),
            self._fetcher.check_health(),
            self._store.ping(),
            self._queue.ping(),
        )
        report = HealthReport(
            blockchain=bool(blockchain),
            ipfs=content.is_available,
            database=bool(database),
            queue=bool(queue),
        )
        if report.status is not HealthStatus.HEALTHY:
            logger.warning("Degraded dependencies", extra={"services": report.services})
        return report
