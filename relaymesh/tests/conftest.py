"""
Shared fixtures and helpers for the RelayMesh test suite.

Run with: python -m pytest relaymesh/tests -v
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Sequence, Union

import pytest
import pytest_asyncio

from relaymesh.content.fetcher import ContentFetcher
from relaymesh.core.config import StoreConfig
from relaymesh.ledger.client import InMemoryLedger
from relaymesh.pipeline.queue import InMemoryJobQueue
from relaymesh.storage.repositories import QueryStore

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20

HASH_1 = "0x" + "11" * 32
HASH_2 = "0x" + "22" * 32


# =============================================================================
# TEST UTILITIES
# =============================================================================
def assert_ok(result, message: str = "Expected Ok result"):
    """Assert that result is Ok."""
    if result.is_err():
        raise AssertionError(f"{message}: {result.error}")
    return result.unwrap()


def assert_err(result, message: str = "Expected Err result"):
    """Assert that result is Err."""
    if result.is_ok():
        raise AssertionError(f"{message}: Got Ok({result.unwrap()})")
    return result.error


async def settle(rounds: int = 20) -> None:
    """Let queued callbacks and background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def insert_dangling_membership(store: QueryStore, conversation_id: str, participant_id: str) -> None:
    """Write a membership row whose conversation does not exist."""
    assert_ok(await store.engine.execute_write(
        "INSERT INTO conversation_members (id, conversation_id, participant_id, role, joined_at, last_read_at)"
        " VALUES (?, ?, ?, 'member', 0, NULL)",
        (f"m-{conversation_id}-{participant_id}", conversation_id, participant_id),
    ))


# =============================================================================
# FAKES
# =============================================================================
Outcome = Union[bytes, BaseException]


class FakeSource:
    """
    Scripted content source.

    Each fetch pops the next outcome; once the script runs out the last
    outcome repeats. An exception outcome is raised.
    """

    def __init__(
        self,
        name: str,
        outcomes: Sequence[Outcome] = (b"payload",),
        *,
        probe_error: Optional[BaseException] = None,
        probe_delay_s: float = 0.0,
        fetch_delay_s: float = 0.0,
    ) -> None:
        self.name = name
        self._outcomes = list(outcomes)
        self.calls: list[str] = []
        self.probes: list[str] = []
        self._probe_error = probe_error
        self._probe_delay_s = probe_delay_s
        self._fetch_delay_s = fetch_delay_s

    async def fetch(self, content_id: str) -> bytes:
        self.calls.append(content_id)
        if self._fetch_delay_s:
            await asyncio.sleep(self._fetch_delay_s)
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def probe(self, content_id: str) -> None:
        self.probes.append(content_id)
        if self._probe_delay_s:
            await asyncio.sleep(self._probe_delay_s)
        if self._probe_error is not None:
            raise self._probe_error


def failing(name: str) -> FakeSource:
    return FakeSource(name, [ConnectionError(f"{name} unreachable")], probe_error=ConnectionError("down"))


class RecordingSleep:
    """Instant replacement for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class RecordingNotifier:
    def __init__(self) -> None:
        self.emitted: list[tuple[str, str, dict[str, Any]]] = []

    async def emit_to_room(self, room: str, event: str, data: dict[str, Any]) -> int:
        self.emitted.append((room, event, data))
        return 1

    def events(self, name: str) -> list[tuple[str, dict[str, Any]]]:
        return [(room, data) for room, event, data in self.emitted if event == name]


class RecordingConnection:
    """Connection double capturing every frame the hub sends."""

    def __init__(self, connection_id: str, fail_sends: bool = False) -> None:
        self.id = connection_id
        self.frames: list[dict[str, Any]] = []
        self.closed = False
        self._fail_sends = fail_sends

    async def send(self, frame: str) -> None:
        if self._fail_sends:
            raise ConnectionResetError("socket gone")
        self.frames.append(json.loads(frame))

    async def close(self) -> None:
        self.closed = True

    def events(self, name: str) -> list[dict[str, Any]]:
        return [f["data"] for f in self.frames if f["event"] == name]

    def clear(self) -> None:
        self.frames.clear()


def make_fetcher(
    primary: Optional[FakeSource],
    gateways: Sequence[FakeSource],
    sleep: Optional[RecordingSleep] = None,
    **kwargs: Any,
) -> ContentFetcher:
    return ContentFetcher(primary, gateways, sleep=sleep or RecordingSleep(), **kwargs)


# =============================================================================
# FIXTURES
# =============================================================================
@pytest_asyncio.fixture
async def store():
    opened = await QueryStore.open(StoreConfig(in_memory=True))
    query_store = assert_ok(opened, "in-memory store")
    yield query_store
    await query_store.close()


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def healthy_fetcher(sleep: RecordingSleep) -> ContentFetcher:
    return make_fetcher(None, [FakeSource("gw-1", [b"hello"])], sleep)
