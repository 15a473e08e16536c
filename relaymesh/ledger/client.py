"""
Ledger Client: Read Interface to the On-Chain Contract

The core only consumes the ledger:
- an event stream (MessageSent, FriendAdded, AccountCreated)
- on-demand reads: messages between two users, friends, username,
  public key

LedgerClient is the protocol every backend satisfies. InMemoryLedger
is a complete in-process ledger used for local mode and tests; the
JSON-RPC backend lives in relaymesh.ledger.rpc.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import AsyncIterator, Optional, Protocol, runtime_checkable

from relaymesh.core.errors import LedgerError
from relaymesh.core.types import Result, Ok, Err, ZERO_KEY, normalize_address
from relaymesh.ledger.events import (
    AccountCreated,
    FriendAdded,
    LedgerEvent,
    LedgerFriend,
    LedgerMessage,
    MessageSent,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class LedgerClient(Protocol):
    """Read-only view of the ledger."""

    def stream_events(self) -> AsyncIterator[LedgerEvent]:
        ...

    async def get_messages_between(self, user: str, peer: str) -> Result[list[LedgerMessage], LedgerError]:
        ...

    async def get_friends(self, user: str) -> Result[list[LedgerFriend], LedgerError]:
        ...

    async def get_username(self, address: str) -> Result[str, LedgerError]:
        ...

    async def get_public_key(self, address: str) -> Result[str, LedgerError]:
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...


class InMemoryLedger:
    """
    In-process ledger with the same read surface as a chain node.

    Writes append to state and, unless emit=False, publish the matching
    event on the stream. publish() pushes a raw event, which is how
    redelivery is simulated.

    Usage:
        ledger = InMemoryLedger()
        ledger.register_account(alice, "alice", key)
        ledger.send_message(alice, bob, "bafy...", 1700000000)

        async for event in ledger.stream_events():
            ...
    """

    __slots__ = ("_accounts", "_friends", "_messages", "_events", "_failing", "_closed")

    def __init__(self) -> None:
        self._accounts: dict[str, tuple[str, str]] = {}
        self._friends: dict[str, list[LedgerFriend]] = defaultdict(list)
        self._messages: list[LedgerMessage] = []
        self._events: asyncio.Queue[Optional[LedgerEvent]] = asyncio.Queue()
        self._failing: set[str] = set()
        self._closed = False

    # -------------------------------------------------------------------------
    # Writes (test and local-mode drivers)
    # -------------------------------------------------------------------------
    def register_account(self, address: str, name: str, public_key: str = ZERO_KEY, emit: bool = True) -> None:
        addr = normalize_address(address)
        self._accounts[addr] = (name, public_key)
        if emit:
            self.publish(AccountCreated(user=addr, name=name, public_key=public_key))

    def add_friend(self, user: str, friend: str, name: str = "", emit: bool = True) -> None:
        u, f = normalize_address(user), normalize_address(friend)
        if all(x.address != f for x in self._friends[u]):
            self._friends[u].append(LedgerFriend(address=f, name=name))
        if all(x.address != u for x in self._friends[f]):
            self._friends[f].append(LedgerFriend(address=u, name=self._accounts.get(u, ("", ""))[0]))
        if emit:
            self.publish(FriendAdded(user=u, friend=f, name=name))

    def send_message(
        self,
        sender: str,
        recipient: str,
        content_hash: str,
        timestamp: int,
        emit: bool = True,
        tx_hash: Optional[str] = None,
    ) -> MessageSent:
        s, r = normalize_address(sender), normalize_address(recipient)
        self._messages.append(LedgerMessage(sender=s, recipient=r, content_hash=content_hash, timestamp=timestamp))
        event = MessageSent(
            sender=s,
            recipient=r,
            content_hash=content_hash,
            block_timestamp=timestamp,
            tx_hash=tx_hash,
            block_number=len(self._messages),
        )
        if emit:
            self.publish(event)
        return event

    def publish(self, event: LedgerEvent) -> None:
        self._events.put_nowait(event)

    def fail_queries_for(self, address: str) -> None:
        """Make every read mentioning address fail (node error simulation)."""
        self._failing.add(normalize_address(address))

    def restore(self) -> None:
        self._failing.clear()

    # -------------------------------------------------------------------------
    # LedgerClient
    # -------------------------------------------------------------------------
    async def stream_events(self) -> AsyncIterator[LedgerEvent]:
        # events published before close() are still delivered
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def get_messages_between(self, user: str, peer: str) -> Result[list[LedgerMessage], LedgerError]:
        u, p = normalize_address(user), normalize_address(peer)
        if self._failing & {u, p}:
            return Err(LedgerError.query_failed("getMessages", f"{u},{p}"))
        pair = {u, p}
        return Ok([m for m in self._messages if {m.sender, m.recipient} == pair])

    async def get_friends(self, user: str) -> Result[list[LedgerFriend], LedgerError]:
        u = normalize_address(user)
        if u in self._failing:
            return Err(LedgerError.query_failed("getFriends", u))
        return Ok(list(self._friends.get(u, ())))

    async def get_username(self, address: str) -> Result[str, LedgerError]:
        a = normalize_address(address)
        if a in self._failing:
            return Err(LedgerError.query_failed("usernames", a))
        return Ok(self._accounts.get(a, ("", ""))[0])

    async def get_public_key(self, address: str) -> Result[str, LedgerError]:
        a = normalize_address(address)
        if a in self._failing:
            return Err(LedgerError.query_failed("publicKeys", a))
        return Ok(self._accounts.get(a, ("", ZERO_KEY))[1])

    async def ping(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._events.put_nowait(None)
