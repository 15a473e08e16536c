"""
Ledger module: event types, read clients and the event listener.
"""

from relaymesh.ledger.events import (
    AccountCreated,
    EventKind,
    FriendAdded,
    LedgerEvent,
    LedgerFriend,
    LedgerMessage,
    MessageSent,
)
from relaymesh.ledger.client import InMemoryLedger, LedgerClient
from relaymesh.ledger.listener import EventListener

__all__ = [
    "AccountCreated",
    "EventKind",
    "FriendAdded",
    "LedgerEvent",
    "LedgerFriend",
    "LedgerMessage",
    "MessageSent",
    "InMemoryLedger",
    "LedgerClient",
    "EventListener",
]
