"""
Storage module: the SQLite query store.

- StoreEngine: connection, PRAGMAs, transactions
- StoreSchema: DDL
- Repositories and the QueryStore facade
"""

from relaymesh.storage.engine import StoreEngine, StoreStats
from relaymesh.storage.schema import StoreSchema
from relaymesh.storage.models import (
    Conversation,
    Friendship,
    Membership,
    Message,
    Participant,
)
from relaymesh.storage.repositories import (
    ConversationRepository,
    FriendshipRepository,
    MembershipRepository,
    MessageRepository,
    ParticipantRepository,
    QueryStore,
)

__all__ = [
    "StoreEngine",
    "StoreStats",
    "StoreSchema",
    "Conversation",
    "Friendship",
    "Membership",
    "Message",
    "Participant",
    "ConversationRepository",
    "FriendshipRepository",
    "MembershipRepository",
    "MessageRepository",
    "ParticipantRepository",
    "QueryStore",
]
