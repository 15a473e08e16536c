"""
Realtime module: authenticated websocket fan-out with rooms and presence.
"""

from relaymesh.realtime.protocol import (
    ClientEvent,
    Envelope,
    Notifier,
    NullNotifier,
    ServerEvent,
    conversation_room,
    participant_room,
)
from relaymesh.realtime.auth import (
    Authenticator,
    Credentials,
    encode_session_token,
    verify_session_token,
)
from relaymesh.realtime.presence import PresenceRegistry
from relaymesh.realtime.hub import Connection, FanoutHub

__all__ = [
    "ClientEvent",
    "Envelope",
    "Notifier",
    "NullNotifier",
    "ServerEvent",
    "conversation_room",
    "participant_room",
    "Authenticator",
    "Credentials",
    "encode_session_token",
    "verify_session_token",
    "PresenceRegistry",
    "Connection",
    "FanoutHub",
]
