"""
System-Wide Constants for RelayMesh

All magic numbers and configuration defaults centralized here.
"""

from typing import Final

# =============================================================================
# TIME UNITS
# =============================================================================
SECOND_MS: Final[int] = 1000
MINUTE_MS: Final[int] = 60 * SECOND_MS

# =============================================================================
# CONTENT NETWORK
# =============================================================================
CONTENT_MAX_RETRIES: Final[int] = 3
CONTENT_PRIMARY_BASE_DELAY_MS: Final[int] = 1 * SECOND_MS   # 2^attempt seconds
CONTENT_GATEWAY_BASE_DELAY_MS: Final[int] = 1 * SECOND_MS   # (attempt + 1) seconds
CONTENT_GATEWAY_TIMEOUT_S: Final[float] = 10.0
CONTENT_HEALTH_TIMEOUT_S: Final[float] = 5.0
CONTENT_HEALTHY_THRESHOLD_MS: Final[float] = 2000.0

DEFAULT_GATEWAYS: Final[tuple[str, ...]] = (
    "https://dweb.link",
    "https://ipfs.io",
    "https://gateway.pinata.cloud",
    "https://cloudflare-ipfs.com",
)

# Pinned by every public gateway; used for HEAD health probes.
HEALTH_PROBE_CONTENT_ID: Final[str] = "QmYjtig7VJQ6XsnUjqqJvj7QaMcCAwtrgNdahSiFofrE7o"

# =============================================================================
# EVENT LISTENER
# =============================================================================
DEDUP_CAPACITY: Final[int] = 1000
DEDUP_RETAIN: Final[int] = 500
DEDUP_PRUNE_INTERVAL_S: Final[float] = 5 * 60.0
LEDGER_POLL_INTERVAL_S: Final[float] = 4.0

# =============================================================================
# RECONCILIATION
# =============================================================================
SYNC_INTERVAL_S: Final[float] = 5 * 60.0
SYNC_MAX_MESSAGES: Final[int] = 100
SYNC_ALREADY_RUNNING: Final[str] = "Sync already in progress"

# =============================================================================
# REALTIME
# =============================================================================
PARTICIPANT_ROOM_PREFIX: Final[str] = "user:"
CONVERSATION_ROOM_PREFIX: Final[str] = "conversation:"
SESSION_TOKEN_LEEWAY_S: Final[int] = 30
WS_HEARTBEAT_S: Final[float] = 25.0

# =============================================================================
# QUEUES
# =============================================================================
QUEUE_MESSAGE_PROCESSING: Final[str] = "message-processing"
QUEUE_CONTENT_CACHING: Final[str] = "content-caching"
QUEUE_KEY_PREFIX: Final[str] = "relaymesh:queue:"

# =============================================================================
# HEALTH
# =============================================================================
HEALTH_DEGRADED_MIN_UP: Final[int] = 2
