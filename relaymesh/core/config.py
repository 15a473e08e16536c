"""
Configuration Management for RelayMesh

Provides validated configuration with sensible defaults.
Every field can be overridden from a RELAYMESH_* environment variable.

Design:
- Immutable after validation
- Fail-fast on invalid configuration
- Type-safe with dataclasses
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from relaymesh.core.types import Result, Ok, Err
from relaymesh.core import constants as C


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(item.strip().rstrip("/") for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class StoreConfig:
    """Query store (SQLite) configuration."""

    data_dir: Path = field(default_factory=lambda: Path("./data"))
    in_memory: bool = False
    cache_size_kb: int = 16 * 1024

    @property
    def db_path(self) -> str:
        """Database location understood by sqlite3.connect."""
        if self.in_memory:
            return ":memory:"
        return str(self.data_dir / "relaymesh.db")


@dataclass(frozen=True)
class ContentConfig:
    """Content network access configuration."""

    pinning_api_url: Optional[str] = None
    pinning_api_token: str = ""
    gateways: tuple[str, ...] = C.DEFAULT_GATEWAYS
    max_retries: int = C.CONTENT_MAX_RETRIES
    gateway_timeout_s: float = C.CONTENT_GATEWAY_TIMEOUT_S
    health_timeout_s: float = C.CONTENT_HEALTH_TIMEOUT_S
    health_probe_id: str = C.HEALTH_PROBE_CONTENT_ID


@dataclass(frozen=True)
class LedgerConfig:
    """
    Ledger connection and event listener configuration.

    Event topics and function selectors are the keccak hashes of the
    contract's ABI signatures, supplied by the deployment.
    """

    rpc_url: Optional[str] = None
    contract_address: str = ""
    topic_message_sent: str = ""
    topic_friend_added: str = ""
    topic_account_created: str = ""
    selector_get_messages: str = ""
    selector_get_friends: str = ""
    selector_get_username: str = ""
    selector_get_public_key: str = ""
    start_block: Optional[int] = None
    poll_interval_s: float = C.LEDGER_POLL_INTERVAL_S
    dedup_capacity: int = C.DEDUP_CAPACITY
    dedup_retain: int = C.DEDUP_RETAIN
    dedup_prune_interval_s: float = C.DEDUP_PRUNE_INTERVAL_S


@dataclass(frozen=True)
class SyncConfig:
    """Reconciliation service configuration."""

    auto_sync: bool = True
    interval_s: float = C.SYNC_INTERVAL_S
    max_messages: int = C.SYNC_MAX_MESSAGES
    resolve_on_materialize: bool = True
    skip_validation_when_degraded: bool = True


@dataclass(frozen=True)
class RealtimeConfig:
    """Realtime fan-out and session verification."""

    session_secret: str = ""
    session_issuer: Optional[str] = None
    allow_address_auth: bool = True
    heartbeat_s: float = C.WS_HEARTBEAT_S


@dataclass(frozen=True)
class QueueConfig:
    """External job queue configuration."""

    redis_url: Optional[str] = None
    key_prefix: str = C.QUEUE_KEY_PREFIX


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging and metrics configuration."""

    metrics_enabled: bool = True
    log_level: str = "INFO"
    log_json: bool = True


@dataclass(frozen=True)
class ServerConfig:
    """HTTP / websocket listener configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    operator_token: str = ""


@dataclass(frozen=True)
class RelayMeshConfig:
    """Root configuration."""

    store: StoreConfig = field(default_factory=StoreConfig)
    content: ContentConfig = field(default_factory=ContentConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls) -> Result[RelayMeshConfig, str]:
        """
        Load configuration from environment variables.

        Environment variables are prefixed with RELAYMESH_.
        Example: RELAYMESH_STORE_DATA_DIR, RELAYMESH_LEDGER_RPC_URL
        """
        try:
            store = StoreConfig(
                data_dir=Path(os.getenv("RELAYMESH_STORE_DATA_DIR", "./data")),
                in_memory=_env_bool("RELAYMESH_STORE_IN_MEMORY", False),
            )

            content = ContentConfig(
                pinning_api_url=os.getenv("RELAYMESH_PINNING_API_URL") or None,
                pinning_api_token=os.getenv("RELAYMESH_PINNING_API_TOKEN", ""),
                gateways=_env_list("RELAYMESH_CONTENT_GATEWAYS", C.DEFAULT_GATEWAYS),
                max_retries=int(os.getenv("RELAYMESH_CONTENT_MAX_RETRIES", str(C.CONTENT_MAX_RETRIES))),
                gateway_timeout_s=float(
                    os.getenv("RELAYMESH_CONTENT_GATEWAY_TIMEOUT_S", str(C.CONTENT_GATEWAY_TIMEOUT_S))
                ),
            )

            start_block = os.getenv("RELAYMESH_LEDGER_START_BLOCK")
            ledger = LedgerConfig(
                rpc_url=os.getenv("RELAYMESH_LEDGER_RPC_URL") or None,
                contract_address=os.getenv("RELAYMESH_LEDGER_CONTRACT", ""),
                topic_message_sent=os.getenv("RELAYMESH_LEDGER_TOPIC_MESSAGE_SENT", ""),
                topic_friend_added=os.getenv("RELAYMESH_LEDGER_TOPIC_FRIEND_ADDED", ""),
                topic_account_created=os.getenv("RELAYMESH_LEDGER_TOPIC_ACCOUNT_CREATED", ""),
                selector_get_messages=os.getenv("RELAYMESH_LEDGER_SELECTOR_GET_MESSAGES", ""),
                selector_get_friends=os.getenv("RELAYMESH_LEDGER_SELECTOR_GET_FRIENDS", ""),
                selector_get_username=os.getenv("RELAYMESH_LEDGER_SELECTOR_GET_USERNAME", ""),
                selector_get_public_key=os.getenv("RELAYMESH_LEDGER_SELECTOR_GET_PUBLIC_KEY", ""),
                start_block=int(start_block) if start_block else None,
                dedup_capacity=int(os.getenv("RELAYMESH_DEDUP_CAPACITY", str(C.DEDUP_CAPACITY))),
                dedup_retain=int(os.getenv("RELAYMESH_DEDUP_RETAIN", str(C.DEDUP_RETAIN))),
                dedup_prune_interval_s=float(
                    os.getenv("RELAYMESH_DEDUP_PRUNE_INTERVAL_S", str(C.DEDUP_PRUNE_INTERVAL_S))
                ),
            )

            sync = SyncConfig(
                auto_sync=_env_bool("RELAYMESH_SYNC_AUTO", True),
                interval_s=float(os.getenv("RELAYMESH_SYNC_INTERVAL_S", str(C.SYNC_INTERVAL_S))),
                max_messages=int(os.getenv("RELAYMESH_SYNC_MAX_MESSAGES", str(C.SYNC_MAX_MESSAGES))),
                resolve_on_materialize=_env_bool("RELAYMESH_SYNC_RESOLVE_ON_MATERIALIZE", True),
                skip_validation_when_degraded=_env_bool("RELAYMESH_SYNC_SKIP_WHEN_DEGRADED", True),
            )

            realtime = RealtimeConfig(
                session_secret=os.getenv("RELAYMESH_SESSION_SECRET", ""),
                session_issuer=os.getenv("RELAYMESH_SESSION_ISSUER") or None,
                allow_address_auth=_env_bool("RELAYMESH_ALLOW_ADDRESS_AUTH", True),
            )

            queue = QueueConfig(
                redis_url=os.getenv("RELAYMESH_REDIS_URL") or None,
            )

            observability = ObservabilityConfig(
                metrics_enabled=_env_bool("RELAYMESH_METRICS_ENABLED", True),
                log_level=os.getenv("RELAYMESH_LOG_LEVEL", "INFO").upper(),
                log_json=_env_bool("RELAYMESH_LOG_JSON", True),
            )

            server = ServerConfig(
                host=os.getenv("RELAYMESH_HOST", "0.0.0.0"),
                port=int(os.getenv("RELAYMESH_PORT", "8080")),
                operator_token=os.getenv("RELAYMESH_OPERATOR_TOKEN", ""),
            )

            return Ok(cls(
                store=store,
                content=content,
                ledger=ledger,
                sync=sync,
                realtime=realtime,
                queue=queue,
                observability=observability,
                server=server,
            ))
        except (ValueError, TypeError) as e:
            return Err(f"Configuration error: {e}")

    def validate(self) -> Result[None, str]:
        """Validate configuration invariants."""
        if self.content.max_retries < 1:
            return Err("content max_retries must be >= 1")
        if not self.content.gateways and not self.content.pinning_api_url:
            return Err("at least one content access path is required")
        if self.ledger.dedup_retain > self.ledger.dedup_capacity:
            return Err("dedup_retain cannot exceed dedup_capacity")
        if self.ledger.dedup_retain < 1:
            return Err("dedup_retain must be >= 1")
        if self.sync.interval_s <= 0:
            return Err("sync interval must be positive")
        if self.sync.max_messages < 1:
            return Err("sync max_messages must be >= 1")
        if self.ledger.rpc_url and not self.ledger.contract_address:
            return Err("ledger contract address is required when rpc_url is set")
        if not (0 < self.server.port < 65536):
            return Err(f"invalid server port {self.server.port}")
        return Ok(None)
