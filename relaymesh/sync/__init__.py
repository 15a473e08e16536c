"""
Sync module: materialization and reconciliation across the three stores.
"""

from relaymesh.sync.result import (
    HealthReport,
    HealthStatus,
    SyncOptions,
    SyncResult,
    SyncStatus,
)
from relaymesh.sync.materializer import (
    LEDGER_PLACEHOLDER_CONTENT,
    MaterializeOutcome,
    MessageMaterializer,
)
from relaymesh.sync.service import ReconciliationService

__all__ = [
    "HealthReport",
    "HealthStatus",
    "SyncOptions",
    "SyncResult",
    "SyncStatus",
    "LEDGER_PLACEHOLDER_CONTENT",
    "MaterializeOutcome",
    "MessageMaterializer",
    "ReconciliationService",
]
