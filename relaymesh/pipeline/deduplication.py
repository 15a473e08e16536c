"""
Recency Window: Bounded Duplicate Suppression for Ledger Events

Ledger nodes routinely redeliver events. The listener keeps the most
recent event keys in insertion order and drops any event whose key is
already present.

Bounds:
- capacity: size above which a prune trims the window
- retain: number of most recent keys kept by a prune

Keys older than the prune horizon can be redelivered and reprocessed,
so every event handler is idempotent on its own. Only the listener task
mutates a window, so it carries no lock.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Hashable

from relaymesh.core import constants as C
from relaymesh.core.types import Timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeduplicationResult:
    """Outcome of a single admission check."""
    is_duplicate: bool
    key: Hashable
    window_size: int


@dataclass
class WindowStats:
    admitted: int = 0
    duplicates: int = 0
    pruned: int = 0
    prunes: int = 0


class RecencyWindow:
    """
    Insertion-ordered set of recently seen keys.

    Usage:
        window = RecencyWindow(capacity=1000, retain=500)

        if window.admit(event.dedup_key).is_duplicate:
            return
        ...
        window.prune()   # on a timer
    """

    __slots__ = ("_capacity", "_retain", "_keys", "_stats")

    def __init__(self, capacity: int = C.DEDUP_CAPACITY, retain: int = C.DEDUP_RETAIN) -> None:
        if retain < 1 or retain > capacity:
            raise ValueError(f"retain must be in [1, capacity], got {retain} with capacity {capacity}")
        self._capacity = capacity
        self._retain = retain
        self._keys: OrderedDict[Hashable, Timestamp] = OrderedDict()
        self._stats = WindowStats()

    def admit(self, key: Hashable) -> DeduplicationResult:
        """Record key unless already present."""
        if key in self._keys:
            self._stats.duplicates += 1
            return DeduplicationResult(is_duplicate=True, key=key, window_size=len(self._keys))

        self._keys[key] = Timestamp.now()
        self._stats.admitted += 1
        return DeduplicationResult(is_duplicate=False, key=key, window_size=len(self._keys))

    def __contains__(self, key: Hashable) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def prune(self) -> int:
        """
        Trim to the most recent `retain` keys if over capacity.

        Returns the number of evicted keys.
        """
        if len(self._keys) <= self._capacity:
            return 0

        evict = len(self._keys) - self._retain
        for _ in range(evict):
            self._keys.popitem(last=False)

        self._stats.pruned += evict
        self._stats.prunes += 1
        logger.debug("Recency window pruned %d keys, %d retained", evict, len(self._keys))
        return evict

    def clear(self) -> None:
        self._keys.clear()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def retain(self) -> int:
        return self._retain

    @property
    def stats(self) -> WindowStats:
        return self._stats
