"""
Event Listener: Deduplicated Dispatch of Ledger Events

Consumes LedgerClient.stream_events() and routes each event to the
handlers subscribed for its kind.

Guarantees:
- An event whose dedup key is inside the recency window is dropped
- A handler failure is logged and never stops the listener, other
  handlers, or later events
- The recency window is pruned on its own timer

Usage:
    listener = EventListener(ledger, capacity=1000, retain=500)
    listener.subscribe([EventKind.MESSAGE_SENT], handlers.on_message_sent)
    await listener.start()
    ...
    await listener.stop()
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional

from relaymesh.core import constants as C
from relaymesh.ledger.client import LedgerClient
from relaymesh.ledger.events import EventKind, LedgerEvent
from relaymesh.observability import metrics
from relaymesh.pipeline.deduplication import RecencyWindow

logger = logging.getLogger(__name__)

EventHandler = Callable[[LedgerEvent], Awaitable[None]]


@dataclass
class ListenerStats:
    received: int = 0
    duplicates: int = 0
    dispatched: int = 0
    handler_failures: int = 0


class EventListener:
    """Deduplicating fan-in from the ledger event stream to handlers."""

    __slots__ = (
        "_ledger", "_window", "_handlers", "_prune_interval_s",
        "_consume_task", "_prune_task", "_stats",
    )

    def __init__(
        self,
        ledger: LedgerClient,
        capacity: int = C.DEDUP_CAPACITY,
        retain: int = C.DEDUP_RETAIN,
        prune_interval_s: float = C.DEDUP_PRUNE_INTERVAL_S,
    ) -> None:
        self._ledger = ledger
        self._window = RecencyWindow(capacity=capacity, retain=retain)
        self._handlers: dict[EventKind, list[EventHandler]] = defaultdict(list)
        self._prune_interval_s = prune_interval_s
        self._consume_task: Optional[asyncio.Task[None]] = None
        self._prune_task: Optional[asyncio.Task[None]] = None
        self._stats = ListenerStats()

    def subscribe(self, event_types: Iterable[EventKind], handler: EventHandler) -> None:
        for kind in event_types:
            self._handlers[EventKind(kind)].append(handler)

    async def dispatch(self, event: LedgerEvent) -> bool:
        """
        Admit one event and invoke its handlers.

        Returns False when the event was a duplicate.
        """
        self._stats.received += 1
        kind = event.kind.value

        if self._window.admit(event.dedup_key).is_duplicate:
            self._stats.duplicates += 1
            metrics.ledger_events().inc(kind=kind, outcome="duplicate")
            logger.debug("Duplicate ledger event dropped", extra={"event_key": "-".join(event.dedup_key)})
            return False

        for handler in self._handlers.get(event.kind, ()):
            try:
                await handler(event)
            except Exception:
                self._stats.handler_failures += 1
                metrics.ledger_events().inc(kind=kind, outcome="failed")
                logger.exception("Ledger event handler failed", extra={"event_kind": kind})
            else:
                self._stats.dispatched += 1
                metrics.ledger_events().inc(kind=kind, outcome="handled")
        return True

    async def run(self) -> None:
        """Consume the ledger stream until it ends or the task is cancelled."""
        logger.info("Ledger event listener running")
        async for event in self._ledger.stream_events():
            await self.dispatch(event)
        logger.info("Ledger event stream ended")

    async def _prune_loop(self) -> None:
        while True:
            await asyncio.sleep(self._prune_interval_s)
            evicted = self._window.prune()
            if evicted:
                logger.info("Pruned ledger event window", extra={"evicted": evicted, "retained": len(self._window)})

    async def start(self) -> None:
        if self._consume_task is not None:
            return
        self._consume_task = asyncio.create_task(self.run(), name="ledger-listener")
        self._prune_task = asyncio.create_task(self._prune_loop(), name="ledger-window-prune")

    async def stop(self) -> None:
        for task in (self._consume_task, self._prune_task):
            if task is not None:
                task.cancel()
        for task in (self._consume_task, self._prune_task):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._consume_task = None
        self._prune_task = None

    def prune(self) -> int:
        return self._window.prune()

    @property
    def window(self) -> RecencyWindow:
        return self._window

    @property
    def stats(self) -> ListenerStats:
        return self._stats
