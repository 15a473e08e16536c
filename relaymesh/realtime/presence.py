"""
Presence Registry: Single-Owner Connection Tracking

One asyncio task owns the participant -> connection-ids multimap and
the per-participant status. Callers never touch that state; they put a
command on the registry queue and await its future. Commands apply one
at a time in arrival order, so "came online" and "went offline" are
each reported exactly once per transition, however many connections
a participant opens or closes concurrently.

Usage:
    registry = PresenceRegistry()
    await registry.start()
    if await registry.connect(participant_id, connection_id):
        ...  # first connection: announce online
    if await registry.disconnect(participant_id, connection_id):
        ...  # last connection gone: announce offline
    await registry.stop()
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from relaymesh.core.types import PresenceStatus

logger = logging.getLogger(__name__)


class _Op(Enum):
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    SET_STATUS = "set_status"
    STATUS = "status"
    CONNECTIONS = "connections"


@dataclass(slots=True)
class _Command:
    op: _Op
    future: asyncio.Future[Any]
    participant_id: str = ""
    connection_id: str = ""
    status: Optional[PresenceStatus] = None


class PresenceRegistry:
    """Presence state behind a command queue."""

    __slots__ = ("_commands", "_task", "_connections", "_status")

    def __init__(self) -> None:
        self._commands: asyncio.Queue[_Command] = asyncio.Queue()
        self._task: Optional[asyncio.Task[None]] = None
        # Owned by _run; read and written nowhere else.
        self._connections: dict[str, set[str]] = defaultdict(set)
        self._status: dict[str, PresenceStatus] = {}

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="presence-registry")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        while not self._commands.empty():
            pending = self._commands.get_nowait()
            if not pending.future.done():
                pending.future.cancel()

    async def _run(self) -> None:
        while True:
            command = await self._commands.get()
            try:
                result = self._apply(command)
            except Exception as e:
                if not command.future.done():
                    command.future.set_exception(e)
            else:
                if not command.future.done():
                    command.future.set_result(result)

    def _apply(self, command: _Command) -> Any:
        pid = command.participant_id
        if command.op is _Op.CONNECT:
            came_online = not self._connections[pid]
            self._connections[pid].add(command.connection_id)
            if came_online:
                self._status[pid] = PresenceStatus.ONLINE
            return came_online

        if command.op is _Op.DISCONNECT:
            connections = self._connections.get(pid)
            if not connections or command.connection_id not in connections:
                return False
            connections.discard(command.connection_id)
            if connections:
                return False
            del self._connections[pid]
            self._status[pid] = PresenceStatus.OFFLINE
            return True

        if command.op is _Op.SET_STATUS:
            if command.status is None:
                raise ValueError("set_status needs a status")
            if not self._connections.get(pid):
                return False
            previous = self._status.get(pid, PresenceStatus.OFFLINE)
            self._status[pid] = command.status
            return previous is not command.status

        if command.op is _Op.STATUS:
            return self._status.get(pid, PresenceStatus.OFFLINE)

        if command.op is _Op.CONNECTIONS:
            return len(self._connections.get(pid, ()))

        raise ValueError(f"Unknown presence command {command.op}")

    async def _submit(self, op: _Op, **fields: Any) -> Any:
        await self.start()
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        await self._commands.put(_Command(op=op, future=future, **fields))
        return await future

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    async def connect(self, participant_id: str, connection_id: str) -> bool:
        """Register a connection. True when the participant came online."""
        return await self._submit(_Op.CONNECT, participant_id=participant_id, connection_id=connection_id)

    async def disconnect(self, participant_id: str, connection_id: str) -> bool:
        """Drop a connection. True when it was the participant's last."""
        return await self._submit(_Op.DISCONNECT, participant_id=participant_id, connection_id=connection_id)

    async def set_status(self, participant_id: str, status: PresenceStatus) -> bool:
        """Change a connected participant's status. True when it changed."""
        return await self._submit(_Op.SET_STATUS, participant_id=participant_id, status=status)

    async def status_of(self, participant_id: str) -> PresenceStatus:
        return await self._submit(_Op.STATUS, participant_id=participant_id)

    async def connection_count(self, participant_id: str) -> int:
        return await self._submit(_Op.CONNECTIONS, participant_id=participant_id)
