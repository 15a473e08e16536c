"""
aiohttp server: HTTP routes through RelayMeshRouter, websockets into FanoutHub.
"""

from __future__ import annotations

import logging
from uuid import uuid4

from aiohttp import WSCloseCode, WSMsgType, web

from relaymesh.api.router import RelayMeshRouter, Request
from relaymesh.core import constants as C
from relaymesh.realtime.auth import Credentials
from relaymesh.realtime.hub import FanoutHub

logger = logging.getLogger(__name__)


class WebSocketConnection:
    """Connection adapter over an aiohttp websocket."""

    __slots__ = ("id", "_ws")

    def __init__(self, ws: web.WebSocketResponse) -> None:
        self.id = str(uuid4())
        self._ws = ws

    async def send(self, frame: str) -> None:
        await self._ws.send_str(frame)

    async def close(self) -> None:
        await self._ws.close()


def create_web_app(
    router: RelayMeshRouter,
    hub: FanoutHub,
    heartbeat_s: float = C.WS_HEARTBEAT_S,
) -> web.Application:
    async def websocket(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=heartbeat_s)
        await ws.prepare(request)
        connection = WebSocketConnection(ws)
        credentials = Credentials.from_request(request.headers.get("Authorization"), dict(request.query))

        connected = await hub.connect(connection, credentials)
        if connected.is_err():
            await ws.close(code=WSCloseCode.POLICY_VIOLATION, message=b"authentication failed")
            return ws

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await hub.handle(connection.id, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("Websocket closed with error", extra={"connection_id": connection.id})
        finally:
            await hub.disconnect(connection.id)
        return ws

    async def dispatch(request: web.Request) -> web.StreamResponse:
        response = await router.dispatch(await Request.from_aiohttp(request))
        return response.to_aiohttp()

    app = web.Application()
    app.router.add_get("/ws", websocket)
    app.router.add_route("*", "/{tail:.*}", dispatch)
    return app
