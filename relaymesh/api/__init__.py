"""
API module: operational HTTP surface and the websocket endpoint.
"""

from relaymesh.api.router import RelayMeshRouter, Request, Response, Route
from relaymesh.api.middleware import AccessLogMiddleware, OperatorAuthMiddleware
from relaymesh.api.handlers import MessageHandler, OpsHandler, SyncHandler, build_router
from relaymesh.api.server import WebSocketConnection, create_web_app

__all__ = [
    "RelayMeshRouter",
    "Request",
    "Response",
    "Route",
    "AccessLogMiddleware",
    "OperatorAuthMiddleware",
    "MessageHandler",
    "OpsHandler",
    "SyncHandler",
    "build_router",
    "WebSocketConnection",
    "create_web_app",
]
