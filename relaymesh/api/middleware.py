"""
API Middleware: Cross-Cutting Concerns

Provides:
- OperatorAuthMiddleware: shared operator token on operational routes
- AccessLogMiddleware: one structured log line per request
"""

from __future__ import annotations

import hmac
import logging
import time
from typing import Sequence

from relaymesh.api.router import Handler, Request, Response
from relaymesh.observability.logging import log_context

logger = logging.getLogger(__name__)


class OperatorAuthMiddleware:
    """
    Bearer token check for operator-only routes.

    With an empty token the guard is disabled (local mode).
    """

    __slots__ = ("_token", "_protected")

    def __init__(self, token: str, protected: Sequence[str] = ("/api/sync/trigger",)) -> None:
        self._token = token
        self._protected = tuple(protected)

    async def __call__(self, request: Request, handler: Handler) -> Response:
        if not self._token or not request.path.startswith(self._protected):
            return await handler(request)

        presented = request.bearer_token or ""
        if not hmac.compare_digest(presented.encode(), self._token.encode()):
            logger.warning("Rejected operator request", extra={"path": request.path})
            return Response.error("Operator token required", status=401)
        return await handler(request)


class AccessLogMiddleware:
    __slots__ = ()

    async def __call__(self, request: Request, handler: Handler) -> Response:
        started = time.perf_counter()
        with log_context(http_method=request.method, http_path=request.path):
            response = await handler(request)
            logger.info(
                "HTTP request",
                extra={
                    "status": response.status,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
        return response
