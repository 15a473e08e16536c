"""
HTTP Router: Request Routing and Handler Dispatch

Framework-neutral request/response types plus a small router. The
aiohttp server adapts its requests into these and back, so handlers and
middleware stay testable without a socket.

Supports:
- Path parameter extraction ({name} segments)
- Query string parsing
- Method-based dispatch with 404 / 405
- Middleware chains
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence
from urllib.parse import parse_qs, urlparse

from aiohttp import web

from relaymesh.core.errors import ErrorCode, RelayMeshError

logger = logging.getLogger(__name__)

_ERROR_STATUS: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.REALTIME_AUTHENTICATION_REQUIRED: 401,
    ErrorCode.REALTIME_INVALID_TOKEN: 401,
    ErrorCode.REALTIME_ACCESS_DENIED: 403,
    ErrorCode.STORAGE_NOT_FOUND: 404,
    ErrorCode.CONTENT_UNAVAILABLE: 502,
    ErrorCode.LEDGER_UNAVAILABLE: 503,
    ErrorCode.QUEUE_UNAVAILABLE: 503,
}


@dataclass
class Request:
    """HTTP request representation."""
    method: str
    path: str
    query_params: dict[str, list[str]] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    path_params: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_raw(
        cls,
        method: str,
        url: str,
        headers: dict[str, str],
        body: bytes = b"",
    ) -> Request:
        parsed = urlparse(url)
        return cls(
            method=method.upper(),
            path=parsed.path,
            query_params=parse_qs(parsed.query),
            headers={k.lower(): v for k, v in headers.items()},
            body=body,
        )

    @classmethod
    async def from_aiohttp(cls, request: web.Request) -> Request:
        return cls.from_raw(
            request.method,
            str(request.rel_url),
            dict(request.headers),
            await request.read(),
        )

    def json(self) -> Any:
        """Parse body as JSON. Empty body is None."""
        if not self.body:
            return None
        return json.loads(self.body)

    def query(self, key: str, default: Optional[str] = None) -> Optional[str]:
        values = self.query_params.get(key, [])
        return values[0] if values else default

    def header(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(key.lower(), default)

    @property
    def bearer_token(self) -> Optional[str]:
        value = self.header("authorization") or ""
        if value.lower().startswith("bearer "):
            return value[7:].strip() or None
        return None


@dataclass
class Response:
    """HTTP response representation."""
    status: int = 200
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def json(
        cls,
        data: Any,
        status: int = 200,
        headers: Optional[dict[str, str]] = None,
    ) -> Response:
        h = headers or {}
        h["content-type"] = "application/json"
        return cls(status=status, body=json.dumps(data, default=str).encode(), headers=h)

    @classmethod
    def text(cls, body: str, status: int = 200, content_type: str = "text/plain; version=0.0.4") -> Response:
        return cls(status=status, body=body.encode(), headers={"content-type": content_type})

    @classmethod
    def error(cls, message: str, status: int = 400) -> Response:
        return cls.json({"error": message}, status=status)

    @classmethod
    def from_error(cls, error: RelayMeshError) -> Response:
        status = _ERROR_STATUS.get(error.code, 500)
        return cls.json({"error": error.message, "details": error.to_dict()}, status=status)

    @classmethod
    def not_found(cls) -> Response:
        return cls.error("Not found", status=404)

    @classmethod
    def method_not_allowed(cls) -> Response:
        return cls.error("Method not allowed", status=405)

    def to_aiohttp(self) -> web.Response:
        return web.Response(status=self.status, body=self.body, headers=self.headers)


Handler = Callable[[Request], Awaitable[Response]]
Middleware = Callable[[Request, Handler], Awaitable[Response]]


@dataclass
class Route:
    """Route definition."""
    method: str
    pattern: re.Pattern[str]
    handler: Handler
    param_names: list[str]

    @classmethod
    def create(cls, method: str, path: str, handler: Handler) -> Route:
        param_names: list[str] = []

        def replace_param(match: re.Match[str]) -> str:
            param_names.append(match.group(1))
            return r"(?P<" + match.group(1) + r">[^/]+)"

        pattern_str = "^" + re.sub(r"\{(\w+)\}", replace_param, path) + "$"
        return cls(
            method=method.upper(),
            pattern=re.compile(pattern_str),
            handler=handler,
            param_names=param_names,
        )

    def match(self, method: str, path: str) -> Optional[dict[str, str]]:
        if method.upper() != self.method:
            return None
        match = self.pattern.match(path)
        return match.groupdict() if match else None


class RelayMeshRouter:
    """
    HTTP request router.

    Usage:
        router = RelayMeshRouter()

        @router.get("/api/sync/status")
        async def status(request: Request) -> Response:
            ...

        response = await router.dispatch(request)
    """

    __slots__ = ("_routes", "_middleware", "_prefix")

    def __init__(self, prefix: str = "") -> None:
        self._routes: list[Route] = []
        self._middleware: list[Middleware] = []
        self._prefix = prefix

    def route(self, path: str, methods: Sequence[str] = ("GET",)) -> Callable[[Handler], Handler]:
        def decorator(handler: Handler) -> Handler:
            for method in methods:
                self._routes.append(Route.create(method, self._prefix + path, handler))
            return handler
        return decorator

    def get(self, path: str) -> Callable[[Handler], Handler]:
        return self.route(path, ["GET"])

    def post(self, path: str) -> Callable[[Handler], Handler]:
        return self.route(path, ["POST"])

    def add(self, method: str, path: str, handler: Handler) -> None:
        self._routes.append(Route.create(method, self._prefix + path, handler))

    def use(self, middleware: Middleware) -> None:
        self._middleware.append(middleware)

    async def dispatch(self, request: Request) -> Response:
        handler: Optional[Handler] = None
        for route in self._routes:
            params = route.match(request.method, request.path)
            if params is not None:
                request.path_params = params
                handler = route.handler
                break

        if handler is None:
            for route in self._routes:
                if route.pattern.match(request.path):
                    return Response.method_not_allowed()
            return Response.not_found()

        final_handler = handler
        for mw in reversed(self._middleware):
            final_handler = self._wrap_middleware(mw, final_handler)

        try:
            return await final_handler(request)
        except Exception as e:
            logger.exception("Unhandled error", extra={"path": request.path, "method": request.method})
            return Response.error(f"Internal error: {type(e).__name__}", status=500)

    @staticmethod
    def _wrap_middleware(middleware: Middleware, handler: Handler) -> Handler:
        async def wrapped(request: Request) -> Response:
            return await middleware(request, handler)
        return wrapped
