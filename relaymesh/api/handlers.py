"""
API Handlers: Request Processing Logic

Implements:
- SyncHandler: trigger a reconciliation pass, report status and health
- MessageHandler: direct-write message API
- OpsHandler: liveness and Prometheus export
"""

from __future__ import annotations

import logging
from typing import Any

from relaymesh.api.router import RelayMeshRouter, Request, Response
from relaymesh.core import constants as C
from relaymesh.core.types import Timestamp
from relaymesh.observability.metrics import MetricsCollector
from relaymesh.realtime.auth import Authenticator, Credentials
from relaymesh.realtime.protocol import Notifier, ServerEvent, conversation_room
from relaymesh.sync.materializer import MessageMaterializer
from relaymesh.sync.result import HealthStatus, SyncOptions
from relaymesh.sync.service import ReconciliationService

logger = logging.getLogger(__name__)


def _json_body(request: Request) -> tuple[Any, Response | None]:
    try:
        return request.json(), None
    except (ValueError, UnicodeDecodeError) as e:
        return None, Response.error(f"Invalid JSON body: {e}")


class SyncHandler:
    """
    Operational endpoints for the reconciliation service.

    Endpoints:
    - POST /api/sync/trigger: run one pass, body {forceResync, maxMessages, skipIPFSValidation, dryRun}
    - GET /api/sync/status: running flag, last/next pass, last result
    - GET /api/sync/health: dependency health, 503 when unhealthy
    """

    __slots__ = ("_service",)

    def __init__(self, service: ReconciliationService) -> None:
        self._service = service

    async def trigger(self, request: Request) -> Response:
        body, bad = _json_body(request)
        if bad is not None:
            return bad
        if body is not None and not isinstance(body, dict):
            return Response.error("Request body must be an object")

        options = SyncOptions.from_dict(body)
        logger.info("Manual sync triggered", extra={"dry_run": options.dry_run, "force": options.force_resync})
        result = await self._service.run_pass(options)
        busy = not result.success and result.errors == [C.SYNC_ALREADY_RUNNING]
        return Response.json(result.to_dict(), status=409 if busy else 200)

    async def status(self, request: Request) -> Response:
        return Response.json(self._service.get_status().to_dict())

    async def health(self, request: Request) -> Response:
        report = await self._service.health_check()
        status = 503 if report.status is HealthStatus.UNHEALTHY else 200
        return Response.json(report.to_dict(), status=status)


class MessageHandler:
    """
    Direct-write path.

    POST /api/messages, bearer-authenticated:
        {"conversationId", "content", "type"?, "cid"?, "cidHash"?, "txHash"?, "replyToId"?}
    """

    __slots__ = ("_materializer", "_auth", "_notifier")

    def __init__(self, materializer: MessageMaterializer, authenticator: Authenticator, notifier: Notifier) -> None:
        self._materializer = materializer
        self._auth = authenticator
        self._notifier = notifier

    async def create(self, request: Request) -> Response:
        authenticated = await self._auth.authenticate(Credentials(token=request.bearer_token))
        if authenticated.is_err():
            return Response.from_error(authenticated.error)
        sender = authenticated.unwrap()

        body, bad = _json_body(request)
        if bad is not None:
            return bad
        if not isinstance(body, dict):
            return Response.error("Request body required")

        written = await self._materializer.materialize_direct_message(
            body.get("conversationId") or "",
            sender.id,
            body.get("content", ""),
            body.get("cid"),
            message_type=body.get("type") or "text",
            tx_hash=body.get("txHash"),
            reply_to_id=body.get("replyToId"),
            content_hash=body.get("cidHash"),
        )
        if written.is_err():
            return Response.from_error(written.error)

        message = written.unwrap()
        payload = message.to_dict()
        payload["sender"] = sender.to_dict()
        await self._notifier.emit_to_room(conversation_room(message.conversation_id), ServerEvent.NEW_MESSAGE, payload)
        return Response.json({"message": payload}, status=201)


class OpsHandler:
    __slots__ = ("_metrics",)

    def __init__(self, metrics: MetricsCollector | None = None) -> None:
        self._metrics = metrics or MetricsCollector.get_instance()

    async def liveness(self, request: Request) -> Response:
        return Response.json({"status": "ok", "timestamp": Timestamp.now().to_iso()})

    async def metrics(self, request: Request) -> Response:
        return Response.text(self._metrics.export_prometheus())


def build_router(
    sync: SyncHandler,
    messages: MessageHandler,
    ops: OpsHandler,
) -> RelayMeshRouter:
    router = RelayMeshRouter()
    router.add("POST", "/api/sync/trigger", sync.trigger)
    router.add("GET", "/api/sync/status", sync.status)
    router.add("GET", "/api/sync/health", sync.health)
    router.add("POST", "/api/messages", messages.create)
    router.add("GET", "/health", ops.liveness)
    router.add("GET", "/metrics", ops.metrics)
    return router
