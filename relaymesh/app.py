"""
Application assembly.

Builds every component from a RelayMeshConfig, leaf to root:

    store -> ledger -> queue -> fetcher -> materializer
          -> presence + authenticator -> hub
          -> listener + handlers -> reconciliation service
          -> router -> aiohttp application

Collaborators can be injected (tests pass an InMemoryLedger, an
InMemoryJobQueue and a fetcher over fake sources).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp
from aiohttp import web

from relaymesh.api.handlers import MessageHandler, OpsHandler, SyncHandler, build_router
from relaymesh.api.middleware import AccessLogMiddleware, OperatorAuthMiddleware
from relaymesh.api.router import RelayMeshRouter
from relaymesh.api.server import create_web_app
from relaymesh.content.fetcher import ContentFetcher
from relaymesh.core.config import RelayMeshConfig
from relaymesh.core.errors import RelayMeshError
from relaymesh.core.types import Result, Ok, Err
from relaymesh.ledger.client import InMemoryLedger, LedgerClient
from relaymesh.ledger.handlers import LedgerEventHandlers
from relaymesh.ledger.listener import EventListener
from relaymesh.ledger.rpc import JsonRpcLedger
from relaymesh.pipeline.queue import InMemoryJobQueue, JobQueue, RedisJobQueue
from relaymesh.realtime.auth import Authenticator
from relaymesh.realtime.hub import FanoutHub
from relaymesh.realtime.presence import PresenceRegistry
from relaymesh.storage.repositories import QueryStore
from relaymesh.sync.materializer import MessageMaterializer
from relaymesh.sync.service import ReconciliationService

logger = logging.getLogger(__name__)


@dataclass
class RelayMeshApp:
    config: RelayMeshConfig
    store: QueryStore
    ledger: LedgerClient
    queue: JobQueue
    fetcher: ContentFetcher
    materializer: MessageMaterializer
    presence: PresenceRegistry
    hub: FanoutHub
    listener: EventListener
    handlers: LedgerEventHandlers
    service: ReconciliationService
    router: RelayMeshRouter
    http_session: Optional[aiohttp.ClientSession] = None

    def web_app(self) -> web.Application:
        return create_web_app(self.router, self.hub, self.config.realtime.heartbeat_s)

    async def start(self) -> None:
        await self.presence.start()
        await self.listener.start()
        if self.config.sync.auto_sync:
            await self.service.start_auto_sync(self.config.sync.interval_s)
        logger.info("RelayMesh started")

    async def stop(self) -> None:
        await self.service.stop_auto_sync()
        await self.listener.stop()
        await self.presence.stop()
        await self.ledger.close()
        await self.queue.close()
        if self.http_session is not None:
            await self.http_session.close()
        await self.store.close()
        logger.info("RelayMesh stopped")


async def build_app(
    config: RelayMeshConfig,
    *,
    ledger: Optional[LedgerClient] = None,
    queue: Optional[JobQueue] = None,
    fetcher: Optional[ContentFetcher] = None,
) -> Result[RelayMeshApp, RelayMeshError | str]:
    validated = config.validate()
    if validated.is_err():
        return validated

    opened = await QueryStore.open(config.store)
    if opened.is_err():
        return opened
    store = opened.unwrap()

    http_session: Optional[aiohttp.ClientSession] = None
    if ledger is None and config.ledger.rpc_url:
        http_session = aiohttp.ClientSession()

    if ledger is None:
        if config.ledger.rpc_url:
            ledger = JsonRpcLedger(config.ledger, session=http_session)
        else:
            logger.warning("No ledger RPC configured; using the in-memory ledger")
            ledger = InMemoryLedger()

    if queue is None:
        if config.queue.redis_url:
            redis_queue = RedisJobQueue(config.queue.redis_url, config.queue.key_prefix)
            connected = await redis_queue.connect()
            if connected.is_err():
                logger.warning("Job queue unreachable at startup: %s", connected.error.message)
            queue = redis_queue
        else:
            queue = InMemoryJobQueue()

    if fetcher is None:
        if http_session is None:
            http_session = aiohttp.ClientSession()
        fetcher = ContentFetcher.from_config(config.content, http_session)

    materializer = MessageMaterializer(store, queue, fetcher)
    presence = PresenceRegistry()
    authenticator = Authenticator(store, config.realtime)
    hub = FanoutHub(store, authenticator, presence, materializer)

    listener = EventListener(
        ledger,
        capacity=config.ledger.dedup_capacity,
        retain=config.ledger.dedup_retain,
        prune_interval_s=config.ledger.dedup_prune_interval_s,
    )
    handlers = LedgerEventHandlers(store, materializer, hub)
    handlers.register(listener)

    service = ReconciliationService(store, ledger, fetcher, queue, materializer, config.sync)

    router = build_router(
        SyncHandler(service),
        MessageHandler(materializer, authenticator, hub),
        OpsHandler(),
    )
    router.use(AccessLogMiddleware())
    router.use(OperatorAuthMiddleware(config.server.operator_token))

    return Ok(RelayMeshApp(
        config=config,
        store=store,
        ledger=ledger,
        queue=queue,
        fetcher=fetcher,
        materializer=materializer,
        presence=presence,
        hub=hub,
        listener=listener,
        handlers=handlers,
        service=service,
        router=router,
        http_session=http_session,
    ))
