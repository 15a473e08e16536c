#!/usr/bin/env python3
"""
RelayMesh: Multi-Source Sync and Real-Time Delivery

Starts the event listener, the reconciliation loop and the HTTP /
websocket server, then runs until interrupted.

Usage:
    python -m relaymesh

    # Against a ledger node and redis
    RELAYMESH_LEDGER_RPC_URL=http://localhost:8545 \\
    RELAYMESH_LEDGER_CONTRACT=0x... \\
    RELAYMESH_REDIS_URL=redis://localhost:6379/0 \\
    python -m relaymesh
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from aiohttp import web

from relaymesh.app import build_app
from relaymesh.core.config import RelayMeshConfig
from relaymesh.observability.logging import LogLevel, setup_logging

logger = logging.getLogger("relaymesh")


async def serve(config: RelayMeshConfig) -> int:
    built = await build_app(config)
    if built.is_err():
        logger.error("Startup failed: %s", built.error)
        return 1
    app = built.unwrap()

    runner = web.AppRunner(app.web_app())
    await runner.setup()
    site = web.TCPSite(runner, config.server.host, config.server.port)
    await site.start()
    await app.start()
    logger.info("Listening", extra={"host": config.server.host, "port": config.server.port})

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    try:
        await stop.wait()
    finally:
        await app.stop()
        await runner.cleanup()
    return 0


def main() -> None:
    loaded = RelayMeshConfig.from_env()
    if loaded.is_err():
        print(loaded.error, file=sys.stderr)
        sys.exit(1)
    config = loaded.unwrap()

    setup_logging(LogLevel.parse(config.observability.log_level), json_output=config.observability.log_json)
    try:
        sys.exit(asyncio.run(serve(config)))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
