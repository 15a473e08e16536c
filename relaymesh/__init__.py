"""
RelayMesh: Multi-Source Sync and Real-Time Delivery Engine

Keeps a query store consistent with an append-only ledger and a
content-addressed network, and pushes confirmed state to connected
clients.

Components:
- ContentFetcher: bounded-retry retrieval across pinning client and gateways
- EventListener: deduplicated ledger event dispatch
- ReconciliationService: four-phase repair of the query store
- FanoutHub: authenticated websocket rooms with presence
"""

__version__ = "0.1.0"
