"""
RelayMesh Test Suite

Tests for:
- Core types, errors, configuration and retry policy
- Query store repositories and job queues
- Content fetcher fallback and health
- Ledger listener, handlers and ABI decoding
- Materialization and reconciliation
- Realtime fan-out, presence and authentication
- HTTP and websocket surface
"""
