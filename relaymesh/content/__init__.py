"""
Content module: retrieval from the content-addressed network.
"""

from relaymesh.content.fetcher import (
    ContentFetcher,
    ContentHealthReport,
    GatewayHealth,
    GatewayStatus,
)
from relaymesh.content.sources import ContentSource, GatewayClient, PinningServiceClient

__all__ = [
    "ContentFetcher",
    "ContentHealthReport",
    "GatewayHealth",
    "GatewayStatus",
    "ContentSource",
    "GatewayClient",
    "PinningServiceClient",
]
