"""Data ingestion layer - Position snapshots and real-time fills streaming."""

from hyperliquid_whale_tracker.ingestor.info_client import (
    AddressFetchError,
    HyperliquidInfoClient,
    InfoClientError,
)
from hyperliquid_whale_tracker.ingestor.models import (
    Fill,
    Position,
    UserFillsEvent,
)
from hyperliquid_whale_tracker.ingestor.websocket import (
    ConnectionState,
    StreamError,
    SubscriptionState,
    TransportError,
    UserFillsStreamHandler,
)

__all__ = [
    "AddressFetchError",
    "ConnectionState",
    "Fill",
    "HyperliquidInfoClient",
    "InfoClientError",
    "Position",
    "StreamError",
    "SubscriptionState",
    "TransportError",
    "UserFillsEvent",
    "UserFillsStreamHandler",
]
