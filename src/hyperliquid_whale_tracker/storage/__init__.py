"""State layer - Last known positions per tracked address."""

from hyperliquid_whale_tracker.storage.position_store import PositionStateStore

__all__ = ["PositionStateStore"]
