"""Target discovery - Leaderboard-sourced address registry."""

from hyperliquid_whale_tracker.leaderboard.registry import (
    LeaderboardDiff,
    LeaderboardError,
    LeaderboardRegistry,
    SourceUnavailable,
)

__all__ = [
    "LeaderboardDiff",
    "LeaderboardError",
    "LeaderboardRegistry",
    "SourceUnavailable",
]
