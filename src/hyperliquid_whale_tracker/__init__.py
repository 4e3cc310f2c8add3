"""Hyperliquid Whale Tracker - Leaderboard high-leverage position alerts."""

__version__ = "0.1.0"
