"""Command-line entry point.

Usage:
    # Monitor the leaderboard and emit alerts
    python -m hyperliquid_whale_tracker run

    # Log alerts only
    python -m hyperliquid_whale_tracker run --dry-run

    # Check connectivity to the info endpoint and the leaderboard
    python -m hyperliquid_whale_tracker check

    # Show one address's positions against the alert criteria
    python -m hyperliquid_whale_tracker positions 0xabc...
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys

from hyperliquid_whale_tracker.alerter.formatter import format_leverage, format_usd
from hyperliquid_whale_tracker.config import ConfigurationError, Settings, get_settings
from hyperliquid_whale_tracker.detector.qualification import is_qualifying
from hyperliquid_whale_tracker.ingestor.info_client import AddressFetchError, HyperliquidInfoClient
from hyperliquid_whale_tracker.ingestor.models import normalize_address
from hyperliquid_whale_tracker.leaderboard.registry import LeaderboardRegistry, SourceUnavailable
from hyperliquid_whale_tracker.pipeline import Pipeline, build_thresholds

logger = logging.getLogger("hyperliquid_whale_tracker")


def setup_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Reduce noise from HTTP and websocket libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


def _info_client(settings: Settings) -> HyperliquidInfoClient:
    return HyperliquidInfoClient(
        settings.hyperliquid.info_url,
        timeout_seconds=settings.hyperliquid.request_timeout_seconds,
        requests_per_second=settings.hyperliquid.requests_per_second,
        max_retries=settings.hyperliquid.max_retries,
    )


async def run_monitor(settings: Settings, *, dry_run: bool) -> int:
    pipeline = Pipeline(settings, dry_run=dry_run or None)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pipeline.request_stop)
        except NotImplementedError:  # pragma: no cover - Windows
            pass

    logger.info("Configuration: %s", json.dumps(settings.redacted_summary()))
    await pipeline.run()

    stats = pipeline.stats
    logger.info(
        "Shutdown complete: %d fill events, %d alerts emitted, %d suppressed, %d fetch errors",
        stats.fill_events,
        stats.alerts_emitted,
        stats.alerts_suppressed,
        stats.fetch_errors,
    )
    return 0


async def run_check(settings: Settings) -> int:
    ok = True
    async with _info_client(settings) as client:
        if await client.ping():
            print(f"info endpoint:  OK ({settings.hyperliquid.info_url})")
        else:
            print(f"info endpoint:  FAILED ({settings.hyperliquid.info_url})")
            ok = False

    registry = LeaderboardRegistry(
        settings.leaderboard.url,
        top_n=settings.leaderboard.top_n,
        timeout_seconds=settings.leaderboard.timeout_seconds,
        pinned=settings.leaderboard.extra_addresses,
    )
    try:
        diff = await registry.refresh()
        print(f"leaderboard:    OK ({len(diff.current)} addresses)")
    except SourceUnavailable as e:
        print(f"leaderboard:    FAILED ({e})")
        ok = False
    finally:
        await registry.aclose()

    return 0 if ok else 1


async def show_positions(settings: Settings, address: str) -> int:
    thresholds = build_thresholds(settings)
    address = normalize_address(address)
    async with _info_client(settings) as client:
        try:
            positions = await client.fetch_positions(address)
        except AddressFetchError as e:
            print(f"Failed to fetch positions: {e}", file=sys.stderr)
            return 1

    if not positions:
        print(f"{address}: no open positions")
        return 0

    print(f"{address}: {len(positions)} open positions")
    for position in sorted(positions, key=lambda p: p.value_usd, reverse=True):
        marker = "*" if is_qualifying(position, thresholds) else " "
        print(
            f" {marker} {position.instrument:<10} {position.direction:<5} "
            f"{format_leverage(position.leverage):>7} {format_usd(position.value_usd):>12}"
        )
    print(f"(* meets alert criteria {thresholds.to_dict()})")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="hyperliquid_whale_tracker",
        description="Hyperliquid leaderboard high-leverage position monitor",
    )
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run the monitor (default)")
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log alerts without handing them to the alert callback",
    )
    subparsers.add_parser("check", help="Check connectivity to the data sources")
    positions_parser = subparsers.add_parser("positions", help="Show an address's positions")
    positions_parser.add_argument("address", help="Trader address (0x...)")

    args = parser.parse_args(argv)

    try:
        settings = get_settings()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(settings)

    if args.command == "check":
        return asyncio.run(run_check(settings))
    if args.command == "positions":
        return asyncio.run(show_positions(settings, args.address))
    return asyncio.run(run_monitor(settings, dry_run=getattr(args, "dry_run", False)))


if __name__ == "__main__":
    sys.exit(main())
