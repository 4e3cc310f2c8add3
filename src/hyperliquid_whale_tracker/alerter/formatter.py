"""Alert message formatter for log and text delivery.

This module transforms AlertRecord objects into human-readable alert
messages. Delivery to external channels is left to the alert callback.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Literal

from hyperliquid_whale_tracker.alerter.models import FormattedAlert
from hyperliquid_whale_tracker.detector.models import AlertRecord

# Hyperliquid URLs
HYPERLIQUID_TRADE_URL = "https://app.hyperliquid.xyz/trade/{instrument}"
HYPERLIQUID_ADDRESS_URL = "https://app.hyperliquid.xyz/explorer/address/{address}"

# Leverage tiers for the headline marker
EXTREME_LEVERAGE = Decimal("50")
VERY_HIGH_LEVERAGE = Decimal("40")
HIGH_LEVERAGE = Decimal("30")


def truncate_address(address: str, chars: int = 4) -> str:
    """Truncate an address to 0x1234...5678 format."""
    if len(address) < chars * 2 + 4:
        return address
    return f"{address[: chars + 2]}...{address[-chars:]}"


def format_usd(amount: Decimal) -> str:
    """Format a USD amount with K/M/B suffixes above one thousand."""
    value = abs(amount)
    sign = "-" if amount < 0 else ""
    for threshold, suffix in ((Decimal("1e9"), "B"), (Decimal("1e6"), "M"), (Decimal("1e3"), "K")):
        if value >= threshold:
            return f"{sign}${value / threshold:,.2f}{suffix}"
    return f"{sign}${value:,.2f}"


def format_leverage(leverage: Decimal) -> str:
    """Format leverage as ``42x`` or ``42.5x``."""
    if leverage == leverage.to_integral_value():
        return f"{int(leverage)}x"
    return f"{leverage:.1f}x"


def get_leverage_marker(leverage: Decimal) -> str:
    if leverage >= EXTREME_LEVERAGE:
        return "🚨🚨🚨"
    if leverage >= VERY_HIGH_LEVERAGE:
        return "🚨🚨"
    if leverage >= HIGH_LEVERAGE:
        return "🚨"
    return "⚡"


class AlertFormatter:
    """Formats AlertRecords into text alert messages.

    Supports two verbosity levels:
    - compact: Essential info only (trader, direction, size)
    - detailed: Full context (entry price, position size, links)
    """

    def __init__(
        self,
        verbosity: Literal["compact", "detailed"] = "detailed",
    ) -> None:
        """Initialize the formatter.

        Args:
            verbosity: Level of detail in the body.
        """
        self.verbosity = verbosity

    def format(self, record: AlertRecord) -> FormattedAlert:
        """Format an alert record into all text renderings.

        Args:
            record: The alert to format.

        Returns:
            FormattedAlert with title, body and plain text variants.
        """
        trader_short = truncate_address(record.address)
        headline = f"{format_leverage(record.leverage)} {record.direction.upper()} {record.instrument}"
        links = self._build_links(record)

        title = f"{get_leverage_marker(record.leverage)} HIGH LEVERAGE ALERT - {headline}"
        compact = (
            f"{trader_short} opened {headline} worth {format_usd(record.value_usd)} "
            f"on {record.source}"
        )

        return FormattedAlert(
            title=title,
            body=self._build_body(record, trader_short, headline, compact),
            plain_text=self._build_plain_text(record, trader_short, headline, links),
            compact=compact,
            links=links,
        )

    def _build_links(self, record: AlertRecord) -> dict[str, str]:
        return {
            "trader": HYPERLIQUID_ADDRESS_URL.format(address=record.address),
            "market": HYPERLIQUID_TRADE_URL.format(instrument=record.instrument),
        }

    def _build_body(
        self,
        record: AlertRecord,
        trader_short: str,
        headline: str,
        compact: str,
    ) -> str:
        if self.verbosity == "compact":
            return compact

        lines = [
            f"Position: {headline}",
            f"Value: {format_usd(record.value_usd)}",
            f"Trader: {trader_short}",
        ]
        if record.entry_price is not None:
            lines.append(f"Entry: ${record.entry_price:,}")
        return "\n".join(lines)

    def _build_plain_text(
        self,
        record: AlertRecord,
        trader_short: str,
        headline: str,
        links: dict[str, str],
    ) -> str:
        """Build plain text format for generic channels."""
        lines = [
            "HIGH LEVERAGE ALERT",
            "=" * 30,
            "",
            f"{headline}",
            f"Size: {abs(record.size):,} {record.instrument}",
            f"Value: {format_usd(record.value_usd)}",
        ]
        if record.entry_price is not None:
            lines.append(f"Entry: ${record.entry_price:,}")
        lines.append(f"Trader: {trader_short}")
        lines.append(f"Detected: {record.created_at.strftime('%Y-%m-%d %H:%M:%S UTC')}")

        lines.append("")
        lines.append(f"Trader: {links['trader']}")
        lines.append(f"Market: {links['market']}")

        return "\n".join(lines)
