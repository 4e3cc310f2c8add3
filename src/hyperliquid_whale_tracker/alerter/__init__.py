"""Alert rendering layer."""

from hyperliquid_whale_tracker.alerter.formatter import AlertFormatter
from hyperliquid_whale_tracker.alerter.models import FormattedAlert

__all__ = ["AlertFormatter", "FormattedAlert"]
