"""Position qualification and edge-triggered transition detection.

Pure decision logic: a position qualifies when its direction matches and it
meets both the minimum USD value and minimum leverage. A transition is only
alert-worthy on the edge into the qualifying state.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Literal

from hyperliquid_whale_tracker.detector.models import TransitionKind
from hyperliquid_whale_tracker.ingestor.models import Position

# Default configuration
DEFAULT_MIN_VALUE_USD = Decimal("100000")
DEFAULT_MIN_LEVERAGE = Decimal("30")

DirectionFilter = Literal["long", "short", "both"]


@dataclass(frozen=True)
class QualificationThresholds:
    """Thresholds a position must meet to qualify (boundaries inclusive)."""

    min_value_usd: Decimal = DEFAULT_MIN_VALUE_USD
    min_leverage: Decimal = DEFAULT_MIN_LEVERAGE
    direction: DirectionFilter = "long"

    def to_dict(self) -> dict[str, str]:
        return {
            "min_value_usd": str(self.min_value_usd),
            "min_leverage": str(self.min_leverage),
            "direction": self.direction,
        }


DEFAULT_THRESHOLDS = QualificationThresholds()


def _direction_matches(position: Position, direction: DirectionFilter) -> bool:
    if not position.is_open:
        return False
    if direction == "both":
        return True
    return position.direction == direction


def is_qualifying(
    position: Position,
    thresholds: QualificationThresholds = DEFAULT_THRESHOLDS,
) -> bool:
    """Return True if the position meets direction, value and leverage thresholds."""
    return (
        _direction_matches(position, thresholds.direction)
        and position.value_usd >= thresholds.min_value_usd
        and position.leverage >= thresholds.min_leverage
    )


def detect_transition(
    previous: Position | None,
    current: Position | None,
    thresholds: QualificationThresholds = DEFAULT_THRESHOLDS,
) -> TransitionKind:
    """Classify the change from ``previous`` to ``current``.

    A position that already qualified and still qualifies never re-fires.
    """
    if current is None:
        if previous is None:
            return TransitionKind.NO_OP
        return TransitionKind.POSITION_CLOSED

    if not is_qualifying(current, thresholds):
        return TransitionKind.NO_OP

    if previous is None or not is_qualifying(previous, thresholds):
        return TransitionKind.NEW_QUALIFYING_EVENT

    return TransitionKind.NO_OP
