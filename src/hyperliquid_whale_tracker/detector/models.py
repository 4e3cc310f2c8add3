"""Data models for the detector module."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_FLOOR, Decimal
from enum import Enum

from hyperliquid_whale_tracker.ingestor.models import Direction, Position

DEFAULT_SOURCE = "hyperliquid"
DEFAULT_VALUE_BUCKET_USD = Decimal("1000")


class TransitionKind(str, Enum):
    """Outcome of comparing the previous and current position of one instrument."""

    NEW_QUALIFYING_EVENT = "new_qualifying_event"
    POSITION_CLOSED = "position_closed"
    NO_OP = "no_op"


@dataclass(frozen=True)
class Transition:
    """A position state transition for one (address, instrument) pair.

    Attributes:
        address: Trader address the transition belongs to.
        instrument: Instrument symbol.
        kind: Classified transition.
        previous: Position before the update, None if absent.
        current: Position after the update, None if absent.
    """

    address: str
    instrument: str
    kind: TransitionKind
    previous: Position | None = None
    current: Position | None = None

    @property
    def is_new_qualifying(self) -> bool:
        return self.kind == TransitionKind.NEW_QUALIFYING_EVENT


@dataclass(frozen=True)
class AlertRecord:
    """Alert handed to the external notification collaborator.

    Attributes:
        address: Trader address holding the position.
        instrument: Instrument symbol.
        size: Signed position size.
        value_usd: Position notional in USD (magnitude).
        leverage: Effective leverage of the position.
        direction: "long" or "short".
        entry_price: Entry price, if reported.
        source: Tag identifying the data source.
        created_at: When this record was created.
    """

    address: str
    instrument: str
    size: Decimal
    value_usd: Decimal
    leverage: Decimal
    direction: Direction
    entry_price: Decimal | None = None
    source: str = DEFAULT_SOURCE
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_position(
        cls,
        address: str,
        position: Position,
        *,
        source: str = DEFAULT_SOURCE,
    ) -> AlertRecord:
        return cls(
            address=address,
            instrument=position.instrument,
            size=position.size,
            value_usd=position.value_usd,
            leverage=position.leverage,
            direction=position.direction,
            entry_price=position.entry_price,
            source=source,
        )

    def to_dict(self) -> dict[str, object]:
        """Serialize to a plain dictionary for notification sinks."""
        return {
            "address": self.address,
            "instrument": self.instrument,
            "size": str(self.size),
            "value_usd": str(self.value_usd),
            "leverage": str(self.leverage),
            "direction": self.direction,
            "entry_price": str(self.entry_price) if self.entry_price is not None else None,
            "source": self.source,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class AlertSignature:
    """Coarse de-duplication key for an alert.

    Value is floored to a bucket and leverage to an integer so that two
    structurally similar events a few seconds apart collapse to one key.
    """

    address: str
    instrument: str
    value_bucket: int
    leverage_bucket: int

    @classmethod
    def from_record(
        cls,
        record: AlertRecord,
        *,
        value_bucket_usd: Decimal = DEFAULT_VALUE_BUCKET_USD,
    ) -> AlertSignature:
        if value_bucket_usd <= 0:
            raise ValueError("value_bucket_usd must be > 0")
        value_bucket = (record.value_usd / value_bucket_usd).to_integral_value(rounding=ROUND_FLOOR)
        leverage_bucket = record.leverage.to_integral_value(rounding=ROUND_FLOOR)
        return cls(
            address=record.address,
            instrument=record.instrument,
            value_bucket=int(value_bucket),
            leverage_bucket=int(leverage_bucket),
        )

    @property
    def key(self) -> str:
        return f"{self.address}:{self.instrument}:{self.value_bucket}:{self.leverage_bucket}"
