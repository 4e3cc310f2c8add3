"""Data models for the ingestor module."""

import contextlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Literal

Direction = Literal["long", "short", "flat"]

_ZERO = Decimal("0")


def normalize_address(address: str) -> str:
    """Normalize a trader address to its lowercase form."""
    return str(address).strip().lower()


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid numeric value: {value!r}") from e


def compute_leverage(
    value_usd: Decimal,
    margin_used: Decimal,
    explicit: Decimal | None = None,
) -> Decimal:
    """Return the effective leverage of a position.

    An explicit leverage reported by the venue wins; otherwise leverage is
    derived as value / margin. Zero margin yields zero leverage.
    """
    if explicit is not None:
        return abs(explicit)
    if margin_used == 0:
        return _ZERO
    return abs(value_usd) / abs(margin_used)


@dataclass(frozen=True)
class Position:
    """One open position for an (address, instrument) pair.

    The sign of ``size`` is the only source of truth for direction;
    ``value_usd`` and ``margin_used`` are always magnitudes.
    """

    instrument: str
    size: Decimal
    value_usd: Decimal
    margin_used: Decimal
    entry_price: Decimal | None = None
    explicit_leverage: Decimal | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "value_usd", abs(self.value_usd))
        object.__setattr__(self, "margin_used", abs(self.margin_used))

    @property
    def leverage(self) -> Decimal:
        """Effective leverage (explicit field, else value / margin, else 0)."""
        return compute_leverage(self.value_usd, self.margin_used, self.explicit_leverage)

    @property
    def direction(self) -> Direction:
        if self.size > 0:
            return "long"
        if self.size < 0:
            return "short"
        return "flat"

    @property
    def is_long(self) -> bool:
        return self.size > 0

    @property
    def is_open(self) -> bool:
        return self.size != 0

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Position":
        """Create a Position from a venue position record.

        Accepts either an ``assetPositions`` entry (``{"position": {...}}``)
        or a flat record carrying the same fields.

        Raises:
            ValueError: If the instrument or size is missing or malformed.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Position record must be an object, got {type(data).__name__}")
        raw = data.get("position", data)
        if not isinstance(raw, dict):
            raise ValueError("Position record has a non-object 'position' field")

        instrument = raw.get("coin") or raw.get("instrument") or raw.get("symbol")
        if not instrument:
            raise ValueError("Position record has no instrument")

        size = _to_decimal(raw.get("szi", raw.get("size")))
        if size is None:
            raise ValueError(f"Position record for {instrument} has no size")

        value = _to_decimal(
            raw.get("positionValue", raw.get("value_usd", raw.get("notionalValue")))
        )
        margin = _to_decimal(raw.get("marginUsed", raw.get("margin_used")))
        entry_price = _to_decimal(raw.get("entryPx", raw.get("entry_price")))

        # The venue reports leverage as {"type": "cross", "value": 20}.
        leverage_raw = raw.get("leverage")
        if isinstance(leverage_raw, dict):
            leverage_raw = leverage_raw.get("value")
        explicit_leverage = _to_decimal(leverage_raw)

        if value is None and entry_price is not None:
            value = abs(size) * entry_price

        return cls(
            instrument=str(instrument),
            size=size,
            value_usd=value if value is not None else _ZERO,
            margin_used=margin if margin is not None else _ZERO,
            entry_price=entry_price,
            explicit_leverage=explicit_leverage,
        )


@dataclass(frozen=True)
class Fill:
    """A single trade execution delivered on the ``userFills`` channel."""

    instrument: str
    price: Decimal
    size: Decimal
    side: str
    time: datetime
    direction: str | None = None
    closed_pnl: Decimal | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Fill":
        """Create a Fill from a websocket fill record."""
        ts = datetime.now(UTC)
        raw_time = data.get("time")
        if isinstance(raw_time, (int, float)):
            ts_f = float(raw_time)
            if ts_f > 1e12:
                ts_f /= 1000.0
            with contextlib.suppress(ValueError, OverflowError, OSError):
                ts = datetime.fromtimestamp(ts_f, tz=UTC)
        return cls(
            instrument=str(data["coin"]),
            price=Decimal(str(data["px"])),
            size=Decimal(str(data["sz"])),
            side=str(data.get("side", "")),
            time=ts,
            direction=data.get("dir"),
            closed_pnl=_to_decimal(data.get("closedPnl")),
        )


@dataclass(frozen=True)
class UserFillsEvent:
    """A ``userFills`` channel message for one address.

    Fill events only trigger a re-read of authoritative position state;
    they are never used to derive positions directly.
    """

    address: str
    fills: tuple[Fill, ...] = ()
    is_snapshot: bool = False
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_websocket_message(cls, message: dict[str, Any]) -> "UserFillsEvent":
        """Create a UserFillsEvent from a raw channel message.

        Raises:
            ValueError: If the message carries no user address.
        """
        data = message.get("data", message)
        if not isinstance(data, dict):
            raise ValueError("userFills message has no data object")
        user = data.get("user")
        if not user:
            raise ValueError("userFills message has no user")

        fills: list[Fill] = []
        for raw in data.get("fills") or []:
            # Skip individual malformed fills; the event still triggers a re-read.
            with contextlib.suppress(KeyError, ValueError, TypeError, InvalidOperation):
                fills.append(Fill.from_dict(raw))

        return cls(
            address=normalize_address(user),
            fills=tuple(fills),
            is_snapshot=bool(data.get("isSnapshot", False)),
        )
