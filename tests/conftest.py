"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from typing import Any

import pytest

from hyperliquid_whale_tracker.ingestor.models import Position


def make_position(
    instrument: str = "BTC",
    *,
    size: str = "2",
    value_usd: str = "150000",
    margin_used: str = "4000",
    entry_price: str | None = "75000",
    leverage: str | None = None,
) -> Position:
    """Build a Position from string amounts."""
    return Position(
        instrument=instrument,
        size=Decimal(size),
        value_usd=Decimal(value_usd),
        margin_used=Decimal(margin_used),
        entry_price=Decimal(entry_price) if entry_price is not None else None,
        explicit_leverage=Decimal(leverage) if leverage is not None else None,
    )


def api_position(
    coin: str = "BTC",
    *,
    szi: str = "2",
    position_value: str = "150000",
    margin_used: str = "4000",
    entry_px: str = "75000",
) -> dict[str, object]:
    """Build one ``assetPositions`` entry as returned by the info endpoint."""
    return {
        "type": "oneWay",
        "position": {
            "coin": coin,
            "szi": szi,
            "positionValue": position_value,
            "marginUsed": margin_used,
            "entryPx": entry_px,
        },
    }


@pytest.fixture
def sample_address() -> str:
    """Sample trader address for testing."""
    return "0x" + "ab" * 20


@pytest.fixture
def qualifying_position() -> Position:
    """Long BTC worth 150k on 4k margin (37.5x)."""
    return make_position()


_CLOSED = object()


class FakeConnection:
    """In-memory stand-in for a websocket client connection."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._inbox: asyncio.Queue[object] = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError("send on closed connection")
        self.sent.append(json.loads(message))

    async def recv(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSED:
            raise ConnectionError("connection closed")
        return item  # type: ignore[return-value]

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_CLOSED)

    def push(self, payload: dict[str, Any]) -> None:
        self._inbox.put_nowait(json.dumps(payload))

    def push_raw(self, message: str) -> None:
        self._inbox.put_nowait(message)

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self._inbox.put_nowait(_CLOSED)

    def frames(self, method: str) -> list[str]:
        return [f["subscription"]["user"] for f in self.sent if f.get("method") == method]


class FakeConnector:
    """Connect factory handing out a fresh FakeConnection per call."""

    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []

    async def __call__(self, host: str) -> FakeConnection:
        conn = FakeConnection()
        self.connections.append(conn)
        return conn

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)



@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()
