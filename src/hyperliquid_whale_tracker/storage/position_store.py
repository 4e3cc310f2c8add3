"""Per-address position state with per-address mutual exclusion.

The store is the only owner of the position table. Callers hand in a full
fresh snapshot (or a coroutine that fetches one) and get back the list of
transitions; they never mutate stored positions directly.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass, field

from hyperliquid_whale_tracker.detector.models import Transition
from hyperliquid_whale_tracker.detector.qualification import (
    DEFAULT_THRESHOLDS,
    QualificationThresholds,
    detect_transition,
)
from hyperliquid_whale_tracker.ingestor.models import Position

logger = logging.getLogger(__name__)

PositionTable = dict[str, dict[str, Position]]
SnapshotFetcher = Callable[[], Awaitable[list[Position]]]


@dataclass
class _AddressLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class PositionStateStore:
    """Last known positions keyed by address, then instrument.

    Updates for one address are serialized by that address's own lock, so a
    fill-triggered reconcile and a leaderboard-triggered drop cannot
    interleave, while unrelated addresses proceed concurrently.
    """

    def __init__(self, thresholds: QualificationThresholds = DEFAULT_THRESHOLDS) -> None:
        self._thresholds = thresholds
        self._table: PositionTable = {}
        self._tracked: set[str] = set()
        self._locks: dict[str, _AddressLock] = {}

    @property
    def thresholds(self) -> QualificationThresholds:
        return self._thresholds

    @property
    def addresses(self) -> frozenset[str]:
        """Addresses currently tracked."""
        return frozenset(self._tracked)

    def __len__(self) -> int:
        return len(self._tracked)

    def is_tracked(self, address: str) -> bool:
        return address in self._tracked

    def positions(self, address: str) -> dict[str, Position]:
        """Return a copy of the stored positions for an address."""
        return dict(self._table.get(address, {}))

    @contextlib.asynccontextmanager
    async def _address_lock(self, address: str) -> AsyncIterator[None]:
        """Hold the address lock; the entry is released once unused and untracked."""
        entry = self._locks.get(address)
        if entry is None:
            entry = self._locks[address] = _AddressLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and address not in self._tracked:
                del self._locks[address]

    def update(self, address: str, positions: Iterable[Position]) -> list[Transition]:
        """Replace an address's positions and return the resulting transitions.

        One transition is produced per instrument present in either the old
        or the new snapshot.
        """
        previous = self._table.get(address, {})
        current = {p.instrument: p for p in positions}

        transitions = []
        for instrument in sorted(previous.keys() | current.keys()):
            old = previous.get(instrument)
            new = current.get(instrument)
            transitions.append(
                Transition(
                    address=address,
                    instrument=instrument,
                    kind=detect_transition(old, new, self._thresholds),
                    previous=old,
                    current=new,
                )
            )

        self._table[address] = current
        return transitions

    async def seed(self, address: str, fetch: SnapshotFetcher) -> list[Transition]:
        """Start tracking an address and store its snapshot.

        A first-time seed is silent and returns no transitions: positions
        already open when monitoring starts are not new events. Re-seeding an
        address that is still tracked (after a reconnect) applies the
        snapshot like ``reconcile`` so positions opened during the gap are
        not missed.

        Raises:
            Exception: Whatever ``fetch`` raises; the address stays tracked
                with its previous (or empty) state.
        """
        async with self._address_lock(address):
            already_tracked = address in self._tracked
            self._tracked.add(address)
            self._table.setdefault(address, {})
            positions = await fetch()
            if already_tracked:
                return self.update(address, positions)
            self._table[address] = {p.instrument: p for p in positions}
            logger.debug("Seeded %s with %d positions", address, len(positions))
            return []

    async def reconcile(self, address: str, fetch: SnapshotFetcher) -> list[Transition]:
        """Fetch a fresh snapshot for a tracked address and apply it.

        Untracked addresses are skipped without fetching. Fetch errors
        propagate and leave stored state unchanged.
        """
        async with self._address_lock(address):
            if address not in self._tracked:
                logger.debug("Skipping reconcile for untracked address %s", address)
                return []
            positions = await fetch()
            return self.update(address, positions)

    async def drop(self, address: str) -> None:
        """Discard all state for an address once in-flight updates finish."""
        async with self._address_lock(address):
            self._tracked.discard(address)
            self._table.pop(address, None)
