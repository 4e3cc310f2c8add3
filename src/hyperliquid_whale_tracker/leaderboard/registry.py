"""Leaderboard-sourced target address registry.

The ranking endpoint's payload shape is not guaranteed, so addresses are
located with an ordered fallback strategy: a top-level list is used as-is,
otherwise the first array (searched breadth-first through nested objects)
whose elements expose an address-like field wins. A payload with no such
array is treated as the source being unavailable rather than as an empty
leaderboard.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx

from hyperliquid_whale_tracker.ingestor.models import normalize_address

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_LEADERBOARD_URL = "https://stats-data.hyperliquid.xyz/Mainnet/leaderboard"
DEFAULT_TOP_N = 100
DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_ADDRESS_FIELDS: tuple[str, ...] = ("ethAddress", "address", "user", "wallet", "account")

_MAX_SEARCH_DEPTH = 4
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class LeaderboardError(Exception):
    """Base exception for leaderboard errors."""


class SourceUnavailable(LeaderboardError):
    """Raised when the ranking endpoint is unreachable or has no address list."""


@dataclass(frozen=True)
class LeaderboardDiff:
    """Result of one refresh: the new target set and its delta."""

    current: frozenset[str]
    added: frozenset[str]
    removed: frozenset[str]

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


def compute_diff(previous: Iterable[str], current: Iterable[str]) -> LeaderboardDiff:
    prev = frozenset(previous)
    cur = frozenset(current)
    return LeaderboardDiff(current=cur, added=cur - prev, removed=prev - cur)


def _looks_like_address(value: Any) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value.strip()))


def _element_address(element: Any, address_fields: Sequence[str]) -> str | None:
    if _looks_like_address(element):
        return str(element)
    if isinstance(element, dict):
        for name in address_fields:
            value = element.get(name)
            if isinstance(value, str) and value.strip():
                return value
    return None


def _extract_addresses(items: list[Any], address_fields: Sequence[str]) -> list[str]:
    return [a for a in (_element_address(item, address_fields) for item in items) if a]


def _find_address_array(payload: Any, address_fields: Sequence[str]) -> list[str] | None:
    if isinstance(payload, list):
        return _extract_addresses(payload, address_fields)
    if not isinstance(payload, dict):
        return None

    queue: deque[tuple[dict[str, Any], int]] = deque([(payload, 0)])
    while queue:
        node, depth = queue.popleft()
        for value in node.values():
            if isinstance(value, list):
                addresses = _extract_addresses(value, address_fields)
                if addresses:
                    return addresses
            elif isinstance(value, dict) and depth + 1 < _MAX_SEARCH_DEPTH:
                queue.append((value, depth + 1))
    return None


def parse_leaderboard_addresses(
    payload: Any,
    *,
    top_n: int = DEFAULT_TOP_N,
    address_fields: Sequence[str] = DEFAULT_ADDRESS_FIELDS,
) -> list[str]:
    """Extract up to ``top_n`` normalized addresses in rank order.

    Raises:
        SourceUnavailable: If no address-bearing array can be located.
    """
    addresses = _find_address_array(payload, address_fields)
    if not addresses:
        raise SourceUnavailable("leaderboard payload contains no address list")

    seen: set[str] = set()
    ranked: list[str] = []
    for raw in addresses:
        address = normalize_address(raw)
        if address in seen:
            continue
        seen.add(address)
        ranked.append(address)
        if len(ranked) >= top_n:
            break
    return ranked


class LeaderboardRegistry:
    """Maintains the current target address set from a ranking endpoint.

    On failure the previous set is retained unchanged (stale but available)
    and ``SourceUnavailable`` is raised to the caller.

    Pinned addresses are merged into every target set, including the initial
    one, so they are monitored regardless of rank or source availability and
    never appear in a diff's ``removed``.

    Example:
        ```python
        registry = LeaderboardRegistry(top_n=50)
        try:
            diff = await registry.refresh()
        except SourceUnavailable:
            diff = None  # keep monitoring registry.current
        ```
    """

    def __init__(
        self,
        url: str = DEFAULT_LEADERBOARD_URL,
        *,
        top_n: int = DEFAULT_TOP_N,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        address_fields: Sequence[str] = DEFAULT_ADDRESS_FIELDS,
        pinned: Iterable[str] = (),
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if top_n < 1:
            raise ValueError("top_n must be >= 1")
        self._url = url
        self._top_n = top_n
        self._timeout = timeout_seconds
        self._address_fields = tuple(address_fields)
        self._pinned = frozenset(normalize_address(a) for a in pinned if a.strip())
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

        self._current: frozenset[str] = self._pinned
        self._ranked: tuple[str, ...] = ()
        self._last_refreshed_at: datetime | None = None
        self._consecutive_failures = 0

    @property
    def current(self) -> frozenset[str]:
        return self._current

    @property
    def pinned(self) -> frozenset[str]:
        return self._pinned

    @property
    def ranked(self) -> tuple[str, ...]:
        """Current addresses in rank order."""
        return self._ranked

    @property
    def last_refreshed_at(self) -> datetime | None:
        return self._last_refreshed_at

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _fetch_payload(self) -> Any:
        try:
            response = await self._client.get(self._url, timeout=self._timeout)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            raise SourceUnavailable(f"leaderboard request timed out after {self._timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise SourceUnavailable(f"leaderboard returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"leaderboard request failed: {e}") from e
        except ValueError as e:
            raise SourceUnavailable("leaderboard returned invalid JSON") from e

    async def refresh(self) -> LeaderboardDiff:
        """Fetch the ranking, replace the current set and return the diff.

        Raises:
            SourceUnavailable: If the endpoint fails or yields no addresses.
                The previous set is left unchanged.
        """
        try:
            payload = await self._fetch_payload()
            ranked = parse_leaderboard_addresses(
                payload,
                top_n=self._top_n,
                address_fields=self._address_fields,
            )
        except SourceUnavailable:
            self._consecutive_failures += 1
            raise

        diff = compute_diff(self._current, self._pinned.union(ranked))
        self._current = diff.current
        self._ranked = tuple(ranked)
        self._last_refreshed_at = datetime.now(UTC)
        self._consecutive_failures = 0

        logger.info(
            "Leaderboard refreshed: %d targets (+%d / -%d)",
            len(diff.current),
            len(diff.added),
            len(diff.removed),
        )
        return diff
