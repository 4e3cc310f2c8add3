"""Hyperliquid ``userFills`` WebSocket client with per-address subscriptions.

The stream carries trade fills, not authoritative positions: every non-replay
fill message is forwarded so the caller can re-read the address's snapshot.
Subscription churn is paced in fixed-size batches separated by a fixed delay,
independently of the rate ceiling on info requests.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

from hyperliquid_whale_tracker.ingestor.models import UserFillsEvent, normalize_address

logger = logging.getLogger(__name__)

DEFAULT_WS_URL = "wss://api.hyperliquid.xyz/ws"
DEFAULT_PING_INTERVAL = 20  # seconds
DEFAULT_CONNECT_TIMEOUT = 10.0  # seconds
DEFAULT_BATCH_SIZE = 10
DEFAULT_BATCH_DELAY = 0.1  # seconds
DEFAULT_RECONNECT_DELAY = 5.0  # seconds
DEFAULT_SEND_TIMEOUT = 5.0  # seconds
DEFAULT_HEARTBEAT_INTERVAL = 50.0  # seconds; the venue drops connections idle for 60s

SUBSCRIPTION_TYPE = "userFills"


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class SubscriptionState(str, Enum):
    """Lifecycle of one address's stream registration."""

    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBING = "unsubscribing"


@dataclass
class StreamStats:
    events_received: int = 0
    fills_received: int = 0
    snapshots_ignored: int = 0
    batches_sent: int = 0
    frames_sent: int = 0
    reconnect_count: int = 0
    last_message_time: float | None = None
    connected_since: float | None = None
    last_error: str | None = None


class StreamError(Exception):
    """Base exception for fills stream errors."""


class TransportError(StreamError):
    """Raised when the streaming connection fails or drops."""


FillsCallback = Callable[[UserFillsEvent], Awaitable[None]]
AddressCallback = Callable[[str], Awaitable[None]]
StateCallback = Callable[[ConnectionState], Awaitable[None]]
ConnectFactory = Callable[[str], Awaitable[Any]]
SleepFunc = Callable[[float], Awaitable[None]]


def subscription_frame(method: str, address: str) -> dict[str, Any]:
    return {
        "method": method,
        "subscription": {"type": SUBSCRIPTION_TYPE, "user": address},
    }


class UserFillsStreamHandler:
    """Single WebSocket connection carrying one fills subscription per address.

    Example:
        ```python
        stream = UserFillsStreamHandler(host=DEFAULT_WS_URL, on_fills=handle_fills)
        await stream.reconcile({"0xabc...", "0xdef..."})
        task = asyncio.create_task(stream.start())
        ...
        await stream.stop()
        ```
    """

    def __init__(
        self,
        *,
        host: str = DEFAULT_WS_URL,
        on_fills: FillsCallback | None = None,
        on_subscribed: AddressCallback | None = None,
        on_unsubscribed: AddressCallback | None = None,
        on_state_change: StateCallback | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        ping_interval: int = DEFAULT_PING_INTERVAL,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        connect: ConnectFactory | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._host = host
        self._on_fills = on_fills
        self._on_subscribed = on_subscribed
        self._on_unsubscribed = on_unsubscribed
        self._on_state_change = on_state_change
        self._batch_size = batch_size
        self._batch_delay = batch_delay
        self._reconnect_delay = reconnect_delay
        self._send_timeout = send_timeout
        self._heartbeat_interval = heartbeat_interval
        self._ping_interval = ping_interval
        self._connect_timeout = connect_timeout
        self._connect_fn = connect or self._default_connect
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._stats = StreamStats()

        self._ws: ClientConnection | None = None
        self._running = False
        self._stop_event: asyncio.Event | None = None

        self._lock = asyncio.Lock()
        self._flush_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._last_batch_at: float | None = None
        self._targets: set[str] = set()
        self._states: dict[str, SubscriptionState] = {}
        # Insertion-ordered sets so batches go out in target order.
        self._pending_subscribe: dict[str, None] = {}
        self._pending_unsubscribe: dict[str, None] = {}

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def stats(self) -> StreamStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def targets(self) -> frozenset[str]:
        return frozenset(self._targets)

    @property
    def subscribed(self) -> frozenset[str]:
        return frozenset(
            a for a, s in self._states.items() if s == SubscriptionState.SUBSCRIBED
        )

    @property
    def pending_count(self) -> int:
        return len(self._pending_subscribe) + len(self._pending_unsubscribe)

    def subscription_state(self, address: str) -> SubscriptionState:
        return self._states.get(normalize_address(address), SubscriptionState.UNSUBSCRIBED)

    async def _set_state(self, new_state: ConnectionState) -> None:
        if self._state != new_state:
            old = self._state
            self._state = new_state
            logger.info("Fills stream state: %s -> %s", old.value, new_state.value)
            if self._on_state_change:
                try:
                    await self._on_state_change(new_state)
                except Exception as e:  # pragma: no cover
                    logger.error("Error in state change callback: %s", e)

    async def _notify(self, callback: AddressCallback | None, address: str) -> None:
        if callback is None:
            return
        try:
            await callback(address)
        except Exception as e:
            logger.error("Subscription callback failed for %s: %s", address, e)

    async def reconcile(self, targets: Iterable[str]) -> None:
        """Set the desired target set and queue the resulting subscription churn."""
        desired = {normalize_address(a) for a in targets if a}
        revived: list[str] = []
        async with self._lock:
            self._targets = desired

            for address in desired:
                state = self._states.get(address, SubscriptionState.UNSUBSCRIBED)
                if state == SubscriptionState.UNSUBSCRIBED:
                    self._states[address] = SubscriptionState.SUBSCRIBING
                    self._pending_subscribe[address] = None
                elif state == SubscriptionState.UNSUBSCRIBING:
                    if self._pending_unsubscribe.pop(address, 0) is None:
                        # Still subscribed on the wire; listeners treat it as new.
                        self._states[address] = SubscriptionState.SUBSCRIBED
                        revived.append(address)
                    else:
                        # Unsubscribe already on the wire; subscribe again after it.
                        self._states[address] = SubscriptionState.SUBSCRIBING
                        self._pending_subscribe[address] = None

            for address, state in list(self._states.items()):
                if address in desired:
                    continue
                if state == SubscriptionState.SUBSCRIBED:
                    self._states[address] = SubscriptionState.UNSUBSCRIBING
                    self._pending_unsubscribe[address] = None
                elif state == SubscriptionState.SUBSCRIBING:
                    if self._pending_subscribe.pop(address, 0) is None:
                        del self._states[address]
                    else:
                        # Subscribe already on the wire; undo it afterwards.
                        self._states[address] = SubscriptionState.UNSUBSCRIBING
                        self._pending_unsubscribe[address] = None

        logger.debug(
            "Reconciled fills subscriptions: %d targets, %d to subscribe, %d to unsubscribe",
            len(desired),
            len(self._pending_subscribe),
            len(self._pending_unsubscribe),
        )
        self._wake.set()
        for address in sorted(revived):
            await self._notify(self._on_subscribed, address)

    async def _take_batch(self) -> list[tuple[str, str]]:
        async with self._lock:
            batch: list[tuple[str, str]] = []
            while self._pending_unsubscribe and len(batch) < self._batch_size:
                address = next(iter(self._pending_unsubscribe))
                del self._pending_unsubscribe[address]
                batch.append(("unsubscribe", address))
            while self._pending_subscribe and len(batch) < self._batch_size:
                address = next(iter(self._pending_subscribe))
                del self._pending_subscribe[address]
                batch.append(("subscribe", address))
            return batch

    async def _send(self, ws: ClientConnection, payload: dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(ws.send(json.dumps(payload)), timeout=self._send_timeout)
        except TimeoutError as e:
            raise TransportError(f"send timed out after {self._send_timeout}s") from e
        except Exception as e:
            raise TransportError(f"send failed: {e}") from e

    async def _after_send(self, method: str, address: str) -> None:
        callback: AddressCallback | None = None
        async with self._lock:
            state = self._states.get(address, SubscriptionState.UNSUBSCRIBED)
            if method == "subscribe" and state == SubscriptionState.SUBSCRIBING:
                # The venue's subscriptionResponse is not correlated per address,
                # so the subscription is considered active once sent.
                if address not in self._pending_subscribe:
                    self._states[address] = SubscriptionState.SUBSCRIBED
                    callback = self._on_subscribed
            elif method == "unsubscribe":
                if state == SubscriptionState.UNSUBSCRIBING:
                    if address not in self._pending_unsubscribe:
                        del self._states[address]
                callback = self._on_unsubscribed
        await self._notify(callback, address)

    def _sent_recently(self) -> bool:
        if self._last_batch_at is None:
            return False
        return time.monotonic() - self._last_batch_at < self._batch_delay

    async def _flush(self, ws: ClientConnection) -> int:
        async with self._flush_lock:
            sent = 0
            first = True
            while True:
                batch = await self._take_batch()
                if not batch:
                    break
                if not first or self._sent_recently():
                    await self._sleep(self._batch_delay)
                first = False

                for index, (method, address) in enumerate(batch):
                    try:
                        await self._send(ws, subscription_frame(method, address))
                    except TransportError:
                        await self._requeue(batch[index:])
                        raise
                    sent += 1
                    self._stats.frames_sent += 1
                    await self._after_send(method, address)

                self._stats.batches_sent += 1
                self._last_batch_at = time.monotonic()
                logger.debug("Sent subscription batch of %d frames", len(batch))
            return sent

    async def _requeue(self, frames: list[tuple[str, str]]) -> None:
        async with self._lock:
            for method, address in frames:
                if method == "subscribe":
                    self._pending_subscribe[address] = None
                else:
                    self._pending_unsubscribe[address] = None

    async def flush(self) -> int:
        """Dispatch queued subscribe/unsubscribe frames in paced batches.

        Returns:
            Number of frames sent; 0 when there is no open connection, in
            which case the queue is kept.

        Raises:
            TransportError: If a frame cannot be sent.
        """
        ws = self._ws
        if ws is None:
            return 0
        return await self._flush(ws)

    async def _reset_subscriptions(self) -> None:
        """Forget every active subscription after the connection is lost."""
        async with self._lock:
            dropped = [
                a for a, s in self._states.items() if s == SubscriptionState.UNSUBSCRIBING
            ]
            self._states.clear()
            self._pending_subscribe.clear()
            self._pending_unsubscribe.clear()
        for address in dropped:
            await self._notify(self._on_unsubscribed, address)

    def _default_connect(self, host: str) -> Awaitable[ClientConnection]:
        return websockets.connect(
            host,
            ping_interval=self._ping_interval,
            ping_timeout=self._ping_interval * 2,
            open_timeout=self._connect_timeout,
        )

    async def _connect(self) -> ClientConnection:
        await self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await self._connect_fn(self._host)
        except Exception as e:
            self._stats.last_error = str(e)
            raise TransportError(f"Failed to connect to {self._host}: {e}") from e

        # No partial resume across connections: subscribe the full target set.
        async with self._lock:
            for address in sorted(self._targets):
                self._states[address] = SubscriptionState.SUBSCRIBING
                self._pending_subscribe[address] = None

        await self._set_state(ConnectionState.CONNECTED)
        self._stats.connected_since = time.time()
        logger.info(
            "Connected to fills stream: %s (%d addresses to subscribe)",
            self._host,
            len(self._pending_subscribe),
        )
        self._wake.set()
        return ws

    async def _handle_message(self, message: str) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON message on fills stream")
            return
        if not isinstance(data, dict):
            logger.debug("Ignoring non-object fills stream message")
            return

        channel = data.get("channel")
        if channel == SUBSCRIPTION_TYPE:
            try:
                event = UserFillsEvent.from_websocket_message(data)
            except ValueError as e:
                logger.warning("Failed to parse userFills event: %s", e)
                return
            self._stats.last_message_time = time.time()

            if event.is_snapshot:
                # Initial state always comes from the snapshot endpoint instead.
                self._stats.snapshots_ignored += 1
                logger.debug("Ignoring userFills replay for %s", event.address)
                return
            if event.address not in self._targets:
                logger.debug("Ignoring fills for untargeted address %s", event.address)
                return

            self._stats.events_received += 1
            self._stats.fills_received += len(event.fills)
            if self._on_fills:
                try:
                    await self._on_fills(event)
                except Exception as e:
                    logger.error("Error in fills callback for %s: %s", event.address, e)
            return

        if channel in ("subscriptionResponse", "pong"):
            logger.debug("Fills stream %s: %s", channel, data.get("data"))
            return
        if channel == "error":
            logger.warning("Fills stream error message: %s", data.get("data"))
            return

        logger.debug("Ignoring fills stream channel=%r", channel)

    async def _listen(self, ws: ClientConnection) -> None:
        try:
            while self._running:
                message = await ws.recv()
                if isinstance(message, str):
                    await self._handle_message(message)
                else:
                    logger.debug("Ignoring non-text fills stream message")
        except websockets.ConnectionClosed as e:
            if self._running:
                logger.warning("Fills stream connection closed: %s", e)
            raise TransportError(f"connection closed: {e}") from e

    async def _run_dispatcher(self, ws: ClientConnection) -> None:
        try:
            while self._running:
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self._heartbeat_interval)
                except TimeoutError:
                    await self._send(ws, {"method": "ping"})
                    continue
                self._wake.clear()
                await self._flush(ws)
        except TransportError as e:
            logger.error("Subscription dispatch failed, dropping connection: %s", e)
            self._stats.last_error = str(e)
            with contextlib.suppress(Exception):
                await ws.close()

    async def start(self) -> None:
        """Run the connect/listen loop until ``stop()`` is called.

        Any close or error while running forgets all subscriptions, waits
        the fixed reconnect delay and reconnects with a full resubscribe.
        """
        if self._running:
            raise RuntimeError("Fills stream already running")
        self._running = True
        self._stop_event = asyncio.Event()

        while self._running and not self._stop_event.is_set():
            dispatcher: asyncio.Task[None] | None = None
            try:
                self._ws = await self._connect()
                dispatcher = asyncio.create_task(self._run_dispatcher(self._ws))
                await self._listen(self._ws)
            except Exception as e:
                if self._running:
                    self._stats.last_error = str(e)
                    logger.warning("Fills stream dropped: %s", e)
            finally:
                if dispatcher:
                    dispatcher.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await dispatcher
                with contextlib.suppress(Exception):
                    if self._ws:
                        await self._ws.close()
                self._ws = None
                await self._reset_subscriptions()

            if not self._running or self._stop_event.is_set():
                break

            self._stats.reconnect_count += 1
            await self._set_state(ConnectionState.RECONNECTING)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._reconnect_delay)
            except TimeoutError:
                pass

        self._running = False
        await self._set_state(ConnectionState.DISCONNECTED)

    async def stop(self) -> None:
        """Close the connection and suppress any further reconnect."""
        self._running = False
        if self._stop_event:
            self._stop_event.set()
        self._wake.set()
        if self._ws:
            with contextlib.suppress(Exception):
                await self._ws.close()
