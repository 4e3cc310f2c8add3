"""Main pipeline orchestrator for the Hyperliquid whale tracker.

This module provides the Pipeline class that wires the leaderboard, the
fills stream, the snapshot fetcher and the detector together, and manages
the event flow from a trade fill to an emitted alert.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from hyperliquid_whale_tracker.alerter.formatter import AlertFormatter
from hyperliquid_whale_tracker.config import Settings, get_settings
from hyperliquid_whale_tracker.detector.dedup import (
    AlertDedupCache,
    DedupStore,
    RedisAlertDedupCache,
)
from hyperliquid_whale_tracker.detector.models import AlertRecord, AlertSignature, Transition
from hyperliquid_whale_tracker.detector.qualification import QualificationThresholds
from hyperliquid_whale_tracker.ingestor.info_client import AddressFetchError, HyperliquidInfoClient
from hyperliquid_whale_tracker.ingestor.models import Position, UserFillsEvent, normalize_address
from hyperliquid_whale_tracker.ingestor.websocket import ConnectionState, UserFillsStreamHandler
from hyperliquid_whale_tracker.leaderboard.registry import (
    LeaderboardDiff,
    LeaderboardRegistry,
    SourceUnavailable,
)
from hyperliquid_whale_tracker.storage.position_store import PositionStateStore

logger = logging.getLogger(__name__)

AlertCallback = Callable[[AlertRecord], Awaitable[None] | None]


def build_thresholds(settings: Settings) -> QualificationThresholds:
    q = settings.qualification
    return QualificationThresholds(
        min_value_usd=q.min_value_usd,
        min_leverage=q.min_leverage,
        direction=q.direction,
    )


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    fill_events: int = 0
    snapshots_fetched: int = 0
    alerts_emitted: int = 0
    alerts_suppressed: int = 0
    fetch_errors: int = 0
    leaderboard_failures: int = 0
    errors: int = 0
    last_error: str | None = None


@dataclass(frozen=True)
class PipelineStatus:
    """Point-in-time view of the engine for operators."""

    state: PipelineState
    running: bool
    connection_state: ConnectionState
    target_count: int
    subscribed_count: int
    progress: float
    thresholds: dict[str, str] = field(default_factory=dict)
    last_leaderboard_refresh: datetime | None = None
    alerts_emitted: int = 0
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "running": self.running,
            "connection_state": self.connection_state.value,
            "target_count": self.target_count,
            "subscribed_count": self.subscribed_count,
            "progress": round(self.progress, 4),
            "thresholds": dict(self.thresholds),
            "last_leaderboard_refresh": (
                self.last_leaderboard_refresh.isoformat() if self.last_leaderboard_refresh else None
            ),
            "alerts_emitted": self.alerts_emitted,
            "degraded": self.degraded,
        }


class Pipeline:
    """Main pipeline orchestrator for the Hyperliquid whale tracker.

    Pipeline flow:
        Leaderboard → Fills Stream → Snapshot Fetch → State Store →
        Transition Detector → Dedup Cache → Alert Callback

    Each fill triggers a fresh snapshot read for its address in an
    independent task; one slow or failing address never blocks others.

    Example:
        ```python
        from hyperliquid_whale_tracker.config import get_settings
        from hyperliquid_whale_tracker.pipeline import Pipeline

        pipeline = Pipeline(get_settings(), on_alert=notifier.send)

        await pipeline.start()
        # Pipeline runs until stop() is called
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        on_alert: AlertCallback | None = None,
        dry_run: bool | None = None,
        registry: LeaderboardRegistry | None = None,
        info_client: HyperliquidInfoClient | None = None,
        stream: UserFillsStreamHandler | None = None,
        store: PositionStateStore | None = None,
        dedup: DedupStore | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            on_alert: Callback receiving each emitted AlertRecord. May be sync
                or async; it is never awaited by the pipeline.
            dry_run: If True, only log alerts. Overrides settings.dry_run.
            registry: Optional pre-built leaderboard registry.
            info_client: Optional pre-built info endpoint client.
            stream: Optional pre-built fills stream; its callbacks must be
                wired to the ``handle_*`` methods by the caller.
            store: Optional pre-built position state store.
            dedup: Optional pre-built dedup cache.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run
        self._on_alert = on_alert

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        self._registry = registry
        self._info_client = info_client
        self._stream = stream
        self._store = store or PositionStateStore(build_thresholds(self._settings))
        self._dedup = dedup
        self._formatter = AlertFormatter(verbosity="compact")

        # Components built here (rather than injected) are closed on stop.
        self._owned: list[Any] = []

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._stream_task: asyncio.Task[None] | None = None
        self._leaderboard_task: asyncio.Task[None] | None = None
        self._status_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Future[Any]] = set()
        self._no_subscriptions_since: float | None = None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    @property
    def store(self) -> PositionStateStore:
        return self._store

    async def start(self) -> None:
        """Start the pipeline.

        Discovers the initial target set, queues subscriptions and starts
        the stream and the leaderboard refresh timer.

        Raises:
            RuntimeError: If pipeline is not stopped.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline...")

        try:
            self._initialize_components()
            await self.refresh_leaderboard()
            self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            self._track_subscription_gap()
            logger.info(
                "Pipeline started: %d targets, criteria %s",
                len(self._registry.current) if self._registry else 0,
                self._store.thresholds.to_dict(),
            )
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._stop_background_services()
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully.

        Stops the stream without reconnecting, cancels timers and in-flight
        address tasks, and closes network clients.
        """
        if self._state in (PipelineState.STOPPED, PipelineState.STOPPING):
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    def request_stop(self) -> None:
        """Ask a running ``run()`` to shut down; safe to call from signal handlers."""
        if self._stop_event:
            self._stop_event.set()

    def _initialize_components(self) -> None:
        """Build any collaborator that was not injected."""
        s = self._settings
        if self._registry is None:
            self._registry = LeaderboardRegistry(
                s.leaderboard.url,
                top_n=s.leaderboard.top_n,
                timeout_seconds=s.leaderboard.timeout_seconds,
                pinned=s.leaderboard.extra_addresses,
            )
            self._owned.append(self._registry)

        if self._info_client is None:
            self._info_client = HyperliquidInfoClient(
                s.hyperliquid.info_url,
                timeout_seconds=s.hyperliquid.request_timeout_seconds,
                requests_per_second=s.hyperliquid.requests_per_second,
                max_retries=s.hyperliquid.max_retries,
            )
            self._owned.append(self._info_client)

        if self._dedup is None:
            if s.dedup.redis_url:
                redis = Redis.from_url(s.dedup.redis_url)
                self._dedup = RedisAlertDedupCache(
                    redis,
                    key=s.dedup.redis_key,
                    max_entries=s.dedup.max_entries,
                    retain_entries=s.dedup.retain_entries,
                )
                self._owned.append(self._dedup)
                logger.info("Using Redis dedup cache at key %s", s.dedup.redis_key)
            else:
                self._dedup = AlertDedupCache(
                    max_entries=s.dedup.max_entries,
                    retain_entries=s.dedup.retain_entries,
                )

        if self._stream is None:
            sub = s.subscription
            self._stream = UserFillsStreamHandler(
                host=s.hyperliquid.ws_url,
                on_fills=self.handle_fills,
                on_subscribed=self.handle_subscribed,
                on_unsubscribed=self.handle_unsubscribed,
                on_state_change=self.handle_connection_state,
                batch_size=sub.batch_size,
                batch_delay=sub.batch_delay_seconds,
                reconnect_delay=sub.reconnect_delay_seconds,
                send_timeout=sub.send_timeout_seconds,
                heartbeat_interval=sub.heartbeat_interval_seconds,
            )

    def _start_background_services(self) -> None:
        if self._stream:
            logger.debug("Starting fills stream...")
            self._stream_task = asyncio.create_task(self._run_fills_stream())

        logger.debug("Starting leaderboard refresh loop...")
        self._leaderboard_task = asyncio.create_task(self._run_leaderboard_loop())
        self._status_task = asyncio.create_task(self._run_status_loop())

    async def _run_fills_stream(self) -> None:
        """Run the fills stream in a task."""
        if not self._stream:
            return

        try:
            await self._stream.start()
        except asyncio.CancelledError:
            logger.debug("Fills stream task cancelled")
        except Exception as e:
            logger.error("Fills stream error: %s", e)
            self._stats.last_error = str(e)
            self._stats.errors += 1

    async def _run_leaderboard_loop(self) -> None:
        if not self._stop_event:
            return

        interval = self._settings.leaderboard.refresh_interval_seconds
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass

            try:
                await self.refresh_leaderboard()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Leaderboard refresh loop error: %s", e)
                self._stats.last_error = str(e)
                self._stats.errors += 1

    async def _run_status_loop(self) -> None:
        if not self._stop_event:
            return

        interval = self._settings.status_log_interval_seconds
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass
            self.log_status()

    def log_status(self) -> PipelineStatus:
        """Log the current status; degraded status is logged as a warning."""
        status = self.status()
        if status.degraded:
            logger.warning(
                "Pipeline degraded, no active subscriptions: %s",
                json.dumps(status.to_dict()),
            )
        else:
            logger.info("Pipeline status: %s", json.dumps(status.to_dict()))
        return status

    async def _stop_background_services(self) -> None:
        if self._stream:
            logger.debug("Stopping fills stream...")
            await self._stream.stop()

        for task in (self._stream_task, self._leaderboard_task, self._status_task):
            if task:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._stream_task = None
        self._leaderboard_task = None
        self._status_task = None

        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        for component in self._owned:
            try:
                await component.aclose()
            except Exception as e:
                logger.warning("Failed to close %s: %s", type(component).__name__, e)

            if component is self._registry:
                self._registry = None
            elif component is self._info_client:
                self._info_client = None
            elif component is self._dedup:
                self._dedup = None
        self._owned.clear()

        logger.debug("Resources cleaned up")

    def _spawn(self, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Future[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed: %s", exc)
            self._stats.last_error = str(exc)
            self._stats.errors += 1

    async def drain(self) -> None:
        """Wait until all in-flight per-address tasks have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def refresh_leaderboard(self) -> LeaderboardDiff | None:
        """Re-discover targets and reconcile subscriptions and state.

        Returns:
            The applied diff, or None when the source is unavailable, in
            which case the previous target set stays in force.
        """
        if self._registry is None:
            raise RuntimeError("Pipeline components are not initialized")

        try:
            diff = await self._registry.refresh()
        except SourceUnavailable as e:
            self._stats.leaderboard_failures += 1
            logger.warning(
                "Leaderboard unavailable, keeping %d previous targets: %s",
                len(self._registry.current),
                e,
            )
            # The retained set always includes pinned addresses.
            if self._stream:
                await self._stream.reconcile(self._registry.current)
            self._track_subscription_gap()
            return None

        if self._stream:
            await self._stream.reconcile(diff.current)
        for address in diff.removed:
            await self._store.drop(address)
        self._track_subscription_gap()
        return diff

    def _track_subscription_gap(self) -> None:
        """Record when the engine last went from some to zero active subscriptions."""
        if self._stream is not None and self._stream.subscribed:
            self._no_subscriptions_since = None
        elif self._no_subscriptions_since is None:
            self._no_subscriptions_since = time.monotonic()

    async def handle_connection_state(self, state: ConnectionState) -> None:
        if state != ConnectionState.CONNECTED and self._no_subscriptions_since is None:
            self._no_subscriptions_since = time.monotonic()

    async def handle_subscribed(self, address: str) -> None:
        """Seed an address's state in the background once it is subscribed."""
        self._no_subscriptions_since = None
        self._spawn(self._seed_address(normalize_address(address)))

    async def handle_unsubscribed(self, address: str) -> None:
        await self._store.drop(normalize_address(address))
        self._track_subscription_gap()

    async def handle_fills(self, event: UserFillsEvent) -> None:
        """Schedule a snapshot reconcile for the address that traded."""
        self._stats.fill_events += 1
        logger.debug("Fill event for %s (%d fills)", event.address, len(event.fills))
        self._spawn(self.process_address(event.address))

    async def _fetch(self, address: str) -> list[Position]:
        if self._info_client is None:
            raise RuntimeError("Pipeline components are not initialized")
        positions = await self._info_client.fetch_positions(address)
        self._stats.snapshots_fetched += 1
        return positions

    async def _seed_address(self, address: str) -> None:
        try:
            transitions = await self._store.seed(address, lambda: self._fetch(address))
        except AddressFetchError as e:
            self._stats.fetch_errors += 1
            logger.warning("Initial snapshot failed for %s: %s", address, e)
            return
        await self._handle_transitions(address, transitions)

    async def process_address(self, address: str) -> list[AlertRecord]:
        """Re-read an address's positions and emit alerts for new qualifiers.

        Returns:
            The alerts emitted (after de-duplication).
        """
        address = normalize_address(address)
        try:
            transitions = await self._store.reconcile(address, lambda: self._fetch(address))
        except AddressFetchError as e:
            self._stats.fetch_errors += 1
            logger.warning("Snapshot fetch failed for %s, state unchanged: %s", address, e)
            return []
        return await self._handle_transitions(address, transitions)

    async def _handle_transitions(
        self,
        address: str,
        transitions: list[Transition],
    ) -> list[AlertRecord]:
        if self._dedup is None:
            raise RuntimeError("Pipeline components are not initialized")

        emitted: list[AlertRecord] = []
        for transition in transitions:
            if not transition.is_new_qualifying or transition.current is None:
                continue

            record = AlertRecord.from_position(address, transition.current)
            signature = AlertSignature.from_record(
                record,
                value_bucket_usd=self._settings.dedup.value_bucket_usd,
            )
            if not await self._dedup.should_emit(signature):
                self._stats.alerts_suppressed += 1
                logger.debug("Suppressed duplicate alert %s", signature.key)
                continue

            await self._dedup.record(signature)
            self._emit(record)
            emitted.append(record)
        return emitted

    def _emit(self, record: AlertRecord) -> None:
        formatted = self._formatter.format(record)
        self._stats.alerts_emitted += 1

        if self._dry_run:
            logger.info("[DRY RUN] Would send alert: %s", formatted.compact)
            return
        if self._on_alert is None:
            logger.info("Alert: %s", formatted.compact)
            return

        try:
            result = self._on_alert(record)
        except Exception as e:
            logger.error("Alert callback failed: %s", e)
            self._stats.last_error = str(e)
            self._stats.errors += 1
            return
        if inspect.isawaitable(result):
            self._spawn(result)
        logger.info("Alert emitted: %s", formatted.compact)

    def status(self) -> PipelineStatus:
        """Report lifecycle state, subscription progress and health."""
        targets = len(self._registry.current) if self._registry else 0
        subscribed = len(self._stream.subscribed) if self._stream else 0
        connection = self._stream.state if self._stream else ConnectionState.DISCONNECTED

        degraded = False
        since = self._no_subscriptions_since
        if self.is_running and subscribed == 0 and since is not None:
            degraded = time.monotonic() - since >= self._settings.degraded_after_seconds

        return PipelineStatus(
            state=self._state,
            running=self.is_running,
            connection_state=connection,
            target_count=targets,
            subscribed_count=subscribed,
            progress=subscribed / targets if targets else 0.0,
            thresholds=self._store.thresholds.to_dict(),
            last_leaderboard_refresh=self._registry.last_refreshed_at if self._registry else None,
            alerts_emitted=self._stats.alerts_emitted,
            degraded=degraded,
        )

    async def run(self) -> None:
        """Start the pipeline and run until interrupted.

        This is a convenience method that starts the pipeline and
        blocks until a stop signal is received.
        """
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Pipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
