"""Tests for the main pipeline orchestrator."""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from conftest import FakeConnector, make_position, wait_until
from hyperliquid_whale_tracker.config import Settings
from hyperliquid_whale_tracker.detector.dedup import AlertDedupCache
from hyperliquid_whale_tracker.ingestor.info_client import AddressFetchError
from hyperliquid_whale_tracker.ingestor.models import UserFillsEvent
from hyperliquid_whale_tracker.ingestor.websocket import (
    ConnectionState,
    SubscriptionState,
    UserFillsStreamHandler,
)
from hyperliquid_whale_tracker.leaderboard.registry import (
    LeaderboardRegistry,
    SourceUnavailable,
    compute_diff,
)
from hyperliquid_whale_tracker.pipeline import Pipeline, PipelineState

X = "0x" + "1" * 40
Y = "0x" + "2" * 40
Z = "0x" + "3" * 40


@pytest.fixture
def settings(monkeypatch, tmp_path) -> Settings:
    """Default settings, isolated from any local .env file."""
    monkeypatch.chdir(tmp_path)
    return Settings()


@pytest.fixture
def registry():
    registry = MagicMock()
    diff = compute_diff(set(), {X, Y})
    registry.refresh = AsyncMock(return_value=diff)
    registry.current = diff.current
    registry.last_refreshed_at = None
    registry.aclose = AsyncMock()
    return registry


@pytest.fixture
def info_client():
    client = AsyncMock()
    client.fetch_positions.return_value = []
    return client


@pytest.fixture
def stream():
    stream = MagicMock()
    stream.reconcile = AsyncMock()
    stream.start = AsyncMock()
    stream.stop = AsyncMock()
    stream.subscribed = frozenset()
    stream.state = ConnectionState.CONNECTED
    return stream


@pytest.fixture
def make_pipeline(settings, registry, info_client, stream):
    def factory(**kwargs) -> Pipeline:
        kwargs.setdefault("dry_run", False)
        kwargs.setdefault("registry", registry)
        kwargs.setdefault("info_client", info_client)
        kwargs.setdefault("stream", stream)
        kwargs.setdefault("dedup", AlertDedupCache())
        return Pipeline(settings, **kwargs)

    return factory


def fill_event(address: str) -> UserFillsEvent:
    return UserFillsEvent(address=address)


class TestPipelineState:
    """Tests for pipeline state management."""

    def test_initial_state_is_stopped(self, make_pipeline) -> None:
        """Pipeline should start in stopped state."""
        pipeline = make_pipeline()
        assert pipeline.state == PipelineState.STOPPED
        assert pipeline.is_running is False

    def test_thresholds_come_from_settings(self, settings) -> None:
        pipeline = Pipeline(settings.model_copy(update={"dry_run": True}))
        assert pipeline.store.thresholds.min_value_usd == Decimal("100000")
        assert pipeline.store.thresholds.min_leverage == Decimal("30")


class TestEndToEnd:
    """Fill → snapshot → transition → dedup → emission."""

    @pytest.mark.asyncio
    async def test_one_alert_across_two_identical_fills(self, make_pipeline, info_client) -> None:
        """A 150k / 4k margin BTC long alerts once; the repeat fill is silent."""
        on_alert = MagicMock()
        pipeline = make_pipeline(on_alert=on_alert)
        btc = make_position("BTC", value_usd="150000", margin_used="4000")
        info_client.fetch_positions.side_effect = [[], [btc], [btc]]

        await pipeline.handle_subscribed(X)
        await pipeline.drain()
        await pipeline.handle_fills(fill_event(X))
        await pipeline.drain()
        await pipeline.handle_fills(fill_event(X))
        await pipeline.drain()

        on_alert.assert_called_once()
        record = on_alert.call_args.args[0]
        assert record.address == X
        assert record.instrument == "BTC"
        assert record.leverage == Decimal("37.5")
        assert record.direction == "long"
        assert pipeline.stats.fill_events == 2
        assert pipeline.stats.snapshots_fetched == 3
        assert pipeline.stats.alerts_emitted == 1

    @pytest.mark.asyncio
    async def test_async_callback_is_scheduled(self, make_pipeline, info_client) -> None:
        on_alert = AsyncMock()
        pipeline = make_pipeline(on_alert=on_alert)
        info_client.fetch_positions.side_effect = [[], [make_position()]]

        await pipeline.handle_subscribed(X)
        await pipeline.drain()
        alerts = await pipeline.process_address(X)
        await pipeline.drain()

        assert len(alerts) == 1
        on_alert.assert_awaited_once_with(alerts[0])

    @pytest.mark.asyncio
    async def test_preexisting_position_does_not_alert(self, make_pipeline, info_client) -> None:
        on_alert = MagicMock()
        pipeline = make_pipeline(on_alert=on_alert)
        info_client.fetch_positions.return_value = [make_position()]

        await pipeline.handle_subscribed(X)
        await pipeline.drain()
        await pipeline.process_address(X)

        on_alert.assert_not_called()

    @pytest.mark.asyncio
    async def test_reopened_position_in_same_bucket_is_suppressed(
        self, make_pipeline, info_client
    ) -> None:
        on_alert = MagicMock()
        pipeline = make_pipeline(on_alert=on_alert)
        btc = make_position()
        info_client.fetch_positions.side_effect = [[], [btc], [], [btc]]

        await pipeline.handle_subscribed(X)
        await pipeline.drain()
        for _ in range(3):
            await pipeline.process_address(X)

        assert on_alert.call_count == 1
        assert pipeline.stats.alerts_suppressed == 1

    @pytest.mark.asyncio
    async def test_fetch_error_is_counted_and_state_kept(self, make_pipeline, info_client) -> None:
        pipeline = make_pipeline(on_alert=MagicMock())
        info_client.fetch_positions.side_effect = [
            [make_position()],
            AddressFetchError(X, "timeout"),
        ]

        await pipeline.handle_subscribed(X)
        await pipeline.drain()
        alerts = await pipeline.process_address(X)

        assert alerts == []
        assert pipeline.stats.fetch_errors == 1
        assert "BTC" in pipeline.store.positions(X)

    @pytest.mark.asyncio
    async def test_untracked_address_not_fetched(self, make_pipeline, info_client) -> None:
        pipeline = make_pipeline()

        assert await pipeline.process_address(Z) == []
        info_client.fetch_positions.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dry_run_only_logs(self, make_pipeline, info_client) -> None:
        on_alert = MagicMock()
        pipeline = make_pipeline(on_alert=on_alert, dry_run=True)
        info_client.fetch_positions.side_effect = [[], [make_position()]]

        await pipeline.handle_subscribed(X)
        await pipeline.drain()
        await pipeline.process_address(X)

        on_alert.assert_not_called()
        assert pipeline.stats.alerts_emitted == 1

    @pytest.mark.asyncio
    async def test_callback_error_is_contained(self, make_pipeline, info_client) -> None:
        pipeline = make_pipeline(on_alert=MagicMock(side_effect=RuntimeError("sink down")))
        info_client.fetch_positions.side_effect = [[], [make_position()]]

        await pipeline.handle_subscribed(X)
        await pipeline.drain()
        alerts = await pipeline.process_address(X)

        assert len(alerts) == 1
        assert pipeline.stats.errors == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_drops_state(self, make_pipeline, info_client) -> None:
        pipeline = make_pipeline()
        info_client.fetch_positions.return_value = [make_position()]
        await pipeline.handle_subscribed(X)
        await pipeline.drain()

        await pipeline.handle_unsubscribed(X)

        assert not pipeline.store.is_tracked(X)


class TestLeaderboardRefresh:
    """Tests for target rediscovery."""

    @pytest.mark.asyncio
    async def test_refresh_reconciles_and_drops_removed(
        self, make_pipeline, registry, stream, info_client
    ) -> None:
        pipeline = make_pipeline()
        info_client.fetch_positions.return_value = [make_position()]
        await pipeline.handle_subscribed(X)
        await pipeline.drain()
        registry.refresh.return_value = compute_diff({X, Y}, {Y, Z})

        diff = await pipeline.refresh_leaderboard()

        assert diff is not None
        stream.reconcile.assert_awaited_once_with(frozenset({Y, Z}))
        assert not pipeline.store.is_tracked(X)

    @pytest.mark.asyncio
    async def test_unavailable_source_keeps_targets(self, make_pipeline, registry, stream) -> None:
        pipeline = make_pipeline()
        registry.refresh.side_effect = SourceUnavailable("HTTP 503")

        assert await pipeline.refresh_leaderboard() is None
        assert pipeline.stats.leaderboard_failures == 1
        stream.reconcile.assert_awaited_once_with(frozenset({X, Y}))

    @pytest.mark.asyncio
    async def test_pinned_address_monitored_while_source_down(
        self, settings, info_client, stream
    ) -> None:
        pinned = settings.model_copy(
            update={
                "leaderboard": settings.leaderboard.model_copy(update={"extra_addresses": (Z,)}),
            }
        )
        registry = LeaderboardRegistry(
            "https://stats.test/leaderboard",
            pinned=pinned.leaderboard.extra_addresses,
            client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))),
        )
        pipeline = Pipeline(
            pinned, registry=registry, info_client=info_client, stream=stream, dedup=AlertDedupCache()
        )

        await pipeline.start()

        stream.reconcile.assert_awaited_once_with(frozenset({Z}))
        assert pipeline.stats.leaderboard_failures == 1
        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_pinned_addresses_passed_to_built_registry(self, settings) -> None:
        pinned = settings.model_copy(
            update={
                "leaderboard": settings.leaderboard.model_copy(update={"extra_addresses": (Z,)}),
            }
        )
        pipeline = Pipeline(pinned, dry_run=True)

        pipeline._initialize_components()

        assert pipeline._registry.pinned == frozenset({Z})
        await pipeline._cleanup()


class TestLifecycle:
    """Tests for start/stop and status."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, make_pipeline, registry, stream) -> None:
        pipeline = make_pipeline()

        await pipeline.start()
        assert pipeline.state == PipelineState.RUNNING
        assert pipeline.stats.started_at is not None
        registry.refresh.assert_awaited_once()
        stream.reconcile.assert_awaited_once_with(frozenset({X, Y}))

        await pipeline.stop()
        assert pipeline.state == PipelineState.STOPPED
        stream.stop.assert_awaited()

    @pytest.mark.asyncio
    async def test_start_survives_unavailable_leaderboard(self, make_pipeline, registry) -> None:
        registry.refresh.side_effect = SourceUnavailable("down")
        pipeline = make_pipeline()

        await pipeline.start()

        assert pipeline.is_running
        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, make_pipeline) -> None:
        pipeline = make_pipeline()
        await pipeline.start()

        with pytest.raises(RuntimeError):
            await pipeline.start()

        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, make_pipeline) -> None:
        pipeline = make_pipeline()
        await pipeline.start()

        await pipeline.stop()
        await pipeline.stop()

        assert pipeline.state == PipelineState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_address_tasks(self, make_pipeline, info_client) -> None:
        never = asyncio.Event()

        async def hang(address):
            await never.wait()
            return []

        info_client.fetch_positions.side_effect = hang
        pipeline = make_pipeline()
        await pipeline.start()
        await pipeline.handle_subscribed(X)
        await asyncio.sleep(0)

        await asyncio.wait_for(pipeline.stop(), timeout=1.0)

        assert pipeline.state == PipelineState.STOPPED

    @pytest.mark.asyncio
    async def test_run_returns_after_request_stop(self, make_pipeline) -> None:
        pipeline = make_pipeline()
        task = asyncio.create_task(pipeline.run())
        while not pipeline.is_running:
            await asyncio.sleep(0.001)

        pipeline.request_stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert pipeline.state == PipelineState.STOPPED

    @pytest.mark.asyncio
    async def test_context_manager(self, make_pipeline) -> None:
        async with make_pipeline() as pipeline:
            assert pipeline.is_running
        assert pipeline.state == PipelineState.STOPPED

    @pytest.mark.asyncio
    async def test_status_reports_progress(self, make_pipeline, stream) -> None:
        stream.subscribed = frozenset({X})
        pipeline = make_pipeline()
        await pipeline.start()

        status = pipeline.status()

        assert status.running is True
        assert status.target_count == 2
        assert status.subscribed_count == 1
        assert status.progress == pytest.approx(0.5)
        assert status.degraded is False
        assert status.thresholds["direction"] == "long"
        assert status.to_dict()["connection_state"] == "connected"

        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_status_degraded_without_subscriptions(
        self, settings, registry, info_client, stream
    ) -> None:
        pipeline = Pipeline(
            settings.model_copy(update={"degraded_after_seconds": 0.0}),
            registry=registry,
            info_client=info_client,
            stream=stream,
            dedup=AlertDedupCache(),
        )
        await pipeline.start()

        assert pipeline.status().degraded is True

        await pipeline.stop()


class TestStatusReporting:
    """Tests for periodic status logging and subscription-gap bookkeeping."""

    @pytest.mark.asyncio
    async def test_status_logged_periodically(
        self, settings, registry, info_client, stream, caplog
    ) -> None:
        caplog.set_level(logging.INFO, logger="hyperliquid_whale_tracker.pipeline")
        stream.subscribed = frozenset({X})
        pipeline = Pipeline(
            settings.model_copy(update={"status_log_interval_seconds": 0.01}),
            registry=registry,
            info_client=info_client,
            stream=stream,
            dedup=AlertDedupCache(),
        )
        await pipeline.start()

        await wait_until(lambda: any("Pipeline status" in m for m in caplog.messages))
        await pipeline.stop()

        assert pipeline._status_task is None

    @pytest.mark.asyncio
    async def test_degraded_status_logged_as_warning(
        self, settings, registry, info_client, stream, caplog
    ) -> None:
        pipeline = Pipeline(
            settings.model_copy(update={"degraded_after_seconds": 0.0}),
            registry=registry,
            info_client=info_client,
            stream=stream,
            dedup=AlertDedupCache(),
        )
        await pipeline.start()

        with caplog.at_level(logging.INFO, logger="hyperliquid_whale_tracker.pipeline"):
            status = pipeline.log_status()

        assert status.degraded is True
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "degraded" in warnings[0].getMessage()
        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_status_does_not_start_the_gap_clock(
        self, settings, registry, info_client, stream
    ) -> None:
        stream.subscribed = frozenset({X})
        pipeline = Pipeline(
            settings.model_copy(update={"degraded_after_seconds": 0.0}),
            registry=registry,
            info_client=info_client,
            stream=stream,
            dedup=AlertDedupCache(),
        )
        await pipeline.start()
        stream.subscribed = frozenset()

        assert pipeline.status().degraded is False
        assert pipeline._no_subscriptions_since is None

        await pipeline.handle_unsubscribed(X)

        assert pipeline._no_subscriptions_since is not None
        assert pipeline.status().degraded is True

        await pipeline.handle_subscribed(Y)

        assert pipeline._no_subscriptions_since is None
        await pipeline.stop()


def fills_message(address: str) -> dict[str, object]:
    return {
        "channel": "userFills",
        "data": {
            "user": address,
            "fills": [{"coin": "BTC", "px": "75000", "sz": "2", "side": "B", "time": 1}],
        },
    }


@pytest.fixture
def wire_stream(connector: FakeConnector):
    """Attach a real fills stream over fake connections to a pipeline."""

    def attach(pipeline: Pipeline) -> UserFillsStreamHandler:
        stream = UserFillsStreamHandler(
            host="wss://test/ws",
            on_fills=pipeline.handle_fills,
            on_subscribed=pipeline.handle_subscribed,
            on_unsubscribed=pipeline.handle_unsubscribed,
            on_state_change=pipeline.handle_connection_state,
            batch_delay=0.0,
            reconnect_delay=0.01,
            connect=connector,
        )
        pipeline._stream = stream
        return stream

    return attach


class TestStreamIntegration:
    """Leaderboard → real fills stream → seed → fill → alert."""

    @pytest.fixture
    def single_target(self, registry):
        diff = compute_diff(set(), {X})
        registry.refresh = AsyncMock(return_value=diff)
        registry.current = diff.current
        return registry

    @pytest.mark.asyncio
    async def test_two_identical_fills_alert_once(
        self, settings, single_target, info_client, connector, wire_stream
    ) -> None:
        on_alert = MagicMock()
        btc = make_position("BTC", value_usd="150000", margin_used="4000")
        info_client.fetch_positions.side_effect = [[], [btc], [btc]]
        pipeline = Pipeline(
            settings,
            on_alert=on_alert,
            registry=single_target,
            info_client=info_client,
            dedup=AlertDedupCache(),
        )
        wire_stream(pipeline)

        await pipeline.start()
        await wait_until(lambda: info_client.fetch_positions.await_count == 1)
        await pipeline.drain()

        for count in (1, 2):
            connector.latest.push(fills_message(X))
            await wait_until(lambda: pipeline.stats.fill_events == count)
            await pipeline.drain()

        on_alert.assert_called_once()
        record = on_alert.call_args.args[0]
        assert (record.address, record.instrument) == (X, "BTC")
        assert record.leverage == Decimal("37.5")

        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_reconnect_reseeds_and_alerts_on_gap_position(
        self, settings, single_target, info_client, connector, wire_stream
    ) -> None:
        on_alert = MagicMock()
        info_client.fetch_positions.side_effect = [[], [make_position()]]
        pipeline = Pipeline(
            settings,
            on_alert=on_alert,
            registry=single_target,
            info_client=info_client,
            dedup=AlertDedupCache(),
        )
        stream = wire_stream(pipeline)

        await pipeline.start()
        await wait_until(lambda: info_client.fetch_positions.await_count == 1)
        await pipeline.drain()

        connector.latest.drop()
        await wait_until(lambda: info_client.fetch_positions.await_count == 2)
        await pipeline.drain()

        assert len(connector.connections) == 2
        assert stream.subscribed == frozenset({X})
        on_alert.assert_called_once()
        assert "BTC" in pipeline.store.positions(X)

        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_removed_then_readded_address_keeps_alerting(
        self, settings, registry, info_client, connector, wire_stream
    ) -> None:
        registry.refresh = AsyncMock(
            side_effect=[
                compute_diff(set(), {X}),
                compute_diff({X}, set()),
                compute_diff(set(), {X}),
            ]
        )
        on_alert = MagicMock()
        info_client.fetch_positions.side_effect = [[], [], [make_position()]]
        pipeline = Pipeline(
            settings,
            on_alert=on_alert,
            registry=registry,
            info_client=info_client,
            dedup=AlertDedupCache(),
        )
        stream = wire_stream(pipeline)

        await pipeline.start()
        await wait_until(lambda: info_client.fetch_positions.await_count == 1)
        await pipeline.drain()

        await pipeline.refresh_leaderboard()
        await pipeline.refresh_leaderboard()
        await wait_until(lambda: info_client.fetch_positions.await_count == 2)
        await pipeline.drain()

        assert stream.subscription_state(X) == SubscriptionState.SUBSCRIBED
        assert pipeline.store.is_tracked(X)

        connector.latest.push(fills_message(X))
        await wait_until(lambda: pipeline.stats.fill_events == 1)
        await pipeline.drain()

        on_alert.assert_called_once()

        await pipeline.stop()
