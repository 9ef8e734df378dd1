"""
Croupier application lifecycle and component wiring.

Builds the ledger adapter, retry scheduler, one settlement pipeline per
enabled kind and the event watcher, then runs them until SIGTERM/SIGINT.
Shutdown ordering:
1. Stop the watcher and scheduler from starting new work
2. Wait for in-flight submissions and executions to finish
3. Close the ledger connection
4. Flush metrics
5. Disconnect the event bus
"""
import asyncio
from typing import Any, Optional

import structlog

from croupier import __version__
from croupier.core.clock import Clock, SystemClock
from croupier.core.config import ConfigManager
from croupier.core.errors import ConfigurationError, CroupierError
from croupier.core.events import EventBus
from croupier.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus
from croupier.core.shutdown import ShutdownManager, ShutdownProgress
from croupier.domain.settlement import NATIVE_TOKEN_ADDRESS, AssetType, BetResolved, PipelineKind
from croupier.integrations.ledger.base import LedgerAdapter
from croupier.services.metrics import MetricsEmitter
from croupier.services.pipeline import DEFAULT_RECENT_LIMIT, SettlementPipeline, build_pipeline
from croupier.services.scheduler import RetryScheduler
from croupier.services.watcher import EventWatcher, WatchHandle, confirmed_block

DEFAULT_STATUS_INTERVAL_SECONDS = 300.0
# Blocks scanned by sweep() and the status backlog.
DEFAULT_SCAN_BLOCKS = 200


class CroupierApp(BaseComponent):
    """Main Croupier application.

    Usage:
        app = CroupierApp(ConfigManager(path))
        await app.run_forever()            # watch mode

        await app.setup()                  # one-shot CLI commands
        outcome = await (await app.get_pipeline(PipelineKind.PAYOUT)).execute(42)
        await app.close()
    """

    def __init__(
        self,
        config: ConfigManager,
        ledger: Optional[LedgerAdapter] = None,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsEmitter] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        """Initialize the application.

        Args:
            config: Loaded configuration
            ledger: Ledger adapter (built from the ``[ledger]`` section if omitted)
            clock: Time source (system time if omitted)
            metrics: Metrics emitter (a fresh registry if omitted)
            event_bus: Event bus (built from ``events.redis_url`` if omitted)
        """
        self._clock = clock or SystemClock()
        super().__init__(name="croupier_app", clock=self._clock)
        self._config = config
        self._metrics = metrics or MetricsEmitter()
        self._ledger = ledger
        self._log = structlog.get_logger("croupier.app")

        redis_url = config.get("events.redis_url")
        if event_bus is None and redis_url:
            event_bus = EventBus(
                redis_url=redis_url,
                channel_prefix=config.get("events.channel_prefix", ""),
                metrics_emitter=self._metrics,
            )
        self._event_bus = event_bus

        self._shutdown_manager = ShutdownManager(
            timeout_seconds=config.get_float("shutdown.timeout_seconds", 30.0),
            drain_timeout_seconds=config.get_float("shutdown.drain_timeout_seconds", 180.0),
        )

        self._scheduler = RetryScheduler(
            self._clock,
            base_delay=config.get_float("scheduler.base_delay_seconds", 2.0),
            max_delay=config.get_float("scheduler.max_delay_seconds", 300.0),
            max_attempts=config.get_int("scheduler.max_attempts", 5),
            poll_interval=config.get_float("scheduler.poll_interval_seconds", 1.0),
            event_bus=self._event_bus,
            metrics_emitter=self._metrics,
        )
        self._pipelines: dict[PipelineKind, SettlementPipeline] = {}
        self._watcher: Optional[EventWatcher] = None
        self._watch_handle: Optional[WatchHandle] = None
        self._status_task: Optional[asyncio.Task] = None
        self._connected = False

    @property
    def config(self) -> ConfigManager:
        return self._config

    @property
    def metrics(self) -> MetricsEmitter:
        return self._metrics

    @property
    def scheduler(self) -> RetryScheduler:
        return self._scheduler

    @property
    def watcher(self) -> Optional[EventWatcher]:
        return self._watcher

    @property
    def shutdown_manager(self) -> ShutdownManager:
        return self._shutdown_manager

    @property
    def shutdown_progress(self) -> ShutdownProgress:
        return self._shutdown_manager.progress

    @property
    def ledger(self) -> LedgerAdapter:
        if self._ledger is None:
            raise ConfigurationError("Ledger not initialized; call setup() first")
        return self._ledger

    def enabled_pipelines(self) -> list[PipelineKind]:
        """Pipelines listed under ``croupier.pipelines``."""
        names = self._config.get_list("croupier.pipelines", ["payout", "mining"])
        try:
            return [PipelineKind(str(name).strip().lower()) for name in names]
        except ValueError as e:
            raise ConfigurationError(f"Unknown pipeline in croupier.pipelines: {e}") from e

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    async def setup(self) -> None:
        """Connect the ledger and event bus. Safe to call twice."""
        if self._connected:
            return

        if self._ledger is None:
            from croupier.integrations.ledger.web3_ledger import Web3LedgerAdapter

            self._ledger = Web3LedgerAdapter.from_config(
                self._config, clock=self._clock, metrics=self._metrics
            )
        await self._ledger.connect()

        if self._event_bus is not None:
            try:
                await self._event_bus.connect()
                self._log.info("event_bus_connected")
            except Exception as e:
                self._log.warning(
                    "event_bus_connection_failed",
                    error=str(e),
                    message="Running without event bus",
                )

        self._connected = True
        self._log.info(
            "croupier_connected",
            version=__version__,
            operator=self._ledger.operator_address,
            config=str(self._config.path) if self._config.path else "defaults",
        )

    async def get_pipeline(self, kind: PipelineKind) -> SettlementPipeline:
        """Pipeline for ``kind``, built on first use."""
        if kind not in self._pipelines:
            await self.setup()
            self._pipelines[kind] = await build_pipeline(
                kind,
                self._config,
                self.ledger,
                self._scheduler,
                self._clock,
                event_bus=self._event_bus,
                metrics_emitter=self._metrics,
            )
        return self._pipelines[kind]

    async def close(self) -> None:
        """Release connections opened by setup() (one-shot commands)."""
        if self._ledger is not None and self._connected:
            await self._ledger.close()
        if self._event_bus is not None and self._event_bus.is_connected:
            await self._event_bus.disconnect()
        self._connected = False

    # ------------------------------------------------------------------
    # Watch mode
    # ------------------------------------------------------------------

    async def _do_start(self) -> None:
        self._log.info("starting_croupier", version=__version__)
        await self.setup()

        sinks = [await self.get_pipeline(kind) for kind in self.enabled_pipelines()]
        if not sinks:
            raise ConfigurationError("No pipelines enabled in croupier.pipelines")

        metrics_port = self._config.get_int("metrics.port", 0)
        if metrics_port > 0:
            self._metrics.serve(metrics_port, addr=self._config.get("metrics.addr", "0.0.0.0"))
            self._log.info("metrics_server_started", port=metrics_port)

        self._watcher = EventWatcher(
            self.ledger,
            sinks,
            self._clock,
            backfill_blocks=self._config.get_int("watcher.backfill_blocks", 1000),
            poll_interval=self._config.get_float("watcher.poll_interval_seconds", 2.0),
            confirmations=self._config.get_int("ledger.confirmations", 1),
            metrics_emitter=self._metrics,
        )

        self._configure_shutdown_manager()
        self._shutdown_manager.install_signal_handlers()

        await self._scheduler.start()
        self._watch_handle = await self._watcher.start_watching()

        interval = self._config.get_float(
            "croupier.status_interval_seconds", DEFAULT_STATUS_INTERVAL_SECONDS
        )
        if interval > 0:
            self._status_task = asyncio.create_task(self._status_loop(interval))

        self._log.info(
            "croupier_started",
            pipelines=[sink.kind.value for sink in sinks],
            cursor_block=self._watcher.cursor.last_processed_block,
        )

    def _configure_shutdown_manager(self) -> None:
        manager = self._shutdown_manager

        # Phase 1: stop new work
        manager.on_stop_new_work(self._stop_status_loop)
        manager.on_stop_new_work(self._watcher.stop_accepting)
        manager.on_stop_new_work(self._scheduler.stop_accepting)

        # Phase 2: drain in-flight handlers
        manager.set_in_flight_tracker(
            get_count=self.in_flight_count,
            force_cancel=self._force_cancel,
        )

        # Phase 3: close connections
        manager.on_close_connections(self._watcher.stop)
        manager.on_close_connections(self._scheduler.stop)
        manager.on_close_connections(self.ledger.close)

        # Phase 4: flush metrics
        manager.on_flush_data(self._flush_metrics)

        # Phase 5: event bus
        manager.on_cleanup(self._cleanup_event_bus)

    def in_flight_count(self) -> int:
        count = self._scheduler.running_count
        if self._watcher is not None:
            count += self._watcher.in_flight_count
        return count

    async def _force_cancel(self) -> None:
        if self._watcher is not None:
            await self._watcher.cancel_in_flight()
        await self._scheduler.cancel_running()

    async def _stop_status_loop(self) -> None:
        if self._status_task:
            self._status_task.cancel()
            try:
                await self._status_task
            except asyncio.CancelledError:
                pass
            self._status_task = None

    async def _flush_metrics(self) -> None:
        self._metrics.update_uptime(self.uptime_seconds)
        self._log.info("metrics_flushed")

    async def _cleanup_event_bus(self) -> None:
        if self._event_bus is not None and self._event_bus.is_connected:
            await self._event_bus.disconnect()
            self._log.info("event_bus_disconnected")
        self._connected = False

    async def _do_stop(self) -> None:
        self._log.info("stopping_croupier")

        if self._shutdown_manager.progress.is_shutting_down:
            await self._shutdown_manager.wait_for_shutdown()
        elif not self._shutdown_manager.shutdown_event.is_set():
            await self._shutdown_manager.shutdown()

        self._shutdown_manager.remove_signal_handlers()
        self._log.info(
            "croupier_stopped",
            shutdown_progress=self._shutdown_manager.progress.to_dict(),
        )

    async def run_forever(self) -> None:
        """Run until a shutdown signal is received, then shut down gracefully."""
        await self.start()
        try:
            while not self._shutdown_manager.shutdown_event.is_set():
                self._metrics.update_uptime(self.uptime_seconds)
                try:
                    await asyncio.wait_for(
                        self._shutdown_manager.shutdown_event.wait(),
                        timeout=1.0,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.stop()

    async def request_shutdown(self) -> None:
        self._log.info("shutdown_requested_programmatically")
        await self._shutdown_manager.shutdown()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _pool_assets(self) -> list[AssetType]:
        tokens = self._config.get_list("ledger.pool_assets", ["native"])
        assets = []
        for token in tokens:
            if str(token).lower() in ("native", "", NATIVE_TOKEN_ADDRESS):
                assets.append(AssetType.native())
            else:
                assets.append(AssetType(token=str(token)))
        return assets

    async def recent_events(
        self, head: Optional[int] = None
    ) -> tuple[int, int, list[BetResolved]]:
        """Resolved bets in the last ``status.scan_blocks`` confirmed blocks.

        Returns:
            (from_block, to_block, events)
        """
        await self.setup()
        if head is None:
            head = await self.ledger.get_block_number()
        to_block = confirmed_block(head, self._config.get_int("ledger.confirmations", 1))
        from_block = max(
            0, to_block - self._config.get_int("status.scan_blocks", DEFAULT_SCAN_BLOCKS)
        )
        if to_block < from_block:
            return from_block, to_block, []
        events = await self.ledger.get_bet_resolved_events(from_block, to_block)
        return from_block, to_block, events

    async def sweep(self, kinds: Optional[list[PipelineKind]] = None) -> dict[str, Any]:
        """Submit and execute whatever the recent blocks still owe."""
        from_block, to_block, events = await self.recent_events()
        report: dict[str, Any] = {
            "from_block": from_block,
            "to_block": to_block,
            "events": len(events),
            "pipelines": {},
        }
        for kind in kinds or self.enabled_pipelines():
            pipeline = await self.get_pipeline(kind)
            report["pipelines"][kind.value] = await pipeline.sweep(events)
        self._log.info("sweep_completed", **report)
        return report

    async def status_report(self, kinds: Optional[list[PipelineKind]] = None) -> dict[str, Any]:
        """Stats, queue size, cursor vs head, balances and backlog.

        The backlog covers eligible bets resolved in the last
        ``status.scan_blocks`` blocks. Lookups that fail are reported as None
        rather than raised.
        """
        await self.setup()
        report: dict[str, Any] = {"version": __version__, "pipelines": {}}

        head: Optional[int] = None
        try:
            head = await self.ledger.get_block_number()
            self._metrics.update_head_block(head)
        except CroupierError as e:
            self._log.warning("head_block_unavailable", error=str(e))
        report["head_block"] = head
        if self._watcher is not None:
            cursor = self._watcher.cursor.last_processed_block
            report["cursor_block"] = cursor
            report["blocks_behind"] = (head - cursor) if head is not None and cursor >= 0 else None

        report["operator"] = self.ledger.operator_address
        try:
            balance = await self.ledger.get_native_balance()
            report["operator_balance"] = str(balance)
            self._metrics.update_operator_balance(balance)
        except CroupierError as e:
            self._log.warning("operator_balance_unavailable", error=str(e))
            report["operator_balance"] = None

        events: Optional[list[BetResolved]] = None
        if head is not None:
            try:
                from_block, to_block, events = await self.recent_events(head)
                report["scanned_blocks"] = [from_block, to_block]
            except CroupierError as e:
                self._log.warning("recent_events_unavailable", error=str(e))
        recent_limit = self._config.get_int("status.recent_limit", DEFAULT_RECENT_LIMIT)

        for kind in kinds or self.enabled_pipelines():
            pipeline = await self.get_pipeline(kind)
            entry = await pipeline.status()
            balances: dict[str, Optional[str]] = {}
            for asset in self._pool_assets():
                try:
                    balance = await self.ledger.get_pool_balance(kind, asset)
                    balances[str(asset)] = str(balance)
                    self._metrics.update_pool_balance(kind.value, str(asset), balance)
                except CroupierError as e:
                    self._log.warning(
                        "pool_balance_unavailable",
                        pipeline=kind.value,
                        asset=str(asset),
                        error=str(e),
                    )
                    balances[str(asset)] = None
            entry["pool_balances"] = balances
            entry["backlog"] = None
            if events is not None:
                try:
                    entry["backlog"] = await pipeline.backlog(events, recent_limit=recent_limit)
                except CroupierError as e:
                    self._log.warning("backlog_unavailable", pipeline=kind.value, error=str(e))
            report["pipelines"][kind.value] = entry

        return report

    async def _status_loop(self, interval: float) -> None:
        while True:
            await self._clock.sleep(interval)
            try:
                report = await self.status_report()
                self._log.info("croupier_status", **report)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log.warning("status_report_failed", error=str(e))

    async def _do_health_check(self) -> HealthCheckResult:
        if self._shutdown_manager.is_shutting_down:
            return HealthCheckResult.degraded(
                message=f"Shutting down: {self._shutdown_manager.progress.phase.value}",
                uptime_seconds=self.uptime_seconds,
            )

        issues = []
        components: dict[str, Any] = {}
        if self._event_bus is not None and not self._event_bus.is_connected:
            issues.append("event_bus_disconnected")
        for name, component in (("watcher", self._watcher), ("scheduler", self._scheduler)):
            if component is None:
                continue
            result = await component.health_check()
            components[name] = result.to_dict()
            if result.status != HealthStatus.HEALTHY:
                issues.append(f"{name}_{result.status.value}")

        if issues:
            return HealthCheckResult.degraded(
                message=f"Issues: {', '.join(issues)}",
                uptime_seconds=self.uptime_seconds,
                components=components,
            )
        return HealthCheckResult.healthy(uptime_seconds=self.uptime_seconds, components=components)
