"""
Graceful shutdown for watch mode.

On SIGTERM/SIGINT the manager walks these phases in order:

1. STOPPING_NEW_WORK: the watcher stops polling, the scheduler stops draining
2. DRAINING_IN_FLIGHT: submissions and executions already sent to the ledger
   are allowed to reach finality, up to drain_timeout_seconds
3. CLOSING_CONNECTIONS: ledger adapter
4. FLUSHING_DATA: final metric values
5. CLEANUP: event bus

An abandoned execution is safe: the record stays Pending on the ledger and
the next process picks it up from the backfill scan. A second signal during
the drain therefore cancels what is left instead of waiting.
"""

import asyncio
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine, Optional

import structlog

log = structlog.get_logger()


class ShutdownPhase(str, Enum):
    """Phases of graceful shutdown."""

    RUNNING = "running"
    SIGNAL_RECEIVED = "signal_received"
    STOPPING_NEW_WORK = "stopping_new_work"
    DRAINING_IN_FLIGHT = "draining_in_flight"
    CLOSING_CONNECTIONS = "closing_connections"
    FLUSHING_DATA = "flushing_data"
    CLEANUP = "cleanup"
    COMPLETED = "completed"


# Callback phases, in execution order. The drain runs between the first two.
CALLBACK_PHASES = (
    ShutdownPhase.STOPPING_NEW_WORK,
    ShutdownPhase.CLOSING_CONNECTIONS,
    ShutdownPhase.FLUSHING_DATA,
    ShutdownPhase.CLEANUP,
)


@dataclass
class ShutdownProgress:
    """Where a shutdown is, and what went wrong along the way."""

    phase: ShutdownPhase = ShutdownPhase.RUNNING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    signal_received: Optional[str] = None
    in_flight_operations: int = 0
    drained: bool = False
    connections_closed: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def is_shutting_down(self) -> bool:
        return self.phase not in (ShutdownPhase.RUNNING, ShutdownPhase.COMPLETED)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.completed_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "signal_received": self.signal_received,
            "in_flight_operations": self.in_flight_operations,
            "drained": self.drained,
            "connections_closed": self.connections_closed,
            "duration_seconds": self.duration_seconds,
            "errors": self.errors,
        }


ShutdownCallback = Callable[[], Coroutine[Any, Any, None]]


class ShutdownManager:
    """Runs registered shutdown callbacks phase by phase.

    Usage:
        manager = ShutdownManager(timeout_seconds=30.0)
        manager.on_stop_new_work(watcher.stop_accepting)
        manager.set_in_flight_tracker(app.in_flight_count, force_cancel=app.cancel_all)
        manager.on_close_connections(ledger.close)
        manager.install_signal_handlers()
        await manager.wait_for_shutdown()
    """

    DEFAULT_TIMEOUT_SECONDS = 30.0
    # Above the default confirmation timeout, so a transfer awaiting finality
    # is not abandoned mid-wait.
    DEFAULT_DRAIN_TIMEOUT_SECONDS = 180.0
    FORCE_CANCEL_TIMEOUT_SECONDS = 5.0

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        drain_timeout_seconds: float = DEFAULT_DRAIN_TIMEOUT_SECONDS,
        drain_poll_interval: float = 0.5,
    ) -> None:
        """Initialize shutdown manager.

        Args:
            timeout_seconds: Timeout for each individual callback.
            drain_timeout_seconds: How long to wait for in-flight operations.
            drain_poll_interval: How often to re-check the in-flight count.
        """
        self._timeout = timeout_seconds
        self._drain_timeout = drain_timeout_seconds
        self._poll_interval = drain_poll_interval
        self._progress = ShutdownProgress()
        self._shutdown_event = asyncio.Event()
        self._skip_drain = asyncio.Event()
        self._callbacks: dict[ShutdownPhase, list[ShutdownCallback]] = {
            phase: [] for phase in CALLBACK_PHASES
        }
        self._get_in_flight_count: Optional[Callable[[], int]] = None
        self._force_cancel: Optional[ShutdownCallback] = None
        self._log = log.bind(component="shutdown_manager")

    @property
    def progress(self) -> ShutdownProgress:
        return self._progress

    @property
    def is_shutting_down(self) -> bool:
        return self._progress.is_shutting_down

    @property
    def shutdown_event(self) -> asyncio.Event:
        """Set once shutdown has completed."""
        return self._shutdown_event

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def on(self, phase: ShutdownPhase, callback: ShutdownCallback) -> None:
        if phase not in self._callbacks:
            raise ValueError(f"No callbacks run during {phase.value}")
        self._callbacks[phase].append(callback)

    def on_stop_new_work(self, callback: ShutdownCallback) -> None:
        self.on(ShutdownPhase.STOPPING_NEW_WORK, callback)

    def on_close_connections(self, callback: ShutdownCallback) -> None:
        self.on(ShutdownPhase.CLOSING_CONNECTIONS, callback)

    def on_flush_data(self, callback: ShutdownCallback) -> None:
        self.on(ShutdownPhase.FLUSHING_DATA, callback)

    def on_cleanup(self, callback: ShutdownCallback) -> None:
        self.on(ShutdownPhase.CLEANUP, callback)

    def set_in_flight_tracker(
        self,
        get_count: Callable[[], int],
        force_cancel: Optional[ShutdownCallback] = None,
    ) -> None:
        """Set how to count in-flight work and how to cancel what is left."""
        self._get_in_flight_count = get_count
        self._force_cancel = force_cancel

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Install SIGTERM and SIGINT handlers on the running loop."""
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                self._log.warning("no_event_loop_for_signal_handlers")
                return

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._on_signal, sig)
        self._log.info("signal_handlers_installed", signals=["SIGTERM", "SIGINT"])

    def remove_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except (ValueError, RuntimeError):
                pass

    def _on_signal(self, sig: signal.Signals) -> None:
        if self._progress.is_shutting_down:
            self._log.warning("second_shutdown_signal", signal=sig.name, phase=self._progress.phase.value)
            self._skip_drain.set()
            return
        self._log.info("shutdown_signal_received", signal=sig.name)
        self._progress.signal_received = sig.name
        self.trigger_shutdown()

    def trigger_shutdown(self) -> None:
        """Start shutdown from synchronous code."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._log.warning("no_event_loop_for_shutdown_trigger")
            return
        loop.create_task(self.shutdown())

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Run every phase once. Later calls are no-ops."""
        if self._progress.is_shutting_down or self._shutdown_event.is_set():
            self._log.warning("shutdown_already_in_progress")
            return

        self._progress.started_at = datetime.now(timezone.utc)
        self._progress.phase = ShutdownPhase.SIGNAL_RECEIVED
        self._log.info(
            "graceful_shutdown_starting",
            timeout_seconds=self._timeout,
            drain_timeout_seconds=self._drain_timeout,
        )

        try:
            for phase in CALLBACK_PHASES:
                await self._run_phase(phase)
                if phase == ShutdownPhase.STOPPING_NEW_WORK:
                    await self._drain_in_flight()
                elif phase == ShutdownPhase.CLOSING_CONNECTIONS:
                    self._progress.connections_closed = True
        except Exception as e:
            self._log.error("shutdown_error", phase=self._progress.phase.value, error=str(e))
            self._progress.errors.append(f"Error in {self._progress.phase.value}: {e}")
        finally:
            self._progress.phase = ShutdownPhase.COMPLETED
            self._progress.completed_at = datetime.now(timezone.utc)
            self._shutdown_event.set()
            self._log.info("graceful_shutdown_completed", **self._progress.to_dict())

    async def _run_phase(self, phase: ShutdownPhase) -> None:
        callbacks = self._callbacks[phase]
        self._progress.phase = phase
        self._log.info("shutdown_phase_starting", phase=phase.value, callback_count=len(callbacks))

        for i, callback in enumerate(callbacks):
            name = getattr(callback, "__qualname__", f"callback_{i}")
            try:
                await asyncio.wait_for(callback(), timeout=self._timeout)
            except asyncio.TimeoutError:
                self._log.warning("shutdown_callback_timeout", phase=phase.value, callback=name)
                self._progress.errors.append(f"Timeout: {name}")
            except Exception as e:
                self._log.warning(
                    "shutdown_callback_error", phase=phase.value, callback=name, error=str(e)
                )
                self._progress.errors.append(f"Error in {name}: {e}")

    async def _drain_in_flight(self) -> None:
        self._progress.phase = ShutdownPhase.DRAINING_IN_FLIGHT
        if self._get_in_flight_count is None:
            self._progress.drained = True
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._drain_timeout

        while True:
            count = self._get_in_flight_count()
            self._progress.in_flight_operations = count
            if count == 0:
                self._log.info("in_flight_drained")
                self._progress.drained = True
                return
            if loop.time() >= deadline or self._skip_drain.is_set():
                break
            self._log.debug("waiting_for_in_flight", in_flight=count)
            try:
                await asyncio.wait_for(self._skip_drain.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

        self._log.warning(
            "drain_abandoned",
            remaining=count,
            timeout_seconds=self._drain_timeout,
            forced=self._skip_drain.is_set(),
        )
        if self._force_cancel:
            try:
                await asyncio.wait_for(self._force_cancel(), timeout=self.FORCE_CANCEL_TIMEOUT_SECONDS)
            except Exception as e:
                self._log.error("force_cancel_failed", error=str(e))
                self._progress.errors.append(f"Force cancel failed: {e}")
        self._progress.errors.append(f"Drain timeout: {count} operations remaining")

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()
