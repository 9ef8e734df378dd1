"""Event Watcher - turns the betting ledger's BetResolved stream into pipeline work.

Startup backfills the last ``backfill_blocks`` blocks through the same path
as live events, then polls from the cursor onward. Only blocks with at
least ``confirmations`` confirmations are read. Every event is fanned out to
each registered pipeline, which decides eligibility and deduplicates by
request id, so replaying a range is harmless.
"""

import asyncio
from typing import Optional, Protocol, Sequence

import structlog

from croupier.core.clock import Clock
from croupier.core.lifecycle import BaseComponent, HealthCheckResult
from croupier.domain.settlement import BetResolved, PipelineKind, WatcherCursor
from croupier.integrations.ledger.base import LedgerAdapter
from croupier.services.metrics import MetricsEmitter

log = structlog.get_logger()

DEFAULT_BACKFILL_BLOCKS = 1000
DEFAULT_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_CONFIRMATIONS = 1


def confirmed_block(head: int, confirmations: int) -> int:
    """Newest block with ``confirmations`` confirmations when the chain is at ``head``."""
    if confirmations <= 0:
        return head
    return head - confirmations + 1


class EventSink(Protocol):
    """Anything that consumes resolved bets (a SettlementPipeline)."""

    @property
    def kind(self) -> PipelineKind: ...

    async def handle_event(self, event: BetResolved) -> None: ...


class WatchHandle:
    """Handle returned by EventWatcher.start_watching().

    Once stop() returns, no handler started by this watcher is still
    running and none will start.
    """

    def __init__(self, watcher: "EventWatcher") -> None:
        self._watcher = watcher

    @property
    def is_active(self) -> bool:
        return self._watcher.is_running

    async def stop(self, drain: bool = True) -> None:
        """Stop watching.

        Args:
            drain: Wait for in-flight handlers to finish. When False they
                are cancelled instead.
        """
        await self._watcher.stop_accepting()
        if not drain:
            await self._watcher.cancel_in_flight()
        await self._watcher.stop()


class EventWatcher(BaseComponent):
    """Backfill scan plus live polling of BetResolved events."""

    def __init__(
        self,
        ledger: LedgerAdapter,
        sinks: Sequence[EventSink],
        clock: Clock,
        backfill_blocks: int = DEFAULT_BACKFILL_BLOCKS,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        confirmations: int = DEFAULT_CONFIRMATIONS,
        metrics_emitter: Optional[MetricsEmitter] = None,
    ) -> None:
        super().__init__(name="event_watcher", clock=clock)
        self._ledger = ledger
        self._sinks = list(sinks)
        self._clock = clock
        self._backfill_blocks = max(0, backfill_blocks)
        self._poll_interval = poll_interval
        self._confirmations = max(0, confirmations)
        self._metrics = metrics_emitter
        self._log = log.bind(component="event_watcher")

        self.cursor = WatcherCursor()
        self._accepting = True
        self._needs_backfill = True
        self._poll_task: Optional[asyncio.Task] = None
        self._in_flight: set[asyncio.Task] = set()
        self._last_head: Optional[int] = None

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def last_head(self) -> Optional[int]:
        return self._last_head

    async def start_watching(self) -> WatchHandle:
        await self.start()
        return WatchHandle(self)

    async def _do_start(self) -> None:
        self._accepting = True
        try:
            await self.backfill()
        except Exception as e:
            # The poll loop retries the backfill before live polling.
            self._log.error("backfill_failed", error=str(e), error_kind=getattr(e, "kind", None))
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._log.info(
            "event_watcher_started",
            sinks=[sink.kind.value for sink in self._sinks],
            cursor_block=self.cursor.last_processed_block,
            backfill_blocks=self._backfill_blocks,
            confirmations=self._confirmations,
        )

    async def safe_head(self) -> int:
        """Newest block with enough confirmations to act on."""
        head = await self._ledger.get_block_number()
        self._last_head = head
        if self._metrics:
            self._metrics.update_head_block(head)
        return confirmed_block(head, self._confirmations)

    async def backfill(self) -> int:
        """Replay ``[safe_head - backfill_blocks, safe_head]``.

        Returns:
            Number of events dispatched.
        """
        safe = await self.safe_head()
        if safe < 0:
            self._needs_backfill = False
            return 0
        from_block = max(0, safe - self._backfill_blocks)
        events = await self._ledger.get_bet_resolved_events(from_block, safe)
        self._log.info(
            "backfill_scanned",
            from_block=from_block,
            to_block=safe,
            events=len(events),
        )
        for event in events:
            self.on_event(event)
        self._advance(safe)
        self._needs_backfill = False
        return len(events)

    async def poll_once(self) -> int:
        """Read events confirmed since the cursor.

        Returns:
            Number of events dispatched.
        """
        if self._needs_backfill:
            return await self.backfill()

        safe = await self.safe_head()
        from_block = self.cursor.last_processed_block + 1
        if safe < from_block:
            return 0

        events = await self._ledger.get_bet_resolved_events(from_block, safe)
        dispatched = 0
        for event in events:
            if self.cursor.is_behind(event):
                self.on_event(event)
                dispatched += 1
        self._advance(safe)
        if dispatched:
            self._log.debug(
                "poll_dispatched", from_block=from_block, to_block=safe, events=dispatched
            )
        return dispatched

    def _advance(self, block_number: int) -> None:
        self.cursor.advance_to_block(block_number)
        if self._metrics:
            for sink in self._sinks:
                self._metrics.update_cursor(sink.kind.value, self.cursor.last_processed_block)

    def on_event(self, event: BetResolved) -> None:
        """Dispatch one event to every sink as a tracked task."""
        if not self._accepting:
            self._log.debug("event_dropped_not_accepting", request_id=event.request_id)
            return
        self.cursor.advance(event)
        for sink in self._sinks:
            task = asyncio.create_task(self._dispatch(sink, event))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _dispatch(self, sink: EventSink, event: BetResolved) -> None:
        try:
            await sink.handle_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.exception(
                "event_handler_failed",
                pipeline=sink.kind.value,
                request_id=event.request_id,
                block=event.block_number,
                error=str(e),
            )

    async def _poll_loop(self) -> None:
        while self._accepting:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log.warning(
                    "watcher_poll_failed",
                    error=str(e),
                    error_kind=getattr(e, "kind", type(e).__name__),
                    cursor_block=self.cursor.last_processed_block,
                )
            await self._clock.sleep(self._poll_interval)

    async def stop_accepting(self) -> None:
        """Stop polling and stop dispatching new events."""
        self._accepting = False
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

    async def wait_idle(self) -> None:
        """Wait for every dispatched handler to finish."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def cancel_in_flight(self) -> None:
        for task in list(self._in_flight):
            task.cancel()
        await self.wait_idle()

    async def _do_stop(self) -> None:
        await self.stop_accepting()
        await self.wait_idle()
        self._log.info(
            "event_watcher_stopped",
            cursor_block=self.cursor.last_processed_block,
            handled=self.cursor.handled,
        )

    async def _do_health_check(self) -> HealthCheckResult:
        details = {
            "cursor_block": self.cursor.last_processed_block,
            "head_block": self._last_head,
            "in_flight": len(self._in_flight),
        }
        if self._poll_task is None or self._poll_task.done():
            return HealthCheckResult.unhealthy("Poll loop not running", **details)
        if self._needs_backfill:
            return HealthCheckResult.degraded("Backfill pending", **details)
        return HealthCheckResult.healthy("Watching", **details)
