"""Retry Scheduler - one queue for every deferred or failed pipeline task.

Two kinds of entries share the queue:
- scheduled waits (schedule()): an execute task parked until its timing
  gate opens. Not a failure; does not count against the retry budget.
- retries (report_failure()): a submit or execute that hit a transient
  ledger error, re-driven after base_delay * 2**n seconds, capped at
  max_delay, at most max_attempts times.

Tasks are keyed by (pipeline, kind, request_id) so a request is never
queued twice. The queue is in memory only; after a restart the watcher's
backfill scan rediscovers anything that was lost.

Re-driving is safe because submit and execute are both idempotent.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from croupier.core.clock import Clock
from croupier.core.errors import CroupierError, is_retryable
from croupier.core.events import EventBus, publish_if_connected
from croupier.core.lifecycle import BaseComponent, HealthCheckResult
from croupier.core.retry import backoff_delay
from croupier.domain.events import CHANNEL_ALERT, SettlementAlertEvent
from croupier.domain.settlement import PipelineKind
from croupier.services.metrics import MetricsEmitter

log = structlog.get_logger()

DEFAULT_BASE_DELAY_SECONDS = 2.0
DEFAULT_MAX_DELAY_SECONDS = 300.0
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_POLL_INTERVAL_SECONDS = 1.0


class TaskKind(str, Enum):
    """What a scheduled task re-drives."""

    SUBMIT = "submit"
    EXECUTE = "execute"


TaskKey = tuple[PipelineKind, TaskKind, int]


@dataclass
class ScheduledTask:
    """One queued unit of work.

    Attributes:
        pipeline: Pipeline the request belongs to.
        kind: Submit or execute.
        request_id: Upstream bet id.
        due_at: Unix time at which the task may run.
        attempts: Failed attempts so far.
        payload: Data the handler needs (the BetResolved event for submits).
        last_error: Message of the most recent failure.
        last_error_kind: Kind of the most recent failure.
    """

    pipeline: PipelineKind
    kind: TaskKind
    request_id: int
    due_at: float
    attempts: int = 0
    payload: Any = field(default=None, compare=False)
    last_error: Optional[str] = None
    last_error_kind: Optional[str] = None

    @property
    def key(self) -> TaskKey:
        return (self.pipeline, self.kind, self.request_id)

    def log_context(self) -> dict[str, Any]:
        return {
            "pipeline": self.pipeline.value,
            "task": self.kind.value,
            "request_id": self.request_id,
            "attempts": self.attempts,
        }


TaskHandler = Callable[[ScheduledTask], Awaitable[None]]


class RetryScheduler(BaseComponent):
    """Backoff queue with a background drain loop.

    Usage:
        scheduler = RetryScheduler(clock)
        scheduler.register_handler(PipelineKind.PAYOUT, TaskKind.EXECUTE, handler)
        scheduler.schedule(PipelineKind.PAYOUT, TaskKind.EXECUTE, 42, due_at=gate)
        await scheduler.start()
    """

    def __init__(
        self,
        clock: Clock,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        event_bus: Optional[EventBus] = None,
        metrics_emitter: Optional[MetricsEmitter] = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            clock: Time source for due times and loop sleeps.
            base_delay: Delay before the first retry, in seconds.
            max_delay: Cap on any single retry delay, in seconds.
            max_attempts: Failed attempts after which a task is dropped.
            poll_interval: Longest the loop sleeps between queue checks.
            event_bus: Optional bus for exhaustion alerts.
            metrics_emitter: Optional metrics sink.
        """
        super().__init__(name="retry_scheduler", clock=clock)
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._clock = clock
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_attempts = max_attempts
        self._poll_interval = poll_interval
        self._event_bus = event_bus
        self._metrics = metrics_emitter
        self._log = log.bind(component="retry_scheduler")

        self._queue: dict[TaskKey, ScheduledTask] = {}
        self._handlers: dict[tuple[PipelineKind, TaskKind], TaskHandler] = {}
        self._running_tasks: set[asyncio.Task] = set()
        self._wake = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._accepting = True

        self._completed = 0
        self._retried = 0
        self._exhausted = 0

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def __len__(self) -> int:
        return len(self._queue)

    def __contains__(self, key: TaskKey) -> bool:
        return key in self._queue

    def get(self, key: TaskKey) -> Optional[ScheduledTask]:
        return self._queue.get(key)

    def queue_size(self, pipeline: Optional[PipelineKind] = None) -> int:
        if pipeline is None:
            return len(self._queue)
        return sum(1 for task in self._queue.values() if task.pipeline is pipeline)

    @property
    def running_count(self) -> int:
        return len(self._running_tasks)

    def next_due_at(self) -> Optional[float]:
        if not self._queue:
            return None
        return min(task.due_at for task in self._queue.values())

    def delay_for(self, attempts: int) -> float:
        """Backoff before retry number ``attempts`` (1-indexed)."""
        return backoff_delay(max(0, attempts - 1), self._base_delay, self._max_delay)

    def register_handler(
        self, pipeline: PipelineKind, kind: TaskKind, handler: TaskHandler
    ) -> None:
        self._handlers[(pipeline, kind)] = handler

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    def schedule(
        self,
        pipeline: PipelineKind,
        kind: TaskKind,
        request_id: int,
        due_at: Optional[float] = None,
        payload: Any = None,
    ) -> ScheduledTask:
        """Queue a task to run at ``due_at`` (now if omitted).

        A task already queued under the same key is kept; it runs at the
        earlier of the two due times.
        """
        due = self._clock.now() if due_at is None else float(due_at)
        key = (pipeline, kind, request_id)
        existing = self._queue.get(key)
        if existing is not None:
            existing.due_at = min(existing.due_at, due)
            if payload is not None:
                existing.payload = payload
            self._changed(pipeline)
            return existing

        task = ScheduledTask(
            pipeline=pipeline,
            kind=kind,
            request_id=request_id,
            due_at=due,
            payload=payload,
        )
        self._queue[key] = task
        self._log.debug("task_scheduled", due_at=due, **task.log_context())
        self._changed(pipeline)
        return task

    def enqueue(self, task: ScheduledTask, reason: Optional[Exception] = None) -> Optional[ScheduledTask]:
        """Count a failed attempt of ``task`` and queue the retry.

        Returns:
            The queued task, or None when the retry budget is exhausted.
        """
        task.attempts += 1
        if reason is not None:
            task.last_error = str(reason)
            task.last_error_kind = getattr(reason, "kind", type(reason).__name__)

        if task.attempts >= self._max_attempts:
            self._exhaust(task)
            return None

        delay = self.delay_for(task.attempts)
        task.due_at = self._clock.now() + delay
        existing = self._queue.get(task.key)
        if existing is not None and existing is not task:
            existing.attempts = max(existing.attempts, task.attempts)
            existing.due_at = min(existing.due_at, task.due_at)
            existing.last_error = task.last_error
            existing.last_error_kind = task.last_error_kind
            task = existing
        self._queue[task.key] = task
        self._retried += 1
        if self._metrics:
            self._metrics.record_retry(task.pipeline.value, task.kind.value)
        self._log.warning(
            "task_retry_scheduled",
            delay_seconds=delay,
            error=task.last_error,
            error_kind=task.last_error_kind,
            max_attempts=self._max_attempts,
            **task.log_context(),
        )
        self._changed(task.pipeline)
        return task

    def report_failure(self, task: ScheduledTask, error: Exception) -> Optional[ScheduledTask]:
        """Route a handler failure: retry transient errors, drop the rest."""
        if is_retryable(error):
            return self.enqueue(task, error)

        self._log.error(
            "task_failed_permanently",
            error=str(error),
            error_kind=getattr(error, "kind", type(error).__name__),
            reason=getattr(error, "reason", None),
            **task.log_context(),
        )
        return None

    def cancel(self, pipeline: PipelineKind, kind: TaskKind, request_id: int) -> bool:
        removed = self._queue.pop((pipeline, kind, request_id), None)
        if removed is not None:
            self._changed(pipeline)
        return removed is not None

    def _exhaust(self, task: ScheduledTask) -> None:
        self._queue.pop(task.key, None)
        self._exhausted += 1
        self._log.critical(
            "task_retries_exhausted",
            error=task.last_error,
            error_kind=task.last_error_kind,
            max_attempts=self._max_attempts,
            **task.log_context(),
        )
        if self._metrics:
            self._metrics.record_retry_exhausted(task.pipeline.value, task.kind.value)
        self._changed(task.pipeline)
        alert = SettlementAlertEvent.create(
            pipeline=task.pipeline,
            request_id=task.request_id,
            task=task.kind.value,
            attempts=task.attempts,
            error_kind=task.last_error_kind or "unknown",
            error=task.last_error or "",
        )
        self._spawn(publish_if_connected(self._event_bus, CHANNEL_ALERT, alert))

    def _changed(self, pipeline: PipelineKind) -> None:
        if self._metrics:
            self._metrics.update_retry_queue_depth(pipeline.value, self.queue_size(pipeline))
        self._wake.set()

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def run_due(self) -> int:
        """Run every task whose due time has passed, concurrently.

        Returns:
            Number of tasks run.
        """
        due = self._take_due()
        if not due:
            return 0
        await asyncio.gather(*(self._run_task(task) for task in due))
        return len(due)

    def _take_due(self) -> list[ScheduledTask]:
        now = self._clock.now()
        due = [task for task in self._queue.values() if task.due_at <= now]
        for task in due:
            del self._queue[task.key]
        for pipeline in {task.pipeline for task in due}:
            self._changed(pipeline)
        return due

    async def _run_task(self, task: ScheduledTask) -> None:
        handler = self._handlers.get((task.pipeline, task.kind))
        if handler is None:
            self._log.error("task_handler_missing", **task.log_context())
            return

        current = asyncio.current_task()
        if current is not None:
            self._running_tasks.add(current)
        try:
            await handler(task)
            self._completed += 1
        except asyncio.CancelledError:
            raise
        except CroupierError as e:
            self.report_failure(task, e)
        except Exception as e:
            self._log.exception("task_unexpected_error", error=str(e), **task.log_context())
            self.enqueue(task, e)
        finally:
            if current is not None:
                self._running_tasks.discard(current)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            # No loop (synchronous caller); drop the coroutine cleanly.
            coro.close()
            return
        self._running_tasks.add(task)
        task.add_done_callback(self._running_tasks.discard)

    async def _do_start(self) -> None:
        self._accepting = True
        self._loop_task = asyncio.create_task(self._loop())
        self._log.info(
            "retry_scheduler_started",
            base_delay=self._base_delay,
            max_delay=self._max_delay,
            max_attempts=self._max_attempts,
            queued=len(self._queue),
        )

    async def stop_accepting(self) -> None:
        """Stop starting new tasks; running ones are left to finish."""
        self._accepting = False
        self._wake.set()
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

    async def cancel_running(self) -> None:
        """Cancel tasks still running (shutdown after the drain timeout)."""
        for task in list(self._running_tasks):
            task.cancel()
        if self._running_tasks:
            await asyncio.gather(*self._running_tasks, return_exceptions=True)

    async def _do_stop(self) -> None:
        await self.stop_accepting()
        if self._running_tasks:
            await asyncio.gather(*self._running_tasks, return_exceptions=True)
        self._log.info(
            "retry_scheduler_stopped",
            completed=self._completed,
            retried=self._retried,
            exhausted=self._exhausted,
            dropped_queued=len(self._queue),
        )

    async def _loop(self) -> None:
        while self._accepting:
            self._wake.clear()
            for task in self._take_due():
                self._spawn(self._run_task(task))

            next_due = self.next_due_at()
            wait = self._poll_interval
            if next_due is not None:
                wait = max(0.0, min(wait, next_due - self._clock.now()))
            if wait > 0:
                await self._wait_or_wake(wait)

    async def _wait_or_wake(self, seconds: float) -> None:
        sleeper = asyncio.ensure_future(self._clock.sleep(seconds))
        waker = asyncio.ensure_future(self._wake.wait())
        try:
            await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (sleeper, waker):
                if not fut.done():
                    fut.cancel()

    async def _do_health_check(self) -> HealthCheckResult:
        details = {
            "queued": len(self._queue),
            "running": len(self._running_tasks),
            "completed": self._completed,
            "retried": self._retried,
            "exhausted": self._exhausted,
        }
        if self._loop_task is None or self._loop_task.done():
            return HealthCheckResult.unhealthy("Retry loop not running", **details)
        return HealthCheckResult.healthy("Retry loop active", **details)
