"""Settlement pipeline wiring - one instance each for payout and mining.

A pipeline owns a store, a submitter and an executor bound to the same
rules, and is the single entry point for work on a request id, whether it
arrives from the watcher, the retry scheduler or the CLI. Every entry point
goes through one keyed lock, so work on one id is serialized while
independent ids run concurrently under a bounded semaphore.
"""

import asyncio
from collections import Counter
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Sequence

import structlog

from croupier.core.clock import Clock
from croupier.core.config import ConfigManager
from croupier.core.errors import CroupierError
from croupier.core.events import EventBus
from croupier.domain.pipeline import (
    DEFAULT_DISBURSEMENT_WINDOW_SECONDS,
    DEFAULT_MINIMUM_DELAY_SECONDS,
    MINING_MAX_SINGLE_REWARD,
    PipelineRules,
    rules_for,
)
from croupier.domain.settlement import (
    BetResolved,
    ExecuteOutcome,
    PipelineKind,
    SettlementRequest,
    SettlementStatus,
    SubmitOutcome,
)
from croupier.integrations.ledger.base import LedgerAdapter
from croupier.services.executor import SettlementExecutor
from croupier.services.metrics import MetricsEmitter
from croupier.services.scheduler import RetryScheduler, ScheduledTask, TaskKind
from croupier.services.store import SettlementRecordStore
from croupier.services.submitter import RequestSubmitter

log = structlog.get_logger()

DEFAULT_MAX_CONCURRENCY = 16
# How long to wait before re-checking a request the ledger still holds Pending.
DEFAULT_RECHECK_SECONDS = 15
# Completions listed by backlog().
DEFAULT_RECENT_LIMIT = 5


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[Any, asyncio.Lock] = {}
        self._refs: dict[Any, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Any) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]


class SettlementPipeline:
    """Routes one pipeline's work through its submitter and executor.

    Usage:
        pipeline = SettlementPipeline(PipelineKind.PAYOUT, ledger, rules, scheduler, clock)
        await pipeline.handle_event(event)      # from the watcher
        outcome = await pipeline.execute(42)    # from the CLI
    """

    def __init__(
        self,
        kind: PipelineKind,
        ledger: LedgerAdapter,
        rules: PipelineRules,
        scheduler: RetryScheduler,
        clock: Clock,
        event_bus: Optional[EventBus] = None,
        metrics_emitter: Optional[MetricsEmitter] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        recheck_seconds: int = DEFAULT_RECHECK_SECONDS,
    ) -> None:
        if rules.kind is not kind:
            raise ValueError(f"{rules.kind.value} rules given to {kind.value} pipeline")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")

        self._kind = kind
        self._ledger = ledger
        self._rules = rules
        self._scheduler = scheduler
        self._clock = clock
        self._metrics = metrics_emitter
        self._recheck_seconds = recheck_seconds
        self._log = log.bind(component="settlement_pipeline", pipeline=kind.value)

        self.store = SettlementRecordStore(ledger, kind)
        self.submitter = RequestSubmitter(ledger, self.store, rules, event_bus, metrics_emitter)
        self.executor = SettlementExecutor(
            ledger, self.store, rules, clock, event_bus, metrics_emitter
        )

        self._locks = KeyedLock()
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._max_concurrency = max_concurrency
        self._in_flight = 0

        scheduler.register_handler(kind, TaskKind.SUBMIT, self._run_submit_task)
        scheduler.register_handler(kind, TaskKind.EXECUTE, self._run_execute_task)

    @property
    def kind(self) -> PipelineKind:
        return self._kind

    @property
    def rules(self) -> PipelineRules:
        return self._rules

    @property
    def in_flight_count(self) -> int:
        return self._in_flight

    @asynccontextmanager
    async def _guard(self, request_id: int) -> AsyncIterator[None]:
        async with self._locks.hold(request_id):
            async with self._semaphore:
                self._in_flight += 1
                self._update_in_flight()
                try:
                    yield
                finally:
                    self._in_flight -= 1
                    self._update_in_flight()

    def _update_in_flight(self) -> None:
        if self._metrics:
            self._metrics.update_in_flight(self._kind.value, self._in_flight)

    def _record(self, result: str) -> None:
        if self._metrics:
            self._metrics.record_watcher_event(self._kind.value, result)

    # ------------------------------------------------------------------
    # Watcher entry point
    # ------------------------------------------------------------------

    async def handle_event(self, event: BetResolved) -> None:
        """Handle one resolved bet from the watcher.

        Never raises: failures are handed to the retry scheduler.
        """
        if not self._rules.is_eligible(event.is_winner):
            self._record("ineligible")
            return

        async with self._guard(event.request_id):
            try:
                await self._process_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._record("error")
                task = ScheduledTask(
                    pipeline=self._kind,
                    kind=TaskKind.SUBMIT,
                    request_id=event.request_id,
                    due_at=self._clock.now(),
                    payload=event,
                )
                self._scheduler.report_failure(task, e)

    async def _process_event(self, event: BetResolved) -> None:
        rid = event.request_id
        existing = await self.store.find_record(rid)
        if existing is not None:
            if existing.status is SettlementStatus.PENDING:
                self._log.info(
                    "pending_request_recovered",
                    request_id=rid,
                    due_at=self.executor.due_at(existing),
                )
                self._schedule_execute(existing)
                self._record("recovered")
            else:
                self._record("skipped")
            return

        outcome = await self.submitter.submit(event)
        self._record(outcome.value)
        if outcome is not SubmitOutcome.REJECTED:
            await self._schedule_after_submit(rid)

    async def _schedule_after_submit(self, request_id: int) -> None:
        record = await self.store.find_record(request_id)
        if record is not None and record.status is SettlementStatus.PENDING:
            self._schedule_execute(record)

    def _schedule_execute(self, record: SettlementRequest, not_before: float = 0) -> None:
        due_at = max(self.executor.due_at(record), not_before)
        self._scheduler.schedule(self._kind, TaskKind.EXECUTE, record.request_id, due_at=due_at)

    # ------------------------------------------------------------------
    # Scheduler handlers
    # ------------------------------------------------------------------

    async def _run_submit_task(self, task: ScheduledTask) -> None:
        event = task.payload
        if event is None:
            details = await self._ledger.get_bet_details(task.request_id)
            event = details.to_event()

        async with self._guard(task.request_id):
            outcome = await self.submitter.submit(event)
            if outcome is not SubmitOutcome.REJECTED:
                await self._schedule_after_submit(task.request_id)

    async def _run_execute_task(self, task: ScheduledTask) -> None:
        async with self._guard(task.request_id):
            record = await self.store.get_record(task.request_id)
            outcome = await self.executor.execute_record(record)
            if outcome is ExecuteOutcome.NOT_YET_DUE:
                self._schedule_execute(
                    record, not_before=self._clock.now() + self._recheck_seconds
                )

    # ------------------------------------------------------------------
    # Manual operations
    # ------------------------------------------------------------------

    async def submit(self, request_id: int) -> SubmitOutcome:
        """Submit the request for a bet by id, reading the bet from the ledger."""
        details = await self._ledger.get_bet_details(request_id)
        async with self._guard(request_id):
            return await self.submitter.submit(details.to_event())

    async def execute(self, request_id: int) -> ExecuteOutcome:
        """Execute the request for ``request_id`` now, if its gate is open."""
        async with self._guard(request_id):
            return await self.executor.execute(request_id)

    async def status(self) -> dict[str, Any]:
        stats = await self.store.get_aggregate_stats()
        return {
            "pipeline": self._kind.value,
            "stats": stats.to_dict(),
            "retry_queue": self._scheduler.queue_size(self._kind),
            "in_flight": self._in_flight,
        }

    def _eligible(self, events: Sequence[BetResolved]) -> list[BetResolved]:
        seen: set[int] = set()
        eligible = []
        for event in events:
            if self._rules.is_eligible(event.is_winner) and event.request_id not in seen:
                seen.add(event.request_id)
                eligible.append(event)
        return eligible

    async def sweep(self, events: Sequence[BetResolved]) -> dict[str, int]:
        """Push every eligible bet in ``events`` as far as it can go now.

        Bets without a record are submitted, and Pending records are
        executed. A ledger error on one request is logged and counted; the
        rest of the sweep carries on.

        Returns:
            Counts per outcome (``created``, ``completed``, ``not_yet_due``,
            ``error``...). A bet submitted and executed in one sweep counts
            under both outcomes.
        """
        results: Counter = Counter()
        for event in self._eligible(events):
            async with self._guard(event.request_id):
                try:
                    await self._sweep_one(event, results)
                except CroupierError as e:
                    self._log.warning(
                        "sweep_request_failed",
                        request_id=event.request_id,
                        error=str(e),
                        error_kind=e.kind,
                    )
                    results["error"] += 1
        self._log.info("sweep_finished", events=len(events), **results)
        return dict(results)

    async def _sweep_one(self, event: BetResolved, results: Counter) -> None:
        record = await self.store.find_record(event.request_id)
        if record is None:
            submitted = await self.submitter.submit(event)
            results[submitted.value] += 1
            if submitted is SubmitOutcome.REJECTED:
                return
            record = await self.store.get_record(event.request_id)
        if record.is_terminal:
            results["skipped"] += 1
            return
        outcome = await self.executor.execute_record(record)
        results[outcome.value] += 1

    async def backlog(
        self, events: Sequence[BetResolved], recent_limit: int = DEFAULT_RECENT_LIMIT
    ) -> dict[str, Any]:
        """Eligible bets in ``events`` still owed a disbursement, plus the
        most recent completions among them."""
        eligible = self._eligible(events)
        records = await self.store.get_batch_records([e.request_id for e in eligible])
        found = {record.request_id for record in records}
        unsubmitted = [e.request_id for e in eligible if e.request_id not in found]
        pending = [r.request_id for r in records if r.status is SettlementStatus.PENDING]
        completed = sorted(
            (r for r in records if r.status is SettlementStatus.COMPLETED),
            key=lambda r: (r.disbursed_at or 0, r.request_id),
            reverse=True,
        )
        return {
            "eligible": len(eligible),
            "unsubmitted": [str(rid) for rid in unsubmitted],
            "pending": [str(rid) for rid in pending],
            "recent_completed": [
                {
                    "request_id": str(r.request_id),
                    "beneficiary": r.beneficiary,
                    "amount": str(r.amount),
                    "disbursed_at": r.disbursed_at,
                }
                for r in completed[:recent_limit]
            ],
        }


async def build_pipeline(
    kind: PipelineKind,
    config: ConfigManager,
    ledger: LedgerAdapter,
    scheduler: RetryScheduler,
    clock: Clock,
    event_bus: Optional[EventBus] = None,
    metrics_emitter: Optional[MetricsEmitter] = None,
) -> SettlementPipeline:
    """Build a pipeline from the ``executor``, ``payout`` and ``mining`` sections."""
    extra: dict[str, Any] = {}
    if kind is PipelineKind.MINING:
        start_time = config.get_int("mining.start_time", 0)
        if start_time <= 0:
            start_time = await ledger.get_mining_start_time() or 0
        extra["start_time"] = start_time
        extra["max_single_reward"] = config.get_wei(
            "mining.max_single_reward", MINING_MAX_SINGLE_REWARD
        )
        extra["initial_ratio"] = config.get_int("mining.initial_ratio", 100)
        extra["decay_numerator"] = config.get_int("mining.decay_numerator", 99)
        extra["decay_denominator"] = config.get_int("mining.decay_denominator", 100)
    else:
        extra["ratio_numerator"] = config.get_int("payout.ratio_numerator", 190)
        extra["ratio_denominator"] = config.get_int("payout.ratio_denominator", 100)

    rules = rules_for(
        kind,
        minimum_delay=config.get_int(
            "executor.minimum_delay_seconds", DEFAULT_MINIMUM_DELAY_SECONDS
        ),
        disbursement_window=config.get_int(
            "executor.disbursement_window_seconds", DEFAULT_DISBURSEMENT_WINDOW_SECONDS
        ),
        **extra,
    )
    log.info("pipeline_configured", pipeline=kind.value, rules=repr(rules))
    return SettlementPipeline(
        kind,
        ledger,
        rules,
        scheduler,
        clock,
        event_bus=event_bus,
        metrics_emitter=metrics_emitter,
        max_concurrency=config.get_int("pipeline.max_concurrency", DEFAULT_MAX_CONCURRENCY),
        recheck_seconds=config.get_int("executor.recheck_seconds", DEFAULT_RECHECK_SECONDS),
    )
