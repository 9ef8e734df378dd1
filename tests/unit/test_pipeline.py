"""
Unit tests for SettlementPipeline wiring.

Tests verify:
- Per-request serialization through the keyed lock
- Watcher events turning into records and scheduled executions
- Recovery of Pending records after a restart
- Failures handed to the retry scheduler
- Construction from configuration
- One-shot sweeps and the backlog of recent bets
"""
import asyncio
from dataclasses import replace

import pytest

from croupier.core.errors import LedgerUnavailableError
from croupier.domain.pipeline import MiningRules, PayoutRules
from croupier.domain.settlement import (
    ExecuteOutcome,
    PipelineKind,
    SettlementStatus,
    SubmitOutcome,
)
from croupier.services.pipeline import KeyedLock, SettlementPipeline, build_pipeline
from croupier.services.scheduler import TaskKind
from tests.conftest import ALICE, BOB, START

BET = 10 * 10**18
EXECUTE_42 = (PipelineKind.PAYOUT, TaskKind.EXECUTE, 42)


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_same_key_serialized(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold(1):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_different_keys_independent(self):
        locks = KeyedLock()
        async with locks.hold(1):
            assert len(locks) == 1
            async with locks.hold(2):
                assert len(locks) == 2
        assert len(locks) == 0


class TestConstruction:
    def test_rules_must_match_kind(self, ledger, scheduler, clock):
        with pytest.raises(ValueError):
            SettlementPipeline(PipelineKind.MINING, ledger, PayoutRules(), scheduler, clock)

    def test_concurrency_must_be_positive(self, ledger, scheduler, clock):
        with pytest.raises(ValueError):
            SettlementPipeline(
                PipelineKind.PAYOUT, ledger, PayoutRules(), scheduler, clock, max_concurrency=0
            )

    @pytest.mark.asyncio
    async def test_build_mining_pipeline_reads_start_time_from_ledger(
        self, mock_config, ledger, scheduler, clock
    ):
        pipeline = await build_pipeline(PipelineKind.MINING, mock_config, ledger, scheduler, clock)

        assert isinstance(pipeline.rules, MiningRules)
        assert pipeline.rules.start_time == START - 86_400
        assert pipeline.rules.max_single_reward == 10_000 * 10**18
        assert pipeline.rules.minimum_delay == 60

    @pytest.mark.asyncio
    async def test_build_payout_pipeline(self, mock_config, ledger, scheduler, clock):
        pipeline = await build_pipeline(PipelineKind.PAYOUT, mock_config, ledger, scheduler, clock)

        assert pipeline.kind is PipelineKind.PAYOUT
        assert pipeline.rules.ratio_numerator == 190


class TestHandleEvent:
    @pytest.mark.asyncio
    async def test_creates_record_and_schedules_execution(self, payout_pipeline, ledger, scheduler):
        event = ledger.resolve_bet(42, ALICE, BET, is_winner=True)

        await payout_pipeline.handle_event(event)

        record = ledger.records[(PipelineKind.PAYOUT, 42)]
        assert record.status is SettlementStatus.PENDING
        task = scheduler.get(EXECUTE_42)
        assert task.due_at == record.source_settled_at + 60

    @pytest.mark.asyncio
    async def test_ineligible_ignored(self, payout_pipeline, ledger, scheduler, metrics):
        await payout_pipeline.handle_event(ledger.resolve_bet(1, BOB, BET, is_winner=False))

        assert ledger.records == {}
        assert len(scheduler) == 0
        assert (
            metrics.registry.get_sample_value(
                "croupier_watcher_events_total", {"pipeline": "payout", "result": "ineligible"}
            )
            == 1.0
        )

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_submit_once(self, payout_pipeline, ledger):
        event = ledger.resolve_bet(42, ALICE, BET, is_winner=True)

        await asyncio.gather(*(payout_pipeline.handle_event(event) for _ in range(3)))

        assert ledger.calls["submit_request"] == 1
        assert payout_pipeline.in_flight_count == 0

    @pytest.mark.asyncio
    async def test_pending_record_recovered(self, payout_pipeline, ledger, scheduler):
        event = ledger.resolve_bet(42, ALICE, BET, is_winner=True)
        await payout_pipeline.handle_event(event)
        scheduler.cancel(*EXECUTE_42)

        # A restarted process sees the same event again.
        await payout_pipeline.handle_event(event)

        assert EXECUTE_42 in scheduler
        assert ledger.calls["submit_request"] == 1

    @pytest.mark.asyncio
    async def test_terminal_record_skipped(self, payout_pipeline, ledger, scheduler):
        event = ledger.resolve_bet(42, ALICE, BET, is_winner=True)
        await payout_pipeline.handle_event(event)
        scheduler.cancel(*EXECUTE_42)
        key = (PipelineKind.PAYOUT, 42)
        ledger.records[key] = replace(ledger.records[key], status=SettlementStatus.COMPLETED)

        await payout_pipeline.handle_event(event)

        assert len(scheduler) == 0

    @pytest.mark.asyncio
    async def test_failure_queues_submit_retry(self, payout_pipeline, ledger, scheduler):
        event = ledger.resolve_bet(42, ALICE, BET, is_winner=True)
        ledger.fail_next("submit_request", LedgerUnavailableError("rpc down"))

        await payout_pipeline.handle_event(event)

        task = scheduler.get((PipelineKind.PAYOUT, TaskKind.SUBMIT, 42))
        assert task.attempts == 1
        assert task.payload == event
        assert ledger.records == {}


class TestSchedulerHandlers:
    @pytest.mark.asyncio
    async def test_retry_then_execute(self, payout_pipeline, ledger, scheduler, clock):
        ledger.fund(PipelineKind.PAYOUT, 100 * 10**18)
        event = ledger.resolve_bet(42, ALICE, BET, is_winner=True)
        ledger.fail_next("submit_request", LedgerUnavailableError("rpc down"))
        await payout_pipeline.handle_event(event)

        clock.advance(2)
        await scheduler.run_due()
        assert ledger.records[(PipelineKind.PAYOUT, 42)].status is SettlementStatus.PENDING
        assert EXECUTE_42 in scheduler

        clock.advance(60)
        await scheduler.run_due()
        assert ledger.records[(PipelineKind.PAYOUT, 42)].status is SettlementStatus.COMPLETED
        assert ledger.balances[ALICE] == 19 * 10**18
        assert len(scheduler) == 0

    @pytest.mark.asyncio
    async def test_submit_task_without_payload_reads_bet(self, payout_pipeline, ledger, scheduler):
        ledger.resolve_bet(42, ALICE, BET, is_winner=True, emit=False)
        scheduler.schedule(PipelineKind.PAYOUT, TaskKind.SUBMIT, 42)

        await scheduler.run_due()

        assert (PipelineKind.PAYOUT, 42) in ledger.records

    @pytest.mark.asyncio
    async def test_early_execute_rescheduled_at_gate(self, payout_pipeline, ledger, scheduler, clock):
        await payout_pipeline.handle_event(ledger.resolve_bet(42, ALICE, BET, is_winner=True))
        record = ledger.records[(PipelineKind.PAYOUT, 42)]
        scheduler.cancel(*EXECUTE_42)
        scheduler.schedule(PipelineKind.PAYOUT, TaskKind.EXECUTE, 42)

        await scheduler.run_due()

        assert ledger.calls["execute_request"] == 0
        assert scheduler.get(EXECUTE_42).due_at == record.source_settled_at + 60

    @pytest.mark.asyncio
    async def test_ledger_gate_revert_rechecked(self, payout_pipeline, ledger, scheduler, clock):
        ledger.fund(PipelineKind.PAYOUT, 100 * 10**18)
        ledger.minimum_delay = 70
        await payout_pipeline.handle_event(ledger.resolve_bet(42, ALICE, BET, is_winner=True))

        clock.advance(60)
        await scheduler.run_due()

        assert ledger.calls["execute_request"] == 1
        assert ledger.records[(PipelineKind.PAYOUT, 42)].status is SettlementStatus.PENDING
        task = scheduler.get(EXECUTE_42)
        assert task is not None
        assert task.due_at == clock.now() + 15

        clock.advance(15)
        await scheduler.run_due()

        assert ledger.records[(PipelineKind.PAYOUT, 42)].status is SettlementStatus.COMPLETED
        assert ledger.balances[ALICE] == 19 * 10**18
        assert len(scheduler) == 0


class TestManualOperations:
    @pytest.mark.asyncio
    async def test_submit_and_execute_by_id(self, payout_pipeline, ledger, clock):
        ledger.fund(PipelineKind.PAYOUT, 100 * 10**18)
        ledger.resolve_bet(42, ALICE, BET, is_winner=True, emit=False)

        assert await payout_pipeline.submit(42) is SubmitOutcome.CREATED
        assert await payout_pipeline.submit(42) is SubmitOutcome.SKIPPED
        assert await payout_pipeline.execute(42) is ExecuteOutcome.NOT_YET_DUE

        clock.advance(60)
        assert await payout_pipeline.execute(42) is ExecuteOutcome.COMPLETED

    @pytest.mark.asyncio
    async def test_status(self, payout_pipeline, ledger, scheduler):
        await payout_pipeline.handle_event(ledger.resolve_bet(42, ALICE, BET, is_winner=True))

        status = await payout_pipeline.status()

        assert status["pipeline"] == "payout"
        assert status["stats"]["pending_count"] == 1
        assert status["retry_queue"] == 1
        assert status["in_flight"] == 0


class TestSweep:
    @pytest.mark.asyncio
    async def test_submits_and_executes_what_is_owed(self, payout_pipeline, ledger, clock):
        ledger.fund(PipelineKind.PAYOUT, 100 * 10**18)
        unsubmitted = ledger.resolve_bet(42, ALICE, BET, is_winner=True)
        pending = ledger.resolve_bet(43, BOB, BET, is_winner=True)
        loser = ledger.resolve_bet(44, BOB, BET, is_winner=False)
        assert await payout_pipeline.submit(43) is SubmitOutcome.CREATED
        clock.advance(60)

        results = await payout_pipeline.sweep([unsubmitted, pending, loser, unsubmitted])

        assert results == {"created": 1, "completed": 2}
        assert ledger.balances[ALICE] == 19 * 10**18
        assert ledger.balances[BOB] == 19 * 10**18
        assert (PipelineKind.PAYOUT, 44) not in ledger.records

    @pytest.mark.asyncio
    async def test_gate_closed_leaves_pending(self, payout_pipeline, ledger):
        event = ledger.resolve_bet(42, ALICE, BET, is_winner=True)

        results = await payout_pipeline.sweep([event])

        assert results == {"created": 1, "not_yet_due": 1}
        assert ledger.records[(PipelineKind.PAYOUT, 42)].status is SettlementStatus.PENDING

    @pytest.mark.asyncio
    async def test_error_on_one_request_does_not_stop_sweep(self, payout_pipeline, ledger, clock):
        ledger.fund(PipelineKind.PAYOUT, 100 * 10**18)
        first = ledger.resolve_bet(42, ALICE, BET, is_winner=True)
        second = ledger.resolve_bet(43, BOB, BET, is_winner=True)
        clock.advance(60)
        ledger.fail_next("get_record", LedgerUnavailableError("rpc down"))

        results = await payout_pipeline.sweep([first, second])

        assert results == {"error": 1, "created": 1, "completed": 1}
        assert (PipelineKind.PAYOUT, 42) not in ledger.records
        assert ledger.balances[BOB] == 19 * 10**18

    @pytest.mark.asyncio
    async def test_terminal_records_skipped(self, payout_pipeline, ledger, clock):
        ledger.fund(PipelineKind.PAYOUT, 100 * 10**18)
        event = ledger.resolve_bet(42, ALICE, BET, is_winner=True)
        await payout_pipeline.submit(42)
        clock.advance(60)
        assert await payout_pipeline.execute(42) is ExecuteOutcome.COMPLETED

        assert await payout_pipeline.sweep([event]) == {"skipped": 1}
        assert ledger.calls["execute_request"] == 1


class TestBacklog:
    @pytest.mark.asyncio
    async def test_unsubmitted_pending_and_recent(self, payout_pipeline, ledger, clock):
        ledger.fund(PipelineKind.PAYOUT, 100 * 10**18)
        events = [
            ledger.resolve_bet(42, ALICE, BET, is_winner=True),
            ledger.resolve_bet(43, ALICE, BET, is_winner=True),
            ledger.resolve_bet(44, BOB, BET, is_winner=True),
            ledger.resolve_bet(45, BOB, BET, is_winner=False),
            ledger.resolve_bet(46, BOB, BET, is_winner=True),
        ]
        for rid in (43, 44, 46):
            await payout_pipeline.submit(rid)
        clock.advance(60)
        await payout_pipeline.execute(44)
        clock.advance(5)
        await payout_pipeline.execute(46)

        backlog = await payout_pipeline.backlog(events, recent_limit=1)

        assert backlog["eligible"] == 4
        assert backlog["unsubmitted"] == ["42"]
        assert backlog["pending"] == ["43"]
        assert backlog["recent_completed"] == [
            {
                "request_id": "46",
                "beneficiary": BOB,
                "amount": str(19 * 10**18),
                "disbursed_at": int(clock.now()),
            }
        ]

    @pytest.mark.asyncio
    async def test_mining_counts_losers(self, mining_pipeline, ledger):
        events = [
            ledger.resolve_bet(1, ALICE, BET, is_winner=True),
            ledger.resolve_bet(2, BOB, BET, is_winner=False),
        ]

        backlog = await mining_pipeline.backlog(events)

        assert backlog["eligible"] == 1
        assert backlog["unsubmitted"] == ["2"]
        assert backlog["recent_completed"] == []
