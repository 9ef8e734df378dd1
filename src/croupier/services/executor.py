"""Settlement Executor - drives Pending records to a terminal state.

State machine (decided by the ledger inside one atomic execute transaction):

    Pending --(gate open, funds available)--> Completed
    Pending --(gate open, transfer fails)---> Failed
    Pending --(older than the window)-------> Expired

The executor never changes a status itself. It checks the timing gate,
submits the execute transaction, waits for finality and reads the record
back to learn which transition the ledger made.
"""

from dataclasses import replace
from typing import Optional

import structlog

from croupier.core.clock import Clock
from croupier.core.errors import (
    AlreadyProcessedError,
    CroupierError,
    InsufficientFundsError,
    LedgerRevertError,
    WindowExpiredError,
)
from croupier.core.events import EventBus, publish_if_connected
from croupier.domain.events import SettlementResolvedEvent
from croupier.domain.pipeline import PipelineRules
from croupier.domain.settlement import ExecuteOutcome, SettlementRequest, SettlementStatus
from croupier.integrations.ledger.base import LedgerAdapter, TxReceipt
from croupier.services.metrics import MetricsEmitter
from croupier.services.store import SettlementRecordStore

log = structlog.get_logger()

_OUTCOME_BY_STATUS = {
    SettlementStatus.COMPLETED: ExecuteOutcome.COMPLETED,
    SettlementStatus.FAILED: ExecuteOutcome.FAILED,
    SettlementStatus.EXPIRED: ExecuteOutcome.EXPIRED,
}


class SettlementExecutor:
    """Executes due settlement requests exactly once.

    Outcomes:
    - COMPLETED: funds transferred to the beneficiary
    - FAILED: the ledger could not transfer (usually an empty pool);
      terminal, never retried automatically
    - EXPIRED: the record outlived the disbursement window
    - NOT_YET_DUE: the timing gate has not opened; nothing was sent
    - ALREADY_PROCESSED: the record was terminal before this call
    """

    def __init__(
        self,
        ledger: LedgerAdapter,
        store: SettlementRecordStore,
        rules: PipelineRules,
        clock: Clock,
        event_bus: Optional[EventBus] = None,
        metrics_emitter: Optional[MetricsEmitter] = None,
    ) -> None:
        self._ledger = ledger
        self._store = store
        self._rules = rules
        self._clock = clock
        self._event_bus = event_bus
        self._metrics = metrics_emitter
        self._pipeline = rules.kind.value
        self._log = log.bind(component="settlement_executor", pipeline=self._pipeline)

    def due_at(self, record: SettlementRequest) -> int:
        """When the timing gate opens for ``record``."""
        return record.gate_opens_at(self._rules.minimum_delay)

    async def execute(self, request_id: int) -> ExecuteOutcome:
        """Execute the record for ``request_id``.

        Raises:
            RecordNotFoundError: if no record exists.
            TransientLedgerError: if the ledger could not be reached; the
                outcome is unknown and the call must be re-driven.
        """
        record = await self._store.get_record(request_id)
        return await self.execute_record(record)

    async def execute_record(self, record: SettlementRequest) -> ExecuteOutcome:
        """Execute an already-loaded record."""
        rid = record.request_id
        bound = self._log.bind(request_id=rid)

        if record.is_terminal:
            if record.status is SettlementStatus.FAILED:
                # Failed is terminal until an operator refunds and re-triggers.
                bound.warning("failed_request_not_retried", attempts=record.attempt_count)
            else:
                bound.info("request_already_processed", status=record.status.value)
            return self._finish(ExecuteOutcome.ALREADY_PROCESSED)

        now = int(self._clock.now())
        due_at = self.due_at(record)
        if now < due_at:
            bound.info("request_not_yet_due", due_at=due_at, wait_seconds=due_at - now)
            return self._finish(ExecuteOutcome.NOT_YET_DUE)

        if now > record.expires_at(self._rules.disbursement_window):
            bound.info("request_past_window", created_at=record.created_at)

        bound.info(
            "executing_request",
            beneficiary=record.beneficiary,
            asset=str(record.asset),
            amount=str(record.amount),
        )

        try:
            receipt = await self._ledger.execute_request(record.pipeline, rid)
        except AlreadyProcessedError:
            bound.info("request_processed_concurrently")
            return self._finish(ExecuteOutcome.ALREADY_PROCESSED)
        except LedgerRevertError as e:
            current = await self._store.find_record(rid)
            if current is not None and current.is_terminal:
                bound.info("request_processed_concurrently", status=current.status.value)
                return self._finish(ExecuteOutcome.ALREADY_PROCESSED)
            if current is not None and now <= current.expires_at(self._rules.disbursement_window):
                # Ledger clock or delay lags ours; its gate has not opened yet.
                bound.warning("ledger_gate_not_open", reason=e.reason, due_at=due_at)
                return self._finish(ExecuteOutcome.NOT_YET_DUE)
            raise

        after = await self._store.get_record(rid)
        if not after.is_terminal:
            # Ledger time lags ours; the gate has not opened on-chain yet.
            bound.warning("request_still_pending_after_execute", tx_hash=receipt.tx_hash)
            return self._finish(ExecuteOutcome.NOT_YET_DUE)

        if after.status is SettlementStatus.FAILED and after.failure_reason is None:
            after = replace(after, failure_reason=await self._failure_reason(after))

        await self._report(after, receipt)
        outcome = _OUTCOME_BY_STATUS[after.status]
        latency = None
        if outcome is ExecuteOutcome.COMPLETED and after.disbursed_at:
            latency = float(after.disbursed_at - after.source_settled_at)
        return self._finish(
            outcome,
            amount=after.amount if outcome is ExecuteOutcome.COMPLETED else 0,
            latency=latency,
        )

    async def _failure_reason(self, record: SettlementRequest) -> str:
        """Best-effort explanation of a Failed transition."""
        try:
            balance = await self._ledger.get_pool_balance(record.pipeline, record.asset)
        except CroupierError as e:
            self._log.debug("pool_balance_unavailable", request_id=record.request_id, error=str(e))
            return "transfer_failed"
        if balance < record.amount:
            return InsufficientFundsError.kind
        return "transfer_failed"

    async def _report(self, record: SettlementRequest, receipt: TxReceipt) -> None:
        bound = self._log.bind(request_id=record.request_id, tx_hash=receipt.tx_hash)
        if record.status is SettlementStatus.COMPLETED:
            bound.info(
                "request_completed",
                beneficiary=record.beneficiary,
                amount=str(record.amount),
                disbursed_at=record.disbursed_at,
            )
        elif record.status is SettlementStatus.EXPIRED:
            bound.warning(
                "request_expired",
                error_kind=WindowExpiredError.kind,
                created_at=record.created_at,
            )
        else:
            bound.error(
                "request_failed",
                error_kind=record.failure_reason,
                amount=str(record.amount),
                asset=str(record.asset),
                attempts=record.attempt_count,
            )

        event = SettlementResolvedEvent.from_record(record, tx_hash=receipt.tx_hash)
        await publish_if_connected(self._event_bus, event.channel, event)

    def _finish(
        self,
        outcome: ExecuteOutcome,
        amount: int = 0,
        latency: Optional[float] = None,
    ) -> ExecuteOutcome:
        if self._metrics:
            self._metrics.record_execution(
                self._pipeline, outcome.value, amount=amount, latency_seconds=latency
            )
        return outcome
