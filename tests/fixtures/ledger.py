"""In-memory ledger for tests.

Behaves like the betting, payout and mining contracts together: one record
per request id per pipeline, atomic execute transitions decided on the
"chain" side, pool balances that a Completed transfer draws down, and a
block-numbered event stream. Failures can be injected per operation.
"""
from collections import Counter, defaultdict
from dataclasses import replace
from typing import Optional

from croupier.core.clock import Clock
from croupier.core.errors import (
    AlreadyExistsError,
    AlreadyProcessedError,
    LedgerRevertError,
    RecordNotFoundError,
)
from croupier.domain.pipeline import (
    DEFAULT_DISBURSEMENT_WINDOW_SECONDS,
    DEFAULT_MINIMUM_DELAY_SECONDS,
)
from croupier.domain.settlement import (
    AggregateStats,
    AssetType,
    BetDetails,
    BetResolved,
    PipelineKind,
    SettlementDraft,
    SettlementRequest,
    SettlementStatus,
)
from croupier.integrations.ledger.base import LedgerAdapter, TxReceipt

OPERATOR = "0x00000000000000000000000000000000000000aa"


class FakeLedger(LedgerAdapter):
    """LedgerAdapter backed by dicts, driven by an injected clock."""

    def __init__(
        self,
        clock: Clock,
        minimum_delay: int = DEFAULT_MINIMUM_DELAY_SECONDS,
        disbursement_window: int = DEFAULT_DISBURSEMENT_WINDOW_SECONDS,
        mining_start_time: Optional[int] = None,
    ) -> None:
        self.clock = clock
        self.minimum_delay = minimum_delay
        self.disbursement_window = disbursement_window
        self.mining_start_time = mining_start_time

        self.head = 0
        self.bets: dict[int, BetDetails] = {}
        self.events: list[BetResolved] = []
        self.records: dict[tuple[PipelineKind, int], SettlementRequest] = {}
        self.pools: dict[tuple[PipelineKind, str], int] = defaultdict(int)
        self.balances: dict[str, int] = defaultdict(int)
        self.operator_balance = 10**18

        self.calls: Counter = Counter()
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.connected = False
        self._tx = 0

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls to ``operation`` raise ``error``."""
        self.failures[operation].extend([error] * times)

    def fund(self, kind: PipelineKind, amount: int, asset: Optional[AssetType] = None) -> None:
        self.pools[(kind, str(asset or AssetType.native()))] += amount

    def pool(self, kind: PipelineKind, asset: Optional[AssetType] = None) -> int:
        return self.pools[(kind, str(asset or AssetType.native()))]

    def mine(self, blocks: int = 1) -> int:
        self.head += blocks
        return self.head

    def resolve_bet(
        self,
        request_id: int,
        beneficiary: str,
        bet_amount: int,
        is_winner: bool,
        payout_amount: Optional[int] = None,
        settled_at: Optional[int] = None,
        asset: Optional[AssetType] = None,
        emit: bool = True,
    ) -> BetResolved:
        """Settle a bet and, unless ``emit`` is False, put its event in a new block."""
        now = int(self.clock.now())
        if payout_amount is None:
            payout_amount = bet_amount * 190 // 100 if is_winner else 0
        details = BetDetails(
            request_id=request_id,
            beneficiary=beneficiary,
            asset=asset or AssetType.native(),
            bet_amount=bet_amount,
            payout_amount=payout_amount,
            created_at=now - 5,
            settled_at=now if settled_at is None else settled_at,
            choice=True,
            outcome=is_winner,
            is_winner=is_winner,
        )
        self.bets[request_id] = details
        block = self.mine()
        event = BetResolved(
            request_id=request_id,
            beneficiary=beneficiary,
            bet_amount=bet_amount,
            payout_amount=payout_amount,
            choice=details.choice,
            outcome=details.outcome,
            is_winner=is_winner,
            block_number=block,
            log_index=0,
            tx_hash=f"0xbet{request_id:04d}",
        )
        if emit:
            self.events.append(event)
        return event

    def _maybe_fail(self, operation: str) -> None:
        self.calls[operation] += 1
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _receipt(self) -> TxReceipt:
        self._tx += 1
        block = self.mine()
        return TxReceipt(tx_hash=f"0x{self._tx:064x}", block_number=block, gas_used=21000, status=True)

    # ------------------------------------------------------------------
    # LedgerAdapter
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    @property
    def operator_address(self) -> Optional[str]:
        return OPERATOR

    async def get_block_number(self) -> int:
        self._maybe_fail("get_block_number")
        return self.head

    async def get_bet_resolved_events(self, from_block: int, to_block: int) -> list[BetResolved]:
        self._maybe_fail("get_bet_resolved_events")
        return [e for e in self.events if from_block <= e.block_number <= to_block]

    async def get_bet_details(self, request_id: int) -> BetDetails:
        self._maybe_fail("get_bet_details")
        if request_id not in self.bets:
            raise RecordNotFoundError(
                f"Bet {request_id} not found", request_id=request_id, reason="bet_not_found"
            )
        return self.bets[request_id]

    async def get_record(self, kind: PipelineKind, request_id: int) -> Optional[SettlementRequest]:
        self._maybe_fail("get_record")
        return self.records.get((kind, request_id))

    async def get_stats(self, kind: PipelineKind) -> AggregateStats:
        self._maybe_fail("get_stats")
        records = [r for (k, _), r in self.records.items() if k is kind]

        def count(status: SettlementStatus) -> int:
            return sum(1 for r in records if r.status is status)

        return AggregateStats(
            total_requests=len(records),
            completed_count=count(SettlementStatus.COMPLETED),
            failed_count=count(SettlementStatus.FAILED),
            expired_count=count(SettlementStatus.EXPIRED),
            pending_count=count(SettlementStatus.PENDING),
            total_disbursed=sum(
                r.amount for r in records if r.status is SettlementStatus.COMPLETED
            ),
        )

    async def submit_request(self, draft: SettlementDraft) -> TxReceipt:
        self._maybe_fail("submit_request")
        key = (draft.pipeline, draft.request_id)
        if key in self.records:
            raise AlreadyExistsError(
                f"Request {draft.request_id} already exists", request_id=draft.request_id
            )
        self.records[key] = SettlementRequest(
            pipeline=draft.pipeline,
            request_id=draft.request_id,
            beneficiary=draft.beneficiary,
            asset=draft.asset,
            amount=draft.amount,
            source_bet_amount=draft.source_bet_amount,
            source_created_at=draft.source_created_at,
            source_settled_at=draft.source_settled_at,
            status=SettlementStatus.PENDING,
            created_at=int(self.clock.now()),
        )
        return self._receipt()

    async def execute_request(self, kind: PipelineKind, request_id: int) -> TxReceipt:
        self._maybe_fail("execute_request")
        key = (kind, request_id)
        record = self.records.get(key)
        if record is None:
            raise RecordNotFoundError(
                f"Request {request_id} not found", request_id=request_id, reason="record_not_found"
            )
        if record.is_terminal:
            raise AlreadyProcessedError(
                f"Request {request_id} already processed", request_id=request_id
            )

        now = int(self.clock.now())
        if now < record.source_settled_at + self.minimum_delay:
            raise LedgerRevertError(
                "execution reverted: Too early", request_id=request_id, reason="Too early"
            )

        if now > record.created_at + self.disbursement_window:
            self.records[key] = replace(record, status=SettlementStatus.EXPIRED)
            return self._receipt()

        pool_key = (kind, str(record.asset))
        attempts = record.attempt_count + 1
        if self.pools[pool_key] < record.amount:
            self.records[key] = replace(
                record, status=SettlementStatus.FAILED, attempt_count=attempts
            )
            return self._receipt()

        self.pools[pool_key] -= record.amount
        self.balances[record.beneficiary] += record.amount
        self.records[key] = replace(
            record,
            status=SettlementStatus.COMPLETED,
            attempt_count=attempts,
            disbursed_at=now,
        )
        return self._receipt()

    async def get_mining_start_time(self) -> Optional[int]:
        return self.mining_start_time

    async def get_native_balance(self, address: Optional[str] = None) -> int:
        self._maybe_fail("get_native_balance")
        if address is None or address == OPERATOR:
            return self.operator_balance
        return self.balances[address]

    async def get_pool_balance(self, kind: PipelineKind, asset: AssetType) -> int:
        self._maybe_fail("get_pool_balance")
        return self.pools[(kind, str(asset))]
