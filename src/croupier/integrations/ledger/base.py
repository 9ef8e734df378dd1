"""Ledger adapter interface.

The settlement pipelines talk to the betting, payout and mining ledgers only
through this interface. Implementations must:

- put a timeout on every call and raise LedgerTimeoutError when it fires;
- wait for the configured number of confirmations before returning from a
  state-changing call;
- translate raw client errors with classify_ledger_error().
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

from croupier.domain.settlement import (
    AggregateStats,
    AssetType,
    BetDetails,
    BetResolved,
    PipelineKind,
    SettlementDraft,
    SettlementRequest,
)


@dataclass
class TxReceipt:
    """Transaction receipt."""

    tx_hash: str
    block_number: int
    gas_used: int
    status: bool  # True = success


@dataclass(frozen=True)
class LedgerTimeouts:
    """Timeouts for ledger calls, in seconds.

    Attributes:
        call: Read-only calls and event queries.
        submit: Signing and broadcasting a transaction.
        confirmation: Waiting for the transaction to reach finality.
        poll_interval: How often to poll for a receipt / confirmations.
    """

    call: float = 15.0
    submit: float = 30.0
    confirmation: float = 120.0
    poll_interval: float = 1.0


class LedgerAdapter(ABC):
    """Async access to the betting ledger and the two disbursement ledgers."""

    async def connect(self) -> None:
        """Open connections. Default is a no-op."""

    async def close(self) -> None:
        """Release connections. Default is a no-op."""

    @property
    def operator_address(self) -> Optional[str]:
        """Address that signs state-changing calls, if any."""
        return None

    # Betting ledger

    @abstractmethod
    async def get_block_number(self) -> int:
        """Current head of the chain."""

    @abstractmethod
    async def get_bet_resolved_events(self, from_block: int, to_block: int) -> list[BetResolved]:
        """BetResolved events in ``[from_block, to_block]``, in stream order."""

    @abstractmethod
    async def get_bet_details(self, request_id: int) -> BetDetails:
        """Full bet record.

        Raises:
            RecordNotFoundError: if the betting ledger has no such bet.
        """

    # Disbursement ledgers

    @abstractmethod
    async def get_record(self, kind: PipelineKind, request_id: int) -> Optional[SettlementRequest]:
        """Settlement record for ``request_id``, or None if none exists."""

    async def get_records(
        self, kind: PipelineKind, request_ids: Sequence[int]
    ) -> list[Optional[SettlementRequest]]:
        """Records for several ids, aligned with ``request_ids``."""
        return [await self.get_record(kind, rid) for rid in request_ids]

    @abstractmethod
    async def get_stats(self, kind: PipelineKind) -> AggregateStats:
        """Pipeline-wide counters."""

    @abstractmethod
    async def submit_request(self, draft: SettlementDraft) -> TxReceipt:
        """Create a Pending record and wait for finality.

        Raises:
            AlreadyExistsError: if a record for the id already exists.
            DataIntegrityError: if the ledger rejects the draft's contents.
            TransientLedgerError: on timeouts and RPC failures.
        """

    @abstractmethod
    async def execute_request(self, kind: PipelineKind, request_id: int) -> TxReceipt:
        """Run the ledger's atomic execute transition and wait for finality.

        The ledger decides the resulting status (Completed, Failed or
        Expired); callers read the record back to learn it.

        Raises:
            AlreadyProcessedError: if the record is no longer Pending.
            TransientLedgerError: on timeouts and RPC failures.
        """

    async def get_mining_start_time(self) -> Optional[int]:
        """Start of the mining decay schedule, if the ledger exposes one."""
        return None

    # Balances

    @abstractmethod
    async def get_native_balance(self, address: Optional[str] = None) -> int:
        """Native balance of ``address`` (defaults to the operator)."""

    @abstractmethod
    async def get_pool_balance(self, kind: PipelineKind, asset: AssetType) -> int:
        """Funds of ``asset`` held by the pipeline's disbursement ledger."""
