"""Settlement domain types shared by the payout and mining pipelines.

Amounts are integers in the asset's smallest unit (wei for the native coin,
token base units for ERC-20s). Timestamps are unix seconds, matching the
ledger's block timestamps.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

NATIVE_TOKEN_ADDRESS = "0x0000000000000000000000000000000000000000"


class PipelineKind(str, Enum):
    """Which disbursement ledger a request belongs to."""

    PAYOUT = "payout"
    MINING = "mining"


class SettlementStatus(str, Enum):
    """Lifecycle state of a settlement request.

    The ledger stores status as a small integer; from_wire() / to_wire()
    are the only place that mapping lives.
    """

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not SettlementStatus.PENDING

    @classmethod
    def from_wire(cls, value: int) -> "SettlementStatus":
        try:
            return _STATUS_FROM_WIRE[int(value)]
        except (KeyError, ValueError, TypeError):
            raise ValueError(f"Unknown settlement status code: {value!r}") from None

    def to_wire(self) -> int:
        return _STATUS_TO_WIRE[self]


_STATUS_FROM_WIRE = {
    0: SettlementStatus.PENDING,
    1: SettlementStatus.COMPLETED,
    2: SettlementStatus.FAILED,
    3: SettlementStatus.EXPIRED,
}
_STATUS_TO_WIRE = {status: code for code, status in _STATUS_FROM_WIRE.items()}


@dataclass(frozen=True)
class AssetType:
    """Native coin or a specific fungible token."""

    token: str = NATIVE_TOKEN_ADDRESS

    @classmethod
    def native(cls) -> "AssetType":
        return cls(NATIVE_TOKEN_ADDRESS)

    @property
    def is_native(self) -> bool:
        return int(self.token, 16) == 0

    def __str__(self) -> str:
        return "native" if self.is_native else self.token


@dataclass(frozen=True)
class BetResolved:
    """A resolved bet as emitted by the betting ledger.

    block_number / log_index locate the event in the stream and are used for
    cursor bookkeeping only; request_id is the identity. choice and outcome
    are parities as the betting ledger stores them (True is even).
    """

    request_id: int
    beneficiary: str
    bet_amount: int
    payout_amount: int
    choice: bool
    outcome: bool
    is_winner: bool
    block_number: int = 0
    log_index: int = 0
    tx_hash: str = ""

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class BetDetails:
    """Full bet record read from the betting ledger."""

    request_id: int
    beneficiary: str
    asset: AssetType
    bet_amount: int
    payout_amount: int
    created_at: int
    settled_at: int
    choice: bool
    outcome: bool
    is_winner: bool

    @property
    def is_settled(self) -> bool:
        return self.settled_at > 0

    def to_event(self) -> BetResolved:
        """Rebuild the resolution event for manual (CLI) submission."""
        return BetResolved(
            request_id=self.request_id,
            beneficiary=self.beneficiary,
            bet_amount=self.bet_amount,
            payout_amount=self.payout_amount,
            choice=self.choice,
            outcome=self.outcome,
            is_winner=self.is_winner,
        )


@dataclass(frozen=True)
class SettlementDraft:
    """Everything the ledger needs to create a Pending request."""

    pipeline: PipelineKind
    request_id: int
    beneficiary: str
    asset: AssetType
    amount: int
    source_bet_amount: int
    source_created_at: int
    source_settled_at: int
    choice: bool
    outcome: bool
    is_winner: bool


@dataclass(frozen=True)
class SettlementRequest:
    """A settlement record as stored on the ledger.

    Records are never deleted; terminal records are the audit trail.
    """

    pipeline: PipelineKind
    request_id: int
    beneficiary: str
    asset: AssetType
    amount: int
    source_bet_amount: int
    source_created_at: int
    source_settled_at: int
    status: SettlementStatus
    created_at: int
    disbursed_at: Optional[int] = None
    attempt_count: int = 0
    failure_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def gate_opens_at(self, minimum_delay: int) -> int:
        """Earliest time execution is permitted."""
        return self.source_settled_at + minimum_delay

    def expires_at(self, window: int) -> int:
        """Time after which a Pending record is abandoned."""
        return self.created_at + window

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline": self.pipeline.value,
            "request_id": str(self.request_id),
            "beneficiary": self.beneficiary,
            "asset": str(self.asset),
            "amount": str(self.amount),
            "source_bet_amount": str(self.source_bet_amount),
            "source_created_at": self.source_created_at,
            "source_settled_at": self.source_settled_at,
            "status": self.status.value,
            "created_at": self.created_at,
            "disbursed_at": self.disbursed_at,
            "attempt_count": self.attempt_count,
            "failure_reason": self.failure_reason,
        }


class SubmitOutcome(str, Enum):
    """Result of RequestSubmitter.submit()."""

    CREATED = "created"
    SKIPPED = "skipped"
    REJECTED = "rejected"


class ExecuteOutcome(str, Enum):
    """Result of SettlementExecutor.execute()."""

    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    NOT_YET_DUE = "not_yet_due"
    ALREADY_PROCESSED = "already_processed"

    @property
    def requires_attention(self) -> bool:
        """Outcomes an operator has to act on."""
        return self in (ExecuteOutcome.FAILED, ExecuteOutcome.EXPIRED)


@dataclass(frozen=True)
class AggregateStats:
    """Pipeline-wide counters as reported by the ledger."""

    total_requests: int = 0
    completed_count: int = 0
    failed_count: int = 0
    total_disbursed: int = 0
    pending_count: int = 0
    expired_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "completed_count": self.completed_count,
            "failed_count": self.failed_count,
            "expired_count": self.expired_count,
            "pending_count": self.pending_count,
            "total_disbursed": str(self.total_disbursed),
        }


@dataclass
class WatcherCursor:
    """High-water mark of the event stream for one watcher process.

    In-memory only. After a restart the backfill scan rebuilds it.
    """

    last_processed_block: int = -1
    last_processed_log_index: int = -1
    handled: int = field(default=0, compare=False)

    @property
    def position(self) -> tuple[int, int]:
        return (self.last_processed_block, self.last_processed_log_index)

    def is_behind(self, event: BetResolved) -> bool:
        """True when the event lies after the high-water mark."""
        return event.position > self.position

    def advance(self, event: BetResolved) -> None:
        """Move the mark forward; never backwards."""
        if event.position > self.position:
            self.last_processed_block, self.last_processed_log_index = event.position
        self.handled += 1

    def advance_to_block(self, block_number: int) -> None:
        """Mark every event up to and including ``block_number`` as seen."""
        if block_number > self.last_processed_block:
            self.last_processed_block = block_number
            self.last_processed_log_index = 2**31
