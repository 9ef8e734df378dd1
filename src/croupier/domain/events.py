"""Event payload dataclasses for EventBus publishing.

These dataclasses define the structure of events published by the
settlement pipelines to the Redis EventBus. Amounts and request ids are
serialized as strings because they routinely exceed 2**53.

Event Channel Naming Convention:
- settlement.requested - Pending record created on a disbursement ledger
- settlement.completed - Disbursement transferred to the beneficiary
- settlement.failed - Ledger recorded a failed disbursement
- settlement.expired - Pending record abandoned after the window
- settlement.alert - Retry budget exhausted, operator action required
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from croupier.domain.settlement import PipelineKind, SettlementRequest

CHANNEL_REQUESTED = "settlement.requested"
CHANNEL_COMPLETED = "settlement.completed"
CHANNEL_FAILED = "settlement.failed"
CHANNEL_EXPIRED = "settlement.expired"
CHANNEL_ALERT = "settlement.alert"


def _now_iso(timestamp: Optional[datetime] = None) -> str:
    return (timestamp or datetime.now(timezone.utc)).isoformat()


@dataclass(frozen=True)
class SettlementRequestedEvent:
    """Settlement requested event payload.

    Published to: settlement.requested

    Attributes:
        pipeline: "payout" or "mining".
        request_id: Upstream bet id (string).
        beneficiary: Address that will receive the disbursement.
        asset: "native" or the token address.
        amount: Frozen amount in smallest units (string).
        tx_hash: Hash of the creation transaction.
        timestamp: When the record was confirmed (ISO format).
    """

    pipeline: str
    request_id: str
    beneficiary: str
    asset: str
    amount: str
    timestamp: str
    tx_hash: Optional[str] = None

    @classmethod
    def create(
        cls,
        pipeline: PipelineKind,
        request_id: int,
        beneficiary: str,
        asset: str,
        amount: int,
        tx_hash: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "SettlementRequestedEvent":
        return cls(
            pipeline=pipeline.value,
            request_id=str(request_id),
            beneficiary=beneficiary,
            asset=asset,
            amount=str(amount),
            timestamp=_now_iso(timestamp),
            tx_hash=tx_hash,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "request_id": self.request_id,
            "beneficiary": self.beneficiary,
            "asset": self.asset,
            "amount": self.amount,
            "timestamp": self.timestamp,
            "tx_hash": self.tx_hash,
        }


@dataclass(frozen=True)
class SettlementResolvedEvent:
    """Terminal-transition event payload.

    Published to: settlement.completed, settlement.failed or
    settlement.expired depending on ``status``.

    Attributes:
        pipeline: "payout" or "mining".
        request_id: Upstream bet id (string).
        status: Terminal status the ledger recorded.
        beneficiary: Address of the beneficiary.
        asset: "native" or the token address.
        amount: Frozen amount in smallest units (string).
        timestamp: When the transition was observed (ISO format).
        disbursed_at: Ledger timestamp of the transition, if recorded.
        attempts: Execution attempts counted by the ledger.
        reason: Failure reason, for failed records.
        tx_hash: Hash of the execute transaction.
    """

    pipeline: str
    request_id: str
    status: str
    beneficiary: str
    asset: str
    amount: str
    timestamp: str
    disbursed_at: Optional[int] = None
    attempts: int = 0
    reason: Optional[str] = None
    tx_hash: Optional[str] = None

    @classmethod
    def from_record(
        cls,
        record: SettlementRequest,
        tx_hash: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "SettlementResolvedEvent":
        return cls(
            pipeline=record.pipeline.value,
            request_id=str(record.request_id),
            status=record.status.value,
            beneficiary=record.beneficiary,
            asset=str(record.asset),
            amount=str(record.amount),
            timestamp=_now_iso(timestamp),
            disbursed_at=record.disbursed_at,
            attempts=record.attempt_count,
            reason=record.failure_reason,
            tx_hash=tx_hash,
        )

    @property
    def channel(self) -> str:
        if self.status == "completed":
            return CHANNEL_COMPLETED
        if self.status == "expired":
            return CHANNEL_EXPIRED
        return CHANNEL_FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "request_id": self.request_id,
            "status": self.status,
            "beneficiary": self.beneficiary,
            "asset": self.asset,
            "amount": self.amount,
            "timestamp": self.timestamp,
            "disbursed_at": self.disbursed_at,
            "attempts": self.attempts,
            "reason": self.reason,
            "tx_hash": self.tx_hash,
        }


@dataclass(frozen=True)
class SettlementAlertEvent:
    """Alert for work the pipeline gave up on.

    Published to: settlement.alert

    Emitted when the retry scheduler exhausts a task's attempts. The ledger
    record (if any) is left untouched; an operator decides what to do.

    Attributes:
        pipeline: "payout" or "mining".
        request_id: Upstream bet id (string).
        task: "submit" or "execute".
        attempts: How many attempts were made.
        error_kind: Kind of the last error.
        error: Last error message.
        timestamp: When the alert was raised (ISO format).
        severity: Alert severity.
    """

    pipeline: str
    request_id: str
    task: str
    attempts: int
    error_kind: str
    error: str
    timestamp: str
    severity: str = "critical"

    @classmethod
    def create(
        cls,
        pipeline: PipelineKind,
        request_id: int,
        task: str,
        attempts: int,
        error_kind: str,
        error: str,
        timestamp: Optional[datetime] = None,
    ) -> "SettlementAlertEvent":
        return cls(
            pipeline=pipeline.value,
            request_id=str(request_id),
            task=task,
            attempts=attempts,
            error_kind=error_kind,
            error=error,
            timestamp=_now_iso(timestamp),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "request_id": self.request_id,
            "task": self.task,
            "attempts": self.attempts,
            "error_kind": self.error_kind,
            "error": self.error,
            "timestamp": self.timestamp,
            "severity": self.severity,
        }
