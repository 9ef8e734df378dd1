"""Settlement Record Store - read access to one pipeline's records.

The ledger is the state of record. The store never writes; every status
change happens inside the ledger's own submit/execute transactions and is
observed here by reading the record back.
"""

from typing import Optional, Sequence

import structlog

from croupier.core.errors import RecordNotFoundError
from croupier.domain.settlement import AggregateStats, PipelineKind, SettlementRequest
from croupier.integrations.ledger.base import LedgerAdapter

log = structlog.get_logger()

# Upper bound on ids per batch read, to keep RPC payloads small.
MAX_BATCH_SIZE = 100


class SettlementRecordStore:
    """Per-pipeline view of settlement records.

    Usage:
        store = SettlementRecordStore(ledger, PipelineKind.PAYOUT)
        record = await store.get_record(42)
        stats = await store.get_aggregate_stats()
    """

    def __init__(self, ledger: LedgerAdapter, kind: PipelineKind) -> None:
        self._ledger = ledger
        self._kind = kind
        self._log = log.bind(component="record_store", pipeline=kind.value)

    @property
    def kind(self) -> PipelineKind:
        return self._kind

    async def find_record(self, request_id: int) -> Optional[SettlementRequest]:
        """Record for ``request_id``, or None if it was never created."""
        return await self._ledger.get_record(self._kind, request_id)

    async def get_record(self, request_id: int) -> SettlementRequest:
        """Record for ``request_id``.

        Raises:
            RecordNotFoundError: if no record exists.
        """
        record = await self.find_record(request_id)
        if record is None:
            raise RecordNotFoundError(
                f"No {self._kind.value} record for request {request_id}",
                request_id=request_id,
                reason="record_not_found",
            )
        return record

    async def exists(self, request_id: int) -> bool:
        return await self.find_record(request_id) is not None

    async def get_batch_records(self, request_ids: Sequence[int]) -> list[SettlementRequest]:
        """Existing records among ``request_ids``, in request order.

        Ids without a record are left out.
        """
        records: list[SettlementRequest] = []
        ids = list(request_ids)
        for start in range(0, len(ids), MAX_BATCH_SIZE):
            chunk = ids[start:start + MAX_BATCH_SIZE]
            found = await self._ledger.get_records(self._kind, chunk)
            records.extend(r for r in found if r is not None)
        self._log.debug("batch_records_loaded", requested=len(ids), found=len(records))
        return records

    async def get_aggregate_stats(self) -> AggregateStats:
        return await self._ledger.get_stats(self._kind)
