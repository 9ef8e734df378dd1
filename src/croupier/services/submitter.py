"""Request Submitter - creates exactly one settlement record per eligible bet.

submit() is idempotent: the existence check, the ledger's own
reject-on-duplicate rule and the read-back after finality together mean a
second call for the same request id reports SKIPPED and changes nothing.
"""

from typing import Optional

import structlog

from croupier.core.errors import (
    AlreadyExistsError,
    DataIntegrityError,
    LedgerRevertError,
)
from croupier.core.events import EventBus, publish_if_connected
from croupier.domain.events import CHANNEL_REQUESTED, SettlementRequestedEvent
from croupier.domain.pipeline import PipelineRules
from croupier.domain.settlement import BetResolved, SubmitOutcome
from croupier.integrations.ledger.base import LedgerAdapter
from croupier.services.metrics import MetricsEmitter
from croupier.services.store import SettlementRecordStore

log = structlog.get_logger()


class RequestSubmitter:
    """Validates resolved bets and creates Pending records on the ledger.

    Outcomes:
    - CREATED: the record was created and reached finality
    - SKIPPED: a record already existed (duplicate delivery or a race)
    - REJECTED: the bet is ineligible or its data disagrees with the rules

    Transient ledger failures are raised as TransientLedgerError so the
    retry scheduler can re-drive the call.
    """

    def __init__(
        self,
        ledger: LedgerAdapter,
        store: SettlementRecordStore,
        rules: PipelineRules,
        event_bus: Optional[EventBus] = None,
        metrics_emitter: Optional[MetricsEmitter] = None,
    ) -> None:
        self._ledger = ledger
        self._store = store
        self._rules = rules
        self._event_bus = event_bus
        self._metrics = metrics_emitter
        self._pipeline = rules.kind.value
        self._log = log.bind(component="request_submitter", pipeline=self._pipeline)

    async def submit(self, event: BetResolved) -> SubmitOutcome:
        """Create the settlement record for ``event`` if it is due one."""
        rid = event.request_id
        bound = self._log.bind(request_id=rid)

        if not self._rules.is_eligible(event.is_winner):
            error = DataIntegrityError(
                f"Bet {rid} is not eligible for {self._pipeline}",
                request_id=rid,
                reason="not_eligible",
            )
            return self._reject(error)

        if await self._store.exists(rid):
            bound.info("request_already_exists")
            return self._finish(SubmitOutcome.SKIPPED)

        details = await self._ledger.get_bet_details(rid)
        try:
            amount = self._rules.validate(event, details)
        except DataIntegrityError as e:
            return self._reject(e)

        draft = self._rules.build_draft(details, amount)
        bound.info(
            "submitting_request",
            beneficiary=draft.beneficiary,
            asset=str(draft.asset),
            amount=str(amount),
            bet_amount=str(draft.source_bet_amount),
        )

        try:
            receipt = await self._ledger.submit_request(draft)
        except AlreadyExistsError:
            bound.info("request_created_concurrently")
            return self._finish(SubmitOutcome.SKIPPED)
        except DataIntegrityError as e:
            return self._reject(e)
        except LedgerRevertError:
            # A revert after a clean preflight usually means another
            # submitter won the race.
            if await self._store.exists(rid):
                bound.info("request_created_concurrently")
                return self._finish(SubmitOutcome.SKIPPED)
            raise

        record = await self._store.find_record(rid)
        if record is None:
            bound.warning("request_not_visible_after_confirmation", tx_hash=receipt.tx_hash)
        elif record.amount != amount:
            bound.error(
                "recorded_amount_mismatch",
                error_kind=DataIntegrityError.kind,
                expected=str(amount),
                recorded=str(record.amount),
                tx_hash=receipt.tx_hash,
            )

        bound.info(
            "request_created",
            tx_hash=receipt.tx_hash,
            block=receipt.block_number,
            amount=str(record.amount if record else amount),
        )
        await publish_if_connected(
            self._event_bus,
            CHANNEL_REQUESTED,
            SettlementRequestedEvent.create(
                pipeline=self._rules.kind,
                request_id=rid,
                beneficiary=draft.beneficiary,
                asset=str(draft.asset),
                amount=record.amount if record else amount,
                tx_hash=receipt.tx_hash,
            ),
        )
        return self._finish(SubmitOutcome.CREATED)

    def _reject(self, error: DataIntegrityError) -> SubmitOutcome:
        self._log.error(
            "data_integrity_error",
            request_id=error.request_id,
            error_kind=error.kind,
            reason=error.reason,
            error=error.message,
        )
        return self._finish(SubmitOutcome.REJECTED)

    def _finish(self, outcome: SubmitOutcome) -> SubmitOutcome:
        if self._metrics:
            self._metrics.record_submission(self._pipeline, outcome.value)
        return outcome
