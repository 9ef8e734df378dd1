"""Pipeline rules: who is eligible and how much they receive.

The payout pipeline pays winners a fixed multiple of their stake. The mining
pipeline rewards losers with a share of their stake that decays daily from
the mining ledger's start time, capped per request.

Both rule sets only *validate*; the ledger contract computes and freezes the
amount on creation, and the submitter compares the two.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from croupier.core.errors import DataIntegrityError
from croupier.domain.settlement import (
    BetDetails,
    BetResolved,
    PipelineKind,
    SettlementDraft,
)

SECONDS_PER_DAY = 86_400

DEFAULT_MINIMUM_DELAY_SECONDS = 60
DEFAULT_DISBURSEMENT_WINDOW_SECONDS = 30 * SECONDS_PER_DAY

PAYOUT_RATIO_NUMERATOR = 190
PAYOUT_RATIO_DENOMINATOR = 100

MINING_INITIAL_RATIO = 100  # percent of the stake on day zero
MINING_DECAY_NUMERATOR = 99
MINING_DECAY_DENOMINATOR = 100
MINING_MAX_SINGLE_REWARD = 10_000 * 10**18

# Fixed-point scale for the decaying mining ratio.
_RATIO_SCALE = 10**18


@dataclass(frozen=True)
class PipelineRules(ABC):
    """Eligibility and amount rules for one pipeline.

    Attributes:
        kind: Which pipeline these rules govern.
        minimum_delay: Seconds after bet settlement before execution is allowed.
        disbursement_window: Seconds after record creation before it expires.
    """

    kind: PipelineKind
    minimum_delay: int = DEFAULT_MINIMUM_DELAY_SECONDS
    disbursement_window: int = DEFAULT_DISBURSEMENT_WINDOW_SECONDS

    @abstractmethod
    def is_eligible(self, is_winner: bool) -> bool:
        """Whether a bet with this outcome is owed anything."""
        ...

    @abstractmethod
    def expected_amount(self, bet_amount: int, settled_at: int) -> int:
        """Amount owed for a stake settled at ``settled_at``."""
        ...

    def validate(self, event: BetResolved, details: BetDetails) -> int:
        """Check an event against the bet record and return the amount owed.

        Raises:
            DataIntegrityError: if the bet is ineligible for this pipeline,
                unsettled, or if the event and the bet record disagree.
        """
        rid = event.request_id
        if not details.is_settled:
            raise DataIntegrityError(
                f"Bet {rid} is not settled", request_id=rid, reason="bet_not_settled"
            )
        if details.is_winner != event.is_winner:
            raise DataIntegrityError(
                f"Bet {rid} outcome disagrees with ledger record",
                request_id=rid,
                reason="outcome_mismatch",
            )
        if details.beneficiary.lower() != event.beneficiary.lower():
            raise DataIntegrityError(
                f"Bet {rid} beneficiary disagrees with ledger record",
                request_id=rid,
                reason="beneficiary_mismatch",
            )
        if details.bet_amount != event.bet_amount:
            raise DataIntegrityError(
                f"Bet {rid} stake disagrees with ledger record",
                request_id=rid,
                reason="bet_amount_mismatch",
            )
        if not self.is_eligible(event.is_winner):
            raise DataIntegrityError(
                f"Bet {rid} is not eligible for {self.kind.value}",
                request_id=rid,
                reason="not_eligible",
            )
        if event.bet_amount <= 0:
            raise DataIntegrityError(
                f"Bet {rid} has no stake", request_id=rid, reason="zero_bet_amount"
            )
        return self.expected_amount(details.bet_amount, details.settled_at)

    def build_draft(self, details: BetDetails, amount: int) -> SettlementDraft:
        return SettlementDraft(
            pipeline=self.kind,
            request_id=details.request_id,
            beneficiary=details.beneficiary,
            asset=details.asset,
            amount=amount,
            source_bet_amount=details.bet_amount,
            source_created_at=details.created_at,
            source_settled_at=details.settled_at,
            choice=details.choice,
            outcome=details.outcome,
            is_winner=details.is_winner,
        )


@dataclass(frozen=True)
class PayoutRules(PipelineRules):
    """Winners receive ``bet * 190 / 100``."""

    kind: PipelineKind = PipelineKind.PAYOUT
    ratio_numerator: int = PAYOUT_RATIO_NUMERATOR
    ratio_denominator: int = PAYOUT_RATIO_DENOMINATOR

    def is_eligible(self, is_winner: bool) -> bool:
        return is_winner

    def expected_amount(self, bet_amount: int, settled_at: int) -> int:
        return bet_amount * self.ratio_numerator // self.ratio_denominator

    def validate(self, event: BetResolved, details: BetDetails) -> int:
        amount = super().validate(event, details)
        # The betting ledger reports its own payout figure; it must agree.
        if event.payout_amount != amount:
            raise DataIntegrityError(
                f"Bet {event.request_id} payout {event.payout_amount} != expected {amount}",
                request_id=event.request_id,
                reason="payout_amount_mismatch",
            )
        return amount


@dataclass(frozen=True)
class MiningRules(PipelineRules):
    """Losers receive a decaying share of their stake.

    The ratio starts at ``initial_ratio`` percent at ``start_time`` and is
    multiplied by ``decay_numerator / decay_denominator`` once per whole day
    elapsed, truncating at each step.
    """

    kind: PipelineKind = PipelineKind.MINING
    start_time: int = 0
    initial_ratio: int = MINING_INITIAL_RATIO
    decay_numerator: int = MINING_DECAY_NUMERATOR
    decay_denominator: int = MINING_DECAY_DENOMINATOR
    max_single_reward: Optional[int] = MINING_MAX_SINGLE_REWARD

    def is_eligible(self, is_winner: bool) -> bool:
        return not is_winner

    def days_elapsed(self, settled_at: int) -> int:
        return max(0, (settled_at - self.start_time) // SECONDS_PER_DAY)

    def scaled_ratio(self, settled_at: int) -> int:
        """Current ratio in percent, multiplied by 1e18."""
        ratio = self.initial_ratio * _RATIO_SCALE
        for _ in range(self.days_elapsed(settled_at)):
            ratio = ratio * self.decay_numerator // self.decay_denominator
            if ratio == 0:
                break
        return ratio

    def expected_amount(self, bet_amount: int, settled_at: int) -> int:
        amount = bet_amount * self.scaled_ratio(settled_at) // (100 * _RATIO_SCALE)
        if self.max_single_reward is not None:
            amount = min(amount, self.max_single_reward)
        return amount


def rules_for(
    kind: PipelineKind,
    minimum_delay: int = DEFAULT_MINIMUM_DELAY_SECONDS,
    disbursement_window: int = DEFAULT_DISBURSEMENT_WINDOW_SECONDS,
    **extra: int,
) -> PipelineRules:
    """Build the rule set for a pipeline kind.

    ``extra`` carries kind-specific parameters (``start_time`` and friends
    for mining, ``ratio_numerator`` / ``ratio_denominator`` for payout).
    """
    if kind is PipelineKind.PAYOUT:
        return PayoutRules(
            minimum_delay=minimum_delay,
            disbursement_window=disbursement_window,
            **extra,
        )
    if kind is PipelineKind.MINING:
        return MiningRules(
            minimum_delay=minimum_delay,
            disbursement_window=disbursement_window,
            **extra,
        )
    raise ValueError(f"Unknown pipeline kind: {kind!r}")

