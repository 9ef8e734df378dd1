"""Domain models - pure data structures with no I/O dependencies."""

from croupier.domain.events import (
    SettlementAlertEvent,
    SettlementRequestedEvent,
    SettlementResolvedEvent,
)
from croupier.domain.pipeline import MiningRules, PayoutRules, PipelineRules, rules_for
from croupier.domain.settlement import (
    NATIVE_TOKEN_ADDRESS,
    AggregateStats,
    AssetType,
    BetDetails,
    BetResolved,
    ExecuteOutcome,
    PipelineKind,
    SettlementDraft,
    SettlementRequest,
    SettlementStatus,
    SubmitOutcome,
    WatcherCursor,
)

__all__ = [
    # Event payloads for EventBus publishing
    "SettlementAlertEvent",
    "SettlementRequestedEvent",
    "SettlementResolvedEvent",
    # Pipeline rules
    "MiningRules",
    "PayoutRules",
    "PipelineRules",
    "rules_for",
    # Settlement models
    "NATIVE_TOKEN_ADDRESS",
    "AggregateStats",
    "AssetType",
    "BetDetails",
    "BetResolved",
    "ExecuteOutcome",
    "PipelineKind",
    "SettlementDraft",
    "SettlementRequest",
    "SettlementStatus",
    "SubmitOutcome",
    "WatcherCursor",
]
