"""Services - the watcher, submitter, executor, retry scheduler and their wiring."""

from croupier.services.executor import SettlementExecutor
from croupier.services.metrics import MetricsEmitter
from croupier.services.pipeline import KeyedLock, SettlementPipeline, build_pipeline
from croupier.services.scheduler import RetryScheduler, ScheduledTask, TaskKind
from croupier.services.store import SettlementRecordStore
from croupier.services.submitter import RequestSubmitter
from croupier.services.watcher import EventWatcher, WatchHandle

__all__ = [
    "EventWatcher",
    "KeyedLock",
    "MetricsEmitter",
    "RequestSubmitter",
    "RetryScheduler",
    "ScheduledTask",
    "SettlementExecutor",
    "SettlementPipeline",
    "SettlementRecordStore",
    "TaskKind",
    "WatchHandle",
    "build_pipeline",
]
