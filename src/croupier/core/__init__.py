"""Core framework infrastructure - config, events, errors, logging, lifecycle, retry, clock."""

from croupier.core.clock import Clock, SystemClock, VirtualClock
from croupier.core.config import ConfigManager, find_config_file
from croupier.core.events import EventBus, publish_if_connected
from croupier.core.errors import (
    AlreadyExistsError,
    AlreadyProcessedError,
    ConfigurationError,
    CroupierError,
    DataIntegrityError,
    ErrorCategory,
    InsufficientFundsError,
    LedgerRevertError,
    LedgerTimeoutError,
    LedgerUnavailableError,
    PermanentError,
    RecordNotFoundError,
    TransientLedgerError,
    UnderpricedTransactionError,
    WindowExpiredError,
    classify_ledger_error,
    is_retryable,
)
from croupier.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus
from croupier.core.logging import setup_logging
from croupier.core.retry import RetryConfig, backoff_delay, call_with_retry
from croupier.core.shutdown import ShutdownManager, ShutdownPhase

__all__ = [
    # Clock
    "Clock",
    "SystemClock",
    "VirtualClock",
    # Config
    "ConfigManager",
    "find_config_file",
    # Events
    "EventBus",
    "publish_if_connected",
    # Errors
    "CroupierError",
    "ErrorCategory",
    "TransientLedgerError",
    "LedgerTimeoutError",
    "LedgerUnavailableError",
    "UnderpricedTransactionError",
    "PermanentError",
    "DataIntegrityError",
    "InsufficientFundsError",
    "WindowExpiredError",
    "RecordNotFoundError",
    "LedgerRevertError",
    "ConfigurationError",
    "AlreadyProcessedError",
    "AlreadyExistsError",
    "classify_ledger_error",
    "is_retryable",
    # Lifecycle
    "BaseComponent",
    "HealthCheckResult",
    "HealthStatus",
    # Logging
    "setup_logging",
    # Retry
    "RetryConfig",
    "backoff_delay",
    "call_with_retry",
    # Shutdown
    "ShutdownManager",
    "ShutdownPhase",
]
