"""
Backoff policy and in-place retries.

Two kinds of retry exist in Croupier:

- In-place: a read-only ledger call that hits a TransientLedgerError is
  retried a few times right away with tenacity (RetryConfig, call_with_retry).
  Submissions and executions are never retried in-place.
- Re-driven: the retry scheduler re-runs a whole idempotent submit/execute
  step later. Its delays come from backoff_delay().

Usage:
    from croupier.core.retry import RetryConfig, call_with_retry

    record = await call_with_retry(read_record, 42, config=RetryConfig(max_attempts=5))
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)

from croupier.core.errors import TransientLedgerError

log = structlog.get_logger()

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MIN_WAIT_SECONDS = 0.5
DEFAULT_MAX_WAIT_SECONDS = 10.0
DEFAULT_EXPONENTIAL_MULTIPLIER = 1.0
DEFAULT_JITTER = True

# 2**64 seconds is already far past any sane cap.
_MAX_EXPONENT = 64


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Scheduler delay before retry number ``attempt``: base * 2**attempt, capped.

    Deterministic (no jitter) so schedules can be asserted under a VirtualClock.
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    return min(base_delay * (2 ** min(attempt, _MAX_EXPONENT)), max_delay)


@dataclass
class RetryConfig:
    """In-place retry parameters, usually the ``[ledger.retry]`` section.

    Attributes:
        max_attempts: Attempts including the first one.
        min_wait_seconds: Lower bound for a single wait.
        max_wait_seconds: Upper bound for a single wait.
        exponential_multiplier: Scale of the exponential wait.
        jitter: Randomize waits so parallel readers do not retry in lockstep.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    min_wait_seconds: float = DEFAULT_MIN_WAIT_SECONDS
    max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS
    exponential_multiplier: float = DEFAULT_EXPONENTIAL_MULTIPLIER
    jitter: bool = DEFAULT_JITTER

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> "RetryConfig":
        defaults = cls()
        return cls(
            max_attempts=int(config_dict.get("max_attempts", defaults.max_attempts)),
            min_wait_seconds=float(config_dict.get("min_wait_seconds", defaults.min_wait_seconds)),
            max_wait_seconds=float(config_dict.get("max_wait_seconds", defaults.max_wait_seconds)),
            exponential_multiplier=float(
                config_dict.get("exponential_multiplier", defaults.exponential_multiplier)
            ),
            jitter=bool(config_dict.get("jitter", defaults.jitter)),
        )

    def retrying(self, log_context: Optional[dict[str, Any]] = None) -> AsyncRetrying:
        """A tenacity controller retrying TransientLedgerError only."""
        wait_type = wait_random_exponential if self.jitter else wait_exponential
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_type(
                multiplier=self.exponential_multiplier,
                min=self.min_wait_seconds,
                max=self.max_wait_seconds,
            ),
            retry=retry_if_exception_type(TransientLedgerError),
            before_sleep=_log_retry(log_context or {}),
            reraise=True,
        )


def _log_retry(context: dict[str, Any]) -> Callable[[RetryCallState], None]:
    def callback(state: RetryCallState) -> None:
        exception = state.outcome.exception() if state.outcome else None
        log.warning(
            "ledger_call_retry",
            attempt=state.attempt_number,
            error=str(exception) if exception else None,
            error_kind=getattr(exception, "kind", type(exception).__name__),
            wait_seconds=state.next_action.sleep if state.next_action else 0,
            **context,
        )

    return callback


async def call_with_retry(
    func: Callable[..., Any],
    *args: Any,
    config: Optional[RetryConfig] = None,
    log_context: Optional[dict[str, Any]] = None,
    **kwargs: Any,
) -> Any:
    """Await ``func(*args, **kwargs)`` with in-place retries.

    Used where the retry parameters come from configuration loaded after
    import time (the ledger adapter instance).
    """
    async for attempt in (config or RetryConfig()).retrying(log_context):
        with attempt:
            return await func(*args, **kwargs)
