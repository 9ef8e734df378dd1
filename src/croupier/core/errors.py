"""
Error taxonomy for the settlement pipeline.

Every failure that crosses a component boundary is one of:

- TransientLedgerError: timeouts, RPC outages, underpriced or dropped
  transactions. Re-driven by the retry scheduler with backoff.
- PermanentError: data-integrity problems, unknown records, reverts that
  will revert again. Never retried automatically.
- Idempotency short-circuits (AlreadyProcessedError, AlreadyExistsError):
  not failures at all, callers translate them into no-op outcomes.

classify_ledger_error() turns raw web3 / RPC exceptions into this taxonomy,
keeping the ledger's revert reason when one is available.
"""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """Classification of error types for retry decisions."""

    TRANSIENT = "transient"  # Network issues, timeouts - should retry
    PERMANENT = "permanent"  # Bad data, reverts - should NOT retry
    IDEMPOTENT = "idempotent"  # Work already done - treat as success
    UNKNOWN = "unknown"  # Unclassified - treat as transient by default


class CroupierError(Exception):
    """Base exception for all Croupier errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    kind: str = "croupier_error"

    def __init__(
        self,
        message: str,
        cause: Optional[Exception] = None,
        request_id: Optional[int] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.request_id = request_id
        self.reason = reason
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message

    def to_dict(self) -> dict:
        """Structured form used by CLI error output and alerts."""
        return {
            "request_id": self.request_id,
            "error_kind": self.kind,
            "category": self.category.value,
            "message": self.message,
            "reason": self.reason,
        }


# =============================================================================
# Transient
# =============================================================================


class TransientLedgerError(CroupierError):
    """Ledger call failed in a way that may succeed on retry."""

    category = ErrorCategory.TRANSIENT
    kind = "transient_ledger_error"


class LedgerTimeoutError(TransientLedgerError):
    """A ledger call or confirmation wait exceeded its timeout.

    The underlying transaction may still land; callers must re-read state
    rather than assume either outcome.
    """

    kind = "ledger_timeout"


class LedgerUnavailableError(TransientLedgerError):
    """RPC endpoint unreachable or returning server errors."""

    kind = "ledger_unavailable"


class UnderpricedTransactionError(TransientLedgerError):
    """Transaction rejected for fee/nonce reasons and must be resubmitted."""

    kind = "transaction_underpriced"


# =============================================================================
# Permanent
# =============================================================================


class PermanentError(CroupierError):
    """Error that will NOT succeed on retry."""

    category = ErrorCategory.PERMANENT
    kind = "permanent_error"


class DataIntegrityError(PermanentError):
    """Event contents disagree with the pipeline's eligibility or amount rules.

    Indicates an upstream bug; logged for investigation, never retried.
    """

    kind = "data_integrity"


class InsufficientFundsError(PermanentError):
    """Disbursement pool lacks funds of the required asset."""

    kind = "insufficient_funds"


class WindowExpiredError(PermanentError):
    """Disbursement attempted after the maximum allowed window."""

    kind = "window_expired"


class RecordNotFoundError(PermanentError):
    """No settlement record (or bet) exists for the request id."""

    kind = "not_found"


class LedgerRevertError(PermanentError):
    """Transaction reverted for a reason that will not change on retry."""

    kind = "ledger_revert"


class ConfigurationError(PermanentError):
    """Missing or invalid configuration."""

    kind = "configuration"


# =============================================================================
# Idempotency short-circuits
# =============================================================================


class AlreadyProcessedError(CroupierError):
    """Record is already terminal; the operation is a no-op."""

    category = ErrorCategory.IDEMPOTENT
    kind = "already_processed"


class AlreadyExistsError(CroupierError):
    """A record for this request id already exists; creation is a no-op."""

    category = ErrorCategory.IDEMPOTENT
    kind = "already_exists"


# =============================================================================
# Classification
# =============================================================================

# Revert reasons / custom error names emitted by the payout and mining
# contracts, matched case-insensitively against the error text.
_ALREADY_EXISTS_MARKERS = (
    "alreadyexists",
    "already exists",
    "requestalreadyexists",
    "betalreadymined",
    "派奖请求已存在",
    "duplicate",
)
_ALREADY_PROCESSED_MARKERS = (
    "payoutalreadyprocessed",
    "miningalreadyprocessed",
    "alreadyprocessed",
    "already processed",
    "notpending",
    "invalid status",
)
_DATA_INTEGRITY_MARKERS = (
    "notwinningbet",
    "notlosingbet",
    "payoutamountmismatch",
    "amountmismatch",
    "invalidbetdata",
    "invalid bet",
)
# Contract error names only; an RPC "404 Not Found" is a transport failure.
_NOT_FOUND_MARKERS = (
    "requestnotfound",
    "betnotfound",
    "invalidrequestid",
    "派奖请求不存在",
)
_UNDERPRICED_MARKERS = (
    "underpriced",
    "nonce too low",
    "replacement transaction",
    "insufficient funds for gas",
    "max fee per gas less than block base fee",
)
_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "rate limit",
    "too many requests",
    "502",
    "503",
    "504",
    "service unavailable",
    "temporarily",
)


def _matches(text: str, markers: tuple[str, ...]) -> bool:
    return any(marker in text for marker in markers)


def extract_revert_reason(error: Exception) -> Optional[str]:
    """Pull a revert reason out of a web3 exception, if there is one."""
    message = getattr(error, "message", None) or str(error)
    if not message:
        return None
    marker = "execution reverted"
    lowered = message.lower()
    if marker in lowered:
        tail = message[lowered.index(marker) + len(marker):].lstrip(": ").strip()
        return tail or marker
    return None


def classify_ledger_error(
    error: Exception,
    context: Optional[str] = None,
    request_id: Optional[int] = None,
) -> CroupierError:
    """Wrap an exception raised by a ledger call in the Croupier taxonomy.

    Args:
        error: The raw exception.
        context: Optional prefix for the error message.
        request_id: Request the call was about, for structured output.

    Returns:
        A CroupierError subclass. Already-classified errors are returned as is.
    """
    if isinstance(error, CroupierError):
        if request_id is not None and error.request_id is None:
            error.request_id = request_id
        return error

    reason = extract_revert_reason(error)
    text = f"{type(error).__name__} {error}".lower()
    message = f"{context}: {error}" if context else str(error)

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)) or _matches(
        text, ("timeexhausted", "transactionnotfound")
    ):
        return LedgerTimeoutError(message, cause=error, request_id=request_id)
    if _matches(text, _ALREADY_EXISTS_MARKERS):
        return AlreadyExistsError(message, cause=error, request_id=request_id, reason=reason)
    if _matches(text, _ALREADY_PROCESSED_MARKERS):
        return AlreadyProcessedError(message, cause=error, request_id=request_id, reason=reason)
    if _matches(text, _DATA_INTEGRITY_MARKERS):
        return DataIntegrityError(message, cause=error, request_id=request_id, reason=reason)
    if _matches(text, _NOT_FOUND_MARKERS):
        return RecordNotFoundError(message, cause=error, request_id=request_id, reason=reason)
    if _matches(text, _UNDERPRICED_MARKERS):
        return UnderpricedTransactionError(message, cause=error, request_id=request_id, reason=reason)
    if reason is not None:
        return LedgerRevertError(message, cause=error, request_id=request_id, reason=reason)
    if isinstance(error, (ConnectionError, OSError)) or _matches(text, _TRANSIENT_MARKERS):
        return LedgerUnavailableError(message, cause=error, request_id=request_id)

    return TransientLedgerError(message, cause=error, request_id=request_id)


def is_retryable(error: Exception) -> bool:
    """Check if an error should be re-driven by the retry scheduler."""
    if isinstance(error, CroupierError):
        return error.category in (ErrorCategory.TRANSIENT, ErrorCategory.UNKNOWN)
    return classify_ledger_error(error).category == ErrorCategory.TRANSIENT
