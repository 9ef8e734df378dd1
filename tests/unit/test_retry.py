"""
Unit tests for retry helpers.

Tests cover:
- Deterministic backoff shared with the retry scheduler
- tenacity-based in-place retries for read-only ledger calls
- RetryConfig loading
"""
from unittest.mock import AsyncMock

import pytest

from croupier.core.errors import DataIntegrityError, LedgerUnavailableError
from croupier.core.retry import (
    DEFAULT_MAX_ATTEMPTS,
    RetryConfig,
    backoff_delay,
    call_with_retry,
)

NO_WAIT = RetryConfig(max_attempts=3, min_wait_seconds=0, max_wait_seconds=0, jitter=False)


class TestBackoffDelay:
    def test_doubles_each_attempt(self):
        assert [backoff_delay(n, 2.0, 1000.0) for n in range(4)] == [2.0, 4.0, 8.0, 16.0]

    def test_capped_at_max(self):
        assert backoff_delay(10, 2.0, 300.0) == 300.0

    def test_huge_attempt_does_not_overflow(self):
        assert backoff_delay(10_000, 1.0, 60.0) == 60.0

    def test_negative_attempt_rejected(self):
        with pytest.raises(ValueError):
            backoff_delay(-1, 1.0, 10.0)


class TestRetryConfig:
    def test_defaults(self):
        config = RetryConfig.from_dict({})
        assert config.max_attempts == DEFAULT_MAX_ATTEMPTS
        assert config.jitter is True

    def test_from_dict(self):
        config = RetryConfig.from_dict({"max_attempts": 7, "jitter": False, "max_wait_seconds": 2})
        assert config.max_attempts == 7
        assert config.jitter is False
        assert config.max_wait_seconds == 2


class TestRetryTransient:
    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        func = AsyncMock(side_effect=[LedgerUnavailableError("down"), "ok"])
        result = await call_with_retry(func, 42, config=NO_WAIT)
        assert result == "ok"
        assert func.await_count == 2
        func.assert_awaited_with(42)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        func = AsyncMock(side_effect=LedgerUnavailableError("down"))
        with pytest.raises(LedgerUnavailableError):
            await call_with_retry(func, config=NO_WAIT)
        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self):
        func = AsyncMock(side_effect=DataIntegrityError("bad"))
        with pytest.raises(DataIntegrityError):
            await call_with_retry(func, config=NO_WAIT)
        assert func.await_count == 1
