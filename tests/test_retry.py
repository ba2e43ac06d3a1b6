"""Tests for onebox_ingest.retry."""

from __future__ import annotations

import pytest

from onebox_ingest.config import RetryConfig
from onebox_ingest.errors import MailConnectionError, MailFetchError
from onebox_ingest.retry import with_retry


@pytest.fixture
def config() -> RetryConfig:
    return RetryConfig(max_attempts=2, wait_seconds=0.01)


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_succeeds_first_try(self, config: RetryConfig):
        call_count = 0

        @with_retry(config)
        async def fn():
            nonlocal call_count
            call_count += 1
            return "ok"

        assert await fn() == "ok"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, config: RetryConfig):
        call_count = 0

        @with_retry(config)
        async def fn():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise MailConnectionError("transient")
            return "recovered"

        assert await fn() == "recovered"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_exhausts_attempts_and_reraises_last_error(self, config: RetryConfig):
        call_count = 0

        @with_retry(config)
        async def fn():
            nonlocal call_count
            call_count += 1
            raise MailConnectionError(f"failure {call_count}")

        with pytest.raises(MailConnectionError, match="failure 2"):
            await fn()
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self, config: RetryConfig):
        call_count = 0

        @with_retry(config, retryable_exceptions=(MailFetchError,))
        async def fn():
            nonlocal call_count
            call_count += 1
            raise ValueError("bug")

        with pytest.raises(ValueError):
            await fn()
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_single_attempt_config(self):
        call_count = 0

        @with_retry(RetryConfig(max_attempts=1, wait_seconds=0))
        async def fn():
            nonlocal call_count
            call_count += 1
            raise MailConnectionError("down")

        with pytest.raises(MailConnectionError):
            await fn()
        assert call_count == 1
