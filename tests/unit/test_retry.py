"""Tests for mcp_runtime.utils.retry."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from mcp_runtime.enums import BackoffPolicy
from mcp_runtime.utils.retry import async_retry, backoff_delay


class TestBackoffDelay:
    """Tests for backoff_delay."""

    def test_exponential(self) -> None:
        """Exponential delays should grow by the multiplier."""
        delays = [backoff_delay(n, 0.5, BackoffPolicy.EXPONENTIAL, 2.0) for n in (1, 2, 3)]
        assert delays == [0.5, 1.0, 2.0]

    def test_linear(self) -> None:
        """Linear delays should grow by the base delay."""
        delays = [backoff_delay(n, 0.5, BackoffPolicy.LINEAR) for n in (1, 2, 3)]
        assert delays == [0.5, 1.0, 1.5]

    def test_attempt_zero(self) -> None:
        """No delay before the first attempt."""
        assert backoff_delay(0, 1.0) == 0.0


class TestAsyncRetry:
    """Tests for async_retry decorator."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self) -> None:
        """Should return immediately on success."""
        call_count = 0

        @async_retry(max_retries=3, base_delay=0.01)
        async def succeed() -> str:
            nonlocal call_count
            call_count += 1
            return "ok"

        assert await succeed() == "ok"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retries_until_success(self) -> None:
        """Should retry matching exceptions and return the eventual result."""
        call_count = 0

        @async_retry(max_retries=3, base_delay=0.5, exceptions=(TimeoutError,))
        async def flaky() -> str:
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise TimeoutError("slow")
            return "ok"

        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            assert await flaky() == "ok"

        assert call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_exhausted_raises_last_error(self) -> None:
        """Should raise after max_retries + 1 attempts."""
        call_count = 0

        @async_retry(max_retries=2, base_delay=0.1, policy=BackoffPolicy.LINEAR, exceptions=(TimeoutError,))
        async def always_slow() -> None:
            nonlocal call_count
            call_count += 1
            raise TimeoutError(f"attempt {call_count}")

        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(TimeoutError, match="attempt 3"):
                await always_slow()

        assert call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_other_exceptions_propagate(self) -> None:
        """Exceptions outside the retry set should not be retried."""
        call_count = 0

        @async_retry(max_retries=3, base_delay=0.01, exceptions=(TimeoutError,))
        async def broken() -> None:
            nonlocal call_count
            call_count += 1
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await broken()
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_zero_retries(self) -> None:
        """max_retries=0 should call exactly once."""
        mock = AsyncMock(side_effect=TimeoutError("slow"))
        wrapped = async_retry(max_retries=0, exceptions=(TimeoutError,))(mock)

        with pytest.raises(TimeoutError):
            await wrapped()
        assert mock.call_count == 1
