"""
Tests for the retry decorator.
"""

from unittest.mock import AsyncMock, patch

import pytest

from utils.retry import with_retry

class TestWithRetry:
    """Tests for with_retry."""

    @pytest.mark.asyncio
    async def test_async_retries_until_success(self):
        calls = []

        @with_retry(max_retries=2, delay=0.01, jitter=False)
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("down")
            return "ok"

        with patch("utils.retry.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            assert await flaky() == "ok"

        assert len(calls) == 3
        assert [c.args[0] for c in mock_sleep.await_args_list] == [0.01, 0.02]

    @pytest.mark.asyncio
    async def test_non_matching_exception_is_not_retried(self):
        calls = []

        @with_retry(max_retries=3, delay=0.01, exceptions=[ConnectionError])
        async def broken():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await broken()
        assert len(calls) == 1

    def test_sync_gives_up_after_max_retries(self):
        calls = []

        @with_retry(max_retries=1, delay=0.01, jitter=False)
        def always_fails():
            calls.append(1)
            raise TimeoutError("slow")

        with patch("utils.retry.time.sleep") as mock_sleep:
            with pytest.raises(TimeoutError):
                always_fails()

        assert len(calls) == 2
        mock_sleep.assert_called_once_with(0.01)
