"""Tests for magpie.retry."""

from unittest.mock import AsyncMock, patch

import pytest

from magpie.errors import AuthenticationError, ProviderError
from magpie.retry import DEFAULT_BACKOFF, backoff_delay, retry_async


class TestBackoffDelay:
    def test_follows_schedule(self):
        assert backoff_delay(0, DEFAULT_BACKOFF) == 0.25
        assert backoff_delay(1, DEFAULT_BACKOFF) == 0.5
        assert backoff_delay(2, DEFAULT_BACKOFF) == 1.0

    def test_last_value_repeats(self):
        assert backoff_delay(7, (0.1, 0.2)) == 0.2

    def test_empty_schedule(self):
        assert backoff_delay(0, ()) == 0.0


class TestRetryAsync:
    async def test_first_try_success(self):
        fn = AsyncMock(return_value="ok")
        with patch("magpie.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            assert await retry_async(fn, "a", key="b") == "ok"
        fn.assert_awaited_once_with("a", key="b")
        mock_sleep.assert_not_awaited()

    async def test_succeeds_on_third_attempt(self):
        fn = AsyncMock(side_effect=[ProviderError("x"), ProviderError("y"), "done"])
        with patch("magpie.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            assert await retry_async(fn) == "done"
        assert fn.await_count == 3
        assert [c.args[0] for c in mock_sleep.await_args_list] == [0.25, 0.5]

    async def test_reraises_after_budget(self):
        fn = AsyncMock(side_effect=ProviderError("down"))
        with patch("magpie.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(ProviderError, match="down"):
                await retry_async(fn, attempts=3)
        assert fn.await_count == 3

    async def test_give_up_on_stops_immediately(self):
        fn = AsyncMock(side_effect=AuthenticationError("bad token", status_code=401))
        with patch("magpie.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(AuthenticationError):
                await retry_async(fn, give_up_on=(AuthenticationError,))
        assert fn.await_count == 1
        mock_sleep.assert_not_awaited()

    async def test_unlisted_exception_not_retried(self):
        fn = AsyncMock(side_effect=KeyError("k"))
        with pytest.raises(KeyError):
            await retry_async(fn, retry_on=(ProviderError,))
        assert fn.await_count == 1

    async def test_zero_attempts_rejected(self):
        with pytest.raises(ValueError):
            await retry_async(AsyncMock(), attempts=0)
