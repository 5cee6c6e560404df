"""Tests for the fixed-window rate limit helper and the in-process cache.

Invalid window_seconds should be logged and default to 60 seconds.
"""
from unittest.mock import patch

import pytest

from farmgate.service.security import check_rate_limit
from farmgate.storage.cache import MemoryCache


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


class TestCheckRateLimit:
    """Tests for the check_rate_limit function."""

    async def test_zero_limit_always_passes(self, cache):
        """Rate limit of 0 or negative always passes."""
        assert await check_rate_limit(cache, "test_key", 0, 60) is True
        assert await check_rate_limit(cache, "test_key", -1, 60) is True

    async def test_invalid_window_logs_warning(self, cache):
        """Invalid window_seconds logs warning and defaults to 60."""
        with patch("farmgate.service.security.logger") as mock_logger:
            await check_rate_limit(cache, "test_key", 10, 0)

            mock_logger.warning.assert_called_once()
            call_args = mock_logger.warning.call_args
            assert call_args[0][0] == "rate_limit_invalid_window"
            assert call_args[1]["window_seconds"] == 0
        assert await cache.ttl("test_key") == 60

    async def test_negative_window_logs_warning(self, cache):
        with patch("farmgate.service.security.logger") as mock_logger:
            await check_rate_limit(cache, "test_key", 10, -5)

            mock_logger.warning.assert_called_once()
            assert mock_logger.warning.call_args[1]["window_seconds"] == -5

    async def test_valid_window_no_warning(self, cache):
        with patch("farmgate.service.security.logger") as mock_logger:
            await check_rate_limit(cache, "test_key", 10, 60)
            mock_logger.warning.assert_not_called()

    async def test_request_over_limit_is_rejected(self, cache):
        for _ in range(3):
            assert await check_rate_limit(cache, "ip", 3, 60) is True
        assert await check_rate_limit(cache, "ip", 3, 60) is False

    async def test_counter_resets_after_window(self, cache, clock):
        for _ in range(4):
            await check_rate_limit(cache, "ip", 3, 60)
        clock.advance(61)
        assert await check_rate_limit(cache, "ip", 3, 60) is True

    async def test_window_is_fixed_not_sliding(self, cache, clock):
        await check_rate_limit(cache, "ip", 2, 60)
        clock.advance(50)
        await check_rate_limit(cache, "ip", 2, 60)
        assert await check_rate_limit(cache, "ip", 2, 60) is False
        clock.advance(11)
        assert await check_rate_limit(cache, "ip", 2, 60) is True

    async def test_return_remaining(self, cache):
        allowed, remaining, reset = await check_rate_limit(
            cache, "ip", 5, 60, return_remaining=True
        )
        assert allowed is True
        assert remaining == 4
        assert 0 < reset <= 60

    async def test_keys_are_independent(self, cache):
        await check_rate_limit(cache, "a", 1, 60)
        assert await check_rate_limit(cache, "a", 1, 60) is False
        assert await check_rate_limit(cache, "b", 1, 60) is True


class TestMemoryCache:
    async def test_set_get_and_expiry(self, cache, clock):
        await cache.set("csrf:t", "t", 10)
        assert await cache.get("csrf:t") == "t"
        clock.advance(10)
        assert await cache.get("csrf:t") is None

    async def test_delete(self, cache):
        await cache.set("k", "v", 10)
        assert await cache.delete("k") is True
        assert await cache.delete("k") is False

    async def test_increment_keeps_original_expiry(self, cache, clock):
        await cache.increment("k", 60)
        clock.advance(30)
        assert await cache.increment("k", 60) == 2
        assert await cache.ttl("k") == 30
