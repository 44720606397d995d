"""
Tests for rate limiter.
"""
import pytest

from studiosign.exceptions import RateLimitException
from studiosign.utils.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestRateLimiter:
    """Tests for token bucket rate limiter."""

    def test_allows_within_limit(self):
        """Requests within limit are allowed."""
        limiter = RateLimiter(max_requests=5, window_seconds=300)

        for _ in range(5):
            allowed, retry_after = limiter.is_allowed("test-key")
            assert allowed is True
            assert retry_after == 0

    def test_blocks_over_limit(self):
        """The sixth OTP request in the window is blocked."""
        limiter = RateLimiter(max_requests=5, window_seconds=300, clock=FakeClock())

        for _ in range(5):
            limiter.is_allowed("test-key")

        allowed, retry_after = limiter.is_allowed("test-key")
        assert allowed is False
        assert 60 <= retry_after <= 61  # one token refills every 60s

    def test_different_keys_independent(self):
        """Different keys have independent limits."""
        limiter = RateLimiter(max_requests=2, window_seconds=60)

        limiter.is_allowed("key1")
        limiter.is_allowed("key1")

        allowed, _ = limiter.is_allowed("key2")
        assert allowed is True

    def test_refills_over_time(self):
        """Tokens refill over time."""
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window_seconds=10, clock=clock)

        limiter.is_allowed("test-key")
        allowed1, _ = limiter.is_allowed("test-key")
        assert allowed1 is False

        clock.advance(10.5)
        allowed2, _ = limiter.is_allowed("test-key")
        assert allowed2 is True

    def test_check_raises(self):
        """check() raises RateLimitException with Retry-After when exhausted."""
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())
        limiter.check("test-key")

        with pytest.raises(RateLimitException) as exc_info:
            limiter.check("test-key")

        assert exc_info.value.status_code == 429
        assert exc_info.value.details["retry_after"] > 0

    def test_reset_clears_bucket(self):
        """Reset clears the bucket for a key."""
        limiter = RateLimiter(max_requests=2, window_seconds=60)

        limiter.is_allowed("test-key")
        limiter.is_allowed("test-key")
        limiter.reset("test-key")

        allowed, _ = limiter.is_allowed("test-key")
        assert allowed is True

    def test_get_remaining(self):
        """Get remaining tokens."""
        limiter = RateLimiter(max_requests=5, window_seconds=60, clock=FakeClock())

        assert limiter.get_remaining("test-key") == 5

        limiter.is_allowed("test-key")
        assert limiter.get_remaining("test-key") == 4

        limiter.is_allowed("test-key")
        limiter.is_allowed("test-key")
        assert limiter.get_remaining("test-key") == 2

    def test_idle_buckets_cleaned_up(self):
        """Buckets idle for two windows are dropped."""
        clock = FakeClock()
        limiter = RateLimiter(max_requests=2, window_seconds=60, clock=clock)
        limiter.is_allowed("stale")

        clock.advance(500)
        limiter.is_allowed("fresh")

        assert "stale" not in limiter._buckets
        assert "fresh" in limiter._buckets
