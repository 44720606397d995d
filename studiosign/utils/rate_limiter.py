"""
In-memory token bucket rate limiter for OTP requests.
For multi-instance deployments, move the buckets to a shared store.
"""
import time
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from studiosign.config import Settings, get_settings
from studiosign.exceptions import RateLimitException


@dataclass
class TokenBucket:
    """Token bucket for rate limiting."""
    tokens: float
    last_update: float


class RateLimiter:
    """
    Token bucket rate limiter keyed by an opaque string
    (a token fingerprint, a client IP, ...).
    Thread-safe for single-instance deployment.
    """

    def __init__(
        self,
        max_requests: int = 5,
        window_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_tokens = max_requests
        self.refill_rate = max_requests / window_seconds  # tokens per second
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()
        self._cleanup_interval = max(window_seconds * 2, 60)
        self._last_cleanup = clock()

    def _bucket(self, key: str, now: float) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = self._buckets[key] = TokenBucket(tokens=float(self.max_tokens), last_update=now)
            return bucket
        bucket.tokens = min(self.max_tokens, bucket.tokens + (now - bucket.last_update) * self.refill_rate)
        bucket.last_update = now
        return bucket

    def _cleanup(self, now: float) -> None:
        """Drop buckets that have been idle long enough to be full again."""
        if now - self._last_cleanup < self._cleanup_interval:
            return
        cutoff = now - self._cleanup_interval
        for key in [k for k, b in self._buckets.items() if b.last_update < cutoff]:
            del self._buckets[key]
        self._last_cleanup = now

    def is_allowed(self, key: str) -> Tuple[bool, int]:
        """
        Take one token for key if available.

        Returns:
            Tuple of (allowed: bool, retry_after_seconds: int)
        """
        with self._lock:
            now = self._clock()
            self._cleanup(now)
            bucket = self._bucket(key, now)
            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return True, 0
            retry_after = int((1 - bucket.tokens) / self.refill_rate) + 1
            return False, retry_after

    def check(self, key: str) -> None:
        """Like is_allowed(), but raises RateLimitException when exhausted."""
        allowed, retry_after = self.is_allowed(key)
        if not allowed:
            raise RateLimitException(retry_after)

    def get_remaining(self, key: str) -> int:
        with self._lock:
            return int(self._bucket(key, self._clock()).tokens)

    def reset(self, key: str) -> None:
        """Reset the bucket for a given key (e.g., after successful verification)."""
        with self._lock:
            self._buckets.pop(key, None)


_otp_rate_limiter: Optional[RateLimiter] = None


def get_otp_rate_limiter(settings: Optional[Settings] = None) -> RateLimiter:
    """Get the OTP request rate limiter singleton."""
    global _otp_rate_limiter
    if _otp_rate_limiter is None:
        settings = settings or get_settings()
        _otp_rate_limiter = RateLimiter(
            max_requests=settings.otp_rate_limit_requests,
            window_seconds=settings.otp_rate_limit_window_seconds,
        )
    return _otp_rate_limiter
