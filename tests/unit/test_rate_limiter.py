"""Tests for the sliding window rate limiter."""

from unittest.mock import patch

from buildflow.auth.rate_limiter import (
    InMemoryRateLimiter,
    RateLimitDecision,
    RateLimitPolicy,
)


def _limiter(limit: int = 5, window: int = 60) -> InMemoryRateLimiter:
    return InMemoryRateLimiter(RateLimitPolicy(name="test", limit=limit, window_seconds=window))


class TestInMemoryRateLimiter:
    def test_allows_under_limit(self) -> None:
        """Requests under limit are all allowed, remaining counts down."""
        limiter = _limiter(limit=10)
        for i in range(5):
            decision = limiter.check("10.0.0.1")
            assert decision.allowed is True
            assert decision.remaining == 10 - (i + 1)

    def test_blocks_over_limit(self) -> None:
        """Request exceeding limit is blocked with a positive retry."""
        limiter = _limiter(limit=5)
        for _ in range(5):
            assert limiter.check("10.0.0.1").allowed is True

        decision = limiter.check("10.0.0.1")
        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.reset_after >= 1

    def test_keys_are_independent(self) -> None:
        limiter = _limiter(limit=1)
        assert limiter.check("10.0.0.1").allowed is True
        assert limiter.check("10.0.0.1").allowed is False
        assert limiter.check("10.0.0.2").allowed is True

    def test_window_expires(self) -> None:
        """After window expires, old requests are not counted."""
        limiter = _limiter(limit=5, window=60)

        with patch("buildflow.auth.rate_limiter.time.monotonic") as mock_time:
            mock_time.return_value = 1000.0
            for _ in range(5):
                limiter.check("10.0.0.1")
            assert limiter.check("10.0.0.1").allowed is False

            mock_time.return_value = 1061.0
            assert limiter.check("10.0.0.1").allowed is True

    def test_sliding_window_partial(self) -> None:
        """Only requests older than the window drop out."""
        limiter = _limiter(limit=3, window=60)

        with patch("buildflow.auth.rate_limiter.time.monotonic") as mock_time:
            mock_time.return_value = 1000.0
            limiter.check("k")
            mock_time.return_value = 1030.0
            limiter.check("k")
            limiter.check("k")
            assert limiter.check("k").allowed is False

            # First request expired; the two at t=1030 still count.
            mock_time.return_value = 1061.0
            assert limiter.check("k").allowed is True
            assert limiter.check("k").allowed is False

    def test_denied_requests_not_recorded(self) -> None:
        limiter = _limiter(limit=2, window=60)

        with patch("buildflow.auth.rate_limiter.time.monotonic") as mock_time:
            mock_time.return_value = 1000.0
            limiter.check("k")
            limiter.check("k")
            for _ in range(10):
                limiter.check("k")

            mock_time.return_value = 1061.0
            assert limiter.check("k").remaining == 1

    def test_peek_does_not_record(self) -> None:
        limiter = _limiter(limit=2)
        for _ in range(5):
            assert limiter.peek("k").allowed is True
        limiter.check("k")
        assert limiter.peek("k").remaining == 1
        limiter.check("k")
        assert limiter.peek("k").allowed is False

    def test_cleanup_removes_expired_keys(self) -> None:
        limiter = _limiter(limit=5, window=60)

        with patch("buildflow.auth.rate_limiter.time.monotonic") as mock_time:
            mock_time.return_value = 1000.0
            limiter.check("old")
            mock_time.return_value = 1050.0
            limiter.check("fresh")

            mock_time.return_value = 1070.0
            assert limiter.cleanup() == 1
            assert limiter.peek("fresh").remaining == 4


class TestRateLimitDecision:
    def test_headers_when_allowed(self) -> None:
        headers = RateLimitDecision(True, 100, 42, 30).headers()
        assert headers == {
            "RateLimit-Limit": "100",
            "RateLimit-Remaining": "42",
            "RateLimit-Reset": "30",
        }

    def test_retry_after_when_denied(self) -> None:
        headers = RateLimitDecision(False, 100, 0, 17).headers()
        assert headers["Retry-After"] == "17"
        assert headers["RateLimit-Remaining"] == "0"
