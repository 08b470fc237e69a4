"""
Tests for retry logic and the backoff policy.
"""

import random

import pytest

from leadenrich.retry import (
    BackoffPolicy,
    RetryError,
    exponential_backoff,
    parse_retry_after,
    should_retry_http_status,
)


class TestExponentialBackoff:
    """Test exponential backoff decorator."""

    def test_success_on_first_try(self):
        """Function that succeeds immediately should not retry."""
        call_count = [0]

        @exponential_backoff(max_retries=3, base_delay=0.1, sleep=lambda s: None)
        def succeeds():
            call_count[0] += 1
            return "success"

        assert succeeds() == "success"
        assert call_count[0] == 1

    def test_retry_then_succeed(self):
        """Function that fails then succeeds should retry."""
        call_count = [0]

        @exponential_backoff(max_retries=3, base_delay=0.01, sleep=lambda s: None)
        def fails_twice():
            call_count[0] += 1
            if call_count[0] < 3:
                raise ConnectionError("Temporary failure")
            return "success"

        assert fails_twice() == "success"
        assert call_count[0] == 3

    def test_all_retries_exhausted(self):
        """Should raise RetryError after all attempts fail."""
        call_count = [0]

        @exponential_backoff(max_retries=2, base_delay=0.01, sleep=lambda s: None)
        def always_fails():
            call_count[0] += 1
            raise ValueError("Always fails")

        with pytest.raises(RetryError):
            always_fails()

        assert call_count[0] == 3  # Initial + 2 retries

    def test_only_catches_specified_exceptions(self):
        """Should only retry on specified exception types."""
        call_count = [0]

        @exponential_backoff(max_retries=3, base_delay=0.01, exceptions=(ConnectionError,))
        def raises_value_error():
            call_count[0] += 1
            raise ValueError("Not retryable")

        with pytest.raises(ValueError):
            raises_value_error()

        assert call_count[0] == 1  # No retries

    def test_exponential_delay(self):
        """Delay should increase exponentially and match what is slept."""
        delays = []
        slept = []

        @exponential_backoff(
            max_retries=3,
            base_delay=0.01,
            exponential_base=2.0,
            on_retry=lambda attempt, exc, delay: delays.append(delay),
            sleep=slept.append,
        )
        def always_fails():
            raise ConnectionError("Test")

        with pytest.raises(RetryError):
            always_fails()

        assert delays == [0.01, 0.02, 0.04]
        assert slept == delays

    def test_max_delay_cap(self):
        """Delay should not exceed max_delay."""
        delays = []

        @exponential_backoff(
            max_retries=5,
            base_delay=1.0,
            max_delay=2.0,
            exponential_base=3.0,
            on_retry=lambda attempt, exc, delay: delays.append(delay),
            sleep=lambda s: None,
        )
        def always_fails():
            raise ConnectionError("Test")

        with pytest.raises(RetryError):
            always_fails()

        assert delays == [1.0, 2.0, 2.0, 2.0, 2.0]


class TestBackoffPolicy:
    """Test the capped exponential curve with full jitter."""

    def test_ceiling_grows_and_caps(self):
        """Ceilings double per attempt up to max_delay."""
        policy = BackoffPolicy(base_delay=1.0, max_delay=10.0)
        assert [policy.ceiling(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]
        assert policy.ceiling(0) == 0.0

    def test_jitter_stays_below_ceiling(self):
        """Jittered delays are drawn from [0, ceiling]."""
        policy = BackoffPolicy(base_delay=1.0, max_delay=300.0, rng=random.Random(7))
        for attempt in range(1, 12):
            delay = policy.delay(attempt)
            assert 0.0 <= delay <= policy.ceiling(attempt)

    def test_no_jitter_returns_ceiling(self):
        """Without jitter the delay is deterministic."""
        policy = BackoffPolicy(base_delay=0.5, jitter=False)
        assert policy.delay(3) == 2.0

    def test_zero_base_means_no_wait(self):
        """A zero base delay never waits."""
        assert BackoffPolicy(base_delay=0).delay(4) == 0


class TestHttpHelpers:
    """Test HTTP retry classification helpers."""

    def test_http_status_retry_logic(self):
        """Should correctly identify retryable HTTP status codes."""
        # Retryable
        assert should_retry_http_status(408)  # Timeout
        assert should_retry_http_status(429)  # Rate limit
        assert should_retry_http_status(500)  # Server error
        assert should_retry_http_status(502)  # Bad gateway
        assert should_retry_http_status(503)  # Service unavailable

        # Not retryable
        assert not should_retry_http_status(200)  # Success
        assert not should_retry_http_status(404)  # Not found
        assert not should_retry_http_status(403)  # Forbidden
        assert not should_retry_http_status(401)  # Unauthorized

    def test_parse_retry_after(self):
        """Retry-After seconds are parsed; dates and junk are ignored."""
        assert parse_retry_after("12") == 12.0
        assert parse_retry_after(" 1.5 ") == 1.5
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None
        assert parse_retry_after(None) is None
        assert parse_retry_after("-3") == 0.0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
