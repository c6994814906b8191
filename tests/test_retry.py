"""
Tests for retry logic and backoff curve.
"""

import pytest

from bookingsync.exceptions import AuthError, RateLimitedError
from bookingsync.retry import (
    ExhaustedRetriesError,
    RetryError,
    backoff_delay,
    retry_call,
)


def rate_limited_forever():
    raise RateLimitedError("slow down", status_code=429)


class TestBackoffDelay:
    """Test the delay curve."""

    def test_doubles_from_base(self):
        """Delay should be base * 2^(attempt-1)."""
        assert [backoff_delay(n, base_delay=1.0) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max(self):
        """Delay should never exceed max_delay."""
        assert backoff_delay(10, base_delay=1.0, max_delay=60.0) == 60.0

    def test_rejects_attempt_zero(self):
        """Attempts are 1-based."""
        with pytest.raises(ValueError):
            backoff_delay(0)


class TestRetryCall:
    """Test retry_call with an injected sleep."""

    def test_success_on_first_try(self, sleep):
        """No sleeping when the call succeeds."""
        assert retry_call(lambda: "ok", sleep=sleep) == "ok"
        assert sleep.delays == []

    def test_rate_limited_then_success(self, sleep):
        """k-1 rate limits then success sleeps initial*2^0 .. initial*2^(k-2)."""
        calls = [0]

        def flaky():
            calls[0] += 1
            if calls[0] < 4:
                raise RateLimitedError("slow down", status_code=429)
            return "page"

        result = retry_call(
            flaky,
            max_retries=5,
            base_delay=0.5,
            max_delay=60.0,
            exceptions=(RateLimitedError,),
            sleep=sleep,
        )

        assert result == "page"
        assert calls[0] == 4
        assert sleep.delays == [0.5, 1.0, 2.0]

    def test_max_retries_is_total_attempts(self, sleep):
        """max_retries=5 makes exactly five calls and sleeps only between them."""
        calls = [0]

        def always():
            calls[0] += 1
            rate_limited_forever()

        with pytest.raises(ExhaustedRetriesError) as exc_info:
            retry_call(always, max_retries=5, base_delay=1.0, exceptions=(RateLimitedError,), sleep=sleep)

        assert calls[0] == 5
        assert exc_info.value.attempts == 5
        assert sleep.delays == [1.0, 2.0, 4.0, 8.0]

    def test_single_attempt_never_sleeps(self, sleep):
        """max_retries=1 is one call with no backoff."""
        with pytest.raises(ExhaustedRetriesError):
            retry_call(rate_limited_forever, max_retries=1, exceptions=(RateLimitedError,), sleep=sleep)
        assert sleep.delays == []

    def test_rejects_zero_attempts(self, sleep):
        """At least one attempt must be allowed."""
        with pytest.raises(ValueError):
            retry_call(lambda: "ok", max_retries=0, sleep=sleep)

    def test_exhaustion_attaches_last_error(self, sleep):
        """ExhaustedRetriesError should carry the final exception."""
        error = RateLimitedError("slow down", status_code=429)

        def always():
            raise error

        with pytest.raises(RetryError) as exc_info:
            retry_call(always, max_retries=2, exceptions=(RateLimitedError,), sleep=sleep)

        assert isinstance(exc_info.value, ExhaustedRetriesError)
        assert exc_info.value.last_error is error
        assert exc_info.value.attempts == 2
        assert len(sleep.delays) == 1

    def test_unlisted_exception_propagates(self, sleep):
        """Fatal errors are not retried."""
        calls = [0]

        def denied():
            calls[0] += 1
            raise AuthError("bad token", status_code=401)

        with pytest.raises(AuthError):
            retry_call(denied, max_retries=3, exceptions=(RateLimitedError,), sleep=sleep)

        assert calls[0] == 1
        assert sleep.delays == []

    def test_on_retry_callback(self, sleep):
        """on_retry receives attempt number, error and delay."""
        seen = []

        def always():
            raise ConnectionError("reset")

        with pytest.raises(ExhaustedRetriesError):
            retry_call(
                always,
                max_retries=3,
                base_delay=1.0,
                on_retry=lambda attempt, e, delay: seen.append((attempt, type(e), delay)),
                sleep=sleep,
            )

        assert seen == [(1, ConnectionError, 1.0), (2, ConnectionError, 2.0)]
