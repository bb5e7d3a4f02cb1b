"""Tests for the bounded retry helper."""

import pytest

from build_relay.retry import retry_call


class Flaky:
    def __init__(self, failures, exc=RuntimeError):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(f"failure {self.calls}")
        return "ok"


class TestRetryCall:
    def test_first_try_success_does_not_sleep(self):
        """No failure, no delay."""
        sleeps = []
        assert retry_call(Flaky(0), attempts=5, delay=10, sleep=sleeps.append) == "ok"
        assert sleeps == []

    def test_recovers_after_failures(self):
        """Transient failures are retried with the fixed delay."""
        sleeps = []
        fn = Flaky(2)
        assert retry_call(fn, attempts=5, delay=10, sleep=sleeps.append) == "ok"
        assert fn.calls == 3
        assert sleeps == [10, 10]

    def test_gives_up_after_bound(self):
        """The last error surfaces once attempts are exhausted; no trailing sleep."""
        sleeps = []
        fn = Flaky(100)
        with pytest.raises(RuntimeError, match="failure 5"):
            retry_call(fn, attempts=5, delay=10, sleep=sleeps.append)
        assert fn.calls == 5
        assert sleeps == [10, 10, 10, 10]

    def test_give_up_on_propagates_immediately(self):
        """Non-transient errors are not retried."""
        fn = Flaky(1, exc=KeyError)
        with pytest.raises(KeyError):
            retry_call(fn, attempts=5, delay=10, give_up_on=(KeyError,), sleep=lambda s: None)
        assert fn.calls == 1

    def test_unlisted_errors_not_retried(self):
        """Only retry_on errors are retried."""
        fn = Flaky(1, exc=ValueError)
        with pytest.raises(ValueError):
            retry_call(fn, attempts=5, delay=10, retry_on=(RuntimeError,), sleep=lambda s: None)
        assert fn.calls == 1

    def test_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            retry_call(lambda: None, attempts=0, delay=1)
