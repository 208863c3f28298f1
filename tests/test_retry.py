import pytest

from token_broker.utils.exceptions import AcquisitionCancelledError, InvalidGrantError, TransportError
from token_broker.utils.retry import CancellationToken, RetryPolicy, with_retry


class Flaky:
    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or TransportError("connection reset")
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


def test_retries_with_exponential_backoff(no_sleep):
    func = Flaky(failures=2)

    assert with_retry(func, RetryPolicy(), sleep=no_sleep) == "ok"
    assert func.calls == 3
    assert no_sleep.delays == [0.5, 1.0]


def test_gives_up_after_max_attempts(no_sleep):
    func = Flaky(failures=5)

    with pytest.raises(TransportError):
        with_retry(func, RetryPolicy(max_attempts=3), sleep=no_sleep)
    assert func.calls == 3


def test_delay_is_capped(no_sleep):
    func = Flaky(failures=4)
    policy = RetryPolicy(max_attempts=5, initial_delay=2.0, backoff_factor=3.0, max_delay=5.0)

    with_retry(func, policy, sleep=no_sleep)

    assert no_sleep.delays == [2.0, 5.0, 5.0, 5.0]


def test_non_retryable_error_propagates_immediately(no_sleep):
    func = Flaky(failures=1, error=InvalidGrantError("invalid_grant"))

    with pytest.raises(InvalidGrantError):
        with_retry(func, RetryPolicy(), sleep=no_sleep)
    assert func.calls == 1
    assert no_sleep.delays == []


def test_cancellation_during_backoff():
    token = CancellationToken()

    def cancel_on_sleep(seconds, cancellation):
        cancellation.cancel()
        return True

    with pytest.raises(AcquisitionCancelledError):
        with_retry(Flaky(failures=1), RetryPolicy(), cancellation=token, sleep=cancel_on_sleep)
    assert token.is_cancelled


def test_cancelled_before_first_attempt(no_sleep):
    token = CancellationToken()
    token.cancel()
    func = Flaky(failures=0)

    with pytest.raises(AcquisitionCancelledError):
        with_retry(func, RetryPolicy(), cancellation=token, sleep=no_sleep)
    assert func.calls == 0


def test_cancellation_token_wait_returns_early():
    token = CancellationToken()
    token.cancel()

    assert token.wait(30) is True
