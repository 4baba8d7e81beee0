"""Unit tests for bounded polling strategies."""

from datetime import timedelta

import pytest

from microdeploy.retry import AttemptRetryStrategy, RetryError, TimeoutRetryStrategy


class FakeClock:
    """Monotonic clock advanced by the fake sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class TestAttemptRetryStrategy:
    """Test attempt-bounded retries."""

    def test_returns_on_first_success(self):
        clock = FakeClock()
        strategy = AttemptRetryStrategy(5, timedelta(seconds=1), sleep=clock.sleep)

        strategy.try_(lambda: True)

        assert strategy.attempts == 1
        assert clock.sleeps == []

    def test_retries_until_done(self):
        clock = FakeClock()
        results = iter([False, False, True])
        strategy = AttemptRetryStrategy(5, timedelta(seconds=1), sleep=clock.sleep)

        strategy.try_(lambda: next(results))

        assert strategy.attempts == 3
        assert clock.sleeps == [1.0, 1.0]

    def test_exhausted_budget_raises(self):
        clock = FakeClock()
        strategy = AttemptRetryStrategy(3, timedelta(seconds=1), sleep=clock.sleep)

        with pytest.raises(RetryError, match="after 3 attempt"):
            strategy.try_(lambda: False)

        assert strategy.attempts == 3
        assert clock.sleeps == [1.0, 1.0]

    def test_zero_budget_checks_once(self):
        clock = FakeClock()
        strategy = AttemptRetryStrategy(0, timedelta(seconds=1), sleep=clock.sleep)

        strategy.try_(lambda: True)
        assert strategy.attempts == 1

        with pytest.raises(RetryError):
            AttemptRetryStrategy(0, timedelta(seconds=1), sleep=clock.sleep).try_(lambda: False)

    def test_retryable_error_chained(self):
        clock = FakeClock()
        strategy = AttemptRetryStrategy(
            2, timedelta(seconds=1), retryable=(ConnectionError,), sleep=clock.sleep
        )

        def check():
            raise ConnectionError("refused")

        with pytest.raises(RetryError, match="refused") as exc_info:
            strategy.try_(check)

        assert isinstance(exc_info.value.__cause__, ConnectionError)

    def test_non_retryable_error_propagates(self):
        clock = FakeClock()
        strategy = AttemptRetryStrategy(
            5, timedelta(seconds=1), retryable=(ConnectionError,), sleep=clock.sleep
        )

        def check():
            raise KeyError("bad")

        with pytest.raises(KeyError):
            strategy.try_(check)

        assert strategy.attempts == 1

    def test_negative_values_rejected(self):
        with pytest.raises(ValueError):
            AttemptRetryStrategy(-1, timedelta(seconds=1))
        with pytest.raises(ValueError):
            AttemptRetryStrategy(1, timedelta(seconds=-1))


class TestTimeoutRetryStrategy:
    """Test timeout-bounded retries."""

    def test_returns_on_success(self):
        clock = FakeClock()
        strategy = TimeoutRetryStrategy(
            timedelta(seconds=10), timedelta(seconds=1), sleep=clock.sleep, clock=clock.time
        )

        strategy.try_(lambda: True)

        assert strategy.attempts == 1

    def test_gives_up_at_timeout(self):
        clock = FakeClock()
        strategy = TimeoutRetryStrategy(
            timedelta(seconds=2),
            timedelta(milliseconds=500),
            sleep=clock.sleep,
            clock=clock.time,
        )

        with pytest.raises(RetryError, match="Timed out after 2s"):
            strategy.try_(lambda: False)

        assert strategy.attempts == 5
        assert clock.now == pytest.approx(2.0)

    def test_last_error_in_message(self):
        clock = FakeClock()
        strategy = TimeoutRetryStrategy(
            timedelta(seconds=1),
            timedelta(milliseconds=500),
            retryable=(OSError,),
            sleep=clock.sleep,
            clock=clock.time,
        )

        def check():
            raise OSError("no route to host")

        with pytest.raises(RetryError, match="no route to host"):
            strategy.try_(check)

    def test_zero_timeout_checks_once(self):
        clock = FakeClock()
        strategy = TimeoutRetryStrategy(
            timedelta(0), timedelta(milliseconds=500), sleep=clock.sleep, clock=clock.time
        )

        with pytest.raises(RetryError):
            strategy.try_(lambda: False)

        assert strategy.attempts == 1
