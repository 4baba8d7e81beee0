"""Bounded polling strategies for agent wait operations.

Two budgets are supported:
- TimeoutRetryStrategy: keep trying until a wall-clock timeout elapses
- AttemptRetryStrategy: keep trying for a fixed number of attempts

Each strategy calls a check function that returns True when the awaited
condition holds. Exceptions listed as retryable count as a failed attempt;
anything else propagates immediately.

Usage:
    strategy = TimeoutRetryStrategy(timeout=timedelta(minutes=10),
                                    delay=timedelta(milliseconds=500))
    strategy.try_(agent_is_reachable)
"""

import logging
import time
from collections.abc import Callable
from datetime import timedelta

logger = logging.getLogger(__name__)


class RetryError(Exception):
    """Raised when a retry budget is exhausted."""

    pass


def _safe_error_message(exception: BaseException) -> str:
    """Truncate error text for log lines."""
    error_str = str(exception)
    if len(error_str) > 200:
        error_str = error_str[:200] + "..."
    return error_str


class _RetryStrategy:
    def __init__(
        self,
        delay: timedelta,
        retryable: tuple[type[Exception], ...] = (Exception,),
        sleep: Callable[[float], None] = time.sleep,
        name: str = "operation",
    ):
        if delay < timedelta(0):
            raise ValueError("delay cannot be negative")
        self.delay = delay
        self.retryable = retryable
        self.sleep = sleep
        self.name = name
        self.attempts = 0

    def _attempt(self, check: Callable[[], bool]) -> tuple[bool, Exception | None]:
        self.attempts += 1
        try:
            return check(), None
        except self.retryable as e:
            logger.debug(
                f"{self.name} attempt {self.attempts} failed: {_safe_error_message(e)}"
            )
            return False, e


class TimeoutRetryStrategy(_RetryStrategy):
    """Retry until the check passes or the timeout elapses."""

    def __init__(
        self,
        timeout: timedelta,
        delay: timedelta,
        retryable: tuple[type[Exception], ...] = (Exception,),
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        name: str = "operation",
    ):
        super().__init__(delay, retryable, sleep, name)
        if timeout < timedelta(0):
            raise ValueError("timeout cannot be negative")
        self.timeout = timeout
        self.clock = clock

    def try_(self, check: Callable[[], bool]) -> None:
        """
        Run check until it returns True.

        Raises:
            RetryError: If the timeout elapses first; chained to the last error
        """
        deadline = self.clock() + self.timeout.total_seconds()
        last_error: Exception | None = None

        while True:
            done, error = self._attempt(check)
            if done:
                return
            last_error = error or last_error

            if self.clock() + self.delay.total_seconds() > deadline:
                break
            self.sleep(self.delay.total_seconds())

        message = f"Timed out after {self.timeout.total_seconds():g}s waiting for {self.name}"
        if last_error:
            message += f": {last_error}"
        raise RetryError(message) from last_error


class AttemptRetryStrategy(_RetryStrategy):
    """Retry the check at most max_attempts times."""

    def __init__(
        self,
        max_attempts: int,
        delay: timedelta,
        retryable: tuple[type[Exception], ...] = (Exception,),
        sleep: Callable[[float], None] = time.sleep,
        name: str = "operation",
    ):
        super().__init__(delay, retryable, sleep, name)
        if max_attempts < 0:
            raise ValueError("max_attempts cannot be negative")
        self.max_attempts = max_attempts

    def try_(self, check: Callable[[], bool]) -> None:
        """
        Run check until it returns True or attempts run out.

        A zero budget still performs one check so the current state decides
        the outcome.

        Raises:
            RetryError: If no attempt passes; chained to the last error
        """
        budget = max(self.max_attempts, 1)
        last_error: Exception | None = None

        for attempt in range(1, budget + 1):
            done, error = self._attempt(check)
            if done:
                if attempt > 1:
                    logger.info(f"{self.name} succeeded on attempt {attempt}/{budget}")
                return
            last_error = error or last_error
            if attempt < budget:
                self.sleep(self.delay.total_seconds())

        message = f"{self.name} did not succeed after {budget} attempt(s)"
        if last_error:
            message += f": {last_error}"
        raise RetryError(message) from last_error


__all__ = ["AttemptRetryStrategy", "RetryError", "TimeoutRetryStrategy"]
