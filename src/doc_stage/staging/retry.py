"""
Transaction-retry envelope for mutating staging operations.

Each attempt runs the caller's work inside a store transaction and reports
the outcome as a TransactionResult instead of raising. run_with_retry()
dispatches on that outcome. Transient aborts (lock conflicts, deadlocks) are
retried from the start after a backoff chosen by the RetryPolicy.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from ..errors import RetryExhaustedError, TransactionAbortedError
from ..store.base import RelationalStore

logger = logging.getLogger(__name__)


class Outcome(Enum):
    COMMITTED = "committed"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass
class TransactionResult:
    """Outcome of a single transactional attempt."""
    outcome: Outcome
    value: Any = None
    error: Optional[Exception] = None

    @property
    def committed(self) -> bool:
        return self.outcome is Outcome.COMMITTED


def exponential_backoff(initial: float = 0.05, maximum: float = 2.0,
                        multiplier: float = 2.0, jitter: bool = True) -> Callable[[int], float]:
    """
    Build an exponential backoff strategy.

    Args:
        initial: Delay after the first aborted attempt, in seconds
        maximum: Upper bound on any single delay
        multiplier: Growth factor per attempt
        jitter: Pick uniformly between zero and the computed delay

    Returns:
        Function mapping the 1-based attempt number to a delay in seconds
    """
    def backoff(attempt: int) -> float:
        delay = min(maximum, initial * (multiplier ** max(attempt - 1, 0)))
        if jitter:
            delay = random.uniform(0, delay)
        return delay

    return backoff


def constant_backoff(seconds: float) -> Callable[[int], float]:
    """Backoff strategy that always waits the same time."""
    return lambda attempt: seconds


@dataclass
class RetryPolicy:
    """
    When and how long to wait before retrying an aborted transaction.

    With no bounds set the policy retries indefinitely.
    """
    max_attempts: Optional[int] = None
    max_elapsed: Optional[float] = None
    backoff: Callable[[int], float] = field(default_factory=exponential_backoff)
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self):
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.max_elapsed is not None and self.max_elapsed < 0:
            raise ValueError("max_elapsed must not be negative")

    def should_retry(self, attempts: int, elapsed: float) -> bool:
        """Whether another attempt is allowed after `attempts` aborted ones."""
        if self.max_attempts is not None and attempts >= self.max_attempts:
            return False
        if self.max_elapsed is not None and elapsed >= self.max_elapsed:
            return False
        return True


def attempt_transaction(store: RelationalStore, work: Callable[[], Any]) -> TransactionResult:
    """
    Run work once inside a store transaction.

    The store rolls the transaction back on any failure. Interrupts and other
    BaseExceptions are not captured.
    """
    try:
        with store.transaction():
            value = work()
    except TransactionAbortedError as e:
        return TransactionResult(Outcome.RETRYABLE, error=e)
    except Exception as e:
        if store.is_transaction_abort(e):
            return TransactionResult(Outcome.RETRYABLE, error=e)
        return TransactionResult(Outcome.FATAL, error=e)
    return TransactionResult(Outcome.COMMITTED, value=value)


def run_with_retry(store: RelationalStore, work: Callable[[], Any],
                   policy: Optional[RetryPolicy] = None,
                   operation: str = "transaction") -> Any:
    """
    Run work transactionally, retrying it while the store reports transient aborts.

    Args:
        store: Store providing the transaction
        work: Callable performing the whole operation; re-run from scratch on retry
        policy: Retry policy (unbounded retries if None)
        operation: Name used in log messages

    Returns:
        Whatever work returned on the committed attempt

    Raises:
        RetryExhaustedError: If the policy stops retrying
        Exception: Any non-transient error raised by work or the store
    """
    policy = policy or RetryPolicy()
    started = time.monotonic()
    attempts = 0

    while True:
        attempts += 1
        result = attempt_transaction(store, work)

        if result.outcome is Outcome.COMMITTED:
            if attempts > 1:
                logger.debug(f"{operation} committed after {attempts} attempts")
            return result.value

        if result.outcome is Outcome.FATAL:
            raise result.error

        elapsed = time.monotonic() - started
        if not policy.should_retry(attempts, elapsed):
            logger.error(f"{operation} aborted {attempts} times in {elapsed:.2f}s, giving up")
            raise RetryExhaustedError(
                f"{operation} still aborting after {attempts} attempts",
                attempts=attempts,
                elapsed=elapsed,
            ) from result.error

        delay = policy.backoff(attempts)
        logger.warning(f"{operation} aborted ({result.error}), retrying in {delay:.3f}s")
        policy.sleep(delay)
