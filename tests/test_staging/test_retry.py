"""
Unit tests for the transaction-retry envelope.
"""

from contextlib import contextmanager

import pytest

from doc_stage.errors import RetryExhaustedError, TransactionAbortedError
from doc_stage.staging.retry import (
    Outcome, RetryPolicy, attempt_transaction, constant_backoff,
    exponential_backoff, run_with_retry,
)


class MockStore:
    """Records transaction boundaries without a database."""

    def __init__(self):
        self.commits = 0
        self.rollbacks = 0

    @contextmanager
    def transaction(self):
        try:
            yield self
        except BaseException:
            self.rollbacks += 1
            raise
        else:
            self.commits += 1

    def is_transaction_abort(self, error):
        return isinstance(error, (TransactionAbortedError, LockTimeout))


class LockTimeout(Exception):
    """Driver error the store classifies as a transient abort."""
    pass


def failing_then(value, failures, error_factory=lambda: TransactionAbortedError("deadlock")):
    calls = []

    def work():
        calls.append(1)
        if len(calls) <= failures:
            raise error_factory()
        return value

    return work, calls


@pytest.mark.unit
class TestAttemptTransaction:

    def test_committed(self):
        store = MockStore()

        result = attempt_transaction(store, lambda: 42)

        assert result.outcome is Outcome.COMMITTED
        assert result.committed
        assert result.value == 42
        assert store.commits == 1

    def test_retryable(self):
        store = MockStore()
        work, _ = failing_then(None, failures=1)

        result = attempt_transaction(store, work)

        assert result.outcome is Outcome.RETRYABLE
        assert isinstance(result.error, TransactionAbortedError)
        assert store.rollbacks == 1
        assert store.commits == 0

    def test_store_classified_abort_is_retryable(self):
        store = MockStore()
        work, _ = failing_then(None, failures=1, error_factory=lambda: LockTimeout("lock wait"))

        assert attempt_transaction(store, work).outcome is Outcome.RETRYABLE

    def test_fatal(self):
        store = MockStore()
        error = ValueError("constraint violated")

        def work():
            raise error

        result = attempt_transaction(store, work)

        assert result.outcome is Outcome.FATAL
        assert result.error is error
        assert store.rollbacks == 1

    def test_keyboard_interrupt_propagates(self):
        """Test that interrupts are not turned into results."""
        store = MockStore()

        def work():
            raise KeyboardInterrupt()

        with pytest.raises(KeyboardInterrupt):
            attempt_transaction(store, work)
        assert store.rollbacks == 1


@pytest.mark.unit
class TestRunWithRetry:

    def test_success_first_try(self):
        sleeps = []
        store = MockStore()

        assert run_with_retry(store, lambda: "ok", RetryPolicy(sleep=sleeps.append)) == "ok"
        assert sleeps == []

    def test_retries_until_committed(self):
        """Test that aborted attempts are re-run from scratch until one commits."""
        sleeps = []
        store = MockStore()
        work, calls = failing_then("done", failures=3)
        policy = RetryPolicy(backoff=constant_backoff(0.5), sleep=sleeps.append)

        assert run_with_retry(store, work, policy) == "done"
        assert len(calls) == 4
        assert sleeps == [0.5, 0.5, 0.5]
        assert store.rollbacks == 3
        assert store.commits == 1

    def test_unbounded_by_default(self):
        sleeps = []
        work, calls = failing_then("done", failures=50)

        run_with_retry(MockStore(), work, RetryPolicy(backoff=constant_backoff(0), sleep=sleeps.append))

        assert len(calls) == 51

    def test_fatal_error_raised_without_retry(self):
        sleeps = []
        work, calls = failing_then(None, failures=5, error_factory=lambda: KeyError("boom"))

        with pytest.raises(KeyError):
            run_with_retry(MockStore(), work, RetryPolicy(sleep=sleeps.append))

        assert len(calls) == 1
        assert sleeps == []

    def test_max_attempts(self):
        sleeps = []
        work, calls = failing_then(None, failures=10)
        policy = RetryPolicy(max_attempts=4, backoff=constant_backoff(0), sleep=sleeps.append)

        with pytest.raises(RetryExhaustedError) as exc_info:
            run_with_retry(MockStore(), work, policy, operation="stage doc1")

        assert len(calls) == 4
        assert len(sleeps) == 3
        assert exc_info.value.attempts == 4
        assert isinstance(exc_info.value.__cause__, TransactionAbortedError)
        assert "stage doc1" in str(exc_info.value)

    def test_max_elapsed(self):
        """Test that an elapsed-time bound of zero gives up after the first abort."""
        sleeps = []
        work, calls = failing_then(None, failures=10)

        with pytest.raises(RetryExhaustedError):
            run_with_retry(MockStore(), work, RetryPolicy(max_elapsed=0, sleep=sleeps.append))

        assert len(calls) == 1
        assert sleeps == []

    def test_backoff_receives_attempt_number(self):
        seen = []
        work, _ = failing_then("ok", failures=3)

        def backoff(attempt):
            seen.append(attempt)
            return 0

        run_with_retry(MockStore(), work, RetryPolicy(backoff=backoff, sleep=lambda s: None))

        assert seen == [1, 2, 3]


@pytest.mark.unit
class TestRetryPolicy:

    def test_invalid_max_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_invalid_max_elapsed(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_elapsed=-1)

    def test_should_retry(self):
        policy = RetryPolicy(max_attempts=2, max_elapsed=10)

        assert policy.should_retry(1, 0.0)
        assert not policy.should_retry(2, 0.0)
        assert not policy.should_retry(1, 10.0)

    def test_exponential_backoff_without_jitter(self):
        backoff = exponential_backoff(initial=0.1, maximum=1.0, multiplier=2.0, jitter=False)

        assert [backoff(n) for n in range(1, 6)] == pytest.approx([0.1, 0.2, 0.4, 0.8, 1.0])

    def test_exponential_backoff_jitter_bounded(self):
        backoff = exponential_backoff(initial=0.1, maximum=1.0, jitter=True)

        for attempt in range(1, 20):
            assert 0 <= backoff(attempt) <= 1.0
