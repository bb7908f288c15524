"""
Exception hierarchy for the document staging queue.
"""

from typing import Optional


class StagingError(Exception):
    """Base class for staging queue errors."""
    pass


class TransactionAbortedError(StagingError):
    """
    Raised when the store aborts a transaction because of lock contention
    or a detected deadlock. The operation can be retried from the start.
    """
    pass


class RetryExhaustedError(StagingError):
    """Raised when a retry policy gives up on a repeatedly aborted operation."""

    def __init__(self, message: str, attempts: int, elapsed: Optional[float] = None):
        super().__init__(message)
        self.attempts = attempts
        self.elapsed = elapsed


class FetchFailedError(StagingError):
    """Raised when a document content stream could not be read."""
    pass


class SchemaError(StagingError):
    """Raised when an existing table cannot be reconciled with its descriptor."""
    pass


class InvalidIdentityError(StagingError, ValueError):
    """Raised when a (host, path, document id) triple is malformed."""
    pass
