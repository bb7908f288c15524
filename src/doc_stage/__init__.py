"""
doc-stage: a persistent staging queue between document ingestion and
batch delivery to a search index.
"""

from .config import Config
from .errors import (
    StagingError, TransactionAbortedError, RetryExhaustedError,
    FetchFailedError, SchemaError, InvalidIdentityError,
)
from .staging import DocumentChunkManager, DocumentRecord, RetryPolicy
from .store import RelationalStore, SQLAlchemyStore

__version__ = "0.1.0"

__all__ = [
    'Config',
    'DocumentChunkManager',
    'DocumentRecord',
    'RetryPolicy',
    'RelationalStore',
    'SQLAlchemyStore',
    'StagingError',
    'TransactionAbortedError',
    'RetryExhaustedError',
    'FetchFailedError',
    'SchemaError',
    'InvalidIdentityError',
]
