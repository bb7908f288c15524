"""
Document staging queue.

Documents headed for an external search index are staged in a relational
table keyed by (scope host, scope path, document id), then drained in
bounded chunks by a delivery process.

Key Features:
- One row per identity; later writes overwrite earlier ones in place
- Tombstones for documents to be removed from the index
- Row locking on writes, transactional chunk deletion
- Automatic retry of transactions aborted by lock conflicts or deadlocks
- Declarative schema with idempotent install
"""

from .chunk_manager import DocumentChunkManager
from .models import DocumentRecord
from .retry import RetryPolicy, TransactionResult, Outcome, exponential_backoff, constant_backoff
from .schema import SchemaManager, plan_migration, staging_table_schema
from .spool import SpooledBlob, spool_stream

__all__ = [
    'DocumentChunkManager',
    'DocumentRecord',
    'RetryPolicy',
    'TransactionResult',
    'Outcome',
    'exponential_backoff',
    'constant_backoff',
    'SchemaManager',
    'plan_migration',
    'staging_table_schema',
    'SpooledBlob',
    'spool_stream',
]
