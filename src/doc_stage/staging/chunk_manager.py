"""
Persistent staging queue between document ingestion and batch delivery.

Producers stage document content or tombstones keyed by
(scope host, scope path, document id). A consumer reads bounded chunks for a
scope, delivers them to the external index, and deletes them once delivery
has succeeded. Every mutation runs in its own transaction and is retried
when the store reports a lock conflict or deadlock.
"""

import logging
from typing import Callable, Iterable, List, Optional

from ..errors import TransactionAbortedError
from ..store.base import RelationalStore
from .models import (
    DocumentRecord, DELETE_MARKER, UPSERT_MARKER,
    identity_clause, scope_clause, validate_identity,
)
from .retry import RetryPolicy, run_with_retry
from .schema import (
    DEFAULT_TABLE_NAME, MigrationAction, SchemaManager, staging_table_schema,
    UID_FIELD, ON_DELETE_FIELD, DATA_FIELD,
)
from .spool import Content, DEFAULT_SPOOL_THRESHOLD, spool_stream

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 100


class DocumentChunkManager:
    """Staging table manager: upserts, tombstones, and chunked drain."""

    def __init__(self, store: RelationalStore,
                 table_name: str = DEFAULT_TABLE_NAME,
                 retry_policy: Optional[RetryPolicy] = None,
                 spool_threshold: int = DEFAULT_SPOOL_THRESHOLD,
                 chunk_size: int = DEFAULT_CHUNK_SIZE):
        """
        Initialize the chunk manager.

        Args:
            store: Relational store holding the staging table
            table_name: Name of the staging table
            retry_policy: Policy for retrying aborted transactions (unbounded if None)
            spool_threshold: Bytes of content buffered in memory before spilling to disk
            chunk_size: Default number of records per chunk for drain()
        """
        self.store = store
        self.table_name = table_name
        self.retry_policy = retry_policy or RetryPolicy()
        self.spool_threshold = spool_threshold
        self.chunk_size = chunk_size
        self.schema = SchemaManager(store, staging_table_schema(table_name))

    # ========================================
    # SCHEMA
    # ========================================

    def install(self) -> List[MigrationAction]:
        """Create the staging table and its index, or reconcile an existing one."""
        return self.schema.install()

    def uninstall(self) -> None:
        """Drop the staging table. Anything still staged is lost."""
        self.schema.uninstall()

    # ========================================
    # PRODUCER SIDE
    # ========================================

    def stage_tombstone(self, scope_host: str, scope_path: str, document_id: str) -> None:
        """
        Mark a document for removal from the external index.

        Args:
            scope_host: Host of the producing connection
            scope_path: Path of the producing connection
            document_id: Document identifier
        """
        validate_identity(scope_host, scope_path, document_id)
        values = {ON_DELETE_FIELD: DELETE_MARKER, DATA_FIELD: None}

        run_with_retry(
            self.store,
            lambda: self._write_row(scope_host, scope_path, document_id, values),
            self.retry_policy,
            operation=f"tombstone {document_id}",
        )
        logger.debug(f"Staged tombstone for {document_id} in {scope_host}{scope_path}")

    def stage_document(self, scope_host: str, scope_path: str, document_id: str,
                       content: Content) -> None:
        """
        Add or replace a document's content in the staging table.

        The content is read to the end before any transaction starts. If reading
        fails nothing is written. Spooling bounds memory only while reading from
        the producer; the payload is loaded into memory once to be written, and
        that copy is shared by all retry attempts.

        Args:
            scope_host: Host of the producing connection
            scope_path: Path of the producing connection
            document_id: Document identifier
            content: bytes, a binary file-like object, or an iterable of bytes chunks

        Raises:
            FetchFailedError: If the content could not be read
        """
        validate_identity(scope_host, scope_path, document_id)

        with spool_stream(content, self.spool_threshold) as blob:
            # Loaded once and reused by every attempt
            values = {ON_DELETE_FIELD: UPSERT_MARKER, DATA_FIELD: blob.read_bytes()}

            run_with_retry(
                self.store,
                lambda: self._write_row(scope_host, scope_path, document_id, values),
                self.retry_policy,
                operation=f"stage {document_id}",
            )

        logger.debug(f"Staged {blob.size} bytes for {document_id} in {scope_host}{scope_path}")

    def _write_row(self, scope_host: str, scope_path: str, document_id: str,
                   values: dict) -> bool:
        """
        Update the identity's row in place, or insert it. Must run inside a transaction.

        Returns:
            True if an existing row was updated, False if a new row was inserted
        """
        where = identity_clause(scope_host, scope_path, document_id)

        # Lock the row so concurrent writers of the same identity serialize
        existing = self.store.select(self.table_name, where, columns=[UID_FIELD], for_update=True)

        if existing:
            self.store.update(self.table_name, values, where)
            return True

        row = dict(values)
        row.update(where)
        try:
            self.store.insert(self.table_name, row)
        except Exception as e:
            # No row existed to lock, so a concurrent writer inserted first
            if self.store.is_duplicate_key(e):
                raise TransactionAbortedError(f"Concurrent insert of {document_id}") from e
            raise
        return False

    # ========================================
    # CONSUMER SIDE
    # ========================================

    def read_chunk(self, scope_host: str, scope_path: str, max_count: int) -> List[DocumentRecord]:
        """
        Read up to max_count staged documents for a scope.

        No locks are taken and nothing is modified; order is whatever the store
        returns.

        Args:
            scope_host: Host of the producing connection
            scope_path: Path of the producing connection
            max_count: Maximum number of records to return

        Returns:
            List of DocumentRecord (empty when nothing is staged)
        """
        if max_count < 0:
            raise ValueError("max_count must not be negative")
        validate_identity(scope_host, scope_path)
        if max_count == 0:
            return []

        rows = self.store.select(self.table_name, scope_clause(scope_host, scope_path),
                                 limit=max_count)
        return [DocumentRecord.from_db_row(row) for row in rows]

    def delete_chunk(self, records: Iterable[DocumentRecord]) -> int:
        """
        Remove delivered records from the staging table.

        The whole batch is deleted in one transaction; if it fails nothing is
        deleted. Records that are already gone are ignored.

        Args:
            records: Records previously returned by read_chunk

        Returns:
            Number of rows deleted
        """
        records = list(records)
        if not records:
            return 0

        def work():
            # TODO: collapse into a single multi-key DELETE once the store interface supports IN clauses
            deleted = 0
            for record in records:
                deleted += self.store.delete(self.table_name, identity_clause(*record.identity))
            return deleted

        deleted = run_with_retry(self.store, work, self.retry_policy,
                                 operation=f"delete chunk of {len(records)}")
        logger.debug(f"Deleted {deleted} of {len(records)} staged records")
        return deleted

    def count_pending(self, scope_host: str, scope_path: str) -> int:
        """Number of staged records waiting for delivery in a scope."""
        validate_identity(scope_host, scope_path)
        return self.store.count(self.table_name, scope_clause(scope_host, scope_path))

    def drain(self, scope_host: str, scope_path: str,
              deliver: Callable[[List[DocumentRecord]], None],
              chunk_size: Optional[int] = None,
              max_chunks: Optional[int] = None) -> int:
        """
        Deliver staged records chunk by chunk until the scope is empty.

        Each chunk is deleted only after deliver() returns. If deliver() raises,
        the current chunk stays staged and the exception propagates.

        Args:
            scope_host: Host of the producing connection
            scope_path: Path of the producing connection
            deliver: Callable sending one chunk to the external index
            chunk_size: Records per chunk (the manager default if None)
            max_chunks: Stop after this many chunks (unlimited if None)

        Returns:
            Number of records delivered and deleted
        """
        if chunk_size is None:
            chunk_size = self.chunk_size
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")

        delivered = 0
        chunks = 0
        while max_chunks is None or chunks < max_chunks:
            records = self.read_chunk(scope_host, scope_path, chunk_size)
            if not records:
                break

            deliver(records)
            self.delete_chunk(records)
            delivered += len(records)
            chunks += 1

        logger.info(f"Drained {delivered} records in {chunks} chunks from {scope_host}{scope_path}")
        return delivered
