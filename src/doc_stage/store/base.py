"""
Relational store abstraction used by the staging queue.

The staging queue never talks to a database driver directly. Everything it
needs (parameterised reads and writes, explicit transactions, schema
inspection and DDL, and a way to recognise retryable aborts) goes through
the RelationalStore interface defined here, together with the small
descriptor types used to describe tables and indexes.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Tuple


# Column type names understood by store implementations
VARCHAR = "varchar"
CHAR = "char"
BLOB = "blob"


@dataclass(frozen=True)
class ColumnSpec:
    """Desired definition of a single column."""
    name: str
    type: str
    length: Optional[int] = None
    nullable: bool = False


@dataclass(frozen=True)
class IndexSpec:
    """Desired definition of a secondary index."""
    name: str
    columns: Tuple[str, ...]
    unique: bool = False

    def matches(self, other: "IndexSpec") -> bool:
        """Two indexes are equivalent when they cover the same columns in order with the same uniqueness."""
        return tuple(self.columns) == tuple(other.columns) and self.unique == other.unique


@dataclass(frozen=True)
class TableSchema:
    """Declarative description of a table and its secondary indexes."""
    name: str
    columns: Tuple[ColumnSpec, ...]
    indexes: Tuple[IndexSpec, ...] = ()

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]


@dataclass
class ObservedTable:
    """Table layout as reported by a live store."""
    name: str
    columns: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    indexes: List[IndexSpec] = field(default_factory=list)


class RelationalStore(ABC):
    """
    Abstract base class for the relational store consumed by the staging queue.

    Implementations must make the data methods (select/count/insert/update/delete)
    join the transaction opened by transaction() on the calling thread, and run
    them in a short transaction of their own when no transaction is active.
    """

    # ========================================
    # TRANSACTIONS
    # ========================================

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """
        Open a transaction for the calling thread.

        The transaction commits when the block exits normally. On any exception
        it is rolled back and the exception re-raised; driver errors that signal
        a lock conflict or deadlock are re-raised as TransactionAbortedError.
        """
        pass

    @abstractmethod
    def is_transaction_abort(self, error: BaseException) -> bool:
        """Return True if a driver error signals a retryable transaction abort."""
        pass

    @abstractmethod
    def is_duplicate_key(self, error: BaseException) -> bool:
        """Return True if a driver error is a unique constraint violation."""
        pass

    # ========================================
    # DATA
    # ========================================

    @abstractmethod
    def select(self, table: str, where: Dict[str, Any],
               columns: Optional[List[str]] = None,
               limit: Optional[int] = None,
               for_update: bool = False) -> List[Dict[str, Any]]:
        """
        Select rows matching an equality conjunction.

        Args:
            table: Table name
            where: Column -> value equality constraints
            columns: Columns to return (all columns if None)
            limit: Maximum number of rows
            for_update: Take an exclusive row lock on matching rows

        Returns:
            List of rows as dictionaries
        """
        pass

    @abstractmethod
    def count(self, table: str, where: Dict[str, Any]) -> int:
        """Count rows matching an equality conjunction."""
        pass

    @abstractmethod
    def insert(self, table: str, values: Dict[str, Any]) -> None:
        """Insert a single row."""
        pass

    @abstractmethod
    def update(self, table: str, values: Dict[str, Any], where: Dict[str, Any]) -> int:
        """Update matching rows and return the number of rows affected."""
        pass

    @abstractmethod
    def delete(self, table: str, where: Dict[str, Any]) -> int:
        """Delete matching rows and return the number of rows affected."""
        pass

    # ========================================
    # SCHEMA
    # ========================================

    @abstractmethod
    def describe_table(self, name: str) -> Optional[ObservedTable]:
        """Describe an existing table, or return None if it does not exist."""
        pass

    @abstractmethod
    def create_table(self, schema: TableSchema) -> None:
        """Create a table from its descriptor (columns only, no indexes)."""
        pass

    @abstractmethod
    def create_index(self, table: str, index: IndexSpec) -> None:
        """Create a secondary index."""
        pass

    @abstractmethod
    def drop_index(self, table: str, index_name: str) -> None:
        """Drop a secondary index by name."""
        pass

    @abstractmethod
    def drop_table(self, name: str) -> None:
        """Drop a table if it exists."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release connections held by the store."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
