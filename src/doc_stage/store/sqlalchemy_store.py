"""
SQLAlchemy Core implementation of the relational store.

Works against any SQLAlchemy-supported database. PostgreSQL and MySQL get
real row locks from SELECT ... FOR UPDATE. SQLite has no row locks, so
write transactions are opened with BEGIN IMMEDIATE, which takes the
database write lock up front and serializes writers the same way.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Any, List, Optional, Iterator

import sqlalchemy
from sqlalchemy import (
    CHAR, Column, Index, LargeBinary, MetaData, String, Table,
    and_, column, event, func, inspect, literal_column, select,
)
from sqlalchemy.engine import Connection
from sqlalchemy.exc import DBAPIError, IntegrityError

from ..errors import TransactionAbortedError
from .base import (
    RelationalStore, TableSchema, ColumnSpec, IndexSpec, ObservedTable,
    VARCHAR, CHAR as CHAR_TYPE, BLOB,
)

logger = logging.getLogger(__name__)

# SQLSTATE serialization_failure / deadlock_detected
POSTGRES_ABORT_STATES = {"40001", "40P01"}
# ER_LOCK_WAIT_TIMEOUT / ER_LOCK_DEADLOCK
MYSQL_ABORT_CODES = {1205, 1213}
SQLITE_ABORT_MESSAGES = ("database is locked", "database table is locked", "deadlock")

# SQLSTATE unique_violation, ER_DUP_ENTRY
POSTGRES_UNIQUE_VIOLATION = "23505"
MYSQL_DUPLICATE_ENTRY = 1062
SQLITE_UNIQUE_MESSAGE = "UNIQUE constraint failed"

# Connection info key marking a connection as opening a write transaction
_WRITE_TRANSACTION = "doc_stage_write_transaction"


class SQLAlchemyStore(RelationalStore):
    """Relational store backed by a SQLAlchemy engine."""

    def __init__(self, url: str, echo: bool = False, **engine_kwargs):
        """
        Initialize the store.

        Args:
            url: SQLAlchemy database URL
            echo: Log all SQL statements
            **engine_kwargs: Extra arguments passed to sqlalchemy.create_engine
        """
        self.engine = sqlalchemy.create_engine(url, echo=echo, **engine_kwargs)
        self._local = threading.local()

        if self.dialect == "sqlite":
            self._install_sqlite_locking()

        logger.debug(f"Created SQLAlchemy store for {self.safe_url}")

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @property
    def safe_url(self) -> str:
        """Database URL with the password masked."""
        return self.engine.url.render_as_string(hide_password=True)

    def _install_sqlite_locking(self) -> None:
        # Take over transaction control from pysqlite so BEGIN can be chosen per transaction
        @event.listens_for(self.engine, "connect")
        def _disable_driver_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(self.engine, "begin")
        def _begin(conn):
            if conn.info.get(_WRITE_TRANSACTION):
                conn.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                conn.exec_driver_sql("BEGIN")

    # ========================================
    # TRANSACTIONS
    # ========================================

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        if getattr(self._local, "connection", None) is not None:
            raise RuntimeError("A transaction is already active on this thread")

        conn = self.engine.connect()
        conn.info[_WRITE_TRANSACTION] = True
        try:
            trans = conn.begin()
            self._local.connection = conn
            try:
                yield conn
                trans.commit()
            except BaseException:
                if trans.is_active:
                    trans.rollback()
                raise
        except DBAPIError as e:
            if self.is_transaction_abort(e):
                raise TransactionAbortedError(f"Transaction aborted: {e.orig}") from e
            raise
        finally:
            self._local.connection = None
            conn.info.pop(_WRITE_TRANSACTION, None)
            conn.close()

    def is_transaction_abort(self, error: BaseException) -> bool:
        if isinstance(error, TransactionAbortedError):
            return True
        if not isinstance(error, DBAPIError):
            return False

        orig = error.orig
        state = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        if state in POSTGRES_ABORT_STATES:
            return True

        args = getattr(orig, "args", ())
        if args and isinstance(args[0], int) and args[0] in MYSQL_ABORT_CODES:
            return True

        if self.dialect == "sqlite":
            message = str(orig).lower()
            return any(m in message for m in SQLITE_ABORT_MESSAGES)

        return False

    def is_duplicate_key(self, error: BaseException) -> bool:
        if not isinstance(error, IntegrityError):
            return False

        orig = error.orig
        state = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        if state == POSTGRES_UNIQUE_VIOLATION:
            return True

        args = getattr(orig, "args", ())
        if args and isinstance(args[0], int) and args[0] == MYSQL_DUPLICATE_ENTRY:
            return True

        if self.dialect == "sqlite":
            return str(orig).startswith(SQLITE_UNIQUE_MESSAGE)

        return False

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        """Connection of the active transaction, or a short-lived one."""
        conn = getattr(self._local, "connection", None)
        if conn is not None:
            yield conn
        else:
            with self.engine.begin() as conn:
                yield conn

    # ========================================
    # DATA
    # ========================================

    @staticmethod
    def _table(name: str, *column_names: str):
        names = list(dict.fromkeys(column_names))
        return sqlalchemy.table(name, *[column(c) for c in names])

    @staticmethod
    def _conjunction(tbl, where: Dict[str, Any]):
        return and_(*[tbl.c[key] == value for key, value in where.items()])

    def select(self, table: str, where: Dict[str, Any],
               columns: Optional[List[str]] = None,
               limit: Optional[int] = None,
               for_update: bool = False) -> List[Dict[str, Any]]:
        tbl = self._table(table, *where.keys(), *(columns or []))
        if columns:
            stmt = select(*[tbl.c[c] for c in columns])
        else:
            stmt = select(literal_column("*")).select_from(tbl)
        if where:
            stmt = stmt.where(self._conjunction(tbl, where))
        if limit is not None:
            stmt = stmt.limit(limit)
        if for_update:
            stmt = stmt.with_for_update()

        with self._connection() as conn:
            result = conn.execute(stmt)
            return [dict(row._mapping) for row in result]

    def count(self, table: str, where: Dict[str, Any]) -> int:
        tbl = self._table(table, *where.keys())
        stmt = select(func.count()).select_from(tbl)
        if where:
            stmt = stmt.where(self._conjunction(tbl, where))

        with self._connection() as conn:
            return conn.execute(stmt).scalar_one()

    def insert(self, table: str, values: Dict[str, Any]) -> None:
        tbl = self._table(table, *values.keys())
        with self._connection() as conn:
            conn.execute(sqlalchemy.insert(tbl).values(**values))

    def update(self, table: str, values: Dict[str, Any], where: Dict[str, Any]) -> int:
        tbl = self._table(table, *values.keys(), *where.keys())
        stmt = sqlalchemy.update(tbl).values(**values)
        if where:
            stmt = stmt.where(self._conjunction(tbl, where))

        with self._connection() as conn:
            return conn.execute(stmt).rowcount

    def delete(self, table: str, where: Dict[str, Any]) -> int:
        tbl = self._table(table, *where.keys())
        stmt = sqlalchemy.delete(tbl)
        if where:
            stmt = stmt.where(self._conjunction(tbl, where))

        with self._connection() as conn:
            return conn.execute(stmt).rowcount

    # ========================================
    # SCHEMA
    # ========================================

    def describe_table(self, name: str) -> Optional[ObservedTable]:
        inspector = inspect(self.engine)
        if not inspector.has_table(name):
            return None

        columns = {c["name"]: c for c in inspector.get_columns(name)}
        indexes = [
            IndexSpec(
                name=ix["name"],
                columns=tuple(c for c in ix["column_names"] if c),
                unique=bool(ix.get("unique")),
            )
            for ix in inspector.get_indexes(name)
        ]
        return ObservedTable(name=name, columns=columns, indexes=indexes)

    @staticmethod
    def _column_type(spec: ColumnSpec):
        if spec.type == VARCHAR:
            return String(spec.length)
        if spec.type == CHAR_TYPE:
            return CHAR(spec.length)
        if spec.type == BLOB:
            return LargeBinary()
        raise ValueError(f"Unsupported column type for {spec.name}: {spec.type}")

    def create_table(self, schema: TableSchema) -> None:
        metadata = MetaData()
        Table(
            schema.name, metadata,
            *[Column(c.name, self._column_type(c), nullable=c.nullable) for c in schema.columns]
        )
        with self.engine.begin() as conn:
            metadata.create_all(conn)

    def create_index(self, table: str, index: IndexSpec) -> None:
        tbl = Table(table, MetaData(), *[Column(c, String) for c in index.columns])
        idx = Index(index.name, *[tbl.c[c] for c in index.columns], unique=index.unique)
        with self.engine.begin() as conn:
            idx.create(conn)

    def drop_index(self, table: str, index_name: str) -> None:
        quote = self.engine.dialect.identifier_preparer.quote
        if self.dialect in ("mysql", "mariadb"):
            ddl = f"DROP INDEX {quote(index_name)} ON {quote(table)}"
        else:
            ddl = f"DROP INDEX {quote(index_name)}"
        with self.engine.begin() as conn:
            conn.exec_driver_sql(ddl)

    def drop_table(self, name: str) -> None:
        with self.engine.begin() as conn:
            Table(name, MetaData()).drop(conn, checkfirst=True)

    def close(self) -> None:
        self.engine.dispose()
