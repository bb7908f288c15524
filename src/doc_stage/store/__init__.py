"""
Relational store interface and its SQLAlchemy implementation.
"""

from .base import (
    RelationalStore, TableSchema, ColumnSpec, IndexSpec, ObservedTable,
    VARCHAR, CHAR, BLOB,
)
from .sqlalchemy_store import SQLAlchemyStore

__all__ = [
    'RelationalStore',
    'SQLAlchemyStore',
    'TableSchema',
    'ColumnSpec',
    'IndexSpec',
    'ObservedTable',
    'VARCHAR',
    'CHAR',
    'BLOB',
]
