"""
Schema management for the staging table.

The desired layout is a declarative TableSchema. plan_migration() compares it
with what the store reports and returns the list of actions needed to make
them agree; SchemaManager applies those actions. Running install() against a
table that is already correct is a no-op.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Union

from ..errors import SchemaError
from ..store.base import (
    RelationalStore, TableSchema, ColumnSpec, IndexSpec, ObservedTable,
    VARCHAR, CHAR, BLOB,
)

logger = logging.getLogger(__name__)

DEFAULT_TABLE_NAME = "staged_documents"

# Column names
UID_FIELD = "uid"
HOST_FIELD = "serverhost"
PATH_FIELD = "serverpath"
ON_DELETE_FIELD = "ondelete"
DATA_FIELD = "sdfdata"

UID_LENGTH = 40
HOST_LENGTH = 255
PATH_LENGTH = 255


def staging_table_schema(table_name: str = DEFAULT_TABLE_NAME) -> TableSchema:
    """
    Build the descriptor for a staging table.

    Args:
        table_name: Name of the table

    Returns:
        TableSchema with the identity columns, the tombstone flag, the payload
        and a single unique index over (host, path, uid)
    """
    return TableSchema(
        name=table_name,
        columns=(
            ColumnSpec(UID_FIELD, VARCHAR, UID_LENGTH),
            ColumnSpec(HOST_FIELD, VARCHAR, HOST_LENGTH),
            ColumnSpec(PATH_FIELD, VARCHAR, PATH_LENGTH),
            ColumnSpec(ON_DELETE_FIELD, CHAR, 1),
            ColumnSpec(DATA_FIELD, BLOB, nullable=True),
        ),
        indexes=(
            IndexSpec(
                name=f"ix_{table_name}_identity",
                columns=(HOST_FIELD, PATH_FIELD, UID_FIELD),
                unique=True,
            ),
        ),
    )


@dataclass(frozen=True)
class CreateTable:
    schema: TableSchema

    def describe(self) -> str:
        return f"create table {self.schema.name}"


@dataclass(frozen=True)
class CreateIndex:
    table: str
    index: IndexSpec

    def describe(self) -> str:
        kind = "unique index" if self.index.unique else "index"
        return f"create {kind} {self.index.name} on {self.table}({', '.join(self.index.columns)})"


@dataclass(frozen=True)
class DropIndex:
    table: str
    index_name: str

    def describe(self) -> str:
        return f"drop index {self.index_name} on {self.table}"


MigrationAction = Union[CreateTable, CreateIndex, DropIndex]


def plan_migration(desired: TableSchema, observed: Optional[ObservedTable]) -> List[MigrationAction]:
    """
    Compute the actions that bring an observed table in line with its descriptor.

    Args:
        desired: Target table descriptor
        observed: Current table as reported by the store, or None if absent

    Returns:
        Ordered list of migration actions (empty when nothing needs doing)

    Raises:
        SchemaError: If the observed table lacks a desired column
    """
    if observed is None:
        actions: List[MigrationAction] = [CreateTable(desired)]
        actions.extend(CreateIndex(desired.name, index) for index in desired.indexes)
        return actions

    observed_columns = {name.lower() for name in observed.columns}
    missing = [c for c in desired.column_names if c.lower() not in observed_columns]
    if missing:
        raise SchemaError(
            f"Table {desired.name} exists but is missing columns: {', '.join(missing)}"
        )

    actions = []
    unmatched = list(desired.indexes)
    for existing in observed.indexes:
        match = next((ix for ix in unmatched if ix.matches(existing)), None)
        if match is not None:
            unmatched.remove(match)
        else:
            actions.append(DropIndex(desired.name, existing.name))

    actions.extend(CreateIndex(desired.name, index) for index in unmatched)
    return actions


class SchemaManager:
    """Installs and removes a table described by a TableSchema."""

    def __init__(self, store: RelationalStore, schema: TableSchema):
        self.store = store
        self.schema = schema

    def plan(self) -> List[MigrationAction]:
        """Return the actions install() would perform, without applying them."""
        return plan_migration(self.schema, self.store.describe_table(self.schema.name))

    def install(self) -> List[MigrationAction]:
        """
        Create or reconcile the table and its indexes.

        Returns:
            The actions that were applied
        """
        actions = self.plan()
        if not actions:
            logger.debug(f"Schema for {self.schema.name} is up to date")
            return actions

        for action in actions:
            logger.info(f"Schema change: {action.describe()}")
            if isinstance(action, CreateTable):
                self.store.create_table(action.schema)
            elif isinstance(action, CreateIndex):
                self.store.create_index(action.table, action.index)
            elif isinstance(action, DropIndex):
                self.store.drop_index(action.table, action.index_name)

        return actions

    def uninstall(self) -> None:
        """Drop the table and everything staged in it."""
        logger.warning(f"Dropping table {self.schema.name}")
        self.store.drop_table(self.schema.name)
