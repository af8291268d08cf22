import logging
from dataclasses import dataclass
from typing import Sequence

from core.errors import SchemaNotPreparedError
from core.sql import require_identifier
from core.staging_store import StagingStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    sql_type: str = "VARCHAR"


@dataclass(frozen=True)
class IndexSpec:
    name: str
    columns: tuple[str, ...]


class SchemaPreparer:
    """
    Idempotently adds derived columns and indexes to staging tables.

    Safe to call on every run: only what the catalog does not list yet is created.
    """

    def __init__(self, *, store: StagingStore):
        self.store = store

    def ensure(
        self,
        table: str,
        columns: Sequence[ColumnSpec] = (),
        indexes: Sequence[IndexSpec] = (),
    ) -> dict[str, list[str]]:
        require_identifier(table)
        if not self.store.table_columns(table):
            raise SchemaNotPreparedError(f"Staging table {table} does not exist")

        added_columns = self.store.add_columns(table, [(c.name, c.sql_type) for c in columns])

        existing_indexes = set(self.store.table_indexes(table))
        added_indexes: list[str] = []
        for index in indexes:
            if index.name in existing_indexes:
                continue
            cols = ", ".join(require_identifier(c) for c in index.columns)
            self.store.conn.execute(f"CREATE INDEX {require_identifier(index.name)} ON {table} ({cols})")
            added_indexes.append(index.name)

        if added_columns or added_indexes:
            logger.info("Prepared %s: columns=%s indexes=%s", table, added_columns, added_indexes)
        return {"columns": added_columns, "indexes": added_indexes}

    def require_columns(self, table: str, columns: Sequence[str]) -> None:
        """Raises SchemaNotPreparedError naming the missing columns."""
        present = set(self.store.table_columns(table))
        missing = [c for c in columns if c not in present]
        if missing:
            raise SchemaNotPreparedError(f"Table {table} is missing required columns: {missing}")
