import logging
from dataclasses import dataclass
from typing import Any, Sequence

import duckdb
import pyarrow as pa

from core.errors import CSVExtractionError
from core.settings import SYSTEM_COL_PAYLOAD, SYSTEM_COL_RUN_ID, SYSTEM_COL_SHEET_NAME
from core.sql import sql_identifier_quote, sql_quote
from ingestion.extract import rename_duplicate_column_headers
from ingestion.source_config import StagingSourceSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MappedHeader:
    """
    Physical header after duplicate renaming.

    names:
      one unique name per physical column, used as the Arrow column name.
    staging_columns:
      physical name -> staging column, for the columns the spec maps.
    sheet_column:
      physical name of the sheet marker written by spreadsheet converters, if any.
    """
    names: list[str]
    staging_columns: dict[str, str]
    sheet_column: str | None = None

    @property
    def payload_names(self) -> list[str]:
        return [n for n in self.names if n not in self.staging_columns and n != self.sheet_column]


class StagingRowShaper:
    """
    Turns header-mapped string rows into the fixed staging shape:
    promoted typed columns + one opaque JSON payload with every other column.

    All loaders hand Arrow tables of raw strings to `insert`, so the
    payload is assembled by DuckDB (json_object) rather than row by row.
    """

    def __init__(self, spec: StagingSourceSpec) -> None:
        self.spec = spec
        self._header_map = spec.header_map

    def map_header(self, raw_headers: Sequence[str], *, source_name: str) -> MappedHeader:
        unique_names = rename_duplicate_column_headers([h if h else "column" for h in raw_headers])

        staging_columns: dict[str, str] = {}
        sheet_column: str | None = None
        found: set[str] = set()
        for raw, name in zip(raw_headers, unique_names):
            if raw.lower() == SYSTEM_COL_SHEET_NAME and sheet_column is None:
                sheet_column = name
                continue

            db_name = self._header_map.get(raw)
            # first matching header wins; a second candidate for the same column stays in the payload
            if db_name is None or db_name in found:
                continue
            staging_columns[name] = db_name
            found.add(db_name)

        missing_required = [c for c in self.spec.required_columns if c not in found]
        if missing_required:
            raise CSVExtractionError(
                f"Missing required columns in {source_name} for source {self.spec.code}.\n"
                f"Missing staging columns: {missing_required}\n"
                f"Found headers (mapped): {sorted(found)}"
            )

        return MappedHeader(names=unique_names, staging_columns=staging_columns, sheet_column=sheet_column)

    def to_arrow(self, header: MappedHeader, rows: Sequence[Sequence[Any]]) -> pa.Table:
        """Column-oriented Arrow table of strings; short rows are padded with nulls."""
        width = len(header.names)
        columns: list[list[str | None]] = [[] for _ in range(width)]
        for row in rows:
            for i in range(width):
                value = row[i] if i < len(row) else None
                columns[i].append(None if value is None else str(value))
        return pa.table({name: pa.array(values, type=pa.string()) for name, values in zip(header.names, columns)})

    def insert(
        self,
        conn: duckdb.DuckDBPyConnection,
        header: MappedHeader,
        batch: pa.Table | pa.RecordBatch,
        *,
        run_id: int,
        sheet_name: str | None = None,
    ) -> int:
        if batch.num_rows == 0:
            return 0

        view_name = f"_raw_{self.spec.table}"
        conn.register(view_name, batch)
        try:
            conn.execute(self._insert_sql(header, view_name), [run_id, sheet_name])
        finally:
            conn.unregister(view_name)

        return batch.num_rows

    def _insert_sql(self, header: MappedHeader, view_name: str) -> str:
        target_columns = [SYSTEM_COL_RUN_ID]
        select_exprs = ["CAST(? AS BIGINT)"]

        for physical, db_name in header.staging_columns.items():
            target_columns.append(db_name)
            select_exprs.append(f"NULLIF({sql_identifier_quote(physical)}, '')")

        target_columns += [SYSTEM_COL_SHEET_NAME, SYSTEM_COL_PAYLOAD]
        if header.sheet_column:
            select_exprs.append(f"COALESCE(NULLIF({sql_identifier_quote(header.sheet_column)}, ''), CAST(? AS VARCHAR))")
        else:
            select_exprs.append("CAST(? AS VARCHAR)")

        payload_names = header.payload_names
        if payload_names:
            pairs = ", ".join(f"{sql_quote(n)}, {sql_identifier_quote(n)}" for n in payload_names)
            select_exprs.append(f"json_object({pairs})")
        else:
            select_exprs.append("'{}'::JSON")

        return (
            f"INSERT INTO {self.spec.table} ({', '.join(target_columns)}) "
            f"SELECT {', '.join(select_exprs)} FROM {view_name}"
        )
