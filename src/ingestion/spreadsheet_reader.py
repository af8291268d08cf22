import logging
import time
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator

import duckdb
import openpyxl

from core.domain import BulkLoadResult
from core.errors import CSVExtractionError
from core.settings import SPREADSHEET_CHUNK_SIZE
from core.staging_store import StagingStore
from ingestion.extract import require_file
from ingestion.row_shaper import StagingRowShaper
from ingestion.source_config import StagingSourceSpec

logger = logging.getLogger(__name__)


SPREADSHEET_EXTENSIONS = frozenset({".xlsx", ".xlsm"})


def render_cell(value: Any) -> str | None:
    """Cell value as the string a CSV export would have carried."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dt_time):
        return value.strftime("%H:%M:%S")
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    return str(value).strip()


def select_sheets(sheet_names: list[str], policy: str, *, period_year: str) -> list[str]:
    """
    first       -> sheet 0
    all         -> every sheet
    period_year -> sheets whose name contains the year; every sheet when the run covers all periods
    """
    if not sheet_names:
        return []
    if policy == "first":
        return sheet_names[:1]
    if policy == "all" or not period_year:
        return list(sheet_names)
    if policy == "period_year":
        return [name for name in sheet_names if period_year in name]
    raise ValueError(f"Unknown sheet policy '{policy}'")


class SpreadsheetStreamingReader:
    """
    Streams large workbooks sheet by sheet and row by row (openpyxl read-only
    mode) and inserts them in chunks, without materialising the workbook.
    """

    def __init__(self, *, store: StagingStore, chunk_size: int = SPREADSHEET_CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.store = store
        self.chunk_size = chunk_size

    def sheet_names(self, file_path: Path) -> list[str]:
        workbook = openpyxl.load_workbook(require_file(file_path), read_only=True, data_only=True)
        try:
            return list(workbook.sheetnames)
        finally:
            workbook.close()

    def load_file(
        self,
        spec: StagingSourceSpec,
        file_path: Path,
        *,
        run_id: int,
        period_year: str,
        replace: bool = True,
    ) -> BulkLoadResult:
        started = time.monotonic()
        shaper = StagingRowShaper(spec)

        workbook = openpyxl.load_workbook(require_file(file_path), read_only=True, data_only=True)
        try:
            available = list(workbook.sheetnames)
            selected = select_sheets(available, spec.sheet_policy, period_year=period_year)
            if not selected:
                logger.warning(
                    "No sheet in %s matches policy '%s' (year=%s). Sheets: %s",
                    file_path.name, spec.sheet_policy, period_year or "all", ", ".join(available),
                )

            sheets: dict[str, int] = {}
            with self.store.transaction() as tx:
                if replace:
                    self.store.delete_source_rows(spec.table, run_id, conn=tx)

                for sheet_name in selected:
                    rows = workbook[sheet_name].iter_rows(values_only=True)
                    sheets[sheet_name] = self._load_sheet(
                        tx, shaper, rows, run_id=run_id, sheet_name=sheet_name, source_name=file_path.name
                    )
                    logger.info("Sheet '%s' of %s: %s rows staged", sheet_name, file_path.name, sheets[sheet_name])
        finally:
            workbook.close()

        rows_loaded = sum(sheets.values())
        return BulkLoadResult(
            table=spec.table,
            rows_loaded=rows_loaded,
            duration_ms=int((time.monotonic() - started) * 1000),
            sheets=sheets,
        )

    def _load_sheet(
        self,
        conn: duckdb.DuckDBPyConnection,
        shaper: StagingRowShaper,
        rows: Iterator[tuple[Any, ...]],
        *,
        run_id: int,
        sheet_name: str,
        source_name: str,
    ) -> int:
        raw_header = next(rows, None)
        if raw_header is None:
            logger.warning("Sheet '%s' of %s is empty", sheet_name, source_name)
            return 0

        header_values = [render_cell(v) or "" for v in raw_header]
        while header_values and not header_values[-1]:
            header_values.pop()
        if not header_values:
            raise CSVExtractionError(f"Sheet '{sheet_name}' of {source_name} has no header row")

        header = shaper.map_header(header_values, source_name=f"{source_name}[{sheet_name}]")
        width = len(header.names)

        loaded = 0
        chunk: list[list[str | None]] = []
        for row in rows:
            values = [render_cell(v) for v in row[:width]]
            if not any(v for v in values):
                continue
            chunk.append(values)
            if len(chunk) >= self.chunk_size:
                loaded += shaper.insert(conn, header, shaper.to_arrow(header, chunk), run_id=run_id, sheet_name=sheet_name)
                chunk = []

        if chunk:
            loaded += shaper.insert(conn, header, shaper.to_arrow(header, chunk), run_id=run_id, sheet_name=sheet_name)

        return loaded
