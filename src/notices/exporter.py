import csv
import itertools
import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator

import openpyxl

from core.domain import ResultFile, Run
from core.staging_store import StagingStore
from notices.context import PipelineConfig

logger = logging.getLogger(__name__)


Row = list[Any]
PageEnricher = Callable[[list[Row]], list[Row]]


@dataclass(frozen=True)
class SheetProjection:
    """
    A sheet filled straight from SQL.

    select_sql must be a deterministic SELECT (ORDER BY a unique column); the
    exporter wraps it for counting and paging.
    """
    title: str
    headers: list[str]
    select_sql: str
    params: tuple[Any, ...] = ()


@dataclass(frozen=True)
class CsvReplaySheet:
    """A sheet filled by replaying a previously written `;` CSV, line by line."""
    title: str
    source_path: Path | None
    extra_headers: list[str] = field(default_factory=list)
    enrich: PageEnricher | None = None


@dataclass(frozen=True)
class ExportJob:
    file_type: str
    base_name: str
    primary: SheetProjection
    secondary: SheetProjection | CsvReplaySheet | None = None


def part_sizes(total: int, max_rows: int) -> list[int]:
    """Rows per part file: ceil(total / max_rows) parts, the last one holding the remainder."""
    if max_rows <= 0:
        raise ValueError("max_rows must be positive")
    if total <= 0:
        return [0]
    parts = math.ceil(total / max_rows)
    return [min(max_rows, total - i * max_rows) for i in range(parts)]


def part_file_name(base_name: str, part_index: int, total_parts: int, extension: str = ".xlsx") -> str:
    suffix = f"_parte{part_index + 1}" if total_parts > 1 else ""
    return f"{base_name}{suffix}{extension}"


class ResultExporter:
    """
    Writes row-capped spreadsheet files (openpyxl write-only mode).

    Every sheet of a part holds at most `max_rows_per_sheet` data rows; when
    either sheet overflows, the export is split into `_parteN` files and both
    sheets are paged with the same offsets.
    """

    def __init__(self, *, store: StagingStore, config: PipelineConfig):
        self.store = store
        self.config = config

    def count(self, sheet: SheetProjection | CsvReplaySheet | None) -> int:
        if sheet is None:
            return 0
        if isinstance(sheet, SheetProjection):
            row = self.store.conn.execute(f"SELECT COUNT(*) FROM ({sheet.select_sql}) AS q", list(sheet.params)).fetchone()
            return int(row[0]) if row else 0
        if sheet.source_path is None or not sheet.source_path.exists():
            return 0
        # records, not physical lines: a quoted value may hold a newline
        with open(sheet.source_path, "r", encoding="utf-8", newline="") as f:
            reader = csv.reader(f, delimiter=";")
            next(reader, None)
            return sum(1 for row in reader if row)

    def export(self, run: Run, job: ExportJob) -> list[ResultFile]:
        max_rows = self.config.max_rows_per_sheet
        primary_total = self.count(job.primary)
        secondary_total = self.count(job.secondary)
        total_parts = max(len(part_sizes(primary_total, max_rows)), len(part_sizes(secondary_total, max_rows)))

        logger.info(
            "Exporting %s for run %s: %s primary rows, %s secondary rows, %s file(s)",
            job.base_name, run.id, primary_total, secondary_total, total_parts,
        )

        run_dir = self.config.run_dir(run.id)
        results: list[ResultFile] = []
        with self._replay_rows(job.secondary) as secondary_rows:
            for part_index in range(total_parts):
                path = run_dir / part_file_name(job.base_name, part_index, total_parts)
                offset = part_index * max_rows

                workbook = openpyxl.Workbook(write_only=True)
                primary_written = self._write_projection(workbook, job.primary, offset=offset, limit=max_rows)
                secondary_written = 0
                if isinstance(job.secondary, SheetProjection):
                    secondary_written = self._write_projection(workbook, job.secondary, offset=offset, limit=max_rows)
                elif isinstance(job.secondary, CsvReplaySheet):
                    secondary_written = self._write_replay(workbook, job.secondary, secondary_rows, limit=max_rows)
                workbook.save(path)

                results.append(
                    self.store.upsert_result_file(
                        run_id=run.id,
                        file_type=job.file_type,
                        file_name=path.name,
                        path=self.config.relative_path(path),
                        disk=self.config.results_disk,
                        size_bytes=path.stat().st_size,
                        records_delta=primary_written,
                        metadata={
                            "part": part_index + 1,
                            "total_parts": total_parts,
                            "secondary_records": secondary_written,
                            "period": run.period,
                        },
                        replace=True,
                    )
                )
                logger.info("Wrote %s (%s + %s rows)", path.name, primary_written, secondary_written)

        return results

    # ----------------------------
    # Sheet writers
    # ----------------------------
    def _write_projection(self, workbook: openpyxl.Workbook, sheet: SheetProjection, *, offset: int, limit: int) -> int:
        worksheet = workbook.create_sheet(title=sheet.title)
        worksheet.append(sheet.headers)

        page_size = self.config.export_page_size
        sql = f"SELECT * FROM ({sheet.select_sql}) AS q LIMIT ? OFFSET ?"
        written = 0
        while written < limit:
            take = min(page_size, limit - written)
            rows = self.store.conn.execute(sql, [*sheet.params, take, offset + written]).fetchall()
            for row in rows:
                worksheet.append(list(row))
            written += len(rows)
            if len(rows) < take:
                break
        return written

    def _write_replay(
        self,
        workbook: openpyxl.Workbook,
        sheet: CsvReplaySheet,
        rows: Iterator[Row],
        *,
        limit: int,
    ) -> int:
        worksheet = workbook.create_sheet(title=sheet.title)
        header = self._replay_header(sheet)
        worksheet.append(header + list(sheet.extra_headers))

        page_size = self.config.export_page_size
        written = 0
        while written < limit:
            page = list(itertools.islice(rows, min(page_size, limit - written)))
            if not page:
                break
            if sheet.enrich is not None:
                page = sheet.enrich(page)
            for row in page:
                worksheet.append(row)
            written += len(page)
        return written

    @staticmethod
    def _replay_header(sheet: CsvReplaySheet) -> Row:
        if sheet.source_path is None or not sheet.source_path.exists():
            return []
        with open(sheet.source_path, "r", encoding="utf-8", newline="") as f:
            return next(csv.reader(f, delimiter=";"), [])

    @staticmethod
    @contextmanager
    def _replay_rows(sheet: SheetProjection | CsvReplaySheet | None) -> Iterator[Iterator[Row]]:
        """Data rows of a replay CSV, header skipped; the file stays open across parts."""
        if not isinstance(sheet, CsvReplaySheet) or sheet.source_path is None or not sheet.source_path.exists():
            yield iter(())
            return
        with open(sheet.source_path, "r", encoding="utf-8", newline="") as f:
            reader = csv.reader(f, delimiter=";")
            next(reader, None)
            yield (row for row in reader if row)
