"""
Shared fixtures: an in-memory staging store, per-test results/input folders,
run factories and small CSV / XLSX writers.
"""
import csv
from datetime import date
from pathlib import Path
from typing import Any, Callable, Sequence

import openpyxl
import pytest

from core.domain import DataSourceFile, NoticeType, Run, RunStatus
from core.settings import SOURCE_CONFIG_DIRECTORY_PATH
from core.staging_store import StagingStore
from ingestion.source_config import StagingSourceSpec, load_source_specs_from_directory
from notices.audit_writer import ExclusionAuditWriter
from notices.context import PipelineConfig, ProcessingContext
from notices.exporter import ResultExporter
from notices.schema import SchemaPreparer
from notices.steps.base import StepServices

PROCESSING_DATE = date(2025, 9, 15)
OFFICIAL_ID = "1020304050"


# ── Writers ───────────────────────────────────────────────────────────────────

def write_csv(
    path: Path,
    header: Sequence[str],
    rows: Sequence[Sequence[Any]],
    *,
    encoding: str = "utf-8",
    delimiter: str = ";",
) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding=encoding, newline="") as f:
        writer = csv.writer(f, delimiter=delimiter, lineterminator="\n")
        writer.writerow(header)
        writer.writerows(rows)
    return path


def write_xlsx(path: Path, sheets: dict[str, tuple[Sequence[str], Sequence[Sequence[Any]]]]) -> Path:
    """sheets: title -> (header, rows), in workbook order."""
    path.parent.mkdir(parents=True, exist_ok=True)
    workbook = openpyxl.Workbook()
    workbook.remove(workbook.active)
    for title, (header, rows) in sheets.items():
        worksheet = workbook.create_sheet(title=title)
        worksheet.append(list(header))
        for row in rows:
            worksheet.append(list(row))
    workbook.save(path)
    return path


def read_csv(path: Path) -> list[list[str]]:
    with open(path, "r", encoding="utf-8", newline="") as f:
        return list(csv.reader(f, delimiter=";"))


def read_sheet(path: Path, title: str) -> list[list[Any]]:
    workbook = openpyxl.load_workbook(path)
    try:
        return [list(row) for row in workbook[title].iter_rows(values_only=True)]
    finally:
        workbook.close()


def stage_rows(store: StagingStore, table: str, run_id: int, rows: Sequence[dict[str, Any]]) -> None:
    """Inserts rows straight into a staging table, bypassing the loaders."""
    for row in rows:
        columns = ["run_id", *row.keys()]
        placeholders = ", ".join("?" for _ in columns)
        store.conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            [run_id, *row.values()],
        )


def fetch_all(store: StagingStore, sql: str, params: Sequence[Any] = ()) -> list[tuple]:
    return store.conn.execute(sql, list(params)).fetchall()


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def source_specs() -> dict[str, StagingSourceSpec]:
    return {spec.code: spec for spec in load_source_specs_from_directory(str(SOURCE_CONFIG_DIRECTORY_PATH))}


@pytest.fixture
def store(source_specs):
    staging_store = StagingStore(
        duckdb_path=":memory:",
        staging_tables=[spec.table_def for spec in source_specs.values()],
    )
    with staging_store as s:
        yield s


@pytest.fixture
def config(tmp_path) -> PipelineConfig:
    # small pages so every paged reader and writer crosses a page boundary
    return PipelineConfig(
        results_dir=tmp_path / "results",
        input_dir=tmp_path / "inputs",
        resilient_chunk_size=3,
        spreadsheet_chunk_size=2,
        audit_page_size=2,
        export_page_size=2,
        processing_date=PROCESSING_DATE,
    )


@pytest.fixture
def services(store, source_specs, config) -> StepServices:
    return StepServices(
        store=store,
        specs=source_specs,
        config=config,
        audit=ExclusionAuditWriter(store=store, config=config),
        exporter=ResultExporter(store=store, config=config),
        schema=SchemaPreparer(store=store),
    )


@pytest.fixture
def make_run(store) -> Callable[..., Run]:
    def _make(
        notice_type: NoticeType = NoticeType.CONSTITUCION_MORA_APORTANTES,
        period: str = "202508",
        status: RunStatus = RunStatus.VALIDATED,
        official_id: str | None = OFFICIAL_ID,
    ) -> Run:
        return store.create_run(notice_type=notice_type, period=period, status=status, official_id=official_id)

    return _make


@pytest.fixture
def context_for() -> Callable[[Run], ProcessingContext]:
    return lambda run: ProcessingContext(run=run)


@pytest.fixture
def stage(store) -> Callable[[Run, str, Sequence[dict[str, Any]]], None]:
    def _stage(run: Run, code: str, rows: Sequence[dict[str, Any]]) -> None:
        stage_rows(store, store.table_for(code), run.id, rows)

    return _stage


@pytest.fixture
def add_source(store, config) -> Callable[..., DataSourceFile]:
    """Writes an input file under <input_dir>/<run_id>/ and registers it for the run."""

    def _add(
        run: Run,
        code: str,
        header: Sequence[str] = (),
        rows: Sequence[Sequence[Any]] = (),
        *,
        sheets: dict[str, tuple[Sequence[str], Sequence[Sequence[Any]]]] | None = None,
        encoding: str = "utf-8",
        name: str | None = None,
    ) -> DataSourceFile:
        directory = config.input_dir / str(run.id)
        extension = ".xlsx" if sheets is not None else ".csv"
        path = directory / f"{name or code.lower()}{extension}"
        if sheets is not None:
            write_xlsx(path, sheets)
        else:
            write_csv(path, header, rows, encoding=encoding)

        file = DataSourceFile(
            run_id=run.id,
            source_code=code,
            path=path,
            extension=extension,
            size_bytes=path.stat().st_size,
        )
        store.register_data_source_file(file)
        return file

    return _add
