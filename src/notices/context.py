from dataclasses import dataclass, field, replace
from datetime import date
from pathlib import Path
from typing import Any, Mapping

from core.domain import Run
from core.settings import (
    AUDIT_PAGE_SIZE,
    EXPORT_PAGE_SIZE,
    INPUT_FILES_DIR,
    MAX_ROWS_PER_SHEET,
    RESILIENT_CHUNK_SIZE,
    RESULTS_DIR,
    RESULTS_DISK,
    SPREADSHEET_CHUNK_SIZE,
)


@dataclass(frozen=True)
class PipelineConfig:
    results_dir: Path = RESULTS_DIR
    input_dir: Path = INPUT_FILES_DIR  # copied input files, one folder per run
    results_disk: str = RESULTS_DISK
    resilient_chunk_size: int = RESILIENT_CHUNK_SIZE
    spreadsheet_chunk_size: int = SPREADSHEET_CHUNK_SIZE
    audit_page_size: int = AUDIT_PAGE_SIZE
    export_page_size: int = EXPORT_PAGE_SIZE
    max_rows_per_sheet: int = MAX_ROWS_PER_SHEET
    processing_date: date | None = None  # pins dates in audit rows and consecutives; today when None

    def run_dir(self, run_id: int) -> Path:
        path = self.results_dir / str(run_id)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def relative_path(self, path: Path) -> str:
        return path.relative_to(self.results_dir).as_posix()

    def today(self) -> date:
        return self.processing_date or date.today()


@dataclass(frozen=True)
class ProcessingContext:
    """
    Immutable state handed from step to step.

    data:
      per-source flags and values steps publish for later steps (loaded, keyed, crossed...).
    step_results:
      step name -> counters, persisted on the run as its results.
    """
    run: Run
    data: Mapping[str, Any] = field(default_factory=dict)
    step_results: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    def with_data(self, **values: Any) -> "ProcessingContext":
        return replace(self, data={**self.data, **values})

    def with_step_result(self, step_name: str, result: Mapping[str, Any]) -> "ProcessingContext":
        return replace(self, step_results={**self.step_results, step_name: dict(result)})

    @property
    def run_id(self) -> int:
        return self.run.id
