from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from core.settings import ALL_PERIODS_TOKENS


class RunStatus(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    VALIDATION_FAILED = "validation_failed"
    VALIDATED = "validated"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


EXECUTABLE_STATUSES = frozenset({RunStatus.VALIDATED})


class NoticeType(str, Enum):
    CONSTITUCION_MORA_APORTANTES = "constitucion_mora_aportantes"
    CONSTITUCION_MORA_INDEPENDIENTES = "constitucion_mora_independientes"

    @property
    def display_name(self) -> str:
        return _NOTICE_DISPLAY_NAMES[self]


_NOTICE_DISPLAY_NAMES = {
    NoticeType.CONSTITUCION_MORA_APORTANTES: "Constitución en mora - Aportantes",
    NoticeType.CONSTITUCION_MORA_INDEPENDIENTES: "Constitución en mora - Independientes",
}


@dataclass(frozen=True)
class Run:
    """
    One notice-generation execution.

    period:
      YYYYMM, or one of the "all periods" tokens. The orchestrator and the
      (external) validation phase are the only writers of status.
    """
    id: int
    notice_type: NoticeType
    period: str
    status: RunStatus
    official_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    duration_ms: int | None = None
    error_payload: dict[str, Any] | None = None
    results: dict[str, Any] | None = None

    @property
    def is_all_periods(self) -> bool:
        return self.period.strip().lower() in ALL_PERIODS_TOKENS

    @property
    def period_year(self) -> str:
        return "" if self.is_all_periods else self.period[:4]

    @property
    def period_month(self) -> str:
        return "" if self.is_all_periods else self.period[4:6]


@dataclass(frozen=True)
class StagingTableDef:
    """Physical shape of one source-type staging table."""
    code: str
    table: str
    columns: tuple[str, ...]


@dataclass(frozen=True)
class DataSourceFile:
    """Immutable reference to one uploaded input."""
    run_id: int
    source_code: str
    path: Path
    extension: str
    size_bytes: int


@dataclass(frozen=True)
class ResultFile:
    run_id: int
    file_type: str
    file_name: str
    path: str  # relative to the results root of `disk`
    disk: str
    size_bytes: int
    records_count: int
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExclusionRecord:
    """One line of the exclusion audit."""
    crossing_date: str  # DD/MM/YYYY
    identifier: str
    period: str
    notice_type: str
    value: str
    reason: str

    def as_row(self) -> list[str]:
        return [self.crossing_date, self.identifier, self.period, self.notice_type, self.value, self.reason]


class RowOutcome(str, Enum):
    """Recoverable per-row result of resilient ingestion."""
    SUCCESS = "success"
    ERROR_LOGGED = "error_logged"
    ERROR_NOT_LOGGED = "error_not_logged"


@dataclass(frozen=True)
class ImportResult:
    total: int
    success: int
    error: int
    errors_logged: int
    duration_ms: int = 0
    batch_sizes: tuple[int, ...] = ()


@dataclass(frozen=True)
class BulkLoadResult:
    table: str
    rows_loaded: int
    duration_ms: int = 0
    sheets: dict[str, int] = field(default_factory=dict)
