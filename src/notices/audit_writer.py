import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Sequence

from core.domain import ExclusionRecord, ResultFile, Run
from core.errors import AuditWriteError
from core.settings import SYSTEM_COL_ID, SYSTEM_COL_RUN_ID
from core.sql import require_identifier
from core.staging_store import StagingStore
from notices.context import PipelineConfig

logger = logging.getLogger(__name__)


AUDIT_HEADER = ["FECHA_CRUCE", "NUMERO_ID_APORTANTE", "PERIODO", "TIPO_COMUNICADO", "VALOR", "MOTIVO_EXCLUSION"]
FILE_TYPE_EXCLUSIONS = "excluidos"
# metadata key of the step that started the file over; a run gets one
REWRITTEN_BY = "rewritten_by"


@dataclass(frozen=True)
class ExclusionQuery:
    """
    Which staging rows to audit and how to project them.

    predicate and the *_sql expressions are evaluated against `table`; the
    run_id filter is always added by the writer.
    """
    table: str
    predicate: str
    identifier_sql: str
    value_sql: str
    reason_sql: str
    params: tuple[Any, ...] = ()


class ExclusionAuditWriter:
    """
    Per-run, append-only exclusion audit (`excluidos_<run_id>.csv`).

    Rows are read from staging in id-ordered pages and streamed to the file;
    the excluidos ResultFile accumulates the record count of every step.
    """

    def __init__(self, *, store: StagingStore, config: PipelineConfig):
        self.store = store
        self.config = config

    def audit_path(self, run_id: int) -> Path:
        return self.config.run_dir(run_id) / f"{FILE_TYPE_EXCLUSIONS}_{run_id}.csv"

    def append(self, run: Run, query: ExclusionQuery, *, step_name: str) -> int:
        """Adds the matching rows after whatever earlier steps wrote."""
        return self._write(run, query, step_name=step_name, mode="a")

    def rewrite(self, run: Run, query: ExclusionQuery, *, step_name: str) -> int:
        """Starts the audit file over with the matching rows. Allowed once per run."""
        existing = self.store.get_result_file(run.id, FILE_TYPE_EXCLUSIONS, self.audit_path(run.id).name)
        if existing is not None and REWRITTEN_BY in existing.metadata:
            raise AuditWriteError(
                f"Exclusion audit of run {run.id} was already rewritten by {existing.metadata[REWRITTEN_BY]}; use append"
            )
        return self._write(run, query, step_name=step_name, mode="w")

    def count(self, run: Run, query: ExclusionQuery) -> int:
        return self.store.count_rows(require_identifier(query.table), run.id, query.predicate, query.params)

    def records(self, run: Run, query: ExclusionQuery) -> Iterator[ExclusionRecord]:
        crossing_date = self.config.today().strftime("%d/%m/%Y")
        notice_type = run.notice_type.display_name
        for page in self._pages(run, query):
            for identifier, value, reason in page:
                yield ExclusionRecord(
                    crossing_date=crossing_date,
                    identifier=identifier or "",
                    period=run.period,
                    notice_type=notice_type,
                    value=value if value is not None else "0",
                    reason=reason or "",
                )

    def _pages(self, run: Run, query: ExclusionQuery) -> Iterator[Sequence[tuple[Any, ...]]]:
        table = require_identifier(query.table)
        sql = f"""
            SELECT CAST({query.identifier_sql} AS VARCHAR),
                   CAST({query.value_sql} AS VARCHAR),
                   CAST({query.reason_sql} AS VARCHAR)
            FROM {table}
            WHERE {SYSTEM_COL_RUN_ID} = ? AND ({query.predicate})
            ORDER BY {SYSTEM_COL_ID}
            LIMIT ? OFFSET ?
        """
        page_size = self.config.audit_page_size
        offset = 0
        while True:
            rows = self.store.conn.execute(sql, [run.id, *query.params, page_size, offset]).fetchall()
            if not rows:
                return
            yield rows
            if len(rows) < page_size:
                return
            offset += page_size

    def _write(self, run: Run, query: ExclusionQuery, *, step_name: str, mode: str) -> int:
        path = self.audit_path(run.id)
        needs_header = mode == "w" or not path.exists() or path.stat().st_size == 0

        written = 0
        with open(path, mode, encoding="utf-8", newline="") as f:
            writer = csv.writer(f, delimiter=";", lineterminator="\n")
            if needs_header:
                writer.writerow(AUDIT_HEADER)
            for record in self.records(run, query):
                writer.writerow(record.as_row())
                written += 1

        result = self._register(run, path, written, step_name=step_name, replace=mode == "w")
        logger.info(
            "Exclusion audit %s: %s rows from %s (%s), file total %s",
            "rewritten" if mode == "w" else "appended", written, query.table, step_name, result.records_count,
        )
        return written

    def _register(self, run: Run, path: Path, written: int, *, step_name: str, replace: bool) -> ResultFile:
        metadata: dict[str, Any] = {
            f"step_{step_name}": written,
            "tipo_comunicado": run.notice_type.display_name,
            "periodo": run.period,
        }
        if replace:
            metadata[REWRITTEN_BY] = step_name
        return self.store.upsert_result_file(
            run_id=run.id,
            file_type=FILE_TYPE_EXCLUSIONS,
            file_name=path.name,
            path=self.config.relative_path(path),
            disk=self.config.results_disk,
            size_bytes=path.stat().st_size,
            records_delta=written,
            metadata=metadata,
            replace=replace,
        )
