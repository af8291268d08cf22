import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import duckdb

from core.staging_store import StagingStore, affected_rows
from ingestion.source_config import StagingSourceSpec
from notices.audit_writer import ExclusionAuditWriter
from notices.context import PipelineConfig, ProcessingContext
from notices.exporter import ResultExporter
from notices.schema import SchemaPreparer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepServices:
    """Collaborators shared by every step of one pipeline."""
    store: StagingStore
    specs: Mapping[str, StagingSourceSpec]
    config: PipelineConfig
    audit: ExclusionAuditWriter
    exporter: ResultExporter
    schema: SchemaPreparer


class ProcessingStep(ABC):
    """
    One named, idempotent unit of work on a run.

    Steps keep no state of their own: everything they produce is written to
    staging tables (always filtered by run_id) or published on the context.
    """

    name: str = ""

    def __init__(self, services: StepServices):
        self.services = services

    def should_execute(self, context: ProcessingContext) -> bool:
        return True

    @abstractmethod
    def execute(self, context: ProcessingContext) -> ProcessingContext:
        ...

    # ----------------------------
    # Helpers
    # ----------------------------
    @property
    def store(self) -> StagingStore:
        return self.services.store

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        return self.services.store.conn

    def table(self, source_code: str) -> str:
        return self.services.store.table_for(source_code)

    def execute_sql(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Runs one set-based statement and returns the affected row count."""
        count = affected_rows(self.conn.execute(sql, list(params)))
        logger.debug("[%s] %s rows affected", self.name, count)
        return count

    def fetch_value(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = self.conn.execute(sql, list(params)).fetchone()
        return row[0] if row else None

    def has_rows(self, context: ProcessingContext, *source_codes: str) -> bool:
        """True when every source has staged rows for the run."""
        for code in source_codes:
            if code not in self.store.staging_tables:
                return False
            if self.store.count_rows(self.table(code), context.run_id) == 0:
                return False
        return True

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
