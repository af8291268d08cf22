import logging
from collections import defaultdict
from typing import Any, Sequence

from core.domain import DataSourceFile
from core.errors import DataIntegrityError
from ingestion.bulk_loader import BulkCsvLoader
from ingestion.resilient_importer import ResilientCsvImporter
from ingestion.spreadsheet_reader import SPREADSHEET_EXTENSIONS, SpreadsheetStreamingReader
from notices.context import ProcessingContext
from notices.steps.base import ProcessingStep, StepServices

logger = logging.getLogger(__name__)


class LoadDataSourcesStep(ProcessingStep):
    """
    Stages every registered input file of the given sources.

    The first file of a source replaces the run's previous rows for it, so the
    step can be re-run without duplicating data.
    """

    name = "load_data_sources"

    def __init__(self, services: StepServices, *, source_codes: Sequence[str]):
        super().__init__(services)
        self.source_codes = list(source_codes)

    def _files(self, context: ProcessingContext) -> dict[str, list[DataSourceFile]]:
        grouped: dict[str, list[DataSourceFile]] = defaultdict(list)
        for file in self.store.list_data_source_files(context.run_id):
            if file.source_code in self.source_codes:
                grouped[file.source_code].append(file)
        return grouped

    def should_execute(self, context: ProcessingContext) -> bool:
        return bool(self._files(context))

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        config = self.services.config
        resilient = ResilientCsvImporter(store=self.store, chunk_size=config.resilient_chunk_size)
        bulk = BulkCsvLoader(store=self.store)
        spreadsheet = SpreadsheetStreamingReader(store=self.store, chunk_size=config.spreadsheet_chunk_size)

        loaded: dict[str, bool] = dict(context.data.get("loaded", {}))
        summary: dict[str, Any] = {}

        for code, files in self._files(context).items():
            spec = self.services.specs.get(code)
            if spec is None:
                raise DataIntegrityError(f"No source specification for data source '{code}'")

            rows = errors = 0
            for position, file in enumerate(files):
                replace = position == 0
                extension = file.extension.lower() if file.extension.startswith(".") else f".{file.extension.lower()}"

                if extension in SPREADSHEET_EXTENSIONS:
                    result = spreadsheet.load_file(
                        spec, file.path, run_id=context.run_id, period_year=context.run.period_year, replace=replace
                    )
                    rows += result.rows_loaded
                elif spec.loader == "resilient":
                    imported = resilient.import_file(spec, file.path, run_id=context.run_id, replace=replace)
                    rows += imported.success
                    errors += imported.error
                else:
                    result = bulk.load_file(spec, file.path, run_id=context.run_id, replace=replace)
                    rows += result.rows_loaded

            loaded[code] = rows > 0
            summary[code] = {"files": len(files), "rows": rows, "errors": errors}
            logger.info("Loaded %s: %s rows from %s file(s), %s rejected lines", code, rows, len(files), errors)

        return context.with_data(loaded=loaded).with_step_result(self.name, summary)
