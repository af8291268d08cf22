import logging
import time
from pathlib import Path

import duckdb

from core.domain import ImportResult, RowOutcome
from core.settings import MAX_ERROR_MESSAGE_LENGTH, MAX_LINE_CONTENT_LENGTH, RESILIENT_CHUNK_SIZE
from core.staging_store import StagingStore
from ingestion.extract import decode_line, detect_encoding, line_encodings, parse_line, read_header, require_file
from ingestion.row_shaper import MappedHeader, StagingRowShaper
from ingestion.source_config import StagingSourceSpec

logger = logging.getLogger(__name__)


ERROR_COLUMN_MISMATCH = "column_mismatch"
ERROR_INSERT = "insert_error"
ERROR_DECODE = "decode_error"


class ResilientCsvImporter:
    """
    Line-by-line importer for CSVs with legacy encoding or escaping risk.

    Partial-failure semantics: a bad line is written to the import error log
    and skipped. Only a missing file or a broken header aborts the import.

    Lines are decoded one at a time: the encoding detected from the head of the
    file first, then the canonical and legacy ones. A line none of them accepts
    is logged as a decode error.
    """

    def __init__(self, *, store: StagingStore, chunk_size: int = RESILIENT_CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.store = store
        self.chunk_size = chunk_size

    def import_file(
        self,
        spec: StagingSourceSpec,
        file_path: Path,
        *,
        run_id: int,
        replace: bool = True,
    ) -> ImportResult:
        started = time.monotonic()
        require_file(file_path)

        encoding = detect_encoding(file_path, spec.source.encoding, spec.source.legacy_encoding)
        encodings = line_encodings(encoding, spec.source.encoding, spec.source.legacy_encoding)
        raw_header = read_header(
            file_path, encoding=encoding, delimiter=spec.source.delimiter, quote_char=spec.source.quote_char
        )
        shaper = StagingRowShaper(spec)
        header = shaper.map_header(raw_header, source_name=file_path.name)
        expected_columns = len(header.names)

        # previous rows of the run go in the same transaction as the first chunk
        pending_replace = replace
        total = success = error = errors_logged = 0
        batch_sizes: list[int] = []
        chunk: list[tuple[int, str, list[str]]] = []

        def reject(line_number: int, line: str, error_type: str, message: str) -> None:
            nonlocal error, errors_logged
            error += 1
            outcome = self._log_error(
                spec,
                run_id=run_id,
                line_number=line_number,
                line_content=line,
                error_type=error_type,
                error_message=message,
            )
            if outcome is RowOutcome.ERROR_LOGGED:
                errors_logged += 1

        def flush() -> None:
            nonlocal success, error, errors_logged, pending_replace
            if not chunk:
                return
            inserted, failed, logged = self._insert_chunk(
                spec, shaper, header, chunk, run_id=run_id, replace=pending_replace
            )
            pending_replace = False
            success += inserted
            error += failed
            errors_logged += logged
            batch_sizes.append(len(chunk))
            chunk.clear()

        with open(file_path, "rb") as f:
            f.readline()  # header already mapped
            for line_number, physical in enumerate(f, start=2):
                raw = physical.rstrip(b"\r\n")
                if not raw.strip():
                    continue

                total += 1
                line = decode_line(raw, encodings)
                if line is None:
                    reject(
                        line_number,
                        raw.decode(encoding, errors="replace"),
                        ERROR_DECODE,
                        f"Line is not valid in any of {encodings}",
                    )
                    continue

                values = parse_line(line, delimiter=spec.source.delimiter, quote_char=spec.source.quote_char)
                if len(values) != expected_columns:
                    reject(
                        line_number,
                        line,
                        ERROR_COLUMN_MISMATCH,
                        f"Expected {expected_columns} columns, found {len(values)}",
                    )
                    continue

                chunk.append((line_number, line, values))
                if len(chunk) >= self.chunk_size:
                    flush()

            flush()

        if pending_replace:
            with self.store.transaction() as tx:
                self._replace_rows(spec, run_id, tx)

        result = ImportResult(
            total=total,
            success=success,
            error=error,
            errors_logged=errors_logged,
            duration_ms=int((time.monotonic() - started) * 1000),
            batch_sizes=tuple(batch_sizes),
        )
        logger.info(
            "Resilient import of %s (%s) finished: total=%s success=%s error=%s errors_logged=%s",
            file_path.name, spec.code, result.total, result.success, result.error, result.errors_logged,
        )
        return result

    def _replace_rows(self, spec: StagingSourceSpec, run_id: int, conn: duckdb.DuckDBPyConnection) -> None:
        deleted = self.store.delete_source_rows(spec.table, run_id, conn=conn)
        if deleted:
            logger.info("Removed %s previously staged %s rows for run %s", deleted, spec.code, run_id)

    def _insert_chunk(
        self,
        spec: StagingSourceSpec,
        shaper: StagingRowShaper,
        header: MappedHeader,
        chunk: list[tuple[int, str, list[str]]],
        *,
        run_id: int,
        replace: bool = False,
    ) -> tuple[int, int, int]:
        """Returns (inserted, failed, logged)."""
        try:
            with self.store.transaction() as tx:
                if replace:
                    self._replace_rows(spec, run_id, tx)
                shaper.insert(tx, header, shaper.to_arrow(header, [values for _, _, values in chunk]), run_id=run_id)
            logger.debug("Inserted chunk of %s %s rows", len(chunk), spec.code)
            return len(chunk), 0, 0
        except Exception as e:
            logger.warning("Chunk insert failed for %s (%s), retrying %s rows one by one", spec.code, e, len(chunk))

        if replace:
            with self.store.transaction() as tx:
                self._replace_rows(spec, run_id, tx)

        inserted = failed = logged = 0
        for line_number, line, values in chunk:
            outcome = self._insert_row(spec, shaper, header, values, run_id=run_id, line_number=line_number, line=line)
            if outcome is RowOutcome.SUCCESS:
                inserted += 1
                continue
            failed += 1
            if outcome is RowOutcome.ERROR_LOGGED:
                logged += 1
        return inserted, failed, logged

    def _insert_row(
        self,
        spec: StagingSourceSpec,
        shaper: StagingRowShaper,
        header: MappedHeader,
        values: list[str],
        *,
        run_id: int,
        line_number: int,
        line: str,
    ) -> RowOutcome:
        try:
            with self.store.transaction() as tx:
                shaper.insert(tx, header, shaper.to_arrow(header, [values]), run_id=run_id)
            return RowOutcome.SUCCESS
        except Exception as e:
            return self._log_error(
                spec,
                run_id=run_id,
                line_number=line_number,
                line_content=line,
                error_type=ERROR_INSERT,
                error_message=str(e),
            )

    def _log_error(
        self,
        spec: StagingSourceSpec,
        *,
        run_id: int,
        line_number: int,
        line_content: str,
        error_type: str,
        error_message: str,
    ) -> RowOutcome:
        try:
            self.store.log_import_error(
                run_id=run_id,
                source_code=spec.code,
                table_name=spec.table,
                line_number=line_number,
                line_content=line_content[:MAX_LINE_CONTENT_LENGTH],
                error_type=error_type,
                error_message=error_message[:MAX_ERROR_MESSAGE_LENGTH],
            )
            return RowOutcome.ERROR_LOGGED
        except Exception as e:
            logger.warning("Could not log %s for %s line %s: %s", error_type, spec.code, line_number, e)
            return RowOutcome.ERROR_NOT_LOGGED
