import itertools
import logging
import time
from pathlib import Path

import pyarrow as pa
import pyarrow.csv as pv

from core.domain import BulkLoadResult
from core.errors import CSVExtractionError
from core.settings import BULK_BATCH_SIZE_BYTES
from core.staging_store import StagingStore
from ingestion.extract import GeneratorStream, detect_encoding, read_header, stream_body_as_utf8
from ingestion.row_shaper import StagingRowShaper
from ingestion.source_config import StagingSourceSpec

logger = logging.getLogger(__name__)


class BulkCsvLoader:
    """
    Set-mode loader for clean, machine-generated CSVs.

    The file is streamed through pyarrow's CSV reader in record batches and each
    batch is inserted by DuckDB straight from Arrow memory. One transaction per
    file: the run's previous rows are deleted first and any parse or shape
    error rolls the whole file back.
    """

    def __init__(self, *, store: StagingStore, block_size: int = BULK_BATCH_SIZE_BYTES):
        self.store = store
        self.block_size = block_size

    def load_file(
        self,
        spec: StagingSourceSpec,
        file_path: Path,
        *,
        run_id: int,
        sheet_name: str | None = None,
        replace: bool = True,
    ) -> BulkLoadResult:
        """
        sheet_name:
          set for per-sheet CSVs from the spreadsheet converter; replace then only
          clears that sheet's rows.
        """
        started = time.monotonic()
        encoding = detect_encoding(file_path, spec.source.encoding, spec.source.legacy_encoding)
        raw_header = read_header(
            file_path, encoding=encoding, delimiter=spec.source.delimiter, quote_char=spec.source.quote_char
        )
        shaper = StagingRowShaper(spec)
        header = shaper.map_header(raw_header, source_name=file_path.name)

        read_options = pv.ReadOptions(
            use_threads=True,
            column_names=header.names,
            autogenerate_column_names=False,
            block_size=self.block_size,
        )
        parse_options = pv.ParseOptions(
            delimiter=spec.source.delimiter,
            quote_char=spec.source.quote_char or False,
            double_quote=True,
            newlines_in_values=False,
        )
        # Force strict string typing for all columns; empty strings become NULL in SQL
        convert_options = pv.ConvertOptions(
            check_utf8=True,
            column_types={name: pa.string() for name in header.names},
            strings_can_be_null=False,
        )

        body = stream_body_as_utf8(file_path, encoding=encoding)
        first_chunk = next(body, b"")

        rows_loaded = 0
        try:
            with self.store.transaction() as tx:
                if replace:
                    self.store.delete_source_rows(spec.table, run_id, sheet_name=sheet_name, conn=tx)

                if first_chunk.strip():
                    reader = pv.open_csv(
                        GeneratorStream(itertools.chain([first_chunk], body)),
                        read_options=read_options,
                        parse_options=parse_options,
                        convert_options=convert_options,
                    )
                    for batch in reader:
                        rows_loaded += shaper.insert(tx, header, batch, run_id=run_id, sheet_name=sheet_name)
                        logger.debug("Staged %s rows of %s so far", rows_loaded, file_path.name)
        except CSVExtractionError:
            raise
        except Exception as e:
            raise CSVExtractionError(f"Bulk load of {file_path.name} into {spec.table} failed: {e}") from e

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Bulk loaded %s rows from %s into %s in %sms", rows_loaded, file_path.name, spec.table, duration_ms)
        return BulkLoadResult(
            table=spec.table,
            rows_loaded=rows_loaded,
            duration_ms=duration_ms,
            sheets={sheet_name: rows_loaded} if sheet_name else {},
        )
