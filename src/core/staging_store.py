import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Sequence

import duckdb
import pyarrow as pa

from core.domain import DataSourceFile, NoticeType, ResultFile, Run, RunStatus, StagingTableDef
from core.errors import DataIntegrityError
from core.settings import (
    MAX_ERROR_MESSAGE_LENGTH,
    MAX_LINE_CONTENT_LENGTH,
    STAGING_TABLE_PREFIX,
    SYSTEM_COL_CREATED_AT,
    SYSTEM_COL_ID,
    SYSTEM_COL_PAYLOAD,
    SYSTEM_COL_RUN_ID,
    SYSTEM_COL_SHEET_NAME,
    TABLE_DATA_SOURCE_FILES,
    TABLE_EMAIL_BLACKLIST,
    TABLE_IMPORT_ERROR_LOG,
    TABLE_RESULT_FILES,
    TABLE_RUNS,
)
from core.sql import require_identifier, sql_identifier_quote

logger = logging.getLogger(__name__)


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def affected_rows(result: duckdb.DuckDBPyConnection) -> int:
    """Row count reported by DuckDB for an INSERT/UPDATE/DELETE."""
    row = result.fetchone()
    return int(row[0]) if row and row[0] is not None else 0


class StagingStore:
    """
    Run-scoped staging store backed by DuckDB.

    Staging tables are shared by every run; each row carries run_id and every
    read, write and delete issued through this store (or by the steps using
    its connection) filters on it.

    Tables:
      runs, data_source_files, result_files, import_error_log, email_blacklist
      data_source_<code>   one per source type
    """

    def __init__(
        self,
        *,
        duckdb_path: str,
        staging_tables: Sequence[StagingTableDef],
        auto_bootstrap: bool = True,
    ):
        self._duckdb_path = duckdb_path
        self._staging_tables = {t.code: t for t in staging_tables}
        self._auto_bootstrap = auto_bootstrap

        self._connection: duckdb.DuckDBPyConnection | None = None

    def __enter__(self) -> "StagingStore":
        if self._connection is not None:
            raise RuntimeError("Store connection already open")

        self._connection = duckdb.connect(self._duckdb_path)

        if self._auto_bootstrap:
            self._bootstrap()

        logger.debug("Staging store connected. duckdb=%s tables=%s", self._duckdb_path, len(self._staging_tables))
        return self

    def __exit__(self, exc_type, exc_value, tb) -> None:
        if self._connection is None:
            return
        try:
            self._connection.close()
        finally:
            self._connection = None

    def _require_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            raise RuntimeError("Store is not connected; use it as a context manager")
        return self._connection

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        return self._require_connection()

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        conn = self._require_connection()
        conn.execute("BEGIN TRANSACTION")
        try:
            yield conn
        except Exception:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    # ----------------------------
    # Staging tables
    # ----------------------------
    @property
    def staging_tables(self) -> dict[str, StagingTableDef]:
        return dict(self._staging_tables)

    def table_for(self, source_code: str) -> str:
        table_def = self._staging_tables.get(source_code)
        if table_def is None:
            raise DataIntegrityError(f"Source '{source_code}' has no mapped staging table")
        return table_def.table

    def count_rows(self, table: str, run_id: int, where: str | None = None, params: Sequence[Any] = ()) -> int:
        require_identifier(table)
        sql = f"SELECT COUNT(*) FROM {table} WHERE {SYSTEM_COL_RUN_ID} = ?"
        if where:
            sql += f" AND ({where})"
        row = self._require_connection().execute(sql, [run_id, *params]).fetchone()
        return int(row[0]) if row else 0

    def table_columns(self, table: str) -> list[str]:
        rows = self._require_connection().execute(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_name = ?
            ORDER BY ordinal_position
            """,
            [require_identifier(table)],
        ).fetchall()
        return [r[0] for r in rows]

    def table_indexes(self, table: str) -> dict[str, str]:
        """index name -> CREATE INDEX statement"""
        rows = self._require_connection().execute(
            "SELECT index_name, sql FROM duckdb_indexes() WHERE table_name = ?",
            [require_identifier(table)],
        ).fetchall()
        return {r[0]: r[1] for r in rows}

    def add_columns(self, table: str, columns: Sequence[tuple[str, str]]) -> list[str]:
        """
        ALTER TABLE ADD COLUMN for each missing (name, type).

        DuckDB refuses to alter a table that has dependent indexes, so existing
        indexes are dropped first and recreated from their catalog SQL.
        """
        conn = self._require_connection()
        existing = set(self.table_columns(table))
        missing = [(name, typ) for name, typ in columns if name not in existing]
        if not missing:
            return []

        indexes = self.table_indexes(table)
        for index_name in indexes:
            conn.execute(f"DROP INDEX IF EXISTS {sql_identifier_quote(index_name)}")

        for name, typ in missing:
            logger.info("Evolving schema for %s: Adding column %s %s", table, name, typ)
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {require_identifier(name)} {typ}")

        for index_sql in indexes.values():
            conn.execute(index_sql)

        return [name for name, _ in missing]

    def insert_arrow(
        self,
        table: str,
        batch: pa.Table | pa.RecordBatch,
        conn: duckdb.DuckDBPyConnection | None = None,
    ) -> int:
        """INSERT ... SELECT from a registered Arrow object; columns are matched by name."""
        conn = conn or self._require_connection()
        require_identifier(table)
        if batch.num_rows == 0:
            return 0

        view_name = f"_incoming_{table}"
        columns = ", ".join(sql_identifier_quote(c) for c in batch.schema.names)
        conn.register(view_name, batch)
        try:
            conn.execute(f"INSERT INTO {table} ({columns}) SELECT {columns} FROM {view_name}")
        finally:
            conn.unregister(view_name)
        return batch.num_rows

    def delete_source_rows(
        self,
        table: str,
        run_id: int,
        *,
        sheet_name: str | None = None,
        conn: duckdb.DuckDBPyConnection | None = None,
    ) -> int:
        conn = conn or self._require_connection()
        require_identifier(table)
        sql = f"DELETE FROM {table} WHERE {SYSTEM_COL_RUN_ID} = ?"
        params: list[Any] = [run_id]
        if sheet_name is not None:
            sql += f" AND {SYSTEM_COL_SHEET_NAME} = ?"
            params.append(sheet_name)
        return affected_rows(conn.execute(sql, params))

    def delete_run_rows(self, run_id: int) -> dict[str, int]:
        """Drop every staging row and import error of one run. Runs and result files are kept."""
        deleted: dict[str, int] = {}
        with self.transaction() as tx:
            for table_def in self._staging_tables.values():
                deleted[table_def.table] = self.delete_source_rows(table_def.table, run_id, conn=tx)
            deleted[TABLE_IMPORT_ERROR_LOG] = affected_rows(
                tx.execute(f"DELETE FROM {TABLE_IMPORT_ERROR_LOG} WHERE run_id = ?", [run_id])
            )
        return deleted

    # ----------------------------
    # Runs
    # ----------------------------
    def create_run(
        self,
        *,
        notice_type: NoticeType,
        period: str,
        status: RunStatus = RunStatus.PENDING,
        official_id: str | None = None,
    ) -> Run:
        conn = self._require_connection()
        row = conn.execute(
            f"""
            INSERT INTO {TABLE_RUNS} (notice_type, period, status, official_id, created_at)
            VALUES (?, ?, ?, ?, ?)
            RETURNING id
            """,
            [notice_type.value, period, status.value, official_id, utc_now_naive()],
        ).fetchone()
        return self._fetch_run(int(row[0]))

    def get_run(self, run_id: int) -> Run | None:
        row = self._require_connection().execute(
            f"""
            SELECT id, notice_type, period, status, official_id, started_at, completed_at, failed_at,
                   duration_ms, error_payload, results
            FROM {TABLE_RUNS}
            WHERE id = ?
            """,
            [run_id],
        ).fetchone()
        if row is None:
            return None

        return Run(
            id=int(row[0]),
            notice_type=NoticeType(row[1]),
            period=row[2],
            status=RunStatus(row[3]),
            official_id=row[4],
            started_at=row[5],
            completed_at=row[6],
            failed_at=row[7],
            duration_ms=row[8],
            error_payload=json.loads(row[9]) if row[9] else None,
            results=json.loads(row[10]) if row[10] else None,
        )

    def _fetch_run(self, run_id: int) -> Run:
        run = self.get_run(run_id)
        if run is None:
            raise LookupError(f"Run {run_id} does not exist")
        return run

    def set_run_status(self, run_id: int, status: RunStatus) -> Run:
        """Used by the validation phase that precedes processing."""
        self._require_connection().execute(
            f"UPDATE {TABLE_RUNS} SET status = ? WHERE id = ?", [status.value, run_id]
        )
        return self._fetch_run(run_id)

    def mark_processing(self, run_id: int) -> Run:
        self._require_connection().execute(
            f"""
            UPDATE {TABLE_RUNS}
            SET status = ?, started_at = ?, completed_at = NULL, failed_at = NULL, error_payload = NULL
            WHERE id = ?
            """,
            [RunStatus.PROCESSING.value, utc_now_naive(), run_id],
        )
        return self._fetch_run(run_id)

    def mark_completed(self, run_id: int, *, duration_ms: int, results: dict[str, Any]) -> Run:
        self._require_connection().execute(
            f"""
            UPDATE {TABLE_RUNS}
            SET status = ?, completed_at = ?, duration_ms = ?, results = ?
            WHERE id = ?
            """,
            [RunStatus.COMPLETED.value, utc_now_naive(), duration_ms, _dump_json(results), run_id],
        )
        return self._fetch_run(run_id)

    def mark_failed(self, run_id: int, *, duration_ms: int, error_payload: dict[str, Any]) -> Run:
        self._require_connection().execute(
            f"""
            UPDATE {TABLE_RUNS}
            SET status = ?, failed_at = ?, duration_ms = ?, error_payload = ?
            WHERE id = ?
            """,
            [RunStatus.FAILED.value, utc_now_naive(), duration_ms, _dump_json(error_payload), run_id],
        )
        return self._fetch_run(run_id)

    # ----------------------------
    # Data source files
    # ----------------------------
    def register_data_source_file(self, file: DataSourceFile) -> None:
        self._require_connection().execute(
            f"""
            INSERT INTO {TABLE_DATA_SOURCE_FILES} (run_id, source_code, path, extension, size_bytes, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [file.run_id, file.source_code, str(file.path), file.extension, file.size_bytes, utc_now_naive()],
        )

    def list_data_source_files(self, run_id: int, source_code: str | None = None) -> list[DataSourceFile]:
        sql = f"SELECT run_id, source_code, path, extension, size_bytes FROM {TABLE_DATA_SOURCE_FILES} WHERE run_id = ?"
        params: list[Any] = [run_id]
        if source_code is not None:
            sql += " AND source_code = ?"
            params.append(source_code)
        sql += " ORDER BY source_code, path"

        rows = self._require_connection().execute(sql, params).fetchall()
        return [
            DataSourceFile(run_id=int(r[0]), source_code=r[1], path=Path(r[2]), extension=r[3], size_bytes=int(r[4]))
            for r in rows
        ]

    # ----------------------------
    # Result files
    # ----------------------------
    def upsert_result_file(
        self,
        *,
        run_id: int,
        file_type: str,
        file_name: str,
        path: str,
        disk: str,
        size_bytes: int,
        records_delta: int,
        metadata: dict[str, Any] | None = None,
        replace: bool = False,
    ) -> ResultFile:
        """
        Creates or updates the (run_id, file_type, file_name) record.

        replace=False accumulates records_count and merges metadata, which is what
        append-style writers need; replace=True resets both.
        """
        conn = self._require_connection()
        existing = self.get_result_file(run_id, file_type, file_name)
        now = utc_now_naive()

        if existing is None:
            records_count = records_delta
            merged = dict(metadata or {})
            conn.execute(
                f"""
                INSERT INTO {TABLE_RESULT_FILES}
                (run_id, file_type, file_name, path, disk, size_bytes, records_count, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [run_id, file_type, file_name, path, disk, size_bytes, records_count, _dump_json(merged), now, now],
            )
        else:
            records_count = records_delta if replace else existing.records_count + records_delta
            merged = dict(metadata or {}) if replace else {**existing.metadata, **(metadata or {})}
            conn.execute(
                f"""
                UPDATE {TABLE_RESULT_FILES}
                SET path = ?, disk = ?, size_bytes = ?, records_count = ?, metadata = ?, updated_at = ?
                WHERE run_id = ? AND file_type = ? AND file_name = ?
                """,
                [path, disk, size_bytes, records_count, _dump_json(merged), now, run_id, file_type, file_name],
            )

        return ResultFile(
            run_id=run_id,
            file_type=file_type,
            file_name=file_name,
            path=path,
            disk=disk,
            size_bytes=size_bytes,
            records_count=records_count,
            metadata=merged,
        )

    def get_result_file(self, run_id: int, file_type: str, file_name: str | None = None) -> ResultFile | None:
        files = [f for f in self.list_result_files(run_id, file_type) if file_name is None or f.file_name == file_name]
        return files[0] if files else None

    def list_result_files(self, run_id: int, file_type: str | None = None) -> list[ResultFile]:
        sql = f"""
            SELECT run_id, file_type, file_name, path, disk, size_bytes, records_count, metadata
            FROM {TABLE_RESULT_FILES}
            WHERE run_id = ?
        """
        params: list[Any] = [run_id]
        if file_type is not None:
            sql += " AND file_type = ?"
            params.append(file_type)
        sql += " ORDER BY file_type, file_name"

        rows = self._require_connection().execute(sql, params).fetchall()
        return [
            ResultFile(
                run_id=int(r[0]),
                file_type=r[1],
                file_name=r[2],
                path=r[3],
                disk=r[4],
                size_bytes=int(r[5]),
                records_count=int(r[6]),
                metadata=json.loads(r[7]) if r[7] else {},
            )
            for r in rows
        ]

    # ----------------------------
    # Import error log
    # ----------------------------
    def log_import_error(
        self,
        *,
        run_id: int,
        source_code: str,
        table_name: str,
        line_number: int,
        line_content: str,
        error_type: str,
        error_message: str,
    ) -> None:
        self._require_connection().execute(
            f"""
            INSERT INTO {TABLE_IMPORT_ERROR_LOG}
            (run_id, source_code, table_name, line_number, line_content, error_type, error_message, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                run_id,
                source_code,
                table_name,
                line_number,
                line_content[:MAX_LINE_CONTENT_LENGTH],
                error_type,
                error_message[:MAX_ERROR_MESSAGE_LENGTH],
                utc_now_naive(),
            ],
        )

    def list_import_errors(self, run_id: int, source_code: str | None = None) -> list[dict[str, Any]]:
        sql = (
            f"SELECT line_number, line_content, error_type, error_message, source_code "
            f"FROM {TABLE_IMPORT_ERROR_LOG} WHERE run_id = ?"
        )
        params: list[Any] = [run_id]
        if source_code is not None:
            sql += " AND source_code = ?"
            params.append(source_code)
        rows = self._require_connection().execute(sql + " ORDER BY line_number", params).fetchall()
        return [
            {"line_number": r[0], "line_content": r[1], "error_type": r[2], "error_message": r[3], "source_code": r[4]}
            for r in rows
        ]

    # ----------------------------
    # Email blacklist
    # ----------------------------
    def add_blacklisted_emails(self, emails: Sequence[str]) -> None:
        rows = [(e.strip().lower(),) for e in emails if e and e.strip()]
        if rows:
            self._require_connection().executemany(
                f"INSERT INTO {TABLE_EMAIL_BLACKLIST} (email) VALUES (?) ON CONFLICT DO NOTHING", rows
            )

    # ----------------------------
    # Bootstrap / helpers
    # ----------------------------
    def _bootstrap(self) -> None:
        conn = self._require_connection()

        conn.execute(f"CREATE SEQUENCE IF NOT EXISTS seq_{TABLE_RUNS} START 1")
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {TABLE_RUNS} (
              id             BIGINT PRIMARY KEY DEFAULT nextval('seq_{TABLE_RUNS}'),
              notice_type    VARCHAR NOT NULL,
              period         VARCHAR NOT NULL,
              status         VARCHAR NOT NULL,
              official_id    VARCHAR,
              started_at     TIMESTAMP,
              completed_at   TIMESTAMP,
              failed_at      TIMESTAMP,
              duration_ms    BIGINT,
              error_payload  JSON,
              results        JSON,
              created_at     TIMESTAMP NOT NULL
            );
            """
        )

        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {TABLE_DATA_SOURCE_FILES} (
              run_id       BIGINT  NOT NULL,
              source_code  VARCHAR NOT NULL,
              path         VARCHAR NOT NULL,
              extension    VARCHAR NOT NULL,
              size_bytes   BIGINT  NOT NULL,
              created_at   TIMESTAMP NOT NULL
            );
            """
        )

        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {TABLE_RESULT_FILES} (
              run_id         BIGINT  NOT NULL,
              file_type      VARCHAR NOT NULL,
              file_name      VARCHAR NOT NULL,
              path           VARCHAR NOT NULL,
              disk           VARCHAR NOT NULL,
              size_bytes     BIGINT  NOT NULL,
              records_count  BIGINT  NOT NULL,
              metadata       JSON,
              created_at     TIMESTAMP NOT NULL,
              updated_at     TIMESTAMP NOT NULL
            );
            """
        )

        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {TABLE_IMPORT_ERROR_LOG} (
              run_id         BIGINT  NOT NULL,
              source_code    VARCHAR NOT NULL,
              table_name     VARCHAR NOT NULL,
              line_number    BIGINT  NOT NULL,
              line_content   VARCHAR,
              error_type     VARCHAR NOT NULL,
              error_message  VARCHAR,
              created_at     TIMESTAMP NOT NULL
            );
            """
        )

        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {TABLE_EMAIL_BLACKLIST} (
              email  VARCHAR PRIMARY KEY
            );
            """
        )

        for table_def in self._staging_tables.values():
            self._ensure_staging_table(conn, table_def)

    def _ensure_staging_table(self, conn: duckdb.DuckDBPyConnection, table_def: StagingTableDef) -> None:
        """
        Ensure the staging table exists.
        If missing: create it with system columns + promoted columns.
        If exists: evolve schema (add promoted columns only).
        """
        table = table_def.table
        if not table.startswith(STAGING_TABLE_PREFIX):
            raise ValueError(f"Staging table '{table}' must start with '{STAGING_TABLE_PREFIX}'")
        require_identifier(table)

        conn.execute(f"CREATE SEQUENCE IF NOT EXISTS seq_{table} START 1")

        existing = set(self.table_columns(table))
        if not existing:
            promoted = "".join(f"  {require_identifier(c)} VARCHAR,\n" for c in table_def.columns)
            logger.info("Creating staging table %s", table)
            conn.execute(
                f"""
                CREATE TABLE {table} (
                  {SYSTEM_COL_ID} BIGINT DEFAULT nextval('seq_{table}'),
                  {SYSTEM_COL_RUN_ID} BIGINT NOT NULL,
                {promoted}
                  {SYSTEM_COL_SHEET_NAME} VARCHAR,
                  {SYSTEM_COL_PAYLOAD} JSON,
                  {SYSTEM_COL_CREATED_AT} TIMESTAMP DEFAULT current_timestamp
                );
                """
            )
            return

        self.add_columns(table, [(c, "VARCHAR") for c in table_def.columns])


def _dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)
