import pytest

from core.domain import NoticeType, RunStatus
from core.errors import DataIntegrityError
from conftest import fetch_all, stage_rows


class TestRunLifecycle:
    def test_create_and_get(self, store):
        run = store.create_run(notice_type=NoticeType.CONSTITUCION_MORA_INDEPENDIENTES, period="202508")
        assert run.status is RunStatus.PENDING
        assert store.get_run(run.id) == run
        assert store.get_run(run.id + 100) is None

    def test_processing_then_completed(self, make_run, store):
        run = make_run()
        processing = store.mark_processing(run.id)
        assert processing.status is RunStatus.PROCESSING
        assert processing.started_at is not None

        done = store.mark_completed(run.id, duration_ms=42, results={"steps": 3, "files": ["a.xlsx"]})
        assert done.status is RunStatus.COMPLETED
        assert done.duration_ms == 42
        assert done.results == {"steps": 3, "files": ["a.xlsx"]}
        assert done.completed_at is not None

    def test_failed_keeps_error_payload(self, make_run, store):
        run = make_run()
        store.mark_processing(run.id)
        failed = store.mark_failed(run.id, duration_ms=5, error_payload={"message": "boom", "step": "load"})
        assert failed.status is RunStatus.FAILED
        assert failed.error_payload == {"message": "boom", "step": "load"}
        assert failed.failed_at is not None

    def test_reprocessing_clears_previous_failure(self, make_run, store):
        run = make_run()
        store.mark_failed(run.id, duration_ms=1, error_payload={"message": "x"})
        again = store.mark_processing(run.id)
        assert again.error_payload is None
        assert again.failed_at is None


class TestStagingTables:
    def test_every_spec_has_a_table(self, store, source_specs):
        for code, spec in source_specs.items():
            assert store.table_for(code) == spec.table
            columns = store.table_columns(spec.table)
            assert columns[:2] == ["id", "run_id"]
            assert set(spec.promoted_columns) <= set(columns)

    def test_unknown_source(self, store):
        with pytest.raises(DataIntegrityError):
            store.table_for("NOPE")

    def test_add_columns_keeps_indexes(self, store):
        table = store.table_for("BASCAR")
        store.conn.execute(f"CREATE INDEX idx_test_bascar_num_tomador ON {table} (num_tomador)")

        added = store.add_columns(table, [("extra_one", "VARCHAR"), ("num_tomador", "VARCHAR"), ("extra_two", "INTEGER")])

        assert added == ["extra_one", "extra_two"]
        assert "idx_test_bascar_num_tomador" in store.table_indexes(table)
        assert store.add_columns(table, [("extra_one", "VARCHAR")]) == []

    def test_count_and_delete_are_run_scoped(self, make_run, store):
        table = store.table_for("BASCAR")
        first, second = make_run(), make_run()
        stage_rows(store, table, first.id, [{"num_tomador": "1"}, {"num_tomador": "2"}])
        stage_rows(store, table, second.id, [{"num_tomador": "1"}])
        store.log_import_error(
            run_id=first.id,
            source_code="PAGLOG",
            table_name=store.table_for("PAGLOG"),
            line_number=4,
            line_content="x;y",
            error_type="malformed",
            error_message="bad",
        )

        assert store.count_rows(table, first.id) == 2
        assert store.count_rows(table, first.id, "num_tomador = ?", ["2"]) == 1

        deleted = store.delete_run_rows(first.id)

        assert deleted[table] == 2
        assert store.count_rows(table, first.id) == 0
        assert store.count_rows(table, second.id) == 1
        assert store.list_import_errors(first.id) == []

    def test_delete_source_rows_by_sheet(self, make_run, store):
        table = store.table_for("PAGAPL")
        run = make_run()
        stage_rows(store, table, run.id, [
            {"identifi": "1", "sheet_name": "2024"},
            {"identifi": "2", "sheet_name": "2025"},
        ])
        assert store.delete_source_rows(table, run.id, sheet_name="2024") == 1
        assert fetch_all(store, f"SELECT identifi FROM {table} WHERE run_id = ?", [run.id]) == [("2",)]

    def test_transaction_rolls_back(self, make_run, store):
        table = store.table_for("DATPOL")
        run = make_run()
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.execute(f"INSERT INTO {table} (run_id, nro_documto) VALUES (?, ?)", [run.id, "9"])
                raise RuntimeError("abort")
        assert store.count_rows(table, run.id) == 0


class TestResultFiles:
    def test_accumulates_by_default(self, make_run, store):
        run = make_run()
        common = dict(run_id=run.id, file_type="excluidos", file_name="a.csv", path="1/a.csv", disk="collection")

        store.upsert_result_file(**common, size_bytes=10, records_delta=3, metadata={"steps": ["x"]})
        updated = store.upsert_result_file(**common, size_bytes=20, records_delta=2, metadata={"last": "y"})

        assert updated.records_count == 5
        assert updated.metadata == {"steps": ["x"], "last": "y"}
        assert store.get_result_file(run.id, "excluidos").size_bytes == 20

    def test_replace_resets(self, make_run, store):
        run = make_run()
        common = dict(run_id=run.id, file_type="detalle", file_name="d.csv", path="1/d.csv", disk="collection")

        store.upsert_result_file(**common, size_bytes=10, records_delta=3, metadata={"a": 1})
        replaced = store.upsert_result_file(**common, size_bytes=4, records_delta=1, metadata={"b": 2}, replace=True)

        assert replaced.records_count == 1
        assert replaced.metadata == {"b": 2}
        assert len(store.list_result_files(run.id)) == 1


class TestEmailBlacklist:
    def test_normalized_and_deduplicated(self, store):
        store.add_blacklisted_emails([" Uno@Correo.com ", "uno@correo.com", "", "dos@correo.com"])
        assert fetch_all(store, "SELECT email FROM email_blacklist ORDER BY email") == [
            ("dos@correo.com",),
            ("uno@correo.com",),
        ]
