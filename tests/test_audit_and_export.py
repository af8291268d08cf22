import dataclasses

import pytest

from core.domain import NoticeType
from core.errors import AuditWriteError
from notices.audit_writer import (
    AUDIT_HEADER,
    FILE_TYPE_EXCLUSIONS,
    REWRITTEN_BY,
    ExclusionAuditWriter,
    ExclusionQuery,
)
from notices.exporter import CsvReplaySheet, ExportJob, ResultExporter, SheetProjection, part_file_name, part_sizes
from conftest import read_csv, read_sheet, stage_rows, write_csv

BASCAR = "data_source_bascar"


def _query(predicate: str = "TRUE", params=()) -> ExclusionQuery:
    return ExclusionQuery(
        table=BASCAR,
        predicate=predicate,
        identifier_sql="num_tomador",
        value_sql="valor_total_fact",
        reason_sql="'Prueba'",
        params=tuple(params),
    )


def _stage_bascar(store, run, count: int, start: int = 1):
    stage_rows(store, BASCAR, run.id, [
        {"num_tomador": str(i), "valor_total_fact": str(i * 100) if i % 2 else None}
        for i in range(start, start + count)
    ])


class TestExclusionAudit:
    def test_rewrite_then_append(self, store, config, make_run):
        run = make_run()
        _stage_bascar(store, run, 5)
        writer = ExclusionAuditWriter(store=store, config=config)

        assert writer.rewrite(run, _query("CAST(num_tomador AS INTEGER) <= ?", [3]), step_name="first") == 3
        assert writer.append(run, _query("CAST(num_tomador AS INTEGER) > ?", [3]), step_name="second") == 2

        lines = read_csv(writer.audit_path(run.id))
        assert lines[0] == AUDIT_HEADER
        assert [line[1] for line in lines[1:]] == ["1", "2", "3", "4", "5"]
        first = lines[1]
        assert first[0] == "15/09/2025"
        assert first[2:] == ["202508", NoticeType.CONSTITUCION_MORA_APORTANTES.display_name, "100", "Prueba"]
        # a NULL value is written as 0
        assert lines[2][4] == "0"

        result = store.get_result_file(run.id, FILE_TYPE_EXCLUSIONS)
        assert result.records_count == 5
        assert result.metadata["step_first"] == 3
        assert result.metadata["step_second"] == 2
        assert result.path == f"{run.id}/excluidos_{run.id}.csv"

    def test_rewrite_only_once_per_run(self, store, config, make_run):
        run = make_run()
        _stage_bascar(store, run, 1)
        writer = ExclusionAuditWriter(store=store, config=config)
        writer.rewrite(run, _query(), step_name="first")
        with pytest.raises(AuditWriteError):
            writer.rewrite(run, _query(), step_name="again")

    def test_rewrite_guard_survives_a_new_writer(self, store, config, make_run):
        run = make_run()
        _stage_bascar(store, run, 2)
        ExclusionAuditWriter(store=store, config=config).rewrite(run, _query(), step_name="first")

        with pytest.raises(AuditWriteError, match="first"):
            ExclusionAuditWriter(store=store, config=config).rewrite(run, _query(), step_name="again")
        assert store.get_result_file(run.id, FILE_TYPE_EXCLUSIONS).metadata[REWRITTEN_BY] == "first"
        assert len(read_csv(ExclusionAuditWriter(store=store, config=config).audit_path(run.id))) == 3

    def test_append_creates_the_file_with_header(self, store, config, make_run):
        run = make_run()
        _stage_bascar(store, run, 3)
        writer = ExclusionAuditWriter(store=store, config=config)

        assert writer.append(run, _query(), step_name="only") == 3
        lines = read_csv(writer.audit_path(run.id))
        assert lines[0] == AUDIT_HEADER
        assert len(lines) == 4

    def test_rows_of_other_runs_are_not_audited(self, store, config, make_run):
        run, other = make_run(), make_run()
        _stage_bascar(store, run, 2)
        _stage_bascar(store, other, 4, start=10)
        writer = ExclusionAuditWriter(store=store, config=config)

        assert writer.count(run, _query()) == 2
        assert [r.identifier for r in writer.records(run, _query())] == ["1", "2"]


class TestPartSizes:
    def test_large_export_is_split(self):
        assert part_sizes(200_001, 65_535) == [65_535, 65_535, 65_535, 3_396]

    @pytest.mark.parametrize(
        "total, expected",
        [(0, [0]), (1, [1]), (65_535, [65_535]), (65_536, [65_535, 1])],
    )
    def test_boundaries(self, total, expected):
        assert part_sizes(total, 65_535) == expected

    def test_invalid_cap(self):
        with pytest.raises(ValueError):
            part_sizes(10, 0)

    def test_part_file_names(self):
        assert part_file_name("Comunicado_202508", 0, 1) == "Comunicado_202508.xlsx"
        assert part_file_name("Comunicado_202508", 1, 3) == "Comunicado_202508_parte2.xlsx"


class TestResultExporter:
    def _exporter(self, store, config, max_rows: int) -> ResultExporter:
        return ResultExporter(store=store, config=dataclasses.replace(config, max_rows_per_sheet=max_rows))

    def _projection(self, run, title: str, upper: int) -> SheetProjection:
        return SheetProjection(
            title=title,
            headers=["NIT", "VALOR"],
            select_sql=(
                f"SELECT num_tomador, valor_total_fact FROM {BASCAR} "
                "WHERE run_id = ? AND CAST(num_tomador AS INTEGER) <= ? ORDER BY id"
            ),
            params=(run.id, upper),
        )

    def test_single_file_when_under_the_cap(self, store, config, make_run):
        run = make_run()
        _stage_bascar(store, run, 3)
        job = ExportJob(file_type="comunicado", base_name="Salida", primary=self._projection(run, "Empresas", 99))

        [result] = self._exporter(store, config, 10).export(run, job)

        assert result.file_name == "Salida.xlsx"
        assert result.records_count == 3
        rows = read_sheet(config.results_dir / result.path, "Empresas")
        assert rows == [["NIT", "VALOR"], ["1", "100"], ["2", None], ["3", "300"]]

    def test_overflow_splits_both_sheets_with_the_same_offsets(self, store, config, make_run):
        run = make_run()
        _stage_bascar(store, run, 7)
        job = ExportJob(
            file_type="comunicado",
            base_name="Salida",
            primary=self._projection(run, "Empresas", 99),
            secondary=self._projection(run, "Detalle", 4),
        )

        results = self._exporter(store, config, 3).export(run, job)

        assert [r.file_name for r in results] == ["Salida_parte1.xlsx", "Salida_parte2.xlsx", "Salida_parte3.xlsx"]
        assert [r.records_count for r in results] == [3, 3, 1]
        assert [r.metadata["secondary_records"] for r in results] == [3, 1, 0]
        assert all(r.metadata["total_parts"] == 3 for r in results)

        second = config.results_dir / results[1].path
        assert [row[0] for row in read_sheet(second, "Empresas")[1:]] == ["4", "5", "6"]
        assert [row[0] for row in read_sheet(second, "Detalle")[1:]] == ["4"]
        assert read_sheet(config.results_dir / results[2].path, "Detalle") == [["NIT", "VALOR"]]

    def test_replayed_csv_is_enriched_page_by_page(self, store, config, make_run, tmp_path):
        run = make_run()
        _stage_bascar(store, run, 2)
        detail = write_csv(tmp_path / "detalle.csv", ["NIT", "NOMBRE"], [[str(i), f"n{i}"] for i in range(1, 5)])
        pages: list[int] = []

        def enrich(page):
            pages.append(len(page))
            return [row + ["X"] for row in page]

        job = ExportJob(
            file_type="comunicado",
            base_name="Salida",
            primary=self._projection(run, "Empresas", 99),
            secondary=CsvReplaySheet(title="Expuestos", source_path=detail, extra_headers=["EXTRA"], enrich=enrich),
        )

        results = self._exporter(store, config, 3).export(run, job)

        assert [r.file_name for r in results] == ["Salida_parte1.xlsx", "Salida_parte2.xlsx"]
        first = read_sheet(config.results_dir / results[0].path, "Expuestos")
        assert first == [["NIT", "NOMBRE", "EXTRA"], ["1", "n1", "X"], ["2", "n2", "X"], ["3", "n3", "X"]]
        assert read_sheet(config.results_dir / results[1].path, "Expuestos")[1:] == [["4", "n4", "X"]]
        # export_page_size is 2 in the test config
        assert pages == [2, 1, 1]

    def test_replay_rows_are_counted_as_csv_records(self, store, config, make_run, tmp_path):
        run = make_run()
        _stage_bascar(store, run, 2)
        detail = write_csv(
            tmp_path / "detalle.csv",
            ["NIT", "DIRECCION"],
            [["1", "CALLE 1 # 2-3"], ["2", "CALLE 4 # 5-6\nPISO 2"], ["3", "CALLE 7 # 8-9"]],
        )
        job = ExportJob(
            file_type="comunicado",
            base_name="Salida",
            primary=self._projection(run, "Empresas", 99),
            secondary=CsvReplaySheet(title="Expuestos", source_path=detail),
        )
        exporter = self._exporter(store, config, 3)

        assert exporter.count(job.secondary) == 3
        [result] = exporter.export(run, job)

        assert result.file_name == "Salida.xlsx"
        assert result.metadata["secondary_records"] == 3
        rows = read_sheet(config.results_dir / result.path, "Expuestos")
        assert rows[2] == ["2", "CALLE 4 # 5-6\nPISO 2"]

    def test_missing_replay_file_gives_empty_sheet(self, store, config, make_run, tmp_path):
        run = make_run()
        _stage_bascar(store, run, 1)
        job = ExportJob(
            file_type="comunicado",
            base_name="Salida",
            primary=self._projection(run, "Empresas", 99),
            secondary=CsvReplaySheet(title="Expuestos", source_path=tmp_path / "none.csv"),
        )

        [result] = self._exporter(store, config, 3).export(run, job)

        assert not any(any(row) for row in read_sheet(config.results_dir / result.path, "Expuestos"))
