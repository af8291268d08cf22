import json
from datetime import date, datetime
from decimal import Decimal

import pytest

from core.errors import CSVExtractionError, SourceFileNotFoundError
from core.settings import ENCODING_SAMPLE_BYTES
from ingestion.bulk_loader import BulkCsvLoader
from ingestion.extract import (
    decode_line,
    detect_encoding,
    line_encodings,
    parse_line,
    rename_duplicate_column_headers,
)
from ingestion.resilient_importer import ERROR_COLUMN_MISMATCH, ERROR_DECODE, ResilientCsvImporter
from ingestion.spreadsheet_reader import SpreadsheetStreamingReader, render_cell, select_sheets
from conftest import fetch_all, write_csv, write_xlsx

PAGLOG_HEADER = ["Nit Empresa", "Planilla", "Fecha Pago", "Periodo Pago", "Valor"]
DATPOL_HEADER = ["NRO_DOCUMTO", "NUM_POLI", "COD_DPTO", "COD_CIUDAD"]


def _paglog_row(i: int) -> list[str]:
    return [f"9000{i:05d}", f"PL{i}", "2025-08-10", "202508", str(1000 + i)]


class TestExtractHelpers:
    def test_duplicate_headers_get_suffixes(self):
        assert rename_duplicate_column_headers(["ID", "ID", "id", "Name"]) == ["ID", "ID.1", "id.2", "Name"]

    def test_parse_line_keeps_quoted_delimiters(self):
        assert parse_line('a;"b;c";d', delimiter=";", quote_char='"') == ["a", "b;c", "d"]
        assert parse_line('a;"b', delimiter=";", quote_char="") == ["a", '"b']

    def test_encoding_detection(self, tmp_path):
        utf8 = tmp_path / "utf8.csv"
        utf8.write_text("CIUDAD\nBogotá\n", encoding="utf-8")
        legacy = tmp_path / "legacy.csv"
        legacy.write_bytes("CIUDAD\nBogotá\n".encode("latin-1"))

        assert detect_encoding(utf8, "utf-8", "latin-1") == "utf-8-sig"
        assert detect_encoding(legacy, "utf-8", "latin-1") == "latin-1"

    def test_lines_decode_with_the_first_encoding_that_fits(self):
        encodings = line_encodings("utf-8-sig", "utf-8", "latin-1")
        assert encodings == ["utf-8-sig", "utf-8", "latin-1"]
        assert line_encodings("latin-1", "utf-8", "latin-1") == ["latin-1", "utf-8"]
        assert decode_line("Bogotá".encode("utf-8"), encodings) == "Bogotá"
        assert decode_line("Bogotá".encode("latin-1"), encodings) == "Bogotá"
        assert decode_line(b"Bogot\xe1", ["utf-8", "ascii"]) is None

    def test_missing_file(self, tmp_path):
        with pytest.raises(SourceFileNotFoundError):
            detect_encoding(tmp_path / "nope.csv", "utf-8", "latin-1")


class TestResilientImporter:
    def test_chunks_follow_chunk_size(self, store, source_specs, make_run, tmp_path):
        run = make_run()
        path = write_csv(tmp_path / "paglog.csv", PAGLOG_HEADER, [_paglog_row(i) for i in range(25)])

        result = ResilientCsvImporter(store=store, chunk_size=10).import_file(source_specs["PAGLOG"], path, run_id=run.id)

        assert (result.total, result.success, result.error) == (25, 25, 0)
        assert result.batch_sizes == (10, 10, 5)
        assert store.count_rows("data_source_paglog", run.id) == 25

    def test_malformed_lines_are_logged_and_skipped(self, store, source_specs, make_run, tmp_path):
        run = make_run()
        rows = [_paglog_row(i) for i in range(100)]
        # three short rows scattered through the file
        for position in (5, 50, 99):
            rows.insert(position, ["bad", "row"])
        path = write_csv(tmp_path / "paglog.csv", PAGLOG_HEADER, rows)

        result = ResilientCsvImporter(store=store, chunk_size=10).import_file(source_specs["PAGLOG"], path, run_id=run.id)

        assert (result.total, result.success, result.error, result.errors_logged) == (103, 100, 3, 3)
        errors = store.list_import_errors(run.id, "PAGLOG")
        assert [e["line_number"] for e in errors] == [7, 52, 101]
        assert {e["error_type"] for e in errors} == {ERROR_COLUMN_MISMATCH}
        assert errors[0]["line_content"] == "bad;row"

    def test_legacy_encoded_file(self, store, source_specs, make_run, tmp_path):
        run = make_run()
        header = ["IDENTIFICACION_APORTANTE", "EMAIL", "DIRECCION", "RAZON_SOCIAL"]
        path = write_csv(
            tmp_path / "pagpla.csv",
            header,
            [["800197268", "a@b.com", "Calle 5 # 4-3 Bogotá", "Compañía Ñandú"]],
            encoding="latin-1",
        )

        result = ResilientCsvImporter(store=store).import_file(source_specs["PAGPLA"], path, run_id=run.id)

        assert result.success == 1
        [(direccion, payload)] = fetch_all(store, "SELECT direccion, data FROM data_source_pagpla WHERE run_id = ?", [run.id])
        assert direccion == "Calle 5 # 4-3 Bogotá"
        assert json.loads(payload) == {"RAZON_SOCIAL": "Compañía Ñandú"}

    def test_legacy_byte_after_the_encoding_sample(self, store, source_specs, make_run, tmp_path):
        run = make_run()
        path = write_csv(tmp_path / "paglog.csv", PAGLOG_HEADER, [_paglog_row(i) for i in range(400)])
        assert path.stat().st_size > ENCODING_SAMPLE_BYTES
        with open(path, "ab") as f:
            f.write("900999999;PLCompañía;2025-08-10;202508;1\n".encode("latin-1"))

        result = ResilientCsvImporter(store=store, chunk_size=100).import_file(
            source_specs["PAGLOG"], path, run_id=run.id
        )

        assert (result.total, result.success, result.error) == (401, 401, 0)
        assert fetch_all(
            store, "SELECT planilla FROM data_source_paglog WHERE run_id = ? AND nit_empresa = ?", [run.id, "900999999"]
        ) == [("PLCompañía",)]

    def test_line_in_no_known_encoding_is_logged(self, store, source_specs, make_run, tmp_path):
        run = make_run()
        spec = source_specs["PAGLOG"]
        ascii_legacy = spec.model_copy(update={"source": spec.source.model_copy(update={"legacy_encoding": "ascii"})})
        path = write_csv(tmp_path / "paglog.csv", PAGLOG_HEADER, [_paglog_row(i) for i in range(400)])
        with open(path, "ab") as f:
            f.write("900999999;PLCompañía;2025-08-10;202508;1\n".encode("latin-1"))
            f.write(";".join(_paglog_row(400)).encode("ascii") + b"\n")

        result = ResilientCsvImporter(store=store, chunk_size=100).import_file(ascii_legacy, path, run_id=run.id)

        assert (result.total, result.success, result.error, result.errors_logged) == (402, 401, 1, 1)
        assert store.count_rows("data_source_paglog", run.id) == 401
        [error] = store.list_import_errors(run.id, "PAGLOG")
        assert (error["line_number"], error["error_type"]) == (402, ERROR_DECODE)
        assert error["line_content"].startswith("900999999;PLCompa")

    def test_reimport_replaces_run_rows(self, store, source_specs, make_run, tmp_path):
        run = make_run()
        path = write_csv(tmp_path / "paglog.csv", PAGLOG_HEADER, [_paglog_row(i) for i in range(4)])
        importer = ResilientCsvImporter(store=store, chunk_size=3)

        importer.import_file(source_specs["PAGLOG"], path, run_id=run.id)
        importer.import_file(source_specs["PAGLOG"], path, run_id=run.id)

        assert store.count_rows("data_source_paglog", run.id) == 4

    def test_reimport_without_valid_lines_still_replaces(self, store, source_specs, make_run, tmp_path):
        run = make_run()
        importer = ResilientCsvImporter(store=store, chunk_size=3)
        good = write_csv(tmp_path / "good.csv", PAGLOG_HEADER, [_paglog_row(i) for i in range(4)])
        bad = write_csv(tmp_path / "bad.csv", PAGLOG_HEADER, [["bad", "row"], ["also", "bad"]])

        importer.import_file(source_specs["PAGLOG"], good, run_id=run.id)
        result = importer.import_file(source_specs["PAGLOG"], bad, run_id=run.id)

        assert (result.success, result.error, result.batch_sizes) == (0, 2, ())
        assert store.count_rows("data_source_paglog", run.id) == 0
        assert len(store.list_import_errors(run.id, "PAGLOG")) == 2

    def test_reimport_keeps_previous_rows_when_asked(self, store, source_specs, make_run, tmp_path):
        run = make_run()
        importer = ResilientCsvImporter(store=store, chunk_size=3)
        path = write_csv(tmp_path / "paglog.csv", PAGLOG_HEADER, [_paglog_row(i) for i in range(4)])

        importer.import_file(source_specs["PAGLOG"], path, run_id=run.id)
        importer.import_file(source_specs["PAGLOG"], path, run_id=run.id, replace=False)

        assert store.count_rows("data_source_paglog", run.id) == 8

    def test_missing_required_header(self, store, source_specs, make_run, tmp_path):
        run = make_run()
        path = write_csv(tmp_path / "paglog.csv", ["Nit Empresa", "Valor"], [["1", "2"]])
        with pytest.raises(CSVExtractionError, match="periodo_pago"):
            ResilientCsvImporter(store=store).import_file(source_specs["PAGLOG"], path, run_id=run.id)


class TestBulkLoader:
    def test_load_maps_columns_and_payload(self, store, source_specs, make_run, tmp_path):
        run = make_run()
        path = write_csv(
            tmp_path / "datpol.csv",
            [*DATPOL_HEADER, "OBS", "OBS"],
            [["800197268", "P1", "11", "001", "uno", "dos"], ["860034313", "", "05", "001", "", "x;y"]],
        )

        result = BulkCsvLoader(store=store).load_file(source_specs["DATPOL"], path, run_id=run.id)

        assert result.rows_loaded == 2
        rows = fetch_all(
            store,
            "SELECT nro_documto, num_poli, cod_dpto, data FROM data_source_datpol WHERE run_id = ? ORDER BY id",
            [run.id],
        )
        assert rows[0][:3] == ("800197268", "P1", "11")
        assert json.loads(rows[0][3]) == {"OBS": "uno", "OBS.1": "dos"}
        # empty strings are stored as NULL in promoted columns
        assert rows[1][1] is None
        assert json.loads(rows[1][3])["OBS.1"] == "x;y"

    def test_reload_is_idempotent(self, store, source_specs, make_run, tmp_path):
        run = make_run()
        path = write_csv(tmp_path / "datpol.csv", DATPOL_HEADER, [[str(i), "", "11", "001"] for i in range(7)])
        loader = BulkCsvLoader(store=store)

        loader.load_file(source_specs["DATPOL"], path, run_id=run.id)
        loader.load_file(source_specs["DATPOL"], path, run_id=run.id)

        assert store.count_rows("data_source_datpol", run.id) == 7

    def test_header_only_file(self, store, source_specs, make_run, tmp_path):
        run = make_run()
        path = write_csv(tmp_path / "datpol.csv", DATPOL_HEADER, [])
        assert BulkCsvLoader(store=store).load_file(source_specs["DATPOL"], path, run_id=run.id).rows_loaded == 0

    def test_missing_required_column(self, store, source_specs, make_run, tmp_path):
        run = make_run()
        path = write_csv(tmp_path / "datpol.csv", ["NRO_DOCUMTO", "NUM_POLI"], [["1", "2"]])
        with pytest.raises(CSVExtractionError, match="cod_dpto"):
            BulkCsvLoader(store=store).load_file(source_specs["DATPOL"], path, run_id=run.id)

    def test_ragged_file_rolls_back(self, store, source_specs, make_run, tmp_path):
        run = make_run()
        path = write_csv(tmp_path / "datpol.csv", DATPOL_HEADER, [["1", "", "11", "001"], ["2", "11"]])
        with pytest.raises(CSVExtractionError):
            BulkCsvLoader(store=store).load_file(source_specs["DATPOL"], path, run_id=run.id)
        assert store.count_rows("data_source_datpol", run.id) == 0


class TestSpreadsheetReader:
    @pytest.mark.parametrize(
        "value, expected",
        [
            (None, None),
            (True, "1"),
            (12.0, "12"),
            (12.5, "12.5"),
            (Decimal("10.500"), "10.5"),
            (datetime(2025, 8, 1, 10, 30), "2025-08-01"),
            (date(2025, 8, 1), "2025-08-01"),
            ("  texto ", "texto"),
            (202508, "202508"),
        ],
    )
    def test_render_cell(self, value, expected):
        assert render_cell(value) == expected

    def test_select_sheets(self):
        names = ["Resumen", "Pagos 2024", "Pagos 2025"]
        assert select_sheets(names, "first", period_year="2025") == ["Resumen"]
        assert select_sheets(names, "all", period_year="2025") == names
        assert select_sheets(names, "period_year", period_year="2025") == ["Pagos 2025"]
        assert select_sheets(names, "period_year", period_year="") == names
        assert select_sheets([], "first", period_year="2025") == []

    def test_loads_only_matching_sheets(self, store, source_specs, make_run, tmp_path):
        run = make_run()
        header = ["Identifi", "Periodo", "Aportes"]
        path = write_xlsx(
            tmp_path / "pagapl.xlsx",
            {
                "Pagos 2024": (header, [["1", "202412", 10]]),
                "Pagos 2025": (header, [["2", "202508", 20], [None, None, None], ["3", "202508", 30.5], ["4", 202508, 1]]),
            },
        )

        result = SpreadsheetStreamingReader(store=store, chunk_size=2).load_file(
            source_specs["PAGAPL"], path, run_id=run.id, period_year="2025"
        )

        assert result.sheets == {"Pagos 2025": 3}
        rows = fetch_all(
            store,
            "SELECT identifi, periodo, sheet_name, data FROM data_source_pagapl WHERE run_id = ? ORDER BY identifi",
            [run.id],
        )
        assert [r[:3] for r in rows] == [
            ("2", "202508", "Pagos 2025"),
            ("3", "202508", "Pagos 2025"),
            ("4", "202508", "Pagos 2025"),
        ]
        assert json.loads(rows[1][3]) == {"Aportes": "30.5"}

    def test_sheet_missing_required_column(self, store, source_specs, make_run, tmp_path):
        run = make_run()
        path = write_xlsx(tmp_path / "pagapl.xlsx", {"2025": (["Identifi"], [["1"]])})
        with pytest.raises(CSVExtractionError):
            SpreadsheetStreamingReader(store=store).load_file(source_specs["PAGAPL"], path, run_id=run.id, period_year="2025")
        assert store.count_rows("data_source_pagapl", run.id) == 0
