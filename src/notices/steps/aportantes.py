"""
Steps specific to constitucion_mora_aportantes: employers (BASCAR) in arrears.
"""
import csv
import logging
from pathlib import Path
from typing import Any

from core.settings import OBSERVATION_NO_ACTIVE_WORKERS, SYSTEM_COL_ID, SYSTEM_COL_RUN_ID
from core.sql import sql_quote
from notices.context import ProcessingContext
from notices.exporter import CsvReplaySheet, ExportJob, Row, SheetProjection
from notices.periods import period_label, require_run_period
from notices.rules import valid_address_sql
from notices.schema import ColumnSpec, IndexSpec
from notices.steps.base import ProcessingStep
from notices.steps.common import ExcludeRowsStep

logger = logging.getLogger(__name__)


BASCAR = "BASCAR"
PAGAPL = "PAGAPL"
BAPRPO = "BAPRPO"
DATPOL = "DATPOL"
DETTRA = "DETTRA"

FILE_TYPE_WORKER_DETAIL = "detalle_trabajadores"
FILE_TYPE_NOTICE = "comunicado_excel"

WORKER_DETAIL_HEADER = [
    "TPO_IDEN_TRABAJADOR", "NRO_IDEN", "AÑO", "MES", "TPO_EMP", "NRO_IDVI", "CLS_RICT",
    "FCH_INVI", "PÓLIZA", "VALOR", "TPO_COT", "FCH_FIN", "TRAB_EXPUESTOS",
]
EMPLOYERS_HEADER = [
    "NIT", "REPRESENTANTE LEGAL", "CORREO", "CÉDULA", "NOMBRE EMPRESA", "CARGO", "DIRECCIÓN",
    "CIUDAD", "Contrato", "AÑO1", "MES1", "VALOR1", "AFILIADOS1", "CONSECUTIVO", "TIP IND", "COD CIUDAD",
]

# Employer document in the worker detail lines (NRO_IDVI)
WORKER_DETAIL_EMPLOYER_INDEX = 5

NO_WORKERS_RISK_CLASS = "I"
NO_WORKERS_START_DATE = "01010001"
NO_WORKERS_CONTRIBUTOR_TYPE = "0"
NO_WORKERS_EXPOSED = 1
END_DATE_NOT_RECORDED = "NO REGISTRA"

_ROMAN = {1: "I", 2: "II", 3: "III", 4: "IV", 5: "V"}

COLOMBIAN_AMOUNT_PATTERN = r"^-?[0-9]{1,3}(\.[0-9]{3})*(,[0-9]+)?$"


def risk_class_roman(value: Any) -> str:
    try:
        return _ROMAN.get(int(str(value).strip()), "")
    except (TypeError, ValueError):
        return ""


def compact_date(value: str | None) -> str:
    """2025-08-01 / 01/08/2025 -> 20250801 / 01082025"""
    return (value or "").strip().replace("-", "").replace("/", "")


def worker_detail_path(context: ProcessingContext, results_dir: Path) -> Path:
    return results_dir / f"{FILE_TYPE_WORKER_DETAIL}_{context.run_id}.csv"


# ----------------------------
# Sanitizing and period
# ----------------------------
class SanitizeAmountsStep(ProcessingStep):
    """
    BASCAR.valor_total_fact: '1.234.567,89' -> '1234567.89'.

    Only values in Colombian notation that carry a separator are rewritten.
    """

    name = "sanitize_numeric_fields"

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, BASCAR)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        table = self.table(BASCAR)
        updated = self.execute_sql(
            f"""
            UPDATE {table}
            SET valor_total_fact = REPLACE(REPLACE(TRIM(valor_total_fact), '.', ''), ',', '.')
            WHERE {SYSTEM_COL_RUN_ID} = ?
              AND valor_total_fact IS NOT NULL
              AND regexp_matches(TRIM(valor_total_fact), {sql_quote(COLOMBIAN_AMOUNT_PATTERN)})
              AND (POSITION('.' IN valor_total_fact) > 0 OR POSITION(',' IN valor_total_fact) > 0)
            """,
            [context.run_id],
        )
        logger.info("[%s] %s amounts normalised", self.name, updated)
        return context.with_step_result(self.name, {"valor_total_fact": updated})


class DeriveBascarPeriodStep(ProcessingStep):
    """periodo = YYYYMM from fecha_inicio_vig (D/M/YYYY), where still NULL."""

    name = "derive_bascar_period"

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, BASCAR)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        table = self.table(BASCAR)
        self.services.schema.ensure(table, [ColumnSpec("periodo")])
        updated = self.execute_sql(
            f"""
            UPDATE {table}
            SET periodo = SUBSTR(split_part(TRIM(fecha_inicio_vig), '/', 3), 1, 4)
                          || LPAD(split_part(TRIM(fecha_inicio_vig), '/', 2), 2, '0')
            WHERE {SYSTEM_COL_RUN_ID} = ?
              AND periodo IS NULL
              AND regexp_matches(TRIM(fecha_inicio_vig), '^[0-9]{{1,2}}/[0-9]{{1,2}}/[0-9]{{4}}')
            """,
            [context.run_id],
        )
        logger.info("[%s] period derived for %s rows", self.name, updated)
        return context.with_step_result(self.name, {"derived": updated})


class ExcludeOutOfPeriodStep(ExcludeRowsStep):
    """BASCAR rows whose periodo is missing or differs from the run's period."""

    def __init__(self, services):
        super().__init__(
            services,
            name="filter_bascar_by_period",
            source=BASCAR,
            predicate="periodo IS NULL OR periodo <> ?",
            identifier_sql="num_tomador",
            value_sql="valor_total_fact",
            reason_sql=sql_quote("Fuera del periodo"),
            required_columns=["periodo"],
        )

    def should_execute(self, context: ProcessingContext) -> bool:
        return not context.run.is_all_periods and super().should_execute(context)

    def bind_params(self, context: ProcessingContext) -> tuple[Any, ...]:
        return (require_run_period(context.run),)


class FilterPagaplSheetsStep(ProcessingStep):
    """Drops PAGAPL rows loaded from a sheet whose name lacks the period year."""

    name = "filter_pagapl_by_period"

    def should_execute(self, context: ProcessingContext) -> bool:
        return not context.run.is_all_periods and self.has_rows(context, PAGAPL)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        period = require_run_period(context.run)
        deleted = self.execute_sql(
            f"""
            DELETE FROM {self.table(PAGAPL)}
            WHERE {SYSTEM_COL_RUN_ID} = ?
              AND sheet_name IS NOT NULL
              AND POSITION(CAST(? AS VARCHAR) IN sheet_name) = 0
            """,
            [context.run_id, period[:4]],
        )
        logger.info("[%s] %s PAGAPL rows from other years removed", self.name, deleted)
        return context.with_step_result(self.name, {"deleted": deleted})


# ----------------------------
# PSI and workers
# ----------------------------
class IdentifyPsiStep(ProcessingStep):
    """BASCAR.psi <- BAPRPO.pol_independiente, joined on nit."""

    name = "identify_psi"

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, BASCAR, BAPRPO)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        table = self.table(BASCAR)
        self.services.schema.ensure(table, [ColumnSpec("psi")], [IndexSpec("idx_bascar_nit", ("nit",))])

        updated = self.execute_sql(
            f"""
            UPDATE {table} AS t
            SET psi = p.pol_independiente
            FROM (
                SELECT TRIM(nit) AS match_key,
                       TRIM(pol_independiente) AS pol_independiente,
                       ROW_NUMBER() OVER (PARTITION BY TRIM(nit) ORDER BY {SYSTEM_COL_ID}) AS rn
                FROM {self.table(BAPRPO)}
                WHERE {SYSTEM_COL_RUN_ID} = ? AND nit IS NOT NULL AND TRIM(nit) <> ''
            ) AS p
            WHERE t.{SYSTEM_COL_RUN_ID} = ?
              AND p.rn = 1
              AND TRIM(t.nit) = p.match_key
            """,
            [context.run_id, context.run_id],
        )

        without_psi = self.store.count_rows(table, context.run_id, "psi IS NULL OR psi = ''")
        if without_psi:
            logger.warning("[%s] %s BASCAR rows without PSI information", self.name, without_psi)
        logger.info("[%s] PSI set on %s rows", self.name, updated)
        return context.with_step_result(self.name, {"updated": updated, "without_psi": without_psi})


class CountWorkersStep(ProcessingStep):
    """
    cantidad_trabajadores = distinct DETTRA workers per employer document.

    Employers with no worker get 1 and the observation 'Sin trabajadores activos'.
    """

    name = "count_dettra_workers"

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, BASCAR)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        table = self.table(BASCAR)
        self.services.schema.ensure(
            table,
            [ColumnSpec("cantidad_trabajadores", "INTEGER"), ColumnSpec("observacion_trabajadores")],
            [IndexSpec("idx_bascar_num_tomador", ("num_tomador",))],
        )

        with_workers = self.execute_sql(
            f"""
            UPDATE {table} AS t
            SET cantidad_trabajadores = w.workers,
                observacion_trabajadores = NULL
            FROM (
                SELECT TRIM(nro_documto) AS employer, COUNT(DISTINCT nit) AS workers
                FROM {self.table(DETTRA)}
                WHERE {SYSTEM_COL_RUN_ID} = ? AND nro_documto IS NOT NULL
                GROUP BY 1
            ) AS w
            WHERE t.{SYSTEM_COL_RUN_ID} = ?
              AND TRIM(t.num_tomador) = w.employer
            """,
            [context.run_id, context.run_id],
        )
        without_workers = self.execute_sql(
            f"""
            UPDATE {table}
            SET cantidad_trabajadores = 1,
                observacion_trabajadores = ?
            WHERE {SYSTEM_COL_RUN_ID} = ? AND cantidad_trabajadores IS NULL
            """,
            [OBSERVATION_NO_ACTIVE_WORKERS, context.run_id],
        )

        logger.info("[%s] %s employers with workers, %s without", self.name, with_workers, without_workers)
        return context.with_step_result(
            self.name, {"with_workers": with_workers, "without_workers": without_workers}
        )


class CreateWorkerDetailStep(ProcessingStep):
    """
    detalle_trabajadores_<run>.csv: one line per active DETTRA worker of a BASCAR
    employer, written page by page.
    """

    name = "create_worker_detail"

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, BASCAR)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        config = self.services.config
        path = worker_detail_path(context, config.run_dir(context.run_id))
        run = context.run
        page_size = config.audit_page_size

        sql = f"""
            SELECT d.tipo_doc,
                   d.nit,
                   COALESCE(CAST(? AS VARCHAR), SUBSTR(b.periodo, 1, 4)),
                   COALESCE(CAST(? AS VARCHAR), SUBSTR(b.periodo, 5, 2)),
                   b.ident_asegurado,
                   d.nro_documto,
                   d.riesgo,
                   d.fecha_ini_cobert,
                   b.num_poliza,
                   ROUND(TRY_CAST(b.valor_total_fact AS DOUBLE) / NULLIF(b.cantidad_trabajadores, 0), 2),
                   d.tipo_cotizante,
                   b.cantidad_trabajadores
            FROM {self.table(DETTRA)} AS d
            INNER JOIN {self.table(BASCAR)} AS b ON TRIM(d.nro_documto) = TRIM(b.num_tomador)
            WHERE d.{SYSTEM_COL_RUN_ID} = ? AND b.{SYSTEM_COL_RUN_ID} = ?
            ORDER BY d.{SYSTEM_COL_ID}, b.{SYSTEM_COL_ID}
            LIMIT ? OFFSET ?
        """
        year = run.period_year or None
        month = run.period_month or None

        written = 0
        with open(path, "w", encoding="utf-8", newline="") as f:
            writer = csv.writer(f, delimiter=";", lineterminator="\n")
            writer.writerow(WORKER_DETAIL_HEADER)
            while True:
                rows = self.conn.execute(
                    sql, [year, month, context.run_id, context.run_id, page_size, written]
                ).fetchall()
                for tipo_doc, nit, anio, mes, tpo_emp, nro_idvi, riesgo, fch_invi, poliza, valor, tpo_cot, workers in rows:
                    writer.writerow([
                        tipo_doc or "", nit or "", anio or "", mes or "", tpo_emp or "", nro_idvi or "",
                        risk_class_roman(riesgo), compact_date(fch_invi), poliza or "",
                        valor if valor is not None else 0, tpo_cot or "", END_DATE_NOT_RECORDED, workers or 0,
                    ])
                written += len(rows)
                if len(rows) < page_size:
                    break

        self.store.upsert_result_file(
            run_id=context.run_id,
            file_type=FILE_TYPE_WORKER_DETAIL,
            file_name=path.name,
            path=config.relative_path(path),
            disk=config.results_disk,
            size_bytes=path.stat().st_size,
            records_delta=written,
            metadata={"active_workers": written},
            replace=True,
        )
        logger.info("[%s] %s worker lines written to %s", self.name, written, path.name)
        return context.with_data(worker_detail_path=str(path)).with_step_result(self.name, {"records": written})


class AppendEmployersWithoutWorkersStep(ProcessingStep):
    """Adds one fixed-value detail line per employer flagged 'Sin trabajadores activos'."""

    name = "append_employers_without_workers"

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, BASCAR)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        config = self.services.config
        table = self.table(BASCAR)
        self.services.schema.require_columns(table, ["observacion_trabajadores"])

        path = worker_detail_path(context, config.run_dir(context.run_id))
        if not path.exists():
            logger.warning("[%s] %s did not exist, creating it", self.name, path.name)
            with open(path, "w", encoding="utf-8", newline="") as f:
                csv.writer(f, delimiter=";", lineterminator="\n").writerow(WORKER_DETAIL_HEADER)

        run = context.run
        page_size = config.audit_page_size
        sql = f"""
            SELECT ident_asegurado, num_tomador, num_poliza, valor_total_fact, periodo
            FROM {table}
            WHERE {SYSTEM_COL_RUN_ID} = ? AND observacion_trabajadores = ?
            ORDER BY {SYSTEM_COL_ID}
            LIMIT ? OFFSET ?
        """

        appended = 0
        with open(path, "a", encoding="utf-8", newline="") as f:
            writer = csv.writer(f, delimiter=";", lineterminator="\n")
            while True:
                rows = self.conn.execute(
                    sql, [context.run_id, OBSERVATION_NO_ACTIVE_WORKERS, page_size, appended]
                ).fetchall()
                for ident_asegurado, num_tomador, num_poliza, valor, periodo in rows:
                    year = run.period_year or (periodo or "")[:4]
                    month = run.period_month or (periodo or "")[4:6]
                    writer.writerow([
                        ident_asegurado or "", num_tomador or "", year, month, ident_asegurado or "", "",
                        NO_WORKERS_RISK_CLASS, NO_WORKERS_START_DATE, num_poliza or "", valor or 0,
                        NO_WORKERS_CONTRIBUTOR_TYPE, END_DATE_NOT_RECORDED, NO_WORKERS_EXPOSED,
                    ])
                appended += len(rows)
                if len(rows) < page_size:
                    break

        self.store.upsert_result_file(
            run_id=context.run_id,
            file_type=FILE_TYPE_WORKER_DETAIL,
            file_name=path.name,
            path=config.relative_path(path),
            disk=config.results_disk,
            size_bytes=path.stat().st_size,
            records_delta=appended,
            metadata={"without_workers": appended},
        )
        logger.info("[%s] %s employers without workers appended", self.name, appended)
        return context.with_step_result(self.name, {"appended": appended})


# ----------------------------
# Contact data
# ----------------------------
class AddDatpolCityCodeStep(ProcessingStep):
    """city_code = cod_dpto || cod_ciudad and departamento = cod_dpto, from DATPOL."""

    name = "add_city_code"

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, BASCAR, DATPOL)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        table = self.table(BASCAR)
        self.services.schema.ensure(table, [ColumnSpec("city_code"), ColumnSpec("departamento")])

        updated = self.execute_sql(
            f"""
            UPDATE {table} AS t
            SET city_code = d.city_code,
                departamento = d.departamento
            FROM (
                SELECT TRIM(nro_documto) AS match_key,
                       TRIM(cod_dpto) AS departamento,
                       TRIM(cod_dpto) || TRIM(cod_ciudad) AS city_code,
                       ROW_NUMBER() OVER (PARTITION BY TRIM(nro_documto) ORDER BY {SYSTEM_COL_ID}) AS rn
                FROM {self.table(DATPOL)}
                WHERE {SYSTEM_COL_RUN_ID} = ? AND nro_documto IS NOT NULL
            ) AS d
            WHERE t.{SYSTEM_COL_RUN_ID} = ?
              AND d.rn = 1
              AND TRIM(t.num_tomador) = d.match_key
              AND t.city_code IS NULL
            """,
            [context.run_id, context.run_id],
        )
        logger.info("[%s] city code set on %s rows", self.name, updated)
        return context.with_step_result(self.name, {"updated": updated})


class AddOwnAddressStep(ProcessingStep):
    """
    direccion / divipola from the employer's own dir_tom and ciu_tom.

    ciu_tom must be all digits (3+): the first two are the department, the rest the city.
    """

    name = "add_own_address"

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, BASCAR)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        table = self.table(BASCAR)
        self.services.schema.ensure(table, [ColumnSpec("direccion"), ColumnSpec("divipola")])

        updated = self.execute_sql(
            f"""
            UPDATE {table}
            SET direccion = TRIM(dir_tom),
                divipola = LPAD(SUBSTR(TRIM(ciu_tom), 1, 2), 2, '0') || LPAD(SUBSTR(TRIM(ciu_tom), 3), 3, '0')
            WHERE {SYSTEM_COL_RUN_ID} = ?
              AND (direccion IS NULL OR TRIM(direccion) = '')
              AND {valid_address_sql('dir_tom')}
              AND ciu_tom IS NOT NULL
              AND regexp_matches(TRIM(ciu_tom), '^[0-9]{{3,}}$')
            """,
            [context.run_id],
        )
        logger.info("[%s] own address used for %s rows", self.name, updated)
        return context.with_step_result(self.name, {"updated": updated})


# ----------------------------
# Export
# ----------------------------
class ExportEmployersStep(ProcessingStep):
    """
    Constitucion_en_mora_periodo_cotizacion_<period>[_parteN].xlsx

    "Empresas" comes from BASCAR; "Expuestos" replays the worker detail CSV and
    adds each employer's delivery type.
    """

    name = "export_employers"

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, BASCAR)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        run = context.run
        table = self.table(BASCAR)
        self.services.schema.require_columns(
            table, ["email", "direccion", "divipola", "cantidad_trabajadores", "consecutivo", "tipo_de_envio"]
        )

        employers = SheetProjection(
            title="Empresas",
            headers=EMPLOYERS_HEADER,
            select_sql=f"""
                SELECT num_tomador,
                       'COPASST ' || COALESCE(nom_tomador, ''),
                       email,
                       CAST(? AS VARCHAR),
                       'COPASST ' || COALESCE(nom_tomador, ''),
                       'COPASST',
                       direccion,
                       ciu_tom,
                       num_poliza,
                       SUBSTR(periodo, 1, 4),
                       SUBSTR(periodo, 5, 2),
                       valor_total_fact,
                       cantidad_trabajadores,
                       consecutivo,
                       ident_asegurado,
                       divipola
                FROM {table}
                WHERE {SYSTEM_COL_RUN_ID} = ?
                ORDER BY {SYSTEM_COL_ID}
            """,
            params=(run.official_id or "", context.run_id),
        )

        detail = worker_detail_path(context, self.services.config.run_dir(context.run_id))
        exposed = CsvReplaySheet(
            title="Expuestos",
            source_path=detail,
            extra_headers=["TIPO DE ENVIO"],
            enrich=lambda page: self._with_delivery_type(context, page),
        )

        job = ExportJob(
            file_type=FILE_TYPE_NOTICE,
            base_name=f"Constitucion_en_mora_periodo_cotizacion_{period_label(run)}",
            primary=employers,
            secondary=exposed,
        )
        files = self.services.exporter.export(run, job)
        return context.with_step_result(
            self.name, {"files": [f.file_name for f in files], "records": sum(f.records_count for f in files)}
        )

    def _with_delivery_type(self, context: ProcessingContext, page: list[Row]) -> list[Row]:
        employers = sorted({
            row[WORKER_DETAIL_EMPLOYER_INDEX].strip()
            for row in page
            if len(row) > WORKER_DETAIL_EMPLOYER_INDEX and row[WORKER_DETAIL_EMPLOYER_INDEX].strip()
        })
        delivery: dict[str, str] = {}
        if employers:
            delivery = dict(
                self.conn.execute(
                    f"""
                    SELECT TRIM(num_tomador), MIN(COALESCE(tipo_de_envio, ''))
                    FROM {self.table(BASCAR)}
                    WHERE {SYSTEM_COL_RUN_ID} = ?
                      AND list_contains(CAST(? AS VARCHAR[]), TRIM(num_tomador))
                    GROUP BY 1
                    """,
                    [context.run_id, employers],
                ).fetchall()
            )
        return [
            row + [delivery.get(row[WORKER_DETAIL_EMPLOYER_INDEX].strip(), "") if len(row) > WORKER_DETAIL_EMPLOYER_INDEX else ""]
            for row in page
        ]
