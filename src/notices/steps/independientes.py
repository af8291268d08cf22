"""
Steps specific to constitucion_mora_independientes: independent workers (DETTRA) in arrears.
"""
import logging
from typing import Any

import pyarrow as pa

from core.settings import RISK_CLASS_RATES, SYSTEM_COL_ID, SYSTEM_COL_RUN_ID
from core.sql import lpad_sql, sql_quote
from notices.check_digit import with_check_digit
from notices.context import ProcessingContext
from notices.exporter import ExportJob, SheetProjection
from notices.keys import composite_key_sql
from notices.periods import period_label, require_run_period
from notices.schema import ColumnSpec, IndexSpec
from notices.steps.base import ProcessingStep

logger = logging.getLogger(__name__)


DETTRA = "DETTRA"
PAGLOG = "PAGLOG"
BASACT = "BASACT"

FILE_TYPE_NOTICE = "comunicado_excel_independientes"

# Contributor types a notice applies to, and the risk classes required for each.
APPLICABLE_CONTRIBUTOR_SQL = (
    "(TRIM(tipo_cotizante) IN ('3', '59') AND TRIM(riesgo) IN ('1', '2', '3'))"
    " OR TRIM(tipo_cotizante) = '16'"
)
CONTRIBUTOR_TYPE_16 = "16"

DOCUMENT_TYPE_CODES = {"C": "CC", "E": "CE", "F": "PE", "T": "TI"}

DETTRA_DERIVED_COLUMNS = [
    "composite_key",
    "cruce_pagapl",
    "cruce_paglog",
    "cruce_paglog_dv",
    "observacion_trabajadores",
    "nombres",
    "codigo_ciudad",
    "correo",
    "direccion",
    "tipo_de_envio",
    "consecutivo",
]
DETTRA_INDEXES = [
    IndexSpec("idx_dettra_run_id", ("run_id",)),
    IndexSpec("idx_dettra_nit", ("nit",)),
    IndexSpec("idx_dettra_run_nit", ("run_id", "nit")),
    IndexSpec("idx_dettra_composite_key", ("composite_key",)),
    IndexSpec("idx_dettra_tipo_cotizante", ("tipo_cotizante",)),
    IndexSpec("idx_dettra_run_tipo_cotizante", ("run_id", "tipo_cotizante")),
]
BASACT_NAME_COLUMNS = [
    "primer_nombre_trabajador",
    "segundo_nombre_trabajador",
    "primer_apellido_trabajador",
    "segundo_apellido_trabajador",
]

INDEPENDENTS_HEADER = [
    "NIT", "REPRESENTANTE LEGAL", "CORREO", "CÉDULA", "NOMBRE EMPRESA", "CARGO", "DIRECCIÓN",
    "CIUDAD", "Contrato", "AÑO1", "MES1", "VALOR1", "AFILIADOS1", "CONSECUTIVO", "TIPO IND", "COD CIUDAD",
]
EXPOSED_WORKERS_HEADER = [
    "TPO_IDEN. TRABAJADOR", "NRO_IDEN", "AÑO", "MES", "TPO_EMP", "NRO_IDVI", "CLS_RICT",
    "FCH_INV", "PÓLIZA", "VALOR", "TPO_COT", "FCH_FIN", "TRAB_EXPUESTOS",
]
INDEPENDENT_ROLE = "CONTRATISTA INDEPENDIENTE"


def contribution_sql(salary_column: str, risk_column: str) -> str:
    """ROUND(salary x rate of the risk class, 0); 0 when either is unusable."""
    cases = " ".join(f"WHEN {sql_quote(cls)} THEN {rate}" for cls, rate in RISK_CLASS_RATES.items())
    return (
        f"COALESCE(ROUND(TRY_CAST(TRIM({salary_column}) AS DOUBLE)"
        f" * CASE TRIM({risk_column}) {cases} ELSE 0 END, 0), 0)"
    )


def risk_class_roman_sql(risk_column: str) -> str:
    return (
        f"CASE TRIM({risk_column}) WHEN '1' THEN 'I' WHEN '2' THEN 'II' WHEN '3' THEN 'III'"
        f" WHEN '4' THEN 'IV' WHEN '5' THEN 'V' ELSE {risk_column} END"
    )


# ----------------------------
# Filters
# ----------------------------
class FilterPaglogByPeriodStep(ProcessingStep):
    """Keeps only PAGLOG payments of the run's period."""

    name = "filter_paglog_by_period"

    def should_execute(self, context: ProcessingContext) -> bool:
        return not context.run.is_all_periods and self.has_rows(context, PAGLOG)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        period = require_run_period(context.run)
        deleted = self.execute_sql(
            f"""
            DELETE FROM {self.table(PAGLOG)}
            WHERE {SYSTEM_COL_RUN_ID} = ?
              AND (periodo_pago IS NULL OR TRIM(periodo_pago) <> ?)
            """,
            [context.run_id, period],
        )
        logger.info("[%s] %s PAGLOG rows outside %s removed", self.name, deleted, period)
        return context.with_step_result(self.name, {"deleted": deleted})


# ----------------------------
# Preparation
# ----------------------------
class PrepareDettraStep(ProcessingStep):
    """Adds the DETTRA working columns and indexes, then keys rows as <nit>_<period>."""

    name = "prepare_dettra"

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, DETTRA)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        period = require_run_period(context.run)
        table = self.table(DETTRA)
        schema = self.services.schema
        schema.ensure(table, [ColumnSpec(c) for c in DETTRA_DERIVED_COLUMNS])

        key_sql = composite_key_sql("nit", "CAST(? AS VARCHAR)", separator="_")
        keyed = self.execute_sql(
            f"""
            UPDATE {table}
            SET composite_key = {key_sql}
            WHERE {SYSTEM_COL_RUN_ID} = ? AND composite_key IS NULL
            """,
            [period, context.run_id],
        )
        prepared = schema.ensure(table, indexes=DETTRA_INDEXES)

        logger.info("[%s] %s DETTRA keys generated", self.name, keyed)
        keyed_sources = {**context.data.get("keyed", {}), DETTRA: True}
        return context.with_data(keyed=keyed_sources).with_step_result(
            self.name, {"keys_generated": keyed, "indexes_created": len(prepared["indexes"])}
        )


class PreparePaglogStep(ProcessingStep):
    """
    nit_periodo = <nit_empresa>_<periodo_pago>
    composite_key_dv = <digits(nit_empresa)><check digit>_<periodo_pago>

    The check digit is computed once per distinct NIT in Python and applied
    through a registered Arrow mapping table.
    """

    name = "prepare_paglog"

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, PAGLOG)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        table = self.table(PAGLOG)
        self.services.schema.ensure(table, [ColumnSpec("nit_periodo"), ColumnSpec("composite_key_dv")])

        keyed = self.execute_sql(
            f"""
            UPDATE {table}
            SET nit_periodo = {composite_key_sql('nit_empresa', 'periodo_pago', separator='_')}
            WHERE {SYSTEM_COL_RUN_ID} = ? AND nit_periodo IS NULL
            """,
            [context.run_id],
        )

        nits = [
            row[0]
            for row in self.conn.execute(
                f"""
                SELECT DISTINCT TRIM(nit_empresa)
                FROM {table}
                WHERE {SYSTEM_COL_RUN_ID} = ?
                  AND composite_key_dv IS NULL
                  AND nit_empresa IS NOT NULL
                  AND NULLIF(TRIM(periodo_pago), '') IS NOT NULL
                """,
                [context.run_id],
            ).fetchall()
        ]
        mapping = {nit: with_check_digit(nit) for nit in nits}
        mapping = {nit: dv for nit, dv in mapping.items() if dv}
        skipped = len(nits) - len(mapping)
        if skipped:
            logger.warning("[%s] %s NITs without digits were not given a check digit", self.name, skipped)

        keyed_dv = 0
        if mapping:
            view_name = f"_check_digits_{context.run_id}"
            self.conn.register(
                view_name, pa.table({"nit": list(mapping.keys()), "nit_dv": list(mapping.values())})
            )
            try:
                keyed_dv = self.execute_sql(
                    f"""
                    UPDATE {table} AS p
                    SET composite_key_dv = m.nit_dv || '_' || TRIM(p.periodo_pago)
                    FROM {view_name} AS m
                    WHERE p.{SYSTEM_COL_RUN_ID} = ?
                      AND TRIM(p.nit_empresa) = m.nit
                      AND p.composite_key_dv IS NULL
                      AND NULLIF(TRIM(p.periodo_pago), '') IS NOT NULL
                    """,
                    [context.run_id],
                )
            finally:
                self.conn.unregister(view_name)

        logger.info("[%s] %s nit_periodo keys, %s check-digit keys (%s distinct NITs)", self.name, keyed, keyed_dv, len(mapping))
        return context.with_step_result(
            self.name, {"nit_periodo": keyed, "composite_key_dv": keyed_dv, "nits_without_digits": skipped}
        )


# ----------------------------
# Enrichment
# ----------------------------
class AddNamesFromBasactStep(ProcessingStep):
    """nombres = first name, second name, first surname, second surname (non-empty parts only)."""

    name = "add_names_from_basact"

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, DETTRA, BASACT)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        table = self.table(DETTRA)
        basact = self.table(BASACT)
        self.services.schema.require_columns(basact, ["identificacion_trabajador", *BASACT_NAME_COLUMNS])
        self.services.schema.ensure(table, [ColumnSpec("nombres")])

        parts = ", ".join(f"NULLIF(TRIM({c}), '')" for c in BASACT_NAME_COLUMNS)
        updated = self.execute_sql(
            f"""
            UPDATE {table} AS t
            SET nombres = n.nombres
            FROM (
                SELECT match_key, nombres,
                       ROW_NUMBER() OVER (PARTITION BY match_key ORDER BY row_id) AS rn
                FROM (
                    SELECT TRIM(identificacion_trabajador) AS match_key,
                           NULLIF(TRIM(CONCAT_WS(' ', {parts})), '') AS nombres,
                           {SYSTEM_COL_ID} AS row_id
                    FROM {basact}
                    WHERE {SYSTEM_COL_RUN_ID} = ? AND identificacion_trabajador IS NOT NULL
                ) AS named
                WHERE nombres IS NOT NULL
            ) AS n
            WHERE t.{SYSTEM_COL_RUN_ID} = ?
              AND n.rn = 1
              AND TRIM(t.nit) = n.match_key
              AND (t.nombres IS NULL OR TRIM(t.nombres) = '')
            """,
            [context.run_id, context.run_id],
        )
        logger.info("[%s] names set on %s DETTRA rows", self.name, updated)
        return context.with_step_result(self.name, {"updated": updated})


class AddDettraCityCodeStep(ProcessingStep):
    """codigo_ciudad = LPAD(department, 2) || LPAD(city, 3) from the employer columns."""

    name = "add_city_code_to_dettra"

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, DETTRA)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        table = self.table(DETTRA)
        self.services.schema.ensure(table, [ColumnSpec("codigo_ciudad")])

        department = "NULLIF(TRIM(cod_dpto_empresa), '')"
        city = "NULLIF(TRIM(cod_ciudad_empresa), '')"
        updated = self.execute_sql(
            f"""
            UPDATE {table}
            SET codigo_ciudad = {lpad_sql(department, 2)} || {lpad_sql(city, 3)}
            WHERE {SYSTEM_COL_RUN_ID} = ?
              AND codigo_ciudad IS NULL
              AND ({department} IS NOT NULL OR {city} IS NOT NULL)
            """,
            [context.run_id],
        )
        logger.info("[%s] city code set on %s rows", self.name, updated)
        return context.with_step_result(self.name, {"updated": updated})


class SanitizeDocumentTypeStep(ProcessingStep):
    """tipo_doc one-letter codes to their document type: C->CC, E->CE, F->PE, T->TI."""

    name = "sanitize_tipo_doc"

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, DETTRA)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        cases = " ".join(f"WHEN {sql_quote(k)} THEN {sql_quote(v)}" for k, v in DOCUMENT_TYPE_CODES.items())
        codes = ", ".join(sql_quote(k) for k in DOCUMENT_TYPE_CODES)
        updated = self.execute_sql(
            f"""
            UPDATE {self.table(DETTRA)}
            SET tipo_doc = CASE UPPER(TRIM(tipo_doc)) {cases} END
            WHERE {SYSTEM_COL_RUN_ID} = ? AND UPPER(TRIM(tipo_doc)) IN ({codes})
            """,
            [context.run_id],
        )
        logger.info("[%s] %s document types normalised", self.name, updated)
        return context.with_step_result(self.name, {"updated": updated})


# ----------------------------
# Export
# ----------------------------
class ExportIndependentsStep(ProcessingStep):
    """
    Two groups of files, each split at the sheet cap:
      Constitucion_en_mora_independientes_tipo16_<period>[_parteN].xlsx  (tipo_cotizante 16)
      Constitucion_en_mora_independientes_<period>[_parteN].xlsx         (the rest)
    """

    name = "export_independents"

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, DETTRA)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        run = context.run
        table = self.table(DETTRA)
        self.services.schema.require_columns(table, ["nombres", "correo", "direccion", "codigo_ciudad", "consecutivo"])

        label = period_label(run)
        groups = [
            (f"Constitucion_en_mora_independientes_tipo16_{label}", "TRIM(tipo_cotizante) = ?", (CONTRIBUTOR_TYPE_16,)),
            (
                f"Constitucion_en_mora_independientes_{label}",
                "(tipo_cotizante IS NULL OR TRIM(tipo_cotizante) <> ?)",
                (CONTRIBUTOR_TYPE_16,),
            ),
        ]

        result: dict[str, Any] = {}
        for base_name, group_sql, group_params in groups:
            job = self._job(context, table, base_name, group_sql, group_params)
            if self.services.exporter.count(job.primary) == 0:
                logger.info("[%s] nothing to export for %s", self.name, base_name)
                continue
            files = self.services.exporter.export(run, job)
            result[base_name] = {
                "files": [f.file_name for f in files],
                "records": sum(f.records_count for f in files),
            }

        if not result:
            logger.warning("[%s] no DETTRA rows left to export for run %s", self.name, run.id)
        return context.with_step_result(self.name, result)

    def _job(
        self,
        context: ProcessingContext,
        table: str,
        base_name: str,
        group_sql: str,
        group_params: tuple[Any, ...],
    ) -> ExportJob:
        run = context.run
        contribution = contribution_sql("salario", "riesgo")

        independents = SheetProjection(
            title="Independientes",
            headers=INDEPENDENTS_HEADER,
            select_sql=f"""
                SELECT nit,
                       nombres,
                       correo,
                       CAST(? AS VARCHAR),
                       nombres,
                       {sql_quote(INDEPENDENT_ROLE)},
                       direccion,
                       ciudad_empresa,
                       num_poli,
                       CAST(? AS VARCHAR),
                       CAST(? AS VARCHAR),
                       {contribution},
                       1,
                       consecutivo,
                       tipo_doc,
                       codigo_ciudad
                FROM {table}
                WHERE {SYSTEM_COL_RUN_ID} = ? AND {group_sql}
                ORDER BY {SYSTEM_COL_ID}
            """,
            params=(run.official_id or "", run.period_year, run.period_month, context.run_id, *group_params),
        )
        exposed = SheetProjection(
            title="Trabajadores Expuestos",
            headers=EXPOSED_WORKERS_HEADER,
            select_sql=f"""
                SELECT tipo_doc,
                       nit,
                       CAST(? AS VARCHAR),
                       CAST(? AS VARCHAR),
                       tipo_doc,
                       nit,
                       {risk_class_roman_sql('riesgo')},
                       REPLACE(COALESCE(fecha_ini_cobert, ''), '-', ''),
                       num_poli,
                       {contribution},
                       tipo_cotizante,
                       'NO REGISTRA',
                       1
                FROM {table}
                WHERE {SYSTEM_COL_RUN_ID} = ? AND {group_sql}
                ORDER BY {SYSTEM_COL_ID}
            """,
            params=(run.period_year, run.period_month, context.run_id, *group_params),
        )
        return ExportJob(file_type=FILE_TYPE_NOTICE, base_name=base_name, primary=independents, secondary=exposed)
