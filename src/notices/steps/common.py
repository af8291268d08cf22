"""
Parameterised steps shared by the notice pipelines.

Every statement filters the staging tables by run_id; the parameter order in
each SQL string follows the placeholders top to bottom.
"""
import logging
import shutil
from dataclasses import dataclass
from typing import Any, Sequence

from core.errors import DataIntegrityError
from core.settings import (
    CONSECUTIVE_PREFIX,
    CONSECUTIVE_SERIAL_LENGTH,
    DELIVERY_EMAIL,
    DELIVERY_POSTAL,
    SYSTEM_COL_ID,
    SYSTEM_COL_RUN_ID,
)
from core.sql import require_identifier
from notices.audit_writer import ExclusionQuery
from notices.context import ProcessingContext
from notices.keys import composite_key_sql
from notices.periods import require_run_period
from notices.rules import valid_address_sql, valid_email_sql
from notices.schema import ColumnSpec
from notices.steps.base import ProcessingStep, StepServices

logger = logging.getLogger(__name__)


def monotonic_observation_sql(column: str) -> str:
    """
    New value of an observation column when a reason is added (3 placeholders:
    reason, LIKE pattern, reason). Never drops an earlier reason, never repeats one.
    """
    return (
        f"CASE WHEN {column} IS NULL OR {column} = '' THEN ? "
        f"WHEN {column} LIKE ? THEN {column} "
        f"ELSE {column} || '; ' || ? END"
    )


def like_contains(text: str) -> str:
    return f"%{text}%"


# ----------------------------
# Guards
# ----------------------------
class ValidateDataIntegrityStep(ProcessingStep):
    """Fatal pre-pipeline guard: every required source is mapped and has staged rows."""

    name = "validate_data_integrity"

    def __init__(self, services: StepServices, *, required_sources: Sequence[str]):
        super().__init__(services)
        self.required_sources = list(required_sources)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        counts: dict[str, int] = {}
        empty: list[str] = []
        for code in self.required_sources:
            counts[code] = self.store.count_rows(self.table(code), context.run_id)
            if counts[code] == 0:
                empty.append(code)

        if empty:
            raise DataIntegrityError(f"Run {context.run_id} has no staged rows for required sources: {empty}")

        logger.info("Data integrity OK for run %s: %s", context.run_id, counts)
        return context.with_step_result(self.name, counts)


# ----------------------------
# Keys and crossing
# ----------------------------
class GenerateCompositeKeyStep(ProcessingStep):
    """
    composite_key = identifier + [separator] + period, only where still NULL.

    period_column:
      staging column holding the period; when None the run's own period is used
      and a run over all periods is rejected.
    """

    def __init__(
        self,
        services: StepServices,
        *,
        name: str,
        source: str,
        identifier_column: str,
        period_column: str | None = None,
        separator: str = "",
        key_column: str = "composite_key",
    ):
        super().__init__(services)
        self.name = name
        self.source = source
        self.identifier_column = require_identifier(identifier_column)
        self.period_column = require_identifier(period_column) if period_column else None
        self.separator = separator
        self.key_column = require_identifier(key_column)

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, self.source)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        table = self.table(self.source)
        self.services.schema.ensure(table, [ColumnSpec(self.key_column)])

        if self.period_column:
            key_sql = composite_key_sql(self.identifier_column, self.period_column, separator=self.separator)
            params: list[Any] = [context.run_id]
        else:
            period = require_run_period(context.run)
            key_sql = composite_key_sql(self.identifier_column, "CAST(? AS VARCHAR)", separator=self.separator)
            params = [period, context.run_id, period]

        updated = self.execute_sql(
            f"""
            UPDATE {table}
            SET {self.key_column} = {key_sql}
            WHERE {SYSTEM_COL_RUN_ID} = ?
              AND {self.key_column} IS NULL
              AND ({key_sql}) IS NOT NULL
            """,
            params,
        )

        logger.info("[%s] %s composite keys generated on %s", self.name, updated, table)
        keyed = {**context.data.get("keyed", {}), self.source: True}
        return context.with_data(keyed=keyed).with_step_result(self.name, {"keys_generated": updated})


@dataclass(frozen=True)
class CrossReference:
    """Rows of `source` whose `key_column` appears in `other_source.other_key_column`."""
    source: str
    key_column: str
    other_source: str
    other_key_column: str
    observation_column: str
    observation: str
    mark_column: str | None = None  # receives the matched key; a set mark means already crossed


class CrossReferenceStep(ProcessingStep):
    """
    Set-based cross-reference inside one run.

    Marking is monotonic: the observation keeps every earlier reason and a
    reason is never appended twice; rows already carrying the mark are skipped.
    """

    def __init__(self, services: StepServices, *, name: str, cross: CrossReference):
        super().__init__(services)
        self.name = name
        self.cross = cross

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, self.cross.source, self.cross.other_source)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        c = self.cross
        table = self.table(c.source)
        other = self.table(c.other_source)
        required = [c.key_column, c.observation_column] + ([c.mark_column] if c.mark_column else [])
        self.services.schema.require_columns(table, required)
        self.services.schema.require_columns(other, [c.other_key_column])

        key = require_identifier(c.key_column)
        other_key = require_identifier(c.other_key_column)
        observation = require_identifier(c.observation_column)
        pattern = like_contains(c.observation)

        set_clauses = [f"{observation} = {monotonic_observation_sql('t.' + observation)}"]
        params: list[Any] = [c.observation, pattern, c.observation]
        if c.mark_column:
            set_clauses.insert(0, f"{require_identifier(c.mark_column)} = m.match_key")
            not_crossed = f"t.{c.mark_column} IS NULL"
        else:
            not_crossed = f"(t.{observation} IS NULL OR t.{observation} NOT LIKE ?)"

        params += [context.run_id, context.run_id]
        if not c.mark_column:
            params.append(pattern)

        marked = self.execute_sql(
            f"""
            UPDATE {table} AS t
            SET {', '.join(set_clauses)}
            FROM (
                SELECT DISTINCT {other_key} AS match_key
                FROM {other}
                WHERE {SYSTEM_COL_RUN_ID} = ? AND {other_key} IS NOT NULL
            ) AS m
            WHERE t.{SYSTEM_COL_RUN_ID} = ?
              AND t.{key} = m.match_key
              AND {not_crossed}
            """,
            params,
        )

        logger.info("[%s] %s %s rows crossed with %s", self.name, marked, c.source, c.other_source)
        crossed = {**context.data.get("crossed", {}), self.name: marked}
        return context.with_data(crossed=crossed).with_step_result(self.name, {"marked": marked})


# ----------------------------
# Exclusion
# ----------------------------
class ExcludeRowsStep(ProcessingStep):
    """
    Audits the rows matching `predicate`, then deletes exactly those rows.

    rewrite=True starts the run's audit file over; only the first exclusion of
    a pipeline may do so.
    """

    def __init__(
        self,
        services: StepServices,
        *,
        name: str,
        source: str,
        predicate: str,
        identifier_sql: str,
        value_sql: str,
        reason_sql: str,
        params: Sequence[Any] = (),
        required_columns: Sequence[str] = (),
        rewrite: bool = False,
    ):
        super().__init__(services)
        self.name = name
        self.source = source
        self.predicate = predicate
        self.identifier_sql = identifier_sql
        self.value_sql = value_sql
        self.reason_sql = reason_sql
        self.params = tuple(params)
        self.required_columns = list(required_columns)
        self.rewrite = rewrite

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, self.source)

    def bind_params(self, context: ProcessingContext) -> tuple[Any, ...]:
        """Values for the predicate placeholders; override when they depend on the run."""
        return self.params

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        table = self.table(self.source)
        params = self.bind_params(context)
        if self.required_columns:
            self.services.schema.require_columns(table, self.required_columns)

        query = ExclusionQuery(
            table=table,
            predicate=self.predicate,
            identifier_sql=self.identifier_sql,
            value_sql=self.value_sql,
            reason_sql=self.reason_sql,
            params=params,
        )
        audit = self.services.audit
        if self.rewrite:
            audited = audit.rewrite(context.run, query, step_name=self.name)
        else:
            audited = audit.append(context.run, query, step_name=self.name) if audit.count(context.run, query) else 0

        deleted = self.execute_sql(
            f"DELETE FROM {table} WHERE {SYSTEM_COL_RUN_ID} = ? AND ({self.predicate})",
            [context.run_id, *params],
        )
        if deleted != audited:
            raise DataIntegrityError(
                f"[{self.name}] audited {audited} rows but deleted {deleted} from {table}"
            )

        logger.info("[%s] %s rows excluded from %s", self.name, deleted, table)
        return context.with_step_result(self.name, {"excluded": deleted})


# ----------------------------
# Enrichment
# ----------------------------
@dataclass(frozen=True)
class ContactTarget:
    source: str
    join_column: str
    email_column: str | None = None
    address_column: str | None = None
    city_column: str | None = None
    # fill the address only where the city code is missing too
    require_missing_city: bool = False


@dataclass(frozen=True)
class ContactCandidate:
    """
    A source offering contact data. city_sql is an expression over alias `c`.
    Among valid candidates of one key, the lowest id wins.
    """
    source: str
    join_column: str
    email_column: str | None = None
    address_column: str | None = None
    city_sql: str | None = None


class FillContactDataStep(ProcessingStep):
    """
    Fills email / address (+ city code) from a candidate source with the shared
    validity rules. Values already present are never overwritten, so sources
    run in priority order simply by step order.
    """

    def __init__(self, services: StepServices, *, name: str, target: ContactTarget, candidate: ContactCandidate):
        super().__init__(services)
        self.name = name
        self.target = target
        self.candidate = candidate

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, self.target.source, self.candidate.source)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        t, c = self.target, self.candidate
        table = self.table(t.source)
        candidate_table = self.table(c.source)

        ensure = [col for col in (t.email_column, t.address_column, t.city_column) if col]
        self.services.schema.ensure(table, [ColumnSpec(col) for col in ensure])

        result: dict[str, int] = {}
        if t.email_column and c.email_column:
            result["emails"] = self._fill(
                context,
                table,
                candidate_table,
                value_sql=f"TRIM(c.{require_identifier(c.email_column)})",
                valid_sql=valid_email_sql(f"c.{c.email_column}"),
                set_sql=f"{t.email_column} = r.value",
                missing_sql=f"(t.{t.email_column} IS NULL OR TRIM(t.{t.email_column}) = '')",
            )

        if t.address_column and c.address_column:
            set_sql = f"{t.address_column} = r.value"
            missing_sql = f"(t.{t.address_column} IS NULL OR TRIM(t.{t.address_column}) = '')"
            city_select = "NULL"
            if t.city_column and c.city_sql:
                set_sql += f", {t.city_column} = COALESCE(NULLIF(t.{t.city_column}, ''), r.city)"
                city_select = c.city_sql
            if t.city_column and t.require_missing_city:
                missing_sql += f" AND (t.{t.city_column} IS NULL OR TRIM(t.{t.city_column}) = '')"
            result["addresses"] = self._fill(
                context,
                table,
                candidate_table,
                value_sql=f"TRIM(c.{require_identifier(c.address_column)})",
                valid_sql=valid_address_sql(f"c.{c.address_column}"),
                set_sql=set_sql,
                missing_sql=missing_sql,
                city_sql=city_select,
            )

        logger.info("[%s] %s filled from %s: %s", self.name, t.source, c.source, result)
        return context.with_step_result(self.name, result)

    def _fill(
        self,
        context: ProcessingContext,
        table: str,
        candidate_table: str,
        *,
        value_sql: str,
        valid_sql: str,
        set_sql: str,
        missing_sql: str,
        city_sql: str = "NULL",
    ) -> int:
        target_key = require_identifier(self.target.join_column)
        candidate_key = require_identifier(self.candidate.join_column)
        return self.execute_sql(
            f"""
            UPDATE {table} AS t
            SET {set_sql}
            FROM (
                SELECT match_key, value, city
                FROM (
                    SELECT TRIM(c.{candidate_key}) AS match_key,
                           {value_sql} AS value,
                           {city_sql} AS city,
                           ROW_NUMBER() OVER (PARTITION BY TRIM(c.{candidate_key}) ORDER BY c.{SYSTEM_COL_ID}) AS rn
                    FROM {candidate_table} AS c
                    WHERE c.{SYSTEM_COL_RUN_ID} = ?
                      AND c.{candidate_key} IS NOT NULL
                      AND {valid_sql}
                ) AS ranked
                WHERE rn = 1
            ) AS r
            WHERE t.{SYSTEM_COL_RUN_ID} = ?
              AND TRIM(t.{target_key}) = r.match_key
              AND {missing_sql}
            """,
            [context.run_id, context.run_id],
        )


class DefineDeliveryTypeStep(ProcessingStep):
    """CORREO when the row has an email, otherwise FISICO when it has an address."""

    def __init__(
        self,
        services: StepServices,
        *,
        name: str,
        source: str,
        email_column: str,
        address_column: str,
        delivery_column: str = "tipo_de_envio",
    ):
        super().__init__(services)
        self.name = name
        self.source = source
        self.email_column = require_identifier(email_column)
        self.address_column = require_identifier(address_column)
        self.delivery_column = require_identifier(delivery_column)

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, self.source)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        table = self.table(self.source)
        self.services.schema.ensure(
            table, [ColumnSpec(self.email_column), ColumnSpec(self.address_column), ColumnSpec(self.delivery_column)]
        )

        updated = self.execute_sql(
            f"""
            UPDATE {table}
            SET {self.delivery_column} = CASE
                WHEN {self.email_column} IS NOT NULL AND TRIM({self.email_column}) <> '' THEN ?
                WHEN {self.address_column} IS NOT NULL AND TRIM({self.address_column}) <> '' THEN ?
            END
            WHERE {SYSTEM_COL_RUN_ID} = ? AND {self.delivery_column} IS NULL
            """,
            [DELIVERY_EMAIL, DELIVERY_POSTAL, context.run_id],
        )

        by_type = dict(
            self.conn.execute(
                f"""
                SELECT COALESCE({self.delivery_column}, 'SIN_DATOS'), COUNT(*)
                FROM {table}
                WHERE {SYSTEM_COL_RUN_ID} = ?
                GROUP BY 1
                """,
                [context.run_id],
            ).fetchall()
        )
        logger.info("[%s] delivery type defined for %s rows: %s", self.name, updated, by_type)
        return context.with_step_result(self.name, {"updated": updated, **by_type})


class GenerateConsecutiveStep(ProcessingStep):
    """
    consecutivo = CON-<part>-<part>-<YYYYMMDD>-<serial>, where NULL.

    The serial is the row's rank by id within the run, left-padded with zeros.
    """

    def __init__(
        self,
        services: StepServices,
        *,
        name: str,
        source: str,
        parts_sql: Sequence[str],
        column: str = "consecutivo",
    ):
        super().__init__(services)
        self.name = name
        self.source = source
        self.parts_sql = list(parts_sql)
        self.column = require_identifier(column)

    def should_execute(self, context: ProcessingContext) -> bool:
        return self.has_rows(context, self.source)

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        table = self.table(self.source)
        self.services.schema.ensure(table, [ColumnSpec(self.column)])

        stamp = self.services.config.today().strftime("%Y%m%d")
        parts = " || '-' || ".join(f"CAST({p} AS VARCHAR)" for p in self.parts_sql)
        serial = f"LPAD(CAST(ROW_NUMBER() OVER (ORDER BY {SYSTEM_COL_ID}) AS VARCHAR), {CONSECUTIVE_SERIAL_LENGTH}, '0')"

        updated = self.execute_sql(
            f"""
            UPDATE {table} AS t
            SET {self.column} = r.value
            FROM (
                SELECT {SYSTEM_COL_ID} AS row_id,
                       ? || '-' || {parts} || '-' || ? || '-' || {serial} AS value
                FROM {table}
                WHERE {SYSTEM_COL_RUN_ID} = ?
            ) AS r
            WHERE t.{SYSTEM_COL_RUN_ID} = ?
              AND t.{SYSTEM_COL_ID} = r.row_id
              AND t.{self.column} IS NULL
            """,
            [CONSECUTIVE_PREFIX, stamp, context.run_id, context.run_id],
        )

        logger.info("[%s] %s consecutive numbers generated on %s", self.name, updated, table)
        return context.with_step_result(self.name, {"generated": updated})


# ----------------------------
# Cleanup
# ----------------------------
class CleanupDataSourcesStep(ProcessingStep):
    """
    Drops the run's staging rows and import errors. Runs, result files and the
    generated outputs stay; the run's copied input files are removed.
    """

    name = "cleanup_data_sources"

    def execute(self, context: ProcessingContext) -> ProcessingContext:
        deleted = self.store.delete_run_rows(context.run_id)

        input_dir = self.services.config.input_dir / str(context.run_id)
        removed_inputs = input_dir.exists()
        if removed_inputs:
            shutil.rmtree(input_dir)

        logger.info("Cleanup of run %s: %s rows deleted, inputs removed=%s", context.run_id, sum(deleted.values()), removed_inputs)
        return context.with_step_result(self.name, {"deleted": deleted, "inputs_removed": removed_inputs})
