"""
Notice type -> ordered step list.

The registry is static: adding a notice type means adding a factory here.
"""
import logging
from typing import Callable

from core.domain import NoticeType
from core.settings import OBSERVATION_ALREADY_PAID
from core.sql import sql_quote
from notices.steps import aportantes as a
from notices.steps import independientes as i
from notices.steps.base import ProcessingStep, StepServices
from notices.steps.common import (
    CleanupDataSourcesStep,
    ContactCandidate,
    ContactTarget,
    CrossReference,
    CrossReferenceStep,
    DefineDeliveryTypeStep,
    ExcludeRowsStep,
    FillContactDataStep,
    GenerateCompositeKeyStep,
    GenerateConsecutiveStep,
    ValidateDataIntegrityStep,
    like_contains,
)
from notices.steps.loading import LoadDataSourcesStep

logger = logging.getLogger(__name__)


StepFactory = Callable[[StepServices], list[ProcessingStep]]

APORTANTES_SOURCES = ["BASCAR", "PAGAPL", "BAPRPO", "PAGPLA", "DATPOL", "DETTRA"]
INDEPENDIENTES_SOURCES = ["BASACT", "PAGLOG", "PAGPLA", "DETTRA", "PAGAPL"]
INDEPENDIENTES_REQUIRED = ["BASACT", "PAGLOG", "PAGPLA", "DETTRA"]

REASON_NO_CONTACT = "Sin datos de contacto"
REASON_NO_NAMES = "Sin Nombres"
REASON_PSI_LEGAL_ENTITY = "PSI Persona Jurídica"
REASON_CONTRIBUTOR_TYPE = "Tipo de cotizante no aplica"

PAGPLA_DIVIPOLA_SQL = (
    "LPAD(TRIM(c.codigo_departamento), 2, '0') || LPAD(TRIM(c.codigo_ciudad), 3, '0')"
)


def build_aportantes_steps(services: StepServices) -> list[ProcessingStep]:
    return [
        LoadDataSourcesStep(services, source_codes=APORTANTES_SOURCES),
        ValidateDataIntegrityStep(services, required_sources=APORTANTES_SOURCES),
        a.SanitizeAmountsStep(services),
        a.DeriveBascarPeriodStep(services),
        a.ExcludeOutOfPeriodStep(services),
        a.FilterPagaplSheetsStep(services),
        GenerateCompositeKeyStep(
            services, name="generate_bascar_keys", source="BASCAR",
            identifier_column="num_tomador", period_column="periodo",
        ),
        GenerateCompositeKeyStep(
            services, name="generate_pagapl_keys", source="PAGAPL",
            identifier_column="identifi", period_column="periodo",
        ),
        CrossReferenceStep(
            services,
            name="cross_bascar_with_pagapl",
            cross=CrossReference(
                source="BASCAR", key_column="composite_key",
                other_source="PAGAPL", other_key_column="composite_key",
                observation_column="observacion", observation=OBSERVATION_ALREADY_PAID,
            ),
        ),
        ExcludeRowsStep(
            services,
            name="remove_crossed_bascar",
            source="BASCAR",
            predicate="observacion LIKE ?",
            params=(like_contains(OBSERVATION_ALREADY_PAID),),
            identifier_sql="num_tomador",
            value_sql="valor_total_fact",
            reason_sql="observacion",
        ),
        a.IdentifyPsiStep(services),
        ExcludeRowsStep(
            services,
            name="exclude_psi_persona_juridica",
            source="BASCAR",
            predicate="UPPER(TRIM(psi)) = 'S' AND LENGTH(TRIM(num_tomador)) = 9",
            identifier_sql="num_tomador",
            value_sql="valor_total_fact",
            reason_sql=sql_quote(REASON_PSI_LEGAL_ENTITY),
            required_columns=["psi"],
        ),
        a.CountWorkersStep(services),
        a.CreateWorkerDetailStep(services),
        a.AppendEmployersWithoutWorkersStep(services),
        a.AddDatpolCityCodeStep(services),
        FillContactDataStep(
            services,
            name="add_email_from_pagpla",
            target=ContactTarget(source="BASCAR", join_column="num_tomador", email_column="email"),
            candidate=ContactCandidate(source="PAGPLA", join_column="identificacion_aportante", email_column="email"),
        ),
        a.AddOwnAddressStep(services),
        FillContactDataStep(
            services,
            name="add_address_from_pagpla",
            target=ContactTarget(
                source="BASCAR", join_column="num_tomador", address_column="direccion", city_column="divipola",
                require_missing_city=True,
            ),
            candidate=ContactCandidate(
                source="PAGPLA", join_column="identificacion_aportante",
                address_column="direccion", city_sql=PAGPLA_DIVIPOLA_SQL,
            ),
        ),
        DefineDeliveryTypeStep(
            services, name="define_delivery_type", source="BASCAR", email_column="email", address_column="direccion"
        ),
        ExcludeRowsStep(
            services,
            name="exclude_without_contact_data",
            source="BASCAR",
            predicate="tipo_de_envio IS NULL",
            identifier_sql="num_tomador",
            value_sql="valor_total_fact",
            reason_sql=sql_quote(REASON_NO_CONTACT),
            required_columns=["tipo_de_envio"],
        ),
        GenerateConsecutiveStep(
            services,
            name="generate_consecutives",
            source="BASCAR",
            parts_sql=["COALESCE(TRIM(ident_asegurado), '')", "COALESCE(TRIM(num_tomador), '')"],
        ),
        a.ExportEmployersStep(services),
        CleanupDataSourcesStep(services),
    ]


def build_independientes_steps(services: StepServices) -> list[ProcessingStep]:
    crossed = "cruce_pagapl IS NOT NULL OR cruce_paglog IS NOT NULL OR cruce_paglog_dv IS NOT NULL"
    return [
        LoadDataSourcesStep(services, source_codes=INDEPENDIENTES_SOURCES),
        ValidateDataIntegrityStep(services, required_sources=INDEPENDIENTES_REQUIRED),
        ExcludeRowsStep(
            services,
            name="filter_dettra_by_tipo_cotizante",
            source="DETTRA",
            predicate=f"NOT COALESCE({i.APPLICABLE_CONTRIBUTOR_SQL}, FALSE)",
            identifier_sql="nit",
            value_sql="'0'",
            reason_sql=sql_quote(REASON_CONTRIBUTOR_TYPE),
            rewrite=True,
        ),
        i.FilterPaglogByPeriodStep(services),
        i.PrepareDettraStep(services),
        GenerateCompositeKeyStep(
            services, name="prepare_pagapl", source="PAGAPL",
            identifier_column="identifi", period_column="periodo", separator="_",
        ),
        i.PreparePaglogStep(services),
        CrossReferenceStep(
            services,
            name="cross_dettra_with_pagapl",
            cross=CrossReference(
                source="DETTRA", key_column="composite_key",
                other_source="PAGAPL", other_key_column="composite_key",
                observation_column="observacion_trabajadores", observation=OBSERVATION_ALREADY_PAID,
                mark_column="cruce_pagapl",
            ),
        ),
        CrossReferenceStep(
            services,
            name="cross_dettra_with_paglog",
            cross=CrossReference(
                source="DETTRA", key_column="composite_key",
                other_source="PAGLOG", other_key_column="nit_periodo",
                observation_column="observacion_trabajadores", observation=OBSERVATION_ALREADY_PAID,
                mark_column="cruce_paglog",
            ),
        ),
        CrossReferenceStep(
            services,
            name="cross_dettra_with_paglog_dv",
            cross=CrossReference(
                source="DETTRA", key_column="composite_key",
                other_source="PAGLOG", other_key_column="composite_key_dv",
                observation_column="observacion_trabajadores", observation=OBSERVATION_ALREADY_PAID,
                mark_column="cruce_paglog_dv",
            ),
        ),
        ExcludeRowsStep(
            services,
            name="export_and_remove_crossed_dettra",
            source="DETTRA",
            predicate=crossed,
            identifier_sql="nit",
            value_sql="'0'",
            reason_sql="observacion_trabajadores",
            required_columns=["cruce_pagapl", "cruce_paglog", "cruce_paglog_dv", "observacion_trabajadores"],
        ),
        i.AddNamesFromBasactStep(services),
        ExcludeRowsStep(
            services,
            name="export_and_remove_without_names",
            source="DETTRA",
            predicate="nombres IS NULL OR TRIM(nombres) = ''",
            identifier_sql="nit",
            value_sql="'0'",
            reason_sql=sql_quote(REASON_NO_NAMES),
            required_columns=["nombres"],
        ),
        i.AddDettraCityCodeStep(services),
        FillContactDataStep(
            services,
            name="add_contact_from_basact",
            target=ContactTarget(
                source="DETTRA", join_column="nit", email_column="correo", address_column="direccion"
            ),
            candidate=ContactCandidate(
                source="BASACT", join_column="identificacion_trabajador",
                email_column="correo_trabajador", address_column="direccion_trabajador",
            ),
        ),
        FillContactDataStep(
            services,
            name="add_contact_from_pagpla",
            target=ContactTarget(
                source="DETTRA", join_column="nit",
                email_column="correo", address_column="direccion", city_column="codigo_ciudad",
            ),
            candidate=ContactCandidate(
                source="PAGPLA", join_column="identificacion_aportante",
                email_column="email", address_column="direccion", city_sql=PAGPLA_DIVIPOLA_SQL,
            ),
        ),
        ExcludeRowsStep(
            services,
            name="export_and_remove_without_contact_data",
            source="DETTRA",
            predicate=(
                "(correo IS NULL OR TRIM(correo) = '') AND (direccion IS NULL OR TRIM(direccion) = '')"
            ),
            identifier_sql="nit",
            value_sql="'0'",
            reason_sql=sql_quote(REASON_NO_CONTACT),
            required_columns=["correo", "direccion"],
        ),
        DefineDeliveryTypeStep(
            services, name="define_delivery_type_dettra", source="DETTRA",
            email_column="correo", address_column="direccion",
        ),
        i.SanitizeDocumentTypeStep(services),
        GenerateConsecutiveStep(
            services,
            name="generate_consecutives_dettra",
            source="DETTRA",
            parts_sql=["COALESCE(NULLIF(TRIM(tipo_doc), ''), 'NN')", "COALESCE(NULLIF(TRIM(nit), ''), '0')"],
        ),
        i.ExportIndependentsStep(services),
        CleanupDataSourcesStep(services),
    ]


class ProcessorRegistry:
    """Resolves the ordered steps of a notice type."""

    def __init__(self, factories: dict[NoticeType, StepFactory] | None = None):
        self._factories: dict[NoticeType, StepFactory] = dict(factories or DEFAULT_FACTORIES)

    def supports(self, notice_type: NoticeType) -> bool:
        return notice_type in self._factories

    def steps_for(self, notice_type: NoticeType, services: StepServices) -> list[ProcessingStep]:
        factory = self._factories.get(notice_type)
        if factory is None:
            raise KeyError(f"No processor registered for notice type '{notice_type}'")
        steps = factory(services)
        logger.debug("Processor for %s: %s steps", notice_type.value, len(steps))
        return steps


DEFAULT_FACTORIES: dict[NoticeType, StepFactory] = {
    NoticeType.CONSTITUCION_MORA_APORTANTES: build_aportantes_steps,
    NoticeType.CONSTITUCION_MORA_INDEPENDIENTES: build_independientes_steps,
}
