from glob import glob
import logging
import os
import re
from typing import Literal, Self
import yaml


from pydantic import BaseModel, ConfigDict, model_validator, Field

from core.domain import StagingTableDef
from core.errors import SourceSpecError
from core.settings import DEFAULT_DELIMITER, CANONICAL_ENCODING, LEGACY_ENCODING, STAGING_TABLE_PREFIX

logger = logging.getLogger(__name__)


_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

RESERVED_COLUMNS = frozenset({"id", "run_id", "sheet_name", "data", "created_at"})


class StrictBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)


class SourceFormatSpec(StrictBaseModel):
    delimiter: str = DEFAULT_DELIMITER
    encoding: str = CANONICAL_ENCODING
    legacy_encoding: str = LEGACY_ENCODING
    quote_char: str = '"'

    @model_validator(mode="after")
    def validate_spec(self) -> Self:
        if len(self.delimiter) != 1:
            raise ValueError(f"delimiter must be a single character, got '{self.delimiter}'")
        if len(self.quote_char) > 1:
            raise ValueError(f"quote_char must be empty or a single character, got '{self.quote_char}'")
        return self


class StagingColumnSpec(StrictBaseModel):
    csv_header: str | list[str]
    description: str | None = None
    required: bool = False

    @property
    def candidates(self) -> list[str]:
        return self.csv_header if isinstance(self.csv_header, list) else [self.csv_header]


class StagingSourceSpec(StrictBaseModel):
    """
    One source type (BASCAR, PAGAPL, ...) and how it lands in staging.

    columns:
      staging column -> accepted CSV header(s). Every other header goes to the
      opaque JSON payload.
    derived_columns:
      typed columns filled by pipeline steps rather than by the loader.
    """
    code: str
    table: str
    loader: Literal["resilient", "bulk", "spreadsheet"] = "bulk"
    sheet_policy: Literal["first", "all", "period_year"] = "first"

    source: SourceFormatSpec = Field(default_factory=SourceFormatSpec)

    columns: dict[str, StagingColumnSpec]
    derived_columns: list[str] = Field(default_factory=lambda: list())

    @model_validator(mode="after")
    def validate_spec(self) -> Self:
        if not self.table.startswith(STAGING_TABLE_PREFIX) or not _IDENTIFIER_RE.match(self.table):
            raise ValueError(f"Invalid staging table '{self.table}'. Must look like '{STAGING_TABLE_PREFIX}<code>'")

        for column_name in [*self.columns.keys(), *self.derived_columns]:
            if not _IDENTIFIER_RE.match(column_name):
                raise ValueError(f"Invalid column name '{column_name}'. Must start with a letter or underscore, "
                                 "followed by letters, digits, or underscores.")
            if column_name in RESERVED_COLUMNS:
                raise ValueError(f"Column name '{column_name}' is reserved for system columns")

        if overlap := set(self.columns) & set(self.derived_columns):
            raise ValueError(f"Columns declared both as mapped and derived: {sorted(overlap)}")

        seen_headers: dict[str, str] = {}
        for column_name, column_spec in self.columns.items():
            for header in column_spec.candidates:
                if header in seen_headers:
                    raise ValueError(
                        f"CSV header '{header}' is mapped to both '{seen_headers[header]}' and '{column_name}'"
                    )
                seen_headers[header] = column_name

        return self

    @property
    def promoted_columns(self) -> list[str]:
        return list(self.columns.keys()) + list(self.derived_columns)

    @property
    def header_map(self) -> dict[str, str]:
        """Raw CSV header -> staging column."""
        mapping: dict[str, str] = {}
        for db_column_name, column_spec in self.columns.items():
            for candidate in column_spec.candidates:
                mapping[candidate] = db_column_name
        return mapping

    @property
    def required_columns(self) -> list[str]:
        return [name for name, spec in self.columns.items() if spec.required]

    @property
    def table_def(self) -> StagingTableDef:
        return StagingTableDef(code=self.code, table=self.table, columns=tuple(self.promoted_columns))


def load_source_specs_from_directory(directory_path: str) -> list[StagingSourceSpec]:
    file_paths = sorted(glob(os.path.join(directory_path, "*.yaml")))

    configs: dict[str, StagingSourceSpec] = {}
    for file_path in file_paths:
        with open(file_path, "r", encoding="utf-8") as file:
            config_yaml = yaml.safe_load(file)
            try:
                config = StagingSourceSpec.model_validate(config_yaml)
            except Exception as e:
                raise SourceSpecError(f"Error loading source config from {file_path}: {e}") from e

            if config.code in configs:
                raise SourceSpecError(f"Duplicate source code '{config.code}' found in file: {file_path}")

            configs[config.code] = config

    if not configs:
        logger.warning("No source configuration files found in directory: %s", directory_path)

    return list(configs.values())
