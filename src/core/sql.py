import re


_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def sql_quote(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def sql_identifier_quote(identifier: str) -> str:
    escaped = identifier.replace('"', '""')
    return f'"{escaped}"'


def require_identifier(identifier: str) -> str:
    """Table and column names are interpolated into SQL; only plain identifiers are accepted."""
    if not _IDENTIFIER_RE.match(identifier):
        raise ValueError(f"Invalid SQL identifier '{identifier}'")
    return identifier


def sql_in_list(values: list[str] | tuple[str, ...]) -> str:
    return "(" + ", ".join(sql_quote(v) for v in values) + ")"


def lpad_sql(expression: str, width: int) -> str:
    return f"LPAD(COALESCE({expression}, ''), {width}, '0')"
