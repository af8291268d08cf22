"""
Composite join keys.

Two formats exist across sources:
  <identifier><period>     e.g. BASCAR / PAGAPL   '123' + '202508' -> '123202508'
  <identifier>_<period>    e.g. DETTRA / PAGLOG   '123' + '202508' -> '123_202508'

The Python functions and the SQL expressions below build the same string; the SQL
form is what the steps run, the Python form documents and tests it.
"""
from core.sql import require_identifier


def composite_key(identifier: str | None, period: str | None, *, separator: str = "") -> str | None:
    if identifier is None or period is None:
        return None
    identifier = identifier.strip()
    period = period.strip()
    if not identifier or not period:
        return None
    return f"{identifier}{separator}{period}"


def composite_key_sql(identifier_column: str, period_sql: str, *, separator: str = "") -> str:
    """
    SQL twin of `composite_key`. period_sql is an expression (a column or a
    bound parameter); the result is NULL when either part is NULL or blank.
    """
    identifier = f"NULLIF(TRIM({require_identifier(identifier_column)}), '')"
    period = f"NULLIF(TRIM({period_sql}), '')"
    if separator:
        return f"{identifier} || '{separator}' || {period}"
    return f"{identifier} || {period}"
