"""
Contact-data validity rules shared by every enrichment step.

Each rule exists twice: a pure Python predicate and a SQL predicate builder
(column expression -> boolean fragment). Both must accept the same values.
"""
import re
from typing import Iterable

from core.settings import (
    BLACKLISTED_EMAIL_DOMAINS,
    HOUSE_ACCOUNT_ADDRESS,
    MIN_ADDRESS_LENGTH,
    STREET_TOKENS,
    TABLE_EMAIL_BLACKLIST,
    UNDEFINED_ADDRESS_TOKEN,
)
from core.sql import sql_quote

EMAIL_PATTERN = r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$"
STREET_PATTERN = "(" + "|".join(STREET_TOKENS) + ")"

_EMAIL_RE = re.compile(EMAIL_PATTERN)
_STREET_RE = re.compile(STREET_PATTERN, re.IGNORECASE)
_DIGIT_RE = re.compile(r"[0-9]")


# ----------------------------
# Python predicates
# ----------------------------
def is_valid_email(value: str | None, blacklist: Iterable[str] = ()) -> bool:
    email = (value or "").strip()
    if not email or not _EMAIL_RE.match(email):
        return False
    lowered = email.lower()
    if any(lowered.endswith(domain) for domain in BLACKLISTED_EMAIL_DOMAINS):
        return False
    return lowered not in {b.strip().lower() for b in blacklist}


def is_valid_address(value: str | None) -> bool:
    address = (value or "").strip()
    if len(address) < MIN_ADDRESS_LENGTH:
        return False
    if not _STREET_RE.search(address) or not _DIGIT_RE.search(address):
        return False
    upper = address.upper()
    if upper == HOUSE_ACCOUNT_ADDRESS or UNDEFINED_ADDRESS_TOKEN in upper:
        return False
    return True


# ----------------------------
# SQL predicate builders
# ----------------------------
def valid_email_sql(column: str) -> str:
    trimmed = f"TRIM({column})"
    lowered = f"LOWER({trimmed})"
    domain_checks = " AND ".join(f"NOT ends_with({lowered}, {sql_quote(d)})" for d in BLACKLISTED_EMAIL_DOMAINS)
    return (
        f"({column} IS NOT NULL"
        f" AND {trimmed} <> ''"
        f" AND regexp_matches({trimmed}, {sql_quote(EMAIL_PATTERN)})"
        f" AND {domain_checks}"
        f" AND NOT EXISTS (SELECT 1 FROM {TABLE_EMAIL_BLACKLIST} bl WHERE bl.email = {lowered}))"
    )


def valid_address_sql(column: str) -> str:
    trimmed = f"TRIM({column})"
    return (
        f"({column} IS NOT NULL"
        f" AND LENGTH({trimmed}) >= {MIN_ADDRESS_LENGTH}"
        f" AND regexp_matches({trimmed}, {sql_quote(STREET_PATTERN)}, 'i')"
        f" AND regexp_matches({trimmed}, '[0-9]')"
        f" AND UPPER({trimmed}) <> {sql_quote(HOUSE_ACCOUNT_ADDRESS)}"
        f" AND POSITION({sql_quote(UNDEFINED_ADDRESS_TOKEN)} IN UPPER({trimmed})) = 0)"
    )
