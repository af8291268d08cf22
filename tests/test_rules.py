"""
The contact rules exist as Python predicates and as SQL fragments; both must
accept exactly the same values.
"""
import pytest

from notices.rules import is_valid_address, is_valid_email, valid_address_sql, valid_email_sql

EMAILS = [
    ("contacto@empresa.com", True),
    ("  ventas.norte@empresa.com.co ", True),
    ("a+b_c-d%e@sub.dominio.org", True),
    ("sin-arroba.com", False),
    ("dos@@empresa.com", False),
    ("usuario@dominio", False),
    ("usuario@dominio.c", False),
    ("", False),
    (None, False),
    ("gestor@segurosbolivar.com", False),
    ("GESTOR@SegurosBolivar.com.co", False),
    ("bloqueado@empresa.com", False),
    ("Bloqueado@Empresa.com", False),
]

ADDRESSES = [
    ("CALLE 10 # 20-30", True),
    ("Cra 7 No 45-12", True),
    ("av 68 # 1 - 10 sur", True),
    ("TRANSVERSAL 5A 12 34", True),
    ("Calle sin numero", False),
    ("CL 1", False),
    ("12345678", False),
    ("AV CALLE 26 # 68B 31 TSB", False),
    ("  av calle 26 # 68b 31 tsb ", False),
    ("CALLE NO DEFINIDA 123", False),
    ("", False),
    (None, False),
]

BLACKLIST = ["bloqueado@empresa.com"]


def _sql_predicate(store, fragment: str, value):
    return store.conn.execute(
        f"SELECT COALESCE({fragment}, FALSE) FROM (SELECT CAST(? AS VARCHAR) AS v)", [value]
    ).fetchone()[0]


class TestEmailRule:
    @pytest.mark.parametrize("value, expected", EMAILS)
    def test_python_predicate(self, value, expected):
        assert is_valid_email(value, BLACKLIST) is expected

    @pytest.mark.parametrize("value, expected", EMAILS)
    def test_sql_predicate_agrees(self, store, value, expected):
        store.add_blacklisted_emails(BLACKLIST)
        assert _sql_predicate(store, valid_email_sql("v"), value) is expected


class TestAddressRule:
    @pytest.mark.parametrize("value, expected", ADDRESSES)
    def test_python_predicate(self, value, expected):
        assert is_valid_address(value) is expected

    @pytest.mark.parametrize("value, expected", ADDRESSES)
    def test_sql_predicate_agrees(self, store, value, expected):
        assert _sql_predicate(store, valid_address_sql("v"), value) is expected
