import pytest

from core.domain import NoticeType, Run, RunStatus
from core.errors import PeriodError
from notices.keys import composite_key, composite_key_sql
from notices.periods import is_all_periods, period_label, require_run_period, validate_period


def _run(period: str) -> Run:
    return Run(id=1, notice_type=NoticeType.CONSTITUCION_MORA_APORTANTES, period=period, status=RunStatus.VALIDATED)


def _sql_key(store, identifier, period, separator=""):
    sql = (
        f"SELECT {composite_key_sql('identifier', 'period', separator=separator)} "
        "FROM (SELECT CAST(? AS VARCHAR) AS identifier, CAST(? AS VARCHAR) AS period)"
    )
    return store.conn.execute(sql, [identifier, period]).fetchone()[0]


class TestCompositeKey:
    def test_concatenates_identifier_and_period(self):
        assert composite_key("123", "202508") == "123202508"
        assert composite_key(" 123 ", "202508", separator="_") == "123_202508"

    def test_same_inputs_same_key_in_any_order_of_calls(self):
        pairs = [("123", "202508"), ("900", "202401"), ("123", "202508")]
        first = [composite_key(i, p) for i, p in pairs]
        second = [composite_key(i, p) for i, p in reversed(pairs)][::-1]
        assert first == second
        assert first[0] == first[2]

    @pytest.mark.parametrize("identifier, period", [(None, "202508"), ("123", None), ("  ", "202508"), ("123", "")])
    def test_missing_part_gives_no_key(self, identifier, period):
        assert composite_key(identifier, period) is None

    @pytest.mark.parametrize(
        "identifier, period, separator",
        [
            ("123", "202508", ""),
            (" 123 ", " 202508", "_"),
            ("900123456", "202401", "_"),
            (None, "202508", ""),
            ("123", "", "_"),
            ("", "202508", ""),
        ],
    )
    def test_sql_twin_builds_the_same_key(self, store, identifier, period, separator):
        assert _sql_key(store, identifier, period, separator) == composite_key(identifier, period, separator=separator)


class TestPeriods:
    @pytest.mark.parametrize("period", ["202508", "200001", "209912"])
    def test_valid_periods(self, period):
        assert validate_period(period) == period

    @pytest.mark.parametrize("period", ["2025-08", "20258", "199912", "210001", "202500", "202513", "", None])
    def test_invalid_periods(self, period):
        with pytest.raises(PeriodError):
            validate_period(period)

    @pytest.mark.parametrize("token", ["Todos los periodos", "  TODOS ", "all", "All Periods"])
    def test_all_periods_tokens(self, token):
        assert is_all_periods(token)
        assert _run(token).is_all_periods
        assert period_label(_run(token)) == "todos_los_periodos"

    def test_run_period_parts(self):
        run = _run("202508")
        assert (run.period_year, run.period_month) == ("2025", "08")
        assert require_run_period(run) == "202508"
        assert period_label(run) == "202508"

    def test_concrete_period_required(self):
        with pytest.raises(PeriodError):
            require_run_period(_run("todos"))
        with pytest.raises(PeriodError):
            require_run_period(_run("2025"))
