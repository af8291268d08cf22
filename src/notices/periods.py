import re

from core.domain import Run
from core.errors import PeriodError
from core.settings import ALL_PERIODS_TOKENS

_PERIOD_RE = re.compile(r"^\d{6}$")


def is_all_periods(period: str | None) -> bool:
    return (period or "").strip().lower() in ALL_PERIODS_TOKENS


def validate_period(period: str | None) -> str:
    """YYYYMM with year 2000-2099 and month 01-12, else PeriodError."""
    value = (period or "").strip()
    if not _PERIOD_RE.match(value):
        raise PeriodError(f"Invalid period '{period}'. Expected YYYYMM")

    year, month = int(value[:4]), int(value[4:])
    if not 2000 <= year <= 2099:
        raise PeriodError(f"Invalid period '{period}'. Year must be between 2000 and 2099")
    if not 1 <= month <= 12:
        raise PeriodError(f"Invalid period '{period}'. Month must be between 01 and 12")

    return value


def require_run_period(run: Run) -> str:
    """The run's concrete period; runs over all periods have none."""
    if run.is_all_periods:
        raise PeriodError(f"Run {run.id} covers all periods but this step needs a concrete period")
    return validate_period(run.period)


def period_label(run: Run) -> str:
    """Period as printed in file names and audit rows."""
    return "todos_los_periodos" if run.is_all_periods else run.period.strip()
