import logging
from typing import Any, Protocol

from core.domain import Run

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def run_completed(self, run: Run) -> None:
        ...

    def run_failed(self, run: Run, error_payload: dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Default notifier: reports the outcome of a run to the log."""

    def run_completed(self, run: Run) -> None:
        logger.info(
            "Run %s (%s, %s) completed in %s ms",
            run.id, run.notice_type.value, run.period, run.duration_ms,
        )

    def run_failed(self, run: Run, error_payload: dict[str, Any]) -> None:
        logger.error(
            "Run %s (%s, %s) failed at step %s: %s",
            run.id, run.notice_type.value, run.period, error_payload.get("step"), error_payload.get("message"),
        )
