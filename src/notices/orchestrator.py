import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping

from core.domain import EXECUTABLE_STATUSES, Run
from core.errors import DataIntegrityError
from core.staging_store import StagingStore
from ingestion.source_config import StagingSourceSpec
from notices.audit_writer import ExclusionAuditWriter
from notices.context import PipelineConfig, ProcessingContext
from notices.exporter import ResultExporter
from notices.notifier import LoggingNotifier, Notifier
from notices.processors import ProcessorRegistry
from notices.schema import SchemaPreparer
from notices.steps.base import StepServices

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunOutcome:
    run: Run
    executed: bool
    executed_steps: list[str] = field(default_factory=list)
    skipped_steps: list[str] = field(default_factory=list)


class Orchestrator:
    """
    Executes one Run: validated -> processing -> completed | failed.

    A run in any other status is left untouched. On failure the run is marked
    failed with the error payload and the exception is re-raised; staging rows
    are kept for inspection.

    The store must already be open (the caller owns its lifetime).
    """

    def __init__(
        self,
        *,
        store: StagingStore,
        specs: Mapping[str, StagingSourceSpec],
        registry: ProcessorRegistry,
        config: PipelineConfig,
        notifier: Notifier | None = None,
    ):
        self.store = store
        self.specs = specs
        self.registry = registry
        self.config = config
        self.notifier = notifier or LoggingNotifier()

    def run(self, run_id: int) -> RunOutcome:
        run = self.store.get_run(run_id)
        if run is None:
            raise DataIntegrityError(f"Run {run_id} does not exist")

        if run.status not in EXECUTABLE_STATUSES:
            logger.warning("Run %s is %s, not executable. Nothing to do.", run.id, run.status.value)
            return RunOutcome(run=run, executed=False)

        steps = self.registry.steps_for(run.notice_type, self._services())
        run = self.store.mark_processing(run.id)
        logger.info("Processing run %s (%s, period %s): %s steps", run.id, run.notice_type.value, run.period, len(steps))

        context = ProcessingContext(run=run)
        executed: list[str] = []
        skipped: list[str] = []
        started = time.monotonic()
        current_step = None

        try:
            for step in steps:
                current_step = step
                if not step.should_execute(context):
                    logger.warning("Skipping step %s for run %s", step.name, run.id)
                    skipped.append(step.name)
                    continue

                logger.info("Step %s started", step.name)
                step_started = time.monotonic()
                context = step.execute(context)
                executed.append(step.name)
                logger.info("Step %s finished in %.2fs", step.name, time.monotonic() - step_started)
        except Exception as e:
            logger.exception("Run %s failed at step %s", run.id, current_step.name if current_step else None)
            error_payload = self._error_payload(e, current_step.name if current_step else None, executed)
            failed = self.store.mark_failed(run.id, duration_ms=_elapsed_ms(started), error_payload=error_payload)
            self.notifier.run_failed(failed, error_payload)
            raise

        results = {
            "steps": dict(context.step_results),
            "executed_steps": executed,
            "skipped_steps": skipped,
            "result_files": [f.file_name for f in self.store.list_result_files(run.id)],
        }
        completed = self.store.mark_completed(run.id, duration_ms=_elapsed_ms(started), results=results)
        self.notifier.run_completed(completed)
        return RunOutcome(run=completed, executed=True, executed_steps=executed, skipped_steps=skipped)

    def _services(self) -> StepServices:
        return StepServices(
            store=self.store,
            specs=self.specs,
            config=self.config,
            audit=ExclusionAuditWriter(store=self.store, config=self.config),
            exporter=ResultExporter(store=self.store, config=self.config),
            schema=SchemaPreparer(store=self.store),
        )

    @staticmethod
    def _error_payload(error: Exception, step_name: str | None, executed: list[str]) -> dict[str, Any]:
        return {
            "message": str(error),
            "step": step_name,
            "error_type": type(error).__name__,
            "details": {"executed_steps": list(executed)},
        }


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
