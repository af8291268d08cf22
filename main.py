import sys
from logging.config import dictConfig

from core.settings import LOGGING_CONFIG, SOURCE_CONFIG_DIRECTORY_PATH, STAGING_DB_PATH
from core.staging_store import StagingStore
from ingestion.source_config import StagingSourceSpec, load_source_specs_from_directory
from notices.context import PipelineConfig
from notices.notifier import LoggingNotifier
from notices.orchestrator import Orchestrator
from notices.processors import ProcessorRegistry

dictConfig(LOGGING_CONFIG)

def main(argv: list[str]) -> int:
    if len(argv) != 2 or not argv[1].isdigit():
        print(f"usage: {argv[0]} <run_id>", file=sys.stderr)
        return 2

    source_specs: list[StagingSourceSpec] = load_source_specs_from_directory(str(SOURCE_CONFIG_DIRECTORY_PATH))
    staging_store = StagingStore(
        duckdb_path=str(STAGING_DB_PATH),
        staging_tables=[spec.table_def for spec in source_specs],
    )

    with staging_store as store:
        orchestrator = Orchestrator(
            store=store,
            specs={spec.code: spec for spec in source_specs},
            registry=ProcessorRegistry(),
            config=PipelineConfig(),
            notifier=LoggingNotifier(),
        )
        outcome = orchestrator.run(int(argv[1]))

    return 0 if outcome.executed else 1

if __name__ == "__main__":
    sys.exit(main(sys.argv))
