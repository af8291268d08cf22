class PipelineError(Exception):
    pass


class SourceFileNotFoundError(PipelineError):
    pass


class SourceSpecError(ValueError):
    pass


class CSVExtractionError(PipelineError):
    pass


class StepError(PipelineError):
    """A step-level abort. The orchestrator marks the run failed."""


class SchemaNotPreparedError(StepError):
    pass


class PeriodError(StepError):
    pass


class DataIntegrityError(StepError):
    pass


class AuditWriteError(StepError):
    pass
