"""Exceptions raised by the pipeline monitor and failure analyzer."""


class MonitorError(Exception):
    """Base class for pytest-pw-monitor errors."""


class UnknownPipelineError(MonitorError, KeyError):
    """Raised when an event references a pipeline that is not monitored."""

    def __init__(self, pipeline_id: str):
        super().__init__(pipeline_id)
        self.pipeline_id = pipeline_id

    def __str__(self) -> str:
        return f"Pipeline is not monitored: {self.pipeline_id}"


class AnalysisError(MonitorError):
    """Raised when failure analysis cannot complete."""
