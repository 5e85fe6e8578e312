"""
pytest-pw-monitor: failure analysis and pipeline monitoring for Playwright tests.

Install and run pytest with ``--pw-monitor``: every Playwright step is
reported, failing tests are analyzed, and the session outcome drives the
pipeline's health, circuit breaker, recovery actions and alerts.
"""

from .analysis import AnalysisResult, FailureAnalyzer, PipelineRun
from .circuit_breaker import CircuitBreaker, CircuitState
from .config import AnalyzerConfig, MonitorConfig, get_config
from .errors import AnalysisError, MonitorError, UnknownPipelineError
from .monitor import MonitoringOptions, PipelineEvent, PipelineMonitor
from .recovery import RecoveryAction, RecoveryEngine, RecoveryResult
from .reporter import JSONReporter

__version__ = "0.2.0"
__all__ = [
    "AnalysisError",
    "AnalysisResult",
    "AnalyzerConfig",
    "CircuitBreaker",
    "CircuitState",
    "FailureAnalyzer",
    "JSONReporter",
    "MonitorConfig",
    "MonitorError",
    "MonitoringOptions",
    "PipelineEvent",
    "PipelineMonitor",
    "PipelineRun",
    "RecoveryAction",
    "RecoveryEngine",
    "RecoveryResult",
    "UnknownPipelineError",
    "get_config",
]
