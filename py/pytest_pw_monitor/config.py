"""Configuration for the pipeline monitor and failure analyzer.

Values come from a YAML file (``pw-monitor.yaml`` by default). Missing keys
and keys holding a value of the wrong type keep their defaults.
"""

import logging
import os
from dataclasses import dataclass, field, fields

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "pw-monitor.yaml"


@dataclass
class AnalyzerConfig:
    """Limits and thresholds used by the failure analyzer."""

    max_history_size: int = 50
    cache_size: int = 100
    similarity_threshold: float = 0.3
    similar_incident_limit: int = 5
    pattern_occurrence_limit: int = 30
    recurring_threshold: int = 3
    timing_sample_size: int = 100


@dataclass
class MonitorConfig:
    """Configuration data class with default values.

    Durations are in seconds.
    """

    pipeline_id: str = "pytest"
    circuit_breaker_threshold: int = 3
    circuit_breaker_timeout: float = 300.0
    circuit_breaker_success_threshold: int = 1
    enable_auto_recovery: bool = True
    enable_alerts: bool = True
    health_check_interval: float = 30.0
    expected_duration: dict = field(default_factory=dict)
    default_expected_duration: float = 300.0
    metrics_buffer_size: int = 100
    metrics_window_hours: float = 24.0
    recovery_history_size: int = 50
    recovery_attempt_window_hours: float = 24.0
    alert_history_size: int = 100
    min_success_rate: float = 80.0
    critical_success_rate: float = 50.0
    max_error_rate: float = 20.0
    critical_error_rate: float = 50.0
    duration_factor: float = 2.0
    parallel_jobs: int = 1
    cache_dirs: list = field(default_factory=list)
    analyzer: AnalyzerConfig = field(default_factory=AnalyzerConfig)

    def expected_duration_for(self, pipeline_id: str) -> float:
        """Expected run duration for a pipeline, falling back to the default."""
        return float(
            self.expected_duration.get(pipeline_id, self.default_expected_duration)
        )


def _accepts(default, value) -> bool:
    # bool is an int subclass; never let True stand in for a threshold
    if isinstance(default, bool) or isinstance(value, bool):
        return isinstance(default, bool) and isinstance(value, bool)
    if isinstance(default, float):
        return isinstance(value, (int, float))
    return isinstance(value, type(default))


def _apply(target, data: dict) -> None:
    for f in fields(target):
        if f.name not in data or f.name == "analyzer":
            continue
        value = data[f.name]
        default = getattr(target, f.name)
        if _accepts(default, value):
            if isinstance(default, float):
                value = float(value)
            setattr(target, f.name, value)
        else:
            logger.warning(
                f"Ignoring config key {f.name!r}: expected "
                f"{type(default).__name__}, got {type(value).__name__}"
            )


def config_from_dict(data: dict) -> MonitorConfig:
    """Build a MonitorConfig from a mapping, keeping defaults for bad keys."""
    config = MonitorConfig()
    _apply(config, data)
    if isinstance(data.get("analyzer"), dict):
        _apply(config.analyzer, data["analyzer"])
    return config


def get_config(config_path: str = DEFAULT_CONFIG_PATH) -> MonitorConfig:
    """
    Load configuration from YAML file with defaults for missing keys.

    Args:
        config_path: Path to the YAML configuration file

    Returns:
        MonitorConfig object with loaded or default values
    """
    try:
        with open(config_path, "r") as f:
            yaml_data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return MonitorConfig()
    except yaml.YAMLError as e:
        logger.warning(f"Invalid monitor config {config_path}: {e}")
        return MonitorConfig()

    if not isinstance(yaml_data, dict):
        return MonitorConfig()

    return config_from_dict(yaml_data)


def resolve_pipeline_id(explicit: str | None = None) -> str:
    """Pick the pipeline id from an explicit value or the CI environment."""
    return (
        explicit
        or os.environ.get("PW_MONITOR_PIPELINE")
        or os.environ.get("GITHUB_WORKFLOW")
        or "pytest"
    )
