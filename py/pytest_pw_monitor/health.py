"""Pipeline health: issue detection from metric summaries and overall status."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .config import MonitorConfig
from .metrics import MetricsSummary


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    CRITICAL = "critical"


class IssueType(str, Enum):
    PERFORMANCE = "performance"
    RELIABILITY = "reliability"
    RESOURCE = "resource"
    CONFIGURATION = "configuration"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class HealthIssue:
    type: IssueType
    key: str
    severity: Severity
    description: str
    first_detected: datetime
    last_seen: datetime
    occurrences: int = 1
    auto_recoverable: bool = False


@dataclass
class PipelineHealth:
    pipeline_id: str
    status: HealthStatus = HealthStatus.HEALTHY
    uptime: float = 0.0
    last_check: datetime = field(default_factory=datetime.now)
    metrics: MetricsSummary = field(default_factory=MetricsSummary)
    issues: list[HealthIssue] = field(default_factory=list)


def detect_issues(
    summary: MetricsSummary,
    expected_duration: float,
    config: MonitorConfig,
    now: datetime,
) -> list[HealthIssue]:
    """Issues implied by the current metric summary."""
    issues = []

    if summary.success_rate < config.min_success_rate:
        issues.append(HealthIssue(
            type=IssueType.RELIABILITY,
            key="low-success-rate",
            severity=(
                Severity.CRITICAL
                if summary.success_rate < config.critical_success_rate
                else Severity.HIGH
            ),
            description=f"Low success rate: {summary.success_rate:.1f}%",
            first_detected=now,
            last_seen=now,
            auto_recoverable=True,
        ))

    if summary.average_duration > expected_duration * config.duration_factor:
        issues.append(HealthIssue(
            type=IssueType.PERFORMANCE,
            key="high-duration",
            severity=Severity.MEDIUM,
            description=f"High average duration: {int(summary.average_duration)}s",
            first_detected=now,
            last_seen=now,
            auto_recoverable=True,
        ))

    if summary.error_rate > config.max_error_rate:
        issues.append(HealthIssue(
            type=IssueType.RELIABILITY,
            key="high-error-rate",
            severity=(
                Severity.CRITICAL
                if summary.error_rate > config.critical_error_rate
                else Severity.HIGH
            ),
            description=f"High error rate: {summary.error_rate:.1f}%",
            first_detected=now,
            last_seen=now,
            auto_recoverable=False,
        ))

    return issues


def merge_issues(existing: list[HealthIssue], detected: list[HealthIssue]) -> list[HealthIssue]:
    """Fold freshly detected issues into the known ones.

    Known issues that were not detected again are considered resolved.
    """
    known = {(issue.type, issue.key): issue for issue in existing}
    merged = []
    for issue in detected:
        current = known.get((issue.type, issue.key))
        if current is None:
            merged.append(issue)
            continue
        current.last_seen = issue.last_seen
        current.description = issue.description
        current.severity = issue.severity
        current.occurrences += 1
        merged.append(current)
    return merged


def overall_status(issues: list[HealthIssue]) -> HealthStatus:
    severities = {issue.severity for issue in issues}
    if Severity.CRITICAL in severities:
        return HealthStatus.CRITICAL
    if Severity.HIGH in severities:
        return HealthStatus.UNHEALTHY
    if Severity.MEDIUM in severities:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY
