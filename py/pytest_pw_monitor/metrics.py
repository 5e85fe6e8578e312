"""Per-pipeline run metrics kept in a fixed-size ring buffer."""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterator


@dataclass
class ResourceUsage:
    cpu: float = 0.0
    memory: float = 0.0
    disk: float = 0.0

    @classmethod
    def from_dict(cls, data: dict | None) -> "ResourceUsage":
        data = data or {}
        return cls(
            cpu=float(data.get("cpu", 0)),
            memory=float(data.get("memory", 0)),
            disk=float(data.get("disk", 0)),
        )


@dataclass
class PipelineMetrics:
    """One finished run. ``duration`` is in seconds."""

    timestamp: datetime
    duration: float = 0.0
    success: bool = False
    stage: str = "unknown"
    resource_usage: ResourceUsage = field(default_factory=ResourceUsage)


@dataclass
class MetricsSummary:
    success_rate: float = 100.0
    average_duration: float = 0.0
    error_rate: float = 0.0
    throughput: float = 0.0


class MetricsBuffer:
    """Keeps the last ``capacity`` runs; summaries cover the rolling ``window``."""

    def __init__(self, capacity: int = 100, window: timedelta = timedelta(hours=24)):
        self.window = window
        self._entries: deque[PipelineMetrics] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PipelineMetrics]:
        return iter(self._entries)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen

    def record(self, metrics: PipelineMetrics):
        self._entries.append(metrics)

    def latest(self, now: datetime) -> PipelineMetrics:
        """The newest entry, or a zero sample stamped ``now`` when empty."""
        if self._entries:
            return self._entries[-1]
        return PipelineMetrics(timestamp=now)

    def summarize(self, now: datetime) -> MetricsSummary | None:
        cutoff = now - self.window
        recent = [m for m in self._entries if m.timestamp > cutoff]
        if not recent:
            return None

        total = len(recent)
        successful = sum(1 for m in recent if m.success)
        window_hours = self.window.total_seconds() / 3600
        return MetricsSummary(
            success_rate=successful / total * 100,
            average_duration=sum(m.duration for m in recent) / total,
            error_rate=(total - successful) / total * 100,
            throughput=total / window_hours if window_hours else float(total),
        )
