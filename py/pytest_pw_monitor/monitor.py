"""
Pipeline monitoring with circuit breaking, automated recovery and alerting.

Every state change is emitted as an event: registered listeners receive it
and the reporter logs it alongside the test lifecycle events.
"""

import asyncio
import logging
import os
import platform
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from .alerts import Alert, AlertManager, AlertRule, default_rules
from .circuit_breaker import CircuitBreaker, CircuitState
from .config import MonitorConfig
from .errors import UnknownPipelineError
from .health import (
    HealthStatus,
    PipelineHealth,
    detect_issues,
    merge_issues,
    overall_status,
)
from .metrics import MetricsBuffer, PipelineMetrics, ResourceUsage
from .recovery import (
    EnvironmentInfo,
    PipelineFailure,
    RecoveryAction,
    RecoveryContext,
    RecoveryEngine,
    RecoveryOutcome,
    default_actions,
    gather_environment,
)
from .reporter import JSONReporter, to_jsonable

logger = logging.getLogger(__name__)

EVENT_TYPES = ("start", "success", "failure", "timeout")


@dataclass
class MonitoringOptions:
    check_interval: float = 60.0
    enable_recovery: bool = True
    alerting: bool = True


@dataclass
class PipelineEvent:
    pipeline_id: str
    type: str
    timestamp: datetime | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unknown pipeline event type: {self.type!r}")


@dataclass
class _PipelineState:
    health: PipelineHealth
    breaker: CircuitBreaker
    metrics: MetricsBuffer
    options: MonitoringOptions
    started_at: datetime


class PipelineMonitor:
    """Tracks health for a set of pipelines and reacts to their failures."""

    def __init__(
        self,
        config: MonitorConfig | None = None,
        reporter: JSONReporter | None = None,
        clock: Callable[[], datetime] = datetime.now,
        recovery_actions: list[RecoveryAction] | None = None,
        alert_rules: list[AlertRule] | None = None,
        environment: Callable[[str], EnvironmentInfo] | None = None,
    ):
        self.config = config or MonitorConfig()
        self.reporter = reporter
        self.clock = clock
        self.started_at = clock()
        self.recovery = RecoveryEngine(
            actions=(
                recovery_actions
                if recovery_actions is not None
                else default_actions(self.config.cache_dirs)
            ),
            history_size=self.config.recovery_history_size,
            attempt_window=timedelta(hours=self.config.recovery_attempt_window_hours),
            clock=clock,
        )
        self.alerts = AlertManager(
            rules=(
                alert_rules
                if alert_rules is not None
                else default_rules(self.config.critical_error_rate)
            ),
            history_size=self.config.alert_history_size,
            clock=clock,
        )
        self._environment = environment or (
            lambda pipeline_id: gather_environment(pipeline_id, self.config.parallel_jobs)
        )
        self._pipelines: dict[str, _PipelineState] = {}
        self._listeners: dict[str, list[Callable[[dict], None]]] = defaultdict(list)

    # -- events ---------------------------------------------------------

    def on(self, event: str, callback: Callable[[dict], None]):
        self._listeners[event].append(callback)

    def emit(self, event: str, payload: dict[str, Any]):
        for callback in list(self._listeners.get(event, ())):
            callback(payload)
        if self.reporter is not None:
            self.reporter.log_event(event, to_jsonable(payload))

    # -- registration ---------------------------------------------------

    @property
    def pipeline_ids(self) -> list[str]:
        return list(self._pipelines)

    def is_monitored(self, pipeline_id: str) -> bool:
        return pipeline_id in self._pipelines

    def _state(self, pipeline_id: str) -> _PipelineState:
        try:
            return self._pipelines[pipeline_id]
        except KeyError:
            raise UnknownPipelineError(pipeline_id) from None

    def health(self, pipeline_id: str) -> PipelineHealth:
        return self._state(pipeline_id).health

    def circuit_breaker(self, pipeline_id: str) -> CircuitBreaker:
        return self._state(pipeline_id).breaker

    def metrics(self, pipeline_id: str) -> MetricsBuffer:
        return self._state(pipeline_id).metrics

    def monitor_pipeline(self, pipeline_id: str, options: MonitoringOptions | None = None):
        """Start monitoring a pipeline. Monitoring an already known pipeline is a no-op."""
        if pipeline_id in self._pipelines:
            return
        logger.info(f"Starting monitoring for pipeline: {pipeline_id}")
        options = options or MonitoringOptions()
        now = self.clock()
        self._pipelines[pipeline_id] = _PipelineState(
            health=PipelineHealth(pipeline_id=pipeline_id, last_check=now),
            breaker=CircuitBreaker(
                threshold=self.config.circuit_breaker_threshold,
                timeout=timedelta(seconds=self.config.circuit_breaker_timeout),
                success_threshold=self.config.circuit_breaker_success_threshold,
                clock=self.clock,
            ),
            metrics=MetricsBuffer(
                capacity=self.config.metrics_buffer_size,
                window=timedelta(hours=self.config.metrics_window_hours),
            ),
            options=options,
            started_at=now,
        )
        self.emit("pipelineMonitoringStarted", {"pipelineId": pipeline_id, "options": options})

    # -- event processing -----------------------------------------------

    async def process_event(self, event: PipelineEvent):
        """Update metrics, react to failures and refresh health for one event."""
        state = self._state(event.pipeline_id)
        try:
            if event.type == "start":
                return

            self._record_metrics(state, event)
            if event.type == "success":
                self._record_success(event.pipeline_id, state)
            else:
                await self._handle_failure(event.pipeline_id, state, self._failure_from(event))

            self._update_health(event.pipeline_id, state)
        except Exception as e:
            logger.error(f"Error processing pipeline event for {event.pipeline_id}: {e}")
            self.emit("error", {"pipelineId": event.pipeline_id, "error": str(e)})
            raise

    def _failure_from(self, event: PipelineEvent) -> PipelineFailure:
        data = dict(event.data)
        if event.type == "timeout":
            data.setdefault("reason", "Pipeline timeout exceeded")
        return PipelineFailure.from_dict(data)

    def _record_metrics(self, state: _PipelineState, event: PipelineEvent):
        data = event.data
        state.metrics.record(PipelineMetrics(
            timestamp=event.timestamp or self.clock(),
            duration=float(data.get("duration", 0)),
            success=event.type == "success",
            stage=data.get("stage", "unknown"),
            resource_usage=ResourceUsage.from_dict(
                data.get("resource_usage", data.get("resourceUsage"))
            ),
        ))

    def _record_success(self, pipeline_id: str, state: _PipelineState):
        breaker = state.breaker
        was = breaker.state
        breaker.record_success()
        if was == CircuitState.HALF_OPEN and breaker.state == CircuitState.CLOSED:
            self.emit("circuitBreakerClosed", {"pipelineId": pipeline_id, "circuitBreaker": breaker.to_dict()})

    async def _handle_failure(self, pipeline_id: str, state: _PipelineState, failure: PipelineFailure):
        logger.warning(f"Pipeline failure detected: {pipeline_id} - {failure.reason}")

        breaker = state.breaker
        if breaker.record_failure():
            self.emit("circuitBreakerOpened", {"pipelineId": pipeline_id, "circuitBreaker": breaker.to_dict()})

        if (
            self.config.enable_auto_recovery
            and state.options.enable_recovery
            and breaker.allows_recovery
        ):
            await self.attempt_recovery(pipeline_id, failure)

        if self.config.enable_alerts and state.options.alerting:
            summary = state.metrics.summarize(self.clock())
            error_rate = summary.error_rate if summary else 0.0
            for alert in self.alerts.process_failure(pipeline_id, failure, error_rate):
                self._emit_alert(alert)

    def _emit_alert(self, alert: Alert):
        self.emit("alert", {"pipelineId": alert.pipeline_id, "alert": alert})

    async def attempt_recovery(self, pipeline_id: str, failure: PipelineFailure) -> RecoveryOutcome:
        """Run automated recovery for a failure of a monitored pipeline."""
        state = self._state(pipeline_id)
        logger.info(f"Attempting recovery for pipeline: {pipeline_id}")
        context = RecoveryContext(
            pipeline_id=pipeline_id,
            failure=failure,
            environment=self._environment(pipeline_id),
            history=self.recovery.history(pipeline_id),
            metrics=state.metrics.latest(self.clock()),
        )
        outcome = await self.recovery.attempt(context)

        if outcome.success:
            was = state.breaker.state
            state.breaker.record_success()
            self.emit("recoverySuccessful", {
                "pipelineId": pipeline_id,
                "action": outcome.action.name,
                "result": outcome.result,
            })
            if was == CircuitState.HALF_OPEN and state.breaker.state == CircuitState.CLOSED:
                self.emit("circuitBreakerClosed", {
                    "pipelineId": pipeline_id,
                    "circuitBreaker": state.breaker.to_dict(),
                })
        elif outcome.candidates:
            logger.error(f"All recovery attempts failed for pipeline: {pipeline_id}")
            self.emit("recoveryFailed", {
                "pipelineId": pipeline_id,
                "failure": failure,
                "attemptsCount": len(outcome.attempts),
                "candidatesCount": outcome.candidates,
            })
        return outcome

    def _update_health(self, pipeline_id: str, state: _PipelineState):
        now = self.clock()
        health = state.health
        summary = state.metrics.summarize(now)
        if summary is not None:
            health.metrics = summary

        detected = detect_issues(
            health.metrics,
            self.config.expected_duration_for(pipeline_id),
            self.config,
            now,
        )
        health.issues = merge_issues(health.issues, detected)
        previous = health.status
        health.status = overall_status(health.issues)
        health.last_check = now
        health.uptime = (now - state.started_at).total_seconds()

        if health.status != previous:
            logger.info(f"Health status changed for {pipeline_id}: {previous.value} -> {health.status.value}")
            self.emit("healthStatusChanged", {
                "pipelineId": pipeline_id,
                "previous": previous,
                "health": health,
            })

    # -- periodic checks ------------------------------------------------

    def check_health(self):
        """One periodic tick: expire open breakers and publish current health."""
        for pipeline_id, state in self._pipelines.items():
            if state.breaker.poll():
                self.emit("circuitBreakerHalfOpen", {
                    "pipelineId": pipeline_id,
                    "circuitBreaker": state.breaker.to_dict(),
                })
            self.emit("healthCheck", {"pipelineId": pipeline_id, "health": state.health})

    async def run_health_checks(self, stop: asyncio.Event):
        """Run ``check_health`` every ``health_check_interval`` seconds until stopped."""
        while not stop.is_set():
            self.check_health()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.config.health_check_interval)
            except asyncio.TimeoutError:
                continue

    # -- dashboard ------------------------------------------------------

    def dashboard(self) -> dict[str, Any]:
        pipelines = []
        for pipeline_id, state in self._pipelines.items():
            pipelines.append({
                "pipelineId": pipeline_id,
                "health": state.health,
                "circuitBreaker": state.breaker.to_dict(),
                "recentRecoveryAttempts": self.recovery.history(pipeline_id)[-5:],
            })

        return to_jsonable({
            "timestamp": self.clock(),
            "pipelines": pipelines,
            "overallStats": self._overall_stats(pipelines),
            "systemHealth": {
                "uptime": (self.clock() - self.started_at).total_seconds(),
                "monitoredPipelines": len(self._pipelines),
                "pythonVersion": platform.python_version(),
                "pid": os.getpid(),
            },
        })

    @staticmethod
    def _overall_stats(pipelines: list[dict]) -> dict[str, float]:
        total = len(pipelines)
        healthy = sum(1 for p in pipelines if p["health"].status == HealthStatus.HEALTHY)
        unhealthy = sum(
            1 for p in pipelines
            if p["health"].status in (HealthStatus.UNHEALTHY, HealthStatus.CRITICAL)
        )
        attempts = [a for p in pipelines for a in p["recentRecoveryAttempts"]]
        successful = sum(1 for a in attempts if a.success)

        return {
            "totalPipelines": total,
            "healthyPipelines": healthy,
            "unhealthyPipelines": unhealthy,
            "overallHealthPercentage": healthy / total * 100 if total else 0.0,
            "averageSuccessRate": (
                sum(p["health"].metrics.success_rate for p in pipelines) / total if total else 0.0
            ),
            "averageDuration": (
                sum(p["health"].metrics.average_duration for p in pipelines) / total if total else 0.0
            ),
            "recoverySuccessRate": successful / len(attempts) * 100 if attempts else 0.0,
        }
