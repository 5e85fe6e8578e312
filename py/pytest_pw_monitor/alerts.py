"""Alert rules evaluated against pipeline failures, with per-rule suppression."""

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from .health import Severity
from .recovery import PipelineFailure

logger = logging.getLogger(__name__)


@dataclass
class AlertContext:
    pipeline_id: str
    failure: PipelineFailure
    timestamp: datetime
    error_rate: float = 0.0


@dataclass
class AlertRule:
    id: str
    name: str
    severity: Severity
    condition: Callable[[AlertContext], bool]
    channels: list[str] = field(default_factory=list)
    cooldown: timedelta = timedelta(minutes=5)


@dataclass
class Alert:
    id: str
    rule_id: str
    pipeline_id: str
    severity: Severity
    title: str
    message: str
    timestamp: datetime
    channels: list[str]


def log_alert(alert: Alert):
    logger.warning(
        f"ALERT [{alert.severity.value.upper()}]: {alert.title} - {alert.message} "
        f"(channels: {', '.join(alert.channels)})"
    )


def default_rules(critical_error_rate: float = 50.0) -> list[AlertRule]:
    return [
        AlertRule(
            id="critical-failure",
            name="Critical Pipeline Failure",
            severity=Severity.CRITICAL,
            condition=lambda ctx: (
                ctx.failure.stage == "deployment"
                or "critical" in ctx.failure.reason.lower()
            ),
            channels=["email", "slack", "sms"],
            cooldown=timedelta(minutes=5),
        ),
        AlertRule(
            id="high-error-rate",
            name="High Error Rate Detected",
            severity=Severity.HIGH,
            condition=lambda ctx: ctx.error_rate > critical_error_rate,
            channels=["slack", "email"],
            cooldown=timedelta(minutes=10),
        ),
    ]


class AlertManager:
    def __init__(
        self,
        rules: list[AlertRule] | None = None,
        history_size: int = 100,
        clock: Callable[[], datetime] = datetime.now,
        dispatch: Callable[[Alert], None] = log_alert,
    ):
        self.rules = list(rules) if rules is not None else default_rules()
        self.history_size = history_size
        self.clock = clock
        self.dispatch = dispatch
        self._history: dict[str, deque[Alert]] = {}
        self._suppressed_until: dict[tuple[str, str], datetime] = {}

    def history(self, pipeline_id: str) -> list[Alert]:
        return list(self._history.get(pipeline_id, ()))

    def is_suppressed(self, rule_id: str, pipeline_id: str) -> bool:
        until = self._suppressed_until.get((rule_id, pipeline_id))
        if until is None:
            return False
        if self.clock() >= until:
            del self._suppressed_until[(rule_id, pipeline_id)]
            return False
        return True

    def process_failure(
        self, pipeline_id: str, failure: PipelineFailure, error_rate: float = 0.0
    ) -> list[Alert]:
        """Send an alert for every matching, unsuppressed rule."""
        context = AlertContext(
            pipeline_id=pipeline_id,
            failure=failure,
            timestamp=self.clock(),
            error_rate=error_rate,
        )
        sent = []
        for rule in self.rules:
            if not rule.condition(context) or self.is_suppressed(rule.id, pipeline_id):
                continue
            alert = self._create_alert(rule, context)
            self.dispatch(alert)
            self._suppressed_until[(rule.id, pipeline_id)] = context.timestamp + rule.cooldown
            self._history.setdefault(pipeline_id, deque(maxlen=self.history_size)).append(alert)
            sent.append(alert)
        return sent

    def _create_alert(self, rule: AlertRule, context: AlertContext) -> Alert:
        return Alert(
            id=f"alert-{uuid.uuid4().hex[:12]}",
            rule_id=rule.id,
            pipeline_id=context.pipeline_id,
            severity=rule.severity,
            title=f"{rule.name} - {context.pipeline_id}",
            message=(
                f'Pipeline {context.pipeline_id} failed at stage "{context.failure.stage}" '
                f"with reason: {context.failure.reason}"
            ),
            timestamp=context.timestamp,
            channels=list(rule.channels),
        )
