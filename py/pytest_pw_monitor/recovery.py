"""
Automated recovery for failed pipelines.

Recovery actions are tried in priority order. Each action carries a
precondition on the failure, a cooldown and a cap on attempts within the
attempt window; the first action reporting success ends the run.
"""

import asyncio
import logging
import os
import platform
import shutil
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Awaitable, Callable

from .metrics import PipelineMetrics, ResourceUsage

logger = logging.getLogger(__name__)


@dataclass
class PipelineFailure:
    stage: str
    reason: str
    exit_code: int = 1
    duration: float = 0.0
    logs: list[str] = field(default_factory=list)
    resource_usage: ResourceUsage = field(default_factory=ResourceUsage)

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineFailure":
        return cls(
            stage=data.get("stage", "unknown"),
            reason=data.get("reason", ""),
            exit_code=int(data.get("exit_code", data.get("exitCode", 1))),
            duration=float(data.get("duration", 0)),
            logs=list(data.get("logs", [])),
            resource_usage=ResourceUsage.from_dict(
                data.get("resource_usage", data.get("resourceUsage"))
            ),
        )


@dataclass
class EnvironmentInfo:
    pipeline_id: str
    python_version: str
    platform: str
    architecture: str
    available_memory: int  # MB, 0 when unknown
    parallel_jobs: int
    last_deployment: datetime | None = None
    environment_variables: dict[str, str] = field(default_factory=dict)


def _total_memory_mb() -> int:
    try:
        return os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES") // (1024 * 1024)
    except (AttributeError, ValueError, OSError):
        return 0


def gather_environment(pipeline_id: str, parallel_jobs: int = 1) -> EnvironmentInfo:
    """Describe the host the pipeline runs on."""
    workers = os.environ.get("PYTEST_XDIST_WORKER_COUNT")
    if workers and workers.isdigit():
        parallel_jobs = int(workers)
    return EnvironmentInfo(
        pipeline_id=pipeline_id,
        python_version=platform.python_version(),
        platform=platform.system().lower(),
        architecture=platform.machine(),
        available_memory=_total_memory_mb(),
        parallel_jobs=parallel_jobs,
        environment_variables={
            key: os.environ[key] for key in ("CI", "GITHUB_ACTIONS", "RUNNER_NAME") if key in os.environ
        },
    )


@dataclass
class RecoveryAttempt:
    action_id: str
    action_name: str
    timestamp: datetime
    success: bool
    message: str
    actions_taken: list[str] = field(default_factory=list)


@dataclass
class RecoveryContext:
    pipeline_id: str
    failure: PipelineFailure
    environment: EnvironmentInfo
    history: list[RecoveryAttempt]
    metrics: PipelineMetrics


@dataclass
class RecoveryResult:
    success: bool
    message: str
    actions_taken: list[str] = field(default_factory=list)
    next_actions: list[str] = field(default_factory=list)
    prevention_recommendations: list[str] = field(default_factory=list)


@dataclass
class RecoveryAction:
    id: str
    name: str
    description: str
    condition: Callable[[RecoveryContext], bool]
    execute: Callable[[RecoveryContext], Awaitable[RecoveryResult]]
    priority: int = 0
    max_attempts: int = 1
    cooldown: timedelta = timedelta(minutes=5)
    success_rate: float = 0.0


@dataclass
class RecoveryOutcome:
    success: bool
    action: RecoveryAction | None = None
    result: RecoveryResult | None = None
    attempts: list[RecoveryAttempt] = field(default_factory=list)
    candidates: int = 0


class RecoveryEngine:
    """Selects and runs recovery actions, keeping a bounded attempt history."""

    def __init__(
        self,
        actions: list[RecoveryAction] | None = None,
        history_size: int = 50,
        attempt_window: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.actions = list(actions) if actions is not None else default_actions()
        self.history_size = history_size
        self.attempt_window = attempt_window
        self.clock = clock
        self._history: dict[str, deque[RecoveryAttempt]] = {}

    def register(self, action: RecoveryAction):
        self.actions.append(action)

    def history(self, pipeline_id: str) -> list[RecoveryAttempt]:
        return list(self._history.get(pipeline_id, ()))

    def applicable(self, context: RecoveryContext) -> list[RecoveryAction]:
        matching = [action for action in self.actions if action.condition(context)]
        return sorted(matching, key=lambda action: action.priority, reverse=True)

    def is_on_cooldown(self, pipeline_id: str, action: RecoveryAction) -> bool:
        now = self.clock()
        return any(
            attempt.action_id == action.id and now - attempt.timestamp < action.cooldown
            for attempt in self._history.get(pipeline_id, ())
        )

    def recent_attempts(self, pipeline_id: str, action_id: str) -> list[RecoveryAttempt]:
        cutoff = self.clock() - self.attempt_window
        return [
            attempt for attempt in self._history.get(pipeline_id, ())
            if attempt.action_id == action_id and attempt.timestamp > cutoff
        ]

    def record(self, pipeline_id: str, attempt: RecoveryAttempt):
        history = self._history.setdefault(pipeline_id, deque(maxlen=self.history_size))
        history.append(attempt)

    async def attempt(self, context: RecoveryContext) -> RecoveryOutcome:
        """Run applicable actions in priority order until one succeeds."""
        pipeline_id = context.pipeline_id
        candidates = self.applicable(context)
        outcome = RecoveryOutcome(success=False, candidates=len(candidates))

        if not candidates:
            logger.info(f"No recovery actions available for pipeline: {pipeline_id}")
            return outcome

        for action in candidates:
            if self.is_on_cooldown(pipeline_id, action):
                logger.debug(f"Skipping {action.id}: on cooldown")
                continue
            if len(self.recent_attempts(pipeline_id, action.id)) >= action.max_attempts:
                logger.debug(f"Skipping {action.id}: attempt limit reached")
                continue

            logger.info(f"Executing recovery action: {action.name}")
            try:
                result = await action.execute(context)
            except Exception as e:
                logger.exception(f"Recovery action {action.id} raised")
                result = RecoveryResult(success=False, message=f"Action failed: {e}")

            attempt = RecoveryAttempt(
                action_id=action.id,
                action_name=action.name,
                timestamp=self.clock(),
                success=result.success,
                message=result.message,
                actions_taken=list(result.actions_taken),
            )
            self.record(pipeline_id, attempt)
            outcome.attempts.append(attempt)

            if result.success:
                logger.info(f"Recovery successful: {result.message}")
                outcome.success = True
                outcome.action = action
                outcome.result = result
                break
            logger.warning(f"Recovery failed: {result.message}")

        return outcome


def _reason(context: RecoveryContext) -> str:
    return context.failure.reason.lower()


def _mentions(context: RecoveryContext, *keywords: str) -> bool:
    reason = _reason(context)
    return any(keyword in reason for keyword in keywords)


def clear_browser_cache_action(cache_dirs: list[str | Path] | None = None) -> RecoveryAction:
    dirs = [Path(d) for d in cache_dirs or []]

    async def execute(context: RecoveryContext) -> RecoveryResult:
        actions = []
        for directory in dirs:
            if directory.exists():
                await asyncio.to_thread(shutil.rmtree, directory)
                actions.append(f"Removed {directory}")
        if not actions:
            actions.append("No browser cache directories present")
        return RecoveryResult(
            success=True,
            message="Browser cache cleared successfully",
            actions_taken=actions,
            prevention_recommendations=[
                "Use a fresh browser context per test",
                "Clear storage state in test setup",
            ],
        )

    return RecoveryAction(
        id="clear-browser-cache",
        name="Clear Browser Cache",
        description="Clear browser cache and temporary files",
        condition=lambda ctx: ctx.failure.stage == "test" and _mentions(ctx, "cache", "storage"),
        execute=execute,
        priority=8,
        max_attempts=2,
        cooldown=timedelta(minutes=5),
        success_rate=0.75,
    )


def restart_services_action() -> RecoveryAction:
    async def execute(context: RecoveryContext) -> RecoveryResult:
        return RecoveryResult(
            success=True,
            message="Service restart scheduled",
            actions_taken=[
                "Requested browser service restart",
                "Requested test runner restart",
            ],
            next_actions=["Monitor service stability for 10 minutes"],
            prevention_recommendations=[
                "Implement service health checks",
                "Add retry logic with exponential backoff",
            ],
        )

    return RecoveryAction(
        id="restart-services",
        name="Restart Services",
        description="Restart affected services and dependencies",
        condition=lambda ctx: _mentions(ctx, "connection", "service unavailable"),
        execute=execute,
        priority=7,
        max_attempts=1,
        cooldown=timedelta(minutes=10),
        success_rate=0.85,
    )


def scale_resources_action() -> RecoveryAction:
    async def execute(context: RecoveryContext) -> RecoveryResult:
        return RecoveryResult(
            success=True,
            message="Resource scaling requested",
            actions_taken=[
                "Requested larger memory allocation",
                "Requested additional CPU",
                "Requested extended timeouts",
            ],
            prevention_recommendations=[
                "Monitor resource usage patterns",
                "Consider implementing auto-scaling",
            ],
        )

    return RecoveryAction(
        id="scale-resources",
        name="Scale Resources",
        description="Increase resource allocation",
        condition=lambda ctx: (
            _mentions(ctx, "memory", "timeout")
            or ctx.metrics.resource_usage.memory > 90
        ),
        execute=execute,
        priority=6,
        max_attempts=1,
        cooldown=timedelta(minutes=15),
        success_rate=0.9,
    )


def reduce_parallelism_action() -> RecoveryAction:
    async def execute(context: RecoveryContext) -> RecoveryResult:
        original = context.environment.parallel_jobs
        reduced = max(1, original // 2)
        context.environment.parallel_jobs = reduced
        return RecoveryResult(
            success=True,
            message=f"Parallelism reduced from {original} to {reduced}",
            actions_taken=[f"Reduced parallel jobs from {original} to {reduced}"],
            next_actions=[f"Re-run with -n {reduced}"],
            prevention_recommendations=[
                "Monitor resource usage with different parallelism levels",
                "Size worker count from available resources",
            ],
        )

    return RecoveryAction(
        id="reduce-parallelism",
        name="Reduce Parallelism",
        description="Reduce parallel job count to avoid resource contention",
        condition=lambda ctx: (
            ctx.environment.parallel_jobs > 4 and _mentions(ctx, "resource", "contention")
        ),
        execute=execute,
        priority=5,
        max_attempts=2,
        cooldown=timedelta(minutes=5),
        success_rate=0.8,
    )


def default_actions(cache_dirs: list[str | Path] | None = None) -> list[RecoveryAction]:
    return [
        clear_browser_cache_action(cache_dirs),
        restart_services_action(),
        scale_resources_action(),
        reduce_parallelism_action(),
    ]
