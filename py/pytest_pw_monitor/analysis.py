"""
Failure analysis for Playwright test runs.

A failed run is reduced to symptoms (error message, stack frames, resource
figures, affected components), matched against known failure patterns and
past incidents, and turned into a ranked list of recommendations.
"""

import hashlib
import logging
import os
import platform
import re
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from .config import AnalyzerConfig
from .errors import AnalysisError
from .reporter import to_jsonable

logger = logging.getLogger(__name__)

PRIORITY_WEIGHT = {"critical": 4, "high": 3, "medium": 2, "low": 1}


@dataclass
class PipelineRun:
    id: str
    failed_at: datetime
    failed_stage: str
    exit_code: int
    logs: list[str]
    branch: str = ""
    commit: str = ""
    author: str = ""
    parallel_jobs: int = 1
    duration: float | None = None


@dataclass
class EnvironmentContext:
    branch: str
    commit: str
    triggered_by: str
    parallel_jobs: int
    runner: str
    os: str


@dataclass
class FailureMetrics:
    """Resource figures found in the logs; None when the logs do not say."""

    duration: float = 0.0
    memory_usage: float | None = None  # MB
    cpu_usage: float | None = None  # percent
    disk_space: float | None = None  # GB free


@dataclass
class FailureSymptoms:
    timestamp: datetime
    pipeline_id: str
    stage: str
    exit_code: int
    error_message: str
    affected_components: list[str]
    environment: EnvironmentContext
    metrics: FailureMetrics
    stack_trace: str | None = None


@dataclass
class Resolution:
    action: str
    success: bool
    time_to_resolve: float  # seconds
    automatable: bool = False
    implemented_by: str = "unknown"
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class FailurePattern:
    error_signature: str
    frequency: int = 0
    recent_occurrences: list[datetime] = field(default_factory=list)
    common_factors: list[str] = field(default_factory=list)
    resolution_history: list[Resolution] = field(default_factory=list)
    average_resolution_time: float = 0.0
    success_rate: float = 0.0


@dataclass
class CauseFinding:
    cause: str
    confidence: float


@dataclass
class RootCause:
    primary_cause: str
    confidence: float
    contributing_factors: list[str]


@dataclass
class Impact:
    severity: str
    affected_users: int
    business_impact: str


@dataclass
class Recommendation:
    action: str
    priority: str
    confidence: float
    automatable: bool
    estimated_time: float  # seconds
    resources: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)


@dataclass
class AnalysisResult:
    signature: str
    primary_cause: str
    confidence: float
    contributing_factors: list[str]
    recommendations: list[Recommendation]
    similar_incidents: list[FailureSymptoms]
    estimated_impact: Impact
    error_message: str = ""


# -- symptom extraction ---------------------------------------------------

# Ordered: the first pattern matching the most recent log line wins
ERROR_PATTERNS = [
    (
        "pytest-timeout",
        re.compile(r"Failed: Timeout \(?>?(\d+(?:\.\d+)?)s\)?"),
        lambda m: f"Test exceeded timeout of {float(m.group(1)) * 1000:.0f}ms",
    ),
    (
        "playwright-timeout",
        re.compile(r"Test timeout of (\d+)ms exceeded", re.I),
        lambda m: f"Test exceeded timeout of {m.group(1)}ms",
    ),
    (
        "action-timeout",
        re.compile(r"TimeoutError: .*?Timeout (\d+)ms exceeded", re.I),
        lambda m: f"Playwright action exceeded timeout of {m.group(1)}ms",
    ),
    (
        "element-not-found",
        re.compile(r"Error: Element (.+) not found", re.I),
        lambda m: f"Element not found: {m.group(1)}",
    ),
    (
        "network-error",
        re.compile(r"net::ERR_([A-Z_]+)", re.I),
        lambda m: f"Network error: {m.group(1)}",
    ),
    (
        "out-of-memory",
        re.compile(r"Cannot allocate memory|Ineffective mark-compacts|MemoryError", re.I),
        lambda m: "Out of memory error during test execution",
    ),
    (
        "assertion",
        re.compile(r"AssertionError: (.+)"),
        lambda m: f"Assertion failed: {m.group(1).strip()}",
    ),
    (
        "generic-error",
        re.compile(r"ERROR:\s*(.+)", re.I),
        lambda m: m.group(1).strip(),
    ),
]

STACK_FRAME = re.compile(r"^\s+at\s+.+$|^\s*File \".+\", line \d+.*$", re.M)


def log_lines(text: str) -> list[str]:
    """Non-blank lines of a longrepr or captured output."""
    return [line for line in text.splitlines() if line.strip()]


def extract_error(logs: list[str]) -> tuple[str, str | None]:
    """Error message and stack frames from the most recent matching log entry."""
    for entry in reversed(logs):
        for _name, pattern, extract in ERROR_PATTERNS:
            match = pattern.search(entry)
            if match:
                frames = STACK_FRAME.findall(entry)
                return extract(match), "\n".join(frames) if frames else None

    for entry in reversed(logs):
        if entry.strip():
            return entry.strip().splitlines()[-1].strip(), None
    return "Unknown error", None


_MEMORY = re.compile(r"Memory(?: usage)?:\s*(\d+(?:\.\d+)?)\s*MB", re.I)
_CPU = re.compile(r"CPU(?: usage)?:\s*(\d+(?:\.\d+)?)\s*%", re.I)
_DISK = re.compile(r"Disk(?: space)?:\s*(\d+(?:\.\d+)?)\s*GB", re.I)


def parse_resource_metrics(logs: list[str], duration: float | None = None) -> FailureMetrics:
    metrics = FailureMetrics(duration=duration or 0.0)
    for entry in logs:
        if m := _MEMORY.search(entry):
            metrics.memory_usage = float(m.group(1))
        if m := _CPU.search(entry):
            metrics.cpu_usage = float(m.group(1))
        if m := _DISK.search(entry):
            metrics.disk_space = float(m.group(1))
    return metrics


COMPONENT_PATTERNS = [
    re.compile(r"\b(test_[\w-]+\.py)\b"),
    re.compile(r"\b([\w-]+_test\.py)\b"),
    re.compile(r"([^/\s\"']+\.(?:spec|test|page)\.[jt]s)"),
    re.compile(r"\bsrc/([^/\s\"':]+)"),
]
_BROWSER = re.compile(r"browser:\s*(\w+)", re.I)


def identify_components(stage: str, logs: list[str]) -> list[str]:
    components = []
    if stage:
        components.append(stage)
    for entry in logs:
        for pattern in COMPONENT_PATTERNS:
            for match in pattern.findall(entry):
                if match not in components:
                    components.append(match)
    if browser := _BROWSER.search("\n".join(logs)):
        name = f"browser-{browser.group(1).lower()}"
        if name not in components:
            components.append(name)
    return components


_UUID = re.compile(r"[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}", re.I)
_VERSION = re.compile(r"\b\d+\.\d+\.\d+\b")
_IDENT = re.compile(r"\b[A-Z][a-z]+\d+\b")
_DIGITS = re.compile(r"\d+")


def error_signature(stage: str, message: str) -> str:
    """Normalize volatile parts of an error so recurrences share a signature."""
    normalized = _UUID.sub("UUID", message)
    normalized = _VERSION.sub("VERSION", normalized)
    normalized = _IDENT.sub("ID", normalized)
    normalized = _DIGITS.sub("N", normalized)
    return f"{stage}:{normalized.lower().strip()}"


# -- similarity -----------------------------------------------------------

def jaccard(a, b) -> float:
    a, b = set(a), set(b)
    union = a | b
    return len(a & b) / len(union) if union else 0.0


def text_similarity(first: str, second: str) -> float:
    return jaccard(first.lower().split(), second.lower().split())


def environment_similarity(first: EnvironmentContext, second: EnvironmentContext) -> float:
    keys = ("branch", "os", "runner")
    return sum(getattr(first, k) == getattr(second, k) for k in keys) / len(keys)


def similarity_score(first: FailureSymptoms, second: FailureSymptoms) -> float:
    score = text_similarity(first.error_message, second.error_message) * 0.4
    if first.stage == second.stage:
        score += 0.2
    score += jaccard(first.affected_components, second.affected_components) * 0.25
    score += environment_similarity(first.environment, second.environment) * 0.15
    return score


# -- root cause -----------------------------------------------------------

MESSAGE_CAUSES = [
    (("timeout", "timed out"), "Test execution timeout", 0.9),
    (("element", "not found", "selector"), "Element selector issue", 0.8),
    (("memory", "out of memory", "allocation"), "Memory exhaustion", 0.95),
    (("network", "connection", "refused"), "Network connectivity issue", 0.85),
    (("permission", "denied", "access"), "Permission or access issue", 0.8),
    (("browser", "chromium", "firefox", "webkit", "launch"), "Browser launch or configuration issue", 0.75),
]

TIMING_KEYWORDS = ("timeout", "race", "timing", "wait", "async")


def analyze_error_message(symptoms: FailureSymptoms) -> CauseFinding:
    message = symptoms.error_message.lower()
    for keywords, cause, confidence in MESSAGE_CAUSES:
        matched = sum(1 for keyword in keywords if keyword in message)
        if matched:
            return CauseFinding(cause, min(confidence + (matched - 1) * 0.1, 0.99))
    return CauseFinding("Unknown error pattern", 0.1)


def analyze_environment(symptoms: FailureSymptoms) -> CauseFinding:
    metrics = symptoms.metrics
    if symptoms.environment.parallel_jobs > 4:
        return CauseFinding("Resource contention from high parallelism", 0.7)
    if metrics.memory_usage is not None and metrics.memory_usage > 3000:
        return CauseFinding("High memory usage causing performance issues", 0.8)
    if metrics.duration > 1800:
        return CauseFinding("Long-running test execution", 0.6)
    return CauseFinding("Environmental factors within normal range", 0.2)


def analyze_resources(symptoms: FailureSymptoms) -> CauseFinding:
    metrics = symptoms.metrics
    if metrics.memory_usage is not None and metrics.memory_usage > 4000:
        return CauseFinding("Memory constraint violation", 0.9)
    if metrics.cpu_usage is not None and metrics.cpu_usage > 90:
        return CauseFinding("CPU resource exhaustion", 0.85)
    if metrics.disk_space is not None and metrics.disk_space < 1:
        return CauseFinding("Disk space exhaustion", 0.95)
    return CauseFinding("Resource constraints within acceptable limits", 0.1)


def analyze_timing(symptoms: FailureSymptoms) -> CauseFinding:
    message = symptoms.error_message.lower()
    if not any(keyword in message for keyword in TIMING_KEYWORDS):
        return CauseFinding("No timing issues detected", 0.1)
    if symptoms.environment.parallel_jobs > 1:
        return CauseFinding("Race condition in parallel execution", 0.75)
    return CauseFinding("Timing or synchronization issue", 0.6)


def root_cause(symptoms: FailureSymptoms) -> RootCause:
    findings = [
        analyze_error_message(symptoms),
        analyze_environment(symptoms),
        analyze_resources(symptoms),
        analyze_timing(symptoms),
    ]
    findings.sort(key=lambda f: f.confidence, reverse=True)
    primary = findings[0]
    return RootCause(
        primary_cause=primary.cause,
        confidence=primary.confidence,
        contributing_factors=[f.cause for f in findings[1:] if f.confidence > 0.3],
    )


def assess_impact(symptoms: FailureSymptoms) -> Impact:
    message = symptoms.error_message.lower()
    factors = [
        (symptoms.stage in ("deployment", "production"), "critical", "Production deployment failure"),
        ("critical" in message or "fatal" in message, "critical", "Critical system failure"),
        (
            symptoms.environment.parallel_jobs > 10 or symptoms.metrics.duration > 3600,
            "high",
            "High resource impact affecting multiple operations",
        ),
        (len(symptoms.affected_components) > 5, "medium", "Multiple components affected"),
    ]
    severity, business_impact = "low", "Development workflow disruption"
    for condition, level, impact in factors:
        if condition:
            severity, business_impact = level, impact
            break

    affected_users = 0
    if symptoms.environment.branch in ("main", "master"):
        affected_users = {"critical": 1000, "high": 500, "medium": 100}.get(severity, 10)

    return Impact(severity=severity, affected_users=affected_users, business_impact=business_impact)


# -- analyzer -------------------------------------------------------------

KNOWN_PATTERNS = {
    "test:test exceeded timeout of nms": [
        "Increase timeout values",
        "Add explicit waits",
        "Optimize test performance",
    ],
    "test:out of memory error during test execution": [
        "Reduce parallel workers",
        "Close unused browser contexts",
    ],
}


class FailureAnalyzer:
    """Analyzes failed runs and learns recurring failure patterns."""

    def __init__(
        self,
        config: AnalyzerConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or AnalyzerConfig()
        self.clock = clock
        self.failure_history: dict[str, deque[FailureSymptoms]] = {}
        self.patterns: dict[str, FailurePattern] = {}
        self.resolutions: dict[str, list[Resolution]] = {}
        self._cache: OrderedDict[str, AnalysisResult] = OrderedDict()
        self._lookups = 0
        self._hits = 0
        self._analysis_times: deque[float] = deque(maxlen=self.config.timing_sample_size)
        self._load_known_patterns()

    def _load_known_patterns(self):
        for signature, actions in KNOWN_PATTERNS.items():
            self.patterns[signature] = FailurePattern(
                error_signature=signature,
                resolution_history=[
                    Resolution(action=action, success=True, time_to_resolve=1800, implemented_by="system")
                    for action in actions
                ],
                average_resolution_time=1800,
                success_rate=0.8,
            )

    def analyze(self, run: PipelineRun) -> AnalysisResult:
        """Analyze a failed run. Raises AnalysisError if analysis cannot complete."""
        logger.info(f"Starting failure analysis for pipeline {run.id}")
        started = time.perf_counter()
        try:
            symptoms = self.collect_symptoms(run)
            signature = error_signature(symptoms.stage, symptoms.error_message)
            pattern = self._record_pattern(signature, symptoms)

            key = self._cache_key(symptoms, signature)
            self._lookups += 1
            cached = self._cache.get(key)
            if cached is not None:
                self._hits += 1
                self._cache.move_to_end(key)
                logger.info("Using cached analysis for similar failure")
                return cached

            cause = root_cause(symptoms)
            similar = self.find_similar_incidents(symptoms)
            result = AnalysisResult(
                signature=signature,
                primary_cause=cause.primary_cause,
                confidence=cause.confidence,
                contributing_factors=cause.contributing_factors,
                recommendations=self.recommend(cause, pattern, similar),
                similar_incidents=similar,
                estimated_impact=assess_impact(symptoms),
                error_message=symptoms.error_message,
            )
            self._store_in_cache(key, result)
        except Exception as e:
            raise AnalysisError(f"Analysis failed: {e}") from e
        finally:
            self._analysis_times.append((time.perf_counter() - started) * 1000)

        logger.info(f"Analysis complete. Primary cause: {result.primary_cause}")
        return result

    def collect_symptoms(self, run: PipelineRun) -> FailureSymptoms:
        message, stack_trace = extract_error(run.logs)
        symptoms = FailureSymptoms(
            timestamp=run.failed_at,
            pipeline_id=run.id,
            stage=run.failed_stage,
            exit_code=run.exit_code,
            error_message=message,
            stack_trace=stack_trace,
            affected_components=identify_components(run.failed_stage, run.logs),
            environment=EnvironmentContext(
                branch=run.branch,
                commit=run.commit,
                triggered_by=run.author,
                parallel_jobs=run.parallel_jobs,
                runner=os.environ.get("RUNNER_NAME", "unknown"),
                os=platform.system().lower(),
            ),
            metrics=parse_resource_metrics(run.logs, run.duration),
        )
        history = self.failure_history.setdefault(
            run.id, deque(maxlen=self.config.max_history_size)
        )
        history.append(symptoms)
        return symptoms

    def _record_pattern(self, signature: str, symptoms: FailureSymptoms) -> FailurePattern:
        pattern = self.patterns.get(signature)
        if pattern is None:
            pattern = FailurePattern(
                error_signature=signature,
                common_factors=list(symptoms.affected_components),
            )
            self.patterns[signature] = pattern
        elif pattern.frequency == 0:
            pattern.common_factors = list(symptoms.affected_components)
        else:
            # factors shared by every occurrence so far
            pattern.common_factors = [
                c for c in pattern.common_factors if c in symptoms.affected_components
            ]

        pattern.frequency += 1
        pattern.recent_occurrences.append(symptoms.timestamp)
        del pattern.recent_occurrences[:-self.config.pattern_occurrence_limit]
        return pattern

    def find_similar_incidents(self, symptoms: FailureSymptoms) -> list[FailureSymptoms]:
        scored = [
            (similarity_score(symptoms, past), past)
            for history in self.failure_history.values()
            for past in history
            if past is not symptoms
        ]
        scored.sort(key=lambda item: item[0], reverse=True)
        top = scored[: self.config.similar_incident_limit]
        return [past for score, past in top if score > self.config.similarity_threshold]

    def recommend(
        self,
        cause: RootCause,
        pattern: FailurePattern | None,
        similar: list[FailureSymptoms],
    ) -> list[Recommendation]:
        recommendations = []
        primary = cause.primary_cause.lower()

        if "timeout" in primary:
            recommendations.append(Recommendation(
                action="Increase test timeouts and add explicit waits",
                priority="high",
                confidence=0.8,
                automatable=True,
                estimated_time=1800,
                resources=["pytest.ini", "conftest.py"],
            ))
        if "memory" in primary:
            recommendations.append(Recommendation(
                action="Increase memory allocation for test runners",
                priority="critical",
                confidence=0.9,
                automatable=True,
                estimated_time=900,
                resources=["CI configuration", "Docker resources"],
                dependencies=["infrastructure-team"],
            ))
        if "element" in primary or "selector" in primary:
            recommendations.append(Recommendation(
                action="Review and update element selectors",
                priority="medium",
                confidence=0.7,
                automatable=False,
                estimated_time=3600,
                resources=["test files", "page objects"],
                dependencies=["QA team review"],
            ))

        if pattern is not None:
            if pattern.frequency > self.config.recurring_threshold:
                recommendations.append(Recommendation(
                    action="Implement automated recovery for recurring issue",
                    priority="high",
                    confidence=0.75,
                    automatable=True,
                    estimated_time=7200,
                    resources=["CI pipeline", "monitoring system"],
                    dependencies=["devops-team"],
                ))
            for resolution in pattern.resolution_history:
                if resolution.success:
                    recommendations.append(Recommendation(
                        action=f"Apply known fix: {resolution.action}",
                        priority="medium",
                        confidence=round(max(pattern.success_rate, 0.5), 2),
                        automatable=resolution.automatable,
                        estimated_time=resolution.time_to_resolve,
                        resources=["known-pattern"],
                    ))

        for resolution in self.successful_resolutions(similar):
            recommendations.append(Recommendation(
                action=f"Apply proven solution: {resolution.action}",
                priority="medium",
                confidence=0.8,
                automatable=resolution.automatable,
                estimated_time=resolution.time_to_resolve,
                resources=["historical-resolution"],
            ))

        recommendations.append(Recommendation(
            action="Add comprehensive logging for better debugging",
            priority="low",
            confidence=0.6,
            automatable=True,
            estimated_time=1800,
            resources=["test framework"],
        ))

        recommendations.sort(key=lambda r: (PRIORITY_WEIGHT[r.priority], r.confidence), reverse=True)
        return recommendations

    def successful_resolutions(self, incidents: list[FailureSymptoms]) -> list[Resolution]:
        unique: dict[str, Resolution] = {}
        for incident in incidents:
            for resolution in self.resolutions.get(incident.pipeline_id, []):
                if resolution.success:
                    unique.setdefault(resolution.action, resolution)
        return sorted(unique.values(), key=lambda r: r.time_to_resolve)

    def record_resolution(self, pipeline_id: str, resolution: Resolution):
        """Store how a pipeline's failure was resolved and update its patterns."""
        self.resolutions.setdefault(pipeline_id, []).append(resolution)
        signatures = {
            error_signature(s.stage, s.error_message)
            for s in self.failure_history.get(pipeline_id, ())
        }
        for signature in signatures:
            pattern = self.patterns.get(signature)
            if pattern is None:
                continue
            pattern.resolution_history.append(resolution)
            history = pattern.resolution_history
            pattern.success_rate = sum(r.success for r in history) / len(history)
            pattern.average_resolution_time = sum(r.time_to_resolve for r in history) / len(history)
        # patterns changed, so cached recommendations are stale
        self._cache.clear()

    def _cache_key(self, symptoms: FailureSymptoms, signature: str) -> str:
        key = "|".join([
            symptoms.stage,
            signature,
            symptoms.environment.os,
            ",".join(sorted(symptoms.affected_components)),
        ])
        return hashlib.sha256(key.encode()).hexdigest()

    def _store_in_cache(self, key: str, result: AnalysisResult):
        self._cache[key] = result
        while len(self._cache) > self.config.cache_size:
            self._cache.popitem(last=False)

    def statistics(self) -> dict[str, Any]:
        resolutions = [r for rs in self.resolutions.values() for r in rs]
        times = self._analysis_times
        return {
            "totalFailures": sum(len(h) for h in self.failure_history.values()),
            "totalPatterns": len(self.patterns),
            "totalResolutions": len(resolutions),
            "successRate": (
                sum(r.success for r in resolutions) / len(resolutions) if resolutions else 0.0
            ),
            "averageAnalysisTime": sum(times) / len(times) if times else 0.0,
            "cacheHitRate": self._hits / self._lookups if self._lookups else 0.0,
        }

    def export(self) -> dict[str, Any]:
        return to_jsonable({
            "patterns": self.patterns,
            "resolutions": self.resolutions,
            "failureHistory": {k: list(v) for k, v in self.failure_history.items()},
            "timestamp": self.clock(),
        })
