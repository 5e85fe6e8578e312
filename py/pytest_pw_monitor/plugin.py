"""
Pytest plugin for Playwright pipeline monitoring.

This plugin:
1. Patches Playwright classes at pytest startup
2. Emits JSON events for the test lifecycle and every Playwright step
3. Analyzes each failing test and reports likely causes and fixes
4. Feeds the session outcome into the pipeline monitor (health, circuit
   breaker, recovery, alerts)

Monitoring is enabled with ``--pw-monitor`` or ``pw_monitor = true`` in the
ini file; Playwright instrumentation is always installed.
"""

import asyncio
import json
import os
import time
from datetime import datetime
from pathlib import Path

import pytest

from .analysis import AnalysisResult, FailureAnalyzer, PipelineRun, log_lines
from .config import MonitorConfig, get_config, resolve_pipeline_id
from .instrumentation import patch_playwright
from .monitor import PipelineEvent, PipelineMonitor
from .reporter import JSONReporter, set_active_reporter, to_jsonable

monitor_plugin_key = pytest.StashKey["MonitorPlugin"]()


def _run(coro):
    # Private loop: never touch the loop pytest-asyncio may own
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class MonitorPlugin:
    """Per-session state: reporter, failure analyzer and pipeline monitor."""

    def __init__(
        self,
        settings: MonitorConfig,
        reporter: JSONReporter,
        report_path: Path | None = None,
        clock=datetime.now,
    ):
        self.settings = settings
        self.reporter = reporter
        self.report_path = report_path
        self.clock = clock
        self.analyzer = FailureAnalyzer(settings.analyzer, clock=clock)
        self.monitor = PipelineMonitor(settings, reporter=reporter, clock=clock)
        self.analyses: list[tuple[str, AnalysisResult]] = []
        self._session_started: float | None = None

    @property
    def pipeline_id(self) -> str:
        return self.settings.pipeline_id

    def pytest_sessionstart(self, session: pytest.Session):
        """Called after the Session object has been created."""
        set_active_reporter(self.reporter)
        self._session_started = time.time()
        self.reporter.log_event("onBegin", {
            "rootdir": str(session.config.rootpath),
            "args": session.config.args,
            "pipelineId": self.pipeline_id,
        })
        self.monitor.monitor_pipeline(self.pipeline_id)
        _run(self.monitor.process_event(PipelineEvent(self.pipeline_id, "start")))

    def pytest_runtest_logstart(self, nodeid: str, location: tuple[str, int | None, str]):
        """Called at the start of running the runtest protocol for a single item."""
        self.reporter.begin_test(nodeid)
        self.reporter.log_event("onTestBegin", {
            "test": {
                "id": nodeid,
                "location": {
                    "file": location[0],
                    "line": location[1],
                    "name": location[2],
                }
            }
        })

    def pytest_runtest_makereport(self, item: pytest.Item, call: pytest.CallInfo):
        """Record fixture and test-body errors as steps of the test."""
        if call.excinfo is not None and not call.excinfo.errisinstance(pytest.skip.Exception):
            self.reporter.log_event("onStepEnd", {
                "step": {
                    "title": call.when,
                    "category": "hook",
                    "duration": call.duration * 1000,
                    "error": str(call.excinfo.value),
                }
            })

    def pytest_runtest_logreport(self, report: pytest.TestReport):
        """Process the TestReport produced for each test phase."""
        if report.when != "call" and not report.failed:
            return

        self.reporter.log_event("onTestEnd", {
            "test": {
                "id": report.nodeid,
                "phase": report.when,
                "outcome": report.outcome,
                "duration": report.duration,
            },
            "result": {
                "status": report.outcome,
                "duration": report.duration,
            }
        })
        if report.failed:
            self.reporter.log_event("onError", {
                "test": {"id": report.nodeid},
                "error": report.longreprtext or None,
            })
            self.analyze_report(report)

    def analyze_report(self, report: pytest.TestReport) -> AnalysisResult:
        logs = self.reporter.take_step_log()
        logs.extend(log_lines(report.longreprtext))
        run = PipelineRun(
            id=self.pipeline_id,
            failed_at=self.clock(),
            failed_stage="test" if report.when == "call" else report.when,
            exit_code=1,
            logs=logs,
            branch=os.environ.get("GITHUB_REF_NAME", ""),
            commit=os.environ.get("GITHUB_SHA", ""),
            author=os.environ.get("GITHUB_ACTOR", ""),
            parallel_jobs=self.settings.parallel_jobs,
            duration=report.duration,
        )
        result = self.analyzer.analyze(run)
        self.analyses.append((report.nodeid, result))
        self.reporter.log_event("onFailureAnalysis", {
            "test": {"id": report.nodeid},
            "analysis": to_jsonable(result),
        })
        return result

    def session_event(self, session: pytest.Session, exitstatus: int) -> PipelineEvent:
        """The pipeline event describing how the test session ended."""
        duration = time.time() - (self._session_started or time.time())
        ok = exitstatus in (pytest.ExitCode.OK, pytest.ExitCode.NO_TESTS_COLLECTED)
        if ok and not self.analyses:
            return PipelineEvent(self.pipeline_id, "success", data={
                "duration": duration,
                "stage": "test",
            })

        if self.analyses:
            _, first = self.analyses[0]
            reason = f"{first.primary_cause}: {first.error_message}"
        else:
            reason = f"Test session exited with status {int(exitstatus)}"
        return PipelineEvent(self.pipeline_id, "failure", data={
            "duration": duration,
            "stage": "test",
            "reason": reason,
            "exit_code": int(exitstatus),
            "logs": [result.error_message for _, result in self.analyses],
        })

    def pytest_sessionfinish(self, session: pytest.Session, exitstatus: int):
        """Called after whole test run finished."""
        self.reporter.log_event("onEnd", {
            "exitstatus": int(exitstatus),
            "testsfailed": session.testsfailed,
            "testscollected": session.testscollected,
        })
        _run(self.monitor.process_event(self.session_event(session, exitstatus)))
        if self.report_path is not None:
            self.write_report(self.report_path)

    def build_report(self) -> dict:
        return {
            "pipelineId": self.pipeline_id,
            "dashboard": self.monitor.dashboard(),
            "analyses": [
                {"test": nodeid, "analysis": to_jsonable(result)}
                for nodeid, result in self.analyses
            ],
            "statistics": self.analyzer.statistics(),
        }

    def write_report(self, path: Path):
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.build_report(), f, indent=2, default=str)

    def pytest_terminal_summary(self, terminalreporter, exitstatus: int, config: pytest.Config):
        tr = terminalreporter
        if self.analyses:
            tr.section("Playwright failure analysis")
            for nodeid, result in self.analyses:
                tr.write_line(
                    f"{nodeid}: {result.primary_cause} "
                    f"({result.confidence * 100:.0f}% confidence, "
                    f"{result.estimated_impact.severity} impact)"
                )
                tr.write_line(f"    error: {result.error_message}")
                for rec in result.recommendations[:3]:
                    tr.write_line(f"    [{rec.priority.upper()}] {rec.action}")

        health = self.monitor.health(self.pipeline_id)
        breaker = self.monitor.circuit_breaker(self.pipeline_id)
        tr.section("Pipeline health")
        tr.write_line(
            f"{self.pipeline_id}: {health.status.value}, "
            f"success rate {health.metrics.success_rate:.1f}%, "
            f"circuit breaker {breaker.state.value}"
        )
        for issue in health.issues:
            tr.write_line(f"    [{issue.severity.value.upper()}] {issue.description}")


def pytest_addoption(parser: pytest.Parser):
    group = parser.getgroup("pw-monitor", "Playwright pipeline monitoring")
    group.addoption(
        "--pw-monitor", action="store_true", default=None,
        help="Enable failure analysis and pipeline monitoring.",
    )
    group.addoption(
        "--pw-monitor-config", default=None, metavar="PATH",
        help="YAML monitor configuration (default: pw-monitor.yaml).",
    )
    group.addoption(
        "--pw-monitor-pipeline", default=None, metavar="ID",
        help="Pipeline id the session reports as.",
    )
    group.addoption(
        "--pw-monitor-report", default=None, metavar="PATH",
        help="Write the dashboard and failure analyses to a JSON file.",
    )
    group.addoption(
        "--pw-monitor-quiet", action="store_true", default=None,
        help="Do not print JSON events to stdout.",
    )
    parser.addini("pw_monitor", "Enable pipeline monitoring.", type="bool", default=False)
    parser.addini("pw_monitor_config", "YAML monitor configuration path.", default="pw-monitor.yaml")
    parser.addini("pw_monitor_pipeline", "Pipeline id the session reports as.", default="")
    parser.addini("pw_monitor_report", "JSON report output path.", default="")
    parser.addini("pw_monitor_quiet", "Do not print JSON events.", type="bool", default=False)


def _setting(config: pytest.Config, name: str):
    value = config.getoption(name)
    return value if value is not None else config.getini(name)


def build_plugin(config: pytest.Config) -> MonitorPlugin:
    config_path = Path(_setting(config, "pw_monitor_config"))
    if not config_path.is_absolute():
        config_path = config.rootpath / config_path
    settings = get_config(str(config_path))

    configured = settings.pipeline_id if settings.pipeline_id != MonitorConfig.pipeline_id else None
    settings.pipeline_id = resolve_pipeline_id(_setting(config, "pw_monitor_pipeline") or configured)

    report = _setting(config, "pw_monitor_report")
    report_path = None
    if report:
        report_path = Path(report)
        if not report_path.is_absolute():
            report_path = config.rootpath / report_path

    reporter = JSONReporter(enabled=not _setting(config, "pw_monitor_quiet"))
    return MonitorPlugin(settings, reporter, report_path)


def pytest_configure(config: pytest.Config):
    """Called after command line options have been parsed."""
    # Patch Playwright classes before any tests run
    patch_playwright()

    if not _setting(config, "pw_monitor"):
        return
    plugin = build_plugin(config)
    config.stash[monitor_plugin_key] = plugin
    config.pluginmanager.register(plugin, "pw-monitor-session")


def pytest_unconfigure(config: pytest.Config):
    plugin = config.stash.get(monitor_plugin_key, None)
    if plugin is None:
        return
    set_active_reporter(None)
    config.pluginmanager.unregister(plugin)
    del config.stash[monitor_plugin_key]
