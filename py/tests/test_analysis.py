"""Failure analysis: symptom extraction, root causes and recommendations."""

from datetime import datetime

import pytest

from pytest_pw_monitor.analysis import (
    FailureAnalyzer,
    PipelineRun,
    Resolution,
    error_signature,
    extract_error,
    identify_components,
    jaccard,
    log_lines,
    parse_resource_metrics,
    text_similarity,
)
from pytest_pw_monitor.config import AnalyzerConfig
from pytest_pw_monitor.errors import AnalysisError


def make_run(logs, pipeline="checkout", stage="test", **kwargs):
    return PipelineRun(
        id=pipeline,
        failed_at=datetime(2024, 5, 1, 12, 0, 0),
        failed_stage=stage,
        exit_code=1,
        logs=logs,
        **kwargs,
    )


@pytest.fixture
def analyzer(clock):
    return FailureAnalyzer(clock=clock)


# -- extraction -------------------------------------------------------------

@pytest.mark.parametrize(
    "line, expected",
    [
        ("E       Failed: Timeout >0.5s", "Test exceeded timeout of 500ms"),
        ("E       Failed: Timeout (>30.0s) from pytest-timeout.", "Test exceeded timeout of 30000ms"),
        ("Test timeout of 30000ms exceeded.", "Test exceeded timeout of 30000ms"),
        ("TimeoutError: locator.click: Timeout 5000ms exceeded.", "Playwright action exceeded timeout of 5000ms"),
        ("Error: Element #submit not found", "Element not found: #submit"),
        ("page.goto: net::ERR_CONNECTION_REFUSED at http://localhost", "Network error: CONNECTION_REFUSED"),
        ("FATAL ERROR: Ineffective mark-compacts near heap limit", "Out of memory error during test execution"),
        ("AssertionError: assert 'Home' == 'Login'", "Assertion failed: assert 'Home' == 'Login'"),
        ("ERROR: fixture 'db' not found", "fixture 'db' not found"),
    ],
)
def test_extract_error_patterns(line, expected):
    message, _ = extract_error(["collected 1 item", line])

    assert message == expected


PYTEST_TIMEOUT_LONGREPR = """
    @pytest.mark.timeout(0.5)
    def test_slow():
>       time.sleep(3)
E       Failed: Timeout >0.5s

test_sample.py:6: Failed
"""

PLAYWRIGHT_TIMEOUT_LONGREPR = """
>       await page.click("#missing", timeout=200)

tests/test_login.py:14:
_ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _ _
E       playwright._impl._errors.TimeoutError: Page.click: Timeout 200ms exceeded.
E       Call log:
E         - waiting for locator("#missing")

.venv/lib/python3.12/site-packages/playwright/_impl/_connection.py:528: TimeoutError
"""

PLAYWRIGHT_NETWORK_LONGREPR = """
>       await page.goto("http://localhost:9/")
E       playwright._impl._errors.Error: Page.goto: net::ERR_CONNECTION_REFUSED at http://localhost:9/
E       Call log:
E         - navigating to "http://localhost:9/", waiting until "load"

.venv/lib/python3.12/site-packages/playwright/_impl/_connection.py:528: Error
"""

ASSERTION_LONGREPR = """
>       assert title == "Welcome"
E       AssertionError: assert 'Sign in' == 'Welcome'
E         
E         - Welcome
E         + Sign in

tests/test_login.py:9: AssertionError
"""


@pytest.mark.parametrize(
    "longrepr, expected",
    [
        (PYTEST_TIMEOUT_LONGREPR, "Test exceeded timeout of 500ms"),
        (PLAYWRIGHT_TIMEOUT_LONGREPR, "Playwright action exceeded timeout of 200ms"),
        (PLAYWRIGHT_NETWORK_LONGREPR, "Network error: CONNECTION_REFUSED"),
        (ASSERTION_LONGREPR, "Assertion failed: assert 'Sign in' == 'Welcome'"),
    ],
)
def test_extract_error_from_pytest_longrepr(longrepr, expected):
    message, _ = extract_error(log_lines(longrepr))

    assert message == expected


def test_pytest_timeout_matches_known_timeout_pattern(analyzer):
    result = analyzer.analyze(make_run(log_lines(PYTEST_TIMEOUT_LONGREPR)))

    assert result.primary_cause == "Test execution timeout"
    assert result.signature == "test:test exceeded timeout of nms"
    assert "Apply known fix: Increase timeout values" in [r.action for r in result.recommendations]


def test_extract_error_prefers_most_recent_entry():
    message, _ = extract_error(["ERROR: setup noise", "AssertionError: wrong title"])

    assert message == "Assertion failed: wrong title"


def test_extract_error_collects_stack_frames():
    entry = (
        "TimeoutError: locator.click: Timeout 5000ms exceeded.\n"
        "    at tests/login.spec.ts:12:5"
    )
    python_entry = (
        "Traceback (most recent call last):\n"
        '  File "/repo/tests/test_login.py", line 12, in test_login\n'
        "AssertionError: wrong title"
    )

    assert extract_error([entry])[1] == "    at tests/login.spec.ts:12:5"
    assert extract_error([python_entry])[1] == '  File "/repo/tests/test_login.py", line 12, in test_login'
    assert extract_error(["AssertionError: no frames"])[1] is None


def test_extract_error_falls_back_to_last_line():
    assert extract_error(["collected 3 items", "plain failure\nlast line", ""]) == ("last line", None)
    assert extract_error([]) == ("Unknown error", None)


def test_parse_resource_metrics():
    metrics = parse_resource_metrics(
        ["Memory usage: 4096 MB", "CPU: 95%", "Disk space: 0.5 GB"], duration=12.5
    )

    assert metrics.memory_usage == 4096
    assert metrics.cpu_usage == 95
    assert metrics.disk_space == 0.5
    assert metrics.duration == 12.5


def test_unreported_resources_stay_unknown():
    metrics = parse_resource_metrics(["AssertionError: nope"])

    assert metrics.memory_usage is None
    assert metrics.cpu_usage is None
    assert metrics.disk_space is None


def test_identify_components():
    logs = [
        "tests/test_login.py::test_submit FAILED",
        "at src/checkout/cart.ts",
        "login.spec.ts:10",
        "browser: Chromium",
        "tests/test_login.py::test_cancel FAILED",
    ]

    assert identify_components("test", logs) == [
        "test",
        "test_login.py",
        "checkout",
        "login.spec.ts",
        "browser-chromium",
    ]


def test_error_signature_normalizes_volatile_parts():
    message = "Request 123e4567-e89b-12d3-a456-426614174000 failed on 1.2.3 for User42 after 30 retries"

    assert error_signature("test", message) == "test:request uuid failed on version for id after n retries"


def test_similarity_helpers():
    assert jaccard(["a", "b"], ["b", "c"]) == pytest.approx(1 / 3)
    assert jaccard([], []) == 0.0
    assert text_similarity("Element Not Found", "element not found") == 1.0


# -- root cause -------------------------------------------------------------

def test_timeout_root_cause(analyzer):
    result = analyzer.analyze(make_run(["Test timeout of 30000ms exceeded."]))

    assert result.primary_cause == "Test execution timeout"
    assert result.confidence == 0.9
    assert result.contributing_factors == ["Timing or synchronization issue"]
    assert result.signature == "test:test exceeded timeout of nms"


def test_memory_root_cause(analyzer):
    result = analyzer.analyze(make_run(["MemoryError"]))

    assert result.primary_cause == "Memory exhaustion"
    assert result.confidence == 0.99
    assert result.recommendations[0].action == "Increase memory allocation for test runners"
    assert result.recommendations[0].priority == "critical"


def test_parallel_timeout_is_race_condition(analyzer):
    result = analyzer.analyze(make_run(["AssertionError: wait for async render"], parallel_jobs=3))

    assert result.primary_cause == "Race condition in parallel execution"


def test_resource_figures_drive_root_cause(analyzer):
    result = analyzer.analyze(make_run(["AssertionError: nope", "Disk space: 0.2 GB"]))

    assert result.primary_cause == "Disk space exhaustion"


def test_unrecognized_failure(analyzer):
    result = analyzer.analyze(make_run(["something odd"]))

    assert result.error_message == "something odd"
    assert result.primary_cause == "Environmental factors within normal range"
    assert [r.action for r in result.recommendations] == [
        "Add comprehensive logging for better debugging"
    ]


# -- impact -----------------------------------------------------------------

@pytest.mark.parametrize(
    "logs, stage, branch, parallel_jobs, severity, users",
    [
        (["ERROR: rollout failed"], "deployment", "main", 1, "critical", 1000),
        (["ERROR: fatal crash"], "test", "feature/x", 1, "critical", 0),
        (["AssertionError: nope"], "test", "master", 12, "high", 500),
        (["AssertionError: nope"], "test", "main", 1, "low", 10),
    ],
)
def test_impact(analyzer, logs, stage, branch, parallel_jobs, severity, users):
    result = analyzer.analyze(make_run(logs, stage=stage, branch=branch, parallel_jobs=parallel_jobs))

    assert result.estimated_impact.severity == severity
    assert result.estimated_impact.affected_users == users


def test_many_components_is_medium_impact(analyzer):
    logs = [f"tests/test_{name}.py::test_it FAILED" for name in "abcdef"] + ["AssertionError: x"]

    result = analyzer.analyze(make_run(logs))

    assert result.estimated_impact.severity == "medium"


# -- recommendations and learning -------------------------------------------

def test_known_pattern_recommendations(analyzer):
    result = analyzer.analyze(make_run(["Test timeout of 30000ms exceeded."]))

    assert [r.action for r in result.recommendations] == [
        "Increase test timeouts and add explicit waits",
        "Apply known fix: Increase timeout values",
        "Apply known fix: Add explicit waits",
        "Apply known fix: Optimize test performance",
        "Add comprehensive logging for better debugging",
    ]
    assert result.recommendations[0].resources == ["pytest.ini", "conftest.py"]
    assert result.recommendations[1].confidence == 0.8


def test_recurring_failure_recommends_automation(analyzer):
    results = [
        analyzer.analyze(make_run([f"tests/test_{name}.py::test_it FAILED", "AssertionError: flaky total"]))
        for name in ("a", "b", "c", "d")
    ]

    recurring = "Implement automated recovery for recurring issue"
    assert all(recurring not in [r.action for r in res.recommendations] for res in results[:3])
    assert recurring in [r.action for r in results[3].recommendations]
    pattern = analyzer.patterns["test:assertion failed: flaky total"]
    assert pattern.frequency == 4
    assert pattern.common_factors == ["test"]


def test_cached_analysis_is_reused(analyzer):
    run = make_run(["AssertionError: wrong title"])

    first = analyzer.analyze(run)
    second = analyzer.analyze(run)

    assert second is first
    assert analyzer.statistics()["cacheHitRate"] == 0.5
    assert analyzer.patterns[first.signature].frequency == 2


def test_cache_evicts_least_recently_used(clock):
    analyzer = FailureAnalyzer(AnalyzerConfig(cache_size=1), clock=clock)
    first = make_run(["AssertionError: one"])
    second = make_run(["AssertionError: two"])

    analyzer.analyze(first)
    analyzer.analyze(second)
    analyzer.analyze(first)

    assert analyzer.statistics()["cacheHitRate"] == 0.0


def test_similar_incidents_exclude_current_failure(analyzer):
    first = analyzer.analyze(make_run(["tests/test_checkout.py::test_pay", "AssertionError: total mismatch"]))
    second = analyzer.analyze(
        make_run(["tests/test_search.py::test_pay", "AssertionError: total mismatch"], pipeline="search")
    )

    assert first.similar_incidents == []
    assert [s.pipeline_id for s in second.similar_incidents] == ["checkout"]


def test_recorded_resolution_is_recommended(analyzer):
    analyzer.analyze(make_run(["tests/test_checkout.py::test_pay", "AssertionError: total mismatch"]))
    analyzer.record_resolution(
        "checkout", Resolution(action="Fix the price fixture", success=True, time_to_resolve=600)
    )

    result = analyzer.analyze(
        make_run(["tests/test_cart.py::test_pay", "AssertionError: total mismatch"], pipeline="cart")
    )

    actions = [r.action for r in result.recommendations]
    assert "Apply proven solution: Fix the price fixture" in actions
    assert "Apply known fix: Fix the price fixture" in actions
    pattern = analyzer.patterns["test:assertion failed: total mismatch"]
    assert pattern.success_rate == 1.0
    assert pattern.average_resolution_time == 600


def test_failed_resolution_lowers_success_rate(analyzer):
    analyzer.analyze(make_run(["AssertionError: total mismatch"]))
    analyzer.record_resolution("checkout", Resolution(action="Retry", success=True, time_to_resolve=60))
    analyzer.record_resolution("checkout", Resolution(action="Reboot", success=False, time_to_resolve=120))

    pattern = analyzer.patterns["test:assertion failed: total mismatch"]
    assert pattern.success_rate == 0.5
    assert pattern.average_resolution_time == 90
    assert analyzer.statistics()["successRate"] == 0.5


def test_history_is_bounded(clock):
    analyzer = FailureAnalyzer(AnalyzerConfig(max_history_size=2), clock=clock)

    for n in range(5):
        analyzer.analyze(make_run([f"AssertionError: case {n}"]))

    assert len(analyzer.failure_history["checkout"]) == 2


def test_analysis_errors_are_wrapped(analyzer):
    with pytest.raises(AnalysisError, match="Analysis failed") as exc_info:
        analyzer.analyze(make_run(None))

    assert isinstance(exc_info.value.__cause__, TypeError)


def test_statistics_and_export(analyzer):
    analyzer.analyze(make_run(["AssertionError: wrong title"]))

    stats = analyzer.statistics()
    assert stats["totalFailures"] == 1
    assert stats["totalPatterns"] == 3
    assert stats["totalResolutions"] == 0
    assert stats["averageAnalysisTime"] >= 0

    exported = analyzer.export()
    assert set(exported) == {"patterns", "resolutions", "failureHistory", "timestamp"}
    assert exported["timestamp"] == "2024-05-01T12:00:00"
    assert exported["failureHistory"]["checkout"][0]["error_message"] == "Assertion failed: wrong title"


def test_analysis_time_samples_are_bounded(clock):
    analyzer = FailureAnalyzer(AnalyzerConfig(timing_sample_size=2), clock=clock)

    for n in range(5):
        analyzer.analyze(make_run([f"AssertionError: case {n}"]))

    assert len(analyzer._analysis_times) == 2
    assert analyzer.statistics()["averageAnalysisTime"] >= 0
