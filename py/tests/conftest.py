"""Shared fixtures: a controllable clock, a quiet reporter, and a Playwright page."""

import io
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from pytest_pw_monitor.config import MonitorConfig
from pytest_pw_monitor.reporter import JSONReporter, set_active_reporter

ARTIFACTS_DIR = Path("test-results")


class FakeClock:
    def __init__(self, start: datetime = datetime(2024, 5, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def reporter() -> JSONReporter:
    return JSONReporter(output=io.StringIO(), enabled=False)


@pytest.fixture
def active_reporter(reporter):
    previous = set_active_reporter(reporter)
    yield reporter
    set_active_reporter(previous)


@pytest.fixture
def config() -> MonitorConfig:
    return MonitorConfig(pipeline_id="pipeline-test")


@pytest.fixture
async def page(request):
    async_api = pytest.importorskip("playwright.async_api")
    ARTIFACTS_DIR.mkdir(exist_ok=True)

    async with async_api.async_playwright() as p:
        try:
            browser = await p.chromium.launch()
        except async_api.Error as e:
            pytest.skip(f"Chromium not available: {e}")

        context = await browser.new_context()
        page = await context.new_page()

        yield page

        # Screenshot on failure
        if hasattr(request.node, "rep_call") and request.node.rep_call.failed:
            await page.screenshot(path=ARTIFACTS_DIR / f"{request.node.name}-failed.png")

        await context.close()
        await browser.close()


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """Store test result on the item for the fixture to access."""
    outcome = yield
    rep = outcome.get_result()
    setattr(item, f"rep_{rep.when}", rep)
