"""Step instrumentation against stand-in Playwright classes."""

import pytest

from pytest_pw_monitor.instrumentation import (
    is_wrapped,
    locator_description,
    patch_assertions_class,
    patch_locator_class,
    patch_page_class,
    wrap_sync_method,
)


class FakeAsyncPage:
    async def goto(self, url, **kwargs):
        return f"visited {url}"

    async def fill(self, selector, value, **kwargs):
        return None

    async def click(self, selector, **kwargs):
        raise TimeoutError("Timeout 30000ms exceeded.")


class FakeSyncLocator:
    def __str__(self):
        return "<Locator selector='#submit'>"

    def click(self, **kwargs):
        return "clicked"


class FakeImpl:
    _actual_locator = "<Locator selector='h1'>"


class FakeAssertions:
    _impl_obj = FakeImpl()

    def to_have_text(self, expected, **kwargs):
        return None


async def test_async_page_steps_are_reported(active_reporter):
    patch_page_class(FakeAsyncPage, is_async=True)
    page = FakeAsyncPage()

    assert await page.goto("/dashboard") == "visited /dashboard"
    await page.fill("#email", "qa@example.com")

    ends = active_reporter.events_named("onStepEnd")
    assert [e["step"]["title"] for e in ends] == [
        "page.goto('/dashboard')",
        "page.fill('#email', 'qa@example.com')",
    ]
    assert ends[0]["step"]["category"] == "navigation"
    assert ends[1]["step"]["category"] == "action"
    assert all(e["step"]["error"] is None for e in ends)


async def test_failing_step_reraises_and_lands_in_step_log(active_reporter):
    patch_page_class(FakeAsyncPage, is_async=True)
    active_reporter.begin_test("t")

    with pytest.raises(TimeoutError):
        await FakeAsyncPage().click("#go")

    assert active_reporter.take_step_log() == [
        "ERROR: page.click('#go'): Timeout 30000ms exceeded."
    ]


def test_sync_locator_title_uses_locator_description(active_reporter):
    patch_locator_class(FakeSyncLocator, is_async=False)

    assert FakeSyncLocator().click() == "clicked"

    (begin,) = active_reporter.events_named("onStepBegin")
    assert begin["step"]["title"] == "locator(<Locator selector='#submit'>).click()"


def test_assertion_title_reads_locator_from_impl(active_reporter):
    patch_assertions_class(FakeAssertions, is_async=False)

    FakeAssertions().to_have_text("Welcome")

    (end,) = active_reporter.events_named("onStepEnd")
    assert end["step"]["title"] == "expect(<Locator selector='h1'>).to_have_text('Welcome')"
    assert end["step"]["category"] == "assertion"


def test_patching_twice_does_not_double_wrap():
    class Page:
        def reload(self, **kwargs):
            return "ok"

    assert patch_page_class(Page, is_async=False) == 1
    wrapped = Page.reload
    assert patch_page_class(Page, is_async=False) == 0
    assert Page.reload is wrapped
    assert is_wrapped(Page.reload)


def test_steps_without_active_reporter_are_silent():
    calls = []

    def method(self):
        calls.append(self)
        return 42

    wrapped = wrap_sync_method(method, "action", lambda self: "noop()")

    assert wrapped("page") == 42
    assert calls == ["page"]


def test_locator_description_falls_back_to_str():
    assert locator_description("plain") == "plain"
