"""
Auto-instrumentation for Playwright Page, Locator, and expect.

Patched methods report step begin/end to the active reporter. Steps that
raise are also written to the current test's step log, which becomes the
log the failure analyzer reads.
"""

import functools
import time
from typing import Callable

from .reporter import get_active_reporter

_WRAPPED_MARK = "_pw_monitor_wrapped"

# Track if we've already patched to avoid double-patching
_patched = False


def _report(title: str, category: str, started: float, error: str | None):
    active = get_active_reporter()
    if active is not None:
        active.on_step_end(title, category, (time.time() - started) * 1000, error)


def wrap_async_method(method: Callable, category: str, title_fn: Callable[..., str]):
    """Wrap an async method to emit step events."""
    @functools.wraps(method)
    async def wrapper(*args, **kwargs):
        title = title_fn(*args, **kwargs)
        active = get_active_reporter()
        if active is not None:
            active.on_step_begin(title, category)

        started = time.time()
        error = None
        try:
            return await method(*args, **kwargs)
        except Exception as e:
            error = str(e)
            raise
        finally:
            _report(title, category, started, error)

    setattr(wrapper, _WRAPPED_MARK, True)
    return wrapper


def wrap_sync_method(method: Callable, category: str, title_fn: Callable[..., str]):
    """Wrap a sync method to emit step events."""
    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        title = title_fn(*args, **kwargs)
        active = get_active_reporter()
        if active is not None:
            active.on_step_begin(title, category)

        started = time.time()
        error = None
        try:
            return method(*args, **kwargs)
        except Exception as e:
            error = str(e)
            raise
        finally:
            _report(title, category, started, error)

    setattr(wrapper, _WRAPPED_MARK, True)
    return wrapper


def is_wrapped(method: Callable) -> bool:
    """Check if a method is already wrapped."""
    return getattr(method, _WRAPPED_MARK, False)


def _describe_arg(value) -> str:
    if isinstance(value, str):
        return repr(value)
    if isinstance(value, (int, float)):
        return str(value)
    return "..."


def _titled(prefix: Callable[[object], str], name: str, shown_args: int):
    """Build a title function rendering ``prefix.name(arg, ...)``."""
    def title_fn(self, *args, **kwargs):
        shown = ", ".join(_describe_arg(a) for a in args[:shown_args])
        return f"{prefix(self)}.{name}({shown})"
    return title_fn


def locator_description(obj) -> str:
    """Human-readable description of a locator or a locator assertion."""
    # Wrappers keep the implementation object on _impl_obj
    impl = getattr(obj, "_impl_obj", obj)
    for attr in ("_actual_locator", "_locator", "actual"):
        loc = getattr(impl, attr, None)
        if loc is not None:
            return str(loc)
    return str(obj)


# name -> number of positional arguments shown in the step title
PAGE_METHODS = {
    "navigation": {"goto": 1, "reload": 0, "go_back": 0, "go_forward": 0},
    "action": {
        "click": 1, "dblclick": 1, "fill": 2, "type": 2, "press": 2,
        "check": 1, "uncheck": 1, "select_option": 1, "hover": 1, "focus": 1,
        "drag_and_drop": 2, "screenshot": 0, "pdf": 0, "set_input_files": 1,
    },
    "wait": {
        "wait_for_selector": 1, "wait_for_load_state": 1, "wait_for_url": 1,
        "wait_for_timeout": 1, "wait_for_function": 0,
    },
}

LOCATOR_METHODS = {
    "action": {
        "click": 0, "dblclick": 0, "fill": 1, "type": 1, "press": 1,
        "check": 0, "uncheck": 0, "select_option": 0, "hover": 0, "focus": 0,
        "scroll_into_view_if_needed": 0, "screenshot": 0,
        "set_input_files": 0, "select_text": 0, "clear": 0,
    },
    "wait": {"wait_for": 0},
}

ASSERTION_METHODS = {
    "assertion": {
        "to_be_visible": 0, "to_be_hidden": 0, "to_be_enabled": 0,
        "to_be_disabled": 0, "to_be_checked": 0, "to_be_focused": 0,
        "to_be_editable": 0, "to_be_empty": 0, "to_be_attached": 0,
        "to_be_in_viewport": 0, "to_have_text": 1, "to_contain_text": 1,
        "to_have_value": 1, "to_have_values": 0, "to_have_attribute": 2,
        "to_have_class": 1, "to_have_count": 1, "to_have_css": 2,
        "to_have_id": 1, "to_have_js_property": 1, "to_have_role": 1,
        "to_have_accessible_name": 1, "to_have_accessible_description": 1,
    },
}


def _patch_class(cls, table: dict, prefix: Callable[[object], str], is_async: bool) -> int:
    wrap = wrap_async_method if is_async else wrap_sync_method
    patched = 0
    for category, methods in table.items():
        for name, shown_args in methods.items():
            original = getattr(cls, name, None)
            if original is None or is_wrapped(original):
                continue
            setattr(cls, name, wrap(original, category, _titled(prefix, name, shown_args)))
            patched += 1
    return patched


def patch_page_class(PageClass, is_async: bool = True) -> int:
    """Patch a Page class with instrumentation."""
    return _patch_class(PageClass, PAGE_METHODS, lambda self: "page", is_async)


def patch_locator_class(LocatorClass, is_async: bool = True) -> int:
    """Patch a Locator class with instrumentation."""
    return _patch_class(
        LocatorClass, LOCATOR_METHODS,
        lambda self: f"locator({locator_description(self)})", is_async,
    )


def patch_assertions_class(AssertionsClass, is_async: bool = True) -> int:
    """Patch LocatorAssertions class with instrumentation."""
    return _patch_class(
        AssertionsClass, ASSERTION_METHODS,
        lambda self: f"expect({locator_description(self)})", is_async,
    )


def patch_playwright():
    """Patch all Playwright classes with instrumentation."""
    global _patched
    if _patched:
        return

    try:
        from playwright.async_api._generated import Page as AsyncPage
        from playwright.async_api._generated import Locator as AsyncLocator
        from playwright.async_api._generated import LocatorAssertions as AsyncLocatorAssertions

        patch_page_class(AsyncPage, is_async=True)
        patch_locator_class(AsyncLocator, is_async=True)
        patch_assertions_class(AsyncLocatorAssertions, is_async=True)
    except ImportError:
        pass

    try:
        from playwright.sync_api._generated import Page as SyncPage
        from playwright.sync_api._generated import Locator as SyncLocator
        from playwright.sync_api._generated import LocatorAssertions as SyncLocatorAssertions

        patch_page_class(SyncPage, is_async=False)
        patch_locator_class(SyncLocator, is_async=False)
        patch_assertions_class(SyncLocatorAssertions, is_async=False)
    except ImportError:
        pass

    _patched = True
