"""JSON event reporter for monitored Playwright test runs."""

import json
import sys
from dataclasses import asdict, is_dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, enums and datetimes into plain JSON values."""
    if is_dataclass(value) and not isinstance(value, type):
        value = asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, dict):
        return {str(to_jsonable(k)): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    if callable(value):
        return getattr(value, "__name__", repr(value))
    return value


class JSONReporter:
    """Emits JSON events for test lifecycle, Playwright steps and pipeline state."""

    def __init__(self, output=None, enabled: bool = True, jsonl_path: str | Path | None = None):
        self.output = output or sys.stdout
        self.enabled = enabled
        self.jsonl_path = Path(jsonl_path) if jsonl_path else None
        self.events: list[dict[str, Any]] = []
        self.current_test: str | None = None
        self._step_log: list[str] = []

    def log_event(self, event: str, data: dict[str, Any] | None = None):
        """Record a JSON event and write it to the configured outputs."""
        payload = {"event": event, "timestamp": datetime.now().isoformat()}
        if data:
            payload.update(data)
        self.events.append(payload)
        if self.enabled:
            print(json.dumps(payload, indent=2, default=str), file=self.output)
        if self.jsonl_path:
            with open(self.jsonl_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(payload, default=str) + "\n")

    def events_named(self, event: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["event"] == event]

    def begin_test(self, test_id: str):
        """Start collecting step lines for a new test."""
        self.current_test = test_id
        self._step_log = []

    def take_step_log(self) -> list[str]:
        """Return the step lines collected for the current test and reset them."""
        lines, self._step_log = self._step_log, []
        return lines

    def on_step_begin(self, title: str, category: str):
        """Called when a Playwright step begins."""
        self.log_event("onStepBegin", {
            "step": {
                "title": title,
                "category": category,
            }
        })

    def on_step_end(self, title: str, category: str, duration_ms: float, error: str | None = None):
        """Called when a Playwright step ends."""
        if error:
            self._step_log.append(f"ERROR: {title}: {error}")
        else:
            self._step_log.append(f"STEP {title}")
        self.log_event("onStepEnd", {
            "step": {
                "title": title,
                "category": category,
                "duration": duration_ms,
                "error": error,
            }
        })


# Reporter receiving instrumentation events; None while no monitored session runs
_active: JSONReporter | None = None


def get_active_reporter() -> JSONReporter | None:
    return _active


def set_active_reporter(new: JSONReporter | None) -> JSONReporter | None:
    """Route instrumentation events to ``new``. Returns the previous reporter."""
    global _active
    previous = _active
    _active = new
    return previous
