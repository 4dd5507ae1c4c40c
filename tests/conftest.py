from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
import yaml

import foreman

# Appends one JSON line per run; job names steer the outcome.
WORKER_BODY = """\
import json
import os
import sys
import time
from pathlib import Path

marker = Path(__MARKER__)
name = os.environ.get("FOREMAN_JOB_NAME", "")
record = {
    "job": os.environ.get("FOREMAN_JOB_ID"),
    "name": name,
    "run": os.environ.get("FOREMAN_RUN_ID"),
    "argv": sys.argv[1:],
}
with marker.open("a", encoding="utf-8") as handle:
    handle.write(json.dumps(record) + "\\n")
print(f"worker ran for {name}")
if name.startswith("slow"):
    time.sleep(1.0)
if name.startswith("bad"):
    print("simulated failure", file=sys.stderr)
    raise SystemExit(1)
"""


class FakeTimer:
    """Stands in for threading.Timer; tests fire it by hand."""

    def __init__(self, interval: float, function: Callable[..., Any], args: Any = None, kwargs: Any = None):
        self.interval = interval
        self.function = function
        self.args = tuple(args or ())
        self.kwargs = dict(kwargs or {})
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.function(*self.args, **self.kwargs)


def write_store(path: Path, settings: Optional[Dict[str, Any]] = None, jobs: Optional[List[Dict[str, Any]]] = None) -> Path:
    payload: Dict[str, Any] = {"version": 1, "settings": settings or {}, "jobs": jobs or []}
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
    return path


@pytest.fixture
def marker(tmp_path: Path) -> Path:
    return tmp_path / "runs.jsonl"


@pytest.fixture
def read_runs(marker: Path) -> Callable[[], List[Dict[str, Any]]]:
    def _read() -> List[Dict[str, Any]]:
        if not marker.exists():
            return []
        return [json.loads(line) for line in marker.read_text(encoding="utf-8").splitlines() if line.strip()]

    return _read


@pytest.fixture
def config_path(tmp_path: Path, marker: Path) -> Path:
    worker = tmp_path / "worker.py"
    worker.write_text(WORKER_BODY.replace("__MARKER__", repr(str(marker))), encoding="utf-8")
    return write_store(
        tmp_path / "foreman.yaml",
        settings={"timezone": "UTC", "worker": {"path": "worker.py"}, "log_dir": "logs"},
    )


@pytest.fixture
def timers() -> List[FakeTimer]:
    return []


@pytest.fixture
def make_manager(config_path: Path, timers: List[FakeTimer]):
    created: List[foreman.ScheduleManager] = []

    def timer_factory(interval: float, function: Callable[..., Any], args: Any = None, kwargs: Any = None) -> FakeTimer:
        timer = FakeTimer(interval, function, args=args, kwargs=kwargs)
        timers.append(timer)
        return timer

    def _make(path: Optional[Path] = None) -> foreman.ScheduleManager:
        store = foreman.JobStore(path or config_path)
        manager = foreman.ScheduleManager(
            store,
            dispatcher=foreman.NotificationDispatcher(background=False),
            timer_factory=timer_factory,
        )
        created.append(manager)
        return manager

    yield _make
    for manager in created:
        manager.close()


@pytest.fixture
def manager(make_manager) -> foreman.ScheduleManager:
    return make_manager()


@pytest.fixture
def add_job(manager: foreman.ScheduleManager):
    def _add(name: str, **overrides: Any) -> foreman.Job:
        options: Dict[str, Any] = {
            "name": name,
            "recurrence": foreman.Recurrence("0 * * * *", "UTC"),
            "source_env": "development",
            "target_env": "staging",
        }
        options.update(overrides)
        return manager.create_job(**options)

    return _add
