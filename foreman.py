#!/usr/bin/env python3
"""
foreman.py

Dependency-aware scheduler for recurring data-migration jobs.
"""

from __future__ import annotations

import argparse
import copy
import json
import logging
import os
import shlex
import signal
import smtplib
import ssl
import subprocess
import sys
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from pathlib import Path
from queue import Empty, Queue
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple
from urllib import error as urllib_error
from urllib import request as urllib_request
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

try:
    import yaml
except ImportError:  # pragma: no cover - dependency check at runtime
    yaml = None

try:
    from croniter import croniter
except ImportError:  # pragma: no cover - dependency check at runtime
    croniter = None


LOG_FILE = "foreman.log"
DEFAULT_CONFIG = "foreman.yaml"
DEFAULT_PID_FILE = "pids/foreman.pid"
DEFAULT_TIMEZONE = "UTC"
DEFAULT_WORKER_PATH = "workers/migrate_data.py"
DEFAULT_LOG_DIR = "logs/scheduled"
DEFAULT_BATCH_SIZE = 500
DEFAULT_DEPENDENCY_TIMEOUT_MINUTES = 60
DEFAULT_WEBHOOK_TIMEOUT_MS = 5000
DEFAULT_SMTP_PORT = 587
DEFAULT_SMTP_TIMEOUT_SECONDS = 10
DEFAULT_NOTIFY_SENDER = "foreman-migration@example.com"
DEFAULT_NOTIFY_QUEUE_SIZE = 1000
DEFAULT_LOG_LINES = 10
DEFAULT_PREVIEW_COUNT = 5

VALID_ENVIRONMENTS = {"development", "staging", "production", "custom"}
VALID_STRATEGIES = {"fail", "skip", "wait"}
VALID_STATUSES = {"scheduled", "running", "completed", "failed", "disabled"}
TERMINAL_STATUSES = {"completed", "failed"}
UPDATABLE_FIELDS = {
    "name",
    "recurrence",
    "source_env",
    "target_env",
    "params",
    "dependencies",
    "dependency_strategy",
    "dependency_timeout_minutes",
    "notify",
}


class ForemanError(Exception):
    """Base error for foreman."""


class ConfigError(ForemanError):
    """Store or settings validation error."""


class JobNotFoundError(ForemanError):
    def __init__(self, job_id: str):
        super().__init__(f"Schedule with ID {job_id} not found.")
        self.job_id = job_id


class ValidationError(ForemanError):
    """A job mutation was rejected; prior state is untouched."""


class DependencyNotFoundError(ValidationError):
    def __init__(self, dependency_id: str):
        super().__init__(f"Invalid dependencies: Dependency {dependency_id} not found")
        self.dependency_id = dependency_id


class CycleError(ValidationError):
    def __init__(self, cycle: List[str]):
        super().__init__(f"Invalid dependencies: Circular dependency detected: {' -> '.join(cycle)}")
        self.cycle = cycle


class RecurrenceError(ValidationError):
    """Invalid cron expression or timezone."""


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("foreman")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    return logger


logger = setup_logging()
UTC = timezone.utc


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat()


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Recurrence:
    expression: str
    timezone_name: str = DEFAULT_TIMEZONE

    @property
    def timezone(self) -> ZoneInfo:
        return parse_timezone(self.timezone_name, "schedule.timezone")

    def describe(self) -> str:
        return f"{self.expression} ({self.timezone_name})"


@dataclass(frozen=True)
class ExecutionParams:
    batch_size: int = DEFAULT_BATCH_SIZE
    collections: Tuple[str, ...] = ()
    query: Optional[str] = None
    include_users: bool = False
    transform_data: bool = True
    backup: bool = True
    source_credentials: Optional[str] = None
    target_credentials: Optional[str] = None


@dataclass(frozen=True)
class NotifyTargets:
    email: Optional[str] = None
    webhook: Optional[str] = None


@dataclass
class Job:
    id: str
    name: str
    recurrence: Recurrence
    source_env: str
    target_env: str
    params: ExecutionParams = field(default_factory=ExecutionParams)
    dependencies: List[str] = field(default_factory=list)
    dependency_strategy: str = "fail"
    dependency_timeout_minutes: int = DEFAULT_DEPENDENCY_TIMEOUT_MINUTES
    status: str = "scheduled"
    last_outcome: Optional[str] = None
    created_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    notify: NotifyTargets = field(default_factory=NotifyTargets)
    log: List[str] = field(default_factory=list)

    def append_log(self, message: str, at: Optional[datetime] = None) -> str:
        entry = f"[{_isoformat(at or utcnow())}] {message}"
        self.log.append(entry)
        return entry

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "schedule": {
                "cron": self.recurrence.expression,
                "timezone": self.recurrence.timezone_name,
            },
            "source": self.source_env,
            "target": self.target_env,
            "params": {
                "batch_size": self.params.batch_size,
                "collections": list(self.params.collections),
                "query": self.params.query,
                "include_users": self.params.include_users,
                "transform_data": self.params.transform_data,
                "backup": self.params.backup,
                "source_credentials": self.params.source_credentials,
                "target_credentials": self.params.target_credentials,
            },
            "dependencies": list(self.dependencies),
            "dependency_strategy": self.dependency_strategy,
            "dependency_timeout_minutes": self.dependency_timeout_minutes,
            "status": self.status,
            "last_outcome": self.last_outcome,
            "created_at": _isoformat(self.created_at),
            "last_run_at": _isoformat(self.last_run_at),
            "next_run_at": _isoformat(self.next_run_at),
            "notify": {"email": self.notify.email, "webhook": self.notify.webhook},
            "log": list(self.log),
        }


@dataclass(frozen=True)
class SmtpSettings:
    host: str
    port: int = DEFAULT_SMTP_PORT
    sender: str = DEFAULT_NOTIFY_SENDER
    username: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = True
    use_ssl: bool = False
    timeout_seconds: int = DEFAULT_SMTP_TIMEOUT_SECONDS


@dataclass(frozen=True)
class Settings:
    worker_command: Tuple[str, ...]
    working_dir: Path
    log_dir: Path
    default_timezone: str = DEFAULT_TIMEZONE
    webhook_timeout_ms: int = DEFAULT_WEBHOOK_TIMEOUT_MS
    smtp: Optional[SmtpSettings] = None


# ---------------------------------------------------------------------------
# Parsing helpers (store + settings)
# ---------------------------------------------------------------------------


def require_yaml_dependency() -> None:
    if yaml is None:
        raise ForemanError("Missing required dependency: PyYAML. Install with: pip install -e .")


def require_croniter_dependency() -> None:
    if croniter is None:
        raise ForemanError("Missing required dependency: croniter. Install with: pip install -e .")


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise RecurrenceError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def parse_iso_datetime(value: Any, field_path: str) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_aware_utc(value)
    if not isinstance(value, str):
        raise ConfigError(f"Error: {field_path} must be an ISO datetime string.")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ConfigError(f'Error: {field_path} must be ISO datetime, got "{value}".') from exc
    return _ensure_aware_utc(parsed)


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_optional_str(value: Any, field_path: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"Error: {field_path} must be a string.")
    return value.strip() or None


def ensure_mapping(value: Any, field_path: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    return value


def reject_unknown_keys(raw: Mapping[str, Any], allowed: Set[str], field_path: str) -> None:
    unknown = set(raw.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")


def ensure_str_list(value: Any, field_path: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if not isinstance(value, list):
        raise ConfigError(f"Error: {field_path} must be a list of strings.")
    out: List[str] = []
    for idx, item in enumerate(value):
        out.append(ensure_str(item, f"{field_path}[{idx}]"))
    return out


def split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_smtp_settings(raw: Any, field_path: str) -> Optional[SmtpSettings]:
    if raw is None:
        return None
    raw = ensure_mapping(raw, field_path)
    reject_unknown_keys(
        raw,
        {"host", "port", "sender", "username", "password", "use_tls", "use_ssl", "timeout_seconds"},
        field_path,
    )
    use_tls = ensure_bool(raw.get("use_tls"), f"{field_path}.use_tls", True)
    use_ssl = ensure_bool(raw.get("use_ssl"), f"{field_path}.use_ssl", False)
    if use_tls and use_ssl:
        raise ConfigError(f"Error: {field_path}.use_tls and {field_path}.use_ssl cannot both be enabled.")
    return SmtpSettings(
        host=ensure_str(raw.get("host"), f"{field_path}.host"),
        port=ensure_int(raw.get("port"), f"{field_path}.port", DEFAULT_SMTP_PORT),
        sender=ensure_str(raw.get("sender", DEFAULT_NOTIFY_SENDER), f"{field_path}.sender"),
        username=ensure_optional_str(raw.get("username"), f"{field_path}.username"),
        password=ensure_optional_str(raw.get("password"), f"{field_path}.password"),
        use_tls=use_tls,
        use_ssl=use_ssl,
        timeout_seconds=ensure_int(
            raw.get("timeout_seconds"), f"{field_path}.timeout_seconds", DEFAULT_SMTP_TIMEOUT_SECONDS
        ),
    )


def _resolve_path(value: Any, base_dir: Path, field_path: str) -> Path:
    raw = Path(ensure_str(value, field_path))
    resolved = raw if raw.is_absolute() else (base_dir / raw)
    return resolved.resolve()


def parse_settings(raw: Any, base_dir: Path, field_path: str = "settings") -> Settings:
    raw = ensure_mapping(raw, field_path)
    reject_unknown_keys(raw, {"timezone", "worker", "log_dir", "notifications"}, field_path)

    default_timezone = ensure_str(raw.get("timezone", DEFAULT_TIMEZONE), f"{field_path}.timezone")
    try:
        parse_timezone(default_timezone, f"{field_path}.timezone")
    except RecurrenceError as exc:
        raise ConfigError(str(exc)) from exc

    worker_raw = ensure_mapping(raw.get("worker"), f"{field_path}.worker")
    reject_unknown_keys(worker_raw, {"path", "args", "interpreter"}, f"{field_path}.worker")
    worker_path = _resolve_path(worker_raw.get("path", DEFAULT_WORKER_PATH), base_dir, f"{field_path}.worker.path")
    args_raw = worker_raw.get("args", [])
    if args_raw is None:
        args: List[str] = []
    elif isinstance(args_raw, str):
        args = shlex.split(args_raw)
    elif isinstance(args_raw, list):
        args = []
        for arg_idx, arg in enumerate(args_raw):
            if not isinstance(arg, (str, int, float, bool)):
                raise ConfigError(
                    f"Error: {field_path}.worker.args[{arg_idx}] must be scalar value convertible to string."
                )
            args.append(str(arg))
    else:
        raise ConfigError(f"Error: {field_path}.worker.args must be a list or shell-style string.")
    interpreter = worker_raw.get("interpreter")
    if interpreter is None:
        interpreter = sys.executable
    else:
        interpreter = ensure_str(interpreter, f"{field_path}.worker.interpreter")

    notifications_raw = ensure_mapping(raw.get("notifications"), f"{field_path}.notifications")
    reject_unknown_keys(notifications_raw, {"webhook_timeout_ms", "smtp"}, f"{field_path}.notifications")

    return Settings(
        worker_command=(interpreter, str(worker_path), *args),
        working_dir=base_dir.resolve(),
        log_dir=_resolve_path(raw.get("log_dir", DEFAULT_LOG_DIR), base_dir, f"{field_path}.log_dir"),
        default_timezone=default_timezone,
        webhook_timeout_ms=ensure_int(
            notifications_raw.get("webhook_timeout_ms"),
            f"{field_path}.notifications.webhook_timeout_ms",
            DEFAULT_WEBHOOK_TIMEOUT_MS,
        ),
        smtp=parse_smtp_settings(notifications_raw.get("smtp"), f"{field_path}.notifications.smtp"),
    )


def parse_job(raw: Any, field_path: str) -> Job:
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    reject_unknown_keys(
        raw,
        {
            "id",
            "name",
            "schedule",
            "source",
            "target",
            "params",
            "dependencies",
            "dependency_strategy",
            "dependency_timeout_minutes",
            "status",
            "last_outcome",
            "created_at",
            "last_run_at",
            "next_run_at",
            "notify",
            "log",
        },
        field_path,
    )

    schedule_raw = ensure_mapping(raw.get("schedule"), f"{field_path}.schedule")
    reject_unknown_keys(schedule_raw, {"cron", "timezone"}, f"{field_path}.schedule")
    recurrence = Recurrence(
        expression=ensure_str(schedule_raw.get("cron"), f"{field_path}.schedule.cron"),
        timezone_name=ensure_str(schedule_raw.get("timezone", DEFAULT_TIMEZONE), f"{field_path}.schedule.timezone"),
    )

    params_raw = ensure_mapping(raw.get("params"), f"{field_path}.params")
    reject_unknown_keys(
        params_raw,
        {
            "batch_size",
            "collections",
            "query",
            "include_users",
            "transform_data",
            "backup",
            "source_credentials",
            "target_credentials",
        },
        f"{field_path}.params",
    )
    params = ExecutionParams(
        batch_size=ensure_int(params_raw.get("batch_size"), f"{field_path}.params.batch_size", DEFAULT_BATCH_SIZE),
        collections=tuple(ensure_str_list(params_raw.get("collections"), f"{field_path}.params.collections")),
        query=ensure_optional_str(params_raw.get("query"), f"{field_path}.params.query"),
        include_users=ensure_bool(params_raw.get("include_users"), f"{field_path}.params.include_users", False),
        transform_data=ensure_bool(params_raw.get("transform_data"), f"{field_path}.params.transform_data", True),
        backup=ensure_bool(params_raw.get("backup"), f"{field_path}.params.backup", True),
        source_credentials=ensure_optional_str(
            params_raw.get("source_credentials"), f"{field_path}.params.source_credentials"
        ),
        target_credentials=ensure_optional_str(
            params_raw.get("target_credentials"), f"{field_path}.params.target_credentials"
        ),
    )

    notify_raw = ensure_mapping(raw.get("notify"), f"{field_path}.notify")
    reject_unknown_keys(notify_raw, {"email", "webhook"}, f"{field_path}.notify")

    status = ensure_str(raw.get("status", "scheduled"), f"{field_path}.status").lower()
    if status not in VALID_STATUSES:
        raise ConfigError(f'Error: {field_path}.status must be one of {sorted(VALID_STATUSES)}, got "{status}".')
    last_outcome = ensure_optional_str(raw.get("last_outcome"), f"{field_path}.last_outcome")
    if last_outcome is not None and last_outcome not in TERMINAL_STATUSES:
        raise ConfigError(f'Error: {field_path}.last_outcome must be completed or failed, got "{last_outcome}".')

    strategy = ensure_str(raw.get("dependency_strategy", "fail"), f"{field_path}.dependency_strategy").lower()
    if strategy not in VALID_STRATEGIES:
        raise ConfigError(
            f'Error: {field_path}.dependency_strategy must be one of {sorted(VALID_STRATEGIES)}, got "{strategy}".'
        )

    log_raw = raw.get("log") or []
    if not isinstance(log_raw, list) or not all(isinstance(entry, str) for entry in log_raw):
        raise ConfigError(f"Error: {field_path}.log must be a list of strings.")

    return Job(
        id=ensure_str(raw.get("id"), f"{field_path}.id"),
        name=ensure_str(raw.get("name"), f"{field_path}.name"),
        recurrence=recurrence,
        source_env=ensure_str(raw.get("source"), f"{field_path}.source"),
        target_env=ensure_str(raw.get("target"), f"{field_path}.target"),
        params=params,
        dependencies=ensure_str_list(raw.get("dependencies"), f"{field_path}.dependencies"),
        dependency_strategy=strategy,
        dependency_timeout_minutes=ensure_int(
            raw.get("dependency_timeout_minutes"),
            f"{field_path}.dependency_timeout_minutes",
            DEFAULT_DEPENDENCY_TIMEOUT_MINUTES,
        ),
        status=status,
        last_outcome=last_outcome,
        created_at=parse_iso_datetime(raw.get("created_at"), f"{field_path}.created_at"),
        last_run_at=parse_iso_datetime(raw.get("last_run_at"), f"{field_path}.last_run_at"),
        next_run_at=parse_iso_datetime(raw.get("next_run_at"), f"{field_path}.next_run_at"),
        notify=NotifyTargets(
            email=ensure_optional_str(notify_raw.get("email"), f"{field_path}.notify.email"),
            webhook=ensure_optional_str(notify_raw.get("webhook"), f"{field_path}.notify.webhook"),
        ),
        log=list(log_raw),
    )


# ---------------------------------------------------------------------------
# Configuration store
# ---------------------------------------------------------------------------


class JobStore:
    """YAML-backed job list. Only the ``jobs`` key is rewritten on save."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @property
    def base_dir(self) -> Path:
        return self.path.resolve().parent

    def _read_payload(self) -> Dict[str, Any]:
        require_yaml_dependency()
        if not self.path.exists():
            return {}
        try:
            payload = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Error: Failed to parse YAML in {self.path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ConfigError("Error: Top-level config must be a mapping.")
        reject_unknown_keys(payload, {"version", "settings", "jobs"}, "top-level")
        return payload

    def load_settings(self) -> Settings:
        return parse_settings(self._read_payload().get("settings"), self.base_dir)

    def load(self) -> List[Job]:
        payload = self._read_payload()
        jobs_raw = payload.get("jobs") or []
        if not isinstance(jobs_raw, list):
            raise ConfigError("Error: jobs must be a list.")
        jobs: List[Job] = []
        seen_ids: Set[str] = set()
        for idx, job_raw in enumerate(jobs_raw):
            job = parse_job(job_raw, f"jobs[{idx}]")
            if job.id in seen_ids:
                raise ConfigError(f'Error: Duplicate job id "{job.id}".')
            seen_ids.add(job.id)
            jobs.append(job)
        return jobs

    def save(self, jobs: Sequence[Job]) -> bool:
        require_yaml_dependency()
        try:
            payload = self._read_payload()
            payload.setdefault("version", 1)
            payload["jobs"] = [job.to_record() for job in jobs]
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            tmp_path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
            os.replace(tmp_path, self.path)
            return True
        except (ForemanError, OSError, yaml.YAMLError) as exc:
            logger.error("Error saving schedules to %s: %s", self.path, str(exc))
            return False


# ---------------------------------------------------------------------------
# Dependency graph validation + run-time resolution
# ---------------------------------------------------------------------------


def find_dependency_cycle(
    job_id: str,
    dependencies: Sequence[str],
    graph: Mapping[str, Sequence[str]],
) -> Optional[List[str]]:
    """Return the first cycle reachable from ``job_id`` or None.

    ``graph`` maps every known id to its dependency list; ``job_id`` is
    evaluated with the proposed ``dependencies`` instead of its stored ones.
    The walk keeps an immutable path per frame for cycle reporting plus a
    shared set of ids already proven acyclic.
    """
    edges: Dict[str, Sequence[str]] = dict(graph)
    edges[job_id] = list(dependencies)
    proven: Set[str] = set()
    stack: List[Tuple[str, Tuple[str, ...], Iterable[str]]] = [(job_id, (job_id,), iter(edges[job_id]))]
    while stack:
        node, path, children = stack[-1]
        child = next(children, None)
        if child is None:
            proven.add(node)
            stack.pop()
            continue
        if child in path:
            return list(path[path.index(child):]) + [child]
        if child in proven or child not in edges:
            continue
        stack.append((child, path + (child,), iter(edges[child])))
    return None


def validate_dependencies(job_id: str, dependencies: Sequence[str], jobs: Mapping[str, Job]) -> None:
    known = set(jobs.keys()) | {job_id}
    for dep_id in dependencies:
        if dep_id not in known:
            raise DependencyNotFoundError(dep_id)
    graph = {jid: list(job.dependencies) for jid, job in jobs.items()}
    cycle = find_dependency_cycle(job_id, dependencies, graph)
    if cycle:
        raise CycleError(cycle)


@dataclass(frozen=True)
class DependencyDecision:
    can_run: bool
    reason: str
    pending: Tuple[str, ...] = ()
    failed: Tuple[str, ...] = ()
    missing: Optional[str] = None

    @property
    def deferrable(self) -> bool:
        return not self.can_run and self.missing is None and bool(self.pending or self.failed)


def _last_recorded_failure(job: Job) -> bool:
    if job.status == "failed":
        return True
    return job.status == "disabled" and job.last_outcome == "failed"


def resolve_dependencies(job: Job, jobs: Mapping[str, Job]) -> DependencyDecision:
    if not job.dependencies:
        return DependencyDecision(True, "No dependencies")

    pending: List[str] = []
    failed: List[str] = []
    for dep_id in job.dependencies:
        dependency = jobs.get(dep_id)
        if dependency is None:
            return DependencyDecision(False, f"Dependency {dep_id} not found", missing=dep_id)
        if dependency.last_run_at is None or dependency.status == "running":
            pending.append(dependency.name)
        elif _last_recorded_failure(dependency):
            failed.append(dependency.name)

    if pending:
        return DependencyDecision(
            False,
            f"Waiting for dependencies: {', '.join(pending)}",
            pending=tuple(pending),
            failed=tuple(failed),
        )
    if failed:
        names = ", ".join(failed)
        if job.dependency_strategy == "skip":
            return DependencyDecision(True, f"Proceeding despite failed dependencies: {names}", failed=tuple(failed))
        if job.dependency_strategy == "wait":
            return DependencyDecision(False, f"Waiting for failed dependencies to recover: {names}", failed=tuple(failed))
        return DependencyDecision(False, f"Dependencies failed: {names}", failed=tuple(failed))
    return DependencyDecision(True, "All dependencies satisfied")


# ---------------------------------------------------------------------------
# Trigger scheduler
# ---------------------------------------------------------------------------


def validate_recurrence(recurrence: Recurrence) -> None:
    require_croniter_dependency()
    parse_timezone(recurrence.timezone_name, "schedule.timezone")
    if not croniter.is_valid(recurrence.expression):
        raise RecurrenceError(f'Error: Invalid cron expression "{recurrence.expression}".')


def next_occurrence(recurrence: Recurrence, after_utc: Optional[datetime] = None) -> datetime:
    require_croniter_dependency()
    tz = recurrence.timezone
    local_after = _ensure_aware_utc(after_utc or utcnow()).astimezone(tz)
    try:
        nxt = croniter(recurrence.expression, local_after).get_next(datetime)
    except (ValueError, KeyError) as exc:
        raise RecurrenceError(f'Error: Invalid cron expression "{recurrence.expression}": {exc}') from exc
    if nxt.tzinfo is None:
        nxt = nxt.replace(tzinfo=tz)
    return nxt.astimezone(UTC)


def next_occurrences(recurrence: Recurrence, count: int, now_utc: Optional[datetime] = None) -> List[datetime]:
    runs: List[datetime] = []
    cursor = _ensure_aware_utc(now_utc or utcnow())
    while len(runs) < count:
        nxt = next_occurrence(recurrence, cursor)
        runs.append(nxt)
        cursor = nxt + timedelta(seconds=1)
    return runs


TriggerCallback = Callable[[str, datetime], Any]


@dataclass
class ArmedTrigger:
    job_id: str
    recurrence: Recurrence
    callback: TriggerCallback
    next_fire: datetime


class TriggerScheduler:
    """Fires recurrence callbacks from one background thread.

    Arming is keyed by job id, so arming twice replaces the earlier entry and
    disarming an unknown id is a no-op.
    """

    def __init__(self) -> None:
        self._armed: Dict[str, ArmedTrigger] = {}
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @staticmethod
    def compute_next(recurrence: Recurrence, after_utc: Optional[datetime] = None) -> datetime:
        return next_occurrence(recurrence, after_utc)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def arm(self, job_id: str, recurrence: Recurrence, callback: TriggerCallback) -> datetime:
        next_fire = self.compute_next(recurrence)
        with self._lock:
            self._armed[job_id] = ArmedTrigger(job_id, recurrence, callback, next_fire)
        self._wake.set()
        return next_fire

    def disarm(self, job_id: str) -> bool:
        with self._lock:
            removed = self._armed.pop(job_id, None)
        if removed is not None:
            self._wake.set()
        return removed is not None

    def disarm_all(self) -> List[str]:
        with self._lock:
            ids = list(self._armed.keys())
            self._armed.clear()
        self._wake.set()
        return ids

    def is_armed(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._armed

    def armed_ids(self) -> List[str]:
        with self._lock:
            return list(self._armed.keys())

    def next_fire(self, job_id: str) -> Optional[datetime]:
        with self._lock:
            armed = self._armed.get(job_id)
            return armed.next_fire if armed else None

    def fire_due(self, now: Optional[datetime] = None) -> List[str]:
        """Invoke callbacks for every trigger due at ``now``; returns fired ids."""
        now = _ensure_aware_utc(now or utcnow())
        due: List[Tuple[TriggerCallback, str, datetime]] = []
        with self._lock:
            for armed in self._armed.values():
                if armed.next_fire > now:
                    continue
                scheduled_for = armed.next_fire
                armed.next_fire = self.compute_next(armed.recurrence, max(now, scheduled_for))
                due.append((armed.callback, armed.job_id, scheduled_for))
        for callback, job_id, scheduled_for in due:
            try:
                callback(job_id, scheduled_for)
            except Exception as exc:  # pragma: no cover - defensive
                logger.exception("Trigger callback for %s failed: %s", job_id, exc)
        return [job_id for _, job_id, _ in due]

    def seconds_until_next(self, now: Optional[datetime] = None) -> Optional[float]:
        now = _ensure_aware_utc(now or utcnow())
        with self._lock:
            if not self._armed:
                return None
            earliest = min(armed.next_fire for armed in self._armed.values())
        return max(0.0, (earliest - now).total_seconds())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="foreman-triggers")
        self._thread.start()

    def close(self, timeout_seconds: float = 2.0) -> None:
        self._stop_event.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=timeout_seconds)
        self._thread = None

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._wake.clear()
            try:
                self.fire_due()
            except Exception as exc:  # pragma: no cover - defensive
                logger.warning("Trigger loop error: %s", str(exc))
            delay = self.seconds_until_next()
            self._wake.wait(60.0 if delay is None else min(delay, 60.0))


# ---------------------------------------------------------------------------
# Notification dispatcher
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Notification:
    job_id: str
    job_name: str
    status: str
    exit_code: Optional[int]
    source_env: str
    target_env: str
    started_at: Optional[datetime]
    completed_at: datetime
    stdout_path: Optional[str]
    stderr_path: Optional[str]
    email: Optional[str] = None
    webhook: Optional[str] = None
    error: Optional[str] = None

    @property
    def subject(self) -> str:
        return f"Migration {self.status.upper()}: {self.job_name}"

    @property
    def summary(self) -> str:
        return f"Migration {self.job_name} {self.status} with exit code {self.exit_code}"

    def email_body(self) -> str:
        lines = [
            "Migration Details:",
            f"- Name: {self.job_name}",
            f"- ID: {self.job_id}",
            f"- Status: {self.status.upper()}",
            f"- Exit Code: {self.exit_code}",
            f"- Source: {self.source_env}",
            f"- Target: {self.target_env}",
            f"- Started: {_isoformat(self.started_at)}",
            f"- Completed: {_isoformat(self.completed_at)}",
        ]
        if self.error:
            lines.append(f"- Error: {self.error}")
        lines.extend(
            [
                "",
                "Log files are available at:",
                f"- Standard output: {self.stdout_path}",
                f"- Standard error: {self.stderr_path}",
            ]
        )
        return "\n".join(lines) + "\n"

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "text": self.summary,
            "jobId": self.job_id,
            "jobName": self.job_name,
            "status": self.status,
            "exitCode": self.exit_code,
            "sourceEnv": self.source_env,
            "targetEnv": self.target_env,
            "startedAt": _isoformat(self.started_at),
            "completedAt": _isoformat(self.completed_at),
            "artifacts": {"stdout": self.stdout_path, "stderr": self.stderr_path},
        }
        if self.error:
            payload["error"] = self.error
        return payload


class NotificationDispatcher:
    """Best-effort, non-blocking email/webhook notifier."""

    def __init__(
        self,
        smtp: Optional[SmtpSettings] = None,
        webhook_timeout_ms: int = DEFAULT_WEBHOOK_TIMEOUT_MS,
        background: bool = True,
        max_queue: int = DEFAULT_NOTIFY_QUEUE_SIZE,
    ):
        self.smtp = smtp
        self.webhook_timeout_ms = webhook_timeout_ms
        self.background = background
        self._queue: "Queue[Notification]" = Queue(maxsize=max_queue)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._dropped = 0

    @staticmethod
    def from_settings(settings: Settings, background: bool = True) -> "NotificationDispatcher":
        return NotificationDispatcher(
            smtp=settings.smtp,
            webhook_timeout_ms=settings.webhook_timeout_ms,
            background=background,
        )

    def notify(self, job: Job, outcome: "RunOutcome") -> Optional[Notification]:
        if not job.notify.email and not job.notify.webhook:
            return None
        notification = Notification(
            job_id=job.id,
            job_name=job.name,
            status=outcome.status,
            exit_code=outcome.exit_code,
            source_env=job.source_env,
            target_env=job.target_env,
            started_at=outcome.started_at,
            completed_at=outcome.ended_at,
            stdout_path=str(outcome.stdout_path) if outcome.stdout_path else None,
            stderr_path=str(outcome.stderr_path) if outcome.stderr_path else None,
            email=job.notify.email,
            webhook=job.notify.webhook,
            error=outcome.error,
        )
        if not self.background:
            self.deliver(notification)
            return notification
        self._ensure_thread()
        try:
            self._queue.put_nowait(notification)
        except Exception:
            self._dropped += 1
            logger.warning(
                "Notification queue is full; dropping notification for %s (dropped=%s).",
                job.id,
                self._dropped,
            )
        return notification

    def deliver(self, notification: Notification) -> Dict[str, bool]:
        results: Dict[str, bool] = {}
        if notification.email:
            results["email"] = self.send_email(notification)
        if notification.webhook:
            results["webhook"] = self.send_webhook(notification)
        return results

    def build_email(self, notification: Notification) -> EmailMessage:
        sender = self.smtp.sender if self.smtp else DEFAULT_NOTIFY_SENDER
        message = EmailMessage()
        message["Subject"] = notification.subject
        message["From"] = sender
        message["To"] = notification.email or ""
        message.set_content(notification.email_body())
        return message

    def send_email(self, notification: Notification) -> bool:
        if not notification.email:
            return False
        if self.smtp is None:
            logger.warning(
                "Email notification for %s skipped: no SMTP settings configured.",
                notification.job_id,
            )
            return False
        message = self.build_email(notification)
        smtp = self.smtp
        try:
            if smtp.use_ssl:
                with smtplib.SMTP_SSL(
                    smtp.host,
                    smtp.port,
                    timeout=smtp.timeout_seconds,
                    context=ssl.create_default_context(),
                ) as client:
                    self._authenticate(client)
                    client.send_message(message)
            else:
                with smtplib.SMTP(smtp.host, smtp.port, timeout=smtp.timeout_seconds) as client:
                    if smtp.use_tls:
                        client.starttls(context=ssl.create_default_context())
                    self._authenticate(client)
                    client.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Error sending email notification for %s: %s", notification.job_id, str(exc))
            return False
        logger.info("Email notification sent to %s", notification.email)
        return True

    def _authenticate(self, client: smtplib.SMTP) -> None:
        if self.smtp and self.smtp.username and self.smtp.password:
            client.login(self.smtp.username, self.smtp.password)

    def send_webhook(self, notification: Notification) -> bool:
        if not notification.webhook:
            return False
        body = json.dumps(notification.to_payload()).encode("utf-8")
        req = urllib_request.Request(
            url=notification.webhook,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib_request.urlopen(req, timeout=max(0.1, self.webhook_timeout_ms / 1000.0)) as response:
                ok = 200 <= response.status < 300
        except (urllib_error.URLError, OSError, ValueError) as exc:
            logger.error("Error sending webhook notification for %s: %s", notification.job_id, str(exc))
            return False
        if ok:
            logger.info("Webhook notification sent for %s", notification.job_id)
        else:
            logger.error("Webhook for %s answered with status %s", notification.job_id, response.status)
        return ok

    def _ensure_thread(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="foreman-notifier")
        self._thread.start()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                notification = self._queue.get(timeout=0.25)
            except Empty:
                continue
            try:
                self.deliver(notification)
            except Exception as exc:  # pragma: no cover - defensive
                logger.warning("Notification loop error: %s", str(exc))

    def close(self, timeout_seconds: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout_seconds)
        self._thread = None
        while True:
            try:
                notification = self._queue.get_nowait()
            except Empty:
                break
            self.deliver(notification)


# ---------------------------------------------------------------------------
# Execution orchestrator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunOutcome:
    job_id: str
    run_id: str
    status: str
    exit_code: Optional[int]
    started_at: datetime
    ended_at: datetime
    stdout_path: Optional[Path]
    stderr_path: Optional[Path]
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == "completed"


class RunHandle:
    """One in-flight worker run; completion is observed by a supervising thread."""

    def __init__(self, job_id: str, run_id: str, started_at: datetime, stdout_path: Path, stderr_path: Path):
        self.job_id = job_id
        self.run_id = run_id
        self.started_at = started_at
        self.stdout_path = stdout_path
        self.stderr_path = stderr_path
        self.process: Optional[subprocess.Popen] = None
        self.outcome: Optional[RunOutcome] = None
        self._done = threading.Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> Optional[RunOutcome]:
        self._done.wait(timeout)
        return self.outcome

    def _complete(self, outcome: RunOutcome) -> None:
        self.outcome = outcome
        self._done.set()


@dataclass
class PendingWait:
    job_id: str
    deadline: datetime
    timer: Any
    reason: str


def build_worker_args(job: Job) -> List[str]:
    params = job.params
    args = [
        "--source",
        job.source_env,
        "--target",
        job.target_env,
        "--batch-size",
        str(params.batch_size),
    ]
    if params.collections:
        args.extend(["--collections", ",".join(params.collections)])
    if params.query:
        args.extend(["--query", params.query])
    if params.include_users:
        args.append("--include-users")
    if params.transform_data:
        args.append("--transform-data")
    if params.backup:
        args.append("--backup")
    if job.source_env == "custom" and params.source_credentials:
        args.extend(["--source-credentials", params.source_credentials])
    if job.target_env == "custom" and params.target_credentials:
        args.extend(["--target-credentials", params.target_credentials])
    return args


def artifact_paths(log_dir: Path, job_id: str, started: datetime) -> Tuple[Path, Path]:
    stamp = started.astimezone(UTC).isoformat().replace(":", "-")
    return (
        log_dir / f"{job_id}-{stamp}-stdout.log",
        log_dir / f"{job_id}-{stamp}-stderr.log",
    )


class Orchestrator:
    """Per-trigger state machine: resolve, defer or skip, spawn, reconcile."""

    def __init__(
        self,
        registry: "ScheduleManager",
        settings: Settings,
        dispatcher: NotificationDispatcher,
        timer_factory: Optional[Callable[..., Any]] = None,
    ):
        self._registry = registry
        self.settings = settings
        self.dispatcher = dispatcher
        self._timer_factory = timer_factory or threading.Timer
        self._lock = threading.Lock()
        self._runs: Dict[str, RunHandle] = {}
        self._last_runs: Dict[str, RunHandle] = {}
        self._waits: Dict[str, PendingWait] = {}

    def active_run(self, job_id: str) -> Optional[RunHandle]:
        with self._lock:
            return self._runs.get(job_id)

    def last_run(self, job_id: str) -> Optional[RunHandle]:
        with self._lock:
            return self._last_runs.get(job_id)

    def waiting_jobs(self) -> List[str]:
        with self._lock:
            return list(self._waits.keys())

    def build_command(self, job: Job) -> List[str]:
        return [*self.settings.worker_command, *build_worker_args(job)]

    def on_recurrence(self, job_id: str, scheduled_for: datetime) -> None:
        logger.info("Recurrence trigger for %s (scheduled_for=%s)", job_id, _isoformat(scheduled_for))
        self.trigger(job_id, source="recurrence")

    def trigger(self, job_id: str, source: str = "recurrence") -> Optional[RunHandle]:
        try:
            return self._trigger(job_id, source)
        except Exception as exc:
            logger.exception("Unexpected error while triggering %s: %s", job_id, exc)
            return None

    def _trigger(self, job_id: str, source: str) -> Optional[RunHandle]:
        job = self._registry.get_job(job_id)
        if job is None:
            logger.warning("Trigger for unknown job %s ignored (%s).", job_id, source)
            return None
        logger.info('Preparing to run migration "%s" (%s) via %s trigger', job.name, job.id, source)

        if job.status == "disabled" and source != "manual":
            logger.info('Migration "%s" (%s) is disabled; %s trigger ignored.', job.name, job.id, source)
            return None
        if job.status == "running":
            self._registry.append_log(job.id, f"Migration skipped: previous run still in progress ({source} trigger)")
            logger.info('Migration "%s" (%s) already running; %s trigger skipped.', job.name, job.id, source)
            return None

        with self._lock:
            already_waiting = job.id in self._waits
        if already_waiting:
            self._registry.append_log(job.id, f"Migration skipped: already waiting on dependencies ({source} trigger)")
            return None

        decision = resolve_dependencies(job, self._registry.jobs_by_id())
        if decision.can_run:
            return self._launch(job.id, decision.reason, source)

        logger.info('Cannot run migration "%s" (%s): %s', job.name, job.id, decision.reason)
        if job.dependency_strategy == "wait" and decision.deferrable:
            if job.status == "disabled":
                self._registry.append_log(
                    job.id, f"Migration skipped: dependency wait not armed while disabled: {decision.reason}"
                )
                return None
            self._defer(job, decision)
            return None
        self._registry.append_log(job.id, f"Migration skipped: {decision.reason}")
        return None

    def _defer(self, job: Job, decision: DependencyDecision) -> None:
        minutes = job.dependency_timeout_minutes
        with self._lock:
            if job.id in self._waits:
                return
            timer = self._timer_factory(minutes * 60, self._wait_expired, args=(job.id,))
            timer.daemon = True
            self._waits[job.id] = PendingWait(
                job_id=job.id,
                deadline=utcnow() + timedelta(minutes=minutes),
                timer=timer,
                reason=decision.reason,
            )
            timer.start()
        self._registry.append_log(
            job.id,
            f"Migration waiting on dependencies for up to {minutes} minute(s): {decision.reason}",
        )
        logger.info("Will retry %s in %s minute(s) or when dependencies complete", job.id, minutes)

    def cancel_wait(self, job_id: str) -> bool:
        with self._lock:
            pending = self._waits.pop(job_id, None)
        if pending is None:
            return False
        pending.timer.cancel()
        logger.info("Cancelled dependency wait for %s", job_id)
        return True

    def cancel_all_waits(self) -> None:
        for job_id in self.waiting_jobs():
            self.cancel_wait(job_id)

    def _wait_expired(self, job_id: str) -> None:
        try:
            with self._lock:
                pending = self._waits.pop(job_id, None)
            if pending is None:
                return
            job = self._registry.get_job(job_id)
            if job is None:
                return
            if job.status == "disabled":
                self._registry.append_log(job_id, "Migration skipped: dependency wait abandoned while disabled")
                return
            if job.status == "running":
                self._registry.append_log(job_id, "Migration skipped: previous run still in progress (wait-retry trigger)")
                return
            decision = resolve_dependencies(job, self._registry.jobs_by_id())
            if decision.can_run:
                self._launch(job_id, decision.reason, "wait-retry")
                return
            minutes = job.dependency_timeout_minutes
            self._registry.append_log(
                job_id,
                f"Migration skipped: dependency wait timed out after {minutes} minute(s): {decision.reason}",
            )
            logger.info("Dependency wait for %s timed out: %s", job_id, decision.reason)
        except Exception as exc:
            logger.exception("Unexpected error in dependency wait for %s: %s", job_id, exc)

    def _wake_dependents(self, finished_id: str) -> None:
        with self._lock:
            candidates = list(self._waits.values())
        for pending in candidates:
            job = self._registry.get_job(pending.job_id)
            if job is None or finished_id not in job.dependencies:
                continue
            if job.status == "disabled":
                continue
            decision = resolve_dependencies(job, self._registry.jobs_by_id())
            if not decision.can_run:
                continue
            with self._lock:
                if self._waits.get(job.id) is not pending:
                    continue
                del self._waits[job.id]
            pending.timer.cancel()
            logger.info("Dependencies of %s satisfied while waiting; launching.", job.id)
            self._launch(job.id, decision.reason, "wait-retry")

    def _launch(self, job_id: str, reason: str, source: str) -> Optional[RunHandle]:
        started = utcnow()
        job = self._registry.begin_run(job_id, f"Migration started ({source} trigger): {reason}", started)
        if job is None:
            return None

        run_id = f"{job.id}:{started.strftime('%Y%m%d%H%M%S')}-{started.microsecond:06d}"
        stdout_path, stderr_path = artifact_paths(self.settings.log_dir, job.id, started)
        handle = RunHandle(job.id, run_id, started, stdout_path, stderr_path)
        command = self.build_command(job)
        logger.info('[%s] Running migration "%s": %s', run_id, job.name, " ".join(shlex.quote(a) for a in command))

        env = os.environ.copy()
        env.update(
            {
                "FOREMAN_RUN_ID": run_id,
                "FOREMAN_JOB_ID": job.id,
                "FOREMAN_JOB_NAME": job.name,
            }
        )
        try:
            self.settings.log_dir.mkdir(parents=True, exist_ok=True)
            with stdout_path.open("ab") as stdout_handle, stderr_path.open("ab") as stderr_handle:
                handle.process = subprocess.Popen(
                    command,
                    cwd=str(self.settings.working_dir),
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    env=env,
                )
        except (OSError, ValueError, subprocess.SubprocessError) as exc:
            logger.error("[%s] Failed to spawn worker for %s: %s", run_id, job.id, str(exc))
            outcome = RunOutcome(
                job_id=job.id,
                run_id=run_id,
                status="failed",
                exit_code=None,
                started_at=started,
                ended_at=utcnow(),
                stdout_path=stdout_path if stdout_path.exists() else None,
                stderr_path=stderr_path if stderr_path.exists() else None,
                error=str(exc),
            )
            with self._lock:
                self._last_runs[job.id] = handle
            self._finish(handle, outcome)
            return handle

        with self._lock:
            self._runs[job.id] = handle
            self._last_runs[job.id] = handle
        thread = threading.Thread(
            target=self._supervise,
            args=(handle,),
            daemon=True,
            name=f"foreman-run-{job.id}",
        )
        thread.start()
        return handle

    def _supervise(self, handle: RunHandle) -> None:
        try:
            exit_code = handle.process.wait() if handle.process else None
            outcome = RunOutcome(
                job_id=handle.job_id,
                run_id=handle.run_id,
                status="completed" if exit_code == 0 else "failed",
                exit_code=exit_code,
                started_at=handle.started_at,
                ended_at=utcnow(),
                stdout_path=handle.stdout_path,
                stderr_path=handle.stderr_path,
            )
        except Exception as exc:  # pragma: no cover - defensive
            logger.exception("[%s] Lost track of worker: %s", handle.run_id, exc)
            outcome = RunOutcome(
                job_id=handle.job_id,
                run_id=handle.run_id,
                status="failed",
                exit_code=None,
                started_at=handle.started_at,
                ended_at=utcnow(),
                stdout_path=handle.stdout_path,
                stderr_path=handle.stderr_path,
                error=str(exc),
            )
        self._finish(handle, outcome)

    def _finish(self, handle: RunHandle, outcome: RunOutcome) -> None:
        try:
            with self._lock:
                if self._runs.get(outcome.job_id) is handle:
                    del self._runs[outcome.job_id]
            job = self._registry.finish_run(outcome)
            duration = (outcome.ended_at - outcome.started_at).total_seconds()
            if job is None:
                logger.warning(
                    "[%s] Worker for deleted job %s exited with %s (exit_code=%s)",
                    outcome.run_id,
                    outcome.job_id,
                    outcome.status,
                    outcome.exit_code,
                )
            else:
                log_fn = logger.info if outcome.success else logger.error
                log_fn(
                    '[%s] Migration "%s" (%s) %s with exit code %s in %.2fs. Logs saved to %s',
                    outcome.run_id,
                    job.name,
                    job.id,
                    outcome.status,
                    outcome.exit_code,
                    duration,
                    self.settings.log_dir,
                )
                self.dispatcher.notify(job, outcome)
                self._wake_dependents(job.id)
        except Exception as exc:
            logger.exception("[%s] Failed to record outcome: %s", outcome.run_id, exc)
        finally:
            handle._complete(outcome)


# ---------------------------------------------------------------------------
# Job registry
# ---------------------------------------------------------------------------


def validate_job_fields(job: Job) -> None:
    if not job.name or not job.name.strip():
        raise ValidationError("Name is required.")
    for label, env in (("Source", job.source_env), ("Target", job.target_env)):
        if env not in VALID_ENVIRONMENTS:
            raise ValidationError(f'{label} environment must be one of {sorted(VALID_ENVIRONMENTS)}, got "{env}".')
    if job.source_env == job.target_env and job.source_env != "custom":
        raise ValidationError("Source and target environments cannot be the same.")
    if job.source_env == "custom" and not job.params.source_credentials:
        raise ValidationError("Custom source credentials are required when source environment is custom.")
    if job.target_env == "custom" and not job.params.target_credentials:
        raise ValidationError("Custom target credentials are required when target environment is custom.")
    if job.dependency_strategy not in VALID_STRATEGIES:
        raise ValidationError(
            f'Dependency strategy must be one of {sorted(VALID_STRATEGIES)}, got "{job.dependency_strategy}".'
        )
    timeout = job.dependency_timeout_minutes
    if not isinstance(timeout, int) or isinstance(timeout, bool) or timeout < 1:
        raise ValidationError("Dependency timeout must be at least 1 minute.")
    batch_size = job.params.batch_size
    if not isinstance(batch_size, int) or isinstance(batch_size, bool) or batch_size < 1:
        raise ValidationError("Batch size must be greater than 0.")


def _ordered_unique(values: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    out: List[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            out.append(value)
    return out


class ScheduleManager:
    """Owns the job map, its triggers and its persistence.

    Every mutation runs under one lock and is saved before returning. Reads
    hand out copies so nothing outside the registry can change a job.
    """

    def __init__(
        self,
        store: JobStore,
        settings: Optional[Settings] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        triggers: Optional[TriggerScheduler] = None,
        timer_factory: Optional[Callable[..., Any]] = None,
    ):
        self.store = store
        self.settings = settings or store.load_settings()
        self.triggers = triggers or TriggerScheduler()
        self.orchestrator = Orchestrator(
            self,
            self.settings,
            dispatcher or NotificationDispatcher.from_settings(self.settings),
            timer_factory=timer_factory,
        )
        self._lock = threading.RLock()
        self._jobs: Dict[str, Job] = {}
        self._stop_requested: Set[str] = set()
        self._load()

    def _load(self) -> None:
        interrupted = False
        for job in self.store.load():
            if job.status == "running":
                job.status = "failed"
                job.last_outcome = "failed"
                job.append_log("Migration interrupted: scheduler stopped while the run was in progress")
                logger.warning('Migration "%s" (%s) was running at last shutdown; marked failed.', job.name, job.id)
                interrupted = True
            self._jobs[job.id] = job
        if interrupted:
            self._persist()

    def _persist(self) -> bool:
        return self.store.save(list(self._jobs.values()))

    # Reads

    def list_jobs(self) -> List[Job]:
        with self._lock:
            return [copy.deepcopy(job) for job in self._jobs.values()]

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def require_job(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def jobs_by_id(self) -> Dict[str, Job]:
        with self._lock:
            return {job_id: copy.deepcopy(job) for job_id, job in self._jobs.items()}

    def dependents_of(self, job_id: str) -> List[Job]:
        with self._lock:
            return [copy.deepcopy(job) for job in self._jobs.values() if job_id in job.dependencies]

    # CRUD

    def create_job(
        self,
        name: str,
        recurrence: Recurrence,
        source_env: str,
        target_env: str,
        params: Optional[ExecutionParams] = None,
        dependencies: Optional[Sequence[str]] = None,
        dependency_strategy: str = "fail",
        dependency_timeout_minutes: int = DEFAULT_DEPENDENCY_TIMEOUT_MINUTES,
        notify: Optional[NotifyTargets] = None,
        job_id: Optional[str] = None,
    ) -> Job:
        with self._lock:
            new_id = job_id or str(uuid.uuid4())
            if new_id in self._jobs:
                raise ValidationError(f'Job id "{new_id}" already exists.')
            job = Job(
                id=new_id,
                name=(name or "").strip(),
                recurrence=recurrence,
                source_env=source_env,
                target_env=target_env,
                params=params or ExecutionParams(),
                dependencies=_ordered_unique(dependencies or []),
                dependency_strategy=dependency_strategy,
                dependency_timeout_minutes=dependency_timeout_minutes,
                status="scheduled",
                created_at=utcnow(),
                notify=notify or NotifyTargets(),
            )
            validate_job_fields(job)
            validate_recurrence(job.recurrence)
            if job.dependencies:
                validate_dependencies(job.id, job.dependencies, self._jobs)

            job.next_run_at = self.triggers.arm(job.id, job.recurrence, self.orchestrator.on_recurrence)
            self._jobs[job.id] = job
            self._persist()
            logger.info('Created scheduled migration "%s" (%s)', job.name, job.id)
            return copy.deepcopy(job)

    def update_job(self, job_id: str, **changes: Any) -> Job:
        unknown = set(changes.keys()) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown fields for update: {sorted(unknown)}.")
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            candidate = copy.deepcopy(current)
            for key, value in changes.items():
                if value is None:
                    continue
                if key == "dependencies":
                    value = _ordered_unique(value)
                elif key == "name":
                    value = value.strip()
                setattr(candidate, key, value)

            validate_job_fields(candidate)
            recurrence_changed = candidate.recurrence != current.recurrence
            if recurrence_changed:
                validate_recurrence(candidate.recurrence)
            if changes.get("dependencies") is not None:
                validate_dependencies(job_id, candidate.dependencies, self._jobs)

            if recurrence_changed:
                if self.triggers.is_armed(job_id):
                    candidate.next_run_at = self.triggers.arm(
                        job_id, candidate.recurrence, self.orchestrator.on_recurrence
                    )
                else:
                    candidate.next_run_at = self.triggers.compute_next(candidate.recurrence)
            self._jobs[job_id] = candidate
            self._persist()
            logger.info('Updated scheduled migration "%s" (%s)', candidate.name, job_id)
            return copy.deepcopy(candidate)

    def delete_job(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            self.triggers.disarm(job_id)
            self.orchestrator.cancel_wait(job_id)
            self._stop_requested.discard(job_id)
            del self._jobs[job_id]
            self._persist()
            logger.info('Deleted scheduled migration "%s" (%s)', job.name, job_id)
            return job

    def start_job(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            # Arm first; a bad stored recurrence must leave the job untouched.
            validate_recurrence(job.recurrence)
            next_run_at = self.triggers.arm(job_id, job.recurrence, self.orchestrator.on_recurrence)
            if job.status == "disabled":
                job.status = "scheduled"
                job.append_log("Schedule started")
            self._stop_requested.discard(job_id)
            job.next_run_at = next_run_at
            self._persist()
            logger.info(
                'Scheduled migration "%s" (%s) for %s',
                job.name,
                job_id,
                job.next_run_at.astimezone(job.recurrence.timezone).isoformat(),
            )
            return copy.deepcopy(job)

    def stop_job(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            self.triggers.disarm(job_id)
            self.orchestrator.cancel_wait(job_id)
            if job.status == "running":
                if job_id not in self._stop_requested:
                    self._stop_requested.add(job_id)
                    job.append_log("Stop requested; the current run will finish first")
            elif job.status != "disabled":
                job.status = "disabled"
                job.append_log("Schedule stopped")
            self._persist()
            logger.info('Stopped scheduled migration "%s" (%s)', job.name, job_id)
            return copy.deepcopy(job)

    def start_all(self) -> int:
        armed = 0
        with self._lock:
            for job in self._jobs.values():
                if job.status == "disabled":
                    continue
                try:
                    job.next_run_at = self.triggers.arm(job.id, job.recurrence, self.orchestrator.on_recurrence)
                except ForemanError as exc:
                    job.append_log(f"Error scheduling: {exc}")
                    logger.error('Error scheduling migration "%s" (%s): %s', job.name, job.id, str(exc))
                    continue
                armed += 1
                logger.info(
                    'Scheduled migration "%s" (%s) for %s',
                    job.name,
                    job.id,
                    job.next_run_at.astimezone(job.recurrence.timezone).isoformat(),
                )
            self._persist()
        return armed

    def stop_all(self) -> None:
        with self._lock:
            self.triggers.disarm_all()
            self.orchestrator.cancel_all_waits()

    def run_now(self, job_id: str) -> Optional[RunHandle]:
        self.require_job(job_id)
        return self.orchestrator.trigger(job_id, source="manual")

    # Orchestrator-facing mutations

    def append_log(self, job_id: str, message: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            job.append_log(message)
            self._persist()
            return copy.deepcopy(job)

    def begin_run(self, job_id: str, message: str, started: datetime) -> Optional[Job]:
        """Atomically move a job to ``running``; None when it is already running."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if job.status == "running":
                job.append_log("Migration skipped: previous run still in progress")
                self._persist()
                return None
            if job.status == "disabled":
                self._stop_requested.add(job_id)
            job.status = "running"
            job.last_run_at = started
            job.append_log(message, at=started)
            self._persist()
            return copy.deepcopy(job)

    def finish_run(self, outcome: RunOutcome) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(outcome.job_id)
            if job is None:
                return None
            job.last_outcome = outcome.status
            if outcome.job_id in self._stop_requested:
                self._stop_requested.discard(outcome.job_id)
                job.status = "disabled"
            else:
                job.status = outcome.status
            if outcome.error:
                job.append_log(f"Migration failed to start: {outcome.error}", at=outcome.ended_at)
            else:
                job.append_log(
                    f"Migration {outcome.status} with exit code {outcome.exit_code}",
                    at=outcome.ended_at,
                )
            try:
                job.next_run_at = self.triggers.compute_next(job.recurrence, outcome.ended_at)
            except ForemanError as exc:
                logger.error("Error calculating next run time for %s: %s", job.id, str(exc))
            self._persist()
            return copy.deepcopy(job)

    def close(self) -> None:
        self.stop_all()
        self.triggers.close()
        self.orchestrator.dispatcher.close()


# ---------------------------------------------------------------------------
# Command surface
# ---------------------------------------------------------------------------


def open_manager(config_path: Path) -> ScheduleManager:
    return ScheduleManager(JobStore(config_path))


def _format_time(value: Optional[datetime], tz: Optional[ZoneInfo] = None) -> str:
    if value is None:
        return "never"
    return value.astimezone(tz or UTC).isoformat()


def _job_title(job: Job) -> str:
    return f"{job.name} ({job.id})"


def command_list(manager: ScheduleManager) -> int:
    jobs = manager.list_jobs()
    if not jobs:
        print("No scheduled migrations found.")
        return 0
    print("Scheduled Migrations:")
    print("-" * 43)
    for job in jobs:
        tz = job.recurrence.timezone
        print(_job_title(job))
        status = job.status
        if job.status == "disabled" and job.last_outcome:
            status = f"disabled (last run {job.last_outcome})"
        print(f"Status: {status}")
        print(f"Schedule: {job.recurrence.describe()}")
        print(f"Source: {job.source_env}, Target: {job.target_env}")
        if job.next_run_at:
            print(f"Next run: {_format_time(job.next_run_at, tz)}")
        if job.last_run_at:
            print(f"Last run: {_format_time(job.last_run_at, tz)}")
        print("-" * 43)
    return 0


def command_show(manager: ScheduleManager, job_id: str, log_lines: int, count: int) -> int:
    job = manager.require_job(job_id)
    tz = job.recurrence.timezone
    print(_job_title(job))
    print(f"Status: {job.status}" + (f" (last outcome: {job.last_outcome})" if job.last_outcome else ""))
    print(f"Schedule: {job.recurrence.describe()}")
    print(f"Source: {job.source_env}, Target: {job.target_env}")
    print(f"Batch size: {job.params.batch_size}")
    print(f"Collections: {', '.join(job.params.collections) if job.params.collections else '(all)'}")
    if job.params.query:
        print(f"Query: {job.params.query}")
    print(
        "Flags: "
        f"include_users={job.params.include_users} "
        f"transform_data={job.params.transform_data} "
        f"backup={job.params.backup}"
    )
    deps = ", ".join(job.dependencies) if job.dependencies else "none"
    print(f"Dependencies: {deps} (strategy={job.dependency_strategy})")
    if job.dependency_strategy == "wait":
        print(f"Timeout: {job.dependency_timeout_minutes} minutes")
    if job.notify.email:
        print(f"Notify email: {job.notify.email}")
    if job.notify.webhook:
        print(f"Notify webhook: {job.notify.webhook}")
    print(f"Last run: {_format_time(job.last_run_at, tz)}")
    print(f"Next {count} run(s):")
    for run_dt in next_occurrences(job.recurrence, count):
        print(f"- {run_dt.astimezone(tz).isoformat()}")
    print(f"Log (last {log_lines}):")
    entries = job.log[-log_lines:] if log_lines > 0 else []
    if not entries:
        print("- (empty)")
    for entry in entries:
        print(f"- {entry}")
    return 0


def _params_from_args(args: argparse.Namespace, base: Optional[ExecutionParams] = None) -> ExecutionParams:
    base = base or ExecutionParams()
    return ExecutionParams(
        batch_size=args.batch_size if args.batch_size is not None else base.batch_size,
        collections=tuple(split_csv(args.collections)) if args.collections is not None else base.collections,
        query=(args.query or None) if args.query is not None else base.query,
        include_users=args.include_users if args.include_users is not None else base.include_users,
        transform_data=args.transform_data if args.transform_data is not None else base.transform_data,
        backup=args.backup if args.backup is not None else base.backup,
        source_credentials=(
            args.source_credentials if args.source_credentials is not None else base.source_credentials
        ),
        target_credentials=(
            args.target_credentials if args.target_credentials is not None else base.target_credentials
        ),
    )


def _notify_from_args(args: argparse.Namespace, base: Optional[NotifyTargets] = None) -> NotifyTargets:
    base = base or NotifyTargets()
    return NotifyTargets(
        email=(args.notify_email or None) if args.notify_email is not None else base.email,
        webhook=(args.notify_webhook or None) if args.notify_webhook is not None else base.webhook,
    )


def command_create(manager: ScheduleManager, args: argparse.Namespace) -> int:
    required = (("--name", args.name), ("--cron", args.cron), ("--source", args.source), ("--target", args.target))
    missing = [flag for flag, value in required if not value]
    if missing:
        raise ForemanError(f"Error: Missing required options: {', '.join(missing)}.")
    job = manager.create_job(
        name=args.name,
        recurrence=Recurrence(args.cron, args.timezone or manager.settings.default_timezone),
        source_env=args.source,
        target_env=args.target,
        params=_params_from_args(args),
        dependencies=split_csv(args.dependencies),
        dependency_strategy=args.dependency_strategy or "fail",
        dependency_timeout_minutes=(
            args.dependency_timeout if args.dependency_timeout is not None else DEFAULT_DEPENDENCY_TIMEOUT_MINUTES
        ),
        notify=_notify_from_args(args),
        job_id=args.id,
    )
    print(f'Created scheduled migration "{job.name}" ({job.id})')
    if job.next_run_at:
        print(f"Next run: {_format_time(job.next_run_at, job.recurrence.timezone)}")
    return 0


def command_update(manager: ScheduleManager, args: argparse.Namespace) -> int:
    current = manager.require_job(args.job_id)
    recurrence = None
    if args.cron is not None or args.timezone is not None:
        recurrence = Recurrence(
            args.cron or current.recurrence.expression,
            args.timezone or current.recurrence.timezone_name,
        )
    job = manager.update_job(
        args.job_id,
        name=args.name,
        recurrence=recurrence,
        source_env=args.source,
        target_env=args.target,
        params=_params_from_args(args, current.params),
        dependencies=split_csv(args.dependencies) if args.dependencies is not None else None,
        dependency_strategy=args.dependency_strategy,
        dependency_timeout_minutes=args.dependency_timeout,
        notify=_notify_from_args(args, current.notify),
    )
    print(f'Updated scheduled migration "{job.name}" ({job.id})')
    return 0


def command_delete(manager: ScheduleManager, job_id: str, assume_yes: bool) -> int:
    job = manager.require_job(job_id)
    if not assume_yes:
        answer = input(f'Are you sure you want to delete the scheduled migration "{job.name}" ({job.id})? [y/N] ')
        if answer.strip().lower() not in {"y", "yes"}:
            print("Deletion cancelled.")
            return 0
    manager.delete_job(job_id)
    print(f'Deleted scheduled migration "{job.name}" ({job.id})')
    return 0


def command_run_now(manager: ScheduleManager, job_id: str) -> int:
    job = manager.require_job(job_id)
    print(f'Running scheduled migration "{job.name}" ({job_id}) now')
    handle = manager.run_now(job_id)
    if handle is None:
        latest = manager.require_job(job_id)
        print(latest.log[-1] if latest.log else "Migration did not start.")
        # A one-shot command cannot outlive a dependency wait; the daemon can.
        if manager.orchestrator.cancel_wait(job_id):
            print("Dependency wait abandoned; run the daemon to retry automatically.")
        return 1
    outcome = handle.wait()
    manager.orchestrator.dispatcher.close()
    if outcome is None:
        return 1
    print(f"Migration {outcome.status} with exit code {outcome.exit_code}")
    print(f"Standard output: {outcome.stdout_path}")
    print(f"Standard error: {outcome.stderr_path}")
    return 0 if outcome.success else 1


def _print_dependency_tree(jobs: Mapping[str, Job], job_id: str, level: int, visited: Set[str]) -> None:
    job = jobs.get(job_id)
    if job is None:
        return
    indent = " " * (level * 2)
    if job_id in visited:
        print(f"{indent}(circular) {job.name}")
        return
    visited = visited | {job_id}
    prefix = "" if level == 0 else "└─ "
    print(f"{indent}{prefix}{_job_title(job)}")
    for dep_id in job.dependencies:
        if dep_id in jobs:
            _print_dependency_tree(jobs, dep_id, level + 1, visited)
        else:
            print(f"{' ' * ((level + 1) * 2)}└─ Unknown: {dep_id}")


def command_dependencies(manager: ScheduleManager, job_id: Optional[str], graph: bool) -> int:
    if job_id:
        job = manager.require_job(job_id)
        jobs = manager.jobs_by_id()
        print(f'Dependencies for "{job.name}" ({job.id}):')
        if not job.dependencies:
            print("No dependencies")
            return 0
        for dep_id in job.dependencies:
            dependency = jobs.get(dep_id)
            if dependency:
                print(f"- {_job_title(dependency)}: {dependency.status}")
            else:
                print(f"- Unknown dependency: {dep_id}")
        print(f"\nStrategy: {job.dependency_strategy}")
        if job.dependency_strategy == "wait":
            print(f"Timeout: {job.dependency_timeout_minutes} minutes")
        return 0

    jobs = manager.jobs_by_id()
    if graph:
        print("Dependency Graph:")
        print("-" * 43)
        referenced = {dep_id for job in jobs.values() for dep_id in job.dependencies}
        roots = [job_key for job_key in jobs if job_key not in referenced]
        if not roots:
            print("No root migrations found (possible circular dependencies)")
            roots = list(jobs.keys())
        for root in roots:
            _print_dependency_tree(jobs, root, 0, set())
        return 0

    print("Migration Dependencies:")
    print("-" * 43)
    for job in jobs.values():
        print(_job_title(job))
        if not job.dependencies:
            print("  No dependencies")
        else:
            print("  Depends on:")
            for dep_id in job.dependencies:
                dependency = jobs.get(dep_id)
                print(f"  - {_job_title(dependency)}" if dependency else f"  - Unknown dependency: {dep_id}")
        dependents = manager.dependents_of(job.id)
        if dependents:
            print("  Required by:")
            for dependent in dependents:
                print(f"  - {_job_title(dependent)}")
        print("-" * 43)
    return 0


def command_validate(config_path: Path) -> int:
    store = JobStore(config_path)
    store.load_settings()
    jobs = store.load()
    by_id = {job.id: job for job in jobs}
    graph = {job.id: list(job.dependencies) for job in jobs}
    problems: List[str] = []
    for job in jobs:
        try:
            validate_job_fields(job)
            validate_recurrence(job.recurrence)
        except ValidationError as exc:
            problems.append(f"{_job_title(job)}: {exc}")
        for dep_id in job.dependencies:
            if dep_id not in by_id:
                problems.append(f"{_job_title(job)}: Dependency {dep_id} not found")
        cycle = find_dependency_cycle(job.id, job.dependencies, graph)
        if cycle:
            problems.append(f"{_job_title(job)}: Circular dependency detected: {' -> '.join(cycle)}")
    print(f"Config: {config_path}")
    print(f"Total jobs: {len(jobs)}")
    print(f"Enabled jobs: {sum(1 for job in jobs if job.status != 'disabled')}")
    if problems:
        print("Problems:")
        for problem in problems:
            print(f"- {problem}")
        return 1
    print("Config valid.")
    return 0


def command_daemon(manager: ScheduleManager, pid_file: Optional[Path]) -> int:
    stop_event = threading.Event()

    def handle_signal(signum: int, _frame: Any) -> None:
        logger.info("Received signal %s; stopping scheduler daemon.", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, handle_signal)
    if pid_file is not None:
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(os.getpid()), encoding="utf-8")
        logger.info("PID file created at %s", pid_file)

    armed = manager.start_all()
    manager.triggers.start()
    logger.info("Scheduler daemon started with %s armed job(s). Press Ctrl+C to stop.", armed)
    exit_code = 0
    try:
        while not stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        exit_code = 130
    finally:
        logger.info("Stopping scheduler daemon...")
        manager.close()
        if pid_file is not None and pid_file.exists():
            pid_file.unlink()
    return exit_code


def command_shutdown(pid_file: Path) -> int:
    if not pid_file.exists():
        raise ForemanError("Scheduler daemon is not running (PID file not found).")
    try:
        pid = int(pid_file.read_text(encoding="utf-8").strip())
    except ValueError as exc:
        pid_file.unlink()
        raise ForemanError(f"Invalid PID file {pid_file}; removed.") from exc
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError as exc:
        pid_file.unlink()
        raise ForemanError("Scheduler daemon is not running (process not found).") from exc
    pid_file.unlink()
    print(f"Scheduler daemon (PID {pid}) stopped.")
    return 0


def _add_job_options(parser: argparse.ArgumentParser, creating: bool) -> None:
    parser.add_argument("--name", help="Name of the scheduled migration")
    parser.add_argument("--cron", help="Cron expression for the schedule")
    parser.add_argument("--timezone", help="Timezone for the schedule")
    parser.add_argument("--source", choices=sorted(VALID_ENVIRONMENTS), help="Source environment")
    parser.add_argument("--target", choices=sorted(VALID_ENVIRONMENTS), help="Target environment")
    parser.add_argument("--collections", help="Comma-separated list of collections to migrate")
    parser.add_argument("--query", help='Query to filter documents (e.g., "status == pending")')
    parser.add_argument("--batch-size", type=int, help=f"Batch size for writes (default: {DEFAULT_BATCH_SIZE})")
    parser.add_argument("--include-users", action=argparse.BooleanOptionalAction, default=None)
    parser.add_argument("--transform-data", action=argparse.BooleanOptionalAction, default=None)
    parser.add_argument("--backup", action=argparse.BooleanOptionalAction, default=None)
    parser.add_argument("--source-credentials", help="Path to custom source credentials JSON file")
    parser.add_argument("--target-credentials", help="Path to custom target credentials JSON file")
    parser.add_argument("--notify-email", help="Email address to notify when the migration finishes")
    parser.add_argument("--notify-webhook", help="Webhook URL to notify when the migration finishes")
    parser.add_argument("--dependencies", help="Comma-separated list of job IDs this migration depends on")
    parser.add_argument("--dependency-strategy", choices=sorted(VALID_STRATEGIES))
    parser.add_argument("--dependency-timeout", type=int, help="Minutes to wait on dependencies (wait strategy)")
    if creating:
        parser.add_argument("--id", help="Explicit job id (default: generated)")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="foreman.py dependency-aware migration scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to foreman YAML store (default: {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List all scheduled migrations")

    show_parser = subparsers.add_parser("show", help="Show one scheduled migration")
    show_parser.add_argument("job_id")
    show_parser.add_argument("--log-lines", type=int, default=DEFAULT_LOG_LINES)
    show_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    create_parser = subparsers.add_parser("create", help="Create a new scheduled migration")
    _add_job_options(create_parser, creating=True)

    update_parser = subparsers.add_parser("update", help="Update a scheduled migration")
    update_parser.add_argument("job_id")
    _add_job_options(update_parser, creating=False)

    delete_parser = subparsers.add_parser("delete", help="Delete a scheduled migration")
    delete_parser.add_argument("job_id")
    delete_parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")

    start_parser = subparsers.add_parser("start", help="Start (enable) a scheduled migration")
    start_parser.add_argument("job_id")

    stop_parser = subparsers.add_parser("stop", help="Stop (disable) a scheduled migration")
    stop_parser.add_argument("job_id")

    run_parser = subparsers.add_parser("run-now", help="Run a scheduled migration immediately")
    run_parser.add_argument("job_id")

    deps_parser = subparsers.add_parser("dependencies", help="Show dependencies for one or all migrations")
    deps_parser.add_argument("job_id", nargs="?")
    deps_parser.add_argument("--graph", action="store_true", help="Show dependency graph")

    subparsers.add_parser("validate", help="Report invalid references, cycles and schedules")

    daemon_parser = subparsers.add_parser("daemon", help="Run the scheduler daemon in the foreground")
    daemon_parser.add_argument("--pid-file", help=f"Write the daemon PID here (e.g. {DEFAULT_PID_FILE})")

    shutdown_parser = subparsers.add_parser("shutdown", help="Stop a daemon started with --pid-file")
    shutdown_parser.add_argument("--pid-file", default=DEFAULT_PID_FILE)

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config).resolve()

    try:
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "shutdown":
            return command_shutdown(Path(args.pid_file).resolve())

        manager = open_manager(config_path)
        if args.command == "list":
            return command_list(manager)
        if args.command == "show":
            if args.count <= 0:
                raise ForemanError("--count must be >= 1")
            return command_show(manager, args.job_id, log_lines=args.log_lines, count=args.count)
        if args.command == "create":
            return command_create(manager, args)
        if args.command == "update":
            return command_update(manager, args)
        if args.command == "delete":
            return command_delete(manager, args.job_id, assume_yes=args.yes)
        if args.command == "start":
            job = manager.start_job(args.job_id)
            print(f'Started scheduled migration "{job.name}" ({job.id})')
            return 0
        if args.command == "stop":
            job = manager.stop_job(args.job_id)
            print(f'Stopped scheduled migration "{job.name}" ({job.id})')
            return 0
        if args.command == "run-now":
            return command_run_now(manager, args.job_id)
        if args.command == "dependencies":
            return command_dependencies(manager, args.job_id, graph=args.graph)
        if args.command == "daemon":
            pid_file = Path(args.pid_file).resolve() if args.pid_file else None
            return command_daemon(manager, pid_file)
        raise ForemanError(f"Unsupported command: {args.command}")
    except ForemanError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
