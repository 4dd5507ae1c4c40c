from __future__ import annotations

import sys
from pathlib import Path

import pytest
import yaml

import foreman
from conftest import write_store


def _job_record(job_id: str, **overrides: object) -> dict:
    record = {
        "id": job_id,
        "name": f"job-{job_id}",
        "schedule": {"cron": "0 * * * *", "timezone": "UTC"},
        "source": "development",
        "target": "staging",
    }
    record.update(overrides)
    return record


def test_created_jobs_are_persisted_and_reloaded(manager: foreman.ScheduleManager, add_job, make_manager) -> None:
    a = add_job("a", params=foreman.ExecutionParams(collections=("orders",), query="total > 10"))
    add_job("b", dependencies=[a.id], dependency_strategy="wait", dependency_timeout_minutes=5)

    reopened = make_manager()
    jobs = reopened.list_jobs()
    assert [job.name for job in jobs] == ["a", "b"]
    assert jobs[0].params.collections == ("orders",)
    assert jobs[0].params.query == "total > 10"
    assert jobs[0].next_run_at == a.next_run_at
    assert jobs[0].created_at is not None
    assert jobs[1].dependencies == [a.id]
    assert jobs[1].dependency_timeout_minutes == 5


def test_save_preserves_settings_block(manager: foreman.ScheduleManager, add_job) -> None:
    add_job("a")
    payload = yaml.safe_load(manager.store.path.read_text(encoding="utf-8"))
    assert payload["version"] == 1
    assert payload["settings"]["worker"] == {"path": "worker.py"}
    assert payload["jobs"][0]["schedule"] == {"cron": "0 * * * *", "timezone": "UTC"}


def test_reads_return_copies(manager: foreman.ScheduleManager, add_job) -> None:
    job = add_job("a")
    job.name = "mutated"
    job.dependencies.append("bogus")
    copy_of = manager.get_job(job.id)
    copy_of.log.append("bogus")
    stored = manager.require_job(job.id)
    assert stored.name == "a"
    assert stored.dependencies == []
    assert "bogus" not in stored.log


def test_explicit_id_and_duplicates(add_job) -> None:
    job = add_job("a", job_id="nightly-orders")
    assert job.id == "nightly-orders"
    with pytest.raises(foreman.ValidationError, match="already exists"):
        add_job("again", job_id="nightly-orders")


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"source_env": "staging", "target_env": "staging"}, "cannot be the same"),
        ({"source_env": "custom", "target_env": "staging"}, "source credentials are required"),
        ({"source_env": "development", "target_env": "custom"}, "target credentials are required"),
        ({"source_env": "qa"}, "Source environment must be one of"),
        ({"dependency_strategy": "retry"}, "Dependency strategy"),
        ({"dependency_timeout_minutes": 0}, "at least 1 minute"),
        ({"dependency_timeout_minutes": True}, "at least 1 minute"),
        ({"params": foreman.ExecutionParams(batch_size=True)}, "Batch size"),
        ({"params": foreman.ExecutionParams(batch_size=0)}, "Batch size"),
        ({"name": "  "}, "Name is required"),
    ],
)
def test_create_validation_errors(manager: foreman.ScheduleManager, add_job, overrides: dict, message: str) -> None:
    options = dict(overrides)
    name = options.pop("name", "job")
    with pytest.raises(foreman.ValidationError, match=message):
        add_job(name, **options)
    assert manager.list_jobs() == []


def test_custom_to_custom_is_allowed_with_credentials(add_job) -> None:
    job = add_job(
        "custom",
        source_env="custom",
        target_env="custom",
        params=foreman.ExecutionParams(source_credentials="s.json", target_credentials="t.json"),
    )
    assert job.source_env == job.target_env == "custom"


def test_update_changes_fields_and_rejects_unknown(manager: foreman.ScheduleManager, add_job) -> None:
    job = add_job("a")
    updated = manager.update_job(job.id, name="renamed", notify=foreman.NotifyTargets(email="ops@example.com"))
    assert updated.name == "renamed"
    assert updated.notify.email == "ops@example.com"
    assert updated.next_run_at == job.next_run_at

    with pytest.raises(foreman.ValidationError, match="Unknown fields"):
        manager.update_job(job.id, status="completed")
    with pytest.raises(foreman.ValidationError):
        manager.update_job(job.id, target_env="development")
    assert manager.require_job(job.id).target_env == "staging"


def test_update_and_delete_unknown_job(manager: foreman.ScheduleManager) -> None:
    with pytest.raises(foreman.JobNotFoundError, match="Schedule with ID ghost not found"):
        manager.update_job("ghost", name="x")
    with pytest.raises(foreman.JobNotFoundError):
        manager.delete_job("ghost")
    with pytest.raises(foreman.JobNotFoundError):
        manager.stop_job("ghost")


def test_delete_disarms_and_persists(manager: foreman.ScheduleManager, add_job, make_manager) -> None:
    job = add_job("a")
    manager.delete_job(job.id)
    assert manager.get_job(job.id) is None
    assert manager.triggers.is_armed(job.id) is False
    assert make_manager().list_jobs() == []


def test_dependents_of_lists_required_by(manager: foreman.ScheduleManager, add_job) -> None:
    a = add_job("a")
    add_job("b", dependencies=[a.id])
    add_job("c")
    assert [job.name for job in manager.dependents_of(a.id)] == ["b"]


def test_start_with_invalid_stored_recurrence_leaves_job_untouched(tmp_path: Path, make_manager) -> None:
    config_path = write_store(
        tmp_path / "hand-edited.yaml",
        jobs=[_job_record("x", schedule={"cron": "not a cron", "timezone": "UTC"}, status="disabled")],
    )
    manager = make_manager(config_path)
    before = config_path.read_text(encoding="utf-8")

    with pytest.raises(foreman.RecurrenceError):
        manager.start_job("x")

    job = manager.require_job("x")
    assert job.status == "disabled"
    assert job.log == []
    assert manager.triggers.is_armed("x") is False
    assert config_path.read_text(encoding="utf-8") == before


def test_interrupted_run_is_marked_failed_on_load(tmp_path: Path, make_manager) -> None:
    config_path = write_store(
        tmp_path / "interrupted.yaml",
        jobs=[_job_record("a", status="running", last_run_at="2026-03-01T12:00:00+00:00")],
    )
    manager = make_manager(config_path)
    job = manager.require_job("a")
    assert job.status == "failed"
    assert job.last_outcome == "failed"
    assert "interrupted" in job.log[-1]
    persisted = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert persisted["jobs"][0]["status"] == "failed"


def test_store_missing_file_is_empty(tmp_path: Path) -> None:
    assert foreman.JobStore(tmp_path / "absent.yaml").load() == []


def test_store_rejects_unknown_keys(tmp_path: Path) -> None:
    path = write_store(tmp_path / "bad.yaml", jobs=[_job_record("a", retries=3)])
    with pytest.raises(foreman.ConfigError, match="Unknown keys in jobs\\[0\\]"):
        foreman.JobStore(path).load()


def test_store_rejects_duplicate_ids(tmp_path: Path) -> None:
    path = write_store(tmp_path / "dup.yaml", jobs=[_job_record("a"), _job_record("a")])
    with pytest.raises(foreman.ConfigError, match='Duplicate job id "a"'):
        foreman.JobStore(path).load()


def test_store_names_field_path_for_bad_values(tmp_path: Path) -> None:
    path = write_store(tmp_path / "bad.yaml", jobs=[_job_record("a", params={"batch_size": "many"})])
    with pytest.raises(foreman.ConfigError, match="jobs\\[0\\].params.batch_size must be an integer"):
        foreman.JobStore(path).load()


def test_store_save_failure_returns_false(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    store = foreman.JobStore(blocker / "foreman.yaml")
    assert store.save([]) is False


def test_persistence_failure_does_not_break_mutations(manager: foreman.ScheduleManager, add_job, monkeypatch) -> None:
    monkeypatch.setattr(manager.store, "save", lambda jobs: False)
    job = add_job("a")
    assert manager.require_job(job.id).name == "a"


def test_settings_defaults_and_overrides(tmp_path: Path) -> None:
    defaults = foreman.parse_settings(None, tmp_path)
    assert defaults.worker_command == (sys.executable, str((tmp_path / "workers/migrate_data.py").resolve()))
    assert defaults.log_dir == (tmp_path / "logs/scheduled").resolve()
    assert defaults.default_timezone == "UTC"
    assert defaults.smtp is None

    settings = foreman.parse_settings(
        {
            "timezone": "Europe/London",
            "worker": {"path": "bin/migrate.py", "args": "--dry-run --verbose", "interpreter": "python3"},
            "log_dir": "/var/log/foreman",
            "notifications": {"webhook_timeout_ms": 250, "smtp": {"host": "smtp.example.com", "use_tls": False}},
        },
        tmp_path,
    )
    assert settings.worker_command[0] == "python3"
    assert settings.worker_command[2:] == ("--dry-run", "--verbose")
    assert settings.log_dir == Path("/var/log/foreman").resolve()
    assert settings.webhook_timeout_ms == 250
    assert settings.smtp.host == "smtp.example.com"
    assert settings.smtp.port == 587


def test_settings_reject_tls_and_ssl_together(tmp_path: Path) -> None:
    with pytest.raises(foreman.ConfigError, match="cannot both be enabled"):
        foreman.parse_settings(
            {"notifications": {"smtp": {"host": "smtp.example.com", "use_tls": True, "use_ssl": True}}},
            tmp_path,
        )


def test_settings_reject_unknown_timezone(tmp_path: Path) -> None:
    with pytest.raises(foreman.ConfigError, match="Invalid timezone"):
        foreman.parse_settings({"timezone": "Nowhere/Land"}, tmp_path)
