from __future__ import annotations

from datetime import datetime, timezone

import pytest

import foreman

UTC = timezone.utc


def _job(job_id: str, deps: list[str] | None = None, **overrides: object) -> foreman.Job:
    job = foreman.Job(
        id=job_id,
        name=f"job-{job_id}",
        recurrence=foreman.Recurrence("0 * * * *"),
        source_env="development",
        target_env="staging",
        dependencies=list(deps or []),
    )
    for key, value in overrides.items():
        setattr(job, key, value)
    return job


def _ran(status: str, **overrides: object) -> dict:
    fields = {"status": status, "last_run_at": datetime(2026, 3, 1, 12, 0, tzinfo=UTC)}
    fields.update(overrides)
    return fields


def test_self_reference_reports_two_element_cycle() -> None:
    assert foreman.find_dependency_cycle("C", ["C"], {}) == ["C", "C"]


def test_cycle_path_runs_from_repeated_node_back_to_itself() -> None:
    graph = {"a": ["b"], "b": ["c"], "c": []}
    assert foreman.find_dependency_cycle("c", ["a"], graph) == ["c", "a", "b", "c"]


def test_shared_subgraph_is_not_a_cycle() -> None:
    # Diamond: d -> b, d -> c, b -> a, c -> a.
    graph = {"a": [], "b": ["a"], "c": ["a"]}
    assert foreman.find_dependency_cycle("d", ["b", "c"], graph) is None


def test_long_chain_does_not_hit_recursion_limit() -> None:
    graph = {f"n{i}": [f"n{i + 1}"] for i in range(2000)}
    graph["n2000"] = []
    assert foreman.find_dependency_cycle("root", ["n0"], graph) is None
    assert foreman.find_dependency_cycle("n2000", ["n0"], graph)[0] == "n2000"


def test_validate_dependencies_rejects_missing_before_walking() -> None:
    jobs = {"a": _job("a")}
    with pytest.raises(foreman.DependencyNotFoundError) as excinfo:
        foreman.validate_dependencies("b", ["a", "ghost"], jobs)
    assert excinfo.value.dependency_id == "ghost"


def test_validate_dependencies_raises_cycle_error_with_path() -> None:
    jobs = {"a": _job("a"), "b": _job("b", ["a"])}
    with pytest.raises(foreman.CycleError, match="Circular dependency detected") as excinfo:
        foreman.validate_dependencies("a", ["b"], jobs)
    assert excinfo.value.cycle == ["a", "b", "a"]


def test_resolver_no_dependencies() -> None:
    decision = foreman.resolve_dependencies(_job("a"), {})
    assert decision.can_run is True
    assert decision.reason == "No dependencies"


def test_resolver_missing_dependency_blocks_and_is_not_deferrable() -> None:
    job = _job("b", ["a"], dependency_strategy="wait")
    decision = foreman.resolve_dependencies(job, {"b": job})
    assert decision.can_run is False
    assert decision.missing == "a"
    assert decision.reason == "Dependency a not found"
    assert decision.deferrable is False


def test_resolver_pending_when_never_ran_or_running() -> None:
    never = _job("a")
    running = _job("r", **_ran("running"))
    job = _job("b", ["a", "r"])
    decision = foreman.resolve_dependencies(job, {"a": never, "r": running, "b": job})
    assert decision.can_run is False
    assert decision.pending == ("job-a", "job-r")
    assert decision.reason == "Waiting for dependencies: job-a, job-r"
    assert decision.deferrable is True


def test_resolver_pending_wins_over_failed() -> None:
    failed = _job("f", **_ran("failed"))
    never = _job("a")
    job = _job("b", ["f", "a"], dependency_strategy="skip")
    decision = foreman.resolve_dependencies(job, {"f": failed, "a": never, "b": job})
    assert decision.can_run is False
    assert decision.pending == ("job-a",)
    assert decision.failed == ("job-f",)


@pytest.mark.parametrize(
    ("strategy", "can_run", "reason"),
    [
        ("fail", False, "Dependencies failed: job-a"),
        ("skip", True, "Proceeding despite failed dependencies: job-a"),
        ("wait", False, "Waiting for failed dependencies to recover: job-a"),
    ],
)
def test_resolver_failed_dependency_per_strategy(strategy: str, can_run: bool, reason: str) -> None:
    dep = _job("a", **_ran("failed"))
    job = _job("b", ["a"], dependency_strategy=strategy)
    decision = foreman.resolve_dependencies(job, {"a": dep, "b": job})
    assert decision.can_run is can_run
    assert decision.reason == reason


def test_resolver_disabled_dependency_keeps_last_outcome() -> None:
    disabled_failed = _job("a", **_ran("disabled", last_outcome="failed"))
    disabled_ok = _job("c", **_ran("disabled", last_outcome="completed"))
    job = _job("b", ["c"])
    assert foreman.resolve_dependencies(job, {"a": disabled_failed, "c": disabled_ok}).can_run is True
    job.dependencies = ["a"]
    assert foreman.resolve_dependencies(job, {"a": disabled_failed, "c": disabled_ok}).can_run is False


def test_resolver_all_satisfied() -> None:
    dep = _job("a", **_ran("completed"))
    job = _job("b", ["a"])
    decision = foreman.resolve_dependencies(job, {"a": dep, "b": job})
    assert decision.can_run is True
    assert decision.reason == "All dependencies satisfied"


def test_registry_rejects_self_reference_and_does_not_add(manager: foreman.ScheduleManager) -> None:
    with pytest.raises(foreman.CycleError) as excinfo:
        manager.create_job(
            name="C",
            recurrence=foreman.Recurrence("0 * * * *"),
            source_env="development",
            target_env="staging",
            dependencies=["C"],
            job_id="C",
        )
    assert excinfo.value.cycle == ["C", "C"]
    assert manager.get_job("C") is None
    assert manager.triggers.is_armed("C") is False


def test_registry_rejects_cycle_on_update_and_keeps_prior_state(manager: foreman.ScheduleManager, add_job) -> None:
    a = add_job("a", job_id="a")
    add_job("b", job_id="b", dependencies=["a"])
    with pytest.raises(foreman.CycleError):
        manager.update_job("a", dependencies=["b"])
    assert manager.require_job("a").dependencies == []
    reloaded = foreman.JobStore(manager.store.path).load()
    assert [job.dependencies for job in reloaded if job.id == a.id] == [[]]


def test_registry_rejects_unknown_dependency(add_job) -> None:
    with pytest.raises(foreman.DependencyNotFoundError):
        add_job("b", dependencies=["missing"])


def test_dependency_lists_are_deduplicated_in_order(add_job) -> None:
    add_job("a", job_id="a")
    add_job("b", job_id="b")
    job = add_job("c", dependencies=["b", "a", "b"])
    assert job.dependencies == ["b", "a"]
