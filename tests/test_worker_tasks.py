from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

import pytest

import worker
from lifecycle import ContainerLifecycleManager
from orchestrator import PreviewOrchestrator
from port_registry import PortRegistry
from security_profiles import BuilderProfile, RunnerProfile


@pytest.fixture()
def wired(fake_engine, record_store, make_probe):
    registry = PortRegistry(3001, 3002, event_store=record_store, probe=make_probe([], default=200), sleep=lambda s: None)
    lifecycle = ContainerLifecycleManager(
        fake_engine,
        record_store,
        builder_profile=BuilderProfile(image="node:20-alpine", command="npm run build"),
        runner_profile=RunnerProfile(image="node:20-alpine", command="npm start"),
    )
    orchestrator = PreviewOrchestrator(registry, lifecycle, record_store, health_max_attempts=1, health_interval_ms=0)
    worker.set_orchestrator(orchestrator)
    yield orchestrator
    worker.set_orchestrator(None)


def test_build_and_deploy_tasks_return_payloads(wired, project_dir) -> None:
    build = worker.build_project("proj-worker", str(project_dir), "user-1")
    assert build["success"] is True

    deployed = worker.deploy_project("proj-worker", str(project_dir), "user-1", build["build_id"])
    assert deployed["success"] is True
    assert deployed["port"] == 3001

    stopped = worker.stop_preview(deployed["preview_id"], deployed["container_id"], "proj-worker")
    assert stopped == {"success": True, "preview_id": deployed["preview_id"]}
    assert wired.registry.get_port("proj-worker") is None


def test_deploy_task_reports_preview_errors(wired, project_dir, fake_engine) -> None:
    wired.registry.allocate_port("a")
    wired.registry.allocate_port("b")

    payload = worker.deploy_project("proj-full", str(project_dir), "user-1")

    assert payload["success"] is False
    assert payload["code"] == "PORT_POOL_EXHAUSTED"
    assert fake_engine.calls_named("create") == []


def test_maintenance_tasks(wired, fake_engine) -> None:
    dead = fake_engine.create_container(image="x", labels={})
    dead.status = "dead"
    assert worker.sweep_stopped_containers() == {"removed": 1}

    wired.registry._probe = lambda url, timeout: 503
    wired.registry.allocate_port("idle")
    assert worker.cleanup_stale_ports() == {"released": 1}


def test_beat_schedule_runs_stale_sweep() -> None:
    entry = worker.celery_app.conf.beat_schedule["cleanup-stale-ports"]
    assert entry["task"] == "cleanup_stale_ports"
    assert entry["schedule"] >= 10


def test_task_failure_is_logged(caplog) -> None:
    class _Sender:
        name = "deploy_project"

    with caplog.at_level(logging.ERROR, logger="preview.worker"):
        worker._handle_task_failure(
            sender=_Sender(),
            task_id="task-1",
            exception=RuntimeError("boom"),
            args=("p1",),
            kwargs={},
        )
    record = caplog.records[-1]
    assert record.getMessage() == "worker.task.failed"
    assert record.task == "deploy_project"
    assert record.error == "boom"


def test_worker_runs_tasks_in_one_process() -> None:
    assert worker.celery_app.conf.worker_pool == "threads"
    assert worker.celery_app.conf.worker_concurrency >= 1


def test_concurrent_tasks_share_one_registry(monkeypatch) -> None:
    built = []

    def _factory():
        built.append(object())
        return built[-1]

    monkeypatch.setattr(worker, "build_orchestrator", _factory)
    worker.set_orchestrator(None)
    try:
        with ThreadPoolExecutor(max_workers=8) as pool:
            instances = list(pool.map(lambda _: worker.get_orchestrator(), range(16)))
    finally:
        worker.set_orchestrator(None)

    assert len(built) == 1
    assert all(item is built[0] for item in instances)


def test_startup_reconcile_feeds_the_task_registry(wired, fake_engine, project_dir) -> None:
    fake_engine.runner_ports = {"proj-survivor": 3001}

    worker._reconcile_on_start()
    deployed = worker.deploy_project("proj-new", str(project_dir), "user-1")

    assert wired.registry.get_port("proj-survivor") == 3001
    assert deployed["port"] == 3002
