from __future__ import annotations

import pytest

from errors import EngineError, HealthCheckFailed, PoolExhausted
from lifecycle import ContainerLifecycleManager
from orchestrator import PreviewOrchestrator, preview_host
from port_registry import PortRegistry
from security_profiles import BuilderProfile, RunnerProfile


def make_orchestrator(engine, store, probe, sleeps, *, start: int = 3001, end: int = 3003) -> PreviewOrchestrator:
    registry = PortRegistry(start, end, event_store=store, probe=probe, sleep=sleeps.append, host="127.0.0.1")
    lifecycle = ContainerLifecycleManager(
        engine,
        store,
        builder_profile=BuilderProfile(image="node:20-alpine", command="npm run build"),
        runner_profile=RunnerProfile(image="node:20-alpine", command="npm start", network="preview-test"),
        network_name="preview-test",
    )
    return PreviewOrchestrator(
        registry,
        lifecycle,
        store,
        public_domain="preview.example.test",
        url_host="preview.example.test",
        health_max_attempts=3,
        health_interval_ms=5,
        stop_grace_seconds=10,
    )


def test_deploy_success_returns_addresses(fake_engine, record_store, make_probe, sleeps, project_dir) -> None:
    orchestrator = make_orchestrator(fake_engine, record_store, make_probe([503, 200]), sleeps)

    result = orchestrator.deploy_project("abcdef123456", str(project_dir), "user-1", build_id=None)

    assert result.success is True
    assert result.port == 3001
    assert result.host == "proj-abcdef12.preview.example.test"
    assert result.url == "http://preview.example.test:3001"
    assert result.container_name.startswith("preview-abcdef12-")
    create_kwargs = fake_engine.calls_named("create")[0]
    assert create_kwargs["ports"] == {"3000/tcp": 3001}
    assert create_kwargs["volumes"][str(project_dir)]["mode"] == "ro"
    assert create_kwargs["labels"]["project-id"] == "abcdef123456"
    preview = record_store.get_preview(result.preview_id)
    assert preview["status"] == "healthy"
    assert preview["container_id"] == result.container_id
    assert preview["memory_limit_mb"] == 256
    assert sleeps == [0.005]
    kinds = {item["kind"] for item in record_store.recent_events(project_id="abcdef123456")}
    assert {"health_check_passed", "deploy_succeeded"} <= kinds


def test_deploy_unhealthy_tears_down_everything(fake_engine, record_store, make_probe, sleeps, project_dir) -> None:
    orchestrator = make_orchestrator(fake_engine, record_store, make_probe([], default=502), sleeps)

    with pytest.raises(HealthCheckFailed) as excinfo:
        orchestrator.deploy_project("proj-unhealthy", str(project_dir), "user-1")

    context = excinfo.value.context
    assert context["port"] == 3001
    assert context["attempts"] == 3
    container_id = fake_engine.calls_named("start")[0]
    assert fake_engine.calls_named("stop") == [(container_id, 10)]
    assert fake_engine.calls_named("remove") == [(container_id, False)]
    assert fake_engine.containers == {}
    assert orchestrator.registry.get_port("proj-unhealthy") is None
    assert orchestrator.registry.get_stats()["allocated"] == 0
    preview = record_store.get_preview(context["preview_id"])
    assert preview["status"] == "failed"
    failed = record_store.recent_events(kind="deploy_failed")
    assert failed[0]["meta"]["code"] == "HEALTH_CHECK_FAILED"


def test_deploy_start_failure_compensates(fake_engine, record_store, make_probe, sleeps, project_dir) -> None:
    fake_engine.fail_on["start"] = EngineError("start container failed: port is already allocated", code="PORT_IN_USE")
    orchestrator = make_orchestrator(fake_engine, record_store, make_probe([200]), sleeps)

    with pytest.raises(EngineError):
        orchestrator.deploy_project("proj-start", str(project_dir), "user-1")

    assert orchestrator.registry.get_port("proj-start") is None
    assert orchestrator.registry.is_port_available(3001) is True
    removed = fake_engine.calls_named("remove")
    assert len(removed) == 1
    assert removed[0][1] is True
    assert fake_engine.containers == {}
    events = record_store.recent_events(project_id="proj-start", kind="deploy_failed")
    assert events[0]["meta"]["code"] == "PORT_IN_USE"
    preview_id = events[0]["meta"]["preview_id"]
    assert record_store.get_preview(preview_id)["status"] == "failed"


def test_deploy_create_failure_releases_port(fake_engine, record_store, make_probe, sleeps, project_dir) -> None:
    fake_engine.fail_on["create"] = EngineError("create container failed: no such image", code="IMAGE_NOT_FOUND")
    orchestrator = make_orchestrator(fake_engine, record_store, make_probe([200]), sleeps)

    with pytest.raises(EngineError):
        orchestrator.deploy_project("proj-create", str(project_dir), "user-1")

    assert orchestrator.registry.get_stats()["allocated"] == 0
    assert fake_engine.calls_named("remove") == []
    events = record_store.recent_events(project_id="proj-create", kind="deploy_failed")
    assert events[0]["meta"]["preview_id"] is None


def test_deploy_with_exhausted_pool_raises(fake_engine, record_store, make_probe, sleeps, project_dir) -> None:
    orchestrator = make_orchestrator(fake_engine, record_store, make_probe([]), sleeps, start=3001, end=3001)
    orchestrator.registry.allocate_port("holder")

    with pytest.raises(PoolExhausted):
        orchestrator.deploy_project("late", str(project_dir), "user-1")

    assert orchestrator.registry.get_port("holder") == 3001
    assert fake_engine.calls_named("create") == []


def test_stop_container_releases_everything(fake_engine, record_store, make_probe, sleeps, project_dir) -> None:
    orchestrator = make_orchestrator(fake_engine, record_store, make_probe([200]), sleeps)
    deployed = orchestrator.deploy_project("proj-stop", str(project_dir), "user-1")

    orchestrator.stop_container(deployed.preview_id, deployed.container_id, "proj-stop")

    assert fake_engine.calls_named("stop") == [(deployed.container_id, 10)]
    assert deployed.container_id not in fake_engine.containers
    assert orchestrator.registry.get_port("proj-stop") is None
    preview = record_store.get_preview(deployed.preview_id)
    assert preview["status"] == "stopped"
    assert preview["stopped_at"] is not None
    assert record_store.recent_events(project_id="proj-stop", kind="preview_stopped")


def test_stop_container_propagates_engine_errors(fake_engine, record_store, make_probe, sleeps) -> None:
    orchestrator = make_orchestrator(fake_engine, record_store, make_probe([]), sleeps)
    orchestrator.registry.allocate_port("proj-gone")

    with pytest.raises(EngineError):
        orchestrator.stop_container("preview-1", "missing-container", "proj-gone")

    assert orchestrator.registry.get_port("proj-gone") == 3001


def test_build_then_deploy(fake_engine, record_store, make_probe, sleeps, project_dir) -> None:
    orchestrator = make_orchestrator(fake_engine, record_store, make_probe([200]), sleeps)

    build = orchestrator.build_project("proj-flow", str(project_dir), "user-1")
    assert build.success is True
    deployed = orchestrator.deploy_project("proj-flow", str(project_dir), "user-1", build.build_id)

    preview = record_store.get_preview(deployed.preview_id)
    assert preview["build_id"] == build.build_id
    assert record_store.get_active_preview("proj-flow")["id"] == deployed.preview_id


def test_startup_reconciles_running_runners(fake_engine, record_store, make_probe, sleeps) -> None:
    orchestrator = make_orchestrator(fake_engine, record_store, make_probe([]), sleeps)
    stale = fake_engine.create_container(image="x", labels={})
    stale.status = "exited"
    fake_engine.runner_ports = {"proj-live": 3002, "proj-outside": 9000}

    summary = orchestrator.startup()

    assert summary == {"network_created": True, "removed_containers": 1, "adopted_ports": 1}
    assert orchestrator.registry.get_port("proj-live") == 3002
    assert orchestrator.registry.allocate_port("proj-new") == 3001
    assert orchestrator.registry.allocate_port("proj-next") == 3003


def test_preview_host_uses_project_prefix() -> None:
    assert preview_host("0123456789", "example.com") == "proj-01234567.example.com"
