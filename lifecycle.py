from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from docker.models.containers import Container

from config import BUILD_MANIFEST, DOCKER_NETWORK, LABEL_BUILD_KEY, LABEL_PROJECT_KEY
from docker_ops import DockerEngine, describe_container, managed_labels, summarize_stats
from errors import ERROR_CODE_MAP, ManifestMissing, PreviewError, classify_error
from observability import get_logger, log_event
from persistence import RecordStore, emit_event
from runtime_metrics import record_counter_metric, record_timing_metric
from security_profiles import (
    BuilderProfile,
    RunnerProfile,
    default_builder_profile,
    default_runner_profile,
)
from store import BuildStatus, EventStatus

_LOGGER = get_logger("preview.lifecycle")

STOPPED_CONTAINER_STATUSES = ("exited", "dead")


def runner_container_name(project_id: str, now_ms: Optional[int] = None) -> str:
    stamp = int(now_ms if now_ms is not None else time.time() * 1000)
    return f"preview-{str(project_id)[:8]}-{stamp}"


@dataclass
class BuildResult:
    success: bool
    build_id: str
    logs: str = ""
    error: Optional[str] = None
    code: Optional[str] = None
    exit_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ContainerLifecycleManager:
    """Creates, runs and tears down builder and runner containers.

    Build and preview records are advanced through ``store`` as each step
    completes; audit events are best-effort.
    """

    def __init__(
        self,
        engine: DockerEngine,
        store: RecordStore,
        *,
        builder_profile: Optional[BuilderProfile] = None,
        runner_profile: Optional[RunnerProfile] = None,
        manifest_name: str = BUILD_MANIFEST,
        network_name: str = DOCKER_NETWORK,
    ) -> None:
        self.engine = engine
        self.store = store
        self.builder_profile = builder_profile or default_builder_profile()
        self.runner_profile = runner_profile or default_runner_profile()
        self.manifest_name = manifest_name
        self.network_name = network_name

    # build

    def run_build(self, project_id: str, project_path: str, user_id: str) -> BuildResult:
        build = self.store.create_build(project_id=project_id, user_id=user_id)
        build_id = build["id"]
        started = time.monotonic()
        log_event(_LOGGER, logging.INFO, "build.started", project_id=project_id, build_id=build_id)
        emit_event(
            self.store,
            _LOGGER,
            user_id=user_id,
            project_id=project_id,
            kind="build_started",
            status=EventStatus.INFO,
            message="Build started",
            meta={"build_id": build_id},
        )
        self.store.update_build_status(build_id, BuildStatus.RUNNING)

        try:
            self._require_manifest(project_path)
        except ManifestMissing as exc:
            message = str(exc)
            self.store.update_build_status(build_id, BuildStatus.FAILED, error_message=message)
            self._build_failed(project_id, user_id, build_id, message, code=exc.code)
            return BuildResult(success=False, build_id=build_id, error=message, code=exc.code)

        container: Optional[Container] = None
        discard_on_error = True
        try:
            labels = managed_labels("builder", **{LABEL_PROJECT_KEY: project_id, LABEL_BUILD_KEY: build_id})
            container = self.engine.create_container(
                **self.builder_profile.to_create_kwargs(str(project_path), labels)
            )
            self.store.update_build_status(build_id, BuildStatus.RUNNING, builder_container_id=container.id)
            log_event(
                _LOGGER,
                logging.INFO,
                "build.container.created",
                project_id=project_id,
                build_id=build_id,
                container_id=container.id,
            )
            # From here on the engine adapter owns removal of the builder.
            discard_on_error = not self.builder_profile.remove_after_exit
            exit_code, logs = self.engine.run_to_completion(
                container, remove=self.builder_profile.remove_after_exit
            )
        except Exception as exc:
            code, message = classify_error(exc)
            log_event(
                _LOGGER,
                logging.ERROR,
                "build.error",
                project_id=project_id,
                build_id=build_id,
                code=code,
                error=message,
            )
            if container is not None and discard_on_error:
                self._discard_container(container, reason="build_error")
            try:
                self.store.update_build_status(build_id, BuildStatus.FAILED, error_message=message)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("failed to mark build %s as failed", build_id)
            self._build_failed(project_id, user_id, build_id, message, code=code)
            raise

        duration_ms = (time.monotonic() - started) * 1000
        record_timing_metric(name="build.duration_ms", duration_ms=duration_ms)
        if exit_code == 0:
            self.store.update_build_status(build_id, BuildStatus.SUCCEEDED, build_logs=logs)
            record_counter_metric(name="build.succeeded")
            log_event(
                _LOGGER,
                logging.INFO,
                "build.succeeded",
                project_id=project_id,
                build_id=build_id,
                duration_ms=int(duration_ms),
            )
            emit_event(
                self.store,
                _LOGGER,
                user_id=user_id,
                project_id=project_id,
                kind="build_succeeded",
                status=EventStatus.SUCCESS,
                message="Build completed successfully",
                meta={"build_id": build_id},
            )
            return BuildResult(success=True, build_id=build_id, logs=logs, exit_code=0)

        message = f"Build failed with exit code {exit_code}"
        self.store.update_build_status(build_id, BuildStatus.FAILED, error_message=message, build_logs=logs)
        self._build_failed(project_id, user_id, build_id, message, code="BUILD_EXIT_NONZERO", exit_code=exit_code)
        return BuildResult(
            success=False,
            build_id=build_id,
            logs=logs,
            error=message,
            code="BUILD_EXIT_NONZERO",
            exit_code=exit_code,
        )

    def _require_manifest(self, project_path: str) -> None:
        manifest = os.path.join(str(project_path), self.manifest_name)
        if not os.path.isfile(manifest):
            raise ManifestMissing(ERROR_CODE_MAP["MANIFEST_MISSING"]["message"], manifest=manifest)

    def _build_failed(
        self,
        project_id: str,
        user_id: str,
        build_id: str,
        message: str,
        *,
        code: str,
        exit_code: Optional[int] = None,
    ) -> None:
        record_counter_metric(name="build.failed")
        log_event(
            _LOGGER,
            logging.WARNING,
            "build.failed",
            project_id=project_id,
            build_id=build_id,
            code=code,
            exit_code=exit_code,
            error=message,
        )
        meta: Dict[str, Any] = {"build_id": build_id, "code": code}
        if exit_code is not None:
            meta["exit_code"] = exit_code
        emit_event(
            self.store,
            _LOGGER,
            user_id=user_id,
            project_id=project_id,
            kind="build_failed",
            status=EventStatus.FAILURE,
            message=message,
            meta=meta,
        )

    def _discard_container(self, container: Container, *, reason: str) -> None:
        try:
            self.engine.remove(container, force=True)
        except PreviewError as exc:
            log_event(
                _LOGGER,
                logging.WARNING,
                "container.discard.failed",
                container_id=container.id,
                reason=reason,
                code=exc.code,
                error=str(exc),
            )

    # runner

    def create_runner(
        self,
        project_id: str,
        project_path: str,
        host_port: int,
        *,
        name: str,
        build_id: Optional[str] = None,
    ) -> Container:
        labels = managed_labels("runner", **{LABEL_PROJECT_KEY: project_id, LABEL_BUILD_KEY: build_id})
        container = self.engine.create_container(
            **self.runner_profile.to_create_kwargs(str(project_path), host_port, name, labels)
        )
        log_event(
            _LOGGER,
            logging.INFO,
            "runner.created",
            project_id=project_id,
            container_id=container.id,
            container_name=name,
            port=host_port,
        )
        return container

    def start_runner(self, container: Container) -> None:
        self.engine.start(container)
        log_event(_LOGGER, logging.INFO, "runner.started", container_id=container.id)

    def stop_runner(self, container: Container, *, timeout: int) -> None:
        self.engine.stop(container, timeout=timeout)
        self.engine.remove(container)
        log_event(_LOGGER, logging.INFO, "runner.removed", container_id=container.id)

    def stop_runner_by_id(self, container_id: str, *, timeout: int) -> None:
        self.stop_runner(self.engine.get_container(container_id), timeout=timeout)

    def remove_runner(self, container: Container) -> None:
        self.engine.remove(container, force=True)
        log_event(_LOGGER, logging.INFO, "runner.removed", container_id=container.id, forced=True)

    @property
    def runner_memory_limit_mb(self) -> int:
        return int(self.runner_profile.mem_limit // (1024 * 1024))

    @property
    def runner_cpu_limit(self) -> float:
        return self.runner_profile.nano_cpus / 1e9

    # housekeeping

    def cleanup_stopped_containers(self) -> int:
        containers = self.engine.list_managed(statuses=STOPPED_CONTAINER_STATUSES)
        for container in containers:
            try:
                self.engine.remove(container)
            except PreviewError as exc:
                log_event(
                    _LOGGER,
                    logging.WARNING,
                    "container.cleanup.failed",
                    container_id=container.id,
                    code=exc.code,
                    error=str(exc),
                )
        if containers:
            log_event(_LOGGER, logging.INFO, "container.cleanup.completed", count=len(containers))
        return len(containers)

    def list_containers(self) -> List[Dict[str, Any]]:
        return [describe_container(item) for item in self.engine.list_managed(include_stopped=True)]

    def get_container_logs(self, container_id: str, tail: int = 100) -> str:
        return self.engine.container_logs(container_id, tail=tail)

    def get_container_stats(self, container_id: str) -> Dict[str, int]:
        return summarize_stats(self.engine.container_stats(container_id) or {})

    def running_runner_ports(self) -> Dict[str, int]:
        return self.engine.running_runner_ports(self.runner_profile.container_port)

    def engine_health(self) -> Dict[str, Any]:
        try:
            info = self.engine.ping_info() or {}
        except Exception as exc:  # noqa: BLE001
            log_event(_LOGGER, logging.ERROR, "docker.health.failed", error=str(exc))
            return {"healthy": False, "error": str(exc)}
        return {
            "healthy": True,
            "version": info.get("ServerVersion"),
            "containers": int(info.get("Containers") or 0),
            "containers_running": int(info.get("ContainersRunning") or 0),
            "containers_paused": int(info.get("ContainersPaused") or 0),
            "containers_stopped": int(info.get("ContainersStopped") or 0),
            "images": int(info.get("Images") or 0),
        }

    def initialize_network(self) -> bool:
        created = self.engine.ensure_network(self.network_name, managed_labels("network"))
        log_event(
            _LOGGER,
            logging.INFO,
            "docker.network.created" if created else "docker.network.exists",
            network=self.network_name,
        )
        return created
