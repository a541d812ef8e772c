"""Build, deploy and stop previews.

``PreviewOrchestrator`` composes the port registry and the container
lifecycle manager. A deploy either ends with a healthy preview or with every
resource it acquired handed back: the runner container is removed, the port
returns to the pool and the preview record is marked failed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from docker.models.containers import Container

from config import (
    DEPLOY_HEALTH_INTERVAL_MS,
    DEPLOY_HEALTH_MAX_ATTEMPTS,
    PREVIEW_URL_HOST,
    PUBLIC_DOMAIN,
    RUNNER_STOP_GRACE_SECONDS,
)
from docker_ops import DockerEngine
from errors import HealthCheckFailed, classify_error
from lifecycle import BuildResult, ContainerLifecycleManager, runner_container_name
from observability import get_logger, log_event
from persistence import RecordStore, SqlRecordStore, emit_event
from port_registry import PortRegistry
from runtime_metrics import record_counter_metric, record_timing_metric
from store import EventStatus, PreviewStatus, init_store_db
from store.db import SessionFactory

_LOGGER = get_logger("preview.orchestrator")


@dataclass
class DeployResult:
    success: bool
    preview_id: str
    container_id: str
    container_name: str
    port: int
    host: str
    url: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def preview_host(project_id: str, domain: str = PUBLIC_DOMAIN) -> str:
    return f"proj-{str(project_id)[:8]}.{domain}"


class PreviewOrchestrator:
    def __init__(
        self,
        registry: PortRegistry,
        lifecycle: ContainerLifecycleManager,
        store: RecordStore,
        *,
        public_domain: str = PUBLIC_DOMAIN,
        url_host: str = PREVIEW_URL_HOST,
        health_max_attempts: int = DEPLOY_HEALTH_MAX_ATTEMPTS,
        health_interval_ms: int = DEPLOY_HEALTH_INTERVAL_MS,
        stop_grace_seconds: int = RUNNER_STOP_GRACE_SECONDS,
    ) -> None:
        self.registry = registry
        self.lifecycle = lifecycle
        self.store = store
        self.public_domain = public_domain
        self.url_host = url_host
        self.health_max_attempts = health_max_attempts
        self.health_interval_ms = health_interval_ms
        self.stop_grace_seconds = stop_grace_seconds

    def build_project(self, project_id: str, project_path: str, user_id: str) -> BuildResult:
        return self.lifecycle.run_build(project_id, project_path, user_id)

    def deploy_project(
        self,
        project_id: str,
        project_path: str,
        user_id: str,
        build_id: Optional[str] = None,
    ) -> DeployResult:
        started = time.monotonic()
        port: Optional[int] = None
        container: Optional[Container] = None
        preview_id: Optional[str] = None
        log_event(_LOGGER, logging.INFO, "deploy.started", project_id=project_id, build_id=build_id)
        try:
            port = self.registry.allocate_port(project_id)
            name = runner_container_name(project_id)
            host = preview_host(project_id, self.public_domain)
            container = self.lifecycle.create_runner(
                project_id, project_path, port, name=name, build_id=build_id
            )
            preview = self.store.create_preview(
                project_id=project_id,
                build_id=build_id,
                user_id=user_id,
                container_id=container.id,
                container_name=name,
                host=host,
                port=port,
                image_id=self.lifecycle.runner_profile.image,
                memory_limit_mb=self.lifecycle.runner_memory_limit_mb,
                cpu_limit=self.lifecycle.runner_cpu_limit,
            )
            preview_id = preview["id"]
            self.lifecycle.start_runner(container)

            result = self.registry.health_check(
                port,
                max_attempts=self.health_max_attempts,
                interval_ms=self.health_interval_ms,
            )
            if not result.healthy:
                raise HealthCheckFailed(
                    "Container failed health check",
                    preview_id=preview_id,
                    port=port,
                    attempts=result.attempts,
                )
            self.store.update_preview_status(preview_id, PreviewStatus.HEALTHY)
        except Exception as exc:
            self._compensate_deploy(
                exc,
                project_id=project_id,
                user_id=user_id,
                port=port,
                container=container,
                preview_id=preview_id,
            )
            raise

        url = f"http://{self.url_host}:{port}"
        duration_ms = (time.monotonic() - started) * 1000
        record_counter_metric(name="deploy.succeeded")
        record_timing_metric(name="deploy.duration_ms", duration_ms=duration_ms)
        log_event(
            _LOGGER,
            logging.INFO,
            "deploy.succeeded",
            project_id=project_id,
            preview_id=preview_id,
            container_id=container.id,
            port=port,
            duration_ms=int(duration_ms),
        )
        emit_event(
            self.store,
            _LOGGER,
            user_id=user_id,
            project_id=project_id,
            kind="deploy_succeeded",
            status=EventStatus.SUCCESS,
            message=f"Preview deployed at {url}",
            meta={"preview_id": preview_id, "container_id": container.id, "port": port, "url": url},
        )
        return DeployResult(
            success=True,
            preview_id=preview_id,
            container_id=container.id,
            container_name=name,
            port=port,
            host=host,
            url=url,
        )

    def _compensate_deploy(
        self,
        exc: BaseException,
        *,
        project_id: str,
        user_id: str,
        port: Optional[int],
        container: Optional[Container],
        preview_id: Optional[str],
    ) -> None:
        code, message = classify_error(exc)
        log_event(
            _LOGGER,
            logging.ERROR,
            "deploy.failed",
            project_id=project_id,
            preview_id=preview_id,
            port=port,
            code=code,
            error=message,
        )
        record_counter_metric(name="deploy.failed")

        if container is not None:
            try:
                if isinstance(exc, HealthCheckFailed):
                    self.lifecycle.stop_runner(container, timeout=self.stop_grace_seconds)
                else:
                    self.lifecycle.remove_runner(container)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("deploy cleanup: failed to remove container %s", container.id)
                if isinstance(exc, HealthCheckFailed):
                    self._force_remove(container)

        if preview_id is not None:
            try:
                self.store.update_preview_status(preview_id, PreviewStatus.FAILED)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("deploy cleanup: failed to mark preview %s as failed", preview_id)

        emit_event(
            self.store,
            _LOGGER,
            user_id=user_id,
            project_id=project_id,
            kind="deploy_failed",
            status=EventStatus.FAILURE,
            message=message,
            meta={"code": code, "preview_id": preview_id, "port": port},
        )

        if port is not None:
            try:
                self.registry.release_port(project_id)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("deploy cleanup: failed to release port %s", port)

    def _force_remove(self, container: Container) -> None:
        try:
            self.lifecycle.remove_runner(container)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("deploy cleanup: forced removal of %s failed", container.id)

    def stop_container(self, preview_id: str, container_id: str, project_id: str) -> None:
        try:
            self.lifecycle.stop_runner_by_id(container_id, timeout=self.stop_grace_seconds)
        except Exception as exc:
            code, message = classify_error(exc)
            log_event(
                _LOGGER,
                logging.ERROR,
                "preview.stop.failed",
                project_id=project_id,
                preview_id=preview_id,
                container_id=container_id,
                code=code,
                error=message,
            )
            raise
        self.registry.release_port(project_id)
        self.store.stop_preview(preview_id)
        log_event(
            _LOGGER,
            logging.INFO,
            "preview.stopped",
            project_id=project_id,
            preview_id=preview_id,
            container_id=container_id,
        )
        emit_event(
            self.store,
            _LOGGER,
            project_id=project_id,
            kind="preview_stopped",
            status=EventStatus.INFO,
            message="Preview stopped",
            meta={"preview_id": preview_id, "container_id": container_id},
        )

    def startup(self) -> Dict[str, Any]:
        """Prepare the engine and rebuild the port pool from running runners."""
        network_created = self.lifecycle.initialize_network()
        removed = self.lifecycle.cleanup_stopped_containers()
        adopted = self.registry.reconcile(self.lifecycle.running_runner_ports())
        summary = {"network_created": network_created, "removed_containers": removed, "adopted_ports": adopted}
        log_event(_LOGGER, logging.INFO, "orchestrator.startup.completed", **summary)
        return summary


def build_orchestrator(
    *,
    session_factory: SessionFactory | None = None,
    engine: DockerEngine | None = None,
    registry: PortRegistry | None = None,
    create_tables: bool = True,
) -> PreviewOrchestrator:
    if create_tables and session_factory is None:
        init_store_db()
    store = SqlRecordStore(session_factory)
    registry = registry or PortRegistry(event_store=store)
    lifecycle = ContainerLifecycleManager(engine or DockerEngine(), store)
    return PreviewOrchestrator(registry, lifecycle, store)
