import logging
import threading
from typing import Any, Dict, Optional

from celery import Celery
from celery.signals import task_failure, worker_ready

from config import (
    CELERY_ALWAYS_EAGER,
    LOG_LEVEL,
    REDIS_DISABLED,
    REDIS_URL,
    STALE_PORT_SWEEP_SECONDS,
    WORKER_CONCURRENCY,
)
from errors import PreviewError
from observability import configure_json_logging, get_logger, log_event
from orchestrator import PreviewOrchestrator, build_orchestrator

configure_json_logging(level=LOG_LEVEL)
_LOGGER = get_logger("preview.worker")

_USE_REDIS = not (REDIS_DISABLED or CELERY_ALWAYS_EAGER)
_BROKER_URL = REDIS_URL if _USE_REDIS else "memory://"
_BACKEND_URL = REDIS_URL if _USE_REDIS else "cache+memory://"

celery_app = Celery("preview_orchestrator", broker=_BROKER_URL, backend=_BACKEND_URL)
if not _USE_REDIS:
    celery_app.conf.task_always_eager = True
    celery_app.conf.task_ignore_result = True
celery_app.conf.task_acks_late = True
# The port pool lives in this process; every task must see the same registry.
celery_app.conf.worker_pool = "threads"
celery_app.conf.worker_concurrency = WORKER_CONCURRENCY
celery_app.conf.worker_prefetch_multiplier = 1
celery_app.conf.beat_schedule = {
    "cleanup-stale-ports": {
        "task": "cleanup_stale_ports",
        "schedule": float(STALE_PORT_SWEEP_SECONDS),
    },
}

_ORCHESTRATOR: Optional[PreviewOrchestrator] = None
_ORCHESTRATOR_LOCK = threading.Lock()


def get_orchestrator() -> PreviewOrchestrator:
    global _ORCHESTRATOR
    with _ORCHESTRATOR_LOCK:
        if _ORCHESTRATOR is None:
            _ORCHESTRATOR = build_orchestrator()
        return _ORCHESTRATOR


def set_orchestrator(orchestrator: Optional[PreviewOrchestrator]) -> None:
    global _ORCHESTRATOR
    with _ORCHESTRATOR_LOCK:
        _ORCHESTRATOR = orchestrator


@worker_ready.connect  # type: ignore[misc]
def _reconcile_on_start(**_extras: Any) -> None:
    summary = get_orchestrator().startup()
    log_event(_LOGGER, logging.INFO, "worker.ready", **summary)


@task_failure.connect  # type: ignore[misc]
def _handle_task_failure(  # noqa: ANN001
    sender=None,
    task_id=None,
    exception=None,
    args=None,
    kwargs=None,
    einfo=None,  # noqa: ARG001
    **_extras,
) -> None:
    if sender is None or exception is None:
        return
    log_event(
        _LOGGER,
        logging.ERROR,
        "worker.task.failed",
        task=str(getattr(sender, "name", "unknown")),
        task_id=str(task_id or ""),
        task_args=args,
        task_kwargs=kwargs,
        error_type=type(exception).__name__,
        error=str(exception),
    )


def _failure_payload(exc: PreviewError) -> Dict[str, Any]:
    payload = exc.to_dict()
    payload["success"] = False
    return payload


@celery_app.task(name="build_project")
def build_project(project_id: str, project_path: str, user_id: str) -> Dict[str, Any]:
    try:
        result = get_orchestrator().build_project(project_id, project_path, user_id)
    except PreviewError as exc:
        return _failure_payload(exc)
    return result.to_dict()


@celery_app.task(name="deploy_project")
def deploy_project(
    project_id: str,
    project_path: str,
    user_id: str,
    build_id: Optional[str] = None,
) -> Dict[str, Any]:
    try:
        result = get_orchestrator().deploy_project(project_id, project_path, user_id, build_id)
    except PreviewError as exc:
        return _failure_payload(exc)
    return result.to_dict()


@celery_app.task(name="stop_preview")
def stop_preview(preview_id: str, container_id: str, project_id: str) -> Dict[str, Any]:
    try:
        get_orchestrator().stop_container(preview_id, container_id, project_id)
    except PreviewError as exc:
        return _failure_payload(exc)
    return {"success": True, "preview_id": preview_id}


@celery_app.task(name="cleanup_stale_ports")
def cleanup_stale_ports() -> Dict[str, Any]:
    released = get_orchestrator().registry.cleanup_stale_allocations()
    return {"released": released}


@celery_app.task(name="sweep_stopped_containers")
def sweep_stopped_containers() -> Dict[str, Any]:
    removed = get_orchestrator().lifecycle.cleanup_stopped_containers()
    return {"removed": removed}
