from typing import Any, Dict

import docker

ERROR_CODE_MAP: Dict[str, Dict[str, str]] = {
    "PORT_POOL_EXHAUSTED": {
        "message": "No free preview ports",
        "hint": "Stop idle previews, run the stale port sweep, or widen PORT_RANGE_START/PORT_RANGE_END.",
    },
    "PORT_IN_USE": {
        "message": "Host port already bound",
        "hint": "Another process holds the port; stop it or let the stale sweep reclaim the allocation.",
    },
    "MANIFEST_MISSING": {
        "message": "package manifest not found",
        "hint": "Add the build manifest (BUILD_MANIFEST, package.json by default) to the project root.",
    },
    "BUILD_EXIT_NONZERO": {
        "message": "Builder exited with a non-zero code",
        "hint": "Inspect the captured build logs for the failing install or build step.",
    },
    "DOCKER_API_ERROR": {
        "message": "Container engine request failed",
        "hint": "Check that the Docker daemon is reachable at DOCKER_SOCKET and has free disk space.",
    },
    "CONTAINER_NOT_FOUND": {
        "message": "Container no longer exists",
        "hint": "The container was removed outside the orchestrator; refresh the preview state.",
    },
    "IMAGE_NOT_FOUND": {
        "message": "Container image not available",
        "hint": "Pull BUILDER_IMAGE/RUNNER_IMAGE on the host or check registry access.",
    },
    "HEALTH_CHECK_FAILED": {
        "message": "Preview did not become healthy",
        "hint": "Make sure the app listens on 0.0.0.0 and on the runner container port.",
    },
    "TIMEOUT_RUN": {
        "message": "Preview startup timed out",
        "hint": "Check application startup time and the health check budget.",
    },
    "UNEXPECTED_ERROR": {
        "message": "Unexpected error",
        "hint": "See the structured logs for details.",
    },
}


class PreviewError(Exception):
    code = "UNEXPECTED_ERROR"

    def __init__(self, message: str, code: str | None = None, **context: Any) -> None:
        super().__init__(message)
        if code:
            self.code = code
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self), "context": dict(self.context)}


class PoolExhausted(PreviewError):
    code = "PORT_POOL_EXHAUSTED"


class ManifestMissing(PreviewError):
    code = "MANIFEST_MISSING"


class EngineError(PreviewError):
    code = "DOCKER_API_ERROR"


class HealthCheckFailed(PreviewError):
    code = "HEALTH_CHECK_FAILED"


def explain_error(code: str | None) -> Dict[str, str] | None:
    if not code:
        return None
    return ERROR_CODE_MAP.get(code)


def _is_port_in_use_error(message: str) -> bool:
    lowered = message.lower()
    return any(
        pattern in lowered
        for pattern in (
            "port is already allocated",
            "address already in use",
            "bind for 0.0.0.0",
        )
    )


def classify_error(exc: BaseException) -> tuple[str, str]:
    message = str(exc)
    if isinstance(exc, PreviewError):
        return exc.code, message
    if isinstance(exc, docker.errors.ImageNotFound):
        return "IMAGE_NOT_FOUND", message
    if isinstance(exc, docker.errors.NotFound):
        return "CONTAINER_NOT_FOUND", message
    if isinstance(exc, docker.errors.APIError):
        if _is_port_in_use_error(message):
            return "PORT_IN_USE", message
        return "DOCKER_API_ERROR", message
    if isinstance(exc, docker.errors.DockerException):
        return "DOCKER_API_ERROR", message
    if isinstance(exc, TimeoutError) or "timed out" in message.lower():
        return "TIMEOUT_RUN", message
    return "UNEXPECTED_ERROR", message
