from __future__ import annotations

import docker

from errors import (
    ERROR_CODE_MAP,
    HealthCheckFailed,
    PoolExhausted,
    PreviewError,
    classify_error,
    explain_error,
)


def test_preview_errors_carry_code_and_context() -> None:
    exc = HealthCheckFailed("Container failed health check", preview_id="pv-1", port=3004, attempts=15, build_id=None)
    assert exc.to_dict() == {
        "code": "HEALTH_CHECK_FAILED",
        "message": "Container failed health check",
        "context": {"preview_id": "pv-1", "port": 3004, "attempts": 15},
    }
    assert PreviewError("x", code="TIMEOUT_RUN").code == "TIMEOUT_RUN"


def test_classify_error_maps_engine_failures() -> None:
    assert classify_error(PoolExhausted("empty"))[0] == "PORT_POOL_EXHAUSTED"
    assert classify_error(docker.errors.ImageNotFound("no image"))[0] == "IMAGE_NOT_FOUND"
    assert classify_error(docker.errors.NotFound("gone"))[0] == "CONTAINER_NOT_FOUND"
    assert classify_error(docker.errors.APIError("address already in use"))[0] == "PORT_IN_USE"
    assert classify_error(docker.errors.APIError("disk full"))[0] == "DOCKER_API_ERROR"
    assert classify_error(TimeoutError("read timed out"))[0] == "TIMEOUT_RUN"
    assert classify_error(ValueError("nope")) == ("UNEXPECTED_ERROR", "nope")


def test_every_code_is_explained() -> None:
    for code in ERROR_CODE_MAP:
        info = explain_error(code)
        assert info["message"]
        assert info["hint"]
    assert explain_error(None) is None
    assert explain_error("NOT_A_CODE") is None
