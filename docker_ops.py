from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

import docker
from docker.models.containers import Container

from config import (
    DOCKER_SOCKET,
    LABEL_APP_KEY,
    LABEL_APP_VALUE,
    LABEL_PROJECT_KEY,
    LABEL_PURPOSE_KEY,
)
from errors import EngineError, classify_error
from observability import get_logger, log_event

_LOGGER = get_logger("preview.docker")

T = TypeVar("T")


def managed_labels(purpose: str, **extra: Optional[str]) -> Dict[str, str]:
    labels = {LABEL_APP_KEY: LABEL_APP_VALUE, LABEL_PURPOSE_KEY: purpose}
    for key, value in extra.items():
        if value is not None:
            labels[key] = str(value)
    return labels


def managed_label_filter() -> List[str]:
    return [f"{LABEL_APP_KEY}={LABEL_APP_VALUE}"]


def create_docker_client(socket_path: str = DOCKER_SOCKET) -> docker.DockerClient:
    base_url = socket_path if "://" in socket_path else f"unix://{socket_path}"
    return docker.DockerClient(base_url=base_url)


def decode_log_output(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        return raw
    return "".join(decode_log_output(chunk) for chunk in raw)


class DockerEngine:
    """Thin adapter over the docker SDK.

    Every SDK failure is re-raised as ``EngineError`` carrying the action that
    failed, so callers only have to distinguish success from failure.
    """

    def __init__(
        self,
        client: Optional[docker.DockerClient] = None,
        *,
        socket_path: str = DOCKER_SOCKET,
        client_factory: Callable[[str], docker.DockerClient] = create_docker_client,
    ) -> None:
        self._client = client
        self._socket_path = socket_path
        self._client_factory = client_factory

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = self._call("connect", self._client_factory, self._socket_path)
        return self._client

    def _call(self, action: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return fn(*args, **kwargs)
        except docker.errors.DockerException as exc:
            code, message = classify_error(exc)
            log_event(_LOGGER, logging.WARNING, "docker.call.failed", action=action, code=code, error=message)
            raise EngineError(f"{action} failed: {message}", code=code, action=action) from exc

    def create_container(self, **kwargs: Any) -> Container:
        return self._call("create container", self.client.containers.create, **kwargs)

    def get_container(self, container_id: str) -> Container:
        return self._call("get container", self.client.containers.get, container_id)

    def start(self, container: Container) -> None:
        self._call("start container", container.start)

    def run_to_completion(self, container: Container, *, remove: bool = True) -> Tuple[int, str]:
        """Start ``container``, stream its output until exit and return ``(exit_code, logs)``.

        The container must not be created with engine-side auto-remove: it has
        to outlive its exit so the wait and the log stream can still reach it.
        With ``remove`` it is force-removed afterwards, whatever the outcome.
        """
        chunks: List[str] = []
        try:
            self.start(container)
            try:
                stream = container.logs(stream=True, follow=True, stdout=True, stderr=True, timestamps=True)
                for chunk in stream:
                    chunks.append(decode_log_output(chunk))
            except docker.errors.NotFound:
                log_event(_LOGGER, logging.WARNING, "docker.logs.unavailable", container_id=container.id)
            except docker.errors.DockerException as exc:
                log_event(
                    _LOGGER,
                    logging.WARNING,
                    "docker.logs.stream_failed",
                    container_id=container.id,
                    error=str(exc),
                )
            result = self._call("wait container", container.wait, condition="not-running")
        finally:
            if remove:
                self._remove_quietly(container)
        exit_code = int((result or {}).get("StatusCode", -1))
        return exit_code, "".join(chunks)

    def _remove_quietly(self, container: Container) -> None:
        try:
            self.remove(container, force=True)
        except EngineError as exc:
            log_event(
                _LOGGER,
                logging.WARNING,
                "docker.remove.failed",
                container_id=container.id,
                code=exc.code,
                error=str(exc),
            )

    def stop(self, container: Container, timeout: int = 10) -> None:
        self._call("stop container", container.stop, timeout=timeout)

    def remove(self, container: Container, force: bool = False) -> None:
        self._call("remove container", container.remove, force=force)

    def list_managed(
        self,
        *,
        include_stopped: bool = False,
        statuses: Optional[Iterable[str]] = None,
        purpose: Optional[str] = None,
    ) -> List[Container]:
        labels = managed_label_filter()
        if purpose:
            labels.append(f"{LABEL_PURPOSE_KEY}={purpose}")
        filters: Dict[str, Any] = {"label": labels}
        if statuses:
            filters["status"] = list(statuses)
        return self._call(
            "list containers",
            self.client.containers.list,
            all=include_stopped or bool(statuses),
            filters=filters,
        )

    def container_logs(self, container_id: str, tail: int = 100) -> str:
        container = self.get_container(container_id)
        raw = self._call(
            "read container logs",
            container.logs,
            stdout=True,
            stderr=True,
            timestamps=True,
            tail=tail,
        )
        return decode_log_output(raw)

    def container_stats(self, container_id: str) -> Dict[str, Any]:
        container = self.get_container(container_id)
        return self._call("read container stats", container.stats, stream=False)

    def ensure_network(self, name: str, labels: Dict[str, str]) -> bool:
        existing = self._call("list networks", self.client.networks.list, names=[name])
        if any(getattr(network, "name", None) == name for network in existing):
            return False
        self._call(
            "create network",
            self.client.networks.create,
            name,
            driver="bridge",
            internal=False,
            enable_ipv6=False,
            labels=labels,
        )
        return True

    def ping_info(self) -> Dict[str, Any]:
        self._call("ping daemon", self.client.ping)
        return self._call("read daemon info", self.client.info)

    def running_runner_ports(self, container_port: int) -> Dict[str, int]:
        """Map project id -> bound host port for every running runner container."""
        bindings: Dict[str, int] = {}
        for container in self.list_managed(purpose="runner"):
            labels = container.labels or {}
            project_id = labels.get(LABEL_PROJECT_KEY)
            if not project_id:
                continue
            ports = (container.attrs.get("NetworkSettings") or {}).get("Ports") or {}
            entries = ports.get(f"{container_port}/tcp") or []
            for entry in entries:
                host_port = str((entry or {}).get("HostPort") or "").strip()
                if host_port.isdigit():
                    bindings[project_id] = int(host_port)
                    break
        return bindings


def describe_container(container: Container) -> Dict[str, Any]:
    attrs = container.attrs or {}
    config = attrs.get("Config") or {}
    state = attrs.get("State") or {}
    network = attrs.get("NetworkSettings") or {}
    return {
        "id": container.id,
        "name": str(container.name or attrs.get("Name") or "").lstrip("/"),
        "image": config.get("Image") or attrs.get("Image"),
        "state": state.get("Status") or container.status,
        "status": container.status,
        "ports": network.get("Ports") or {},
        "labels": container.labels or {},
        "created": attrs.get("Created"),
    }


def summarize_stats(stats: Dict[str, Any]) -> Dict[str, int]:
    memory = stats.get("memory_stats") or {}
    cpu = (stats.get("cpu_stats") or {}).get("cpu_usage") or {}
    eth0 = (stats.get("networks") or {}).get("eth0") or {}
    return {
        "memory_usage": int(memory.get("usage") or 0),
        "memory_limit": int(memory.get("limit") or 0),
        "cpu_usage": int(cpu.get("total_usage") or 0),
        "network_rx": int(eth0.get("rx_bytes") or 0),
        "network_tx": int(eth0.get("tx_bytes") or 0),
    }
