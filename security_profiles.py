"""Security profiles for the two container phases.

The builder runs untrusted install/build steps, so it gets no network and a
hard resource ceiling but may write to the project tree. The runner serves
the artifact to the outside world and therefore runs as a fixed non-root
user on a read-only root filesystem with the project mounted read-only.

Profiles are plain frozen dataclasses; ``to_create_kwargs`` renders them to
the keyword arguments accepted by ``docker.models.containers.ContainerCollection.create``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from config import (
    BUILDER_COMMAND,
    BUILDER_CPU_QUOTA,
    BUILDER_IMAGE,
    BUILDER_MEMORY_BYTES,
    DEFAULT_CONTAINER_CPU,
    DEFAULT_CONTAINER_MEMORY,
    DOCKER_NETWORK,
    RUNNER_COMMAND,
    RUNNER_CONTAINER_PORT,
    RUNNER_IMAGE,
    RUNNER_RESTART_MAX_RETRIES,
    RUNNER_TMPFS_OPTIONS,
    RUNNER_USER,
)

_MEMORY_UNITS = {
    "k": 1024,
    "m": 1024 * 1024,
    "g": 1024 * 1024 * 1024,
}
_MEMORY_PATTERN = re.compile(r"^(\d+)([kmg])$", re.IGNORECASE)

CPU_PERIOD_US = 100_000


def parse_memory_limit(limit: str) -> int:
    """Convert ``256m`` / ``1g`` style limits to bytes."""
    match = _MEMORY_PATTERN.match(str(limit or "").strip())
    if not match:
        raise ValueError(f"Invalid memory limit format: {limit}")
    return int(match.group(1)) * _MEMORY_UNITS[match.group(2).lower()]


@dataclass(frozen=True)
class ProjectMount:
    target: str
    mode: str

    @property
    def writable(self) -> bool:
        return self.mode == "rw"

    def as_volume(self, project_path: str) -> Dict[str, Dict[str, str]]:
        return {str(project_path): {"bind": self.target, "mode": self.mode}}


@dataclass(frozen=True)
class BuilderProfile:
    image: str
    command: str
    mount: ProjectMount = ProjectMount(target="/workspace", mode="rw")
    network_mode: str = "none"
    cap_drop: Tuple[str, ...] = ("ALL",)
    security_opt: Tuple[str, ...] = ("no-new-privileges",)
    mem_limit: int = 512 * 1024 * 1024
    cpu_period: int = CPU_PERIOD_US
    cpu_quota: int = 50_000
    read_only_rootfs: bool = False
    remove_after_exit: bool = True

    def to_create_kwargs(self, project_path: str, labels: Dict[str, str]) -> Dict[str, Any]:
        return {
            "image": self.image,
            "command": ["sh", "-c", self.command],
            "volumes": self.mount.as_volume(project_path),
            "network_mode": self.network_mode,
            "cap_drop": list(self.cap_drop),
            "security_opt": list(self.security_opt),
            "mem_limit": self.mem_limit,
            "cpu_period": self.cpu_period,
            "cpu_quota": self.cpu_quota,
            "read_only": self.read_only_rootfs,
            # Removed by the engine adapter after exit; auto-remove would race the wait.
            "auto_remove": False,
            "labels": dict(labels),
        }


@dataclass(frozen=True)
class RunnerProfile:
    image: str
    command: str
    user: str = "1000:1000"
    mount: ProjectMount = ProjectMount(target="/app", mode="ro")
    container_port: int = 3000
    network: Optional[str] = None
    read_only_rootfs: bool = True
    tmpfs: Dict[str, str] = field(default_factory=lambda: {"/tmp": "rw,noexec,nosuid,size=100m"})
    cap_drop: Tuple[str, ...] = ("ALL",)
    # No seccomp= entry: the engine's default seccomp profile applies.
    security_opt: Tuple[str, ...] = ("no-new-privileges",)
    mem_limit: int = 256 * 1024 * 1024
    nano_cpus: int = 250_000_000
    restart_max_retries: int = 3

    @property
    def port_key(self) -> str:
        return f"{self.container_port}/tcp"

    def to_create_kwargs(
        self,
        project_path: str,
        host_port: int,
        name: str,
        labels: Dict[str, str],
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "image": self.image,
            "command": ["sh", "-c", self.command],
            "name": name,
            "user": self.user,
            "working_dir": self.mount.target,
            "volumes": self.mount.as_volume(project_path),
            "ports": {self.port_key: int(host_port)},
            "read_only": self.read_only_rootfs,
            "tmpfs": dict(self.tmpfs),
            "cap_drop": list(self.cap_drop),
            "security_opt": list(self.security_opt),
            "mem_limit": self.mem_limit,
            "nano_cpus": self.nano_cpus,
            "restart_policy": {"Name": "on-failure", "MaximumRetryCount": self.restart_max_retries},
            "labels": dict(labels),
        }
        if self.network:
            kwargs["network"] = self.network
        return kwargs


def default_builder_profile() -> BuilderProfile:
    return BuilderProfile(
        image=BUILDER_IMAGE,
        command=BUILDER_COMMAND,
        mem_limit=BUILDER_MEMORY_BYTES,
        cpu_quota=BUILDER_CPU_QUOTA,
    )


def default_runner_profile() -> RunnerProfile:
    return RunnerProfile(
        image=RUNNER_IMAGE,
        command=RUNNER_COMMAND,
        user=RUNNER_USER,
        container_port=RUNNER_CONTAINER_PORT,
        network=DOCKER_NETWORK,
        tmpfs={"/tmp": RUNNER_TMPFS_OPTIONS},
        mem_limit=parse_memory_limit(DEFAULT_CONTAINER_MEMORY),
        nano_cpus=int(DEFAULT_CONTAINER_CPU * 1e9),
        restart_max_retries=RUNNER_RESTART_MAX_RETRIES,
    )
