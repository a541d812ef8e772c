from __future__ import annotations

import itertools
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from errors import EngineError
from persistence import SqlRecordStore
from store import build_session_factory, init_store_db

_IDS = itertools.count(1)


class FakeContainer:
    def __init__(self, **create_kwargs: Any) -> None:
        self.id = f"c{next(_IDS):06d}"
        self.name = create_kwargs.get("name") or self.id
        self.labels = dict(create_kwargs.get("labels") or {})
        self.create_kwargs = create_kwargs
        self.status = "created"
        self.attrs: Dict[str, Any] = {
            "Config": {"Image": create_kwargs.get("image")},
            "State": {"Status": "created"},
            "NetworkSettings": {"Ports": {}},
            "Created": "2026-01-01T00:00:00Z",
        }


class FakeEngine:
    """In-memory stand-in for ``docker_ops.DockerEngine`` that records every call."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Any]] = []
        self.containers: Dict[str, FakeContainer] = {}
        self.build_exit: Tuple[int, str] = (0, "2026-01-01T00:00:00Z built\n")
        self.fail_on: Dict[str, Exception] = {}
        self.networks: set[str] = set()
        self.runner_ports: Dict[str, int] = {}
        self.info: Dict[str, Any] = {"ServerVersion": "27.0.1", "Containers": 2, "ContainersRunning": 1, "Images": 4}

    def _maybe_fail(self, action: str) -> None:
        exc = self.fail_on.get(action)
        if exc is not None:
            raise exc

    def calls_named(self, action: str) -> List[Any]:
        return [arg for name, arg in self.calls if name == action]

    def create_container(self, **kwargs: Any) -> FakeContainer:
        self.calls.append(("create", kwargs))
        self._maybe_fail("create")
        container = FakeContainer(**kwargs)
        self.containers[container.id] = container
        return container

    def get_container(self, container_id: str) -> FakeContainer:
        self.calls.append(("get", container_id))
        container = self.containers.get(container_id)
        if container is None:
            raise EngineError("get container failed: not found", code="CONTAINER_NOT_FOUND")
        return container

    def start(self, container: FakeContainer) -> None:
        self.calls.append(("start", container.id))
        self._maybe_fail("start")
        container.status = "running"

    def run_to_completion(self, container: FakeContainer, *, remove: bool = True) -> Tuple[int, str]:
        try:
            self.start(container)
            self.calls.append(("wait", container.id))
            self._maybe_fail("wait")
            container.status = "exited"
            return self.build_exit
        finally:
            if remove:
                self.calls.append(("remove", (container.id, True)))
                self.containers.pop(container.id, None)

    def stop(self, container: FakeContainer, timeout: int = 10) -> None:
        self.calls.append(("stop", (container.id, timeout)))
        self._maybe_fail("stop")
        container.status = "exited"

    def remove(self, container: FakeContainer, force: bool = False) -> None:
        self.calls.append(("remove", (container.id, force)))
        self._maybe_fail("remove")
        self.containers.pop(container.id, None)

    def list_managed(self, *, include_stopped: bool = False, statuses=None, purpose: Optional[str] = None):
        self.calls.append(("list", tuple(statuses or ())))
        items = list(self.containers.values())
        if statuses:
            items = [item for item in items if item.status in set(statuses)]
        elif not include_stopped:
            items = [item for item in items if item.status == "running"]
        return items

    def container_logs(self, container_id: str, tail: int = 100) -> str:
        self.calls.append(("logs", (container_id, tail)))
        return "2026-01-01T00:00:00Z listening on 3000\n"

    def container_stats(self, container_id: str) -> Dict[str, Any]:
        self.calls.append(("stats", container_id))
        return {
            "memory_stats": {"usage": 1024, "limit": 4096},
            "cpu_stats": {"cpu_usage": {"total_usage": 77}},
        }

    def ensure_network(self, name: str, labels: Dict[str, str]) -> bool:
        self.calls.append(("network", name))
        if name in self.networks:
            return False
        self.networks.add(name)
        return True

    def ping_info(self) -> Dict[str, Any]:
        self._maybe_fail("ping")
        return dict(self.info)

    def running_runner_ports(self, container_port: int) -> Dict[str, int]:
        return dict(self.runner_ports)


class ScriptedProbe:
    """Probe returning queued outcomes; an exception instance in the queue is raised."""

    def __init__(self, outcomes: List[Any], default: Any = 503) -> None:
        self.outcomes = list(outcomes)
        self.default = default
        self.urls: List[str] = []

    def __call__(self, url: str, timeout_seconds: float) -> int:
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture()
def record_store(tmp_path: Path):
    engine, session_factory = build_session_factory(f"sqlite+pysqlite:///{tmp_path / 'preview.db'}")
    init_store_db(engine)
    yield SqlRecordStore(session_factory)
    engine.dispose()


@pytest.fixture()
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture()
def sleeps() -> List[float]:
    return []


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    (path / "package.json").write_text('{"name": "demo", "scripts": {"build": "true"}}', encoding="utf-8")
    return path


@pytest.fixture()
def make_probe():
    return ScriptedProbe
