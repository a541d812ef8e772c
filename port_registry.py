"""Host port pool for preview runners.

Every port in ``[range_start, range_end]`` is either in the free pool or bound
to exactly one project; the forward (project -> port) and reverse
(port -> project) maps are only mutated together under ``self._lock``.

The pool lives in memory only. After a restart it starts fully free, which is
why the orchestrator feeds ``reconcile`` with the runners the engine still
reports as running.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import httpx

from config import (
    HEALTH_CHECK_HOST,
    HEALTH_CHECK_INTERVAL_MS,
    HEALTH_CHECK_MAX_ATTEMPTS,
    HEALTH_CHECK_TIMEOUT_MS,
    PORT_RANGE_END,
    PORT_RANGE_START,
    STALE_CHECK_INTERVAL_MS,
    STALE_CHECK_MAX_ATTEMPTS,
    STALE_CHECK_TIMEOUT_MS,
)
from errors import PoolExhausted
from observability import get_logger, log_event
from persistence import RecordStore, emit_event
from runtime_metrics import record_counter_metric, record_gauge_metric, record_timing_metric
from store import EventStatus

_LOGGER = get_logger("preview.ports")

MAX_BATCH_WORKERS = 16

Probe = Callable[[str, float], int]


# One HEAD request per liveness attempt; workers that outlive their deadline finish in the background.
_HEAD_POOL = ThreadPoolExecutor(max_workers=32, thread_name_prefix="health-head")


def _head_status(url: str, timeout_seconds: float) -> int:
    response = httpx.head(url, timeout=timeout_seconds, follow_redirects=False, trust_env=False)
    return response.status_code


def http_head_probe(url: str, timeout_seconds: float) -> int:
    """HEAD ``url`` and return its status code within ``timeout_seconds`` in total.

    httpx applies its timeout to each phase separately, so the whole request
    also runs against a wall-clock deadline. Redirects are reported, not followed.
    """
    future = _HEAD_POOL.submit(_head_status, url, timeout_seconds)
    try:
        return future.result(timeout=timeout_seconds)
    except FuturesTimeout as exc:
        future.cancel()
        raise httpx.TimeoutException(f"no response within {timeout_seconds:.3f}s") from exc


@dataclass
class HealthCheckResult:
    healthy: bool
    port: int
    attempt: Optional[int] = None
    attempts: Optional[int] = None
    status_code: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass
class BatchHealthReport:
    results: List[HealthCheckResult] = field(default_factory=list)

    @property
    def healthy(self) -> int:
        return sum(1 for item in self.results if item.healthy)

    @property
    def unhealthy(self) -> int:
        return sum(1 for item in self.results if not item.healthy)


@dataclass
class StaleAllocation:
    project_id: str
    port: int
    error: Optional[str] = None


class PortRegistry:
    def __init__(
        self,
        range_start: int = PORT_RANGE_START,
        range_end: int = PORT_RANGE_END,
        *,
        event_store: Optional[RecordStore] = None,
        probe: Probe = http_head_probe,
        sleep: Callable[[float], None] = time.sleep,
        host: str = HEALTH_CHECK_HOST,
        max_attempts: int = HEALTH_CHECK_MAX_ATTEMPTS,
        interval_ms: int = HEALTH_CHECK_INTERVAL_MS,
        timeout_ms: int = HEALTH_CHECK_TIMEOUT_MS,
    ) -> None:
        if int(range_end) < int(range_start):
            raise ValueError(f"invalid port range {range_start}-{range_end}")
        self.range_start = int(range_start)
        self.range_end = int(range_end)
        self._event_store = event_store
        self._probe = probe
        self._sleep = sleep
        self._host = host
        self.health_check_max_attempts = max_attempts
        self.health_check_interval_ms = interval_ms
        self.health_check_timeout_ms = timeout_ms

        self._lock = threading.Lock()
        self._free: set[int] = set()
        self._by_project: Dict[str, int] = {}
        self._by_port: Dict[int, str] = {}
        self._fill_pool()
        log_event(
            _LOGGER,
            logging.INFO,
            "port_registry.initialized",
            range_start=self.range_start,
            range_end=self.range_end,
            size=self.total,
        )

    @property
    def total(self) -> int:
        return self.range_end - self.range_start + 1

    def _fill_pool(self) -> None:
        self._free = set(range(self.range_start, self.range_end + 1))
        self._by_project.clear()
        self._by_port.clear()

    def _bind(self, project_id: str, port: int) -> None:
        self._free.discard(port)
        self._by_project[project_id] = port
        self._by_port[port] = project_id

    def _unbind(self, project_id: str) -> Optional[int]:
        port = self._by_project.pop(project_id, None)
        if port is None:
            return None
        self._by_port.pop(port, None)
        self._free.add(port)
        return port

    def _publish_gauges(self) -> None:
        record_gauge_metric(name="ports.allocated", value=len(self._by_project))
        record_gauge_metric(name="ports.available", value=len(self._free))

    def allocate_port(self, project_id: str) -> int:
        with self._lock:
            existing = self._by_project.get(project_id)
            if existing is not None:
                log_event(_LOGGER, logging.INFO, "port.reused", project_id=project_id, port=existing)
                return existing
            if not self._free:
                record_counter_metric(name="ports.exhausted")
                raise PoolExhausted(
                    "No available ports in pool. All ports are in use.",
                    project_id=project_id,
                    range_start=self.range_start,
                    range_end=self.range_end,
                )
            port = min(self._free)
            self._bind(project_id, port)
            self._publish_gauges()
        log_event(_LOGGER, logging.INFO, "port.allocated", project_id=project_id, port=port)
        return port

    def release_port(self, project_id: str) -> bool:
        with self._lock:
            port = self._unbind(project_id)
            self._publish_gauges()
        if port is None:
            log_event(_LOGGER, logging.WARNING, "port.release.not_found", project_id=project_id)
            return False
        log_event(_LOGGER, logging.INFO, "port.released", project_id=project_id, port=port)
        return True

    def _release_if_bound(self, project_id: str, port: int) -> bool:
        with self._lock:
            if self._by_project.get(project_id) != port:
                return False
            self._unbind(project_id)
            self._publish_gauges()
        return True

    def get_port(self, project_id: str) -> Optional[int]:
        with self._lock:
            return self._by_project.get(project_id)

    def get_project_by_port(self, port: int) -> Optional[str]:
        with self._lock:
            return self._by_port.get(int(port))

    def is_port_available(self, port: int) -> bool:
        with self._lock:
            return int(port) in self._free

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            allocated = len(self._by_project)
            available = len(self._free)
        return {
            "total": self.total,
            "available": available,
            "allocated": allocated,
            "utilization_percent": round(allocated / self.total * 100, 2),
            "range_start": self.range_start,
            "range_end": self.range_end,
        }

    def get_allocations(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [{"project_id": project_id, "port": port} for project_id, port in self._by_project.items()]

    def reserve_specific_port(self, port: int, project_id: str) -> bool:
        """Bind ``port`` to ``project_id`` directly. Test/debug only."""
        port = int(port)
        with self._lock:
            if port not in self._free:
                log_event(_LOGGER, logging.WARNING, "port.reserve.unavailable", project_id=project_id, port=port)
                return False
            self._unbind(project_id)
            self._bind(project_id, port)
            self._publish_gauges()
        log_event(_LOGGER, logging.INFO, "port.reserved", project_id=project_id, port=port)
        return True

    def reset(self) -> None:
        """Drop every allocation and refill the pool. Test/debug only."""
        log_event(_LOGGER, logging.WARNING, "port_registry.reset")
        with self._lock:
            self._fill_pool()
            self._publish_gauges()

    def reconcile(self, bindings: Mapping[str, int]) -> int:
        adopted: List[tuple[str, int]] = []
        with self._lock:
            for project_id, raw_port in bindings.items():
                port = int(raw_port)
                if port not in self._free or project_id in self._by_project:
                    log_event(
                        _LOGGER,
                        logging.WARNING,
                        "port.reconcile.skipped",
                        project_id=project_id,
                        port=port,
                        in_range=self.range_start <= port <= self.range_end,
                    )
                    continue
                self._bind(project_id, port)
                adopted.append((project_id, port))
            self._publish_gauges()
        for project_id, port in adopted:
            log_event(_LOGGER, logging.INFO, "port.reconciled", project_id=project_id, port=port)
            emit_event(
                self._event_store,
                _LOGGER,
                project_id=project_id,
                kind="port_reconciled",
                status=EventStatus.INFO,
                message=f"Adopted port {port} from running container",
                meta={"port": port},
            )
        return len(adopted)

    def _probe_once(self, url: str, timeout_seconds: float, port: int, attempt: int, max_attempts: int) -> Optional[int]:
        try:
            status_code = int(self._probe(url, timeout_seconds))
        except httpx.TimeoutException:
            log_event(_LOGGER, logging.DEBUG, "health_check.timeout", port=port, attempt=attempt, max_attempts=max_attempts)
            return None
        except (httpx.HTTPError, OSError) as exc:
            log_event(
                _LOGGER,
                logging.DEBUG,
                "health_check.error",
                port=port,
                attempt=attempt,
                max_attempts=max_attempts,
                error=str(exc),
            )
            return None
        if 200 <= status_code < 300:
            return status_code
        log_event(
            _LOGGER,
            logging.DEBUG,
            "health_check.bad_status",
            port=port,
            attempt=attempt,
            max_attempts=max_attempts,
            status_code=status_code,
        )
        return None

    def health_check(
        self,
        port: int,
        *,
        max_attempts: Optional[int] = None,
        interval_ms: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        path: str = "/",
    ) -> HealthCheckResult:
        attempts = max(1, int(max_attempts if max_attempts is not None else self.health_check_max_attempts))
        interval = max(0, int(interval_ms if interval_ms is not None else self.health_check_interval_ms))
        timeout = max(1, int(timeout_ms if timeout_ms is not None else self.health_check_timeout_ms))
        if not path.startswith("/"):
            path = f"/{path}"
        url = f"http://{self._host}:{port}{path}"
        project_id = self.get_project_by_port(port)
        started = time.monotonic()
        log_event(_LOGGER, logging.INFO, "health_check.started", port=port, project_id=project_id, max_attempts=attempts)

        for attempt in range(1, attempts + 1):
            status_code = self._probe_once(url, timeout / 1000.0, port, attempt, attempts)
            if status_code is not None:
                record_timing_metric(name="health_check.duration_ms", duration_ms=(time.monotonic() - started) * 1000)
                record_counter_metric(name="health_check.passed")
                log_event(_LOGGER, logging.INFO, "health_check.passed", port=port, attempt=attempt, max_attempts=attempts)
                if project_id:
                    emit_event(
                        self._event_store,
                        _LOGGER,
                        project_id=project_id,
                        kind="health_check_passed",
                        status=EventStatus.SUCCESS,
                        message=f"Container healthy on port {port}",
                        meta={"port": port, "attempt": attempt, "max_attempts": attempts},
                    )
                return HealthCheckResult(healthy=True, port=port, attempt=attempt, status_code=status_code)
            if attempt < attempts:
                self._sleep(interval / 1000.0)

        record_timing_metric(name="health_check.duration_ms", duration_ms=(time.monotonic() - started) * 1000)
        record_counter_metric(name="health_check.failed")
        log_event(_LOGGER, logging.WARNING, "health_check.failed", port=port, max_attempts=attempts)
        if project_id:
            emit_event(
                self._event_store,
                _LOGGER,
                project_id=project_id,
                kind="health_check_failed",
                status=EventStatus.FAILURE,
                message=f"Container failed health check on port {port}",
                meta={"port": port, "max_attempts": attempts},
            )
        return HealthCheckResult(healthy=False, port=port, attempts=attempts, reason="max attempts exceeded")

    def batch_health_check(self, ports: Iterable[int], **options: Any) -> BatchHealthReport:
        targets = [int(port) for port in ports]
        if not targets:
            return BatchHealthReport()
        with ThreadPoolExecutor(max_workers=min(len(targets), MAX_BATCH_WORKERS)) as pool:
            results = list(pool.map(lambda port: self.health_check(port, **options), targets))
        report = BatchHealthReport(results=results)
        log_event(
            _LOGGER,
            logging.INFO,
            "health_check.batch.completed",
            ports=len(targets),
            healthy=report.healthy,
            unhealthy=report.unhealthy,
        )
        return report

    def find_stale_allocations(self) -> List[StaleAllocation]:
        stale: List[StaleAllocation] = []
        for allocation in self.get_allocations():
            project_id, port = allocation["project_id"], allocation["port"]
            try:
                result = self.health_check(
                    port,
                    max_attempts=STALE_CHECK_MAX_ATTEMPTS,
                    interval_ms=STALE_CHECK_INTERVAL_MS,
                    timeout_ms=STALE_CHECK_TIMEOUT_MS,
                )
            except Exception as exc:  # noqa: BLE001
                _LOGGER.exception("stale check failed for port %s", port)
                stale.append(StaleAllocation(project_id=project_id, port=port, error=str(exc)))
                continue
            if not result.healthy:
                stale.append(StaleAllocation(project_id=project_id, port=port))
        return stale

    def cleanup_stale_allocations(self) -> int:
        log_event(_LOGGER, logging.INFO, "port.stale_cleanup.started")
        released = 0
        for item in self.find_stale_allocations():
            # The project may have been redeployed on another port since the probe.
            if not self._release_if_bound(item.project_id, item.port):
                continue
            released += 1
            log_event(_LOGGER, logging.INFO, "port.stale_released", project_id=item.project_id, port=item.port)
            emit_event(
                self._event_store,
                _LOGGER,
                project_id=item.project_id,
                kind="port_cleanup",
                status=EventStatus.INFO,
                message=f"Released stale port {item.port}",
                meta={"port": item.port},
            )
        record_counter_metric(name="ports.stale_released", value=released)
        log_event(_LOGGER, logging.INFO, "port.stale_cleanup.completed", released=released)
        return released
