from __future__ import annotations

import abc
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from store import (
    BuildRecord,
    BuildStatus,
    EventRecord,
    EventStatus,
    PreviewRecord,
    PreviewStatus,
    RecordRepository,
    session_scope,
)
from store.db import SessionFactory

Record = Dict[str, Any]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def build_to_dict(build: BuildRecord) -> Record:
    return {
        "id": build.id,
        "project_id": build.project_id,
        "user_id": build.user_id,
        "status": build.status.value,
        "builder_container_id": build.builder_container_id,
        "image_id": build.image_id,
        "build_logs": build.build_logs,
        "error_message": build.error_message,
        "queued_at": _iso(build.queued_at),
        "started_at": _iso(build.started_at),
        "finished_at": _iso(build.finished_at),
        "duration_seconds": build.duration_seconds,
    }


def preview_to_dict(preview: PreviewRecord) -> Record:
    return {
        "id": preview.id,
        "project_id": preview.project_id,
        "build_id": preview.build_id,
        "user_id": preview.user_id,
        "container_id": preview.container_id,
        "container_name": preview.container_name,
        "image_id": preview.image_id,
        "host": preview.host,
        "port": preview.port,
        "status": preview.status.value,
        "health_check_count": preview.health_check_count,
        "last_health_check": _iso(preview.last_health_check),
        "memory_limit_mb": preview.memory_limit_mb,
        "cpu_limit": preview.cpu_limit,
        "created_at": _iso(preview.created_at),
        "stopped_at": _iso(preview.stopped_at),
    }


def event_to_dict(event: EventRecord) -> Record:
    return {
        "id": event.id,
        "user_id": event.user_id,
        "project_id": event.project_id,
        "kind": event.kind,
        "status": event.status.value,
        "message": event.message,
        "meta": dict(event.meta or {}),
        "created_at": _iso(event.created_at),
    }


class RecordStore(abc.ABC):
    """Persistence calls made inline by the orchestration core.

    Records cross this boundary as plain dicts; the core never caches them.
    """

    @abc.abstractmethod
    def create_build(self, *, project_id: str, user_id: str) -> Record:
        raise NotImplementedError

    @abc.abstractmethod
    def update_build_status(self, build_id: str, status: BuildStatus | str, **fields: Any) -> Record:
        raise NotImplementedError

    @abc.abstractmethod
    def create_preview(self, **fields: Any) -> Record:
        raise NotImplementedError

    @abc.abstractmethod
    def update_preview_status(self, preview_id: str, status: PreviewStatus | str) -> Record:
        raise NotImplementedError

    @abc.abstractmethod
    def stop_preview(self, preview_id: str) -> Record:
        raise NotImplementedError

    @abc.abstractmethod
    def log_event(
        self,
        *,
        kind: str,
        status: EventStatus | str = EventStatus.INFO,
        message: Optional[str] = None,
        user_id: Optional[str] = None,
        project_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        raise NotImplementedError


class SqlRecordStore(RecordStore):
    """RecordStore backed by the SQLAlchemy models in ``store``; one session per call."""

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._session_factory = session_factory

    def create_build(self, *, project_id: str, user_id: str) -> Record:
        with session_scope(self._session_factory) as session:
            return build_to_dict(RecordRepository(session).create_build(project_id=project_id, user_id=user_id))

    def update_build_status(self, build_id: str, status: BuildStatus | str, **fields: Any) -> Record:
        with session_scope(self._session_factory) as session:
            build = RecordRepository(session).update_build_status(build_id, status, **fields)
            return build_to_dict(build)

    def get_build(self, build_id: str) -> Optional[Record]:
        with session_scope(self._session_factory) as session:
            build = RecordRepository(session).get_build(build_id)
            return build_to_dict(build) if build else None

    def list_project_builds(self, project_id: str, limit: int = 10) -> List[Record]:
        with session_scope(self._session_factory) as session:
            builds = RecordRepository(session).list_project_builds(project_id, limit=limit)
            return [build_to_dict(item) for item in builds]

    def create_preview(self, **fields: Any) -> Record:
        with session_scope(self._session_factory) as session:
            return preview_to_dict(RecordRepository(session).create_preview(**fields))

    def update_preview_status(self, preview_id: str, status: PreviewStatus | str) -> Record:
        with session_scope(self._session_factory) as session:
            return preview_to_dict(RecordRepository(session).update_preview_status(preview_id, status))

    def stop_preview(self, preview_id: str) -> Record:
        with session_scope(self._session_factory) as session:
            return preview_to_dict(RecordRepository(session).stop_preview(preview_id))

    def get_preview(self, preview_id: str) -> Optional[Record]:
        with session_scope(self._session_factory) as session:
            preview = RecordRepository(session).get_preview(preview_id)
            return preview_to_dict(preview) if preview else None

    def get_active_preview(self, project_id: str) -> Optional[Record]:
        with session_scope(self._session_factory) as session:
            preview = RecordRepository(session).get_active_preview(project_id)
            return preview_to_dict(preview) if preview else None

    def log_event(
        self,
        *,
        kind: str,
        status: EventStatus | str = EventStatus.INFO,
        message: Optional[str] = None,
        user_id: Optional[str] = None,
        project_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        with session_scope(self._session_factory) as session:
            RecordRepository(session).log_event(
                kind=kind,
                status=status,
                message=message,
                user_id=user_id,
                project_id=project_id,
                meta=meta,
            )

    def recent_events(
        self,
        *,
        user_id: Optional[str] = None,
        project_id: Optional[str] = None,
        kind: Optional[str] = None,
        limit: int = 50,
    ) -> List[Record]:
        with session_scope(self._session_factory) as session:
            events = RecordRepository(session).recent_events(
                user_id=user_id, project_id=project_id, kind=kind, limit=limit
            )
            return [event_to_dict(item) for item in events]


def emit_event(store: Optional[RecordStore], logger: logging.Logger, **event: Any) -> None:
    """Append an audit event; a failed write is logged and never raised."""
    if store is None:
        return
    try:
        store.log_event(**event)
    except Exception:  # noqa: BLE001
        logger.exception("failed to write audit event %s", event.get("kind"))
