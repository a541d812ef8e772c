from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from .models import (
    ACTIVE_PREVIEW_STATUSES,
    PREVIEW_TRANSITIONS,
    TERMINAL_BUILD_STATUSES,
    BuildRecord,
    BuildStatus,
    EventRecord,
    EventStatus,
    PreviewRecord,
    PreviewStatus,
)


def _as_utc_aware(dt: datetime) -> datetime:
    """
    Normalize datetimes to UTC aware.

    SQLite hands back offset-naive values even for DateTime(timezone=True)
    columns; those are treated as UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _now(now: Optional[datetime]) -> datetime:
    return _as_utc_aware(now) if now else datetime.now(timezone.utc)


class RecordStateError(RuntimeError):
    pass


class RecordRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    # builds

    def create_build(
        self,
        *,
        project_id: str,
        user_id: str,
        status: BuildStatus = BuildStatus.QUEUED,
        now: Optional[datetime] = None,
    ) -> BuildRecord:
        current = _now(now)
        build = BuildRecord(
            project_id=str(project_id),
            user_id=str(user_id),
            status=BuildStatus(status),
            queued_at=current,
            created_at=current,
        )
        self.session.add(build)
        self.session.flush()
        return build

    def get_build(self, build_id: str) -> Optional[BuildRecord]:
        key = str(build_id or "").strip()
        if not key:
            return None
        return self.session.get(BuildRecord, key)

    def update_build_status(
        self,
        build_id: str,
        status: BuildStatus | str,
        *,
        builder_container_id: Optional[str] = None,
        image_id: Optional[str] = None,
        error_message: Optional[str] = None,
        build_logs: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BuildRecord:
        build = self.get_build(build_id)
        if build is None:
            raise RecordStateError(f"build not found: {build_id}")
        target = BuildStatus(status)
        if build.status in TERMINAL_BUILD_STATUSES:
            raise RecordStateError(f"build {build_id} is already {build.status.value}")
        current = _now(now)
        build.status = target
        if target == BuildStatus.RUNNING and build.started_at is None:
            build.started_at = current
        if target in TERMINAL_BUILD_STATUSES:
            build.finished_at = current
            started = _as_utc_aware(build.started_at) if build.started_at else current
            build.duration_seconds = max(0, int((current - started).total_seconds()))
        if builder_container_id:
            build.builder_container_id = builder_container_id
        if image_id:
            build.image_id = image_id
        if error_message:
            build.error_message = error_message
        if build_logs is not None:
            build.build_logs = build_logs
        self.session.flush()
        return build

    def list_project_builds(self, project_id: str, *, limit: int = 10) -> list[BuildRecord]:
        query: Select[Any] = (
            select(BuildRecord)
            .where(BuildRecord.project_id == str(project_id))
            .order_by(BuildRecord.created_at.desc())
            .limit(max(1, int(limit)))
        )
        return list(self.session.scalars(query).all())

    # previews

    def create_preview(
        self,
        *,
        project_id: str,
        build_id: Optional[str],
        user_id: str,
        container_id: Optional[str],
        container_name: Optional[str],
        host: str,
        port: int,
        image_id: Optional[str] = None,
        memory_limit_mb: Optional[int] = None,
        cpu_limit: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> PreviewRecord:
        preview = PreviewRecord(
            project_id=str(project_id),
            build_id=build_id,
            user_id=str(user_id),
            container_id=container_id,
            container_name=container_name,
            host=host,
            port=int(port),
            image_id=image_id,
            status=PreviewStatus.STARTING,
            memory_limit_mb=memory_limit_mb,
            cpu_limit=cpu_limit,
            created_at=_now(now),
        )
        self.session.add(preview)
        self.session.flush()
        return preview

    def get_preview(self, preview_id: str) -> Optional[PreviewRecord]:
        key = str(preview_id or "").strip()
        if not key:
            return None
        return self.session.get(PreviewRecord, key)

    def _require_preview(self, preview_id: str) -> PreviewRecord:
        preview = self.get_preview(preview_id)
        if preview is None:
            raise RecordStateError(f"preview not found: {preview_id}")
        return preview

    def update_preview_status(
        self,
        preview_id: str,
        status: PreviewStatus | str,
        *,
        now: Optional[datetime] = None,
    ) -> PreviewRecord:
        preview = self._require_preview(preview_id)
        target = PreviewStatus(status)
        if target not in PREVIEW_TRANSITIONS[preview.status]:
            raise RecordStateError(
                f"preview {preview_id} cannot move from {preview.status.value} to {target.value}"
            )
        preview.status = target
        preview.last_health_check = _now(now)
        preview.health_check_count = int(preview.health_check_count or 0) + 1
        self.session.flush()
        return preview

    def stop_preview(self, preview_id: str, *, now: Optional[datetime] = None) -> PreviewRecord:
        preview = self._require_preview(preview_id)
        if preview.status != PreviewStatus.STOPPED:
            preview.status = PreviewStatus.STOPPED
            preview.stopped_at = _now(now)
            self.session.flush()
        return preview

    def get_active_preview(self, project_id: str) -> Optional[PreviewRecord]:
        query: Select[Any] = (
            select(PreviewRecord)
            .where(PreviewRecord.project_id == str(project_id))
            .where(PreviewRecord.status.in_(list(ACTIVE_PREVIEW_STATUSES)))
            .order_by(PreviewRecord.created_at.desc())
            .limit(1)
        )
        return self.session.scalar(query)

    # events

    def log_event(
        self,
        *,
        kind: str,
        status: EventStatus | str = EventStatus.INFO,
        message: Optional[str] = None,
        user_id: Optional[str] = None,
        project_id: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> EventRecord:
        normalized_kind = str(kind or "").strip()
        if not normalized_kind:
            raise RecordStateError("event kind is required")
        event = EventRecord(
            kind=normalized_kind,
            status=EventStatus(status),
            message=message,
            user_id=user_id,
            project_id=project_id,
            meta=dict(meta or {}),
            created_at=_now(now),
        )
        self.session.add(event)
        self.session.flush()
        return event

    def recent_events(
        self,
        *,
        user_id: Optional[str] = None,
        project_id: Optional[str] = None,
        kind: Optional[str] = None,
        limit: int = 50,
    ) -> list[EventRecord]:
        query: Select[Any] = select(EventRecord)
        if user_id:
            query = query.where(EventRecord.user_id == str(user_id))
        if project_id:
            query = query.where(EventRecord.project_id == str(project_id))
        if kind:
            query = query.where(EventRecord.kind == str(kind))
        query = query.order_by(EventRecord.created_at.desc(), EventRecord.id.desc()).limit(max(1, int(limit)))
        return list(self.session.scalars(query).all())
