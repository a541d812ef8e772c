from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Enum, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class BuildStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PreviewStatus(str, enum.Enum):
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    FAILED = "failed"
    STOPPED = "stopped"


class EventStatus(str, enum.Enum):
    INFO = "info"
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


TERMINAL_BUILD_STATUSES = frozenset({BuildStatus.SUCCEEDED, BuildStatus.FAILED, BuildStatus.CANCELLED})
ACTIVE_PREVIEW_STATUSES = frozenset({PreviewStatus.STARTING, PreviewStatus.HEALTHY})
# stop_preview is allowed from every state and is not listed here.
PREVIEW_TRANSITIONS = {
    PreviewStatus.STARTING: frozenset({PreviewStatus.HEALTHY, PreviewStatus.UNHEALTHY, PreviewStatus.FAILED}),
    PreviewStatus.HEALTHY: frozenset({PreviewStatus.HEALTHY, PreviewStatus.UNHEALTHY, PreviewStatus.FAILED}),
    PreviewStatus.UNHEALTHY: frozenset({PreviewStatus.HEALTHY, PreviewStatus.UNHEALTHY, PreviewStatus.FAILED}),
    PreviewStatus.FAILED: frozenset(),
    PreviewStatus.STOPPED: frozenset(),
}


class BuildRecord(Base):
    __tablename__ = "builds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id: Mapped[str] = mapped_column(String(64), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[BuildStatus] = mapped_column(
        Enum(BuildStatus, native_enum=False), default=BuildStatus.QUEUED, index=True
    )
    builder_container_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    image_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    build_logs: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    queued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)


class PreviewRecord(Base):
    __tablename__ = "previews"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id: Mapped[str] = mapped_column(String(64), index=True)
    build_id: Mapped[Optional[str]] = mapped_column(ForeignKey("builds.id", ondelete="SET NULL"), nullable=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    container_id: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True, index=True)
    container_name: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    image_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    host: Mapped[str] = mapped_column(String(255), index=True)
    port: Mapped[int] = mapped_column(Integer)
    status: Mapped[PreviewStatus] = mapped_column(
        Enum(PreviewStatus, native_enum=False), default=PreviewStatus.STARTING, index=True
    )
    health_check_count: Mapped[int] = mapped_column(Integer, default=0)
    last_health_check: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    memory_limit_mb: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cpu_limit: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    stopped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class EventRecord(Base):
    __tablename__ = "events"
    __table_args__ = (Index("ix_events_project_kind", "project_id", "kind"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    project_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    kind: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[EventStatus] = mapped_column(Enum(EventStatus, native_enum=False), default=EventStatus.INFO)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
