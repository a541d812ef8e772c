from .db import (
    build_session_factory,
    default_session_factory,
    init_store_db,
    session_scope,
)
from .models import (
    ACTIVE_PREVIEW_STATUSES,
    PREVIEW_TRANSITIONS,
    TERMINAL_BUILD_STATUSES,
    Base,
    BuildRecord,
    BuildStatus,
    EventRecord,
    EventStatus,
    PreviewRecord,
    PreviewStatus,
)
from .repository import RecordRepository, RecordStateError

__all__ = [
    "Base",
    "BuildRecord",
    "PreviewRecord",
    "EventRecord",
    "BuildStatus",
    "PreviewStatus",
    "EventStatus",
    "ACTIVE_PREVIEW_STATUSES",
    "PREVIEW_TRANSITIONS",
    "TERMINAL_BUILD_STATUSES",
    "RecordRepository",
    "RecordStateError",
    "build_session_factory",
    "default_session_factory",
    "init_store_db",
    "session_scope",
]
