from __future__ import annotations

import logging

from persistence import emit_event
from store import BuildStatus, EventStatus


class _BrokenStore:
    def log_event(self, **event):
        raise RuntimeError("database is locked")


def test_sql_store_returns_plain_dicts(record_store) -> None:
    build = record_store.create_build(project_id="p1", user_id="u1")
    assert build["status"] == "queued"
    running = record_store.update_build_status(build["id"], BuildStatus.RUNNING)
    assert running["started_at"] is not None

    preview = record_store.create_preview(
        project_id="p1",
        build_id=build["id"],
        user_id="u1",
        container_id="c-1",
        container_name="preview-p1-1",
        host="proj-p1.localhost",
        port=3001,
        memory_limit_mb=256,
        cpu_limit=0.25,
    )
    assert preview["status"] == "starting"
    assert record_store.update_preview_status(preview["id"], "healthy")["health_check_count"] == 1
    assert record_store.stop_preview(preview["id"])["status"] == "stopped"
    assert record_store.get_preview("missing") is None
    assert [item["id"] for item in record_store.list_project_builds("p1")] == [build["id"]]


def test_emit_event_is_best_effort(record_store, caplog) -> None:
    emit_event(record_store, logging.getLogger("preview.test"), kind="port_cleanup", status=EventStatus.INFO, project_id="p9")
    assert record_store.recent_events(project_id="p9")[0]["kind"] == "port_cleanup"

    with caplog.at_level(logging.ERROR, logger="preview.test"):
        emit_event(_BrokenStore(), logging.getLogger("preview.test"), kind="deploy_failed")
    assert "failed to write audit event deploy_failed" in caplog.text

    emit_event(None, logging.getLogger("preview.test"), kind="ignored")
