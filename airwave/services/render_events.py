"""Render events — structured notifications the UI polls for row and batch updates."""

import logging

from airwave import supabase_client as db

logger = logging.getLogger(__name__)

ROW_RENDERING = "row_rendering"
ROW_COMPLETED = "row_completed"
ROW_FAILED = "row_failed"
BATCH_PROGRESS = "batch_progress"


def emit(matrix_id: str, event_type: str, payload: dict, row_id: str | None = None) -> None:
    """Record an event. A failed write is logged, never raised into the render path."""
    try:
        db.insert_render_event(matrix_id, row_id, event_type, payload)
    except Exception as e:
        logger.warning("Could not record %s event for matrix %s: %s", event_type, matrix_id, e)


def row_payload(row: dict) -> dict:
    """The fields of a row the UI needs to redraw it."""
    return {
        "row_id": row["id"],
        "status": row.get("status"),
        "render_job_id": row.get("render_job_id"),
        "preview_url": row.get("preview_url"),
        "thumbnail_url": row.get("thumbnail_url"),
        "error_message": row.get("error_message"),
        "render_start_time": row.get("render_start_time"),
        "render_complete_time": row.get("render_complete_time"),
    }


def events_since(matrix_id: str, since: str | None = None, limit: int = 100) -> list[dict]:
    return db.get_render_events(matrix_id, since=since, limit=limit)
