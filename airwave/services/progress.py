"""Progress aggregator — per-matrix render counts and ETA, derived from row statuses."""

from datetime import datetime

from airwave.services.matrix_store import row_is_valid


def _render_seconds(row: dict) -> float | None:
    """Render duration of a finished row, or None if it has no timing sample."""
    start, end = row.get("render_start_time"), row.get("render_complete_time")
    if not start or not end:
        return None
    try:
        delta = datetime.fromisoformat(end) - datetime.fromisoformat(start)
    except (TypeError, ValueError):
        return None
    return max(delta.total_seconds(), 0.0)


def compute_progress(matrix: dict) -> dict:
    """Count rows by status and estimate the time left.

    overall_progress counts failed rows as done: it measures work
    attempted, not work that succeeded. estimated_seconds_remaining is
    None (unknown) until at least one row has start and completion times.
    """
    rows = matrix.get("rows") or []
    counts = {status: 0 for status in ("draft", "queued", "rendering", "completed", "failed")}
    for row in rows:
        status = row.get("status", "draft")
        counts[status] = counts.get(status, 0) + 1

    total = len(rows)
    done = counts["completed"] + counts["failed"]
    progress = {
        "matrix_id": matrix.get("id"),
        "total": total,
        "draft": counts["draft"],
        "queued": counts["queued"],
        "in_progress": counts["rendering"],
        "completed": counts["completed"],
        "failed": counts["failed"],
        "invalid": sum(1 for r in rows if not row_is_valid(matrix, r)),
        "overall_progress": done / total if total else 0.0,
        "estimated_seconds_remaining": None,
    }

    samples = [s for s in (_render_seconds(r) for r in rows) if s is not None]
    if samples:
        average = sum(samples) / len(samples)
        progress["estimated_seconds_remaining"] = average * (counts["queued"] + counts["rendering"])

    return progress
