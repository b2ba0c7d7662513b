"""Matrix store — read/write contract for matrices, their slots and rows.

The render queue and worker only talk to storage through this module.
"""

import threading
import uuid
from datetime import datetime, timezone

from airwave import supabase_client as db
from airwave.config import DEFAULT_RENDER_PRIORITY

SLOT_TYPES = ("video", "image", "text", "audio", "graphics", "cta", "terms")
ROW_STATUSES = ("draft", "queued", "rendering", "completed", "failed")

# Serializes read-modify-write of a matrix's rows array
_rows_lock = threading.RLock()


class MatrixNotFound(LookupError):
    """A matrix (or something inside it) does not exist."""


class RowNotFound(MatrixNotFound):
    """A row id is not present in the matrix."""


class MatrixValidationError(ValueError):
    """Malformed matrix, slot or row input."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def normalize_slots(slots) -> list[dict]:
    """Validate slot definitions and fill defaults. Raises MatrixValidationError."""
    if not isinstance(slots, list) or not slots:
        raise MatrixValidationError("A matrix needs at least one slot")

    normalized = []
    seen = set()
    for raw in slots:
        if not isinstance(raw, dict) or not raw.get("id"):
            raise MatrixValidationError("Every slot needs an id")
        slot_id = str(raw["id"])
        if slot_id in seen:
            raise MatrixValidationError(f"Duplicate slot id: {slot_id}")
        seen.add(slot_id)

        slot_type = raw.get("type", "")
        if slot_type not in SLOT_TYPES:
            raise MatrixValidationError(
                f"Slot {slot_id} has invalid type {slot_type!r}. Valid: {', '.join(SLOT_TYPES)}"
            )
        assets = raw.get("assets") or []
        if not isinstance(assets, list):
            raise MatrixValidationError(f"Slot {slot_id} assets must be a list")

        normalized.append({
            "id": slot_id,
            "name": raw.get("name") or slot_id,
            "type": slot_type,
            "required": bool(raw.get("required", True)),
            "assets": [str(a) for a in assets],
            "locked": bool(raw.get("locked", False)),
        })
    return normalized


def new_row(slot_assignments: dict, status: str = "draft",
            priority: int | None = None, create_time: str | None = None) -> dict:
    """Build a fresh row with its own identity."""
    return normalize_row({
        "id": str(uuid.uuid4()),
        "slot_assignments": slot_assignments,
        "status": status,
        "priority": priority,
        "create_time": create_time or _now(),
    })


def normalize_row(raw: dict) -> dict:
    """Validate a row body and fill defaults. Raises MatrixValidationError."""
    if not isinstance(raw, dict):
        raise MatrixValidationError("Row must be an object")
    assignments = raw.get("slot_assignments")
    if not isinstance(assignments, dict):
        raise MatrixValidationError("Row slot_assignments must be an object")
    status = raw.get("status") or "draft"
    if status not in ROW_STATUSES:
        raise MatrixValidationError(f"Invalid row status: {status}")
    priority = raw.get("priority")

    return {
        "id": str(raw.get("id") or uuid.uuid4()),
        "slot_assignments": {str(k): str(v) for k, v in assignments.items()},
        "locked": bool(raw.get("locked", False)),
        "status": status,
        "priority": DEFAULT_RENDER_PRIORITY if priority is None else int(priority),
        "render_job_id": raw.get("render_job_id"),
        "preview_url": raw.get("preview_url"),
        "thumbnail_url": raw.get("thumbnail_url"),
        "error_message": raw.get("error_message"),
        "render_attempts": int(raw.get("render_attempts") or 0),
        "create_time": raw.get("create_time") or _now(),
        "render_start_time": raw.get("render_start_time"),
        "render_complete_time": raw.get("render_complete_time"),
    }


def row_is_valid(matrix: dict, row: dict) -> bool:
    """True if the row's assignments match the matrix's current slot list.

    No key may name a slot that no longer exists, and every slot with at
    least one candidate must be assigned. Candidate-less slots are never
    assigned by the generator, so their absence is fine.
    """
    slot_ids = {s["id"] for s in matrix.get("slots", [])}
    keys = set(row.get("slot_assignments", {}))
    if not keys <= slot_ids:
        return False
    assignable = {s["id"] for s in matrix.get("slots", []) if s.get("assets")}
    return assignable <= keys


def validate_assignments(matrix: dict, assignments: dict) -> None:
    """Reject assignments naming unknown slots. Raises MatrixValidationError."""
    slot_ids = {s["id"] for s in matrix.get("slots", [])}
    unknown = sorted(set(assignments) - slot_ids)
    if unknown:
        raise MatrixValidationError(f"Unknown slot ids in assignment: {', '.join(unknown)}")


# ---------------------------------------------------------------------------
# Matrix contract
# ---------------------------------------------------------------------------

def create_matrix(partial: dict, owner_id: str) -> dict:
    """Validate and persist a new matrix."""
    if not partial.get("campaign_id") or not partial.get("name"):
        raise MatrixValidationError("Missing required matrix fields: campaign_id, name")

    slots = normalize_slots(partial.get("slots"))
    rows = [normalize_row(r) for r in partial.get("rows") or []]
    now = _now()

    matrix = db.insert_matrix_record({
        "id": partial.get("id") or str(uuid.uuid4()),
        "campaign_id": partial["campaign_id"],
        "name": partial["name"],
        "description": partial.get("description", ""),
        "template_id": partial.get("template_id"),
        "slots": slots,
        "rows": rows,
        "created_by": owner_id,
        "created_at": now,
        "updated_at": now,
    })
    db.log_action("matrix_created", "matrix", str(matrix.get("id", "")),
                  f"{matrix.get('name')} ({len(slots)} slots) by {owner_id}")
    return matrix


def get_matrix(matrix_id: str) -> dict:
    """Get a matrix or raise MatrixNotFound."""
    matrix = db.get_matrix_record(matrix_id)
    if not matrix:
        raise MatrixNotFound(f"Matrix {matrix_id} not found")
    return matrix


def update_matrix(matrix_id: str, partial: dict) -> dict:
    """Merge fields into a matrix; always stamps updated_at."""
    get_matrix(matrix_id)
    data = {k: v for k, v in partial.items() if k not in ("id", "created_at", "created_by")}
    if "slots" in data:
        data["slots"] = normalize_slots(data["slots"])
    if "rows" in data:
        data["rows"] = [normalize_row(r) for r in data["rows"]]
    data["updated_at"] = _now()
    updated = db.update_matrix_record(matrix_id, data)
    if not updated:
        raise MatrixNotFound(f"Matrix {matrix_id} not found")
    return updated


def list_matrices_for_campaign(campaign_id: str) -> list[dict]:
    return db.get_matrix_records(campaign_id)


def list_matrices_with_status(*statuses: str) -> list[dict]:
    """Matrices holding at least one row in any of the given statuses."""
    wanted = set(statuses)
    return [
        m for m in db.get_matrix_records()
        if any(r.get("status") in wanted for r in m.get("rows") or [])
    ]


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------

def find_row(matrix: dict, row_id: str) -> dict | None:
    for row in matrix.get("rows") or []:
        if row["id"] == row_id:
            return row
    return None


def get_row(matrix_id: str, row_id: str) -> tuple[dict, dict]:
    """Return (matrix, row) or raise MatrixNotFound / RowNotFound."""
    matrix = get_matrix(matrix_id)
    row = find_row(matrix, row_id)
    if row is None:
        raise RowNotFound(f"Row {row_id} not found in matrix {matrix_id}")
    return matrix, row


def update_row(matrix_id: str, row_id: str, changes: dict) -> dict:
    """Merge changes into one row and persist it. Returns the updated row.

    Reads and writes the whole rows array, so concurrent writers are
    serialized on a process-wide lock.
    """
    with _rows_lock:
        matrix, row = get_row(matrix_id, row_id)
        updated_row = {**row, **changes}
        rows = [updated_row if r["id"] == row_id else r for r in matrix["rows"]]
        db.update_matrix_record(matrix_id, {"rows": rows, "updated_at": _now()})
    return updated_row


def update_rows(matrix_id: str, changes_by_id: dict[str, dict]) -> list[dict]:
    """Merge changes into several rows in one write. Returns the updated rows."""
    with _rows_lock:
        matrix = get_matrix(matrix_id)
        rows = []
        updated = []
        for row in matrix.get("rows") or []:
            if row["id"] in changes_by_id:
                row = {**row, **changes_by_id[row["id"]]}
                updated.append(row)
            rows.append(row)
        db.update_matrix_record(matrix_id, {"rows": rows, "updated_at": _now()})
    return updated


def replace_rows(matrix_id: str, rows: list[dict]) -> dict:
    """Overwrite the full rows array."""
    with _rows_lock:
        return update_matrix(matrix_id, {"rows": rows})


def append_row(matrix_id: str, row: dict) -> dict:
    """Append one row to the matrix. Returns the stored row."""
    with _rows_lock:
        matrix = get_matrix(matrix_id)
        stored = normalize_row(row)
        rows = list(matrix.get("rows") or []) + [stored]
        db.update_matrix_record(matrix_id, {"rows": rows, "updated_at": _now()})
    return stored


def remove_row(matrix_id: str, row_id: str) -> dict:
    """Delete one row. Returns the removed row."""
    with _rows_lock:
        matrix, row = get_row(matrix_id, row_id)
        rows = [r for r in matrix["rows"] if r["id"] != row_id]
        db.update_matrix_record(matrix_id, {"rows": rows, "updated_at": _now()})
    return row


def update_slot(matrix_id: str, slot_id: str, changes: dict) -> dict:
    """Merge changes into one slot. Returns the updated slot."""
    with _rows_lock:
        matrix = get_matrix(matrix_id)
        slots = matrix.get("slots") or []
        if not any(s["id"] == slot_id for s in slots):
            raise MatrixNotFound(f"Slot {slot_id} not found in matrix {matrix_id}")
        slots = [{**s, **changes} if s["id"] == slot_id else s for s in slots]
        updated = update_matrix(matrix_id, {"slots": slots})
    return next(s for s in updated["slots"] if s["id"] == slot_id)
