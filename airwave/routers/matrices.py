"""Matrices API — matrix CRUD, combination generation and render control.

Domain errors (MatrixValidationError, MatrixNotFound, RenderServiceError)
are mapped to status codes by the handlers in app.py.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request

from airwave import supabase_client as db
from airwave.config import DEFAULT_MAX_COMBINATIONS
from airwave.services import matrix_store as store
from airwave.services import render_events as events

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/matrices", tags=["Matrices"])

_EDITABLE_FIELDS = ("name", "description", "template_id", "slots", "rows")


def _renderer(request: Request):
    return request.app.state.renderer


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


def _optional_int(body: dict, key: str) -> int | None:
    value = body.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"{key} must be an integer")


# ---------------------------------------------------------------------------
# Matrices
# ---------------------------------------------------------------------------

@router.post("", status_code=201)
async def create_matrix(request: Request, x_user_id: str = Header("anonymous")):
    body = await _json_body(request)
    return store.create_matrix(body, x_user_id)


@router.get("/campaign/{campaign_id}")
async def list_campaign_matrices(campaign_id: str):
    return store.list_matrices_for_campaign(campaign_id)


@router.get("/{matrix_id}")
async def get_matrix(matrix_id: str):
    return store.get_matrix(matrix_id)


@router.put("/{matrix_id}")
async def update_matrix(matrix_id: str, request: Request, x_user_id: str = Header("anonymous")):
    body = await _json_body(request)
    changes = {k: v for k, v in body.items() if k in _EDITABLE_FIELDS}
    if not changes:
        raise HTTPException(
            status_code=400,
            detail=f"Nothing to update. Editable fields: {', '.join(_EDITABLE_FIELDS)}",
        )
    matrix = store.update_matrix(matrix_id, changes)
    db.log_action("matrix_updated", "matrix", matrix_id,
                  f"{', '.join(sorted(changes))} by {x_user_id}")
    return matrix


# ---------------------------------------------------------------------------
# Combinations and rows
# ---------------------------------------------------------------------------

@router.post("/{matrix_id}/combinations")
async def generate_combinations(matrix_id: str, request: Request):
    """Body: { vary_slots?, max_combinations?, preserve_existing?, auto_render?, priority? }"""
    body = await _json_body(request)
    vary_slots = body.get("vary_slots")
    if vary_slots is not None and not isinstance(vary_slots, list):
        raise HTTPException(status_code=400, detail="vary_slots must be a list of slot ids")
    max_combinations = _optional_int(body, "max_combinations")

    return await _renderer(request).generate_combinations(
        matrix_id,
        vary_slots=vary_slots or None,
        max_combinations=DEFAULT_MAX_COMBINATIONS if max_combinations is None else max_combinations,
        preserve_existing=bool(body.get("preserve_existing", False)),
        auto_render=bool(body.get("auto_render", False)),
        render_priority=_optional_int(body, "priority"),
    )


@router.post("/{matrix_id}/rows", status_code=201)
async def add_row(matrix_id: str, request: Request):
    body = await _json_body(request)
    assignments = body.get("slot_assignments")
    if not isinstance(assignments, dict):
        raise HTTPException(status_code=400, detail="slot_assignments object required")
    return _renderer(request).add_row(matrix_id, assignments, _optional_int(body, "priority"))


@router.put("/{matrix_id}/rows/{row_id}")
async def edit_row(matrix_id: str, row_id: str, request: Request):
    body = await _json_body(request)
    assignments = body.get("slot_assignments")
    if not isinstance(assignments, dict):
        raise HTTPException(status_code=400, detail="slot_assignments object required")
    return _renderer(request).update_row_assignments(matrix_id, row_id, assignments)


@router.delete("/{matrix_id}/rows/{row_id}")
async def delete_row(matrix_id: str, row_id: str, request: Request):
    _renderer(request).delete_row(matrix_id, row_id)
    return {"status": "deleted", "row_id": row_id}


@router.put("/{matrix_id}/rows/{row_id}/lock")
async def lock_row(matrix_id: str, row_id: str, request: Request):
    """Body: { locked: bool }"""
    body = await _json_body(request)
    if not isinstance(body.get("locked"), bool):
        raise HTTPException(status_code=400, detail="locked must be a boolean")
    return store.update_row(matrix_id, row_id, {"locked": body["locked"]})


@router.put("/{matrix_id}/slots/{slot_id}/lock")
async def lock_slot(matrix_id: str, slot_id: str, request: Request):
    """Body: { locked: bool }"""
    body = await _json_body(request)
    if not isinstance(body.get("locked"), bool):
        raise HTTPException(status_code=400, detail="locked must be a boolean")
    return store.update_slot(matrix_id, slot_id, {"locked": body["locked"]})


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

@router.post("/{matrix_id}/rows/{row_id}/render")
async def render_row(matrix_id: str, row_id: str, request: Request):
    return await _renderer(request).render_row(matrix_id, row_id)


@router.post("/{matrix_id}/render-all")
async def render_all(matrix_id: str, request: Request):
    """Queue every valid draft row. Body (optional): { priority? }"""
    body = await _json_body(request) if await request.body() else {}
    return await _renderer(request).start_batch_rendering(
        matrix_id, priority=_optional_int(body, "priority"),
    )


@router.post("/{matrix_id}/rows/{row_id}/requeue")
async def requeue_row(matrix_id: str, row_id: str, request: Request):
    body = await _json_body(request) if await request.body() else {}
    return await _renderer(request).requeue_row(
        matrix_id, row_id, priority=_optional_int(body, "priority"),
    )


@router.delete("/{matrix_id}/rows/{row_id}/queue")
async def cancel_queued_row(matrix_id: str, row_id: str, request: Request):
    cancelled = _renderer(request).cancel_queued_row(matrix_id, row_id)
    if not cancelled:
        raise HTTPException(status_code=409, detail=f"Row {row_id} is not waiting in the queue")
    return {"status": "cancelled", "row_id": row_id}


@router.get("/{matrix_id}/progress")
async def batch_progress(matrix_id: str, request: Request):
    return _renderer(request).get_batch_progress(matrix_id)


@router.get("/{matrix_id}/events")
async def render_events(
    matrix_id: str,
    since: Optional[str] = Query(None, description="ISO timestamp; only newer events"),
    limit: int = Query(100, ge=1, le=500),
):
    store.get_matrix(matrix_id)
    return events.events_since(matrix_id, since=since, limit=limit)


queue_router = APIRouter(prefix="/api/v1/render-queue", tags=["Render queue"])


@queue_router.get("")
async def queue_status(request: Request):
    return _renderer(request).queue_status()
