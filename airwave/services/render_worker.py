"""Render worker — turns one matrix row into a renderer job and records the outcome.

The worker never retries; MatrixRenderer owns the retry policy.
"""

import asyncio
import logging
from datetime import datetime, timezone

from airwave import supabase_client as db
from airwave.config import DEFAULT_TEMPLATE_ID, RENDER_OUTPUT_FORMAT
from airwave.services import matrix_store as store
from airwave.services import render_events as events

logger = logging.getLogger(__name__)


class MissingRequiredAsset(ValueError):
    """A required slot has no resolvable asset."""


class RowNotRenderable(store.MatrixValidationError):
    """The row is rendering or already completed."""


# Rows in any other status are owned by a live or finished render
RENDERABLE_STATUSES = ("draft", "queued", "failed")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_modifications(matrix: dict, row: dict, asset_lookup=None) -> dict[str, str]:
    """Resolve a row's slot assignments to renderer modifications.

    Text slots pass the asset's content, every other type its URL.
    Unresolvable optional slots are logged and left out. Raises
    MissingRequiredAsset naming every unresolvable required slot.
    """
    lookup = asset_lookup or db.get_asset
    assignments = row.get("slot_assignments") or {}
    modifications: dict[str, str] = {}
    missing_required = []

    for slot in matrix.get("slots") or []:
        slot_id = slot["id"]
        asset_id = assignments.get(slot_id)
        value = None
        if asset_id:
            asset = lookup(asset_id)
            if asset is None:
                logger.warning("Asset %s for slot %s (row %s) not found", asset_id, slot_id, row["id"])
            elif slot.get("type") == "text":
                value = asset.get("content")
            else:
                value = asset.get("url")

        if value:
            modifications[slot_id] = value
        elif slot.get("required", True):
            missing_required.append(f"{slot.get('name', slot_id)} ({asset_id or 'no asset assigned'})")
        else:
            logger.info("Skipping optional slot %s for row %s", slot_id, row["id"])

    if missing_required:
        raise MissingRequiredAsset(
            "Required slot asset missing: " + ", ".join(missing_required)
        )
    return modifications


async def render_row(
    matrix_id: str,
    row_id: str,
    client,
    template_id: str | None = None,
    output_format: str = RENDER_OUTPUT_FORMAT,
    webhook_url: str | None = None,
    attempt: int | None = None,
    asset_lookup=None,
) -> dict:
    """Submit one row to the renderer. Returns the updated row.

    A row with a missing required asset is failed without calling the
    renderer. Raises RowNotRenderable for rows that are rendering or
    completed, MatrixValidationError for rows that no longer match the
    matrix's slots, and lets RenderServiceError propagate to the caller.
    """
    matrix, row = store.get_row(matrix_id, row_id)
    if row.get("status") not in RENDERABLE_STATUSES:
        raise RowNotRenderable(f"Row {row_id} of matrix {matrix_id} is {row.get('status')}")
    if not store.row_is_valid(matrix, row):
        raise store.MatrixValidationError(
            f"Row {row_id} does not match the current slots of matrix {matrix_id}; "
            "edit its assignments or regenerate before rendering"
        )

    try:
        modifications = build_modifications(matrix, row, asset_lookup)
    except MissingRequiredAsset as e:
        logger.warning("Row %s of matrix %s cannot render: %s", row_id, matrix_id, e)
        return fail_row(matrix_id, row_id, str(e))

    template = template_id or matrix.get("template_id") or DEFAULT_TEMPLATE_ID
    job_id = await asyncio.to_thread(
        client.submit_render,
        template,
        modifications,
        output_format,
        webhook_url,
        {"matrix_id": matrix_id, "row_id": row_id},
    )

    updated = store.update_row(matrix_id, row_id, {
        "render_job_id": job_id,
        "status": "rendering",
        "render_start_time": _now(),
        "render_complete_time": None,
        "render_attempts": attempt if attempt is not None else row.get("render_attempts", 0) + 1,
        "error_message": None,
    })
    logger.info("Row %s of matrix %s rendering as job %s", row_id, matrix_id, job_id)
    events.emit(matrix_id, events.ROW_RENDERING, events.row_payload(updated), row_id=row_id)
    return updated


def complete_row(matrix_id: str, row_id: str, preview_url: str | None,
                 thumbnail_url: str | None = None) -> dict:
    """Mark a row completed with its preview URLs."""
    updated = store.update_row(matrix_id, row_id, {
        "status": "completed",
        "preview_url": preview_url,
        "thumbnail_url": thumbnail_url,
        "error_message": None,
        "render_complete_time": _now(),
    })
    events.emit(matrix_id, events.ROW_COMPLETED, events.row_payload(updated), row_id=row_id)
    return updated


def fail_row(matrix_id: str, row_id: str, error: str, attempts: int | None = None) -> dict:
    """Mark a row failed, keeping the raw error for diagnostics."""
    changes = {
        "status": "failed",
        "error_message": error or "Unknown error",
        "render_complete_time": _now(),
    }
    if attempts is not None:
        changes["render_attempts"] = attempts
    updated = store.update_row(matrix_id, row_id, changes)
    events.emit(matrix_id, events.ROW_FAILED, events.row_payload(updated), row_id=row_id)
    return updated
