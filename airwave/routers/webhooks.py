"""Webhooks — render completion callbacks from Creatomate."""

import json
import logging
import time
from collections import defaultdict

from fastapi import APIRouter, Header, HTTPException, Query, Request

from airwave.config import WEBHOOK_SECRET
from airwave.services.creatomate import parse_render

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks")

# In-memory rate limiter: {ip: [timestamp, ...]}
_rate_buckets: dict[str, list[float]] = defaultdict(list)
_RATE_LIMIT = 120      # max requests per window
_RATE_WINDOW = 60      # window in seconds


def _check_rate_limit(request: Request) -> None:
    """Raise 429 if IP exceeds rate limit. Simple sliding window."""
    ip = request.client.host if request.client else "unknown"
    now = time.monotonic()
    bucket = _rate_buckets[ip]
    cutoff = now - _RATE_WINDOW
    _rate_buckets[ip] = bucket = [t for t in bucket if t > cutoff]
    if len(bucket) >= _RATE_LIMIT:
        raise HTTPException(status_code=429, detail="Rate limit exceeded")
    bucket.append(now)


def _check_secret(authorization: str, token: str) -> None:
    """Creatomate cannot send headers, so the secret may also ride in ?token=."""
    if not WEBHOOK_SECRET:
        return
    if authorization != f"Bearer {WEBHOOK_SECRET}" and token != WEBHOOK_SECRET:
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


def _parse_metadata(raw) -> dict:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="metadata must be JSON")
    return data if isinstance(data, dict) else {}


@router.post("/creatomate")
async def creatomate_webhook(
    request: Request,
    authorization: str = Header(""),
    token: str = Query(""),
):
    """Receive a render status update.

    Payload: a Creatomate render object { id, status, url, snapshot_url,
    error_message, metadata } where metadata is the JSON string we sent
    with the render ({ matrix_id, row_id }).
    """
    _check_rate_limit(request)
    _check_secret(authorization, token)

    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Render object expected")

    metadata = _parse_metadata(body.get("metadata"))
    matrix_id, row_id = metadata.get("matrix_id"), metadata.get("row_id")
    if not matrix_id or not row_id:
        raise HTTPException(status_code=400, detail="metadata.matrix_id and metadata.row_id required")

    result = parse_render(body)
    if result["status"] not in ("completed", "failed"):
        return {"status": "ignored", "render_status": result["status"]}

    row = await request.app.state.renderer.handle_render_result(
        matrix_id,
        row_id,
        result["status"],
        url=result["url"],
        thumbnail_url=result["thumbnail_url"],
        error=result["error"],
        render_job_id=result["id"],
    )
    if row is None:
        return {"status": "ignored", "render_status": result["status"]}

    logger.info("Render webhook: job %s %s (row %s)", result["id"], result["status"], row_id)
    return {"status": "applied", "row_status": row["status"]}
