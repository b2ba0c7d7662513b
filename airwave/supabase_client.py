"""Supabase connection and query helpers for the matrix, asset and event tables."""

import threading
from datetime import datetime, timezone

from supabase import Client, create_client

from airwave.config import SUPABASE_SERVICE_KEY, SUPABASE_URL

MATRIX_TABLE = "matrix_configurations"
ASSET_TABLE = "assets"
EVENT_TABLE = "render_events"
AUDIT_TABLE = "audit_log"

_client: Client | None = None
_client_lock = threading.Lock()


def get_client() -> Client:
    """Return the Supabase client singleton (thread-safe)."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                if not SUPABASE_URL or not SUPABASE_SERVICE_KEY:
                    raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
                _client = create_client(SUPABASE_URL, SUPABASE_SERVICE_KEY)
    return _client


# ---------------------------------------------------------------------------
# Generic helpers
# ---------------------------------------------------------------------------

def _table(name: str):
    """Return a table query builder."""
    return get_client().table(name)


def insert(table: str, data: dict) -> dict:
    """Insert a row and return it."""
    result = _table(table).insert(data).execute()
    return result.data[0] if result.data else {}


def update(table: str, data: dict, match: dict) -> dict:
    """Update rows matching conditions."""
    q = _table(table).update(data)
    for k, v in match.items():
        q = q.eq(k, v)
    result = q.execute()
    return result.data[0] if result.data else {}


def select(table: str, columns: str = "*", match: dict | None = None,
           order: str | None = None, order_desc: bool = False,
           limit: int | None = None, offset: int | None = None) -> list[dict]:
    """Select rows with optional filtering, ordering, and pagination."""
    q = _table(table).select(columns)
    if match:
        for k, v in match.items():
            q = q.eq(k, v)
    if order:
        q = q.order(order, desc=order_desc)
    if limit:
        q = q.limit(limit)
    if offset:
        q = q.range(offset, offset + (limit or 100) - 1)
    result = q.execute()
    return result.data or []


def select_one(table: str, columns: str = "*", match: dict | None = None) -> dict | None:
    """Select a single row."""
    rows = select(table, columns, match, limit=1)
    return rows[0] if rows else None


# ---------------------------------------------------------------------------
# Matrices
# ---------------------------------------------------------------------------

def get_matrix_record(matrix_id: str) -> dict | None:
    """Get a matrix configuration by id."""
    return select_one(MATRIX_TABLE, match={"id": matrix_id})


def insert_matrix_record(data: dict) -> dict:
    """Insert a matrix configuration."""
    return insert(MATRIX_TABLE, data)


def update_matrix_record(matrix_id: str, data: dict) -> dict:
    """Update a matrix configuration by id."""
    return update(MATRIX_TABLE, data, {"id": matrix_id})


def get_matrix_records(campaign_id: str | None = None) -> list[dict]:
    """Get matrix configurations, newest first, optionally for one campaign."""
    match = {"campaign_id": campaign_id} if campaign_id else None
    return select(MATRIX_TABLE, match=match, order="created_at", order_desc=True)


# ---------------------------------------------------------------------------
# Assets
# ---------------------------------------------------------------------------

def get_asset(asset_id: str) -> dict | None:
    """Get a creative asset by id."""
    return select_one(ASSET_TABLE, match={"id": asset_id})


# ---------------------------------------------------------------------------
# Render events (UI notifications)
# ---------------------------------------------------------------------------

def insert_render_event(matrix_id: str, row_id: str | None, event_type: str,
                        payload: dict) -> dict:
    """Record a render event with a structured payload."""
    return insert(EVENT_TABLE, {
        "matrix_id": matrix_id,
        "row_id": row_id,
        "event_type": event_type,
        "payload": payload,
        "created_at": datetime.now(timezone.utc).isoformat(),
    })


def get_render_events(matrix_id: str, since: str | None = None,
                      limit: int = 100) -> list[dict]:
    """Get render events for a matrix, oldest first."""
    q = _table(EVENT_TABLE).select("*").eq("matrix_id", matrix_id)
    if since:
        q = q.gte("created_at", since)
    q = q.order("created_at").limit(limit)
    result = q.execute()
    return result.data or []


# ---------------------------------------------------------------------------
# Audit Log
# ---------------------------------------------------------------------------

def log_action(action: str, entity_type: str = "", entity_id: str = "", details: str = "") -> dict:
    """Log an operator action."""
    return insert(AUDIT_TABLE, {
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "details": details,
    })
