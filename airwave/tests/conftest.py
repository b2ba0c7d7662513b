"""Shared fixtures for AIrWAVE tests.

Provides:
- fake_db: patches supabase_client with an in-memory fake
- render_client: a fake Creatomate client that records submissions
- renderer: a MatrixRenderer wired to both fakes
- client: sync FastAPI test client using that renderer
- sample data factories for slots, rows, matrices, assets
"""

import itertools
import os
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from unittest.mock import patch, MagicMock

import pytest

# Set env vars before any airwave imports
os.environ.setdefault("SUPABASE_URL", "https://fake.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "fake-key")
os.environ.setdefault("WEBHOOK_SECRET", "test-secret-123")
os.environ.setdefault("CREATOMATE_API_KEY", "")
os.environ.setdefault("PUBLIC_URL", "")


# ---------------------------------------------------------------------------
# In-memory fake Supabase
# ---------------------------------------------------------------------------

class FakeQueryResult:
    def __init__(self, data=None):
        self.data = data or []


class FakeQueryBuilder:
    """Mimics the supabase-py query builder chain."""

    def __init__(self, store, table_name):
        self._store = store
        self._table = table_name
        self._filters = []
        self._order_col = None
        self._order_desc = False
        self._limit_val = None
        self._range_start = None
        self._range_end = None
        self._update_data = None
        self._insert_data = None

    def select(self, columns="*"):
        return self

    def insert(self, data):
        self._insert_data = data
        return self

    def update(self, data):
        self._update_data = data
        return self

    def eq(self, col, val):
        self._filters.append(("eq", col, val))
        return self

    def gte(self, col, val):
        self._filters.append(("gte", col, val))
        return self

    def order(self, col, desc=False):
        self._order_col = col
        self._order_desc = desc
        return self

    def limit(self, n):
        self._limit_val = n
        return self

    def range(self, start, end):
        self._range_start = start
        self._range_end = end
        return self

    def _match(self, row):
        for op, col, val in self._filters:
            row_val = row.get(col)
            if op == "eq" and row_val != val:
                return False
            if op == "gte" and (row_val is None or str(row_val) < str(val)):
                return False
        return True

    def execute(self):
        table = self._store[self._table]

        if self._insert_data is not None:
            row = dict(self._insert_data)
            if "id" not in row:
                row["id"] = str(uuid.uuid4())
            table.append(row)
            return FakeQueryResult(data=[row])

        if self._update_data is not None:
            updated = []
            for row in table:
                if self._match(row):
                    row.update(self._update_data)
                    updated.append(row)
            return FakeQueryResult(data=updated)

        # SELECT
        rows = [r for r in table if self._match(r)]
        if self._order_col:
            rows.sort(key=lambda r: r.get(self._order_col) or "", reverse=self._order_desc)
        if self._range_start is not None:
            rows = rows[self._range_start:self._range_end + 1]
        elif self._limit_val is not None:
            rows = rows[:self._limit_val]
        return FakeQueryResult(data=rows)


class FakeDB:
    """In-memory store keyed by table name."""

    def __init__(self):
        self.store = defaultdict(list)

    def table(self, name):
        return FakeQueryBuilder(self.store, name)

    def matrix(self, matrix_id):
        return next(m for m in self.store["matrix_configurations"] if m["id"] == matrix_id)

    def row(self, matrix_id, row_id):
        return next(r for r in self.matrix(matrix_id)["rows"] if r["id"] == row_id)

    def events(self, event_type=None):
        return [e for e in self.store["render_events"]
                if event_type is None or e["event_type"] == event_type]


@pytest.fixture
def fake_db():
    """Provides a clean in-memory DB and patches supabase_client._table."""
    db = FakeDB()

    def fake_table(name):
        return FakeQueryBuilder(db.store, name)

    with patch("airwave.supabase_client._table", side_effect=fake_table):
        with patch("airwave.supabase_client.get_client", return_value=MagicMock()):
            yield db


# ---------------------------------------------------------------------------
# Fake renderer
# ---------------------------------------------------------------------------

class FakeRenderClient:
    """Stands in for CreatomateClient. Jobs stay 'rendering' until finished."""

    def __init__(self):
        self.submitted = []
        self.renders = {}
        self.fail_times = 0
        self.error = "Renderer unavailable"
        self._ids = itertools.count(1)

    def submit_render(self, template_id, modifications, output_format="mp4",
                      webhook_url=None, metadata=None):
        if self.fail_times > 0:
            self.fail_times -= 1
            from airwave.services.creatomate import RenderServiceError
            raise RenderServiceError(self.error)
        job_id = f"job-{next(self._ids)}"
        self.submitted.append({
            "job_id": job_id,
            "template_id": template_id,
            "modifications": modifications,
            "output_format": output_format,
            "webhook_url": webhook_url,
            "metadata": metadata,
        })
        self.renders[job_id] = {"id": job_id, "status": "rendering", "url": None,
                                "thumbnail_url": None, "error": None}
        return job_id

    def get_render(self, job_id):
        return dict(self.renders.get(job_id) or {"id": job_id, "status": "rendering",
                                                  "url": None, "thumbnail_url": None,
                                                  "error": None})

    def finish(self, job_id, status="completed", error=None):
        self.renders[job_id] = {
            "id": job_id,
            "status": status,
            "url": f"https://cdn.example.com/{job_id}.mp4" if status == "completed" else None,
            "thumbnail_url": f"https://cdn.example.com/{job_id}.jpg" if status == "completed" else None,
            "error": error,
        }


@pytest.fixture
def render_client():
    return FakeRenderClient()


@pytest.fixture
def renderer(fake_db, render_client):
    from airwave.services.matrix_renderer import MatrixRenderer
    return MatrixRenderer(render_client=render_client, max_concurrent=5, webhook_url="")


@pytest.fixture
def client(renderer):
    """Sync test client for FastAPI app with mocked DB and renderer."""
    from contextlib import asynccontextmanager

    from fastapi.testclient import TestClient

    from airwave.app import create_app

    @asynccontextmanager
    async def noop_lifespan(app):
        yield

    app = create_app(renderer)
    # Skip the scheduler and startup recovery
    app.router.lifespan_context = noop_lifespan

    with TestClient(app) as c:
        yield c


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------

def _now():
    return datetime.now(timezone.utc).isoformat()


def make_slot(slot_id, assets=None, **overrides):
    defaults = {
        "id": slot_id,
        "name": slot_id.title(),
        "type": "video",
        "required": True,
        "assets": list(assets or []),
        "locked": False,
    }
    defaults.update(overrides)
    return defaults


def make_row(slot_assignments=None, **overrides):
    defaults = {
        "id": str(uuid.uuid4()),
        "slot_assignments": dict(slot_assignments or {}),
        "locked": False,
        "status": "draft",
        "priority": 5,
        "render_job_id": None,
        "preview_url": None,
        "thumbnail_url": None,
        "error_message": None,
        "render_attempts": 0,
        "create_time": _now(),
        "render_start_time": None,
        "render_complete_time": None,
    }
    defaults.update(overrides)
    return defaults


def make_matrix(**overrides):
    defaults = {
        "id": str(uuid.uuid4()),
        "campaign_id": "camp-1",
        "name": "Spring launch",
        "description": "",
        "template_id": "tmpl-1",
        "slots": [
            make_slot("hook", ["v1", "v2"]),
            make_slot("headline", ["t1", "t2"], type="text"),
        ],
        "rows": [],
        "created_by": "user-1",
        "created_at": _now(),
        "updated_at": _now(),
    }
    defaults.update(overrides)
    return defaults


def make_asset(asset_id, **overrides):
    defaults = {
        "id": asset_id,
        "type": "video",
        "url": f"https://assets.example.com/{asset_id}",
        "content": f"Copy for {asset_id}",
    }
    defaults.update(overrides)
    return defaults


def seed_matrix(fake_db, **overrides):
    """Store a matrix plus an asset record for every candidate it names."""
    matrix = make_matrix(**overrides)
    fake_db.store["matrix_configurations"].append(matrix)
    known = {a["id"] for a in fake_db.store["assets"]}
    for slot in matrix["slots"]:
        for asset_id in slot["assets"]:
            if asset_id not in known:
                fake_db.store["assets"].append(make_asset(asset_id))
                known.add(asset_id)
    return matrix
