"""Render queue — in-memory priority list of render requests.

Holds identifiers and render metadata only; row status lives in the
matrix store. Not thread-safe on its own: MatrixRenderer guards it
together with its in-flight map.
"""

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RenderQueueItem:
    matrix_id: str
    row_id: str
    priority: int
    template_id: str
    attempts: int = 0
    created_at: str = field(default_factory=_now)
    last_attempt: str | None = None
    render_job_id: str | None = None
    seq: int = 0  # arrival order, set by the queue

    @property
    def key(self) -> tuple[str, str]:
        return (self.matrix_id, self.row_id)


class RenderQueue:
    """Priority queue deduplicated by (matrix_id, row_id).

    Lower priority values dequeue first; equal priorities dequeue in
    arrival order.
    """

    def __init__(self) -> None:
        self._items: dict[tuple[str, str], RenderQueueItem] = {}
        self._arrivals = itertools.count()

    def __len__(self) -> int:
        return len(self._items)

    def contains(self, matrix_id: str, row_id: str) -> bool:
        return (matrix_id, row_id) in self._items

    def enqueue(self, item: RenderQueueItem) -> RenderQueueItem:
        """Add an item, replacing any queued entry for the same row.

        A replacement takes the new priority and template and a fresh
        arrival position.
        """
        item.seq = next(self._arrivals)
        self._items[item.key] = item
        return item

    def dequeue_next_batch(self, max_concurrent: int, in_flight_count: int) -> list[RenderQueueItem]:
        """Pop up to max_concurrent - in_flight_count items, best first."""
        budget = max_concurrent - in_flight_count
        if budget <= 0 or not self._items:
            return []
        batch = self.snapshot()[:budget]
        for item in batch:
            del self._items[item.key]
        return batch

    def cancel(self, matrix_id: str, row_id: str) -> RenderQueueItem | None:
        """Remove a queued item. Returns it, or None if it was not queued."""
        return self._items.pop((matrix_id, row_id), None)

    def cancel_matrix(self, matrix_id: str, row_ids: set[str] | None = None) -> list[RenderQueueItem]:
        """Remove queued items for a matrix (optionally only the given rows)."""
        keys = [
            k for k in self._items
            if k[0] == matrix_id and (row_ids is None or k[1] in row_ids)
        ]
        return [self._items.pop(k) for k in keys]

    def snapshot(self) -> list[RenderQueueItem]:
        """Queued items in dequeue order."""
        return sorted(self._items.values(), key=lambda i: (i.priority, i.seq))
