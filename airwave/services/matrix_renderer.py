"""Matrix renderer — combination generation and render orchestration for matrices.

One MatrixRenderer is built per process (see app.create_app) and handed to
the routers and background jobs. It owns the render queue and the map of
in-flight renders; both are guarded by a single lock.

Dispatch is cooperative: drain() starts up to the concurrency budget as
asyncio tasks and returns. A render stays in flight until the renderer
reports a terminal status (webhook or poll), which releases its slot and
starts the next round.

Limitation: a dispatched render cannot be cancelled. The external job keeps
running and its result is applied when it arrives.
"""

import asyncio
import logging
import threading
from datetime import datetime, timezone

from airwave import supabase_client as db
from airwave.config import (
    DEFAULT_MAX_COMBINATIONS,
    DEFAULT_RENDER_PRIORITY,
    DEFAULT_TEMPLATE_ID,
    MAX_CONCURRENT_RENDERS,
    MAX_RENDER_ATTEMPTS,
    PUBLIC_URL,
    RENDER_OUTPUT_FORMAT,
    RENDER_STALE_SECONDS,
    WEBHOOK_SECRET,
)
from airwave.services import matrix_store as store
from airwave.services import render_events as events
from airwave.services import render_worker
from airwave.services.creatomate import CreatomateClient, RenderServiceError
from airwave.services.matrix_store import MatrixNotFound, MatrixValidationError
from airwave.services.permutations import ALL_UNLOCKED, generate_permutations, varying_slots
from airwave.services.progress import compute_progress
from airwave.services.render_queue import RenderQueue, RenderQueueItem

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed")
CANCELLED_MESSAGE = "Render cancelled before dispatch"


def _default_webhook_url() -> str | None:
    if not PUBLIC_URL:
        return None
    url = f"{PUBLIC_URL}/webhooks/creatomate"
    return f"{url}?token={WEBHOOK_SECRET}" if WEBHOOK_SECRET else url


class MatrixRenderer:
    """Public surface: generate_combinations, render_row, start_batch_rendering,
    get_batch_progress, cancel_queued_row (plus requeue and result handling).
    """

    def __init__(
        self,
        render_client=None,
        max_concurrent: int = MAX_CONCURRENT_RENDERS,
        max_attempts: int = MAX_RENDER_ATTEMPTS,
        default_template_id: str = DEFAULT_TEMPLATE_ID,
        output_format: str = RENDER_OUTPUT_FORMAT,
        webhook_url: str | None = None,
        asset_lookup=None,
    ):
        self.client = render_client or CreatomateClient()
        self.max_concurrent = max_concurrent
        self.max_attempts = max_attempts
        self.default_template_id = default_template_id
        self.output_format = output_format
        self.webhook_url = webhook_url if webhook_url is not None else _default_webhook_url()
        self.asset_lookup = asset_lookup

        self.queue = RenderQueue()
        self.in_flight: dict[tuple[str, str], RenderQueueItem] = {}
        self._lock = threading.Lock()
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Combination generation
    # ------------------------------------------------------------------

    async def generate_combinations(
        self,
        matrix_id: str,
        vary_slots: list[str] | None = None,
        max_combinations: int = DEFAULT_MAX_COMBINATIONS,
        preserve_existing: bool = False,
        auto_render: bool = False,
        render_priority: int | None = None,
    ) -> dict:
        """Replace the matrix's unlocked rows with freshly generated combinations.

        Locked rows are always kept; preserve_existing keeps every existing
        row. Generated assignments that duplicate a kept row are dropped.
        Returns the updated matrix.
        """
        if max_combinations is None or max_combinations < 1:
            raise MatrixValidationError("max_combinations must be at least 1")

        matrix = store.get_matrix(matrix_id)
        slots = matrix.get("slots") or []

        if vary_slots:
            unknown = sorted(set(vary_slots) - {s["id"] for s in slots})
            if unknown:
                raise MatrixValidationError(f"Unknown slot ids: {', '.join(unknown)}")
            vary = vary_slots
        else:
            vary = ALL_UNLOCKED

        if not any(s.get("assets") for s in varying_slots(slots, vary)):
            raise MatrixValidationError("No slots available for permutation")

        assignments = generate_permutations(slots, vary, max_combinations)

        existing = matrix.get("rows") or []
        kept = [r for r in existing if preserve_existing or r.get("locked")]
        seen = {frozenset(r["slot_assignments"].items()) for r in kept}

        status = "queued" if auto_render else "draft"
        priority = DEFAULT_RENDER_PRIORITY if render_priority is None else render_priority
        create_time = datetime.now(timezone.utc).isoformat()
        new_rows = []
        for assignment in assignments:
            fingerprint = frozenset(assignment.items())
            if fingerprint in seen:
                continue
            seen.add(fingerprint)
            new_rows.append(store.new_row(assignment, status, priority, create_time))

        dropped = {r["id"] for r in existing} - {r["id"] for r in kept}
        with self._lock:
            self.queue.cancel_matrix(matrix_id, dropped)

        updated = store.replace_rows(matrix_id, kept + new_rows)
        db.log_action(
            "combinations_generated", "matrix", matrix_id,
            f"{len(new_rows)} new rows, {len(kept)} kept, {len(dropped)} replaced",
        )

        if auto_render:
            template_id = matrix.get("template_id") or self.default_template_id
            for row in new_rows:
                self.enqueue(RenderQueueItem(
                    matrix_id=matrix_id,
                    row_id=row["id"],
                    priority=priority,
                    template_id=template_id,
                ))
            self.drain()

        self._emit_progress(matrix_id)
        return updated

    def add_row(self, matrix_id: str, slot_assignments: dict, priority: int | None = None) -> dict:
        """Add a hand-built draft row."""
        matrix = store.get_matrix(matrix_id)
        store.validate_assignments(matrix, slot_assignments)
        row = store.append_row(matrix_id, store.new_row(slot_assignments, "draft", priority))
        self._emit_progress(matrix_id)
        return row

    def update_row_assignments(self, matrix_id: str, row_id: str, slot_assignments: dict) -> dict:
        """Replace a row's assignments.

        Rows waiting on or holding a render cannot be edited. A row that was
        already rendered is marked failed so its stale preview is not
        mistaken for the new combination; it can then be re-queued.
        """
        matrix, row = store.get_row(matrix_id, row_id)
        if row.get("locked"):
            raise MatrixValidationError(f"Row {row_id} is locked")
        if row.get("status") in ("queued", "rendering"):
            raise MatrixValidationError(f"Row {row_id} is {row['status']}; cancel it before editing")
        store.validate_assignments(matrix, slot_assignments)

        changes = {"slot_assignments": {str(k): str(v) for k, v in slot_assignments.items()}}
        if row.get("status") != "draft":
            changes.update({
                "status": "failed",
                "preview_url": None,
                "thumbnail_url": None,
                "error_message": "Assignments changed since the last render",
            })
        updated = store.update_row(matrix_id, row_id, changes)
        self._emit_progress(matrix_id)
        return updated

    def delete_row(self, matrix_id: str, row_id: str) -> dict:
        """Remove a row. A queued render for it is cancelled; an in-flight one
        finishes but its result is dropped.
        """
        with self._lock:
            self.queue.cancel(matrix_id, row_id)
        row = store.remove_row(matrix_id, row_id)
        db.log_action("row_deleted", "row", row_id, f"matrix {matrix_id}")
        self._emit_progress(matrix_id)
        return row

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def enqueue(self, item: RenderQueueItem) -> bool:
        """Queue a row for rendering. A row already in flight is left alone."""
        with self._lock:
            if item.key in self.in_flight:
                logger.info("Row %s of matrix %s is already rendering, ignoring enqueue",
                            item.row_id, item.matrix_id)
                return False
            self.queue.enqueue(item)
            return True

    async def start_batch_rendering(self, matrix_id: str, priority: int | None = None) -> dict:
        """Queue every valid draft row of a matrix and start dispatching."""
        matrix = store.get_matrix(matrix_id)
        drafts = [r for r in matrix.get("rows") or [] if r.get("status") == "draft"]
        renderable = [r for r in drafts if store.row_is_valid(matrix, r)]
        skipped = len(drafts) - len(renderable)

        if not renderable:
            detail = f" ({skipped} draft rows no longer match the slots)" if skipped else ""
            raise MatrixValidationError(f"No draft rows to render{detail}")

        changes = {}
        for row in renderable:
            row_priority = row.get("priority", DEFAULT_RENDER_PRIORITY) if priority is None else priority
            changes[row["id"]] = {"status": "queued", "priority": row_priority}
        store.update_rows(matrix_id, changes)

        template_id = matrix.get("template_id") or self.default_template_id
        for row in renderable:
            self.enqueue(RenderQueueItem(
                matrix_id=matrix_id,
                row_id=row["id"],
                priority=changes[row["id"]]["priority"],
                template_id=template_id,
            ))

        db.log_action("batch_render_started", "matrix", matrix_id,
                      f"{len(renderable)} rows queued, {skipped} invalid skipped")
        self.drain()

        progress = self.get_batch_progress(matrix_id)
        events.emit(matrix_id, events.BATCH_PROGRESS, progress)
        return {**progress, "rows_queued": len(renderable), "skipped_invalid": skipped}

    async def requeue_row(self, matrix_id: str, row_id: str, priority: int | None = None) -> dict:
        """Send a failed row back to the queue."""
        matrix, row = store.get_row(matrix_id, row_id)
        if row.get("status") != "failed":
            raise MatrixValidationError(
                f"Only failed rows can be re-queued (row {row_id} is {row.get('status')})"
            )
        if not store.row_is_valid(matrix, row):
            raise MatrixValidationError(
                f"Row {row_id} does not match the current slots; edit it before re-queueing"
            )

        row_priority = row.get("priority", DEFAULT_RENDER_PRIORITY) if priority is None else priority
        updated = store.update_row(matrix_id, row_id, {
            "status": "queued",
            "priority": row_priority,
            "error_message": None,
            "render_attempts": 0,
            "render_complete_time": None,
            "render_job_id": None,
        })
        self.enqueue(RenderQueueItem(
            matrix_id=matrix_id,
            row_id=row_id,
            priority=row_priority,
            template_id=matrix.get("template_id") or self.default_template_id,
        ))
        self.drain()
        self._emit_progress(matrix_id)
        return updated

    def cancel_queued_row(self, matrix_id: str, row_id: str) -> bool:
        """Remove a row that has not been dispatched yet.

        The row becomes failed with a cancellation message so it can be
        re-queued. Returns False when the row is in flight or not queued.
        """
        key = (matrix_id, row_id)
        with self._lock:
            item = self.queue.cancel(matrix_id, row_id)
            in_flight = key in self.in_flight

        _, row = store.get_row(matrix_id, row_id)
        if item is None and (in_flight or row.get("status") != "queued"):
            return False

        render_worker.fail_row(matrix_id, row_id, CANCELLED_MESSAGE)
        db.log_action("render_cancelled", "row", row_id, f"matrix {matrix_id}")
        self._emit_progress(matrix_id)
        return True

    def queue_status(self) -> dict:
        with self._lock:
            queued = self.queue.snapshot()
            active = list(self.in_flight.values())
        return {
            "queue_length": len(queued),
            "active_renders": len(active),
            "max_concurrent_renders": self.max_concurrent,
            "queued": [
                {"matrix_id": i.matrix_id, "row_id": i.row_id, "priority": i.priority,
                 "attempts": i.attempts}
                for i in queued
            ],
            "active": [
                {"matrix_id": i.matrix_id, "row_id": i.row_id,
                 "render_job_id": i.render_job_id, "attempts": i.attempts}
                for i in active
            ],
        }

    def get_batch_progress(self, matrix_id: str) -> dict:
        return compute_progress(store.get_matrix(matrix_id))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def drain(self) -> int:
        """Dispatch as many queued rows as the concurrency budget allows.

        Returns the number dispatched. Does not wait for renders to finish.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("drain() called outside an event loop; nothing dispatched")
            return 0

        with self._lock:
            batch = self.queue.dequeue_next_batch(self.max_concurrent, len(self.in_flight))
            for item in batch:
                self.in_flight[item.key] = item

        for item in batch:
            task = loop.create_task(self._dispatch(item))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return len(batch)

    async def _dispatch(self, item: RenderQueueItem) -> None:
        """Start one queued render. Isolated: never raises into the drain loop."""
        item.attempts += 1
        item.last_attempt = datetime.now(timezone.utc).isoformat()
        submitted = False
        retry = False
        try:
            row = await self._submit(item)
            submitted = row.get("status") == "rendering"
        except RenderServiceError as e:
            retry = item.attempts < self.max_attempts
            if retry:
                logger.warning("Render attempt %d/%d for row %s failed: %s",
                               item.attempts, self.max_attempts, item.row_id, e)
                self._record_attempt_error(item, str(e))
            else:
                self._fail_quietly(item, str(e))
        except render_worker.RowNotRenderable as e:
            logger.info("Dropping queued render: %s", e)
        except MatrixValidationError as e:
            self._fail_quietly(item, str(e))
        except MatrixNotFound as e:
            logger.info("Dropping queued render: %s", e)
        except Exception as e:
            logger.exception("Unexpected error rendering row %s of matrix %s",
                             item.row_id, item.matrix_id)
            self._fail_quietly(item, f"{type(e).__name__}: {e}")
        finally:
            if not submitted:
                self._release(item.key)

        if retry:
            with self._lock:
                self.queue.enqueue(item)
        self._emit_progress(item.matrix_id)
        if not submitted:
            self.drain()

    async def _submit(self, item: RenderQueueItem) -> dict:
        row = await render_worker.render_row(
            item.matrix_id,
            item.row_id,
            self.client,
            template_id=item.template_id,
            output_format=self.output_format,
            webhook_url=self.webhook_url,
            attempt=item.attempts,
            asset_lookup=self.asset_lookup,
        )
        if row.get("status") == "rendering":
            item.render_job_id = row.get("render_job_id")
        return row

    async def render_row(self, matrix_id: str, row_id: str) -> dict:
        """Render one row now, outside the queue. Returns the row.

        Not held back by max_concurrent: with a full budget the number of
        live renders briefly exceeds the bound. While it runs the render
        occupies an in-flight slot, so queued rows wait for it. A row that
        is already in flight is returned unchanged; renderer errors end up
        on the row as a failure.
        """
        key = (matrix_id, row_id)
        matrix, row = store.get_row(matrix_id, row_id)
        with self._lock:
            if key in self.in_flight:
                return row
            item = self.queue.cancel(matrix_id, row_id) or RenderQueueItem(
                matrix_id=matrix_id,
                row_id=row_id,
                priority=row.get("priority", DEFAULT_RENDER_PRIORITY),
                template_id=matrix.get("template_id") or self.default_template_id,
                attempts=row.get("render_attempts", 0),
            )
            self.in_flight[key] = item

        item.attempts += 1
        item.last_attempt = datetime.now(timezone.utc).isoformat()
        submitted = False
        try:
            row = await self._submit(item)
            submitted = row.get("status") == "rendering"
            return row
        except RenderServiceError as e:
            logger.warning("Render of row %s failed to start: %s", row_id, e)
            return render_worker.fail_row(matrix_id, row_id, str(e), attempts=item.attempts)
        finally:
            if not submitted:
                self._release(key)
            self._emit_progress(matrix_id)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def handle_render_result(
        self,
        matrix_id: str,
        row_id: str,
        status: str,
        url: str | None = None,
        thumbnail_url: str | None = None,
        error: str | None = None,
        render_job_id: str | None = None,
    ) -> dict | None:
        """Apply a terminal render status reported out of band.

        Only the row's outstanding job counts: the job id held in flight, or
        for an untracked row the id stored while it is rendering. Results
        arriving before the job id is known, for superseded jobs, or for
        rows with no outstanding job are ignored (polling picks up the
        first case). Returns the updated row, or None when nothing was
        applied.
        """
        if status not in TERMINAL_STATUSES:
            return None

        key = (matrix_id, row_id)
        try:
            _, row = store.get_row(matrix_id, row_id)
        except MatrixNotFound:
            logger.info("Render result for missing row %s of matrix %s", row_id, matrix_id)
            self._release(key)
            self.drain()
            return None

        with self._lock:
            item = self.in_flight.get(key)
        if item is not None:
            current_job = item.render_job_id
        elif row.get("status") == "rendering":
            current_job = row.get("render_job_id")
        else:
            current_job = None

        if not current_job:
            logger.info("Ignoring %s result for row %s: no outstanding render job", status, row_id)
            return None
        if render_job_id and render_job_id != current_job:
            logger.info("Ignoring result of superseded job %s for row %s", render_job_id, row_id)
            return None

        try:
            if status == "completed":
                updated = render_worker.complete_row(matrix_id, row_id, url, thumbnail_url)
            else:
                updated = render_worker.fail_row(matrix_id, row_id, error or "Unknown error")
        finally:
            self._release(key)

        logger.info("Row %s of matrix %s %s", row_id, matrix_id, status)
        self._emit_progress(matrix_id)
        self.drain()
        return updated

    async def poll_active_renders(self) -> dict:
        """Ask the renderer about in-flight jobs and apply finished ones."""
        with self._lock:
            items = [i for i in self.in_flight.values() if i.render_job_id]

        checked = finished = 0
        for item in items:
            try:
                result = await asyncio.to_thread(self.client.get_render, item.render_job_id)
            except RenderServiceError as e:
                logger.warning("Status check for job %s failed: %s", item.render_job_id, e)
                continue
            checked += 1
            if result["status"] in TERMINAL_STATUSES:
                await self.handle_render_result(
                    item.matrix_id, item.row_id, result["status"],
                    url=result.get("url"),
                    thumbnail_url=result.get("thumbnail_url"),
                    error=result.get("error"),
                    render_job_id=item.render_job_id,
                )
                finished += 1
        return {"checked": checked, "finished": finished}

    async def recover_orphaned_rows(self, stale_after_seconds: int = RENDER_STALE_SECONDS) -> dict:
        """Reconcile stored row statuses with this process's queue.

        After a restart the queue is empty: queued rows are re-enqueued.
        Rendering rows that nobody tracks are adopted while fresh; once older
        than stale_after_seconds their job is checked and the result applied,
        or the row is re-queued (attempts left) or failed.

        The matrix listing only nominates rows. Each row is read again
        before acting on it, and again after the job check, since renders
        and results keep landing while recovery runs.
        """
        now = datetime.now(timezone.utc)
        stats = {"requeued": 0, "adopted": 0, "finished": 0, "failed": 0}

        for listed in store.list_matrices_with_status("queued", "rendering"):
            matrix_id = listed["id"]
            row_ids = [r["id"] for r in listed.get("rows") or []
                       if r.get("status") in ("queued", "rendering")]
            for row_id in row_ids:
                key = (matrix_id, row_id)
                matrix, row = self._untracked_row(key)
                if row is None or row.get("status") not in ("queued", "rendering"):
                    continue

                item = RenderQueueItem(
                    matrix_id=matrix_id,
                    row_id=row_id,
                    priority=row.get("priority", DEFAULT_RENDER_PRIORITY),
                    template_id=matrix.get("template_id") or self.default_template_id,
                    attempts=row.get("render_attempts", 0),
                    render_job_id=row.get("render_job_id"),
                )

                if row["status"] == "queued":
                    if store.row_is_valid(matrix, row):
                        self.enqueue(item)
                        stats["requeued"] += 1
                    else:
                        self._fail_quietly(item, "Row no longer matches the matrix slots")
                        stats["failed"] += 1
                    continue

                job_id = row.get("render_job_id")
                if not _is_stale(row, now, stale_after_seconds) and job_id:
                    with self._lock:
                        if key in self.in_flight or self.queue.contains(*key):
                            continue
                        self.in_flight[key] = item
                    stats["adopted"] += 1
                    continue

                result = None
                if job_id:
                    try:
                        result = await asyncio.to_thread(self.client.get_render, job_id)
                    except RenderServiceError as e:
                        logger.warning("Status check for stale job %s failed: %s", job_id, e)

                if result and result["status"] in TERMINAL_STATUSES:
                    applied = await self.handle_render_result(
                        matrix_id, row_id, result["status"],
                        url=result.get("url"),
                        thumbnail_url=result.get("thumbnail_url"),
                        error=result.get("error"),
                        render_job_id=job_id,
                    )
                    if applied is not None:
                        stats["finished"] += 1
                    continue

                # The row may have been rendered or finished during the check
                _, current = self._untracked_row(key)
                if (current is None or current.get("status") != "rendering"
                        or current.get("render_job_id") != job_id):
                    continue

                if item.attempts < self.max_attempts:
                    store.update_row(matrix_id, row_id, {"status": "queued", "render_job_id": None})
                    item.render_job_id = None
                    self.enqueue(item)
                    stats["requeued"] += 1
                else:
                    self._fail_quietly(
                        item,
                        f"Render did not finish within {stale_after_seconds}s "
                        f"after {item.attempts} attempts",
                    )
                    stats["failed"] += 1

        if any(stats.values()):
            logger.info("Render recovery: %s", stats)
        self.drain()
        return stats

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _untracked_row(self, key: tuple[str, str]) -> tuple[dict | None, dict | None]:
        """Fresh (matrix, row) for a row this process neither queues nor renders."""
        with self._lock:
            if key in self.in_flight or self.queue.contains(*key):
                return None, None
        try:
            return store.get_row(*key)
        except MatrixNotFound:
            return None, None

    def _release(self, key: tuple[str, str]) -> None:
        with self._lock:
            self.in_flight.pop(key, None)

    def _fail_quietly(self, item: RenderQueueItem, error: str) -> None:
        """Fail a row from a background path, logging instead of raising."""
        try:
            render_worker.fail_row(item.matrix_id, item.row_id, error, attempts=item.attempts)
        except MatrixNotFound:
            pass
        except Exception:
            logger.exception("Could not mark row %s of matrix %s failed", item.row_id, item.matrix_id)

    def _record_attempt_error(self, item: RenderQueueItem, error: str) -> None:
        try:
            store.update_row(item.matrix_id, item.row_id, {
                "render_attempts": item.attempts,
                "error_message": f"Attempt {item.attempts} failed: {error}",
            })
        except MatrixNotFound:
            pass
        except Exception:
            logger.exception("Could not record attempt error for row %s", item.row_id)

    def _emit_progress(self, matrix_id: str) -> None:
        try:
            progress = self.get_batch_progress(matrix_id)
        except MatrixNotFound:
            return
        except Exception as e:
            logger.warning("Progress update for matrix %s failed: %s", matrix_id, e)
            return
        events.emit(matrix_id, events.BATCH_PROGRESS, progress)

    async def wait_idle(self) -> None:
        """Wait until every dispatch task has finished submitting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def _is_stale(row: dict, now: datetime, stale_after_seconds: int) -> bool:
    started = row.get("render_start_time")
    if not started:
        return True
    try:
        started_at = datetime.fromisoformat(started)
    except ValueError:
        return True
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    return (now - started_at).total_seconds() >= stale_after_seconds
