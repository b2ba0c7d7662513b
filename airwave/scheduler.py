"""APScheduler — polls in-flight renders and reconciles orphaned rows."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from airwave.config import RECOVERY_INTERVAL_SECONDS, RENDER_POLL_SECONDS

logger = logging.getLogger(__name__)


def build_scheduler(renderer) -> AsyncIOScheduler:
    """Scheduler with the background jobs for one MatrixRenderer."""
    scheduler = AsyncIOScheduler()

    async def poll_renders():
        """Check in-flight jobs with the renderer (covers missed webhooks)."""
        try:
            result = await renderer.poll_active_renders()
            if result["finished"] > 0:
                logger.info(
                    "Render poll: %d checked, %d finished",
                    result["checked"],
                    result["finished"],
                )
        except Exception as e:
            logger.error("Render poll failed: %s", e)

    async def recover_rows():
        """Re-queue or fail rows left queued/rendering by a previous process."""
        try:
            await renderer.recover_orphaned_rows()
        except Exception as e:
            logger.error("Render recovery failed: %s", e)

    scheduler.add_job(poll_renders, "interval", seconds=RENDER_POLL_SECONDS,
                      id="poll_renders", max_instances=1, coalesce=True)
    scheduler.add_job(recover_rows, "interval", seconds=RECOVERY_INTERVAL_SECONDS,
                      id="recover_rows", max_instances=1, coalesce=True)
    return scheduler
