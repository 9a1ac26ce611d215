from __future__ import annotations

import asyncio
import logging

from pydantic import ValidationError

from .cache import snapshot_cache
from .config import settings
from .portfolio import PortfolioAggregator, PortfolioLoadError
from .queue import queue
from .repo import db
from .schemas import RefreshJob
from .scoring import calculate_gpa


logger = logging.getLogger("uniplanner.worker")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


async def handle_job(job: RefreshJob, aggregator: PortfolioAggregator) -> bool:
    """Re-aggregate one user's snapshot and re-warm the cache."""
    try:
        snapshot = await aggregator.refresh(job.user_id)
    except PortfolioLoadError:
        logger.exception("Refresh failed for user_id=%s job=%s", job.user_id, job.job_id)
        return False
    logger.info(
        "Refreshed snapshot: user_id=%s reason=%s courses=%d computed_gpa=%.2f",
        job.user_id,
        job.reason,
        len(snapshot.courses),
        calculate_gpa(snapshot.courses),
    )
    return True


async def worker_loop() -> None:
    await queue.connect()
    await snapshot_cache.connect()
    await db.connect()
    aggregator = PortfolioAggregator(db, snapshot_cache)
    logger.info(
        "Worker started. Redis URL=%s SupabaseConfigured=%s DB=%s",
        settings.redis_url,
        settings.supabase_configured,
        bool(settings.database_url),
    )
    try:
        while True:
            item = await queue.dequeue(timeout=5)
            if item is None:
                continue
            try:
                job = RefreshJob(**item)
            except ValidationError:
                logger.exception("Failed to parse job payload: %s", item)
                continue
            try:
                logger.info("Processing job: id=%s user_id=%s reason=%s", job.job_id, job.user_id, job.reason)
                await handle_job(job, aggregator)
            except Exception:
                logger.exception("Unhandled error while processing job id=%s", job.job_id)
    finally:
        await queue.disconnect()
        await snapshot_cache.disconnect()
        await db.disconnect()


if __name__ == "__main__":
    asyncio.run(worker_loop())
