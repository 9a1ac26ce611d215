from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as redis

from .config import settings
from .schemas import RefreshJob


logger = logging.getLogger("uniplanner.queue")


class RedisQueue:
    """Refresh jobs for portfolio snapshots, one list in Redis."""

    def __init__(self, url: str, queue_key: str = "portfolio_refresh_jobs") -> None:
        self._url = url
        self._queue_key = queue_key
        self._redis: Optional[redis.Redis] = None

    @property
    def connected(self) -> bool:
        return self._redis is not None

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = redis.from_url(self._url, encoding="utf-8", decode_responses=True)

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def enqueue(self, job: RefreshJob) -> None:
        assert self._redis is not None
        await self._redis.rpush(self._queue_key, job.model_dump_json())

    async def dequeue(self, timeout: int = 5) -> Optional[Dict[str, Any]]:
        assert self._redis is not None
        item = await self._redis.blpop(self._queue_key, timeout=timeout)
        if item is None:
            return None
        _, data = item
        return json.loads(data)

    async def set_debounce(self, user_id: str, ttl_seconds: int) -> bool:
        assert self._redis is not None
        # SET NX EX: only the first edit inside the window gets through
        was_set = await self._redis.set(f"debounce:{user_id}", "1", ex=ttl_seconds, nx=True)
        return bool(was_set)


async def enqueue_refresh(q: RedisQueue, user_id: str, reason: str = "portfolio_updated") -> Dict[str, bool]:
    """Debounced refresh request; fails open on Redis errors."""
    if not q.connected:
        return {"queued": False, "debounced": False}

    job = RefreshJob(
        job_id=str(uuid.uuid4()),
        user_id=user_id,
        reason=reason,
        enqueued_at=datetime.now(timezone.utc),
        config_version=settings.config_version,
    )
    debounced = False
    try:
        if not await q.set_debounce(user_id, settings.refresh_debounce_ttl_seconds):
            debounced = True
    except Exception:
        logger.exception("Debounce check failed; proceeding to enqueue")

    queued = False
    if not debounced:
        try:
            await q.enqueue(job)
            queued = True
            logger.info("Enqueue refresh: id=%s user_id=%s reason=%s", job.job_id, user_id, reason)
        except Exception as exc:
            logger.exception("Enqueue failed: %s", exc)
    return {"queued": queued, "debounced": debounced}


queue = RedisQueue(settings.redis_url)
