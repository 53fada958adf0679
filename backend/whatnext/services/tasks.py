"""
Celery tasks: the scheduled trigger that keeps the pipeline moving, plus the
background entry point for async /process requests.

Each task runs one bounded invocation (the orchestrator stops on its own at
the rate-limit or time budget) and leaves the rest for the next run. A Redis
lock keeps two pipeline runs from working the same queue at once.
"""
import asyncio
import logging
from typing import List, Optional

from celery import shared_task

from whatnext.core.config import settings
from whatnext.core.redis_client import get_redis
from whatnext.services.factory import build_orchestrator
from whatnext.services.queue_service import QueueService

logger = logging.getLogger(__name__)

PIPELINE_LOCK_KEY = "lock:vectorize:pipeline"


class PipelineLockBusy(Exception):
    """Raised when another pipeline run holds the lock."""
    pass


class PipelineLock:
    """Redis lock around one pipeline invocation; expires on its own if the worker dies."""

    def __init__(self, key: str = PIPELINE_LOCK_KEY, redis=None):
        self.key = key
        self.redis = redis or get_redis()

    async def acquire(self, timeout: int = None) -> bool:
        timeout = timeout or int(settings.invocation_time_budget_seconds * 4)
        acquired = await self.redis.set(self.key, "locked", ex=timeout, nx=True)
        if not acquired:
            logger.info(f"Lock already held: {self.key}")
        return bool(acquired)

    async def release(self):
        await self.redis.delete(self.key)

    async def __aenter__(self):
        if not await self.acquire():
            raise PipelineLockBusy(f"Could not acquire lock: {self.key}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()


async def _run_locked(coro_factory) -> dict:
    try:
        async with PipelineLock():
            result = await coro_factory()
    except PipelineLockBusy as e:
        return {"skipped": True, "reason": str(e)}
    return result.to_dict() if hasattr(result, "to_dict") else result


@shared_task(name="whatnext.services.tasks.process_pending_movies")
def process_pending_movies() -> dict:
    """Scheduled: drain the queue, or discover new movies when it is empty."""
    async def _run():
        orchestrator = build_orchestrator()
        return await _run_locked(orchestrator.process_movies)
    return asyncio.run(_run())


@shared_task(bind=True, max_retries=0, name="whatnext.services.tasks.process_movies_task")
def process_movies_task(self, movie_ids: Optional[List[int]] = None) -> dict:
    """Background run for /process in async mode. Best effort: no retries."""
    async def _run():
        orchestrator = build_orchestrator()
        return await _run_locked(lambda: orchestrator.process_movies(movie_ids))
    return asyncio.run(_run())


@shared_task(name="whatnext.services.tasks.reprocess_failed_movies")
def reprocess_failed_movies() -> dict:
    async def _run():
        orchestrator = build_orchestrator()
        return await _run_locked(orchestrator.reprocess_failed_movies)
    return asyncio.run(_run())


@shared_task(name="whatnext.services.tasks.cleanup_processing_queue")
def cleanup_processing_queue(days: int = 7) -> dict:
    removed = QueueService().cleanup_queue(days=days)
    return {"removed": removed}
