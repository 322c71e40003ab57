"""Enqueue pipeline jobs on the arq Redis queue.

Jobs get arq's random ids. Repeat requests for the same connection are
not deduplicated here; the stages they run are idempotent (fetched URLs
are not refetched and claimed extractions cannot be claimed twice).
"""

from typing import Any

import structlog
from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from arq.jobs import Job

from attune.config import settings

log = structlog.get_logger()

_pool: ArqRedis | None = None


def get_redis_settings() -> RedisSettings:
    """Get Redis connection settings."""
    return RedisSettings(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password,
        database=settings.redis_jobs_db,
    )


async def get_pool() -> ArqRedis:
    """Get or create the shared arq Redis pool."""
    global _pool  # noqa: PLW0603
    if _pool is None:
        _pool = await create_pool(get_redis_settings())
    return _pool


async def close_pool() -> None:
    """Close the shared pool, if one was opened."""
    global _pool  # noqa: PLW0603
    if _pool is not None:
        await _pool.aclose()
        _pool = None


async def enqueue_job(name: str, *args: Any) -> Job | None:
    """Enqueue a job by name.

    Returns:
        The arq Job, or None if arq refused it.
    """
    pool = await get_pool()
    job = await pool.enqueue_job(name, *args)
    if job is None:
        log.warning("Job not enqueued", job=name)
    else:
        log.info("Job enqueued", job=name, job_id=job.job_id)
    return job


async def enqueue_discovery(connection_id: str) -> Job | None:
    return await enqueue_job("run_discovery", connection_id)


async def enqueue_fetch(connection_id: str) -> Job | None:
    return await enqueue_job("fetch_pending", connection_id)


async def enqueue_extraction(extraction_id: str) -> Job | None:
    return await enqueue_job("process_extraction", extraction_id)


async def enqueue_drain(limit: int | None = None) -> Job | None:
    if limit is None:
        return await enqueue_job("drain_extractions")
    return await enqueue_job("drain_extractions", limit)
