"""Background jobs using arq + Redis.

Provides background processing for:
- URL discovery and page fetching
- Extraction draining and stale claim recovery
"""

from attune.jobs.queue import (
    close_pool,
    enqueue_discovery,
    enqueue_drain,
    enqueue_extraction,
    enqueue_fetch,
    enqueue_job,
    get_redis_settings,
)

__all__ = [
    "close_pool",
    "enqueue_discovery",
    "enqueue_drain",
    "enqueue_extraction",
    "enqueue_fetch",
    "enqueue_job",
    "get_redis_settings",
]
