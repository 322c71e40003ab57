"""arq worker - runs pipeline stages as background jobs.

Run with: arq attune.jobs.worker.WorkerSettings (or ``attune worker``)

Jobs:
- run_discovery: discover URLs for a connection, then queue fetching
- fetch_pending: fetch DISCOVERED URLs for a connection, then drain extractions
- process_extraction: claim and process one extraction
- drain_extractions: process every claimable extraction
- reclaim_stale_extractions (cron): release crashed workers' claims
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import httpx
import structlog
from arq.cron import cron

from attune.config import settings
from attune.jobs.queue import close_pool, enqueue_drain, enqueue_fetch, get_redis_settings
from attune.service import Pipeline, build_pipeline

log = structlog.get_logger()


def _pipeline(ctx: dict[str, Any]) -> Pipeline:
    return ctx["pipeline"]


async def run_discovery(ctx: dict[str, Any], connection_id: str) -> dict[str, Any]:
    """Discover URLs for a connection and queue a fetch pass."""
    session = await _pipeline(ctx).discover_site(UUID(connection_id))
    if session.new_urls:
        await enqueue_fetch(connection_id)
    return {
        "session_id": str(session.id),
        "status": session.status.value,
        "method": session.method.value if session.method else None,
        "total_urls": session.total_urls,
        "new_urls": session.new_urls,
    }


async def fetch_pending(ctx: dict[str, Any], connection_id: str) -> dict[str, Any]:
    """Fetch DISCOVERED URLs and queue extraction for what was added."""
    report = await _pipeline(ctx).fetch_pending(UUID(connection_id))
    if report.queued:
        await enqueue_drain()
    return {
        "fetched": report.fetched,
        "failed": report.failed,
        "duplicates": report.duplicates,
        "thin": report.thin,
        "queued": report.queued,
    }


async def process_extraction(ctx: dict[str, Any], extraction_id: str) -> str | None:
    """Claim and process a single extraction."""
    outcome = await _pipeline(ctx).process_extraction(UUID(extraction_id))
    return outcome.value if outcome else None


async def drain_extractions(ctx: dict[str, Any], limit: int | None = None) -> dict[str, int]:
    """Process every claimable extraction."""
    report = await _pipeline(ctx).process_pending(limit)
    return {
        "claimed": report.claimed,
        "done": report.done,
        "failed": report.failed,
        "skipped": report.skipped,
        "conflicts": report.conflicts,
    }


async def reclaim_stale_extractions(ctx: dict[str, Any]) -> int:
    """Release extractions whose claim outlived the claim timeout."""
    return await _pipeline(ctx).reclaim_stale()


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup - build the pipeline."""
    from attune.main import configure_logging
    from attune.store.postgres import PostgresStore

    configure_logging()
    ctx["start_time"] = datetime.now(UTC)
    ctx["http_client"] = httpx.AsyncClient()
    ctx["pipeline"] = build_pipeline(PostgresStore(), ctx["http_client"])
    log.info("Job worker online", workers=settings.extraction_workers)


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown - release resources."""
    from attune.db.connection import close_db

    client: httpx.AsyncClient | None = ctx.get("http_client")
    if client is not None:
        await client.aclose()
    await close_pool()
    await close_db()
    log.info("Job worker shutting down")


class WorkerSettings:
    """arq worker settings."""

    redis_settings = get_redis_settings()

    functions = [
        run_discovery,
        fetch_pending,
        process_extraction,
        drain_extractions,
        reclaim_stale_extractions,
    ]

    cron_jobs = [cron(reclaim_stale_extractions, second=0, unique=True)]

    on_startup = startup
    on_shutdown = shutdown

    max_jobs = 4
    job_timeout = 3600
    keep_result = 86400
    poll_delay = 0.5
