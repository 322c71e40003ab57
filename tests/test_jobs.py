"""Tests for the arq job functions and queue helpers."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from attune.jobs import queue, worker
from attune.service import Pipeline
from attune.states import CrawlSessionStatus

GUIDE = b"Our brand voice is warm and friendly. Greet every customer by name."


@pytest.fixture
def enqueued(monkeypatch: pytest.MonkeyPatch) -> AsyncMock:
    mock = AsyncMock(return_value=None)
    monkeypatch.setattr(worker, "enqueue_drain", mock)
    monkeypatch.setattr(worker, "enqueue_fetch", mock)
    return mock


def test_worker_settings_registers_jobs() -> None:
    names = {fn.__name__ for fn in worker.WorkerSettings.functions}
    assert names == {
        "run_discovery",
        "fetch_pending",
        "process_extraction",
        "drain_extractions",
        "reclaim_stale_extractions",
    }
    assert len(worker.WorkerSettings.cron_jobs) == 1


@pytest.mark.asyncio
async def test_drain_extractions(pipeline: Pipeline) -> None:
    connection = await pipeline.create_connection()
    await pipeline.enqueue_document(connection.id, "guide.txt", GUIDE)

    result = await worker.drain_extractions({"pipeline": pipeline})

    assert result == {"claimed": 1, "done": 1, "failed": 0, "skipped": 0, "conflicts": 0}


@pytest.mark.asyncio
async def test_process_extraction_not_claimable(pipeline: Pipeline) -> None:
    connection = await pipeline.create_connection()
    await pipeline.enqueue_document(connection.id, "guide.txt", GUIDE)
    [extraction] = await pipeline.store.list_extractions(connection_id=connection.id)
    ctx = {"pipeline": pipeline}

    assert await worker.process_extraction(ctx, str(extraction.id)) == "done"
    assert await worker.process_extraction(ctx, str(extraction.id)) is None


@pytest.mark.asyncio
async def test_discovery_without_website_queues_nothing(
    pipeline: Pipeline, enqueued: AsyncMock
) -> None:
    connection = await pipeline.create_connection()

    result = await worker.run_discovery({"pipeline": pipeline}, str(connection.id))

    assert result["status"] == CrawlSessionStatus.FAILED.value
    enqueued.assert_not_awaited()


@pytest.mark.asyncio
async def test_discovery_queues_fetch(
    pipeline: Pipeline, site: dict, enqueued: AsyncMock
) -> None:
    site["/"] = (200, "text/html", '<a href="/about">About</a>')
    site["/about"] = (200, "text/html", "<p>About us</p>")
    connection = await pipeline.create_connection("https://example.com")

    result = await worker.run_discovery({"pipeline": pipeline}, str(connection.id))

    assert result["new_urls"] == 2
    enqueued.assert_awaited_once_with(str(connection.id))


@pytest.fixture
def pool(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    pool = MagicMock()
    pool.enqueue_job = AsyncMock(side_effect=lambda name, *args: MagicMock(job_id=f"{name}-job"))
    monkeypatch.setattr(queue, "get_pool", AsyncMock(return_value=pool))
    return pool


@pytest.mark.asyncio
async def test_enqueue_job_uses_pool(pool: MagicMock) -> None:
    job = await queue.enqueue_fetch("abc")

    assert job is not None
    pool.enqueue_job.assert_awaited_once_with("fetch_pending", "abc")


@pytest.mark.asyncio
async def test_repeat_fetch_after_completed_job_is_queued(pool: MagicMock) -> None:
    """A finished job's kept result never blocks the next request for the connection."""
    first = await queue.enqueue_fetch("abc")
    second = await queue.enqueue_fetch("abc")

    assert first is not None and second is not None
    assert pool.enqueue_job.await_count == 2
    for call in pool.enqueue_job.await_args_list:
        assert call.args == ("fetch_pending", "abc")
        assert "_job_id" not in call.kwargs


@pytest.mark.asyncio
async def test_enqueue_helpers_name_their_jobs(pool: MagicMock) -> None:
    await queue.enqueue_discovery("c1")
    await queue.enqueue_extraction("e1")
    await queue.enqueue_drain()
    await queue.enqueue_drain(25)

    assert [call.args for call in pool.enqueue_job.await_args_list] == [
        ("run_discovery", "c1"),
        ("process_extraction", "e1"),
        ("drain_extractions",),
        ("drain_extractions", 25),
    ]


@pytest.mark.asyncio
async def test_close_pool_releases_connection(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(queue, "_pool", None)
    opened = MagicMock()
    opened.aclose = AsyncMock()
    monkeypatch.setattr(queue, "create_pool", AsyncMock(return_value=opened))

    assert await queue.get_pool() is opened
    await queue.close_pool()
    await queue.close_pool()

    opened.aclose.assert_awaited_once()
    assert queue._pool is None


@pytest.mark.asyncio
async def test_fetch_queues_drain(pipeline: Pipeline, site: dict, enqueued: AsyncMock) -> None:
    body = " ".join(f"word{i}" for i in range(80))
    site["/about"] = (200, "text/html", f"<html><body><main><p>{body}</p></main></body></html>")
    connection = await pipeline.create_connection("https://example.com")
    await pipeline.enqueue_discovery(connection.id, ["https://example.com/about"])

    result = await worker.fetch_pending({"pipeline": pipeline}, str(connection.id))

    assert result["queued"] == 1
    enqueued.assert_awaited_once_with()


@pytest.mark.asyncio
async def test_shutdown_closes_pool(monkeypatch: pytest.MonkeyPatch) -> None:
    closed = AsyncMock()
    monkeypatch.setattr(worker, "close_pool", closed)
    client = MagicMock()
    client.aclose = AsyncMock()

    await worker.shutdown({"http_client": client})

    closed.assert_awaited_once()
    client.aclose.assert_awaited_once()
