"""Worker pool that claims and processes pending extractions.

Each worker has its own identity. A claim is the store's conditional
PENDING -> PROCESSING update, so two workers racing for the same row can
never both win. A row left in PROCESSING longer than the claim timeout
belongs to a crashed worker: it is released back to PENDING and claimed
again under the new worker's identity.
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID, uuid4

import structlog

from attune.config import settings
from attune.db.models import PendingExtraction, utcnow_naive
from attune.extraction.engine import ExtractionEngine, ExtractionOutcome
from attune.store.base import Store

log = structlog.get_logger()

DEFAULT_BATCH = 100


@dataclass
class WorkerReport:
    """Counts from one pass of the worker pool."""

    claimed: int = 0
    done: int = 0
    failed: int = 0
    skipped: int = 0
    conflicts: int = 0

    def record(self, outcome: ExtractionOutcome) -> None:
        if outcome == ExtractionOutcome.DONE:
            self.done += 1
        elif outcome == ExtractionOutcome.FAILED:
            self.failed += 1
        else:
            self.skipped += 1


class ExtractionWorker:
    """A pool of concurrent extraction workers sharing one store."""

    def __init__(
        self,
        store: Store,
        engine: ExtractionEngine,
        *,
        concurrency: int | None = None,
        claim_timeout: timedelta | None = None,
        name: str = "worker",
    ) -> None:
        self._store = store
        self._engine = engine
        self._claim_timeout = claim_timeout or timedelta(seconds=settings.claim_timeout_seconds)
        size = concurrency or settings.extraction_workers
        self.worker_ids = [f"{name}-{i}-{uuid4().hex[:8]}" for i in range(size)]

    async def claim(self, extraction_id: UUID, worker_id: str) -> PendingExtraction | None:
        """Claim a row, reclaiming it first if its previous claim went stale."""
        now = utcnow_naive()
        claimed = await self._store.claim_extraction(extraction_id, worker_id, now=now)
        if claimed is not None:
            return claimed
        if await self._store.release_stale_extraction(
            extraction_id, now=now, stale_after=self._claim_timeout
        ):
            log.warning(
                "Reclaimed stale extraction",
                extraction_id=str(extraction_id),
                worker_id=worker_id,
            )
            return await self._store.claim_extraction(extraction_id, worker_id, now=now)
        return None

    async def process_claimed(
        self, extraction: PendingExtraction, worker_id: str
    ) -> ExtractionOutcome:
        """Process a claimed row; an unexpected error fails only this row."""
        try:
            return await self._engine.process(extraction, worker_id)
        except Exception as e:
            log.exception(
                "Unexpected extraction error",
                extraction_id=str(extraction.id),
                connection_id=str(extraction.connection_id),
                worker_id=worker_id,
            )
            if await self._engine.fail(extraction, worker_id, f"unexpected error: {e}"):
                return ExtractionOutcome.FAILED
            return ExtractionOutcome.SKIPPED

    async def process_one(self, extraction_id: UUID) -> ExtractionOutcome | None:
        """Claim and process a single row. Returns None if the claim failed."""
        worker_id = self.worker_ids[0]
        extraction = await self.claim(extraction_id, worker_id)
        if extraction is None:
            log.info("Extraction not claimable", extraction_id=str(extraction_id))
            return None
        return await self.process_claimed(extraction, worker_id)

    async def run_once(self, limit: int | None = None) -> WorkerReport:
        """Drain up to ``limit`` claimable rows across the pool."""
        ids = await self._store.list_claimable(
            limit=limit or DEFAULT_BATCH,
            now=utcnow_naive(),
            stale_after=self._claim_timeout,
        )
        report = WorkerReport()
        if not ids:
            return report

        queue: asyncio.Queue[UUID] = asyncio.Queue()
        for extraction_id in ids:
            queue.put_nowait(extraction_id)

        async def drain(worker_id: str) -> None:
            while True:
                try:
                    extraction_id = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                extraction = await self.claim(extraction_id, worker_id)
                if extraction is None:
                    report.conflicts += 1
                    continue
                report.claimed += 1
                report.record(await self.process_claimed(extraction, worker_id))

        await asyncio.gather(*(drain(worker_id) for worker_id in self.worker_ids))
        log.info(
            "Extraction pass complete",
            claimed=report.claimed,
            done=report.done,
            failed=report.failed,
            skipped=report.skipped,
            conflicts=report.conflicts,
        )
        return report

    async def reclaim_stale(self) -> int:
        """Release every stale PROCESSING row back to PENDING."""
        count = await self._store.reclaim_stale_extractions(
            now=utcnow_naive(), stale_after=self._claim_timeout
        )
        if count:
            log.warning("Stale extractions reclaimed", count=count)
        return count
