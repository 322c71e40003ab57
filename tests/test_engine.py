"""Tests for the extraction engine and worker pool."""

from collections.abc import Callable
from datetime import timedelta
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from attune.db.models import Connection, PendingExtraction, source_key_for, utcnow_naive
from attune.extraction.engine import AUTO_APPLY_REVIEWER, EngineConfig, ExtractionOutcome
from attune.extraction.worker import WorkerReport
from attune.models import BehaviorProfile, Classification
from attune.service import Pipeline
from attune.states import (
    ContentType,
    DocumentClass,
    ExtractionStatus,
    ExtractorType,
    GateStatus,
    ProcessingStatus,
    SuggestionStatus,
)
from attune.store.memory import MemoryStore

GUIDE = (
    "Our brand voice is warm and friendly. Greet every customer by name, "
    "thank them for reaching out and keep answers short and helpful."
)
ABOUT = " ".join(f"Acme builds reliable widgets for teams number {i}." for i in range(30))


async def formal_connection(pipeline: Pipeline) -> Connection:
    connection = await pipeline.create_connection("https://acme.example", name="Acme")
    return await pipeline.store.update_connection(connection.id, {"tone": "formal"})


async def enqueue_knowledge(store: MemoryStore, connection: Connection, text: str = ABOUT):
    extraction, _ = await store.enqueue_extraction(
        PendingExtraction(
            connection_id=connection.id,
            content_type=ContentType.PAGE,
            extractor_type=ExtractorType.KNOWLEDGE,
            source_key=source_key_for(ContentType.PAGE, uuid4()),
            raw_data={"text": text, "url": "https://acme.example/about", "title": "About"},
        )
    )
    return extraction


class TestBehaviorExtraction:
    """Tests for document classification and suggestions."""

    @pytest.mark.asyncio
    async def test_confident_document_creates_suggestion(
        self, pipeline: Pipeline, store: MemoryStore
    ) -> None:
        """A 0.95 classification produces a pending suggestion and leaves the profile alone."""
        connection = await formal_connection(pipeline)
        document = await pipeline.enqueue_document(connection.id, "guide.md", GUIDE.encode())

        report = await pipeline.process_pending()

        assert report == WorkerReport(claimed=1, done=1)
        [suggestion] = await store.list_suggestions(connection.id)
        assert suggestion.status == SuggestionStatus.PENDING
        assert suggestion.diff == {"tone": {"from": "formal", "to": "friendly"}}
        assert suggestion.confidence_score == 0.95
        assert suggestion.behavior_document_id == document.id
        assert document.processing_status == ProcessingStatus.DONE
        assert document.classification == DocumentClass.BRAND_GUIDELINES
        assert document.signals["empathy"] == 0.7
        assert connection.tone == "formal"

    @pytest.mark.asyncio
    async def test_below_threshold_is_unknown(
        self, pipeline: Pipeline, store: MemoryStore, capability
    ) -> None:
        """Low confidence yields UNKNOWN, no suggestion and a gate penalty."""
        capability.behavior = Classification(
            label="sales_guide",
            confidence=0.4,
            suggested_profile=BehaviorProfile(sales_intensity="High"),
        )
        connection = await formal_connection(pipeline)
        document = await pipeline.enqueue_document(connection.id, "pitch.txt", GUIDE.encode())

        await pipeline.process_pending()

        assert document.classification == DocumentClass.UNKNOWN
        assert document.classification_confidence == 0.4
        assert await store.list_suggestions(connection.id) == []
        assert (connection.health_score, connection.confidence_gate_status) == (
            95.0,
            GateStatus.WARNING,
        )

    @pytest.mark.asyncio
    async def test_matching_profile_no_suggestion(
        self, pipeline: Pipeline, store: MemoryStore
    ) -> None:
        """An empty diff creates nothing to review."""
        connection = await pipeline.create_connection()
        await store.update_connection(connection.id, {"tone": "friendly"})
        await pipeline.enqueue_document(connection.id, "guide.md", GUIDE.encode())

        await pipeline.process_pending()

        assert await store.list_suggestions(connection.id) == []

    @pytest.mark.asyncio
    async def test_capability_failure_fails_unit(
        self, pipeline: Pipeline, store: MemoryStore, capability
    ) -> None:
        """A provider error fails the extraction and its document without retry."""
        capability.classify_error = RuntimeError("upstream 503")
        connection = await formal_connection(pipeline)
        document = await pipeline.enqueue_document(connection.id, "guide.md", GUIDE.encode())

        report = await pipeline.process_pending()

        assert (report.claimed, report.failed) == (1, 1)
        [extraction] = await store.list_extractions(connection_id=connection.id)
        assert extraction.status == ExtractionStatus.FAILED
        assert "upstream 503" in (extraction.error_message or "")
        assert document.processing_status == ProcessingStatus.FAILED
        assert (await pipeline.process_pending()).claimed == 0

    @pytest.mark.asyncio
    async def test_requeue_after_failure(
        self, pipeline: Pipeline, store: MemoryStore, capability
    ) -> None:
        """An operator retry processes a failed document again."""
        capability.classify_error = RuntimeError("upstream 503")
        connection = await formal_connection(pipeline)
        document = await pipeline.enqueue_document(connection.id, "guide.md", GUIDE.encode())
        await pipeline.process_pending()

        capability.classify_error = None
        await pipeline.requeue_document(document.id)
        report = await pipeline.process_pending()

        assert report.done == 1
        assert document.processing_status == ProcessingStatus.DONE
        assert len(await store.list_suggestions(connection.id)) == 1

    @pytest.mark.asyncio
    async def test_missing_document_fails(self, pipeline: Pipeline, store: MemoryStore) -> None:
        """A behavior unit without a document is failed immediately."""
        connection = await pipeline.create_connection()
        extraction, _ = await store.enqueue_extraction(
            PendingExtraction(
                connection_id=connection.id,
                content_type=ContentType.DOCUMENT,
                extractor_type=ExtractorType.BEHAVIOR,
                source_key="document:orphan",
            )
        )
        assert await pipeline.process_extraction(extraction.id) == ExtractionOutcome.FAILED
        assert extraction.error_message == "no behavior document attached"


class TestAutoApply:
    """Tests for automatic application of confident suggestions."""

    @pytest.mark.asyncio
    async def test_applies_when_enabled(
        self, make_pipeline: Callable[..., Pipeline], store: MemoryStore
    ) -> None:
        """A confident suggestion is accepted by the system reviewer."""
        pipeline = make_pipeline(engine_config=EngineConfig(auto_apply_enabled=True))
        connection = await formal_connection(pipeline)
        await pipeline.enqueue_document(connection.id, "guide.md", GUIDE.encode())

        await pipeline.process_pending()

        [suggestion] = await store.list_suggestions(connection.id)
        assert suggestion.status == SuggestionStatus.ACCEPTED
        assert suggestion.reviewed_by == AUTO_APPLY_REVIEWER
        assert connection.tone == "friendly"
        assert connection.drift_count == 1

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, pipeline: Pipeline, store: MemoryStore) -> None:
        """Without the flag suggestions wait for a human."""
        connection = await formal_connection(pipeline)
        await pipeline.enqueue_document(connection.id, "guide.md", GUIDE.encode())
        await pipeline.process_pending()
        [suggestion] = await store.list_suggestions(connection.id)
        assert suggestion.status == SuggestionStatus.PENDING

    @pytest.mark.asyncio
    async def test_suppressed_by_failed_gate(
        self, make_pipeline: Callable[..., Pipeline], store: MemoryStore
    ) -> None:
        """A FAILED gate blocks auto-apply even at high confidence."""
        pipeline = make_pipeline(engine_config=EngineConfig(auto_apply_enabled=True))
        connection = await formal_connection(pipeline)
        connection.confidence_gate_status = GateStatus.FAILED
        await pipeline.enqueue_document(connection.id, "guide.md", GUIDE.encode())

        await pipeline.process_pending()

        [suggestion] = await store.list_suggestions(connection.id)
        assert suggestion.status == SuggestionStatus.PENDING
        assert connection.tone == "formal"

    @pytest.mark.asyncio
    async def test_below_auto_confidence(
        self, make_pipeline: Callable[..., Pipeline], store: MemoryStore, capability
    ) -> None:
        """Suggestions between the two thresholds still need review."""
        capability.behavior = capability.behavior.model_copy(update={"confidence": 0.7})
        pipeline = make_pipeline(engine_config=EngineConfig(auto_apply_enabled=True))
        connection = await formal_connection(pipeline)
        await pipeline.enqueue_document(connection.id, "guide.md", GUIDE.encode())

        await pipeline.process_pending()

        [suggestion] = await store.list_suggestions(connection.id)
        assert suggestion.status == SuggestionStatus.PENDING


class TestKnowledgeExtraction:
    """Tests for page knowledge indexing."""

    @pytest.mark.asyncio
    async def test_fragments_indexed(
        self, pipeline: Pipeline, store: MemoryStore, capability
    ) -> None:
        """Page text is chunked, embedded and stored with its category."""
        connection = await pipeline.create_connection()
        await enqueue_knowledge(store, connection)

        report = await pipeline.process_pending()

        assert report.done == 1
        fragments = [k for k in store.knowledge.values() if k.connection_id == connection.id]
        assert len(fragments) == len(capability.embed_calls[0])
        assert all(k.category == "about" for k in fragments)
        assert all(k.source_url == "https://acme.example/about" for k in fragments)
        assert all(k.embedding for k in fragments)

    @pytest.mark.asyncio
    async def test_duplicate_content_indexed_once(
        self, pipeline: Pipeline, store: MemoryStore
    ) -> None:
        """The same text from two pages adds fragments only once."""
        connection = await pipeline.create_connection()
        await enqueue_knowledge(store, connection)
        await enqueue_knowledge(store, connection)

        report = await pipeline.process_pending()

        assert report.done == 2
        first = await store.count_knowledge(connection.id)
        assert first == len({k.content_hash for k in store.knowledge.values()})


class TestWorker:
    """Tests for claiming across the worker pool."""

    @pytest.mark.asyncio
    async def test_pool_drains_queue(self, pipeline: Pipeline, store: MemoryStore) -> None:
        """Every claimable row is processed exactly once."""
        connection = await pipeline.create_connection()
        for i in range(7):
            await enqueue_knowledge(store, connection, f"{ABOUT} Page {i}.")

        report = await pipeline.process_pending()

        assert (report.claimed, report.done, report.conflicts) == (7, 7, 0)
        rows = await store.list_extractions(connection_id=connection.id)
        assert {row.status for row in rows} == {ExtractionStatus.DONE}
        assert {row.attempts for row in rows} == {1}

    @pytest.mark.asyncio
    async def test_stale_claim_reprocessed(self, pipeline: Pipeline, store: MemoryStore) -> None:
        """A row abandoned by a crashed worker is reclaimed and completed."""
        connection = await pipeline.create_connection()
        extraction = await enqueue_knowledge(store, connection)
        crashed_at = utcnow_naive() - timedelta(minutes=10)
        await store.claim_extraction(extraction.id, "crashed-worker", now=crashed_at)

        report = await pipeline.process_pending()

        assert report.done == 1
        assert extraction.status == ExtractionStatus.DONE
        assert extraction.attempts == 2
        assert extraction.claimed_by in pipeline.worker.worker_ids

    @pytest.mark.asyncio
    async def test_fresh_claim_left_alone(self, pipeline: Pipeline, store: MemoryStore) -> None:
        """A live claim is neither listed nor stolen."""
        connection = await pipeline.create_connection()
        extraction = await enqueue_knowledge(store, connection)
        await store.claim_extraction(extraction.id, "busy-worker", now=utcnow_naive())

        assert await pipeline.process_extraction(extraction.id) is None
        assert (await pipeline.process_pending()).claimed == 0
        assert extraction.claimed_by == "busy-worker"

    @pytest.mark.asyncio
    async def test_reclaim_stale(self, pipeline: Pipeline, store: MemoryStore) -> None:
        """The sweep releases stale rows back to PENDING."""
        connection = await pipeline.create_connection()
        extraction = await enqueue_knowledge(store, connection)
        await store.claim_extraction(
            extraction.id, "gone", now=utcnow_naive() - timedelta(hours=1)
        )

        assert await pipeline.reclaim_stale() == 1
        assert extraction.status == ExtractionStatus.PENDING
        assert extraction.claimed_by is None

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_row(self, pipeline: Pipeline, store: MemoryStore) -> None:
        """A non-capability exception fails only the row it happened on."""
        connection = await pipeline.create_connection()
        extraction = await enqueue_knowledge(store, connection)
        store.add_knowledge = AsyncMock(side_effect=RuntimeError("disk full"))  # type: ignore[method-assign]

        report = await pipeline.process_pending()

        assert report.failed == 1
        assert extraction.status == ExtractionStatus.FAILED
        assert extraction.error_message == "unexpected error: disk full"

    @pytest.mark.asyncio
    async def test_lost_claim_leaves_document_alone(
        self, pipeline: Pipeline, store: MemoryStore, capability
    ) -> None:
        """A worker whose stale claim was taken over cannot fail the document."""
        capability.classify_error = RuntimeError("upstream 503")
        connection = await formal_connection(pipeline)
        document = await pipeline.enqueue_document(connection.id, "guide.md", GUIDE.encode())
        [extraction] = await store.list_extractions(connection_id=connection.id)
        await store.claim_extraction(
            extraction.id, "slow-worker", now=utcnow_naive() - timedelta(hours=1)
        )
        assert await pipeline.reclaim_stale() == 1
        await store.claim_extraction(extraction.id, "fresh-worker", now=utcnow_naive())

        outcome = await pipeline.engine.process(extraction, "slow-worker")

        assert outcome == ExtractionOutcome.SKIPPED
        assert extraction.status == ExtractionStatus.PROCESSING
        assert extraction.claimed_by == "fresh-worker"
        assert extraction.error_message is None
        assert document.processing_status == ProcessingStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_fail_reports_lost_claim(self, pipeline: Pipeline, store: MemoryStore) -> None:
        """fail() records nothing for a worker that no longer holds the row."""
        connection = await pipeline.create_connection()
        extraction = await enqueue_knowledge(store, connection)
        await store.claim_extraction(extraction.id, "owner", now=utcnow_naive())

        assert await pipeline.engine.fail(extraction, "intruder", "boom") is False
        assert extraction.status == ExtractionStatus.PROCESSING
        assert await pipeline.engine.fail(extraction, "owner", "boom") is True
        assert extraction.status == ExtractionStatus.FAILED
