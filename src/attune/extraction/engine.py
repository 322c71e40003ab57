"""Extraction engine: turns a claimed unit of work into knowledge or suggestions.

KNOWLEDGE units classify sanitized page text, split it into fragments,
embed them and add them to the knowledge index. BEHAVIOR units classify
an uploaded document, record its signals and, when confident enough,
create a suggestion whose diff is snapshotted against the live profile.

Capability failures (including timeouts) fail only the unit at hand and
are never retried automatically; re-enqueueing is an operator action.
"""

from dataclasses import dataclass
from enum import StrEnum
from hashlib import sha256

import structlog

from attune.capability.base import ClassificationTask
from attune.capability.metered import MeteredCapability
from attune.config import settings
from attune.db.models import (
    BehaviorSuggestion,
    ConnectionKnowledge,
    PendingExtraction,
    utcnow_naive,
)
from attune.errors import CapabilityError, ConnectionBusyError, ExtractionSourceError
from attune.extraction.chunker import chunk_text
from attune.gate import GateService, ObservationSource
from attune.ingestion.sanitizer import sanitize
from attune.models import BehaviorProfile, BehaviorSignals, GateState
from attune.retrieval.index import KnowledgeIndex
from attune.review import ReviewDecision, ReviewService
from attune.states import DocumentClass, ExtractionStatus, ExtractorType, ProcessingStatus
from attune.store.base import Store

log = structlog.get_logger()

AUTO_APPLY_REVIEWER = "system:auto-apply"


class ExtractionOutcome(StrEnum):
    """Result of processing one claimed extraction."""

    DONE = "done"
    FAILED = "failed"
    # Work was not recorded: the claim was lost or the source was already processed
    SKIPPED = "skipped"


@dataclass(frozen=True)
class EngineConfig:
    """Tunables for the extraction engine."""

    behavior_threshold: float = 0.6
    fragment_min_words: int = 40
    fragment_max_words: int = 220
    auto_apply_enabled: bool = False
    auto_apply_confidence: float = 0.9
    max_chars: int = 1024 * 1024
    min_chars: int = 50

    @classmethod
    def from_settings(cls) -> "EngineConfig":
        return cls(
            behavior_threshold=settings.behavior_confidence_threshold,
            fragment_min_words=settings.fragment_min_words,
            fragment_max_words=settings.fragment_max_words,
            auto_apply_enabled=settings.auto_apply_enabled,
            auto_apply_confidence=settings.auto_apply_confidence,
            max_chars=settings.max_content_chars,
            min_chars=settings.min_content_chars,
        )


class ExtractionEngine:
    """Processes claimed PendingExtraction rows."""

    def __init__(
        self,
        store: Store,
        capability: MeteredCapability,
        index: KnowledgeIndex,
        gate: GateService,
        review: ReviewService,
        config: EngineConfig | None = None,
    ) -> None:
        self._store = store
        self._capability = capability
        self._index = index
        self._gate = gate
        self._review = review
        self._config = config or EngineConfig.from_settings()

    async def process(self, extraction: PendingExtraction, worker_id: str) -> ExtractionOutcome:
        """Run a claimed extraction to completion.

        Args:
            extraction: A row in PROCESSING claimed by ``worker_id``.
            worker_id: The claiming worker; only its claim can finish the row.
        """
        bound = log.bind(
            extraction_id=str(extraction.id),
            connection_id=str(extraction.connection_id),
            worker_id=worker_id,
        )
        try:
            if extraction.extractor_type == ExtractorType.KNOWLEDGE:
                recorded = await self._extract_knowledge(extraction)
            else:
                recorded = await self._extract_behavior(extraction)
        except ExtractionSourceError as e:
            bound.warning("Extraction source unusable", reason=e.reason)
            return await self._fail_outcome(extraction, worker_id, e.reason)
        except CapabilityError as e:
            bound.warning("Extraction failed", operation=e.operation, error=e.message)
            return await self._fail_outcome(extraction, worker_id, e.message)

        finished = await self._store.finish_extraction(
            extraction.id, worker_id, ExtractionStatus.DONE, now=utcnow_naive()
        )
        if not finished:
            bound.warning("Extraction claim lost before completion")
            return ExtractionOutcome.SKIPPED
        bound.info("Extraction complete", extractor_type=extraction.extractor_type.value)
        return ExtractionOutcome.DONE if recorded else ExtractionOutcome.SKIPPED

    async def fail(self, extraction: PendingExtraction, worker_id: str, message: str) -> bool:
        """Mark the extraction, and its document if any, FAILED.

        Returns False, touching nothing, when ``worker_id`` no longer holds
        the claim; the new holder owns the outcome.
        """
        finished = await self._store.finish_extraction(
            extraction.id,
            worker_id,
            ExtractionStatus.FAILED,
            now=utcnow_naive(),
            error=message,
        )
        if not finished:
            log.warning(
                "Extraction claim lost before failure was recorded",
                extraction_id=str(extraction.id),
                worker_id=worker_id,
            )
            return False
        if extraction.behavior_document_id is None:
            return True
        document = await self._store.get_document(extraction.behavior_document_id)
        if document.processing_status in (ProcessingStatus.PENDING, ProcessingStatus.PROCESSING):
            await self._store.update_document(
                document.id,
                {"processing_status": ProcessingStatus.FAILED, "error_message": message},
            )
        return True

    async def _fail_outcome(
        self, extraction: PendingExtraction, worker_id: str, message: str
    ) -> ExtractionOutcome:
        if await self.fail(extraction, worker_id, message):
            return ExtractionOutcome.FAILED
        return ExtractionOutcome.SKIPPED

    def _sanitize(self, text: str) -> str:
        result = sanitize(text, max_chars=self._config.max_chars, min_chars=self._config.min_chars)
        return result.text

    # =========================================================================
    # Knowledge
    # =========================================================================

    async def _extract_knowledge(self, extraction: PendingExtraction) -> bool:
        payload = extraction.payload
        text = self._sanitize(payload.text)
        if not text:
            log.info("Nothing to extract", extraction_id=str(extraction.id))
            return True

        classification = await self._capability.classify(
            text, task=ClassificationTask.KNOWLEDGE, connection_id=extraction.connection_id
        )
        chunks = chunk_text(
            text, self._config.fragment_min_words, self._config.fragment_max_words
        )
        batch = await self._capability.embed(chunks, connection_id=extraction.connection_id)

        fragments = [
            ConnectionKnowledge(
                connection_id=extraction.connection_id,
                page_content_id=extraction.page_content_id,
                source_url=payload.url,
                title=payload.title,
                content=chunk,
                content_hash=sha256(chunk.encode("utf-8")).hexdigest(),
                category=classification.label,
                confidence=classification.confidence,
            )
            for chunk in chunks
        ]
        added = await self._index.index_many(fragments, batch.vectors)
        log.info(
            "Knowledge indexed",
            extraction_id=str(extraction.id),
            connection_id=str(extraction.connection_id),
            category=classification.label,
            confidence=classification.confidence,
            fragments=len(fragments),
            added=added,
        )
        await self._gate.observe(
            extraction.connection_id,
            classification.confidence,
            source=ObservationSource.EXTRACTION,
        )
        return True

    # =========================================================================
    # Behavior
    # =========================================================================

    async def _extract_behavior(self, extraction: PendingExtraction) -> bool:
        if extraction.behavior_document_id is None:
            raise ExtractionSourceError(extraction.id, "no behavior document attached")
        document = await self._store.get_document(extraction.behavior_document_id)
        if document.processing_status == ProcessingStatus.DONE:
            log.info("Document already processed", document_id=str(document.id))
            return False
        if document.processing_status != ProcessingStatus.PROCESSING:
            document = await self._store.update_document(
                document.id,
                {"processing_status": ProcessingStatus.PROCESSING, "error_message": None},
            )

        text = self._sanitize(document.extracted_text or extraction.payload.text)
        if not text:
            await self._store.update_document(
                document.id,
                {
                    "classification": DocumentClass.UNKNOWN,
                    "classification_confidence": 0.0,
                    "processing_status": ProcessingStatus.DONE,
                },
            )
            return True

        classification = await self._capability.classify(
            text, task=ClassificationTask.BEHAVIOR, connection_id=extraction.connection_id
        )
        signals = classification.signals or BehaviorSignals()
        values = {
            "classification_confidence": classification.confidence,
            "signals": signals.model_dump(),
            "processing_status": ProcessingStatus.DONE,
        }

        suggestion = None
        if classification.confidence >= self._config.behavior_threshold:
            values["classification"] = classification.document_class
            suggestion = await self._review.propose(
                document.connection_id,
                classification.suggested_profile or BehaviorProfile(),
                confidence=classification.confidence,
                reasoning=classification.reasoning,
                behavior_document_id=document.id,
            )
        else:
            values["classification"] = DocumentClass.UNKNOWN
            log.info(
                "Classification below threshold, no suggestion",
                document_id=str(document.id),
                confidence=classification.confidence,
                threshold=self._config.behavior_threshold,
            )
        await self._store.update_document(document.id, values)

        state = await self._gate.observe(
            extraction.connection_id,
            classification.confidence,
            source=ObservationSource.EXTRACTION,
        )
        if suggestion is not None:
            await self._maybe_auto_apply(suggestion, state)
        return True

    async def _maybe_auto_apply(self, suggestion: BehaviorSuggestion, state: GateState) -> None:
        if not self._config.auto_apply_enabled:
            return
        if suggestion.confidence_score < self._config.auto_apply_confidence:
            return
        if not self._gate.gate.allows_automation(state):
            log.warning(
                "Auto-apply suppressed by confidence gate",
                connection_id=str(suggestion.connection_id),
                suggestion_id=str(suggestion.id),
                gate_status=state.status.value,
            )
            return
        try:
            await self._review.review(
                suggestion.id,
                ReviewDecision.ACCEPT,
                AUTO_APPLY_REVIEWER,
                notes="Applied automatically",
            )
        except ConnectionBusyError:
            log.info(
                "Auto-apply deferred, connection busy",
                connection_id=str(suggestion.connection_id),
                suggestion_id=str(suggestion.id),
            )
