"""Pipeline facade: the operations callers use to drive Attune.

Inbound operations enqueue discovery and documents, review suggestions
and reset the confidence gate. The outbound operation assembles grounded
prompts for chat turns. Coverage and brand operations report on the
fetched pages and track brand drift. The remaining methods run the
pipeline stages and are what the job worker and CLI call.
"""

from datetime import timedelta
from uuid import UUID, uuid4

import httpx
import structlog

from attune.brand import BrandConfig, BrandDetection, BrandService, DriftCheck
from attune.capability.metered import MeteredCapability
from attune.config import settings
from attune.coverage import (
    CategorizeReport,
    CoverageConfig,
    CoverageReport,
    CoverageService,
    Readiness,
)
from attune.db.models import (
    BehaviorDocument,
    BehaviorSuggestion,
    BrandDriftLog,
    Connection,
    CrawlSession,
    MissedQuestion,
    PendingExtraction,
    source_key_for,
    utcnow_naive,
)
from attune.errors import ConnectionBusyError
from attune.extraction.engine import EngineConfig, ExtractionEngine, ExtractionOutcome
from attune.extraction.worker import ExtractionWorker, WorkerReport
from attune.gate import ConfidenceGate, GateConfig, GateService
from attune.ingestion.discovery import DiscoveryConfig, DiscoveryService, SiteDiscoverer
from attune.ingestion.documents import read_document
from attune.ingestion.fetcher import FetchConfig, FetchReport, PageFetcher
from attune.ingestion.sanitizer import sanitize
from attune.ingestion.urls import normalize_url
from attune.models import ExtractionPayload, GateState, GroundedPrompt
from attune.retrieval.index import KnowledgeIndex
from attune.retrieval.service import RetrievalConfig, RetrievalService
from attune.review import ReviewDecision, ReviewService
from attune.states import (
    ConnectionStatus,
    ContentType,
    DiscoverySource,
    ExtractionSource,
    ExtractorType,
    ProcessingStatus,
)
from attune.store.base import Store

log = structlog.get_logger()


class Pipeline:
    """Wires the pipeline stages over one store and capability."""

    def __init__(
        self,
        store: Store,
        capability: MeteredCapability,
        http_client: httpx.AsyncClient,
        *,
        gate_config: GateConfig | None = None,
        engine_config: EngineConfig | None = None,
        fetch_config: FetchConfig | None = None,
        discovery_config: DiscoveryConfig | None = None,
        retrieval_config: RetrievalConfig | None = None,
        coverage_config: CoverageConfig | None = None,
        brand_config: BrandConfig | None = None,
        worker_concurrency: int | None = None,
        claim_timeout: timedelta | None = None,
        lease_stale_after: timedelta | None = None,
    ) -> None:
        self.store = store
        self.capability = capability
        self._fetch_config = fetch_config or FetchConfig.from_settings()
        self._lease_stale_after = lease_stale_after or timedelta(
            seconds=settings.lease_stale_seconds
        )

        self.gate = GateService(store, ConfidenceGate(gate_config))
        self.review = ReviewService(store, self.gate, lease_stale_after=self._lease_stale_after)
        self.index = KnowledgeIndex(store)
        self.discovery = DiscoveryService(store, SiteDiscoverer(http_client, discovery_config))
        self.fetcher = PageFetcher(store, http_client, self._fetch_config)
        self.engine = ExtractionEngine(
            store, capability, self.index, self.gate, self.review, engine_config
        )
        self.worker = ExtractionWorker(
            store, self.engine, concurrency=worker_concurrency, claim_timeout=claim_timeout
        )
        self.retrieval = RetrievalService(
            store, capability, self.index, self.gate, retrieval_config
        )
        self.coverage = CoverageService(store, capability, coverage_config)
        self.brand = BrandService(store, capability, self.review, brand_config)

    # =========================================================================
    # Connections
    # =========================================================================

    async def create_connection(
        self, website_url: str | None = None, name: str | None = None
    ) -> Connection:
        url = normalize_url(website_url) if website_url else None
        connection = await self.store.create_connection(
            Connection(name=name, website_url=url)
        )
        log.info("Connection created", connection_id=str(connection.id), website_url=url)
        return connection

    async def advance_onboarding(self, connection_id: UUID, target: ConnectionStatus) -> Connection:
        """Move a connection through onboarding under its lease.

        Raises:
            ConnectionBusyError: Another writer holds the lease.
            InvalidTransitionError: ``target`` is not reachable from the current status.
        """
        holder = f"onboarding:{uuid4()}"
        if not await self.store.acquire_lease(
            connection_id, holder, now=utcnow_naive(), stale_after=self._lease_stale_after
        ):
            connection = await self.store.get_connection(connection_id)
            raise ConnectionBusyError(connection_id, connection.state_locked_by)
        try:
            connection = await self.store.update_connection(connection_id, {"status": target})
        finally:
            await self.store.release_lease(connection_id, holder)
        log.info(
            "Onboarding advanced",
            connection_id=str(connection_id),
            status=connection.status.value,
            step=connection.onboarding_step,
        )
        return connection

    # =========================================================================
    # Inbound
    # =========================================================================

    async def enqueue_discovery(
        self,
        connection_id: UUID,
        urls: list[str],
        source_type: DiscoverySource = DiscoverySource.MANUAL,
        *,
        force: bool = False,
    ) -> int:
        return await self.discovery.enqueue(connection_id, urls, source_type, force=force)

    async def enqueue_document(
        self,
        connection_id: UUID,
        filename: str,
        data: bytes,
        content_type: str | None = None,
    ) -> BehaviorDocument:
        """Store an uploaded document and queue it for behavior extraction.

        Raises:
            DocumentParseError: The file type is unsupported or unreadable.
        """
        await self.store.get_connection(connection_id)
        raw_text = read_document(filename, data, content_type)
        result = sanitize(
            raw_text,
            max_chars=self._fetch_config.max_chars,
            min_chars=self._fetch_config.min_chars,
        )
        if result.warnings:
            log.warning(
                "Document sanitized with warnings",
                connection_id=str(connection_id),
                filename=filename,
                warnings=result.warnings,
            )

        document = await self.store.add_document(
            BehaviorDocument(
                connection_id=connection_id,
                filename=filename,
                content_type=content_type,
                size_bytes=len(data),
                extracted_text=result.text,
                sanitizer_warnings=result.warnings,
            )
        )
        await self._enqueue_behavior(document)
        return document

    async def requeue_document(self, document_id: UUID) -> BehaviorDocument:
        """Operator retry for a FAILED document."""
        document = await self.store.update_document(
            document_id, {"processing_status": ProcessingStatus.PENDING, "error_message": None}
        )
        await self._enqueue_behavior(document)
        return document

    async def _enqueue_behavior(self, document: BehaviorDocument) -> PendingExtraction:
        payload = ExtractionPayload(filename=document.filename)
        extraction, created = await self.store.enqueue_extraction(
            PendingExtraction(
                connection_id=document.connection_id,
                source_type=ExtractionSource.MANUAL,
                content_type=ContentType.DOCUMENT,
                extractor_type=ExtractorType.BEHAVIOR,
                behavior_document_id=document.id,
                source_key=source_key_for(ContentType.DOCUMENT, document.id),
                raw_data=payload.model_dump(exclude_none=True, exclude_defaults=True),
            )
        )
        log.info(
            "Document queued for behavior extraction",
            connection_id=str(document.connection_id),
            document_id=str(document.id),
            extraction_id=str(extraction.id),
            created=created,
        )
        return extraction

    async def review_suggestion(
        self,
        suggestion_id: UUID,
        decision: ReviewDecision | str,
        reviewer_id: str,
        notes: str | None = None,
    ) -> BehaviorSuggestion:
        return await self.review.review(suggestion_id, decision, reviewer_id, notes)

    async def reset_confidence_gate(self, connection_id: UUID) -> GateState:
        return await self.gate.reset(connection_id)

    # =========================================================================
    # Outbound
    # =========================================================================

    async def retrieve_grounded_prompt(
        self, connection_id: UUID, user_message: str
    ) -> GroundedPrompt:
        return await self.retrieval.retrieve_grounded_prompt(connection_id, user_message)

    async def record_answer(
        self, connection_id: UUID, question: str, answer: str, confidence: float
    ) -> MissedQuestion | None:
        return await self.retrieval.record_answer(connection_id, question, answer, confidence)

    # =========================================================================
    # Coverage and brand
    # =========================================================================

    async def categorize_pages(self, connection_id: UUID) -> CategorizeReport:
        return await self.coverage.categorize(connection_id)

    async def coverage_report(self, connection_id: UUID) -> CoverageReport:
        return await self.coverage.calculate(connection_id)

    async def launch_readiness(self, connection_id: UUID) -> Readiness:
        return await self.coverage.readiness(connection_id)

    async def detect_brand(self, connection_id: UUID) -> BrandDetection:
        """Detect the brand from fetched pages and propose the behavior it implies.

        Raises:
            InsufficientContentError: Too little fetched text to analyze.
            CapabilityError: The classifier failed.
        """
        return await self.brand.detect(connection_id)

    async def check_brand_drift(self, connection_id: UUID) -> DriftCheck:
        return await self.brand.check_drift(connection_id)

    async def confirm_brand_drift(self, log_id: UUID, actor: str) -> BrandDriftLog:
        return await self.brand.confirm_drift(log_id, actor)

    async def ignore_brand_drift(self, log_id: UUID, actor: str) -> BrandDriftLog:
        return await self.brand.ignore_drift(log_id, actor)

    async def reanalyze_brand(self, connection_id: UUID, actor: str) -> BrandDetection:
        return await self.brand.reanalyze(connection_id, actor)

    # =========================================================================
    # Stages
    # =========================================================================

    async def discover_site(self, connection_id: UUID) -> CrawlSession:
        return await self.discovery.discover(connection_id)

    async def fetch_pending(self, connection_id: UUID, limit: int | None = None) -> FetchReport:
        return await self.fetcher.fetch_pending(connection_id, limit=limit)

    async def process_pending(self, limit: int | None = None) -> WorkerReport:
        return await self.worker.run_once(limit)

    async def process_extraction(self, extraction_id: UUID) -> ExtractionOutcome | None:
        return await self.worker.process_one(extraction_id)

    async def reclaim_stale(self) -> int:
        return await self.worker.reclaim_stale()


def build_pipeline(store: Store, http_client: httpx.AsyncClient) -> Pipeline:
    """Build a pipeline with the OpenAI capability configured from settings."""
    from attune.capability.provider import OpenAICapability

    capability = MeteredCapability(
        OpenAICapability(),
        store,
        timeout=settings.capability_timeout_seconds,
    )
    return Pipeline(store, capability, http_client)
