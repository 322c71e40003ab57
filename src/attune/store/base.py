"""Storage interface shared by the Postgres and in-memory stores.

Every status change goes through a conditional write here: claims,
leases and reviews only succeed when the row is still in the state the
caller expects, so concurrent writers cannot both win.
"""

from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any, Protocol
from uuid import UUID

from attune.db.models import (
    BehaviorDocument,
    BrandDriftLog,
    BrandProfile,
    BehaviorSuggestion,
    Connection,
    ConnectionDiscovery,
    ConnectionKnowledge,
    CrawlSession,
    MissedQuestion,
    PageContent,
    PendingExtraction,
    UsageLog,
)
from attune.models import GateState
from attune.states import (
    DiscoverySource,
    DiscoveryStatus,
    DriftStatus,
    ExtractionStatus,
    MissedQuestionStatus,
    PageCategory,
    PageStatus,
    SuggestionStatus,
)

GateMutator = Callable[[GateState], GateState]


class Store(Protocol):
    """Persistence operations used by the pipeline."""

    # Connections
    async def create_connection(self, connection: Connection) -> Connection: ...

    async def get_connection(self, connection_id: UUID) -> Connection: ...

    async def update_connection(self, connection_id: UUID, values: dict[str, Any]) -> Connection: ...

    async def acquire_lease(
        self, connection_id: UUID, holder: str, *, now: datetime, stale_after: timedelta
    ) -> bool: ...

    async def release_lease(self, connection_id: UUID, holder: str) -> bool: ...

    async def mutate_gate(self, connection_id: UUID, mutate: GateMutator) -> GateState: ...

    # Discovery
    async def add_discoveries(
        self, connection_id: UUID, urls: Sequence[str], source_type: DiscoverySource
    ) -> int: ...

    async def reset_discoveries(self, connection_id: UUID, urls: Sequence[str]) -> int: ...

    async def list_discoveries(
        self,
        connection_id: UUID,
        *,
        status: DiscoveryStatus | None = None,
        limit: int | None = None,
    ) -> list[ConnectionDiscovery]: ...

    async def finish_discovery(
        self,
        discovery_id: UUID,
        status: DiscoveryStatus,
        *,
        now: datetime,
        error: str | None = None,
    ) -> bool: ...

    async def add_crawl_session(self, session: CrawlSession) -> CrawlSession: ...

    async def update_crawl_session(self, session_id: UUID, values: dict[str, Any]) -> None: ...

    # Pages
    async def record_page(self, page: PageContent) -> tuple[PageContent, bool]: ...

    async def list_pages(
        self, connection_id: UUID, *, status: PageStatus | None = None
    ) -> list[PageContent]: ...

    async def categorize_page(
        self, page_id: UUID, category: PageCategory, importance: float
    ) -> None: ...

    # Extractions
    async def enqueue_extraction(
        self, extraction: PendingExtraction
    ) -> tuple[PendingExtraction, bool]: ...

    async def get_extraction(self, extraction_id: UUID) -> PendingExtraction: ...

    async def list_claimable(
        self, *, limit: int, now: datetime, stale_after: timedelta
    ) -> list[UUID]: ...

    async def claim_extraction(
        self, extraction_id: UUID, worker_id: str, *, now: datetime
    ) -> PendingExtraction | None: ...

    async def release_stale_extraction(
        self, extraction_id: UUID, *, now: datetime, stale_after: timedelta
    ) -> bool: ...

    async def reclaim_stale_extractions(self, *, now: datetime, stale_after: timedelta) -> int: ...

    async def finish_extraction(
        self,
        extraction_id: UUID,
        worker_id: str,
        status: ExtractionStatus,
        *,
        now: datetime,
        error: str | None = None,
    ) -> bool: ...

    async def list_extractions(
        self, *, connection_id: UUID | None = None, status: ExtractionStatus | None = None
    ) -> list[PendingExtraction]: ...

    # Documents
    async def add_document(self, document: BehaviorDocument) -> BehaviorDocument: ...

    async def get_document(self, document_id: UUID) -> BehaviorDocument: ...

    async def update_document(
        self, document_id: UUID, values: dict[str, Any]
    ) -> BehaviorDocument: ...

    # Suggestions
    async def add_suggestion(self, suggestion: BehaviorSuggestion) -> BehaviorSuggestion: ...

    async def get_suggestion(self, suggestion_id: UUID) -> BehaviorSuggestion: ...

    async def list_suggestions(
        self, connection_id: UUID, *, status: SuggestionStatus | None = None
    ) -> list[BehaviorSuggestion]: ...

    async def commit_review(
        self,
        suggestion_id: UUID,
        *,
        status: SuggestionStatus,
        reviewer: str,
        notes: str | None,
        now: datetime,
        profile: dict[str, str | None] | None = None,
    ) -> BehaviorSuggestion: ...

    # Knowledge
    async def add_knowledge(self, fragments: Sequence[ConnectionKnowledge]) -> int: ...

    async def query_knowledge(
        self, connection_id: UUID, vector: Sequence[float], k: int
    ) -> list[tuple[ConnectionKnowledge, float]]: ...

    async def count_knowledge(self, connection_id: UUID) -> int: ...

    # Brand
    async def get_brand_profile(self, connection_id: UUID) -> BrandProfile | None: ...

    async def save_brand_profile(self, profile: BrandProfile) -> BrandProfile: ...

    async def add_drift_log(self, entry: BrandDriftLog) -> BrandDriftLog: ...

    async def get_drift_log(self, log_id: UUID) -> BrandDriftLog: ...

    async def list_drift_logs(
        self, connection_id: UUID, *, status: DriftStatus | None = None
    ) -> list[BrandDriftLog]: ...

    async def resolve_drift(
        self, log_id: UUID, status: DriftStatus, *, actor: str, now: datetime
    ) -> BrandDriftLog: ...

    # Feedback and accounting
    async def add_missed_question(self, question: MissedQuestion) -> MissedQuestion: ...

    async def list_missed_questions(
        self, connection_id: UUID, *, status: MissedQuestionStatus | None = None
    ) -> list[MissedQuestion]: ...

    async def add_usage(self, entry: UsageLog) -> UsageLog: ...

    async def list_usage(self, *, connection_id: UUID | None = None) -> list[UsageLog]: ...
