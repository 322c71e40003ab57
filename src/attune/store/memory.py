"""In-process store with the same semantics as the Postgres store.

All writes run under a single asyncio.Lock, which plays the role of the
database's row-level atomicity. Records are handed out as live objects;
callers change them only through store methods.
"""

import asyncio
import itertools
import math
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import structlog

from attune.db.models import (
    BRAND_PROFILE_FIELDS,
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
    utcnow_naive,
)
from attune.errors import InvalidTransitionError, NotFoundError
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
    ensure_transition,
)
from attune.store.base import GateMutator

log = structlog.get_logger()

_ACTIVE = (ExtractionStatus.PENDING, ExtractionStatus.PROCESSING)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm."""
    if len(a) != len(b):
        raise ValueError(f"Vector dimensions differ: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class MemoryStore:
    """Dictionary-backed store used by tests and local dry runs."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._seq = itertools.count()
        self._order: dict[UUID, int] = {}
        self.connections: dict[UUID, Connection] = {}
        self.discoveries: dict[UUID, ConnectionDiscovery] = {}
        self.crawl_sessions: dict[UUID, CrawlSession] = {}
        self.pages: dict[UUID, PageContent] = {}
        self.extractions: dict[UUID, PendingExtraction] = {}
        self.documents: dict[UUID, BehaviorDocument] = {}
        self.suggestions: dict[UUID, BehaviorSuggestion] = {}
        self.knowledge: dict[UUID, ConnectionKnowledge] = {}
        self.brand_profiles: dict[UUID, BrandProfile] = {}
        self.drift_logs: dict[UUID, BrandDriftLog] = {}
        self.missed_questions: dict[UUID, MissedQuestion] = {}
        self.usage: list[UsageLog] = []

    def _track(self, record_id: UUID) -> None:
        self._order[record_id] = next(self._seq)

    @staticmethod
    def _require(records: dict[UUID, Any], entity: str, record_id: UUID) -> Any:
        record = records.get(record_id)
        if record is None:
            raise NotFoundError(entity, record_id)
        return record

    # =========================================================================
    # Connections
    # =========================================================================

    async def create_connection(self, connection: Connection) -> Connection:
        async with self._lock:
            self.connections[connection.id] = connection
            return connection

    async def get_connection(self, connection_id: UUID) -> Connection:
        return self._require(self.connections, "Connection", connection_id)

    async def update_connection(self, connection_id: UUID, values: dict[str, Any]) -> Connection:
        async with self._lock:
            connection = self._require(self.connections, "Connection", connection_id)
            values = dict(values)
            status = values.pop("status", None)
            if status is not None and status != connection.status:
                ensure_transition("connection", connection.status, status)
                connection.set_status(status)
            for name, value in values.items():
                setattr(connection, name, value)
            connection.updated_at = utcnow_naive()
            return connection

    async def acquire_lease(
        self, connection_id: UUID, holder: str, *, now: datetime, stale_after: timedelta
    ) -> bool:
        async with self._lock:
            connection = self._require(self.connections, "Connection", connection_id)
            held = connection.state_locked_by is not None
            stale = connection.state_locked_at is None or connection.state_locked_at <= now - stale_after
            if held and not stale:
                return False
            if held:
                log.warning(
                    "Taking over stale lease",
                    connection_id=str(connection_id),
                    previous_holder=connection.state_locked_by,
                )
            connection.state_locked_by = holder
            connection.state_locked_at = now
            return True

    async def release_lease(self, connection_id: UUID, holder: str) -> bool:
        async with self._lock:
            connection = self._require(self.connections, "Connection", connection_id)
            if connection.state_locked_by != holder:
                return False
            connection.state_locked_by = None
            connection.state_locked_at = None
            return True

    async def mutate_gate(self, connection_id: UUID, mutate: GateMutator) -> GateState:
        async with self._lock:
            connection = self._require(self.connections, "Connection", connection_id)
            state = mutate(connection.gate_state())
            connection.apply_gate_state(state)
            connection.updated_at = utcnow_naive()
            return state

    # =========================================================================
    # Discovery
    # =========================================================================

    def _discovery_by_url(self, connection_id: UUID, url: str) -> ConnectionDiscovery | None:
        for row in self.discoveries.values():
            if row.connection_id == connection_id and row.url == url:
                return row
        return None

    async def add_discoveries(
        self, connection_id: UUID, urls: Sequence[str], source_type: DiscoverySource
    ) -> int:
        async with self._lock:
            added = 0
            for url in dict.fromkeys(urls):
                if self._discovery_by_url(connection_id, url) is not None:
                    continue
                row = ConnectionDiscovery(
                    connection_id=connection_id, url=url, source_type=source_type
                )
                self.discoveries[row.id] = row
                self._track(row.id)
                added += 1
            return added

    async def reset_discoveries(self, connection_id: UUID, urls: Sequence[str]) -> int:
        async with self._lock:
            reset = 0
            for url in urls:
                row = self._discovery_by_url(connection_id, url)
                if row is None or row.status == DiscoveryStatus.DISCOVERED:
                    continue
                ensure_transition("discovery", row.status, DiscoveryStatus.DISCOVERED)
                row.status = DiscoveryStatus.DISCOVERED
                row.error_message = None
                row.fetched_at = None
                row.updated_at = utcnow_naive()
                reset += 1
            return reset

    async def list_discoveries(
        self,
        connection_id: UUID,
        *,
        status: DiscoveryStatus | None = None,
        limit: int | None = None,
    ) -> list[ConnectionDiscovery]:
        rows = [
            row
            for row in self.discoveries.values()
            if row.connection_id == connection_id and (status is None or row.status == status)
        ]
        rows.sort(key=lambda row: self._order[row.id])
        return rows[:limit] if limit is not None else rows

    async def finish_discovery(
        self,
        discovery_id: UUID,
        status: DiscoveryStatus,
        *,
        now: datetime,
        error: str | None = None,
    ) -> bool:
        async with self._lock:
            row = self._require(self.discoveries, "ConnectionDiscovery", discovery_id)
            if row.status != DiscoveryStatus.DISCOVERED:
                return False
            ensure_transition("discovery", row.status, status)
            row.status = status
            row.error_message = error
            row.fetched_at = now
            row.updated_at = now
            return True

    async def add_crawl_session(self, session: CrawlSession) -> CrawlSession:
        async with self._lock:
            self.crawl_sessions[session.id] = session
            return session

    async def update_crawl_session(self, session_id: UUID, values: dict[str, Any]) -> None:
        async with self._lock:
            session = self._require(self.crawl_sessions, "CrawlSession", session_id)
            for name, value in values.items():
                setattr(session, name, value)

    # =========================================================================
    # Pages
    # =========================================================================

    async def record_page(self, page: PageContent) -> tuple[PageContent, bool]:
        async with self._lock:
            canonical = None
            if page.status == PageStatus.FETCHED and page.content_hash:
                canonical = next(
                    (
                        row
                        for row in self.pages.values()
                        if row.connection_id == page.connection_id
                        and row.status == PageStatus.FETCHED
                        and not row.is_duplicate
                        and row.content_hash == page.content_hash
                    ),
                    None,
                )
            duplicate = canonical is not None

            existing = next(
                (
                    row
                    for row in self.pages.values()
                    if row.connection_id == page.connection_id and row.url == page.url
                ),
                None,
            )
            if existing is not None and canonical is not None and existing.id == canonical.id:
                existing.updated_at = utcnow_naive()
                return existing, True

            if existing is not None:
                for name in (
                    "discovery_id",
                    "status",
                    "title",
                    "clean_text",
                    "word_count",
                    "content_hash",
                    "error_message",
                ):
                    setattr(existing, name, getattr(page, name))
                existing.is_duplicate = duplicate
                existing.updated_at = utcnow_naive()
                return existing, duplicate

            page.is_duplicate = duplicate
            self.pages[page.id] = page
            self._track(page.id)
            return page, duplicate

    async def list_pages(
        self, connection_id: UUID, *, status: PageStatus | None = None
    ) -> list[PageContent]:
        rows = [
            row
            for row in self.pages.values()
            if row.connection_id == connection_id and (status is None or row.status == status)
        ]
        rows.sort(key=lambda row: self._order[row.id])
        return rows

    async def categorize_page(
        self, page_id: UUID, category: PageCategory, importance: float
    ) -> None:
        async with self._lock:
            page = self._require(self.pages, "PageContent", page_id)
            page.category = category
            page.importance_score = importance
            page.updated_at = utcnow_naive()

    # =========================================================================
    # Extractions
    # =========================================================================

    async def enqueue_extraction(
        self, extraction: PendingExtraction
    ) -> tuple[PendingExtraction, bool]:
        async with self._lock:
            for row in self.extractions.values():
                if (
                    row.source_key == extraction.source_key
                    and row.extractor_type == extraction.extractor_type
                    and row.status in _ACTIVE
                ):
                    return row, False
            self.extractions[extraction.id] = extraction
            self._track(extraction.id)
            return extraction, True

    async def get_extraction(self, extraction_id: UUID) -> PendingExtraction:
        return self._require(self.extractions, "PendingExtraction", extraction_id)

    async def list_claimable(
        self, *, limit: int, now: datetime, stale_after: timedelta
    ) -> list[UUID]:
        cutoff = now - stale_after
        rows = [
            row
            for row in self.extractions.values()
            if row.status == ExtractionStatus.PENDING
            or (
                row.status == ExtractionStatus.PROCESSING
                and row.claimed_at is not None
                and row.claimed_at <= cutoff
            )
        ]
        rows.sort(key=lambda row: self._order[row.id])
        return [row.id for row in rows[:limit]]

    async def claim_extraction(
        self, extraction_id: UUID, worker_id: str, *, now: datetime
    ) -> PendingExtraction | None:
        async with self._lock:
            row = self._require(self.extractions, "PendingExtraction", extraction_id)
            if row.status != ExtractionStatus.PENDING:
                return None
            row.status = ExtractionStatus.PROCESSING
            row.claimed_by = worker_id
            row.claimed_at = now
            row.attempts += 1
            row.updated_at = now
            return row

    async def release_stale_extraction(
        self, extraction_id: UUID, *, now: datetime, stale_after: timedelta
    ) -> bool:
        async with self._lock:
            row = self._require(self.extractions, "PendingExtraction", extraction_id)
            if (
                row.status != ExtractionStatus.PROCESSING
                or row.claimed_at is None
                or row.claimed_at > now - stale_after
            ):
                return False
            row.status = ExtractionStatus.PENDING
            row.claimed_by = None
            row.claimed_at = None
            row.updated_at = now
            return True

    async def reclaim_stale_extractions(self, *, now: datetime, stale_after: timedelta) -> int:
        stale = [
            row.id
            for row in self.extractions.values()
            if row.status == ExtractionStatus.PROCESSING
            and row.claimed_at is not None
            and row.claimed_at <= now - stale_after
        ]
        count = 0
        for extraction_id in stale:
            if await self.release_stale_extraction(extraction_id, now=now, stale_after=stale_after):
                count += 1
        return count

    async def finish_extraction(
        self,
        extraction_id: UUID,
        worker_id: str,
        status: ExtractionStatus,
        *,
        now: datetime,
        error: str | None = None,
    ) -> bool:
        async with self._lock:
            row = self._require(self.extractions, "PendingExtraction", extraction_id)
            if row.status != ExtractionStatus.PROCESSING or row.claimed_by != worker_id:
                return False
            ensure_transition("extraction", row.status, status)
            row.status = status
            row.error_message = error
            row.completed_at = now
            row.updated_at = now
            return True

    async def list_extractions(
        self, *, connection_id: UUID | None = None, status: ExtractionStatus | None = None
    ) -> list[PendingExtraction]:
        rows = [
            row
            for row in self.extractions.values()
            if (connection_id is None or row.connection_id == connection_id)
            and (status is None or row.status == status)
        ]
        rows.sort(key=lambda row: self._order[row.id])
        return rows

    # =========================================================================
    # Documents
    # =========================================================================

    async def add_document(self, document: BehaviorDocument) -> BehaviorDocument:
        async with self._lock:
            self.documents[document.id] = document
            return document

    async def get_document(self, document_id: UUID) -> BehaviorDocument:
        return self._require(self.documents, "BehaviorDocument", document_id)

    async def update_document(self, document_id: UUID, values: dict[str, Any]) -> BehaviorDocument:
        async with self._lock:
            document = self._require(self.documents, "BehaviorDocument", document_id)
            status = values.get("processing_status")
            if status is not None and status != document.processing_status:
                ensure_transition("document", document.processing_status, status)
            for name, value in values.items():
                setattr(document, name, value)
            document.updated_at = utcnow_naive()
            return document

    # =========================================================================
    # Suggestions
    # =========================================================================

    async def add_suggestion(self, suggestion: BehaviorSuggestion) -> BehaviorSuggestion:
        async with self._lock:
            self.suggestions[suggestion.id] = suggestion
            self._track(suggestion.id)
            return suggestion

    async def get_suggestion(self, suggestion_id: UUID) -> BehaviorSuggestion:
        return self._require(self.suggestions, "BehaviorSuggestion", suggestion_id)

    async def list_suggestions(
        self, connection_id: UUID, *, status: SuggestionStatus | None = None
    ) -> list[BehaviorSuggestion]:
        rows = [
            row
            for row in self.suggestions.values()
            if row.connection_id == connection_id and (status is None or row.status == status)
        ]
        rows.sort(key=lambda row: self._order[row.id], reverse=True)
        return rows

    async def commit_review(
        self,
        suggestion_id: UUID,
        *,
        status: SuggestionStatus,
        reviewer: str,
        notes: str | None,
        now: datetime,
        profile: dict[str, str | None] | None = None,
    ) -> BehaviorSuggestion:
        async with self._lock:
            suggestion = self._require(self.suggestions, "BehaviorSuggestion", suggestion_id)
            if suggestion.status != SuggestionStatus.PENDING:
                raise InvalidTransitionError("suggestion", suggestion.status, status)
            ensure_transition("suggestion", suggestion.status, status)
            connection = self._require(self.connections, "Connection", suggestion.connection_id)

            suggestion.status = status
            suggestion.reviewed_by = reviewer
            suggestion.reviewed_at = now
            suggestion.review_notes = notes
            suggestion.updated_at = now
            if profile:
                for name, value in profile.items():
                    setattr(connection, name, value)
                connection.updated_at = now
            return suggestion

    # =========================================================================
    # Knowledge
    # =========================================================================

    async def add_knowledge(self, fragments: Sequence[ConnectionKnowledge]) -> int:
        async with self._lock:
            seen = {(row.connection_id, row.content_hash) for row in self.knowledge.values()}
            added = 0
            for fragment in fragments:
                key = (fragment.connection_id, fragment.content_hash)
                if key in seen:
                    continue
                seen.add(key)
                self.knowledge[fragment.id] = fragment
                self._track(fragment.id)
                added += 1
            return added

    async def query_knowledge(
        self, connection_id: UUID, vector: Sequence[float], k: int
    ) -> list[tuple[ConnectionKnowledge, float]]:
        scored = [
            (row, cosine_similarity(row.embedding, vector))
            for row in list(self.knowledge.values())
            if row.connection_id == connection_id and row.embedding is not None
        ]
        scored.sort(key=lambda item: (-item[1], -item[0].created_at.timestamp(), -self._order[item[0].id]))
        return scored[:k]

    async def count_knowledge(self, connection_id: UUID) -> int:
        return sum(1 for row in self.knowledge.values() if row.connection_id == connection_id)

    # =========================================================================
    # Brand
    # =========================================================================

    async def get_brand_profile(self, connection_id: UUID) -> BrandProfile | None:
        return self.brand_profiles.get(connection_id)

    async def save_brand_profile(self, profile: BrandProfile) -> BrandProfile:
        async with self._lock:
            self._require(self.connections, "Connection", profile.connection_id)
            existing = self.brand_profiles.get(profile.connection_id)
            if existing is None:
                self.brand_profiles[profile.connection_id] = profile
                return profile
            for name in BRAND_PROFILE_FIELDS:
                setattr(existing, name, getattr(profile, name))
            existing.updated_at = utcnow_naive()
            return existing

    async def add_drift_log(self, entry: BrandDriftLog) -> BrandDriftLog:
        async with self._lock:
            self.drift_logs[entry.id] = entry
            self._track(entry.id)
            return entry

    async def get_drift_log(self, log_id: UUID) -> BrandDriftLog:
        return self._require(self.drift_logs, "BrandDriftLog", log_id)

    async def list_drift_logs(
        self, connection_id: UUID, *, status: DriftStatus | None = None
    ) -> list[BrandDriftLog]:
        rows = [
            row
            for row in self.drift_logs.values()
            if row.connection_id == connection_id and (status is None or row.status == status)
        ]
        rows.sort(key=lambda row: self._order[row.id], reverse=True)
        return rows

    async def resolve_drift(
        self, log_id: UUID, status: DriftStatus, *, actor: str, now: datetime
    ) -> BrandDriftLog:
        async with self._lock:
            entry = self._require(self.drift_logs, "BrandDriftLog", log_id)
            ensure_transition("brand_drift", entry.status, status)
            entry.status = status
            entry.resolved_by = actor
            entry.resolved_at = now
            entry.updated_at = now
            return entry

    # =========================================================================
    # Feedback and accounting
    # =========================================================================

    async def add_missed_question(self, question: MissedQuestion) -> MissedQuestion:
        async with self._lock:
            self.missed_questions[question.id] = question
            self._track(question.id)
            return question

    async def list_missed_questions(
        self, connection_id: UUID, *, status: MissedQuestionStatus | None = None
    ) -> list[MissedQuestion]:
        rows = [
            row
            for row in self.missed_questions.values()
            if row.connection_id == connection_id and (status is None or row.status == status)
        ]
        rows.sort(key=lambda row: self._order[row.id])
        return rows

    async def add_usage(self, entry: UsageLog) -> UsageLog:
        async with self._lock:
            self.usage.append(entry)
            return entry

    async def list_usage(self, *, connection_id: UUID | None = None) -> list[UsageLog]:
        return [row for row in self.usage if connection_id is None or row.connection_id == connection_id]
