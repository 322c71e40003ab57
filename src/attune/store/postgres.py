"""PostgreSQL store backed by SQLAlchemy async sessions.

Claims, leases and terminal status writes are single conditional UPDATE
statements with RETURNING, so the database decides which concurrent
writer wins. Uniqueness (discovered URLs, active extractions, knowledge
content hashes) is enforced by indexes and ON CONFLICT DO NOTHING.
"""

from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, func, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import col

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

_PAGE_FIELDS = (
    "discovery_id",
    "status",
    "title",
    "clean_text",
    "word_count",
    "content_hash",
    "error_message",
)


class PostgresStore:
    """Store implementation over an async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from attune.db.connection import get_session_factory

            session_factory = get_session_factory()
        self._session_factory = session_factory

    async def _add(self, record: Any) -> Any:
        async with self._session_factory() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)
            return record

    async def _get(self, model: Any, entity: str, record_id: UUID) -> Any:
        async with self._session_factory() as session:
            record = await session.get(model, record_id)
            if record is None:
                raise NotFoundError(entity, record_id)
            return record

    # =========================================================================
    # Connections
    # =========================================================================

    async def create_connection(self, connection: Connection) -> Connection:
        return await self._add(connection)

    async def get_connection(self, connection_id: UUID) -> Connection:
        return await self._get(Connection, "Connection", connection_id)

    async def update_connection(self, connection_id: UUID, values: dict[str, Any]) -> Connection:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Connection).where(col(Connection.id) == connection_id).with_for_update()
            )
            connection = result.scalar_one_or_none()
            if connection is None:
                raise NotFoundError("Connection", connection_id)
            values = dict(values)
            status = values.pop("status", None)
            if status is not None and status != connection.status:
                ensure_transition("connection", connection.status, status)
                connection.set_status(status)
            for name, value in values.items():
                setattr(connection, name, value)
            await session.commit()
            await session.refresh(connection)
            return connection

    async def acquire_lease(
        self, connection_id: UUID, holder: str, *, now: datetime, stale_after: timedelta
    ) -> bool:
        stmt = (
            update(Connection)
            .where(
                col(Connection.id) == connection_id,
                or_(
                    col(Connection.state_locked_by).is_(None),
                    col(Connection.state_locked_at).is_(None),
                    col(Connection.state_locked_at) <= now - stale_after,
                ),
            )
            .values(state_locked_by=holder, state_locked_at=now)
            .returning(col(Connection.id))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            acquired = result.scalar_one_or_none() is not None
            await session.commit()
            if not acquired and await session.get(Connection, connection_id) is None:
                raise NotFoundError("Connection", connection_id)
            return acquired

    async def release_lease(self, connection_id: UUID, holder: str) -> bool:
        stmt = (
            update(Connection)
            .where(col(Connection.id) == connection_id, col(Connection.state_locked_by) == holder)
            .values(state_locked_by=None, state_locked_at=None)
            .returning(col(Connection.id))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            released = result.scalar_one_or_none() is not None
            await session.commit()
            return released

    async def mutate_gate(self, connection_id: UUID, mutate: GateMutator) -> GateState:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Connection).where(col(Connection.id) == connection_id).with_for_update()
            )
            connection = result.scalar_one_or_none()
            if connection is None:
                raise NotFoundError("Connection", connection_id)
            state = mutate(connection.gate_state())
            connection.apply_gate_state(state)
            await session.commit()
            return state

    # =========================================================================
    # Discovery
    # =========================================================================

    async def add_discoveries(
        self, connection_id: UUID, urls: Sequence[str], source_type: DiscoverySource
    ) -> int:
        rows = [
            ConnectionDiscovery(
                connection_id=connection_id, url=url, source_type=source_type
            ).model_dump()
            for url in dict.fromkeys(urls)
        ]
        if not rows:
            return 0
        stmt = (
            pg_insert(ConnectionDiscovery)
            .values(rows)
            .on_conflict_do_nothing(index_elements=["connection_id", "url"])
            .returning(col(ConnectionDiscovery.id))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            added = len(result.scalars().all())
            await session.commit()
            return added

    async def reset_discoveries(self, connection_id: UUID, urls: Sequence[str]) -> int:
        if not urls:
            return 0
        stmt = (
            update(ConnectionDiscovery)
            .where(
                col(ConnectionDiscovery.connection_id) == connection_id,
                col(ConnectionDiscovery.url).in_(list(urls)),
                col(ConnectionDiscovery.status).in_(
                    [DiscoveryStatus.FETCHED, DiscoveryStatus.FAILED]
                ),
            )
            .values(
                status=DiscoveryStatus.DISCOVERED,
                error_message=None,
                fetched_at=None,
                updated_at=utcnow_naive(),
            )
            .returning(col(ConnectionDiscovery.id))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            reset = len(result.scalars().all())
            await session.commit()
            return reset

    async def list_discoveries(
        self,
        connection_id: UUID,
        *,
        status: DiscoveryStatus | None = None,
        limit: int | None = None,
    ) -> list[ConnectionDiscovery]:
        stmt = select(ConnectionDiscovery).where(
            col(ConnectionDiscovery.connection_id) == connection_id
        )
        if status is not None:
            stmt = stmt.where(col(ConnectionDiscovery.status) == status)
        stmt = stmt.order_by(col(ConnectionDiscovery.created_at))
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def finish_discovery(
        self,
        discovery_id: UUID,
        status: DiscoveryStatus,
        *,
        now: datetime,
        error: str | None = None,
    ) -> bool:
        ensure_transition("discovery", DiscoveryStatus.DISCOVERED, status)
        stmt = (
            update(ConnectionDiscovery)
            .where(
                col(ConnectionDiscovery.id) == discovery_id,
                col(ConnectionDiscovery.status) == DiscoveryStatus.DISCOVERED,
            )
            .values(status=status, error_message=error, fetched_at=now, updated_at=now)
            .returning(col(ConnectionDiscovery.id))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            finished = result.scalar_one_or_none() is not None
            await session.commit()
            return finished

    async def add_crawl_session(self, session: CrawlSession) -> CrawlSession:
        return await self._add(session)

    async def update_crawl_session(self, session_id: UUID, values: dict[str, Any]) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(CrawlSession).where(col(CrawlSession.id) == session_id).values(**values)
            )
            await session.commit()

    # =========================================================================
    # Pages
    # =========================================================================

    async def record_page(self, page: PageContent) -> tuple[PageContent, bool]:
        try:
            return await self._record_page(page)
        except IntegrityError:
            # Another fetch committed the same hash first; retry sees it as canonical
            log.debug("Page hash race, retrying", url=page.url)
            return await self._record_page(page)

    async def _record_page(self, page: PageContent) -> tuple[PageContent, bool]:
        async with self._session_factory() as session:
            canonical = None
            if page.status == PageStatus.FETCHED and page.content_hash:
                result = await session.execute(
                    select(PageContent)
                    .where(
                        col(PageContent.connection_id) == page.connection_id,
                        col(PageContent.status) == PageStatus.FETCHED,
                        col(PageContent.is_duplicate).is_(False),
                        col(PageContent.content_hash) == page.content_hash,
                    )
                    .limit(1)
                )
                canonical = result.scalar_one_or_none()
            duplicate = canonical is not None

            result = await session.execute(
                select(PageContent)
                .where(
                    col(PageContent.connection_id) == page.connection_id,
                    col(PageContent.url) == page.url,
                )
                .with_for_update()
            )
            existing = result.scalar_one_or_none()

            if existing is not None and canonical is not None and existing.id == canonical.id:
                existing.updated_at = utcnow_naive()
                await session.commit()
                return existing, True

            if existing is not None:
                for name in _PAGE_FIELDS:
                    setattr(existing, name, getattr(page, name))
                existing.is_duplicate = duplicate
                record = existing
            else:
                page.is_duplicate = duplicate
                session.add(page)
                record = page
            await session.commit()
            await session.refresh(record)
            return record, duplicate

    async def list_pages(
        self, connection_id: UUID, *, status: PageStatus | None = None
    ) -> list[PageContent]:
        stmt = select(PageContent).where(col(PageContent.connection_id) == connection_id)
        if status is not None:
            stmt = stmt.where(col(PageContent.status) == status)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(col(PageContent.created_at)))
            return list(result.scalars().all())

    async def categorize_page(
        self, page_id: UUID, category: PageCategory, importance: float
    ) -> None:
        stmt = (
            update(PageContent)
            .where(col(PageContent.id) == page_id)
            .values(category=category, importance_score=importance, updated_at=utcnow_naive())
            .returning(col(PageContent.id))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            found = result.scalar_one_or_none() is not None
            await session.commit()
        if not found:
            raise NotFoundError("PageContent", page_id)

    # =========================================================================
    # Extractions
    # =========================================================================

    async def enqueue_extraction(
        self, extraction: PendingExtraction
    ) -> tuple[PendingExtraction, bool]:
        stmt = (
            pg_insert(PendingExtraction)
            .values(**extraction.model_dump())
            .on_conflict_do_nothing(
                index_elements=["source_key", "extractor_type"],
                index_where=text("status IN ('PENDING', 'PROCESSING')"),
            )
            .returning(col(PendingExtraction.id))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            inserted = result.scalar_one_or_none()
            await session.commit()
            if inserted is not None:
                return extraction, True
            result = await session.execute(
                select(PendingExtraction).where(
                    col(PendingExtraction.source_key) == extraction.source_key,
                    col(PendingExtraction.extractor_type) == extraction.extractor_type,
                    col(PendingExtraction.status).in_(
                        [ExtractionStatus.PENDING, ExtractionStatus.PROCESSING]
                    ),
                )
            )
            active = result.scalar_one_or_none()
            return (active or extraction), False

    async def get_extraction(self, extraction_id: UUID) -> PendingExtraction:
        return await self._get(PendingExtraction, "PendingExtraction", extraction_id)

    async def list_claimable(
        self, *, limit: int, now: datetime, stale_after: timedelta
    ) -> list[UUID]:
        stmt = (
            select(col(PendingExtraction.id))
            .where(
                or_(
                    col(PendingExtraction.status) == ExtractionStatus.PENDING,
                    and_(
                        col(PendingExtraction.status) == ExtractionStatus.PROCESSING,
                        col(PendingExtraction.claimed_at) <= now - stale_after,
                    ),
                )
            )
            .order_by(col(PendingExtraction.created_at))
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def claim_extraction(
        self, extraction_id: UUID, worker_id: str, *, now: datetime
    ) -> PendingExtraction | None:
        stmt = (
            update(PendingExtraction)
            .where(
                col(PendingExtraction.id) == extraction_id,
                col(PendingExtraction.status) == ExtractionStatus.PENDING,
            )
            .values(
                status=ExtractionStatus.PROCESSING,
                claimed_by=worker_id,
                claimed_at=now,
                attempts=PendingExtraction.attempts + 1,
                updated_at=now,
            )
            .returning(PendingExtraction)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            claimed = result.scalar_one_or_none()
            await session.commit()
            return claimed

    async def release_stale_extraction(
        self, extraction_id: UUID, *, now: datetime, stale_after: timedelta
    ) -> bool:
        stmt = (
            update(PendingExtraction)
            .where(
                col(PendingExtraction.id) == extraction_id,
                col(PendingExtraction.status) == ExtractionStatus.PROCESSING,
                col(PendingExtraction.claimed_at) <= now - stale_after,
            )
            .values(status=ExtractionStatus.PENDING, claimed_by=None, claimed_at=None, updated_at=now)
            .returning(col(PendingExtraction.id))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            released = result.scalar_one_or_none() is not None
            await session.commit()
            return released

    async def reclaim_stale_extractions(self, *, now: datetime, stale_after: timedelta) -> int:
        stmt = (
            update(PendingExtraction)
            .where(
                col(PendingExtraction.status) == ExtractionStatus.PROCESSING,
                col(PendingExtraction.claimed_at) <= now - stale_after,
            )
            .values(status=ExtractionStatus.PENDING, claimed_by=None, claimed_at=None, updated_at=now)
            .returning(col(PendingExtraction.id))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            reclaimed = len(result.scalars().all())
            await session.commit()
            return reclaimed

    async def finish_extraction(
        self,
        extraction_id: UUID,
        worker_id: str,
        status: ExtractionStatus,
        *,
        now: datetime,
        error: str | None = None,
    ) -> bool:
        ensure_transition("extraction", ExtractionStatus.PROCESSING, status)
        stmt = (
            update(PendingExtraction)
            .where(
                col(PendingExtraction.id) == extraction_id,
                col(PendingExtraction.status) == ExtractionStatus.PROCESSING,
                col(PendingExtraction.claimed_by) == worker_id,
            )
            .values(status=status, error_message=error, completed_at=now, updated_at=now)
            .returning(col(PendingExtraction.id))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            finished = result.scalar_one_or_none() is not None
            await session.commit()
            return finished

    async def list_extractions(
        self, *, connection_id: UUID | None = None, status: ExtractionStatus | None = None
    ) -> list[PendingExtraction]:
        stmt = select(PendingExtraction)
        if connection_id is not None:
            stmt = stmt.where(col(PendingExtraction.connection_id) == connection_id)
        if status is not None:
            stmt = stmt.where(col(PendingExtraction.status) == status)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(col(PendingExtraction.created_at)))
            return list(result.scalars().all())

    # =========================================================================
    # Documents
    # =========================================================================

    async def add_document(self, document: BehaviorDocument) -> BehaviorDocument:
        return await self._add(document)

    async def get_document(self, document_id: UUID) -> BehaviorDocument:
        return await self._get(BehaviorDocument, "BehaviorDocument", document_id)

    async def update_document(self, document_id: UUID, values: dict[str, Any]) -> BehaviorDocument:
        async with self._session_factory() as session:
            result = await session.execute(
                select(BehaviorDocument)
                .where(col(BehaviorDocument.id) == document_id)
                .with_for_update()
            )
            document = result.scalar_one_or_none()
            if document is None:
                raise NotFoundError("BehaviorDocument", document_id)
            status = values.get("processing_status")
            if status is not None and status != document.processing_status:
                ensure_transition("document", document.processing_status, status)
            for name, value in values.items():
                setattr(document, name, value)
            await session.commit()
            await session.refresh(document)
            return document

    # =========================================================================
    # Suggestions
    # =========================================================================

    async def add_suggestion(self, suggestion: BehaviorSuggestion) -> BehaviorSuggestion:
        return await self._add(suggestion)

    async def get_suggestion(self, suggestion_id: UUID) -> BehaviorSuggestion:
        return await self._get(BehaviorSuggestion, "BehaviorSuggestion", suggestion_id)

    async def list_suggestions(
        self, connection_id: UUID, *, status: SuggestionStatus | None = None
    ) -> list[BehaviorSuggestion]:
        stmt = select(BehaviorSuggestion).where(
            col(BehaviorSuggestion.connection_id) == connection_id
        )
        if status is not None:
            stmt = stmt.where(col(BehaviorSuggestion.status) == status)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(col(BehaviorSuggestion.created_at).desc()))
            return list(result.scalars().all())

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
        async with self._session_factory() as session:
            result = await session.execute(
                select(BehaviorSuggestion)
                .where(col(BehaviorSuggestion.id) == suggestion_id)
                .with_for_update()
            )
            suggestion = result.scalar_one_or_none()
            if suggestion is None:
                raise NotFoundError("BehaviorSuggestion", suggestion_id)
            if suggestion.status != SuggestionStatus.PENDING:
                raise InvalidTransitionError("suggestion", suggestion.status, status)
            ensure_transition("suggestion", suggestion.status, status)

            suggestion.status = status
            suggestion.reviewed_by = reviewer
            suggestion.reviewed_at = now
            suggestion.review_notes = notes
            if profile:
                result = await session.execute(
                    select(Connection)
                    .where(col(Connection.id) == suggestion.connection_id)
                    .with_for_update()
                )
                connection = result.scalar_one()
                for name, value in profile.items():
                    setattr(connection, name, value)
            # Suggestion and profile land in one transaction
            await session.commit()
            await session.refresh(suggestion)
            return suggestion

    # =========================================================================
    # Knowledge
    # =========================================================================

    async def add_knowledge(self, fragments: Sequence[ConnectionKnowledge]) -> int:
        if not fragments:
            return 0
        stmt = (
            pg_insert(ConnectionKnowledge)
            .values([fragment.model_dump() for fragment in fragments])
            .on_conflict_do_nothing(index_elements=["connection_id", "content_hash"])
            .returning(col(ConnectionKnowledge.id))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            added = len(result.scalars().all())
            await session.commit()
            return added

    async def query_knowledge(
        self, connection_id: UUID, vector: Sequence[float], k: int
    ) -> list[tuple[ConnectionKnowledge, float]]:
        distance = col(ConnectionKnowledge.embedding).cosine_distance(list(vector))
        stmt = (
            select(ConnectionKnowledge, (1 - distance).label("similarity"))
            .where(
                col(ConnectionKnowledge.connection_id) == connection_id,
                col(ConnectionKnowledge.embedding).is_not(None),
            )
            .order_by(distance, col(ConnectionKnowledge.created_at).desc())
            .limit(k)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [(row[0], float(row[1])) for row in result.all()]

    async def count_knowledge(self, connection_id: UUID) -> int:
        stmt = (
            select(func.count())
            .select_from(ConnectionKnowledge)
            .where(col(ConnectionKnowledge.connection_id) == connection_id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    # =========================================================================
    # Brand
    # =========================================================================

    async def get_brand_profile(self, connection_id: UUID) -> BrandProfile | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(BrandProfile).where(col(BrandProfile.connection_id) == connection_id)
            )
            return result.scalar_one_or_none()

    async def save_brand_profile(self, profile: BrandProfile) -> BrandProfile:
        try:
            return await self._save_brand_profile(profile)
        except IntegrityError:
            # A concurrent detection inserted first; the retry updates its row
            log.debug(
                "Brand profile insert race, retrying", connection_id=str(profile.connection_id)
            )
            return await self._save_brand_profile(profile)

    async def _save_brand_profile(self, profile: BrandProfile) -> BrandProfile:
        async with self._session_factory() as session:
            result = await session.execute(
                select(BrandProfile)
                .where(col(BrandProfile.connection_id) == profile.connection_id)
                .with_for_update()
            )
            existing = result.scalar_one_or_none()
            if existing is None:
                session.add(profile)
                record = profile
            else:
                for name in BRAND_PROFILE_FIELDS:
                    setattr(existing, name, getattr(profile, name))
                record = existing
            await session.commit()
            await session.refresh(record)
            return record

    async def add_drift_log(self, entry: BrandDriftLog) -> BrandDriftLog:
        return await self._add(entry)

    async def get_drift_log(self, log_id: UUID) -> BrandDriftLog:
        return await self._get(BrandDriftLog, "BrandDriftLog", log_id)

    async def list_drift_logs(
        self, connection_id: UUID, *, status: DriftStatus | None = None
    ) -> list[BrandDriftLog]:
        stmt = select(BrandDriftLog).where(col(BrandDriftLog.connection_id) == connection_id)
        if status is not None:
            stmt = stmt.where(col(BrandDriftLog.status) == status)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(col(BrandDriftLog.created_at).desc()))
            return list(result.scalars().all())

    async def resolve_drift(
        self, log_id: UUID, status: DriftStatus, *, actor: str, now: datetime
    ) -> BrandDriftLog:
        ensure_transition("brand_drift", DriftStatus.PENDING, status)
        stmt = (
            update(BrandDriftLog)
            .where(
                col(BrandDriftLog.id) == log_id,
                col(BrandDriftLog.status) == DriftStatus.PENDING,
            )
            .values(status=status, resolved_by=actor, resolved_at=now, updated_at=now)
            .returning(col(BrandDriftLog.id))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            resolved = result.scalar_one_or_none() is not None
            await session.commit()
        entry = await self.get_drift_log(log_id)
        if not resolved:
            raise InvalidTransitionError("brand_drift", entry.status, status)
        return entry

    # =========================================================================
    # Feedback and accounting
    # =========================================================================

    async def add_missed_question(self, question: MissedQuestion) -> MissedQuestion:
        return await self._add(question)

    async def list_missed_questions(
        self, connection_id: UUID, *, status: MissedQuestionStatus | None = None
    ) -> list[MissedQuestion]:
        stmt = select(MissedQuestion).where(col(MissedQuestion.connection_id) == connection_id)
        if status is not None:
            stmt = stmt.where(col(MissedQuestion.status) == status)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(col(MissedQuestion.created_at)))
            return list(result.scalars().all())

    async def add_usage(self, entry: UsageLog) -> UsageLog:
        return await self._add(entry)

    async def list_usage(self, *, connection_id: UUID | None = None) -> list[UsageLog]:
        stmt = select(UsageLog)
        if connection_id is not None:
            stmt = stmt.where(col(UsageLog.connection_id) == connection_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(col(UsageLog.created_at)))
            return list(result.scalars().all())
