"""SQLModel schemas for Attune PostgreSQL storage.

This module defines the PostgreSQL tables for:
- Connections (tenants) with their behavior profile, confidence gate and lease
- Discovered URLs, crawl sessions and fetched page content
- Pending extraction work units
- Uploaded behavior documents and the suggestions derived from them
- Knowledge fragments with embeddings (pgvector)
- Detected brand profiles and their drift logs
- Missed questions and capability usage logs
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from pgvector.sqlalchemy import Vector
from pydantic import field_validator
from sqlalchemy import Column, Index, Text, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

from attune.config import settings
from attune.models import (
    PROFILE_FIELDS,
    BehaviorProfile,
    BehaviorSignals,
    ExtractionPayload,
    GateState,
    ProfileDiff,
    load_diff,
)
from attune.states import (
    ONBOARDING_STEPS,
    BrandSource,
    ConnectionStatus,
    ContentType,
    CrawlSessionStatus,
    DiscoverySource,
    DiscoveryStatus,
    DocumentClass,
    DriftSeverity,
    DriftStatus,
    ExtractionSource,
    ExtractionStatus,
    ExtractorType,
    GateStatus,
    MissedQuestionStatus,
    PageCategory,
    PageStatus,
    ProcessingStatus,
    SuggestionStatus,
    UsageOperation,
)


def utcnow_naive() -> datetime:
    """Get current UTC time as naive datetime (for TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(UTC).replace(tzinfo=None)


class TimestampMixin(SQLModel):
    """Mixin for created/updated timestamps."""

    created_at: datetime = Field(
        default_factory=utcnow_naive,
        description="When this record was created",
    )
    updated_at: datetime = Field(
        default_factory=utcnow_naive,
        description="When this record was last updated",
        sa_column_kwargs={"onupdate": utcnow_naive},
    )


# =============================================================================
# Connection - tenant with behavior profile, gate and lease
# =============================================================================


class Connection(TimestampMixin, table=True):
    """A tenant workspace whose assistant is being trained and tuned."""

    __tablename__ = "connections"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str | None = Field(default=None, max_length=255, description="Display name")
    website_url: str | None = Field(default=None, max_length=2048, description="Site root")

    # Onboarding
    status: ConnectionStatus = Field(default=ConnectionStatus.DRAFT)
    onboarding_step: int = Field(default=1, ge=1, le=6, description="Opaque onboarding ordinal")

    # Behavior profile
    tone: str | None = Field(default=None, max_length=64)
    sales_intensity: str | None = Field(default=None, max_length=64)
    response_length: str | None = Field(default=None, max_length=64)
    empathy_level: str | None = Field(default=None, max_length=64)
    compliance_strictness: str | None = Field(default=None, max_length=64)

    # Confidence gate
    health_score: float = Field(default=100.0, ge=0, le=100)
    drift_count: int = Field(default=0, ge=0, description="Monotonic drift counter")
    confidence_gate_status: GateStatus = Field(default=GateStatus.ACTIVE)
    low_confidence_streak: int = Field(default=0, ge=0)
    drift_window: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSONB, nullable=False, server_default=text("'[]'::jsonb")),
        description="ISO timestamps of drift events inside the rolling window",
    )

    # Lease
    state_locked_by: str | None = Field(default=None, max_length=128)
    state_locked_at: datetime | None = Field(default=None)

    def behavior_profile(self) -> BehaviorProfile:
        return BehaviorProfile(**{name: getattr(self, name) for name in PROFILE_FIELDS})

    def gate_state(self) -> GateState:
        return GateState(
            health_score=self.health_score,
            drift_count=self.drift_count,
            status=self.confidence_gate_status,
            low_confidence_streak=self.low_confidence_streak,
            drift_window=[datetime.fromisoformat(value) for value in self.drift_window],
        )

    def apply_gate_state(self, state: GateState) -> None:
        self.health_score = state.health_score
        self.drift_count = state.drift_count
        self.confidence_gate_status = state.status
        self.low_confidence_streak = state.low_confidence_streak
        self.drift_window = [moment.isoformat() for moment in state.drift_window]

    def set_status(self, status: ConnectionStatus) -> None:
        self.status = status
        self.onboarding_step = ONBOARDING_STEPS[status]

    def __repr__(self) -> str:
        return f"<Connection {self.id} [{self.status}]>"

    @field_validator("state_locked_at", "created_at", "updated_at", mode="before")
    @classmethod
    def strip_timezone(cls, v: datetime | None) -> datetime | None:
        """Ensure datetimes are naive (PostgreSQL TIMESTAMP WITHOUT TIME ZONE)."""
        if v is not None and v.tzinfo is not None:
            return v.replace(tzinfo=None)
        return v


# =============================================================================
# Discovery - candidate URLs and crawl sessions
# =============================================================================


class ConnectionDiscovery(TimestampMixin, table=True):
    """A candidate URL for a connection."""

    __tablename__ = "connection_discoveries"
    __table_args__ = (
        UniqueConstraint("connection_id", "url", name="uq_connection_discoveries_url"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    connection_id: UUID = Field(foreign_key="connections.id", index=True)
    url: str = Field(max_length=2048, description="Normalized URL")
    status: DiscoveryStatus = Field(default=DiscoveryStatus.DISCOVERED, index=True)
    source_type: DiscoverySource = Field(default=DiscoverySource.MANUAL)
    error_message: str | None = Field(default=None, sa_type=Text)
    fetched_at: datetime | None = Field(default=None)

    def __repr__(self) -> str:
        return f"<ConnectionDiscovery {self.url} [{self.status}]>"


class CrawlSession(TimestampMixin, table=True):
    """One discovery run for a connection."""

    __tablename__ = "crawl_sessions"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    connection_id: UUID = Field(foreign_key="connections.id", index=True)
    method: DiscoverySource | None = Field(default=None, description="Strategy that found URLs")
    total_urls: int = Field(default=0, ge=0)
    new_urls: int = Field(default=0, ge=0)
    status: CrawlSessionStatus = Field(default=CrawlSessionStatus.RUNNING)
    error_message: str | None = Field(default=None, sa_type=Text)
    finished_at: datetime | None = Field(default=None)


# =============================================================================
# PageContent - fetched pages
# =============================================================================


class PageContent(TimestampMixin, table=True):
    """Fetched and cleaned content for one URL."""

    __tablename__ = "page_contents"
    __table_args__ = (
        UniqueConstraint("connection_id", "url", name="uq_page_contents_url"),
        # Only one canonical FETCHED page per content hash
        Index(
            "uq_page_contents_hash",
            "connection_id",
            "content_hash",
            unique=True,
            postgresql_where=text("status = 'FETCHED' AND NOT is_duplicate"),
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    connection_id: UUID = Field(foreign_key="connections.id", index=True)
    discovery_id: UUID | None = Field(default=None, foreign_key="connection_discoveries.id")
    url: str = Field(max_length=2048)
    status: PageStatus = Field(default=PageStatus.FETCHED)
    title: str | None = Field(default=None, max_length=512)
    clean_text: str = Field(default="", sa_type=Text)
    word_count: int = Field(default=0, ge=0)
    content_hash: str | None = Field(default=None, max_length=64, index=True)
    is_duplicate: bool = Field(default=False, description="Same hash as another page")
    error_message: str | None = Field(default=None, sa_type=Text)
    category: PageCategory | None = Field(default=None, index=True)
    importance_score: float | None = Field(default=None, ge=0, le=1)

    def __repr__(self) -> str:
        return f"<PageContent {self.url} [{self.status}]>"


# =============================================================================
# PendingExtraction - units of extraction work
# =============================================================================


class PendingExtraction(TimestampMixin, table=True):
    """A unit of extraction work claimed by exactly one worker at a time."""

    __tablename__ = "pending_extractions"
    __table_args__ = (
        # At most one active row per (source, extractor)
        Index(
            "uq_pending_extractions_active",
            "source_key",
            "extractor_type",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'PROCESSING')"),
        ),
        Index("ix_pending_extractions_claimable", "status", "created_at"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    connection_id: UUID = Field(foreign_key="connections.id", index=True)
    source_type: ExtractionSource = Field(default=ExtractionSource.AUTO)
    content_type: ContentType
    extractor_type: ExtractorType
    page_content_id: UUID | None = Field(default=None, foreign_key="page_contents.id")
    behavior_document_id: UUID | None = Field(default=None, foreign_key="behavior_documents.id")
    source_key: str = Field(max_length=64, description="page:<id> or document:<id>")
    raw_data: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONB, nullable=False, server_default=text("'{}'::jsonb")),
    )
    status: ExtractionStatus = Field(default=ExtractionStatus.PENDING)
    claimed_by: str | None = Field(default=None, max_length=128)
    claimed_at: datetime | None = Field(default=None)
    attempts: int = Field(default=0, ge=0, description="Number of claims")
    error_message: str | None = Field(default=None, sa_type=Text)
    completed_at: datetime | None = Field(default=None)

    @property
    def payload(self) -> ExtractionPayload:
        return ExtractionPayload.model_validate(self.raw_data or {})

    def __repr__(self) -> str:
        return f"<PendingExtraction {self.id} {self.extractor_type} [{self.status}]>"


def source_key_for(content_type: ContentType, source_id: UUID) -> str:
    """Build the dedupe key for an extraction source."""
    return f"{content_type.value}:{source_id}"


# =============================================================================
# Behavior documents and suggestions
# =============================================================================


class BehaviorDocument(TimestampMixin, table=True):
    """An uploaded document used to tune assistant behavior."""

    __tablename__ = "behavior_documents"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    connection_id: UUID = Field(foreign_key="connections.id", index=True)
    filename: str = Field(max_length=512)
    content_type: str | None = Field(default=None, max_length=128)
    size_bytes: int = Field(default=0, ge=0)
    extracted_text: str = Field(default="", sa_type=Text)
    sanitizer_warnings: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSONB, nullable=False, server_default=text("'[]'::jsonb")),
    )
    classification: DocumentClass | None = Field(default=None)
    classification_confidence: float | None = Field(default=None, ge=0, le=1)
    signals: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONB, nullable=False, server_default=text("'{}'::jsonb")),
    )
    processing_status: ProcessingStatus = Field(default=ProcessingStatus.PENDING)
    error_message: str | None = Field(default=None, sa_type=Text)

    @property
    def behavior_signals(self) -> BehaviorSignals:
        return BehaviorSignals.model_validate(self.signals or {})


class BehaviorSuggestion(TimestampMixin, table=True):
    """A proposed behavior profile change awaiting human review."""

    __tablename__ = "behavior_suggestions"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    connection_id: UUID = Field(foreign_key="connections.id", index=True)
    behavior_document_id: UUID | None = Field(
        default=None, foreign_key="behavior_documents.id", index=True
    )

    # Suggested profile values
    tone: str | None = Field(default=None, max_length=64)
    sales_intensity: str | None = Field(default=None, max_length=64)
    response_length: str | None = Field(default=None, max_length=64)
    empathy_level: str | None = Field(default=None, max_length=64)
    compliance_strictness: str | None = Field(default=None, max_length=64)

    reasoning: str | None = Field(default=None, sa_type=Text)
    confidence_score: float = Field(default=0.0, ge=0, le=1)
    diff: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONB, nullable=False, server_default=text("'{}'::jsonb")),
        description="Snapshot of field -> {from, to} at creation time",
    )
    status: SuggestionStatus = Field(default=SuggestionStatus.PENDING, index=True)
    reviewed_by: str | None = Field(default=None, max_length=128)
    reviewed_at: datetime | None = Field(default=None)
    review_notes: str | None = Field(default=None, sa_type=Text)

    @property
    def profile_diff(self) -> ProfileDiff:
        return load_diff(self.diff)

    def suggested_profile(self) -> BehaviorProfile:
        return BehaviorProfile(**{name: getattr(self, name) for name in PROFILE_FIELDS})


# =============================================================================
# ConnectionKnowledge - retrievable fragments with embeddings
# =============================================================================


class ConnectionKnowledge(TimestampMixin, table=True):
    """A knowledge fragment with its embedding."""

    __tablename__ = "connection_knowledge"
    __table_args__ = (
        UniqueConstraint("connection_id", "content_hash", name="uq_connection_knowledge_hash"),
        Index(
            "ix_connection_knowledge_embedding_hnsw",
            "embedding",
            postgresql_using="hnsw",
            postgresql_with={"m": 16, "ef_construction": 64},
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    connection_id: UUID = Field(foreign_key="connections.id", index=True)
    page_content_id: UUID | None = Field(default=None, foreign_key="page_contents.id")
    source_url: str | None = Field(default=None, max_length=2048)
    title: str | None = Field(default=None, max_length=512)
    content: str = Field(sa_type=Text)
    content_hash: str = Field(max_length=64)
    category: str | None = Field(default=None, max_length=64)
    confidence: float | None = Field(default=None, ge=0, le=1)
    embedding: Any = Field(
        default=None,
        sa_column=Column(Vector(settings.embedding_dimensions), nullable=True),
        description="Dense embedding vector",
    )

    def __repr__(self) -> str:
        return f"<ConnectionKnowledge {self.id} [{self.category}]>"


# =============================================================================
# Brand profile and drift
# =============================================================================


class BrandProfile(TimestampMixin, table=True):
    """Brand characteristics detected from a connection's fetched pages."""

    __tablename__ = "brand_profiles"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    connection_id: UUID = Field(foreign_key="connections.id", unique=True, index=True)
    industry: str | None = Field(default=None, max_length=128)
    tone: str | None = Field(default=None, max_length=64)
    target_audience: str | None = Field(default=None, max_length=128)
    primary_goal: str | None = Field(default=None, max_length=128)
    sales_aggressiveness: float = Field(default=0.0, ge=0, le=1)
    reading_complexity: float = Field(default=0.0, ge=0, le=1)
    emotional_positioning: str | None = Field(default=None, max_length=128)
    assistant_role: str | None = Field(default=None, max_length=128)
    confidence: float = Field(default=0.0, ge=0, le=1)
    source: BrandSource = Field(default=BrandSource.AUTO)
    source_content_hash: str | None = Field(
        default=None, max_length=64, description="Aggregate hash of the pages analyzed"
    )
    profile_hash: str | None = Field(default=None, max_length=64)
    detected_at: datetime = Field(default_factory=utcnow_naive)

    def __repr__(self) -> str:
        return f"<BrandProfile {self.connection_id} [{self.industry}/{self.tone}]>"


# Columns replaced when a connection's profile is re-detected
BRAND_PROFILE_FIELDS: tuple[str, ...] = (
    "industry",
    "tone",
    "target_audience",
    "primary_goal",
    "sales_aggressiveness",
    "reading_complexity",
    "emotional_positioning",
    "assistant_role",
    "confidence",
    "source",
    "source_content_hash",
    "profile_hash",
    "detected_at",
)


class BrandDriftLog(TimestampMixin, table=True):
    """A change in detected brand characteristics awaiting acknowledgement."""

    __tablename__ = "brand_drift_logs"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    connection_id: UUID = Field(foreign_key="connections.id", index=True)
    previous_profile_hash: str = Field(max_length=64)
    current_content_hash: str = Field(max_length=64)
    drift_score: float = Field(default=0.0, ge=0)
    severity: DriftSeverity = Field(default=DriftSeverity.LOW)
    details: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSONB, nullable=False, server_default=text("'[]'::jsonb")),
        description="Changed fields as {field, from, to, weight}",
    )
    status: DriftStatus = Field(default=DriftStatus.PENDING, index=True)
    resolved_by: str | None = Field(default=None, max_length=128)
    resolved_at: datetime | None = Field(default=None)


# =============================================================================
# Feedback and accounting
# =============================================================================


class MissedQuestion(TimestampMixin, table=True):
    """A question the assistant could not answer with enough confidence."""

    __tablename__ = "missed_questions"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    connection_id: UUID = Field(foreign_key="connections.id", index=True)
    question: str = Field(sa_type=Text)
    confidence_score: float | None = Field(default=None, ge=0, le=1)
    context_used: str | None = Field(default=None, sa_type=Text)
    status: MissedQuestionStatus = Field(default=MissedQuestionStatus.PENDING)


class UsageLog(SQLModel, table=True):
    """Token, cost and latency record for one capability call."""

    __tablename__ = "usage_logs"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    connection_id: UUID | None = Field(default=None, foreign_key="connections.id", index=True)
    operation: UsageOperation
    model: str = Field(max_length=128)
    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    cost_usd: float = Field(default=0.0, ge=0)
    latency_ms: int = Field(default=0, ge=0)
    success: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow_naive)
