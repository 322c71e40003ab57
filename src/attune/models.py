"""Typed structures passed between pipeline stages.

The JSONB columns in ``attune.db.models`` store these shapes as plain
dicts; these models define the documented fields while still tolerating
additional keys written by newer code.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from attune.states import DocumentClass, GateStatus

PROFILE_FIELDS: tuple[str, ...] = (
    "tone",
    "sales_intensity",
    "response_length",
    "empathy_level",
    "compliance_strictness",
)


class BehaviorProfile(BaseModel):
    """The tunable behavior profile of a connection's assistant."""

    model_config = ConfigDict(extra="ignore")

    tone: str | None = None
    sales_intensity: str | None = None
    response_length: str | None = None
    empathy_level: str | None = None
    compliance_strictness: str | None = None


class BehaviorSignals(BaseModel):
    """Behavior signal scores extracted from a document, each in [0, 1]."""

    model_config = ConfigDict(extra="allow")

    persuasion: float = Field(default=0.0, ge=0, le=1)
    compliance: float = Field(default=0.0, ge=0, le=1)
    empathy: float = Field(default=0.0, ge=0, le=1)
    authority: float = Field(default=0.0, ge=0, le=1)
    verbosity: float = Field(default=0.0, ge=0, le=1)


class FieldChange(BaseModel):
    """A single profile field change, serialized as ``{"from": ..., "to": ...}``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    from_: str | None = Field(default=None, alias="from")
    to: str | None = None


ProfileDiff = dict[str, FieldChange]


def dump_diff(diff: ProfileDiff) -> dict[str, dict[str, str | None]]:
    """Serialize a diff for storage."""
    return {name: change.model_dump(by_alias=True) for name, change in diff.items()}


def load_diff(data: dict[str, Any] | None) -> ProfileDiff:
    """Load a stored diff."""
    return {name: FieldChange.model_validate(value) for name, value in (data or {}).items()}


class ExtractionPayload(BaseModel):
    """Raw payload carried by a pending extraction."""

    model_config = ConfigDict(extra="allow")

    text: str = ""
    title: str | None = None
    url: str | None = None
    filename: str | None = None


class Usage(BaseModel):
    """Token usage reported by a capability call."""

    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class BrandAnalysis(BaseModel):
    """Brand characteristics read from a sample of a site's pages."""

    industry: str | None = None
    tone: str | None = None
    target_audience: str | None = None
    primary_goal: str | None = None
    sales_aggressiveness: float = Field(default=0.0, ge=0, le=1)
    reading_complexity: float = Field(default=0.0, ge=0, le=1)
    emotional_positioning: str | None = None


class Classification(BaseModel):
    """Result of classifying a piece of text."""

    label: str
    confidence: float = Field(ge=0, le=1)
    reasoning: str = ""
    signals: BehaviorSignals | None = None
    suggested_profile: BehaviorProfile | None = None
    brand: BrandAnalysis | None = None
    usage: Usage | None = None

    @property
    def document_class(self) -> DocumentClass:
        """Label as a document class, UNKNOWN when the label is not one."""
        try:
            return DocumentClass(self.label.lower())
        except ValueError:
            return DocumentClass.UNKNOWN


class EmbeddingBatch(BaseModel):
    """Vectors for a batch of texts, in input order."""

    vectors: list[list[float]]
    usage: Usage | None = None


class GateState(BaseModel):
    """Snapshot of a connection's confidence gate."""

    health_score: float = Field(default=100.0, ge=0, le=100)
    drift_count: int = Field(default=0, ge=0)
    status: GateStatus = GateStatus.ACTIVE
    low_confidence_streak: int = Field(default=0, ge=0)
    drift_window: list[datetime] = Field(default_factory=list)


class RetrievedFragment(BaseModel):
    """A knowledge fragment returned from a similarity query."""

    knowledge_id: UUID
    connection_id: UUID
    content: str
    similarity: float
    title: str | None = None
    source_url: str | None = None
    created_at: datetime | None = None


class GroundedPrompt(BaseModel):
    """Prompt assembled for a chat turn."""

    prompt_text: str
    fragments_used: list[RetrievedFragment] = Field(default_factory=list)
    grounded: bool = True
    top_similarity: float | None = None
