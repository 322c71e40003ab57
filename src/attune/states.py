"""Lifecycle enums and their transition tables.

Every status column in the store is one of these enums. Writers call
``ensure_transition`` before changing a status, so a transition that is
not listed here is rejected with ``InvalidTransitionError`` instead of
being silently persisted.
"""

from enum import StrEnum

from attune.errors import InvalidTransitionError


class ConnectionStatus(StrEnum):
    """Onboarding state of a connection."""

    DRAFT = "draft"
    CONNECTED = "connected"
    DISCOVERING = "discovering"
    TRAINED = "trained"
    TUNED = "tuned"
    READY = "ready"
    LAUNCHED = "launched"


class GateStatus(StrEnum):
    """Confidence gate status for a connection."""

    ACTIVE = "active"
    WARNING = "warning"
    FAILED = "failed"


class DiscoveryStatus(StrEnum):
    """Lifecycle of a discovered URL."""

    DISCOVERED = "discovered"
    FETCHED = "fetched"
    FAILED = "failed"


class DiscoverySource(StrEnum):
    """How a URL was discovered."""

    SITEMAP = "sitemap"
    ROBOTS = "robots"
    CRAWL = "crawl"
    MANUAL = "manual"


class CrawlSessionStatus(StrEnum):
    """Status of a discovery run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class PageStatus(StrEnum):
    """Outcome of fetching a page."""

    FETCHED = "fetched"
    FAILED = "failed"


class ExtractionStatus(StrEnum):
    """Lifecycle of a pending extraction."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class ExtractionSource(StrEnum):
    """Whether the extraction was queued by the pipeline or by a person."""

    AUTO = "auto"
    MANUAL = "manual"


class ContentType(StrEnum):
    """What an extraction reads from."""

    PAGE = "page"
    DOCUMENT = "document"


class ExtractorType(StrEnum):
    """What an extraction produces."""

    KNOWLEDGE = "knowledge"
    BEHAVIOR = "behavior"


class ProcessingStatus(StrEnum):
    """Processing status of an uploaded behavior document."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class DocumentClass(StrEnum):
    """Classification labels for behavior documents."""

    SALES_GUIDE = "sales_guide"
    SUPPORT_SCRIPT = "support_script"
    BRAND_GUIDELINES = "brand_guidelines"
    COMPLIANCE_POLICY = "compliance_policy"
    UNKNOWN = "unknown"


class SuggestionStatus(StrEnum):
    """Review status of a behavior suggestion."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class MissedQuestionStatus(StrEnum):
    """Operator status of a missed question."""

    PENDING = "pending"
    RESOLVED = "resolved"


class UsageOperation(StrEnum):
    """Capability operation recorded in the usage log."""

    CLASSIFY = "classify"
    EMBED = "embed"


class PageCategory(StrEnum):
    """Coverage category of a fetched page."""

    PRICING = "pricing"
    SUPPORT = "support"
    PRODUCT = "product"
    FAQ = "faq"
    LEGAL = "legal"
    ABOUT = "about"
    BLOG = "blog"
    OTHER = "other"


class RiskLevel(StrEnum):
    """Launch risk derived from knowledge coverage."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class BrandSource(StrEnum):
    """Who triggered the brand detection that produced a profile."""

    AUTO = "auto"
    MANUAL = "manual"


class DriftSeverity(StrEnum):
    """Severity of a detected brand drift."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DriftStatus(StrEnum):
    """Operator status of a brand drift log."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    IGNORED = "ignored"



# =============================================================================
# Transition tables
# =============================================================================

DISCOVERY_TRANSITIONS: dict[DiscoveryStatus, frozenset[DiscoveryStatus]] = {
    DiscoveryStatus.DISCOVERED: frozenset({DiscoveryStatus.FETCHED, DiscoveryStatus.FAILED}),
    # Terminal rows only move again through an explicit re-crawl
    DiscoveryStatus.FETCHED: frozenset({DiscoveryStatus.DISCOVERED}),
    DiscoveryStatus.FAILED: frozenset({DiscoveryStatus.DISCOVERED}),
}

EXTRACTION_TRANSITIONS: dict[ExtractionStatus, frozenset[ExtractionStatus]] = {
    ExtractionStatus.PENDING: frozenset({ExtractionStatus.PROCESSING}),
    # PROCESSING -> PENDING is the stale reclaim path
    ExtractionStatus.PROCESSING: frozenset(
        {ExtractionStatus.DONE, ExtractionStatus.FAILED, ExtractionStatus.PENDING}
    ),
    ExtractionStatus.DONE: frozenset(),
    ExtractionStatus.FAILED: frozenset(),
}

PROCESSING_TRANSITIONS: dict[ProcessingStatus, frozenset[ProcessingStatus]] = {
    ProcessingStatus.PENDING: frozenset({ProcessingStatus.PROCESSING, ProcessingStatus.FAILED}),
    ProcessingStatus.PROCESSING: frozenset(
        {ProcessingStatus.DONE, ProcessingStatus.FAILED, ProcessingStatus.PENDING}
    ),
    ProcessingStatus.DONE: frozenset(),
    # A failed document can be re-enqueued by an operator
    ProcessingStatus.FAILED: frozenset({ProcessingStatus.PENDING}),
}

SUGGESTION_TRANSITIONS: dict[SuggestionStatus, frozenset[SuggestionStatus]] = {
    SuggestionStatus.PENDING: frozenset({SuggestionStatus.ACCEPTED, SuggestionStatus.REJECTED}),
    SuggestionStatus.ACCEPTED: frozenset(),
    SuggestionStatus.REJECTED: frozenset(),
}

GATE_TRANSITIONS: dict[GateStatus, frozenset[GateStatus]] = {
    GateStatus.ACTIVE: frozenset({GateStatus.WARNING, GateStatus.FAILED}),
    GateStatus.WARNING: frozenset({GateStatus.ACTIVE, GateStatus.FAILED}),
    # Only an operator reset leaves FAILED
    GateStatus.FAILED: frozenset({GateStatus.ACTIVE}),
}

DRIFT_TRANSITIONS: dict[DriftStatus, frozenset[DriftStatus]] = {
    DriftStatus.PENDING: frozenset({DriftStatus.CONFIRMED, DriftStatus.IGNORED}),
    DriftStatus.CONFIRMED: frozenset(),
    DriftStatus.IGNORED: frozenset(),
}

CONNECTION_TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    ConnectionStatus.DRAFT: frozenset({ConnectionStatus.CONNECTED}),
    ConnectionStatus.CONNECTED: frozenset({ConnectionStatus.DISCOVERING}),
    ConnectionStatus.DISCOVERING: frozenset({ConnectionStatus.TRAINED, ConnectionStatus.CONNECTED}),
    ConnectionStatus.TRAINED: frozenset({ConnectionStatus.TUNED}),
    ConnectionStatus.TUNED: frozenset({ConnectionStatus.READY}),
    ConnectionStatus.READY: frozenset({ConnectionStatus.LAUNCHED}),
    ConnectionStatus.LAUNCHED: frozenset({ConnectionStatus.READY}),
}

# Opaque onboarding ordinal exposed to clients
ONBOARDING_STEPS: dict[ConnectionStatus, int] = {
    ConnectionStatus.DRAFT: 1,
    ConnectionStatus.CONNECTED: 2,
    ConnectionStatus.DISCOVERING: 3,
    ConnectionStatus.TRAINED: 4,
    ConnectionStatus.TUNED: 5,
    ConnectionStatus.READY: 6,
    ConnectionStatus.LAUNCHED: 6,
}

_TABLES: dict[str, dict] = {
    "discovery": DISCOVERY_TRANSITIONS,
    "extraction": EXTRACTION_TRANSITIONS,
    "document": PROCESSING_TRANSITIONS,
    "suggestion": SUGGESTION_TRANSITIONS,
    "gate": GATE_TRANSITIONS,
    "connection": CONNECTION_TRANSITIONS,
    "brand_drift": DRIFT_TRANSITIONS,
}


def can_transition(entity: str, current: StrEnum, target: StrEnum) -> bool:
    """Check whether ``current -> target`` is listed for ``entity``."""
    table = _TABLES[entity]
    return target in table.get(current, frozenset())


def ensure_transition(entity: str, current: StrEnum, target: StrEnum) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is allowed."""
    if not can_transition(entity, current, target):
        raise InvalidTransitionError(entity, current, target)
