"""Brand detection and brand drift tracking.

Detection samples a connection's fetched pages, asks the classifier for
the site's brand characteristics and stores them as the connection's
brand profile. The assistant behavior the brand implies is proposed as
an ordinary suggestion and goes through review like any other.

A drift check compares an aggregate hash of the fetched pages with the
hash the profile was detected from. When the content changed, detection
runs again and any change in the key brand fields is logged as a PENDING
drift entry for an operator to confirm or ignore.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from hashlib import sha256
from typing import Any
from uuid import UUID

import structlog

from attune.capability.base import ClassificationTask
from attune.capability.metered import MeteredCapability
from attune.config import settings
from attune.db.models import (
    BRAND_PROFILE_FIELDS,
    BehaviorSuggestion,
    BrandDriftLog,
    BrandProfile,
    PageContent,
    utcnow_naive,
)
from attune.errors import CapabilityError, InsufficientContentError, InvalidTransitionError
from attune.models import BehaviorProfile, BrandAnalysis
from attune.review import ReviewService
from attune.states import BrandSource, DriftSeverity, DriftStatus, PageStatus
from attune.store.base import Store

log = structlog.get_logger()

SAMPLE_MAX_CHARS = 15_000
SAMPLE_PAGE_CHARS = 5_000

# Brand tone -> assistant tone
TONE_MAP = {
    "Formal": "Professional",
    "Casual": "Casual",
    "Technical": "Technical",
    "Luxury": "Professional",
    "Playful": "Friendly",
}

# Weight each changed field adds to the drift score
DRIFT_WEIGHTS = {"industry": 0.4, "tone": 0.3, "primary_goal": 0.3}
SALES_DRIFT_WEIGHT = 0.2
SALES_DRIFT_MARGIN = 0.2


def sample_content(pages: Sequence[PageContent]) -> str:
    """Concatenate the most telling pages, each under a SOURCE header.

    The homepage (shortest URL), the first about and pricing pages and the
    three longest pages are taken in that order, each once.
    """
    if not pages:
        return ""
    selected: list[PageContent] = []

    def pick(page: PageContent | None) -> None:
        if page is not None and all(page.url != seen.url for seen in selected):
            selected.append(page)

    pick(min(pages, key=lambda page: len(page.url)))
    pick(next((page for page in pages if "about" in page.url.lower()), None))
    pick(next((page for page in pages if "pricing" in page.url.lower()), None))
    for page in sorted(pages, key=lambda page: page.word_count, reverse=True)[:3]:
        pick(page)

    parts: list[str] = []
    total = 0
    for page in selected:
        if total >= SAMPLE_MAX_CHARS:
            break
        part = f"\n--- SOURCE: {page.url} ---\n{page.clean_text[:SAMPLE_PAGE_CHARS]}\n"
        parts.append(part)
        total += len(part)
    return "".join(parts)[:SAMPLE_MAX_CHARS]


def aggregate_content_hash(pages: Sequence[PageContent]) -> str | None:
    """Order-independent hash over the pages' content hashes."""
    hashes = sorted(page.content_hash for page in pages if page.content_hash)
    if not hashes:
        return None
    return sha256("|".join(hashes).encode()).hexdigest()


def profile_hash(brand: BrandAnalysis) -> str:
    key = "|".join(
        [
            brand.industry or "",
            brand.tone or "",
            brand.target_audience or "",
            brand.primary_goal or "",
            f"{brand.sales_aggressiveness:g}",
        ]
    )
    return sha256(key.encode()).hexdigest()


def snapshot(profile: BrandProfile) -> BrandAnalysis:
    """Detached copy of a stored profile's brand fields."""
    return BrandAnalysis(**{name: getattr(profile, name) for name in BrandAnalysis.model_fields})


def _level(score: float) -> str:
    if score < 0.34:
        return "Low"
    if score < 0.67:
        return "Medium"
    return "High"


@dataclass(frozen=True)
class BrandBehavior:
    """Assistant role and behavior implied by a brand."""

    role: str
    profile: BehaviorProfile


def map_brand_to_behavior(brand: BrandAnalysis) -> BrandBehavior:
    goal = (brand.primary_goal or "").lower()
    industry = (brand.industry or "").lower()

    role = "Support Assistant"
    if "sales" in goal or "lead" in goal:
        role = "Sales Assistant"
    elif "education" in goal:
        role = "Teaching Assistant"
    if "saas" in industry and role == "Support Assistant":
        role = "Product Support Specialist"

    return BrandBehavior(
        role=role,
        profile=BehaviorProfile(
            tone=TONE_MAP.get(brand.tone) if brand.tone else None,
            sales_intensity=_level(brand.sales_aggressiveness),
            response_length="Long" if brand.reading_complexity > 0.6 else "Medium",
        ),
    )


def score_drift(
    before: BrandAnalysis, after: BrandAnalysis
) -> tuple[float, list[dict[str, Any]]]:
    """Drift score and the changed fields as ``{field, from, to, weight}``.

    Text fields only count when both sides are set; case is ignored.
    """
    details: list[dict[str, Any]] = []
    for name, weight in DRIFT_WEIGHTS.items():
        old, new = getattr(before, name), getattr(after, name)
        if old and new and old.lower() != new.lower():
            details.append({"field": name, "from": old, "to": new, "weight": weight})
    if abs(after.sales_aggressiveness - before.sales_aggressiveness) > SALES_DRIFT_MARGIN:
        details.append(
            {
                "field": "sales_aggressiveness",
                "from": before.sales_aggressiveness,
                "to": after.sales_aggressiveness,
                "weight": SALES_DRIFT_WEIGHT,
            }
        )
    return round(sum(item["weight"] for item in details), 2), details


def drift_severity(score: float) -> DriftSeverity:
    if score > 0.5:
        return DriftSeverity.HIGH
    if score > 0.2:
        return DriftSeverity.MEDIUM
    return DriftSeverity.LOW


@dataclass(frozen=True)
class BrandDetection:
    profile: BrandProfile
    role: str
    suggestion: BehaviorSuggestion | None = None


@dataclass(frozen=True)
class DriftCheck:
    """Outcome of a drift check. ``entry`` is set only when drift was logged."""

    drifted: bool
    reason: str | None = None
    entry: BrandDriftLog | None = None
    suggestion: BehaviorSuggestion | None = None


@dataclass(frozen=True)
class BrandConfig:
    """Tunables for brand detection."""

    min_sample_chars: int = 500
    # Detections below this confidence propose no behavior change
    suggestion_threshold: float = 0.6

    @classmethod
    def from_settings(cls) -> "BrandConfig":
        return cls(
            min_sample_chars=settings.brand_min_sample_chars,
            suggestion_threshold=settings.behavior_confidence_threshold,
        )


class BrandService:
    """Detects brand profiles and tracks their drift."""

    def __init__(
        self,
        store: Store,
        capability: MeteredCapability,
        review: ReviewService,
        config: BrandConfig | None = None,
    ) -> None:
        self._store = store
        self._capability = capability
        self._review = review
        self._config = config or BrandConfig.from_settings()

    async def _approved_pages(self, connection_id: UUID) -> list[PageContent]:
        pages = await self._store.list_pages(connection_id, status=PageStatus.FETCHED)
        return [page for page in pages if not page.is_duplicate]

    async def detect(
        self, connection_id: UUID, source: BrandSource = BrandSource.AUTO
    ) -> BrandDetection:
        """Detect and store the brand profile of a connection.

        Raises:
            InsufficientContentError: The fetched pages hold too little text.
            CapabilityError: The classifier failed.
        """
        await self._store.get_connection(connection_id)
        pages = await self._approved_pages(connection_id)
        sample = sample_content(pages)
        if len(sample) < self._config.min_sample_chars:
            raise InsufficientContentError(
                connection_id, len(sample), self._config.min_sample_chars
            )

        classification = await self._capability.classify(
            sample, task=ClassificationTask.BRAND, connection_id=connection_id
        )
        brand = classification.brand or BrandAnalysis(industry=classification.label)
        behavior = map_brand_to_behavior(brand)
        profile = await self._store.save_brand_profile(
            BrandProfile(
                connection_id=connection_id,
                **brand.model_dump(),
                assistant_role=behavior.role,
                confidence=classification.confidence,
                source=source,
                source_content_hash=aggregate_content_hash(pages),
                profile_hash=profile_hash(brand),
                detected_at=utcnow_naive(),
            )
        )
        log.info(
            "Brand detected",
            connection_id=str(connection_id),
            industry=brand.industry,
            tone=brand.tone,
            role=behavior.role,
            confidence=classification.confidence,
            source=source.value,
        )

        suggestion = None
        if classification.confidence >= self._config.suggestion_threshold:
            suggestion = await self._review.propose(
                connection_id,
                behavior.profile,
                confidence=classification.confidence,
                reasoning=classification.reasoning
                or f"Detected brand: {brand.industry}, {brand.tone or 'unknown'} tone",
            )
        return BrandDetection(profile=profile, role=behavior.role, suggestion=suggestion)

    async def check_drift(self, connection_id: UUID) -> DriftCheck:
        """Re-detect the brand if the fetched content changed and log any drift."""
        profile = await self._store.get_brand_profile(connection_id)
        if profile is None:
            return DriftCheck(drifted=False, reason="no brand profile")

        pages = await self._approved_pages(connection_id)
        current_hash = aggregate_content_hash(pages)
        if current_hash is None:
            return DriftCheck(drifted=False, reason="no page content")
        if profile.source_content_hash == current_hash:
            return DriftCheck(drifted=False, reason="content unchanged")

        before = snapshot(profile)
        try:
            detection = await self.detect(connection_id)
        except (CapabilityError, InsufficientContentError) as e:
            log.warning(
                "Brand re-detection failed",
                connection_id=str(connection_id),
                error=e.message,
            )
            values = {name: getattr(profile, name) for name in BRAND_PROFILE_FIELDS}
            values["source_content_hash"] = current_hash
            await self._store.save_brand_profile(
                BrandProfile(connection_id=connection_id, **values)
            )
            return DriftCheck(drifted=False, reason=f"re-detection failed: {e.message}")

        score, details = score_drift(before, snapshot(detection.profile))
        if not details:
            return DriftCheck(
                drifted=False,
                reason="brand profile unchanged",
                suggestion=detection.suggestion,
            )

        entry = await self._store.add_drift_log(
            BrandDriftLog(
                connection_id=connection_id,
                previous_profile_hash=profile_hash(before),
                current_content_hash=current_hash,
                drift_score=score,
                severity=drift_severity(score),
                details=details,
            )
        )
        log.warning(
            "Brand drift detected",
            connection_id=str(connection_id),
            drift_id=str(entry.id),
            score=score,
            severity=entry.severity.value,
            fields=[item["field"] for item in details],
        )
        return DriftCheck(drifted=True, entry=entry, suggestion=detection.suggestion)

    async def confirm_drift(self, log_id: UUID, actor: str) -> BrandDriftLog:
        return await self._store.resolve_drift(
            log_id, DriftStatus.CONFIRMED, actor=actor, now=utcnow_naive()
        )

    async def ignore_drift(self, log_id: UUID, actor: str) -> BrandDriftLog:
        return await self._store.resolve_drift(
            log_id, DriftStatus.IGNORED, actor=actor, now=utcnow_naive()
        )

    async def reanalyze(self, connection_id: UUID, actor: str) -> BrandDetection:
        """Confirm all pending drift, then detect again as a manual analysis."""
        pending = await self._store.list_drift_logs(connection_id, status=DriftStatus.PENDING)
        for entry in pending:
            try:
                await self.confirm_drift(entry.id, actor)
            except InvalidTransitionError:
                log.debug("Drift already resolved", drift_id=str(entry.id))
        return await self.detect(connection_id, BrandSource.MANUAL)
