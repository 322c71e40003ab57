"""Knowledge coverage and launch readiness.

Fetched pages are sorted into coverage categories, by URL first and by
the knowledge classifier for long pages no URL rule matches. Coverage
weighs the critical categories (pricing, support, product) double, and
readiness folds coverage together with brand confidence and gate health.
Nothing here is persisted except each page's category; reports are
computed on demand.
"""

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from urllib.parse import urlsplit
from uuid import UUID

import structlog

from attune.capability.base import ClassificationTask
from attune.capability.metered import MeteredCapability
from attune.config import settings
from attune.db.models import PageContent
from attune.errors import CapabilityError
from attune.states import PageCategory, PageStatus, RiskLevel
from attune.store.base import Store

log = structlog.get_logger()

CRITICAL_CATEGORIES: tuple[PageCategory, ...] = (
    PageCategory.PRICING,
    PageCategory.SUPPORT,
    PageCategory.PRODUCT,
)

# Checked in order; the first rule with a keyword in the URL path wins
URL_RULES: tuple[tuple[tuple[str, ...], PageCategory], ...] = (
    (("pricing", "plans", "packages", "subscription"), PageCategory.PRICING),
    (("support", "help", "contact", "ticket"), PageCategory.SUPPORT),
    (("about", "team", "story", "mission", "company"), PageCategory.ABOUT),
    (("legal", "privacy", "terms", "tos", "gdpr", "cookie"), PageCategory.LEGAL),
    (("faq", "frequently-asked", "questions"), PageCategory.FAQ),
    (("blog", "news", "article", "post"), PageCategory.BLOG),
    (("product", "features", "solution", "platform", "demo"), PageCategory.PRODUCT),
)

IMPORTANCE: dict[PageCategory, float] = {
    PageCategory.PRICING: 0.95,
    PageCategory.SUPPORT: 0.9,
    PageCategory.PRODUCT: 0.85,
    PageCategory.FAQ: 0.75,
    PageCategory.LEGAL: 0.7,
    PageCategory.ABOUT: 0.6,
    PageCategory.BLOG: 0.4,
    PageCategory.OTHER: 0.3,
}

# Knowledge labels that are not coverage categories themselves
_LABEL_CATEGORIES = {"policy": PageCategory.LEGAL, "contact": PageCategory.SUPPORT}

CLASSIFY_CHARS = 2000


def categorize_url(url: str) -> PageCategory | None:
    """Category of the first URL rule matching the lowercased path, if any."""
    path = urlsplit(url).path.lower()
    for keywords, category in URL_RULES:
        if any(keyword in path for keyword in keywords):
            return category
    return None


def category_for_label(label: str) -> PageCategory:
    label = label.strip().lower()
    if label in _LABEL_CATEGORIES:
        return _LABEL_CATEGORIES[label]
    try:
        return PageCategory(label)
    except ValueError:
        return PageCategory.OTHER


def classify_risk(coverage: float, critical: float, approved_pages: int) -> RiskLevel:
    if approved_pages < len(CRITICAL_CATEGORIES):
        return RiskLevel.CRITICAL
    if coverage < 0.3 and critical < 0.33:
        return RiskLevel.CRITICAL
    if coverage < 0.5:
        return RiskLevel.HIGH
    if coverage < 0.7 or critical < 0.67:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


@dataclass(frozen=True)
class CoverageReport:
    """Coverage of a connection's fetched pages."""

    discovered_pages: int
    approved_pages: int
    indexed_pages: int
    coverage_score: float
    critical_score: float
    risk: RiskLevel
    categories: dict[PageCategory, int]
    missing_critical: list[PageCategory]


def calculate_coverage(
    categories: Sequence[PageCategory | None], discovered_pages: int
) -> CoverageReport:
    """Weighted coverage of the approved pages, one category per page.

    Critical pages count double on both sides of the ratio. One page per
    critical category is always expected, and the discovered URL count
    stands in for the size of the site when there is one.
    """
    counts = Counter(category or PageCategory.OTHER for category in categories)
    approved = len(categories)
    critical_approved = sum(counts[category] for category in CRITICAL_CATEGORIES)
    normal_approved = approved - critical_approved

    effective_total = discovered_pages or approved
    critical_expected = max(len(CRITICAL_CATEGORIES), critical_approved)
    normal_expected = max(effective_total - critical_expected, normal_approved)
    score = min(
        1.0,
        (2 * critical_approved + normal_approved) / (2 * critical_expected + normal_expected),
    )

    missing = [category for category in CRITICAL_CATEGORIES if not counts[category]]
    critical_score = (len(CRITICAL_CATEGORIES) - len(missing)) / len(CRITICAL_CATEGORIES)
    indexed = sum(
        1 for category in categories if category is not None and category != PageCategory.OTHER
    )
    return CoverageReport(
        discovered_pages=discovered_pages,
        approved_pages=approved,
        indexed_pages=indexed,
        coverage_score=score,
        critical_score=critical_score,
        risk=classify_risk(score, critical_score, approved),
        categories={category: counts[category] for category in PageCategory if counts[category]},
        missing_critical=missing,
    )


@dataclass(frozen=True)
class Readiness:
    """Launch readiness: an overall score and its weighted parts, in percent."""

    score: int
    brand_alignment: int
    knowledge_coverage: int
    critical_coverage: int
    drift_health: int
    risk: RiskLevel
    suggestions: list[str]


def _percent(value: float) -> int:
    return int(value * 100 + 0.5)


def launch_readiness(
    coverage: CoverageReport, brand_confidence: float, drift_health: float
) -> Readiness:
    """Weigh brand 30%, coverage 40%, critical pages 20% and gate health 10%."""
    weighted = (
        brand_confidence * 0.3
        + coverage.coverage_score * 0.4
        + coverage.critical_score * 0.2
        + drift_health * 0.1
    )

    suggestions = []
    if brand_confidence < 0.5:
        suggestions.append("Run brand detection to improve alignment.")
    if coverage.coverage_score < 0.5:
        suggestions.append("Fetch more discovered pages to expand coverage.")
    if coverage.missing_critical:
        missing = ", ".join(category.value for category in coverage.missing_critical)
        suggestions.append(f"Add a {missing} page to improve readiness.")
    if drift_health < 0.9:
        suggestions.append("Review recent low-confidence answers to restore gate health.")

    return Readiness(
        score=min(100, _percent(weighted)),
        brand_alignment=_percent(brand_confidence),
        knowledge_coverage=_percent(coverage.coverage_score),
        critical_coverage=_percent(coverage.critical_score),
        drift_health=_percent(drift_health),
        risk=coverage.risk,
        suggestions=suggestions,
    )


@dataclass(frozen=True)
class CoverageConfig:
    """Tunables for page categorization."""

    # Pages no URL rule matches are classified only from this length
    min_classify_words: int = 300

    @classmethod
    def from_settings(cls) -> "CoverageConfig":
        return cls(min_classify_words=settings.coverage_min_classify_words)


@dataclass
class CategorizeReport:
    by_url: int = 0
    by_classifier: int = 0
    skipped: int = 0

    @property
    def categorized(self) -> int:
        return self.by_url + self.by_classifier


class CoverageService:
    """Categorizes fetched pages and reports coverage and readiness."""

    def __init__(
        self,
        store: Store,
        capability: MeteredCapability,
        config: CoverageConfig | None = None,
    ) -> None:
        self._store = store
        self._capability = capability
        self._config = config or CoverageConfig.from_settings()

    async def _approved_pages(self, connection_id: UUID) -> list[PageContent]:
        pages = await self._store.list_pages(connection_id, status=PageStatus.FETCHED)
        return [page for page in pages if not page.is_duplicate]

    async def categorize(self, connection_id: UUID) -> CategorizeReport:
        """Assign a category to every approved page that has none.

        Short pages no URL rule matches are filed as OTHER without a
        classifier call and counted as skipped. A classifier failure files
        the page as OTHER too.
        """
        report = CategorizeReport()
        for page in await self._approved_pages(connection_id):
            if page.category is not None:
                continue
            category = categorize_url(page.url)
            if category is not None:
                report.by_url += 1
            elif page.word_count < self._config.min_classify_words:
                category = PageCategory.OTHER
                report.skipped += 1
            else:
                category = await self._classify(connection_id, page)
                report.by_classifier += 1
            await self._store.categorize_page(page.id, category, IMPORTANCE[category])

        log.info(
            "Pages categorized",
            connection_id=str(connection_id),
            by_url=report.by_url,
            by_classifier=report.by_classifier,
            skipped=report.skipped,
        )
        return report

    async def _classify(self, connection_id: UUID, page: PageContent) -> PageCategory:
        try:
            classification = await self._capability.classify(
                page.clean_text[:CLASSIFY_CHARS],
                task=ClassificationTask.KNOWLEDGE,
                connection_id=connection_id,
            )
        except CapabilityError as e:
            log.warning(
                "Page classification failed, filed as other",
                connection_id=str(connection_id),
                url=page.url,
                error=e.message,
            )
            return PageCategory.OTHER
        return category_for_label(classification.label)

    async def calculate(self, connection_id: UUID) -> CoverageReport:
        await self._store.get_connection(connection_id)
        pages = await self._approved_pages(connection_id)
        discoveries = await self._store.list_discoveries(connection_id)
        return calculate_coverage([page.category for page in pages], len(discoveries))

    async def readiness(self, connection_id: UUID) -> Readiness:
        connection = await self._store.get_connection(connection_id)
        coverage = await self.calculate(connection_id)
        profile = await self._store.get_brand_profile(connection_id)
        return launch_readiness(
            coverage,
            brand_confidence=profile.confidence if profile else 0.0,
            drift_health=connection.health_score / 100,
        )
