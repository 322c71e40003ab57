"""Tests for page categorization, coverage and launch readiness."""

from hashlib import sha256
from uuid import UUID, uuid4

import pytest

from attune.coverage import (
    calculate_coverage,
    categorize_url,
    category_for_label,
    classify_risk,
    launch_readiness,
)
from attune.db.models import BrandProfile, PageContent
from attune.errors import CapabilityError, NotFoundError
from attune.models import Classification
from attune.service import Pipeline
from attune.states import DiscoverySource, PageCategory, PageStatus, RiskLevel
from attune.store.memory import MemoryStore

PRICING = PageCategory.PRICING
SUPPORT = PageCategory.SUPPORT
PRODUCT = PageCategory.PRODUCT
OTHER = PageCategory.OTHER


def make_page(
    connection_id: UUID, path: str, words: int = 50, content_hash: str | None = None
) -> PageContent:
    return PageContent(
        connection_id=connection_id,
        url=f"https://acme.example{path}",
        clean_text=" ".join(["widget"] * words),
        word_count=words,
        content_hash=content_hash or sha256(path.encode()).hexdigest(),
    )


class TestCategorizeUrl:
    """Tests for URL rules."""

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("https://acme.example/pricing", PRICING),
            ("https://acme.example/help/contact-us", SUPPORT),
            ("https://acme.example/company/team", PageCategory.ABOUT),
            ("https://acme.example/privacy-policy", PageCategory.LEGAL),
            ("https://acme.example/blog/launch", PageCategory.BLOG),
            ("https://acme.example/Features", PRODUCT),
        ],
    )
    def test_rules(self, url: str, expected: PageCategory) -> None:
        assert categorize_url(url) == expected

    def test_first_rule_wins(self) -> None:
        """FAQ is checked before product."""
        assert categorize_url("https://acme.example/product-faq") == PageCategory.FAQ

    def test_host_is_not_matched(self) -> None:
        """Only the path counts; a support subdomain homepage is unmatched."""
        assert categorize_url("https://support.acme.example/") is None
        assert categorize_url("https://acme.example/") is None

    @pytest.mark.parametrize(
        ("label", "expected"),
        [("policy", PageCategory.LEGAL), ("contact", SUPPORT), ("Pricing", PRICING), ("x", OTHER)],
    )
    def test_classifier_labels(self, label: str, expected: PageCategory) -> None:
        assert category_for_label(label) == expected


class TestCalculateCoverage:
    """Tests for the weighted coverage score."""

    def test_no_pages(self) -> None:
        report = calculate_coverage([], 0)
        assert (report.coverage_score, report.critical_score) == (0.0, 0.0)
        assert report.missing_critical == [PRICING, SUPPORT, PRODUCT]
        assert report.risk == RiskLevel.CRITICAL

    def test_all_critical_pages(self) -> None:
        report = calculate_coverage([PRICING, SUPPORT, PRODUCT], 3)
        assert (report.coverage_score, report.critical_score) == (1.0, 1.0)
        assert report.indexed_pages == 3
        assert report.missing_critical == []
        assert report.risk == RiskLevel.LOW

    def test_discovered_pages_widen_the_denominator(self) -> None:
        """Unfetched discoveries count against coverage; uncategorized pages are OTHER."""
        report = calculate_coverage([PRICING, OTHER, None], 10)

        assert report.coverage_score == pytest.approx(4 / 13)
        assert report.critical_score == pytest.approx(1 / 3)
        assert report.indexed_pages == 1
        assert report.categories == {PRICING: 1, OTHER: 2}
        assert report.missing_critical == [SUPPORT, PRODUCT]
        assert report.risk == RiskLevel.HIGH

    def test_no_discoveries_uses_approved_count(self) -> None:
        report = calculate_coverage([PRICING, SUPPORT, PRODUCT, OTHER], 0)
        assert report.coverage_score == 1.0

    @pytest.mark.parametrize(
        ("coverage", "critical", "approved", "expected"),
        [
            (0.9, 1.0, 2, RiskLevel.CRITICAL),
            (0.2, 0.0, 10, RiskLevel.CRITICAL),
            (0.2, 0.67, 10, RiskLevel.HIGH),
            (0.6, 1.0, 10, RiskLevel.MEDIUM),
            (0.8, 0.34, 10, RiskLevel.MEDIUM),
            (0.8, 0.67, 10, RiskLevel.LOW),
        ],
    )
    def test_risk(
        self, coverage: float, critical: float, approved: int, expected: RiskLevel
    ) -> None:
        assert classify_risk(coverage, critical, approved) == expected


class TestLaunchReadiness:
    """Tests for the readiness score."""

    def test_ready(self) -> None:
        report = calculate_coverage([PRICING, SUPPORT, PRODUCT], 3)
        readiness = launch_readiness(report, brand_confidence=0.8, drift_health=1.0)

        assert readiness.score == 94
        assert (readiness.brand_alignment, readiness.knowledge_coverage) == (80, 100)
        assert readiness.suggestions == []

    def test_not_ready_lists_every_gap(self) -> None:
        readiness = launch_readiness(
            calculate_coverage([], 0), brand_confidence=0.0, drift_health=0.5
        )

        assert readiness.score == 5
        assert readiness.risk == RiskLevel.CRITICAL
        assert len(readiness.suggestions) == 4
        assert "Add a pricing, support, product page to improve readiness." in (
            readiness.suggestions
        )


class TestCoverageService:
    """Tests for categorizing stored pages and reporting on them."""

    @pytest.mark.asyncio
    async def test_categorize(
        self, pipeline: Pipeline, store: MemoryStore, capability
    ) -> None:
        """URL rules first, the classifier only for long unmatched pages."""
        connection = await pipeline.create_connection("https://acme.example")
        capability.knowledge = Classification(label="policy", confidence=0.9)
        pricing, _ = await store.record_page(make_page(connection.id, "/pricing"))
        long_page, _ = await store.record_page(make_page(connection.id, "/widgets", words=400))
        short_page, _ = await store.record_page(make_page(connection.id, "/misc", words=20))

        report = await pipeline.categorize_pages(connection.id)

        assert (report.by_url, report.by_classifier, report.skipped) == (1, 1, 1)
        assert (pricing.category, pricing.importance_score) == (PRICING, 0.95)
        assert (long_page.category, long_page.importance_score) == (PageCategory.LEGAL, 0.7)
        assert (short_page.category, short_page.importance_score) == (OTHER, 0.3)
        assert len(capability.classify_calls) == 1

        again = await pipeline.categorize_pages(connection.id)
        assert again.categorized + again.skipped == 0

    @pytest.mark.asyncio
    async def test_classifier_failure_files_as_other(
        self, pipeline: Pipeline, store: MemoryStore, capability
    ) -> None:
        connection = await pipeline.create_connection("https://acme.example")
        capability.classify_error = CapabilityError("classify", "boom")
        page, _ = await store.record_page(make_page(connection.id, "/widgets", words=400))

        report = await pipeline.categorize_pages(connection.id)

        assert report.by_classifier == 1
        assert page.category == OTHER

    @pytest.mark.asyncio
    async def test_duplicates_and_failed_pages_not_counted(
        self, pipeline: Pipeline, store: MemoryStore
    ) -> None:
        connection = await pipeline.create_connection("https://acme.example")
        await store.record_page(make_page(connection.id, "/pricing", content_hash="a" * 64))
        duplicate, _ = await store.record_page(
            make_page(connection.id, "/plans", content_hash="a" * 64)
        )
        failed = make_page(connection.id, "/support")
        failed.status = PageStatus.FAILED
        await store.record_page(failed)
        assert duplicate.is_duplicate

        await pipeline.categorize_pages(connection.id)
        report = await pipeline.coverage_report(connection.id)

        assert report.approved_pages == 1
        assert report.categories == {PRICING: 1}

    @pytest.mark.asyncio
    async def test_readiness(self, pipeline: Pipeline, store: MemoryStore) -> None:
        """Brand confidence and gate health feed the readiness score."""
        connection = await pipeline.create_connection("https://acme.example")
        await store.add_discoveries(
            connection.id,
            [f"https://acme.example/{path}" for path in ("pricing", "support", "features")],
            DiscoverySource.SITEMAP,
        )
        for path in ("/pricing", "/support", "/features"):
            await store.record_page(make_page(connection.id, path))
        await store.save_brand_profile(BrandProfile(connection_id=connection.id, confidence=0.8))
        connection.health_score = 100.0
        await pipeline.categorize_pages(connection.id)

        readiness = await pipeline.launch_readiness(connection.id)

        assert readiness.score == 94
        assert readiness.risk == RiskLevel.LOW

    @pytest.mark.asyncio
    async def test_unknown_connection(self, pipeline: Pipeline) -> None:
        with pytest.raises(NotFoundError):
            await pipeline.coverage_report(uuid4())
