"""URL discovery for a connection's website.

Strategies are tried in order until one yields URLs:

1. ``/sitemap.xml`` (following sitemap indexes)
2. ``Sitemap:`` entries in ``/robots.txt``
3. A breadth-first crawl of same-host links from the site root

Discovered URLs are normalized, filtered and stored as
``ConnectionDiscovery`` rows; rows that already exist are left alone so
routine re-discovery never re-fetches a page.
"""

import xml.etree.ElementTree as ET
from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from uuid import UUID

import httpx
import structlog
from bs4 import BeautifulSoup

from attune.config import settings
from attune.db.models import CrawlSession, utcnow_naive
from attune.errors import FetchError
from attune.ingestion.urls import is_crawlable, normalize_url
from attune.states import CrawlSessionStatus, DiscoverySource
from attune.store.base import Store

log = structlog.get_logger()

MAX_SITEMAP_FILES = 10


@dataclass(frozen=True)
class DiscoveryConfig:
    """Limits for discovery requests."""

    timeout: float = 5.0
    user_agent: str = "AttuneCrawler/1.0"
    max_pages: int = 50
    max_depth: int = 2
    max_bytes: int = 1024 * 1024
    max_urls: int = 500

    @classmethod
    def from_settings(cls) -> "DiscoveryConfig":
        return cls(
            timeout=settings.fetch_timeout_seconds,
            user_agent=settings.fetch_user_agent,
            max_pages=settings.crawl_max_pages,
            max_depth=settings.crawl_max_depth,
            max_bytes=settings.fetch_max_bytes,
        )


def parse_sitemap(xml_text: str) -> tuple[list[str], list[str]]:
    """Parse a sitemap or sitemap index.

    Returns:
        (page_urls, child_sitemap_urls)
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        return [], []
    locs = [
        el.text.strip()
        for el in root.iter()
        if el.tag.rsplit("}", 1)[-1] == "loc" and el.text and el.text.strip()
    ]
    if root.tag.rsplit("}", 1)[-1] == "sitemapindex":
        return [], locs
    return locs, []


def parse_robots_sitemaps(robots_text: str) -> list[str]:
    """Extract ``Sitemap:`` URLs from a robots.txt body."""
    sitemaps = []
    for line in robots_text.splitlines():
        key, _, value = line.partition(":")
        if key.strip().lower() == "sitemap" and value.strip():
            sitemaps.append(value.strip())
    return sitemaps


def extract_links(html: str, base_url: str) -> list[str]:
    """Extract absolute, normalized link targets from an HTML page."""
    soup = BeautifulSoup(html, "html.parser")
    links = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"]
        if not isinstance(href, str) or href.startswith(("mailto:", "tel:", "javascript:", "#")):
            continue
        url = normalize_url(href, base=base_url)
        if url:
            links.append(url)
    return links


def filter_urls(urls: Iterable[str], site: str) -> list[str]:
    """Normalize, dedupe and keep only crawlable same-site URLs."""
    kept: dict[str, None] = {}
    for raw in urls:
        url = normalize_url(raw, base=site)
        if url and is_crawlable(url, site):
            kept[url] = None
    return list(kept)


class SiteDiscoverer:
    """Finds candidate page URLs for a website."""

    def __init__(self, client: httpx.AsyncClient, config: DiscoveryConfig | None = None) -> None:
        self._client = client
        self._config = config or DiscoveryConfig.from_settings()

    async def _get_text(self, url: str) -> str:
        try:
            response = await self._client.get(
                url,
                timeout=self._config.timeout,
                headers={"User-Agent": self._config.user_agent},
                follow_redirects=True,
            )
        except httpx.HTTPError as e:
            raise FetchError(url, str(e) or type(e).__name__) from e
        if response.status_code >= 400:
            raise FetchError(url, f"HTTP {response.status_code}")
        if len(response.content) > self._config.max_bytes:
            raise FetchError(url, "response too large")
        return response.text

    async def from_sitemap(self, site: str, sitemap_url: str | None = None) -> list[str]:
        """Collect page URLs from a sitemap, following sitemap indexes."""
        queue = deque([sitemap_url or normalize_url("/sitemap.xml", base=site) or site])
        seen: set[str] = set()
        pages: list[str] = []
        while queue and len(seen) < MAX_SITEMAP_FILES:
            url = queue.popleft()
            if url in seen:
                continue
            seen.add(url)
            try:
                body = await self._get_text(url)
            except FetchError as e:
                log.debug("Sitemap unavailable", url=url, reason=e.reason)
                continue
            page_urls, children = parse_sitemap(body)
            pages.extend(page_urls)
            queue.extend(children)
        return filter_urls(pages, site)

    async def from_robots(self, site: str) -> list[str]:
        """Collect page URLs from sitemaps advertised in robots.txt."""
        robots_url = normalize_url("/robots.txt", base=site)
        if robots_url is None:
            return []
        try:
            body = await self._get_text(robots_url)
        except FetchError as e:
            log.debug("robots.txt unavailable", url=robots_url, reason=e.reason)
            return []
        urls: list[str] = []
        for sitemap in parse_robots_sitemaps(body):
            urls.extend(await self.from_sitemap(site, sitemap))
        return list(dict.fromkeys(urls))

    async def crawl(self, site: str) -> list[str]:
        """Breadth-first crawl of same-site links from the site root."""
        start = normalize_url(site)
        if start is None:
            return []
        queue: deque[tuple[str, int]] = deque([(start, 0)])
        visited: set[str] = {start}
        found: list[str] = []
        while queue and len(found) < self._config.max_pages:
            url, depth = queue.popleft()
            try:
                body = await self._get_text(url)
            except FetchError as e:
                log.debug("Crawl fetch failed", url=url, reason=e.reason)
                continue
            found.append(url)
            if depth >= self._config.max_depth:
                continue
            for link in extract_links(body, url):
                if link not in visited and is_crawlable(link, site):
                    visited.add(link)
                    queue.append((link, depth + 1))
        return found

    async def discover(self, site: str) -> tuple[DiscoverySource | None, list[str]]:
        """Run the strategies in order and return the first non-empty result."""
        for source, strategy in (
            (DiscoverySource.SITEMAP, self.from_sitemap),
            (DiscoverySource.ROBOTS, self.from_robots),
            (DiscoverySource.CRAWL, self.crawl),
        ):
            urls = await strategy(site)
            if urls:
                log.info("URLs discovered", site=site, method=source.value, count=len(urls))
                return source, urls[: self._config.max_urls]
        return None, []


class DiscoveryService:
    """Records discovered URLs for connections."""

    def __init__(self, store: Store, discoverer: SiteDiscoverer) -> None:
        self._store = store
        self._discoverer = discoverer

    async def enqueue(
        self,
        connection_id: UUID,
        urls: Sequence[str],
        source_type: DiscoverySource = DiscoverySource.MANUAL,
        *,
        force: bool = False,
    ) -> int:
        """Add candidate URLs for a connection.

        URLs are normalized and filtered against the connection's website.
        Existing rows are untouched unless ``force`` is set, in which case
        terminal rows are reset to DISCOVERED for an explicit re-crawl.

        Returns:
            Number of URLs newly discovered or reset.
        """
        connection = await self._store.get_connection(connection_id)
        if connection.website_url:
            accepted = filter_urls(urls, connection.website_url)
        else:
            accepted = list(dict.fromkeys(u for u in (normalize_url(x) for x in urls) if u))
        rejected = len(urls) - len(accepted)

        added = await self._store.add_discoveries(connection_id, accepted, source_type)
        reset = await self._store.reset_discoveries(connection_id, accepted) if force else 0
        log.info(
            "URLs enqueued for discovery",
            connection_id=str(connection_id),
            source_type=source_type.value,
            added=added,
            reset=reset,
            rejected=rejected,
        )
        return added + reset

    async def discover(self, connection_id: UUID) -> CrawlSession:
        """Discover URLs from the connection's website and record a crawl session."""
        connection = await self._store.get_connection(connection_id)
        session = await self._store.add_crawl_session(CrawlSession(connection_id=connection_id))
        if not connection.website_url:
            await self._finish(session, CrawlSessionStatus.FAILED, error="Connection has no website")
            return session

        try:
            method, urls = await self._discoverer.discover(connection.website_url)
        except Exception as e:
            await self._finish(session, CrawlSessionStatus.FAILED, error=str(e))
            raise

        if not urls:
            await self._finish(session, CrawlSessionStatus.FAILED, error="No URLs discovered")
            log.warning("Discovery found nothing", connection_id=str(connection_id))
            return session

        added = await self._store.add_discoveries(connection_id, urls, method or DiscoverySource.CRAWL)
        await self._finish(
            session,
            CrawlSessionStatus.COMPLETED,
            method=method,
            total_urls=len(urls),
            new_urls=added,
        )
        return session

    async def _finish(
        self, session: CrawlSession, status: CrawlSessionStatus, *, error: str | None = None, **values
    ) -> None:
        values.update(status=status, error_message=error, finished_at=utcnow_naive())
        await self._store.update_crawl_session(session.id, values)
        for name, value in values.items():
            setattr(session, name, value)
