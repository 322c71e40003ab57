"""Fetch queue: turns DISCOVERED URLs into page content.

Each discovered URL is fetched at most once by routine processing. A
successful fetch is cleaned, sanitized and hashed; identical content
already stored for the connection is recorded as a duplicate and never
queued for extraction again. Thin pages are stored but not queued.
"""

import asyncio
import re
from dataclasses import dataclass
from hashlib import sha256
from uuid import UUID

import httpx
import structlog
from bs4 import BeautifulSoup

from attune.config import settings
from attune.db.models import (
    ConnectionDiscovery,
    PageContent,
    PendingExtraction,
    source_key_for,
    utcnow_naive,
)
from attune.errors import FetchError
from attune.ingestion.sanitizer import sanitize
from attune.models import ExtractionPayload
from attune.states import (
    ContentType,
    DiscoveryStatus,
    ExtractionSource,
    ExtractorType,
    PageStatus,
)
from attune.store.base import Store

log = structlog.get_logger()

_STRIP_TAGS = ("script", "style", "nav", "footer", "header", "iframe", "noscript", "svg", "form")
_AD_MARKERS = re.compile(r"(^|[\s_-])(ad|ads|advert|advertisement|banner|cookie|popup)([\s_-]|$)", re.I)


@dataclass(frozen=True)
class FetchConfig:
    """Limits for page fetching."""

    timeout: float = 5.0
    max_bytes: int = 1024 * 1024
    concurrency: int = 10
    user_agent: str = "AttuneCrawler/1.0"
    thin_words: int = 50
    max_chars: int = 1024 * 1024
    min_chars: int = 50

    @classmethod
    def from_settings(cls) -> "FetchConfig":
        return cls(
            timeout=settings.fetch_timeout_seconds,
            max_bytes=settings.fetch_max_bytes,
            concurrency=settings.fetch_concurrency,
            user_agent=settings.fetch_user_agent,
            thin_words=settings.thin_content_words,
            max_chars=settings.max_content_chars,
            min_chars=settings.min_content_chars,
        )


@dataclass
class FetchReport:
    """Counts from one pass over a connection's fetch queue."""

    fetched: int = 0
    failed: int = 0
    duplicates: int = 0
    thin: int = 0
    queued: int = 0


def clean_html(html: str) -> tuple[str | None, str]:
    """Extract the title and readable text from an HTML page.

    Drops scripts, styles, navigation, footers and ad containers, and
    collapses whitespace within each line.
    """
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else None

    for tag in soup(_STRIP_TAGS):
        tag.decompose()
    for tag in soup.find_all(True):
        if tag.decomposed or tag.attrs is None:
            continue
        markers = " ".join([tag.get("id") or "", *(tag.get("class") or [])])
        if markers.strip() and _AD_MARKERS.search(markers):
            tag.decompose()

    lines = (" ".join(line.split()) for line in soup.get_text("\n").splitlines())
    return title or None, "\n".join(line for line in lines if line)


def content_hash(text: str) -> str:
    return sha256(text.encode("utf-8")).hexdigest()


class PageFetcher:
    """Fetches DISCOVERED URLs for a connection with bounded concurrency."""

    def __init__(
        self, store: Store, client: httpx.AsyncClient, config: FetchConfig | None = None
    ) -> None:
        self._store = store
        self._client = client
        self._config = config or FetchConfig.from_settings()

    async def download(self, url: str) -> str:
        """Download an HTML page, enforcing timeout, type and size limits.

        Raises:
            FetchError: On network errors, non-2xx status, non-HTML content or
                an oversized body.
        """
        try:
            return await asyncio.wait_for(self._download(url), timeout=self._config.timeout)
        except TimeoutError as e:
            raise FetchError(url, f"timed out after {self._config.timeout:g}s") from e
        except httpx.HTTPError as e:
            raise FetchError(url, str(e) or type(e).__name__) from e

    async def _download(self, url: str) -> str:
        headers = {"User-Agent": self._config.user_agent, "Accept": "text/html"}
        async with self._client.stream(
            "GET", url, headers=headers, timeout=self._config.timeout, follow_redirects=True
        ) as response:
            if response.status_code >= 400:
                raise FetchError(url, f"HTTP {response.status_code}")
            content_type = response.headers.get("content-type", "")
            if "text/html" not in content_type.lower():
                raise FetchError(url, f"unsupported content type {content_type or 'unknown'}")
            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) > self._config.max_bytes:
                    raise FetchError(url, f"response exceeds {self._config.max_bytes} bytes")
            encoding = response.encoding or "utf-8"
        return body.decode(encoding, errors="replace")

    async def fetch_pending(self, connection_id: UUID, *, limit: int | None = None) -> FetchReport:
        """Fetch every DISCOVERED URL for a connection."""
        pending = await self._store.list_discoveries(
            connection_id, status=DiscoveryStatus.DISCOVERED, limit=limit
        )
        report = FetchReport()
        if not pending:
            return report

        semaphore = asyncio.Semaphore(self._config.concurrency)

        async def run(discovery: ConnectionDiscovery) -> None:
            async with semaphore:
                try:
                    await self.fetch_one(discovery, report)
                except Exception:
                    # One bad URL must not stop the batch
                    log.exception("Unexpected fetch failure", url=discovery.url)
                    # A URL already finished was counted by fetch_one
                    if await self._store.finish_discovery(
                        discovery.id,
                        DiscoveryStatus.FAILED,
                        now=utcnow_naive(),
                        error="unexpected error",
                    ):
                        report.failed += 1

        await asyncio.gather(*(run(discovery) for discovery in pending))
        log.info(
            "Fetch pass complete",
            connection_id=str(connection_id),
            fetched=report.fetched,
            failed=report.failed,
            duplicates=report.duplicates,
            thin=report.thin,
            queued=report.queued,
        )
        return report

    async def fetch_one(self, discovery: ConnectionDiscovery, report: FetchReport) -> None:
        """Fetch one discovered URL and record its outcome."""
        try:
            html = await self.download(discovery.url)
        except FetchError as e:
            log.info("Fetch failed", url=discovery.url, reason=e.reason)
            await self._store.record_page(
                PageContent(
                    connection_id=discovery.connection_id,
                    discovery_id=discovery.id,
                    url=discovery.url,
                    status=PageStatus.FAILED,
                    error_message=e.reason,
                )
            )
            await self._store.finish_discovery(
                discovery.id, DiscoveryStatus.FAILED, now=utcnow_naive(), error=e.reason
            )
            report.failed += 1
            return

        title, text = clean_html(html)
        result = sanitize(text, max_chars=self._config.max_chars, min_chars=self._config.min_chars)
        injections = [w for w in result.warnings if w.startswith("Potential prompt injection")]
        if injections:
            log.warning(
                "Prompt injection redacted from page",
                connection_id=str(discovery.connection_id),
                url=discovery.url,
                warnings=injections,
            )

        word_count = len(result.text.split())
        page, duplicate = await self._store.record_page(
            PageContent(
                connection_id=discovery.connection_id,
                discovery_id=discovery.id,
                url=discovery.url,
                status=PageStatus.FETCHED,
                title=title[:512] if title else None,
                clean_text=result.text,
                word_count=word_count,
                content_hash=content_hash(result.text),
            )
        )
        await self._store.finish_discovery(
            discovery.id, DiscoveryStatus.FETCHED, now=utcnow_naive()
        )
        report.fetched += 1

        if duplicate:
            log.debug("Duplicate content, not queued", url=discovery.url, page_id=str(page.id))
            report.duplicates += 1
            return
        if word_count <= self._config.thin_words:
            log.debug("Thin content, not queued", url=discovery.url, words=word_count)
            report.thin += 1
            return

        payload = ExtractionPayload(text=result.text, title=page.title, url=page.url)
        _, created = await self._store.enqueue_extraction(
            PendingExtraction(
                connection_id=discovery.connection_id,
                source_type=ExtractionSource.AUTO,
                content_type=ContentType.PAGE,
                extractor_type=ExtractorType.KNOWLEDGE,
                page_content_id=page.id,
                source_key=source_key_for(ContentType.PAGE, page.id),
                raw_data=payload.model_dump(exclude_none=True),
            )
        )
        if created:
            report.queued += 1
