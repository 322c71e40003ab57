"""Content ingestion: discovery, fetching, document reading and sanitizing."""

from attune.ingestion.discovery import DiscoveryConfig, DiscoveryService, SiteDiscoverer
from attune.ingestion.documents import read_document
from attune.ingestion.fetcher import FetchConfig, FetchReport, PageFetcher, clean_html
from attune.ingestion.sanitizer import SanitizeResult, sanitize
from attune.ingestion.urls import is_crawlable, normalize_url

__all__ = [
    "DiscoveryConfig",
    "DiscoveryService",
    "FetchConfig",
    "FetchReport",
    "PageFetcher",
    "SanitizeResult",
    "SiteDiscoverer",
    "clean_html",
    "is_crawlable",
    "normalize_url",
    "read_document",
    "sanitize",
]
