"""Tests for URL normalization and crawl filtering."""

import pytest

from attune.ingestion.urls import host_of, is_crawlable, normalize_url


class TestNormalizeUrl:
    """Tests for normalize_url."""

    def test_lowercases_scheme_and_host(self) -> None:
        """Scheme and host are case-insensitive."""
        assert normalize_url("HTTPS://Example.COM/About") == "https://example.com/About"

    def test_drops_fragment_and_trailing_slash(self) -> None:
        """Fragments and trailing slashes do not make distinct pages."""
        assert normalize_url("https://example.com/pricing/#plans") == "https://example.com/pricing"

    def test_root_keeps_slash(self) -> None:
        """The root path is always '/'."""
        assert normalize_url("https://example.com") == "https://example.com/"

    def test_strips_tracking_params(self) -> None:
        """utm_*, fbclid and gclid are removed; other params survive."""
        url = normalize_url("https://example.com/p?utm_source=x&id=7&fbclid=abc")
        assert url == "https://example.com/p?id=7"

    def test_default_port_removed(self) -> None:
        """Explicit default ports are dropped, others kept."""
        assert normalize_url("https://example.com:443/a") == "https://example.com/a"
        assert normalize_url("http://example.com:8080/a") == "http://example.com:8080/a"

    def test_relative_resolved_against_base(self) -> None:
        """Relative links resolve against the page they came from."""
        assert normalize_url("../faq", base="https://example.com/help/x") == "https://example.com/faq"

    @pytest.mark.parametrize("raw", ["", "mailto:a@b.c", "ftp://example.com/x", "not a url"])
    def test_rejects_non_http(self, raw: str) -> None:
        """Only http(s) URLs normalize."""
        assert normalize_url(raw) is None


class TestIsCrawlable:
    """Tests for is_crawlable."""

    def test_same_host_ignoring_www(self) -> None:
        """www. is ignored when matching the site."""
        assert is_crawlable("https://www.example.com/about", "https://example.com/")
        assert is_crawlable("https://example.com/about", "www.example.com")

    def test_other_host_rejected(self) -> None:
        """Links to other sites are never crawled."""
        assert not is_crawlable("https://other.com/about", "https://example.com/")

    @pytest.mark.parametrize("path", ["/login", "/shop/cart", "/wp-admin/x", "/account/settings"])
    def test_blocked_segments(self, path: str) -> None:
        """Auth, cart and admin paths are skipped."""
        assert not is_crawlable(f"https://example.com{path}", "example.com")

    @pytest.mark.parametrize("path", ["/logo.png", "/files/guide.pdf", "/app.js", "/feed.xml"])
    def test_blocked_extensions(self, path: str) -> None:
        """Binary and asset files are skipped."""
        assert not is_crawlable(f"https://example.com{path}", "example.com")

    def test_host_of(self) -> None:
        """host_of lowercases and strips www."""
        assert host_of("https://WWW.Example.com/x") == "example.com"
        assert host_of("nonsense") is None
