"""URL normalization and crawl filtering."""

from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

BLOCKED_PATH_SEGMENTS = frozenset(
    {"login", "cart", "checkout", "admin", "wp-admin", "account", "signin", "signup", "logout"}
)

BLOCKED_EXTENSIONS = frozenset(
    {
        ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico", ".bmp",
        ".pdf", ".zip", ".gz", ".tar", ".rar", ".7z",
        ".css", ".js", ".json", ".xml", ".rss", ".txt",
        ".mp3", ".mp4", ".avi", ".mov", ".webm",
        ".woff", ".woff2", ".ttf", ".eot", ".otf",
        ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".exe", ".dmg",
    }
)  # fmt: skip

_TRACKING_PARAMS = frozenset({"fbclid", "gclid", "ref"})


def _is_tracking_param(name: str) -> bool:
    return name.lower().startswith("utm_") or name.lower() in _TRACKING_PARAMS


def normalize_url(url: str, base: str | None = None) -> str | None:
    """Canonicalize a URL for dedupe.

    Resolves relative URLs against ``base``, lowercases scheme and host,
    drops the fragment, tracking parameters and a trailing slash (except
    on the root path). Returns None for URLs that cannot be parsed or are
    not http(s).
    """
    url = url.strip()
    if not url:
        return None
    if base:
        url = urljoin(base, url)
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if scheme not in ("http", "https") or not parts.hostname:
        return None

    netloc = parts.hostname.lower()
    if parts.port and not (
        (scheme == "http" and parts.port == 80) or (scheme == "https" and parts.port == 443)
    ):
        netloc = f"{netloc}:{parts.port}"

    path = parts.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    query = urlencode(
        [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if not _is_tracking_param(k)]
    )
    return urlunsplit((scheme, netloc, path, query, ""))


def host_of(url: str) -> str | None:
    """Lowercased hostname of a URL, without a leading ``www.``."""
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


def is_crawlable(url: str, site: str) -> bool:
    """Check whether a URL belongs to ``site`` and is worth fetching.

    ``site`` may be a hostname or a full URL; ``www.`` is ignored on both
    sides.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    if parts.scheme not in ("http", "https"):
        return False
    site_host = host_of(site if "://" in site else f"http://{site}")
    if site_host is None or host_of(url) != site_host:
        return False

    path = parts.path.lower()
    segments = [s for s in path.split("/") if s]
    if any(s in BLOCKED_PATH_SEGMENTS for s in segments):
        return False

    last = segments[-1] if segments else ""
    dot = last.rfind(".")
    return not (dot != -1 and last[dot:] in BLOCKED_EXTENSIONS)
