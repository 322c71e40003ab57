"""Text sanitizer applied before any content reaches the classifier.

Untrusted text (crawled pages, uploaded documents, chat messages) is
truncated, stripped of markup, defanged of prompt-injection phrases and
whitespace-normalized. The function never raises; problems are reported
as warnings and the caller decides whether to continue.

Sanitizing already sanitized text returns the same text: markup stripping
and redaction are repeated until neither changes anything, and nothing
done afterwards can create a new match.
"""

import re
from typing import NamedTuple

MAX_CONTENT_CHARS = 1024 * 1024
MIN_CONTENT_CHARS = 50
REDACTION = "[REDACTED]"

# Bound on strip/redact rounds; real input settles in one or two
_MAX_PASSES = 16

_HTML_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE),
    re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE),
    re.compile(r"</?[a-z][^>]*>", re.IGNORECASE),
    re.compile(r"&[a-z]+;", re.IGNORECASE),
    re.compile(r"&#\d+;", re.IGNORECASE),
)

INJECTION_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "ignore-previous",
        re.compile(
            r"ignore\s+(all\s+)?previous\s+(instructions?|rules?|prompts?)", re.IGNORECASE
        ),
    ),
    ("role-reassignment", re.compile(r"you\s+are\s+now\s+a", re.IGNORECASE)),
    ("forget-previous", re.compile(r"forget\s+(everything|all|your)\s+(you|previous)", re.IGNORECASE)),
    ("disregard-previous", re.compile(r"disregard\s+(all\s+)?previous", re.IGNORECASE)),
    ("override-rules", re.compile(r"override\s+(system|safety|rules?)", re.IGNORECASE)),
    ("act-as", re.compile(r"act\s+as\s+(if\s+you\s+are|a)(?=\s)", re.IGNORECASE)),
    ("pretend", re.compile(r"pretend\s+(you\s+are|to\s+be)", re.IGNORECASE)),
    ("new-instructions", re.compile(r"new\s+instructions?:", re.IGNORECASE)),
    ("system-prompt", re.compile(r"system\s*prompt\s*:", re.IGNORECASE)),
    ("system-marker", re.compile(r"\[SYSTEM\]", re.IGNORECASE)),
    ("inst-marker", re.compile(r"\[INST\]", re.IGNORECASE)),
)

# Look like tags, so they are redacted before markup is stripped
MARKER_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("sys-open-marker", re.compile(r"<<SYS>>", re.IGNORECASE)),
    ("sys-close-marker", re.compile(r"<</SYS>>", re.IGNORECASE)),
)


class SanitizeResult(NamedTuple):
    """Sanitized text plus any warnings raised while producing it."""

    text: str
    warnings: list[str]


def strip_markup(text: str) -> str:
    """Replace script/style blocks, tags and entities with a single space."""
    for pattern in _HTML_PATTERNS:
        text = pattern.sub(" ", text)
    return text


def redact_injections(
    text: str,
    patterns: tuple[tuple[str, re.Pattern[str]], ...] = INJECTION_PATTERNS,
) -> tuple[str, list[str]]:
    """Replace prompt-injection phrases with the redaction marker.

    Returns the redacted text and the categories that matched.
    """
    triggered: list[str] = []
    for category, pattern in patterns:
        text, count = pattern.subn(REDACTION, text)
        if count:
            triggered.append(category)
    return text, triggered


def normalize_whitespace(text: str) -> str:
    """Normalize line endings, tabs and long whitespace runs."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("\t", " ")
    text = re.sub(r" {3,}", "  ", text)
    text = re.sub(r"\n{4,}", "\n\n\n", text)
    return text.strip()


def sanitize(
    raw_text: object,
    *,
    max_chars: int = MAX_CONTENT_CHARS,
    min_chars: int = MIN_CONTENT_CHARS,
) -> SanitizeResult:
    """Sanitize untrusted text for classification.

    Args:
        raw_text: Text to clean. Anything that is not a non-empty string
            yields an empty result.
        max_chars: Hard cap applied before and after processing.
        min_chars: Below this the text is flagged as too short.

    Returns:
        SanitizeResult with the clean text and human-readable warnings.
    """
    if not isinstance(raw_text, str) or not raw_text.strip():
        return SanitizeResult("", ["Empty or invalid input"])

    warnings: list[str] = []
    text = raw_text
    if len(text) > max_chars:
        text = text[:max_chars]
        warnings.append(f"Content truncated to {max_chars} characters")

    categories: list[str] = []
    for _ in range(_MAX_PASSES):
        marked, early = redact_injections(text, MARKER_PATTERNS)
        redacted, triggered = redact_injections(strip_markup(marked))
        categories.extend(c for c in early + triggered if c not in categories)
        if redacted == text:
            break
        text = redacted

    warnings.extend(f"Potential prompt injection redacted: {c}" for c in categories)

    text = normalize_whitespace(text)
    # Redaction markers can be longer than what they replace
    if len(text) > max_chars:
        text = text[:max_chars].rstrip()

    if len(text) < min_chars:
        warnings.append(f"Content too short ({len(text)} chars, minimum {min_chars})")

    return SanitizeResult(text, warnings)
