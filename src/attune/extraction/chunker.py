"""Paragraph-aware splitting of page text into knowledge fragments."""

import re

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n|\n")


def chunk_text(text: str, min_words: int = 40, max_words: int = 220) -> list[str]:
    """Split text into fragments of roughly ``min_words`` to ``max_words`` words.

    Paragraphs are kept whole when they fit; a paragraph longer than
    ``max_words`` is cut at word boundaries. A trailing fragment shorter
    than ``min_words`` is merged into its predecessor, so the last fragment
    may run up to ``min_words`` past the cap.
    """
    if min_words > max_words:
        raise ValueError(f"min_words ({min_words}) exceeds max_words ({max_words})")

    chunks: list[list[str]] = []
    current: list[str] = []
    count = 0

    def flush() -> None:
        nonlocal current, count
        if current:
            chunks.append(current)
        current, count = [], 0

    for paragraph in _PARAGRAPH_BREAK.split(text):
        words = paragraph.split()
        if not words:
            continue
        while len(words) > max_words:
            flush()
            chunks.append([" ".join(words[:max_words])])
            words = words[max_words:]
        if count + len(words) > max_words:
            flush()
        current.append(" ".join(words))
        count += len(words)
        if count >= max_words:
            flush()
    flush()

    if len(chunks) > 1:
        tail_words = sum(len(p.split()) for p in chunks[-1])
        if tail_words < min_words:
            chunks[-2].extend(chunks.pop())

    return ["\n\n".join(paragraphs) for paragraphs in chunks]
