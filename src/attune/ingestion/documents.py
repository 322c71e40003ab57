"""Text extraction for uploaded behavior documents."""

import io
import xml.etree.ElementTree as ET
import zipfile
from pathlib import PurePath

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from attune.errors import DocumentParseError

SUPPORTED_EXTENSIONS = frozenset({".txt", ".md", ".pdf", ".docx"})

_DOCX_PARTS = ("word/document.xml", "word/footnotes.xml", "word/endnotes.xml")


def _docx_xml_text(xml_bytes: bytes) -> str:
    root = ET.fromstring(xml_bytes)
    paragraphs = []
    for paragraph in root.iter():
        if not str(paragraph.tag).endswith("}p"):
            continue
        line = "".join(
            node.text for node in paragraph.iter() if str(node.tag).endswith("}t") and node.text
        ).strip()
        if line:
            paragraphs.append(line)
    return "\n".join(paragraphs)


def read_docx(data: bytes) -> str:
    """Extract paragraph text from a .docx file."""
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        names = set(archive.namelist())
        if "word/document.xml" not in names:
            raise ValueError("missing word/document.xml")
        parts = [_docx_xml_text(archive.read(name)) for name in _DOCX_PARTS if name in names]
    return "\n\n".join(part for part in parts if part)


def read_pdf(data: bytes) -> str:
    """Extract text from every page of a PDF."""
    reader = PdfReader(io.BytesIO(data))
    return "\n".join(page.extract_text() or "" for page in reader.pages).strip()


def read_document(filename: str, data: bytes, content_type: str | None = None) -> str:
    """Extract plain text from an uploaded file.

    The extension decides the format; ``content_type`` is only consulted
    when the filename has none.

    Raises:
        DocumentParseError: For unsupported formats or unreadable files.
    """
    suffix = PurePath(filename).suffix.lower()
    if not suffix and content_type:
        suffix = {
            "text/plain": ".txt",
            "text/markdown": ".md",
            "application/pdf": ".pdf",
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
        }.get(content_type.split(";")[0].strip().lower(), "")

    if suffix not in SUPPORTED_EXTENSIONS:
        raise DocumentParseError(filename, f"unsupported file type {suffix or 'unknown'}")

    try:
        if suffix == ".pdf":
            return read_pdf(data)
        if suffix == ".docx":
            return read_docx(data)
    except (PdfReadError, zipfile.BadZipFile, ET.ParseError, ValueError, KeyError) as e:
        raise DocumentParseError(filename, str(e) or type(e).__name__) from e
    return data.decode("utf-8", errors="replace")
