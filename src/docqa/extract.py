"""Plain-text extraction from uploaded documents."""
from __future__ import annotations

import io
import logging
import mimetypes
import re
import unicodedata
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol

from docx import Document as load_docx
from pdfminer.high_level import extract_text as pdf_extract_text

from .errors import UnsupportedFormat

LOGGER = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"[ \t]+")
_MULTIPLE_NEWLINES_RE = re.compile(r"\n{3,}")
_TRAILING_SPACE_RE = re.compile(r"[ \t]+\n")
_BINARY_SNIFF_BYTES = 8192


class DocumentFormat(str, Enum):
    TXT = "txt"
    MARKDOWN = "md"
    PDF = "pdf"
    DOCX = "docx"


_MIME_MAP = {
    "text/plain": DocumentFormat.TXT,
    "text/markdown": DocumentFormat.MARKDOWN,
    "text/x-markdown": DocumentFormat.MARKDOWN,
    "application/pdf": DocumentFormat.PDF,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": DocumentFormat.DOCX,
}


def normalize_content_type(declared_type: Optional[str]) -> str:
    """Lower-case a MIME type and drop parameters such as ``charset``."""

    if not declared_type:
        return ""
    return declared_type.split(";", 1)[0].strip().lower()


def detect_format(declared_type: Optional[str], file_name: Optional[str] = None) -> DocumentFormat:
    """Resolve the document format from the declared MIME type or file name."""

    mime = normalize_content_type(declared_type)
    if mime in _MIME_MAP:
        return _MIME_MAP[mime]

    if file_name:
        guessed, _ = mimetypes.guess_type(file_name)
        if guessed in _MIME_MAP:
            return _MIME_MAP[guessed]
        suffix = Path(file_name).suffix.lower().lstrip(".")
        if suffix == "markdown":
            return DocumentFormat.MARKDOWN
        try:
            return DocumentFormat(suffix)
        except ValueError:
            pass

    raise UnsupportedFormat(f"Unsupported document type: {declared_type or file_name or 'unknown'}")


def normalize_text(text: str) -> str:
    """Normalise line endings, whitespace runs and Unicode representation."""

    normalized = unicodedata.normalize("NFC", text)
    normalized = normalized.replace("\r\n", "\n").replace("\r", "\n")
    normalized = _WHITESPACE_RE.sub(" ", normalized)
    normalized = _TRAILING_SPACE_RE.sub("\n", normalized)
    normalized = _MULTIPLE_NEWLINES_RE.sub("\n\n", normalized)
    return normalized.strip()


class TextExtractor(Protocol):
    def extract(self, file_bytes: bytes, declared_type: str, file_name: Optional[str] = None) -> str:
        """Return plain text or raise :class:`UnsupportedFormat`."""


class DefaultTextExtractor:
    """Extract normalised plain text from text, Markdown, PDF and DOCX uploads."""

    def extract(self, file_bytes: bytes, declared_type: str, file_name: Optional[str] = None) -> str:
        document_format = detect_format(declared_type, file_name)
        if document_format in (DocumentFormat.TXT, DocumentFormat.MARKDOWN):
            raw = self._decode_text(file_bytes)
        elif document_format is DocumentFormat.PDF:
            raw = self._extract_pdf(file_bytes)
        else:
            raw = self._extract_docx(file_bytes)

        text = normalize_text(raw)
        if not text:
            raise UnsupportedFormat(f"No extractable text in {document_format.value} document")
        LOGGER.debug("Extracted %d characters from %s document", len(text), document_format.value)
        return text

    @staticmethod
    def _decode_text(file_bytes: bytes) -> str:
        if file_bytes.startswith((b"\xff\xfe", b"\xfe\xff")):
            encoding = "utf-16"
        else:
            if b"\x00" in file_bytes[:_BINARY_SNIFF_BYTES]:
                raise UnsupportedFormat("Binary content declared as text")
            encoding = "utf-8-sig"
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError as exc:
            raise UnsupportedFormat(f"Text is not valid {encoding}", cause=exc) from exc

    @staticmethod
    def _extract_pdf(file_bytes: bytes) -> str:
        try:
            return pdf_extract_text(io.BytesIO(file_bytes)) or ""
        except Exception as exc:
            raise UnsupportedFormat("Unreadable PDF document", cause=exc) from exc

    @staticmethod
    def _extract_docx(file_bytes: bytes) -> str:
        try:
            document = load_docx(io.BytesIO(file_bytes))
        except Exception as exc:
            raise UnsupportedFormat("Unreadable DOCX document", cause=exc) from exc
        return "\n\n".join(paragraph.text for paragraph in document.paragraphs if paragraph.text)


__all__ = [
    "DefaultTextExtractor",
    "DocumentFormat",
    "TextExtractor",
    "detect_format",
    "normalize_content_type",
    "normalize_text",
]
