"""MIME type detection from content signatures and file extensions."""

from __future__ import annotations

import logging
import mimetypes
import re
from pathlib import Path
from typing import Optional

from refstore.utils.files import read_sample

LOGGER = logging.getLogger(__name__)

OCTET_STREAM = "application/octet-stream"

_SIGNATURES = (
    (b"%PDF-", "application/pdf"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"PK\x03\x04", "application/zip"),
    (b"%!PS", "application/postscript"),
)

_HTML_MARKERS = re.compile(rb"<\s*(!doctype\s+html|html|head|body|title|script)\b", re.IGNORECASE)
_XML_MARKER = re.compile(rb"^\s*<\?xml\b")
_XHTML_MARKER = re.compile(rb"<html[^>]+xmlns=[\"']http://www\.w3\.org/1999/xhtml", re.IGNORECASE)

# Types rendered directly by a document viewer rather than handed to another application
_NATIVE_TYPES = frozenset(
    {
        "text/html",
        "application/xhtml+xml",
        "text/plain",
        "text/css",
        "image/png",
        "image/jpeg",
        "image/gif",
        "image/svg+xml",
        "application/xml",
        "text/xml",
    }
)

# Types whose text the full-text index extracts straight from the file
_CACHED_TYPES = frozenset({"application/pdf"})

_PRIMARY_EXTENSIONS = {
    "application/pdf": "pdf",
    "text/html": "html",
    "application/xhtml+xml": "xhtml",
    "text/plain": "txt",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "application/zip": "zip",
    "application/postscript": "ps",
}


class MimeSniffer:
    """Guesses MIME types the way a browser would, signature first."""

    def type_from_content(self, data: bytes) -> str:
        for signature, mime_type in _SIGNATURES:
            if data.startswith(signature):
                return mime_type

        head = data.lstrip(b"\xef\xbb\xbf")
        if _XML_MARKER.match(head):
            return "application/xhtml+xml" if _XHTML_MARKER.search(head) else "application/xml"
        if _HTML_MARKERS.search(head[:512]):
            return "text/html"

        try:
            head.decode("utf-8")
        except UnicodeDecodeError as exc:
            # A multibyte sequence cut off at the sample boundary is still text
            if exc.start < len(head) - 3:
                return OCTET_STREAM
        if b"\x00" in head:
            return OCTET_STREAM
        return "text/plain"

    def type_from_extension(self, extension: str) -> Optional[str]:
        extension = (extension or "").lstrip(".").lower()
        if not extension:
            return None
        mime_type, _ = mimetypes.guess_type(f"file.{extension}", strict=False)
        return mime_type

    def type_from_file(self, path: Path) -> str:
        """Sniffed type, unless only the extension can tell (e.g. plain text)."""
        path = Path(path)
        sniffed = self.type_from_content(read_sample(path))
        by_extension = self.type_from_extension(path.suffix)
        if sniffed in (OCTET_STREAM, "text/plain") and by_extension:
            return by_extension
        return sniffed

    def primary_extension(self, mime_type: Optional[str], extension: str = "") -> str:
        """Preferred extension for ``mime_type``, or ``extension`` when unknown."""
        extension = (extension or "").lstrip(".")
        if not mime_type:
            return extension
        if extension and self.type_from_extension(extension) == mime_type:
            return extension
        if mime_type in _PRIMARY_EXTENSIONS:
            return _PRIMARY_EXTENSIONS[mime_type]
        guessed = mimetypes.guess_extension(mime_type, strict=False)
        return guessed.lstrip(".") if guessed else extension

    def is_text_type(self, mime_type: Optional[str]) -> bool:
        if not mime_type:
            return False
        return mime_type.startswith("text/") or mime_type in (
            "application/xhtml+xml",
            "application/xml",
            "application/json",
        )

    def is_cached_type(self, mime_type: Optional[str]) -> bool:
        return mime_type in _CACHED_TYPES

    def has_native_handler(self, mime_type: Optional[str], extension: str = "") -> bool:
        if mime_type in _NATIVE_TYPES:
            return True
        if not mime_type and extension:
            return self.type_from_extension(extension) in _NATIVE_TYPES
        return False
