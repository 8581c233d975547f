"""Interfaces to the services the import pipeline delegates to.

Network transport and page rendering live outside refstore. The importer only
needs something that can put bytes for a URL at a path, something that can
serialize a captured document, and something that indexes content.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

LOGGER = logging.getLogger(__name__)

# listener(error) with error None on success
FetchListener = Callable[[Optional[BaseException]], None]


@dataclass(slots=True)
class CapturedDocument:
    """A rendered document handed over by a capture agent."""

    url: str
    title: str
    content_type: str
    charset: Optional[str] = "utf-8"
    content: str = ""
    # Set when the document is a PDF shown inside a viewer page
    is_pdf_viewer: bool = False


class ContentFetcher(Protocol):
    def fetch(self, url: str, target: Path, listener: FetchListener) -> None:
        """Persist the bytes at ``url`` to ``target``, then call ``listener``.

        May return before the download finishes.
        """


class DocumentCapture(Protocol):
    def save_document(self, document: CapturedDocument, target: Path) -> None:
        """Serialize ``document`` (markup and resources) under ``target``."""


class ContentIndexer(Protocol):
    def index_file(self, path: Path, record_id: int, mime_type: Optional[str] = None) -> None:
        ...

    def index_document(self, document: CapturedDocument, record_id: int) -> None:
        ...


class FileDocumentCapture:
    """Writes a captured document's in-memory markup to disk."""

    def save_document(self, document: CapturedDocument, target: Path) -> None:
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        encoding = document.charset or "utf-8"
        LOGGER.debug("Saving document %s to %s", document.url, target)
        target.write_text(document.content, encoding=encoding, errors="replace")
