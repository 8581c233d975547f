"""Full-text index of attachment content.

PDF text is extracted with PyMuPDF (fitz), HTML through BeautifulSoup. Text is
chunked and stored in its own SQLite database next to the record store, keyed
by record id. Files whose SHA256 did not change since the last run are
skipped.
"""

from __future__ import annotations

import hashlib
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

import fitz  # PyMuPDF

from refstore.collaborators import CapturedDocument
from refstore.utils.files import compute_sha256
from refstore.utils.text import chunk_text_stream, html_to_text, normalize_whitespace

LOGGER = logging.getLogger(__name__)

HTML_TYPES = ("text/html", "application/xhtml+xml")


def iter_pdf_text(path: Path) -> Iterator[str]:
    """Yield text content from a PDF file page by page."""
    try:
        doc = fitz.open(path)
    except Exception as exc:
        LOGGER.error("Failed to open PDF %s: %s", path, exc)
        return

    try:
        for index in range(len(doc)):
            try:
                text = doc[index].get_text() or ""
            except Exception as exc:  # pragma: no cover - damaged page
                LOGGER.warning("Failed to read page %s in %s: %s", index, path, exc)
                continue
            normalized = normalize_whitespace(text.splitlines())
            if normalized:
                yield normalized + "\n"
    finally:
        doc.close()


def iter_file_text(path: Path, mime_type: Optional[str], charset: str = "utf-8") -> Iterator[str]:
    """Yield the indexable text of a file, or nothing for unsupported types."""
    if mime_type == "application/pdf":
        yield from iter_pdf_text(path)
    elif mime_type in HTML_TYPES:
        yield html_to_text(path.read_text(encoding=charset, errors="replace"))
    elif mime_type and mime_type.startswith("text/"):
        yield path.read_text(encoding=charset, errors="replace")


class FulltextIndexer:
    """Extracts, chunks and stores attachment text for keyword search."""

    def __init__(self, db_path: Path, *, chunk_chars: int = 2000, overlap: int = 100) -> None:
        self.db_path = Path(db_path)
        self.chunk_chars = chunk_chars
        self.overlap = overlap
        self._conn = sqlite3.connect(self.db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS fulltext_items (
                    item_id INTEGER PRIMARY KEY,
                    source TEXT NOT NULL,
                    mime_type TEXT,
                    sha256 TEXT NOT NULL,
                    indexed_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS fulltext_chunks (
                    id INTEGER PRIMARY KEY,
                    item_id INTEGER NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    text TEXT NOT NULL,
                    FOREIGN KEY(item_id) REFERENCES fulltext_items(item_id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_fulltext_chunks_item_id ON fulltext_chunks(item_id)"
            )

    def index_file(self, path: Path, record_id: int, mime_type: Optional[str] = None) -> str:
        """Index one attachment file. Returns inserted, updated or skipped."""
        path = Path(path)
        if not path.is_file():
            LOGGER.warning("Not indexing %s: file not found", path)
            return "skipped"

        LOGGER.info("Indexing %s", path)
        return self._store(
            record_id,
            str(path),
            mime_type,
            compute_sha256(path),
            iter_file_text(path, mime_type),
        )

    def index_document(self, document: CapturedDocument, record_id: int) -> str:
        """Index a captured document's in-memory content."""
        content = document.content or ""
        sha256 = hashlib.sha256(content.encode("utf-8")).hexdigest()
        if document.content_type in HTML_TYPES:
            text = html_to_text(content)
        else:
            text = content
        return self._store(record_id, document.url, document.content_type, sha256, [text])

    def _store(
        self,
        record_id: int,
        source: str,
        mime_type: Optional[str],
        sha256: str,
        text_parts: Iterable[str],
    ) -> str:
        with self.transaction() as conn:
            existing = conn.execute(
                "SELECT sha256 FROM fulltext_items WHERE item_id = ?", (record_id,)
            ).fetchone()
            if existing and existing["sha256"] == sha256:
                return "skipped"

            conn.execute("DELETE FROM fulltext_chunks WHERE item_id = ?", (record_id,))
            conn.execute(
                """
                INSERT OR REPLACE INTO fulltext_items(item_id, source, mime_type, sha256)
                VALUES (?, ?, ?, ?)
                """,
                (record_id, source, mime_type, sha256),
            )
            chunks = chunk_text_stream(text_parts, max_chars=self.chunk_chars, overlap=self.overlap)
            conn.executemany(
                "INSERT INTO fulltext_chunks(item_id, chunk_index, text) VALUES (?, ?, ?)",
                [(record_id, index, chunk) for index, chunk in enumerate(chunks)],
            )
        return "updated" if existing else "inserted"

    def search(self, query: str, *, limit: int = 50) -> List[int]:
        """Record ids whose text contains every word of ``query``."""
        terms = [term for term in query.split() if term]
        if not terms:
            return []

        clause = " AND ".join("text LIKE ? ESCAPE '\\'" for _ in terms)
        params: List[Any] = [f"%{_escape_like(term)}%" for term in terms]
        rows = self._conn.execute(
            f"""
            SELECT item_id FROM fulltext_chunks
            WHERE {clause}
            GROUP BY item_id
            ORDER BY MIN(id)
            LIMIT ?
            """,
            params + [limit],
        ).fetchall()
        return [row["item_id"] for row in rows]

    def is_indexed(self, record_id: int) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM fulltext_items WHERE item_id = ?", (record_id,)
        ).fetchone()
        return row is not None

    def remove(self, record_id: int) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM fulltext_chunks WHERE item_id = ?", (record_id,))
            conn.execute("DELETE FROM fulltext_items WHERE item_id = ?", (record_id,))

    def on_notify(
        self, event: str, event_type: str, ids: List[Any], extra_data: Dict[Any, Any]
    ) -> None:
        """Notifier observer: drop index entries of deleted records."""
        if event_type == "item" and event == "delete":
            for record_id in ids:
                self.remove(record_id)

    def get_stats(self) -> dict:
        conn = self._conn
        return {
            "indexed_count": conn.execute("SELECT COUNT(*) FROM fulltext_items").fetchone()[0],
            "chunk_count": conn.execute("SELECT COUNT(*) FROM fulltext_chunks").fetchone()[0],
        }


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
