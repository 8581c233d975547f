"""Text helpers used by the full-text indexer."""

from __future__ import annotations

from typing import Iterable, Iterator

from bs4 import BeautifulSoup


def chunk_text_stream(
    text_stream: Iterable[str], *, max_chars: int = 2000, overlap: int = 100
) -> Iterator[str]:
    """Split a stream of text parts into overlapping character chunks.

    Buffers incoming text just enough to produce chunks of `max_chars`.
    """
    buffer = ""
    step = max(max_chars - overlap, 1)

    for part in text_stream:
        buffer += part
        while len(buffer) >= max_chars:
            yield buffer[:max_chars]
            buffer = buffer[step:]

    if buffer.strip():
        yield buffer


def normalize_whitespace(lines: Iterable[str]) -> str:
    """Collapse whitespace and join lines."""
    return "\n".join(line.strip() for line in lines if line.strip())


def html_to_text(markup: str) -> str:
    """Extract readable text from HTML, dropping scripts and styles."""
    soup = BeautifulSoup(markup, "html.parser")
    for element in soup(["script", "style"]):
        element.decompose()
    return normalize_whitespace(soup.get_text().splitlines())
