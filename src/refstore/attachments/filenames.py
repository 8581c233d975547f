"""File name and title derivation for attachments."""

from __future__ import annotations

import hashlib
import re
from typing import Optional, Tuple
from urllib.parse import unquote, urlsplit

from refstore.attachments.mime import MimeSniffer
from refstore.utils.files import get_valid_file_name

_LAST_DIRECTORY = re.compile(r"/([^/]+)/$")
_MAX_CHARS = re.compile(r"[^0-9]+")


def _block_pattern(marker: str) -> re.Pattern:
    # Optional literal braces around: prefix, marker, optional {N}, suffix
    return re.compile(r"\{?([^%{}]*)" + marker + r"(\{[0-9]+\})?([^%{}]*)\}?")


_MARKERS = (
    ("creator", _block_pattern("%c")),
    ("year", _block_pattern("%y")),
    ("title", _block_pattern("%t")),
)


def render_file_base_name(format_string: str, *, creator: str, year: str, title: str) -> str:
    """Fill a rename template.

    ``%c``, ``%y`` and ``%t`` are replaced by ``creator``, ``year`` and
    ``title``; ``%t{50}`` truncates to 50 characters. A brace-wrapped block
    whose value is empty is dropped, so ``{%c - }%t`` renders as just the
    title when there is no creator. Only the first occurrence of each marker
    is substituted.
    """
    values = {"creator": creator or "", "year": year or "", "title": title or ""}
    result = format_string

    for name, pattern in _MARKERS:
        value = values[name]
        if not value:
            result = pattern.sub("", result, count=1)
            continue

        def substitute(match: re.Match, value: str = value) -> str:
            prefix, limit, suffix = match.groups()
            max_chars = int(_MAX_CHARS.sub("", limit)) if limit else None
            return prefix + (value[:max_chars] if max_chars else value) + suffix

        result = pattern.sub(substitute, result, count=1)

    return get_valid_file_name(result)


def split_extension(name: str) -> Tuple[str, str]:
    stem, dot, ext = name.rpartition(".")
    if not dot or not stem:
        return name, ""
    return stem, ext


def _url_file_name(url: str) -> Tuple[str, str, str]:
    parts = urlsplit(url)
    path = parts.path or "/"
    directory, _, file_name = path.rpartition("/")
    return directory + "/", file_name, parts.hostname or ""


def extension_from_url(url: str, mime_type: Optional[str], sniffer: MimeSniffer) -> str:
    _, file_name, _ = _url_file_name(url)
    return sniffer.primary_extension(mime_type, split_extension(file_name)[1])


def file_name_from_url(url: str, mime_type: Optional[str], sniffer: MimeSniffer) -> str:
    """Derive a safe local file name from a URL and the content's MIME type."""
    directory, file_name, host = _url_file_name(url)
    url_ext = split_extension(file_name)[1]
    best_ext = sniffer.primary_extension(mime_type, url_ext)

    tld = ""
    if not file_name:
        found = _LAST_DIRECTORY.search(directory)
        if found:
            file_name = found.group(1)
        else:
            file_name = host
            # The TLD would be mistaken for an extension below
            tld = split_extension(host)[1]

    stem, ext = split_extension(file_name)
    if best_ext and ext != best_ext:
        ext = best_ext
    if tld and tld != ext:
        stem = f"{stem}.{tld}"

    try:
        stem = unquote(stem, errors="strict")
    except UnicodeDecodeError:
        stem = hashlib.md5(stem.encode("utf-8")).hexdigest()

    return get_valid_file_name(f"{stem}.{unquote(ext)}" if ext else stem)


def title_from_url(url: str) -> str:
    """Short title for a linked URL: host, last path segment or last directory."""
    parts = urlsplit(url)
    title = ""
    if parts.scheme in ("http", "https"):
        directory, file_name, host = _url_file_name(url)
        if (parts.path or "/") == "/":
            title = host
        elif file_name:
            title = file_name
        else:
            title = directory.split("/")[-2]
    return title or url
