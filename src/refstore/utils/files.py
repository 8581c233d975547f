"""Utility helpers for working with files."""

from __future__ import annotations

import hashlib
import os
import re
import shutil
from pathlib import Path
from typing import Iterator

MAX_FILE_NAME_LENGTH = 255

_INVALID_CHARS = re.compile(r'[/\\?*:|"<>]')
_WHITESPACE_RUNS = re.compile(r"[\r\n\t]+")
_WIDE_SPACES = re.compile(r"[\u2000-\u200a]")
_ZERO_WIDTH = re.compile(r"[\u200b-\u200e]")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")


def get_valid_file_name(name: str) -> str:
    """Strip characters that are invalid in file names on common platforms."""
    name = _INVALID_CHARS.sub("", name)
    name = _WHITESPACE_RUNS.sub(" ", name)
    name = _WIDE_SPACES.sub(" ", name)
    name = _ZERO_WIDTH.sub("", name)
    name = _CONTROL_CHARS.sub("", name)
    # No hidden files
    if name.startswith("."):
        name = name[1:]
    name = name.strip()
    if not name or name in (".", ".."):
        return "_"
    return name


def truncate_file_name(name: str, max_length: int = MAX_FILE_NAME_LENGTH) -> str:
    """Shorten a file name to ``max_length`` characters, keeping its extension."""
    if len(name) <= max_length:
        return name
    stem, dot, ext = name.rpartition(".")
    if not dot or not stem or len(ext) + 1 >= max_length:
        return name[:max_length]
    return stem[: max_length - len(ext) - 1] + "." + ext


def iter_unique_names(name: str, max_length: int = MAX_FILE_NAME_LENGTH) -> Iterator[str]:
    """Yield ``name``, then ``stem-1.ext``, ``stem-2.ext``, ... within ``max_length``."""
    name = truncate_file_name(name, max_length)
    yield name
    stem, dot, ext = name.rpartition(".")
    if not dot or not stem:
        stem, ext = name, ""
    counter = 1
    while True:
        suffix = f"-{counter}" + (f".{ext}" if ext else "")
        yield stem[: max_length - len(suffix)] + suffix
        counter += 1


def create_unique(target: Path, max_length: int = MAX_FILE_NAME_LENGTH) -> Path:
    """Reserve a free path next to ``target`` by creating an empty file there.

    Raises PermissionError when the directory refuses exclusive creation.
    """
    for candidate in iter_unique_names(target.name, max_length):
        path = target.with_name(candidate)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            continue
        os.close(fd)
        return path
    raise AssertionError("unreachable")  # pragma: no cover


def copy_to_unique(source: Path, target: Path) -> Path:
    """Copy ``source`` to ``target`` or the first free uniquely-suffixed name."""
    dest = create_unique(target)
    try:
        shutil.copyfile(source, dest)
        shutil.copystat(source, dest)
    except OSError:
        dest.unlink(missing_ok=True)
        raise
    return dest


def read_sample(path: Path, size: int = 512) -> bytes:
    """Read the first ``size`` bytes of a file."""
    with path.open("rb") as handle:
        return handle.read(size)


def compute_sha256(path: Path) -> str:
    """Compute SHA256 hash for a file."""
    sha = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            sha.update(chunk)
    return sha.hexdigest()
