"""Mapping between record keys, stored path tokens and filesystem paths."""

from __future__ import annotations

import logging
import re
import secrets
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from refstore.config import BASE_PATH_PLACEHOLDER
from refstore.errors import InvalidKeyError, NoBaseDirectoryError
from refstore.models import LinkMode

LOGGER = logging.getLogger(__name__)

KEY_ALPHABET = "23456789ABCDEFGHIJKLMNPQRSTUVWXYZ"
KEY_LENGTH = 8
STORAGE_PREFIX = "storage:"

_KEY_PATTERN = re.compile(r"[A-Z0-9]{8}")
_SCHEME_PATTERN = re.compile(r"[a-zA-Z][a-zA-Z0-9+.-]*")
_HOSTLIKE = re.compile(r"\w\.\w")


def generate_key() -> str:
    """Return a random record key."""
    return "".join(secrets.choice(KEY_ALPHABET) for _ in range(KEY_LENGTH))


def is_valid_key(key: object) -> bool:
    return isinstance(key, str) and bool(_KEY_PATTERN.fullmatch(key))


class StoragePathResolver:
    """Resolves storage directories and stored attachment path tokens.

    Imported attachments are stored as ``storage:<file name>`` inside
    ``storage_root/<key>``. Linked files under ``base_dir`` are stored relative
    to it behind ``placeholder`` so a library survives moving the base
    directory to another machine.
    """

    def __init__(
        self,
        storage_root: Path,
        *,
        base_dir: Optional[Path] = None,
        placeholder: str = BASE_PATH_PLACEHOLDER,
    ) -> None:
        self.storage_root = Path(storage_root)
        self.base_dir = Path(base_dir) if base_dir is not None else None
        self.placeholder = placeholder

    def storage_dir_for(self, key: str) -> Path:
        if not is_valid_key(key):
            raise InvalidKeyError(key)
        return self.storage_root / key

    def to_storage_path(self, file: Path, link_mode: LinkMode) -> str:
        file = Path(file)
        if LinkMode(link_mode).is_imported:
            return STORAGE_PREFIX + file.name
        return str(file.expanduser().resolve())

    def from_storage_path(self, path: str, key: str) -> Path:
        """Turn a stored path token back into a filesystem path."""
        if path.startswith(STORAGE_PREFIX):
            return self.storage_dir_for(key) / path[len(STORAGE_PREFIX):]
        if path.startswith(self.placeholder):
            return self.resolve_from_base(path)
        return Path(path)

    def relativize_to_base(self, path: str) -> str:
        if not path or path.startswith(self.placeholder):
            return path
        if self.base_dir is None:
            return path

        base = self.base_dir.expanduser()
        if not base.exists():
            LOGGER.warning("Base directory '%s' doesn't exist", base)
            return path

        try:
            relative = Path(path).resolve().relative_to(base.resolve())
        except ValueError:
            return path
        return self.placeholder + PurePosixPath(*relative.parts).as_posix()

    def resolve_from_base(self, path: str) -> Path:
        if self.base_dir is None:
            raise NoBaseDirectoryError(f"No base directory set, can't resolve '{path}'")
        if not path.startswith(self.placeholder):
            return Path(path)
        relative = path[len(self.placeholder):]
        return self.base_dir.expanduser().joinpath(*PurePosixPath(relative).parts)

    def clean_uri(self, uri: Optional[str], try_http: bool = False) -> Optional[str]:
        """Return ``uri`` normalized, or None when it is not a valid URI.

        With ``try_http``, a scheme-less ``host.tld/...`` string is retried
        with ``http://`` prepended.
        """
        uri = (uri or "").strip()
        if not uri:
            return None

        cleaned = self._parse_uri(uri)
        if cleaned is None and try_http and _HOSTLIKE.search(uri):
            cleaned = self._parse_uri("http://" + uri)
        if cleaned is None:
            LOGGER.debug("clean_uri: Invalid URI: %s", uri)
        return cleaned

    @staticmethod
    def _parse_uri(uri: str) -> Optional[str]:
        if any(ch.isspace() for ch in uri):
            return None
        try:
            parts = urlsplit(uri)
            # Accessing .port validates the port component
            parts.port
        except ValueError:
            return None
        if not parts.scheme or not _SCHEME_PATTERN.fullmatch(parts.scheme):
            return None
        if parts.scheme.lower() in ("http", "https", "ftp") and not parts.hostname:
            return None
        if not (parts.netloc or parts.path):
            return None
        return urlunsplit(parts._replace(scheme=parts.scheme.lower()))
