"""Application configuration defaults."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path

DEFAULT_RENAME_FORMAT = "{%c - }{%y - }{%t{50}}"
BASE_PATH_PLACEHOLDER = "attachments:"


def _get_default_data_dir() -> Path:
    """Get the default data directory based on execution context."""
    user_dir = Path.home() / "Documents" / "RefStore"

    if getattr(sys, "frozen", False):
        return user_dir

    # When running from source, prefer local data/ if it exists
    local_dir = Path("data")
    if local_dir.exists():
        return local_dir

    return user_dir


@dataclass(slots=True)
class AppConfig:
    data_dir: Path | None = None
    base_attachment_path: Path | None = None
    base_path_placeholder: str = BASE_PATH_PLACEHOLDER
    rename_format: str = DEFAULT_RENAME_FORMAT
    automatic_snapshots: bool = True
    download_associated_files: bool = True
    automatic_tags: bool = True
    index_delay: float = 1.0

    def __post_init__(self) -> None:
        if self.data_dir is None:
            self.data_dir = _get_default_data_dir()

    def resolve_data_dir(self, base_dir: Path | None = None) -> Path:
        if self.data_dir is None:
            self.data_dir = _get_default_data_dir()
        if Path(self.data_dir).is_absolute() or base_dir is None:
            return Path(self.data_dir)
        return base_dir / self.data_dir

    @property
    def storage_dir(self) -> Path:
        return Path(self.data_dir) / "storage"

    @property
    def orphaned_dir(self) -> Path:
        return Path(self.data_dir) / "orphaned-files"

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / "refstore.sqlite"

    @property
    def fulltext_db_path(self) -> Path:
        return Path(self.data_dir) / "fulltext.sqlite"
