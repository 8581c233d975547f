"""Quarantine of leftover storage directories."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional

from refstore.utils.files import create_unique

LOGGER = logging.getLogger(__name__)


def has_visible_entries(directory: Path) -> bool:
    """True if ``directory`` contains anything besides dotfiles."""
    return any(not entry.name.startswith(".") for entry in directory.iterdir())


class OrphanReclaimer:
    """Clears the way for a new storage directory.

    A directory that already exists under a freshly used key is left over from
    an interrupted delete. If it holds only dotfiles it is removed; otherwise
    it is moved into ``orphaned_root`` so no data is merged or lost.
    """

    def __init__(self, orphaned_root: Path) -> None:
        self.orphaned_root = Path(orphaned_root)

    def reclaim(self, directory: Path) -> Optional[Path]:
        """Clear ``directory``. Returns its quarantine path if it was moved."""
        directory = Path(directory)
        if not directory.exists():
            return None

        if not has_visible_entries(directory):
            LOGGER.debug("Removing empty leftover directory %s", directory)
            shutil.rmtree(directory)
            return None

        self.orphaned_root.mkdir(parents=True, exist_ok=True)
        target = self.orphaned_root / directory.name
        if target.exists():
            try:
                placeholder = create_unique(target)
            except PermissionError:
                # Some platforms refuse exclusive creation while the old
                # target is locked; drop it and reuse its name
                LOGGER.warning("Could not reserve unique name for %s, replacing it", target)
                _remove(target)
            else:
                placeholder.unlink()
                target = placeholder

        LOGGER.info("Moving orphaned directory %s to %s", directory, target)
        try:
            shutil.move(str(directory), str(target))
        except PermissionError:
            _remove(target)
            shutil.move(str(directory), str(target))
        return target


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()
