"""Wiring of the store, notifier, importer and indexer for one data directory."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from refstore.attachments.importer import AttachmentImporter
from refstore.attachments.mime import MimeSniffer
from refstore.collaborators import ContentFetcher, DocumentCapture
from refstore.config import AppConfig
from refstore.errors import RecordNotFoundError
from refstore.index.fulltext import FulltextIndexer
from refstore.ingestion.saver import ItemSaver
from refstore.notify.notifier import Notifier
from refstore.storage.orphans import OrphanReclaimer
from refstore.storage.paths import StoragePathResolver
from refstore.storage.records import SQLiteRecordStore
from refstore.utils.tasks import TaskScheduler

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Library:
    config: AppConfig
    notifier: Notifier
    store: SQLiteRecordStore
    resolver: StoragePathResolver
    indexer: FulltextIndexer
    scheduler: TaskScheduler
    importer: AttachmentImporter

    def saver(self, **kwargs: Any) -> ItemSaver:
        """Item saver bound to this library's store and importer."""
        return ItemSaver(self.store, self.importer, config=self.config, **kwargs)

    def delete(self, record_id: int) -> None:
        """Erase a record. Attachment storage directories are removed with it."""
        record = self.store.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"Record {record_id} not found")

        if record.is_attachment:
            self.importer.delete_attachment(record_id)
            return
        keys = [
            child.key
            for child in self.store.children(record_id, "attachment")
            if child.attachment is not None and child.attachment.link_mode.is_imported
        ]
        self.store.erase(record_id)
        # Only once the erase has committed
        for key in keys:
            self.importer.remove_storage_directory(key)

    def close(self) -> None:
        self.scheduler.drain()
        self.indexer.close()
        self.store.close()


def open_library(
    config: Optional[AppConfig] = None,
    *,
    base_dir: Optional[Path] = None,
    fetcher: Optional[ContentFetcher] = None,
    capture: Optional[DocumentCapture] = None,
    scheduler: Optional[TaskScheduler] = None,
) -> Library:
    """Open (creating if needed) the library rooted at ``config.data_dir``."""
    config = config or AppConfig()
    config.data_dir = config.resolve_data_dir(base_dir)
    config.storage_dir.mkdir(parents=True, exist_ok=True)
    LOGGER.debug("Opening library in %s", config.data_dir)

    notifier = Notifier()
    store = SQLiteRecordStore(config.db_path, notifier=notifier)
    resolver = StoragePathResolver(
        config.storage_dir,
        base_dir=config.base_attachment_path,
        placeholder=config.base_path_placeholder,
    )
    indexer = FulltextIndexer(config.fulltext_db_path)
    notifier.register_observer(indexer.on_notify, ["item"])
    scheduler = scheduler or TaskScheduler()

    importer = AttachmentImporter(
        store,
        resolver,
        OrphanReclaimer(config.orphaned_dir),
        notifier=notifier,
        scheduler=scheduler,
        config=config,
        sniffer=MimeSniffer(),
        indexer=indexer,
        fetcher=fetcher,
        capture=capture,
    )
    return Library(
        config=config,
        notifier=notifier,
        store=store,
        resolver=resolver,
        indexer=indexer,
        scheduler=scheduler,
        importer=importer,
    )
