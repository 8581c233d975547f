"""Persist a parsed record graph: items, notes, attachments, tags and collections."""

from __future__ import annotations

import logging
import os
import re
from collections import deque
from enum import IntEnum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import urljoin, urlsplit
from urllib.request import url2pathname

from refstore import itemtypes
from refstore.attachments.importer import SNAPSHOT_TYPES, AttachmentImporter
from refstore.config import AppConfig
from refstore.errors import PathNotResolvedError, RefStoreError
from refstore.ingestion.schema import (
    GenericAttachment,
    GenericCollection,
    GenericItem,
    GenericNote,
    SourceId,
    parse_collection,
    parse_records,
)
from refstore.models import Collection, Creator, CreatorRef, Record
from refstore.storage.records import SQLiteRecordStore
from refstore.utils.dates import str_to_multipart

LOGGER = logging.getLogger(__name__)

# Keys that are structure, not bibliographic fields
SKIP_FIELDS = frozenset(
    {"note", "notes", "itemID", "attachments", "tags", "seeAlso", "itemType", "complete", "creators"}
)

_WINDOWS_ABSOLUTE = re.compile(r"^[a-zA-Z]:[\\/]|^\\\\")

# attachment_callback(attachment, progress, error): progress is a percentage, or False on failure
AttachmentCallback = Callable[[GenericAttachment, Union[int, bool], Any], None]
SaveCallback = Callable[[bool, Any], None]
GenericRecord = Union[GenericNote, GenericAttachment, GenericItem]


class AttachmentMode(IntEnum):
    IGNORE = 0
    DOWNLOAD = 1
    FILE = 2


def _ignore_progress(attachment: GenericAttachment, progress: Union[int, bool], error: Any = None) -> None:
    pass


class ItemSaver:
    """Saves parser output into the record store.

    Source ids (``itemID``) are only meaningful inside one parser run, so every
    saved record is entered into an id map that later ``seeAlso`` references
    and collection children are resolved through.
    """

    def __init__(
        self,
        store: SQLiteRecordStore,
        importer: AttachmentImporter,
        *,
        config: AppConfig,
        library_id: Optional[int] = None,
        attachment_mode: AttachmentMode = AttachmentMode.IGNORE,
        force_tag_type: Optional[int] = None,
        base_uri: Union[str, Path, None] = None,
        files_editable: bool = True,
    ) -> None:
        self.store = store
        self.importer = importer
        self.config = config
        self.library_id = library_id
        self.attachment_mode = AttachmentMode(attachment_mode)
        self.force_tag_type = force_tag_type
        self._save_files = self.attachment_mode != AttachmentMode.IGNORE and files_editable
        if isinstance(base_uri, Path):
            base_uri = base_uri.resolve().as_uri()
        self.base_uri = base_uri

        self.new_items: List[Record] = []
        self.new_collections: List[int] = []
        self._id_map: Dict[SourceId, int] = {}

    @property
    def id_map(self) -> Mapping[SourceId, int]:
        return self._id_map

    def save_items(
        self,
        items: Iterable[Any],
        callback: SaveCallback,
        attachment_callback: Optional[AttachmentCallback] = None,
    ) -> None:
        """Save a batch atomically.

        Calls ``callback(True, records)`` on success. On any error nothing
        from the batch is kept and ``callback(False, error)`` is called.
        """
        progress = attachment_callback or _ignore_progress
        imported_keys: List[str] = []
        try:
            records = parse_records(list(items))
            saved: List[Record] = []
            with self.store.transaction():
                for item in records:
                    record = self._save_record(item, progress, imported_keys)
                    if record is None:
                        continue
                    saved.append(self.store.get(record.id))
        except Exception as exc:
            LOGGER.error("Saving items failed: %s", exc)
            for key in imported_keys:
                self.importer.remove_storage_directory(key)
            callback(False, exc)
            return

        self.new_items.extend(saved)
        callback(True, saved)

    def save_collection(self, collection: Union[GenericCollection, Mapping[str, Any]]) -> Collection:
        """Create a collection tree breadth-first and fill it with saved items."""
        if not isinstance(collection, GenericCollection):
            collection = parse_collection(collection)

        pending: Deque[Tuple[GenericCollection, Optional[int]]] = deque([(collection, None)])
        top_level: Optional[Collection] = None

        with self.store.transaction():
            while pending:
                current, parent_id = pending.popleft()
                new_collection = self.store.add_collection(current.name, parent_id, self.library_id)
                if parent_id is None:
                    top_level = new_collection
                self.new_collections.append(new_collection.id)

                to_add = []
                for child in current.children:
                    if isinstance(child, GenericCollection):
                        pending.append((child, new_collection.id))
                    elif child.id in self._id_map:
                        to_add.append(self._id_map[child.id])
                    else:
                        LOGGER.warning("Could not map %s to an imported item", child.id)

                if to_add:
                    LOGGER.debug("Adding %s to collection %s", to_add, new_collection.id)
                    for item_id in to_add:
                        self.store.add_to_collection(new_collection.id, item_id)

        return top_level

    # Records

    def _save_record(
        self, item: GenericRecord, progress: AttachmentCallback, imported_keys: List[str]
    ) -> Optional[Record]:
        if isinstance(item, GenericNote):
            record = self.store.new_record("note", self.library_id)
            record.note = item.note
            self.store.save(record)
        elif isinstance(item, GenericAttachment):
            record = self._save_attachment(item, None, progress)
            if not isinstance(record, Record):
                return None
            imported_keys.append(record.key)
        else:
            if not itemtypes.is_valid_item_type(item.item_type):
                raise ValueError(f"Unknown item type '{item.item_type}'")
            record = self.store.new_record(item.item_type, self.library_id)
            self._save_fields(item.fields, item.item_type, record)
            if item.creators:
                self._save_creators(item, record)
            self.store.save(record)

            if item.notes:
                self._save_notes(item.notes, record.id)

            for attachment in item.attachments:
                new_attachment = self._save_attachment(attachment, record.id, progress)
                if isinstance(new_attachment, Record):
                    imported_keys.append(new_attachment.key)
                    self._save_tags(attachment, new_attachment)

        if item.item_id is not None:
            self._id_map[item.item_id] = record.id
        self._save_tags(item, record)
        return record

    def _save_fields(self, fields: Mapping[str, Any], item_type: str, record: Record) -> None:
        for name, value in fields.items():
            if not value or name in SKIP_FIELDS:
                continue

            target = itemtypes.field_for_type(item_type, name)
            if itemtypes.is_base_field(name) and target and target != name:
                # The type-specific field wins if both were supplied
                if fields.get(target):
                    continue
                LOGGER.debug("Mapping %s to %s", name, target)

            if target is None or not itemtypes.is_valid_field(item_type, target):
                LOGGER.debug("Discarded field %s: field not valid for type %s", name, item_type)
                continue

            value = str(value)
            if target == "date":
                value = str_to_multipart(value)
            record.set_field(target, value)

    def _save_creators(self, item: GenericItem, record: Record) -> None:
        for creator in item.creators:
            if not creator.first_name and not creator.last_name:
                LOGGER.debug("Silently dropping empty creator")
                continue

            creator_type = creator.creator_type or "author"
            if creator_type not in itemtypes.CREATOR_TYPES:
                LOGGER.debug("Invalid creator type %s, using author", creator_type)
                creator_type = "author"

            if creator.field_mode == 1:
                first_name, last_name, field_mode = "", creator.last_name, 1
            else:
                first_name, last_name, field_mode = creator.first_name, creator.last_name, 0

            existing = self.store.find_creators(first_name, last_name, field_mode, self.library_id)
            if existing:
                creator_id = existing[0]
            else:
                creator_id = self.store.add_creator(
                    Creator(first_name, last_name, field_mode, self.library_id)
                )
            record.creators.append(CreatorRef(creator_id, creator_type))

    def _save_notes(self, notes: List[Union[str, GenericNote]], parent_id: int) -> None:
        for note in notes:
            if not note:
                continue
            record = self.store.new_record("note", self.library_id)
            record.note = note if isinstance(note, str) else note.note
            record.parent_id = parent_id
            self.store.save(record)

            if isinstance(note, GenericNote):
                self._save_tags(note, record)

    def _save_tags(self, item: GenericRecord, record: Record) -> None:
        """Register the record in the id map, then add related records and tags."""
        if item.item_id is not None:
            self._id_map[item.item_id] = record.id

        if item.see_also:
            for source_id in item.see_also:
                if source_id in self._id_map:
                    record.related.add(self._id_map[source_id])
            self.store.save(record)

        automatic_tags = self.config.automatic_tags
        if self.force_tag_type == 1 and not automatic_tags:
            return

        by_type: Dict[int, List[str]] = {0: [], 1: []}
        for tag in item.tags:
            if isinstance(tag, str):
                by_type.setdefault(self.force_tag_type or 0, []).append(tag)
                continue
            if not tag.label:
                continue
            if self.force_tag_type:
                tag_type = self.force_tag_type
            elif tag.type:
                if tag.type == 1 and not automatic_tags:
                    continue
                tag_type = tag.type
            else:
                tag_type = 0
            by_type.setdefault(tag_type, []).append(tag.label)

        for tag_type, names in sorted(by_type.items()):
            if names:
                self.store.add_tags(record.id, names, tag_type)

    # Attachments

    def _save_attachment(
        self, attachment: GenericAttachment, parent_id: Optional[int], progress: AttachmentCallback
    ) -> Union[Record, bool, None]:
        """Returns the new record, True for an attachment saved later, or None."""
        if self.attachment_mode == AttachmentMode.FILE:
            return self._save_attachment_file(attachment, parent_id, progress)
        if self.attachment_mode == AttachmentMode.DOWNLOAD:
            return self._save_attachment_download(attachment, parent_id, progress)
        return None

    def _reject(self, attachment: GenericAttachment, progress: AttachmentCallback, error: Any) -> None:
        LOGGER.warning("%s", error)
        progress(attachment, False, error)

    def _check_attachment_url(
        self, url: Optional[str], attachment: GenericAttachment, progress: AttachmentCallback
    ) -> Optional[str]:
        cleaned = self.importer.resolver.clean_uri(url)
        if not cleaned:
            self._reject(attachment, progress, f"Invalid attachment URL specified <{url}>")
            return None

        scheme = urlsplit(cleaned).scheme
        if scheme == "file":
            self._reject(
                attachment, progress, "Local file attachments cannot be specified in attachment.url"
            )
            return None
        if scheme not in ("http", "https"):
            self._reject(
                attachment, progress, f"{scheme} protocol is not allowed for attachments from translators."
            )
            return None
        return cleaned

    def _save_attachment_file(
        self, attachment: GenericAttachment, parent_id: Optional[int], progress: AttachmentCallback
    ) -> Optional[Record]:
        LOGGER.debug("Adding attachment")

        if not attachment.url and not attachment.path:
            self._reject(attachment, progress, "Ignoring attachment: no path or URL specified")
            return None

        record: Optional[Record] = None
        if attachment.path:
            try:
                file = self.parse_path(attachment.path)
            except PathNotResolvedError:
                file = None

            if file is None:
                as_url = self.importer.resolver.clean_uri(attachment.path)
                if not attachment.url and not as_url:
                    self._reject(
                        attachment, progress, f"Could not parse attachment path <{attachment.path}>"
                    )
                    return None
                if not attachment.url:
                    LOGGER.debug("Attachment path looks like a URI: %s", attachment.path)
                    attachment.url = as_url
                    attachment.path = None
            elif attachment.url:
                record = self.importer.import_snapshot_from_file(
                    file,
                    attachment.url,
                    attachment.title or file.name,
                    attachment.mime_type,
                    attachment.charset,
                    parent_id,
                )
                progress(attachment, 100, None)
            else:
                record = self.importer.import_from_file(file, parent_id, self.library_id)
                progress(attachment, 100, None)

        if record is None:
            url = self._check_attachment_url(attachment.url, attachment, progress)
            if url is None:
                return None
            attachment.url = url
            try:
                record = self.importer.link_from_url(
                    url, parent_id, attachment.mime_type or None, attachment.title or None
                )
            except RefStoreError as exc:
                LOGGER.warning("Error adding attachment %s", url)
                progress(attachment, False, exc)
                return None
            LOGGER.debug("Created attachment; id is %s", record.id)
            progress(attachment, 100, None)

        fields = dict(attachment.fields)
        if attachment.title:
            fields["title"] = attachment.title
        if attachment.url:
            fields["url"] = attachment.url
        self._save_fields(fields, "attachment", record)
        if attachment.note:
            record.note = attachment.note
        self.store.save(record)
        return record

    def _save_attachment_download(
        self, attachment: GenericAttachment, parent_id: Optional[int], progress: AttachmentCallback
    ) -> Optional[bool]:
        LOGGER.debug("Adding attachment")

        document = attachment.document
        if not attachment.url and document is None:
            LOGGER.debug("Not adding attachment: no URL specified")
            return None

        if attachment.snapshot is not False:
            if document is not None or attachment.mime_type in SNAPSHOT_TYPES:
                if not self.config.automatic_snapshots:
                    return None
            elif not self.config.download_associated_files:
                return None

        if document is not None and not attachment.title:
            attachment.title = document.title
        title = attachment.title or None

        if attachment.snapshot is False or not self._save_files:
            if document is not None:
                url = document.url
                mime_type = attachment.mime_type or document.content_type
            else:
                url = attachment.url
                mime_type = attachment.mime_type or None

            cleaned = self._check_attachment_url(url, attachment, progress)
            if cleaned is None:
                return None
            try:
                self.importer.link_from_url(cleaned, parent_id, mime_type, title)
            except RefStoreError as exc:
                LOGGER.warning("Error adding attachment %s", url)
                progress(attachment, False, exc)
                return None
            progress(attachment, 100, None)
            return True

        def finished(record: Optional[Record], error: Optional[BaseException]) -> None:
            if error is None:
                progress(attachment, 100, None)
            else:
                progress(attachment, False, error)

        try:
            if document is not None:
                self.importer.import_from_document(
                    document,
                    parent_id,
                    title=title,
                    library_id=self.library_id,
                    callback=finished,
                )
            else:
                file_base_name = None
                if parent_id is not None:
                    file_base_name = self.importer.get_file_base_name_from_item(parent_id)
                LOGGER.debug("Importing attachment from URL")
                self.importer.import_from_url(
                    attachment.url,
                    parent_id,
                    title=title,
                    file_base_name=file_base_name,
                    mime_type=attachment.mime_type,
                    library_id=self.library_id,
                    callback=finished,
                )
        except RefStoreError as exc:
            LOGGER.warning("Error adding attachment %s", attachment.url or document.url)
            progress(attachment, False, exc)
            return True
        progress(attachment, 0, None)
        return True

    # Path parsing

    def parse_path(self, path: str) -> Path:
        """Find the file an exported attachment path refers to.

        Tries, in order: a native absolute path, a URI relative to the base
        URI, a relative path with back-slashes read as separators, the
        relative path verbatim, and finally the path with a leading slash as
        URI and as absolute path. Raises PathNotResolvedError if none exists.
        """
        if os.name == "nt":
            native_absolute = bool(_WINDOWS_ABSOLUTE.match(path))
        else:
            native_absolute = path.startswith("/")

        if native_absolute:
            native = path.replace("/", "\\") if os.name == "nt" else path
            file = self._parse_absolute_path(native)
            if file is not None:
                LOGGER.debug("Got file %s as absolute path", native)
                return file

        file = self._parse_path_uri(path)
        if file is not None:
            LOGGER.debug("Got %s as URI", path)
            return file

        # A fully qualified file URI that did not resolve is final
        if not path.startswith("file://"):
            file = self._parse_relative_path(path.replace("\\", "/"))
            if file is not None:
                LOGGER.debug("Got file %s as relative path", path)
                return file

            file = self._parse_relative_path(path)
            if file is not None:
                LOGGER.debug("Got file %s as relative path", path)
                return file

            if not path.startswith("/"):
                file = self._parse_path_uri("/" + path)
                if file is not None:
                    LOGGER.debug("Got file %s as broken URI", path)
                    return file

                file = self._parse_absolute_path("/" + path)
                if file is not None:
                    LOGGER.debug("Got file %s as broken absolute path", path)
                    return file

        LOGGER.debug("Could not find file %s", path)
        raise PathNotResolvedError(f"Could not find file {path}")

    def _parse_path_uri(self, path: str) -> Optional[Path]:
        try:
            uri = urljoin(self.base_uri or "", path)
            parts = urlsplit(uri)
            if parts.scheme != "file":
                return None
            file = Path(url2pathname(parts.path))
            if str(file) != os.sep and file.is_file():
                return file
        except (OSError, ValueError) as exc:
            LOGGER.debug("Could not parse %s as URI: %s", path, exc)
        return None

    @staticmethod
    def _parse_absolute_path(path: str) -> Optional[Path]:
        try:
            file = Path(path)
            if file.is_file():
                return file
        except (OSError, ValueError) as exc:
            LOGGER.debug("Could not parse %s as absolute path: %s", path, exc)
        return None

    def _parse_relative_path(self, path: str) -> Optional[Path]:
        if not self.base_uri:
            return None
        parts = urlsplit(self.base_uri)
        if parts.scheme != "file":
            return None
        try:
            file = Path(url2pathname(parts.path)).parent
            for segment in path.split("/"):
                if segment:
                    file = file / segment
            if file.is_file():
                return file
        except (OSError, ValueError) as exc:
            LOGGER.debug("Could not parse %s as relative path: %s", path, exc)
        return None
