"""Attachment import pipeline.

Each entry point creates an attachment record and places its bytes: copied
into the record's storage directory (imported modes) or referenced where they
already are (linked modes). Record creation, directory placement and the final
path are written in one store transaction; if anything fails the transaction
is rolled back and the partially filled directory is removed, so a failed
import leaves no record behind.

Downloads are asynchronous. The record is committed first, with notifications
suppressed, and an :class:`ImportJob` tracks the download through
``CREATED -> DOWNLOADING -> VERIFYING -> COMMITTED | FAILED``. Callers get
the provisional record back immediately and the finished record (or the
error) through their callback.
"""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

from bs4 import BeautifulSoup, UnicodeDammit

from refstore.attachments.filenames import (
    extension_from_url,
    file_name_from_url,
    render_file_base_name,
    split_extension,
    title_from_url,
)
from refstore.attachments.mime import MimeSniffer
from refstore.collaborators import (
    CapturedDocument,
    ContentFetcher,
    ContentIndexer,
    DocumentCapture,
    FileDocumentCapture,
)
from refstore.config import AppConfig
from refstore.errors import (
    DiskWriteFailureError,
    InvalidStateTransitionError,
    InvalidURLError,
    MimeTypeMismatchError,
    MissingCollaboratorError,
    NotAFileError,
    RecordNotFoundError,
    UnsupportedLinkModeError,
    UnsupportedSchemeError,
)
from refstore.models import AttachmentInfo, ImportState, LinkMode, Record
from refstore.notify.notifier import Notifier
from refstore.storage.orphans import OrphanReclaimer
from refstore.storage.paths import StoragePathResolver
from refstore.storage.records import SQLiteRecordStore
from refstore.utils.dates import multipart_to_sql, str_to_multipart
from refstore.utils.files import copy_to_unique, get_valid_file_name, read_sample, truncate_file_name
from refstore.utils.tasks import TaskScheduler

LOGGER = logging.getLogger(__name__)

# callback(record, None) on success, callback(None, error) on failure
ImportCallback = Callable[[Optional[Record], Optional[BaseException]], None]

SNAPSHOT_TYPES = ("text/html", "application/xhtml+xml")
MAX_SNAPSHOT_NAME_LENGTH = 100
LINK_INDEX_DELAY = 0.05

# Image titles get a " - Scaled (-17%)" style suffix from viewers
_SCALED_IMAGE_TITLE = re.compile(r"(.+ \([^,]+, [0-9]+x[0-9]+[^)]+\)) - .+")
_MIME_IN_TITLE = re.compile(r"(.+) \([a-z]+/[^)]+\)")

_TRANSITIONS = {
    ImportState.CREATED: (ImportState.DOWNLOADING, ImportState.COMMITTED, ImportState.FAILED),
    ImportState.DOWNLOADING: (ImportState.VERIFYING, ImportState.FAILED),
    ImportState.VERIFYING: (ImportState.COMMITTED, ImportState.FAILED),
    ImportState.COMMITTED: (),
    ImportState.FAILED: (),
}


@dataclass(slots=True)
class ImportJob:
    """Progress of one asynchronous attachment download."""

    record_id: int
    key: str
    url: str
    target: Path
    mime_type: Optional[str] = None
    parent_id: Optional[int] = None
    callback: Optional[ImportCallback] = None
    document: Optional[CapturedDocument] = None
    title_forced: bool = False
    state: ImportState = ImportState.CREATED
    error: Optional[BaseException] = None

    def advance(self, state: ImportState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise InvalidStateTransitionError(
                f"Import of record {self.record_id} cannot go from {self.state.value} to {state.value}"
            )
        LOGGER.debug("Import of record %s: %s -> %s", self.record_id, self.state.value, state.value)
        self.state = state


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def detect_charset(data: bytes, *, is_html: bool = False) -> Optional[str]:
    """Best guess at the character set of ``data``; declared charsets win."""
    dammit = UnicodeDammit(data, user_encodings=["utf-8"], is_html=is_html)
    encoding = dammit.original_encoding
    if not encoding:
        return None
    encoding = encoding.lower()
    return "utf-8" if encoding == "ascii" else encoding


class AttachmentImporter:
    """Creates attachment records from files, URLs and captured documents."""

    def __init__(
        self,
        store: SQLiteRecordStore,
        resolver: StoragePathResolver,
        reclaimer: OrphanReclaimer,
        *,
        notifier: Notifier,
        scheduler: TaskScheduler,
        config: AppConfig,
        sniffer: Optional[MimeSniffer] = None,
        indexer: Optional[ContentIndexer] = None,
        fetcher: Optional[ContentFetcher] = None,
        capture: Optional[DocumentCapture] = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.reclaimer = reclaimer
        self.notifier = notifier
        self.scheduler = scheduler
        self.config = config
        self.sniffer = sniffer or MimeSniffer()
        self.indexer = indexer
        self.fetcher = fetcher
        self.capture = capture or FileDocumentCapture()
        self._jobs: Dict[int, ImportJob] = {}

    def job_for(self, record_id: int) -> Optional[ImportJob]:
        return self._jobs.get(record_id)

    # Import entry points

    def import_from_file(
        self, file: Path, parent_id: Optional[int] = None, library_id: Optional[int] = None
    ) -> Record:
        """Copy ``file`` into managed storage as a new attachment."""
        file = Path(file)
        LOGGER.debug("Importing attachment from file %s", file)

        if not file.is_file():
            raise NotAFileError(f"'{file.name}' must be a file")
        new_name = get_valid_file_name(file.name)

        record: Optional[Record] = None
        try:
            with self.store.transaction():
                record = self._new_attachment(
                    LinkMode.IMPORTED_FILE, new_name, parent_id=parent_id, library_id=library_id
                )
                self.store.save(record)

                dest_dir = self.create_directory_for_item(record.id)
                new_file = self._copy(file, dest_dir / new_name)
                mime_type = self.sniffer.type_from_file(new_file)

                record.attachment.mime_type = mime_type
                record.attachment.path = self.resolver.to_storage_path(
                    new_file, LinkMode.IMPORTED_FILE
                )
                self.store.save(record)
        except Exception:
            LOGGER.error("Failed importing file %s", file)
            if record is not None:
                self.remove_storage_directory(record.key)
            raise

        self._post_process_file(record, new_file, mime_type)
        return record

    def link_from_file(self, file: Path, parent_id: Optional[int] = None) -> Record:
        file = Path(file)
        LOGGER.debug("Linking attachment from file %s", file)

        if not file.is_file():
            raise NotAFileError(f"'{file.name}' must be a file")
        mime_type = self.sniffer.type_from_file(file)

        record = self._add_to_db(
            file, None, file.name, LinkMode.LINKED_FILE, mime_type, None, parent_id
        )
        self._post_process_file(record, file, mime_type)
        return record

    def import_snapshot_from_file(
        self,
        file: Path,
        url: str,
        title: str,
        mime_type: Optional[str],
        charset: Optional[str] = None,
        parent_id: Optional[int] = None,
    ) -> Record:
        """Import a saved web page together with its sibling resource files."""
        file = Path(file)
        LOGGER.debug("Importing snapshot from file %s", file)

        if not file.is_file():
            raise NotAFileError(f"'{file.name}' must be a file")

        record: Optional[Record] = None
        try:
            with self.store.transaction():
                record = self._new_attachment(
                    LinkMode.IMPORTED_URL,
                    title,
                    parent_id=parent_id,
                    mime_type=mime_type,
                    charset=charset,
                )
                record.set_field("url", url)
                self.store.save(record)

                dest_dir = self.storage_directory(record.id)
                self.reclaimer.reclaim(dest_dir)
                dest_dir.parent.mkdir(parents=True, exist_ok=True)
                try:
                    shutil.copytree(file.parent, dest_dir)
                except OSError as exc:
                    raise DiskWriteFailureError(f"Could not copy snapshot {file}: {exc}") from exc

                new_file = dest_dir / file.name
                record.attachment.path = self.resolver.to_storage_path(
                    new_file, LinkMode.IMPORTED_URL
                )
                self.store.save(record)
        except Exception:
            LOGGER.error("Failed importing snapshot %s", file)
            if record is not None:
                self.remove_storage_directory(record.key)
            raise

        self._post_process_file(record, new_file, mime_type)
        return record

    def import_from_url(
        self,
        url: str,
        parent_id: Optional[int] = None,
        *,
        title: Optional[str] = None,
        file_base_name: Optional[str] = None,
        collection_ids: Optional[Iterable[int]] = None,
        mime_type: Optional[str] = None,
        library_id: Optional[int] = None,
        callback: Optional[ImportCallback] = None,
    ) -> Record:
        """Start downloading ``url`` into a new attachment.

        The returned record is provisional until ``callback`` fires.
        """
        LOGGER.debug("Importing attachment from URL %s", url)

        url = self._check_remote_url(url)
        if self.fetcher is None:
            raise MissingCollaboratorError("No content fetcher configured")
        if parent_id is not None and collection_ids:
            LOGGER.warning("collection_ids is ignored when parent_id is set in import_from_url()")
            collection_ids = None

        if not mime_type:
            mime_type = self.sniffer.type_from_extension(self._url_extension(url))

        if file_base_name:
            ext = extension_from_url(url, mime_type, self.sniffer)
            file_name = get_valid_file_name(file_base_name + (f".{ext}" if ext else ""))
        else:
            file_name = file_name_from_url(url, mime_type, self.sniffer)

        record, dest_dir = self._create_url_attachment(
            url,
            title or file_name,
            parent_id=parent_id,
            library_id=library_id,
            mime_type=mime_type,
            collection_ids=collection_ids,
        )

        job = ImportJob(
            record_id=record.id,
            key=record.key,
            url=url,
            target=dest_dir / file_name,
            mime_type=mime_type,
            parent_id=parent_id,
            callback=callback,
            title_forced=bool(title),
        )
        self._start_download(job)
        return record

    def import_from_document(
        self,
        document: CapturedDocument,
        parent_id: Optional[int] = None,
        *,
        title: Optional[str] = None,
        collection_ids: Optional[Iterable[int]] = None,
        library_id: Optional[int] = None,
        callback: Optional[ImportCallback] = None,
    ) -> Record:
        """Save a captured document as a snapshot attachment.

        HTML and XHTML are serialized right away. Anything else is downloaded
        from the document's URL like :meth:`import_from_url`.
        """
        LOGGER.debug("Importing attachment from document %s", document.url)

        if parent_id is not None and collection_ids:
            LOGGER.warning("collection_ids is ignored when parent_id is set in import_from_document()")
            collection_ids = None

        url = document.url
        mime_type = "application/pdf" if document.is_pdf_viewer else document.content_type
        sync = mime_type in SNAPSHOT_TYPES
        if not sync and self.fetcher is None:
            raise MissingCollaboratorError("No content fetcher configured")

        if not title:
            title = self._clean_document_title(document.title or "", mime_type, url)
            title_forced = False
        else:
            title_forced = True

        file_name = truncate_file_name(
            file_name_from_url(url, mime_type, self.sniffer), MAX_SNAPSHOT_NAME_LENGTH
        )

        if not sync:
            record, dest_dir = self._create_url_attachment(
                url,
                title,
                parent_id=parent_id,
                library_id=library_id,
                mime_type=mime_type,
                charset=document.charset,
                collection_ids=collection_ids,
            )
            job = ImportJob(
                record_id=record.id,
                key=record.key,
                url=url,
                target=dest_dir / file_name,
                mime_type=mime_type,
                parent_id=parent_id,
                callback=callback,
                document=document,
                title_forced=title_forced,
            )
            self._start_download(job)
            return record

        record = None
        try:
            with self.store.transaction():
                record = self._new_attachment(
                    LinkMode.IMPORTED_URL,
                    title,
                    parent_id=parent_id,
                    library_id=library_id,
                    mime_type=mime_type,
                    charset=document.charset,
                )
                record.set_field("url", url)
                record.set_field("accessDate", _now())
                self.store.save(record)

                target = self.create_directory_for_item(record.id) / file_name
                try:
                    self.capture.save_document(document, target)
                except OSError as exc:
                    raise DiskWriteFailureError(f"Could not save document {url}: {exc}") from exc

                record.attachment.path = self.resolver.to_storage_path(
                    target, LinkMode.IMPORTED_URL
                )
                self.store.save(record)
                self._add_to_collections(record.id, collection_ids)
        except Exception:
            LOGGER.error("Failed importing document %s", url)
            if record is not None:
                self.remove_storage_directory(record.key)
            raise

        if self.indexer is not None:
            self.scheduler.call_later(
                self.config.index_delay, lambda: self.indexer.index_document(document, record.id)
            )
        if callback is not None:
            callback(record, None)
        return record

    def link_from_document(
        self,
        document: CapturedDocument,
        parent_id: Optional[int] = None,
        collection_ids: Optional[Iterable[int]] = None,
    ) -> Record:
        LOGGER.debug("Linking attachment from document %s", document.url)

        if parent_id is not None and collection_ids:
            LOGGER.warning("collection_ids is ignored when parent_id is set in link_from_document()")
            collection_ids = None

        mime_type = document.content_type
        with self.store.transaction():
            record = self._add_to_db(
                None,
                document.url,
                document.title,
                LinkMode.LINKED_URL,
                mime_type,
                document.charset,
                parent_id,
            )
            self._add_to_collections(record.id, collection_ids)

        # No file behind a link, so cached types have nothing to index
        if (
            self.indexer is not None
            and not self.sniffer.is_cached_type(mime_type)
            and self.sniffer.is_text_type(mime_type)
        ):
            self.scheduler.call_later(
                LINK_INDEX_DELAY, lambda: self.indexer.index_document(document, record.id)
            )
        return record

    def link_from_url(
        self,
        url: str,
        parent_id: Optional[int] = None,
        mime_type: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Record:
        LOGGER.debug("Linking attachment from %s", url)

        cleaned = self.resolver.clean_uri(url)
        if cleaned is None:
            raise InvalidURLError(f"Invalid URL '{url}'")

        if not title:
            title = title_from_url(cleaned)

        # Some servers report a wrong type for PDFs
        if self._url_extension(cleaned).lower() == "pdf":
            mime_type = "application/pdf"

        return self._add_to_db(None, cleaned, title, LinkMode.LINKED_URL, mime_type, None, parent_id)

    def create_missing_attachment(
        self,
        link_mode: LinkMode,
        file: Optional[Path],
        url: Optional[str],
        title: str,
        mime_type: Optional[str],
        charset: Optional[str] = None,
        parent_id: Optional[int] = None,
    ) -> Record:
        """Record an attachment whose file is known but not present."""
        link_mode = LinkMode(link_mode)
        if link_mode == LinkMode.LINKED_URL:
            raise UnsupportedLinkModeError(
                "create_missing_attachment() cannot be used to create linked URLs"
            )
        return self._add_to_db(
            Path(file) if file else None, url, title, link_mode, mime_type, charset, parent_id
        )

    def get_file_base_name_from_item(
        self, record_id: int, format_string: Optional[str] = None
    ) -> str:
        """Render the attachment rename template for a record."""
        if not format_string:
            format_string = self.config.rename_format

        record = self.store.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"Invalid record id {record_id}")

        year = ""
        date = record.get_field("date")
        if date:
            year = multipart_to_sql(str_to_multipart(date))[:4]
            if year == "0000":
                year = ""

        return render_file_base_name(
            format_string,
            creator=self.store.first_creator(record),
            year=year,
            title=record.get_field("title"),
        )

    # Storage directories and files

    def storage_directory(self, record_id: int) -> Path:
        record = self.store.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"Record {record_id} not found")
        return self.resolver.storage_dir_for(record.key)

    def create_directory_for_item(self, record_id: int) -> Path:
        """Create the record's storage directory, quarantining any leftover."""
        directory = self.storage_directory(record_id)
        self.reclaimer.reclaim(directory)
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def create_directory_for_missing_item(self, key: str) -> Path:
        directory = self.resolver.storage_dir_for(key)
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def get_file(self, record: Record, check_exists: bool = True) -> Optional[Path]:
        info = record.attachment
        if info is None or info.link_mode == LinkMode.LINKED_URL or not info.path:
            return None
        path = self.resolver.from_storage_path(info.path, record.key)
        if check_exists and not path.exists():
            return None
        return path

    def get_num_files(self, record: Record) -> int:
        """Number of visible files belonging to an imported attachment."""
        info = self._require_attachment(record)
        if not info.link_mode.is_imported:
            raise UnsupportedLinkModeError(f"Invalid attachment link mode {info.link_mode.name}")
        if info.mime_type != "text/html":
            return 1

        file = self.get_file(record)
        if file is None:
            raise FileNotFoundError(f"File not found for attachment {record.key}")
        return sum(1 for entry in file.parent.iterdir() if not entry.name.startswith("."))

    def get_total_file_size(self, record: Record, skip_hidden: bool = False) -> int:
        """Size in bytes of an attachment's file, or of its whole directory if imported."""
        info = self._require_attachment(record)
        if info.link_mode == LinkMode.LINKED_URL:
            raise UnsupportedLinkModeError(f"Invalid attachment link mode {info.link_mode.name}")

        file = self.get_file(record)
        if file is None:
            raise FileNotFoundError(f"File not found for attachment {record.key}")
        if info.link_mode == LinkMode.LINKED_FILE:
            return file.stat().st_size

        size = 0
        for entry in file.parent.iterdir():
            if skip_hidden and entry.name.startswith("."):
                continue
            if entry.is_file():
                size += entry.stat().st_size
        return size

    def delete_attachment(self, record_id: int) -> None:
        """Erase an attachment record and then its storage directory."""
        record = self.store.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"Record {record_id} not found")
        info = self._require_attachment(record)

        self.store.erase(record_id)
        # A directory left behind here is reclaimed if the key is ever reused
        if info.link_mode.is_imported:
            self.remove_storage_directory(record.key)

    # Internals

    @staticmethod
    def _require_attachment(record: Record) -> AttachmentInfo:
        if not record.is_attachment or record.attachment is None:
            raise ValueError(f"Record {record.key} is not an attachment")
        return record.attachment

    def _check_remote_url(self, url: str) -> str:
        cleaned = self.resolver.clean_uri(url)
        if cleaned is None:
            raise InvalidURLError(f"Invalid URL '{url}'")
        scheme = cleaned.split(":", 1)[0]
        if scheme not in ("http", "https"):
            raise UnsupportedSchemeError(f"{scheme} protocol is not allowed for remote attachments")
        return cleaned

    @staticmethod
    def _url_extension(url: str) -> str:
        path = url.split("?", 1)[0].split("#", 1)[0]
        return split_extension(path.rsplit("/", 1)[-1])[1]

    def _clean_document_title(self, title: str, mime_type: str, url: str) -> str:
        if mime_type.startswith("image/"):
            return _SCALED_IMAGE_TITLE.sub(r"\1", title, count=1)
        if not self.sniffer.has_native_handler(mime_type, self._url_extension(url)):
            return _MIME_IN_TITLE.sub(r"\1", title, count=1)
        return title

    def _get_parent(self, parent_id: Optional[int]) -> Optional[Record]:
        if parent_id is None:
            return None
        parent = self.store.get(parent_id)
        if parent is None:
            raise RecordNotFoundError(f"Parent record {parent_id} not found")
        return parent

    def _new_attachment(
        self,
        link_mode: LinkMode,
        title: Optional[str],
        *,
        parent_id: Optional[int] = None,
        library_id: Optional[int] = None,
        mime_type: Optional[str] = None,
        charset: Optional[str] = None,
    ) -> Record:
        parent = self._get_parent(parent_id)
        if library_id is None and parent is not None:
            library_id = parent.library_id

        record = self.store.new_record("attachment", library_id)
        record.parent_id = parent_id
        record.set_field("title", title)
        record.attachment = AttachmentInfo(link_mode, mime_type=mime_type, charset=charset)
        return record

    def _add_to_db(
        self,
        file: Optional[Path],
        url: Optional[str],
        title: Optional[str],
        link_mode: LinkMode,
        mime_type: Optional[str],
        charset: Optional[str],
        parent_id: Optional[int],
    ) -> Record:
        with self.store.transaction():
            parent = self._get_parent(parent_id)
            if (
                parent is not None
                and parent.library_id is not None
                and link_mode == LinkMode.LINKED_FILE
            ):
                raise UnsupportedLinkModeError("Cannot save linked file in non-local library")

            record = self._new_attachment(
                link_mode, title, parent_id=parent_id, mime_type=mime_type, charset=charset
            )
            if link_mode in (LinkMode.IMPORTED_URL, LinkMode.LINKED_URL):
                record.set_field("url", url)
                record.set_field("accessDate", _now())

            if file is not None:
                path = self.resolver.to_storage_path(file, link_mode)
                if link_mode == LinkMode.LINKED_FILE:
                    path = self.resolver.relativize_to_base(path)
                record.attachment.path = path

            self.store.save(record)
        return record

    def _add_to_collections(self, record_id: int, collection_ids: Optional[Iterable[int]]) -> None:
        for collection_id in collection_ids or ():
            self.store.add_to_collection(collection_id, record_id)

    def _copy(self, source: Path, target: Path) -> Path:
        try:
            return copy_to_unique(source, target)
        except OSError as exc:
            raise DiskWriteFailureError(f"Could not copy {source} to {target.parent}: {exc}") from exc

    def remove_storage_directory(self, key: str) -> None:
        directory = self.resolver.storage_dir_for(key)
        if directory.exists():
            LOGGER.debug("Removing storage directory %s", directory)
            shutil.rmtree(directory, ignore_errors=True)

    def _create_url_attachment(
        self,
        url: str,
        title: str,
        *,
        parent_id: Optional[int],
        library_id: Optional[int],
        mime_type: Optional[str],
        collection_ids: Optional[Iterable[int]],
        charset: Optional[str] = None,
    ) -> tuple[Record, Path]:
        # The record is incomplete until the download finishes, so observers
        # only hear about it from _finish_download()
        disabled = self.notifier.disable()
        record: Optional[Record] = None
        try:
            with self.store.transaction():
                record = self._new_attachment(
                    LinkMode.IMPORTED_URL,
                    title,
                    parent_id=parent_id,
                    library_id=library_id,
                    mime_type=mime_type,
                    charset=charset,
                )
                record.set_field("url", url)
                record.set_field("accessDate", _now())
                self.store.save(record)
                self._add_to_collections(record.id, collection_ids)
                dest_dir = self.create_directory_for_item(record.id)
        except Exception:
            LOGGER.error("Failed creating attachment for %s", url)
            if record is not None:
                self.remove_storage_directory(record.key)
            raise
        finally:
            if disabled:
                self.notifier.enable()
        return record, dest_dir

    def _start_download(self, job: ImportJob) -> None:
        self._jobs[job.record_id] = job
        job.advance(ImportState.DOWNLOADING)
        try:
            self.fetcher.fetch(job.url, job.target, lambda error: self._finish_download(job, error))
        except Exception as exc:
            if job.state != ImportState.DOWNLOADING:
                raise
            self._fail(job, exc)

    def _finish_download(self, job: ImportJob, error: Optional[BaseException]) -> None:
        if error is not None:
            self._fail(job, error)
            return

        job.advance(ImportState.VERIFYING)
        try:
            self._verify(job)
            with self.notifier.queued(), self.store.transaction():
                record = self.store.get(job.record_id)
                if record is None:
                    raise RecordNotFoundError(f"Record {job.record_id} was deleted during download")
                record.attachment.path = self.resolver.to_storage_path(
                    job.target, LinkMode.IMPORTED_URL
                )
                if not record.attachment.mime_type:
                    record.attachment.mime_type = self.sniffer.type_from_file(job.target)
                    job.mime_type = record.attachment.mime_type
                if not job.title_forced and job.mime_type in SNAPSHOT_TYPES:
                    record.set_field("title", self._html_title(job.target) or record.get_field("title"))
                self.store.save(record)
                # Observers never saw this record, so present it as new
                self.notifier.untrigger("modify", "item", record.id)
                self.notifier.trigger("add", "item", record.id)
        except Exception as exc:
            self._fail(job, exc)
            return

        job.advance(ImportState.COMMITTED)
        if job.callback is not None:
            job.callback(record, None)
        if self.indexer is not None:
            self.scheduler.call_later(self.config.index_delay, lambda: self._index_job(job))

    def _verify(self, job: ImportJob) -> None:
        if not job.target.is_file():
            raise FileNotFoundError(f"Download of {job.url} produced no file")
        if job.mime_type == "application/pdf":
            sample = read_sample(job.target)
            if self.sniffer.type_from_content(sample) != "application/pdf":
                LOGGER.debug("Downloaded content starts with %r", sample[:64])
                raise MimeTypeMismatchError(
                    f"Downloaded PDF from {job.url} did not have MIME type 'application/pdf'"
                )

    def _fail(self, job: ImportJob, error: BaseException) -> None:
        LOGGER.error("Import of %s failed: %s", job.url, error)
        job.error = error
        job.advance(ImportState.FAILED)

        disabled = self.notifier.disable()
        try:
            if self.store.exists(job.record_id):
                self.store.erase(job.record_id)
        finally:
            if disabled:
                self.notifier.enable()
        self.remove_storage_directory(job.key)

        if job.callback is not None:
            job.callback(None, error)

    @staticmethod
    def _html_title(path: Path) -> Optional[str]:
        data = path.read_bytes()
        soup = BeautifulSoup(data, "html.parser")
        if soup.title and soup.title.string:
            return soup.title.string.strip() or None
        return None

    def _post_process_file(self, record: Record, file: Path, mime_type: Optional[str]) -> None:
        """Detect the charset of text files and schedule indexing."""
        if not mime_type:
            return

        if self.sniffer.is_cached_type(mime_type):
            self._schedule_file_index(record.id, file, mime_type)
            return

        ext = split_extension(file.name)[1]
        if not self.sniffer.has_native_handler(mime_type, ext) or not self.sniffer.is_text_type(mime_type):
            return

        charset = detect_charset(read_sample(file, 1 << 16), is_html=mime_type in SNAPSHOT_TYPES)
        if charset:
            disabled = self.notifier.disable()
            try:
                record.attachment.charset = charset
                self.store.save(record)
            finally:
                if disabled:
                    self.notifier.enable()

        self._schedule_file_index(record.id, file, mime_type)

    def _schedule_file_index(self, record_id: int, file: Path, mime_type: str) -> None:
        if self.indexer is None:
            return
        self.scheduler.call_later(
            self.config.index_delay, lambda: self.indexer.index_file(file, record_id, mime_type)
        )

    def _index_job(self, job: ImportJob) -> None:
        if job.document is not None and job.mime_type != "application/pdf" and self.sniffer.is_text_type(job.mime_type):
            self.indexer.index_document(job.document, job.record_id)
        else:
            self.indexer.index_file(job.target, job.record_id, job.mime_type)
