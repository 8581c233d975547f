"""Tests for saving parsed record graphs."""

from __future__ import annotations

from pathlib import Path
from typing import Any, List, Tuple

import pytest

from conftest import PDF_BYTES, FakeFetcher
from refstore.config import AppConfig
from refstore.errors import PathNotResolvedError
from refstore.ingestion.saver import AttachmentMode, ItemSaver
from refstore.library import Library, open_library
from refstore.models import LinkMode, Record


class Results:
    """Collects save and attachment progress callbacks."""

    def __init__(self) -> None:
        self.saved: List[Tuple[bool, Any]] = []
        self.progress: List[Tuple[Any, Any, Any]] = []

    def __call__(self, success: bool, value: Any) -> None:
        self.saved.append((success, value))

    def attachment(self, attachment, progress, error=None) -> None:
        self.progress.append((attachment, progress, error))

    @property
    def records(self) -> List[Record]:
        success, value = self.saved[-1]
        assert success, value
        return value


def _save(saver: ItemSaver, items: list) -> Results:
    results = Results()
    saver.save_items(items, results, results.attachment)
    return results


@pytest.fixture
def export_file(source_dir: Path) -> Path:
    (source_dir / "files").mkdir()
    (source_dir / "files" / "paper.pdf").write_bytes(PDF_BYTES)
    export = source_dir / "export.json"
    export.write_text("[]")
    return export


class TestSaveItems:
    """Items, fields and creators."""

    def test_fields_are_mapped_and_validated(self, library: Library) -> None:
        results = _save(
            library.saver(),
            [
                {
                    "itemType": "report",
                    "title": "Sketch of the Analytical Engine",
                    "publisher": "Royal Society",
                    "date": "March 1843",
                    "patentNumber": "ignored",
                }
            ],
        )

        (record,) = results.records
        assert record.item_type == "report"
        assert record.fields == {
            "title": "Sketch of the Analytical Engine",
            "institution": "Royal Society",
            "date": "1843-03-00 March 1843",
        }

    def test_type_specific_field_wins(self, library: Library) -> None:
        results = _save(library.saver(), [{"itemType": "report", "publisher": "A", "institution": "B"}])

        assert results.records[0].get_field("institution") == "B"

    def test_creators(self, library: Library) -> None:
        creators = [
            {"firstName": "Ada", "lastName": "Lovelace"},
            {"firstName": "ignored", "lastName": "Royal Society", "fieldMode": 1, "creatorType": "editor"},
            {"firstName": "Charles", "lastName": "Babbage", "creatorType": "wizard"},
            {"firstName": "", "lastName": ""},
        ]
        results = _save(library.saver(), [{"itemType": "book", "creators": creators}])

        record = results.records[0]
        assert [ref.creator_type for ref in record.creators] == ["author", "editor", "author"]
        society = library.store.get_creator(record.creators[1].creator_id)
        assert society.first_name == ""
        assert society.field_mode == 1

    def test_creators_are_reused(self, library: Library) -> None:
        ada = {"firstName": "Ada", "lastName": "Lovelace"}
        results = _save(
            library.saver(),
            [{"itemType": "book", "creators": [ada]}, {"itemType": "book", "creators": [ada]}],
        )

        first, second = results.records
        assert first.creators[0].creator_id == second.creators[0].creator_id

    def test_notes(self, library: Library) -> None:
        results = _save(
            library.saver(),
            [
                {"itemType": "book", "notes": ["<p>one</p>", {"note": "two", "tags": ["todo"]}, ""]},
                {"itemType": "note", "note": "standalone"},
            ],
        )

        book, note = results.records
        children = library.store.children(book.id, "note")
        assert [child.note for child in children] == ["<p>one</p>", "two"]
        assert [tag.name for tag in library.store.get_tags(children[1].id)] == ["todo"]
        assert note.note == "standalone"
        assert note.parent_id is None

    def test_related_records(self, library: Library) -> None:
        saver = library.saver()
        results = _save(
            saver,
            [
                {"itemID": "a", "title": "First"},
                {"itemID": "b", "title": "Second", "seeAlso": ["a", "unknown"]},
            ],
        )

        first, second = results.records
        assert second.related == {first.id}
        assert saver.id_map == {"a": first.id, "b": second.id}

    def test_failure_keeps_nothing(self, library: Library) -> None:
        results = _save(library.saver(), [{"title": "fine"}, {"itemType": "spaceship"}])

        success, error = results.saved[0]
        assert success is False
        assert isinstance(error, ValueError)
        assert library.store.list_records() == []

    def test_new_items_accumulate(self, library: Library) -> None:
        saver = library.saver()
        _save(saver, [{"title": "one"}])
        _save(saver, [{"title": "two"}])

        assert [record.get_field("title") for record in saver.new_items] == ["one", "two"]


class TestTags:
    def test_tag_types(self, library: Library) -> None:
        results = _save(library.saver(), [{"title": "t", "tags": ["manual", {"tag": "auto", "type": 1}]}])

        tags = library.store.get_tags(results.records[0].id)
        assert [(tag.name, tag.type) for tag in tags] == [("auto", 1), ("manual", 0)]

    def test_automatic_tags_disabled(self, tmp_path: Path) -> None:
        config = AppConfig(data_dir=tmp_path / "data", automatic_tags=False)
        library = open_library(config)
        try:
            results = _save(library.saver(), [{"title": "t", "tags": ["manual", {"tag": "auto", "type": 1}]}])
            tags = library.store.get_tags(results.records[0].id)
            assert [tag.name for tag in tags] == ["manual"]

            results = _save(library.saver(force_tag_type=1), [{"title": "t", "tags": ["manual"]}])
            assert library.store.get_tags(results.records[0].id) == []
        finally:
            library.close()

    def test_forced_tag_type(self, library: Library) -> None:
        results = _save(library.saver(force_tag_type=1), [{"title": "t", "tags": ["x", {"tag": "y"}]}])

        tags = library.store.get_tags(results.records[0].id)
        assert {tag.type for tag in tags} == {1}


class TestFileAttachments:
    """Attachment mode FILE: paths resolved against the export file."""

    def _saver(self, library: Library, export_file: Path) -> ItemSaver:
        return library.saver(attachment_mode=AttachmentMode.FILE, base_uri=export_file)

    def test_relative_path_imported(self, library: Library, export_file: Path) -> None:
        results = _save(
            self._saver(library, export_file),
            [{"title": "Notes", "attachments": [{"path": "files/paper.pdf", "title": "Full Text", "tags": ["pdf"]}]}],
        )

        (attachment,) = library.store.children(results.records[0].id)
        assert attachment.attachment.link_mode == LinkMode.IMPORTED_FILE
        assert attachment.get_field("title") == "Full Text"
        assert library.importer.get_file(attachment).read_bytes() == PDF_BYTES
        assert [tag.name for tag in library.store.get_tags(attachment.id)] == ["pdf"]
        assert results.progress[0][1] == 100

    def test_path_with_url_is_snapshot(self, library: Library, export_file: Path) -> None:
        results = _save(
            self._saver(library, export_file),
            [{"itemType": "attachment", "path": "files\\paper.pdf", "url": "https://example.com/paper.pdf"}],
        )

        (attachment,) = results.records
        assert attachment.attachment.link_mode == LinkMode.IMPORTED_URL
        assert attachment.get_field("url") == "https://example.com/paper.pdf"
        assert attachment.get_field("title") == "paper.pdf"

    def test_unresolved_path_falls_back_to_url(self, library: Library, export_file: Path) -> None:
        results = _save(
            self._saver(library, export_file),
            [{"itemType": "attachment", "path": "files/gone.pdf", "url": "https://example.com/x"}],
        )

        (attachment,) = results.records
        assert attachment.attachment.link_mode == LinkMode.LINKED_URL

    @pytest.mark.parametrize(
        "attachment",
        [
            {"title": "nothing"},
            {"url": "file:///etc/passwd"},
            {"url": "ftp://example.com/file"},
            {"path": "files/gone.pdf"},
        ],
    )
    def test_rejected(self, library: Library, export_file: Path, attachment: dict) -> None:
        results = _save(self._saver(library, export_file), [{"title": "t", "attachments": [attachment]}])

        assert library.store.children(results.records[0].id) == []
        assert results.progress[0][1] is False

    def test_failed_batch_removes_imported_files(self, library: Library, export_file: Path) -> None:
        results = _save(
            self._saver(library, export_file),
            [{"itemType": "attachment", "path": "files/paper.pdf"}, {"itemType": "spaceship"}],
        )

        assert results.saved[0][0] is False
        assert library.store.list_records() == []
        assert list(library.config.storage_dir.iterdir()) == []

    def test_ignore_mode(self, library: Library, export_file: Path) -> None:
        results = _save(
            library.saver(base_uri=export_file),
            [{"title": "t", "attachments": [{"path": "files/paper.pdf"}]}],
        )

        assert library.store.children(results.records[0].id) == []
        assert results.progress == []


class TestParsePath:
    def test_absolute(self, library: Library, export_file: Path) -> None:
        pdf = export_file.parent / "files" / "paper.pdf"
        assert library.saver().parse_path(str(pdf)) == pdf

    def test_relative_variants(self, library: Library, export_file: Path) -> None:
        saver = library.saver(base_uri=export_file)
        expected = (export_file.parent / "files" / "paper.pdf").resolve()

        assert saver.parse_path("files/paper.pdf").resolve() == expected
        assert saver.parse_path("files\\paper.pdf").resolve() == expected
        assert saver.parse_path(expected.as_uri()).resolve() == expected

    def test_unresolved(self, library: Library, export_file: Path) -> None:
        saver = library.saver(base_uri=export_file)

        with pytest.raises(PathNotResolvedError):
            saver.parse_path("files/missing.pdf")
        with pytest.raises(PathNotResolvedError):
            saver.parse_path("file:///nowhere/missing.pdf")

    def test_directories_are_not_files(self, library: Library, export_file: Path) -> None:
        with pytest.raises(PathNotResolvedError):
            library.saver(base_uri=export_file).parse_path("files")


class TestDownloadAttachments:
    """Attachment mode DOWNLOAD: URLs fetched after the batch is saved."""

    ITEM = {
        "itemType": "book",
        "title": "Notes",
        "date": "1843",
        "creators": [{"firstName": "Ada", "lastName": "Lovelace"}],
    }

    def test_download_named_after_parent(self, library: Library, fetcher: FakeFetcher) -> None:
        item = dict(self.ITEM, attachments=[{"url": "https://example.com/get?id=1", "mimeType": "application/pdf"}])
        results = _save(library.saver(attachment_mode=AttachmentMode.DOWNLOAD), [item])
        parent = results.records[0]

        (request,) = fetcher.requests
        assert request[1].name == "Lovelace - 1843 - Notes.pdf"
        assert [progress for _, progress, _ in results.progress] == [0]

        fetcher.complete(PDF_BYTES)

        (attachment,) = library.store.children(parent.id)
        assert attachment.attachment.link_mode == LinkMode.IMPORTED_URL
        assert [progress for _, progress, _ in results.progress] == [0, 100]

    def test_download_failure_reported(self, library: Library, fetcher: FakeFetcher) -> None:
        item = dict(self.ITEM, attachments=[{"url": "https://example.com/paper.pdf"}])
        results = _save(library.saver(attachment_mode=AttachmentMode.DOWNLOAD), [item])

        fetcher.fail()

        assert library.store.children(results.records[0].id) == []
        assert results.progress[-1][1] is False

    def test_snapshot_false_links(self, library: Library, fetcher: FakeFetcher) -> None:
        item = dict(self.ITEM, attachments=[{"url": "https://example.com/page", "snapshot": False, "title": "Page"}])
        results = _save(library.saver(attachment_mode=AttachmentMode.DOWNLOAD), [item])

        (attachment,) = library.store.children(results.records[0].id)
        assert attachment.attachment.link_mode == LinkMode.LINKED_URL
        assert attachment.get_field("title") == "Page"
        assert fetcher.requests == []

    def test_files_not_editable_links(self, library: Library, fetcher: FakeFetcher) -> None:
        item = dict(self.ITEM, attachments=[{"url": "https://example.com/paper.pdf"}])
        saver = library.saver(attachment_mode=AttachmentMode.DOWNLOAD, files_editable=False)
        results = _save(saver, [item])

        (attachment,) = library.store.children(results.records[0].id)
        assert attachment.attachment.link_mode == LinkMode.LINKED_URL
        assert attachment.attachment.mime_type == "application/pdf"

    def test_associated_files_disabled(self, tmp_path: Path, fetcher: FakeFetcher) -> None:
        config = AppConfig(data_dir=tmp_path / "data", download_associated_files=False)
        library = open_library(config, fetcher=fetcher)
        try:
            item = dict(self.ITEM, attachments=[{"url": "https://example.com/paper.pdf"}])
            results = _save(library.saver(attachment_mode=AttachmentMode.DOWNLOAD), [item])

            assert library.store.children(results.records[0].id) == []
            assert fetcher.requests == []
        finally:
            library.close()


class TestSaveCollection:
    def test_tree_filled_with_saved_items(self, library: Library) -> None:
        saver = library.saver()
        results = _save(saver, [{"itemID": "a", "title": "A"}, {"itemID": 2, "title": "B"}])
        first, second = results.records

        top = saver.save_collection(
            {
                "name": "Top",
                "children": [
                    {"type": "item", "id": "a"},
                    {"type": "collection", "name": "Sub", "children": [{"type": "item", "id": 2}]},
                    {"type": "item", "id": "missing"},
                ],
            }
        )

        assert top.name == "Top"
        assert top.parent_id is None
        assert library.store.collection_items(top.id) == [first.id]
        (sub,) = library.store.child_collections(top.id)
        assert sub.name == "Sub"
        assert library.store.collection_items(sub.id) == [second.id]
        assert saver.new_collections == [top.id, sub.id]
