"""Tests for SQLiteRecordStore."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import RecordingObserver
from refstore.errors import RecordNotFoundError
from refstore.models import AttachmentInfo, Creator, CreatorRef, LinkMode
from refstore.notify.notifier import Notifier
from refstore.storage.records import SQLiteRecordStore


@pytest.fixture
def notifier() -> Notifier:
    return Notifier()


@pytest.fixture
def recorder(notifier: Notifier) -> RecordingObserver:
    recorder = RecordingObserver()
    notifier.register_observer(recorder)
    return recorder


@pytest.fixture
def store(tmp_path: Path, notifier: Notifier) -> SQLiteRecordStore:
    store = SQLiteRecordStore(tmp_path / "records.sqlite", notifier=notifier)
    yield store
    store.close()


def _book(store: SQLiteRecordStore, title: str = "A Book") -> int:
    record = store.new_record("book")
    record.set_field("title", title)
    return store.save(record)


class TestSchema:
    def test_init_creates_database(self, tmp_path: Path) -> None:
        db_path = tmp_path / "new.sqlite"
        store = SQLiteRecordStore(db_path)
        assert db_path.exists()
        store.close()

    def test_tables_created(self, store: SQLiteRecordStore) -> None:
        names = {
            row["name"]
            for row in store.connection.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        assert {"items", "item_data", "item_attachments", "deleted_keys", "collections", "tags"} <= names

    def test_pragmas(self, store: SQLiteRecordStore) -> None:
        assert store.connection.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        assert store.connection.execute("PRAGMA foreign_keys").fetchone()[0] == 1

    def test_notifier_gets_existence_check(self, store: SQLiteRecordStore, notifier: Notifier) -> None:
        assert notifier.record_exists == store.record_exists


class TestRecords:
    """Saving, loading and erasing records."""

    def test_save_and_get(self, store: SQLiteRecordStore) -> None:
        record = store.new_record("attachment")
        record.set_field("title", "Scan")
        record.note = "read later"
        record.attachment = AttachmentInfo(
            LinkMode.IMPORTED_FILE, path="storage:scan.pdf", mime_type="application/pdf"
        )
        record_id = store.save(record)

        loaded = store.get(record_id)
        assert loaded.key == record.key
        assert loaded.get_field("title") == "Scan"
        assert loaded.note == "read later"
        assert loaded.attachment == record.attachment
        assert store.get_by_key(record.key) == loaded
        assert store.get_by_key(record.key, library_id=3) is None

    def test_update_replaces_fields(self, store: SQLiteRecordStore) -> None:
        record = store.get(_book(store))
        record.set_field("title", "Second Edition")
        record.set_field("date", "2001")
        store.save(record)

        assert store.get(record.id).fields == {"title": "Second Edition", "date": "2001"}

    def test_update_missing_record_raises(self, store: SQLiteRecordStore) -> None:
        record = store.new_record("book")
        record.id = 999
        with pytest.raises(RecordNotFoundError):
            store.save(record)

    def test_add_and_parent_modify_events(
        self, store: SQLiteRecordStore, recorder: RecordingObserver
    ) -> None:
        parent_id = _book(store)
        recorder.events.clear()

        child = store.new_record("note")
        child.parent_id = parent_id
        child.note = "n"
        child_id = store.save(child)

        assert recorder.of("add", "item") == [child_id]
        assert recorder.of("modify", "item") == [parent_id]

    def test_erase_removes_children_and_reserves_key(
        self, store: SQLiteRecordStore, recorder: RecordingObserver
    ) -> None:
        parent_id = _book(store)
        child = store.new_record("note")
        child.parent_id = parent_id
        child_id = store.save(child)
        parent_key = store.get(parent_id).key
        recorder.events.clear()

        store.erase(parent_id)

        assert not store.exists(parent_id)
        assert not store.exists(child_id)
        assert sorted(recorder.of("delete", "item")) == sorted([parent_id, child_id])
        # Parent was deleted too, so its queued modify is dropped
        assert recorder.of("modify", "item") == []
        delete_extra = [extra for event, _, _, extra in recorder.events if event == "delete"][0]
        assert delete_extra[parent_id] == {"key": parent_key, "libraryID": None}

        with patch("refstore.storage.records.generate_key", side_effect=[parent_key, "AB12CD34"]):
            assert store.new_record("book").key == "AB12CD34"

    def test_erase_missing_raises(self, store: SQLiteRecordStore) -> None:
        with pytest.raises(RecordNotFoundError):
            store.erase(42)

    def test_children_and_listing(self, store: SQLiteRecordStore) -> None:
        parent_id = _book(store)
        note = store.new_record("note")
        note.parent_id = parent_id
        store.save(note)
        attachment = store.new_record("attachment")
        attachment.parent_id = parent_id
        attachment.attachment = AttachmentInfo(LinkMode.LINKED_URL)
        store.save(attachment)

        assert [r.item_type for r in store.children(parent_id)] == ["note", "attachment"]
        assert [r.id for r in store.children(parent_id, "attachment")] == [attachment.id]
        assert [r.id for r in store.list_attachments()] == [attachment.id]
        assert len(store.list_records()) == 3

    def test_related_ids(self, store: SQLiteRecordStore) -> None:
        first = _book(store, "One")
        record = store.new_record("book")
        record.related = {first}
        second = store.save(record)

        assert store.get(second).related == {first}
        store.erase(first)
        assert store.get(second).related == set()


class TestTransactions:
    """Atomicity and notification batching."""

    def test_rollback_discards_rows_and_events(
        self, store: SQLiteRecordStore, recorder: RecordingObserver
    ) -> None:
        with pytest.raises(RuntimeError):
            with store.transaction():
                _book(store)
                raise RuntimeError("abort")

        assert store.list_records() == []
        assert recorder.events == []
        assert not store.in_transaction

    def test_events_flush_after_commit(
        self, store: SQLiteRecordStore, recorder: RecordingObserver
    ) -> None:
        with store.transaction():
            first = _book(store, "One")
            second = _book(store, "Two")
            assert recorder.events == []
        assert recorder.events == [("add", "item", [first, second], {})]

    def test_nested_failure_rolls_back_savepoint_only(
        self, store: SQLiteRecordStore, recorder: RecordingObserver
    ) -> None:
        with store.transaction():
            kept = _book(store, "Kept")
            with pytest.raises(ValueError):
                with store.transaction():
                    _book(store, "Dropped")
                    raise ValueError("inner")
        assert [r.id for r in store.list_records()] == [kept]
        assert recorder.of("add", "item") == [kept]

    def test_rollback_inside_caller_queue_keeps_its_events(
        self, store: SQLiteRecordStore, notifier: Notifier, recorder: RecordingObserver
    ) -> None:
        with notifier.queued():
            kept = _book(store, "Kept")
            with pytest.raises(ValueError):
                with store.transaction():
                    _book(store, "Dropped")
                    raise ValueError("abort")
            assert not store.in_transaction
            assert recorder.events == []
        assert [r.id for r in store.list_records()] == [kept]
        assert recorder.of("add", "item") == [kept]


class TestCreators:
    def test_first_creator_summary(self, store: SQLiteRecordStore) -> None:
        ids = [
            store.add_creator(Creator(first_name=first, last_name=last))
            for first, last in [("Ada", "Lovelace"), ("Charles", "Babbage"), ("Alan", "Turing")]
        ]
        record = store.new_record("book")
        record.creators = [CreatorRef(ids[0])]
        assert store.first_creator(record) == "Lovelace"

        record.creators = [CreatorRef(ids[0]), CreatorRef(ids[1])]
        assert store.first_creator(record) == "Lovelace and Babbage"

        record.creators = [CreatorRef(creator_id) for creator_id in ids]
        assert store.first_creator(record) == "Lovelace et al."

    def test_editors_used_without_authors(self, store: SQLiteRecordStore) -> None:
        editor = store.add_creator(Creator(last_name="Knuth"))
        record = store.new_record("book")
        record.creators = [CreatorRef(editor, "editor")]
        assert store.first_creator(record) == "Knuth"

        record.creators = [CreatorRef(editor, "translator")]
        assert store.first_creator(record) == ""

    def test_find_creators(self, store: SQLiteRecordStore) -> None:
        creator_id = store.add_creator(Creator(first_name="Ada", last_name="Lovelace"))
        assert store.find_creators("Ada", "Lovelace", 0) == [creator_id]
        assert store.find_creators("Ada", "Lovelace", 1) == []
        assert store.get_creator(creator_id).last_name == "Lovelace"


class TestTagsAndCollections:
    def test_add_tags(self, store: SQLiteRecordStore, recorder: RecordingObserver) -> None:
        item_id = _book(store)
        added = store.add_tags(item_id, ["history", " ", "math", "history"])
        assert [tag.name for tag in added] == ["history", "math"]
        assert store.add_tags(item_id, ["math"]) == []
        assert [tag.name for tag in store.get_tags(item_id)] == ["history", "math"]
        assert len(recorder.of("add", "item-tag")) == 2

    def test_same_name_different_type(self, store: SQLiteRecordStore) -> None:
        item_id = _book(store)
        store.add_tags(item_id, ["history"], tag_type=0)
        store.add_tags(item_id, ["history"], tag_type=1)
        assert sorted(tag.type for tag in store.get_tags(item_id)) == [0, 1]

    def test_collections(self, store: SQLiteRecordStore, recorder: RecordingObserver) -> None:
        parent = store.add_collection("Reading")
        child = store.add_collection("Later", parent_id=parent.id)
        item_id = _book(store)
        store.add_to_collection(child.id, item_id)
        store.add_to_collection(child.id, item_id)

        assert store.collection_items(child.id) == [item_id]
        assert [c.id for c in store.child_collections(parent.id)] == [child.id]
        assert store.get_collection(child.id).name == "Later"
        assert recorder.of("add", "collection-item") == [f"{child.id}-{item_id}"]

    def test_add_to_missing_collection(self, store: SQLiteRecordStore) -> None:
        with pytest.raises(RecordNotFoundError):
            store.add_to_collection(77, _book(store))

    def test_stats(self, store: SQLiteRecordStore) -> None:
        item_id = _book(store)
        store.add_tags(item_id, ["x"])
        store.add_collection("C")
        stats = store.get_stats()
        assert stats["record_count"] == 1
        assert stats["attachment_count"] == 0
        assert stats["tag_count"] == 1
        assert stats["collection_count"] == 1
