"""Tests for parser output validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from refstore.ingestion.schema import (
    GenericAttachment,
    GenericCollection,
    GenericCollectionRef,
    GenericItem,
    GenericNote,
    GenericTag,
    parse_collection,
    parse_records,
)


class TestParseRecords:
    def test_variant_chosen_by_item_type(self) -> None:
        records = parse_records(
            [
                {"itemType": "note", "note": "<p>hi</p>"},
                {"itemType": "attachment", "url": "https://example.com/a.pdf"},
                {"itemType": "book", "title": "Notes"},
                {"title": "No type"},
            ]
        )

        assert [type(record) for record in records] == [GenericNote, GenericAttachment, GenericItem, GenericItem]
        assert records[2].item_type == "book"
        assert records[3].item_type == "webpage"

    def test_unknown_keys_become_fields(self) -> None:
        """Anything outside the record schema is a bibliographic field."""
        (item,) = parse_records([{"itemType": "book", "title": "Notes", "ISBN": "123", "itemID": 7}])

        assert item.fields == {"title": "Notes", "ISBN": "123"}
        assert item.item_id == 7

    def test_explicit_fields_merged(self) -> None:
        (item,) = parse_records([{"fields": {"date": "1843"}, "title": "Notes"}])
        assert item.fields == {"date": "1843", "title": "Notes"}

    def test_aliases(self) -> None:
        (attachment,) = parse_records(
            [{"itemType": "attachment", "mimeType": "text/html", "seeAlso": ["x"], "path": "a.html"}]
        )

        assert attachment.mime_type == "text/html"
        assert attachment.see_also == ["x"]
        assert attachment.path == "a.html"
        assert attachment.fields == {}

    def test_creators_notes_and_tags(self) -> None:
        (item,) = parse_records(
            [
                {
                    "itemType": "book",
                    "creators": [{"firstName": "Ada", "lastName": "Lovelace", "creatorType": "editor"}],
                    "notes": ["plain", {"note": "tagged", "tags": ["t"]}],
                    "tags": ["a", {"tag": "b", "type": 1}, {"name": "c"}],
                    "attachments": [{"url": "https://example.com"}],
                }
            ]
        )

        assert item.creators[0].last_name == "Lovelace"
        assert item.creators[0].creator_type == "editor"
        assert item.notes[0] == "plain"
        assert isinstance(item.notes[1], GenericNote)
        assert item.tags[0] == "a"
        assert [tag.label for tag in item.tags[1:]] == ["b", "c"]
        assert item.attachments[0].url == "https://example.com"

    def test_invalid_input(self) -> None:
        with pytest.raises(ValidationError):
            parse_records([{"itemType": "note", "note": ["not", "a", "string"]}])


class TestParseCollection:
    def test_nested_children(self) -> None:
        collection = parse_collection(
            {
                "name": "Top",
                "children": [
                    {"type": "item", "id": "a"},
                    {"type": "collection", "name": "Sub", "children": [{"type": "item", "id": 2}]},
                ],
            }
        )

        assert collection.name == "Top"
        assert isinstance(collection.children[0], GenericCollectionRef)
        assert isinstance(collection.children[1], GenericCollection)
        assert collection.children[1].children[0].id == 2

    def test_tag_label(self) -> None:
        assert GenericTag(tag="x").label == "x"
        assert GenericTag().label is None
