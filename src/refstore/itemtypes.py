"""Item types, their valid fields and base-field mappings.

Some types rename a generic *base* field: a report's ``publisher`` is its
``institution``, a book section's ``publicationTitle`` is its ``bookTitle``.
Importers may supply either name; :func:`field_for_type` maps base names to
the type-specific one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Tuple

COMMON_FIELDS = frozenset(
    {
        "title",
        "abstractNote",
        "date",
        "url",
        "accessDate",
        "language",
        "shortTitle",
        "rights",
        "extra",
    }
)

BASE_FIELDS = frozenset({"publicationTitle", "publisher", "type", "number"})

CREATOR_TYPES = frozenset(
    {
        "author",
        "contributor",
        "editor",
        "bookAuthor",
        "seriesEditor",
        "translator",
        "inventor",
        "reviewedAuthor",
    }
)


@dataclass(frozen=True)
class ItemType:
    name: str
    fields: FrozenSet[str] = frozenset()
    base_mappings: Dict[str, str] = field(default_factory=dict)
    primary_creator_type: str = "author"

    def __post_init__(self) -> None:
        mapped = frozenset(self.base_mappings.values())
        object.__setattr__(self, "fields", self.fields | mapped)


def _type(name: str, *fields: str, base: Optional[Dict[str, str]] = None, creator: str = "author") -> ItemType:
    return ItemType(name, COMMON_FIELDS | frozenset(fields), base or {}, creator)


ITEM_TYPES: Dict[str, ItemType] = {
    item_type.name: item_type
    for item_type in (
        ItemType("note"),
        ItemType("attachment", frozenset({"title", "url", "accessDate"})),
        _type(
            "webpage",
            base={"publicationTitle": "websiteTitle", "type": "websiteType"},
        ),
        _type(
            "journalArticle",
            "publicationTitle",
            "volume",
            "issue",
            "pages",
            "series",
            "journalAbbreviation",
            "DOI",
            "ISSN",
        ),
        _type(
            "book",
            "publisher",
            "place",
            "edition",
            "volume",
            "numPages",
            "series",
            "ISBN",
        ),
        _type(
            "bookSection",
            "publisher",
            "place",
            "edition",
            "volume",
            "pages",
            "series",
            "ISBN",
            base={"publicationTitle": "bookTitle"},
        ),
        _type(
            "conferencePaper",
            "conferenceName",
            "publisher",
            "place",
            "volume",
            "pages",
            "DOI",
            "ISBN",
            base={"publicationTitle": "proceedingsTitle"},
        ),
        _type(
            "report",
            "place",
            "pages",
            "seriesTitle",
            base={"publisher": "institution", "type": "reportType", "number": "reportNumber"},
        ),
        _type(
            "thesis",
            "place",
            "numPages",
            base={"publisher": "university", "type": "thesisType"},
        ),
        _type(
            "patent",
            "place",
            "country",
            "pages",
            base={"number": "patentNumber"},
            creator="inventor",
        ),
        _type("document", "publisher"),
    )
}


def is_valid_item_type(name: str) -> bool:
    return name in ITEM_TYPES


def is_base_field(name: str) -> bool:
    return name in BASE_FIELDS


def is_valid_field(item_type: str, name: str) -> bool:
    info = ITEM_TYPES.get(item_type)
    return info is not None and name in info.fields


def field_for_type(item_type: str, name: str) -> Optional[str]:
    """Return the field ``name`` is stored as for ``item_type``, or None."""
    info = ITEM_TYPES.get(item_type)
    if info is None:
        return None
    if name in info.base_mappings:
        return info.base_mappings[name]
    return name if name in info.fields else None


def primary_creator_type(item_type: str) -> str:
    info = ITEM_TYPES.get(item_type)
    return info.primary_creator_type if info else "author"


def creator_summary_types(item_type: str) -> Tuple[str, ...]:
    """Creator types to try, in order, when summarizing a record's creators."""
    types = [primary_creator_type(item_type)]
    for fallback in ("editor", "contributor"):
        if fallback not in types:
            types.append(fallback)
    return tuple(types)
