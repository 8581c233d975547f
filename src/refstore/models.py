"""Core refstore data models.

Records reference each other by integer id only (parents, related records,
collections); nothing holds another record object.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Dict, List, Optional, Set


class LinkMode(IntEnum):
    """How an attachment's bytes relate to managed storage."""

    IMPORTED_FILE = 0
    IMPORTED_URL = 1
    LINKED_FILE = 2
    LINKED_URL = 3

    @property
    def is_imported(self) -> bool:
        return self in (LinkMode.IMPORTED_FILE, LinkMode.IMPORTED_URL)


class ImportState(str, Enum):
    """Lifecycle of a single asynchronous attachment import."""

    CREATED = "created"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(slots=True)
class AttachmentInfo:
    """Attachment-specific columns of a record."""

    link_mode: LinkMode
    path: Optional[str] = None
    mime_type: Optional[str] = None
    charset: Optional[str] = None


@dataclass(slots=True)
class CreatorRef:
    """Position of a creator on a record."""

    creator_id: int
    creator_type: str = "author"


@dataclass(slots=True)
class Creator:
    first_name: str = ""
    last_name: str = ""
    field_mode: int = 0
    library_id: Optional[int] = None
    id: Optional[int] = None


@dataclass(slots=True)
class Tag:
    id: int
    name: str
    type: int = 0


@dataclass(slots=True)
class Collection:
    id: int
    key: str
    name: str
    parent_id: Optional[int] = None
    library_id: Optional[int] = None


@dataclass(slots=True)
class Record:
    """A bibliographic entity, note or attachment."""

    key: str
    item_type: str
    id: Optional[int] = None
    library_id: Optional[int] = None
    parent_id: Optional[int] = None
    fields: Dict[str, str] = field(default_factory=dict)
    note: Optional[str] = None
    attachment: Optional[AttachmentInfo] = None
    creators: List[CreatorRef] = field(default_factory=list)
    related: Set[int] = field(default_factory=set)

    @property
    def is_attachment(self) -> bool:
        return self.item_type == "attachment"

    @property
    def is_note(self) -> bool:
        return self.item_type == "note"

    def get_field(self, name: str, default: str = "") -> str:
        return self.fields.get(name) or default

    def set_field(self, name: str, value: Optional[str]) -> None:
        if value:
            self.fields[name] = str(value)
        else:
            self.fields.pop(name, None)
