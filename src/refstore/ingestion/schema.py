"""Generic record graph produced by import parsers.

Parsers emit loosely shaped dictionaries. They are validated into one of three
variants chosen by ``itemType``: ``note``, ``attachment`` or any bibliographic
type (``webpage`` when absent). Keys that are not part of a variant's schema
are bibliographic fields and are collected into its ``fields`` map.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter, model_validator

from refstore.collaborators import CapturedDocument

SourceId = Union[int, str]


class GenericCreator(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: str = Field("", alias="firstName")
    last_name: str = Field("", alias="lastName")
    creator_type: Optional[str] = Field(None, alias="creatorType")
    field_mode: int = Field(0, alias="fieldMode")


class GenericTag(BaseModel):
    tag: Optional[str] = None
    name: Optional[str] = None
    type: int = 0

    @property
    def label(self) -> Optional[str]:
        return self.tag or self.name


class _GenericRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    item_id: Optional[SourceId] = Field(None, alias="itemID")
    tags: List[Union[str, GenericTag]] = Field(default_factory=list)
    see_also: List[SourceId] = Field(default_factory=list, alias="seeAlso")
    fields: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = set()
        for name, info in cls.model_fields.items():
            known.add(name)
            if info.alias:
                known.add(info.alias)

        data = dict(data)
        fields = dict(data.pop("fields", None) or {})
        for key in list(data):
            if key not in known:
                fields[key] = data.pop(key)
        data["fields"] = fields
        return data


class GenericNote(_GenericRecord):
    item_type: Literal["note"] = Field("note", alias="itemType")
    note: str = ""


class GenericAttachment(_GenericRecord):
    item_type: Literal["attachment"] = Field("attachment", alias="itemType")
    title: Optional[str] = None
    url: Optional[str] = None
    path: Optional[str] = None
    mime_type: Optional[str] = Field(None, alias="mimeType")
    charset: Optional[str] = None
    snapshot: Optional[bool] = None
    note: Optional[str] = None
    document: Optional[CapturedDocument] = None


class GenericItem(_GenericRecord):
    item_type: str = Field("webpage", alias="itemType")
    creators: List[GenericCreator] = Field(default_factory=list)
    notes: List[Union[str, GenericNote]] = Field(default_factory=list)
    attachments: List[GenericAttachment] = Field(default_factory=list)


def _record_kind(value: Any) -> str:
    if isinstance(value, dict):
        item_type = value.get("itemType", value.get("item_type"))
    else:
        item_type = getattr(value, "item_type", None)
    return item_type if item_type in ("note", "attachment") else "item"


AnyGenericRecord = Annotated[
    Union[
        Annotated[GenericNote, Tag("note")],
        Annotated[GenericAttachment, Tag("attachment")],
        Annotated[GenericItem, Tag("item")],
    ],
    Discriminator(_record_kind),
]


class GenericCollectionRef(BaseModel):
    type: Literal["item"] = "item"
    id: SourceId


def _child_kind(value: Any) -> str:
    if isinstance(value, dict):
        kind = value.get("type")
    else:
        kind = getattr(value, "type", None)
    return "collection" if kind == "collection" else "item"


class GenericCollection(BaseModel):
    type: Literal["collection"] = "collection"
    name: str
    children: List[
        Annotated[
            Union[
                Annotated["GenericCollection", Tag("collection")],
                Annotated[GenericCollectionRef, Tag("item")],
            ],
            Discriminator(_child_kind),
        ]
    ] = Field(default_factory=list)


GenericCollection.model_rebuild()

_RECORDS = TypeAdapter(List[AnyGenericRecord])


def parse_records(data: Any) -> List[Union[GenericNote, GenericAttachment, GenericItem]]:
    """Validate a list of parser output dictionaries."""
    return _RECORDS.validate_python(data)


def parse_collection(data: Any) -> GenericCollection:
    return GenericCollection.model_validate(data)
