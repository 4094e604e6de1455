"""Cursor codec: traversal state <-> opaque transport string.

The wire form is standard base64 of a compact JSON object::

    {"v": 1, "accountIndex": 1, "collectionCursor": "...", "cursor": "..."}
    {"implicitFilterCursor": {"entityFilterIndex": 0, "memberFilterIndex": 1,
                              "cursor": {"cursor": "..."}}}
    {"relatedFilterCursor": {"entityIndex": 0, "entityCursor": "...",
                             "relatedEntityCursor": {...}}}

Fields holding their start value are omitted, and absent fields decode to the
start value. The codec is purely structural: it never interprets what a frame
means for a particular entity shape.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Optional, Union

from adapters.paging.errors import MalformedCursor

SCHEMA_VERSION = 1

Token = Union[str, int]


@dataclass(frozen=True)
class CollectionFrame:
    """Position in a collection, optionally nested under one parent collection.

    ``cursor``/``offset`` locate the innermost record: the upstream token of
    the batch it belongs to and how many records of that batch were already
    consumed. The ``collection_*`` fields do the same for the parent record
    currently being expanded.
    """

    cursor: Optional[Token] = None
    offset: int = 0
    collection_id: Optional[str] = None
    collection_cursor: Optional[Token] = None
    collection_offset: int = 0


@dataclass(frozen=True)
class ImplicitFilterFrame:
    entity_filter_index: int = 0
    member_filter_index: int = 0
    cursor: Optional[CollectionFrame] = None


@dataclass(frozen=True)
class RelatedFilterFrame:
    entity_index: int = 0
    entity_cursor: Optional[Token] = None
    entity_offset: int = 0
    related_entity_cursor: Optional[CollectionFrame] = None


Frame = Union[CollectionFrame, ImplicitFilterFrame, RelatedFilterFrame]


@dataclass(frozen=True)
class CursorState:
    frame: Optional[Frame] = None
    account_index: int = 0
    version: int = SCHEMA_VERSION

    def __post_init__(self) -> None:
        # A collection frame at its start position has no wire representation.
        if self.frame == CollectionFrame():
            object.__setattr__(self, "frame", None)


START = CursorState()


# ----------------------------------------------------------------------
# Encoding
# ----------------------------------------------------------------------

def _collection_to_dict(frame: CollectionFrame) -> dict[str, Any]:
    data: dict[str, Any] = {}
    if frame.cursor is not None:
        data["cursor"] = frame.cursor
    if frame.offset:
        data["offset"] = frame.offset
    if frame.collection_id is not None:
        data["collectionId"] = frame.collection_id
    if frame.collection_cursor is not None:
        data["collectionCursor"] = frame.collection_cursor
    if frame.collection_offset:
        data["collectionOffset"] = frame.collection_offset
    return data


def _state_to_dict(state: CursorState) -> dict[str, Any]:
    data: dict[str, Any] = {"v": state.version}
    if state.account_index:
        data["accountIndex"] = state.account_index

    frame = state.frame
    if isinstance(frame, CollectionFrame):
        data.update(_collection_to_dict(frame))
    elif isinstance(frame, ImplicitFilterFrame):
        implicit: dict[str, Any] = {
            "entityFilterIndex": frame.entity_filter_index,
            "memberFilterIndex": frame.member_filter_index,
        }
        if frame.cursor is not None:
            implicit["cursor"] = _collection_to_dict(frame.cursor)
        data["implicitFilterCursor"] = implicit
    elif isinstance(frame, RelatedFilterFrame):
        related: dict[str, Any] = {"entityIndex": frame.entity_index}
        if frame.entity_cursor is not None:
            related["entityCursor"] = frame.entity_cursor
        if frame.entity_offset:
            related["entityOffset"] = frame.entity_offset
        if frame.related_entity_cursor is not None:
            related["relatedEntityCursor"] = _collection_to_dict(frame.related_entity_cursor)
        data["relatedFilterCursor"] = related
    return data


def encode(state: Optional[CursorState]) -> str:
    """Serialize a traversal state. ``None`` means traversal complete."""
    if state is None:
        return ""
    raw = json.dumps(_state_to_dict(state), separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


# ----------------------------------------------------------------------
# Decoding
# ----------------------------------------------------------------------

def _index(data: dict[str, Any], key: str) -> int:
    value = data.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MalformedCursor(f"Cursor field {key!r} must be a non-negative integer, got {value!r}")
    return value


def _token(data: dict[str, Any], key: str) -> Optional[Token]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise MalformedCursor(f"Cursor field {key!r} must be a string or integer, got {value!r}")
    return value


def _object(data: dict[str, Any], key: str) -> Optional[dict[str, Any]]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise MalformedCursor(f"Cursor field {key!r} must be an object")
    return value


def _collection_from_dict(data: dict[str, Any]) -> CollectionFrame:
    collection_id = data.get("collectionId")
    if collection_id is not None and not isinstance(collection_id, str):
        raise MalformedCursor(f"Cursor field 'collectionId' must be a string, got {collection_id!r}")
    return CollectionFrame(
        cursor=_token(data, "cursor"),
        offset=_index(data, "offset"),
        collection_id=collection_id,
        collection_cursor=_token(data, "collectionCursor"),
        collection_offset=_index(data, "collectionOffset"),
    )


_COLLECTION_KEYS = ("cursor", "offset", "collectionId", "collectionCursor", "collectionOffset")


def _state_from_dict(data: dict[str, Any]) -> CursorState:
    version = data.get("v", SCHEMA_VERSION)
    if version != SCHEMA_VERSION:
        raise MalformedCursor(f"Unsupported cursor version {version!r}")

    implicit = _object(data, "implicitFilterCursor")
    related = _object(data, "relatedFilterCursor")
    has_collection = any(data.get(k) is not None for k in _COLLECTION_KEYS)
    if sum(x for x in (implicit is not None, related is not None, has_collection)) > 1:
        raise MalformedCursor("Cursor mixes more than one frame kind")

    frame: Optional[Frame] = None
    if implicit is not None:
        inner = _object(implicit, "cursor")
        frame = ImplicitFilterFrame(
            entity_filter_index=_index(implicit, "entityFilterIndex"),
            member_filter_index=_index(implicit, "memberFilterIndex"),
            cursor=_collection_from_dict(inner) if inner is not None else None,
        )
    elif related is not None:
        inner = _object(related, "relatedEntityCursor")
        frame = RelatedFilterFrame(
            entity_index=_index(related, "entityIndex"),
            entity_cursor=_token(related, "entityCursor"),
            entity_offset=_index(related, "entityOffset"),
            related_entity_cursor=_collection_from_dict(inner) if inner is not None else None,
        )
    elif has_collection:
        frame = _collection_from_dict(data)

    return CursorState(frame=frame, account_index=_index(data, "accountIndex"), version=version)


def decode(cursor: str) -> CursorState:
    """Parse a transport cursor. ``""`` is the start of traversal."""
    if not cursor:
        return START
    try:
        raw = base64.b64decode(cursor.encode("ascii"), validate=True)
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise MalformedCursor(f"Failed to decode cursor: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedCursor("Cursor must encode a JSON object")
    return _state_from_dict(data)
