"""Request, configuration and output types shared across the engine.

All configuration types are frozen dataclasses: an EntityConfig is owned by
the caller and read-only for the duration of a page request. ``from_dict``
constructors accept the camelCase wire shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from adapters.paging.errors import InvalidEntityConfig

STRING = "string"
INT64 = "int64"
BOOL = "bool"
DATETIME = "datetime"

ATTRIBUTE_TYPES = (STRING, INT64, BOOL, DATETIME)


@dataclass(frozen=True)
class AttributeConfig:
    id: str
    external_id: str
    type: str = STRING
    is_list: bool = False
    unique_id: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AttributeConfig":
        external_id = data.get("externalId") or data.get("id") or ""
        attr_type = str(data.get("type", STRING)).lower()
        if attr_type not in ATTRIBUTE_TYPES:
            raise InvalidEntityConfig(
                f"Unsupported attribute type {attr_type!r} for {external_id!r}",
                attribute=external_id,
            )
        return cls(
            id=data.get("id") or external_id,
            external_id=external_id,
            type=attr_type,
            is_list=bool(data.get("list", False)),
            unique_id=bool(data.get("uniqueId", False)),
        )


@dataclass(frozen=True)
class CollectionJoin:
    """Member-of join: iterate a parent collection, then each parent's members.

    Every member record is augmented with ``id_field`` set to
    ``"<memberKey>-<parentKey>"`` and ``parent_key_field`` set to the
    parent's key, e.g. ``"arn:aws:iam::aws:policy/ReadOnly-admins"``.
    """

    external_id: str
    parent_key: str
    member_key: str
    parent_key_field: str = ""
    id_field: str = "id"
    filter: Optional[str] = None

    @property
    def parent_key_name(self) -> str:
        if self.parent_key_field:
            return self.parent_key_field
        return self.parent_key.lstrip("$").lstrip(".").split(".")[-1]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CollectionJoin":
        try:
            return cls(
                external_id=data["externalId"],
                parent_key=data["parentKey"],
                member_key=data["memberKey"],
                parent_key_field=data.get("parentKeyField", ""),
                id_field=data.get("idField", "id"),
                filter=data.get("filter"),
            )
        except KeyError as exc:
            raise InvalidEntityConfig(f"Collection join is missing {exc.args[0]!r}") from exc


@dataclass(frozen=True)
class EntityConfig:
    id: str
    external_id: str
    attributes: tuple[AttributeConfig, ...] = ()
    child_entities: tuple["EntityConfig", ...] = ()
    collection: Optional[CollectionJoin] = None
    filter: Optional[str] = None

    @property
    def is_path_selector(self) -> bool:
        return self.external_id.startswith("$")

    @property
    def unique_id_attribute(self) -> Optional[AttributeConfig]:
        for attr in self.attributes:
            if attr.unique_id:
                return attr
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntityConfig":
        external_id = data.get("externalId") or data.get("id")
        if not external_id:
            raise InvalidEntityConfig("Entity config requires an externalId")
        collection = data.get("collection")
        return cls(
            id=data.get("id") or external_id,
            external_id=external_id,
            attributes=tuple(AttributeConfig.from_dict(a) for a in data.get("attributes") or []),
            child_entities=tuple(cls.from_dict(c) for c in data.get("childEntities") or []),
            collection=CollectionJoin.from_dict(collection) if collection else None,
            filter=data.get("filter"),
        )


@dataclass(frozen=True)
class RelatedEntityFilter:
    related_entity: str
    related_entity_filter: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RelatedEntityFilter":
        return cls(
            related_entity=data["relatedEntity"],
            related_entity_filter=data.get("relatedEntityFilter", ""),
        )


@dataclass(frozen=True)
class MemberFilter:
    member_entity: str
    member_entity_filter: str = ""
    related_entities: tuple[RelatedEntityFilter, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemberFilter":
        return cls(
            member_entity=data["memberEntity"],
            member_entity_filter=data.get("memberEntityFilter", ""),
            related_entities=tuple(
                RelatedEntityFilter.from_dict(r) for r in data.get("relatedEntities") or []
            ),
        )


@dataclass(frozen=True)
class ScopeFilter:
    """One ``getObjectsByScope`` definition: an outer entity and its joins."""

    scope_entity: str
    scope_entity_filter: str = ""
    members: tuple[MemberFilter, ...] = ()
    related_entities: tuple[RelatedEntityFilter, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScopeFilter":
        try:
            return cls(
                scope_entity=data["scopeEntity"],
                scope_entity_filter=data.get("scopeEntityFilter", ""),
                members=tuple(MemberFilter.from_dict(m) for m in data.get("members") or []),
                related_entities=tuple(
                    RelatedEntityFilter.from_dict(r) for r in data.get("relatedEntities") or []
                ),
            )
        except KeyError as exc:
            raise InvalidEntityConfig(f"Advanced filter is missing {exc.args[0]!r}") from exc


def advanced_filters_from_dict(data: Any) -> tuple[ScopeFilter, ...]:
    """Accept either a plain list or the ``{"getObjectsByScope": {...}}`` shape."""
    if not data:
        return ()
    if isinstance(data, list):
        return tuple(ScopeFilter.from_dict(f) for f in data)
    scoped = data.get("getObjectsByScope", data)
    filters: list[ScopeFilter] = []
    for entity in scoped:
        filters.extend(ScopeFilter.from_dict(f) for f in scoped[entity])
    return tuple(filters)


@dataclass(frozen=True)
class ExtractionOptions:
    true_tokens: tuple[str, ...] = ()
    false_tokens: tuple[str, ...] = ()
    datetime_formats: tuple[str, ...] = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d")
    local_timezone_offset: int = 0  # seconds east of UTC for naive datetimes

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ExtractionOptions":
        if not data:
            return cls()
        tokens = data.get("boolTokens") or {}
        formats = data.get("datetimeFormats")
        return cls(
            true_tokens=tuple(str(t).lower() for t in tokens.get("true", [])),
            false_tokens=tuple(str(t).lower() for t in tokens.get("false", [])),
            datetime_formats=tuple(formats) if formats else cls.datetime_formats,
            local_timezone_offset=int(data.get("localTimeZoneOffset", 0)),
        )


@dataclass(frozen=True)
class DateTimeValue:
    timestamp: datetime
    timezone_offset: int = 0

    def to_wire(self) -> dict[str, Any]:
        ts = self.timestamp.astimezone(timezone.utc)
        return {
            "timestamp": ts.isoformat().replace("+00:00", "Z"),
            "timezone_offset": self.timezone_offset,
        }


@dataclass(frozen=True)
class AttributeValue:
    """Exactly one of the fields is set."""

    string_value: Optional[str] = None
    int64_value: Optional[int] = None
    bool_value: Optional[bool] = None
    datetime_value: Optional[DateTimeValue] = None

    @property
    def value(self) -> Any:
        for candidate in (self.string_value, self.int64_value, self.bool_value):
            if candidate is not None:
                return candidate
        if self.datetime_value is not None:
            return self.datetime_value.timestamp
        return None

    def to_wire(self) -> dict[str, Any]:
        if self.string_value is not None:
            return {"string_value": self.string_value}
        if self.int64_value is not None:
            return {"int64_value": self.int64_value}
        if self.bool_value is not None:
            return {"bool_value": self.bool_value}
        if self.datetime_value is not None:
            return {"datetime_value": self.datetime_value.to_wire()}
        return {}


@dataclass(frozen=True)
class Attribute:
    id: str
    values: tuple[AttributeValue, ...]

    def to_wire(self) -> dict[str, Any]:
        return {"id": self.id, "values": [v.to_wire() for v in self.values]}


@dataclass(frozen=True)
class ChildObjects:
    entity_id: str
    objects: tuple["Object", ...]

    def to_wire(self) -> dict[str, Any]:
        return {"entityId": self.entity_id, "objects": [o.to_wire() for o in self.objects]}


@dataclass(frozen=True)
class Object:
    attributes: tuple[Attribute, ...] = ()
    child_objects: tuple[ChildObjects, ...] = ()

    def get(self, attribute_id: str) -> list[Any]:
        """Plain values of an attribute, [] when absent."""
        for attr in self.attributes:
            if attr.id == attribute_id:
                return [v.value for v in attr.values]
        return []

    def children(self, entity_id: str) -> tuple["Object", ...]:
        for child in self.child_objects:
            if child.entity_id == entity_id:
                return child.objects
        return ()

    def to_wire(self) -> dict[str, Any]:
        return {
            "attributes": [a.to_wire() for a in self.attributes],
            "childObjects": [c.to_wire() for c in self.child_objects],
        }


@dataclass(frozen=True)
class Page:
    objects: tuple[Object, ...]
    next_cursor: str = ""

    @property
    def is_last(self) -> bool:
        return self.next_cursor == ""


@dataclass(frozen=True)
class PageRequest:
    entity: EntityConfig
    page_size: int
    cursor: str = ""
    accounts: tuple[str, ...] = ()
    advanced_filters: tuple[ScopeFilter, ...] = ()
    options: ExtractionOptions = field(default_factory=ExtractionOptions)
    timeout_seconds: Optional[float] = None
    # Absolute time.monotonic() value set by the hosting runtime; never read from the wire
    deadline: Optional[float] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PageRequest":
        entity = data.get("entity") or data.get("entityConfig")
        if not entity:
            raise InvalidEntityConfig("Request is missing the entity config")
        try:
            page_size = int(data.get("pageSize", 0))
        except (TypeError, ValueError) as exc:
            raise InvalidEntityConfig(f"Invalid page size {data.get('pageSize')!r}") from exc
        timeout = data.get("requestTimeoutSeconds")
        return cls(
            entity=EntityConfig.from_dict(entity),
            page_size=page_size,
            cursor=data.get("cursor") or "",
            accounts=tuple(data.get("accounts") or data.get("accountList") or ()),
            advanced_filters=advanced_filters_from_dict(data.get("advancedFilters")),
            options=ExtractionOptions.from_dict(data.get("options")),
            timeout_seconds=float(timeout) if timeout is not None else None,
        )
