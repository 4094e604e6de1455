"""Attribute extraction: raw upstream record -> normalized Object."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from adapters.paging.errors import AttributeCoercionError
from adapters.paging.models import (
    BOOL,
    DATETIME,
    INT64,
    STRING,
    Attribute,
    AttributeConfig,
    AttributeValue,
    ChildObjects,
    DateTimeValue,
    EntityConfig,
    ExtractionOptions,
    Object,
)
from adapters.paging.pathexpr import PathResolver, resolve_path

logger = logging.getLogger("paging.extractor")

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

# Fetches every child record of ``parent`` for a child entity with a literal selector.
ChildLoader = Callable[[EntityConfig, EntityConfig, dict], list]


def _flatten(values: list[Any]) -> list[Any]:
    flat: list[Any] = []
    for value in values:
        if isinstance(value, list):
            flat.extend(v for v in value if v is not None)
        elif value is not None:
            flat.append(value)
    return flat


def _to_string(attr: AttributeConfig, raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, bool):
        return "true" if raw else "false"
    if isinstance(raw, (int, float)):
        return str(raw)
    raise AttributeCoercionError(attr.id, raw, STRING, "not a scalar")


def _to_int64(attr: AttributeConfig, raw: Any) -> int:
    if isinstance(raw, bool):
        raise AttributeCoercionError(attr.id, raw, INT64, "booleans are not integers")
    if isinstance(raw, float):
        if not raw.is_integer():
            raise AttributeCoercionError(attr.id, raw, INT64, "fractional value")
        value = int(raw)
    elif isinstance(raw, int):
        value = raw
    elif isinstance(raw, str):
        try:
            value = int(raw.strip(), 10)
        except ValueError as exc:
            raise AttributeCoercionError(attr.id, raw, INT64, str(exc)) from exc
    else:
        raise AttributeCoercionError(attr.id, raw, INT64, "not a scalar")
    if not INT64_MIN <= value <= INT64_MAX:
        raise AttributeCoercionError(attr.id, raw, INT64, "out of range")
    return value


def _to_bool(attr: AttributeConfig, raw: Any, options: ExtractionOptions) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        token = raw.strip().lower()
        if token == "true" or token in options.true_tokens:
            return True
        if token == "false" or token in options.false_tokens:
            return False
    raise AttributeCoercionError(attr.id, raw, BOOL, "unrecognised boolean token")


# RFC 3339 allows any number of fractional digits; fromisoformat wants three or six
_FRACTION_RE = re.compile(r"([T ]\d{2}:\d{2}:\d{2})\.(\d+)")


def _normalise_fraction(text: str) -> str:
    return _FRACTION_RE.sub(lambda m: f"{m.group(1)}.{(m.group(2) + '00000')[:6]}", text, count=1)


def _to_datetime(attr: AttributeConfig, raw: Any, options: ExtractionOptions) -> DateTimeValue:
    parsed: Optional[datetime] = None
    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, str):
        text = raw.strip()
        try:
            parsed = datetime.fromisoformat(_normalise_fraction(text.replace("Z", "+00:00")))
        except ValueError:
            for fmt in options.datetime_formats:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
    if parsed is None:
        raise AttributeCoercionError(attr.id, raw, DATETIME, "unrecognised datetime format")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone(timedelta(seconds=options.local_timezone_offset)))
    return DateTimeValue(timestamp=parsed.astimezone(timezone.utc), timezone_offset=0)


def coerce(attr: AttributeConfig, raw: Any, options: ExtractionOptions) -> AttributeValue:
    """Convert one raw value according to the attribute's declared type."""
    if attr.type == INT64:
        return AttributeValue(int64_value=_to_int64(attr, raw))
    if attr.type == BOOL:
        return AttributeValue(bool_value=_to_bool(attr, raw, options))
    if attr.type == DATETIME:
        return AttributeValue(datetime_value=_to_datetime(attr, raw, options))
    return AttributeValue(string_value=_to_string(attr, raw))


def wrap_child_values(parent_id: Any, values: list[Any]) -> list[dict[str, Any]]:
    """Scalar child values become ``{"id": "<parentId>_<value>", "value": value}`` records."""
    records: list[dict[str, Any]] = []
    for value in values:
        if isinstance(value, dict):
            records.append(value)
        elif parent_id is None:
            records.append({"id": str(value), "value": value})
        else:
            records.append({"id": f"{parent_id}_{value}", "value": value})
    return records


class AttributeExtractor:
    """Resolves configured attributes against raw records and coerces them.

    Any coercion failure raises ``AttributeCoercionError`` for the whole
    object, child objects included; the assembler drops that record.
    """

    def __init__(
        self,
        options: Optional[ExtractionOptions] = None,
        resolver: PathResolver = resolve_path,
    ) -> None:
        self.options = options or ExtractionOptions()
        self.resolver = resolver

    def extract_attributes(self, entity: EntityConfig, record: dict[str, Any]) -> tuple[Attribute, ...]:
        attributes: list[Attribute] = []
        for attr in entity.attributes:
            values = _flatten(self.resolver(record, attr.external_id))
            if not values:
                continue
            if not attr.is_list and len(values) > 1:
                logger.debug(
                    "Keeping first of %d values for scalar attribute %s",
                    len(values), attr.id,
                    extra={"entity": entity.id},
                )
                values = values[:1]
            attributes.append(Attribute(
                id=attr.id,
                values=tuple(coerce(attr, v, self.options) for v in values),
            ))
        return tuple(attributes)

    def unique_id(self, entity: EntityConfig, record: dict[str, Any]) -> Any:
        attr = entity.unique_id_attribute
        if attr is None:
            return None
        values = _flatten(self.resolver(record, attr.external_id))
        return values[0] if values else None

    def build_object(
        self,
        entity: EntityConfig,
        record: dict[str, Any],
        load_children: Optional[ChildLoader] = None,
    ) -> Object:
        attributes = self.extract_attributes(entity, record)
        children: list[ChildObjects] = []
        for child in entity.child_entities:
            if child.is_path_selector:
                child_records = wrap_child_values(
                    self.unique_id(entity, record),
                    _flatten(self.resolver(record, child.external_id)),
                )
            elif load_children is not None:
                child_records = load_children(entity, child, record)
            else:
                child_records = []
            children.append(ChildObjects(
                entity_id=child.id,
                objects=tuple(self.build_object(child, r, load_children) for r in child_records),
            ))
        return Object(attributes=attributes, child_objects=tuple(children))
