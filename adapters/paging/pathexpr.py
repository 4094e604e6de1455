"""Default path resolution and filter templating.

Attribute external ids starting with ``$`` are JSONPath expressions evaluated
with jsonpath-ng. Anything else is a literal top-level key, which keeps keys
containing dots (``user.email`` in ServiceNow responses) addressable.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Any, Callable

from jsonpath_ng.exceptions import JsonPathLexerError, JsonPathParserError
from jsonpath_ng.ext import parse

from adapters.paging.errors import InvalidEntityConfig

PathResolver = Callable[[dict, str], list]

# {$.sys_user.sys_id} -> ("sys_user", "sys_id")
TEMPLATE_PATTERN = re.compile(r"\{\$\.([a-zA-Z_][a-zA-Z0-9_]*)\.([a-zA-Z_][a-zA-Z0-9_.]*)\}")


@lru_cache(maxsize=512)
def _compile(expression: str):
    try:
        return parse(expression)
    except (JsonPathLexerError, JsonPathParserError) as exc:
        raise InvalidEntityConfig(f"Invalid path expression {expression!r}: {exc}") from exc


def resolve_path(record: dict[str, Any], path: str) -> list[Any]:
    """Return every value ``path`` selects in ``record``, in document order."""
    if not path.startswith("$"):
        if path in record:
            return [record[path]]
        return []
    return [match.value for match in _compile(path).find(record)]


def template_references(template: str) -> list[tuple[str, str]]:
    """(entity, attribute) pairs referenced by ``{$.entity.attribute}`` placeholders."""
    return TEMPLATE_PATTERN.findall(template or "")


def render_template(
    template: str,
    record: dict[str, Any],
    resolver: PathResolver = resolve_path,
) -> str:
    """Substitute placeholders with the joined outer record's values.

    ``assigned_toIN{$.sys_user.sys_id}`` against ``{"sys_id": "u1"}`` gives
    ``assigned_toINu1``. Multiple values are comma separated.
    """
    if not template:
        return template

    def _replace(match: re.Match) -> str:
        attribute = match.group(2)
        values = resolver(record, attribute)
        if not values:
            values = resolver(record, f"$.{attribute}")
        flat = []
        for value in values:
            flat.extend(value if isinstance(value, list) else [value])
        return ",".join(str(v) for v in flat if v is not None)

    return TEMPLATE_PATTERN.sub(_replace, template)


def first_value(record: dict[str, Any], path: str, resolver: PathResolver = resolve_path) -> Any:
    values = resolver(record, path)
    return values[0] if values else None
