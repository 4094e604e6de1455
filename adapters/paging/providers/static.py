"""Fixture-backed paginator for local runs and tests.

Fixture layout::

    {
      "batchSize": 2,
      "naturalKeys": {"sys_user_group": "sys_id"},
      "collections": {
        "sys_user_group": [...],
        "sys_user_group?sys_id=g1": [...],   # only for this filter
        "sys_user/g1": [...],                # members of parent key g1
        "123456789012:Group": [...]          # account-scoped
      }
    }

Collections missing from the fixture are empty. Tokens are integer offsets.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Optional

from adapters.paging.cursor import Token
from adapters.paging.errors import UpstreamError
from adapters.paging.paginator import UpstreamBatch, UpstreamPaginator, UpstreamRequest

logger = logging.getLogger("paging.static")


def fixture_key(request: UpstreamRequest) -> str:
    key = request.collection
    if request.parent is not None and request.parent.key is not None:
        key = f"{key}/{request.parent.key}"
    if request.account:
        key = f"{request.account}:{key}"
    return key


class StaticPaginator(UpstreamPaginator):
    PROVIDER_NAME = "static"

    def __init__(
        self,
        collections: dict[str, list[dict[str, Any]]],
        batch_size: int = 100,
        natural_keys: Optional[dict[str, str]] = None,
        failures: Optional[dict[str, UpstreamError]] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.collections = collections
        self.batch_size = batch_size
        self.natural_keys = natural_keys or {}
        self.failures = failures or {}
        # (fixture key, filter, token) per upstream call, in call order
        self.calls: list[tuple[str, Optional[str], Optional[Token]]] = []
        self._lock = threading.Lock()

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticPaginator":
        data = json.loads(Path(path).read_text())
        return cls(
            collections=data.get("collections", {}),
            batch_size=int(data.get("batchSize", 100)),
            natural_keys=data.get("naturalKeys"),
        )

    def natural_key(self, collection: str) -> str:
        return self.natural_keys.get(collection, "id")

    def _records(self, key: str, query: Optional[str]) -> list[dict[str, Any]]:
        if query and f"{key}?{query}" in self.collections:
            return self.collections[f"{key}?{query}"]
        return self.collections.get(key, [])

    def next(
        self,
        request: UpstreamRequest,
        token: Optional[Token],
        timeout: Optional[float] = None,
    ) -> UpstreamBatch:
        key = fixture_key(request)
        with self._lock:
            self.calls.append((key, request.filter, token))
        if key in self.failures:
            raise self.failures[key]

        records = self._records(key, request.filter)
        offset = int(token or 0)
        window = [dict(r) for r in records[offset:offset + self.batch_size]]
        logger.debug("Serving %d records from %s at offset %d", len(window), key, offset)
        if offset + self.batch_size < len(records):
            return UpstreamBatch.more(window, offset + self.batch_size)
        return UpstreamBatch.last(window)
