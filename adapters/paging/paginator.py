"""Upstream paginator contract implemented by every provider."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from adapters.paging.cursor import Token
from adapters.paging.errors import UpstreamRetryable

logger = logging.getLogger("paging.paginator")


@dataclass(frozen=True)
class ParentRef:
    """The outer record a nested collection is joined against."""

    entity: str
    key: Optional[str]
    record: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class UpstreamRequest:
    collection: str
    filter: Optional[str] = None
    parent: Optional[ParentRef] = None
    account: Optional[str] = None
    attributes: tuple[str, ...] = ()


@dataclass(frozen=True)
class UpstreamBatch:
    records: list[dict[str, Any]]
    next_token: Optional[Token] = None
    exhausted: bool = True

    @classmethod
    def last(cls, records: list[dict[str, Any]]) -> "UpstreamBatch":
        return cls(records=records, next_token=None, exhausted=True)

    @classmethod
    def more(cls, records: list[dict[str, Any]], next_token: Token) -> "UpstreamBatch":
        return cls(records=records, next_token=next_token, exhausted=False)


class UpstreamPaginator(ABC):
    """Each provider overrides next() and declares PROVIDER_NAME.

    ``next`` returns one upstream batch starting at ``token`` (``None`` is the
    first batch). The same (request, token) pair must return the same records
    in the same order for cursors to stay valid. Failures are raised as
    ``UpstreamRetryable`` or ``UpstreamFatal``; retrying is left to the caller.
    """

    PROVIDER_NAME: str = ""

    @abstractmethod
    def next(
        self,
        request: UpstreamRequest,
        token: Optional[Token],
        timeout: Optional[float] = None,
    ) -> UpstreamBatch:
        """Fetch the batch at ``token``."""

    def natural_key(self, collection: str) -> str:
        """Path of the field inner collections join on."""
        return "id"

    def close(self) -> None:
        """Release provider resources. Default is a no-op."""


class Deadline:
    """Caller-supplied request deadline on the monotonic clock.

    ``expires_at`` is an absolute deadline imposed by the hosting runtime;
    the earlier of it and ``timeout_seconds`` from now wins.
    """

    def __init__(self, timeout_seconds: Optional[float], expires_at: Optional[float] = None) -> None:
        if timeout_seconds is not None:
            relative = time.monotonic() + timeout_seconds
            expires_at = relative if expires_at is None else min(expires_at, relative)
        self._expires_at = expires_at

    def remaining(self) -> Optional[float]:
        """Seconds left for the next upstream call; raises once expired."""
        if self._expires_at is None:
            return None
        left = self._expires_at - time.monotonic()
        if left <= 0:
            logger.warning("Request deadline exceeded")
            raise UpstreamRetryable("Request deadline exceeded before upstream call")
        return left
