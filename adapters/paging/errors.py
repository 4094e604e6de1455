"""Error taxonomy for the paging engine.

Errors at the cursor-decode or paginator boundary abort the whole page and
are returned to the caller. Coercion errors are record-level and absorbed by
the assembler.
"""

from __future__ import annotations

from typing import Any, Optional


class PagingError(Exception):
    """Base class. ``code`` is the stable identifier used on the wire."""

    code: str = "INTERNAL"
    retryable: bool = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.context:
            data["context"] = self.context
        return data


class MalformedCursor(PagingError):
    code = "MALFORMED_CURSOR"


class InvalidEntityConfig(PagingError):
    code = "INVALID_CONFIG"


class UpstreamError(PagingError):
    """Raised by paginators. The assembler adds frame context on the way up."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[str] = None,
        **context: Any,
    ) -> None:
        super().__init__(message, status_code=status_code, retry_after=retry_after, **context)
        self.status_code = status_code
        self.retry_after = retry_after

    def with_context(self, **context: Any) -> "UpstreamError":
        for key, value in context.items():
            if value is not None:
                self.context.setdefault(key, value)
        return self


class UpstreamFatal(UpstreamError):
    code = "UPSTREAM_FATAL"


class UpstreamRetryable(UpstreamError):
    code = "UPSTREAM_RETRYABLE"
    retryable = True


class AttributeCoercionError(PagingError):
    code = "ATTRIBUTE_COERCION"

    def __init__(self, attribute: str, raw: Any, expected: str, reason: str = "") -> None:
        message = f"Cannot convert attribute {attribute!r} value {raw!r} to {expected}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, attribute=attribute, expected=expected)
        self.attribute = attribute
        self.raw = raw


RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def error_for_status(
    status_code: int,
    retry_after: Optional[str] = None,
    body: str = "",
    **context: Any,
) -> Optional[UpstreamError]:
    """Map a non-2xx upstream status to the taxonomy. Returns None for 2xx."""
    if 200 <= status_code < 300:
        return None
    snippet = body[:200] if body else ""
    message = f"Upstream responded with status {status_code}"
    if snippet:
        message = f"{message}: {snippet}"
    if status_code in RETRYABLE_STATUS_CODES or status_code >= 500:
        return UpstreamRetryable(message, status_code=status_code, retry_after=retry_after, **context)
    return UpstreamFatal(message, status_code=status_code, retry_after=retry_after, **context)
