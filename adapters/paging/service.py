"""GetPage boundary: request in, objects plus next cursor (or an error) out."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Iterator, Optional

from adapters.paging import cursor as cursor_codec
from adapters.paging.assembler import PageAssembler
from adapters.paging.errors import InvalidEntityConfig, PagingError
from adapters.paging.extractor import AttributeExtractor
from adapters.paging.models import EntityConfig, Page, PageRequest
from adapters.paging.paginator import Deadline, UpstreamPaginator
from adapters.paging.pathexpr import PathResolver, resolve_path
from adapters.paging.planner import TraversalPlanner

logger = logging.getLogger("paging.service")


@dataclass(frozen=True)
class PageResponse:
    """Exactly one of ``page`` and ``error`` is set."""

    page: Optional[Page] = None
    error: Optional[PagingError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_wire(self) -> dict[str, Any]:
        if self.error is not None:
            return {"error": self.error.to_dict()}
        return {
            "objects": [o.to_wire() for o in self.page.objects],
            "nextCursor": self.page.next_cursor,
        }


def validate_entity(entity: EntityConfig) -> None:
    """Reject configurations the planner and extractor cannot honor."""
    if not entity.id or not entity.external_id:
        raise InvalidEntityConfig("Entity id and externalId must be non-empty")

    seen: set[str] = set()
    unique_ids = 0
    for attr in entity.attributes:
        if not attr.external_id:
            raise InvalidEntityConfig(f"Attribute {attr.id!r} has no externalId", entity=entity.id)
        if attr.id in seen:
            raise InvalidEntityConfig(f"Duplicate attribute id {attr.id!r}", entity=entity.id)
        seen.add(attr.id)
        if attr.unique_id:
            unique_ids += 1
    if unique_ids > 1:
        raise InvalidEntityConfig("At most one attribute may be the unique id", entity=entity.id)

    child_ids: set[str] = set()
    for child in entity.child_entities:
        if child.id in child_ids:
            raise InvalidEntityConfig(f"Duplicate child entity id {child.id!r}", entity=entity.id)
        child_ids.add(child.id)
        validate_entity(child)


class PagingService:
    """Stateless apart from configuration; safe to share across requests."""

    def __init__(
        self,
        paginator: UpstreamPaginator,
        max_concurrency: int = 2,
        request_timeout_seconds: Optional[float] = None,
        resolver: PathResolver = resolve_path,
        planner: Optional[TraversalPlanner] = None,
    ) -> None:
        self.paginator = paginator
        self.max_concurrency = max_concurrency
        self.request_timeout_seconds = request_timeout_seconds
        self.resolver = resolver
        self.planner = planner or TraversalPlanner()

    def get_page(self, request: PageRequest) -> PageResponse:
        started = time.monotonic()
        entity_id = request.entity.id
        provider = self.paginator.PROVIDER_NAME
        try:
            if request.page_size < 1:
                raise InvalidEntityConfig(f"Page size must be at least 1, got {request.page_size}")
            validate_entity(request.entity)

            state = cursor_codec.decode(request.cursor)
            plan = self.planner.plan(request.entity, request.accounts, request.advanced_filters)
            assembler = PageAssembler(
                self.paginator,
                extractor=AttributeExtractor(request.options, self.resolver),
                max_concurrency=self.max_concurrency,
            )
            timeout = request.timeout_seconds
            if timeout is None:
                timeout = self.request_timeout_seconds
            deadline = Deadline(timeout, expires_at=request.deadline)
            objects, next_state = assembler.assemble(plan, state, request.page_size, deadline)
        except PagingError as exc:
            logger.error(
                "Page request failed: %s", exc.message,
                extra={"entity": entity_id, "provider": provider, "code": exc.code},
            )
            return PageResponse(error=exc)

        page = Page(objects=tuple(objects), next_cursor=cursor_codec.encode(next_state))
        logger.info(
            "Page complete",
            extra={
                "entity": entity_id,
                "provider": provider,
                "objects": len(page.objects),
                "page_size": request.page_size,
                "last": page.is_last,
                "duration_s": round(time.monotonic() - started, 3),
            },
        )
        return PageResponse(page=page)

    def drain(self, request: PageRequest, max_pages: Optional[int] = None) -> Iterator[PageResponse]:
        """Feed ``nextCursor`` back until traversal completes or a page fails."""
        pages = 0
        while max_pages is None or pages < max_pages:
            response = self.get_page(request)
            pages += 1
            yield response
            if not response.ok or response.page.is_last:
                return
            request = replace(request, cursor=response.page.next_cursor)
