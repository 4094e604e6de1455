"""Page assembly: walk a traversal plan until the page is full or exhausted."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any, Optional

from adapters.paging.cursor import CursorState, Token
from adapters.paging.errors import (
    AttributeCoercionError,
    UpstreamError,
    UpstreamFatal,
    UpstreamRetryable,
)
from adapters.paging.extractor import AttributeExtractor
from adapters.paging.models import CollectionJoin, EntityConfig, Object
from adapters.paging.paginator import (
    Deadline,
    ParentRef,
    UpstreamBatch,
    UpstreamPaginator,
    UpstreamRequest,
)
from adapters.paging.pathexpr import first_value, render_template
from adapters.paging.planner import (
    CHILD,
    START_POSITION,
    LevelPosition,
    TraversalFrame,
    TraversalPlan,
)

logger = logging.getLogger("paging.assembler")

_NEXT_BRANCH = "branch"
_NEXT_ACCOUNT = "account"


class AccountPrefetcher:
    """Fetches the first upstream batch of upcoming accounts in the background.

    Futures are keyed by the immutable request they were issued for. Only the
    assembling thread consumes results and advances the traversal position.
    """

    def __init__(self, paginator: UpstreamPaginator, max_concurrency: int) -> None:
        self._paginator = paginator
        self._lookahead = max(0, max_concurrency - 1)
        self._executor: Optional[ThreadPoolExecutor] = None
        if self._lookahead:
            self._executor = ThreadPoolExecutor(
                max_workers=max_concurrency, thread_name_prefix="paging-prefetch",
            )
        self._futures: dict[UpstreamRequest, Future] = {}

    def schedule(self, requests: list[UpstreamRequest], timeout: Optional[float]) -> None:
        if self._executor is None:
            return
        for request in requests[: self._lookahead]:
            if request in self._futures:
                continue
            logger.debug(
                "Prefetching first batch", extra={"collection": request.collection, "account": request.account},
            )
            self._futures[request] = self._executor.submit(self._paginator.next, request, None, timeout)

    def take(self, request: UpstreamRequest) -> Optional[Future]:
        return self._futures.pop(request, None)

    def close(self) -> None:
        if self._executor is None:
            return
        for future in self._futures.values():
            future.cancel()
        self._futures.clear()
        self._executor.shutdown(wait=False, cancel_futures=True)


@dataclass
class _Walk:
    """Mutable traversal state for one page request."""

    plan: TraversalPlan
    page_size: int
    deadline: Deadline
    account_index: int
    branch_index: int
    positions: list[LevelPosition]
    prefetcher: AccountPrefetcher
    objects: list[Object] = field(default_factory=list)

    @property
    def account(self) -> Optional[str]:
        return self.plan.account(self.account_index)


class PageAssembler:
    """Depth-first walk over a plan's frames, emitting normalized objects.

    The walk stops as soon as ``page_size`` objects are collected and freezes
    the exact position: the token of each level's current batch plus how far
    into that batch it got. A resumed walk re-reads the same batches and skips
    the consumed prefix.

    A page is short of ``page_size`` only when traversal is exhausted or when
    the walk moves from one advanced filter branch to the next while the page
    already holds objects. Account advances never end a page.
    """

    def __init__(
        self,
        paginator: UpstreamPaginator,
        extractor: Optional[AttributeExtractor] = None,
        max_concurrency: int = 2,
    ) -> None:
        self.paginator = paginator
        self.extractor = extractor or AttributeExtractor()
        self.max_concurrency = max(1, max_concurrency)

    def assemble(
        self,
        plan: TraversalPlan,
        state: CursorState,
        page_size: int,
        deadline: Optional[Deadline] = None,
    ) -> tuple[list[Object], Optional[CursorState]]:
        """Return the page's objects and the state to resume from (None when exhausted)."""
        account_index, branch_index, positions = plan.locate(state)
        walk = _Walk(
            plan=plan,
            page_size=page_size,
            deadline=deadline or Deadline(None),
            account_index=account_index,
            branch_index=branch_index,
            positions=positions,
            prefetcher=AccountPrefetcher(
                self.paginator, self.max_concurrency if len(plan.accounts) > 1 else 1,
            ),
        )
        try:
            while True:
                if self._walk_level(walk, 0, None):
                    return walk.objects, plan.freeze(walk.account_index, walk.branch_index, walk.positions)
                moved = self._advance(walk)
                if moved is None:
                    return walk.objects, None
                if moved == _NEXT_BRANCH and walk.objects:
                    logger.debug(
                        "Sealing page at filter branch boundary",
                        extra={"entity": plan.entity.id, "objects": len(walk.objects), "account": walk.account},
                    )
                    return walk.objects, plan.freeze(walk.account_index, walk.branch_index, walk.positions)
        finally:
            walk.prefetcher.close()

    @staticmethod
    def _advance(walk: _Walk) -> Optional[str]:
        """Move to the next branch or account; None once the plan is exhausted."""
        plan = walk.plan
        if walk.branch_index + 1 < len(plan.branches):
            walk.branch_index += 1
            moved = _NEXT_BRANCH
        elif walk.account_index + 1 < plan.account_count:
            walk.account_index += 1
            walk.branch_index = 0
            moved = _NEXT_ACCOUNT
            logger.info("Advancing to account %s", walk.account, extra={"account": walk.account})
        else:
            return None
        walk.positions = plan.start_positions(walk.branch_index)
        return moved

    # ------------------------------------------------------------------
    # Frame walk
    # ------------------------------------------------------------------

    def _walk_level(self, walk: _Walk, depth: int, parent: Optional[ParentRef]) -> bool:
        """Walk one frame from its stored position. True when the page filled up."""
        branch = walk.plan.branches[walk.branch_index]
        frame = branch.frames[depth]
        innermost = depth == branch.depth - 1
        request = self._request(walk, frame, parent, innermost)

        position = walk.positions[depth]
        token, skip, expected_key = position.token, position.offset, position.key

        while True:
            batch = self._fetch(walk, frame, request, token, prefetch=depth == 0)
            records = batch.records
            if skip > len(records):
                logger.warning(
                    "Upstream batch has %d records, fewer than the resumed offset %d",
                    len(records), skip,
                    extra={"frame": frame.kind, "collection": frame.entity, "account": walk.account},
                )
                skip = len(records)

            for i in range(skip, len(records)):
                record = records[i]
                if innermost:
                    walk.positions[depth] = LevelPosition(token, i + 1)
                    obj = self._emit(walk, frame, record, parent)
                    if obj is None:
                        continue
                    walk.objects.append(obj)
                    if len(walk.objects) >= walk.page_size:
                        if i + 1 == len(records) and not batch.exhausted and batch.next_token is not None:
                            walk.positions[depth] = LevelPosition(batch.next_token, 0)
                        return True
                    continue

                key = self._key(frame, record)
                if expected_key is not None and key != expected_key:
                    logger.warning(
                        "Collection changed since cursor was issued: expected %s, found %s",
                        expected_key, key,
                        extra={"frame": frame.kind, "collection": frame.entity, "account": walk.account},
                    )
                expected_key = None
                walk.positions[depth] = LevelPosition(token, i, key)
                if self._walk_level(walk, depth + 1, ParentRef(frame.entity, key, record)):
                    return True
                walk.positions[depth + 1:] = [START_POSITION] * (branch.depth - depth - 1)
                walk.positions[depth] = LevelPosition(token, i + 1)

            if batch.exhausted or batch.next_token is None:
                return False
            token, skip = batch.next_token, 0
            walk.positions[depth] = LevelPosition(token, 0)

    def _request(
        self,
        walk: _Walk,
        frame: TraversalFrame,
        parent: Optional[ParentRef],
        innermost: bool,
    ) -> UpstreamRequest:
        query = frame.filter or None
        if query and parent is not None:
            query = render_template(query, parent.record, self.extractor.resolver)
        attributes = ()
        if innermost:
            attributes = tuple(a.external_id for a in walk.plan.entity.attributes)
        return UpstreamRequest(
            collection=frame.entity,
            filter=query,
            parent=parent,
            account=walk.account,
            attributes=attributes,
        )

    def _fetch(
        self,
        walk: _Walk,
        frame: TraversalFrame,
        request: UpstreamRequest,
        token: Optional[Token],
        prefetch: bool = False,
    ) -> UpstreamBatch:
        try:
            future = walk.prefetcher.take(request) if token is None else None
            if future is not None:
                batch = future.result(timeout=walk.deadline.remaining())
            else:
                batch = self.paginator.next(request, token, timeout=walk.deadline.remaining())
            if prefetch and token is None:
                walk.prefetcher.schedule(self._lookahead(walk, request), walk.deadline.remaining())
        except FutureTimeoutError as exc:
            raise UpstreamRetryable(
                "Request deadline exceeded waiting for a prefetched batch",
                frame=frame.kind, collection=request.collection, account=request.account,
            ) from exc
        except UpstreamError as exc:
            raise exc.with_context(
                frame=frame.kind, collection=request.collection, account=request.account, token=token,
            )

        if not isinstance(batch.records, list) or not all(isinstance(r, dict) for r in batch.records):
            raise UpstreamFatal(
                "Upstream returned a malformed batch",
                frame=frame.kind, collection=request.collection, account=request.account, token=token,
            )
        return batch

    @staticmethod
    def _lookahead(walk: _Walk, request: UpstreamRequest) -> list[UpstreamRequest]:
        accounts = walk.plan.accounts[walk.account_index + 1:]
        return [replace(request, account=account) for account in accounts]

    def _key(self, frame: TraversalFrame, record: dict[str, Any]) -> Optional[str]:
        path = frame.key_path or self.paginator.natural_key(frame.entity)
        value = first_value(record, path, self.extractor.resolver)
        return None if value is None else str(value)

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def _emit(
        self,
        walk: _Walk,
        frame: TraversalFrame,
        record: dict[str, Any],
        parent: Optional[ParentRef],
    ) -> Optional[Object]:
        entity = walk.plan.entity
        if frame.join is not None:
            record = self._augment(frame.join, record, parent)
        try:
            return self.extractor.build_object(entity, record, partial(self._load_children, walk))
        except AttributeCoercionError as exc:
            logger.warning(
                "Dropping record: %s", exc.message,
                extra={
                    "entity": entity.id,
                    "attribute": exc.attribute,
                    "frame": frame.kind,
                    "collection": frame.entity,
                    "account": walk.account,
                },
            )
            return None

    def _augment(
        self,
        join: CollectionJoin,
        record: dict[str, Any],
        parent: Optional[ParentRef],
    ) -> dict[str, Any]:
        member_key = first_value(record, join.member_key, self.extractor.resolver)
        if member_key is None or parent is None or parent.key is None:
            raise UpstreamFatal(
                f"Member record of {join.external_id} is missing its join key {join.member_key!r}",
                collection=join.external_id,
            )
        augmented = dict(record)
        augmented[join.id_field] = f"{member_key}-{parent.key}"
        augmented[join.parent_key_name] = parent.key
        return augmented

    def _load_children(
        self,
        walk: _Walk,
        parent_entity: EntityConfig,
        child: EntityConfig,
        record: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """Drain every page of a child collection for one parent record."""
        key = self.extractor.unique_id(parent_entity, record)
        if key is None:
            key = first_value(
                record, self.paginator.natural_key(parent_entity.external_id), self.extractor.resolver,
            )
        query = child.filter or None
        if query:
            query = render_template(query, record, self.extractor.resolver)
        frame = TraversalFrame(kind=CHILD, entity=child.external_id)
        request = UpstreamRequest(
            collection=child.external_id,
            filter=query,
            parent=ParentRef(parent_entity.external_id, None if key is None else str(key), record),
            account=walk.account,
            attributes=tuple(a.external_id for a in child.attributes),
        )

        records: list[dict[str, Any]] = []
        token: Optional[Token] = None
        while True:
            batch = self._fetch(walk, frame, request, token)
            records.extend(batch.records)
            if batch.exhausted or batch.next_token is None:
                return records
            token = batch.next_token
