"""Traversal planning: entity configuration -> ordered frame stack.

A plan is an optional account fan-out wrapped around an ordered list of
branches. Each branch is a chain of frames from the outermost collection to
the innermost one, whose records are emitted. For example the advanced filter

    scope sys_user_group (sys_id=g1)
      member sys_user (active=true)
        related change_task (assigned_toIN{$.sys_user.sys_id})

planned for ``change_task`` yields one related branch with the frames
``scope -> member -> related``. The same configuration planned for
``sys_user`` yields an implicit branch ``scope -> member``.

The planner also converts between a branch position (one ``LevelPosition``
per frame) and the cursor frame variants; the order of branches and frames is
deterministic so positions stay valid across calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from adapters.paging.cursor import (
    CollectionFrame,
    CursorState,
    ImplicitFilterFrame,
    RelatedFilterFrame,
    Token,
)
from adapters.paging.errors import InvalidEntityConfig, MalformedCursor
from adapters.paging.models import CollectionJoin, EntityConfig, ScopeFilter
from adapters.paging.pathexpr import template_references

logger = logging.getLogger("paging.planner")

# Frame kinds
ACCOUNT = "account"
COLLECTION = "collection"
PARENT = "parent"
SCOPE = "scope"
MEMBER = "member"
RELATED = "related"
CHILD = "child"

# Branch kinds
PLAIN = "plain"
IMPLICIT = "implicit"
RELATED_BRANCH = "related"


@dataclass(frozen=True)
class TraversalFrame:
    """One level of nested iteration.

    ``filter`` may hold ``{$.entity.attribute}`` placeholders rendered against
    the record of the enclosing frame. ``key_path`` overrides the provider's
    natural key when inner frames join on this frame's records.
    """

    kind: str
    entity: str
    filter: Optional[str] = None
    key_path: Optional[str] = None
    join: Optional[CollectionJoin] = None

    def describe(self) -> str:
        text = f"{self.kind}:{self.entity}"
        if self.filter:
            text += f"[{self.filter}]"
        return text


@dataclass(frozen=True)
class Branch:
    kind: str
    index: tuple[int, int]
    frames: tuple[TraversalFrame, ...]

    @property
    def depth(self) -> int:
        return len(self.frames)


@dataclass(frozen=True)
class LevelPosition:
    """Upstream token of the current batch, records consumed from it, and
    (for outer frames) the key of the record being expanded."""

    token: Optional[Token] = None
    offset: int = 0
    key: Optional[str] = None


START_POSITION = LevelPosition()


@dataclass(frozen=True)
class TraversalPlan:
    entity: EntityConfig
    branches: tuple[Branch, ...]
    accounts: tuple[str, ...] = ()

    @property
    def account_count(self) -> int:
        return max(1, len(self.accounts))

    def account(self, index: int) -> Optional[str]:
        return self.accounts[index] if self.accounts else None

    def frame_stack(self, branch_index: int) -> tuple[TraversalFrame, ...]:
        """Full nesting for one branch, outermost first, child frames last."""
        stack: list[TraversalFrame] = []
        if self.accounts:
            stack.append(TraversalFrame(kind=ACCOUNT, entity=",".join(self.accounts)))
        stack.extend(self.branches[branch_index].frames)
        stack.extend(_child_frames(self.entity))
        return tuple(stack)

    def describe(self) -> list[str]:
        return [
            " -> ".join(f.describe() for f in self.frame_stack(i))
            for i in range(len(self.branches))
        ]

    def start_positions(self, branch_index: int) -> list[LevelPosition]:
        return [START_POSITION] * self.branches[branch_index].depth

    # ------------------------------------------------------------------
    # Cursor state <-> (account, branch, positions)
    # ------------------------------------------------------------------

    def locate(self, state: CursorState) -> tuple[int, int, list[LevelPosition]]:
        account_index = state.account_index
        if account_index >= self.account_count:
            raise MalformedCursor(
                f"Cursor account index {account_index} is out of range for "
                f"{len(self.accounts)} configured accounts"
            )

        frame = state.frame
        if frame is None:
            return account_index, 0, self.start_positions(0)

        kind = self.branches[0].kind
        if isinstance(frame, CollectionFrame) and kind == PLAIN:
            return account_index, 0, _positions_from_collection(frame, self.branches[0].depth)

        if isinstance(frame, ImplicitFilterFrame) and kind == IMPLICIT:
            branch_index = self._branch_index((frame.entity_filter_index, frame.member_filter_index))
            depth = self.branches[branch_index].depth
            return account_index, branch_index, _positions_from_collection(frame.cursor, depth)

        if isinstance(frame, RelatedFilterFrame) and kind == RELATED_BRANCH:
            branch_index = self._branch_index((frame.entity_index, 0))
            depth = self.branches[branch_index].depth
            outer = _positions_from_collection(frame.related_entity_cursor, depth - 1)
            inner = LevelPosition(token=frame.entity_cursor, offset=frame.entity_offset)
            return account_index, branch_index, outer + [inner]

        raise MalformedCursor(
            f"Cursor frame {type(frame).__name__} does not match the {kind} "
            f"traversal planned for entity {self.entity.id!r}"
        )

    def freeze(
        self,
        account_index: int,
        branch_index: int,
        positions: Optional[list[LevelPosition]],
    ) -> CursorState:
        branch = self.branches[branch_index]
        positions = positions or self.start_positions(branch_index)

        if branch.kind == PLAIN:
            return CursorState(
                frame=_collection_from_positions(positions),
                account_index=account_index,
            )

        if branch.kind == IMPLICIT:
            inner = _collection_from_positions(positions)
            return CursorState(
                frame=ImplicitFilterFrame(
                    entity_filter_index=branch.index[0],
                    member_filter_index=branch.index[1],
                    cursor=None if inner == CollectionFrame() else inner,
                ),
                account_index=account_index,
            )

        outer = _collection_from_positions(positions[:-1])
        last = positions[-1]
        return CursorState(
            frame=RelatedFilterFrame(
                entity_index=branch.index[0],
                entity_cursor=last.token,
                entity_offset=last.offset,
                related_entity_cursor=None if outer == CollectionFrame() else outer,
            ),
            account_index=account_index,
        )

    def _branch_index(self, index: tuple[int, int]) -> int:
        for i, branch in enumerate(self.branches):
            if branch.index == index:
                return i
        raise MalformedCursor(f"Cursor references filter {index} which is not configured")


def _positions_from_collection(frame: Optional[CollectionFrame], depth: int) -> list[LevelPosition]:
    frame = frame or CollectionFrame()
    inner = LevelPosition(token=frame.cursor, offset=frame.offset)
    if depth == 1:
        if frame.collection_cursor is not None or frame.collection_offset:
            raise MalformedCursor("Cursor has a collection position for a single-level traversal")
        return [inner]
    outer = LevelPosition(
        token=frame.collection_cursor,
        offset=frame.collection_offset,
        key=frame.collection_id,
    )
    return [outer, inner]


def _collection_from_positions(positions: list[LevelPosition]) -> CollectionFrame:
    inner = positions[-1]
    if len(positions) == 1:
        return CollectionFrame(cursor=inner.token, offset=inner.offset)
    outer = positions[0]
    return CollectionFrame(
        cursor=inner.token,
        offset=inner.offset,
        collection_id=outer.key,
        collection_cursor=outer.token,
        collection_offset=outer.offset,
    )


def _child_frames(entity: EntityConfig) -> list[TraversalFrame]:
    frames: list[TraversalFrame] = []
    for child in entity.child_entities:
        frames.append(TraversalFrame(kind=CHILD, entity=child.external_id))
        frames.extend(_child_frames(child))
    return frames


def _check_templates(entity: EntityConfig, branch: Branch) -> None:
    """Filter placeholders may only reference the immediately enclosing frame."""
    parent: Optional[str] = None
    for frame in branch.frames:
        for referenced, attribute in template_references(frame.filter or ""):
            if referenced != parent:
                raise InvalidEntityConfig(
                    f"Filter {frame.filter!r} of {frame.entity} references {referenced}.{attribute}, "
                    f"but its enclosing collection is {parent or 'none'}",
                    entity=entity.id,
                )
        parent = frame.entity


class TraversalPlanner:
    """Builds plans. Stateless; one instance can serve concurrent requests."""

    def plan(
        self,
        entity: EntityConfig,
        accounts: tuple[str, ...] = (),
        advanced_filters: tuple[ScopeFilter, ...] = (),
    ) -> TraversalPlan:
        if entity.is_path_selector:
            raise InvalidEntityConfig(
                f"Top-level entity {entity.id!r} must select a collection, not a path"
            )

        implicit = self._implicit_branches(entity, advanced_filters)
        related = self._related_branches(entity, advanced_filters)
        if implicit and related:
            raise InvalidEntityConfig(
                f"Cannot use both implicit and related filters for entity: {entity.external_id}"
            )
        if implicit and entity.collection is not None:
            raise InvalidEntityConfig(
                f"Entity {entity.external_id} cannot combine a collection join with advanced filters"
            )

        branches = tuple(implicit or related) or (self._plain_branch(entity),)
        for branch in branches:
            _check_templates(entity, branch)
        plan = TraversalPlan(entity=entity, branches=branches, accounts=tuple(accounts))
        logger.debug("Planned traversal: %s", plan.describe(), extra={"entity": entity.id})
        return plan

    @staticmethod
    def _plain_branch(entity: EntityConfig) -> Branch:
        if entity.collection is None:
            return Branch(
                kind=PLAIN,
                index=(0, 0),
                frames=(TraversalFrame(kind=COLLECTION, entity=entity.external_id, filter=entity.filter),),
            )
        join = entity.collection
        return Branch(
            kind=PLAIN,
            index=(0, 0),
            frames=(
                TraversalFrame(kind=PARENT, entity=join.external_id, filter=join.filter, key_path=join.parent_key),
                TraversalFrame(kind=MEMBER, entity=entity.external_id, filter=entity.filter, join=join),
            ),
        )

    @staticmethod
    def _implicit_branches(entity: EntityConfig, filters: tuple[ScopeFilter, ...]) -> list[Branch]:
        """Derived per scope definition, in order: the scope itself, then each
        matching member filter. ``index`` is (derived filter, member filter)."""
        branches: list[Branch] = []
        derived = 0
        for scope in filters:
            scope_frame = TraversalFrame(kind=SCOPE, entity=scope.scope_entity, filter=scope.scope_entity_filter)
            if scope.scope_entity == entity.external_id:
                branches.append(Branch(kind=IMPLICIT, index=(derived, 0), frames=(scope_frame,)))
                derived += 1
            members = [m for m in scope.members if m.member_entity == entity.external_id]
            if members:
                for member_index, member in enumerate(members):
                    member_frame = TraversalFrame(
                        kind=MEMBER, entity=member.member_entity, filter=member.member_entity_filter,
                    )
                    branches.append(Branch(
                        kind=IMPLICIT,
                        index=(derived, member_index),
                        frames=(scope_frame, member_frame),
                    ))
                derived += 1
        return branches

    @staticmethod
    def _related_branches(entity: EntityConfig, filters: tuple[ScopeFilter, ...]) -> list[Branch]:
        branches: list[Branch] = []
        for scope in filters:
            scope_frame = TraversalFrame(kind=SCOPE, entity=scope.scope_entity, filter=scope.scope_entity_filter)
            for member in scope.members:
                member_frame = TraversalFrame(
                    kind=MEMBER, entity=member.member_entity, filter=member.member_entity_filter,
                )
                for related in member.related_entities:
                    if related.related_entity != entity.external_id:
                        continue
                    related_frame = TraversalFrame(
                        kind=RELATED, entity=related.related_entity, filter=related.related_entity_filter,
                    )
                    branches.append(Branch(
                        kind=RELATED_BRANCH,
                        index=(len(branches), 0),
                        frames=(scope_frame, member_frame, related_frame),
                    ))
            for related in scope.related_entities:
                if related.related_entity != entity.external_id:
                    continue
                related_frame = TraversalFrame(
                    kind=RELATED, entity=related.related_entity, filter=related.related_entity_filter,
                )
                branches.append(Branch(
                    kind=RELATED_BRANCH,
                    index=(len(branches), 0),
                    frames=(scope_frame, related_frame),
                ))
        return branches
