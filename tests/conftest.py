"""Shared fixtures: entity configs and fixture-backed paginators."""

from __future__ import annotations

import pytest

from adapters.paging.models import (
    INT64,
    AttributeConfig,
    EntityConfig,
    MemberFilter,
    PageRequest,
    RelatedEntityFilter,
    ScopeFilter,
)
from adapters.paging.providers.static import StaticPaginator
from adapters.paging.service import PagingService


def entity(external_id: str, *attrs: AttributeConfig, **kwargs) -> EntityConfig:
    return EntityConfig(id=external_id, external_id=external_id, attributes=attrs, **kwargs)


def unique(external_id: str = "id", attr_id: str = "id") -> AttributeConfig:
    return AttributeConfig(id=attr_id, external_id=external_id, unique_id=True)


def ids(page, attr: str = "id") -> list:
    return [obj.get(attr)[0] for obj in page.objects]


def drain_ids(service: PagingService, request: PageRequest, attr: str = "id") -> list:
    collected = []
    for response in service.drain(request, max_pages=100):
        assert response.ok, response.error
        collected.extend(ids(response.page, attr))
    return collected


@pytest.fixture
def users_entity() -> EntityConfig:
    return entity(
        "User",
        unique(),
        AttributeConfig(id="age", external_id="age", type=INT64),
    )


@pytest.fixture
def seven_users() -> StaticPaginator:
    return StaticPaginator(
        {"User": [{"id": f"u{i}", "age": 20 + i} for i in range(1, 8)]},
        batch_size=3,
    )


@pytest.fixture
def change_task_entity() -> EntityConfig:
    return entity("change_task", unique("sys_id"))


@pytest.fixture
def servicenow_filters() -> tuple[ScopeFilter, ...]:
    """Two group scopes: g1 has two active users with one change task each,
    g2 has one active user with no change tasks."""
    member = MemberFilter(
        member_entity="sys_user",
        member_entity_filter="active=true",
        related_entities=(
            RelatedEntityFilter(
                related_entity="change_task",
                related_entity_filter="assigned_toIN{$.sys_user.sys_id}",
            ),
        ),
    )
    return (
        ScopeFilter(scope_entity="sys_user_group", scope_entity_filter="sys_id=g1", members=(member,)),
        ScopeFilter(scope_entity="sys_user_group", scope_entity_filter="sys_id=g2", members=(member,)),
    )


@pytest.fixture
def servicenow_upstream() -> StaticPaginator:
    return StaticPaginator(
        {
            "sys_user_group?sys_id=g1": [{"sys_id": "g1"}],
            "sys_user_group?sys_id=g2": [{"sys_id": "g2"}],
            "sys_user/g1?active=true": [{"sys_id": "u1"}, {"sys_id": "u2"}],
            "sys_user/g2?active=true": [{"sys_id": "u3"}],
            "change_task/u1?assigned_toINu1": [{"sys_id": "r1"}],
            "change_task/u2?assigned_toINu2": [{"sys_id": "r2"}],
        },
        batch_size=10,
        natural_keys={"sys_user_group": "sys_id", "sys_user": "sys_id", "change_task": "sys_id"},
    )
