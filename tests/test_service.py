"""End-to-end paging through PagingService against fixture upstreams."""

import base64
import json
import time

import pytest

from adapters.paging import cursor as cursor_codec
from adapters.paging.errors import UpstreamFatal, UpstreamRetryable
from adapters.paging.models import (
    INT64,
    AttributeConfig,
    CollectionJoin,
    ExtractionOptions,
    PageRequest,
)
from adapters.paging.providers.static import StaticPaginator
from adapters.paging.service import PagingService

from conftest import drain_ids, entity, ids, unique


def test_empty_collection_completes_in_one_call(users_entity):
    upstream = StaticPaginator({})
    response = PagingService(upstream).get_page(PageRequest(entity=users_entity, page_size=5))
    assert response.ok
    assert response.page.objects == ()
    assert response.page.next_cursor == ""
    assert len(upstream.calls) == 1


def test_page_size_bound_and_exhaustion(users_entity, seven_users):
    service = PagingService(seven_users)
    pages = list(service.drain(PageRequest(entity=users_entity, page_size=2)))
    assert [ids(r.page) for r in pages] == [["u1", "u2"], ["u3", "u4"], ["u5", "u6"], ["u7"]]
    assert all(r.page.next_cursor for r in pages[:-1])
    assert pages[-1].page.next_cursor == ""


def test_no_loss_no_duplication(users_entity, seven_users):
    service = PagingService(seven_users)
    one_by_one = drain_ids(service, PageRequest(entity=users_entity, page_size=1))
    all_at_once = drain_ids(service, PageRequest(entity=users_entity, page_size=100))
    assert one_by_one == all_at_once == [f"u{i}" for i in range(1, 8)]


def test_mid_batch_freeze_resumes_same_batch(users_entity, seven_users):
    service = PagingService(seven_users)
    first = service.get_page(PageRequest(entity=users_entity, page_size=2))
    state = cursor_codec.decode(first.page.next_cursor)
    assert state.frame.cursor is None
    assert state.frame.offset == 2

    seven_users.calls.clear()
    second = service.get_page(PageRequest(entity=users_entity, page_size=2, cursor=first.page.next_cursor))
    assert ids(second.page) == ["u3", "u4"]
    assert seven_users.calls == [("User", None, None), ("User", None, 3)]


def test_servicenow_related_scenario_page_size_one(servicenow_upstream, servicenow_filters, change_task_entity):
    service = PagingService(servicenow_upstream)
    request = PageRequest(entity=change_task_entity, page_size=1, advanced_filters=servicenow_filters)
    pages = list(service.drain(request))

    assert [ids(r.page) for r in pages] == [["r1"], ["r2"], []]
    assert [bool(r.page.next_cursor) for r in pages] == [True, True, False]


def test_servicenow_related_scenario_page_size_ten(servicenow_upstream, servicenow_filters, change_task_entity):
    service = PagingService(servicenow_upstream)
    request = PageRequest(entity=change_task_entity, page_size=10, advanced_filters=servicenow_filters)
    pages = list(service.drain(request))

    assert [ids(r.page) for r in pages] == [["r1", "r2"], []]
    assert pages[0].page.next_cursor
    assert pages[1].page.next_cursor == ""

    frame = cursor_codec.decode(pages[0].page.next_cursor).frame
    assert frame.entity_index == 1


def test_related_filter_rendered_from_member(servicenow_upstream, servicenow_filters, change_task_entity):
    service = PagingService(servicenow_upstream)
    service.get_page(PageRequest(entity=change_task_entity, page_size=10, advanced_filters=servicenow_filters))
    related_calls = [c for c in servicenow_upstream.calls if c[0].startswith("change_task/")]
    assert related_calls[:2] == [
        ("change_task/u1", "assigned_toINu1", None),
        ("change_task/u2", "assigned_toINu2", None),
    ]


def test_implicit_member_traversal(servicenow_upstream, servicenow_filters):
    users = entity("sys_user", unique("sys_id"))
    service = PagingService(servicenow_upstream)
    collected = drain_ids(service, PageRequest(entity=users, page_size=2, advanced_filters=servicenow_filters))
    assert collected == ["u1", "u2", "u3"]


def test_cross_account_fan_out(users_entity):
    upstream = StaticPaginator({"B:User": [{"id": "b1"}, {"id": "b2"}]})
    service = PagingService(upstream)
    request = PageRequest(entity=users_entity, page_size=2, accounts=("A", "B"))

    first = service.get_page(request)
    assert ids(first.page) == ["b1", "b2"]
    assert cursor_codec.decode(first.page.next_cursor).account_index == 1

    rest = drain_ids(service, PageRequest(entity=users_entity, page_size=2, accounts=("A", "B"),
                                          cursor=first.page.next_cursor))
    assert rest == []


@pytest.mark.parametrize("max_concurrency", [1, 2])
def test_account_advance_keeps_filling_page(users_entity, max_concurrency):
    upstream = StaticPaginator({
        "A:User": [{"id": "a1"}],
        "B:User": [{"id": "b1"}, {"id": "b2"}],
    })
    service = PagingService(upstream, max_concurrency=max_concurrency)
    pages = list(service.drain(PageRequest(entity=users_entity, page_size=2, accounts=("A", "B"))))

    assert [ids(r.page) for r in pages] == [["a1", "b1"], ["b2"]]
    assert cursor_codec.decode(pages[0].page.next_cursor).account_index == 1
    assert pages[-1].page.next_cursor == ""


def test_full_page_whenever_records_remain_across_accounts(users_entity):
    upstream = StaticPaginator(
        {f"{a}:User": [{"id": f"{a}{i}"} for i in range(n)] for a, n in (("A", 1), ("B", 0), ("C", 4))},
        batch_size=2,
    )
    service = PagingService(upstream)
    pages = list(service.drain(PageRequest(entity=users_entity, page_size=3, accounts=("A", "B", "C"))))

    assert [len(r.page.objects) for r in pages] == [3, 2]


def test_filter_branch_boundary_is_the_only_short_page(servicenow_upstream, servicenow_filters, change_task_entity):
    servicenow_upstream.collections["change_task/u3?assigned_toINu3"] = [{"sys_id": "r3"}]
    service = PagingService(servicenow_upstream)
    pages = list(service.drain(
        PageRequest(entity=change_task_entity, page_size=3, advanced_filters=servicenow_filters),
    ))

    # g1 contributes r1 and r2, g2 contributes r3
    assert [ids(r.page) for r in pages] == [["r1", "r2"], ["r3"]]
    assert cursor_codec.decode(pages[0].page.next_cursor).frame.entity_index == 1
    assert pages[-1].page.next_cursor == ""


def test_collection_join_augments_members():
    upstream = StaticPaginator({
        "Group": [{"GroupName": "admins"}, {"GroupName": "devs"}],
        "GroupPolicy/admins": [{"PolicyArn": "arn:aws:iam::aws:policy/ReadOnly"}],
        "GroupPolicy/devs": [{"PolicyArn": "arn:aws:iam::aws:policy/PowerUser"}],
    })
    config = entity(
        "GroupPolicy",
        unique(),
        AttributeConfig(id="GroupName", external_id="GroupName"),
        collection=CollectionJoin(external_id="Group", parent_key="GroupName", member_key="PolicyArn"),
    )
    service = PagingService(upstream)

    first = service.get_page(PageRequest(entity=config, page_size=1))
    assert first.page.objects[0].get("id") == ["arn:aws:iam::aws:policy/ReadOnly-admins"]
    assert first.page.objects[0].get("GroupName") == ["admins"]
    assert cursor_codec.decode(first.page.next_cursor).frame.collection_id == "admins"

    rest = drain_ids(service, PageRequest(entity=config, page_size=1, cursor=first.page.next_cursor))
    assert rest == ["arn:aws:iam::aws:policy/PowerUser-devs"]


def test_literal_child_entities_drained_across_batches():
    upstream = StaticPaginator(
        {
            "Group": [{"id": "g1"}],
            "members/g1": [{"id": "m1"}, {"id": "m2"}, {"id": "m3"}],
        },
        batch_size=1,
    )
    config = entity("Group", unique(), child_entities=(entity("members", unique()),))
    response = PagingService(upstream).get_page(PageRequest(entity=config, page_size=10))
    group = response.page.objects[0]
    assert [m.get("id")[0] for m in group.children("members")] == ["m1", "m2", "m3"]


def test_coercion_failure_drops_record(caplog):
    upstream = StaticPaginator({"User": [{"id": "u1", "age": "1"}, {"id": "u2", "age": "old"}, {"id": "u3"}]})
    config = entity("User", unique(), AttributeConfig(id="age", external_id="age", type=INT64))
    with caplog.at_level("WARNING", logger="paging.assembler"):
        pages = list(PagingService(upstream).drain(PageRequest(entity=config, page_size=2)))

    assert [ids(r.page) for r in pages] == [["u1", "u3"], []]
    assert any("Dropping record" in r.getMessage() for r in caplog.records)


def test_bool_tokens_applied_from_request():
    upstream = StaticPaginator({"User": [{"id": "u1", "active": "yes"}, {"id": "u2", "active": "no"}]})
    config = entity("User", unique(), AttributeConfig(id="active", external_id="active", type="bool"))
    request = PageRequest(
        entity=config,
        page_size=10,
        options=ExtractionOptions(true_tokens=("yes",), false_tokens=("no",)),
    )
    response = PagingService(upstream).get_page(request)
    assert [o.get("active") for o in response.page.objects] == [[True], [False]]


def test_fatal_upstream_error_aborts_page(users_entity):
    upstream = StaticPaginator({}, failures={"User": UpstreamFatal("Access denied", status_code=403)})
    response = PagingService(upstream).get_page(PageRequest(entity=users_entity, page_size=5))
    assert response.page is None
    assert response.error.code == "UPSTREAM_FATAL"
    assert response.error.context["collection"] == "User"
    assert response.error.context["frame"] == "collection"
    assert response.to_wire()["error"]["retryable"] is False


def test_retryable_error_keeps_input_cursor_valid(users_entity, seven_users):
    service = PagingService(seven_users)
    first = service.get_page(PageRequest(entity=users_entity, page_size=2))
    retry = PageRequest(entity=users_entity, page_size=2, cursor=first.page.next_cursor)

    seven_users.failures["User"] = UpstreamRetryable("Too many requests", status_code=429)
    failed = service.get_page(retry)
    assert failed.error.retryable
    assert failed.to_wire() == {"error": failed.error.to_dict()}

    del seven_users.failures["User"]
    assert ids(service.get_page(retry).page) == ["u3", "u4"]


def test_expired_deadline_is_retryable(users_entity, seven_users):
    request = PageRequest(entity=users_entity, page_size=2, timeout_seconds=0)
    response = PagingService(seven_users).get_page(request)
    assert response.error.code == "UPSTREAM_RETRYABLE"
    assert seven_users.calls == []


def test_runtime_deadline_in_the_past_is_retryable(users_entity, seven_users):
    request = PageRequest(entity=users_entity, page_size=2, deadline=time.monotonic() - 1)
    response = PagingService(seven_users, request_timeout_seconds=60).get_page(request)
    assert response.error.code == "UPSTREAM_RETRYABLE"
    assert seven_users.calls == []


def test_malformed_cursor(users_entity, seven_users):
    response = PagingService(seven_users).get_page(PageRequest(entity=users_entity, page_size=2, cursor="%%%"))
    assert response.error.code == "MALFORMED_CURSOR"


def test_cursor_for_other_shape_is_malformed(servicenow_upstream, servicenow_filters, change_task_entity, users_entity):
    service = PagingService(servicenow_upstream)
    related = service.get_page(PageRequest(entity=change_task_entity, page_size=1, advanced_filters=servicenow_filters))
    response = service.get_page(PageRequest(entity=users_entity, page_size=1, cursor=related.page.next_cursor))
    assert response.error.code == "MALFORMED_CURSOR"


@pytest.mark.parametrize("config,page_size", [
    (entity("User", unique()), 0),
    (entity("User", unique(), unique("email", "email")), 10),
    (entity("User", unique(), AttributeConfig(id="id", external_id="other")), 10),
])
def test_invalid_requests(config, page_size):
    response = PagingService(StaticPaginator({})).get_page(PageRequest(entity=config, page_size=page_size))
    assert response.error.code == "INVALID_CONFIG"


def test_wire_round_trip_from_dict():
    upstream = StaticPaginator({"User": [{"id": "u1", "email": "a@x.io"}]})
    request = PageRequest.from_dict({
        "entity": {
            "id": "User",
            "externalId": "User",
            "attributes": [
                {"id": "id", "externalId": "id", "type": "String", "uniqueId": True},
                {"id": "email", "externalId": "$.email", "type": "String"},
            ],
        },
        "pageSize": 5,
        "cursor": "",
    })
    body = PagingService(upstream).get_page(request).to_wire()
    assert body == {
        "objects": [{
            "attributes": [
                {"id": "id", "values": [{"string_value": "u1"}]},
                {"id": "email", "values": [{"string_value": "a@x.io"}]},
            ],
            "childObjects": [],
        }],
        "nextCursor": "",
    }
    json.dumps(body)


def test_drift_is_logged(caplog):
    upstream = StaticPaginator({
        "Group": [{"GroupName": "admins"}, {"GroupName": "devs"}],
        "GroupPolicy/admins": [{"PolicyArn": "p1"}, {"PolicyArn": "p2"}],
    })
    config = entity(
        "GroupPolicy",
        unique(),
        collection=CollectionJoin(external_id="Group", parent_key="GroupName", member_key="PolicyArn"),
    )
    service = PagingService(upstream)
    first = service.get_page(PageRequest(entity=config, page_size=1))

    upstream.collections["Group"] = [{"GroupName": "auditors"}, {"GroupName": "admins"}]
    with caplog.at_level("WARNING", logger="paging.assembler"):
        service.get_page(PageRequest(entity=config, page_size=1, cursor=first.page.next_cursor))
    assert any("Collection changed" in r.getMessage() for r in caplog.records)


def test_cursor_is_base64_json(users_entity, seven_users):
    first = PagingService(seven_users).get_page(PageRequest(entity=users_entity, page_size=1))
    data = json.loads(base64.b64decode(first.page.next_cursor))
    assert data == {"v": 1, "offset": 1}
