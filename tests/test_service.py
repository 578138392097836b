"""
tests/test_service.py
Unit tests for restgen.service against the in-memory FakeDelegate.

Tests cover:
- Relation body normalisation (connect/create/update/delete/disconnect)
- Default projections (singular relations included, password omitted)
- CRUD methods and the arguments they pass to the delegate
- Service hooks (before/after/on-error)
- Batch update/delete transactions
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import pytest

from restgen.errors import BadRequest, MissingArrayRequestBody, NotFound
from restgen.models import ModelDescriptor
from restgen.service import (
    BaseService,
    can_connect,
    is_relation_operation,
    normalize_relation_body,
    strip_api_action,
)

from conftest import FakeDelegate


# ===========================================================================
# Tests for relation helpers
# ===========================================================================


class TestRelationHelpers:
    def test_can_connect_by_id(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        assert can_connect(descriptors["User"], {"id": 1}) is True

    def test_can_connect_by_unique_field(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        assert can_connect(descriptors["Tag"], {"name": "python"}) is True

    def test_cannot_connect_with_extra_fields(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        assert can_connect(descriptors["User"], {"id": 1, "name": "x"}) is False

    def test_explicit_connect_action(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        assert can_connect(descriptors["User"], {"email": "a@b.c", "apiAction": "connect"}) is True

    def test_is_relation_operation(self) -> None:
        assert is_relation_operation({"connect": {"id": 1}}) is True
        assert is_relation_operation({"id": 1}) is False
        assert is_relation_operation([{"id": 1}]) is False

    def test_strip_api_action_recurses(self) -> None:
        body = {"apiAction": "x", "a": [{"apiAction": "y", "b": 1}]}
        assert strip_api_action(body) == {"a": [{"b": 1}]}


# ===========================================================================
# Tests for normalize_relation_body
# ===========================================================================


class TestNormalizeRelationBody:
    """Relation keys of request bodies become ORM relation operations."""

    def test_scalars_untouched(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        body = {"title": "x", "views": 1}
        assert normalize_relation_body(body, descriptors["Post"], descriptors) == body

    def test_singular_connect(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        result = normalize_relation_body({"author": {"id": 1}}, descriptors["Post"], descriptors)
        assert result == {"author": {"connect": {"id": 1}}}

    def test_singular_create(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        result = normalize_relation_body(
            {"author": {"email": "a@b.c", "name": "Ann"}}, descriptors["Post"], descriptors
        )
        assert result == {"author": {"create": {"email": "a@b.c", "name": "Ann"}}}

    def test_singular_update(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        result = normalize_relation_body(
            {"author": {"id": 1, "name": "Ann", "apiAction": "update"}},
            descriptors["Post"],
            descriptors,
        )
        assert result == {"author": {"update": {"where": {"id": 1}, "data": {"name": "Ann"}}}}

    def test_singular_disconnect(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        result = normalize_relation_body(
            {"author": {"id": 1, "apiAction": "disconnect"}}, descriptors["Post"], descriptors
        )
        assert result == {"author": {"disconnect": True}}

    def test_list_relation_groups_actions(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        body = {
            "tags": [
                {"id": 1},
                {"name": "new", "apiAction": "create"},
                {"id": 2, "name": "renamed", "apiAction": "update"},
                {"id": 3, "apiAction": "disconnect"},
                {"id": 4, "apiAction": "delete"},
            ]
        }
        result = normalize_relation_body(body, descriptors["Post"], descriptors)
        assert result == {
            "tags": {
                "connect": [{"id": 1}],
                "create": [{"name": "new"}],
                "update": [{"where": {"id": 2}, "data": {"name": "renamed"}}],
                "disconnect": [{"id": 3}],
                "deleteMany": {"id": {"in": [4]}},
            }
        }

    def test_nested_creates_are_normalised(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        body = {"posts": [{"title": "Hi", "tags": [{"id": 7}]}]}
        result = normalize_relation_body(body, descriptors["User"], descriptors)
        assert result == {
            "posts": {"create": [{"title": "Hi", "tags": {"connect": [{"id": 7}]}}]}
        }

    def test_ignored_actions_are_dropped(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        body = {"tags": [{"id": 1, "apiAction": "delete"}, {"id": 2}]}
        result = normalize_relation_body(
            body, descriptors["Post"], descriptors, ignore_actions={"delete"}
        )
        assert result == {"tags": {"connect": [{"id": 2}]}}

    def test_existing_operations_pass_through(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        body = {"tags": {"set": [{"id": 1}]}}
        assert normalize_relation_body(body, descriptors["Post"], descriptors) == body

    def test_unknown_api_action(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        with pytest.raises(BadRequest) as exc_info:
            normalize_relation_body(
                {"tags": [{"id": 1, "apiAction": "explode"}]}, descriptors["Post"], descriptors
            )
        assert exc_info.value.code == "InvalidRelationAction"

    def test_top_level_api_action_rejected(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        with pytest.raises(BadRequest):
            normalize_relation_body({"apiAction": "create"}, descriptors["Post"], descriptors)

    def test_update_without_unique_key(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        with pytest.raises(BadRequest) as exc_info:
            normalize_relation_body(
                {"posts": [{"title": "x", "apiAction": "update"}]}, descriptors["User"], descriptors
            )
        assert exc_info.value.code == "NoFieldToUseInWhereClause"

    def test_input_not_mutated(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        body: Dict[str, Any] = {"author": {"id": 1}}
        normalize_relation_body(body, descriptors["Post"], descriptors)
        assert body == {"author": {"id": 1}}


# ===========================================================================
# Tests for BaseService CRUD
# ===========================================================================


class TestServiceCrud:
    """The service shapes delegate arguments and returns plain dicts."""

    def test_create_one_includes_singular_relations(
        self, post_service: BaseService, post_delegate: FakeDelegate
    ) -> None:
        record = asyncio.run(post_service.create_one({"title": "New", "author": {"id": 1}}))
        assert record["title"] == "New"
        name, args = post_delegate.calls[-1]
        assert name == "create"
        assert args["data"] == {"title": "New", "author": {"connect": {"id": 1}}}
        assert args["include"] == {"author": True}

    def test_create_one_drops_delete_actions(
        self, post_service: BaseService, post_delegate: FakeDelegate
    ) -> None:
        asyncio.run(
            post_service.create_one({"title": "New", "tags": [{"id": 1, "apiAction": "delete"}]})
        )
        assert post_delegate.calls[-1][1]["data"] == {"title": "New"}

    def test_select_disables_default_include(
        self, post_service: BaseService, post_delegate: FakeDelegate
    ) -> None:
        asyncio.run(post_service.find_many({"select": {"id": True}}))
        args = post_delegate.calls[-1][1]
        assert "include" not in args
        assert args["select"] == {"id": True}

    def test_create_many(self, post_service: BaseService, post_delegate: FakeDelegate) -> None:
        result = asyncio.run(post_service.create_many([{"title": "a"}, {"title": "b"}]))
        assert result == {"count": 2}
        assert len(post_delegate.rows) == 5

    @pytest.mark.parametrize("body", [[], {"title": "x"}, None])
    def test_create_many_requires_array(self, post_service: BaseService, body: Any) -> None:
        with pytest.raises(MissingArrayRequestBody):
            asyncio.run(post_service.create_many(body))

    def test_find_many_filters_win_over_options(
        self, post_service: BaseService, post_delegate: FakeDelegate
    ) -> None:
        asyncio.run(post_service.find_many({"take": 1}, {"take": 10, "orderBy": [{"id": "desc"}]}))
        args = post_delegate.calls[-1][1]
        assert args["take"] == 1
        assert args["orderBy"] == [{"id": "desc"}]

    def test_count(self, post_service: BaseService) -> None:
        assert asyncio.run(post_service.count({"published": False})) == 2

    def test_find_one_by_id_is_unique_lookup(
        self, post_service: BaseService, post_delegate: FakeDelegate
    ) -> None:
        record = asyncio.run(post_service.find_one({"id": 2}))
        assert record is not None and record["title"] == "Second post"
        assert post_delegate.calls[-1][0] == "find_unique"

    def test_find_one_with_other_filters_is_first_match(
        self, post_service: BaseService, post_delegate: FakeDelegate
    ) -> None:
        asyncio.run(post_service.find_one({"id": 2, "authorId": 1}))
        assert post_delegate.calls[-1][0] == "find_first"

    def test_find_one_me_is_first_match(
        self, post_service: BaseService, post_delegate: FakeDelegate
    ) -> None:
        asyncio.run(post_service.find_one({"id": "me"}))
        assert post_delegate.calls[-1][0] == "find_first"

    def test_find_one_rejects_non_mapping_filters(self, post_service: BaseService) -> None:
        with pytest.raises(BadRequest):
            asyncio.run(post_service.find_one("id=1"))  # type: ignore[arg-type]

    def test_find_by_id(self, post_service: BaseService) -> None:
        assert asyncio.run(post_service.find_by_id(3))["title"] == "Draft"
        assert asyncio.run(post_service.find_by_id(99)) is None

    def test_update_one(self, post_service: BaseService, post_delegate: FakeDelegate) -> None:
        record = asyncio.run(post_service.update_one({"id": 1}, {"title": "Changed"}))
        assert record is not None and record["title"] == "Changed"

    def test_update_one_missing_returns_none(self, post_service: BaseService) -> None:
        assert asyncio.run(post_service.update_one({"id": 99}, {"title": "x"})) is None

    def test_update_many(self, post_service: BaseService, post_delegate: FakeDelegate) -> None:
        result = asyncio.run(post_service.update_many({"authorId": 1}, {"published": True}))
        assert result == {"count": 2}
        assert all(r["published"] for r in post_delegate.rows if r["authorId"] == 1)

    def test_delete_one_returns_snapshot(
        self, post_service: BaseService, post_delegate: FakeDelegate
    ) -> None:
        record = asyncio.run(post_service.delete_one({"id": 3}))
        assert record is not None and record["id"] == 3
        assert [r["id"] for r in post_delegate.rows] == [1, 2]

    def test_delete_many(self, post_service: BaseService) -> None:
        assert asyncio.run(post_service.delete_many({"published": False})) == {"count": 2}


# ===========================================================================
# Tests for the user model
# ===========================================================================


class TestUserModel:
    """Passwords are hashed on write and omitted on read."""

    @pytest.fixture()
    def user_service(self, descriptors: Dict[str, ModelDescriptor]) -> BaseService:
        return BaseService(descriptors["User"], FakeDelegate(), descriptors=descriptors)

    def test_password_is_hashed(self, user_service: BaseService) -> None:
        asyncio.run(user_service.create_one({"email": "a@b.c", "name": "A", "password": "secret"}))
        stored = user_service.delegate.rows[0]["password"]
        assert stored != "secret"
        assert user_service.password_hasher.is_correct_password("secret", stored)

    def test_hashed_password_not_rehashed(self, user_service: BaseService) -> None:
        hashed = user_service.password_hasher.hash_password("secret")
        asyncio.run(user_service.create_one({"email": "a@b.c", "name": "A", "password": hashed}))
        assert user_service.delegate.rows[0]["password"] == hashed

    def test_password_omitted_from_result(self, user_service: BaseService) -> None:
        record = asyncio.run(
            user_service.create_one({"email": "a@b.c", "name": "A", "password": "secret"})
        )
        assert "password" not in record


# ===========================================================================
# Tests for service hooks
# ===========================================================================


class TestServiceHooks:
    """before/after/on-error hooks receive one payload dict."""

    def test_before_and_after(
        self, descriptors: Dict[str, ModelDescriptor], post_delegate: FakeDelegate
    ) -> None:
        seen: List[str] = []

        def before(payload: Dict[str, Any]) -> None:
            seen.append(f"before:{payload['data']['title']}")

        async def after(payload: Dict[str, Any]) -> None:
            seen.append(f"after:{payload['result']['id']}")

        service = BaseService(
            descriptors["Post"],
            post_delegate,
            hooks={"beforeCreateOne": before, "afterCreateOne": [after]},
            descriptors=descriptors,
        )
        asyncio.run(service.create_one({"title": "Hooked"}))
        assert seen == ["before:Hooked", "after:4"]

    def test_on_error_then_reraise(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        errors: List[Exception] = []
        service = BaseService(
            descriptors["Post"],
            FakeDelegate(),
            hooks={"onCreateManyError": lambda payload: errors.append(payload["error"])},
            descriptors=descriptors,
        )

        async def failing(args: Dict[str, Any]) -> Dict[str, int]:
            raise RuntimeError("db down")

        service.delegate.create_many = failing  # type: ignore[method-assign]
        with pytest.raises(RuntimeError):
            asyncio.run(service.create_many([{"title": "x"}]))
        assert len(errors) == 1 and str(errors[0]) == "db down"

    def test_skip_service_hooks(
        self, descriptors: Dict[str, ModelDescriptor], post_delegate: FakeDelegate
    ) -> None:
        calls: List[Any] = []
        service = BaseService(
            descriptors["Post"],
            post_delegate,
            hooks={"beforeCount": calls.append},
            descriptors=descriptors,
        )
        asyncio.run(service.count({}, {"skip_service_hooks": True}))
        asyncio.run(service.count({}))
        assert len(calls) == 1


# ===========================================================================
# Tests for batch operations
# ===========================================================================


class TestBatchOperations:
    """Batch updates and deletes succeed or fail as a whole."""

    def test_batch_update(self, post_service: BaseService) -> None:
        results = asyncio.run(
            post_service.batch_update(
                [{"id": 1, "title": "One"}, {"where": {"id": 2}, "data": {"title": "Two"}}]
            )
        )
        assert [r["title"] for r in results] == ["One", "Two"]

    def test_batch_update_rolls_back_on_missing_record(
        self, post_service: BaseService, post_delegate: FakeDelegate
    ) -> None:
        with pytest.raises(NotFound):
            asyncio.run(post_service.batch_update([{"id": 1, "title": "One"}, {"id": 99, "title": "x"}]))
        assert post_delegate.rows[0]["title"] == "Hello world"

    def test_batch_update_scoped_by_filters(
        self, post_service: BaseService, post_delegate: FakeDelegate
    ) -> None:
        with pytest.raises(NotFound):
            asyncio.run(post_service.batch_update([{"id": 3, "title": "x"}], {"authorId": 1}))
        assert post_delegate.rows[2]["title"] == "Draft"

    def test_batch_update_entry_without_id(self, post_service: BaseService) -> None:
        with pytest.raises(BadRequest):
            asyncio.run(post_service.batch_update([{"title": "x"}]))

    def test_batch_delete(self, post_service: BaseService, post_delegate: FakeDelegate) -> None:
        results = asyncio.run(post_service.batch_delete([{"id": 1}, {"id": 2}]))
        assert [r["id"] for r in results] == [1, 2]
        assert [r["id"] for r in post_delegate.rows] == [3]

    def test_batch_delete_rolls_back(
        self, post_service: BaseService, post_delegate: FakeDelegate
    ) -> None:
        with pytest.raises(NotFound):
            asyncio.run(post_service.batch_delete([{"id": 1}, {"id": 42}]))
        assert len(post_delegate.rows) == 3

    def test_batch_requires_array(self, post_service: BaseService) -> None:
        with pytest.raises(MissingArrayRequestBody):
            asyncio.run(post_service.batch_delete([]))
