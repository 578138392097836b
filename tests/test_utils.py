"""
tests/test_utils.py
Unit tests for restgen.utils.

Tests cover:
- Case conversion helpers
- Route naming and pluralisation
- Path canonicalisation and joining
- deep_merge precedence
- Timer
"""

from __future__ import annotations

from typing import Any, Dict

import pytest

from restgen.utils import (
    Timer,
    canonicalize_path,
    deep_merge,
    join_paths,
    model_to_route_name,
    to_camel_case,
    to_kebab_case,
    to_pascal_case,
    to_plural,
    to_snake_case,
)


# ===========================================================================
# Tests for case conversion
# ===========================================================================


class TestCaseConversion:
    """Every helper accepts any casing style as input."""

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("UserProfile", "user_profile"),
            ("auth-action", "auth_action"),
            ("HTTPRequest", "http_request"),
            ("", ""),
        ],
    )
    def test_to_snake_case(self, name: str, expected: str) -> None:
        assert to_snake_case(name) == expected

    def test_to_pascal_case(self) -> None:
        assert to_pascal_case("order-item") == "OrderItem"
        assert to_pascal_case("user_profile") == "UserProfile"

    def test_to_camel_case(self) -> None:
        assert to_camel_case("OrderItem") == "orderItem"
        assert to_camel_case("") == ""

    def test_to_kebab_case(self) -> None:
        assert to_kebab_case("BlogPost") == "blog-post"
        assert to_kebab_case("user") == "user"


# ===========================================================================
# Tests for pluralisation
# ===========================================================================


class TestPluralisation:
    """Route names are the kebab-case plural of the model name."""

    @pytest.mark.parametrize(
        "word, expected",
        [
            ("post", "posts"),
            ("category", "categories"),
            ("box", "boxes"),
            ("person", "people"),
            ("news", "news"),
            ("order-item", "order-items"),
            ("key", "keys"),
        ],
    )
    def test_to_plural(self, word: str, expected: str) -> None:
        assert to_plural(word) == expected

    def test_model_to_route_name(self) -> None:
        assert model_to_route_name("BlogPost") == "blog-posts"
        assert model_to_route_name("User") == "users"


# ===========================================================================
# Tests for paths
# ===========================================================================


class TestPaths:
    """Custom router paths and generated paths compare in canonical form."""

    @pytest.mark.parametrize(
        "path, expected",
        [
            ("/api/users/:id/", "users/{}"),
            ("users/{user_id}", "users/{}"),
            ("//users//many", "users/many"),
            ("/", ""),
            ("/apis/users", "apis/users"),
        ],
    )
    def test_canonicalize_path(self, path: str, expected: str) -> None:
        assert canonicalize_path(path) == expected

    def test_express_and_fastapi_params_are_equal(self) -> None:
        assert canonicalize_path("/posts/:id") == canonicalize_path("/posts/{id}")

    def test_join_paths(self) -> None:
        assert join_paths("/posts", "/{id}") == "/posts/{id}"
        assert join_paths("/posts", "") == "/posts"
        assert join_paths("", "/") == "/"


# ===========================================================================
# Tests for deep_merge
# ===========================================================================


class TestDeepMerge:
    """Later layers win; nested mappings merge; inputs are untouched."""

    def test_later_layer_wins(self) -> None:
        assert deep_merge({"a": 1}, {"a": 2}) == {"a": 2}

    def test_nested_mappings_merge(self) -> None:
        merged = deep_merge(
            {"include": {"author": True}},
            {"include": {"tags": True}, "take": 5},
        )
        assert merged == {"include": {"author": True, "tags": True}, "take": 5}

    def test_lists_are_replaced(self) -> None:
        assert deep_merge({"orderBy": [{"a": "asc"}]}, {"orderBy": []}) == {"orderBy": []}

    def test_none_layers_are_skipped(self) -> None:
        assert deep_merge(None, {"a": 1}, None) == {"a": 1}

    def test_inputs_are_not_mutated(self) -> None:
        left: Dict[str, Any] = {"include": {"author": True}}
        deep_merge(left, {"include": {"tags": True}})
        assert left == {"include": {"author": True}}


# ===========================================================================
# Tests for Timer
# ===========================================================================


class TestTimer:
    def test_elapsed_is_measured(self) -> None:
        with Timer("noop") as t:
            sum(range(100))
        assert t.elapsed >= 0.0
        assert t.label == "noop"
