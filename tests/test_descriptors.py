"""
tests/test_descriptors.py
Unit tests for restgen.descriptors (per-endpoint route descriptors).
"""

from __future__ import annotations

from typing import Any, Dict

import pytest
from pydantic import BaseModel

from restgen.auth import AuthActionService
from restgen.config import ValidationSettings
from restgen.descriptors import (
    build_route_descriptor,
    endpoint_path,
    endpoint_suffix,
    parent_foreign_key,
    resolve_authentication,
    resolve_validator,
)
from restgen.errors import ConfigurationError
from restgen.models import (
    AuthConfigs,
    DetailedAccessRule,
    ModelDescriptor,
    ModuleComponents,
    RouterConfig,
)


class CreatePostDto(BaseModel):
    title: str


# ===========================================================================
# Tests for paths
# ===========================================================================


class TestPaths:
    @pytest.mark.parametrize(
        "endpoint, suffix",
        [
            ("createOne", ""),
            ("findMany", ""),
            ("createMany", "/many"),
            ("updateMany", "/many"),
            ("deleteMany", "/many"),
            ("findOne", "/{id}"),
            ("updateOne", "/{id}"),
            ("deleteOne", "/{id}"),
        ],
    )
    def test_endpoint_suffix(self, endpoint: str, suffix: str) -> None:
        assert endpoint_suffix(endpoint) == suffix

    def test_endpoint_path(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        assert endpoint_path(descriptors["Post"], "findOne") == "/posts/{id}"


# ===========================================================================
# Tests for resolve_authentication
# ===========================================================================


class TestResolveAuthentication:
    """Routes are authenticated unless the action is explicitly public."""

    def test_default_is_authenticated_without_rule(
        self, descriptors: Dict[str, ModelDescriptor]
    ) -> None:
        requirement = resolve_authentication(descriptors["Post"], "createOne", None)
        assert requirement is not None
        assert (requirement.resource, requirement.action) == ("post", "Create")
        assert requirement.roles is None

    def test_public_action(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        configs = AuthConfigs.model_validate({"authenticationControl": {"View": False}})
        assert resolve_authentication(descriptors["Post"], "findMany", configs) is None
        assert resolve_authentication(descriptors["Post"], "deleteOne", configs) is not None

    def test_global_switch_off(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        configs = AuthConfigs(authentication_control=False)
        assert resolve_authentication(descriptors["Post"], "deleteMany", configs) is None

    def test_flat_role_list_applies_to_every_action(
        self, descriptors: Dict[str, ModelDescriptor]
    ) -> None:
        configs = AuthConfigs.model_validate({"accessControl": ["admin"]})
        requirement = resolve_authentication(descriptors["Post"], "updateOne", configs)
        assert requirement is not None and requirement.roles == ["admin"]

    def test_detailed_rule(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        configs = AuthConfigs.model_validate(
            {"accessControl": {"Delete": {"roles": ["admin"], "errorMessage": "Admins only"}}}
        )
        requirement = resolve_authentication(descriptors["Post"], "deleteOne", configs)
        assert requirement is not None
        assert isinstance(requirement.rule, DetailedAccessRule)
        assert requirement.roles == ["admin"]
        assert requirement.error_message == "Admins only"
        view = resolve_authentication(descriptors["Post"], "findOne", configs)
        assert view is not None and view.roles is None


# ===========================================================================
# Tests for resolve_validator
# ===========================================================================


class TestResolveValidator:
    """Validators are picked per endpoint for the configured resolver."""

    def test_no_resolver(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        components = ModuleComponents(dtos={"create": CreatePostDto})
        assert resolve_validator(descriptors["Post"], "createOne", ValidationSettings(), components) is None

    def test_dto(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        components = ModuleComponents(dtos={"create": CreatePostDto})
        validator = resolve_validator(
            descriptors["Post"], "createOne", ValidationSettings(resolver="dto"), components
        )
        assert validator is not None
        assert (validator.mode, validator.target, validator.many) == ("dto", CreatePostDto, False)

    def test_create_many_falls_back_to_create(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        components = ModuleComponents(dtos={"create": CreatePostDto})
        validator = resolve_validator(
            descriptors["Post"], "createMany", ValidationSettings(resolver="dto"), components
        )
        assert validator is not None and validator.many is True

    def test_endpoints_without_body(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        components = ModuleComponents(dtos={"create": CreatePostDto})
        settings = ValidationSettings(resolver="dto")
        assert resolve_validator(descriptors["Post"], "findMany", settings, components) is None
        assert resolve_validator(descriptors["Post"], "deleteOne", settings, components) is None

    def test_missing_validator_is_fine_when_not_strict(
        self, descriptors: Dict[str, ModelDescriptor]
    ) -> None:
        validator = resolve_validator(
            descriptors["Post"], "updateOne", ValidationSettings(resolver="dto"), ModuleComponents()
        )
        assert validator is None

    def test_strict_requires_validator(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        with pytest.raises(ConfigurationError):
            resolve_validator(
                descriptors["Post"],
                "updateOne",
                ValidationSettings(resolver="dto", strict=True),
                ModuleComponents(),
            )

    def test_dto_must_be_pydantic(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        with pytest.raises(ConfigurationError):
            resolve_validator(
                descriptors["Post"],
                "createOne",
                ValidationSettings(resolver="dto"),
                ModuleComponents(dtos={"create": dict}),
            )

    def test_schema_create_many_validates_each_item(
        self, descriptors: Dict[str, ModelDescriptor]
    ) -> None:
        components = ModuleComponents(schemas={"create": Dict[str, Any]})
        validator = resolve_validator(
            descriptors["Post"], "createMany", ValidationSettings(resolver="schema"), components
        )
        assert validator is not None
        assert validator.mode == "schema" and validator.many is True


# ===========================================================================
# Tests for build_route_descriptor
# ===========================================================================


class TestBuildRouteDescriptor:
    def test_basic(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        route = build_route_descriptor(descriptors["Post"], "updateMany", None, None, None)
        assert (route.method, route.path, route.disabled) == ("PATCH", "/posts/many", False)
        assert route.authentication is not None
        assert route.validation is None

    def test_authentication_disabled_globally(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        route = build_route_descriptor(
            descriptors["Post"], "createOne", None, None, None, authentication_enabled=False
        )
        assert route.authentication is None

    def test_registers_auth_action(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        actions = AuthActionService()
        configs = AuthConfigs.model_validate({"accessControl": {"Create": ["editor"]}})
        build_route_descriptor(descriptors["Post"], "createOne", None, configs, None, auth_actions=actions)
        build_route_descriptor(descriptors["Post"], "createMany", None, configs, None, auth_actions=actions)
        entry = actions.get_one("Create", "post")
        assert entry is not None and entry.roles == ["editor"]
        assert len(actions.get_by_resource("post")) == 1

    def test_disabled_endpoint_not_registered(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        actions = AuthActionService()
        config = RouterConfig(disable={"deleteOne": True})
        route = build_route_descriptor(
            descriptors["Post"], "deleteOne", config, None, None, auth_actions=actions
        )
        assert route.disabled is True
        assert not actions.exists("Delete", "post")

    def test_disabled_endpoint_skips_strict_validation(
        self, descriptors: Dict[str, ModelDescriptor]
    ) -> None:
        config = RouterConfig(disable={"createOne": True, "updateOne": True})
        strict = ValidationSettings(resolver="dto", strict=True)
        for endpoint in ("createOne", "updateOne"):
            route = build_route_descriptor(descriptors["Post"], endpoint, config, None, strict)
            assert route.disabled is True
            assert route.validation is None

    def test_parent_foreign_key(self, descriptors: Dict[str, ModelDescriptor]) -> None:
        assert parent_foreign_key(descriptors["User"], None) == "userId"
        assert parent_foreign_key(descriptors["User"], "authorId") == "authorId"
