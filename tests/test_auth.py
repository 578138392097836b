"""
tests/test_auth.py
Unit tests for restgen.auth.

Tests cover:
- Password hashing
- The auth action registry
- JWT signing / verification and request authentication
- Static and dynamic access control
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest
from jose import jwt
from starlette.requests import Request

from restgen.auth import AuthActionService, AuthService, PasswordHasher
from restgen.config import AuthenticationSettings, RestGenSettings
from restgen.errors import AppError, Unauthorized
from restgen.models import AuthRequirement, DetailedAccessRule


def _request(headers: Optional[List[Tuple[str, str]]] = None, path: str = "/api/posts") -> Request:
    return Request(
        {
            "type": "http",
            "method": "GET",
            "scheme": "http",
            "server": ("testserver", 80),
            "path": path,
            "query_string": b"",
            "headers": [(k.lower().encode(), v.encode()) for k, v in headers or []],
        }
    )


@pytest.fixture()
def authentication(auth_settings: RestGenSettings) -> AuthenticationSettings:
    assert auth_settings.authentication is not None
    return auth_settings.authentication


@pytest.fixture()
def auth_service(authentication: AuthenticationSettings) -> AuthService:
    users: Dict[Any, Dict[str, Any]] = {
        1: {"id": 1, "email": "ada@example.com", "role": "admin"},
    }

    async def load_user(user_id: Any) -> Optional[Dict[str, Any]]:
        return users.get(user_id)

    return AuthService(authentication, user_loader=load_user)


# ===========================================================================
# Tests for PasswordHasher
# ===========================================================================


class TestPasswordHasher:
    def test_hash_and_verify(self) -> None:
        hasher = PasswordHasher()
        hashed = hasher.hash_password("s3cret!")
        assert hashed != "s3cret!"
        assert hasher.is_password_hashed(hashed)
        assert hasher.is_correct_password("s3cret!", hashed)
        assert not hasher.is_correct_password("wrong", hashed)

    def test_plain_text_is_not_a_hash(self) -> None:
        hasher = PasswordHasher()
        assert not hasher.is_password_hashed("s3cret!")
        assert not hasher.is_password_hashed(None)
        assert not hasher.is_correct_password("x", "not-a-hash")


# ===========================================================================
# Tests for AuthActionService
# ===========================================================================


class TestAuthActionService:
    def test_starts_with_listing_entry(self) -> None:
        actions = AuthActionService()
        assert len(actions) == 1
        assert actions.exists("View", "auth-action")

    def test_add_is_idempotent(self) -> None:
        actions = AuthActionService()
        first = actions.add("Create", "post", ["editor"])
        second = actions.add("Create", "post", ["admin"])
        assert first is second
        assert first.roles == ["editor"]
        assert len(actions) == 2

    def test_add_from_detailed_rule(self) -> None:
        actions = AuthActionService()
        rule = DetailedAccessRule(roles=["admin"], error_message="Admins only")
        entry = actions.add("Delete", "blog-post", {"Delete": rule})
        assert entry.roles == ["admin"]
        assert entry.error_message == "Admins only"
        assert entry.name == "Delete blog-post"
        assert entry.description == "Delete Blog post"

    def test_lookups(self) -> None:
        actions = AuthActionService()
        actions.add("Create", "post")
        actions.add("View", "post")
        actions.add("View", "user")
        assert [a.action for a in actions.get_by_resource("post")] == ["Create", "View"]
        assert len(actions.get_by_action("View")) == 3
        assert actions.get_unique_actions() == ["View", "Create"]
        assert actions.get_unique_resources() == ["auth-action", "post", "user"]
        assert actions.get_one("Delete", "post") is None

    def test_to_list_uses_camel_case(self) -> None:
        exported = AuthActionService().to_list()
        assert exported[0]["errorMessage"]
        assert "error_message" not in exported[0]

    def test_reset(self) -> None:
        actions = AuthActionService()
        actions.add("Create", "post")
        actions.reset()
        assert len(actions) == 1


# ===========================================================================
# Tests for tokens and authentication
# ===========================================================================


class TestTokens:
    def test_round_trip_claims(self, auth_service: AuthService) -> None:
        claims = auth_service.verify_jwt_token(auth_service.sign_jwt_token(1))
        assert claims["id"] == 1
        assert claims["exp"] > claims["iat"]

    def test_wrong_secret(self, auth_service: AuthService) -> None:
        token = jwt.encode({"id": 1}, "another-secret", algorithm="HS256")
        with pytest.raises(Unauthorized) as exc_info:
            auth_service.verify_jwt_token(token)
        assert exc_info.value.code == "InvalidAuthToken"

    def test_expired(self, auth_service: AuthService) -> None:
        token = auth_service.sign_jwt_token(1, expires_in=-10)
        with pytest.raises(Unauthorized):
            auth_service.verify_jwt_token(token)

    def test_missing_id_claim(self, auth_service: AuthService) -> None:
        token = jwt.encode({"sub": "x"}, "test-secret", algorithm="HS256")
        with pytest.raises(Unauthorized):
            auth_service.verify_jwt_token(token)

    def test_extract_token_header_and_cookie(self, auth_service: AuthService) -> None:
        assert auth_service.extract_token(_request([("Authorization", "Bearer abc")])) == "abc"
        assert auth_service.extract_token(_request([("Cookie", "access_token=xyz")])) == "xyz"
        assert auth_service.extract_token(_request([("Cookie", "access_token=no-token")])) is None
        assert auth_service.extract_token(_request()) is None


class TestAuthenticate:
    def test_success(self, auth_service: AuthService) -> None:
        token = auth_service.sign_jwt_token(1)
        user, used = asyncio.run(
            auth_service.authenticate(_request([("Authorization", f"Bearer {token}")]))
        )
        assert user["email"] == "ada@example.com"
        assert used == token

    def test_login_required(self, auth_service: AuthService) -> None:
        with pytest.raises(Unauthorized) as exc_info:
            asyncio.run(auth_service.authenticate(_request()))
        assert exc_info.value.code == "LoginRequired"

    def test_user_gone(self, auth_service: AuthService) -> None:
        token = auth_service.sign_jwt_token(99)
        with pytest.raises(Unauthorized) as exc_info:
            asyncio.run(auth_service.authenticate(_request([("Authorization", f"Bearer {token}")])))
        assert exc_info.value.code == "UserNoLongerExists"

    def test_password_changed_after_issue(self, authentication: AuthenticationSettings) -> None:
        changed = datetime.now(timezone.utc) + timedelta(minutes=5)

        async def load_user(user_id: Any) -> Dict[str, Any]:
            return {"id": user_id, "role": "user", "passwordChangedAt": changed}

        service = AuthService(authentication, user_loader=load_user)
        token = service.sign_jwt_token(1)
        with pytest.raises(Unauthorized) as exc_info:
            asyncio.run(service.authenticate(_request([("Authorization", f"Bearer {token}")])))
        assert exc_info.value.code == "PasswordChanged"


# ===========================================================================
# Tests for has_permission
# ===========================================================================


class TestHasPermission:
    """Static mode compares roles, dynamic mode asks the checker."""

    def test_no_roles_configured(self, auth_service: AuthService) -> None:
        requirement = AuthRequirement(resource="post", action="View")
        assert asyncio.run(auth_service.has_permission({"role": "user"}, requirement))

    def test_role_match(self, auth_service: AuthService) -> None:
        requirement = AuthRequirement(resource="post", action="Delete", rule=["admin"])
        assert asyncio.run(auth_service.has_permission({"role": "admin"}, requirement))
        assert not asyncio.run(auth_service.has_permission({"role": "user"}, requirement))

    def test_multiple_roles(self, auth_service: AuthService) -> None:
        requirement = AuthRequirement(resource="post", action="Delete", rule=["admin"])
        assert asyncio.run(auth_service.has_permission({"roles": ["user", "admin"]}, requirement))

    def test_super_user(self, auth_service: AuthService) -> None:
        requirement = AuthRequirement(resource="post", action="Delete", rule=["admin"])
        assert asyncio.run(auth_service.has_permission({"isSuperUser": True}, requirement))

    def test_missing_role_field(self, auth_service: AuthService) -> None:
        requirement = AuthRequirement(resource="post", action="Delete", rule=["admin"])
        with pytest.raises(AppError) as exc_info:
            asyncio.run(auth_service.has_permission({"id": 1}, requirement))
        assert exc_info.value.status_code == 500
        assert exc_info.value.code == "MissingUserRoleField"

    def test_dynamic_sync_checker(self, authentication: AuthenticationSettings) -> None:
        seen: List[Tuple[str, str]] = []

        def checker(user: Dict[str, Any], resource: str, action: str) -> bool:
            seen.append((resource, action))
            return action == "View"

        service = AuthService(
            authentication.model_copy(update={"mode": "dynamic"}), permission_checker=checker
        )
        view = AuthRequirement(resource="post", action="View", rule=["admin"])
        delete = AuthRequirement(resource="post", action="Delete")
        assert asyncio.run(service.has_permission({"role": "user"}, view))
        assert not asyncio.run(service.has_permission({"role": "user"}, delete))
        assert seen == [("post", "View"), ("post", "Delete")]

    def test_dynamic_async_checker(self, authentication: AuthenticationSettings) -> None:
        async def checker(user: Dict[str, Any], resource: str, action: str) -> bool:
            return user.get("id") == 1

        service = AuthService(
            authentication.model_copy(update={"mode": "dynamic"}), permission_checker=checker
        )
        requirement = AuthRequirement(resource="post", action="Create")
        assert asyncio.run(service.has_permission({"id": 1}, requirement))
        assert not asyncio.run(service.has_permission({"id": 2}, requirement))

    def test_dynamic_without_checker_denies(self, authentication: AuthenticationSettings) -> None:
        service = AuthService(authentication.model_copy(update={"mode": "dynamic"}))
        requirement = AuthRequirement(resource="post", action="Create")
        assert not asyncio.run(service.has_permission({"role": "admin"}, requirement))


class TestRouteDependencies:
    def test_public_route(self, auth_service: AuthService) -> None:
        assert auth_service.route_dependencies(None) == []

    def test_authenticated_route(self, auth_service: AuthService) -> None:
        requirement = AuthRequirement(resource="post", action="Create")
        assert len(auth_service.route_dependencies(requirement)) == 2
