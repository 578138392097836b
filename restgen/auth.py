# File: restgen/auth.py
"""
NexaFlow RestGen - Authentication & Access Control
====================================================
Three pieces live here:

``PasswordHasher``
    passlib ``CryptContext`` (bcrypt) wrapper used by the service layer to
    hash user passwords and by ``AuthService`` to check them.

``AuthActionService``
    Registry of every (action, resource) capability the generated routes
    expose.  Filled as a side effect of building route descriptors and
    exported through ``GET /auth-actions`` and ``restgen auth-actions``.

``AuthService``
    JWT signing/verification (python-jose), request authentication and the
    FastAPI dependencies attached to authenticated routes.
"""

from __future__ import annotations

import inspect
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from fastapi import Depends, Request
from jose import JWTError, jwt
from passlib.context import CryptContext

from restgen.config import AuthenticationSettings
from restgen.errors import AppError, Forbidden, Unauthorized
from restgen.models import AuthAction, AuthRequirement, DetailedAccessRule
from restgen.utils import to_kebab_case

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("restgen.auth")

DEFAULT_FORBIDDEN_MESSAGE: str = "You do not have permission to perform this action"
DEFAULT_ACTION_ERROR_MESSAGE: str = "You do not have permission to perform this operation"

UserLoader = Callable[[Any], Awaitable[Optional[Dict[str, Any]]]]
PermissionChecker = Callable[[Any, str, str], Any]


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


class PasswordHasher:
    """bcrypt password hashing via passlib."""

    def __init__(self) -> None:
        self._context: CryptContext = CryptContext(schemes=["bcrypt"], deprecated="auto")

    def hash_password(self, password: str) -> str:
        return self._context.hash(password)

    def is_correct_password(self, candidate: str, hashed: str) -> bool:
        try:
            return self._context.verify(candidate, hashed)
        except (ValueError, TypeError):
            return False

    def is_password_hashed(self, value: Any) -> bool:
        """True when *value* already looks like a hash this context understands."""
        return isinstance(value, str) and self._context.identify(value) is not None


# ---------------------------------------------------------------------------
# Auth action registry
# ---------------------------------------------------------------------------


def _capitalize(text: str) -> str:
    return text[:1].upper() + text[1:]


def _humanize(name: str) -> str:
    return _capitalize(to_kebab_case(name).replace("-", " "))


def _rule_roles(rule: Any) -> List[str]:
    if rule is None:
        return []
    if isinstance(rule, str):
        return [rule]
    if isinstance(rule, (list, tuple)):
        return list(rule)
    if isinstance(rule, DetailedAccessRule):
        return list(rule.roles)
    if isinstance(rule, Mapping):
        return list(rule.get("roles") or [])
    return []


def _rule_meta(rule: Any, key: str, alias: Optional[str] = None) -> Optional[str]:
    if isinstance(rule, DetailedAccessRule):
        return getattr(rule, key)
    if isinstance(rule, Mapping):
        return rule.get(key) or (rule.get(alias) if alias else None)
    return None


class AuthActionService:
    """
    Idempotent registry of (action, resource) capabilities.

    The registry always contains the ``View auth-action`` entry guarding the
    listing endpoint itself.
    """

    def __init__(self) -> None:
        self._actions: List[AuthAction] = []
        self.reset()

    def reset(self) -> None:
        self._actions = [
            AuthAction(
                roles=[],
                action="View",
                resource="auth-action",
                name="View auth action",
                description="View an auth action",
                error_message=DEFAULT_ACTION_ERROR_MESSAGE,
            )
        ]

    def add(self, action: str, resource: str, access_control: Any = None) -> AuthAction:
        """Register (action, resource) unless already present; return the entry."""
        existing = self.get_one(action, resource)
        if existing is not None:
            return existing

        if isinstance(access_control, (list, tuple, str)):
            rule: Any = access_control
        elif isinstance(access_control, Mapping):
            rule = access_control.get(action)
        else:
            rule = None

        entry = AuthAction(
            roles=_rule_roles(rule),
            action=action,
            resource=resource,
            name=_rule_meta(rule, "name") or f"{action} {resource}",
            description=_rule_meta(rule, "description") or f"{_humanize(action)} {_humanize(resource)}",
            error_message=_rule_meta(rule, "error_message", "errorMessage")
            or DEFAULT_ACTION_ERROR_MESSAGE,
        )
        self._actions.append(entry)
        logger.debug("Registered auth action %s %s (roles=%s)", action, resource, entry.roles)
        return entry

    def get_all(self) -> List[AuthAction]:
        return list(self._actions)

    def get_one(self, action: str, resource: str) -> Optional[AuthAction]:
        for entry in self._actions:
            if entry.action == action and entry.resource == resource:
                return entry
        return None

    def get_unique_actions(self) -> List[str]:
        return list(dict.fromkeys(entry.action for entry in self._actions))

    def get_unique_resources(self) -> List[str]:
        return list(dict.fromkeys(entry.resource for entry in self._actions))

    def get_by_resource(self, resource: str) -> List[AuthAction]:
        return [entry for entry in self._actions if entry.resource == resource]

    def get_by_action(self, action: str) -> List[AuthAction]:
        return [entry for entry in self._actions if entry.action == action]

    def exists(self, action: str, resource: str) -> bool:
        return self.get_one(action, resource) is not None

    def to_list(self) -> List[Dict[str, Any]]:
        """Plain dicts with camelCase keys, for JSON/YAML export."""
        return [entry.model_dump(by_alias=True) for entry in self._actions]

    def __len__(self) -> int:
        return len(self._actions)


auth_action_service: AuthActionService = AuthActionService()


# ---------------------------------------------------------------------------
# AuthService
# ---------------------------------------------------------------------------


def _timestamp(value: Any) -> Optional[float]:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    return None


class AuthService:
    """
    Token handling and the FastAPI dependencies guarding generated routes.

    *user_loader* resolves the id claim of a verified token to a user dict.
    *permission_checker* is consulted in ``dynamic`` mode with
    ``(user, resource, action)`` and may be sync or async.
    """

    def __init__(
        self,
        settings: AuthenticationSettings,
        user_loader: Optional[UserLoader] = None,
        permission_checker: Optional[PermissionChecker] = None,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.settings: AuthenticationSettings = settings
        self.user_loader: Optional[UserLoader] = user_loader
        self.permission_checker: Optional[PermissionChecker] = permission_checker
        self.password_hasher: PasswordHasher = password_hasher or PasswordHasher()

    # -- tokens -------------------------------------------------------------

    def sign_jwt_token(self, subject: Any, expires_in: Optional[int] = None) -> str:
        now = datetime.now(timezone.utc)
        lifetime = expires_in if expires_in is not None else self.settings.jwt.expires_in
        claims: Dict[str, Any] = {
            self.settings.id_claim: subject,
            "iat": now,
            "exp": now + timedelta(seconds=lifetime),
        }
        return jwt.encode(claims, self.settings.jwt.secret, algorithm=self.settings.jwt.algorithm)

    def verify_jwt_token(self, token: str) -> Dict[str, Any]:
        """Decode *token*; raises ``Unauthorized`` (InvalidAuthToken) on any failure."""
        try:
            claims = jwt.decode(
                token, self.settings.jwt.secret, algorithms=[self.settings.jwt.algorithm]
            )
        except JWTError as exc:
            raise Unauthorized(
                "Your auth token is invalid, please login again.", code="InvalidAuthToken"
            ) from exc
        if claims.get(self.settings.id_claim) in (None, ""):
            raise Unauthorized(
                "Your auth token is invalid, please login again.", code="InvalidAuthToken"
            )
        return claims

    # -- passwords ----------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self.password_hasher.hash_password(password)

    def is_correct_password(self, candidate: str, hashed: str) -> bool:
        return self.password_hasher.is_correct_password(candidate, hashed)

    def is_password_hashed(self, value: Any) -> bool:
        return self.password_hasher.is_password_hashed(value)

    # -- authentication -----------------------------------------------------

    def extract_token(self, request: Request) -> Optional[str]:
        header: str = request.headers.get("authorization", "")
        if header.startswith("Bearer "):
            return header.split(" ", 1)[1].strip() or None
        cookie = request.cookies.get(self.settings.jwt.cookie_name)
        if cookie and cookie != "no-token":
            return cookie
        return None

    async def authenticate(self, request: Request) -> Tuple[Dict[str, Any], str]:
        """
        Resolve the calling user from the bearer header or the auth cookie.

        Raises:
            Unauthorized: LoginRequired, InvalidAuthToken, UserNoLongerExists
                or PasswordChanged.
        """
        token = self.extract_token(request)
        if not token:
            raise Unauthorized(
                "You are not logged in! please log in to get access", code="LoginRequired"
            )
        claims = self.verify_jwt_token(token)

        if self.user_loader is None:
            raise AppError("No user loader configured for authentication.", 500)
        user = await self.user_loader(claims[self.settings.id_claim])
        if not user:
            raise Unauthorized(
                "The user belonging to this token does no longer exists",
                code="UserNoLongerExists",
            )

        changed_at = _timestamp(user.get("passwordChangedAt") or user.get("password_changed_at"))
        issued_at = _timestamp(claims.get("iat"))
        if changed_at is not None and issued_at is not None and changed_at > issued_at:
            if "logout" not in request.url.path:
                raise Unauthorized(
                    "User recently changed password! Please log in again.",
                    code="PasswordChanged",
                )
        return user, token

    # -- access control -----------------------------------------------------

    async def has_permission(self, user: Mapping[str, Any], requirement: AuthRequirement) -> bool:
        if user.get("isSuperUser") or user.get("is_super_user"):
            return True
        if self.settings.mode == "dynamic":
            if self.permission_checker is None:
                logger.warning("Dynamic access control without a permission checker: denying.")
                return False
            outcome = self.permission_checker(user, requirement.resource, requirement.action)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            return bool(outcome)

        roles = requirement.roles
        if roles is None:
            return True
        if not user.get("role") and not user.get("roles"):
            raise AppError(
                "Validation Error: In order to use static authentication user needs at "
                "least role field or roles for multiple roles.",
                500,
                code="MissingUserRoleField",
            )
        user_roles = user.get("roles") if isinstance(user.get("roles"), list) else [user.get("role")]
        return any(role in roles for role in user_roles)

    # -- FastAPI dependencies -----------------------------------------------

    def authentication_dependency(self) -> Callable[[Request], Awaitable[None]]:
        async def authenticate_request(request: Request) -> None:
            user, token = await self.authenticate(request)
            request.state.user = user
            request.state.access_token = token

        return authenticate_request

    def access_control_dependency(
        self, requirement: AuthRequirement
    ) -> Callable[[Request], Awaitable[None]]:
        async def check_access(request: Request) -> None:
            user = getattr(request.state, "user", None)
            if user is None:
                raise Unauthorized(
                    "You are not logged in! please log in to get access", code="LoginRequired"
                )
            if not await self.has_permission(user, requirement):
                raise Forbidden(
                    requirement.error_message or DEFAULT_FORBIDDEN_MESSAGE,
                    code="NotEnoughPermissions",
                )

        return check_access

    def route_dependencies(self, requirement: Optional[AuthRequirement]) -> List[Any]:
        """``Depends`` list for a route; empty for public routes."""
        if requirement is None:
            return []
        return [
            Depends(self.authentication_dependency()),
            Depends(self.access_control_dependency(requirement)),
        ]


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "DEFAULT_FORBIDDEN_MESSAGE",
    "DEFAULT_ACTION_ERROR_MESSAGE",
    "PasswordHasher",
    "AuthActionService",
    "auth_action_service",
    "AuthService",
]

logger.debug("restgen.auth loaded: %d public symbols.", len(__all__))
