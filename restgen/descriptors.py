# File: restgen/descriptors.py
"""
NexaFlow RestGen - Route Descriptor Builder
=============================================
Computes, for one model and one canonical endpoint, the declarative
``RouteDescriptor``: HTTP verb, path (FastAPI syntax), disabled flag,
authentication requirement and body validator.

Registering the endpoint's (action, resource) pair in the auth-action
registry is the only side effect.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, TypeAdapter

from restgen.auth import AuthActionService
from restgen.config import ValidationSettings
from restgen.errors import ConfigurationError
from restgen.models import (
    ENDPOINT_ACTIONS,
    AuthConfigs,
    AuthRequirement,
    BodyValidator,
    ModelDescriptor,
    ModuleComponents,
    RouteDescriptor,
    RouterConfig,
)
from restgen.utils import to_camel_case

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("restgen.descriptors")

ENDPOINT_METHODS: Dict[str, str] = {
    "createOne": "POST",
    "findMany": "GET",
    "createMany": "POST",
    "updateMany": "PATCH",
    "deleteMany": "DELETE",
    "findOne": "GET",
    "updateOne": "PATCH",
    "deleteOne": "DELETE",
}

# Validator lookup key per body-carrying endpoint.
VALIDATION_KEYS: Dict[str, str] = {
    "createOne": "create",
    "createMany": "createMany",
    "updateOne": "update",
    "updateMany": "updateMany",
}

_BULK_ENDPOINTS = frozenset({"createMany", "updateMany", "deleteMany"})
_SINGLE_ENDPOINTS = frozenset({"findOne", "updateOne", "deleteOne"})


def endpoint_suffix(endpoint: str) -> str:
    """Path tail after the collection segment: ``""``, ``/many`` or ``/{id}``."""
    if endpoint in _BULK_ENDPOINTS:
        return "/many"
    if endpoint in _SINGLE_ENDPOINTS:
        return "/{id}"
    return ""


def endpoint_path(model: ModelDescriptor, endpoint: str) -> str:
    return f"/{model.plural_route_name}{endpoint_suffix(endpoint)}"


def parent_foreign_key(parent: ModelDescriptor, configured: Optional[str]) -> str:
    """Foreign key on the child pointing at *parent*; defaults to ``<parentCamel>Id``."""
    return configured or f"{to_camel_case(parent.name)}Id"


def resolve_authentication(
    model: ModelDescriptor,
    endpoint: str,
    auth_configs: Optional[AuthConfigs],
) -> Optional[AuthRequirement]:
    """``None`` for a public endpoint, else who may call it."""
    action: str = ENDPOINT_ACTIONS[endpoint]
    configs: AuthConfigs = auth_configs or AuthConfigs()
    if not configs.requires_authentication(action):
        return None
    return AuthRequirement(resource=model.kebab_name, action=action, rule=configs.rule_for(action))


def _is_dto(target: Any) -> bool:
    return isinstance(target, type) and issubclass(target, BaseModel)


def resolve_validator(
    model: ModelDescriptor,
    endpoint: str,
    validation: Optional[ValidationSettings],
    components: ModuleComponents,
) -> Optional[BodyValidator]:
    """
    Pick the body validator of *endpoint* for the configured resolver.

    ``createMany`` validates each item: with the ``create`` DTO/schema unless a
    dedicated ``createMany`` one exists (a dedicated schema validates the
    whole array).

    Raises:
        ConfigurationError: If a DTO is not a Pydantic model, or strict
            validation is on and a create/update validator is missing.
    """
    key: Optional[str] = VALIDATION_KEYS.get(endpoint)
    if key is None or validation is None or validation.resolver is None:
        return None
    mode: str = str(validation.resolver)

    if mode == "dto":
        lookup: Dict[str, Any] = components.dtos or {}
        target = lookup.get(key)
        if target is None and endpoint == "createMany":
            target = lookup.get("create")
        many = endpoint == "createMany"
        if target is not None and not _is_dto(target):
            raise ConfigurationError(
                f"ValidationError: DTO '{key}' for {model.kebab_name} must be a Pydantic model class.",
                context={"model": model.name, "key": key},
            )
    else:
        lookup = components.schemas or {}
        schema = lookup.get(key)
        many = False
        if schema is None and endpoint == "createMany":
            schema = lookup.get("create")
            many = schema is not None
        target = TypeAdapter(schema) if schema is not None else None

    if target is None:
        if validation.strict and key in ("create", "update"):
            raise ConfigurationError(
                f"ValidationError: strict validation requires a '{key}' {mode} for {model.kebab_name}.",
                context={"model": model.name, "key": key},
            )
        return None
    return BodyValidator(mode=mode, target=target, many=many)


def build_route_descriptor(
    model: ModelDescriptor,
    endpoint: str,
    router_config: Optional[RouterConfig],
    auth_configs: Optional[AuthConfigs],
    validation: Optional[ValidationSettings],
    components: Optional[ModuleComponents] = None,
    auth_actions: Optional[AuthActionService] = None,
    authentication_enabled: bool = True,
) -> RouteDescriptor:
    """
    Describe one generated endpoint of *model*.

    With ``authentication_enabled=False`` (no authentication configured at
    all) every route is public.
    """
    config: RouterConfig = router_config or RouterConfig()
    disabled: bool = config.is_disabled(endpoint)
    authentication = (
        resolve_authentication(model, endpoint, auth_configs) if authentication_enabled else None
    )
    validator = (
        None
        if disabled
        else resolve_validator(model, endpoint, validation, components or ModuleComponents())
    )

    if not disabled and auth_actions is not None:
        access_control = auth_configs.access_control if auth_configs is not None else None
        auth_actions.add(ENDPOINT_ACTIONS[endpoint], model.kebab_name, access_control)

    return RouteDescriptor(
        endpoint=endpoint,
        method=ENDPOINT_METHODS[endpoint],
        path=endpoint_path(model, endpoint),
        disabled=disabled,
        authentication=authentication,
        validation=validator,
    )


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "ENDPOINT_METHODS",
    "VALIDATION_KEYS",
    "endpoint_suffix",
    "endpoint_path",
    "parent_foreign_key",
    "resolve_authentication",
    "resolve_validator",
    "build_route_descriptor",
]

logger.debug("restgen.descriptors loaded: %d public symbols.", len(__all__))
