# File: restgen/models.py
"""
NexaFlow RestGen - Core Data Models
=====================================
Pydantic V2 models and plain dataclasses describing everything the engine
reasons about:

    Model metadata → Customisation bag → Route descriptors → Request pipeline

* ``ModelDescriptor`` / ``ScalarField`` / ``RelationField`` are produced once
  at startup by introspection and are immutable afterwards.
* ``AuthConfigs``, ``RouterConfig`` and ``QueryOptionsConfig`` are the narrow,
  validated configuration structs a user supplies per model.
* ``ModuleComponents`` bundles those together with interceptors, hooks and
  validators.
* ``RouteDescriptor``, ``OperationConfig``, ``RequestContext`` and
  ``PipelineResult`` are the assembly-time and request-time values threaded
  through the pipeline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field

from restgen.utils import model_to_route_name, to_kebab_case, to_pascal_case, to_snake_case

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("restgen.models")

# ---------------------------------------------------------------------------
# Enums: fixed sets used across the entire project
# ---------------------------------------------------------------------------


class AccessAction(str, Enum):
    """Built-in access actions.  Custom action strings are accepted too."""

    CREATE = "Create"
    VIEW = "View"
    UPDATE = "Update"
    DELETE = "Delete"


class RouterEndpoint(str, Enum):
    """The eight canonical generated endpoints."""

    CREATE_ONE = "createOne"
    FIND_MANY = "findMany"
    CREATE_MANY = "createMany"
    UPDATE_MANY = "updateMany"
    DELETE_MANY = "deleteMany"
    FIND_ONE = "findOne"
    UPDATE_ONE = "updateOne"
    DELETE_ONE = "deleteOne"


class ValidationResolver(str, Enum):
    """How request bodies are validated, when validation is enabled."""

    DTO = "dto"
    SCHEMA = "schema"


class FieldKind(str, Enum):
    """Coarse scalar field types used for query value coercion and search."""

    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    DATE = "date"
    JSON = "json"
    OTHER = "other"


# Endpoint order used by the router assembler.  Bulk routes precede the
# ``/{id}`` routes so that ``/many`` is never captured as an id.
ENDPOINT_ORDER: Tuple[str, ...] = tuple(e.value for e in RouterEndpoint)

ALL_ENDPOINTS: FrozenSet[str] = frozenset(ENDPOINT_ORDER)

ENDPOINT_ACTIONS: Dict[str, str] = {
    "createOne": AccessAction.CREATE.value,
    "createMany": AccessAction.CREATE.value,
    "findOne": AccessAction.VIEW.value,
    "findMany": AccessAction.VIEW.value,
    "updateOne": AccessAction.UPDATE.value,
    "updateMany": AccessAction.UPDATE.value,
    "deleteOne": AccessAction.DELETE.value,
    "deleteMany": AccessAction.DELETE.value,
}


# ---------------------------------------------------------------------------
# Mixin: shared model configuration
# ---------------------------------------------------------------------------

_SHARED_CONFIG: ConfigDict = ConfigDict(
    strict=False,
    populate_by_name=True,
    validate_assignment=True,
    use_enum_values=True,
    frozen=False,
    extra="forbid",
)

_FROZEN_CONFIG: ConfigDict = ConfigDict(
    strict=False,
    populate_by_name=True,
    use_enum_values=True,
    frozen=True,
    extra="forbid",
)


# ---------------------------------------------------------------------------
# Model metadata (produced by introspection)
# ---------------------------------------------------------------------------


class ScalarField(BaseModel):
    """A non-relation column of a model."""

    model_config = _FROZEN_CONFIG

    name: str = Field(..., min_length=1, description="Attribute name on the model.")
    kind: FieldKind = Field(default=FieldKind.OTHER, description="Coarse value type.")
    is_list: bool = Field(default=False, description="Array-valued column?")
    is_id: bool = Field(default=False, description="Primary key column?")
    is_unique: bool = Field(default=False, description="Has a UNIQUE constraint?")
    is_optional: bool = Field(default=True, description="Nullable column?")


class RelationField(BaseModel):
    """A relation attribute (``relationship()``) of a model."""

    model_config = _FROZEN_CONFIG

    name: str = Field(..., min_length=1, description="Relation attribute name.")
    target: str = Field(..., min_length=1, description="Target model name.")
    foreign_key_field: Optional[str] = Field(
        default=None,
        description="Local FK attribute for many-to-one relations (e.g. 'authorId').",
    )
    is_array: bool = Field(default=False, description="To-many relation?")
    is_optional: bool = Field(default=True, description="May the relation be absent?")


class ModelDescriptor(BaseModel):
    """
    Everything the engine knows about one data model.

    Route naming is derived, never configured: ``kebab_name`` is the resource
    identifier used by auth and module discovery, ``plural_route_name`` is the
    collection path segment.
    """

    model_config = _FROZEN_CONFIG

    name: str = Field(..., min_length=1, description="Model (class) name, e.g. 'BlogPost'.")
    scalar_fields: Tuple[ScalarField, ...] = Field(default=(), description="Scalar columns.")
    relations: Tuple[RelationField, ...] = Field(default=(), description="Relation attributes.")
    id_field: str = Field(default="id", description="Primary key attribute.")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def kebab_name(self) -> str:
        return to_kebab_case(self.name)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def plural_route_name(self) -> str:
        return model_to_route_name(self.name)

    @property
    def pascal_name(self) -> str:
        return to_pascal_case(self.name)

    @property
    def snake_name(self) -> str:
        return to_snake_case(self.name)

    @property
    def singular_relations(self) -> List[RelationField]:
        return [r for r in self.relations if not r.is_array]

    @property
    def list_relations(self) -> List[RelationField]:
        return [r for r in self.relations if r.is_array]

    @property
    def field_names(self) -> FrozenSet[str]:
        return frozenset(f.name for f in self.scalar_fields)

    @property
    def relation_names(self) -> FrozenSet[str]:
        return frozenset(r.name for r in self.relations)

    @property
    def unique_field_names(self) -> FrozenSet[str]:
        return frozenset(f.name for f in self.scalar_fields if f.is_unique or f.is_id)

    @property
    def search_fields(self) -> List[str]:
        """String columns eligible for free-text search."""
        return [
            f.name
            for f in self.scalar_fields
            if f.kind == FieldKind.STRING
            and not f.is_list
            and f.name not in ("id", "password")
            and "Id" not in f.name
            and "ID" not in f.name
            and not f.name.endswith("_id")
        ]

    def get_field(self, name: str) -> Optional[ScalarField]:
        for f in self.scalar_fields:
            if f.name == name:
                return f
        return None

    def get_relation(self, name: str) -> Optional[RelationField]:
        for r in self.relations:
            if r.name == name:
                return r
        return None

    def __repr__(self) -> str:
        return (
            f"<ModelDescriptor {self.name} fields={len(self.scalar_fields)} "
            f"relations={len(self.relations)}>"
        )


# ---------------------------------------------------------------------------
# Per-model configuration structs
# ---------------------------------------------------------------------------


class DetailedAccessRule(BaseModel):
    """Roles for one action, plus the metadata shown in permission listings."""

    model_config = _SHARED_CONFIG

    roles: List[str] = Field(default_factory=list, description="Allowed role identifiers.")
    name: Optional[str] = Field(default=None, description="Human-readable name.")
    description: Optional[str] = Field(default=None, description="Longer description.")
    error_message: Optional[str] = Field(
        default=None,
        alias="errorMessage",
        description="Message returned with 403 when the rule denies access.",
    )


AccessRule = Union[List[str], DetailedAccessRule]


class AuthConfigs(BaseModel):
    """
    Authentication and access control for one model.

    ``authentication_control`` is either a global switch or a mapping from
    action to switch; an action mapped to ``False`` makes that action public.
    ``access_control`` is either a flat role list applying to every action or
    a mapping from action to a role list / detailed rule.  Actions absent from
    the mapping are open to any authenticated principal.
    """

    model_config = _SHARED_CONFIG

    authentication_control: Union[bool, Dict[str, bool]] = Field(
        default=True, alias="authenticationControl"
    )
    access_control: Optional[Union[List[str], Dict[str, AccessRule]]] = Field(
        default=None, alias="accessControl"
    )

    def requires_authentication(self, action: str) -> bool:
        control = self.authentication_control
        if isinstance(control, bool):
            return control
        return control.get(action) is not False

    def rule_for(self, action: str) -> Optional[AccessRule]:
        access = self.access_control
        if access is None:
            return None
        if isinstance(access, list):
            return list(access)
        return access.get(action)


class ParentRoutesConfig(BaseModel):
    """Nested ``/{parents}/{parent_id}/{children}`` routes for a model."""

    model_config = _SHARED_CONFIG

    model: str = Field(..., min_length=1, description="Parent model name.")
    foreign_key_field: Optional[str] = Field(
        default=None,
        alias="foreignKeyField",
        description="FK attribute on this model; defaults to '<parentCamel>Id'.",
    )
    endpoints: Union[Literal["*"], List[str]] = Field(
        default="*", description="'*' or a whitelist of endpoint names."
    )

    def allows(self, endpoint: str) -> bool:
        if self.endpoints == "*":
            return True
        return endpoint in self.endpoints


class RouterConfig(BaseModel):
    """Disablement and nesting for the generated routes of a model."""

    model_config = _SHARED_CONFIG

    disable: Union[bool, Dict[str, bool]] = Field(
        default=False, description="True disables every endpoint; a mapping disables some."
    )
    parent: Optional[ParentRoutesConfig] = Field(default=None)

    def is_disabled(self, endpoint: str) -> bool:
        if self.disable is True:
            return True
        if isinstance(self.disable, dict):
            return self.disable.get(endpoint) is True
        return False

    def is_parent_endpoint_allowed(self, endpoint: str) -> bool:
        if self.parent is None:
            return False
        return self.parent.allows(endpoint)


class QueryOptionsConfig(BaseModel):
    """
    Static ORM query options layered under every request of a model.

    Precedence (later wins): ``query_options`` < ``global`` < general action
    keys (find/create/update/delete/save/saveOne/saveMany) < endpoint key.
    """

    model_config = _SHARED_CONFIG

    query_options: Optional[Dict[str, Any]] = Field(default=None, alias="queryOptions")
    global_: Optional[Dict[str, Any]] = Field(default=None, alias="global")
    find: Optional[Dict[str, Any]] = None
    create: Optional[Dict[str, Any]] = None
    update: Optional[Dict[str, Any]] = None
    delete: Optional[Dict[str, Any]] = None
    save: Optional[Dict[str, Any]] = None
    save_one: Optional[Dict[str, Any]] = Field(default=None, alias="saveOne")
    save_many: Optional[Dict[str, Any]] = Field(default=None, alias="saveMany")
    find_one: Optional[Dict[str, Any]] = Field(default=None, alias="findOne")
    find_many: Optional[Dict[str, Any]] = Field(default=None, alias="findMany")
    create_one: Optional[Dict[str, Any]] = Field(default=None, alias="createOne")
    create_many: Optional[Dict[str, Any]] = Field(default=None, alias="createMany")
    update_one: Optional[Dict[str, Any]] = Field(default=None, alias="updateOne")
    update_many: Optional[Dict[str, Any]] = Field(default=None, alias="updateMany")
    delete_one: Optional[Dict[str, Any]] = Field(default=None, alias="deleteOne")
    delete_many: Optional[Dict[str, Any]] = Field(default=None, alias="deleteMany")

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Look a layer up by its camelCase key (e.g. ``"saveOne"``)."""
        for name, info in type(self).model_fields.items():
            if key == name or key == info.alias:
                return getattr(self, name)
        return None


class AuthAction(BaseModel):
    """One registered (action, resource) capability."""

    model_config = _SHARED_CONFIG

    roles: List[str] = Field(default_factory=list)
    action: str = Field(..., min_length=1)
    resource: str = Field(..., min_length=1)
    name: str = Field(default="")
    description: str = Field(default="")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")


# ---------------------------------------------------------------------------
# Customisation bag
# ---------------------------------------------------------------------------


@dataclass(frozen=False, slots=True)
class RouterModule:
    """A user router module: an optional custom sub-router plus its config."""

    router: Any = None
    config: Optional[RouterConfig] = None


@dataclass(frozen=False, slots=True)
class OperationHooks:
    """Controller stage hooks for one operation (all optional)."""

    before_query: Optional[Callable[..., Any]] = None
    after_query: Optional[Callable[..., Any]] = None
    before_service: Optional[Callable[..., Any]] = None
    after_service: Optional[Callable[..., Any]] = None
    before_response: Optional[Callable[..., Any]] = None


@dataclass(frozen=False, slots=True)
class ModuleComponents:
    """
    Every optional user customisation for one model.

    Any field left as ``None`` falls back to the engine defaults; an empty
    ``ModuleComponents()`` is a fully valid configuration.
    """

    auth_configs: Optional[AuthConfigs] = None
    query_options: Optional[QueryOptionsConfig] = None
    interceptors: Optional[Dict[str, Any]] = None
    router: Optional[RouterModule] = None
    dtos: Optional[Dict[str, Any]] = None
    schemas: Optional[Dict[str, Any]] = None
    hooks: Optional[Dict[str, Any]] = None
    operation_hooks: Optional[Dict[str, OperationHooks]] = None

    @property
    def router_config(self) -> RouterConfig:
        if self.router is not None and self.router.config is not None:
            return self.router.config
        return RouterConfig()

    @property
    def custom_router(self) -> Any:
        return self.router.router if self.router is not None else None

    def hooks_for(self, operation: str) -> OperationHooks:
        hooks = self.operation_hooks or {}
        return hooks.get(operation) or hooks.get("*") or OperationHooks()


# ---------------------------------------------------------------------------
# Assembly-time values
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AuthRequirement:
    """An authenticated route: who may call it is decided by ``rule``."""

    resource: str
    action: str
    rule: Optional[AccessRule] = None

    @property
    def roles(self) -> Optional[List[str]]:
        if self.rule is None:
            return None
        if isinstance(self.rule, DetailedAccessRule):
            return list(self.rule.roles)
        return list(self.rule)

    @property
    def error_message(self) -> Optional[str]:
        if isinstance(self.rule, DetailedAccessRule):
            return self.rule.error_message
        return None


@dataclass(frozen=True, slots=True)
class BodyValidator:
    """A resolved request-body validator and the resolver mode it came from."""

    mode: str
    target: Any
    many: bool = False


@dataclass(frozen=True, slots=True)
class RouteDescriptor:
    """Declarative description of one generated endpoint, before handlers are attached."""

    endpoint: str
    method: str
    path: str
    disabled: bool = False
    authentication: Optional[AuthRequirement] = None
    validation: Optional[BodyValidator] = None


@dataclass(frozen=True, slots=True)
class OperationConfig:
    """Static description of one canonical operation, shared by every model."""

    operation: str
    service_method: str
    success_status: int
    query_features: FrozenSet[str] = frozenset()
    requires_non_empty_filter_for_bulk: bool = False
    forbid_or_filter_mode: bool = False
    response_shape: str = "single"
    not_found_message: Optional[str] = None
    missing_filter_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Request-time values
# ---------------------------------------------------------------------------


@dataclass(frozen=False, slots=True)
class PipelineResult:
    """
    The outcome of the generic handler, threaded to the downstream steps.

    ``handed_off`` is set when after-interceptors are registered for the
    operation; they may mutate ``data``/``status_code`` or set ``response``
    to substitute the response entirely.
    """

    data: Any = None
    status_code: Optional[int] = None
    additional_data: Any = None
    handed_off: bool = False
    response: Any = None

    @property
    def sent(self) -> bool:
        return self.response is not None


@dataclass(frozen=False, slots=True)
class RequestContext:
    """Per-request state visible to interceptors, hooks and the controller."""

    model: ModelDescriptor
    endpoint: str
    request: Any = None
    params: Dict[str, Any] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    user: Any = None
    access_token: Optional[str] = None
    query_options: Dict[str, Any] = field(default_factory=dict)
    parent_filter: Dict[str, Any] = field(default_factory=dict)
    result: Optional[PipelineResult] = None
    state: Dict[str, Any] = field(default_factory=dict)

    @property
    def service_context(self) -> Dict[str, Any]:
        return {"user": self.user, "access_token": self.access_token}


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "AccessAction",
    "RouterEndpoint",
    "ValidationResolver",
    "FieldKind",
    "ENDPOINT_ORDER",
    "ALL_ENDPOINTS",
    "ENDPOINT_ACTIONS",
    "ScalarField",
    "RelationField",
    "ModelDescriptor",
    "DetailedAccessRule",
    "AccessRule",
    "AuthConfigs",
    "ParentRoutesConfig",
    "RouterConfig",
    "QueryOptionsConfig",
    "AuthAction",
    "RouterModule",
    "OperationHooks",
    "ModuleComponents",
    "AuthRequirement",
    "BodyValidator",
    "RouteDescriptor",
    "OperationConfig",
    "PipelineResult",
    "RequestContext",
]

logger.debug("restgen.models loaded: %d public symbols.", len(__all__))
