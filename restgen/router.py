# File: restgen/router.py
"""
NexaFlow RestGen - Router Assembly Orchestrator
=================================================
Turns every model into a set of FastAPI routes:

1. A custom ``APIRouter`` exported by the model's router module is mounted
   first under ``/{plural}``.
2. The eight canonical endpoints follow in a fixed order, minus disabled
   ones and any (method, path) the custom router already serves.
3. Nested ``/{parents}/{parent_id}/{plural}`` routes are added when the
   router config names a parent.
4. ``GET /available-resources`` (deprecated) and ``GET /auth-actions`` close
   the router.

Each generated handler builds a ``RequestContext`` and runs the route's
interceptor chain around ``BaseController.execute``.

Usage:
    from restgen.router import bootstrap
    app = bootstrap(Base, settings)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from fastapi import APIRouter, Depends, FastAPI, Request
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from starlette.responses import Response

from restgen.auth import AuthActionService, AuthService, PermissionChecker, auth_action_service
from restgen.config import RestGenSettings
from restgen.controller import BaseController, available_resources
from restgen.delegate import build_delegates, introspect_models, mapped_classes
from restgen.descriptors import build_route_descriptor, endpoint_suffix, parent_foreign_key
from restgen.errors import BadRequest, ConfigurationError, register_error_handlers
from restgen.features import coerce_value
from restgen.loader import ComponentRegistry
from restgen.middlewares import RouteChain, build_chain, resolve_query_options, validate_body
from restgen.models import (
    ENDPOINT_ORDER,
    FieldKind,
    ModelDescriptor,
    ModuleComponents,
    RequestContext,
    RouteDescriptor,
)
from restgen.service import BaseService
from restgen.utils import canonicalize_path, join_paths, to_kebab_case
from restgen.validators import validate_assembly

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("restgen.router")

ServiceFactory = Callable[[ModelDescriptor, ModuleComponents], BaseService]

_BODY_METHODS = frozenset({"POST", "PATCH"})

_STATUS_CODES: Dict[str, int] = {
    "createOne": 201,
    "createMany": 201,
    "deleteOne": 204,
}


def _is_api_router(router: Any) -> bool:
    return hasattr(router, "routes") and callable(getattr(router, "add_api_route", None))


def has_custom_implementation(routes: Iterable[Any], path: str, method: str, prefix: str = "") -> bool:
    """
    True when one of *routes* (mounted under *prefix*) already serves
    *method* on *path*.  Paths compare in canonical form.
    """
    target: str = canonicalize_path(path)
    verb: str = method.upper()
    for route in routes:
        route_path = getattr(route, "path", None)
        if route_path is None:
            continue
        methods = {m.upper() for m in (getattr(route, "methods", None) or ())}
        if verb in methods and canonicalize_path(join_paths(prefix, route_path)) == target:
            return True
    return False


async def _read_body(request: Request) -> Any:
    raw: bytes = await request.body()
    if not raw.strip():
        return None
    try:
        return await request.json()
    except ValueError as exc:
        raise BadRequest("Request body is not valid JSON.", code="InvalidJSON") from exc


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------


class RouterAssembler:
    """
    Builds one ``APIRouter`` for a set of models.

    ``build()`` is idempotent: the first call assembles and caches the router,
    later calls return it unchanged.
    """

    def __init__(
        self,
        models: Sequence[ModelDescriptor],
        registry: ComponentRegistry,
        settings: RestGenSettings,
        service_factory: ServiceFactory,
        auth_service: Optional[AuthService] = None,
        auth_actions: Optional[AuthActionService] = None,
    ) -> None:
        self.models: List[ModelDescriptor] = list(models)
        self.registry: ComponentRegistry = registry
        self.settings: RestGenSettings = settings
        self.service_factory: ServiceFactory = service_factory
        self.auth_service: Optional[AuthService] = auth_service
        self.auth_actions: AuthActionService = auth_actions if auth_actions is not None else auth_action_service
        self.route_table: List[Dict[str, Any]] = []
        self._models_by_key: Dict[str, ModelDescriptor] = {m.kebab_name: m for m in self.models}
        self._router: Optional[APIRouter] = None

    def __repr__(self) -> str:
        state = "built" if self._router is not None else "pending"
        return f"<RouterAssembler models={len(self.models)} {state}>"

    # -- public API ---------------------------------------------------------

    def build(self) -> APIRouter:
        """
        Assemble the router.

        Raises:
            ConfigurationError: On validation errors, an invalid custom
                router, a bad interceptor, or dynamic access control
                without a permission checker.
        """
        if self._router is not None:
            return self._router

        result = validate_assembly(self.models, self.registry, self.settings)
        if result.has_errors:
            raise ConfigurationError(result.format_report(), context={"errors": result.error_count})

        auth = self.settings.authentication
        if auth is not None:
            if self.auth_service is None:
                raise ConfigurationError("Authentication is configured but no AuthService was given.")
            if auth.mode == "dynamic" and self.auth_service.permission_checker is None:
                raise ConfigurationError(
                    "Dynamic access control requires a permission checker.",
                    context={"mode": auth.mode},
                )

        router = APIRouter()
        for model in self.models:
            self._mount_model(router, model)
        self._mount_extras(router)
        self._router = router
        logger.info(
            "Router assembled: %d model(s), %d generated route(s).",
            len(self.models),
            len(self.route_table),
        )
        return router

    # -- per model ----------------------------------------------------------

    def _mount_model(self, router: APIRouter, model: ModelDescriptor) -> None:
        components = self.registry.get(model.name)
        prefix = f"/{model.plural_route_name}"

        custom = components.custom_router
        custom_routes: List[Any] = []
        if custom is not None:
            if not _is_api_router(custom):
                raise ConfigurationError(
                    f"ValidationError: The exported router from {model.kebab_name} router module "
                    "is not a valid FastAPI APIRouter.",
                    context={"model": model.name},
                )
            router.include_router(custom, prefix=prefix)
            custom_routes = list(custom.routes)
            logger.info("Mounted custom router for %s (%d route(s)).", model.name, len(custom_routes))

        controller = BaseController(
            model,
            self.service_factory(model, components),
            settings=self.settings,
            components=components,
        )
        router_config = components.router_config
        parent = self._parent_of(model, components)
        mounted: int = 0

        for endpoint in ENDPOINT_ORDER:
            descriptor = build_route_descriptor(
                model,
                endpoint,
                router_config,
                components.auth_configs,
                self.settings.validation,
                components,
                self.auth_actions,
                authentication_enabled=self.settings.authentication is not None,
            )
            if descriptor.disabled:
                logger.debug("Skipping disabled endpoint %s of %s.", endpoint, model.name)
                continue
            chain = build_chain(components.interceptors, endpoint)

            if has_custom_implementation(custom_routes, descriptor.path, descriptor.method, prefix):
                logger.debug("Custom router already serves %s %s.", descriptor.method, descriptor.path)
            else:
                self._add_route(router, model, descriptor, descriptor.path, controller, chain, components)
                mounted += 1

            if parent is not None and router_config.is_parent_endpoint_allowed(endpoint):
                parent_model, fk = parent
                path = (
                    f"/{parent_model.plural_route_name}/{{parent_id}}"
                    f"/{model.plural_route_name}{endpoint_suffix(endpoint)}"
                )
                self._add_route(router, model, descriptor, path, controller, chain, components, fk)
                mounted += 1

        logger.info("Mounted %d route(s) for %s.", mounted, model.name)

    def _parent_of(self, model: ModelDescriptor, components: ModuleComponents) -> Optional[Tuple[ModelDescriptor, str]]:
        config = components.router_config.parent
        if config is None:
            return None
        parent_model = self._models_by_key[to_kebab_case(config.model)]
        return parent_model, parent_foreign_key(parent_model, config.foreign_key_field)

    def _add_route(
        self,
        router: APIRouter,
        model: ModelDescriptor,
        descriptor: RouteDescriptor,
        path: str,
        controller: BaseController,
        chain: RouteChain,
        components: ModuleComponents,
        parent_fk: Optional[str] = None,
    ) -> None:
        handler = self._make_handler(model, descriptor, controller, chain, components, parent_fk)
        dependencies: List[Any] = []
        if self.auth_service is not None:
            dependencies = self.auth_service.route_dependencies(descriptor.authentication)
        name = f"{descriptor.endpoint}_{model.snake_name}"
        if parent_fk is not None:
            name = f"{name}_nested"
        router.add_api_route(
            path,
            handler,
            methods=[descriptor.method],
            status_code=_STATUS_CODES.get(descriptor.endpoint, 200),
            dependencies=dependencies,
            name=name,
        )
        self.route_table.append(
            {
                "method": descriptor.method,
                "path": path,
                "operation": descriptor.endpoint,
                "model": model.name,
                "auth": descriptor.authentication is not None,
            }
        )
        logger.debug("Registered %s %s -> %s", descriptor.method, path, name)

    def _make_handler(
        self,
        model: ModelDescriptor,
        descriptor: RouteDescriptor,
        controller: BaseController,
        chain: RouteChain,
        components: ModuleComponents,
        parent_fk: Optional[str],
    ) -> Callable[[Request], Any]:
        endpoint = descriptor.endpoint
        allow_dangerous = self.settings.allow_dangerous_query_options
        fk_field = model.get_field(parent_fk) if parent_fk else None
        fk_kind: str = fk_field.kind if fk_field is not None else FieldKind.OTHER.value

        def inject_query_options(ctx: RequestContext) -> None:
            ctx.query_options = resolve_query_options(
                components.query_options, endpoint, ctx.query, allow_dangerous
            )

        def validate_request_body(ctx: RequestContext) -> None:
            if descriptor.validation is not None:
                ctx.body = validate_body(descriptor.validation, ctx.body)

        async def run_operation(ctx: RequestContext) -> Any:
            return await controller.execute(endpoint, ctx, chain.hands_off)

        async def handler(request: Request) -> Response:
            params: Dict[str, Any] = dict(request.path_params)
            parent_filter: Dict[str, Any] = {}
            if parent_fk is not None:
                parent_filter[parent_fk] = coerce_value(params.pop("parent_id"), fk_kind)
            ctx = RequestContext(
                model=model,
                endpoint=endpoint,
                request=request,
                params=params,
                query=dict(request.query_params),
                body=await _read_body(request) if descriptor.method in _BODY_METHODS else None,
                user=getattr(request.state, "user", None),
                access_token=getattr(request.state, "access_token", None),
                parent_filter=parent_filter,
            )
            return await chain.run(
                ctx, run_operation, prepare=(validate_request_body, inject_query_options)
            )

        handler.__name__ = f"{endpoint}_{model.snake_name}"
        return handler

    # -- extras -------------------------------------------------------------

    def _mount_extras(self, router: APIRouter) -> None:
        dependencies: List[Any] = []
        if self.auth_service is not None and self.settings.authentication is not None:
            dependencies = [Depends(self.auth_service.authentication_dependency())]
        models = self.models
        auth_actions = self.auth_actions

        async def list_available_resources() -> Dict[str, Any]:
            logger.warning(
                "GET /available-resources is deprecated; use GET /auth-actions instead."
            )
            return available_resources(models)

        async def list_auth_actions() -> Dict[str, Any]:
            return {"data": auth_actions.to_list()}

        router.add_api_route(
            "/available-resources",
            list_available_resources,
            methods=["GET"],
            dependencies=dependencies,
            deprecated=True,
            name="available_resources",
        )
        router.add_api_route(
            "/auth-actions",
            list_auth_actions,
            methods=["GET"],
            dependencies=dependencies,
            name="auth_actions",
        )


# ---------------------------------------------------------------------------
# App factories
# ---------------------------------------------------------------------------


def default_service_factory(
    delegates: Dict[str, Any],
    models: Sequence[ModelDescriptor],
    settings: RestGenSettings,
) -> ServiceFactory:
    """A factory building one ``BaseService`` per model over *delegates*."""
    descriptors = {m.name: m for m in models}

    def factory(model: ModelDescriptor, components: ModuleComponents) -> BaseService:
        return BaseService(
            model,
            delegates[model.name],
            hooks=components.hooks,
            descriptors=descriptors,
            user_model_name=settings.user_model_name,
        )

    return factory


def _user_loader(model: ModelDescriptor, delegate: Any) -> Callable[[Any], Any]:
    id_field = model.get_field(model.id_field)
    kind: str = id_field.kind if id_field is not None else FieldKind.OTHER.value

    async def load_user(user_id: Any) -> Optional[Dict[str, Any]]:
        return await delegate.find_unique({"where": {model.id_field: coerce_value(user_id, kind)}})

    return load_user


def create_app(
    settings: RestGenSettings,
    source: Any,
    session_factory: async_sessionmaker,
    registry: Optional[ComponentRegistry] = None,
    permission_checker: Optional[PermissionChecker] = None,
    auth_actions: Optional[AuthActionService] = None,
    engine: Optional[AsyncEngine] = None,
    create_tables: bool = False,
) -> FastAPI:
    """
    Build a FastAPI app serving every mapped class of *source*.

    *source* is a declarative base, a module, or an iterable of mapped
    classes.  With *engine* and ``create_tables=True`` the tables are created
    on startup; the engine is disposed on shutdown.
    """
    models = introspect_models(source)
    delegates = build_delegates(source, session_factory)
    registry = registry or ComponentRegistry()

    auth_service: Optional[AuthService] = None
    if settings.authentication is not None:
        user_key = to_kebab_case(settings.authentication.user_model)
        user_model = next((m for m in models if m.kebab_name == user_key), None)
        loader = _user_loader(user_model, delegates[user_model.name]) if user_model else None
        auth_service = AuthService(
            settings.authentication, user_loader=loader, permission_checker=permission_checker
        )

    assembler = RouterAssembler(
        models,
        registry,
        settings,
        default_service_factory(delegates, models, settings),
        auth_service=auth_service,
        auth_actions=auth_actions,
    )
    api_router = assembler.build()

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if engine is not None and create_tables:
            metadata = getattr(source, "metadata", None)
            if metadata is None:
                metadata = mapped_classes(source)[0].metadata
            async with engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
            logger.info("Database tables created.")
        yield
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title=settings.title, lifespan=lifespan)
    register_error_handlers(app, settings.environment)
    app.include_router(api_router, prefix=settings.api_prefix)
    app.state.restgen = assembler
    app.state.auth_service = auth_service
    return app


def bootstrap(
    source: Any,
    settings: RestGenSettings,
    registry: Optional[ComponentRegistry] = None,
    permission_checker: Optional[PermissionChecker] = None,
    create_tables: bool = True,
) -> FastAPI:
    """
    Engine, session factory, component discovery and app in one call.

    Raises:
        ConfigurationError: If ``database_url`` is not set.
    """
    if not settings.database_url:
        raise ConfigurationError("database_url is required to bootstrap the app.")
    engine = create_async_engine(settings.database_url)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)

    registry = registry or ComponentRegistry()
    if settings.modules_package:
        names = [m.name for m in introspect_models(source)]
        registry.load_from_package(settings.modules_package, names)

    return create_app(
        settings,
        source,
        session_factory,
        registry=registry,
        permission_checker=permission_checker,
        engine=engine,
        create_tables=create_tables,
    )


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "has_custom_implementation",
    "RouterAssembler",
    "default_service_factory",
    "create_app",
    "bootstrap",
]

logger.debug("restgen.router loaded: %d public symbols.", len(__all__))
