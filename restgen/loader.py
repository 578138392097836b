# File: restgen/loader.py
"""
NexaFlow RestGen - Module Component Loader
============================================
Per-model customisations are plain Python modules discovered by naming
convention under a user package::

    <package>/<snake>/<snake>_interceptors.py   before<Op> / after<Op> / on<Op>Error
    <package>/<snake>/<snake>_auth.py           config = AuthConfigs | dict
    <package>/<snake>/<snake>_query.py          options = QueryOptionsConfig | dict
    <package>/<snake>/<snake>_router.py         router = APIRouter, config = RouterConfig | dict
    <package>/<snake>/<snake>_hooks.py          before<Op> / after<Op> / on<Op>Error,
                                                operation_hooks = {op: OperationHooks | dict}
    <package>/<snake>/<snake>_dtos.py           create / update / createMany / updateMany
    <package>/<snake>/<snake>_schemas.py        create / update / createMany / updateMany

Missing modules are ignored.  A module that exists but fails to import, or
whose config does not validate, is a ``ConfigurationError``.
"""

from __future__ import annotations

import importlib
import logging
import re
from types import ModuleType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from restgen.errors import ConfigurationError
from restgen.models import (
    AuthConfigs,
    ModuleComponents,
    OperationHooks,
    QueryOptionsConfig,
    RouterConfig,
    RouterModule,
)
from restgen.utils import to_kebab_case, to_snake_case

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("restgen.loader")

MODULE_SUFFIXES: Tuple[str, ...] = (
    "interceptors",
    "auth",
    "query",
    "router",
    "hooks",
    "dtos",
    "schemas",
)

VALIDATOR_KEYS: Tuple[str, ...] = ("create", "update", "createMany", "updateMany")

_HOOK_NAME_RE: re.Pattern[str] = re.compile(r"^(before|after)[A-Z]\w*$|^on[A-Z]\w*Error$")

_ConfigT = TypeVar("_ConfigT", bound=BaseModel)


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def _coerce_config(value: Any, model: Type[_ConfigT], where: str) -> Optional[_ConfigT]:
    if value is None or isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except PydanticValidationError as exc:
        raise ConfigurationError(
            f"ValidationError: invalid {model.__name__} in {where}: {exc}",
            context={"module": where},
        ) from exc


def _hook_attributes(module: ModuleType) -> Dict[str, Any]:
    return {
        name: getattr(module, name)
        for name in dir(module)
        if _HOOK_NAME_RE.match(name)
    }


def _operation_hooks(value: Any, where: str) -> Optional[Dict[str, OperationHooks]]:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise ConfigurationError(
            f"ValidationError: operation_hooks in {where} must be a mapping.",
            context={"module": where},
        )
    hooks: Dict[str, OperationHooks] = {}
    for operation, entry in value.items():
        if isinstance(entry, OperationHooks):
            hooks[operation] = entry
        elif isinstance(entry, Mapping):
            try:
                hooks[operation] = OperationHooks(**entry)
            except TypeError as exc:
                raise ConfigurationError(
                    f"ValidationError: bad operation hooks for '{operation}' in {where}: {exc}",
                    context={"module": where, "operation": operation},
                ) from exc
        else:
            raise ConfigurationError(
                f"ValidationError: operation hooks for '{operation}' in {where} must be a mapping.",
                context={"module": where, "operation": operation},
            )
    return hooks


def components_from_modules(modules: Mapping[str, ModuleType]) -> ModuleComponents:
    """Build a ``ModuleComponents`` from the discovered modules of one model."""
    components = ModuleComponents()

    interceptors = modules.get("interceptors")
    if interceptors is not None:
        components.interceptors = _hook_attributes(interceptors)

    auth = modules.get("auth")
    if auth is not None:
        components.auth_configs = _coerce_config(
            getattr(auth, "config", None), AuthConfigs, auth.__name__
        )

    query = modules.get("query")
    if query is not None:
        raw = getattr(query, "options", None) or getattr(query, "query_options", None)
        components.query_options = _coerce_config(raw, QueryOptionsConfig, query.__name__)

    router = modules.get("router")
    if router is not None:
        components.router = RouterModule(
            router=getattr(router, "router", None),
            config=_coerce_config(getattr(router, "config", None), RouterConfig, router.__name__),
        )

    hooks = modules.get("hooks")
    if hooks is not None:
        components.hooks = _hook_attributes(hooks)
        components.operation_hooks = _operation_hooks(
            getattr(hooks, "operation_hooks", None), hooks.__name__
        )

    for suffix in ("dtos", "schemas"):
        module = modules.get(suffix)
        if module is not None:
            found = {key: getattr(module, key) for key in VALIDATOR_KEYS if hasattr(module, key)}
            setattr(components, suffix, found)

    return components


def _import_optional(dotted: str) -> Optional[ModuleType]:
    try:
        return importlib.import_module(dotted)
    except ModuleNotFoundError as exc:
        missing: str = exc.name or ""
        if missing and (dotted == missing or dotted.startswith(missing + ".")):
            return None
        raise ConfigurationError(
            f"Failed to import {dotted}: {exc}", context={"module": dotted}
        ) from exc
    except Exception as exc:
        raise ConfigurationError(
            f"Failed to import {dotted}: {exc}", context={"module": dotted}
        ) from exc


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ComponentRegistry:
    """Model name → ``ModuleComponents``; unknown models get empty components."""

    def __init__(self) -> None:
        self._components: Dict[str, ModuleComponents] = {}

    @staticmethod
    def _key(model_name: str) -> str:
        return to_kebab_case(model_name)

    def register(self, model_name: str, components: Optional[ModuleComponents] = None, **parts: Any) -> ModuleComponents:
        """
        Register customisations for *model_name*.

        Either pass a ready ``ModuleComponents`` or keyword parts
        (``auth_configs=...``, ``interceptors=...``); dict configs are
        validated into their models.
        """
        if components is None:
            components = ModuleComponents()
            for name, value in parts.items():
                if not hasattr(components, name):
                    raise ConfigurationError(
                        f"Unknown component '{name}' for {model_name}.",
                        context={"model": model_name},
                    )
                setattr(components, name, value)
        where = f"components of {model_name}"
        components.auth_configs = _coerce_config(components.auth_configs, AuthConfigs, where)
        components.query_options = _coerce_config(components.query_options, QueryOptionsConfig, where)
        if components.router is not None and not isinstance(components.router, RouterModule):
            raise ConfigurationError(
                f"ValidationError: router for {model_name} must be a RouterModule.",
                context={"model": model_name},
            )
        if components.router is not None:
            components.router.config = _coerce_config(components.router.config, RouterConfig, where)
        if components.operation_hooks is not None:
            components.operation_hooks = _operation_hooks(components.operation_hooks, where)
        self._components[self._key(model_name)] = components
        return components

    def get(self, model_name: str) -> ModuleComponents:
        return self._components.get(self._key(model_name)) or ModuleComponents()

    def items(self) -> Iterator[Tuple[str, ModuleComponents]]:
        return iter(self._components.items())

    def __contains__(self, model_name: object) -> bool:
        return isinstance(model_name, str) and self._key(model_name) in self._components

    def __len__(self) -> int:
        return len(self._components)

    def load_from_package(self, package: str, model_names: Iterable[str]) -> int:
        """
        Discover component modules for *model_names* under *package*.

        Returns the number of models that had at least one module.
        """
        loaded: int = 0
        for model_name in model_names:
            snake = to_snake_case(model_name)
            modules: Dict[str, ModuleType] = {}
            for suffix in MODULE_SUFFIXES:
                module = _import_optional(f"{package}.{snake}.{snake}_{suffix}")
                if module is not None:
                    modules[suffix] = module
            if modules:
                self.register(model_name, components_from_modules(modules))
                loaded += 1
                logger.info("Loaded %s component module(s) for %s.", ", ".join(modules), model_name)
        return loaded


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "MODULE_SUFFIXES",
    "VALIDATOR_KEYS",
    "components_from_modules",
    "ComponentRegistry",
]

logger.debug("restgen.loader loaded: %d public symbols.", len(__all__))
