# File: restgen/validators.py
"""
NexaFlow RestGen - Assembly Validators
========================================
Cross-model semantic checks run before any route is registered.

Pydantic already validates the shape of every config struct; this module
checks the things a single struct cannot see: a parent model that does not
exist, a nested-route foreign key the child lacks, endpoint names that are
not canonical, interceptor keys no endpoint will ever call, and settings
that are valid but risky.

Usage:
    from restgen.validators import validate_assembly
    result = validate_assembly(models, registry, settings)
    if result.has_errors:
        raise ConfigurationError(result.format_report())
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from restgen.config import RestGenSettings
from restgen.descriptors import parent_foreign_key
from restgen.errors import ConfigurationError
from restgen.loader import ComponentRegistry
from restgen.middlewares import compose
from restgen.models import ALL_ENDPOINTS, ENDPOINT_ORDER, ModelDescriptor, ModuleComponents
from restgen.utils import to_kebab_case

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("restgen.validators")

# ---------------------------------------------------------------------------
# Validation result container
# ---------------------------------------------------------------------------


class ValidationError:
    """Lightweight error descriptor (no Pydantic overhead)."""

    __slots__ = ("level", "code", "message", "context")

    def __init__(
        self,
        level: str,
        code: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.level: str = level  # "error" | "warning" | "info"
        self.code: str = code
        self.message: str = message
        self.context: Dict[str, Any] = context or {}

    @property
    def is_error(self) -> bool:
        return self.level == "error"

    @property
    def is_warning(self) -> bool:
        return self.level == "warning"

    def __repr__(self) -> str:
        return f"[{self.level.upper()}] {self.code}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


class ValidationResult:
    """Accumulates ``ValidationError`` items from the assembly checks."""

    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: List[ValidationError] = []

    def add_error(self, code: str, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        self._items.append(ValidationError("error", code, message, context))

    def add_warning(self, code: str, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        self._items.append(ValidationError("warning", code, message, context))

    def merge(self, other: "ValidationResult") -> None:
        self._items.extend(other._items)

    @property
    def errors(self) -> List[ValidationError]:
        return [e for e in self._items if e.is_error]

    @property
    def warnings(self) -> List[ValidationError]:
        return [e for e in self._items if e.is_warning]

    @property
    def has_errors(self) -> bool:
        return any(e.is_error for e in self._items)

    @property
    def error_count(self) -> int:
        return sum(1 for e in self._items if e.is_error)

    @property
    def warning_count(self) -> int:
        return sum(1 for e in self._items if e.is_warning)

    @property
    def is_valid(self) -> bool:
        return not self.has_errors

    def codes(self) -> List[str]:
        return [e.code for e in self._items]

    def summary(self) -> str:
        return (
            f"Validation: {self.error_count} error(s), "
            f"{self.warning_count} warning(s), "
            f"{len(self._items)} total item(s)."
        )

    def __repr__(self) -> str:
        return f"<ValidationResult {self.summary()}>"

    def __bool__(self) -> bool:
        """Truthy when there are NO errors."""
        return self.is_valid

    def __len__(self) -> int:
        return len(self._items)

    def format_report(self) -> str:
        lines: List[str] = [self.summary(), ""]
        for item in self._items:
            prefix: str = {"error": "❌", "warning": "⚠️"}.get(item.level, "•")
            lines.append(f"  {prefix} [{item.code}] {item.message}")
            for k, v in item.context.items():
                lines.append(f"       {k}: {v}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Known names
# ---------------------------------------------------------------------------

_SERVICE_OPERATIONS: FrozenSet[str] = frozenset(
    {
        "CreateOne", "CreateMany", "Count", "FindMany", "FindOne",
        "UpdateOne", "UpdateMany", "DeleteOne", "DeleteMany",
        "BatchUpdate", "BatchDelete",
    }
)

_ENDPOINT_OPERATIONS: FrozenSet[str] = frozenset(e[:1].upper() + e[1:] for e in ENDPOINT_ORDER)

_OPERATION_HOOK_NAMES: FrozenSet[str] = ALL_ENDPOINTS | {"batchUpdate", "batchDelete"}

_HOOK_KEY_RE: re.Pattern[str] = re.compile(r"^(?:before|after)(\w+)$|^on(\w+)Error$")


def _hook_operation(key: str) -> Optional[str]:
    match = _HOOK_KEY_RE.match(key)
    if match is None:
        return None
    return match.group(1) or match.group(2)


# ---------------------------------------------------------------------------
# Per-model validators
# ---------------------------------------------------------------------------


def validate_router_config(
    model: ModelDescriptor,
    components: ModuleComponents,
    models_by_key: Dict[str, ModelDescriptor],
) -> ValidationResult:
    """Endpoint names and parent-route references of one model's router config."""
    result = ValidationResult()
    config = components.router_config

    if isinstance(config.disable, dict):
        for name in config.disable:
            if name not in ALL_ENDPOINTS:
                result.add_error(
                    "UNKNOWN_ENDPOINT",
                    f"Router config of '{model.name}' disables unknown endpoint '{name}'.",
                    {"model": model.name, "endpoint": name},
                )

    parent = config.parent
    if parent is None:
        return result

    if parent.endpoints != "*":
        for name in parent.endpoints:
            if name not in ALL_ENDPOINTS:
                result.add_error(
                    "UNKNOWN_ENDPOINT",
                    f"Parent routes of '{model.name}' list unknown endpoint '{name}'.",
                    {"model": model.name, "endpoint": name},
                )

    parent_model = models_by_key.get(to_kebab_case(parent.model))
    if parent_model is None:
        result.add_error(
            "PARENT_MODEL_UNKNOWN",
            f"Parent model '{parent.model}' of '{model.name}' does not exist.",
            {"model": model.name, "parent": parent.model},
        )
        return result

    fk = parent_foreign_key(parent_model, parent.foreign_key_field)
    if model.get_field(fk) is None:
        result.add_error(
            "PARENT_FK_MISSING",
            f"'{model.name}' has no field '{fk}' referencing parent '{parent_model.name}'.",
            {"model": model.name, "parent": parent_model.name, "foreign_key": fk},
        )
    return result


def validate_interceptors(model: ModelDescriptor, components: ModuleComponents) -> ValidationResult:
    """Interceptor and service-hook keys must name a known operation and be callable."""
    result = ValidationResult()
    groups = (
        ("interceptor", components.interceptors or {}, _ENDPOINT_OPERATIONS),
        ("service hook", components.hooks or {}, _SERVICE_OPERATIONS),
    )
    for label, mapping, known in groups:
        for key, value in mapping.items():
            operation = _hook_operation(key)
            if operation not in known:
                result.add_warning(
                    "UNKNOWN_HOOK_KEY",
                    f"{label.capitalize()} '{key}' of '{model.name}' matches no operation and is never called.",
                    {"model": model.name, "key": key},
                )
                continue
            try:
                compose(value, key)
            except ConfigurationError as exc:
                result.add_error(
                    "INVALID_HOOK",
                    f"{label.capitalize()} '{key}' of '{model.name}': {exc.message}",
                    {"model": model.name, "key": key},
                )

    for operation in components.operation_hooks or {}:
        if operation != "*" and operation not in _OPERATION_HOOK_NAMES:
            result.add_warning(
                "UNKNOWN_HOOK_KEY",
                f"Operation hooks of '{model.name}' target unknown operation '{operation}'.",
                {"model": model.name, "operation": operation},
            )
    return result


# ---------------------------------------------------------------------------
# Settings validators
# ---------------------------------------------------------------------------


def validate_settings(
    settings: RestGenSettings,
    models_by_key: Dict[str, ModelDescriptor],
) -> ValidationResult:
    result = ValidationResult()
    if settings.authentication is not None:
        user_model = settings.authentication.user_model
        if to_kebab_case(user_model) not in models_by_key:
            result.add_warning(
                "USER_MODEL_MISSING",
                f"Authentication is configured but user model '{user_model}' is not among "
                "the models; every authenticated request will fail.",
                {"user_model": user_model},
            )
    if settings.allow_dangerous_query_options:
        result.add_warning(
            "DANGEROUS_QUERY_OPTIONS",
            "Clients may pass raw ORM options through 'prismaQueryOptions'.",
        )
    return result


# ---------------------------------------------------------------------------
# Master entry point
# ---------------------------------------------------------------------------


def validate_assembly(
    models: Sequence[ModelDescriptor],
    registry: ComponentRegistry,
    settings: RestGenSettings,
) -> ValidationResult:
    """
    Run every check over *models* and their registered components.

    Components registered for a name that matches no model are reported as
    warnings.
    """
    logger.info("Starting assembly validation: %d model(s).", len(models))
    result = ValidationResult()
    models_by_key: Dict[str, ModelDescriptor] = {m.kebab_name: m for m in models}

    for model in models:
        components = registry.get(model.name)
        result.merge(validate_router_config(model, components, models_by_key))
        result.merge(validate_interceptors(model, components))

    for key, _components in registry.items():
        if key not in models_by_key:
            result.add_warning(
                "COMPONENTS_UNKNOWN_MODEL",
                f"Components registered for '{key}', which is not a model.",
                {"model": key},
            )

    result.merge(validate_settings(settings, models_by_key))

    if result.has_errors:
        logger.error("Validation FAILED with %d error(s). %s", result.error_count, result.summary())
    else:
        logger.info("Validation PASSED. %s", result.summary())
    return result


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "ValidationError",
    "ValidationResult",
    "validate_router_config",
    "validate_interceptors",
    "validate_settings",
    "validate_assembly",
]

logger.debug("restgen.validators loaded: %d public symbols.", len(__all__))
