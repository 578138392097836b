# File: restgen/config.py
"""
NexaFlow RestGen - Engine Settings
====================================
A single validated ``RestGenSettings`` instance controls the engine:
environment, URL prefix, validation resolver mode, authentication, and the
query-options escape hatch.

Settings come from a JSON/YAML file (dispatch by extension), optionally
overridden by CLI flags, and are always parsed through Pydantic so a typo in a
key fails loudly instead of silently falling back to a default.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from restgen.models import ValidationResolver

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("restgen.config")

_SETTINGS_CONFIG: ConfigDict = ConfigDict(
    strict=False,
    populate_by_name=True,
    validate_assignment=True,
    use_enum_values=True,
    extra="forbid",
)


# ---------------------------------------------------------------------------
# Settings sections
# ---------------------------------------------------------------------------


class ValidationSettings(BaseModel):
    """Request body validation."""

    model_config = _SETTINGS_CONFIG

    resolver: Optional[ValidationResolver] = Field(
        default=None,
        description="'dto' (Pydantic model classes) or 'schema' (TypeAdapter types).",
    )
    strict: bool = Field(
        default=False,
        description="Require a validator for every create/update endpoint.",
    )


class JwtSettings(BaseModel):
    """Token signing and transport."""

    model_config = _SETTINGS_CONFIG

    secret: str = Field(..., min_length=1, description="HMAC signing secret.")
    algorithm: str = Field(default="HS256")
    expires_in: int = Field(
        default=60 * 60 * 24 * 30, ge=1, description="Token lifetime in seconds."
    )
    cookie_name: str = Field(default="access_token", alias="cookieName")

    @field_validator("algorithm")
    @classmethod
    def _reject_none_algorithm(cls, v: str) -> str:
        if v.lower() == "none":
            raise ValueError("The 'none' JWT algorithm is not allowed.")
        return v


class AuthenticationSettings(BaseModel):
    """Authentication mode.  Absent entirely means every route is public."""

    model_config = _SETTINGS_CONFIG

    mode: Literal["static", "dynamic"] = Field(
        default="static",
        description="'static' checks roles from config, 'dynamic' asks a permission checker.",
    )
    jwt: JwtSettings
    user_model: str = Field(default="user", alias="userModel")
    id_claim: str = Field(default="id", alias="idClaim")


class RestGenSettings(BaseModel):
    """Top-level engine settings."""

    model_config = _SETTINGS_CONFIG

    title: str = Field(default="RestGen API", min_length=1)
    environment: Literal["development", "production", "test"] = Field(default="development")
    api_prefix: str = Field(default="/api", alias="apiPrefix")
    database_url: Optional[str] = Field(default=None, alias="databaseUrl")
    modules_package: Optional[str] = Field(
        default=None,
        alias="modulesPackage",
        description="Dotted package scanned for per-model customisation modules.",
    )
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    authentication: Optional[AuthenticationSettings] = None
    allow_dangerous_query_options: bool = Field(
        default=False,
        alias="allowDangerousQueryOptions",
        description="Accept raw ORM options from the 'prismaQueryOptions' query parameter.",
    )
    default_page_size: int = Field(default=30, ge=1, le=10_000, alias="defaultPageSize")
    user_model_name: str = Field(default="user", alias="userModelName")

    @field_validator("api_prefix")
    @classmethod
    def _normalise_prefix(cls, v: str) -> str:
        v = v.strip()
        if not v or v == "/":
            return ""
        return "/" + v.strip("/")


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------


def _load_json_file(path: Path) -> Dict[str, Any]:
    try:
        data: Any = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object at top level, got {type(data).__name__}.")
    return data


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    try:
        data: Any = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping at top level, got {type(data).__name__}.")
    return data


def load_settings_file(path: Path) -> Dict[str, Any]:
    """
    Load a settings file (JSON or YAML), dispatching on the file extension.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ValueError: If the file can't be parsed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")
    if not path.is_file():
        raise ValueError(f"Settings path is not a file: {path}")

    suffix: str = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        return _load_yaml_file(path)
    if suffix == ".json":
        return _load_json_file(path)

    logger.info("Unknown extension '%s': trying JSON then YAML.", suffix)
    try:
        return _load_json_file(path)
    except ValueError:
        return _load_yaml_file(path)


def build_settings(
    raw: Optional[Dict[str, Any]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> RestGenSettings:
    """
    Validate *raw* settings, with *overrides* applied on top.

    Raises:
        ValueError: If validation fails.
    """
    data: Dict[str, Any] = dict(raw or {})
    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value
    try:
        settings = RestGenSettings.model_validate(data)
    except Exception as exc:
        raise ValueError(f"Settings validation failed: {exc}") from exc

    if settings.allow_dangerous_query_options:
        logger.warning(
            "allow_dangerous_query_options is enabled: clients may pass raw ORM options."
        )
    return settings


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "ValidationSettings",
    "JwtSettings",
    "AuthenticationSettings",
    "RestGenSettings",
    "load_settings_file",
    "build_settings",
]

logger.debug("restgen.config loaded: %d public symbols.", len(__all__))
