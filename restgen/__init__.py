# File: restgen/__init__.py
"""
NexaFlow RestGen - Generic REST Routes for SQLAlchemy Models
==============================================================

Mounts a full set of CRUD endpoints for every model of a SQLAlchemy
declarative base on a FastAPI app: filtering, sorting, field selection and
pagination from the query string, nested relation writes, JWT
authentication, role or callback based access control, interceptor chains
and per-model customisation modules.

Architecture overview::

    ┌──────────────┐     ┌────────────────┐     ┌──────────────────┐
    │  CLI / App   │────▶│ RouterAssembler │────▶│  RouteDescriptor │
    │   (cli.py)   │     │   (router.py)   │     │ (descriptors.py) │
    └──────────────┘     └───────┬────────┘     └──────────────────┘
                                 │
                    ┌────────────┼─────────────┐
                    ▼            ▼             ▼
             ┌────────────┐ ┌────────────┐ ┌──────────┐
             │ RouteChain │ │ Controller │ │   Auth   │
             │(middlewares)│ │  Service   │ │ (auth.py)│
             └────────────┘ │  Delegate  │ └──────────┘
                            └────────────┘

Usage::

    from restgen import RestGenSettings, bootstrap
    app = bootstrap(Base, RestGenSettings(database_url="sqlite+aiosqlite:///app.db"))

Public API:
    - bootstrap / create_app - App factories
    - RouterAssembler        - Router assembly orchestrator
    - ComponentRegistry      - Per-model customisations
    - RestGenSettings        - Engine settings model
    - validate_assembly      - Startup validation entry point
"""

from __future__ import annotations

__version__: str = "1.0.0"
__author__: str = "NexaFlow Team"
__license__: str = "MIT"

from restgen.auth import AuthActionService, AuthService, PasswordHasher, auth_action_service
from restgen.config import RestGenSettings, build_settings, load_settings_file
from restgen.controller import BaseController
from restgen.delegate import SQLAlchemyDelegate, introspect_models
from restgen.errors import AppError, ConfigurationError
from restgen.loader import ComponentRegistry
from restgen.models import (
    AuthConfigs,
    DetailedAccessRule,
    ModelDescriptor,
    ModuleComponents,
    OperationHooks,
    QueryOptionsConfig,
    RequestContext,
    RouterConfig,
    RouterModule,
)
from restgen.router import RouterAssembler, bootstrap, create_app
from restgen.service import BaseService
from restgen.validators import ValidationResult, validate_assembly

# ---------------------------------------------------------------------------
# Public API surface
# ---------------------------------------------------------------------------

__all__: list[str] = [
    # Version info
    "__version__",
    "__author__",
    "__license__",
    # App factories
    "bootstrap",
    "create_app",
    "RouterAssembler",
    # Settings & customisation
    "RestGenSettings",
    "build_settings",
    "load_settings_file",
    "ComponentRegistry",
    "ModuleComponents",
    "AuthConfigs",
    "DetailedAccessRule",
    "RouterConfig",
    "RouterModule",
    "QueryOptionsConfig",
    "OperationHooks",
    # Runtime
    "ModelDescriptor",
    "RequestContext",
    "BaseController",
    "BaseService",
    "SQLAlchemyDelegate",
    "introspect_models",
    # Auth
    "AuthService",
    "AuthActionService",
    "auth_action_service",
    "PasswordHasher",
    # Errors & validation
    "AppError",
    "ConfigurationError",
    "ValidationResult",
    "validate_assembly",
]
