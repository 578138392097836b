# File: restgen/cli.py
"""
NexaFlow RestGen - Command-Line Interface
===========================================

Built with the standard-library ``argparse`` module.

Usage examples::

    # Print the generated route table
    restgen routes --models myapp.models:Base --config restgen.yaml

    # Export the auth-action registry for a permission admin UI
    restgen auth-actions --models myapp.models:Base --format yaml -o actions.yaml

    # Run the startup validation only
    restgen validate --models myapp.models:Base

    # Serve the API with uvicorn
    restgen serve --models myapp.models:Base --database-url sqlite+aiosqlite:///app.db

Exit codes:
    0 - success
    1 - validation error
    2 - configuration error
    4 - input/argument error
"""

from __future__ import annotations

import argparse
import importlib
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional, Sequence, Tuple

import yaml

from restgen.errors import ConfigurationError

# ---------------------------------------------------------------------------
# Logger (configured in _setup_logging)
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("restgen")


# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_SUCCESS: int = 0
EXIT_VALIDATION_ERROR: int = 1
EXIT_CONFIGURATION_ERROR: int = 2
EXIT_INPUT_ERROR: int = 4


class InputError(Exception):
    """A bad CLI argument: unknown module, missing file, invalid settings."""


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(verbosity: int) -> None:
    """
    Configure the restgen logger based on verbosity level.

    Args:
        verbosity: 0 = WARNING, 1 = INFO, 2+ = DEBUG.
    """
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity >= 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    handler: logging.StreamHandler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    fmt: str = "%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s"
    datefmt: str = "%H:%M:%S"
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    root_logger: logging.Logger = logging.getLogger("restgen")
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.propagate = False


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-m", "--models",
        type=str,
        required=True,
        metavar="MODULE:ATTR",
        help="Declarative base (or module) holding the SQLAlchemy models, e.g. 'app.models:Base'.",
    )
    parser.add_argument(
        "-c", "--config",
        type=str,
        default=None,
        metavar="PATH",
        help="Settings file (JSON or YAML).",
    )
    parser.add_argument(
        "--api-prefix",
        type=str,
        default=None,
        metavar="PREFIX",
        help="Override the API URL prefix (e.g. '/api/v1').",
    )
    parser.add_argument(
        "--permission-checker",
        type=str,
        default=None,
        metavar="MODULE:ATTR",
        help="Callable (user, resource, action) -> bool used by dynamic access control.",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v for INFO, -vv for DEBUG).",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        default=False,
        help="Suppress all output except errors.",
    )


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the argument parser."""
    from restgen import __version__

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="restgen",
        description=(
            "NexaFlow RestGen: generic REST routes for SQLAlchemy models.\n\n"
            "Mounts CRUD endpoints with authentication, access control, "
            "interceptors and query features on a FastAPI app."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"NexaFlow RestGen v{__version__}")

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    routes = commands.add_parser("routes", help="Print the generated route table.")
    _add_common_arguments(routes)

    actions = commands.add_parser("auth-actions", help="Export the auth-action registry.")
    _add_common_arguments(actions)
    actions.add_argument(
        "--format",
        dest="output_format",
        choices=["json", "yaml"],
        default="json",
        help="Output format (default: json).",
    )
    actions.add_argument(
        "-o", "--output",
        type=str,
        default=None,
        metavar="PATH",
        help="Write to this file instead of stdout.",
    )

    validate = commands.add_parser("validate", help="Run the startup validation only.")
    _add_common_arguments(validate)

    serve = commands.add_parser("serve", help="Serve the API with uvicorn.")
    _add_common_arguments(serve)
    serve.add_argument("--host", type=str, default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--database-url", type=str, default=None, metavar="URL")

    return parser


# ---------------------------------------------------------------------------
# Input loading
# ---------------------------------------------------------------------------


def _import_object(spec: str) -> Any:
    """Resolve ``module:attr`` (or a bare module path)."""
    module_name, _, attr = spec.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise InputError(f"Cannot import module '{module_name}': {exc}") from exc
    if not attr:
        return module
    try:
        return getattr(module, attr)
    except AttributeError as exc:
        raise InputError(f"Module '{module_name}' has no attribute '{attr}'.") from exc


def _load_settings(args: argparse.Namespace) -> Any:
    from restgen.config import build_settings, load_settings_file

    raw: Dict[str, Any] = {}
    if args.config:
        try:
            raw = load_settings_file(Path(args.config).resolve())
        except (FileNotFoundError, ValueError) as exc:
            raise InputError(str(exc)) from exc

    overrides: Dict[str, Any] = {}
    if args.api_prefix is not None:
        overrides["api_prefix"] = args.api_prefix
    if getattr(args, "database_url", None) is not None:
        overrides["database_url"] = args.database_url
    try:
        return build_settings(raw, overrides)
    except ValueError as exc:
        raise InputError(str(exc)) from exc


def _load_project(args: argparse.Namespace) -> Tuple[Any, Any, List[Any], Any]:
    """Source, settings, model descriptors and component registry for *args*."""
    from restgen.delegate import introspect_models
    from restgen.loader import ComponentRegistry

    settings = _load_settings(args)
    source = _import_object(args.models)
    models = introspect_models(source)
    if not models:
        raise InputError(f"No mapped models found in '{args.models}'.")
    registry = ComponentRegistry()
    if settings.modules_package:
        registry.load_from_package(settings.modules_package, [m.name for m in models])
    return source, settings, models, registry


def _permission_checker(args: argparse.Namespace) -> Optional[Any]:
    if not args.permission_checker:
        return None
    checker = _import_object(args.permission_checker)
    if not callable(checker):
        raise InputError(f"'{args.permission_checker}' is not callable.")
    return checker


def _assembler(args: argparse.Namespace) -> Any:
    """A ``RouterAssembler`` over an unbound session factory (nothing is queried)."""
    from sqlalchemy.ext.asyncio import async_sessionmaker

    from restgen.auth import AuthActionService, AuthService
    from restgen.delegate import build_delegates
    from restgen.router import RouterAssembler, default_service_factory

    source, settings, models, registry = _load_project(args)
    delegates = build_delegates(source, async_sessionmaker())
    auth_service = None
    if settings.authentication is not None:
        auth_service = AuthService(
            settings.authentication, permission_checker=_permission_checker(args)
        )
    return RouterAssembler(
        models,
        registry,
        settings,
        default_service_factory(delegates, models, settings),
        auth_service=auth_service,
        auth_actions=AuthActionService(),
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _run_routes(args: argparse.Namespace) -> int:
    assembler = _assembler(args)
    assembler.build()
    prefix: str = assembler.settings.api_prefix
    rows = assembler.route_table

    print(f"\n{'='*72}")
    print(f"  Generated routes ({len(rows)})")
    print(f"{'='*72}")
    for row in rows:
        auth = "auth" if row["auth"] else "public"
        print(f"  {row['method']:<7} {prefix + row['path']:<44} {row['operation']:<11} {auth}")
    print(f"{'='*72}\n")
    return EXIT_SUCCESS


def _run_auth_actions(args: argparse.Namespace) -> int:
    assembler = _assembler(args)
    assembler.build()
    data: List[Dict[str, Any]] = assembler.auth_actions.to_list()

    if args.output_format == "yaml":
        text: str = yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
    else:
        text = json.dumps(data, indent=2, ensure_ascii=False) + "\n"

    if args.output:
        path = Path(args.output).resolve()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        logger.info("Exported %d auth action(s) to %s", len(data), path)
    else:
        sys.stdout.write(text)
    return EXIT_SUCCESS


def _run_validate(args: argparse.Namespace) -> int:
    from restgen.utils import Timer
    from restgen.validators import validate_assembly

    _source, settings, models, registry = _load_project(args)
    with Timer("validation") as t:
        result = validate_assembly(models, registry, settings)

    print(f"\n{'='*50}")
    print("  Assembly Validation Report")
    print(f"{'='*50}")
    print(f"  Models:   {len(models)}")
    print(f"  Time:     {t.elapsed:.3f}s")
    print(f"  Valid:    {'Yes' if result.is_valid else 'No'}")

    if result.errors:
        print(f"\n  Errors ({len(result.errors)}):")
        for err in result.errors:
            print(f"    ✗ {err!r}")

    if result.warnings:
        print(f"\n  Warnings ({len(result.warnings)}):")
        for warn in result.warnings:
            print(f"    ⚠ {warn!r}")

    if result.is_valid and not result.warnings:
        print("\n  ✅ All validations passed!")

    print(f"{'='*50}\n")
    return EXIT_SUCCESS if result.is_valid else EXIT_VALIDATION_ERROR


def _run_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from restgen.router import bootstrap

    source, settings, _models, registry = _load_project(args)
    app = bootstrap(source, settings, registry=registry, permission_checker=_permission_checker(args))
    logger.info("Serving on http://%s:%d%s", args.host, args.port, settings.api_prefix)
    uvicorn.run(app, host=args.host, port=args.port)
    return EXIT_SUCCESS


_COMMANDS = {
    "routes": _run_routes,
    "auth-actions": _run_auth_actions,
    "validate": _run_validate,
    "serve": _run_serve,
}


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def cli_main(argv: Optional[Sequence[str]] = None) -> NoReturn:
    """
    Main CLI entry point.

    Args:
        argv: Optional argument list (defaults to sys.argv[1:]).
    """
    parser: argparse.ArgumentParser = _build_parser()
    args: argparse.Namespace = parser.parse_args(argv)

    if args.quiet:
        logging.disable(logging.CRITICAL)
        verbosity: int = -1
    else:
        verbosity = args.verbose
    _setup_logging(verbosity)

    try:
        exit_code: int = _COMMANDS[args.command](args)
    except InputError as exc:
        logger.error("%s", exc)
        exit_code = EXIT_INPUT_ERROR
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        exit_code = EXIT_CONFIGURATION_ERROR

    if exit_code != EXIT_SUCCESS:
        logger.error("'%s' failed with exit code %d.", args.command, exit_code)
    sys.exit(exit_code)


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "cli_main",
    "InputError",
    "EXIT_SUCCESS",
    "EXIT_VALIDATION_ERROR",
    "EXIT_CONFIGURATION_ERROR",
    "EXIT_INPUT_ERROR",
]

logger.debug("restgen.cli loaded.")
