# File: restgen/middlewares.py
"""
NexaFlow RestGen - Middleware Composer & Request Chain
========================================================
Every generated route runs the same fixed chain::

    [validate_body, query_options_injector, *before, generic_handler,
     *after, send_response, *on_error]

``before`` / ``after`` / ``on_error`` come from the model's interceptor
module (``before<Op>``, ``after<Op>``, ``on<Op>Error``).  Each value may be a
callable or a list of callables; anything else is rejected when the router
is assembled, never at request time.

Interceptors receive the ``RequestContext`` (on-error interceptors also get
the exception) and may be sync or async.  Returning a Starlette ``Response``
from any interceptor ends the chain with that response.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from starlette.responses import Response

from restgen.errors import AppError, ConfigurationError, ValidationFailed
from restgen.features import parse_json_object
from restgen.models import BodyValidator, PipelineResult, QueryOptionsConfig, RequestContext
from restgen.utils import deep_merge

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("restgen.middlewares")

Interceptor = Callable[..., Any]

# General query-option keys applying to each endpoint, lowest precedence first.
GENERAL_OPTION_KEYS: Dict[str, Tuple[str, ...]] = {
    "findMany": ("find",),
    "findOne": ("find",),
    "createOne": ("create", "save", "saveOne"),
    "createMany": ("create", "save", "saveMany"),
    "updateOne": ("update", "save", "saveOne"),
    "updateMany": ("update", "save", "saveMany"),
    "deleteOne": ("delete",),
    "deleteMany": ("delete",),
}


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def compose(value: Any, label: str = "interceptor") -> List[Interceptor]:
    """
    Normalise an interceptor value into an ordered list of callables.

    Raises:
        ConfigurationError: If *value* (or any list element) is not callable.
    """
    if value is None:
        return []
    if callable(value):
        return [value]
    if isinstance(value, (list, tuple)):
        for index, fn in enumerate(value):
            if not callable(fn):
                raise ConfigurationError(
                    f"ValidationError: {label} at index {index} must be a function, "
                    f"got {type(fn).__name__}.",
                    context={"label": label, "index": index},
                )
        return list(value)
    raise ConfigurationError(
        f"ValidationError: {label} must be a function or a list of functions, "
        f"got {type(value).__name__}.",
        context={"label": label},
    )


def _operation_suffix(endpoint: str) -> str:
    return endpoint[:1].upper() + endpoint[1:]


def _step_name(fn: Interceptor) -> str:
    return getattr(fn, "__name__", type(fn).__name__)


async def call_interceptor(fn: Interceptor, *args: Any) -> Any:
    """Call a sync or async interceptor and return its outcome."""
    outcome = fn(*args)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome


@dataclass(frozen=True, slots=True)
class RouteChain:
    """The interceptor lists of one route, in execution order."""

    endpoint: str
    before: Tuple[Interceptor, ...] = ()
    after: Tuple[Interceptor, ...] = ()
    on_error: Tuple[Interceptor, ...] = ()

    @property
    def hands_off(self) -> bool:
        return bool(self.after)

    def describe(self) -> List[str]:
        """Step names in execution order."""
        return [
            "validate_body",
            "query_options_injector",
            *(_step_name(fn) for fn in self.before),
            "generic_handler",
            *(_step_name(fn) for fn in self.after),
            "send_response",
            *(_step_name(fn) for fn in self.on_error),
        ]

    async def run(
        self,
        ctx: RequestContext,
        handler: Callable[[RequestContext], Awaitable[PipelineResult]],
        prepare: Sequence[Callable[[RequestContext], Any]] = (),
    ) -> Response:
        """
        Execute the chain for one request.

        *prepare* steps (body validation, then query-option injection) run first.
        Errors go through the on-error interceptors; an unhandled error is
        re-raised for the centralised handlers.
        """
        try:
            for step in prepare:
                await call_interceptor(step, ctx)
            for fn in self.before:
                outcome = await call_interceptor(fn, ctx)
                if isinstance(outcome, Response):
                    return outcome
            ctx.result = await handler(ctx)
            for fn in self.after:
                outcome = await call_interceptor(fn, ctx)
                if isinstance(outcome, Response):
                    return outcome
                if ctx.result is not None and ctx.result.sent:
                    return ctx.result.response
            return send_response(ctx.result)
        except Exception as exc:
            for fn in self.on_error:
                outcome = await call_interceptor(fn, ctx, exc)
                if isinstance(outcome, Response):
                    return outcome
            raise


def build_chain(interceptors: Optional[Dict[str, Any]], endpoint: str) -> RouteChain:
    """Compose ``before<Op>`` / ``after<Op>`` / ``on<Op>Error`` for *endpoint*."""
    source: Dict[str, Any] = interceptors or {}
    suffix: str = _operation_suffix(endpoint)
    chain = RouteChain(
        endpoint=endpoint,
        before=tuple(compose(source.get(f"before{suffix}"), f"before{suffix}")),
        after=tuple(compose(source.get(f"after{suffix}"), f"after{suffix}")),
        on_error=tuple(compose(source.get(f"on{suffix}Error"), f"on{suffix}Error")),
    )
    logger.debug("Chain for %s: %s", endpoint, " -> ".join(chain.describe()))
    return chain


# ---------------------------------------------------------------------------
# Query options
# ---------------------------------------------------------------------------


def resolve_query_options(
    config: Optional[QueryOptionsConfig],
    endpoint: str,
    request_query: Optional[Dict[str, Any]] = None,
    allow_dangerous: bool = False,
) -> Dict[str, Any]:
    """
    Layer the static query options of a model for *endpoint*.

    Later layers win: ``queryOptions`` < ``global`` < general action keys <
    endpoint key < request ``prismaQueryOptions`` (only when dangerous query
    options are allowed).
    """
    layers: List[Optional[Dict[str, Any]]] = []
    if config is not None:
        layers.append(config.query_options)
        layers.append(config.global_)
        for key in GENERAL_OPTION_KEYS.get(endpoint, ()):
            layers.append(config.get(key))
        layers.append(config.get(endpoint))
    if allow_dangerous and request_query:
        layers.append(
            parse_json_object(request_query.get("prismaQueryOptions"), "query prismaQueryOptions")
        )
    return deep_merge(*layers)


# ---------------------------------------------------------------------------
# Response & validation
# ---------------------------------------------------------------------------


def send_response(result: Optional[PipelineResult]) -> Response:
    """Write the pipeline result: empty 204, or a JSON envelope."""
    if result is None or not result.status_code:
        raise AppError("No status or data attached to the response", 500)
    if result.status_code == 204:
        return Response(status_code=204)
    return JSONResponse(status_code=result.status_code, content=jsonable_encoder(result.data))


def _validate_one(validator: BodyValidator, item: Any) -> Any:
    try:
        if validator.mode == "dto":
            return validator.target.model_validate(item).model_dump(exclude_unset=True)
        value = validator.target.validate_python(item)
    except PydanticValidationError as exc:
        raise ValidationFailed(
            errors=[
                {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
                for err in exc.errors()
            ]
        ) from exc
    if isinstance(value, BaseModel):
        return value.model_dump(exclude_unset=True)
    return value


def validate_body(validator: Optional[BodyValidator], body: Any) -> Any:
    """Validate *body*; return the cleaned body or raise ``ValidationFailed``."""
    if validator is None:
        return body
    if validator.many:
        if not isinstance(body, list):
            raise ValidationFailed(
                errors=[{"loc": [], "msg": "Expected an array of items", "type": "list_type"}]
            )
        return [_validate_one(validator, item) for item in body]
    return _validate_one(validator, body)


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "GENERAL_OPTION_KEYS",
    "compose",
    "call_interceptor",
    "RouteChain",
    "build_chain",
    "resolve_query_options",
    "send_response",
    "validate_body",
]

logger.debug("restgen.middlewares loaded: %d public symbols.", len(__all__))
