# File: restgen/controller.py
"""
NexaFlow RestGen - Generic Controller / Operation Executor
============================================================
One parameterised executor runs every canonical operation from the static
``OPERATION_CONFIGS`` table:

    beforeQuery → bulk-filter guard → query features → afterQuery →
    service arguments → beforeService → service call (+ count for findMany) →
    afterService → result classification → response shaping →
    beforeResponse → PipelineResult

Stage hooks come from ``ModuleComponents.operation_hooks`` and receive the
``RequestContext``; the values they may rewrite live in ``ctx.state``
(``query_args``, ``service_args``, ``service_result``).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from restgen.config import RestGenSettings
from restgen.errors import (
    BadRequest,
    InvalidFilterMode,
    MissingRequestBody,
    MissingRequestQueryParameters,
    NoRecordsAffected,
    NotFound,
)
from restgen.features import APIFeatures, coerce_value, enforce_projection_exclusivity
from restgen.middlewares import call_interceptor
from restgen.models import (
    FieldKind,
    ModelDescriptor,
    ModuleComponents,
    OperationConfig,
    PipelineResult,
    RequestContext,
)
from restgen.service import BaseService
from restgen.utils import deep_merge, to_pascal_case

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("restgen.controller")

# Query keys that do not count as a filter for bulk mutations.
META_QUERY_KEYS: FrozenSet[str] = frozenset({"filterMode", "prismaQueryOptions"})

_LIST_FEATURES: FrozenSet[str] = frozenset({"filter", "sort", "limit_fields", "paginate"})

OPERATION_CONFIGS: Dict[str, OperationConfig] = {
    "createOne": OperationConfig(
        operation="createOne",
        service_method="create_one",
        success_status=201,
        query_features=frozenset({"limit_fields"}),
    ),
    "createMany": OperationConfig(
        operation="createMany",
        service_method="create_many",
        success_status=201,
    ),
    "findMany": OperationConfig(
        operation="findMany",
        service_method="find_many",
        success_status=200,
        query_features=_LIST_FEATURES,
        response_shape="list",
    ),
    "findOne": OperationConfig(
        operation="findOne",
        service_method="find_one",
        success_status=200,
        query_features=frozenset({"limit_fields"}),
        not_found_message="{model} not found",
    ),
    "updateOne": OperationConfig(
        operation="updateOne",
        service_method="update_one",
        success_status=200,
        query_features=frozenset({"limit_fields"}),
        not_found_message="{model} not found",
    ),
    "updateMany": OperationConfig(
        operation="updateMany",
        service_method="update_many",
        success_status=200,
        query_features=frozenset({"filter"}),
        requires_non_empty_filter_for_bulk=True,
        forbid_or_filter_mode=True,
        response_shape="count",
        not_found_message="{plural} not found",
        missing_filter_message="Filter criteria not provided for bulk update.",
    ),
    "deleteOne": OperationConfig(
        operation="deleteOne",
        service_method="delete_one",
        success_status=204,
        response_shape="empty",
        not_found_message="{model} not found",
    ),
    "deleteMany": OperationConfig(
        operation="deleteMany",
        service_method="delete_many",
        success_status=200,
        query_features=frozenset({"filter"}),
        requires_non_empty_filter_for_bulk=True,
        forbid_or_filter_mode=True,
        response_shape="count",
        not_found_message="No records found to delete",
        missing_filter_message="Filter criteria not provided for bulk deletion.",
    ),
    "batchUpdate": OperationConfig(
        operation="batchUpdate",
        service_method="batch_update",
        success_status=200,
        query_features=frozenset({"filter"}),
        forbid_or_filter_mode=True,
        response_shape="batch",
    ),
    "batchDelete": OperationConfig(
        operation="batchDelete",
        service_method="batch_delete",
        success_status=200,
        query_features=frozenset({"filter"}),
        forbid_or_filter_mode=True,
        response_shape="batch",
    ),
}


def available_resources(models: Iterable[ModelDescriptor]) -> Dict[str, Any]:
    """Resource identifiers of every model, plus ``file-upload``."""
    return {"data": [m.kebab_name for m in models] + ["file-upload"]}


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class BaseController:
    """Runs the canonical operations of one model against its ``BaseService``."""

    def __init__(
        self,
        descriptor: ModelDescriptor,
        service: BaseService,
        settings: Optional[RestGenSettings] = None,
        components: Optional[ModuleComponents] = None,
    ) -> None:
        self.descriptor: ModelDescriptor = descriptor
        self.service: BaseService = service
        self.settings: RestGenSettings = settings or RestGenSettings()
        self.components: ModuleComponents = components or ModuleComponents()

    def __repr__(self) -> str:
        return f"<BaseController {self.descriptor.name}>"

    # -- helpers ------------------------------------------------------------

    def _features(self, config: OperationConfig, query: Mapping[str, Any]) -> Dict[str, Any]:
        features = APIFeatures(
            self.descriptor,
            query,
            allow_dangerous=self.settings.allow_dangerous_query_options,
            user_model_name=self.settings.user_model_name,
            default_page_size=self.settings.default_page_size,
        )
        if "filter" in config.query_features:
            features.filter()
        if "sort" in config.query_features:
            features.sort()
        if "limit_fields" in config.query_features:
            features.limit_fields()
        if "paginate" in config.query_features:
            features.paginate()
        return features.filters

    def coerce_id(self, raw: Any) -> Any:
        scalar = self.descriptor.get_field(self.descriptor.id_field)
        kind: str = scalar.kind if scalar is not None else FieldKind.OTHER.value
        return coerce_value(raw, kind)

    def _record_filters(self, ctx: RequestContext) -> Dict[str, Any]:
        filters: Dict[str, Any] = {}
        for key, value in ctx.params.items():
            name = self.descriptor.id_field if key == "id" else key
            filters[name] = self.coerce_id(value) if key == "id" and value != "me" else value
        filters.update(ctx.parent_filter)
        return filters

    def _scoped_where(self, ctx: RequestContext, where: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not ctx.parent_filter:
            return dict(where or {})
        if not where:
            return dict(ctx.parent_filter)
        return {"AND": [where, dict(ctx.parent_filter)]}

    def _object_body(self, ctx: RequestContext) -> Dict[str, Any]:
        if not isinstance(ctx.body, Mapping):
            raise MissingRequestBody("Request body must be a JSON object.")
        return {**ctx.body, **ctx.parent_filter}

    def _not_found_message(self, config: OperationConfig, ctx: RequestContext) -> str:
        pascal = self.descriptor.pascal_name
        if config.response_shape == "count":
            plural = to_pascal_case(self.descriptor.plural_route_name)
            return (config.not_found_message or "{plural} not found").format(plural=plural)
        record_id = ctx.params.get("id")
        if set(ctx.params) == {"id"} and record_id != "me":
            return f"{pascal} with ID {record_id} not found"
        return (config.not_found_message or "{model} not found").format(model=pascal)

    def _service_args(
        self,
        operation: str,
        ctx: RequestContext,
        query_args: Dict[str, Any],
    ) -> Tuple[Any, ...]:
        context = ctx.service_context
        options = enforce_projection_exclusivity(deep_merge(ctx.query_options, query_args))
        options.pop("where", None)

        if operation == "createOne":
            return (self._object_body(ctx), options, context)
        if operation == "createMany":
            body = ctx.body
            if isinstance(body, list) and ctx.parent_filter:
                body = [
                    {**item, **ctx.parent_filter} if isinstance(item, Mapping) else item
                    for item in body
                ]
            return (body, ctx.query_options, context)
        if operation == "findMany":
            filters = dict(query_args)
            where = self._scoped_where(ctx, query_args.get("where"))
            if where:
                filters["where"] = where
            return (filters, ctx.query_options, context)
        if operation == "findOne":
            return (self._record_filters(ctx), options, context)
        if operation == "updateOne":
            if not isinstance(ctx.body, Mapping):
                raise MissingRequestBody("Request body must be a JSON object.")
            return (self._record_filters(ctx), dict(ctx.body), options, context)
        if operation == "deleteOne":
            return (self._record_filters(ctx), context)

        where = self._scoped_where(ctx, query_args.get("where"))
        if operation == "updateMany":
            if not isinstance(ctx.body, Mapping):
                raise MissingRequestBody("Request body must be a JSON object.")
            return (where, dict(ctx.body), ctx.query_options, context)
        if operation == "deleteMany":
            return (where, context)
        if operation in ("batchUpdate", "batchDelete"):
            return (ctx.body, where or None, context)
        raise BadRequest(f"Unknown operation '{operation}'.", code="UnknownOperation")

    async def _hook(self, hook: Any, ctx: RequestContext) -> None:
        if hook is not None:
            await call_interceptor(hook, ctx)

    # -- pipeline -----------------------------------------------------------

    async def execute(
        self,
        operation: str,
        ctx: RequestContext,
        hands_off: bool = False,
    ) -> PipelineResult:
        """
        Run *operation* for the request in *ctx*.

        Failures are raised as ``AppError`` subclasses; nothing is written to
        the client from here.
        """
        config: OperationConfig = OPERATION_CONFIGS[operation]
        hooks = self.components.hooks_for(operation)

        await self._hook(hooks.before_query, ctx)

        query: Dict[str, Any] = dict(ctx.query)
        if config.requires_non_empty_filter_for_bulk and set(query) <= META_QUERY_KEYS:
            raise MissingRequestQueryParameters(
                config.missing_filter_message or "Filter criteria not provided."
            )
        if config.forbid_or_filter_mode:
            mode = query.get("filterMode")
            if mode is not None and mode != "AND":
                raise InvalidFilterMode(
                    "Bulk operations only accept filterMode=AND.",
                    meta={"filterMode": mode},
                )
            query["filterMode"] = "AND"

        ctx.state["query_args"] = self._features(config, query)
        if (
            config.requires_non_empty_filter_for_bulk
            and not ctx.state["query_args"].get("where")
            and not ctx.parent_filter
        ):
            raise MissingRequestQueryParameters(
                config.missing_filter_message or "Filter criteria not provided."
            )
        await self._hook(hooks.after_query, ctx)

        ctx.state["service_args"] = self._service_args(operation, ctx, ctx.state["query_args"])
        await self._hook(hooks.before_service, ctx)

        method = getattr(self.service, config.service_method)
        args: Tuple[Any, ...] = tuple(ctx.state["service_args"])
        total: Optional[int] = None
        if operation == "findMany":
            count_where = deep_merge(args[1], args[0]).get("where")
            outcomes = await asyncio.gather(
                method(*args),
                self.service.count(count_where, ctx.service_context),
                return_exceptions=True,
            )
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome
            data, total = outcomes
        else:
            data = await method(*args)
        ctx.state["service_result"] = data
        await self._hook(hooks.after_service, ctx)
        data = ctx.state["service_result"]

        result = self._shape(config, ctx, data, total)
        ctx.result = result
        await self._hook(hooks.before_response, ctx)
        result.handed_off = hands_off
        return result

    def _shape(
        self,
        config: OperationConfig,
        ctx: RequestContext,
        data: Any,
        total: Optional[int],
    ) -> PipelineResult:
        shape = config.response_shape
        status = config.success_status

        if shape == "list":
            return PipelineResult(
                data={"total": total, "results": len(data), "data": data}, status_code=status
            )
        if shape == "count":
            count = int((data or {}).get("count", 0))
            if count == 0:
                raise NoRecordsAffected(self._not_found_message(config, ctx))
            return PipelineResult(data={"results": count, "data": data}, status_code=status)
        if shape == "batch":
            return PipelineResult(data={"results": len(data), "data": data}, status_code=status)

        if not data:
            if config.operation == "createMany":
                raise MissingRequestBody("Nothing was created from the request body.")
            raise NotFound(self._not_found_message(config, ctx))
        if shape == "empty":
            return PipelineResult(status_code=status, additional_data={"data": data})
        return PipelineResult(data={"data": data}, status_code=status)

    # -- per-operation entry points -----------------------------------------

    async def create_one(self, ctx: RequestContext) -> PipelineResult:
        return await self.execute("createOne", ctx)

    async def create_many(self, ctx: RequestContext) -> PipelineResult:
        return await self.execute("createMany", ctx)

    async def find_many(self, ctx: RequestContext) -> PipelineResult:
        return await self.execute("findMany", ctx)

    async def find_one(self, ctx: RequestContext) -> PipelineResult:
        return await self.execute("findOne", ctx)

    async def update_one(self, ctx: RequestContext) -> PipelineResult:
        return await self.execute("updateOne", ctx)

    async def update_many(self, ctx: RequestContext) -> PipelineResult:
        return await self.execute("updateMany", ctx)

    async def delete_one(self, ctx: RequestContext) -> PipelineResult:
        return await self.execute("deleteOne", ctx)

    async def delete_many(self, ctx: RequestContext) -> PipelineResult:
        return await self.execute("deleteMany", ctx)

    async def batch_update(self, ctx: RequestContext) -> PipelineResult:
        return await self.execute("batchUpdate", ctx)

    async def batch_delete(self, ctx: RequestContext) -> PipelineResult:
        return await self.execute("batchDelete", ctx)


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "META_QUERY_KEYS",
    "OPERATION_CONFIGS",
    "available_resources",
    "BaseController",
]

logger.debug("restgen.controller loaded: %d public symbols.", len(__all__))
