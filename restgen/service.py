# File: restgen/service.py
"""
NexaFlow RestGen - Generic CRUD Service
=========================================
The model-agnostic data-access layer.  One ``BaseService`` is built per model
and talks to that model's ORM delegate with Prisma-style argument dicts.

Responsibilities:
  1. Relation-body normalisation: nested relation payloads tagged with
     ``apiAction`` (or shaped by convention) become ORM relation operations.
  2. Password hashing for the user model.
  3. Service hooks: ``before<Op>`` / ``after<Op>`` / ``on<Op>Error``.
  4. Default projections: singular relations are included unless the caller
     asked for an explicit ``select``.
  5. Batch update/delete inside one delegate transaction.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Collection,
    Dict,
    FrozenSet,
    List,
    Mapping,
    Optional,
    Tuple,
)

from restgen.auth import PasswordHasher
from restgen.delegate import ModelDelegate
from restgen.errors import BadRequest, MissingArrayRequestBody, NotFound
from restgen.features import enforce_projection_exclusivity
from restgen.middlewares import compose
from restgen.models import ModelDescriptor
from restgen.utils import deep_merge, to_kebab_case

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("restgen.service")

RELATION_OPERATIONS: Tuple[str, ...] = (
    "create",
    "connect",
    "update",
    "delete",
    "disconnect",
    "deleteMany",
    "connectOrCreate",
    "upsert",
    "set",
)

# Relation actions dropped from bodies on create / createMany.
CREATE_IGNORED_ACTIONS: FrozenSet[str] = frozenset({"delete", "disconnect", "update"})


# ---------------------------------------------------------------------------
# Relation-body normalisation
# ---------------------------------------------------------------------------


def _check_api_action(action: Any) -> None:
    if action and action not in RELATION_OPERATIONS:
        raise BadRequest(
            f'Unknown value "{action}" for apiAction field, available values are '
            f"{', '.join(RELATION_OPERATIONS)}.",
            code="InvalidRelationAction",
        )


def is_relation_operation(value: Any) -> bool:
    """True when *value* is already shaped as ORM relation operations."""
    if not isinstance(value, Mapping):
        return False
    return any(value.get(op) for op in RELATION_OPERATIONS)


def strip_api_action(value: Any) -> Any:
    """Remove every ``apiAction`` key, recursively."""
    if isinstance(value, Mapping):
        return {k: strip_api_action(v) for k, v in value.items() if k != "apiAction"}
    if isinstance(value, list):
        return [strip_api_action(v) for v in value]
    return value


def _without_action(item: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in item.items() if k != "apiAction"}


def can_connect(target: Optional[ModelDescriptor], item: Any) -> bool:
    """
    Whether a nested relation item only identifies an existing record.

    That is the case for an explicit ``apiAction: "connect"``, an object whose
    only key is the id, or an object whose only key is a unique field.
    """
    if not isinstance(item, Mapping) or not item:
        return False
    action = item.get("apiAction")
    if action and action != "connect":
        return False
    if action == "connect":
        return True
    id_key = target.id_field if target is not None else "id"
    if len(item) == 1 and item.get(id_key) is not None:
        return True
    if len(item) == 1 and target is not None:
        return next(iter(item)) in target.unique_field_names
    return False


def normalize_relation_body(
    body: Any,
    descriptor: ModelDescriptor,
    descriptors: Optional[Mapping[str, ModelDescriptor]] = None,
    ignore_actions: Collection[str] = (),
) -> Any:
    """
    Rewrite relation keys of *body* into ORM relation operations.

    List relations collect their items into ``create`` / ``connect`` /
    ``update`` / ``disconnect`` / ``deleteMany``; singular relations become one
    of ``connect`` / ``create`` / ``update`` / ``delete`` / ``disconnect``.
    Items whose ``apiAction`` is in *ignore_actions* are dropped.  Values that
    are already relation operations pass through unchanged, and nested
    relations are normalised recursively when *descriptors* knows the target.

    Raises:
        BadRequest: On an unknown ``apiAction``, a top-level ``apiAction``, or
            an update item with no usable unique key.
    """
    if not isinstance(body, Mapping):
        return body
    source: Dict[str, Any] = copy.deepcopy(dict(body))
    result: Dict[str, Any] = dict(source)
    lookup: Mapping[str, ModelDescriptor] = descriptors or {}

    def nested(data: Dict[str, Any], target: Optional[ModelDescriptor]) -> Dict[str, Any]:
        if target is None or not target.relations:
            return data
        return normalize_relation_body(data, target, lookup, ignore_actions)

    for rel in descriptor.list_relations:
        value = source.get(rel.name)
        if not value:
            continue
        if isinstance(value, Mapping) and value.get("apiAction") in ignore_actions:
            result.pop(rel.name, None)
            continue
        if is_relation_operation(value) or not isinstance(value, list):
            continue

        target = lookup.get(rel.target)
        id_key = target.id_field if target is not None else "id"
        creates: List[Any] = []
        connects: List[Any] = []
        updates: List[Any] = []
        disconnects: List[Any] = []
        delete_ids: List[Any] = []

        for item in value:
            if not isinstance(item, Mapping):
                raise BadRequest(
                    f"Items of relation '{rel.name}' must be objects.",
                    code="InvalidRelationData",
                )
            action = item.get("apiAction")
            if action in ignore_actions:
                continue
            _check_api_action(action)

            if action == "delete":
                delete_ids.append(item.get(id_key))
            elif action == "disconnect":
                disconnects.append({id_key: item.get(id_key)})
            elif action != "update" and can_connect(target, item):
                connects.append(_without_action(item))
            elif action != "update" and not item.get(id_key):
                creates.append(nested(_without_action(item), target))
            else:
                data = _without_action(item)
                where_key: Optional[str] = id_key if data.get(id_key) else None
                if where_key is None:
                    for key, val in data.items():
                        if can_connect(target, {key: val}):
                            where_key = key
                            break
                if where_key is None:
                    raise BadRequest(
                        "No unique fields to be used in the where clause.",
                        meta={"data": dict(body)},
                        code="NoFieldToUseInWhereClause",
                    )
                where_value = data.pop(where_key)
                updates.append({"where": {where_key: where_value}, "data": nested(data, target)})

        operations: Dict[str, Any] = {}
        if creates:
            operations["create"] = creates
        if connects:
            operations["connect"] = connects
        if updates:
            operations["update"] = updates
        if disconnects:
            operations["disconnect"] = disconnects
        if delete_ids:
            operations["deleteMany"] = {id_key: {"in": delete_ids}}
        if operations:
            result[rel.name] = operations
        else:
            result.pop(rel.name, None)

    for rel in descriptor.singular_relations:
        value = source.get(rel.name)
        if not value or not isinstance(value, Mapping):
            continue
        action = value.get("apiAction")
        if action in ignore_actions:
            result.pop(rel.name, None)
            continue
        if is_relation_operation(value):
            continue
        _check_api_action(action)

        target = lookup.get(rel.target)
        id_key = target.id_field if target is not None else "id"
        if action == "delete":
            result[rel.name] = {"delete": True}
        elif action == "disconnect":
            result[rel.name] = {"disconnect": True}
        elif action != "update" and can_connect(target, value):
            result[rel.name] = {"connect": _without_action(value)}
        elif action != "update" and not value.get(id_key):
            result[rel.name] = {"create": nested(_without_action(value), target)}
        else:
            data = _without_action(value)
            record_id = data.pop(id_key, None)
            result[rel.name] = {
                "update": {"where": {id_key: record_id}, "data": nested(data, target)}
            }

    if "apiAction" in result:
        raise BadRequest(
            "Invalid usage of apiAction field, it must only be used on relation "
            "fields whether single or multiple.",
            code="InvalidRelationAction",
        )
    return strip_api_action(result)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


async def _invoke_all(hooks: List[Callable[..., Any]], payload: Dict[str, Any]) -> None:
    for hook in hooks:
        outcome = hook(payload)
        if inspect.isawaitable(outcome):
            await outcome


class BaseService:
    """
    Generic CRUD over one model's delegate.

    ``context`` is ``{"user": ..., "access_token": ...}`` and is passed to the
    hooks untouched; ``{"skip_service_hooks": True}`` in it disables them.
    """

    def __init__(
        self,
        descriptor: ModelDescriptor,
        delegate: ModelDelegate,
        hooks: Optional[Mapping[str, Any]] = None,
        password_hasher: Optional[PasswordHasher] = None,
        descriptors: Optional[Mapping[str, ModelDescriptor]] = None,
        user_model_name: str = "user",
    ) -> None:
        self.descriptor: ModelDescriptor = descriptor
        self.delegate: ModelDelegate = delegate
        self.descriptors: Mapping[str, ModelDescriptor] = descriptors or {descriptor.name: descriptor}
        self.is_user_model: bool = to_kebab_case(descriptor.name) == to_kebab_case(user_model_name)
        self.password_hasher: PasswordHasher = password_hasher or PasswordHasher()
        self._hooks: Dict[str, List[Callable[..., Any]]] = {
            key: compose(value, f"{descriptor.kebab_name} service hook '{key}'")
            for key, value in (hooks or {}).items()
        }

    def __repr__(self) -> str:
        return f"<BaseService {self.descriptor.name}>"

    # -- plumbing -----------------------------------------------------------

    async def _with_hooks(
        self,
        operation: str,
        payload: Dict[str, Any],
        call: Callable[[], Awaitable[Any]],
    ) -> Any:
        context = payload.get("context") or {}
        hooks: Dict[str, List[Callable[..., Any]]] = (
            {} if context.get("skip_service_hooks") else self._hooks
        )
        await _invoke_all(hooks.get(f"before{operation}", []), payload)
        try:
            result = await call()
        except Exception as exc:
            await _invoke_all(hooks.get(f"on{operation}Error", []), {**payload, "error": exc})
            raise
        await _invoke_all(hooks.get(f"after{operation}", []), {**payload, "result": result})
        return result

    async def _hash_password(self, data: Any) -> Any:
        if not self.is_user_model or not isinstance(data, Mapping):
            return data
        password = data.get("password")
        if not password or self.password_hasher.is_password_hashed(password):
            return data
        hashed = await asyncio.to_thread(self.password_hasher.hash_password, password)
        return {**data, "password": hashed}

    def _normalize(self, data: Any, ignore_actions: Collection[str] = ()) -> Any:
        return normalize_relation_body(data, self.descriptor, self.descriptors, ignore_actions)

    def _default_projection(self, args: Dict[str, Any]) -> Dict[str, Any]:
        if args.get("select"):
            return args
        include: Dict[str, Any] = {rel.name: True for rel in self.descriptor.singular_relations}
        include.update(args.get("include") or {})
        if include:
            args["include"] = include
        if self.is_user_model:
            args["omit"] = {"password": True, **(args.get("omit") or {})}
        return args

    def _where(self, filters: Any) -> Dict[str, Any]:
        if not isinstance(filters, Mapping):
            raise BadRequest("Filters must be an object.", code="InvalidFilters")
        return dict(filters)

    # -- create -------------------------------------------------------------

    async def create_one(
        self,
        data: Dict[str, Any],
        query_options: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Create one record; delete/disconnect/update relation items are dropped."""

        async def call() -> Dict[str, Any]:
            body = self._normalize(await self._hash_password(data), CREATE_IGNORED_ACTIONS)
            args = deep_merge({"data": body}, query_options)
            return await self.delegate.create(self._default_projection(args))

        return await self._with_hooks(
            "CreateOne",
            {"data": data, "query_options": query_options, "context": context},
            call,
        )

    async def create_many(
        self,
        data: List[Dict[str, Any]],
        query_options: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, int]:
        if not isinstance(data, list) or not data:
            raise MissingArrayRequestBody("Request body must be a non-empty array.")

        async def call() -> Dict[str, int]:
            items: List[Any] = []
            for item in data:
                hashed = await self._hash_password(item)
                items.append(self._normalize(hashed, CREATE_IGNORED_ACTIONS))
            return await self.delegate.create_many(deep_merge({"data": items}, query_options))

        return await self._with_hooks(
            "CreateMany",
            {"data": data, "query_options": query_options, "context": context},
            call,
        )

    # -- read ---------------------------------------------------------------

    async def count(
        self,
        filters: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> int:
        return await self._with_hooks(
            "Count",
            {"filters": filters, "context": context},
            lambda: self.delegate.count({"where": dict(filters or {})}),
        )

    async def find_many(
        self,
        filters: Optional[Dict[str, Any]] = None,
        query_options: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        *filters* is the full argument dict (where, orderBy, skip, take,
        projection) computed from the request; it wins over *query_options*.
        """

        async def call() -> List[Dict[str, Any]]:
            args = enforce_projection_exclusivity(deep_merge(query_options, filters))
            return await self.delegate.find_many(self._default_projection(args))

        return await self._with_hooks(
            "FindMany",
            {"filters": filters, "query_options": query_options, "context": context},
            call,
        )

    async def find_by_id(
        self,
        record_id: Any,
        query_options: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        args = deep_merge({"where": {self.descriptor.id_field: record_id}}, query_options)
        return await self.delegate.find_unique(self._default_projection(args))

    async def find_one(
        self,
        filters: Dict[str, Any],
        query_options: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Exactly ``{id}`` (with id other than ``"me"``) is a unique lookup;
        anything else is a first-match lookup.
        """
        id_field = self.descriptor.id_field

        async def call() -> Optional[Dict[str, Any]]:
            where = self._where(filters)
            args = self._default_projection(deep_merge({"where": where}, query_options))
            if set(where) == {id_field} and where[id_field] != "me":
                return await self.delegate.find_unique(args)
            return await self.delegate.find_first(args)

        return await self._with_hooks(
            "FindOne",
            {"filters": filters, "query_options": query_options, "context": context},
            call,
        )

    # -- update -------------------------------------------------------------

    async def update_one(
        self,
        filters: Dict[str, Any],
        data: Dict[str, Any],
        query_options: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        async def call() -> Optional[Dict[str, Any]]:
            body = self._normalize(await self._hash_password(data))
            args = deep_merge({"where": self._where(filters), "data": body}, query_options)
            return await self.delegate.update(self._default_projection(args))

        return await self._with_hooks(
            "UpdateOne",
            {"filters": filters, "data": data, "query_options": query_options, "context": context},
            call,
        )

    async def update_many(
        self,
        filters: Dict[str, Any],
        data: Dict[str, Any],
        query_options: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, int]:
        async def call() -> Dict[str, int]:
            body = await self._hash_password(data)
            args = deep_merge({"where": self._where(filters), "data": body}, query_options)
            return await self.delegate.update_many(args)

        return await self._with_hooks(
            "UpdateMany",
            {"filters": filters, "data": data, "query_options": query_options, "context": context},
            call,
        )

    # -- delete -------------------------------------------------------------

    async def delete_one(
        self,
        filters: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        return await self._with_hooks(
            "DeleteOne",
            {"filters": filters, "context": context},
            lambda: self.delegate.delete({"where": self._where(filters)}),
        )

    async def delete_many(
        self,
        filters: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, int]:
        return await self._with_hooks(
            "DeleteMany",
            {"filters": filters, "context": context},
            lambda: self.delegate.delete_many({"where": self._where(filters)}),
        )

    # -- batch --------------------------------------------------------------

    def _entry_where(self, entry_where: Mapping[str, Any], filters: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        if not entry_where:
            raise BadRequest(
                "Every batch entry must identify a record.", code="NoFieldToUseInWhereClause"
            )
        if not filters:
            return dict(entry_where)
        return {"AND": [dict(filters), dict(entry_where)]}

    def _split_update_entry(self, entry: Any) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        if not isinstance(entry, Mapping):
            raise BadRequest("Batch entries must be objects.", code="InvalidBatchEntry")
        if "data" in entry:
            return dict(entry.get("where") or {}), dict(entry["data"] or {})
        id_field = self.descriptor.id_field
        data = {k: v for k, v in entry.items() if k != id_field}
        where = {id_field: entry[id_field]} if entry.get(id_field) is not None else {}
        return where, data

    async def batch_update(
        self,
        entries: List[Dict[str, Any]],
        filters: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Update several records in one transaction.

        An entry is either ``{"where": {...}, "data": {...}}`` or a record body
        carrying its id.  A missing record aborts the whole batch.
        """
        if not isinstance(entries, list) or not entries:
            raise MissingArrayRequestBody("Request body must be a non-empty array.")

        async def call() -> List[Dict[str, Any]]:
            results: List[Dict[str, Any]] = []
            async with self.delegate.transaction():
                for entry in entries:
                    entry_where, data = self._split_update_entry(entry)
                    where = self._entry_where(entry_where, filters)
                    body = self._normalize(await self._hash_password(data))
                    record = await self.delegate.update(
                        self._default_projection({"where": where, "data": body})
                    )
                    if record is None:
                        raise NotFound(
                            f"{self.descriptor.pascal_name} not found", meta={"where": entry_where}
                        )
                    results.append(record)
            return results

        return await self._with_hooks(
            "BatchUpdate", {"data": entries, "filters": filters, "context": context}, call
        )

    async def batch_delete(
        self,
        entries: List[Dict[str, Any]],
        filters: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Delete several records, one ``where`` per entry, in one transaction."""
        if not isinstance(entries, list) or not entries:
            raise MissingArrayRequestBody("Request body must be a non-empty array.")

        async def call() -> List[Dict[str, Any]]:
            results: List[Dict[str, Any]] = []
            async with self.delegate.transaction():
                for entry in entries:
                    if not isinstance(entry, Mapping):
                        raise BadRequest("Batch entries must be objects.", code="InvalidBatchEntry")
                    record = await self.delegate.delete({"where": self._entry_where(entry, filters)})
                    if record is None:
                        raise NotFound(
                            f"{self.descriptor.pascal_name} not found", meta={"where": dict(entry)}
                        )
                    results.append(record)
            return results

        return await self._with_hooks(
            "BatchDelete", {"data": entries, "filters": filters, "context": context}, call
        )


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "RELATION_OPERATIONS",
    "CREATE_IGNORED_ACTIONS",
    "is_relation_operation",
    "strip_api_action",
    "can_connect",
    "normalize_relation_body",
    "BaseService",
]

logger.debug("restgen.service loaded: %d public symbols.", len(__all__))
