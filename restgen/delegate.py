# File: restgen/delegate.py
"""
NexaFlow RestGen - ORM Delegate (SQLAlchemy 2.0, async)
=========================================================
The generic service talks to the database through a per-model *delegate*
exposing ``create / create_many / find_many / find_first / find_unique /
update / update_many / delete / delete_many / count`` over plain dict
arguments::

    {"where": {...}, "orderBy": [...], "skip": 0, "take": 30,
     "select": {...} | "include": {...}, "omit": {...}, "data": {...}}

``SQLAlchemyDelegate`` implements that contract on top of an
``async_sessionmaker``: ``where`` trees compile to SQL expressions, nested
relation operations (create / connect / disconnect / update / delete /
deleteMany / set / connectOrCreate) are applied through the ORM, and
records come back as plain dicts.

This module also provides ``introspect_models``, the model-list and
relation-metadata provider built on ``sqlalchemy.inspect``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import date, datetime
from decimal import Decimal
from types import ModuleType
from typing import (
    Any,
    AsyncIterator,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapper, RelationshipDirection, RelationshipProperty, selectinload

from restgen.errors import BadRequest, NotFound, translate_integrity_error
from restgen.models import FieldKind, ModelDescriptor, RelationField, ScalarField

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("restgen.delegate")

# Active session for the running batch transaction (per asyncio task).
_active_session: ContextVar[Optional[Tuple[Any, AsyncSession]]] = ContextVar(
    "restgen_active_session", default=None
)

_COMPARISONS: Dict[str, str] = {
    "lt": "__lt__",
    "lte": "__le__",
    "gt": "__gt__",
    "gte": "__ge__",
}


# ---------------------------------------------------------------------------
# Delegate contract
# ---------------------------------------------------------------------------


@runtime_checkable
class ModelDelegate(Protocol):
    """Per-model CRUD primitives consumed by ``BaseService``."""

    async def create(self, args: Dict[str, Any]) -> Dict[str, Any]: ...

    async def create_many(self, args: Dict[str, Any]) -> Dict[str, int]: ...

    async def find_many(self, args: Dict[str, Any]) -> List[Dict[str, Any]]: ...

    async def find_first(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    async def find_unique(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    async def update(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    async def update_many(self, args: Dict[str, Any]) -> Dict[str, int]: ...

    async def delete(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    async def delete_many(self, args: Dict[str, Any]) -> Dict[str, int]: ...

    async def count(self, args: Dict[str, Any]) -> int: ...

    def transaction(self) -> Any: ...


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------


class SQLAlchemyDelegate:
    """
    ``ModelDelegate`` for one mapped class.

    Each call runs in its own session and commits on success, unless a
    ``transaction()`` block is active in the current task, in which case the
    call joins that block's session.
    """

    def __init__(self, mapped_class: type, session_factory: async_sessionmaker) -> None:
        self.mapped_class: type = mapped_class
        self.session_factory: async_sessionmaker = session_factory
        self._mapper: Mapper = sa_inspect(mapped_class)

    def __repr__(self) -> str:
        return f"<SQLAlchemyDelegate {self.mapped_class.__name__}>"

    # -- sessions -----------------------------------------------------------

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        active = _active_session.get()
        if active is not None and active[0] is self.session_factory:
            yield active[1]
            return
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise translate_integrity_error(exc) from exc
            except BaseException:
                await session.rollback()
                raise

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SQLAlchemyDelegate"]:
        """Run every delegate call inside the block in one session/transaction."""
        active = _active_session.get()
        if active is not None and active[0] is self.session_factory:
            yield self
            return
        async with self.session_factory() as session:
            token = _active_session.set((self.session_factory, session))
            try:
                yield self
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise translate_integrity_error(exc) from exc
            except BaseException:
                await session.rollback()
                raise
            finally:
                _active_session.reset(token)

    # -- reads --------------------------------------------------------------

    async def find_many(self, args: Dict[str, Any]) -> List[Dict[str, Any]]:
        stmt = self._select_statement(args)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [self._serialize_with(row, args) for row in rows]

    async def find_first(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        stmt = self._select_statement({**args, "take": 1})
        async with self._session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return self._serialize_with(row, args) if row is not None else None

    async def find_unique(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        where: Dict[str, Any] = dict(args.get("where") or {})
        if not where:
            raise BadRequest("A unique lookup requires a where clause.", code="MissingWhere")
        return await self.find_first({**args, "orderBy": None, "skip": None})

    async def count(self, args: Dict[str, Any]) -> int:
        stmt = sa.select(sa.func.count()).select_from(self.mapped_class)
        clause = self._where_clause(self.mapped_class, args.get("where") or {})
        if clause is not None:
            stmt = stmt.where(clause)
        async with self._session() as session:
            return int((await session.execute(stmt)).scalar_one())

    # -- writes -------------------------------------------------------------

    async def create(self, args: Dict[str, Any]) -> Dict[str, Any]:
        data: Mapping[str, Any] = args.get("data") or {}
        async with self._session() as session:
            obj = self.mapped_class()
            await self._apply_data(session, obj, data)
            session.add(obj)
            await session.flush()
            fresh = await self._reload(session, obj, args)
            return self._serialize_with(fresh, args)

    async def create_many(self, args: Dict[str, Any]) -> Dict[str, int]:
        items: Sequence[Mapping[str, Any]] = args.get("data") or []
        async with self._session() as session:
            for item in items:
                obj = self.mapped_class()
                await self._apply_data(session, obj, item)
                session.add(obj)
            await session.flush()
            return {"count": len(items)}

    async def update(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._session() as session:
            obj = await self._first_object(session, self.mapped_class, args.get("where") or {})
            if obj is None:
                return None
            await self._apply_data(session, obj, args.get("data") or {})
            await session.flush()
            fresh = await self._reload(session, obj, args)
            return self._serialize_with(fresh, args)

    async def update_many(self, args: Dict[str, Any]) -> Dict[str, int]:
        values: Dict[str, Any] = {}
        for key, value in (args.get("data") or {}).items():
            if key not in self._mapper.column_attrs:
                raise BadRequest(
                    f"Bulk updates only accept scalar fields; '{key}' is not one.",
                    code="InvalidBulkUpdateField",
                )
            values[key] = _coerce_column_value(self._mapper.column_attrs[key], value)
        if not values:
            return {"count": 0}
        stmt = sa.update(self.mapped_class).values(**values)
        clause = self._where_clause(self.mapped_class, args.get("where") or {})
        if clause is not None:
            stmt = stmt.where(clause)
        async with self._session() as session:
            result = await session.execute(
                stmt.execution_options(synchronize_session=False)
            )
            return {"count": int(result.rowcount or 0)}

    async def delete(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._session() as session:
            obj = await self._first_object(
                session,
                self.mapped_class,
                args.get("where") or {},
                options=self._loader_options(self.mapped_class, args),
            )
            if obj is None:
                return None
            snapshot = self._serialize_with(obj, args)
            await session.delete(obj)
            await session.flush()
            return snapshot

    async def delete_many(self, args: Dict[str, Any]) -> Dict[str, int]:
        stmt = sa.delete(self.mapped_class)
        clause = self._where_clause(self.mapped_class, args.get("where") or {})
        if clause is not None:
            stmt = stmt.where(clause)
        async with self._session() as session:
            result = await session.execute(
                stmt.execution_options(synchronize_session=False)
            )
            return {"count": int(result.rowcount or 0)}

    # -- statement building -------------------------------------------------

    def _select_statement(self, args: Mapping[str, Any]) -> sa.Select:
        cls = self.mapped_class
        stmt = sa.select(cls)
        clause = self._where_clause(cls, args.get("where") or {})
        if clause is not None:
            stmt = stmt.where(clause)
        order_by = args.get("orderBy")
        if order_by:
            stmt = self._apply_order_by(stmt, cls, order_by)
        if args.get("skip"):
            stmt = stmt.offset(int(args["skip"]))
        if args.get("take") is not None:
            stmt = stmt.limit(int(args["take"]))
        options = self._loader_options(cls, args)
        if options:
            stmt = stmt.options(*options)
        return stmt

    def _apply_order_by(self, stmt: sa.Select, cls: type, order_by: Any) -> sa.Select:
        items: List[Any] = order_by if isinstance(order_by, list) else [order_by]
        mapper: Mapper = sa_inspect(cls)
        for item in items:
            for key, direction in dict(item).items():
                if key in mapper.relationships and isinstance(direction, Mapping):
                    rel: RelationshipProperty = mapper.relationships[key]
                    if rel.uselist:
                        raise BadRequest(
                            f"Cannot sort by the to-many relation '{key}'.",
                            code="InvalidSort",
                        )
                    target = rel.mapper.class_
                    stmt = stmt.outerjoin(getattr(cls, key))
                    for sub_key, sub_direction in direction.items():
                        stmt = stmt.order_by(
                            _ordered(_column_attr(target, sub_key), sub_direction)
                        )
                    continue
                stmt = stmt.order_by(_ordered(_column_attr(cls, key), direction))
        return stmt

    def _where_clause(self, cls: type, where: Mapping[str, Any]) -> Optional[Any]:
        """Compile a ``where`` tree for *cls* into a SQL expression (or None)."""
        mapper: Mapper = sa_inspect(cls)
        clauses: List[Any] = []
        for key, value in where.items():
            if key in ("AND", "OR", "NOT"):
                items = value if isinstance(value, list) else [value]
                subs = [
                    c for c in (self._where_clause(cls, item or {}) for item in items)
                    if c is not None
                ]
                if key == "AND":
                    if subs:
                        clauses.append(sa.and_(*subs))
                elif key == "OR":
                    clauses.append(sa.or_(*subs) if subs else sa.false())
                elif subs:
                    clauses.append(sa.not_(sa.and_(*subs)))
            elif key in mapper.relationships:
                clauses.append(
                    self._relation_clause(cls, mapper.relationships[key], value)
                )
            elif key in mapper.column_attrs:
                clauses.append(_column_clause(getattr(cls, key), value))
            else:
                raise BadRequest(
                    f"Unknown field '{key}' for model {cls.__name__}.",
                    code="InvalidFieldName",
                )
        if not clauses:
            return None
        return clauses[0] if len(clauses) == 1 else sa.and_(*clauses)

    def _relation_clause(self, cls: type, rel: RelationshipProperty, value: Any) -> Any:
        attr = getattr(cls, rel.key)
        target = rel.mapper.class_
        if rel.uselist:
            if not isinstance(value, Mapping):
                raise BadRequest(
                    f"Filter on '{rel.key}' must use some, none or every.",
                    code="InvalidRelationFilter",
                )
            parts: List[Any] = []
            for op, condition in value.items():
                sub = self._where_clause(target, condition or {})
                if op == "some":
                    parts.append(attr.any(sub) if sub is not None else attr.any())
                elif op == "none":
                    parts.append(~attr.any(sub) if sub is not None else ~attr.any())
                elif op == "every":
                    parts.append(~attr.any(sa.not_(sub)) if sub is not None else sa.true())
                else:
                    raise BadRequest(
                        f"Unknown relation filter '{op}' on '{rel.key}'.",
                        code="InvalidRelationFilter",
                    )
            return sa.and_(*parts) if len(parts) > 1 else (parts[0] if parts else sa.true())

        if value is None:
            return ~attr.has()
        if not isinstance(value, Mapping):
            raise BadRequest(
                f"Filter on '{rel.key}' must be an object.", code="InvalidRelationFilter"
            )
        if "is" in value or "isNot" in value:
            parts = []
            if "is" in value:
                cond = value["is"]
                sub = self._where_clause(target, cond) if cond else None
                parts.append(~attr.has() if cond is None else attr.has(sub))
            if "isNot" in value:
                cond = value["isNot"]
                sub = self._where_clause(target, cond) if cond else None
                parts.append(attr.has() if cond is None else ~attr.has(sub))
            return sa.and_(*parts) if len(parts) > 1 else parts[0]
        sub = self._where_clause(target, value)
        return attr.has(sub) if sub is not None else attr.has()

    # -- loading & serialisation --------------------------------------------

    def _loader_options(self, cls: type, args: Mapping[str, Any]) -> List[Any]:
        mapper: Mapper = sa_inspect(cls)
        options: List[Any] = []
        wanted: Dict[str, Any] = {}
        for source in (args.get("include") or {}, args.get("select") or {}):
            for name, spec in source.items():
                if spec and name in mapper.relationships:
                    wanted[name] = spec
        for name, spec in wanted.items():
            rel: RelationshipProperty = mapper.relationships[name]
            loader = selectinload(getattr(cls, name))
            if isinstance(spec, Mapping):
                nested = self._loader_options(rel.mapper.class_, spec)
                if nested:
                    loader = loader.options(*nested)
            options.append(loader)
        return options

    async def _reload(self, session: AsyncSession, obj: Any, args: Mapping[str, Any]) -> Any:
        pk_attr = _primary_key_attr(self._mapper)
        stmt = (
            sa.select(self.mapped_class)
            .where(getattr(self.mapped_class, pk_attr) == getattr(obj, pk_attr))
            .options(*self._loader_options(self.mapped_class, args))
            .execution_options(populate_existing=True)
        )
        return (await session.execute(stmt)).scalars().one()

    def _serialize_with(self, obj: Any, args: Mapping[str, Any]) -> Dict[str, Any]:
        return serialize_record(obj, args.get("select"), args.get("include"), args.get("omit"))

    # -- nested writes ------------------------------------------------------

    async def _first_object(
        self,
        session: AsyncSession,
        cls: type,
        where: Mapping[str, Any],
        options: Optional[List[Any]] = None,
    ) -> Any:
        if not where:
            raise BadRequest("A where clause is required.", code="MissingWhere")
        stmt = sa.select(cls).where(self._where_clause(cls, where)).limit(1)
        if options:
            stmt = stmt.options(*options)
        return (await session.execute(stmt)).scalars().first()

    async def _apply_data(
        self,
        session: AsyncSession,
        obj: Any,
        data: Mapping[str, Any],
    ) -> None:
        cls = type(obj)
        mapper: Mapper = sa_inspect(cls)
        for key, value in data.items():
            if key in mapper.column_attrs:
                setattr(obj, key, _coerce_column_value(mapper.column_attrs[key], value))
            elif key in mapper.relationships:
                await self._apply_relation(session, obj, mapper.relationships[key], value)
            else:
                raise BadRequest(
                    f"Unknown field '{key}' for model {cls.__name__}.",
                    code="InvalidFieldName",
                )

    async def _loaded(self, session: AsyncSession, obj: Any, name: str) -> Any:
        state = sa_inspect(obj)
        if state.persistent and name in state.unloaded:
            await session.refresh(obj, attribute_names=[name])
        return getattr(obj, name)

    async def _apply_relation(
        self,
        session: AsyncSession,
        obj: Any,
        rel: RelationshipProperty,
        operations: Any,
    ) -> None:
        if not isinstance(operations, Mapping):
            raise BadRequest(
                f"Relation field '{rel.key}' must be an object of relation operations.",
                code="InvalidRelationData",
            )
        target = rel.mapper.class_
        if rel.uselist:
            collection = await self._loaded(session, obj, rel.key)
            for op, payload in operations.items():
                await self._apply_list_operation(session, collection, target, rel.key, op, payload)
            return

        for op, payload in operations.items():
            if op == "create":
                child = target()
                await self._apply_data(session, child, payload or {})
                setattr(obj, rel.key, child)
            elif op == "connect":
                setattr(obj, rel.key, await self._require(session, target, payload, rel.key))
            elif op == "connectOrCreate":
                found = await self._first_object(session, target, payload["where"])
                if found is None:
                    found = target()
                    await self._apply_data(session, found, payload.get("create") or {})
                setattr(obj, rel.key, found)
            elif op == "disconnect":
                if payload:
                    setattr(obj, rel.key, None)
            elif op == "delete":
                if payload:
                    current = await self._loaded(session, obj, rel.key)
                    if current is not None:
                        await session.delete(current)
                    setattr(obj, rel.key, None)
            elif op in ("update", "upsert"):
                current = await self._loaded(session, obj, rel.key)
                body = payload.get("data", payload.get("update")) if isinstance(payload, Mapping) else None
                if current is None and op == "upsert":
                    current = target()
                    await self._apply_data(session, current, payload.get("create") or {})
                    setattr(obj, rel.key, current)
                elif current is None:
                    raise NotFound(f"No related {target.__name__} record found to update.")
                elif body:
                    await self._apply_data(session, current, body)
            else:
                raise BadRequest(
                    f"Unknown relation operation '{op}' on '{rel.key}'.",
                    code="InvalidRelationAction",
                )

    async def _apply_list_operation(
        self,
        session: AsyncSession,
        collection: Any,
        target: type,
        name: str,
        op: str,
        payload: Any,
    ) -> None:
        items: List[Any] = list(payload) if isinstance(payload, list) else [payload]
        if op == "create":
            for item in items:
                child = target()
                await self._apply_data(session, child, item or {})
                collection.append(child)
        elif op in ("connect", "set"):
            if op == "set":
                collection.clear()
            for item in items:
                child = await self._require(session, target, item, name)
                if child not in collection:
                    collection.append(child)
        elif op == "connectOrCreate":
            for item in items:
                child = await self._first_object(session, target, item["where"])
                if child is None:
                    child = target()
                    await self._apply_data(session, child, item.get("create") or {})
                if child not in collection:
                    collection.append(child)
        elif op == "disconnect":
            for item in items:
                child = await self._require(session, target, item, name)
                if child in collection:
                    collection.remove(child)
        elif op == "update":
            for item in items:
                child = _match_in_collection(collection, target, item.get("where") or {})
                if child is None:
                    raise NotFound(f"No related {target.__name__} record found to update.")
                await self._apply_data(session, child, item.get("data") or {})
        elif op == "delete":
            for item in items:
                child = _match_in_collection(collection, target, item)
                if child is not None:
                    collection.remove(child)
                    await session.delete(child)
        elif op == "deleteMany":
            for condition in items:
                owned_ids = [getattr(c, _primary_key_attr(sa_inspect(target))) for c in collection]
                if not owned_ids:
                    return
                pk = getattr(target, _primary_key_attr(sa_inspect(target)))
                stmt = sa.select(target).where(pk.in_(owned_ids))
                clause = self._where_clause(target, condition or {})
                if clause is not None:
                    stmt = stmt.where(clause)
                for child in (await session.execute(stmt)).scalars().all():
                    if child in collection:
                        collection.remove(child)
                    await session.delete(child)
        else:
            raise BadRequest(
                f"Unknown relation operation '{op}' on '{name}'.",
                code="InvalidRelationAction",
            )

    async def _require(self, session: AsyncSession, target: type, where: Any, name: str) -> Any:
        if not isinstance(where, Mapping) or not where:
            raise BadRequest(
                f"Relation '{name}' needs a unique field to connect.",
                code="NoFieldToUseInWhereClause",
            )
        found = await self._first_object(session, target, where)
        if found is None:
            raise NotFound(
                f"No {target.__name__} record found to connect on '{name}'.",
                meta={"where": dict(where)},
            )
        return found


# ---------------------------------------------------------------------------
# Module helpers
# ---------------------------------------------------------------------------


def _column_attr(cls: type, name: str) -> Any:
    mapper: Mapper = sa_inspect(cls)
    if name not in mapper.column_attrs:
        raise BadRequest(f"Unknown field '{name}' for model {cls.__name__}.", code="InvalidFieldName")
    return getattr(cls, name)


def _ordered(column: Any, direction: Any) -> Any:
    text = str(direction).lower()
    if text not in ("asc", "desc"):
        raise BadRequest(f"Invalid sort direction '{direction}'.", code="InvalidSort")
    return column.desc() if text == "desc" else column.asc()


def _column_clause(column: Any, value: Any) -> Any:
    """Compile the filter for one scalar column."""
    if not isinstance(value, Mapping):
        return column.is_(None) if value is None else column == value

    insensitive: bool = value.get("mode") == "insensitive"
    parts: List[Any] = []
    for op, operand in value.items():
        if op == "mode":
            continue
        if op == "equals":
            if operand is None:
                parts.append(column.is_(None))
            elif insensitive and isinstance(operand, str):
                parts.append(sa.func.lower(column) == operand.lower())
            else:
                parts.append(column == operand)
        elif op == "not":
            if isinstance(operand, Mapping):
                parts.append(sa.not_(_column_clause(column, operand)))
            elif operand is None:
                parts.append(column.is_not(None))
            else:
                parts.append(column != operand)
        elif op == "in":
            parts.append(column.in_(list(operand)))
        elif op == "notIn":
            parts.append(column.not_in(list(operand)))
        elif op in _COMPARISONS:
            parts.append(getattr(column, _COMPARISONS[op])(operand))
        elif op == "contains":
            parts.append(
                column.icontains(operand, autoescape=True)
                if insensitive
                else column.contains(operand, autoescape=True)
            )
        elif op == "startsWith":
            parts.append(
                column.istartswith(operand, autoescape=True)
                if insensitive
                else column.startswith(operand, autoescape=True)
            )
        elif op == "endsWith":
            parts.append(
                column.iendswith(operand, autoescape=True)
                if insensitive
                else column.endswith(operand, autoescape=True)
            )
        elif op in ("has", "hasSome", "hasEvery"):
            parts.append(_array_clause(column, op, operand))
        else:
            raise BadRequest(f"Unknown filter operator '{op}'.", code="InvalidFilterOperator")
    if not parts:
        return sa.true()
    return parts[0] if len(parts) == 1 else sa.and_(*parts)


def _array_clause(column: Any, op: str, operand: Any) -> Any:
    if not isinstance(column.type, sa.ARRAY):
        raise BadRequest(
            f"Operator '{op}' is only supported on array columns.",
            code="InvalidFilterOperator",
        )
    if op == "has":
        return column.contains([operand])
    values = list(operand) if isinstance(operand, (list, tuple)) else [operand]
    return column.contains(values) if op == "hasEvery" else column.overlap(values)


def _coerce_column_value(prop: Any, value: Any) -> Any:
    """Turn JSON-shaped input (ISO strings, numbers) into column-typed values."""
    if not isinstance(value, str):
        return value
    try:
        python_type = prop.columns[0].type.python_type
    except (NotImplementedError, AttributeError, IndexError):
        return value
    try:
        if python_type is datetime:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        if python_type is date:
            return date.fromisoformat(value)
        if python_type is Decimal:
            return Decimal(value)
    except (ValueError, ArithmeticError) as exc:
        raise BadRequest(
            f"Invalid value for field '{prop.key}': {value!r}.",
            meta={"field": prop.key},
            code="InvalidFieldValue",
        ) from exc
    return value


def _primary_key_attr(mapper: Mapper) -> str:
    return mapper.get_property_by_column(mapper.primary_key[0]).key


def _match_in_collection(collection: Iterable[Any], target: type, where: Mapping[str, Any]) -> Any:
    for child in collection:
        if all(getattr(child, key, None) == value for key, value in where.items()):
            return child
    return None


def serialize_record(
    obj: Any,
    select: Optional[Mapping[str, Any]] = None,
    include: Optional[Mapping[str, Any]] = None,
    omit: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Serialise a loaded ORM object according to a select/include/omit projection."""
    mapper: Mapper = sa_inspect(type(obj))
    data: Dict[str, Any] = {}
    if select:
        for name, spec in select.items():
            if not spec:
                continue
            if name in mapper.relationships:
                data[name] = _serialize_relation(getattr(obj, name), spec)
            elif name in mapper.column_attrs:
                data[name] = getattr(obj, name)
            else:
                raise BadRequest(
                    f"Unknown field '{name}' for model {type(obj).__name__}.",
                    code="InvalidFieldName",
                )
        return data

    hidden: Mapping[str, Any] = omit or {}
    for prop in mapper.column_attrs:
        if not hidden.get(prop.key):
            data[prop.key] = getattr(obj, prop.key)
    for name, spec in (include or {}).items():
        if not spec:
            continue
        if name not in mapper.relationships:
            raise BadRequest(
                f"Cannot include '{name}': not a relation of {type(obj).__name__}.",
                code="InvalidFieldName",
            )
        data[name] = _serialize_relation(getattr(obj, name), spec)
    return data


def _serialize_relation(value: Any, spec: Any) -> Any:
    nested: Mapping[str, Any] = spec if isinstance(spec, Mapping) else {}
    if value is None:
        return None
    args = (nested.get("select"), nested.get("include"), nested.get("omit"))
    if isinstance(value, (list, tuple, set)) or hasattr(value, "__iter__") and not hasattr(value, "__table__"):
        return [serialize_record(item, *args) for item in value]
    return serialize_record(value, *args)


# ---------------------------------------------------------------------------
# Introspection: model list + relation metadata
# ---------------------------------------------------------------------------


def _field_kind_for(column: sa.Column) -> FieldKind:
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return FieldKind.OTHER
    if python_type is bool:
        return FieldKind.BOOLEAN
    if issubclass(python_type, str):
        return FieldKind.STRING
    if issubclass(python_type, int):
        return FieldKind.INTEGER
    if issubclass(python_type, (float, Decimal)):
        return FieldKind.FLOAT
    if issubclass(python_type, datetime):
        return FieldKind.DATETIME
    if issubclass(python_type, date):
        return FieldKind.DATE
    if issubclass(python_type, (dict, list)):
        return FieldKind.JSON
    return FieldKind.OTHER


def mapped_classes(source: Any) -> List[type]:
    """Mapped classes of a declarative base, a module, or an iterable of classes."""
    registry = getattr(source, "registry", None)
    if registry is not None and hasattr(registry, "mappers"):
        classes = [m.class_ for m in registry.mappers]
    elif isinstance(source, ModuleType):
        classes = [
            value
            for value in vars(source).values()
            if isinstance(value, type) and hasattr(value, "__mapper__") and hasattr(value, "__table__")
        ]
    else:
        classes = list(source)
    return sorted(classes, key=lambda c: c.__name__)


def describe_model(cls: type) -> ModelDescriptor:
    """Build the ``ModelDescriptor`` of one mapped class."""
    mapper: Mapper = sa_inspect(cls)
    table = mapper.local_table
    single_unique: set = set()
    for constraint in getattr(table, "constraints", ()):
        if isinstance(constraint, sa.UniqueConstraint) and len(constraint.columns) == 1:
            single_unique.update(c.name for c in constraint.columns)

    scalars: List[ScalarField] = []
    for prop in mapper.column_attrs:
        column = prop.columns[0]
        scalars.append(
            ScalarField(
                name=prop.key,
                kind=_field_kind_for(column),
                is_list=isinstance(column.type, sa.ARRAY),
                is_id=bool(column.primary_key),
                is_unique=bool(column.unique) or column.name in single_unique,
                is_optional=bool(column.nullable),
            )
        )

    relations: List[RelationField] = []
    for rel in mapper.relationships:
        fk_field: Optional[str] = None
        is_optional: bool = True
        if rel.direction is RelationshipDirection.MANYTOONE:
            local = list(rel.local_columns)
            if len(local) == 1:
                fk_field = mapper.get_property_by_column(local[0]).key
            is_optional = all(c.nullable for c in local)
        relations.append(
            RelationField(
                name=rel.key,
                target=rel.mapper.class_.__name__,
                foreign_key_field=fk_field,
                is_array=bool(rel.uselist),
                is_optional=is_optional,
            )
        )

    return ModelDescriptor(
        name=cls.__name__,
        scalar_fields=tuple(scalars),
        relations=tuple(relations),
        id_field=_primary_key_attr(mapper),
    )


def introspect_models(source: Any) -> List[ModelDescriptor]:
    """Describe every mapped class of *source*, sorted by name."""
    descriptors = [describe_model(cls) for cls in mapped_classes(source)]
    logger.info("Introspected %d model(s).", len(descriptors))
    return descriptors


def build_delegates(source: Any, session_factory: async_sessionmaker) -> Dict[str, SQLAlchemyDelegate]:
    """One ``SQLAlchemyDelegate`` per mapped class, keyed by class name."""
    return {cls.__name__: SQLAlchemyDelegate(cls, session_factory) for cls in mapped_classes(source)}


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "ModelDelegate",
    "SQLAlchemyDelegate",
    "serialize_record",
    "mapped_classes",
    "describe_model",
    "introspect_models",
    "build_delegates",
]

logger.debug("restgen.delegate loaded: %d public symbols.", len(__all__))
