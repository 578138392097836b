# File: restgen/features.py
"""
NexaFlow RestGen - Query Feature Builder
==========================================
Translates an HTTP query-string mapping into ORM arguments::

    ?name__icontains=al&age__gte=18&sort=-createdAt,name&fields=id,name&page=2

    {
        "where": {"OR": [{"name": {"contains": "al", "mode": "insensitive"}},
                         {"age": {"gte": 18}}]},
        "orderBy": [{"createdAt": "desc"}, {"name": "asc"}],
        "select": {"id": True, "name": True},
        "skip": 30,
        "take": 30,
    }

The four features (filter, sort, limit_fields, paginate) each write a
disjoint part of ``APIFeatures.filters`` so they compose in any order.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence

from restgen.errors import BadRequest, InvalidFilterMode
from restgen.models import FieldKind, ModelDescriptor
from restgen.utils import deep_merge, to_kebab_case

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("restgen.features")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EXCLUDED_QUERY_KEYS: FrozenSet[str] = frozenset({
    "page", "filters", "sort", "limit", "fields", "addFields", "removeFields",
    "search", "include", "filterMode", "where", "prismaQueryOptions",
    "ignoredFields", "select", "omit",
})

QUERY_OPERATORS: FrozenSet[str] = frozenset({
    "icontains", "contains", "in", "notIn", "hasSome", "hasEvery", "or",
    "isNull", "isEmpty", "gt", "gte", "lt", "lte", "equals", "startsWith",
    "endsWith", "not", "some", "none", "every",
})

FILTER_MODES: FrozenSet[str] = frozenset({"AND", "OR"})

_LIST_OPERATORS: FrozenSet[str] = frozenset({"in", "notIn", "hasSome", "hasEvery"})

# Name-based fallbacks for fields whose type is not known (e.g. nested paths)
_DATE_FIELD_NAMES: FrozenSet[str] = frozenset({"createdAt", "updatedAt", "deletedAt", "date"})
_BOOL_FIELD_NAMES: FrozenSet[str] = frozenset({"isActive", "isDeleted", "isPublished", "isArchived"})
_NUMERIC_FIELD_NAMES: FrozenSet[str] = frozenset({"age", "price", "quantity", "amount", "rating"})

_TRUE_STRINGS: FrozenSet[str] = frozenset({"true", "1", "yes"})
_FALSE_STRINGS: FrozenSet[str] = frozenset({"false", "0", "no"})


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def _field_kind(path: Sequence[str], descriptor: Optional[ModelDescriptor]) -> str:
    name: str = path[-1]
    if descriptor is not None and len(path) == 1:
        scalar = descriptor.get_field(name)
        if scalar is not None:
            return scalar.kind
    if name in _DATE_FIELD_NAMES:
        return FieldKind.DATETIME.value
    if name in _BOOL_FIELD_NAMES:
        return FieldKind.BOOLEAN.value
    if name in _NUMERIC_FIELD_NAMES:
        return FieldKind.FLOAT.value
    return FieldKind.OTHER.value


def coerce_value(value: Any, kind: str) -> Any:
    """Convert a raw query-string value according to the field kind."""
    if not isinstance(value, str):
        return value
    text: str = value.strip()
    try:
        if kind == FieldKind.BOOLEAN:
            if text.lower() in _TRUE_STRINGS:
                return True
            if text.lower() in _FALSE_STRINGS:
                return False
            return value
        if kind == FieldKind.INTEGER:
            return int(text)
        if kind == FieldKind.FLOAT:
            number = float(text)
            return int(number) if number.is_integer() and "." not in text else number
        if kind == FieldKind.DATETIME:
            return datetime.fromisoformat(text.replace("Z", "+00:00"))
        if kind == FieldKind.DATE:
            return date.fromisoformat(text)
    except ValueError:
        logger.debug("Could not coerce %r to %s; keeping the string.", value, kind)
    return value


def _split_values(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [part.strip() for part in str(value).split(",") if part.strip() != ""]


def _nest(path: Sequence[str], condition: Any) -> Dict[str, Any]:
    result: Any = condition
    for segment in reversed(path):
        result = {segment: result}
    return result


# ---------------------------------------------------------------------------
# Operator-suffix parsing
# ---------------------------------------------------------------------------


def parse_query_param(
    key: str,
    value: Any,
    descriptor: Optional[ModelDescriptor] = None,
) -> Dict[str, Any]:
    """
    Parse a single ``field[__nested]*[__operator]`` query parameter.

    Examples:
        >>> parse_query_param("age__gte", "18")
        {'age': {'gte': 18}}
        >>> parse_query_param("author__name__icontains", "al")
        {'author': {'name': {'contains': 'al', 'mode': 'insensitive'}}}
        >>> parse_query_param("status__or", "draft,review")
        {'OR': [{'status': 'draft'}, {'status': 'review'}]}
    """
    parts: List[str] = [p for p in key.split("__") if p]
    if not parts:
        return {}

    operator: Optional[str] = None
    if len(parts) > 1 and parts[-1] in QUERY_OPERATORS:
        operator = parts[-1]
        parts = parts[:-1]

    kind: str = _field_kind(parts, descriptor)

    if operator is None:
        return _nest(parts, coerce_value(value, kind))

    if operator == "or":
        return {"OR": [_nest(parts, coerce_value(v, kind)) for v in _split_values(value)]}

    if operator == "icontains":
        condition: Any = {"contains": str(value), "mode": "insensitive"}
    elif operator in _LIST_OPERATORS:
        condition = {operator: [coerce_value(v, kind) for v in _split_values(value)]}
    elif operator == "isNull":
        wants_null: bool = str(value).strip().lower() not in _FALSE_STRINGS
        condition = {"equals": None} if wants_null else {"not": None}
    elif operator == "isEmpty":
        wants_empty: bool = str(value).strip().lower() not in _FALSE_STRINGS
        condition = {"equals": ""} if wants_empty else {"not": ""}
    elif operator in ("some", "none", "every"):
        condition = {operator: parse_json_object(value, key) or {}}
    elif operator in ("contains", "startsWith", "endsWith"):
        condition = {operator: str(value)}
    else:
        condition = {operator: coerce_value(value, kind)}

    return _nest(parts, condition)


def parse_json_object(raw: Any, label: str) -> Optional[Dict[str, Any]]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, Mapping):
        return dict(raw)
    try:
        parsed: Any = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise BadRequest(
            f"Invalid {label} JSON format",
            meta={"value": str(raw)},
            code="InvalidQueryJSON",
        ) from exc
    if not isinstance(parsed, dict):
        raise BadRequest(f"Invalid {label} JSON format", code="InvalidQueryJSON")
    return parsed


def enforce_projection_exclusivity(args: Dict[str, Any]) -> Dict[str, Any]:
    """Fold ``include`` into ``select`` when both are present (in place)."""
    if args.get("select") and args.get("include"):
        select: Dict[str, Any] = dict(args["select"])
        for name, value in args.pop("include").items():
            select.setdefault(name, value)
        args["select"] = select
    elif "select" in args and "include" in args:
        if args.get("select"):
            args.pop("include")
        else:
            args.pop("select")
    return args


# ---------------------------------------------------------------------------
# APIFeatures
# ---------------------------------------------------------------------------


class APIFeatures:
    """
    Chainable builder from a query-string mapping to ORM arguments.

    Usage::

        features = APIFeatures(descriptor, request_query).filter().sort().paginate()
        features.filters  # {"where": ..., "orderBy": ..., "skip": ..., "take": ...}
    """

    def __init__(
        self,
        descriptor: Optional[ModelDescriptor] = None,
        query: Optional[Mapping[str, Any]] = None,
        *,
        allow_dangerous: bool = False,
        user_model_name: str = "user",
        default_page_size: int = 30,
        default_filter_mode: str = "OR",
    ) -> None:
        self.descriptor: Optional[ModelDescriptor] = descriptor
        self.query: Dict[str, Any] = dict(query or {})
        self.allow_dangerous: bool = allow_dangerous
        self.user_model_name: str = user_model_name
        self.default_page_size: int = default_page_size
        self.default_filter_mode: str = default_filter_mode
        self.filters: Dict[str, Any] = {}

    # -- filter -------------------------------------------------------------

    def filter(self) -> "APIFeatures":
        query: Dict[str, Any] = dict(self.query)

        extra_filters = parse_json_object(query.pop("filters", None), "query filters")
        if extra_filters:
            query = {**extra_filters, **query}

        mode: str = str(query.get("filterMode") or self.default_filter_mode)
        if mode not in FILTER_MODES:
            raise InvalidFilterMode(
                f"Invalid filterMode '{mode}', expected one of: AND, OR.",
                meta={"filterMode": mode},
            )

        clauses: List[Dict[str, Any]] = [
            parse_query_param(key, value, self.descriptor)
            for key, value in query.items()
            if key not in EXCLUDED_QUERY_KEYS
        ]
        where: Dict[str, Any] = {mode: clauses} if clauses else {}

        search_clause = self._search_clause(query.get("search"))
        if search_clause:
            where = {"AND": [where, search_clause]} if where else search_clause

        if where:
            self.filters["where"] = where

        raw_options = query.get("prismaQueryOptions")
        if raw_options and self.allow_dangerous:
            options = parse_json_object(raw_options, "query prismaQueryOptions")
            self.filters = deep_merge(self.filters, options)
        elif raw_options:
            logger.debug("Ignoring prismaQueryOptions: dangerous query options are disabled.")

        return self

    def _search_clause(self, term: Any) -> Optional[Dict[str, Any]]:
        if not term or self.descriptor is None:
            return None
        fields: List[str] = self.descriptor.search_fields
        if not fields:
            return None
        return {
            "OR": [{name: {"contains": str(term), "mode": "insensitive"}} for name in fields]
        }

    # -- sort ---------------------------------------------------------------

    def sort(self) -> "APIFeatures":
        raw = self.query.get("sort")
        if not raw:
            return self
        order_by: List[Dict[str, Any]] = []
        for token in _split_values(raw):
            descending: bool = token.startswith("-")
            name: str = token.lstrip("-+")
            if not name:
                continue
            order_by.append(_nest(name.split("__"), "desc" if descending else "asc"))
        if order_by:
            self.filters["orderBy"] = order_by
        return self

    # -- limit_fields -------------------------------------------------------

    def limit_fields(self) -> "APIFeatures":
        if "addFields" in self.query or "removeFields" in self.query:
            raise BadRequest(
                "The addFields and removeFields parameters are deprecated.",
                code="DeprecatedQueryParameters",
            )

        select: Dict[str, Any] = {}
        include: Dict[str, Any] = {}
        omit: Dict[str, Any] = {}
        relation_names: FrozenSet[str] = (
            self.descriptor.relation_names if self.descriptor is not None else frozenset()
        )

        raw = self.query.get("fields")
        for token in _split_values(raw) if raw else []:
            if token.startswith("-"):
                omit[token[1:]] = True
            elif token.startswith("+"):
                name = token[1:]
                if name in relation_names:
                    include[name] = True
            else:
                select[token] = True

        if self._is_user_model():
            omit["password"] = True
            select.pop("password", None)

        if select and include:
            select.update(include)
            include = {}

        if select:
            for name in omit:
                select.pop(name, None)
            self.filters["select"] = select
        elif omit:
            self.filters["omit"] = omit
        if include:
            self.filters["include"] = include
        return self

    def _is_user_model(self) -> bool:
        return (
            self.descriptor is not None
            and self.descriptor.kebab_name == to_kebab_case(self.user_model_name)
        )

    # -- paginate -----------------------------------------------------------

    def paginate(self) -> "APIFeatures":
        raw_limit = self.query.get("limit")
        if isinstance(raw_limit, str) and raw_limit.strip().lower() == "all":
            return self
        page: int = _positive_int(self.query.get("page"), 1, "page")
        limit: int = _positive_int(raw_limit, self.default_page_size, "limit")
        self.filters["skip"] = (page - 1) * limit
        self.filters["take"] = limit
        return self

    def __repr__(self) -> str:
        return f"<APIFeatures {self.filters!r}>"


def _positive_int(raw: Any, default: int, label: str) -> int:
    if raw is None or raw == "":
        return default
    try:
        number = int(str(raw).strip())
    except ValueError as exc:
        raise BadRequest(
            f"Query parameter '{label}' must be a positive integer.",
            code="InvalidPagination",
        ) from exc
    if number < 1:
        raise BadRequest(
            f"Query parameter '{label}' must be a positive integer.",
            code="InvalidPagination",
        )
    return number


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "EXCLUDED_QUERY_KEYS",
    "QUERY_OPERATORS",
    "FILTER_MODES",
    "coerce_value",
    "parse_query_param",
    "parse_json_object",
    "enforce_projection_exclusivity",
    "APIFeatures",
]

logger.debug("restgen.features loaded: %d public symbols.", len(__all__))
