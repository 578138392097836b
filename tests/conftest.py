"""
tests/conftest.py
Shared fixtures for the restgen test suite.

Three layers of fixtures are provided:
- raw settings dicts (as they would come from a YAML/JSON settings file)
- an in-memory ``FakeDelegate`` standing in for the ORM delegate, so the
  service and controller can be tested without a database
- a SQLAlchemy declarative model set (User, Post, Tag) served by a real
  FastAPI app on ``sqlite+aiosqlite`` through ``TestClient``
"""

from __future__ import annotations

import copy
import pathlib
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional, Tuple

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, Table
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from restgen.auth import AuthActionService
from restgen.config import RestGenSettings, build_settings
from restgen.delegate import introspect_models
from restgen.loader import ComponentRegistry
from restgen.models import ModelDescriptor
from restgen.router import create_app
from restgen.service import BaseService


# ---------------------------------------------------------------------------
# SQLAlchemy model set
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


post_tags = Table(
    "post_tags",
    Base.metadata,
    Column("post_id", ForeignKey("posts.id"), primary_key=True),
    Column("tag_id", ForeignKey("tags.id"), primary_key=True),
)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(120), unique=True)
    name: Mapped[str] = mapped_column(String(80))
    password: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    role: Mapped[str] = mapped_column(String(20), default="user")

    posts: Mapped[List["Post"]] = relationship(back_populates="author")


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(200))
    body: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    views: Mapped[int] = mapped_column(Integer, default=0)
    published: Mapped[bool] = mapped_column(Boolean, default=False)
    authorId: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)

    author: Mapped[Optional[User]] = relationship(back_populates="posts")
    tags: Mapped[List["Tag"]] = relationship(secondary=post_tags)


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), unique=True)


# ---------------------------------------------------------------------------
# In-memory delegate
# ---------------------------------------------------------------------------


class FakeDelegate:
    """
    In-memory ``ModelDelegate`` over a list of dict rows.

    Understands equality, AND/OR and a handful of operators; relation
    operations in ``data`` are ignored.  Every call is recorded in ``calls``.
    """

    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None, id_field: str = "id") -> None:
        self.id_field: str = id_field
        self.rows: List[Dict[str, Any]] = [dict(r) for r in rows or []]
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self._next_id: int = max((r[id_field] for r in self.rows), default=0) + 1

    # -- helpers ------------------------------------------------------------

    def _record(self, name: str, args: Dict[str, Any]) -> None:
        self.calls.append((name, copy.deepcopy(args)))

    def _matches(self, row: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
        for key, cond in (where or {}).items():
            if key == "AND":
                if not all(self._matches(row, w) for w in cond):
                    return False
            elif key == "OR":
                if not any(self._matches(row, w) for w in cond):
                    return False
            elif isinstance(cond, dict):
                value = row.get(key)
                for op, operand in cond.items():
                    if op == "mode":
                        continue
                    if op == "equals" and value != operand:
                        return False
                    if op == "in" and value not in operand:
                        return False
                    if op == "contains":
                        text, needle = str(value or ""), str(operand)
                        if cond.get("mode") == "insensitive":
                            text, needle = text.lower(), needle.lower()
                        if needle not in text:
                            return False
                    if op == "gt" and not (value is not None and value > operand):
                        return False
                    if op == "gte" and not (value is not None and value >= operand):
                        return False
                    if op == "lt" and not (value is not None and value < operand):
                        return False
                    if op == "lte" and not (value is not None and value <= operand):
                        return False
            elif row.get(key) != cond:
                return False
        return True

    @staticmethod
    def _project(row: Dict[str, Any], args: Dict[str, Any]) -> Dict[str, Any]:
        select = args.get("select")
        if select:
            return {k: row.get(k) for k, v in select.items() if v}
        omit = args.get("omit") or {}
        return {k: v for k, v in row.items() if not omit.get(k)}

    @staticmethod
    def _scalars(data: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in data.items() if not isinstance(v, (dict, list))}

    def _filtered(self, args: Dict[str, Any]) -> List[Dict[str, Any]]:
        rows = [r for r in self.rows if self._matches(r, args.get("where"))]
        for order in reversed(args.get("orderBy") or []):
            for name, direction in order.items():
                rows.sort(key=lambda r: r.get(name), reverse=direction == "desc")
        skip = args.get("skip") or 0
        take = args.get("take")
        return rows[skip: skip + take] if take is not None else rows[skip:]

    # -- delegate API -------------------------------------------------------

    async def create(self, args: Dict[str, Any]) -> Dict[str, Any]:
        self._record("create", args)
        row = {self.id_field: self._next_id, **self._scalars(args.get("data") or {})}
        self._next_id += 1
        self.rows.append(row)
        return self._project(row, args)

    async def create_many(self, args: Dict[str, Any]) -> Dict[str, int]:
        self._record("create_many", args)
        for item in args.get("data") or []:
            self.rows.append({self.id_field: self._next_id, **self._scalars(item)})
            self._next_id += 1
        return {"count": len(args.get("data") or [])}

    async def find_many(self, args: Dict[str, Any]) -> List[Dict[str, Any]]:
        self._record("find_many", args)
        return [self._project(r, args) for r in self._filtered(args)]

    async def find_first(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._record("find_first", args)
        rows = self._filtered({**args, "take": 1})
        return self._project(rows[0], args) if rows else None

    async def find_unique(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._record("find_unique", args)
        rows = self._filtered({"where": args.get("where"), "take": 1})
        return self._project(rows[0], args) if rows else None

    async def update(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._record("update", args)
        rows = self._filtered({"where": args.get("where"), "take": 1})
        if not rows:
            return None
        rows[0].update(self._scalars(args.get("data") or {}))
        return self._project(rows[0], args)

    async def update_many(self, args: Dict[str, Any]) -> Dict[str, int]:
        self._record("update_many", args)
        rows = self._filtered({"where": args.get("where")})
        for row in rows:
            row.update(self._scalars(args.get("data") or {}))
        return {"count": len(rows)}

    async def delete(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._record("delete", args)
        rows = self._filtered({"where": args.get("where"), "take": 1})
        if not rows:
            return None
        self.rows.remove(rows[0])
        return dict(rows[0])

    async def delete_many(self, args: Dict[str, Any]) -> Dict[str, int]:
        self._record("delete_many", args)
        rows = self._filtered({"where": args.get("where")})
        for row in rows:
            self.rows.remove(row)
        return {"count": len(rows)}

    async def count(self, args: Dict[str, Any]) -> int:
        self._record("count", args)
        return len(self._filtered({"where": args.get("where")}))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["FakeDelegate"]:
        snapshot = copy.deepcopy(self.rows)
        try:
            yield self
        except BaseException:
            self.rows = snapshot
            raise


# ---------------------------------------------------------------------------
# Raw settings fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def raw_settings() -> Dict[str, Any]:
    """Settings as they appear in a settings file (camelCase aliases)."""
    return {
        "title": "Blog API",
        "environment": "test",
        "apiPrefix": "/api/v1/",
        "defaultPageSize": 10,
        "validation": {"resolver": "dto", "strict": False},
    }


@pytest.fixture()
def raw_auth_settings() -> Dict[str, Any]:
    return {
        "environment": "test",
        "authentication": {
            "mode": "static",
            "userModel": "User",
            "jwt": {"secret": "test-secret", "expires_in": 3600},
        },
    }


@pytest.fixture()
def auth_settings(raw_auth_settings: Dict[str, Any]) -> RestGenSettings:
    return build_settings(raw_auth_settings)


# ---------------------------------------------------------------------------
# Model metadata fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def descriptors() -> Dict[str, ModelDescriptor]:
    """Descriptors of the User/Post/Tag model set, keyed by class name."""
    return {d.name: d for d in introspect_models(Base)}


@pytest.fixture()
def post_rows() -> List[Dict[str, Any]]:
    return [
        {"id": 1, "title": "Hello world", "views": 10, "published": True, "authorId": 1},
        {"id": 2, "title": "Second post", "views": 3, "published": False, "authorId": 1},
        {"id": 3, "title": "Draft", "views": 0, "published": False, "authorId": 2},
    ]


@pytest.fixture()
def post_delegate(post_rows: List[Dict[str, Any]]) -> FakeDelegate:
    return FakeDelegate(post_rows)


@pytest.fixture()
def post_service(descriptors: Dict[str, ModelDescriptor], post_delegate: FakeDelegate) -> BaseService:
    return BaseService(descriptors["Post"], post_delegate, descriptors=descriptors)


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_app(tmp_path: pathlib.Path) -> Callable[..., FastAPI]:
    """
    Factory building a fresh app over a SQLite file in *tmp_path*.

    Each app gets its own ``AuthActionService`` so registrations never leak
    between tests.
    """

    def factory(
        settings: Optional[RestGenSettings] = None,
        registry: Optional[ComponentRegistry] = None,
        permission_checker: Optional[Callable[..., Any]] = None,
    ) -> FastAPI:
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
        session_factory = async_sessionmaker(engine, expire_on_commit=False)
        return create_app(
            settings or RestGenSettings(environment="test"),
            Base,
            session_factory,
            registry=registry,
            permission_checker=permission_checker,
            auth_actions=AuthActionService(),
            engine=engine,
            create_tables=True,
        )

    return factory


@pytest.fixture()
def client(make_app: Callable[..., FastAPI]) -> Iterator[TestClient]:
    """A client for a public app (no authentication configured)."""
    with TestClient(make_app()) as test_client:
        yield test_client
