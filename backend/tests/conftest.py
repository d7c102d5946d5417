"""
Pytest configuration and shared test helpers for backend tests.

`store` patches database.get_db with an in-memory, Mongo-like database so
services run their real queries (filters, $set/$inc/$addToSet, upserts,
unique indexes) without a MongoDB server.
"""
import copy
import os
from datetime import datetime, timezone
from types import SimpleNamespace

os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from unittest.mock import patch
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from fastapi.testclient import TestClient
from auth import create_access_token
from database import database
from server import app

UNIQUE_FIELDS = {
    "users": ("user_id",),
    "plans": ("name",),
    "subscriptions": ("user_id",),
    "payment_events": ("event_key",),
}

_MISSING = object()


def _get_path(doc, path):
    current = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _set_path(doc, path, value):
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def _unset_path(doc, path):
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.get(part)
        if not isinstance(current, dict):
            return
    current.pop(parts[-1], None)


def _compare(value, op, arg):
    if value is _MISSING or value is None:
        return False
    try:
        if op == "$lt":
            return value < arg
        if op == "$lte":
            return value <= arg
        if op == "$gt":
            return value > arg
        if op == "$gte":
            return value >= arg
    except TypeError:
        return False
    raise ValueError(f"unsupported operator {op}")


def _equals(value, expected):
    if expected is None:
        return value is _MISSING or value is None
    if value is _MISSING:
        return False
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected


def _matches(doc, query):
    for key, condition in query.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in condition):
                return False
            continue
        value = _get_path(doc, key)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, arg in condition.items():
                if op == "$ne":
                    if _equals(value, arg):
                        return False
                elif op == "$in":
                    if not any(_equals(value, item) for item in arg):
                        return False
                elif op == "$exists":
                    if (value is not _MISSING) != bool(arg):
                        return False
                elif not _compare(value, op, arg):
                    return False
        elif not _equals(value, condition):
            return False
    return True


def _project(doc, projection):
    result = copy.deepcopy(doc)
    if not projection:
        return result
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        roots = {k.split(".")[0] for k in included}
        result = {k: v for k, v in result.items() if k in roots}
    return result


class _Cursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs.sort(
            key=lambda d: (d.get(key) is None, d.get(key) if d.get(key) is not None else 0),
            reverse=direction == -1,
        )
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return self._docs if length is None else self._docs[:length]


class InMemoryCollection:
    """Subset of the motor collection API used by the services."""

    def __init__(self, name):
        self.name = name
        self.docs = []

    def _check_unique(self, candidate, ignore=None):
        for field in UNIQUE_FIELDS.get(self.name, ()):
            value = candidate.get(field, _MISSING)
            if value is _MISSING:
                continue
            for other in self.docs:
                if other is not ignore and other.get(field, _MISSING) == value:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} {field}: {value}")

    def _apply(self, doc, update, inserting=False):
        for path, value in update.get("$set", {}).items():
            _set_path(doc, path, copy.deepcopy(value))
        if inserting:
            for path, value in update.get("$setOnInsert", {}).items():
                _set_path(doc, path, copy.deepcopy(value))
        for path, amount in update.get("$inc", {}).items():
            current = _get_path(doc, path)
            _set_path(doc, path, (0 if current is _MISSING else current) + amount)
        for path, value in update.get("$addToSet", {}).items():
            current = _get_path(doc, path)
            items = [] if current is _MISSING or current is None else list(current)
            if value not in items:
                items.append(value)
            _set_path(doc, path, items)
        for path in update.get("$unset", {}):
            _unset_path(doc, path)

    def _upsert(self, query, update):
        doc = {}
        for key, condition in query.items():
            if key.startswith("$"):
                continue
            if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
                continue
            _set_path(doc, key, copy.deepcopy(condition))
        self._apply(doc, update, inserting=True)
        self._check_unique(doc)
        self.docs.append(doc)
        return doc

    async def find_one(self, query=None, projection=None, **kwargs):
        for doc in self.docs:
            if _matches(doc, query or {}):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None, **kwargs):
        return _Cursor([_project(d, projection) for d in self.docs if _matches(d, query or {})])

    async def insert_one(self, doc, **kwargs):
        stored = copy.deepcopy(doc)
        self._check_unique(stored)
        self.docs.append(stored)
        return SimpleNamespace(inserted_id=len(self.docs))

    async def update_one(self, query, update, upsert=False, **kwargs):
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                candidate = copy.deepcopy(doc)
                self._apply(candidate, update)
                self._check_unique(candidate, ignore=doc)
                doc.clear()
                doc.update(candidate)
                return SimpleNamespace(matched_count=1, modified_count=int(before != doc), upserted_id=None)
        if upsert:
            self._upsert(query, update)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=len(self.docs))
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def find_one_and_update(
        self, query, update, projection=None, upsert=False,
        return_document=ReturnDocument.BEFORE, **kwargs
    ):
        for doc in self.docs:
            if _matches(doc, query):
                before = _project(doc, projection)
                candidate = copy.deepcopy(doc)
                self._apply(candidate, update)
                self._check_unique(candidate, ignore=doc)
                doc.clear()
                doc.update(candidate)
                return _project(doc, projection) if return_document == ReturnDocument.AFTER else before
        if upsert:
            doc = self._upsert(query, update)
            return _project(doc, projection) if return_document == ReturnDocument.AFTER else None
        return None

    async def create_index(self, *args, **kwargs):
        return None


class InMemoryDB:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = InMemoryCollection(name)
        return self._collections[name]

    async def command(self, *args, **kwargs):
        return {"ok": 1}


def default_plan_docs():
    from services.plan_registry import DEFAULT_PLANS
    return [copy.deepcopy(definition) for definition in DEFAULT_PLANS.values()]


def add_user(db, user_id="user-1", role="user", usage=None, email=None):
    doc = {
        "user_id": user_id,
        "email": email or f"{user_id}@example.com",
        "name": "Test User",
        "role": role,
    }
    if usage is not None:
        doc["usage"] = usage
    db.users.docs.append(doc)
    return doc


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def store():
    """In-memory database with default plans seeded, patched into database.get_db."""
    db = InMemoryDB()
    db.plans.docs.extend(default_plan_docs())
    with patch.object(database, "get_db", return_value=db):
        yield db


def auth_headers(user_id="user-1", role="user"):
    token = create_access_token({"user_id": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Lifespan is not started."""
    return TestClient(app)
