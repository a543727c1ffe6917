import sys
import os

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT_DIR)

import copy
import re
from types import SimpleNamespace
from bson import ObjectId
import pytest
from typing import Any, Dict, List
from httpx import ASGITransport, AsyncClient
from fastapi import Request, HTTPException
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import ingestion.db
from api.main import app, get_api_key
from ingestion.models import SourceConfig

TEST_API_KEY = "testapikey"

_MISSING = object()


def get_field(doc, key):
    """Resolve a dotted key ("a.b") in a document; _MISSING when absent."""
    cur = doc
    for part in key.split("."):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return _MISSING
    return cur


def set_field(doc, key, value):
    parts = key.split(".")
    cur = doc
    for part in parts[:-1]:
        cur = cur.setdefault(part, {})
    cur[parts[-1]] = value


def _eq(value, expected):
    # {"field": None} matches both null and missing, like MongoDB
    if value is _MISSING:
        return expected is None
    return value == expected


def _cmp(value, arg, op):
    if value is _MISSING or value is None:
        return False
    return op(value, arg)


def match_condition(value, cond):
    """
    Evaluate one field condition against a document value.

    Supports plain equality and the operators $eq, $ne, $in, $nin, $gt,
    $gte, $lt, $lte, $exists and $regex (with $options "i").
    """
    if not (isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond)):
        return _eq(value, cond)
    for op, arg in cond.items():
        if op == "$eq" and not _eq(value, arg):
            return False
        if op == "$ne" and _eq(value, arg):
            return False
        if op == "$in" and not any(_eq(value, a) for a in arg):
            return False
        if op == "$nin" and any(_eq(value, a) for a in arg):
            return False
        if op == "$gt" and not _cmp(value, arg, lambda a, b: a > b):
            return False
        if op == "$gte" and not _cmp(value, arg, lambda a, b: a >= b):
            return False
        if op == "$lt" and not _cmp(value, arg, lambda a, b: a < b):
            return False
        if op == "$lte" and not _cmp(value, arg, lambda a, b: a <= b):
            return False
        if op == "$exists" and (value is not _MISSING) != bool(arg):
            return False
        if op == "$regex":
            flags = re.IGNORECASE if "i" in cond.get("$options", "") else 0
            if not isinstance(value, str) or not re.search(arg, value, flags):
                return False
    return True


def matches(doc, q):
    for k, cond in (q or {}).items():
        if k == "$and":
            if not all(matches(doc, sub) for sub in cond):
                return False
        elif k == "$or":
            if not any(matches(doc, sub) for sub in cond):
                return False
        elif not match_condition(get_field(doc, k), cond):
            return False
    return True


def apply_update(doc, update, inserting=False):
    """Apply $set / $inc / $push / $unset (and $setOnInsert on insert) in place."""
    for k, v in update.get("$set", {}).items():
        set_field(doc, k, copy.deepcopy(v))
    for k, v in update.get("$inc", {}).items():
        current = get_field(doc, k)
        set_field(doc, k, (0 if current is _MISSING or current is None else current) + v)
    for k, v in update.get("$push", {}).items():
        current = get_field(doc, k)
        items = list(current) if isinstance(current, list) else []
        if isinstance(v, dict) and "$each" in v:
            items.extend(copy.deepcopy(v["$each"]))
        else:
            items.append(copy.deepcopy(v))
        set_field(doc, k, items)
    for k in update.get("$unset", {}):
        parts = k.split(".")
        parent = get_field(doc, ".".join(parts[:-1])) if len(parts) > 1 else doc
        if isinstance(parent, dict):
            parent.pop(parts[-1], None)
    if inserting:
        for k, v in update.get("$setOnInsert", {}).items():
            set_field(doc, k, copy.deepcopy(v))


def _sort_key(value):
    # None / missing sort before everything else, like MongoDB
    if value is _MISSING or value is None:
        return (0, 0)
    return (1, value)


def sort_docs(docs, order):
    """Stable multi-key sort: apply keys from last to first."""
    for field, direction in reversed(order):
        docs.sort(key=lambda d: _sort_key(get_field(d, field)), reverse=direction < 0)
    return docs


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = list(docs)
        self._skip = 0
        self._limit = None

    def sort(self, key_or_list, direction=None):
        """
        Sort like Motor: ``sort("field", -1)`` or ``sort([("a", 1), ("b", -1)])``.

        Returns:
            FakeCursor: The same cursor instance to allow method chaining.
        """
        if isinstance(key_or_list, str):
            order = [(key_or_list, direction if direction is not None else 1)]
        else:
            order = list(key_or_list)
        sort_docs(self._docs, order)
        return self

    def skip(self, n: int):
        self._skip = n
        return self

    def limit(self, n: int):
        # limit(0) means no limit in MongoDB
        self._limit = n or None
        return self

    def _window(self):
        start = self._skip
        end = None if self._limit is None else start + self._limit
        return [copy.deepcopy(d) for d in self._docs[start:end]]

    async def to_list(self, length=None):
        """
        Return copies of the documents after skip/limit.

        ``length`` caps the result like Motor does; None returns everything.
        """
        docs = self._window()
        return docs if length is None else docs[:length]

    def __aiter__(self):
        self._iter = iter(self._window())
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    """
    In-memory stand-in for a Motor collection.

    Documents are stored as dicts with a string ``_id``. ``unique`` lists
    the field tuples that must be unique, mirroring the unique indexes
    created by ``ensure_indexes``; violating one raises DuplicateKeyError.
    Every method runs without yielding to the event loop, so each call is
    atomic with respect to other coroutines, as a single-document MongoDB
    operation is.
    """

    def __init__(self, docs=None, unique=()):
        self.docs = []
        self.unique = [tuple(u) for u in unique]
        self.indexes = []
        for d in docs or []:
            d = copy.deepcopy(d)
            d.setdefault("_id", str(ObjectId()))
            self.docs.append(d)

    def _check_unique(self, doc, ignore=None):
        for fields in self.unique:
            key = tuple(get_field(doc, f) for f in fields)
            if any(v is _MISSING for v in key):
                continue
            for other in self.docs:
                if other is ignore:
                    continue
                if tuple(get_field(other, f) for f in fields) == key:
                    raise DuplicateKeyError(f"E11000 duplicate key error: {dict(zip(fields, key))}")

    def _first(self, q, sort=None):
        docs = [d for d in self.docs if matches(d, q)]
        if sort:
            docs = sort_docs(docs, list(sort))
        return docs[0] if docs else None

    def _new_doc_from_query(self, q):
        doc = {}
        for k, v in (q or {}).items():
            if k.startswith("$"):
                continue
            if isinstance(v, dict) and any(op.startswith("$") for op in v):
                continue
            set_field(doc, k, copy.deepcopy(v))
        return doc

    def _upsert(self, q, update):
        doc = self._new_doc_from_query(q)
        apply_update(doc, update, inserting=True)
        doc.setdefault("_id", str(ObjectId()))
        self._check_unique(doc)
        self.docs.append(doc)
        return doc

    def _update_doc(self, stored, update):
        updated = copy.deepcopy(stored)
        apply_update(updated, update)
        self._check_unique(updated, ignore=stored)
        changed = updated != stored
        stored.clear()
        stored.update(updated)
        return changed

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return kwargs.get("name") or str(keys)

    async def find_one(self, q=None, sort=None):
        doc = self._first(q, sort)
        return copy.deepcopy(doc) if doc else None

    def find(self, q=None, projection=None):
        return FakeCursor([d for d in self.docs if matches(d, q)])

    async def insert_one(self, doc):
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", str(ObjectId()))
        self._check_unique(doc)
        self.docs.append(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    async def update_one(self, q, update, upsert=False):
        stored = self._first(q)
        if stored is None:
            if upsert:
                doc = self._upsert(q, update)
                return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc["_id"])
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
        changed = self._update_doc(stored, update)
        return SimpleNamespace(matched_count=1, modified_count=int(changed), upserted_id=None)

    async def update_many(self, q, update, upsert=False):
        targets = [d for d in self.docs if matches(d, q)]
        if not targets and upsert:
            doc = self._upsert(q, update)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc["_id"])
        modified = sum(int(self._update_doc(d, update)) for d in targets)
        return SimpleNamespace(matched_count=len(targets), modified_count=modified, upserted_id=None)

    async def find_one_and_update(
        self, q, update, sort=None, return_document=ReturnDocument.BEFORE, upsert=False
    ):
        stored = self._first(q, sort)
        if stored is None:
            if not upsert:
                return None
            doc = self._upsert(q, update)
            return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else None
        before = copy.deepcopy(stored)
        self._update_doc(stored, update)
        return copy.deepcopy(stored) if return_document == ReturnDocument.AFTER else before

    async def delete_many(self, q):
        keep = [d for d in self.docs if not matches(d, q)]
        deleted = len(self.docs) - len(keep)
        self.docs = keep
        return SimpleNamespace(deleted_count=deleted)

    async def count_documents(self, q=None):
        return sum(1 for d in self.docs if matches(d, q))


class FakeDB:
    def __init__(self, sources=None):
        self.sources = FakeCollection(sources or [], unique=[("id",)])
        self.raw_pages = FakeCollection(unique=[("page_id",)])
        self.listings = FakeCollection(
            unique=[("source_id", "source_url"), ("listing_id",)]
        )
        self.canonical_listings = FakeCollection(unique=[("canonical_id",)])
        self.jobs = FakeCollection(unique=[("job_id",)])
        self.source_health = FakeCollection(unique=[("source_id", "date")])

    def __getitem__(self, name):
        return getattr(self, name)


def make_source(source_id, parser="generic-broker", enabled=True, priority=5, **urls):
    """Build a SourceConfig document with zero polite delay for tests."""
    return SourceConfig.model_validate(
        {
            "id": source_id,
            "name": source_id.replace("-", " ").title(),
            "enabled": enabled,
            "priority": priority,
            "urls": {"base": urls.pop("base", f"https://{source_id}.example.com"), **urls},
            "scrape_config": {
                "parser": parser,
                "rate_limit": {"requests_per_minute": 60, "delay_ms": 0, "jitter_ms": 0},
            },
        }
    )


@pytest.fixture
def sample_sources():
    """
    Registry documents used across the API, orchestrator and stats tests.

    Returns:
        list[dict]:
            - test-broker: enabled generic adapter, priority 1
            - craigslist-nyc: enabled Craigslist adapter, priority 2
            - streeteasy-browser: disabled browser adapter
            - streeteasy-apify: disabled provider adapter
    """
    return [
        make_source("test-broker", priority=1).model_dump(),
        make_source(
            "craigslist-nyc",
            parser="craigslist",
            priority=2,
            base="https://newyork.craigslist.org",
            categories=["apa"],
        ).model_dump(),
        make_source(
            "streeteasy-browser",
            parser="streeteasy-browser",
            enabled=False,
            base="https://streeteasy.com",
        ).model_dump(),
        make_source(
            "streeteasy-apify",
            parser="apify-streeteasy",
            enabled=False,
            base="https://streeteasy.com",
        ).model_dump(),
    ]


@pytest.fixture
def fake_db(monkeypatch, sample_sources):
    """
    FakeDB pre-loaded with ``sample_sources`` and installed as the database
    returned by ``ingestion.db.get_db()`` for the duration of a test.
    """
    db = FakeDB(sources=sample_sources)
    monkeypatch.setattr(ingestion.db, "_db", db)
    return db


@pytest.fixture
async def client(fake_db):
    """
    Async test client for the FastAPI app.

    The API key dependency is overridden to accept only ``TEST_API_KEY`` so
    tests do not depend on the environment. ASGITransport does not run the
    app lifespan, so no index creation or seeding happens against FakeDB.

    Yields:
        AsyncClient: Client bound to the app at http://test
    """

    async def fake_get_api_key(request: Request):
        key = request.headers.get("X-API-Key")
        if not key:
            raise HTTPException(status_code=401, detail="Missing API Key")
        if key != TEST_API_KEY:
            raise HTTPException(status_code=403, detail="Forbidden")
        return key

    app.dependency_overrides[get_api_key] = fake_get_api_key

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
