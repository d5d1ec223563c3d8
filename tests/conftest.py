# mypy: ignore-errors
"""
In-memory stand-in for the Couchbase collections used by the entities.

``Keyspace.get_collection`` and ``Keyspace.query`` are patched for every test
so no cluster is ever contacted. The collection keeps CAS values and raises
the SDK's own exceptions; ``get`` yields to the event loop after taking its
snapshot so concurrent read-modify-write cycles really interleave.
"""

import asyncio
import copy
import itertools
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import pytest
from couchbase.exceptions import (
    CASMismatchException,
    DocumentExistsException,
    DocumentNotFoundException,
)

from clients.couchbase import Keyspace
from models.entities.couchbase.auctions import Auction, AuctionData
from models.entities.couchbase.listings import ListingData
from models.operations.listings import listing_create


class FakeGetResult:
    def __init__(self, content: dict, cas: int):
        self.content_as = {dict: content}
        self.cas = cas


class FakeMutationResult:
    def __init__(self, cas: int):
        self.cas = cas


class FakeCollection:
    def __init__(self, store: "FakeStore", name: str):
        self.store = store
        self.name = name
        self.docs: Dict[str, tuple] = {}
        # Optional fault injection, called with the key before a write
        self.on_insert: Optional[Callable[[str], None]] = None
        self.on_replace: Optional[Callable[[str], None]] = None
        self.replace_calls = 0

    async def get(self, key: str, *args, **kwargs) -> FakeGetResult:
        if key not in self.docs:
            raise DocumentNotFoundException(message=f"{self.name}/{key} not found")
        doc, cas = self.docs[key]
        snapshot = FakeGetResult(copy.deepcopy(doc), cas)
        await asyncio.sleep(0)
        return snapshot

    async def insert(self, key: str, value: dict, *args, **kwargs) -> FakeMutationResult:
        if self.on_insert:
            self.on_insert(key)
        if key in self.docs:
            raise DocumentExistsException(message=f"{self.name}/{key} exists")
        return self._write(key, value)

    async def upsert(self, key: str, value: dict, *args, **kwargs) -> FakeMutationResult:
        return self._write(key, value)

    async def replace(self, key: str, value: dict, *opts, **kwargs) -> FakeMutationResult:
        self.replace_calls += 1
        if self.on_replace:
            self.on_replace(key)
        if key not in self.docs:
            raise DocumentNotFoundException(message=f"{self.name}/{key} not found")
        expected = opts[0].get("cas") if opts else kwargs.get("cas")
        if expected and expected != self.docs[key][1]:
            self.store.cas_mismatches += 1
            raise CASMismatchException(message=f"{self.name}/{key} changed")
        return self._write(key, value)

    def _write(self, key: str, value: dict) -> FakeMutationResult:
        cas = next(self.store.cas_counter)
        self.docs[key] = (copy.deepcopy(value), cas)
        return FakeMutationResult(cas)

    def doc(self, key: str) -> Optional[dict]:
        entry = self.docs.get(key)
        return copy.deepcopy(entry[0]) if entry else None


_QUERY_RE = re.compile(
    r"FROM\s+\S+"
    r"(?:\s+WHERE\s+(?P<where>.*?))?"
    r"(?:\s+ORDER BY\s+(?P<order>.*?))?"
    r"(?:\s+LIMIT\s+(?P<limit>\d+))?"
    r"(?:\s+OFFSET\s+(?P<offset>\d+))?"
    r"\s*$",
    re.S,
)

_COND_RE = re.compile(r"^(STR_TO_MILLIS\(\w+\)|\w+)\s*(=|!=|<=|>=|<|>)\s*(\$\w+|'[^']*'|-?[\d.]+)$")
_MILLIS_RE = re.compile(r"^STR_TO_MILLIS\((\w+)\)$")
_ANY_RE = re.compile(
    r"^ANY\s+(\w+)\s+IN\s+(\w+)\s+SATISFIES\s+\1\.(\w+)\s*=\s*(\$\w+|'[^']*')\s+END$"
)

_OPS = {
    "=": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "<=": lambda a, b: a is not None and a <= b,
    ">=": lambda a, b: a is not None and a >= b,
    "<": lambda a, b: a is not None and a < b,
    ">": lambda a, b: a is not None and a > b,
}


def _comparable(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return value


def _literal(token: str, params: dict) -> Any:
    if token.startswith("$"):
        return params[token[1:]]
    if token.startswith("'"):
        return token[1:-1]
    return float(token)


def _field(key: str, doc: dict, field: str) -> Any:
    if field == "META().id":
        return key
    m = _MILLIS_RE.match(field)
    if m:
        raw = doc.get(m.group(1))
        if raw is None:
            return None
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        return int(parsed.timestamp() * 1000)
    return _comparable(doc.get(field))


class FakeStore:
    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}
        self.cas_counter = itertools.count(1)
        self.cas_mismatches = 0

    def collection(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(self, name)
        return self.collections[name]

    def query(self, name: str, statement: str, params: dict) -> list:
        match = _QUERY_RE.search(statement)
        if not match:
            raise ValueError(f"Unsupported query: {statement}")

        rows = [
            (key, doc) for key, (doc, _) in self.collection(name).docs.items()
        ]

        where = (match.group("where") or "").strip()
        for cond in filter(None, (c.strip() for c in re.split(r"\s+AND\s+", where))):
            if cond == "1=1":
                continue
            m = _ANY_RE.match(cond)
            if m:
                _, array, attr, token = m.groups()
                wanted = _literal(token, params)
                rows = [
                    r for r in rows
                    if any(e.get(attr) == wanted for e in r[1].get(array) or [])
                ]
                continue
            m = _COND_RE.match(cond)
            if not m:
                raise ValueError(f"Unsupported condition: {cond}")
            field, op, token = m.groups()
            value = _comparable(_literal(token, params))
            rows = [r for r in rows if _OPS[op](_field(r[0], r[1], field), value)]

        order = (match.group("order") or "").strip()
        for term in reversed([t.strip() for t in order.split(",") if t.strip()]):
            parts = term.split()
            field = parts[0]
            descending = len(parts) > 1 and parts[1].upper() == "DESC"
            rows.sort(
                key=lambda r: (_field(r[0], r[1], field) is not None, _field(r[0], r[1], field)),
                reverse=descending,
            )

        offset = int(match.group("offset") or 0)
        rows = rows[offset:]
        if match.group("limit"):
            rows = rows[: int(match.group("limit"))]

        return [{"id": key, name: copy.deepcopy(doc)} for key, doc in rows]


@pytest.fixture(autouse=True)
def couchbase_store(monkeypatch) -> FakeStore:
    store = FakeStore()

    async def fake_get_collection(self: Keyspace):
        return store.collection(self.collection_name)

    async def fake_query(self: Keyspace, query: str, consistent: bool = False, **params) -> list:
        await asyncio.sleep(0)
        return store.query(self.collection_name, query, params)

    monkeypatch.setattr(Keyspace, "get_collection", fake_get_collection)
    monkeypatch.setattr(Keyspace, "query", fake_query)
    return store


@pytest.fixture
def listing_factory():
    async def _make(farmer_id: str = "farmer-1", title: str = "Maize, 2 tonnes"):
        return await listing_create(
            farmer_id, ListingData(farmer_id=farmer_id, title=title, crop_type="maize")
        )

    return _make


@pytest.fixture
def stored_auction_factory():
    """Write an auction document directly, bypassing creation rules."""

    async def _make(
        seller_id: str = "farmer-1",
        listing_id: str = "listing-1",
        starting_price: float = 100.0,
        reserve_price: Optional[float] = None,
        bid_increment: float = 10.0,
        starts_in: timedelta = timedelta(hours=-1),
        ends_in: timedelta = timedelta(hours=1),
        status: str = "active",
    ) -> Auction:
        now = datetime.now(timezone.utc)
        data = AuctionData(
            seller_id=seller_id,
            listing_id=listing_id,
            starting_price=starting_price,
            reserve_price=reserve_price,
            bid_increment=bid_increment,
            start_time=now + starts_in,
            end_time=now + ends_in,
            status=status,
        )
        return await Auction.create(data, user_id=seller_id)

    return _make
