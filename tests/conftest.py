"""Pytest fixtures: an in-memory stand-in for the Couchbase cluster.

The fake keeps documents per collection with a CAS counter, runs
transactions with staged writes that are checked against the read CAS at
commit, and answers structured finds by evaluating the conditions in Python.
"""

import asyncio
import copy
import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest
from couchbase.exceptions import (
    CASMismatchException,
    CouchbaseException,
    DocumentExistsException,
    DocumentNotFoundException,
    TransactionFailed,
)

from clients.couchbase import Keyspace, Where, set_cluster
from models.entities.couchbase.courier_profiles import CapacityLedger, CourierProfileData
from models.entities.couchbase.listings import ListingData, PickupWindow
from models.entities.couchbase.users import UserData
from models.entities.geo import GeoPoint
from models.operations import events
from models.operations.policy import RescuePolicy, policy_set

_MISSING = object()


class _ContentAs:
    def __init__(self, value: dict):
        self._value = value

    def __getitem__(self, _type):
        return copy.deepcopy(self._value)


class FakeResult:
    def __init__(self, value: Optional[dict], cas: int):
        self.value = value
        self.cas = cas

    @property
    def content_as(self) -> _ContentAs:
        return _ContentAs(self.value)


class FakeStore:
    """Documents by collection name, each stored as ``(doc, cas)``."""

    def __init__(self) -> None:
        self.docs: Dict[str, Dict[str, Tuple[dict, int]]] = {}
        self._cas = itertools.count(1)

    def next_cas(self) -> int:
        return next(self._cas)

    def collection(self, name: str) -> Dict[str, Tuple[dict, int]]:
        return self.docs.setdefault(name, {})

    def put(self, collection: str, key: str, doc: dict) -> int:
        cas = self.next_cas()
        self.collection(collection)[key] = (copy.deepcopy(doc), cas)
        return cas

    def doc(self, collection: str, key: str) -> Optional[dict]:
        entry = self.collection(collection).get(key)
        return copy.deepcopy(entry[0]) if entry else None

    def all(self, collection: str) -> List[Tuple[str, dict]]:
        return [(key, copy.deepcopy(doc)) for key, (doc, _) in self.collection(collection).items()]


class FakeCollection:
    def __init__(self, store: FakeStore, name: str):
        self.store = store
        self.name = name

    async def get(self, key: str, *args, **kwargs) -> FakeResult:
        entry = self.store.collection(self.name).get(key)
        if entry is None:
            raise DocumentNotFoundException()
        return FakeResult(copy.deepcopy(entry[0]), entry[1])

    async def insert(self, key: str, value: dict, *args, **kwargs) -> FakeResult:
        if key in self.store.collection(self.name):
            raise DocumentExistsException()
        return FakeResult(None, self.store.put(self.name, key, value))

    async def upsert(self, key: str, value: dict, *args, **kwargs) -> FakeResult:
        return FakeResult(None, self.store.put(self.name, key, value))

    async def replace(self, key: str, value: dict, *args, cas: Optional[int] = None, **kwargs) -> FakeResult:
        entry = self.store.collection(self.name).get(key)
        if entry is None:
            raise DocumentNotFoundException()
        if cas is not None and cas != entry[1]:
            raise CASMismatchException()
        return FakeResult(None, self.store.put(self.name, key, value))

    async def remove(self, key: str, *args, **kwargs) -> FakeResult:
        entry = self.store.collection(self.name).pop(key, None)
        if entry is None:
            raise DocumentNotFoundException()
        return FakeResult(None, entry[1])


class FakeScope:
    def __init__(self, store: FakeStore):
        self.store = store

    def collection(self, name: str) -> FakeCollection:
        return FakeCollection(self.store, name)


class FakeBucket:
    def __init__(self, store: FakeStore):
        self.store = store

    def scope(self, name: str) -> FakeScope:
        return FakeScope(self.store)


class FakeTxnDoc:
    def __init__(self, collection: str, key: str, value: dict, cas: Optional[int]):
        self.collection = collection
        self.key = key
        self.value = value
        self.cas = cas

    @property
    def content_as(self) -> _ContentAs:
        return _ContentAs(self.value)


class FakeAttemptContext:
    def __init__(self, store: FakeStore):
        self.store = store
        self.read_cas: Dict[Tuple[str, str], int] = {}
        self.staged: Dict[Tuple[str, str], dict] = {}
        self.inserted: List[Tuple[str, str]] = []

    async def get(self, collection: FakeCollection, key: str) -> FakeTxnDoc:
        # Yield so concurrent transactions interleave
        await asyncio.sleep(0)
        ident = (collection.name, key)
        if ident in self.staged:
            return FakeTxnDoc(collection.name, key, copy.deepcopy(self.staged[ident]), None)
        entry = self.store.collection(collection.name).get(key)
        if entry is None:
            raise DocumentNotFoundException()
        self.read_cas[ident] = entry[1]
        return FakeTxnDoc(collection.name, key, copy.deepcopy(entry[0]), entry[1])

    async def replace(self, doc: FakeTxnDoc, value: dict) -> FakeTxnDoc:
        self.staged[(doc.collection, doc.key)] = copy.deepcopy(value)
        return FakeTxnDoc(doc.collection, doc.key, value, doc.cas)

    async def insert(self, collection: FakeCollection, key: str, value: dict) -> FakeTxnDoc:
        ident = (collection.name, key)
        if key in self.store.collection(collection.name) or ident in self.staged:
            raise DocumentExistsException()
        self.staged[ident] = copy.deepcopy(value)
        self.inserted.append(ident)
        return FakeTxnDoc(collection.name, key, value, None)

    def commit(self) -> None:
        for (collection, key), cas in self.read_cas.items():
            entry = self.store.collection(collection).get(key)
            if entry is None or entry[1] != cas:
                raise TransactionFailed(message=f"write conflict on {collection}/{key}")
        for collection, key in self.inserted:
            if key in self.store.collection(collection):
                raise TransactionFailed(message=f"document {collection}/{key} already exists")
        for (collection, key), value in self.staged.items():
            self.store.put(collection, key, value)


class FakeTransactions:
    def __init__(self, cluster: "FakeCluster"):
        self.cluster = cluster

    async def run(self, logic: Callable) -> None:
        self.cluster.transaction_attempts += 1
        ctx = FakeAttemptContext(self.cluster.store)
        try:
            await logic(ctx)
        except CouchbaseException:
            raise
        except Exception as e:
            raise TransactionFailed(message=f"transaction logic raised {e!r}") from e

        if self.cluster.before_commit is not None:
            hook, self.cluster.before_commit = self.cluster.before_commit, None
            hook(self.cluster.store)
        if self.cluster.conflicts_to_inject > 0:
            self.cluster.conflicts_to_inject -= 1
            raise TransactionFailed(message="injected write conflict")
        ctx.commit()


class FakeCluster:
    def __init__(self) -> None:
        self.store = FakeStore()
        self.transactions = FakeTransactions(self)
        self.transaction_attempts = 0
        self.conflicts_to_inject = 0
        self.before_commit: Optional[Callable[[FakeStore], None]] = None

    def bucket(self, name: str) -> FakeBucket:
        return FakeBucket(self.store)

    async def ping(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Structured finds evaluated in memory
# ---------------------------------------------------------------------------

def _lookup(doc: Any, path: str) -> Any:
    for part in path.split("."):
        if not isinstance(doc, dict) or part not in doc:
            return _MISSING
        doc = doc[part]
    return doc


def _as_datetime(value: Any) -> Any:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    if isinstance(value, datetime) and value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


_COMPARE = {
    "=": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}


def _matches(doc: dict, cond: Where) -> bool:
    value = _lookup(doc, cond.field)
    if cond.op == "ANY":
        sub_field, target = cond.value
        return isinstance(value, list) and any(
            isinstance(item, dict) and item.get(sub_field) == target for item in value
        )
    if value is _MISSING or value is None:
        return False
    if cond.op == "IN":
        return value in cond.value
    expected = cond.value
    if isinstance(expected, datetime):
        value, expected = _as_datetime(value), _as_datetime(expected)
        if not isinstance(value, datetime):
            return False
    return _COMPARE[cond.op](value, expected)


def make_fake_find(store: FakeStore):
    async def fake_find(self: Keyspace, where: Sequence[Where] = (), order_by: Optional[str] = None,
                        limit: Optional[int] = None) -> list:
        self.compile_find(where, order_by=order_by, limit=limit)
        rows = [
            {"id": key, self.collection_name: doc}
            for key, doc in store.all(self.collection_name)
            if all(_matches(doc, cond) for cond in where)
        ]
        if order_by:
            field, _, direction = order_by.partition(" ")
            rows.sort(
                key=lambda row: str(_lookup(row[self.collection_name], field)),
                reverse=direction.strip().upper() == "DESC",
            )
        if limit is not None:
            rows = rows[:limit]
        return rows

    return fake_find


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def cluster(monkeypatch) -> FakeCluster:
    fake = FakeCluster()
    set_cluster(fake)
    monkeypatch.setattr(Keyspace, "find", make_fake_find(fake.store))
    policy_set(RescuePolicy())
    yield fake
    events._background_tasks.clear()
    set_cluster(None)


@pytest.fixture
def store(cluster: FakeCluster) -> FakeStore:
    return cluster.store


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc)


# Pickup point used by seeded listings, and points at known distances from it
PICKUP = (12.9716, 77.5946)


def offset_north(meters: float) -> Tuple[float, float]:
    """A point *meters* due north of PICKUP."""
    return PICKUP[0] + meters / 111_195.0, PICKUP[1]


class Seeder:
    """Writes documents straight into the fake store."""

    def __init__(self, store: FakeStore):
        self.store = store
        self._ids = itertools.count(1)

    def _stamp(self, doc: dict) -> dict:
        stamp = datetime.now(timezone.utc).isoformat()
        doc.setdefault("created_at", stamp)
        doc.setdefault("updated_at", stamp)
        return doc

    def listing(
        self,
        quantity: int = 5,
        seller_id: str = "seller-1",
        food_name: str = "Veg biryani",
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
        geo: Optional[Tuple[float, float]] = PICKUP,
        key: Optional[str] = None,
    ) -> str:
        now = datetime.now(timezone.utc)
        data = ListingData(
            seller_id=seller_id,
            food_name=food_name,
            total_quantity=quantity,
            remaining_quantity=quantity,
            status="active" if quantity > 0 else "completed",
            pickup_geo=GeoPoint(lat=geo[0], lng=geo[1]) if geo else None,
            pickup_address_text="12 Market Road",
            pickup_window=PickupWindow(
                start=window_start or now + timedelta(hours=3),
                end=window_end or now + timedelta(hours=6),
            ),
        )
        key = key or f"listing-{next(self._ids)}"
        self.store.put("listings", key, self._stamp(data.model_dump(mode="json")))
        return key

    def user(
        self,
        user_id: str,
        role: str = "buyer",
        name: Optional[str] = None,
        geo: Optional[Tuple[float, float]] = None,
        trust_score: int = 50,
        account_status: str = "active",
        is_active: bool = True,
    ) -> str:
        data = UserData(
            name=name or user_id,
            role=role,
            is_active=is_active,
            geo=GeoPoint(lat=geo[0], lng=geo[1]) if geo else None,
            trust_score=trust_score,
            account_status=account_status,
        )
        self.store.put("users", user_id, self._stamp(data.model_dump(mode="json")))
        return user_id

    def courier(
        self,
        courier_id: str,
        geo: Tuple[float, float] = PICKUP,
        max_concurrent_orders: int = 1,
        active_orders: int = 0,
        is_available: bool = True,
        trust_score: int = 50,
        account_status: str = "active",
    ) -> str:
        self.user(courier_id, role="courier", geo=geo, trust_score=trust_score, account_status=account_status)
        ledger = CapacityLedger(
            is_available=is_available,
            active_orders=active_orders,
            max_concurrent_orders=max_concurrent_orders,
        )
        profile = CourierProfileData(user_id=courier_id, vehicle_type="bicycle", availability=ledger)
        self.store.put("courier_profiles", courier_id, self._stamp(profile.model_dump(mode="json")))
        return courier_id

    def parties(self) -> None:
        self.user("buyer-1", role="buyer", name="Asha")
        self.user("seller-1", role="seller", name="Corner Bakery")


@pytest.fixture
def seed(store: FakeStore) -> Seeder:
    seeder = Seeder(store)
    seeder.parties()
    return seeder


def notifications_for(store: FakeStore, user_id: str, type: Optional[str] = None) -> List[dict]:
    return [
        doc for _, doc in store.all("notifications")
        if doc["user_id"] == user_id and (type is None or doc["type"] == type)
    ]


@pytest.fixture
def inbox(store: FakeStore):
    """``inbox(user_id, type=None)`` lists the notifications stored for a user."""
    return lambda user_id, type=None: notifications_for(store, user_id, type)


@pytest.fixture
def north_of_pickup():
    """``north_of_pickup(meters)`` gives a point that far north of the seeded listings."""
    return offset_north
