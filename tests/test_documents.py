import pytest
from pymongo.errors import ServerSelectionTimeoutError

from shared.documents import DocumentStore
from shared.utils import DurableStoreUnavailable


class BrokenCollection:
    async def find_one(self, *args, **kwargs):
        raise ServerSelectionTimeoutError("no servers")

    async def replace_one(self, *args, **kwargs):
        raise ServerSelectionTimeoutError("no servers")

    async def insert_one(self, *args, **kwargs):
        raise ServerSelectionTimeoutError("no servers")


class BrokenDB:
    def __getitem__(self, name):
        return BrokenCollection()


async def test_add_get_and_query(store):
    doc_id = await store.add("products", {"sku": "VALVE-1", "category": "valves"})
    await store.add("products", {"sku": "PUMP-1", "category": "pumps"}, doc_id="pump")

    assert (await store.get("products", doc_id))["sku"] == "VALVE-1"
    assert (await store.get("products", "pump"))["sku"] == "PUMP-1"
    assert await store.get("products", "missing") is None

    valves = await store.query("products", {"category": "valves"})
    assert [d["sku"] for d in valves] == ["VALVE-1"]
    assert (await store.first("products", {"sku": "PUMP-1"}))["_id"] == "pump"


async def test_query_sort_and_limit(store):
    for sku in ("C", "A", "B"):
        await store.add("products", {"sku": sku})
    docs = await store.query("products", {}, sort=[("sku", 1)], limit=2)
    assert [d["sku"] for d in docs] == ["A", "B"]


async def test_set_replaces_whole_document(store):
    await store.set("carts", "c1", {"session_id": "s1", "items": [1]})
    await store.set("carts", "c1", {"session_id": "s1"})
    assert await store.get("carts", "c1") == {"_id": "c1", "session_id": "s1"}


async def test_update_merges_fields(store):
    await store.set("orders", "o1", {"status": "pending", "total": 10.0})
    assert await store.update("orders", "o1", {"status": "confirmed"}) is True
    assert await store.get("orders", "o1") == {"_id": "o1", "status": "confirmed", "total": 10.0}
    assert await store.update("orders", "missing", {"status": "confirmed"}) is False


async def test_get_many(store):
    await store.set("price_overrides", "a", {"price": 1.0})
    await store.set("price_overrides", "b", {"price": 2.0})
    docs = await store.get_many("price_overrides", ["a", "b", "c", "a"])
    assert set(docs) == {"a", "b"}
    assert await store.get_many("price_overrides", []) == {}


async def test_batch_commits_in_order(store):
    batch = store.batch()
    order_id = batch.add("orders", {"status": "pending"})
    batch.set("carts", "c1", {"items": []})
    batch.update("orders", order_id, {"status": "confirmed"})
    assert len(batch) == 3

    assert await batch.commit() == 3
    assert len(batch) == 0
    assert (await store.get("orders", order_id))["status"] == "confirmed"
    assert await store.get("carts", "c1") == {"_id": "c1", "items": []}


async def test_driver_errors_become_store_unavailable():
    store = DocumentStore(BrokenDB())
    with pytest.raises(DurableStoreUnavailable) as exc:
        await store.get("carts", "c1")
    assert exc.value.status_code == 503
    assert exc.value.headers["Retry-After"] == "1"

    with pytest.raises(DurableStoreUnavailable):
        await store.set("carts", "c1", {})

    batch = store.batch()
    batch.add("orders", {"status": "pending"})
    with pytest.raises(DurableStoreUnavailable):
        await batch.commit()
